from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional

from .models import Currency, GameVariant


@dataclass(frozen=True)
class UpgradeSpec:
    """Price and level range of one purchasable upgrade."""

    kind: str
    currency: Currency
    cost: int
    base_level: int = 0
    max_level: int = 1


GARAGE_UPGRADES = (
    UpgradeSpec("engine_level", Currency.COINS, 500, base_level=1, max_level=5),
    UpgradeSpec("rims", Currency.COINS, 1000),
    UpgradeSpec("turbo", Currency.REAL, 50),
)

RACE_UPGRADES = (
    UpgradeSpec("car_speed", Currency.REAL, 100, base_level=1, max_level=5),
)


def _catalog(*specs: UpgradeSpec) -> Dict[str, UpgradeSpec]:
    return {spec.kind: spec for spec in specs}


@dataclass(frozen=True)
class EconomyRules:
    """
    Static constants driving every economy operation.

    Amounts are integers in the smallest currency unit. Instances are built
    once at startup and never mutated.
    """

    variant: GameVariant = GameVariant.GARAGE
    reload_conversion_rate: int = 10
    upgrades: Mapping[str, UpgradeSpec] = field(
        default_factory=lambda: _catalog(*GARAGE_UPGRADES)
    )
    ticket_bundle_cost: int = 500
    ticket_bundle_size: int = 5
    earned_tickets: int = 1
    race_rank_payouts: Mapping[int, int] = field(
        default_factory=lambda: {1: 100, 2: 50, 3: 20}
    )
    wager_commission_rate: Decimal = Decimal("0.02")
    withdrawal_threshold: int = 100_000
    withdrawal_payout_amount: int = 100
    min_phone_number_length: int = 9
    house_account_name: str = "House"
    # Largest single reload or bet; keeps balances inside a 64-bit column.
    max_amount: int = 1_000_000_000

    @classmethod
    def for_variant(cls, variant: GameVariant, **overrides) -> "EconomyRules":
        if variant is GameVariant.GARAGE:
            defaults = dict(reload_conversion_rate=10, upgrades=_catalog(*GARAGE_UPGRADES))
        elif variant is GameVariant.RACE:
            defaults = dict(reload_conversion_rate=0, upgrades=_catalog(*RACE_UPGRADES))
        else:
            defaults = dict(reload_conversion_rate=0, upgrades={})
        defaults.update(overrides)
        return cls(variant=variant, **defaults)

    def base_upgrades(self) -> Dict[str, int]:
        return {kind: spec.base_level for kind, spec in self.upgrades.items()}

    def upgrade(self, kind: str) -> Optional[UpgradeSpec]:
        return self.upgrades.get(kind)

    def race_payout(self, rank: int) -> int:
        return self.race_rank_payouts.get(rank, 0)

    def commission_for(self, bet_amount: int) -> int:
        """House cut of a lost bet, rounded half away from zero."""

        commission = Decimal(bet_amount) * self.wager_commission_rate
        return int(commission.quantize(Decimal(1), rounding=ROUND_HALF_UP))
