from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Mapping

from .errors import PreconditionFailed
from .models import Account

# A precondition inspects the locked, current state of an account and raises
# `PreconditionFailed` when the operation must not proceed.
Precondition = Callable[[Account], None]
PairPrecondition = Callable[[Account, Account], None]


def always(account: Account) -> None:
    return None


def always_pair(first: Account, second: Account) -> None:
    return None


def _advance(levels: Mapping[str, int], steps: Mapping[str, int]) -> Dict[str, int]:
    advanced = dict(levels)
    for kind, step in steps.items():
        advanced[kind] = advanced.get(kind, 0) + step
    return advanced


@dataclass(frozen=True)
class BalanceDelta:
    """
    Changes to apply to one account.

    Every field is added to the current value. `upgrades` maps an upgrade
    kind to the number of levels to advance it by; a kind the account does
    not have yet starts from 0.
    """

    real_balance: int = 0
    game_currency: int = 0
    ticket_count: int = 0
    upgrades: Dict[str, int] = field(default_factory=dict)

    def merge(self, other: "BalanceDelta") -> "BalanceDelta":
        return BalanceDelta(
            real_balance=self.real_balance + other.real_balance,
            game_currency=self.game_currency + other.game_currency,
            ticket_count=self.ticket_count + other.ticket_count,
            upgrades=_advance(self.upgrades, other.upgrades),
        )

    def apply_to(self, account: Account) -> Account:
        """
        Return a new `Account` with this delta applied.

        Raises `PreconditionFailed` rather than produce a negative balance.
        """

        updated = replace(
            account,
            real_balance=account.real_balance + self.real_balance,
            game_currency=account.game_currency + self.game_currency,
            ticket_count=account.ticket_count + self.ticket_count,
            upgrades=_advance(account.upgrades, self.upgrades),
        )
        if updated.real_balance < 0:
            raise PreconditionFailed("insufficient_balance", "Not enough real money balance.")
        if updated.game_currency < 0:
            raise PreconditionFailed("insufficient_coins", "Not enough coins.")
        if updated.ticket_count < 0:
            raise PreconditionFailed("insufficient_tickets", "No tickets left.")
        return updated


def copy_account(account: Account) -> Account:
    """Detached copy so callers never share a stored record's upgrade map."""

    return replace(account, upgrades=dict(account.upgrades))
