from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict


class GameVariant(str, Enum):
    """Which game the ledger is deployed for. Selects the upgrade catalog."""

    GARAGE = "garage"
    RACE = "race"
    ARENA = "arena"


class Currency(str, Enum):
    REAL = "real"
    COINS = "coins"


class WagerOutcome(str, Enum):
    WON = "won"
    LOST = "lost"


class WithdrawalStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


@dataclass
class Account:
    """
    A player's wallet and garage.

    `real_balance` is real-world money in the smallest currency unit and is
    the only balance that can be withdrawn. `game_currency` (coins) and
    `ticket_count` are in-game units. `upgrades` maps an upgrade kind to its
    integer level; flag upgrades use 0/1.
    """

    id: str
    display_name: str
    account_number: int
    real_balance: int = 0
    game_currency: int = 0
    ticket_count: int = 0
    upgrades: Dict[str, int] = field(default_factory=dict)

    def public_fields(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "account_number": self.account_number,
            "real_balance": self.real_balance,
            "game_currency": self.game_currency,
            "ticket_count": self.ticket_count,
            "upgrades": dict(self.upgrades),
        }


@dataclass
class WithdrawalRequest:
    """
    A request to pay out real money to a phone number.

    Created alongside the debit that funds it. Status is advanced only by the
    administrative review process.
    """

    id: str
    account_id: str
    phone_number: str
    amount: int
    created_at: datetime
    status: WithdrawalStatus = WithdrawalStatus.PENDING
