from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from .ledger import BalanceDelta, PairPrecondition, Precondition
from .models import Account, WithdrawalRequest, WithdrawalStatus


class AccountRepository(Protocol):
    """
    Abstraction over account persistence.

    Implementations are responsible for:
    - Mapping between stored rows and the `Account` domain model.
    - Enforcing uniqueness of display names and account numbers in storage.
    - Raising `NotFound` / `DuplicateKey` instead of returning sentinels.
    """

    def create_account(self, account: Account) -> Account:
        """Persist a new account. Raises `DuplicateKey` on a name/number collision."""

        ...

    def get_by_id(self, account_id: str) -> Account:
        """Return the account with the given ID. Raises `NotFound`."""

        ...

    def get_by_name(self, display_name: str) -> Account:
        ...

    def get_all_accounts(self) -> List[Account]:
        """Return all accounts currently known to the system."""

        ...


class TransactionExecutor(Protocol):
    """
    The only path through which account balances change.

    Each call is a single atomic unit: the precondition is evaluated against
    the locked current state and the delta is persisted only if it holds.
    """

    def apply_if_atomic(
        self,
        account_id: str,
        precondition: Precondition,
        delta: BalanceDelta,
        withdrawal: Optional[WithdrawalRequest] = None,
    ) -> Account:
        """
        Apply `delta` to one account if `precondition` holds.

        When `withdrawal` is given it is appended in the same transaction as
        the debit.
        """

        ...

    def apply_pair_atomic(
        self,
        account_a_id: str,
        delta_a: BalanceDelta,
        account_b_id: str,
        delta_b: BalanceDelta,
        precondition: PairPrecondition,
    ) -> Tuple[Account, Account]:
        """
        Apply both deltas or neither.

        Accounts are locked in ascending id order. Returns the updated
        accounts in argument order.
        """

        ...


class WithdrawalRepository(Protocol):
    """Read and review access to the withdrawal queue."""

    def get_withdrawal(self, withdrawal_id: str) -> WithdrawalRequest:
        ...

    def list_withdrawals(
        self,
        status: Optional[WithdrawalStatus] = None,
    ) -> List[WithdrawalRequest]:
        ...

    def advance_withdrawal_status(
        self,
        withdrawal_id: str,
        new_status: WithdrawalStatus,
    ) -> WithdrawalRequest:
        """
        Move a Pending request to `new_status`.

        Raises `PreconditionFailed` if the request is no longer Pending.
        """

        ...


class LedgerStore(AccountRepository, TransactionExecutor, WithdrawalRepository, Protocol):
    """A storage backend providing all ledger capabilities."""
