from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from domain.errors import DuplicateKey, NotFound, PreconditionFailed
from domain.ledger import BalanceDelta, PairPrecondition, Precondition, copy_account
from domain.models import Account, WithdrawalRequest, WithdrawalStatus
from domain.repositories import LedgerStore

logger = logging.getLogger(__name__)


class InMemoryLedgerStore(LedgerStore):
    """
    Thread-safe, process-local implementation of `LedgerStore`.

    Every account has its own lock; transactions hold it for the whole
    read-check-write sequence, and pair transactions take both locks in
    ascending id order. Transactions on disjoint accounts never contend.
    Nothing survives a restart.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._account_locks: Dict[str, threading.Lock] = {}
        self._ids_by_name: Dict[str, str] = {}
        self._ids_by_number: Dict[int, str] = {}
        # Guards the three index maps above and account creation.
        self._index_lock = threading.Lock()
        self._withdrawals: Dict[str, WithdrawalRequest] = {}
        self._withdrawal_lock = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._index_lock:
            lock = self._account_locks.get(account_id)
        if lock is None:
            raise NotFound("account_not_found", "Account not found.")
        return lock

    def create_account(self, account: Account) -> Account:
        with self._index_lock:
            if account.id in self._accounts:
                raise DuplicateKey("duplicate_account", "Account already exists.")
            if account.display_name in self._ids_by_name:
                raise DuplicateKey("duplicate_account", "Account name already taken.")
            if account.account_number in self._ids_by_number:
                raise DuplicateKey(
                    "duplicate_account",
                    "An account with this name or account number already exists.",
                )
            stored = copy_account(account)
            self._accounts[stored.id] = stored
            self._account_locks[stored.id] = threading.Lock()
            self._ids_by_name[stored.display_name] = stored.id
            self._ids_by_number[stored.account_number] = stored.id
        return copy_account(stored)

    def get_by_id(self, account_id: str) -> Account:
        with self._lock_for(account_id):
            return copy_account(self._accounts[account_id])

    def get_by_name(self, display_name: str) -> Account:
        with self._index_lock:
            account_id = self._ids_by_name.get(display_name)
        if account_id is None:
            raise NotFound("account_not_found", "Account not found.")
        return self.get_by_id(account_id)

    def get_all_accounts(self) -> List[Account]:
        with self._index_lock:
            account_ids = list(self._accounts)
        return [self.get_by_id(account_id) for account_id in account_ids]

    def apply_if_atomic(
        self,
        account_id: str,
        precondition: Precondition,
        delta: BalanceDelta,
        withdrawal: Optional[WithdrawalRequest] = None,
    ) -> Account:
        if withdrawal is not None and withdrawal.account_id != account_id:
            raise ValueError("Withdrawal request belongs to a different account.")

        with self._lock_for(account_id):
            current = self._accounts[account_id]
            precondition(copy_account(current))
            updated = delta.apply_to(current)

            if withdrawal is None:
                self._accounts[account_id] = updated
            else:
                # Both writes happen under the queue lock so no reader of the
                # queue sees the request without the matching debit.
                with self._withdrawal_lock:
                    if withdrawal.id in self._withdrawals:
                        raise DuplicateKey(
                            "duplicate_withdrawal", "Withdrawal request already exists."
                        )
                    self._withdrawals[withdrawal.id] = replace(withdrawal)
                    self._accounts[account_id] = updated

        return copy_account(updated)

    def apply_pair_atomic(
        self,
        account_a_id: str,
        delta_a: BalanceDelta,
        account_b_id: str,
        delta_b: BalanceDelta,
        precondition: PairPrecondition,
    ) -> Tuple[Account, Account]:
        if account_a_id == account_b_id:
            raise ValueError("Pair transactions need two distinct accounts.")

        first_id, second_id = sorted((account_a_id, account_b_id))
        with self._lock_for(first_id), self._lock_for(second_id):
            current_a = self._accounts[account_a_id]
            current_b = self._accounts[account_b_id]
            precondition(copy_account(current_a), copy_account(current_b))
            updated_a = delta_a.apply_to(current_a)
            updated_b = delta_b.apply_to(current_b)
            self._accounts[account_a_id] = updated_a
            self._accounts[account_b_id] = updated_b

        return copy_account(updated_a), copy_account(updated_b)

    def get_withdrawal(self, withdrawal_id: str) -> WithdrawalRequest:
        with self._withdrawal_lock:
            request = self._withdrawals.get(withdrawal_id)
        if request is None:
            raise NotFound("withdrawal_not_found", "Withdrawal request not found.")
        return replace(request)

    def list_withdrawals(
        self,
        status: Optional[WithdrawalStatus] = None,
    ) -> List[WithdrawalRequest]:
        with self._withdrawal_lock:
            requests = [
                replace(r)
                for r in self._withdrawals.values()
                if status is None or r.status is status
            ]
        return sorted(requests, key=lambda r: r.created_at)

    def advance_withdrawal_status(
        self,
        withdrawal_id: str,
        new_status: WithdrawalStatus,
    ) -> WithdrawalRequest:
        with self._withdrawal_lock:
            request = self._withdrawals.get(withdrawal_id)
            if request is None:
                raise NotFound("withdrawal_not_found", "Withdrawal request not found.")
            if request.status is not WithdrawalStatus.PENDING:
                raise PreconditionFailed(
                    "withdrawal_already_resolved",
                    f"Withdrawal request is already {request.status.value}.",
                )
            updated = replace(request, status=new_status)
            self._withdrawals[withdrawal_id] = updated

        logger.info("Withdrawal %s moved to %s", withdrawal_id, new_status.value)
        return replace(updated)
