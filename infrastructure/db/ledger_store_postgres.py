from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json

from domain.errors import (
    Conflict,
    DuplicateKey,
    LedgerError,
    NotFound,
    PreconditionFailed,
    StorageUnavailable,
    ValidationError,
)
from domain.ledger import BalanceDelta, PairPrecondition, Precondition
from domain.models import Account, WithdrawalRequest, WithdrawalStatus
from domain.repositories import LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACCOUNT_COLUMNS = (
    "id, display_name, account_number, real_balance, game_currency, ticket_count, upgrades"
)
_WITHDRAWAL_COLUMNS = "id, account_id, phone_number, amount, status, created_at"

# Errors that mean "another transaction got in the way"; the whole unit of
# work is safe to run again.
_RETRYABLE_ERRORS = (
    psycopg2.errors.SerializationFailure,
    psycopg2.errors.DeadlockDetected,
    psycopg2.errors.LockNotAvailable,
)


class PostgresLedgerStore(LedgerStore):
    """
    Postgres-backed implementation of `LedgerStore`.

    Account rows are locked with `SELECT ... FOR UPDATE` before the
    precondition is evaluated; pair transactions lock both rows in a single
    statement ordered by id, so two transfers between the same accounts can
    never wait on each other in opposite order. Transactions on disjoint
    accounts proceed in parallel.
    """

    def __init__(self, db_params: dict, max_retries: int = 5, retry_delay: float = 0.05) -> None:
        self._db_params = db_params
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._ensure_tables()

    def _get_connection(self):
        return psycopg2.connect(**self._db_params)

    def _ensure_tables(self) -> None:
        def create(cur) -> None:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL UNIQUE,
                    account_number INTEGER NOT NULL UNIQUE,
                    real_balance BIGINT NOT NULL DEFAULT 0 CHECK (real_balance >= 0),
                    game_currency BIGINT NOT NULL DEFAULT 0 CHECK (game_currency >= 0),
                    ticket_count BIGINT NOT NULL DEFAULT 0 CHECK (ticket_count >= 0),
                    upgrades JSONB NOT NULL DEFAULT '{}'::jsonb
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS withdrawal_requests (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts (id),
                    phone_number TEXT NOT NULL,
                    amount BIGINT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'Pending',
                    created_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_withdrawal_requests_status
                ON withdrawal_requests (status)
                """
            )

        self._run(create)

    def _run(self, work: Callable[..., T]) -> T:
        """
        Run `work(cursor)` in one transaction, retrying on lock conflicts.

        `with conn:` commits on success and rolls back on any exception.
        """

        for attempt in range(1, self._max_retries + 1):
            try:
                conn = self._get_connection()
            except psycopg2.Error as exc:
                logger.error("Could not connect to Postgres", exc_info=True)
                raise StorageUnavailable("storage_unavailable", "Server error.") from exc

            try:
                with conn:
                    with conn.cursor() as cur:
                        return work(cur)
            except LedgerError:
                raise
            except psycopg2.errors.UniqueViolation as exc:
                raise DuplicateKey(
                    "duplicate_key",
                    "An account with this name or account number already exists.",
                ) from exc
            except psycopg2.errors.NumericValueOutOfRange as exc:
                raise ValidationError("invalid_amount", "Amount is too large.") from exc
            except _RETRYABLE_ERRORS:
                logger.debug("Transaction conflict (attempt %s/%s)", attempt, self._max_retries)
                time.sleep(self._retry_delay * attempt)
            except psycopg2.Error as exc:
                logger.error("Postgres operation failed", exc_info=True)
                raise StorageUnavailable("storage_unavailable", "Server error.") from exc
            finally:
                conn.close()

        raise Conflict("conflict", "The account is busy, please try again.")

    @staticmethod
    def _to_domain(row: tuple) -> Account:
        return Account(
            id=str(row[0]),
            display_name=row[1],
            account_number=int(row[2]),
            real_balance=int(row[3]),
            game_currency=int(row[4]),
            ticket_count=int(row[5]),
            upgrades={k: int(v) for k, v in (row[6] or {}).items()},
        )

    @staticmethod
    def _withdrawal_to_domain(row: tuple) -> WithdrawalRequest:
        return WithdrawalRequest(
            id=str(row[0]),
            account_id=str(row[1]),
            phone_number=row[2],
            amount=int(row[3]),
            status=WithdrawalStatus(row[4]),
            created_at=row[5],
        )

    def _lock_accounts(self, cur, account_ids: List[str]) -> Dict[str, Account]:
        cur.execute(
            f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM accounts
            WHERE id = ANY(%s)
            ORDER BY id
            FOR UPDATE
            """,
            (sorted(account_ids),),
        )
        loaded = {str(row[0]): self._to_domain(row) for row in cur.fetchall()}
        if len(loaded) != len(set(account_ids)):
            raise NotFound("account_not_found", "Account not found.")
        return loaded

    @staticmethod
    def _write_account(cur, account: Account) -> None:
        cur.execute(
            """
            UPDATE accounts
            SET real_balance = %s, game_currency = %s, ticket_count = %s, upgrades = %s
            WHERE id = %s
            """,
            (
                account.real_balance,
                account.game_currency,
                account.ticket_count,
                Json(account.upgrades),
                account.id,
            ),
        )

    def _select_one(self, cur, column: str, value) -> Account:
        cur.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {column} = %s",
            (value,),
        )
        row = cur.fetchone()
        if not row:
            raise NotFound("account_not_found", "Account not found.")
        return self._to_domain(row)

    def create_account(self, account: Account) -> Account:
        def insert(cur) -> Account:
            cur.execute(
                f"""
                INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (
                    account.id,
                    account.display_name,
                    account.account_number,
                    account.real_balance,
                    account.game_currency,
                    account.ticket_count,
                    Json(account.upgrades),
                ),
            )
            return self._to_domain(cur.fetchone())

        return self._run(insert)

    def get_by_id(self, account_id: str) -> Account:
        return self._run(lambda cur: self._select_one(cur, "id", account_id))

    def get_by_name(self, display_name: str) -> Account:
        return self._run(lambda cur: self._select_one(cur, "display_name", display_name))

    def get_all_accounts(self) -> List[Account]:
        def select(cur) -> List[Account]:
            cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY account_number")
            return [self._to_domain(row) for row in cur.fetchall()]

        return self._run(select)

    def apply_if_atomic(
        self,
        account_id: str,
        precondition: Precondition,
        delta: BalanceDelta,
        withdrawal: Optional[WithdrawalRequest] = None,
    ) -> Account:
        if withdrawal is not None and withdrawal.account_id != account_id:
            raise ValueError("Withdrawal request belongs to a different account.")

        def work(cur) -> Account:
            current = self._lock_accounts(cur, [account_id])[account_id]
            precondition(current)
            updated = delta.apply_to(current)
            self._write_account(cur, updated)
            if withdrawal is not None:
                cur.execute(
                    f"""
                    INSERT INTO withdrawal_requests ({_WITHDRAWAL_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        withdrawal.id,
                        withdrawal.account_id,
                        withdrawal.phone_number,
                        withdrawal.amount,
                        withdrawal.status.value,
                        withdrawal.created_at,
                    ),
                )
            return updated

        return self._run(work)

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

        def work(cur) -> Tuple[Account, Account]:
            loaded = self._lock_accounts(cur, [account_a_id, account_b_id])
            current_a, current_b = loaded[account_a_id], loaded[account_b_id]
            precondition(current_a, current_b)
            updated_a = delta_a.apply_to(current_a)
            updated_b = delta_b.apply_to(current_b)
            self._write_account(cur, updated_a)
            self._write_account(cur, updated_b)
            return updated_a, updated_b

        return self._run(work)

    def get_withdrawal(self, withdrawal_id: str) -> WithdrawalRequest:
        def select(cur) -> WithdrawalRequest:
            cur.execute(
                f"SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests WHERE id = %s",
                (withdrawal_id,),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound("withdrawal_not_found", "Withdrawal request not found.")
            return self._withdrawal_to_domain(row)

        return self._run(select)

    def list_withdrawals(
        self,
        status: Optional[WithdrawalStatus] = None,
    ) -> List[WithdrawalRequest]:
        def select(cur) -> List[WithdrawalRequest]:
            if status is None:
                cur.execute(
                    f"SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests ORDER BY created_at"
                )
            else:
                cur.execute(
                    f"""
                    SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests
                    WHERE status = %s
                    ORDER BY created_at
                    """,
                    (status.value,),
                )
            return [self._withdrawal_to_domain(row) for row in cur.fetchall()]

        return self._run(select)

    def advance_withdrawal_status(
        self,
        withdrawal_id: str,
        new_status: WithdrawalStatus,
    ) -> WithdrawalRequest:
        def work(cur) -> WithdrawalRequest:
            cur.execute(
                f"""
                SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests
                WHERE id = %s
                FOR UPDATE
                """,
                (withdrawal_id,),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound("withdrawal_not_found", "Withdrawal request not found.")
            request = self._withdrawal_to_domain(row)
            if request.status is not WithdrawalStatus.PENDING:
                raise PreconditionFailed(
                    "withdrawal_already_resolved",
                    f"Withdrawal request is already {request.status.value}.",
                )
            cur.execute(
                "UPDATE withdrawal_requests SET status = %s WHERE id = %s",
                (new_status.value, withdrawal_id),
            )
            request.status = new_status
            return request

        request = self._run(work)
        logger.info("Withdrawal %s moved to %s", withdrawal_id, new_status.value)
        return request
