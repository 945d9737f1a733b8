from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

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


class SqliteLedgerStore(LedgerStore):
    """
    SQLite-backed implementation of `LedgerStore`.

    Owns the `accounts` and `withdrawal_requests` tables and is
    self-initialising. Every mutation runs inside `BEGIN IMMEDIATE`, which
    takes the database write lock before the account is read, so the
    read-check-write sequence cannot interleave with another writer. A
    writer that cannot get the lock within `busy_timeout` is retried up to
    `max_retries` times before `Conflict` is raised.
    """

    def __init__(
        self,
        db_path: str,
        busy_timeout: float = 5.0,
        max_retries: int = 5,
        retry_delay: float = 0.05,
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._ensure_tables()

    def _get_connection(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly below.
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
        )
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_tables(self) -> None:
        def create(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL UNIQUE,
                    account_number INTEGER NOT NULL UNIQUE,
                    real_balance INTEGER NOT NULL DEFAULT 0 CHECK (real_balance >= 0),
                    game_currency INTEGER NOT NULL DEFAULT 0 CHECK (game_currency >= 0),
                    ticket_count INTEGER NOT NULL DEFAULT 0 CHECK (ticket_count >= 0),
                    upgrades TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS withdrawal_requests (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts (id),
                    phone_number TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'Pending',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_withdrawal_requests_status
                ON withdrawal_requests (status)
                """
            )

        self._run(create)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _run(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """
        Run `work` in a write transaction, retrying when the database is locked.

        Ledger errors raised by `work` roll the transaction back and propagate
        unchanged.
        """

        for attempt in range(1, self._max_retries + 1):
            try:
                with self._transaction() as conn:
                    return work(conn)
            except LedgerError:
                raise
            except sqlite3.IntegrityError as exc:
                raise DuplicateKey(
                    "duplicate_key",
                    "An account with this name or account number already exists.",
                ) from exc
            except OverflowError as exc:
                # sqlite3 refuses Python ints outside the signed 64-bit range.
                raise ValidationError("invalid_amount", "Amount is too large.") from exc
            except sqlite3.OperationalError as exc:
                message = str(exc).lower()
                if "locked" not in message and "busy" not in message:
                    logger.error("SQLite operation failed", exc_info=True)
                    raise StorageUnavailable("storage_unavailable", "Server error.") from exc
                logger.debug("Database locked (attempt %s/%s)", attempt, self._max_retries)
                time.sleep(self._retry_delay * attempt)
            except sqlite3.Error as exc:
                logger.error("SQLite operation failed", exc_info=True)
                raise StorageUnavailable("storage_unavailable", "Server error.") from exc

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
            upgrades={k: int(v) for k, v in json.loads(row[6]).items()},
        )

    @staticmethod
    def _withdrawal_to_domain(row: tuple) -> WithdrawalRequest:
        return WithdrawalRequest(
            id=str(row[0]),
            account_id=str(row[1]),
            phone_number=row[2],
            amount=int(row[3]),
            status=WithdrawalStatus(row[4]),
            created_at=datetime.fromisoformat(row[5]),
        )

    def _select_account(self, conn: sqlite3.Connection, account_id: str) -> Account:
        row = conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = ?",
            (account_id,),
        ).fetchone()
        if not row:
            raise NotFound("account_not_found", "Account not found.")
        return self._to_domain(row)

    @staticmethod
    def _write_account(conn: sqlite3.Connection, account: Account) -> None:
        conn.execute(
            """
            UPDATE accounts
            SET real_balance = ?, game_currency = ?, ticket_count = ?, upgrades = ?
            WHERE id = ?
            """,
            (
                account.real_balance,
                account.game_currency,
                account.ticket_count,
                json.dumps(account.upgrades, sort_keys=True),
                account.id,
            ),
        )

    def create_account(self, account: Account) -> Account:
        def insert(conn: sqlite3.Connection) -> Account:
            conn.execute(
                f"""
                INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.display_name,
                    account.account_number,
                    account.real_balance,
                    account.game_currency,
                    account.ticket_count,
                    json.dumps(account.upgrades, sort_keys=True),
                ),
            )
            return self._select_account(conn, account.id)

        return self._run(insert)

    def get_by_id(self, account_id: str) -> Account:
        return self._run(lambda conn: self._select_account(conn, account_id))

    def get_by_name(self, display_name: str) -> Account:
        def select(conn: sqlite3.Connection) -> Account:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE display_name = ?",
                (display_name,),
            ).fetchone()
            if not row:
                raise NotFound("account_not_found", "Account not found.")
            return self._to_domain(row)

        return self._run(select)

    def get_all_accounts(self) -> List[Account]:
        def select(conn: sqlite3.Connection) -> List[Account]:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY account_number"
            ).fetchall()
            return [self._to_domain(row) for row in rows]

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

        def work(conn: sqlite3.Connection) -> Account:
            current = self._select_account(conn, account_id)
            precondition(current)
            updated = delta.apply_to(current)
            self._write_account(conn, updated)
            if withdrawal is not None:
                conn.execute(
                    f"""
                    INSERT INTO withdrawal_requests ({_WITHDRAWAL_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        withdrawal.id,
                        withdrawal.account_id,
                        withdrawal.phone_number,
                        withdrawal.amount,
                        withdrawal.status.value,
                        withdrawal.created_at.isoformat(),
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

        def work(conn: sqlite3.Connection) -> Tuple[Account, Account]:
            # The write lock is already held; reading in id order keeps the
            # access pattern identical to the other stores.
            loaded = {
                account_id: self._select_account(conn, account_id)
                for account_id in sorted((account_a_id, account_b_id))
            }
            current_a, current_b = loaded[account_a_id], loaded[account_b_id]
            precondition(current_a, current_b)
            updated_a = delta_a.apply_to(current_a)
            updated_b = delta_b.apply_to(current_b)
            self._write_account(conn, updated_a)
            self._write_account(conn, updated_b)
            return updated_a, updated_b

        return self._run(work)

    def get_withdrawal(self, withdrawal_id: str) -> WithdrawalRequest:
        def select(conn: sqlite3.Connection) -> WithdrawalRequest:
            row = conn.execute(
                f"SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests WHERE id = ?",
                (withdrawal_id,),
            ).fetchone()
            if not row:
                raise NotFound("withdrawal_not_found", "Withdrawal request not found.")
            return self._withdrawal_to_domain(row)

        return self._run(select)

    def list_withdrawals(
        self,
        status: Optional[WithdrawalStatus] = None,
    ) -> List[WithdrawalRequest]:
        def select(conn: sqlite3.Connection) -> List[WithdrawalRequest]:
            if status is None:
                rows = conn.execute(
                    f"SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests
                    WHERE status = ?
                    ORDER BY created_at
                    """,
                    (status.value,),
                ).fetchall()
            return [self._withdrawal_to_domain(row) for row in rows]

        return self._run(select)

    def advance_withdrawal_status(
        self,
        withdrawal_id: str,
        new_status: WithdrawalStatus,
    ) -> WithdrawalRequest:
        def work(conn: sqlite3.Connection) -> WithdrawalRequest:
            cur = conn.execute(
                """
                UPDATE withdrawal_requests
                SET status = ?
                WHERE id = ? AND status = ?
                """,
                (new_status.value, withdrawal_id, WithdrawalStatus.PENDING.value),
            )
            row = conn.execute(
                f"SELECT {_WITHDRAWAL_COLUMNS} FROM withdrawal_requests WHERE id = ?",
                (withdrawal_id,),
            ).fetchone()
            if not row:
                raise NotFound("withdrawal_not_found", "Withdrawal request not found.")
            request = self._withdrawal_to_domain(row)
            if cur.rowcount != 1:
                raise PreconditionFailed(
                    "withdrawal_already_resolved",
                    f"Withdrawal request is already {request.status.value}.",
                )
            return request

        request = self._run(work)
        logger.info("Withdrawal %s moved to %s", withdrawal_id, new_status.value)
        return request
