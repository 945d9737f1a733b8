import os
import shutil
import tempfile
import unittest
import uuid
from datetime import datetime, timedelta, timezone

from domain.account_number import derive_account_number
from domain.errors import DuplicateKey, NotFound, PreconditionFailed, ValidationError
from domain.ledger import BalanceDelta, always, always_pair
from domain.models import Account, WithdrawalRequest, WithdrawalStatus
from infrastructure.db.ledger_store_sqlite import SqliteLedgerStore
from infrastructure.memory.ledger_store_memory import InMemoryLedgerStore

POSTGRES_DSN = os.environ.get("LEDGER_TEST_POSTGRES_DSN")


def make_account(name: str, real_balance: int = 0, **fields) -> Account:
    return Account(
        id=uuid.uuid4().hex,
        display_name=name,
        account_number=derive_account_number(name),
        real_balance=real_balance,
        **fields,
    )


def make_withdrawal(account_id: str, minutes_ago: int = 0) -> WithdrawalRequest:
    return WithdrawalRequest(
        id=uuid.uuid4().hex,
        account_id=account_id,
        phone_number="0771234567",
        amount=100,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


def reject(reason: str):
    def check(*accounts):
        raise PreconditionFailed(reason, "Rejected for test.")

    return check


class LedgerStoreContract:
    """Behaviour every `LedgerStore` implementation must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()

    def test_create_and_read_account(self):
        created = self.store.create_account(
            make_account("Alice", 10, game_currency=5, upgrades={"rims": 0, "turbo": 1})
        )
        by_id = self.store.get_by_id(created.id)
        by_name = self.store.get_by_name("Alice")
        self.assertEqual(by_id, created)
        self.assertEqual(by_name, created)
        self.assertEqual(by_id.upgrades, {"rims": 0, "turbo": 1})
        self.assertEqual([a.id for a in self.store.get_all_accounts()], [created.id])

    def test_unknown_accounts_raise_not_found(self):
        with self.assertRaises(NotFound):
            self.store.get_by_id("missing")
        with self.assertRaises(NotFound):
            self.store.get_by_name("Nobody")
        with self.assertRaises(NotFound):
            self.store.apply_if_atomic("missing", always, BalanceDelta(real_balance=1))

    def test_uniqueness_is_enforced(self):
        self.store.create_account(make_account("Alice"))
        with self.assertRaises(DuplicateKey):
            self.store.create_account(make_account("Alice"))
        with self.assertRaises(DuplicateKey):
            self.store.create_account(make_account("Andrew"))
        self.assertEqual(len(self.store.get_all_accounts()), 1)

    def test_apply_if_atomic_applies_delta(self):
        account = self.store.create_account(make_account("Alice", 100, upgrades={"rims": 0}))
        updated = self.store.apply_if_atomic(
            account.id,
            always,
            BalanceDelta(real_balance=-30, ticket_count=2, upgrades={"rims": 1}),
        )
        self.assertEqual(updated.real_balance, 70)
        self.assertEqual(updated.ticket_count, 2)
        self.assertEqual(updated.upgrades, {"rims": 1})
        self.assertEqual(self.store.get_by_id(account.id), updated)

    def test_precondition_sees_current_state(self):
        account = self.store.create_account(make_account("Alice", 100))
        seen = []
        self.store.apply_if_atomic(account.id, seen.append, BalanceDelta(real_balance=5))
        self.store.apply_if_atomic(account.id, seen.append, BalanceDelta(real_balance=5))
        self.assertEqual([a.real_balance for a in seen], [100, 105])

    def test_failed_precondition_changes_nothing(self):
        account = self.store.create_account(make_account("Alice", 100))
        with self.assertRaises(PreconditionFailed):
            self.store.apply_if_atomic(
                account.id,
                reject("insufficient_balance"),
                BalanceDelta(real_balance=-10),
                withdrawal=make_withdrawal(account.id),
            )
        self.assertEqual(self.store.get_by_id(account.id).real_balance, 100)
        self.assertEqual(self.store.list_withdrawals(), [])

    def test_negative_result_is_refused(self):
        account = self.store.create_account(make_account("Alice", 10))
        with self.assertRaises(PreconditionFailed):
            self.store.apply_if_atomic(account.id, always, BalanceDelta(real_balance=-11))
        self.assertEqual(self.store.get_by_id(account.id).real_balance, 10)

    def test_withdrawal_is_written_with_debit(self):
        account = self.store.create_account(make_account("Alice", 1000))
        request = make_withdrawal(account.id)
        updated = self.store.apply_if_atomic(
            account.id, always, BalanceDelta(real_balance=-100), withdrawal=request
        )
        self.assertEqual(updated.real_balance, 900)

        stored = self.store.get_withdrawal(request.id)
        self.assertEqual(stored.account_id, account.id)
        self.assertEqual(stored.amount, 100)
        self.assertEqual(stored.phone_number, "0771234567")
        self.assertIs(stored.status, WithdrawalStatus.PENDING)

    def test_withdrawal_for_other_account_is_refused(self):
        account = self.store.create_account(make_account("Alice", 1000))
        with self.assertRaises(ValueError):
            self.store.apply_if_atomic(
                account.id, always, BalanceDelta(), withdrawal=make_withdrawal("other")
            )

    def test_list_and_advance_withdrawals(self):
        account = self.store.create_account(make_account("Alice", 1000))
        older = make_withdrawal(account.id, minutes_ago=5)
        newer = make_withdrawal(account.id)
        for request in (newer, older):
            self.store.apply_if_atomic(
                account.id, always, BalanceDelta(real_balance=-100), withdrawal=request
            )

        pending = self.store.list_withdrawals(WithdrawalStatus.PENDING)
        self.assertEqual([w.id for w in pending], [older.id, newer.id])

        rejected = self.store.advance_withdrawal_status(older.id, WithdrawalStatus.REJECTED)
        self.assertIs(rejected.status, WithdrawalStatus.REJECTED)
        with self.assertRaises(PreconditionFailed):
            self.store.advance_withdrawal_status(older.id, WithdrawalStatus.COMPLETED)
        with self.assertRaises(NotFound):
            self.store.advance_withdrawal_status("missing", WithdrawalStatus.COMPLETED)

        self.assertEqual(
            [w.id for w in self.store.list_withdrawals(WithdrawalStatus.PENDING)], [newer.id]
        )
        self.assertEqual(
            [w.id for w in self.store.list_withdrawals(WithdrawalStatus.REJECTED)], [older.id]
        )
        self.assertEqual(len(self.store.list_withdrawals()), 2)

    def test_pair_transaction_applies_both(self):
        bettor = self.store.create_account(make_account("Alice", 100))
        house = self.store.create_account(make_account("House", 0))
        updated_bettor, updated_house = self.store.apply_pair_atomic(
            bettor.id,
            BalanceDelta(real_balance=-50),
            house.id,
            BalanceDelta(real_balance=1),
            always_pair,
        )
        self.assertEqual(updated_bettor.real_balance, 50)
        self.assertEqual(updated_house.real_balance, 1)
        self.assertEqual(self.store.get_by_id(house.id).real_balance, 1)

    def test_pair_transaction_applies_neither_on_failure(self):
        bettor = self.store.create_account(make_account("Alice", 100))
        house = self.store.create_account(make_account("House", 0))

        # The second delta fails after the first one was computed.
        with self.assertRaises(PreconditionFailed):
            self.store.apply_pair_atomic(
                bettor.id,
                BalanceDelta(real_balance=-50),
                house.id,
                BalanceDelta(real_balance=-1),
                always_pair,
            )
        with self.assertRaises(PreconditionFailed):
            self.store.apply_pair_atomic(
                bettor.id,
                BalanceDelta(real_balance=-50),
                house.id,
                BalanceDelta(real_balance=1),
                reject("insufficient_balance"),
            )

        self.assertEqual(self.store.get_by_id(bettor.id).real_balance, 100)
        self.assertEqual(self.store.get_by_id(house.id).real_balance, 0)

    def test_pair_transaction_needs_two_accounts(self):
        account = self.store.create_account(make_account("Alice", 100))
        with self.assertRaises(ValueError):
            self.store.apply_pair_atomic(
                account.id, BalanceDelta(), account.id, BalanceDelta(), always_pair
            )
        with self.assertRaises(NotFound):
            self.store.apply_pair_atomic(
                account.id, BalanceDelta(), "missing", BalanceDelta(), always_pair
            )


class InMemoryLedgerStoreTests(LedgerStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryLedgerStore()


class SqliteLedgerStoreTests(LedgerStoreContract, unittest.TestCase):
    def make_store(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)
        self.db_path = os.path.join(self.tmp_dir, "ledger.db")
        return SqliteLedgerStore(self.db_path)

    def test_data_survives_a_new_store_instance(self):
        account = self.store.create_account(make_account("Alice", 42, upgrades={"turbo": 1}))
        self.store.apply_if_atomic(
            account.id,
            always,
            BalanceDelta(real_balance=-2),
            withdrawal=make_withdrawal(account.id),
        )

        reopened = SqliteLedgerStore(self.db_path)
        self.assertEqual(reopened.get_by_id(account.id), self.store.get_by_id(account.id))
        self.assertEqual(len(reopened.list_withdrawals(WithdrawalStatus.PENDING)), 1)

    def test_out_of_range_balance_is_a_validation_error(self):
        account = self.store.create_account(make_account("Alice", 10))
        with self.assertRaises(ValidationError) as ctx:
            self.store.apply_if_atomic(account.id, always, BalanceDelta(real_balance=10**19))
        self.assertEqual(ctx.exception.reason, "invalid_amount")
        self.assertEqual(self.store.get_by_id(account.id).real_balance, 10)


@unittest.skipUnless(POSTGRES_DSN, "LEDGER_TEST_POSTGRES_DSN is not set")
class PostgresLedgerStoreTests(LedgerStoreContract, unittest.TestCase):
    def make_store(self):
        import psycopg2

        from infrastructure.db.ledger_store_postgres import PostgresLedgerStore

        conn = psycopg2.connect(POSTGRES_DSN)
        try:
            with conn:
                with conn.cursor() as cur:
                    cur.execute("DROP TABLE IF EXISTS withdrawal_requests, accounts")
        finally:
            conn.close()
        return PostgresLedgerStore({"dsn": POSTGRES_DSN})


if __name__ == "__main__":
    unittest.main()
