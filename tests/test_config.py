import io
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from decimal import Decimal
from unittest import mock

from domain.models import GameVariant
from infrastructure.config import LedgerSettings, build_store, load_settings
from infrastructure.db.ledger_store_sqlite import SqliteLedgerStore
from infrastructure.memory.ledger_store_memory import InMemoryLedgerStore
import ledger_admin_main


class LoadSettingsTests(unittest.TestCase):
    def test_defaults(self):
        settings = load_settings({})
        self.assertEqual(settings.db_backend, "sqlite")
        self.assertEqual(settings.db_path, "ledger.db")
        self.assertIs(settings.rules.variant, GameVariant.GARAGE)
        self.assertEqual(settings.rules.house_account_name, "House")
        self.assertEqual(settings.rules.withdrawal_threshold, 100000)
        self.assertEqual(settings.rules.wager_commission_rate, Decimal("0.02"))

    def test_overrides(self):
        settings = load_settings(
            {
                "LEDGER_DB_BACKEND": "Postgres",
                "POSTGRES_HOST": "db",
                "LEDGER_VARIANT": "race",
                "HOUSE_ACCOUNT_NAME": "Bank",
                "WITHDRAWAL_THRESHOLD": "5000",
                "WITHDRAWAL_PAYOUT_AMOUNT": "50",
                "WAGER_COMMISSION_RATE": "0.05",
                "LEDGER_MAX_RETRIES": "3",
            }
        )
        self.assertEqual(settings.db_backend, "postgres")
        self.assertEqual(settings.db_params["host"], "db")
        self.assertEqual(settings.max_retries, 3)
        self.assertIs(settings.rules.variant, GameVariant.RACE)
        self.assertIn("car_speed", settings.rules.upgrades)
        self.assertEqual(settings.rules.house_account_name, "Bank")
        self.assertEqual(settings.rules.withdrawal_threshold, 5000)
        self.assertEqual(settings.rules.withdrawal_payout_amount, 50)
        self.assertEqual(settings.rules.commission_for(100), 5)

    def test_malformed_values_fail_fast(self):
        bad = (
            {"LEDGER_DB_BACKEND": "mongo"},
            {"LEDGER_VARIANT": "chess"},
            {"WITHDRAWAL_THRESHOLD": "lots"},
            {"WITHDRAWAL_THRESHOLD": "-1"},
            {"WITHDRAWAL_THRESHOLD": "0"},
            {"WITHDRAWAL_PAYOUT_AMOUNT": "-100"},
            {"WITHDRAWAL_PAYOUT_AMOUNT": "0"},
            {"WAGER_COMMISSION_RATE": "two percent"},
            {"WAGER_COMMISSION_RATE": "1.5"},
            {"LEDGER_MAX_RETRIES": "0"},
        )
        for env in bad:
            with self.subTest(env=env):
                with self.assertRaises(ValueError):
                    load_settings(env)


class BuildStoreTests(unittest.TestCase):
    def test_memory_backend(self):
        store = build_store(LedgerSettings(db_backend="memory"))
        self.assertIsInstance(store, InMemoryLedgerStore)

    def test_sqlite_backend(self):
        tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp_dir, ignore_errors=True)
        store = build_store(
            LedgerSettings(db_backend="sqlite", db_path=os.path.join(tmp_dir, "x.db"))
        )
        self.assertIsInstance(store, SqliteLedgerStore)


class LedgerAdminMainTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp_dir, ignore_errors=True)
        env = {"LEDGER_DB_BACKEND": "sqlite", "DB_PATH": os.path.join(tmp_dir, "admin.db")}
        patcher = mock.patch.dict(os.environ, env)
        patcher.start()
        self.addCleanup(patcher.stop)
        # Keep the test run free of a developer's .env file.
        dotenv_patcher = mock.patch("infrastructure.config.load_dotenv")
        dotenv_patcher.start()
        self.addCleanup(dotenv_patcher.stop)
        logging_patcher = mock.patch("ledger_admin_main.configure_logging")
        logging_patcher.start()
        self.addCleanup(logging_patcher.stop)

    def run_main(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = ledger_admin_main.main(list(argv))
        return code, out.getvalue()

    def test_init_creates_house_account_and_list_is_empty(self):
        code, output = self.run_main("init")
        self.assertEqual(code, 0)
        self.assertIn("display_name: House", output)

        code, output = self.run_main("list", "--all")
        self.assertEqual(code, 0)
        self.assertIn("No withdrawal requests.", output)

    def test_reviewing_unknown_withdrawal_fails(self):
        with redirect_stdout(io.StringIO()), mock.patch("sys.stderr", new=io.StringIO()):
            code = ledger_admin_main.main(["complete", "missing"])
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
