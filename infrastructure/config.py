from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from dotenv import load_dotenv

from domain.models import GameVariant
from domain.repositories import LedgerStore
from domain.rules import EconomyRules

SUPPORTED_BACKENDS = ("sqlite", "postgres", "memory")


@dataclass(frozen=True)
class LedgerSettings:
    """
    Process-wide configuration, built once at startup and passed explicitly.
    """

    db_backend: str = "sqlite"
    db_path: str = "ledger.db"
    db_params: Mapping[str, str] = field(default_factory=dict)
    max_retries: int = 5
    log_level: str = "INFO"
    rules: EconomyRules = field(default_factory=EconomyRules)


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from None


def _get_decimal(env: Mapping[str, str], name: str, default: Decimal) -> Decimal:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}.") from None
    if not value.is_finite() or value < 0 or value > 1:
        raise ValueError(f"{name} must be between 0 and 1, got {raw!r}.")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> LedgerSettings:
    """
    Build `LedgerSettings` from environment variables.

    When `env` is omitted, a `.env` file is loaded first and `os.environ` is
    read. Malformed values raise `ValueError`.
    """

    if env is None:
        load_dotenv()
        env = os.environ

    backend = env.get("LEDGER_DB_BACKEND", "sqlite").lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(
            f"LEDGER_DB_BACKEND must be one of {', '.join(SUPPORTED_BACKENDS)}, got {backend!r}."
        )

    raw_variant = env.get("LEDGER_VARIANT", GameVariant.GARAGE.value).lower()
    try:
        variant = GameVariant(raw_variant)
    except ValueError:
        raise ValueError(f"Unknown LEDGER_VARIANT {raw_variant!r}.") from None

    defaults = EconomyRules()
    withdrawal_threshold = _get_int(env, "WITHDRAWAL_THRESHOLD", defaults.withdrawal_threshold)
    if withdrawal_threshold < 1:
        raise ValueError("WITHDRAWAL_THRESHOLD must be at least 1.")
    withdrawal_payout_amount = _get_int(
        env, "WITHDRAWAL_PAYOUT_AMOUNT", defaults.withdrawal_payout_amount
    )
    if withdrawal_payout_amount < 1:
        raise ValueError("WITHDRAWAL_PAYOUT_AMOUNT must be at least 1.")

    rules = EconomyRules.for_variant(
        variant,
        house_account_name=env.get("HOUSE_ACCOUNT_NAME", defaults.house_account_name),
        withdrawal_threshold=withdrawal_threshold,
        withdrawal_payout_amount=withdrawal_payout_amount,
        wager_commission_rate=_get_decimal(
            env, "WAGER_COMMISSION_RATE", defaults.wager_commission_rate
        ),
    )

    db_params = {
        "host": env.get("POSTGRES_HOST", "localhost"),
        "port": env.get("POSTGRES_PORT", "5432"),
        "dbname": env.get("POSTGRES_DB", "ledger"),
        "user": env.get("POSTGRES_USER", "ledger"),
        "password": env.get("POSTGRES_PASSWORD", ""),
    }

    max_retries = _get_int(env, "LEDGER_MAX_RETRIES", 5)
    if max_retries < 1:
        raise ValueError("LEDGER_MAX_RETRIES must be at least 1.")

    return LedgerSettings(
        db_backend=backend,
        db_path=env.get("DB_PATH", "ledger.db"),
        db_params=db_params,
        max_retries=max_retries,
        log_level=env.get("LOG_LEVEL", "INFO"),
        rules=rules,
    )


def build_store(settings: LedgerSettings) -> LedgerStore:
    """Instantiate the storage backend named by `settings.db_backend`."""

    if settings.db_backend == "postgres":
        # Imported lazily so SQLite deployments do not need a Postgres driver.
        from infrastructure.db.ledger_store_postgres import PostgresLedgerStore

        return PostgresLedgerStore(dict(settings.db_params), max_retries=settings.max_retries)

    if settings.db_backend == "memory":
        from infrastructure.memory.ledger_store_memory import InMemoryLedgerStore

        return InMemoryLedgerStore()

    from infrastructure.db.ledger_store_sqlite import SqliteLedgerStore

    return SqliteLedgerStore(settings.db_path, max_retries=settings.max_retries)
