from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Categories of ledger failures reported back to callers."""

    VALIDATION = "validation_error"
    PRECONDITION_FAILED = "precondition_failed"
    NOT_FOUND = "not_found"
    DUPLICATE_KEY = "duplicate_key"
    CONFLICT = "conflict"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class LedgerError(Exception):
    """
    Base class for every failure raised by the ledger.

    `reason` is a short machine-readable code (e.g. "insufficient_balance"),
    `message` is safe to show to the player.
    """

    kind: ErrorKind = ErrorKind.STORAGE_UNAVAILABLE

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class ValidationError(LedgerError):
    """Malformed input; the operation was not attempted."""

    kind = ErrorKind.VALIDATION


class PreconditionFailed(LedgerError):
    """The account state did not allow the operation at the time it was applied."""

    kind = ErrorKind.PRECONDITION_FAILED


class NotFound(LedgerError):
    kind = ErrorKind.NOT_FOUND


class DuplicateKey(LedgerError):
    kind = ErrorKind.DUPLICATE_KEY


class Conflict(LedgerError):
    """Retries were exhausted under contention. Safe to retry later."""

    kind = ErrorKind.CONFLICT


class StorageUnavailable(LedgerError):
    kind = ErrorKind.STORAGE_UNAVAILABLE
