from payshare.config import Settings
from payshare.database import DatabaseHelper
from payshare.ledger.base import LedgerStore
from payshare.ledger.errors import (
    DanglingReference,
    DuplicateKey,
    InsufficientBalance,
    ConstraintViolation,
    InvalidStateTransition,
    LedgerError,
    StorageUnavailable,
)
from payshare.ledger.memory import MemoryLedgerStore
from payshare.ledger.sql import SqlLedgerStore
from payshare.ledger.tokens import generate_share_token


def create_ledger_store(settings: Settings) -> LedgerStore:
    """Builds the ledger backend named by ``LEDGER_BACKEND``."""
    options = dict(
        download_earnings=settings.DOWNLOAD_EARNINGS,
        credit_anonymous_downloads=settings.CREDIT_ANONYMOUS_DOWNLOADS,
        share_token_length=settings.SHARE_TOKEN_LENGTH,
    )
    if settings.LEDGER_BACKEND == "memory":
        return MemoryLedgerStore(**options)
    if settings.LEDGER_BACKEND == "sql":
        db = DatabaseHelper(settings.DATABASE_URL, echo=settings.DB_ECHO)
        return SqlLedgerStore(db, **options)
    raise ValueError(f"Unknown ledger backend: {settings.LEDGER_BACKEND}")


__all__ = [
    "LedgerStore",
    "MemoryLedgerStore",
    "SqlLedgerStore",
    "create_ledger_store",
    "generate_share_token",
    "LedgerError",
    "DuplicateKey",
    "DanglingReference",
    "InvalidStateTransition",
    "StorageUnavailable",
    "InsufficientBalance",
    "ConstraintViolation",
]
