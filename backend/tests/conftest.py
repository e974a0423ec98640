import os

os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("PAYOUT_WEBHOOK_SECRET", "test-payout-secret")
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy import event

from payshare.database import DatabaseHelper
from payshare.ledger import MemoryLedgerStore, SqlLedgerStore

from tests.helpers import EARNINGS


def sqlite_helper(path) -> DatabaseHelper:
    db = DatabaseHelper(f"sqlite+aiosqlite:///{path}")

    # SQLite leaves foreign keys off unless asked, per connection
    @event.listens_for(db.engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return db


@pytest.fixture(params=["memory", "sql"])
async def ledger(request, tmp_path):
    if request.param == "memory":
        yield MemoryLedgerStore(download_earnings=EARNINGS)
        return

    db = sqlite_helper(tmp_path / "ledger.db")
    await db.create_all()
    store = SqlLedgerStore(db, download_earnings=EARNINGS)
    yield store
    await store.close()


@pytest.fixture
async def sql_ledger(tmp_path):
    db = sqlite_helper(tmp_path / "ledger.db")
    await db.create_all()
    store = SqlLedgerStore(db, download_earnings=EARNINGS)
    yield store
    await store.close()
