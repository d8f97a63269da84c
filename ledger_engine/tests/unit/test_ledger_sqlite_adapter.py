"""Tests for the SQLite adapter and engine dispatch."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect

from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.sql_store import SqlLedgerStore
from ledger_engine.state.database import get_engine, get_session_factory, session_scope
from ledger_engine.state.repository import AccountRepository
from ledger_engine.state.sqlite_adapter import create_local_tables, get_local_engine

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    """Verify SQLite engine creation."""

    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "ledger.db"
        get_local_engine(db_path)
        assert db_path.parent.exists()

    def test_get_engine_dispatches_sqlite_urls(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
        assert engine.dialect.name == "sqlite"
        assert "ledger.db" in str(engine.url)

    def test_session_factory_is_cached(self) -> None:
        engine = get_local_engine(":memory:")
        assert get_session_factory(engine) is get_session_factory(engine)


# ---------------------------------------------------------------------------
# Table creation and a ledger round trip on a file database
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    @pytest.mark.asyncio
    async def test_creates_all_tables(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "ledger.db")
        await create_local_tables(engine)

        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        await engine.dispose()

        assert {
            "accounts",
            "credit_transactions",
            "pricing_models",
            "subscriptions",
            "organization_subscription_events",
            "webhook_events",
        } <= names

    @pytest.mark.asyncio
    async def test_idempotent(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "ledger.db")
        await create_local_tables(engine)
        await create_local_tables(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_ledger_persists_across_engines(self, tmp_path: Path) -> None:
        db_path = tmp_path / "ledger.db"
        engine = get_local_engine(db_path)
        await create_local_tables(engine)
        ledger = CreditLedger(SqlLedgerStore(engine))
        await ledger.open_account("user-1", initial_credits=100_000)
        await ledger.debit("user-1", 60_000, usage_ref="turn-1")
        await engine.dispose()

        reopened = get_local_engine(db_path)
        async with session_scope(reopened) as session:
            row = await AccountRepository(session).get("user-1")
        await reopened.dispose()

        assert row.balance == 40_000
