"""Shared fixtures for ledger engine unit tests.

Ledger behaviour is exercised against both store implementations: the
in-memory store and the SQL store on an in-memory SQLite database.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.memory_store import InMemoryLedgerStore
from ledger_engine.ledger.sql_store import SqlLedgerStore
from ledger_engine.pricing.models import PricingModel
from ledger_engine.pricing.resolver import PricingResolver
from ledger_engine.state.tables import Base

EUR = 100_000


@pytest_asyncio.fixture
async def sql_engine():
    """Async engine over an in-memory SQLite database with all tables."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _):  # type: ignore[no-untyped-def]
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return async_sessionmaker(sql_engine, expire_on_commit=False)


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    """Each ledger test runs once per store implementation."""
    if request.param == "memory":
        return InMemoryLedgerStore()
    return SqlLedgerStore(session_factory=session_factory)


@pytest.fixture
def ledger(store) -> CreditLedger:
    return CreditLedger(store, timeout_seconds=5.0)


@pytest.fixture
def memory_ledger() -> CreditLedger:
    return CreditLedger(InMemoryLedgerStore(), timeout_seconds=5.0)


@pytest.fixture
def pricing_models() -> list[PricingModel]:
    return [
        PricingModel(
            model_id="gpt-4o-mini",
            provider="openai",
            input_price_per_million=Decimal("0.15"),
            output_price_per_million=Decimal("0.60"),
        ),
        PricingModel(
            model_id="claude-sonnet",
            provider="anthropic",
            input_price_per_million=Decimal("3.00"),
            output_price_per_million=Decimal("15.00"),
            markup_multiplier=Decimal("1.2"),
        ),
        PricingModel(
            model_id="retired-model",
            provider="openai",
            input_price_per_million=Decimal("1.00"),
            output_price_per_million=Decimal("1.00"),
            is_active=False,
        ),
    ]


@pytest.fixture
def resolver(pricing_models) -> PricingResolver:
    return PricingResolver(pricing_models, default_markup=Decimal("1.5"))
