"""Engines and sessions for the ledger database.

The URL scheme picks the backend: ``postgresql+asyncpg://`` gets a pooled
engine whose server-side timeouts bound how long a balance row lock can be
held; ``sqlite+aiosqlite://`` goes through
:mod:`ledger_engine.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

# One sessionmaker per engine; holding the engine here also keeps it alive.
_session_factories: dict[AsyncEngine, async_sessionmaker[AsyncSession]] = {}


def _sqlite_path(database_url: str) -> str:
    """Return the file path of a SQLite URL, or ``:memory:``."""
    _, _, path = database_url.partition(":///")
    return path or ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    *,
    lock_timeout_ms: int = 10_000,
    statement_timeout_ms: int = 30_000,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string.
    pool_size, max_overflow:
        Connection pool bounds for PostgreSQL.  Ignored for SQLite.
    lock_timeout_ms:
        How long a PostgreSQL session waits for a contended account row
        before the statement fails.
    statement_timeout_ms:
        Upper bound on any single PostgreSQL statement.
    """
    if database_url.startswith("sqlite"):
        from ledger_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "lock_timeout": str(lock_timeout_ms),
                "statement_timeout": str(statement_timeout_ms),
            }
        },
    )
    logger.info(
        "Created ledger engine pool_size=%d max_overflow=%d lock_timeout=%dms",
        pool_size,
        max_overflow,
        lock_timeout_ms,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory for *engine*."""
    factory = _session_factories.get(engine)
    if factory is None:
        factory = _session_factories[engine] = async_sessionmaker(engine, expire_on_commit=False)
    return factory


@asynccontextmanager
async def session_scope(engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error.

    Ledger mutations do not use this; they go through the units of
    :class:`ledger_engine.ledger.sql_store.SqlLedgerStore`.  It serves
    reference-data writes such as pricing loads.
    """
    async with get_session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
