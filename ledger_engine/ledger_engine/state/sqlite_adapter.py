"""Single-file ledger database for ``ledgerctl`` and the test suite.

The tables are the ones :mod:`ledger_engine.state.tables` declares for
PostgreSQL, so :class:`~ledger_engine.ledger.sql_store.SqlLedgerStore` runs
the same statements against either backend.  What changes under SQLite:

* ``SELECT ... FOR UPDATE`` is accepted but locks nothing; the database-wide
  write lock serializes balance updates instead, and ``busy_timeout`` makes a
  second writer wait for it rather than fail at once.
* Metadata columns are stored as JSON text.
* There are no migrations; :func:`create_local_tables` builds the schema.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

# Applied to every new DBAPI connection.
_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _apply_pragmas(dbapi_conn: object, _record: object) -> None:
    cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
    try:
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def _local_url(db_path: Path | str) -> str:
    if str(db_path) == _MEMORY:
        return f"sqlite+aiosqlite:///{_MEMORY}"
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{path}"


def get_local_engine(db_path: Path | str = ".ledger/ledger.db") -> AsyncEngine:
    """Open the ledger database file at *db_path*.

    Parameters
    ----------
    db_path:
        Database file; missing parent directories are created.  ``:memory:``
        gives a private database that disappears with the engine.

    Returns
    -------
    AsyncEngine
        An aiosqlite engine with the ledger pragmas installed.
    """
    url = _local_url(db_path)
    engine = create_async_engine(url, connect_args={"check_same_thread": False})
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("Opened local ledger database %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any ledger tables that do not exist yet.  Safe to repeat."""
    from ledger_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Ledger schema ready (%d tables)", len(Base.metadata.tables))
