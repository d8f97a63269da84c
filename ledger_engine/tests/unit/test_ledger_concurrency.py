"""Concurrency tests: interleaved debits, credits and transfers.

The in-memory store serializes units the same way a database serializes
writers on one account row, so interleavings produced by ``asyncio.gather``
exercise the same guarantees: no lost update, no overdraft, no double
application of one reference.  The contended debit case also runs against
the SQL store on a SQLite file, where the conditional balance ``UPDATE``
and the database write lock provide the serialization.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from ledger_engine.errors import InsufficientBalanceError
from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.models import AccountKind
from ledger_engine.ledger.sql_store import SqlLedgerStore
from ledger_engine.state.database import get_engine
from ledger_engine.state.sqlite_adapter import create_local_tables

EUR = 100_000


@pytest_asyncio.fixture
async def file_ledger(tmp_path):
    """Ledger over the SQL store on a SQLite file shared by many connections."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_local_tables(engine)
    yield CreditLedger(SqlLedgerStore(engine), timeout_seconds=30.0)
    await engine.dispose()


async def _contended_debits(ledger: CreditLedger) -> None:
    """Balance 1.00 and ten concurrent 0.30 debits: exactly three succeed."""
    await ledger.open_account("user-1", initial_credits=EUR)

    results = await asyncio.gather(
        *(ledger.debit("user-1", 30_000, usage_ref=f"turn-{i}") for i in range(10)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, InsufficientBalanceError)]
    assert len(succeeded) == 3
    assert len(refused) == 7
    account = await ledger.get_account("user-1")
    assert account.balance == 10_000
    report = await ledger.verify("user-1")
    assert report.consistent
    assert report.transaction_count == 4


class TestConcurrentDebits:
    @pytest.mark.asyncio
    async def test_no_overdraft_under_contention(self, memory_ledger):
        await _contended_debits(memory_ledger)

    @pytest.mark.asyncio
    async def test_no_overdraft_under_contention_on_sqlite_file(self, file_ledger):
        await _contended_debits(file_ledger)

    @pytest.mark.asyncio
    async def test_same_reference_applied_once(self, memory_ledger):
        await memory_ledger.open_account("user-1")

        receipts = await asyncio.gather(
            *(memory_ledger.credit("user-1", EUR, external_ref="pi_123") for _ in range(5))
        )

        assert sum(1 for r in receipts if not r.duplicate) == 1
        assert (await memory_ledger.get_account("user-1")).balance == EUR


class TestConcurrentTransfers:
    @pytest.mark.asyncio
    async def test_opposing_transfers_conserve_total(self, memory_ledger):
        await memory_ledger.open_account("org-1", AccountKind.ORGANIZATION, initial_credits=10 * EUR)
        await memory_ledger.open_account("child-1", initial_credits=10 * EUR)

        await asyncio.gather(
            *(memory_ledger.transfer("org-1", "child-1", EUR) for _ in range(5)),
            *(memory_ledger.transfer("child-1", "org-1", EUR) for _ in range(3)),
        )

        org = await memory_ledger.get_account("org-1")
        child = await memory_ledger.get_account("child-1")
        assert org.balance == 8 * EUR
        assert child.balance == 12 * EUR
        assert org.balance + child.balance == 20 * EUR

    @pytest.mark.asyncio
    async def test_retried_transfer_id_applies_once(self, memory_ledger):
        await memory_ledger.open_account("org-1", initial_credits=10 * EUR)
        await memory_ledger.open_account("child-1")

        await asyncio.gather(
            *(memory_ledger.transfer("org-1", "child-1", EUR, transfer_id="t-1") for _ in range(4))
        )

        assert (await memory_ledger.get_account("child-1")).balance == EUR
