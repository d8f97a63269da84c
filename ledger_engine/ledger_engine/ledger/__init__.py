"""Account balances and the append-only credit transaction log."""

from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.memory_store import InMemoryLedgerStore
from ledger_engine.ledger.models import (
    AccountKind,
    AccountSnapshot,
    LedgerReport,
    LedgerTransaction,
    Receipt,
    TransactionType,
    TransferReceipt,
)
from ledger_engine.ledger.sql_store import SqlLedgerStore
from ledger_engine.ledger.store import LedgerStore, LedgerUnit

__all__ = [
    "AccountKind",
    "AccountSnapshot",
    "CreditLedger",
    "InMemoryLedgerStore",
    "LedgerReport",
    "LedgerStore",
    "LedgerTransaction",
    "LedgerUnit",
    "Receipt",
    "SqlLedgerStore",
    "TransactionType",
    "TransferReceipt",
]
