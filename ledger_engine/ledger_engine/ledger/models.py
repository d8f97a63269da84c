"""Domain records for accounts and the append-only transaction log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AccountKind(str, Enum):
    PERSONAL = "personal"
    ORGANIZATION = "organization"


class TransactionType(str, Enum):
    """Every kind of economic event the ledger records."""

    USAGE = "usage"
    PURCHASE = "purchase"
    SUBSCRIPTION_CREDIT = "subscription_credit"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    REFUND = "refund"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"


# Types accepted by CreditLedger.credit(); the rest have dedicated entry points.
CREDIT_TYPES = frozenset(
    {
        TransactionType.PURCHASE,
        TransactionType.SUBSCRIPTION_CREDIT,
        TransactionType.ADMIN_CREDIT,
    }
)


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """Point-in-time view of an account row.

    ``version`` increments on every balance change and backs optimistic
    compare-and-swap updates.
    """

    account_id: str
    kind: AccountKind
    balance: int
    purchased_credits: int = 0
    owner_id: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def subscription_credits(self) -> int:
        """Portion of the balance that did not come from direct purchase."""
        return self.balance - self.purchased_credits


@dataclass(frozen=True, slots=True)
class NewTransaction:
    """A transaction about to be appended."""

    account_id: str
    type: TransactionType
    amount: int
    balance_after: int
    description: str = ""
    external_reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LedgerTransaction:
    """An immutable row of the transaction log."""

    transaction_id: str
    account_id: str
    type: TransactionType
    amount: int
    balance_after: int
    description: str
    external_reference: str | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Receipt:
    """Result of a ledger mutation.

    ``duplicate`` is ``True`` when the call matched an already-recorded
    reference and returned the original transaction instead of applying a
    new one.
    """

    transaction_id: str
    account_id: str
    type: TransactionType
    amount: int
    balance_after: int
    external_reference: str | None
    created_at: datetime
    duplicate: bool = False

    @classmethod
    def from_transaction(cls, txn: LedgerTransaction, *, duplicate: bool = False) -> Receipt:
        return cls(
            transaction_id=txn.transaction_id,
            account_id=txn.account_id,
            type=txn.type,
            amount=txn.amount,
            balance_after=txn.balance_after,
            external_reference=txn.external_reference,
            created_at=txn.created_at,
            duplicate=duplicate,
        )


@dataclass(frozen=True, slots=True)
class TransferReceipt:
    transfer_id: str
    from_receipt: Receipt
    to_receipt: Receipt

    @property
    def duplicate(self) -> bool:
        return self.from_receipt.duplicate


@dataclass(frozen=True, slots=True)
class LedgerReport:
    """Result of recomputing ``balance == sum(transactions)``."""

    account_id: str
    balance: int
    purchased_credits: int
    transactions_total: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.transactions_total and 0 <= self.purchased_credits <= self.balance
