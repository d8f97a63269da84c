"""In-memory :class:`LedgerStore` implementation.

Units are fully serialized through a single ``asyncio.Lock`` and roll back
by restoring a copy of the state taken when the unit opened.  That gives
the same atomicity and per-account linearizability as the SQL store, so
the ledger and reconciler can be exercised without a database.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from ledger_engine.errors import (
    AccountExistsError,
    AccountNotFoundError,
    ConcurrentUpdateError,
    DuplicateExternalRefError,
    InsufficientBalanceError,
)
from ledger_engine.ledger.models import AccountKind, AccountSnapshot, LedgerTransaction, NewTransaction
from ledger_engine.subscriptions.models import SubscriptionAuditEvent, SubscriptionRecord


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _State:
    accounts: dict[str, AccountSnapshot] = field(default_factory=dict)
    transactions: list[LedgerTransaction] = field(default_factory=list)
    webhook_events: dict[str, dict[str, Any]] = field(default_factory=dict)
    subscriptions: dict[str, SubscriptionRecord] = field(default_factory=dict)
    subscription_events: list[SubscriptionAuditEvent] = field(default_factory=list)
    next_subscription_id: int = 1

    def copy(self) -> _State:
        return _State(
            accounts=dict(self.accounts),
            transactions=list(self.transactions),
            webhook_events={k: dict(v) for k, v in self.webhook_events.items()},
            subscriptions={k: replace(v) for k, v in self.subscriptions.items()},
            subscription_events=list(self.subscription_events),
            next_subscription_id=self.next_subscription_id,
        )


def _clamp_purchased(purchased: int, balance: int) -> int:
    return max(0, min(purchased, balance))


class InMemoryLedgerUnit:
    """A unit of work over :class:`_State`; see :class:`LedgerUnit`."""

    def __init__(self, state: _State) -> None:
        self._state = state

    # -- accounts -----------------------------------------------------------

    async def create_account(
        self,
        account_id: str,
        kind: AccountKind,
        *,
        owner_id: str | None = None,
    ) -> AccountSnapshot:
        if account_id in self._state.accounts:
            raise AccountExistsError(account_id)
        account = AccountSnapshot(account_id=account_id, kind=kind, balance=0, owner_id=owner_id)
        self._state.accounts[account_id] = account
        return account

    async def get_account(self, account_id: str, *, for_update: bool = False) -> AccountSnapshot | None:
        return self._state.accounts.get(account_id)

    async def list_accounts(self) -> list[AccountSnapshot]:
        return sorted(self._state.accounts.values(), key=lambda a: a.account_id)

    async def atomic_adjust(
        self,
        account_id: str,
        delta: int,
        *,
        min_balance_after: int = 0,
        purchased_delta: int = 0,
        expected_version: int | None = None,
    ) -> AccountSnapshot:
        account = self._state.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if expected_version is not None and account.version != expected_version:
            raise ConcurrentUpdateError(f"Account '{account_id}' changed concurrently")
        new_balance = account.balance + delta
        if new_balance < min_balance_after:
            raise InsufficientBalanceError(account_id, -delta, account.balance - min_balance_after)

        updated = replace(
            account,
            balance=new_balance,
            purchased_credits=_clamp_purchased(account.purchased_credits + purchased_delta, new_balance),
            version=account.version + 1,
            updated_at=_utcnow(),
        )
        self._state.accounts[account_id] = updated
        return updated

    # -- transaction log ----------------------------------------------------

    async def append_transaction(self, entry: NewTransaction) -> LedgerTransaction:
        if entry.external_reference is not None:
            existing = await self.lookup_transaction_by_external_ref(
                entry.external_reference, account_id=entry.account_id
            )
            if existing is not None:
                raise DuplicateExternalRefError(entry.account_id, entry.external_reference)
        txn = LedgerTransaction(
            transaction_id=f"txn-{uuid.uuid4().hex}",
            account_id=entry.account_id,
            type=entry.type,
            amount=entry.amount,
            balance_after=entry.balance_after,
            description=entry.description,
            external_reference=entry.external_reference,
            metadata=dict(entry.metadata),
            created_at=_utcnow(),
        )
        self._state.transactions.append(txn)
        return txn

    async def lookup_transaction_by_external_ref(
        self,
        external_reference: str,
        *,
        account_id: str | None = None,
    ) -> LedgerTransaction | None:
        for txn in self._state.transactions:
            if txn.external_reference != external_reference:
                continue
            if account_id is None or txn.account_id == account_id:
                return txn
        return None

    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerTransaction]:
        rows = [t for t in reversed(self._state.transactions) if t.account_id == account_id]
        return rows[offset : offset + limit]

    async def summarize_transactions(self, account_id: str) -> tuple[int, int]:
        amounts = [t.amount for t in self._state.transactions if t.account_id == account_id]
        return sum(amounts), len(amounts)

    # -- webhook dedup ------------------------------------------------------

    async def record_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        *,
        outcome: str = "processing",
        detail: str | None = None,
    ) -> bool:
        if provider_event_id in self._state.webhook_events:
            return False
        self._state.webhook_events[provider_event_id] = {
            "provider_event_id": provider_event_id,
            "event_type": event_type,
            "outcome": outcome,
            "detail": detail,
            "processed_at": _utcnow(),
        }
        return True

    async def set_webhook_outcome(self, provider_event_id: str, outcome: str, detail: str | None = None) -> None:
        row = self._state.webhook_events[provider_event_id]
        row["outcome"] = outcome
        row["detail"] = detail

    async def get_webhook_event(self, provider_event_id: str) -> dict[str, Any] | None:
        row = self._state.webhook_events.get(provider_event_id)
        return dict(row) if row is not None else None

    # -- subscriptions ------------------------------------------------------

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionRecord | None:
        record = self._state.subscriptions.get(provider_subscription_id)
        return replace(record) if record is not None else None

    async def get_current_subscription(self, organization_id: str) -> SubscriptionRecord | None:
        records = [r for r in self._state.subscriptions.values() if r.organization_id == organization_id]
        if not records:
            return None
        latest = max(records, key=lambda r: r.record_id or 0)
        return replace(latest)

    async def save_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = replace(record, updated_at=_utcnow())
        if stored.record_id is None:
            stored.record_id = self._state.next_subscription_id
            self._state.next_subscription_id += 1
        self._state.subscriptions[stored.provider_subscription_id] = stored
        return replace(stored)

    async def append_subscription_event(self, event: SubscriptionAuditEvent) -> None:
        self._state.subscription_events.append(event)

    async def list_subscription_events(self, organization_id: str) -> list[SubscriptionAuditEvent]:
        return [e for e in self._state.subscription_events if e.organization_id == organization_id]


class InMemoryLedgerStore:
    """Process-local store; every unit runs under one lock."""

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def atomic(self) -> AsyncGenerator[InMemoryLedgerUnit, None]:
        async with self._lock:
            saved = self._state.copy()
            try:
                yield InMemoryLedgerUnit(self._state)
            except BaseException:
                self._state.__dict__.update(saved.__dict__)
                raise
