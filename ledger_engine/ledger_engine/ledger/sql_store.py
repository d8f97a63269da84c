"""SQLAlchemy-backed :class:`LedgerStore`.

Each unit of work is one ``AsyncSession`` transaction.  Balance changes go
through :meth:`AccountRepository.adjust`, a single conditional
``UPDATE ... RETURNING`` that is linearizable per account on both
PostgreSQL (row lock taken by the update) and SQLite (database write
lock).  Driver-level connection failures are translated into
:class:`StoreUnavailableError` because the commit outcome is unknown.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_engine.errors import (
    AccountExistsError,
    AccountNotFoundError,
    ConcurrentUpdateError,
    DuplicateExternalRefError,
    InsufficientBalanceError,
    StoreUnavailableError,
)
from ledger_engine.ledger.models import (
    AccountKind,
    AccountSnapshot,
    LedgerTransaction,
    NewTransaction,
    TransactionType,
)
from ledger_engine.state.database import get_session_factory
from ledger_engine.state.repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
    WebhookEventRepository,
)
from ledger_engine.state.tables import SubscriptionEventTable, SubscriptionTable, TransactionTable
from ledger_engine.subscriptions.models import SubscriptionAuditEvent, SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def _account_from_row(row: Any) -> AccountSnapshot:
    return AccountSnapshot(
        account_id=row.account_id,
        kind=AccountKind(row.kind),
        balance=row.balance,
        purchased_credits=row.purchased_credits,
        owner_id=row.owner_id,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _transaction_from_row(row: TransactionTable) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=row.transaction_id,
        account_id=row.account_id,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_after=row.balance_after,
        description=row.description,
        external_reference=row.external_reference,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def _subscription_from_row(row: SubscriptionTable) -> SubscriptionRecord:
    return SubscriptionRecord(
        organization_id=row.organization_id,
        provider_subscription_id=row.provider_subscription_id,
        status=SubscriptionStatus(row.status),
        plan_id=row.plan_id,
        seat_count=row.seat_count,
        credits_per_seat=row.credits_per_seat,
        provider_customer_id=row.provider_customer_id,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
        cancel_at_period_end=row.cancel_at_period_end,
        record_id=row.id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _audit_from_row(row: SubscriptionEventTable) -> SubscriptionAuditEvent:
    return SubscriptionAuditEvent(
        organization_id=row.organization_id,
        provider_subscription_id=row.provider_subscription_id,
        previous_status=SubscriptionStatus(row.previous_status),
        new_status=SubscriptionStatus(row.new_status),
        previous_plan_id=row.previous_plan_id,
        new_plan_id=row.new_plan_id,
        previous_seat_count=row.previous_seat_count,
        new_seat_count=row.new_seat_count,
        provider_event_id=row.provider_event_id,
        created_at=row.created_at,
    )


class SqlLedgerUnit:
    """A :class:`LedgerUnit` bound to one open session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._accounts = AccountRepository(session)
        self._transactions = TransactionRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._webhooks = WebhookEventRepository(session)

    # -- accounts -----------------------------------------------------------

    async def create_account(
        self,
        account_id: str,
        kind: AccountKind,
        *,
        owner_id: str | None = None,
    ) -> AccountSnapshot:
        if await self._accounts.get(account_id) is not None:
            raise AccountExistsError(account_id)
        try:
            row = await self._accounts.create(account_id, kind.value, owner_id)
        except IntegrityError as exc:
            raise AccountExistsError(account_id) from exc
        return _account_from_row(row)

    async def get_account(self, account_id: str, *, for_update: bool = False) -> AccountSnapshot | None:
        row = await self._accounts.get(account_id, for_update=for_update)
        return _account_from_row(row) if row is not None else None

    async def list_accounts(self) -> list[AccountSnapshot]:
        return [_account_from_row(row) for row in await self._accounts.list_all()]

    async def atomic_adjust(
        self,
        account_id: str,
        delta: int,
        *,
        min_balance_after: int = 0,
        purchased_delta: int = 0,
        expected_version: int | None = None,
    ) -> AccountSnapshot:
        row = await self._accounts.adjust(
            account_id,
            delta,
            min_balance_after=min_balance_after,
            purchased_delta=purchased_delta,
            expected_version=expected_version,
        )
        if row is not None:
            return _account_from_row(row)

        current = await self._accounts.get(account_id)
        if current is None:
            raise AccountNotFoundError(account_id)
        if expected_version is not None and current.version != expected_version:
            raise ConcurrentUpdateError(f"Account '{account_id}' changed concurrently")
        raise InsufficientBalanceError(account_id, -delta, current.balance - min_balance_after)

    # -- transaction log ----------------------------------------------------

    async def append_transaction(self, entry: NewTransaction) -> LedgerTransaction:
        try:
            row = await self._transactions.append(
                transaction_id=f"txn-{uuid.uuid4().hex}",
                account_id=entry.account_id,
                txn_type=entry.type.value,
                amount=entry.amount,
                balance_after=entry.balance_after,
                description=entry.description,
                external_reference=entry.external_reference,
                metadata=entry.metadata,
            )
        except IntegrityError as exc:
            if entry.external_reference is None:
                raise
            raise DuplicateExternalRefError(entry.account_id, entry.external_reference) from exc
        return _transaction_from_row(row)

    async def lookup_transaction_by_external_ref(
        self,
        external_reference: str,
        *,
        account_id: str | None = None,
    ) -> LedgerTransaction | None:
        row = await self._transactions.get_by_external_ref(external_reference, account_id)
        return _transaction_from_row(row) if row is not None else None

    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerTransaction]:
        rows = await self._transactions.list_for_account(account_id, limit=limit, offset=offset)
        return [_transaction_from_row(row) for row in rows]

    async def summarize_transactions(self, account_id: str) -> tuple[int, int]:
        return await self._transactions.summarize(account_id)

    # -- webhook dedup ------------------------------------------------------

    async def record_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        *,
        outcome: str = "processing",
        detail: str | None = None,
    ) -> bool:
        return await self._webhooks.record(provider_event_id, event_type, outcome, detail)

    async def set_webhook_outcome(self, provider_event_id: str, outcome: str, detail: str | None = None) -> None:
        await self._webhooks.set_outcome(provider_event_id, outcome, detail)

    async def get_webhook_event(self, provider_event_id: str) -> dict[str, Any] | None:
        row = await self._webhooks.get(provider_event_id)
        if row is None:
            return None
        return {
            "provider_event_id": row.provider_event_id,
            "event_type": row.event_type,
            "outcome": row.outcome,
            "detail": row.detail,
            "processed_at": row.processed_at,
        }

    # -- subscriptions ------------------------------------------------------

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionRecord | None:
        row = await self._subscriptions.get_by_provider_id(provider_subscription_id)
        return _subscription_from_row(row) if row is not None else None

    async def get_current_subscription(self, organization_id: str) -> SubscriptionRecord | None:
        row = await self._subscriptions.get_current(organization_id)
        return _subscription_from_row(row) if row is not None else None

    async def save_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        values = {
            "organization_id": record.organization_id,
            "provider_subscription_id": record.provider_subscription_id,
            "provider_customer_id": record.provider_customer_id,
            "status": record.status.value,
            "plan_id": record.plan_id,
            "seat_count": record.seat_count,
            "credits_per_seat": record.credits_per_seat,
            "current_period_start": record.current_period_start,
            "current_period_end": record.current_period_end,
            "trial_end": record.trial_end,
            "cancel_at_period_end": record.cancel_at_period_end,
        }
        row = await self._subscriptions.save(values, record_id=record.record_id)
        return _subscription_from_row(row)

    async def append_subscription_event(self, event: SubscriptionAuditEvent) -> None:
        await self._subscriptions.append_event(
            {
                "organization_id": event.organization_id,
                "provider_subscription_id": event.provider_subscription_id,
                "provider_event_id": event.provider_event_id,
                "previous_status": event.previous_status.value,
                "new_status": event.new_status.value,
                "previous_plan_id": event.previous_plan_id,
                "new_plan_id": event.new_plan_id,
                "previous_seat_count": event.previous_seat_count,
                "new_seat_count": event.new_seat_count,
                "created_at": event.created_at,
            }
        )

    async def list_subscription_events(self, organization_id: str) -> list[SubscriptionAuditEvent]:
        return [_audit_from_row(row) for row in await self._subscriptions.list_events(organization_id)]


class SqlLedgerStore:
    """:class:`LedgerStore` over an async SQLAlchemy engine.

    Parameters
    ----------
    engine:
        Engine from :func:`ledger_engine.state.database.get_engine`.
    session_factory:
        Optional explicit factory (tests share one in-memory connection).
    """

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        if session_factory is None:
            if engine is None:
                raise ValueError("SqlLedgerStore needs an engine or a session factory")
            session_factory = get_session_factory(engine)
        self._session_factory = session_factory

    @asynccontextmanager
    async def atomic(self) -> AsyncGenerator[SqlLedgerUnit, None]:
        session = self._session_factory()
        try:
            yield SqlLedgerUnit(session)
            await session.commit()
        except Exception as exc:
            await self._rollback(session)
            if _is_transient(exc):
                raise StoreUnavailableError(f"Ledger store unavailable: {exc}") from exc
            raise
        finally:
            await session.close()

    @staticmethod
    async def _rollback(session: AsyncSession) -> None:
        try:
            await session.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback failed; connection will be discarded", exc_info=True)
