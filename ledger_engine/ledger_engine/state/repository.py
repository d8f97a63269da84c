"""Table-level access for accounts, transactions, pricing, subscriptions and
webhook events.

A repository wraps the ``AsyncSession`` it is given and never commits: the
owning unit of work (:class:`~ledger_engine.ledger.sql_store.SqlLedgerStore`
or ``session_scope``) decides the transaction boundary.  Inserts flush
immediately so that server defaults and unique-index violations surface at
the call site.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.state.tables import (
    AccountTable,
    PricingModelTable,
    SubscriptionEventTable,
    SubscriptionTable,
    TransactionTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The conflict target is the unique index named by *index_elements*;
    ``result.rowcount`` is 0 when the row already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountRepository:
    """Account rows and the single conditional balance update."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, account_id: str, kind: str, owner_id: str | None = None) -> AccountTable:
        row = AccountTable(
            account_id=account_id,
            kind=kind,
            owner_id=owner_id,
            balance=0,
            purchased_credits=0,
            version=0,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, account_id: str, *, for_update: bool = False) -> AccountTable | None:
        """Fetch an account row, always re-reading column values.

        With *for_update* the row is locked until the transaction ends on
        PostgreSQL.  SQLite has no row locks; its database-level write lock
        serializes writers instead.
        """
        stmt = select(AccountTable).where(AccountTable.account_id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[AccountTable]:
        result = await self._session.execute(select(AccountTable).order_by(AccountTable.account_id))
        return result.scalars().all()

    async def adjust(
        self,
        account_id: str,
        delta: int,
        *,
        min_balance_after: int = 0,
        purchased_delta: int = 0,
        expected_version: int | None = None,
    ) -> Row[Any] | None:
        """Apply ``balance += delta`` in one conditional ``UPDATE ... RETURNING``.

        The floor check and the write happen in the same statement, so two
        concurrent callers can never both pass the check against a stale
        balance.  ``purchased_credits`` is clamped to ``[0, new balance]``.

        Returns
        -------
        The updated row, or ``None`` when no row matched (missing account,
        floor violated, or version mismatch).  The caller distinguishes.
        """
        new_balance = AccountTable.balance + delta
        new_purchased = AccountTable.purchased_credits + purchased_delta
        clamped_purchased = case(
            (new_purchased > new_balance, new_balance),
            (new_purchased < 0, 0),
            else_=new_purchased,
        )

        conditions = [
            AccountTable.account_id == account_id,
            new_balance >= min_balance_after,
        ]
        if expected_version is not None:
            conditions.append(AccountTable.version == expected_version)

        stmt = (
            update(AccountTable)
            .where(*conditions)
            .values(
                balance=new_balance,
                purchased_credits=clamped_purchased,
                version=AccountTable.version + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(
                AccountTable.account_id,
                AccountTable.kind,
                AccountTable.owner_id,
                AccountTable.balance,
                AccountTable.purchased_credits,
                AccountTable.version,
                AccountTable.created_at,
                AccountTable.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.first()


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionRepository:
    """Append-only access to the credit transaction log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        *,
        transaction_id: str,
        account_id: str,
        txn_type: str,
        amount: int,
        balance_after: int,
        description: str = "",
        external_reference: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionTable:
        """Insert a transaction row.

        Raises ``sqlalchemy.exc.IntegrityError`` when the
        ``(account_id, external_reference)`` pair is already present.
        """
        row = TransactionTable(
            transaction_id=transaction_id,
            account_id=account_id,
            type=txn_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            external_reference=external_reference,
            metadata_json=metadata or {},
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_external_ref(
        self,
        external_reference: str,
        account_id: str | None = None,
    ) -> TransactionTable | None:
        stmt = select(TransactionTable).where(TransactionTable.external_reference == external_reference)
        if account_id is not None:
            stmt = stmt.where(TransactionTable.account_id == account_id)
        stmt = stmt.order_by(TransactionTable.id).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_account(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[TransactionTable]:
        """Return transactions newest first."""
        stmt = (
            select(TransactionTable)
            .where(TransactionTable.account_id == account_id)
            .order_by(TransactionTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def summarize(self, account_id: str) -> tuple[int, int]:
        """Return ``(sum(amount), count(*))`` for the account."""
        stmt = select(
            func.coalesce(func.sum(TransactionTable.amount), 0),
            func.count(TransactionTable.id),
        ).where(TransactionTable.account_id == account_id)
        result = await self._session.execute(stmt)
        total, count = result.one()
        return int(total), int(count)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class PricingRepository:
    """Read-mostly pricing table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_models(self, *, active_only: bool = True) -> Sequence[PricingModelTable]:
        stmt = select(PricingModelTable).order_by(PricingModelTable.provider, PricingModelTable.model_id)
        if active_only:
            stmt = stmt.where(PricingModelTable.is_active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def upsert(
        self,
        model_id: str,
        provider: str,
        input_price_per_million: Decimal,
        output_price_per_million: Decimal,
        markup_multiplier: Decimal | None = None,
        is_active: bool = True,
    ) -> None:
        values = {
            "model_id": model_id,
            "provider": provider,
            "input_price_per_million": input_price_per_million,
            "output_price_per_million": output_price_per_million,
            "markup_multiplier": markup_multiplier,
            "is_active": is_active,
            "updated_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            PricingModelTable,
            values,
            index_elements=["model_id"],
            update_columns=[
                "provider",
                "input_price_per_million",
                "output_price_per_million",
                "markup_multiplier",
                "is_active",
                "updated_at",
            ],
        )
        await self._session.flush()

    async def deactivate(self, model_id: str) -> bool:
        stmt = (
            update(PricingModelTable)
            .where(PricingModelTable.model_id == model_id)
            .values(is_active=False, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Subscription instances and their append-only audit events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_provider_id(self, provider_subscription_id: str) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.provider_subscription_id == provider_subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current(self, organization_id: str) -> SubscriptionTable | None:
        """Return the most recently created instance for the organization."""
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.organization_id == organization_id)
            .order_by(SubscriptionTable.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def save(self, values: dict[str, Any], record_id: int | None = None) -> SubscriptionTable:
        row: SubscriptionTable | None = None
        if record_id is not None:
            row = await self._session.get(SubscriptionTable, record_id)
        if row is None:
            row = SubscriptionTable(**values)
            self._session.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
        await self._session.flush()
        return row

    async def append_event(self, values: dict[str, Any]) -> SubscriptionEventTable:
        row = SubscriptionEventTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_events(self, organization_id: str) -> Sequence[SubscriptionEventTable]:
        stmt = (
            select(SubscriptionEventTable)
            .where(SubscriptionEventTable.organization_id == organization_id)
            .order_by(SubscriptionEventTable.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()


# ---------------------------------------------------------------------------
# Webhook dedup
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Provider event dedup records.

    ``record`` performs an atomic insert-if-absent: under concurrent
    deliveries of the same event exactly one caller observes ``True``.
    On PostgreSQL the losing insert waits for the winner's transaction and
    then sees the conflict.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        provider_event_id: str,
        event_type: str,
        outcome: str = "processing",
        detail: str | None = None,
    ) -> bool:
        result = await _dialect_insert_nothing(
            self._session,
            WebhookEventTable,
            values={
                "provider_event_id": provider_event_id,
                "event_type": event_type,
                "outcome": outcome,
                "detail": detail,
                "processed_at": datetime.now(UTC),
            },
            index_elements=["provider_event_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def set_outcome(self, provider_event_id: str, outcome: str, detail: str | None = None) -> None:
        stmt = (
            update(WebhookEventTable)
            .where(WebhookEventTable.provider_event_id == provider_event_id)
            .values(outcome=outcome, detail=detail)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def get(self, provider_event_id: str) -> WebhookEventTable | None:
        return await self._session.get(WebhookEventTable, provider_event_id, populate_existing=True)
