"""SQLAlchemy 2.0 ORM table definitions for the ledger state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` and the
repository layer.  Amounts are ``BigInteger`` minor units; prices are
exact ``Numeric`` decimals.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that stays aware on SQLite.

    SQLite stores datetimes without an offset; values read back are
    re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountTable(Base):
    """Balance-holding account, personal or organization.

    ``balance`` and ``purchased_credits`` are only ever written through the
    conditional update in ``AccountRepository.adjust``.
    """

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    purchased_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint(
            "purchased_credits >= 0 AND purchased_credits <= balance",
            name="ck_accounts_purchased_within_balance",
        ),
        CheckConstraint("kind IN ('personal','organization')", name="ck_accounts_kind"),
        Index("ix_accounts_owner", "owner_id"),
    )


# ---------------------------------------------------------------------------
# Transaction log
# ---------------------------------------------------------------------------


class TransactionTable(Base):
    """Append-only credit transaction log.

    The unique ``(account_id, external_reference)`` constraint is the
    idempotency guarantee for purchases, usage debits and transfers.
    NULL references never collide.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", _JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "external_reference", name="uq_credit_transactions_account_ref"),
        CheckConstraint(
            "type IN ('usage','purchase','subscription_credit','admin_credit','admin_debit',"
            "'refund','transfer_in','transfer_out')",
            name="ck_credit_transactions_type",
        ),
        Index("ix_credit_transactions_account_id", "account_id", "id"),
        Index("ix_credit_transactions_external_reference", "external_reference"),
    )


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class PricingModelTable(Base):
    """Per-model provider prices in currency units per million tokens."""

    __tablename__ = "pricing_models"

    model_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    input_price_per_million: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    output_price_per_million: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    markup_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(8, 4), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "input_price_per_million >= 0 AND output_price_per_million >= 0",
            name="ck_pricing_models_prices_non_negative",
        ),
        CheckConstraint(
            "markup_multiplier IS NULL OR markup_multiplier >= 1",
            name="ck_pricing_models_markup",
        ),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """One lifecycle instance of an organization subscription."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    provider_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    plan_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    seat_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    credits_per_seat: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('none','trialing','active','past_due','canceled','unpaid')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("seat_count >= 0", name="ck_subscriptions_seat_count"),
        Index("ix_subscriptions_organization", "organization_id", "id"),
    )


class SubscriptionEventTable(Base):
    """Append-only audit trail of subscription status and plan changes."""

    __tablename__ = "organization_subscription_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_status: Mapped[str] = mapped_column(String(32), nullable=False)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_plan_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    new_plan_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    previous_seat_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_seat_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_org_subscription_events_org", "organization_id", "id"),)


# ---------------------------------------------------------------------------
# Webhook dedup
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """One row per provider event id; the unique key is the dedup gate."""

    __tablename__ = "webhook_events"

    provider_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default="processing")
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('processing','processed','ignored','rejected')",
            name="ck_webhook_events_outcome",
        ),
    )
