"""Subscription records and their audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


@dataclass(slots=True)
class SubscriptionRecord:
    """One lifecycle instance of an organization's subscription.

    A renewal after cancellation is a new record with a new
    ``provider_subscription_id``; a canceled record is never reopened.
    ``credits_per_seat`` is set for plans that carry their own allotment
    (family plans carry ``creditsPerChild``); otherwise the per-plan
    configuration applies.
    """

    organization_id: str
    provider_subscription_id: str
    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan_id: str | None = None
    seat_count: int = 1
    credits_per_seat: int | None = None
    provider_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    record_id: int | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class SubscriptionAuditEvent:
    """Append-only record of one subscription change."""

    organization_id: str
    provider_subscription_id: str
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    previous_plan_id: str | None
    new_plan_id: str | None
    previous_seat_count: int | None
    new_seat_count: int | None
    provider_event_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
