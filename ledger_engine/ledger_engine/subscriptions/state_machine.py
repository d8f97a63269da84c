"""Organization subscription lifecycle.

Statuses move along::

    none -> trialing -> active -> past_due -> active
                                  past_due -> canceled | unpaid
    unpaid -> active | canceled

``canceled`` is terminal for a subscription instance.  A renewal arrives
with a new provider subscription id and starts a fresh instance at
``none``.  Every applied change appends an audit event; the audit trail is
never read back by the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from ledger_engine.errors import InvalidTransitionError
from ledger_engine.subscriptions.models import SubscriptionAuditEvent, SubscriptionRecord, SubscriptionStatus

if TYPE_CHECKING:
    from ledger_engine.ledger.store import LedgerUnit

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.NONE: frozenset({S.NONE, S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.TRIALING: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED, S.UNPAID}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED, S.UNPAID}),
    S.PAST_DUE: frozenset({S.PAST_DUE, S.ACTIVE, S.CANCELED, S.UNPAID}),
    S.UNPAID: frozenset({S.UNPAID, S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset({S.CANCELED}),
}

# Provider (Stripe) subscription statuses mapped onto the lifecycle.
_PROVIDER_STATUS: dict[str, SubscriptionStatus] = {
    "incomplete": S.NONE,
    "incomplete_expired": S.CANCELED,
    "trialing": S.TRIALING,
    "active": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "paused": S.PAST_DUE,
    "canceled": S.CANCELED,
    "unpaid": S.UNPAID,
}


def map_provider_status(provider_status: str) -> SubscriptionStatus:
    """Translate a provider status string; unknown values raise ``ValueError``."""
    try:
        return _PROVIDER_STATUS[provider_status]
    except KeyError:
        raise ValueError(f"Unknown provider subscription status: {provider_status!r}") from None


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class SubscriptionChange:
    """Desired state reported by the provider for one subscription."""

    organization_id: str
    provider_subscription_id: str
    status: SubscriptionStatus
    plan_id: str | None = None
    seat_count: int | None = None
    credits_per_seat: int | None = None
    provider_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool | None = None


@dataclass(frozen=True, slots=True)
class TransitionResult:
    record: SubscriptionRecord
    previous_status: SubscriptionStatus
    created: bool
    changed: bool

    @property
    def new_status(self) -> SubscriptionStatus:
        return self.record.status


class SubscriptionStateMachine:
    """Applies provider-reported subscription changes inside a ledger unit."""

    async def apply(
        self,
        unit: LedgerUnit,
        change: SubscriptionChange,
        *,
        provider_event_id: str | None = None,
    ) -> TransitionResult:
        """Move the subscription toward *change*, creating the instance if new.

        Fields left as ``None`` in *change* keep their stored values.

        Raises
        ------
        InvalidTransitionError
            The stored status cannot move to ``change.status``, including
            any attempt to leave ``canceled``.
        """
        current = await unit.get_subscription(change.provider_subscription_id)
        created = current is None
        if current is None:
            current = SubscriptionRecord(
                organization_id=change.organization_id,
                provider_subscription_id=change.provider_subscription_id,
            )

        previous = replace(current)
        if not can_transition(current.status, change.status):
            raise InvalidTransitionError(change.provider_subscription_id, current.status.value, change.status.value)

        updated = replace(
            current,
            status=change.status,
            plan_id=change.plan_id if change.plan_id is not None else current.plan_id,
            seat_count=change.seat_count if change.seat_count is not None else current.seat_count,
            credits_per_seat=(
                change.credits_per_seat if change.credits_per_seat is not None else current.credits_per_seat
            ),
            provider_customer_id=change.provider_customer_id or current.provider_customer_id,
            current_period_start=change.current_period_start or current.current_period_start,
            current_period_end=change.current_period_end or current.current_period_end,
            trial_end=change.trial_end or current.trial_end,
            cancel_at_period_end=(
                change.cancel_at_period_end
                if change.cancel_at_period_end is not None
                else current.cancel_at_period_end
            ),
        )

        changed = created or (
            updated.status,
            updated.plan_id,
            updated.seat_count,
        ) != (previous.status, previous.plan_id, previous.seat_count)

        saved = await unit.save_subscription(updated)
        if changed:
            await unit.append_subscription_event(
                SubscriptionAuditEvent(
                    organization_id=saved.organization_id,
                    provider_subscription_id=saved.provider_subscription_id,
                    previous_status=previous.status,
                    new_status=saved.status,
                    previous_plan_id=previous.plan_id,
                    new_plan_id=saved.plan_id,
                    previous_seat_count=None if created else previous.seat_count,
                    new_seat_count=saved.seat_count,
                    provider_event_id=provider_event_id,
                )
            )
            logger.info(
                "Subscription %s for %s: %s -> %s (plan=%s seats=%d)",
                saved.provider_subscription_id,
                saved.organization_id,
                previous.status.value,
                saved.status.value,
                saved.plan_id,
                saved.seat_count,
            )
        return TransitionResult(record=saved, previous_status=previous.status, created=created, changed=changed)

    async def transition(
        self,
        unit: LedgerUnit,
        provider_subscription_id: str,
        target: SubscriptionStatus,
        *,
        provider_event_id: str | None = None,
    ) -> TransitionResult | None:
        """Move an existing instance to *target*; ``None`` if it is unknown."""
        current = await unit.get_subscription(provider_subscription_id)
        if current is None:
            return None
        return await self.apply(
            unit,
            SubscriptionChange(
                organization_id=current.organization_id,
                provider_subscription_id=provider_subscription_id,
                status=target,
            ),
            provider_event_id=provider_event_id,
        )
