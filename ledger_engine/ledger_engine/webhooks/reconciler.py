"""Payment-provider webhook reconciliation.

Each delivery goes through four steps:

1. **Verify** the signature.  A failure raises
   :class:`SignatureInvalidError` before anything is parsed or stored.
2. **Deduplicate** by inserting the provider event id into the dedup
   table.  The unique key makes concurrent deliveries of one event
   mutually exclusive; a delivery that finds the id already recorded
   returns ``duplicate`` with no side effects.
3. **Dispatch** the typed event to ledger and subscription operations.
4. **Record** the outcome on the dedup row.

Steps 2 to 4 share one store unit, so an event either leaves all of its
effects and its dedup row, or nothing.  Transient failures propagate
without a dedup row so that the provider's retry runs the whole dispatch
again.  Permanent failures (missing account, malformed metadata, an
impossible status change) roll the dispatch back, record the event as
``rejected`` in a fresh unit, and are acknowledged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ledger_engine.config import LedgerSettings
from ledger_engine.errors import (
    AccountNotFoundError,
    DuplicateExternalRefError,
    InvalidTransitionError,
    LedgerError,
    MalformedEventError,
    ReferencedEntityMissingError,
    SignatureInvalidError,
    StoreUnavailableError,
)
from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.models import Receipt, TransactionType
from ledger_engine.ledger.store import LedgerUnit
from ledger_engine.subscriptions.models import SubscriptionRecord, SubscriptionStatus
from ledger_engine.subscriptions.state_machine import (
    SubscriptionChange,
    SubscriptionStateMachine,
    map_provider_status,
)
from ledger_engine.webhooks.events import (
    MAX_EVENT_CREDITS,
    ChargeRefundedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    OrganizationPurchaseEvent,
    PersonalPurchaseEvent,
    ReconcilableEvent,
    SubscriptionCanceledEvent,
    SubscriptionChangedEvent,
    SubscriptionCheckoutEvent,
    UnhandledEvent,
    parse_event,
)
from ledger_engine.webhooks.signature import SignatureVerifier

logger = logging.getLogger(__name__)

_DETAIL_MAX_LENGTH = 500


class EventOutOfOrderError(LedgerError):
    """An event refers to a subscription the reconciler has not seen yet.

    Transient: the provider does not guarantee delivery order, so the
    event is left unrecorded and the provider's retry will find the
    subscription once its creation event has been processed.
    """


class ReconcileStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    event_id: str
    event_type: str
    status: ReconcileStatus
    detail: str | None = None
    receipts: tuple[Receipt, ...] = ()


@dataclass(frozen=True, slots=True)
class _Outcome:
    status: ReconcileStatus
    detail: str | None = None
    receipts: tuple[Receipt, ...] = ()


def _processed(*receipts: Receipt, detail: str | None = None) -> _Outcome:
    return _Outcome(ReconcileStatus.PROCESSED, detail, tuple(receipts))


def _ignored(reason: str) -> _Outcome:
    return _Outcome(ReconcileStatus.IGNORED, reason)


class WebhookReconciler:
    """Turns provider events into ledger and subscription changes.

    Parameters
    ----------
    ledger:
        The credit ledger; its store also holds the dedup records.
    verifier:
        Signature verifier used by :meth:`handle`.  ``None`` makes
        :meth:`handle` reject everything; :meth:`reconcile` still works
        for trusted replays.
    state_machine:
        Subscription lifecycle handler.
    plan_credits_per_seat:
        Per-seat allotment in minor units, keyed by plan id.
    default_credits_per_seat:
        Allotment for plans missing from *plan_credits_per_seat*.
    trial_credits_enabled:
        Grant one period's allotment when a subscription starts trialing.
    timeout_seconds:
        Upper bound for one reconciliation unit.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        *,
        verifier: SignatureVerifier | None = None,
        state_machine: SubscriptionStateMachine | None = None,
        plan_credits_per_seat: Mapping[str, int] | None = None,
        default_credits_per_seat: int = 0,
        trial_credits_enabled: bool = True,
        timeout_seconds: float | None = 10.0,
    ) -> None:
        self._ledger = ledger
        self._verifier = verifier
        self._state_machine = state_machine or SubscriptionStateMachine()
        self._plan_credits = dict(plan_credits_per_seat or {})
        self._default_credits_per_seat = default_credits_per_seat
        self._trial_credits_enabled = trial_credits_enabled
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(
        cls,
        ledger: CreditLedger,
        settings: LedgerSettings,
        verifier: SignatureVerifier | None = None,
    ) -> WebhookReconciler:
        return cls(
            ledger,
            verifier=verifier,
            plan_credits_per_seat=settings.plan_credits_per_seat_minor,
            default_credits_per_seat=settings.default_credits_per_seat_minor,
            trial_credits_enabled=settings.trial_credits_enabled,
            timeout_seconds=settings.store_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle(self, payload: bytes, signature_header: str | None) -> ReconcileResult:
        """Verify and reconcile one raw delivery.

        Raises
        ------
        SignatureInvalidError
            The signature is missing or wrong; nothing was stored.
        MalformedEventError
            The verified body is not a JSON event envelope with an id.
        StoreUnavailableError, EventOutOfOrderError
            Transient; the provider should retry the delivery.
        """
        if self._verifier is None:
            raise SignatureInvalidError("No webhook signing secret configured")
        self._verifier.verify(payload, signature_header)
        try:
            raw = json.loads(payload)
        except ValueError as exc:
            raise MalformedEventError("Webhook body is not valid JSON") from exc
        return await self.reconcile(raw)

    async def reconcile(self, raw: Mapping[str, Any]) -> ReconcileResult:
        """Reconcile an already-authenticated, decoded event."""
        event_id = raw.get("id") if isinstance(raw, Mapping) else None
        event_type = str(raw.get("type") or "unknown") if isinstance(raw, Mapping) else "unknown"
        try:
            event = parse_event(raw)
        except MalformedEventError as exc:
            if not event_id:
                raise
            return await self._reject(str(event_id), event_type, exc)

        for attempt in range(2):
            try:
                return await self._process(event)
            except DuplicateExternalRefError:
                # Another event (e.g. invoice.paid vs invoice.payment_succeeded)
                # recorded the same reference concurrently; the rerun sees it.
                if attempt:
                    raise
                logger.info("Reference race while processing %s; retrying once", event.event_id)
            except (ReferencedEntityMissingError, InvalidTransitionError) as exc:
                return await self._reject(event.event_id, event.event_type, exc)
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Unit management
    # ------------------------------------------------------------------

    async def _process(self, event: ReconcilableEvent) -> ReconcileResult:
        try:
            async with asyncio.timeout(self._timeout):
                async with self._ledger.store.atomic() as unit:
                    if not await unit.record_webhook_event(event.event_id, event.event_type):
                        logger.info("Webhook event %s (%s) already processed", event.event_id, event.event_type)
                        return ReconcileResult(event.event_id, event.event_type, ReconcileStatus.DUPLICATE)
                    outcome = await self._dispatch(unit, event)
                    await unit.set_webhook_outcome(event.event_id, outcome.status.value, outcome.detail)
        except TimeoutError as exc:
            raise StoreUnavailableError(
                f"Reconciliation of {event.event_id} did not finish within {self._timeout}s; outcome unknown"
            ) from exc

        logger.info(
            "Webhook event %s (%s): %s%s",
            event.event_id,
            event.event_type,
            outcome.status.value,
            f" ({outcome.detail})" if outcome.detail else "",
        )
        return ReconcileResult(event.event_id, event.event_type, outcome.status, outcome.detail, outcome.receipts)

    async def _reject(self, event_id: str, event_type: str, exc: Exception) -> ReconcileResult:
        detail = str(exc)[:_DETAIL_MAX_LENGTH]
        logger.warning("Rejecting webhook event %s (%s): %s", event_id, event_type, detail)
        async with self._ledger.store.atomic() as unit:
            inserted = await unit.record_webhook_event(event_id, event_type, outcome="rejected", detail=detail)
        status = ReconcileStatus.REJECTED if inserted else ReconcileStatus.DUPLICATE
        return ReconcileResult(event_id, event_type, status, detail)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, unit: LedgerUnit, event: ReconcilableEvent) -> _Outcome:
        if isinstance(event, PersonalPurchaseEvent):
            return await self._on_personal_purchase(unit, event)
        if isinstance(event, OrganizationPurchaseEvent):
            return await self._on_organization_purchase(unit, event)
        if isinstance(event, SubscriptionCheckoutEvent):
            return await self._on_subscription_checkout(unit, event)
        if isinstance(event, SubscriptionChangedEvent):
            return await self._on_subscription_changed(unit, event)
        if isinstance(event, SubscriptionCanceledEvent):
            return await self._on_subscription_canceled(unit, event)
        if isinstance(event, InvoicePaidEvent):
            return await self._on_invoice_paid(unit, event)
        if isinstance(event, InvoicePaymentFailedEvent):
            return await self._on_invoice_payment_failed(unit, event)
        if isinstance(event, ChargeRefundedEvent):
            return await self._on_charge_refunded(unit, event)
        assert isinstance(event, UnhandledEvent)  # noqa: S101
        return _ignored(event.reason)

    def _allotment(self, record: SubscriptionRecord) -> int:
        per_seat = record.credits_per_seat
        if per_seat is None:
            per_seat = self._plan_credits.get(record.plan_id or "", self._default_credits_per_seat)
        allotment = per_seat * record.seat_count
        if allotment > MAX_EVENT_CREDITS:
            raise MalformedEventError(
                f"Subscription '{record.provider_subscription_id}' allotment of {record.seat_count} seats "
                f"x {per_seat} is out of range"
            )
        return allotment

    @staticmethod
    async def _require_account(unit: LedgerUnit, account_id: str) -> None:
        if await unit.get_account(account_id) is None:
            raise AccountNotFoundError(account_id)

    async def _known_subscription(self, unit: LedgerUnit, provider_subscription_id: str) -> SubscriptionRecord:
        record = await unit.get_subscription(provider_subscription_id)
        if record is None:
            raise EventOutOfOrderError(f"Subscription '{provider_subscription_id}' is not known yet")
        return record

    # -- purchases ----------------------------------------------------------

    async def _on_personal_purchase(self, unit: LedgerUnit, event: PersonalPurchaseEvent) -> _Outcome:
        receipt = await self._ledger.credit(
            event.account_id,
            event.credits,
            external_ref=event.payment_reference,
            txn_type=TransactionType.PURCHASE,
            description="Credit purchase",
            metadata={"pack_id": event.pack_id, "provider_event_id": event.event_id},
            unit=unit,
        )
        return _processed(receipt, detail="already credited" if receipt.duplicate else None)

    async def _on_organization_purchase(self, unit: LedgerUnit, event: OrganizationPurchaseEvent) -> _Outcome:
        receipt = await self._ledger.credit(
            event.organization_id,
            event.credits,
            external_ref=event.payment_reference,
            txn_type=TransactionType.PURCHASE,
            description="Organization credit purchase",
            track_purchased=True,
            metadata={
                "pack_id": event.pack_id,
                "purchaser_id": event.purchaser_id,
                "provider_event_id": event.event_id,
            },
            unit=unit,
        )
        return _processed(receipt, detail="already credited" if receipt.duplicate else None)

    # -- subscription lifecycle --------------------------------------------

    async def _on_subscription_checkout(self, unit: LedgerUnit, event: SubscriptionCheckoutEvent) -> _Outcome:
        await self._require_account(unit, event.organization_id)
        if not event.provider_subscription_id:
            return _ignored("checkout carries no subscription")

        existing = await unit.get_subscription(event.provider_subscription_id)
        await self._state_machine.apply(
            unit,
            SubscriptionChange(
                organization_id=existing.organization_id if existing else event.organization_id,
                provider_subscription_id=event.provider_subscription_id,
                status=existing.status if existing else SubscriptionStatus.NONE,
                plan_id=event.plan_id,
                provider_customer_id=event.provider_customer_id,
            ),
            provider_event_id=event.event_id,
        )
        return _processed()

    async def _on_subscription_changed(self, unit: LedgerUnit, event: SubscriptionChangedEvent) -> _Outcome:
        existing = await unit.get_subscription(event.provider_subscription_id)
        organization_id = existing.organization_id if existing else event.organization_id
        if not organization_id:
            raise ReferencedEntityMissingError(
                f"Subscription '{event.provider_subscription_id}' has no organizationId metadata"
            )
        await self._require_account(unit, organization_id)
        try:
            status = map_provider_status(event.provider_status)
        except ValueError as exc:
            raise MalformedEventError(str(exc)) from exc

        result = await self._state_machine.apply(
            unit,
            SubscriptionChange(
                organization_id=organization_id,
                provider_subscription_id=event.provider_subscription_id,
                status=status,
                plan_id=event.plan_id,
                seat_count=event.seat_count,
                credits_per_seat=event.credits_per_seat,
                provider_customer_id=event.provider_customer_id,
                current_period_start=event.current_period_start,
                current_period_end=event.current_period_end,
                trial_end=event.trial_end,
                cancel_at_period_end=event.cancel_at_period_end,
            ),
            provider_event_id=event.event_id,
        )

        if (
            self._trial_credits_enabled
            and result.previous_status is SubscriptionStatus.NONE
            and result.new_status is SubscriptionStatus.TRIALING
        ):
            allotment = self._allotment(result.record)
            if allotment > 0:
                receipt = await self._ledger.credit(
                    organization_id,
                    allotment,
                    external_ref=f"trial:{event.provider_subscription_id}",
                    txn_type=TransactionType.SUBSCRIPTION_CREDIT,
                    description="Trial credits",
                    metadata={"provider_subscription_id": event.provider_subscription_id},
                    unit=unit,
                )
                return _processed(receipt, detail="trial credits granted")
        return _processed()

    async def _on_subscription_canceled(self, unit: LedgerUnit, event: SubscriptionCanceledEvent) -> _Outcome:
        result = await self._state_machine.transition(
            unit,
            event.provider_subscription_id,
            SubscriptionStatus.CANCELED,
            provider_event_id=event.event_id,
        )
        if result is None:
            return _ignored("unknown subscription")
        # Granted credits stay spendable after cancellation.
        return _processed()

    # -- invoices -----------------------------------------------------------

    async def _on_invoice_paid(self, unit: LedgerUnit, event: InvoicePaidEvent) -> _Outcome:
        if not event.provider_subscription_id:
            return _ignored("invoice is not for a subscription")
        record = await self._known_subscription(unit, event.provider_subscription_id)
        if record.status is SubscriptionStatus.CANCELED:
            return _ignored("subscription is canceled")
        if event.amount_paid == 0 and record.status in (SubscriptionStatus.NONE, SubscriptionStatus.TRIALING):
            return _ignored("zero-amount trial invoice")

        receipt = await self._ledger.apply_subscription_cycle(
            record.organization_id,
            self._allotment(record),
            external_ref=f"invoice:{event.invoice_id}",
            metadata={
                "provider_subscription_id": record.provider_subscription_id,
                "plan_id": record.plan_id,
                "seat_count": record.seat_count,
                "provider_event_id": event.event_id,
            },
            unit=unit,
        )
        if record.status is not SubscriptionStatus.ACTIVE:
            await self._state_machine.transition(
                unit,
                record.provider_subscription_id,
                SubscriptionStatus.ACTIVE,
                provider_event_id=event.event_id,
            )
        return _processed(receipt, detail="invoice already applied" if receipt.duplicate else None)

    async def _on_invoice_payment_failed(self, unit: LedgerUnit, event: InvoicePaymentFailedEvent) -> _Outcome:
        if not event.provider_subscription_id:
            return _ignored("invoice is not for a subscription")
        record = await self._known_subscription(unit, event.provider_subscription_id)
        if record.status is SubscriptionStatus.CANCELED:
            return _ignored("subscription is canceled")
        if record.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
            return _processed(detail=f"already {record.status.value}")
        await self._state_machine.transition(
            unit,
            record.provider_subscription_id,
            SubscriptionStatus.PAST_DUE,
            provider_event_id=event.event_id,
        )
        return _processed()

    # -- refunds ------------------------------------------------------------

    async def _on_charge_refunded(self, unit: LedgerUnit, event: ChargeRefundedEvent) -> _Outcome:
        if not event.payment_reference:
            return _ignored("charge has no payment intent")
        purchase = await unit.lookup_transaction_by_external_ref(event.payment_reference)
        if purchase is None or purchase.type is not TransactionType.PURCHASE:
            return _ignored("no credit purchase for this charge")
        if event.amount <= 0:
            raise MalformedEventError(f"Charge '{event.charge_id}' has no positive amount")

        credits = purchase.amount * min(event.amount_refunded, event.amount) // event.amount
        if credits <= 0:
            return _ignored("refund rounds to zero credits")
        receipt = await self._ledger.refund(
            purchase.account_id,
            credits,
            external_ref=f"refund:{event.charge_id}",
            description="Purchase refunded",
            metadata={"charge_id": event.charge_id, "purchase_transaction_id": purchase.transaction_id},
            unit=unit,
        )
        return _processed(receipt)
