"""Typed payment-provider events.

Raw provider payloads (``{"id", "type", "data": {"object": ...}}``) are
parsed exactly once, at the reconciler boundary, into one of the tagged
event models below.  The checkout-session ``metadata`` keys are a fixed
contract with checkout creation: ``userId``, ``organizationId``,
``packId``, ``credits``, ``type`` (``personal`` / ``organization`` /
``subscription`` / ``mifa``), ``planId``, ``seatCount``,
``creditsPerChild`` and ``childCount``.

A payload that is missing something its event type needs raises
:class:`MalformedEventError`, a permanent error: the provider will never
send a better version of the same event.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from ledger_engine.errors import MalformedEventError
from ledger_engine.money import to_minor

CHECKOUT_EVENTS = frozenset({"checkout.session.completed", "checkout.session.async_payment_succeeded"})
SUBSCRIPTION_CHANGE_EVENTS = frozenset({"customer.subscription.created", "customer.subscription.updated"})
INVOICE_PAID_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})

# Upper bound, in minor units, on the credits one event may grant.
MAX_EVENT_CREDITS = 10**15
# Provider amounts in the smallest currency unit (BIGINT) and seat/child counts (INTEGER).
MAX_PROVIDER_AMOUNT = 2**63 - 1
MAX_COUNT = 2**31 - 1


class ProviderEvent(BaseModel):
    """Common envelope fields."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str


class PersonalPurchaseEvent(ProviderEvent):
    kind: Literal["personal_purchase"] = "personal_purchase"
    account_id: str
    credits: int
    payment_reference: str
    pack_id: str | None = None


class OrganizationPurchaseEvent(ProviderEvent):
    kind: Literal["organization_purchase"] = "organization_purchase"
    organization_id: str
    credits: int
    payment_reference: str
    purchaser_id: str | None = None
    pack_id: str | None = None


class SubscriptionCheckoutEvent(ProviderEvent):
    kind: Literal["subscription_checkout"] = "subscription_checkout"
    organization_id: str
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    plan_id: str | None = None


class SubscriptionChangedEvent(ProviderEvent):
    kind: Literal["subscription_changed"] = "subscription_changed"
    provider_subscription_id: str
    provider_status: str
    organization_id: str | None = None
    provider_customer_id: str | None = None
    plan_id: str | None = None
    seat_count: int | None = None
    credits_per_seat: int | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False


class SubscriptionCanceledEvent(ProviderEvent):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    provider_subscription_id: str
    organization_id: str | None = None


class InvoicePaidEvent(ProviderEvent):
    kind: Literal["invoice_paid"] = "invoice_paid"
    invoice_id: str
    provider_subscription_id: str | None = None
    amount_paid: int = 0


class InvoicePaymentFailedEvent(ProviderEvent):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    invoice_id: str
    provider_subscription_id: str | None = None


class ChargeRefundedEvent(ProviderEvent):
    kind: Literal["charge_refunded"] = "charge_refunded"
    charge_id: str
    payment_reference: str | None = None
    amount: int
    amount_refunded: int


class UnhandledEvent(ProviderEvent):
    kind: Literal["unhandled"] = "unhandled"
    reason: str


ReconcilableEvent = (
    PersonalPurchaseEvent
    | OrganizationPurchaseEvent
    | SubscriptionCheckoutEvent
    | SubscriptionChangedEvent
    | SubscriptionCanceledEvent
    | InvoicePaidEvent
    | InvoicePaymentFailedEvent
    | ChargeRefundedEvent
    | UnhandledEvent
)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _object_id(value: Any) -> str | None:
    """Return the id of a possibly-expanded provider object reference."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _require(mapping: Mapping[str, Any], key: str, where: str) -> Any:
    value = mapping.get(key)
    if value is None or value == "":
        raise MalformedEventError(f"{where} is missing required field '{key}'")
    return value


def _metadata(obj: Mapping[str, Any], where: str) -> Mapping[str, Any]:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise MalformedEventError(f"{where} metadata must be an object, got {type(metadata).__name__}")
    return metadata


def _credits(value: Any, where: str) -> int:
    try:
        minor = to_minor(str(value))
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"{where} has invalid credits value {value!r}") from exc
    if minor <= 0:
        raise MalformedEventError(f"{where} has non-positive credits value {value!r}")
    if minor > MAX_EVENT_CREDITS:
        raise MalformedEventError(f"{where} has out-of-range credits value {value!r}")
    return minor


def _optional_int(value: Any, name: str, maximum: int = MAX_COUNT) -> int | None:
    if value is None or value == "":
        return None
    try:
        parsed = int(str(value))
    except ValueError as exc:
        raise MalformedEventError(f"Invalid integer for '{name}': {value!r}") from exc
    if parsed < 0:
        raise MalformedEventError(f"Negative value for '{name}': {value!r}")
    if parsed > maximum:
        raise MalformedEventError(f"Value for '{name}' is out of range: {value!r}")
    return parsed


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise MalformedEventError(f"Invalid timestamp {value!r}") from exc


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = obj.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _invoice_subscription(obj: Mapping[str, Any]) -> str | None:
    subscription = _object_id(obj.get("subscription"))
    if subscription:
        return subscription
    # Newer API versions nest the subscription under the invoice parent.
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
    if isinstance(details, Mapping):
        return _object_id(details.get("subscription"))
    return None


# ---------------------------------------------------------------------------
# Per-type parsers
# ---------------------------------------------------------------------------


def _parse_checkout(event_id: str, event_type: str, obj: Mapping[str, Any]) -> ReconcilableEvent:
    session_id = _require(obj, "id", "checkout session")
    where = f"checkout session {session_id}"
    metadata = _metadata(obj, where)
    checkout_type = metadata.get("type", "personal")
    base = {"event_id": event_id, "event_type": event_type}

    if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
        return UnhandledEvent(**base, reason="payment pending")

    if checkout_type in ("subscription", "mifa") or obj.get("mode") == "subscription":
        return SubscriptionCheckoutEvent(
            **base,
            organization_id=_require(metadata, "organizationId", where),
            provider_subscription_id=_object_id(obj.get("subscription")),
            provider_customer_id=_object_id(obj.get("customer")),
            plan_id=metadata.get("planId") or ("mifa" if checkout_type == "mifa" else None),
        )

    payment_reference = _object_id(obj.get("payment_intent")) or str(session_id)
    if checkout_type == "organization":
        return OrganizationPurchaseEvent(
            **base,
            organization_id=_require(metadata, "organizationId", where),
            credits=_credits(_require(metadata, "credits", where), where),
            payment_reference=payment_reference,
            purchaser_id=metadata.get("userId"),
            pack_id=metadata.get("packId"),
        )
    if checkout_type != "personal":
        raise MalformedEventError(f"{where} has unknown checkout type {checkout_type!r}")
    return PersonalPurchaseEvent(
        **base,
        account_id=_require(metadata, "userId", where),
        credits=_credits(_require(metadata, "credits", where), where),
        payment_reference=payment_reference,
        pack_id=metadata.get("packId"),
    )


def _parse_subscription(event_id: str, event_type: str, obj: Mapping[str, Any]) -> ReconcilableEvent:
    subscription_id = str(_require(obj, "id", "subscription"))
    metadata = _metadata(obj, f"subscription {subscription_id}")
    base = {"event_id": event_id, "event_type": event_type}

    if event_type == "customer.subscription.deleted":
        return SubscriptionCanceledEvent(
            **base,
            provider_subscription_id=subscription_id,
            organization_id=metadata.get("organizationId"),
        )

    item = _first_item(obj)
    is_family_plan = metadata.get("type") == "mifa"
    if is_family_plan:
        seat_count = _optional_int(metadata.get("childCount"), "childCount")
        per_seat_raw = metadata.get("creditsPerChild")
        credits_per_seat = _credits(per_seat_raw, f"subscription {subscription_id}") if per_seat_raw else None
    else:
        seat_count = _optional_int(metadata.get("seatCount"), "seatCount")
        credits_per_seat = None
    if seat_count is None:
        seat_count = _optional_int(item.get("quantity"), "quantity")

    return SubscriptionChangedEvent(
        **base,
        provider_subscription_id=subscription_id,
        provider_status=str(_require(obj, "status", f"subscription {subscription_id}")),
        organization_id=metadata.get("organizationId"),
        provider_customer_id=_object_id(obj.get("customer")),
        plan_id=metadata.get("planId") or ("mifa" if is_family_plan else None),
        seat_count=seat_count,
        credits_per_seat=credits_per_seat,
        current_period_start=_timestamp(obj.get("current_period_start", item.get("current_period_start"))),
        current_period_end=_timestamp(obj.get("current_period_end", item.get("current_period_end"))),
        trial_end=_timestamp(obj.get("trial_end")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
    )


def _parse_invoice(event_id: str, event_type: str, obj: Mapping[str, Any]) -> ReconcilableEvent:
    invoice_id = str(_require(obj, "id", "invoice"))
    base = {"event_id": event_id, "event_type": event_type}
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailedEvent(
            **base,
            invoice_id=invoice_id,
            provider_subscription_id=_invoice_subscription(obj),
        )
    return InvoicePaidEvent(
        **base,
        invoice_id=invoice_id,
        provider_subscription_id=_invoice_subscription(obj),
        amount_paid=_optional_int(obj.get("amount_paid"), "amount_paid", MAX_PROVIDER_AMOUNT) or 0,
    )


def _parse_charge_refunded(event_id: str, event_type: str, obj: Mapping[str, Any]) -> ReconcilableEvent:
    charge_id = str(_require(obj, "id", "charge"))
    amount = _optional_int(_require(obj, "amount", f"charge {charge_id}"), "amount", MAX_PROVIDER_AMOUNT)
    refunded = _optional_int(obj.get("amount_refunded"), "amount_refunded", MAX_PROVIDER_AMOUNT) or 0
    return ChargeRefundedEvent(
        event_id=event_id,
        event_type=event_type,
        charge_id=charge_id,
        payment_reference=_object_id(obj.get("payment_intent")),
        amount=amount or 0,
        amount_refunded=refunded,
    )


def parse_event(payload: Mapping[str, Any]) -> ReconcilableEvent:
    """Parse a decoded provider payload into a typed event.

    Raises
    ------
    MalformedEventError
        The envelope or the object lacks fields the event type requires.
    """
    if not isinstance(payload, Mapping):
        raise MalformedEventError("Event payload must be a JSON object")
    event_id = str(_require(payload, "id", "event"))
    event_type = str(_require(payload, "type", f"event {event_id}"))
    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise MalformedEventError(f"Event {event_id} has no data.object")

    try:
        if event_type in CHECKOUT_EVENTS:
            return _parse_checkout(event_id, event_type, obj)
        if event_type in SUBSCRIPTION_CHANGE_EVENTS or event_type == "customer.subscription.deleted":
            return _parse_subscription(event_id, event_type, obj)
        if event_type in INVOICE_PAID_EVENTS or event_type == "invoice.payment_failed":
            return _parse_invoice(event_id, event_type, obj)
        if event_type == "charge.refunded":
            return _parse_charge_refunded(event_id, event_type, obj)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedEventError(f"Event {event_id} has fields of the wrong type: {fields}") from exc
    return UnhandledEvent(event_id=event_id, event_type=event_type, reason="unhandled event type")
