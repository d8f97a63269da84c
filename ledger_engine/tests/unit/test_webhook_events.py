"""Unit tests for provider payload parsing."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from ledger_engine.errors import MalformedEventError
from ledger_engine.webhooks.events import (
    ChargeRefundedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    OrganizationPurchaseEvent,
    PersonalPurchaseEvent,
    SubscriptionCanceledEvent,
    SubscriptionChangedEvent,
    SubscriptionCheckoutEvent,
    UnhandledEvent,
    parse_event,
)

EUR = 100_000


def _envelope(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


class TestCheckout:
    def test_personal_purchase(self):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "payment_intent": "pi_123",
                    "payment_status": "paid",
                    "metadata": {"type": "personal", "userId": "user-1", "credits": "5", "packId": "small"},
                },
            )
        )

        assert isinstance(event, PersonalPurchaseEvent)
        assert event.account_id == "user-1"
        assert event.credits == 5 * EUR
        assert event.payment_reference == "pi_123"
        assert event.pack_id == "small"

    def test_type_defaults_to_personal(self):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {"id": "cs_1", "payment_intent": "pi_1", "metadata": {"userId": "user-1", "credits": "2.5"}},
            )
        )
        assert isinstance(event, PersonalPurchaseEvent)
        assert event.credits == 250_000

    def test_session_id_used_without_payment_intent(self):
        event = parse_event(
            _envelope(
                "checkout.session.async_payment_succeeded",
                {"id": "cs_9", "metadata": {"userId": "user-1", "credits": "1"}},
            )
        )
        assert event.payment_reference == "cs_9"

    def test_expanded_payment_intent(self):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {"id": "cs_1", "payment_intent": {"id": "pi_exp"}, "metadata": {"userId": "u", "credits": "1"}},
            )
        )
        assert event.payment_reference == "pi_exp"

    def test_organization_purchase(self):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "payment_intent": "pi_1",
                    "metadata": {"type": "organization", "organizationId": "org-1", "userId": "u-1", "credits": "10"},
                },
            )
        )
        assert isinstance(event, OrganizationPurchaseEvent)
        assert event.organization_id == "org-1"
        assert event.purchaser_id == "u-1"
        assert event.credits == 10 * EUR

    def test_unpaid_session_is_not_credited(self):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {"id": "cs_1", "payment_status": "unpaid", "metadata": {"userId": "u", "credits": "1"}},
            )
        )
        assert isinstance(event, UnhandledEvent)
        assert event.reason == "payment pending"

    @pytest.mark.parametrize("checkout_type", ["subscription", "mifa"])
    def test_subscription_checkout(self, checkout_type):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "mode": "subscription",
                    "subscription": "sub_1",
                    "customer": "cus_1",
                    "metadata": {"type": checkout_type, "organizationId": "org-1"},
                },
            )
        )
        assert isinstance(event, SubscriptionCheckoutEvent)
        assert event.provider_subscription_id == "sub_1"
        assert event.provider_customer_id == "cus_1"
        if checkout_type == "mifa":
            assert event.plan_id == "mifa"

    def test_missing_credits(self):
        with pytest.raises(MalformedEventError, match="credits"):
            parse_event(_envelope("checkout.session.completed", {"id": "cs_1", "metadata": {"userId": "u"}}))

    @pytest.mark.parametrize("credits", ["0", "-1", "abc", "0.000001"])
    def test_invalid_credits(self, credits):
        with pytest.raises(MalformedEventError):
            parse_event(
                _envelope(
                    "checkout.session.completed",
                    {"id": "cs_1", "metadata": {"userId": "u", "credits": credits}},
                )
            )

    @pytest.mark.parametrize("metadata", ["oops", ["userId", "u"], 42])
    def test_metadata_must_be_an_object(self, metadata):
        with pytest.raises(MalformedEventError, match="metadata must be an object"):
            parse_event(_envelope("checkout.session.completed", {"id": "cs_1", "metadata": metadata}))

    @pytest.mark.parametrize("credits", ["1e30", "10000000001"])
    def test_credits_out_of_range(self, credits):
        with pytest.raises(MalformedEventError, match="out-of-range"):
            parse_event(
                _envelope(
                    "checkout.session.completed",
                    {"id": "cs_1", "metadata": {"userId": "u", "credits": credits}},
                )
            )

    def test_largest_grant_accepted(self):
        event = parse_event(
            _envelope(
                "checkout.session.completed",
                {"id": "cs_1", "metadata": {"userId": "u", "credits": "10000000000"}},
            )
        )
        assert event.credits == 10_000_000_000 * EUR

    def test_wrongly_typed_field(self):
        with pytest.raises(MalformedEventError, match="wrong type"):
            parse_event(
                _envelope(
                    "checkout.session.completed",
                    {"id": "cs_1", "metadata": {"userId": {"id": "u"}, "credits": "5"}},
                )
            )

    def test_unknown_checkout_type(self):
        with pytest.raises(MalformedEventError, match="unknown checkout type"):
            parse_event(
                _envelope(
                    "checkout.session.completed",
                    {"id": "cs_1", "metadata": {"type": "gift", "credits": "1"}},
                )
            )


class TestSubscription:
    def test_updated_with_items(self):
        event = parse_event(
            _envelope(
                "customer.subscription.updated",
                {
                    "id": "sub_1",
                    "status": "trialing",
                    "customer": "cus_1",
                    "trial_end": 1_700_000_000,
                    "items": {"data": [{"quantity": 3, "current_period_end": 1_700_000_000}]},
                    "metadata": {"organizationId": "org-1", "planId": "team"},
                },
            )
        )

        assert isinstance(event, SubscriptionChangedEvent)
        assert event.provider_status == "trialing"
        assert event.seat_count == 3
        assert event.plan_id == "team"
        assert event.current_period_end == datetime.fromtimestamp(1_700_000_000, tz=UTC)
        assert event.trial_end == datetime.fromtimestamp(1_700_000_000, tz=UTC)

    def test_metadata_seat_count_wins(self):
        event = parse_event(
            _envelope(
                "customer.subscription.created",
                {
                    "id": "sub_1",
                    "status": "active",
                    "items": {"data": [{"quantity": 3}]},
                    "metadata": {"seatCount": "5"},
                },
            )
        )
        assert event.seat_count == 5

    def test_family_plan(self):
        event = parse_event(
            _envelope(
                "customer.subscription.created",
                {
                    "id": "sub_1",
                    "status": "active",
                    "metadata": {"type": "mifa", "childCount": "2", "creditsPerChild": "4"},
                },
            )
        )
        assert event.plan_id == "mifa"
        assert event.seat_count == 2
        assert event.credits_per_seat == 4 * EUR

    def test_deleted(self):
        event = parse_event(
            _envelope("customer.subscription.deleted", {"id": "sub_1", "status": "canceled", "metadata": {}})
        )
        assert isinstance(event, SubscriptionCanceledEvent)

    def test_missing_status(self):
        with pytest.raises(MalformedEventError, match="status"):
            parse_event(_envelope("customer.subscription.updated", {"id": "sub_1"}))

    def test_metadata_must_be_an_object(self):
        with pytest.raises(MalformedEventError, match="metadata must be an object"):
            parse_event(
                _envelope(
                    "customer.subscription.updated",
                    {"id": "sub_1", "status": "active", "metadata": "org-1"},
                )
            )

    def test_seat_count_out_of_range(self):
        with pytest.raises(MalformedEventError, match="seatCount"):
            parse_event(
                _envelope(
                    "customer.subscription.updated",
                    {"id": "sub_1", "status": "active", "metadata": {"seatCount": str(2**31)}},
                )
            )


class TestInvoice:
    def test_paid_with_top_level_subscription(self):
        event = parse_event(
            _envelope(
                "invoice.paid",
                {"id": "in_1", "subscription": "sub_1", "amount_paid": 2000, "billing_reason": "subscription_cycle"},
            )
        )
        assert isinstance(event, InvoicePaidEvent)
        assert event.provider_subscription_id == "sub_1"
        assert event.amount_paid == 2000

    def test_paid_with_nested_subscription(self):
        event = parse_event(
            _envelope(
                "invoice.payment_succeeded",
                {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_2"}}},
            )
        )
        assert event.provider_subscription_id == "sub_2"
        assert event.amount_paid == 0

    def test_payment_failed(self):
        event = parse_event(_envelope("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}))
        assert isinstance(event, InvoicePaymentFailedEvent)


class TestChargeRefunded:
    def test_refund_fields(self):
        event = parse_event(
            _envelope(
                "charge.refunded",
                {"id": "ch_1", "payment_intent": "pi_1", "amount": 1000, "amount_refunded": 500},
            )
        )
        assert isinstance(event, ChargeRefundedEvent)
        assert event.payment_reference == "pi_1"
        assert event.amount == 1000
        assert event.amount_refunded == 500


class TestEnvelope:
    def test_unknown_type_is_unhandled(self):
        event = parse_event(_envelope("customer.created", {"id": "cus_1"}))
        assert isinstance(event, UnhandledEvent)
        assert event.event_id == "evt_1"

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"type": "invoice.paid", "data": {"object": {}}},
            {"id": "evt_1", "data": {"object": {}}},
            {"id": "evt_1", "type": "invoice.paid"},
        ],
    )
    def test_malformed_envelope(self, payload):
        with pytest.raises(MalformedEventError):
            parse_event(payload)
