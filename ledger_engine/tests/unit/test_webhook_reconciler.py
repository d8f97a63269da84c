"""Unit tests for webhook reconciliation.

Covers:
- verify: signature failures and unparseable bodies
- deduplicate: replays of one event id, distinct events sharing a payment
- dispatch: purchases, the subscription lifecycle, invoices, refunds
- record: processed / ignored / rejected outcomes on the dedup row
"""

from __future__ import annotations

import json

import pytest

from ledger_engine.errors import MalformedEventError, SignatureInvalidError
from ledger_engine.ledger.models import AccountKind, TransactionType
from ledger_engine.subscriptions.models import SubscriptionStatus
from ledger_engine.webhooks.reconciler import EventOutOfOrderError, ReconcileStatus, WebhookReconciler

EUR = 100_000


class _AcceptingVerifier:
    def __init__(self) -> None:
        self.calls: list[tuple[bytes, str | None]] = []

    def verify(self, payload: bytes, signature_header: str | None) -> None:
        self.calls.append((payload, signature_header))
        if signature_header != "valid":
            raise SignatureInvalidError("bad signature")


@pytest.fixture
def reconciler(ledger) -> WebhookReconciler:
    return WebhookReconciler(
        ledger,
        verifier=_AcceptingVerifier(),
        plan_credits_per_seat={"team": 5 * EUR},
        default_credits_per_seat=EUR,
        timeout_seconds=5.0,
    )


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def purchase(event_id: str, account_id: str, credits: str, payment_intent: str, **metadata) -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "payment_intent": payment_intent,
                "payment_status": "paid",
                "metadata": {"userId": account_id, "credits": credits, **metadata},
            }
        },
    }


def org_purchase(event_id: str, org_id: str, credits: str, payment_intent: str) -> dict:
    return purchase(event_id, "buyer-1", credits, payment_intent, type="organization", organizationId=org_id)


def subscription(event_id: str, status: str, *, sub_id="sub_1", org_id="org-1", seats=2, plan="team") -> dict:
    return {
        "id": event_id,
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": sub_id,
                "status": status,
                "customer": "cus_1",
                "items": {"data": [{"quantity": seats}]},
                "metadata": {"organizationId": org_id, "planId": plan},
            }
        },
    }


def invoice(event_id: str, invoice_id: str, *, sub_id="sub_1", amount_paid=2000, event_type="invoice.paid") -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": invoice_id, "subscription": sub_id, "amount_paid": amount_paid}},
    }


async def _outcome(ledger, event_id: str) -> str | None:
    async with ledger.store.atomic() as unit:
        row = await unit.get_webhook_event(event_id)
    return row["outcome"] if row else None


async def _balance(ledger, account_id: str) -> int:
    return (await ledger.get_account(account_id)).balance


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


class TestHandle:
    @pytest.mark.asyncio
    async def test_valid_delivery_is_reconciled(self, ledger, reconciler):
        await ledger.open_account("user-1")
        body = json.dumps(purchase("evt_1", "user-1", "5", "pi_1")).encode()

        result = await reconciler.handle(body, "valid")

        assert result.status is ReconcileStatus.PROCESSED
        assert await _balance(ledger, "user-1") == 5 * EUR

    @pytest.mark.asyncio
    async def test_bad_signature_stores_nothing(self, ledger, reconciler):
        await ledger.open_account("user-1")
        body = json.dumps(purchase("evt_1", "user-1", "5", "pi_1")).encode()

        with pytest.raises(SignatureInvalidError):
            await reconciler.handle(body, "forged")

        assert await _outcome(ledger, "evt_1") is None
        assert await _balance(ledger, "user-1") == 0

    @pytest.mark.asyncio
    async def test_without_verifier_everything_is_rejected(self, ledger):
        reconciler = WebhookReconciler(ledger)
        with pytest.raises(SignatureInvalidError):
            await reconciler.handle(b"{}", "valid")

    @pytest.mark.asyncio
    async def test_body_not_json(self, reconciler):
        with pytest.raises(MalformedEventError):
            await reconciler.handle(b"not json", "valid")


# ---------------------------------------------------------------------------
# Deduplicate
# ---------------------------------------------------------------------------


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_replayed_event_applies_once(self, ledger, reconciler):
        await ledger.open_account("user-1")
        event = purchase("evt_1", "user-1", "5", "pi_123")

        first = await reconciler.reconcile(event)
        replay = await reconciler.reconcile(event)

        assert first.status is ReconcileStatus.PROCESSED
        assert replay.status is ReconcileStatus.DUPLICATE
        assert await _balance(ledger, "user-1") == 5 * EUR
        assert await _outcome(ledger, "evt_1") == "processed"

    @pytest.mark.asyncio
    async def test_distinct_events_for_one_payment_credit_once(self, ledger, reconciler):
        """checkout.session.completed and async_payment_succeeded share pi_123."""
        await ledger.open_account("user-1")
        completed = purchase("evt_1", "user-1", "5", "pi_123")
        async_succeeded = purchase("evt_2", "user-1", "5", "pi_123")
        async_succeeded["type"] = "checkout.session.async_payment_succeeded"

        await reconciler.reconcile(completed)
        second = await reconciler.reconcile(async_succeeded)

        assert second.status is ReconcileStatus.PROCESSED
        assert second.detail == "already credited"
        assert await _balance(ledger, "user-1") == 5 * EUR
        history = await ledger.list_transactions("user-1")
        assert [t.external_reference for t in history] == ["pi_123"]


# ---------------------------------------------------------------------------
# Record: rejected and ignored outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_unknown_account_is_rejected_and_acknowledged(self, ledger, reconciler):
        result = await reconciler.reconcile(purchase("evt_1", "ghost", "5", "pi_1"))

        assert result.status is ReconcileStatus.REJECTED
        assert "ghost" in result.detail
        assert await _outcome(ledger, "evt_1") == "rejected"

        replay = await reconciler.reconcile(purchase("evt_1", "ghost", "5", "pi_1"))
        assert replay.status is ReconcileStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_malformed_metadata_is_rejected(self, ledger, reconciler):
        event = purchase("evt_1", "user-1", "not-a-number", "pi_1")

        result = await reconciler.reconcile(event)

        assert result.status is ReconcileStatus.REJECTED
        assert await _outcome(ledger, "evt_1") == "rejected"

    @pytest.mark.asyncio
    async def test_metadata_that_is_not_an_object_is_rejected(self, ledger, reconciler):
        event = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "metadata": "oops"}},
        }

        result = await reconciler.reconcile(event)

        assert result.status is ReconcileStatus.REJECTED
        assert await _outcome(ledger, "evt_1") == "rejected"

    @pytest.mark.asyncio
    async def test_credits_beyond_storable_range_are_rejected(self, ledger, reconciler):
        await ledger.open_account("user-1")

        result = await reconciler.reconcile(purchase("evt_1", "user-1", "1e30", "pi_1"))

        assert result.status is ReconcileStatus.REJECTED
        assert "out-of-range" in result.detail
        assert await _balance(ledger, "user-1") == 0
        assert await _outcome(ledger, "evt_1") == "rejected"

    @pytest.mark.asyncio
    async def test_wrongly_typed_metadata_is_rejected(self, ledger, reconciler):
        event = purchase("evt_1", "user-1", "5", "pi_1")
        event["data"]["object"]["metadata"]["userId"] = ["user-1"]

        result = await reconciler.reconcile(event)

        assert result.status is ReconcileStatus.REJECTED
        assert await _outcome(ledger, "evt_1") == "rejected"

    @pytest.mark.asyncio
    async def test_malformed_envelope_without_id_raises(self, reconciler):
        with pytest.raises(MalformedEventError):
            await reconciler.reconcile({"type": "invoice.paid"})

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, ledger, reconciler):
        result = await reconciler.reconcile({"id": "evt_1", "type": "customer.created", "data": {"object": {}}})

        assert result.status is ReconcileStatus.IGNORED
        assert await _outcome(ledger, "evt_1") == "ignored"

    @pytest.mark.asyncio
    async def test_pending_payment_is_ignored(self, ledger, reconciler):
        await ledger.open_account("user-1")
        event = purchase("evt_1", "user-1", "5", "pi_1")
        event["data"]["object"]["payment_status"] = "unpaid"

        result = await reconciler.reconcile(event)

        assert result.status is ReconcileStatus.IGNORED
        assert await _balance(ledger, "user-1") == 0


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------


class TestSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_trial_then_first_paid_invoice(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(org_purchase("evt_p", "org-1", "5", "pi_org"))

        trial = await reconciler.reconcile(subscription("evt_1", "trialing"))
        assert trial.detail == "trial credits granted"
        assert await _balance(ledger, "org-1") == 15 * EUR

        zero = await reconciler.reconcile(invoice("evt_2", "in_0", amount_paid=0))
        assert zero.status is ReconcileStatus.IGNORED

        await ledger.debit("org-1", 3 * EUR)
        paid = await reconciler.reconcile(invoice("evt_3", "in_1"))

        assert paid.status is ReconcileStatus.PROCESSED
        account = await ledger.get_account("org-1")
        # min(P=5, B=12) + 2 seats x 5
        assert account.balance == 15 * EUR
        assert account.purchased_credits == 5 * EUR
        async with ledger.store.atomic() as unit:
            record = await unit.get_subscription("sub_1")
        assert record.status is SubscriptionStatus.ACTIVE
        report = await ledger.verify("org-1")
        assert report.consistent

    @pytest.mark.asyncio
    async def test_trial_credits_granted_once(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(subscription("evt_1", "trialing"))
        await reconciler.reconcile(subscription("evt_2", "trialing"))

        assert await _balance(ledger, "org-1") == 10 * EUR

    @pytest.mark.asyncio
    async def test_paid_and_payment_succeeded_apply_once(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(subscription("evt_1", "active"))

        await reconciler.reconcile(invoice("evt_2", "in_1"))
        await ledger.debit("org-1", EUR)
        second = await reconciler.reconcile(invoice("evt_3", "in_1", event_type="invoice.payment_succeeded"))

        assert second.detail == "invoice already applied"
        assert await _balance(ledger, "org-1") == 9 * EUR

    @pytest.mark.asyncio
    async def test_oversized_allotment_is_rejected(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(subscription("evt_1", "active", seats=2**31 - 1))

        result = await reconciler.reconcile(invoice("evt_2", "in_1"))

        assert result.status is ReconcileStatus.REJECTED
        assert await _balance(ledger, "org-1") == 0
        assert await _outcome(ledger, "evt_2") == "rejected"

    @pytest.mark.asyncio
    async def test_invoice_before_subscription_is_retried_later(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)

        with pytest.raises(EventOutOfOrderError):
            await reconciler.reconcile(invoice("evt_2", "in_1"))
        assert await _outcome(ledger, "evt_2") is None

        await reconciler.reconcile(subscription("evt_1", "active"))
        retried = await reconciler.reconcile(invoice("evt_2", "in_1"))

        assert retried.status is ReconcileStatus.PROCESSED
        assert await _balance(ledger, "org-1") == 10 * EUR

    @pytest.mark.asyncio
    async def test_payment_failed_moves_to_past_due(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(subscription("evt_1", "active"))

        await reconciler.reconcile(invoice("evt_2", "in_1", event_type="invoice.payment_failed"))

        async with ledger.store.atomic() as unit:
            record = await unit.get_subscription("sub_1")
        assert record.status is SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_canceled_keeps_credits_and_ignores_invoices(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(subscription("evt_1", "active"))
        await reconciler.reconcile(invoice("evt_2", "in_1"))

        deleted = subscription("evt_3", "canceled")
        deleted["type"] = "customer.subscription.deleted"
        canceled = await reconciler.reconcile(deleted)
        late = await reconciler.reconcile(invoice("evt_4", "in_2"))

        assert canceled.status is ReconcileStatus.PROCESSED
        assert late.status is ReconcileStatus.IGNORED
        assert await _balance(ledger, "org-1") == 10 * EUR

    @pytest.mark.asyncio
    async def test_reactivating_canceled_instance_is_rejected(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        await reconciler.reconcile(subscription("evt_1", "canceled"))

        result = await reconciler.reconcile(subscription("evt_2", "active"))

        assert result.status is ReconcileStatus.REJECTED
        assert await _outcome(ledger, "evt_2") == "rejected"

    @pytest.mark.asyncio
    async def test_checkout_creates_instance(self, ledger, reconciler):
        await ledger.open_account("org-1", AccountKind.ORGANIZATION)
        checkout = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "mode": "subscription",
                    "subscription": "sub_1",
                    "customer": "cus_1",
                    "metadata": {"type": "subscription", "organizationId": "org-1", "planId": "team"},
                }
            },
        }

        result = await reconciler.reconcile(checkout)

        assert result.status is ReconcileStatus.PROCESSED
        async with ledger.store.atomic() as unit:
            record = await unit.get_subscription("sub_1")
        assert record.status is SubscriptionStatus.NONE
        assert record.plan_id == "team"


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


class TestRefunds:
    @pytest.mark.asyncio
    async def test_partial_refund_is_proportional(self, ledger, reconciler):
        await ledger.open_account("user-1")
        await reconciler.reconcile(purchase("evt_1", "user-1", "10", "pi_1"))
        refund = {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_1", "amount": 1000, "amount_refunded": 500}},
        }

        result = await reconciler.reconcile(refund)

        assert result.status is ReconcileStatus.PROCESSED
        assert result.receipts[0].type is TransactionType.REFUND
        assert await _balance(ledger, "user-1") == 5 * EUR

    @pytest.mark.asyncio
    async def test_refund_without_purchase_is_ignored(self, ledger, reconciler):
        refund = {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_x", "amount": 1000, "amount_refunded": 1000}},
        }

        result = await reconciler.reconcile(refund)

        assert result.status is ReconcileStatus.IGNORED
