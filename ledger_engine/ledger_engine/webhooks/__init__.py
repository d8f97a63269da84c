"""Payment-provider webhook verification and reconciliation."""

from ledger_engine.webhooks.events import ReconcilableEvent, parse_event
from ledger_engine.webhooks.reconciler import (
    EventOutOfOrderError,
    ReconcileResult,
    ReconcileStatus,
    WebhookReconciler,
)
from ledger_engine.webhooks.signature import SignatureVerifier, StripeSignatureVerifier

__all__ = [
    "EventOutOfOrderError",
    "ReconcilableEvent",
    "ReconcileResult",
    "ReconcileStatus",
    "SignatureVerifier",
    "StripeSignatureVerifier",
    "WebhookReconciler",
    "parse_event",
]
