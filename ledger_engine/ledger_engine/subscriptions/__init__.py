"""Organization subscription lifecycle and audit trail."""

from ledger_engine.subscriptions.models import SubscriptionAuditEvent, SubscriptionRecord, SubscriptionStatus
from ledger_engine.subscriptions.state_machine import (
    SubscriptionChange,
    SubscriptionStateMachine,
    TransitionResult,
    map_provider_status,
)

__all__ = [
    "SubscriptionAuditEvent",
    "SubscriptionChange",
    "SubscriptionRecord",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "TransitionResult",
    "map_provider_status",
]
