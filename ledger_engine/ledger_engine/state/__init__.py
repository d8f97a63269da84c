"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from ledger_engine.state.database import get_engine, session_scope
from ledger_engine.state.repository import (
    AccountRepository,
    PricingRepository,
    SubscriptionRepository,
    TransactionRepository,
    WebhookEventRepository,
)

__all__ = [
    "AccountRepository",
    "PricingRepository",
    "SubscriptionRepository",
    "TransactionRepository",
    "WebhookEventRepository",
    "get_engine",
    "session_scope",
]
