"""Credit ledger engine: usage pricing, balances, and payment reconciliation."""

__version__ = "0.4.0"
