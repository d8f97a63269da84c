"""HTTP surface for the credit ledger."""

__version__ = "0.4.0"
