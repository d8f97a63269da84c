"""API router modules for the ledger service."""

from __future__ import annotations

from api.routers import accounts, billing, health, metrics, pricing, transfers, usage

__all__ = [
    "accounts",
    "billing",
    "health",
    "metrics",
    "pricing",
    "transfers",
    "usage",
]
