"""TTL-cached pricing table.

The pricing table is reference data, refreshed independently of any
single request.  :class:`PricingCatalog` keeps the last loaded snapshot
as a :class:`PricingResolver` and reloads it lazily once the TTL expires.
If a reload fails while a previous snapshot exists, the stale snapshot
keeps serving and the failure is logged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.pricing.models import PricingModel
from ledger_engine.pricing.resolver import PricingResolver
from ledger_engine.state.repository import PricingRepository

logger = logging.getLogger(__name__)

PricingLoader = Callable[[], Awaitable[Sequence[PricingModel]]]


@dataclass(slots=True)
class _Snapshot:
    resolver: PricingResolver
    expires_at: float
    loaded_at: float = field(default_factory=time.monotonic)


class PricingCatalog:
    """Lazily refreshed source of :class:`PricingResolver` snapshots.

    Parameters
    ----------
    loader:
        Coroutine function returning the current pricing rows.
    default_markup:
        Global markup multiplier handed to each resolver.
    ttl_seconds:
        Snapshot lifetime.  ``0`` reloads on every call.
    """

    def __init__(
        self,
        loader: PricingLoader,
        *,
        default_markup: Decimal = Decimal("1.5"),
        ttl_seconds: float = 300,
    ) -> None:
        self._loader = loader
        self._default_markup = default_markup
        self._ttl = ttl_seconds
        self._snapshot: _Snapshot | None = None
        self._lock = asyncio.Lock()

    async def resolver(self) -> PricingResolver:
        """Return a current resolver, reloading the table if it expired."""
        snapshot = self._snapshot
        if snapshot is not None and time.monotonic() < snapshot.expires_at:
            return snapshot.resolver

        async with self._lock:
            snapshot = self._snapshot
            if snapshot is not None and time.monotonic() < snapshot.expires_at:
                return snapshot.resolver
            try:
                rows = await self._loader()
            except Exception:
                if snapshot is None:
                    raise
                logger.warning(
                    "Pricing refresh failed; serving snapshot loaded %.0fs ago",
                    time.monotonic() - snapshot.loaded_at,
                    exc_info=True,
                )
                return snapshot.resolver

            resolver = PricingResolver(rows, default_markup=self._default_markup)
            self._snapshot = _Snapshot(resolver=resolver, expires_at=time.monotonic() + self._ttl)
            logger.info("Loaded pricing table: %d models", len(rows))
            return resolver

    def invalidate(self) -> None:
        """Force the next :meth:`resolver` call to reload the table."""
        self._snapshot = None


def sql_pricing_loader(session_factory: async_sessionmaker[AsyncSession]) -> PricingLoader:
    """Build a loader reading active rows from the ``pricing_models`` table."""

    async def _load() -> list[PricingModel]:
        async with session_factory() as session:
            rows = await PricingRepository(session).list_models(active_only=True)
            return [
                PricingModel(
                    model_id=row.model_id,
                    provider=row.provider,
                    input_price_per_million=Decimal(row.input_price_per_million),
                    output_price_per_million=Decimal(row.output_price_per_million),
                    markup_multiplier=(
                        Decimal(row.markup_multiplier) if row.markup_multiplier is not None else None
                    ),
                    is_active=row.is_active,
                )
                for row in rows
            ]

    return _load
