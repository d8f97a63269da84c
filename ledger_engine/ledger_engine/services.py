"""Wiring of the engine components over one database engine.

The API and the CLI both build their collaborators here so that there is
no process-wide ledger singleton: each owner creates a
:class:`LedgerServices` bundle and passes it where it is needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from ledger_engine.config import LedgerSettings
from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.sql_store import SqlLedgerStore
from ledger_engine.metering.charger import UsageCharger
from ledger_engine.pricing.catalog import PricingCatalog, sql_pricing_loader
from ledger_engine.retry import RetryConfig
from ledger_engine.state.database import get_engine, get_session_factory
from ledger_engine.webhooks.reconciler import WebhookReconciler
from ledger_engine.webhooks.signature import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    settings: LedgerSettings
    engine: AsyncEngine
    store: SqlLedgerStore
    ledger: CreditLedger
    catalog: PricingCatalog
    charger: UsageCharger
    reconciler: WebhookReconciler

    async def dispose(self) -> None:
        await self.engine.dispose()


def build_services(
    settings: LedgerSettings,
    *,
    engine: AsyncEngine | None = None,
    verifier: SignatureVerifier | None = None,
) -> LedgerServices:
    """Create the store, ledger, pricing catalog, charger and reconciler.

    Parameters
    ----------
    settings:
        Engine configuration.
    engine:
        Existing engine to reuse; one is created from
        ``settings.database_url`` otherwise.
    verifier:
        Webhook signature verifier for the reconciler.
    """
    if engine is None:
        engine = get_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    session_factory = get_session_factory(engine)
    store = SqlLedgerStore(session_factory=session_factory)
    ledger = CreditLedger(store, timeout_seconds=settings.store_timeout_seconds)
    catalog = PricingCatalog(
        sql_pricing_loader(session_factory),
        default_markup=settings.default_markup_multiplier,
        ttl_seconds=settings.pricing_refresh_seconds,
    )
    charger = UsageCharger(
        catalog,
        ledger,
        RetryConfig(max_retries=settings.charge_max_retries, base_delay=settings.charge_retry_base_delay),
    )
    reconciler = WebhookReconciler.from_settings(ledger, settings, verifier)
    logger.info("Ledger services initialised (env=%s)", settings.env.value)
    return LedgerServices(
        settings=settings,
        engine=engine,
        store=store,
        ledger=ledger,
        catalog=catalog,
        charger=charger,
        reconciler=reconciler,
    )
