"""FastAPI dependency injection for settings and ledger services."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, Request
from ledger_engine.config import LedgerSettings, load_ledger_settings
from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.metering.charger import UsageCharger
from ledger_engine.pricing.catalog import PricingCatalog
from ledger_engine.services import LedgerServices, build_services
from ledger_engine.webhooks.reconciler import WebhookReconciler
from ledger_engine.webhooks.signature import StripeSignatureVerifier
from sqlalchemy.ext.asyncio import AsyncEngine

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Ledger services
# ---------------------------------------------------------------------------

_services: LedgerServices | None = None


def init_services(
    settings: APISettings,
    ledger_settings: LedgerSettings | None = None,
    *,
    engine: AsyncEngine | None = None,
) -> LedgerServices:
    """Build and cache the process-wide :class:`LedgerServices` bundle.

    ``API_DATABASE_URL`` takes precedence over ``LEDGER_DATABASE_URL``.
    Without a webhook secret the reconciler has no verifier and every
    delivery is rejected as unauthenticated.
    """
    global _services  # noqa: PLW0603
    if ledger_settings is None:
        overrides = {"database_url": settings.database_url} if settings.database_url else {}
        ledger_settings = load_ledger_settings(**overrides)

    secret = settings.stripe_webhook_secret.get_secret_value()
    verifier = StripeSignatureVerifier(secret, settings.stripe_webhook_tolerance_seconds) if secret else None
    if verifier is None:
        logger.warning("API_STRIPE_WEBHOOK_SECRET is not set; webhook deliveries will be rejected")

    _services = build_services(ledger_settings, engine=engine, verifier=verifier)
    return _services


async def dispose_services() -> None:
    """Dispose the engine pool (call during shutdown)."""
    global _services  # noqa: PLW0603
    if _services is not None:
        await _services.dispose()
        _services = None


def get_services() -> LedgerServices:
    """Return the cached services bundle."""
    if _services is None:
        raise RuntimeError(
            "Ledger services have not been initialised. Ensure init_services() is called during application startup."
        )
    return _services


ServicesDep = Annotated[LedgerServices, Depends(get_services)]


def get_ledger(services: ServicesDep) -> CreditLedger:
    return services.ledger


def get_charger(services: ServicesDep) -> UsageCharger:
    return services.charger


def get_reconciler(services: ServicesDep) -> WebhookReconciler:
    return services.reconciler


def get_catalog(services: ServicesDep) -> PricingCatalog:
    return services.catalog


LedgerDep = Annotated[CreditLedger, Depends(get_ledger)]
ChargerDep = Annotated[UsageCharger, Depends(get_charger)]
ReconcilerDep = Annotated[WebhookReconciler, Depends(get_reconciler)]
CatalogDep = Annotated[PricingCatalog, Depends(get_catalog)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_caller_identity(request: Request) -> str:
    """Return the authenticated caller's identity, used as the audit actor."""
    return getattr(request.state, "sub", "anonymous")


CallerDep = Annotated[str, Depends(get_caller_identity)]
