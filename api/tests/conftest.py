"""Shared fixtures for the ledger API tests.

Each test gets its own in-memory SQLite database, a services bundle built
over it, and an ``httpx`` client bound to a freshly created application
whose services dependency points at that bundle.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from ledger_engine.config import LedgerSettings
from ledger_engine.services import LedgerServices, build_services
from ledger_engine.state.database import get_session_factory
from ledger_engine.state.repository import PricingRepository
from ledger_engine.state.tables import Base
from ledger_engine.webhooks.signature import StripeSignatureVerifier
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from api.config import APISettings
from api.dependencies import get_services
from api.main import create_app

SERVICE_TOKEN = "svc-test-token"
ADMIN_TOKEN = "admin-test-token"
WEBHOOK_SECRET = "whsec_api_tests"

SERVICE_HEADERS: dict[str, str] = {"Authorization": f"Bearer {SERVICE_TOKEN}"}
ADMIN_HEADERS: dict[str, str] = {"Authorization": f"Bearer {ADMIN_TOKEN}"}

EUR = 100_000


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for *payload*."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_settings() -> APISettings:
    return APISettings(
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        service_token=SecretStr(SERVICE_TOKEN),
        admin_token=SecretStr(ADMIN_TOKEN),
        stripe_webhook_secret=SecretStr(WEBHOOK_SECRET),
    )


@pytest.fixture()
def ledger_settings() -> LedgerSettings:
    return LedgerSettings(
        database_url="sqlite+aiosqlite://",
        pricing_refresh_seconds=0,
        welcome_credits=Decimal("1.00"),
        default_credits_per_seat=Decimal("1.00"),
        plan_credits_per_seat={"team": Decimal("5.00")},
    )


# ---------------------------------------------------------------------------
# Services over an in-memory database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def services(ledger_settings: LedgerSettings) -> AsyncGenerator[LedgerServices, None]:
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    bundle = build_services(ledger_settings, engine=engine, verifier=StripeSignatureVerifier(WEBHOOK_SECRET))

    async with get_session_factory(engine)() as session:
        repo = PricingRepository(session)
        await repo.upsert("gpt-4o-mini", "openai", Decimal("0.15"), Decimal("0.60"))
        await repo.upsert("claude-sonnet", "anthropic", Decimal("3"), Decimal("15"), Decimal("1.2"))
        await session.commit()

    yield bundle
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(api_settings: APISettings, services: LedgerServices):
    application = create_app(api_settings)
    application.dependency_overrides[get_services] = lambda: services
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def service_headers() -> dict[str, str]:
    return dict(SERVICE_HEADERS)


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return dict(ADMIN_HEADERS)


@pytest.fixture()
def webhook_signer():
    """Return :func:`sign_webhook` for tests that post provider events."""
    return sign_webhook
