"""FastAPI application entry-point for the credit ledger API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from ledger_engine.errors import (
    AccountExistsError,
    AccountNotFoundError,
    DuplicateExternalRefError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LedgerValidationError,
    ReferencedEntityMissingError,
    SignatureInvalidError,
    StoreUnavailableError,
    UnknownModelError,
)
from ledger_engine.money import format_amount
from ledger_engine.state.tables import Base

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import dispose_services, init_services
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from api.routers import accounts, billing, health, pricing, transfers, usage
from api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _configure_structured_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Build the ledger services over the configured database.
    - Create the ledger tables in dev or local SQLite mode (idempotent).

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    services = init_services(settings)
    database_url = services.settings.database_url
    is_local = database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        database_url.split("@")[-1][:40],
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        async with services.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Ledger tables ensured (%s)", "local SQLite" if is_local else "dev auto-create")

    yield

    await dispose_services()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    """Map ledger errors to HTTP status codes.

    Handlers are matched on the most specific class, so subclasses listed
    here take precedence over their bases.
    """

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(request: Request, exc: InsufficientBalanceError) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                "detail": "Insufficient balance",
                "account_id": exc.account_id,
                "requested": exc.requested,
                "available": exc.available,
                "available_display": format_amount(exc.available),
            },
        )

    @app.exception_handler(UnknownModelError)
    async def unknown_model_handler(request: Request, exc: UnknownModelError) -> JSONResponse:
        logger.warning("Usage for unpriced model '%s' on %s", exc.model_id, request.url.path)
        return JSONResponse(status_code=422, content={"detail": str(exc), "model_id": exc.model_id})

    @app.exception_handler(AccountNotFoundError)
    async def account_not_found_handler(request: Request, exc: AccountNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ReferencedEntityMissingError)
    async def entity_missing_handler(request: Request, exc: ReferencedEntityMissingError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(AccountExistsError)
    async def account_exists_handler(request: Request, exc: AccountExistsError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(DuplicateExternalRefError)
    async def duplicate_reference_handler(request: Request, exc: DuplicateExternalRefError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(LedgerValidationError)
    async def validation_handler(request: Request, exc: LedgerValidationError) -> JSONResponse:
        logger.warning("Invalid ledger request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SignatureInvalidError)
    async def signature_handler(request: Request, exc: SignatureInvalidError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": "Signature verification failed"})

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.error("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Ledger store unavailable; look the operation up by its reference before retrying",
                "outcome": "unknown" if exc.outcome_unknown else "not_applied",
            },
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Credit Ledger API",
        description="Prepaid credit balances, usage charging and payment reconciliation.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(
        AuthenticationMiddleware,
        service_token=settings.service_token,
        admin_token=settings.admin_token,
    )
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(accounts.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(transfers.router, prefix="/api/v1")
    app.include_router(pricing.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # Prometheus scrape and readiness probe live outside /api/v1.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    _register_exception_handlers(app)

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
