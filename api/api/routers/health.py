"""Health-check and readiness probe endpoints.

``/health`` (liveness) is registered under the versioned prefix
(``/api/v1/health``) and always answers 200.  ``/ready`` is registered at
the application root and answers 503 while the ledger database is
unreachable, so orchestrators stop routing traffic to the instance.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from ledger_engine.services import LedgerServices
from sqlalchemy import text

from api import __version__
from api.dependencies import ServicesDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_db(services: LedgerServices) -> bool:
    try:
        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(services: ServicesDep) -> dict[str, Any]:
    """Return service health; ``db`` reports ``degraded`` when unreachable."""
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _check_db(services) else "degraded",
    }


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(services: ServicesDep) -> JSONResponse:
    db_ok = await _check_db(services)
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "ready" if db_ok else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if db_ok else "unavailable"},
        },
    )
