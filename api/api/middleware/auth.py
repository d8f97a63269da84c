"""Bearer-token authentication middleware.

Callers present ``Authorization: Bearer <token>``.  The token is compared
in constant time against the configured service and admin tokens, and
the matching role is stored on ``request.state.role`` for the RBAC guards
in :mod:`api.middleware.rbac`.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.  The payment
webhook is among them: it authenticates through its signature header
instead of a bearer token.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.middleware.rbac import Role

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)

# Prefixes that skip auth (static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces static bearer-token authentication.

    On each request the middleware:

    1. Skips public paths (health, readiness, metrics, docs, webhooks).
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Matches the token against the configured role tokens.
    4. Stores ``sub`` and ``role`` on ``request.state``.
    5. Returns a 401 JSON response on failure.

    Parameters
    ----------
    app:
        The wrapped ASGI application.
    service_token, admin_token:
        Secrets for the two roles.  An empty secret disables its role.
    """

    def __init__(self, app: Any, *, service_token: SecretStr, admin_token: SecretStr) -> None:
        super().__init__(app)
        self._tokens: list[tuple[bytes, Role]] = [
            (token.get_secret_value().encode(), role)
            for token, role in ((admin_token, Role.ADMIN), (service_token, Role.SERVICE))
            if token.get_secret_value()
        ]
        if not self._tokens:
            logger.warning("No API tokens configured; every protected endpoint will return 401")

    def _match(self, presented: str) -> Role | None:
        candidate = presented.encode()
        matched: Role | None = None
        # Compare against every token so timing does not reveal which one matched.
        for token, role in self._tokens:
            if secrets.compare_digest(candidate, token) and matched is None:
                matched = role
        return matched

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        role = self._match(parts[1].strip())
        if role is None:
            logger.warning("Rejected bearer token on %s %s", request.method, request.url.path)
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})

        request.state.sub = role.name.lower()
        request.state.role = role.name.lower()
        return await call_next(request)
