"""Prometheus metrics for HTTP traffic and ledger outcomes.

Exposes RED metrics (Rate, Errors, Duration) for every request plus
counters for ledger operations and webhook deliveries, incremented by the
route handlers.

Path normalisation collapses account ids and transfer ids
(``/accounts/user-42/transactions`` -> ``/accounts/{id}/transactions``)
to prevent unbounded label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "ledger_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "ledger_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

LEDGER_OPERATIONS_TOTAL = Counter(
    "ledger_operations_total",
    "Ledger operations by operation and outcome",
    ["operation", "outcome"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Payment provider webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)


def record_operation(operation: str, outcome: str) -> None:
    """Count one ledger operation outcome (``applied``, ``duplicate``, ``refused``...)."""
    LEDGER_OPERATIONS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def record_webhook(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome).inc()


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # Account ids are caller-chosen strings.
    (re.compile(r"/accounts/[^/]+"), "/accounts/{id}"),
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)

        return response
