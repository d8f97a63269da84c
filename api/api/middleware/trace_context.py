"""W3C Trace Context propagation.

An incoming ``traceparent`` header (``00-<trace_id>-<parent_span>-<flags>``)
is parsed and its trace id is kept; otherwise a new one is generated.
Every request gets a fresh span id.  Both are published through
``contextvars`` so that ledger log lines written while serving the
request carry them, and the trace id is returned as ``X-Trace-ID``.
"""

from __future__ import annotations

import contextvars
import logging
import os
import re

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
_span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("span_id", default="")

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


def get_trace_id() -> str:
    """Return the current trace id, or ``""`` outside a request."""
    return _trace_id_var.get()


def get_span_id() -> str:
    return _span_id_var.get()


def parse_traceparent(header: str) -> tuple[str, str, str] | None:
    """Return ``(trace_id, parent_span_id, flags)`` or ``None`` if invalid.

    Version ``ff`` and all-zero identifiers are rejected as the W3C format
    requires.
    """
    match = _TRACEPARENT_RE.match(header.strip().lower())
    if match is None:
        return None
    version, trace_id, parent_span_id, flags = match.groups()
    if version == "ff" or trace_id == "0" * 32 or parent_span_id == "0" * 16:
        return None
    return trace_id, parent_span_id, flags


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Attach ``trace_id`` / ``span_id`` to the request and its log records."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        header = request.headers.get("traceparent", "")
        parsed = parse_traceparent(header) if header else None
        if header and parsed is None:
            logger.debug("Ignoring invalid traceparent header: %s", header)

        trace_id = parsed[0] if parsed else os.urandom(16).hex()
        span_id = os.urandom(8).hex()

        _trace_id_var.set(trace_id)
        _span_id_var.set(span_id)
        request.state.trace_id = trace_id
        request.state.span_id = span_id
        request.state.parent_span_id = parsed[1] if parsed else ""

        response = await call_next(request)
        response.headers["X-Trace-ID"] = trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Copy the active trace and span ids onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id()  # type: ignore[attr-defined]
        record.span_id = get_span_id()  # type: ignore[attr-defined]
        return True
