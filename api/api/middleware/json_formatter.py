"""Single-line JSON log formatter.

Enabled with ``API_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with one ``StreamHandler`` using this
formatter and :class:`~api.middleware.trace_context.TraceLoggingFilter`.

Each line carries ``timestamp``, ``level``, ``logger`` and ``message``,
plus ``trace_id`` / ``span_id`` when a request is active, the access-log
``request`` block, and ``exc_info`` for exceptions.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_OPTIONAL_FIELDS: tuple[str, ...] = ("trace_id", "span_id", "request")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _OPTIONAL_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
