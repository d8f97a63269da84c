"""Tests for W3C Trace Context propagation."""

from __future__ import annotations

import logging
import re

import pytest
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from api.middleware.trace_context import (
    TraceContextMiddleware,
    TraceLoggingFilter,
    get_trace_id,
    parse_traceparent,
)

_VALID_TRACEPARENT = "00-4bf92f3577b16e8153e785e29fc5f28c-d75597dee50b0cac-01"
_HEX_32 = re.compile(r"^[0-9a-f]{32}$")
_HEX_16 = re.compile(r"^[0-9a-f]{16}$")


class TestParseTraceparent:
    def test_valid(self) -> None:
        assert parse_traceparent(_VALID_TRACEPARENT) == (
            "4bf92f3577b16e8153e785e29fc5f28c",
            "d75597dee50b0cac",
            "01",
        )

    def test_uppercase_normalised(self) -> None:
        parsed = parse_traceparent(_VALID_TRACEPARENT.upper())
        assert parsed is not None
        assert parsed[0] == "4bf92f3577b16e8153e785e29fc5f28c"

    @pytest.mark.parametrize(
        "header",
        [
            "not-a-traceparent",
            "ff-4bf92f3577b16e8153e785e29fc5f28c-d75597dee50b0cac-01",
            f"00-{'0' * 32}-d75597dee50b0cac-01",
            f"00-4bf92f3577b16e8153e785e29fc5f28c-{'0' * 16}-01",
        ],
    )
    def test_invalid(self, header: str) -> None:
        assert parse_traceparent(header) is None


@pytest.fixture()
def trace_client() -> TestClient:
    async def handler(request):
        return JSONResponse(
            {
                "trace_id": request.state.trace_id,
                "span_id": request.state.span_id,
                "parent_span_id": request.state.parent_span_id,
                "context_trace_id": get_trace_id(),
            }
        )

    app = Starlette(routes=[Route("/echo", handler)])
    app.add_middleware(TraceContextMiddleware)
    return TestClient(app)


class TestTraceContextMiddleware:
    def test_generates_ids_without_header(self, trace_client: TestClient) -> None:
        resp = trace_client.get("/echo")
        data = resp.json()

        assert _HEX_32.match(data["trace_id"])
        assert _HEX_16.match(data["span_id"])
        assert data["parent_span_id"] == ""
        assert resp.headers["X-Trace-ID"] == data["trace_id"]

    def test_continues_incoming_trace(self, trace_client: TestClient) -> None:
        data = trace_client.get("/echo", headers={"traceparent": _VALID_TRACEPARENT}).json()

        assert data["trace_id"] == "4bf92f3577b16e8153e785e29fc5f28c"
        assert data["parent_span_id"] == "d75597dee50b0cac"
        assert data["span_id"] != "d75597dee50b0cac"
        assert data["context_trace_id"] == data["trace_id"]

    def test_invalid_header_starts_new_trace(self, trace_client: TestClient) -> None:
        data = trace_client.get("/echo", headers={"traceparent": "garbage"}).json()
        assert _HEX_32.match(data["trace_id"])
        assert data["parent_span_id"] == ""


class TestTraceLoggingFilter:
    def test_injects_fields(self) -> None:
        record = logging.LogRecord("x", logging.INFO, "x.py", 1, "msg", (), None)
        assert TraceLoggingFilter().filter(record) is True
        assert hasattr(record, "trace_id")
        assert hasattr(record, "span_id")
