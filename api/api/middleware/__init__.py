"""Middleware components for the ledger API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
)
from api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "PrometheusMiddleware",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
    "get_user_role",
    "require_permission",
]
