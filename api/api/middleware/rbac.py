"""Role-Based Access Control for the ledger endpoints.

Two caller roles exist.  ``SERVICE`` is the product backend: it charges
usage, grants purchased credits, moves credits between accounts and reads
balances.  ``ADMIN`` is an operator and may additionally apply manual
balance corrections.  Each role inherits the permissions of the roles
below it.

Usage in routers::

    from api.middleware.rbac import Permission, Role, require_permission

    @router.post("/{account_id}/adjustments")
    async def adjust(
        ...,
        _role: Role = Depends(require_permission(Permission.ADJUST_BALANCES)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    SERVICE = 1
    ADMIN = 2


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a role string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    READ_ACCOUNTS = "read_accounts"
    OPEN_ACCOUNTS = "open_accounts"
    CHARGE_USAGE = "charge_usage"
    GRANT_CREDITS = "grant_credits"
    TRANSFER_CREDITS = "transfer_credits"
    READ_PRICING = "read_pricing"
    ADJUST_BALANCES = "adjust_balances"


_SERVICE_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_ACCOUNTS,
        Permission.OPEN_ACCOUNTS,
        Permission.CHARGE_USAGE,
        Permission.GRANT_CREDITS,
        Permission.TRANSFER_CREDITS,
        Permission.READ_PRICING,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _SERVICE_PERMS | {Permission.ADJUST_BALANCES}

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.SERVICE: _SERVICE_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Return the caller's role from ``request.state.role``.

    :class:`~api.middleware.auth.AuthenticationMiddleware` sets the role
    for every authenticated request.  A request without one reached a
    protected endpoint through a public path and is rejected.

    Raises
    ------
    HTTPException(401)
        If no role was attached to the request.
    HTTPException(403)
        If the role value is not recognised.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role '%s'; denying access", raw_role)
        raise HTTPException(status_code=403, detail=f"Unrecognised role '{raw_role}'")


# ---------------------------------------------------------------------------
# FastAPI dependencies: permission and role guards
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`Role` so handlers can inspect it.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission",
            )
        return role

    return _guard
