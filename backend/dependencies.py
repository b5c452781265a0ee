"""
backend/dependencies.py

Reusable FastAPI dependencies for authorization and capability enforcement.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import Depends, HTTPException

try:
    from backend.auth_context import require_auth_context, AuthContext
    from backend.config import IS_DEV
except ModuleNotFoundError:
    from auth_context import require_auth_context, AuthContext
    from config import IS_DEV


logger = logging.getLogger(__name__)


def _deny_inactive_tenant(ctx: AuthContext, what: str) -> None:
    """Raise 403 when the tenant is suspended or canceled."""
    if ctx.tenant_status == "suspended":
        logger.info("[AUTHZ] Tenant suspended: tenant_id=%s %s", ctx.tenant_id, what)
        raise HTTPException(status_code=403, detail="Tenant account suspended - contact support")

    if ctx.tenant_status == "canceled":
        logger.info("[AUTHZ] Tenant canceled: tenant_id=%s %s", ctx.tenant_id, what)
        raise HTTPException(status_code=403, detail="Subscription canceled - only billing is available")


def require_active_tenant(ctx: AuthContext = Depends(require_auth_context)) -> AuthContext:
    """
    Status gate for tenant reads that no single capability covers.

    Suspended and canceled tenants get the same 403 as require_capability;
    past_due tenants can still read.
    """
    if not ctx.is_super_admin:
        _deny_inactive_tenant(ctx, "read")
    return ctx


def require_capability(capability: str) -> Callable:
    """
    FastAPI dependency factory for tenant-status-aware capability authorization.

    Capabilities are derived from:
    - User role (tenant_admin/manager/staff/viewer, super_admin = all)
    - Tenant package (starter/professional/enterprise)
    - Tenant status (suspended/canceled/past_due narrow the set)

    Usage in routes:
        @router.post("", dependencies=[Depends(require_capability("bookings:manage"))])
        def create_booking(ctx: AuthContext = Depends(require_auth_context)):
            ...

    Raises:
        HTTPException(403): Tenant suspended/canceled, or role/package lacks the capability
        HTTPException(402): Tenant past due (payment required for writes)
    """
    capability = getattr(capability, "value", capability)

    def _check_capability(ctx: AuthContext = Depends(require_auth_context)) -> AuthContext:
        if capability in ctx.capabilities:
            if IS_DEV:
                logger.debug("[AUTHZ] Capability granted: capability=%s, role=%s, package=%s",
                             capability, ctx.role, ctx.package)
            return ctx

        _deny_inactive_tenant(ctx, f"capability={capability}")

        if ctx.tenant_status == "past_due":
            if IS_DEV:
                logger.debug("[AUTHZ] Payment required: capability=%s, role=%s", capability, ctx.role)
            raise HTTPException(
                status_code=402,
                detail="Payment required - please update your billing information",
            )

        if IS_DEV:
            logger.debug("[AUTHZ] Capability denied: capability=%s, role=%s, package=%s",
                         capability, ctx.role, ctx.package)
        raise HTTPException(
            status_code=403,
            detail="Insufficient permissions - this feature is not available with your current access level",
        )

    return _check_capability


def require_super_admin(ctx: AuthContext = Depends(require_auth_context)) -> AuthContext:
    if not ctx.is_super_admin:
        logger.warning("[AUTHZ] Super admin endpoint denied: user_id=%s role=%s", ctx.user_id, ctx.role)
        raise HTTPException(status_code=403, detail="Super admin access required")
    return ctx
