"""
backend/routes_superadmin.py

Platform administration (super admin only) and the tenant audit log.

Super admin endpoints work across tenants. To touch tenant data a super
admin calls /assume-tenant and uses the returned short-lived token; every
assumption is written to admin_audit and to the tenant's audit_logs.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request

try:
    from backend.auth_context import AuthContext, create_access_token, get_db, hash_password, require_auth_context
    from backend.audit import record_admin_assumption, record_audit
    from backend.authz import Capability
    from backend.config import ASSUME_TENANT_MINUTES
    from backend.db import load_json, now_iso
    from backend.dependencies import require_capability, require_super_admin
    from backend.entitlements import create_tenant
    from backend.features import PACKAGES
    from backend.schemas_admin import AssumeTenantRequest, TenantCreateRequest, TenantUpdateRequest
    from backend.tenant import SUPER_ADMIN, get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, create_access_token, get_db, hash_password, require_auth_context
    from audit import record_admin_assumption, record_audit
    from authz import Capability
    from config import ASSUME_TENANT_MINUTES
    from db import load_json, now_iso
    from dependencies import require_capability, require_super_admin
    from entitlements import create_tenant
    from features import PACKAGES
    from schemas_admin import AssumeTenantRequest, TenantCreateRequest, TenantUpdateRequest
    from tenant import SUPER_ADMIN, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/super-admin",
    tags=["super-admin"],
    dependencies=[Depends(require_super_admin)],
)

audit_router = APIRouter(
    prefix="/api/audit-logs",
    tags=["audit"],
)

MIN_REASON_LENGTH = 10

_TENANT_SQL = """
    SELECT t.id, t.name, t.slug, t.package, t.status, t.contact_email, t.created_at, t.updated_at,
           (SELECT COUNT(*) FROM users u WHERE u.tenant_id = t.id) AS user_count,
           (SELECT COUNT(*) FROM venues v WHERE v.tenant_id = t.id) AS venue_count,
           (SELECT COUNT(*) FROM bookings b WHERE b.tenant_id = t.id) AS booking_count
    FROM tenants t
"""


def _platform_db():
    """Connection outside any single tenant; the RLS policies admit super_admin."""
    return get_db(None, SUPER_ADMIN)


def _tenant(conn: sqlite3.Connection, tenant_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute(_TENANT_SQL + " WHERE t.id = ?", (tenant_id,)).fetchone()
    return dict(row) if row else None


# ============================================================================
# Tenants
# ============================================================================

@router.get("/tenants")
def list_tenants(
    status: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="Search by name or slug"),
) -> Dict[str, Any]:
    sql = _TENANT_SQL + " WHERE 1 = 1"
    params: list = []
    if status:
        sql += " AND t.status = ?"
        params.append(status)
    if q:
        sql += " AND (lower(t.name) LIKE lower(?) OR lower(t.slug) LIKE lower(?))"
        params.extend([f"%{q}%", f"%{q}%"])
    sql += " ORDER BY t.created_at DESC, t.id DESC"

    conn = _platform_db()
    try:
        rows = conn.execute(sql, params).fetchall()
        return {"items": [dict(r) for r in rows], "total": len(rows)}
    except sqlite3.Error as e:
        logger.error("[SUPER_ADMIN] DB error listing tenants: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/tenants", status_code=201)
def create_tenant_endpoint(
    request: TenantCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    """
    Create a tenant, optionally with its first tenant_admin user.

    Raises:
        HTTPException(400): admin_email without admin_password, or email taken
    """
    if request.admin_email and not request.admin_password:
        raise HTTPException(status_code=400, detail="admin_password is required with admin_email")

    conn = _platform_db()
    try:
        tenant_id = create_tenant(
            conn, request.name, request.package.value, request.status.value, request.contact_email,
        )
        if request.admin_email:
            try:
                conn.execute(
                    """
                    INSERT INTO users (email, password_hash, role, tenant_id, is_active, created_at)
                    VALUES (?, ?, 'tenant_admin', ?, 1, ?)
                    """,
                    (request.admin_email, hash_password(request.admin_password), tenant_id, now_iso()),
                )
            except sqlite3.IntegrityError:
                conn.rollback()
                raise HTTPException(status_code=400, detail="Email already registered")
        record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="tenant.create",
                     entity_type="tenant", entity_id=tenant_id,
                     details={"package": request.package.value, "status": request.status.value})
        conn.commit()
        logger.info("[SUPER_ADMIN] Created tenant_id=%s package=%s by user_id=%s",
                    tenant_id, request.package.value, ctx.user_id)
        return _tenant(conn, tenant_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SUPER_ADMIN] DB error creating tenant: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.patch("/tenants/{tenant_id}")
def update_tenant(
    request: TenantUpdateRequest,
    tenant_id: int = Path(..., description="Tenant ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    changes = {k: v for k, v in request.model_dump(exclude_unset=True).items() if v is not None}
    for key in ("package", "status"):
        if key in changes:
            changes[key] = changes[key].value

    conn = _platform_db()
    try:
        before = _tenant(conn, tenant_id)
        if not before:
            raise HTTPException(status_code=404, detail="Tenant not found")
        if changes:
            changes["updated_at"] = now_iso()
            assignments = ", ".join(f"{col} = ?" for col in changes)
            conn.execute(f"UPDATE tenants SET {assignments} WHERE id = ?", (*changes.values(), tenant_id))
            record_audit(
                conn, tenant_id=tenant_id, user_id=ctx.user_id, action="tenant.update",
                entity_type="tenant", entity_id=tenant_id,
                details={k: {"from": before.get(k), "to": v} for k, v in changes.items() if k != "updated_at"},
            )
            conn.commit()
            logger.info("[SUPER_ADMIN] Updated tenant_id=%s fields=%s", tenant_id, sorted(changes))
        return _tenant(conn, tenant_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SUPER_ADMIN] DB error updating tenant: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/packages")
def list_packages() -> Dict[str, Any]:
    items = [p.to_dict() for p in PACKAGES.values()]
    return {"items": items, "total": len(items)}


@router.get("/analytics")
def platform_analytics() -> Dict[str, Any]:
    conn = _platform_db()
    try:
        by_status = {r["status"]: r["n"] for r in conn.execute(
            "SELECT status, COUNT(*) AS n FROM tenants GROUP BY status").fetchall()}
        by_package = {r["package"]: r["n"] for r in conn.execute(
            "SELECT package, COUNT(*) AS n FROM tenants GROUP BY package").fetchall()}

        def count(sql: str) -> int:
            return int(conn.execute(sql).fetchone()[0] or 0)

        return {
            "tenants": sum(by_status.values()),
            "tenants_by_status": by_status,
            "tenants_by_package": by_package,
            "users": count("SELECT COUNT(*) FROM users WHERE role != 'super_admin'"),
            "venues": count("SELECT COUNT(*) FROM venues"),
            "bookings": count("SELECT COUNT(*) FROM bookings"),
            "active_bookings": count("SELECT COUNT(*) FROM bookings WHERE status != 'cancelled'"),
            "booked_revenue": round(float(conn.execute(
                "SELECT COALESCE(SUM(total_amount), 0) FROM bookings WHERE status != 'cancelled'"
            ).fetchone()[0]), 2),
        }
    except sqlite3.Error as e:
        logger.error("[SUPER_ADMIN] DB error on analytics: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Assume tenant
# ============================================================================

@router.post("/assume-tenant")
def assume_tenant(
    request: AssumeTenantRequest,
    http_request: Request,
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    """
    Issue a short-lived token scoped to one tenant.

    Raises:
        HTTPException(400): reason shorter than 10 characters
        HTTPException(404): tenant does not exist
    """
    if len(request.reason or "") < MIN_REASON_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"A reason of at least {MIN_REASON_LENGTH} characters is required",
        )

    expires = datetime.utcnow() + timedelta(minutes=ASSUME_TENANT_MINUTES)
    expires_iso = expires.isoformat() + "Z"

    conn = _platform_db()
    try:
        tenant = conn.execute("SELECT id, name FROM tenants WHERE id = ?", (request.tenant_id,)).fetchone()
        if not tenant:
            raise HTTPException(status_code=404, detail="Tenant not found")

        record_admin_assumption(
            conn,
            admin_user_id=ctx.user_id,
            tenant_id=tenant["id"],
            reason=request.reason,
            ip=http_request.client.host if http_request.client else None,
            user_agent=http_request.headers.get("user-agent"),
            token_expires_at=expires_iso,
        )
        record_audit(conn, tenant_id=tenant["id"], user_id=ctx.user_id, action="tenant.assume",
                     entity_type="tenant", entity_id=tenant["id"], details={"reason": request.reason})
        conn.commit()
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SUPER_ADMIN] DB error on assume-tenant: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    token = create_access_token(
        {
            "sub": str(ctx.user_id),
            "email": ctx.email,
            "tenant_id": tenant["id"],
            "assumed_tenant_id": tenant["id"],
        },
        minutes=ASSUME_TENANT_MINUTES,
    )
    return {
        "access_token": token,
        "token_type": "bearer",
        "tenant_id": tenant["id"],
        "tenant_name": tenant["name"],
        "expires_at": expires_iso,
    }


# ============================================================================
# Audit log
# ============================================================================

@audit_router.get("", dependencies=[Depends(require_capability(Capability.AUDIT_VIEW))])
def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("tenant_id")
    sql = (f"SELECT id, tenant_id, user_id, action, entity_type, entity_id, details, created_at"
           f" FROM audit_logs WHERE {clause}")
    args = list(params)
    if entity_type:
        sql += " AND entity_type = ?"
        args.append(entity_type)
    if action:
        sql += " AND action = ?"
        args.append(action)
    sql += " ORDER BY id DESC LIMIT ?"
    args.append(limit)

    conn = scope.connect()
    try:
        rows = conn.execute(sql, args).fetchall()
    except sqlite3.Error as e:
        logger.error("[AUDIT] DB error listing audit logs: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    items = []
    for r in rows:
        item = dict(r)
        item["details"] = load_json(item["details"], {})
        items.append(item)
    return {"items": items, "total": len(items)}
