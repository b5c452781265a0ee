"""
backend/routes_settings.py

Tenant settings (key/value), notification preferences, tenant staff
management and the outbound communications log.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query

try:
    from backend.auth_context import AuthContext, require_auth_context, hash_password
    from backend.audit import record_audit
    from backend.authz import Capability, check_usage_against_limit
    from backend.db import load_json, now_iso
    from backend.dependencies import require_active_tenant, require_capability
    from backend.email_service import DEFAULT_NOTIFICATION_PREFS, get_notification_prefs
    from backend.features import get_usage_stats
    from backend.rbac import can_assign_role
    from backend.schemas_admin import (
        NotificationSettings,
        NotificationSettingsUpdate,
        SettingsUpdateRequest,
        UserCreateRequest,
        UserListResponse,
        UserResponse,
        UserUpdateRequest,
    )
    from backend.tenant import get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context, hash_password
    from audit import record_audit
    from authz import Capability, check_usage_against_limit
    from db import load_json, now_iso
    from dependencies import require_active_tenant, require_capability
    from email_service import DEFAULT_NOTIFICATION_PREFS, get_notification_prefs
    from features import get_usage_stats
    from rbac import can_assign_role
    from schemas_admin import (
        NotificationSettings,
        NotificationSettingsUpdate,
        SettingsUpdateRequest,
        UserCreateRequest,
        UserListResponse,
        UserResponse,
        UserUpdateRequest,
    )
    from tenant import get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["settings"],
)

SETTINGS = Depends(require_capability(Capability.SETTINGS_MANAGE))
USERS = Depends(require_capability(Capability.USERS_MANAGE))
ACTIVE = Depends(require_active_tenant)

_USER_COLUMNS = "id, email, first_name, last_name, role, tenant_id, is_active, last_login_at, created_at"


def upsert_setting(conn: sqlite3.Connection, tenant_id: int, key: str, value: Any) -> None:
    conn.execute(
        """
        INSERT INTO settings (tenant_id, key, value, updated_at) VALUES (?, ?, ?, ?)
        ON CONFLICT(tenant_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (tenant_id, key, json.dumps(value), now_iso()),
    )


# ============================================================================
# Settings
# ============================================================================

@router.get("/settings", dependencies=[ACTIVE])
def get_settings(ctx: AuthContext = Depends(require_auth_context)) -> Dict[str, Any]:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        rows = conn.execute(
            "SELECT key, value FROM settings WHERE tenant_id = ? AND key != 'notifications' ORDER BY key",
            (tenant_id,),
        ).fetchall()
        return {"values": {r["key"]: load_json(r["value"], None) for r in rows}}
    except sqlite3.Error as e:
        logger.error("[SETTINGS] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/settings", dependencies=[SETTINGS])
def update_settings(
    request: SettingsUpdateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    """Upsert the given keys; keys not sent are left alone."""
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        for key, value in request.values.items():
            upsert_setting(conn, tenant_id, key, value)
        conn.commit()
        logger.info("[SETTINGS] Updated %d key(s) tenant_id=%s", len(request.values), tenant_id)
    except sqlite3.Error as e:
        logger.error("[SETTINGS] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
    return get_settings(ctx)


@router.get("/settings/notifications", response_model=NotificationSettings, dependencies=[ACTIVE])
def get_notification_settings(ctx: AuthContext = Depends(require_auth_context)) -> NotificationSettings:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        return NotificationSettings(**get_notification_prefs(conn, tenant_id))
    except sqlite3.Error as e:
        logger.error("[SETTINGS] DB error on notifications get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/settings/notifications", response_model=NotificationSettings, dependencies=[SETTINGS])
def update_notification_settings(
    request: NotificationSettingsUpdate,
    ctx: AuthContext = Depends(require_auth_context),
) -> NotificationSettings:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        prefs = get_notification_prefs(conn, tenant_id)
        prefs.update({k: v for k, v in request.model_dump(exclude_unset=True).items() if v is not None})
        upsert_setting(conn, tenant_id, "notifications", {k: prefs[k] for k in DEFAULT_NOTIFICATION_PREFS})
        conn.commit()
        return NotificationSettings(**prefs)
    except sqlite3.Error as e:
        logger.error("[SETTINGS] DB error on notifications update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/communications", dependencies=[Depends(require_capability(Capability.CUSTOMERS_READ))])
def list_communications(
    customer_id: Optional[int] = Query(None),
    booking_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("tenant_id")
    sql = (f"SELECT id, customer_id, booking_id, proposal_id, channel, recipient, subject, status, error, created_at"
           f" FROM communications WHERE {clause}")
    args = list(params)
    if customer_id is not None:
        sql += " AND customer_id = ?"
        args.append(customer_id)
    if booking_id is not None:
        sql += " AND booking_id = ?"
        args.append(booking_id)
    sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
    args.append(limit)

    conn = scope.connect()
    try:
        rows = conn.execute(sql, args).fetchall()
        return {"items": [dict(r) for r in rows], "total": len(rows)}
    except sqlite3.Error as e:
        logger.error("[SETTINGS] DB error on communications: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Tenant staff
# ============================================================================

@router.get("/users", response_model=UserListResponse, dependencies=[USERS])
def list_users(ctx: AuthContext = Depends(require_auth_context)) -> UserListResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        rows = conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE tenant_id = ? ORDER BY email", (tenant_id,)
        ).fetchall()
        return UserListResponse(items=[UserResponse(**dict(r)) for r in rows], total=len(rows))
    except sqlite3.Error as e:
        logger.error("[USERS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/users", response_model=UserResponse, status_code=201, dependencies=[USERS])
def create_user(
    request: UserCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> UserResponse:
    """
    Add a staff member to the caller's tenant.

    Raises:
        HTTPException(400): Email already registered
        HTTPException(402): Package user limit reached
        HTTPException(403): Role cannot be assigned (super_admin)
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    role = request.role.value
    if not can_assign_role(ctx.role, role):
        raise HTTPException(status_code=403, detail=f"Cannot assign role {role}")

    conn = scope.connect()
    try:
        check_usage_against_limit(ctx.package, "users", get_usage_stats(conn, tenant_id)["users"])
        try:
            cur = conn.execute(
                """
                INSERT INTO users (email, password_hash, first_name, last_name, role, tenant_id, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (request.email, hash_password(request.password), request.first_name, request.last_name,
                 role, tenant_id, now_iso()),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already registered")
        user_id = cur.lastrowid
        record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="user.create",
                     entity_type="user", entity_id=user_id, details={"email": request.email, "role": role})
        conn.commit()
        logger.info("[USERS] Created user_id=%s role=%s tenant_id=%s", user_id, role, tenant_id)
        row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return UserResponse(**dict(row))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[USERS] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.patch("/users/{user_id}", response_model=UserResponse, dependencies=[USERS])
def update_user(
    request: UserUpdateRequest,
    user_id: int = Path(..., description="User ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> UserResponse:
    """
    Change role, active flag or name of a user in the same tenant.

    Raises:
        HTTPException(400): Deactivating or demoting yourself
        HTTPException(403): Role cannot be assigned
        HTTPException(404): User not in this tenant
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)

    if changes.get("role") is not None:
        changes["role"] = changes["role"].value
        if not can_assign_role(ctx.role, changes["role"]):
            raise HTTPException(status_code=403, detail=f"Cannot assign role {changes['role']}")
    if user_id == ctx.user_id and (changes.get("is_active") is False or "role" in changes):
        raise HTTPException(status_code=400, detail="You cannot deactivate or change the role of your own account")
    if "is_active" in changes and changes["is_active"] is not None:
        changes["is_active"] = int(changes["is_active"])
    changes = {k: v for k, v in changes.items() if v is not None}

    conn = scope.connect()
    try:
        row = conn.execute("SELECT id FROM users WHERE id = ? AND tenant_id = ?", (user_id, tenant_id)).fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="User not found")
        if changes:
            assignments = ", ".join(f"{col} = ?" for col in changes)
            conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ? AND tenant_id = ?",
                (*changes.values(), user_id, tenant_id),
            )
            record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="user.update",
                         entity_type="user", entity_id=user_id, details=changes)
            conn.commit()
        row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return UserResponse(**dict(row))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[USERS] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
