# ---------------------------------------------------------
# backend/main.py
# Venuin - Venue & Event Booking Backend
#
# Run: uvicorn backend.main:app --reload (from repo root)
#
# - FastAPI + SQLite (Postgres + RLS when DATABASE_URL is set)
# - /auth/*          : register, login, refresh, logout, me
# - /api/tenant      : tenant info, usage and limits
# - /api/...         : venues, bookings, customers, proposals, payments,
#                      leads, settings, reports, super admin, AI
# - /admin/*         : dev-only helpers for package/role/status testing
# ---------------------------------------------------------

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import local modules (robust fallback for different run contexts)
try:
    from backend.config import CORS_ORIGINS, IS_DEV, IS_PROD, REFRESH_TOKEN_DAYS
    from backend.auth_context import (
        AuthContext,
        create_access_token,
        get_db,
        hash_password,
        require_auth_context,
        verify_password,
    )
    from backend.conflicts import BookingConflictError
    from backend.db import IS_POSTGRES, init_engine, now_iso, system_db
    from backend.entitlements import create_tenant, update_tenant_package, update_tenant_status
    from backend.features import get_package, get_usage_stats
    from backend.models import PackageName, TenantStatus, UserRole
    from backend.schema import init_db
    from backend.schemas_admin import LoginRequest, LogoutRequest, RefreshRequest, RegisterRequest, TokenResponse
    from backend import (
        routes_ai,
        routes_bookings,
        routes_customers,
        routes_leads,
        routes_payments,
        routes_proposals,
        routes_public,
        routes_reports,
        routes_settings,
        routes_superadmin,
        routes_venues,
    )
except ModuleNotFoundError:
    from config import CORS_ORIGINS, IS_DEV, IS_PROD, REFRESH_TOKEN_DAYS
    from auth_context import (
        AuthContext,
        create_access_token,
        get_db,
        hash_password,
        require_auth_context,
        verify_password,
    )
    from conflicts import BookingConflictError
    from db import IS_POSTGRES, init_engine, now_iso, system_db
    from entitlements import create_tenant, update_tenant_package, update_tenant_status
    from features import get_package, get_usage_stats
    from models import PackageName, TenantStatus, UserRole
    from schema import init_db
    from schemas_admin import LoginRequest, LogoutRequest, RefreshRequest, RegisterRequest, TokenResponse
    import routes_ai
    import routes_bookings
    import routes_customers
    import routes_leads
    import routes_payments
    import routes_proposals
    import routes_public
    import routes_reports
    import routes_settings
    import routes_superadmin
    import routes_venues

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------
# Token Utilities (for refresh tokens)
# --------------------------------------------------------------------

def generate_refresh_token() -> str:
    """Generate a high-entropy refresh token (not logged)."""
    return secrets.token_urlsafe(48)


def hash_token(token: str) -> str:
    """Hash a token for secure storage (SHA-256)."""
    return hashlib.sha256(token.encode()).hexdigest()


def verify_token_hash(token: str, token_hash: str) -> bool:
    return secrets.compare_digest(hash_token(token), token_hash or "")


def _user_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "email": row["email"],
        "role": row["role"],
        "tenant_id": row["tenant_id"],
        "first_name": row.get("first_name"),
        "last_name": row.get("last_name"),
    }


def _access_token_for(user: Dict[str, Any], session_id: str | None = None) -> str:
    claims: Dict[str, Any] = {"sub": str(user["id"]), "email": user["email"], "tenant_id": user["tenant_id"]}
    if session_id:
        claims["session_id"] = session_id
    return create_access_token(claims)


def _init_database() -> None:
    init_engine()
    if IS_POSTGRES:
        # Postgres schema and RLS policies come from python -m backend.migrate
        return
    conn = get_db()
    try:
        init_db(conn)
    finally:
        conn.close()


# ---------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------
app = FastAPI(title="Venuin Backend", version="0.1")

# CORS configuration from config module
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if IS_PROD else ["*"],  # Restrict origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_init_database()


@app.exception_handler(BookingConflictError)
def booking_conflict_handler(request: Request, exc: BookingConflictError) -> JSONResponse:
    logger.info("[BOOKINGS] Conflict on %s %s: existing booking id=%s",
                request.method, request.url.path, exc.conflicting.get("id"))
    return JSONResponse(status_code=409, content=exc.to_content())


app.include_router(routes_venues.router)
app.include_router(routes_customers.router)
app.include_router(routes_bookings.router)
app.include_router(routes_proposals.router)
app.include_router(routes_proposals.public_router)
app.include_router(routes_payments.router)
app.include_router(routes_payments.webhook_router)
app.include_router(routes_leads.router)
app.include_router(routes_public.router)
app.include_router(routes_settings.router)
app.include_router(routes_reports.router)
app.include_router(routes_superadmin.router)
app.include_router(routes_superadmin.audit_router)
app.include_router(routes_ai.router)


# ---------------------------------------------------------
# Routes
# ---------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# Auth endpoints
@app.post("/auth/register", response_model=TokenResponse)
def register(req: RegisterRequest):
    """
    Create a tenant (starter package, trialing) and its first tenant_admin.

    Raises:
        HTTPException(400): Email already registered
    """
    conn = system_db()
    try:
        if conn.execute("SELECT 1 FROM users WHERE email = ?", (req.email,)).fetchone():
            raise HTTPException(status_code=400, detail="Email already registered")

        tenant_id = create_tenant(conn, req.tenant_name, PackageName.starter.value,
                                  TenantStatus.trialing.value, req.email)
        try:
            cur = conn.execute(
                """
                INSERT INTO users (email, password_hash, first_name, last_name, role, tenant_id, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (req.email, hash_password(req.password), req.first_name, req.last_name,
                 UserRole.tenant_admin.value, tenant_id, now_iso()),
            )
        except sqlite3.IntegrityError:
            conn.rollback()
            raise HTTPException(status_code=400, detail="Email already registered")
        user_id = cur.lastrowid
        conn.commit()
        logger.info("[REGISTER] Created tenant_id=%s user_id=%s", tenant_id, user_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[REGISTER] DB error: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    user = {
        "id": user_id,
        "email": req.email,
        "role": UserRole.tenant_admin.value,
        "tenant_id": tenant_id,
        "first_name": req.first_name,
        "last_name": req.last_name,
    }
    return TokenResponse(access_token=_access_token_for(user), user=user)


@app.post("/auth/login")
def login(req: LoginRequest):
    email_norm = req.email.strip().lower()

    conn = system_db()
    try:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email_norm,)).fetchone()
        if not row or not verify_password(req.password, row["password_hash"]):
            logger.info("[LOGIN] Invalid credentials")
            raise HTTPException(status_code=401, detail="Invalid credentials")
        user = dict(row)
        if not user.get("is_active"):
            raise HTTPException(status_code=403, detail="Account inactive")

        session_id = str(uuid.uuid4())
        refresh_token = generate_refresh_token()
        now = datetime.utcnow()
        expires_at = now + timedelta(days=REFRESH_TOKEN_DAYS)

        conn.execute(
            """
            INSERT INTO auth_sessions (id, user_id, tenant_id, refresh_token_hash, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, user["id"], user["tenant_id"], hash_token(refresh_token),
             now.isoformat(), expires_at.isoformat()),
        )
        conn.execute("UPDATE users SET last_login_at = ? WHERE id = ?", (now_iso(), user["id"]))
        conn.commit()
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LOGIN] DB error: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    logger.info("[LOGIN] Session created: user_id=%s tenant_id=%s", user["id"], user["tenant_id"])
    return {
        "access_token": _access_token_for(user, session_id),
        "user": _user_payload(user),
        "session_id": session_id,
        "refresh_token": refresh_token,
    }


@app.post("/auth/refresh")
def refresh_token(req: RefreshRequest):
    """Refresh access token using refresh token with rotation."""
    conn = system_db()
    try:
        session = conn.execute("SELECT * FROM auth_sessions WHERE id = ?", (req.session_id,)).fetchone()
        if not session:
            raise HTTPException(status_code=401, detail="Invalid session")
        if session["revoked_at"]:
            raise HTTPException(status_code=401, detail="Session revoked")
        if datetime.utcnow() > datetime.fromisoformat(session["expires_at"]):
            raise HTTPException(status_code=401, detail="Session expired")
        if not verify_token_hash(req.refresh_token, session["refresh_token_hash"]):
            raise HTTPException(status_code=401, detail="Invalid refresh token")

        row = conn.execute("SELECT * FROM users WHERE id = ?", (session["user_id"],)).fetchone()
        if not row or not row["is_active"]:
            raise HTTPException(status_code=401, detail="User not found")
        user = dict(row)

        new_refresh_token = generate_refresh_token()
        conn.execute(
            "UPDATE auth_sessions SET refresh_token_hash = ? WHERE id = ?",
            (hash_token(new_refresh_token), req.session_id),
        )
        conn.commit()
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[AUTH] DB error on refresh: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    return {
        "access_token": _access_token_for(user, req.session_id),
        "refresh_token": new_refresh_token,
        "session_id": req.session_id,
        "user": _user_payload(user),
    }


@app.post("/auth/logout")
def logout(req: LogoutRequest):
    """Revoke a session (idempotent)."""
    conn = system_db()
    try:
        session = conn.execute("SELECT * FROM auth_sessions WHERE id = ?", (req.session_id,)).fetchone()
        if session:
            if req.refresh_token and not verify_token_hash(req.refresh_token, session["refresh_token_hash"]):
                raise HTTPException(status_code=401, detail="Invalid refresh token")
            if not session["revoked_at"]:
                conn.execute(
                    "UPDATE auth_sessions SET revoked_at = ? WHERE id = ?",
                    (datetime.utcnow().isoformat(), req.session_id),
                )
                conn.commit()
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[AUTH] DB error on logout: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
    return {"status": "ok"}


# ---------------------------------------------------------
# Identity & tenant introspection
# ---------------------------------------------------------
@app.get("/auth/me")
def me(ctx: AuthContext = Depends(require_auth_context)):
    """
    Expose the caller's identity and effective capabilities so the frontend
    can hide what the backend would refuse anyway.
    """
    return {
        "user": {"id": ctx.user_id, "email": ctx.email, "role": ctx.role},
        "tenant": {
            "id": ctx.tenant_id,
            "name": ctx.tenant_name,
            "status": ctx.tenant_status,
            "package": ctx.package,
        } if ctx.tenant_id else None,
        "role": ctx.role,
        "package": ctx.package,
        "tenant_status": ctx.tenant_status,
        "is_super_admin": ctx.is_super_admin,
        "assumed_tenant": ctx.assumed_tenant,
        "capabilities": sorted(ctx.capabilities),
    }


@app.get("/api/tenant")
def tenant_info(ctx: AuthContext = Depends(require_auth_context)):
    if not ctx.tenant_id:
        raise HTTPException(status_code=400, detail="Assume a tenant to view tenant details")

    package = get_package(ctx.package)
    conn = get_db(ctx.tenant_id, ctx.role)
    try:
        usage = get_usage_stats(conn, ctx.tenant_id)
    except sqlite3.Error as e:
        logger.error("[TENANT] DB error on usage: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    return {
        "tenant_id": ctx.tenant_id,
        "name": ctx.tenant_name,
        "status": ctx.tenant_status,
        "package": package.to_dict(),
        "usage": usage,
        "capabilities": sorted(ctx.capabilities),
    }


# ---------------------------------------------------------
# Admin endpoints (dev-only) for package/role/status testing
# ---------------------------------------------------------
@app.post("/admin/set_package")
def admin_set_package(tenant_id: int, package: str):
    """
    DEV-only endpoint to change a tenant's package.
    In production this is done through the super admin API.
    """
    if not IS_DEV:
        raise HTTPException(status_code=403, detail="Admin endpoints only available in dev")

    valid = [p.value for p in PackageName]
    if package not in valid:
        raise HTTPException(status_code=400, detail=f"Invalid package name. Valid options: {valid}")

    conn = system_db()
    try:
        if not update_tenant_package(conn, tenant_id, package):
            raise HTTPException(status_code=404, detail="Tenant not found")
    finally:
        conn.close()

    logger.info("[ADMIN] Set tenant %s package to %s", tenant_id, package)
    return {"status": "ok", "tenant_id": tenant_id, "package": package}


@app.post("/admin/set_role")
def admin_set_role(user_id: int, role: str):
    """
    DEV-only endpoint to change user role for RBAC testing.
    """
    if not IS_DEV:
        raise HTTPException(status_code=403, detail="Admin endpoints only available in dev")

    valid = [r.value for r in UserRole]
    if role not in valid:
        raise HTTPException(status_code=400, detail=f"Invalid role name. Valid options: {valid}")

    conn = system_db()
    try:
        cur = conn.execute("UPDATE users SET role = ? WHERE id = ?", (role, user_id))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="User not found")
        conn.commit()
    finally:
        conn.close()

    logger.info("[ADMIN] Set user %s role to %s", user_id, role)
    return {"status": "ok", "user_id": user_id, "role": role}


@app.post("/admin/set_tenant_status")
def admin_set_tenant_status(tenant_id: int, status: str):
    """
    DEV-only endpoint to change tenant status.
    Allows testing past_due (402 on writes), suspension and cancellation.
    """
    if not IS_DEV:
        raise HTTPException(status_code=403, detail="Admin endpoints only available in dev")

    valid = [s.value for s in TenantStatus]
    if status not in valid:
        raise HTTPException(status_code=400, detail=f"Invalid status. Valid options: {valid}")

    conn = system_db()
    try:
        if not update_tenant_status(conn, tenant_id, status):
            raise HTTPException(status_code=404, detail="Tenant not found")
    finally:
        conn.close()

    logger.info("[ADMIN] Set tenant %s status to %s", tenant_id, status)
    return {"status": "ok", "tenant_id": tenant_id, "tenant_status": status}
