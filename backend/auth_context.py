"""
backend/auth_context.py

Shared authentication context primitives for FastAPI dependency injection.
This module breaks the circular import between main.py and dependencies.py.

Contains:
- AuthContext: Immutable tenant boundary context with package + tenant status
- require_auth_context: FastAPI dependency for auth enforcement
- create_access_token / verify_token: JWT helpers
- get_db: Database connection helper (re-exported from backend.db)

This module MUST NOT import backend.main to avoid circular dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

import bcrypt
import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

try:
    from backend.config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_MINUTES, IS_DEV
    from backend.db import get_db
    from backend.entitlements import get_tenant_state, get_entitlements
except ModuleNotFoundError:
    from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_MINUTES, IS_DEV
    from db import get_db
    from entitlements import get_tenant_state, get_entitlements

logger = logging.getLogger(__name__)

# Security scheme for HTTPBearer
security = HTTPBearer()

__all__ = [
    "AuthContext",
    "create_access_token",
    "get_db",
    "hash_password",
    "require_auth_context",
    "security",
    "verify_password",
    "verify_token",
]


# ---------------------------------------------------------
# Password hashing (bcrypt)
# ---------------------------------------------------------
def _pw_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_pw_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(_pw_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------
def create_access_token(data: Dict[str, Any], minutes: Optional[int] = None) -> str:
    """Sign an access token; `exp` defaults to ACCESS_TOKEN_MINUTES from now."""
    payload = dict(data)
    if "exp" not in payload:
        lifetime = minutes if minutes is not None else ACCESS_TOKEN_MINUTES
        payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=lifetime)
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> dict:
    """
    Verify JWT access token and return decoded payload.

    Raises:
        HTTPException(401): If token is expired or invalid
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


# ---------------------------------------------------------
# AuthContext - tenant boundary with package and status
# ---------------------------------------------------------
class AuthContext(BaseModel):
    """
    Immutable tenant boundary context derived from the JWT and the user row.
    This is the ONLY source of truth for tenant_id and user_id in protected endpoints.
    Never trust tenant_id/user_id from request bodies or query params.

    Fields:
        user_id: User ID from JWT token
        tenant_id: Tenant in scope (user's tenant, or the tenant a super admin assumed).
                   None only for a super admin operating platform-wide.
        role: super_admin/tenant_admin/manager/staff/viewer
        email: User email
        tenant_name: Display name of the tenant in scope
        tenant_status: trialing/active/past_due/suspended/canceled
        package: starter/professional/enterprise
        capabilities: Effective capabilities (role + package + status)
        is_super_admin: Role is super_admin
        assumed_tenant: tenant_id came from an assume-tenant token
    """
    user_id: int
    tenant_id: Optional[int] = None
    role: str
    email: str
    tenant_name: Optional[str] = None
    tenant_status: str = "active"
    package: str = "starter"
    capabilities: Set[str]
    is_super_admin: bool = False
    assumed_tenant: bool = False


def require_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> AuthContext:
    """
    Auth context dependency for FastAPI routes.

    Process:
    1. Verify JWT token signature and expiration
    2. Fetch user record from database (source of truth)
    3. Validate user is active
    4. Resolve tenant: assumed_tenant_id for super admins, else users.tenant_id
    5. Load tenant status/package and compute capabilities

    Raises:
        HTTPException(401): If token is invalid, expired, or user not found
        HTTPException(403): If user is inactive or has no tenant
    """
    payload = verify_token(credentials.credentials)
    user_id = payload.get("sub")

    if not user_id:
        logger.warning("[AUTH] Missing user_id in token payload")
        raise HTTPException(status_code=401, detail="Invalid token payload")

    conn = get_db()
    try:
        user_row = conn.execute(
            "SELECT id, email, role, tenant_id, is_active FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()

        if not user_row:
            logger.warning("[AUTH] User not found: user_id=%s", user_id)
            raise HTTPException(status_code=401, detail="User not found")

        if not user_row["is_active"]:
            logger.warning("[AUTH] Inactive user attempted access: user_id=%s", user_id)
            raise HTTPException(status_code=403, detail="Account inactive")

        role = user_row["role"] or "staff"
        is_super_admin = role == "super_admin"
        assumed_tenant_id = payload.get("assumed_tenant_id")

        if assumed_tenant_id and not is_super_admin:
            logger.warning("[AUTH] Non super admin presented assumed_tenant_id: user_id=%s", user_id)
            raise HTTPException(status_code=403, detail="Tenant assumption not allowed")

        tenant_id = assumed_tenant_id if is_super_admin else user_row["tenant_id"]

        if not tenant_id and not is_super_admin:
            logger.warning("[AUTH] User has no tenant_id: user_id=%s", user_id)
            raise HTTPException(status_code=403, detail="No tenant associated")

        tenant = get_tenant_state(conn, tenant_id) if tenant_id else None
        if tenant_id and tenant is None:
            logger.warning("[AUTH] Tenant not found: tenant_id=%s user_id=%s", tenant_id, user_id)
            raise HTTPException(status_code=401, detail="Tenant not found")
    finally:
        conn.close()

    ctx = AuthContext(
        user_id=user_row["id"],
        tenant_id=tenant.id if tenant else None,
        role=role,
        email=user_row["email"],
        tenant_name=tenant.name if tenant else None,
        tenant_status=tenant.status if tenant else "active",
        package=tenant.package if tenant else "enterprise",
        capabilities=get_entitlements(role, tenant),
        is_super_admin=is_super_admin,
        assumed_tenant=bool(is_super_admin and tenant),
    )

    if IS_DEV:
        logger.debug(
            "[AUTH] Authenticated: user_id=%s, tenant_id=%s, role=%s, status=%s, package=%s, capabilities=%d",
            ctx.user_id, ctx.tenant_id, ctx.role, ctx.tenant_status, ctx.package, len(ctx.capabilities),
        )

    return ctx
