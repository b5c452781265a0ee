"""
backend/entitlements.py

Tenant-status-aware entitlements engine.

This module centralizes the logic for:
- Fetching tenant billing/lifecycle state from the database
- Narrowing package capabilities by tenant status
- Deriving capabilities from (role + package + status)

Status rules:
- active / trialing: full package capabilities
- past_due: read capabilities + billing (writes answer 402)
- canceled: billing only
- suspended: nothing

Source of truth: tenants table
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Set

try:
    from backend.rbac import effective_capabilities as rbac_effective_capabilities
    from backend.authz import ALL_CAPABILITIES, Capability, is_read_capability
    from backend.features import DEFAULT_PACKAGE
except ModuleNotFoundError:
    from rbac import effective_capabilities as rbac_effective_capabilities
    from authz import ALL_CAPABILITIES, Capability, is_read_capability
    from features import DEFAULT_PACKAGE


# ============================================================================
# Tenant State
# ============================================================================


@dataclass
class TenantState:
    """
    Tenant lifecycle state from database.
    """
    id: int
    name: str
    status: str  # "trialing", "active", "past_due", "suspended", "canceled"
    package: str  # "starter", "professional", "enterprise"
    stripe_customer_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ("active", "trialing")

    @property
    def is_past_due(self) -> bool:
        return self.status == "past_due"

    @property
    def is_suspended(self) -> bool:
        return self.status == "suspended"

    @property
    def is_canceled(self) -> bool:
        return self.status == "canceled"


def get_tenant_state(conn: sqlite3.Connection, tenant_id: int) -> Optional[TenantState]:
    """
    Fetch lifecycle state for a tenant, or None if the tenant does not exist.
    """
    row = conn.execute(
        "SELECT id, name, status, package, stripe_customer_id FROM tenants WHERE id = ?",
        (tenant_id,),
    ).fetchone()
    if not row:
        return None
    return TenantState(
        id=row["id"],
        name=row["name"],
        status=row["status"] or "active",
        package=row["package"] or DEFAULT_PACKAGE,
        stripe_customer_id=row["stripe_customer_id"],
    )


# ============================================================================
# Entitlements Calculation
# ============================================================================


def narrow_by_status(capabilities: Set[str], status: str) -> Set[str]:
    """Drop the capabilities a tenant status does not allow."""
    if status in ("active", "trialing"):
        return set(capabilities)
    if status == "past_due":
        return {c for c in capabilities if is_read_capability(c)} | (
            capabilities & {Capability.BILLING_MANAGE.value}
        )
    if status == "canceled":
        return capabilities & {Capability.BILLING_MANAGE.value}
    # suspended or unknown
    return set()


def get_entitlements(role: str, tenant: Optional[TenantState]) -> Set[str]:
    """
    Compute effective capabilities from (role + package + tenant status).

    A super admin keeps every capability even inside a suspended tenant so
    the tenant can be inspected and repaired.
    """
    if role == "super_admin":
        return set(ALL_CAPABILITIES)
    if tenant is None:
        return set()

    caps = rbac_effective_capabilities(tenant.package, role)
    return narrow_by_status(caps, tenant.status)


# ============================================================================
# Tenant Management Helpers
# ============================================================================


def update_tenant_status(conn: sqlite3.Connection, tenant_id: int, status: str) -> bool:
    """Update tenant status (super admin, dev helpers, Stripe webhook)."""
    cur = conn.execute(
        "UPDATE tenants SET status = ?, updated_at = ? WHERE id = ?",
        (status, datetime.utcnow().isoformat() + "Z", tenant_id),
    )
    conn.commit()
    return cur.rowcount > 0


def update_tenant_package(conn: sqlite3.Connection, tenant_id: int, package: str) -> bool:
    """Update tenant package."""
    cur = conn.execute(
        "UPDATE tenants SET package = ?, updated_at = ? WHERE id = ?",
        (package, datetime.utcnow().isoformat() + "Z", tenant_id),
    )
    conn.commit()
    return cur.rowcount > 0


_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_STRIP.sub("-", (name or "").lower()).strip("-") or "tenant"


def create_tenant(
    conn: sqlite3.Connection,
    name: str,
    package: str = DEFAULT_PACKAGE,
    status: str = "trialing",
    contact_email: Optional[str] = None,
) -> int:
    """
    Insert a tenant with a unique slug. Does not commit: registration and
    super admin creation also insert the first user in the same transaction.
    """
    base = slugify(name)
    slug, n = base, 1
    while conn.execute("SELECT 1 FROM tenants WHERE slug = ?", (slug,)).fetchone():
        n += 1
        slug = f"{base}-{n}"
    now = datetime.utcnow().isoformat() + "Z"
    cur = conn.execute(
        """
        INSERT INTO tenants (name, slug, package, status, contact_email, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (name, slug, package, status, contact_email, now, now),
    )
    return cur.lastrowid
