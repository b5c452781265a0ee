"""
backend/authz.py

Capabilities + package entitlements (backend-enforced authorization).

Single source of truth for what each feature package unlocks and how
package limits are turned into HTTP errors. Role restrictions live in
backend/rbac.py; tenant status narrowing lives in backend/entitlements.py.

Role Hierarchy: super_admin > tenant_admin > manager > staff > viewer
Package Hierarchy: starter < professional < enterprise
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Set

from fastapi import HTTPException

try:
    from backend.features import PACKAGES, UsageLimitError, get_package, require_limit
except ModuleNotFoundError:
    from features import PACKAGES, UsageLimitError, get_package, require_limit


# ============================================================================
# Capability-Based Authorization
# ============================================================================

class Capability(str, Enum):
    """Available capabilities in the Venuin platform."""

    VENUES_READ = "venues:read"
    VENUES_MANAGE = "venues:manage"

    BOOKINGS_READ = "bookings:read"
    BOOKINGS_MANAGE = "bookings:manage"

    CUSTOMERS_READ = "customers:read"
    CUSTOMERS_MANAGE = "customers:manage"

    PROPOSALS_READ = "proposals:read"
    PROPOSALS_MANAGE = "proposals:manage"

    PAYMENTS_READ = "payments:read"
    PAYMENTS_MANAGE = "payments:manage"
    PAYMENTS_ONLINE = "payments:online"

    LEADS_READ = "leads:read"
    LEADS_MANAGE = "leads:manage"

    REPORTS_VIEW = "reports:view"
    REPORTS_ADVANCED = "reports:advanced"

    SETTINGS_MANAGE = "settings:manage"
    USERS_MANAGE = "users:manage"
    BILLING_MANAGE = "billing:manage"

    AI_USE = "ai:use"
    AUDIT_VIEW = "audit:view"


ALL_CAPABILITIES: Set[str] = {c.value for c in Capability}

# Capabilities every tenant has regardless of package
BASE_CAPABILITIES: Set[str] = {
    Capability.SETTINGS_MANAGE.value,
    Capability.USERS_MANAGE.value,
    Capability.BILLING_MANAGE.value,
}

# Feature key -> capabilities it unlocks
FEATURE_CAPABILITIES: Dict[str, Set[str]] = {
    "dashboard-analytics": {Capability.REPORTS_VIEW.value},
    "event-management": {
        Capability.BOOKINGS_READ.value,
        Capability.BOOKINGS_MANAGE.value,
        Capability.PAYMENTS_READ.value,
        Capability.PAYMENTS_MANAGE.value,
    },
    "customer-management": {Capability.CUSTOMERS_READ.value, Capability.CUSTOMERS_MANAGE.value},
    "venue-management": {Capability.VENUES_READ.value, Capability.VENUES_MANAGE.value},
    "lead-management": {Capability.LEADS_READ.value, Capability.LEADS_MANAGE.value},
    "proposal-system": {Capability.PROPOSALS_READ.value, Capability.PROPOSALS_MANAGE.value},
    "stripe-payments": {Capability.PAYMENTS_ONLINE.value},
    "advanced-reporting": {Capability.REPORTS_ADVANCED.value},
    "ai-insights": {Capability.AI_USE.value},
    "ai-proposal-generation": {Capability.AI_USE.value},
    "audit-logs": {Capability.AUDIT_VIEW.value},
}


def _package_capabilities(package_name: str) -> Set[str]:
    caps = set(BASE_CAPABILITIES)
    for feature in PACKAGES[package_name].features:
        caps |= FEATURE_CAPABILITIES.get(feature, set())
    return caps


# Package to capabilities mapping
PACKAGE_CAPABILITIES: Dict[str, Set[str]] = {
    name: _package_capabilities(name) for name in PACKAGES
}


def has_capability(package_name: str, capability: str) -> bool:
    """
    Check if a package includes a capability (unknown packages have none).
    """
    package = (package_name or "").lower()
    return capability in PACKAGE_CAPABILITIES.get(package, set())


def is_read_capability(capability: str) -> bool:
    """Read-only capabilities stay available to past_due tenants."""
    return capability.endswith(":read") or capability.startswith("reports:") or capability == Capability.AUDIT_VIEW.value


# ============================================================================
# Role Hierarchy
# ============================================================================

ROLE_HIERARCHY = {
    "super_admin": 5,
    "tenant_admin": 4,
    "manager": 3,
    "staff": 2,
    "viewer": 1,
}


def role_at_least(user_role: str, required_role: str) -> bool:
    """
    Check if user_role meets the required role level.

    Example:
        role_at_least("manager", "staff") -> True
        role_at_least("staff", "manager") -> False
    """
    user_level = ROLE_HIERARCHY.get((user_role or "").lower(), 0)
    required_level = ROLE_HIERARCHY.get(required_role.lower(), 0)
    return user_level >= required_level


# ============================================================================
# Package Hierarchy
# ============================================================================

PACKAGE_HIERARCHY = {
    "starter": 1,
    "professional": 2,
    "enterprise": 3,
}


def package_at_least(package_name: str, required_package: str) -> bool:
    account_level = PACKAGE_HIERARCHY.get((package_name or "").lower(), 0)
    required_level = PACKAGE_HIERARCHY.get(required_package.lower(), 0)
    return account_level >= required_level


# ============================================================================
# Limits -> HTTP
# ============================================================================

def check_usage_against_limit(package_name: str, limit_name: str, current_count: int) -> None:
    """
    Enforce a package limit before creating an item.

    Raises:
        HTTPException(402): If the tenant is at its limit (upgrade required)
    """
    try:
        require_limit(package_name, limit_name, current_count)
    except UsageLimitError as e:
        package = get_package(package_name)
        raise HTTPException(
            status_code=402,
            detail=f"Plan limit reached: {e.limit_name} ({e.current}/{e.limit}) on the "
                   f"{package.display_name} package. Upgrade to add more.",
        )
