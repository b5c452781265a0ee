"""
backend/rbac.py

Role-Based Access Control (RBAC) overlay for capability-based authorization.

Effective capabilities = package capabilities AND role capabilities.
A role can never grant more than the tenant's package allows.
The super admin role is the exception: it operates across tenants and is
granted every capability.

Pure Python logic - no FastAPI imports, no database access.
"""

from typing import Set

try:
    from backend.authz import ALL_CAPABILITIES, Capability, PACKAGE_CAPABILITIES, ROLE_HIERARCHY
except ModuleNotFoundError:
    from authz import ALL_CAPABILITIES, Capability, PACKAGE_CAPABILITIES, ROLE_HIERARCHY


# ============================================================================
# Role Definitions
# ============================================================================


class Role:
    """Role constants for RBAC."""
    SUPER_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    MANAGER = "manager"
    STAFF = "staff"
    VIEWER = "viewer"


_READ = {
    Capability.VENUES_READ.value,
    Capability.BOOKINGS_READ.value,
    Capability.CUSTOMERS_READ.value,
    Capability.PROPOSALS_READ.value,
    Capability.PAYMENTS_READ.value,
    Capability.LEADS_READ.value,
}

_STAFF = _READ | {
    Capability.BOOKINGS_MANAGE.value,
    Capability.CUSTOMERS_MANAGE.value,
    Capability.LEADS_MANAGE.value,
    Capability.PROPOSALS_MANAGE.value,
    Capability.PAYMENTS_MANAGE.value,
    Capability.AI_USE.value,
}

_MANAGER = _STAFF | {
    Capability.VENUES_MANAGE.value,
    Capability.PAYMENTS_ONLINE.value,
    Capability.REPORTS_VIEW.value,
    Capability.REPORTS_ADVANCED.value,
}

# ============================================================================
# Role to Capabilities Mapping
# ============================================================================

ROLE_CAPABILITIES: dict[str, Set[str]] = {
    # Everything the package allows, including staff and billing administration
    Role.TENANT_ADMIN: set(ALL_CAPABILITIES),
    # Runs the venue day to day; no user, billing or settings administration
    Role.MANAGER: _MANAGER | {Capability.AUDIT_VIEW.value},
    # Front desk / event coordinators
    Role.STAFF: set(_STAFF),
    # Read-only access, no mutations
    Role.VIEWER: set(_READ) | {Capability.REPORTS_VIEW.value},
}


# ============================================================================
# Effective Capability Calculation
# ============================================================================


def effective_capabilities(package: str, role: str) -> Set[str]:
    """
    Calculate effective capabilities by intersecting package and role capabilities.

    Args:
        package: Tenant package (starter/professional/enterprise)
        role: User role (tenant_admin/manager/staff/viewer)

    Returns:
        Set of capability strings allowed by BOTH package AND role.
        Every capability for super_admin; empty set for unknown package or role.
    """
    role_lower = role.lower() if role else ""
    if role_lower == Role.SUPER_ADMIN:
        return set(ALL_CAPABILITIES)

    package_lower = package.lower() if package else ""
    package_caps = PACKAGE_CAPABILITIES.get(package_lower, set())
    role_caps = ROLE_CAPABILITIES.get(role_lower, set())
    return package_caps & role_caps


# ============================================================================
# Role Hierarchy Helpers
# ============================================================================


def role_level(role: str) -> int:
    """Numeric level for a role (higher = more privileged), 0 if unknown."""
    return ROLE_HIERARCHY.get(role.lower() if role else "", 0)


def can_assign_role(actor_role: str, target_role: str) -> bool:
    """
    Tenant admins may assign any tenant role; nobody assigns super_admin
    through tenant user management.
    """
    if target_role == Role.SUPER_ADMIN or target_role not in ROLE_CAPABILITIES:
        return False
    return role_level(actor_role) >= role_level(Role.TENANT_ADMIN)
