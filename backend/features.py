"""
Feature packages + usage/limit helpers for Venuin.

Server-side source of truth for what each subscription package includes and
how many users, venues and spaces a tenant may create. The frontend only
displays these values.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

UNLIMITED = -1

# ---- Feature catalogue --------------------------------------------------

FEATURES: Dict[str, str] = {
    "dashboard-analytics": "Dashboard & Analytics",
    "event-management": "Event & Booking Management",
    "customer-management": "Customer Management",
    "lead-management": "Lead Management & Scoring",
    "proposal-system": "Proposal Generation & Tracking",
    "stripe-payments": "Payment Processing (Stripe)",
    "venue-management": "Multi-Venue Management",
    "calendar-integration": "Calendar Integration",
    "advanced-reporting": "Advanced Reports & Export",
    "ai-insights": "AI-Powered Insights",
    "ai-proposal-generation": "AI Proposal Content Generation",
    "audit-logs": "Audit Logging & Security",
    "custom-branding": "Custom Branding & Themes",
    "api-access": "API Access",
}


@dataclass(frozen=True)
class FeaturePackage:
    """
    Subscription package definition (limits use -1 for unlimited).
    """
    name: str
    display_name: str
    price_monthly: int
    price_yearly: int
    features: FrozenSet[str]
    max_users: int
    max_venues: int
    max_spaces_per_venue: int
    popular: bool = False

    def limit(self, limit_name: str) -> int:
        return {
            "users": self.max_users,
            "venues": self.max_venues,
            "spaces_per_venue": self.max_spaces_per_venue,
        }.get(limit_name, UNLIMITED)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "price_monthly": self.price_monthly,
            "price_yearly": self.price_yearly,
            "popular": self.popular,
            "features": sorted(self.features),
            "limits": {
                "max_users": self.max_users,
                "max_venues": self.max_venues,
                "max_spaces_per_venue": self.max_spaces_per_venue,
            },
        }


_STARTER_FEATURES = frozenset({
    "dashboard-analytics",
    "event-management",
    "customer-management",
    "venue-management",
})

_PROFESSIONAL_FEATURES = _STARTER_FEATURES | {
    "lead-management",
    "proposal-system",
    "calendar-integration",
    "advanced-reporting",
    "ai-insights",
}

PACKAGES: Dict[str, FeaturePackage] = {
    "starter": FeaturePackage(
        "starter", "Starter", 29, 299, _STARTER_FEATURES,
        max_users=3, max_venues=1, max_spaces_per_venue=5,
    ),
    "professional": FeaturePackage(
        "professional", "Professional", 79, 799, _PROFESSIONAL_FEATURES,
        max_users=10, max_venues=3, max_spaces_per_venue=15, popular=True,
    ),
    "enterprise": FeaturePackage(
        "enterprise", "Enterprise", 149, 1499, frozenset(FEATURES),
        max_users=UNLIMITED, max_venues=UNLIMITED, max_spaces_per_venue=UNLIMITED,
    ),
}

DEFAULT_PACKAGE = "starter"


def get_package(name: Optional[str]) -> FeaturePackage:
    """Package by name; unknown names fall back to the starter package."""
    return PACKAGES.get((name or "").lower(), PACKAGES[DEFAULT_PACKAGE])


# ---- Usage stats --------------------------------------------------------


def get_usage_stats(conn: sqlite3.Connection, tenant_id: int) -> Dict[str, int]:
    """Return current usage counts used by limits."""
    stats = {"users": 0, "venues": 0}
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM users WHERE tenant_id = ? AND is_active = 1",
        (tenant_id,),
    ).fetchone()
    stats["users"] = int(row["n"]) if row else 0

    row = conn.execute(
        "SELECT COUNT(*) AS n FROM venues WHERE tenant_id = ?",
        (tenant_id,),
    ).fetchone()
    stats["venues"] = int(row["n"]) if row else 0
    return stats


def count_spaces(conn: sqlite3.Connection, tenant_id: int, venue_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM spaces WHERE tenant_id = ? AND venue_id = ?",
        (tenant_id, venue_id),
    ).fetchone()
    return int(row["n"]) if row else 0


# ---- Limit checking -----------------------------------------------------


class UsageLimitError(Exception):
    """Raised when a tenant is at its package limit."""

    def __init__(self, limit_name: str, current: int, limit: int, package_name: str):
        self.limit_name = limit_name
        self.current = current
        self.limit = limit
        self.package_name = package_name
        super().__init__(
            f"Plan limit reached: {limit_name} {current}/{limit} on {package_name} package"
        )


def require_limit(package_name: str, limit_name: str, current_count: int) -> None:
    """
    Raise UsageLimitError if creating one more item would exceed the package limit.

    Example:
        require_limit(ctx.package, "venues", usage["venues"])
    """
    package = get_package(package_name)
    limit = package.limit(limit_name)
    if limit == UNLIMITED:
        return
    if current_count >= limit:
        raise UsageLimitError(limit_name, current_count, limit, package.name)
