"""
Capability enforcement tests: package x role x tenant status.

Tests that verify:
1. Package capabilities (starter < professional < enterprise)
2. Role overlay (a role never grants more than the package)
3. Tenant status narrowing (past_due -> 402 on writes, suspended/canceled -> 403)
4. /auth/me and /api/tenant expose what the backend enforces

Run: pytest backend/test_capabilities.py -v
"""

import pytest

from fastapi import HTTPException

from backend.authz import (
    ALL_CAPABILITIES,
    Capability,
    PACKAGE_CAPABILITIES,
    check_usage_against_limit,
    has_capability,
    package_at_least,
    role_at_least,
)
from backend.entitlements import TenantState, get_entitlements, narrow_by_status
from backend.rbac import can_assign_role, effective_capabilities


# ============================================================================
# Pure logic
# ============================================================================

class TestPackageCapabilities:
    def test_starter_has_core_booking_features(self):
        for cap in ("bookings:manage", "customers:manage", "venues:manage", "reports:view"):
            assert has_capability("starter", cap)

    def test_starter_lacks_professional_features(self):
        for cap in ("leads:read", "proposals:manage", "reports:advanced", "ai:use"):
            assert not has_capability("starter", cap)

    def test_professional_adds_crm_and_ai(self):
        for cap in ("leads:manage", "proposals:manage", "reports:advanced", "ai:use"):
            assert has_capability("professional", cap)
        assert not has_capability("professional", "payments:online")
        assert not has_capability("professional", "audit:view")

    def test_enterprise_has_everything(self):
        assert PACKAGE_CAPABILITIES["enterprise"] == ALL_CAPABILITIES

    def test_packages_are_nested(self):
        assert PACKAGE_CAPABILITIES["starter"] <= PACKAGE_CAPABILITIES["professional"]
        assert PACKAGE_CAPABILITIES["professional"] <= PACKAGE_CAPABILITIES["enterprise"]

    def test_unknown_package_has_nothing(self):
        assert not has_capability("platinum", "bookings:read")

    def test_hierarchies(self):
        assert package_at_least("enterprise", "professional")
        assert not package_at_least("starter", "professional")
        assert role_at_least("manager", "staff")
        assert not role_at_least("viewer", "staff")


class TestRoleOverlay:
    def test_viewer_is_read_only(self):
        caps = effective_capabilities("enterprise", "viewer")
        assert "bookings:read" in caps
        assert "reports:view" in caps
        assert not any(c.endswith(":manage") for c in caps)

    def test_staff_cannot_manage_venues_or_users(self):
        caps = effective_capabilities("enterprise", "staff")
        assert "bookings:manage" in caps
        assert "venues:manage" not in caps
        assert "users:manage" not in caps
        assert "reports:view" not in caps

    def test_manager_runs_operations_but_not_admin(self):
        caps = effective_capabilities("enterprise", "manager")
        assert {"venues:manage", "payments:online", "reports:advanced", "audit:view"} <= caps
        assert "users:manage" not in caps
        assert "settings:manage" not in caps
        assert "billing:manage" not in caps

    def test_role_never_exceeds_package(self):
        caps = effective_capabilities("starter", "tenant_admin")
        assert caps == PACKAGE_CAPABILITIES["starter"]

    def test_super_admin_gets_everything(self):
        assert effective_capabilities("starter", "super_admin") == ALL_CAPABILITIES

    def test_unknown_role_gets_nothing(self):
        assert effective_capabilities("enterprise", "intern") == set()

    def test_role_assignment(self):
        assert can_assign_role("tenant_admin", "manager")
        assert can_assign_role("tenant_admin", "tenant_admin")
        assert not can_assign_role("tenant_admin", "super_admin")
        assert not can_assign_role("manager", "staff")
        assert not can_assign_role("tenant_admin", "owner")


class TestStatusNarrowing:
    def _tenant(self, status, package="enterprise"):
        return TenantState(id=1, name="T", status=status, package=package)

    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_active_statuses_keep_everything(self, status):
        caps = get_entitlements("tenant_admin", self._tenant(status))
        assert caps == ALL_CAPABILITIES

    def test_past_due_keeps_reads_and_billing(self):
        caps = get_entitlements("tenant_admin", self._tenant("past_due"))
        assert "bookings:read" in caps
        assert "reports:view" in caps
        assert "billing:manage" in caps
        assert "bookings:manage" not in caps

    def test_canceled_keeps_billing_only(self):
        assert get_entitlements("tenant_admin", self._tenant("canceled")) == {"billing:manage"}

    def test_suspended_has_nothing(self):
        assert get_entitlements("tenant_admin", self._tenant("suspended")) == set()

    def test_super_admin_keeps_everything_in_suspended_tenant(self):
        assert get_entitlements("super_admin", self._tenant("suspended")) == ALL_CAPABILITIES

    def test_unknown_status_is_treated_as_suspended(self):
        assert narrow_by_status({"bookings:read"}, "frozen") == set()


class TestLimits:
    def test_limit_raises_402(self):
        with pytest.raises(HTTPException) as exc:
            check_usage_against_limit("starter", "venues", 1)
        assert exc.value.status_code == 402
        assert "Upgrade" in exc.value.detail

    def test_under_limit_passes(self):
        check_usage_against_limit("professional", "venues", 2)

    def test_enterprise_is_unlimited(self):
        check_usage_against_limit("enterprise", "venues", 10_000)


# ============================================================================
# Enforcement through the API
# ============================================================================

class TestEndpointEnforcement:
    def test_starter_cannot_use_leads(self, client, make_tenant):
        tenant = make_tenant(package="starter")
        response = client.get("/api/leads", headers=tenant["headers"])
        assert response.status_code == 403
        assert "Insufficient permissions" in response.json()["detail"]

    def test_professional_can_use_leads(self, client, make_tenant):
        tenant = make_tenant(package="professional")
        assert client.get("/api/leads", headers=tenant["headers"]).status_code == 200

    def test_audit_log_needs_enterprise(self, client, make_tenant):
        pro = make_tenant(package="professional")
        ent = make_tenant(package="enterprise")
        assert client.get("/api/audit-logs", headers=pro["headers"]).status_code == 403
        assert client.get("/api/audit-logs", headers=ent["headers"]).status_code == 200

    def test_viewer_cannot_create_booking(self, client, make_tenant, add_user, venue_space, booking_payload):
        admin = make_tenant(package="professional")
        _, space_id = venue_space(admin)
        viewer = add_user(admin, role="viewer")
        response = client.post("/api/bookings", json=booking_payload(space_id), headers=viewer["headers"])
        assert response.status_code == 403
        assert client.get("/api/bookings", headers=viewer["headers"]).status_code == 200

    def test_staff_cannot_create_venue(self, client, make_tenant, add_user):
        admin = make_tenant(package="professional")
        staff = add_user(admin, role="staff")
        response = client.post("/api/venues", json={"name": "Annex"}, headers=staff["headers"])
        assert response.status_code == 403

    def test_past_due_reads_ok_writes_402(self, client, make_tenant):
        tenant = make_tenant(package="professional", status="past_due")
        assert client.get("/api/customers", headers=tenant["headers"]).status_code == 200
        response = client.post("/api/customers", json={"name": "Late Payer"}, headers=tenant["headers"])
        assert response.status_code == 402
        assert "Payment required" in response.json()["detail"]

    def test_suspended_is_403_everywhere(self, client, make_tenant):
        tenant = make_tenant(package="enterprise", status="suspended")
        response = client.get("/api/bookings", headers=tenant["headers"])
        assert response.status_code == 403
        assert "suspended" in response.json()["detail"].lower()

    def test_canceled_is_403_on_reads(self, client, make_tenant):
        tenant = make_tenant(package="enterprise", status="canceled")
        response = client.get("/api/customers", headers=tenant["headers"])
        assert response.status_code == 403
        assert "canceled" in response.json()["detail"].lower()

    @pytest.mark.parametrize("path", ["/api/settings", "/api/settings/notifications"])
    @pytest.mark.parametrize("status,word", [("suspended", "suspended"), ("canceled", "canceled")])
    def test_settings_reads_blocked_for_inactive_tenant(self, client, make_tenant, path, status, word):
        tenant = make_tenant(package="enterprise", status=status)
        response = client.get(path, headers=tenant["headers"])
        assert response.status_code == 403
        assert word in response.json()["detail"].lower()

    @pytest.mark.parametrize("path", ["/api/settings", "/api/settings/notifications"])
    def test_settings_reads_open_while_past_due(self, client, make_tenant, add_user, path):
        tenant = make_tenant(package="professional", status="past_due")
        viewer = add_user(tenant, role="viewer")
        assert client.get(path, headers=tenant["headers"]).status_code == 200
        assert client.get(path, headers=viewer["headers"]).status_code == 200

    def test_starter_venue_limit_is_402(self, client, make_tenant):
        tenant = make_tenant(package="starter")
        first = client.post("/api/venues", json={"name": "Main Hall"}, headers=tenant["headers"])
        assert first.status_code == 201
        second = client.post("/api/venues", json={"name": "Garden"}, headers=tenant["headers"])
        assert second.status_code == 402
        assert "Plan limit reached" in second.json()["detail"]

    def test_inactive_user_is_403(self, client, make_tenant, add_user):
        admin = make_tenant()
        inactive = add_user(admin, role="staff", is_active=False)
        response = client.get("/auth/me", headers=inactive["headers"])
        assert response.status_code == 403
        assert response.json()["detail"] == "Account inactive"


class TestIntrospection:
    def test_me_reports_capabilities(self, client, make_tenant):
        tenant = make_tenant(package="starter", role="tenant_admin")
        body = client.get("/auth/me", headers=tenant["headers"]).json()
        assert body["package"] == "starter"
        assert body["role"] == "tenant_admin"
        assert body["tenant"]["id"] == tenant["tenant_id"]
        assert body["is_super_admin"] is False
        assert body["capabilities"] == sorted(PACKAGE_CAPABILITIES["starter"])

    def test_tenant_info_includes_usage_and_limits(self, client, make_tenant):
        tenant = make_tenant(package="professional")
        body = client.get("/api/tenant", headers=tenant["headers"]).json()
        assert body["tenant_id"] == tenant["tenant_id"]
        assert body["usage"] == {"users": 1, "venues": 0}
        assert body["package"]["name"] == "professional"
        assert Capability.LEADS_MANAGE.value in body["capabilities"]
