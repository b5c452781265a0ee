"""
Multi-tenant security isolation tests.

Tests that verify:
1. Tenant A cannot read or change Tenant B's venues, customers or bookings
2. Lists are scoped by tenant_id
3. Cross-tenant access returns 404 (not 403, to avoid leaking existence)
4. Conflict checks never look at another tenant's calendar

Run: pytest backend/test_multitenant_security.py -v
"""

import pytest


@pytest.fixture
def two_tenants(make_tenant, venue_space, client):
    """Two professional tenants, each with one venue/space and one customer."""
    tenants = {}
    for key in ("a", "b"):
        tenant = make_tenant(package="professional")
        venue_id, space_id = venue_space(tenant)
        customer = client.post(
            "/api/customers",
            json={"name": f"Customer {key.upper()}", "email": f"customer_{key}_{tenant['tenant_id']}@example.com"},
            headers=tenant["headers"],
        )
        assert customer.status_code == 201, customer.text
        tenant.update(venue_id=venue_id, space_id=space_id, customer_id=customer.json()["id"])
        tenants[key] = tenant
    return tenants


def test_booking_lists_are_isolated(client, two_tenants, booking_payload):
    a, b = two_tenants["a"], two_tenants["b"]
    created_a = client.post("/api/bookings", json=booking_payload(a["space_id"], event_name="TEST_A_Gala"),
                            headers=a["headers"])
    created_b = client.post("/api/bookings", json=booking_payload(b["space_id"], event_name="TEST_B_Gala"),
                            headers=b["headers"])
    assert created_a.status_code == 201, created_a.text
    assert created_b.status_code == 201, created_b.text

    names_a = [item["event_name"] for item in client.get("/api/bookings", headers=a["headers"]).json()["items"]]
    names_b = [item["event_name"] for item in client.get("/api/bookings", headers=b["headers"]).json()["items"]]
    assert names_a == ["TEST_A_Gala"]
    assert names_b == ["TEST_B_Gala"]


def test_cross_tenant_booking_read_and_delete_is_404(client, two_tenants, booking_payload):
    a, b = two_tenants["a"], two_tenants["b"]
    booking_id = client.post("/api/bookings", json=booking_payload(a["space_id"]),
                             headers=a["headers"]).json()["id"]

    assert client.get(f"/api/bookings/{booking_id}", headers=b["headers"]).status_code == 404
    patch = client.patch(f"/api/bookings/{booking_id}", json={"event_name": "Hijacked"}, headers=b["headers"])
    assert patch.status_code == 404
    delete = client.delete(f"/api/bookings/{booking_id}", headers=b["headers"])
    assert delete.status_code == 404
    assert "not found" in delete.json()["detail"].lower()

    still_there = client.get(f"/api/bookings/{booking_id}", headers=a["headers"])
    assert still_there.status_code == 200
    assert still_there.json()["event_name"] == "Spring Gala"


def test_cannot_book_another_tenants_space(client, two_tenants, booking_payload):
    a, b = two_tenants["a"], two_tenants["b"]
    response = client.post("/api/bookings", json=booking_payload(b["space_id"]), headers=a["headers"])
    assert response.status_code == 404
    assert response.json()["detail"] == "Space not found"


def test_cannot_attach_another_tenants_customer(client, two_tenants, booking_payload):
    a, b = two_tenants["a"], two_tenants["b"]
    payload = booking_payload(a["space_id"], customer_id=b["customer_id"])
    response = client.post("/api/bookings", json=payload, headers=a["headers"])
    assert response.status_code == 404
    assert response.json()["detail"] == "Customer not found"


def test_cross_tenant_venue_and_customer_are_404(client, two_tenants):
    a, b = two_tenants["a"], two_tenants["b"]
    assert client.get(f"/api/venues/{a['venue_id']}", headers=b["headers"]).status_code == 404
    assert client.delete(f"/api/venues/{a['venue_id']}", headers=b["headers"]).status_code == 404
    assert client.get(f"/api/spaces/{a['space_id']}", headers=b["headers"]).status_code == 404
    assert client.get(f"/api/customers/{a['customer_id']}", headers=b["headers"]).status_code == 404

    venues_b = client.get("/api/venues", headers=b["headers"]).json()["items"]
    assert [v["id"] for v in venues_b] == [b["venue_id"]]


def test_same_slot_in_two_tenants_does_not_conflict(client, two_tenants, booking_payload):
    a, b = two_tenants["a"], two_tenants["b"]
    payload = dict(event_date="2031-08-08", start="18:00", end="23:00")
    assert client.post("/api/bookings", json=booking_payload(a["space_id"], **payload),
                       headers=a["headers"]).status_code == 201
    assert client.post("/api/bookings", json=booking_payload(b["space_id"], **payload),
                       headers=b["headers"]).status_code == 201


def test_cross_tenant_proposal_and_lead_are_404(client, two_tenants):
    a, b = two_tenants["a"], two_tenants["b"]
    proposal = client.post(
        "/api/proposals",
        json={"customer_id": a["customer_id"], "title": "Wedding package", "total_amount": 5000},
        headers=a["headers"],
    )
    assert proposal.status_code == 201, proposal.text
    lead = client.post("/api/leads", json={"first_name": "Grace", "email": "grace@example.com"},
                       headers=a["headers"])
    assert lead.status_code == 201, lead.text

    assert client.get(f"/api/proposals/{proposal.json()['id']}", headers=b["headers"]).status_code == 404
    assert client.post(f"/api/proposals/{proposal.json()['id']}/send", headers=b["headers"]).status_code == 404
    assert client.get(f"/api/leads/{lead.json()['id']}", headers=b["headers"]).status_code == 404
    assert client.post(f"/api/leads/{lead.json()['id']}/convert", headers=b["headers"]).status_code == 404


def test_proposal_for_foreign_customer_is_404(client, two_tenants):
    a, b = two_tenants["a"], two_tenants["b"]
    response = client.post(
        "/api/proposals",
        json={"customer_id": b["customer_id"], "title": "Not yours"},
        headers=a["headers"],
    )
    assert response.status_code == 404


def test_requests_without_token_are_rejected(client):
    # HTTPBearer answers 403 when the header is missing
    assert client.get("/api/bookings").status_code in (401, 403)
    bad = client.get("/api/bookings", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401
    assert bad.json()["detail"] == "Invalid token"
