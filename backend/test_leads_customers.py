"""
Lead pipeline (activities, status changes, conversion) and customer CRUD.

Run: pytest backend/test_leads_customers.py -v
"""

import uuid

import pytest


@pytest.fixture
def tenant(make_tenant):
    return make_tenant(package="professional")


def _email(prefix):
    return f"{prefix}_{uuid.uuid4().hex[:8]}@example.com"


def _lead(client, tenant, **overrides):
    body = {"first_name": "Ada", "last_name": "Byron", "email": _email("ada"), "source": "website",
            "event_type": "wedding", "guest_count": 120}
    body.update(overrides)
    response = client.post("/api/leads", json=body, headers=tenant["headers"])
    assert response.status_code == 201, response.text
    return response.json()


class TestLeads:
    def test_create_defaults_to_new(self, client, tenant):
        lead = _lead(client, tenant, email="  ADA.Mixed@Example.com ")
        assert lead["status"] == "NEW"
        assert lead["email"] == "ada.mixed@example.com"
        assert lead["customer_id"] is None

    def test_list_filters_by_status_and_search(self, client, tenant):
        _lead(client, tenant, first_name="Searchable")
        won = _lead(client, tenant, first_name="Closed", status="WON")

        by_status = client.get("/api/leads", params={"status": "WON"}, headers=tenant["headers"]).json()
        assert [item["id"] for item in by_status["items"]] == [won["id"]]

        by_name = client.get("/api/leads", params={"q": "searchable"}, headers=tenant["headers"]).json()
        assert by_name["total"] == 1

        assert client.get("/api/leads", params={"status": "MAYBE"}, headers=tenant["headers"]).status_code == 422

    def test_status_change_writes_activity(self, client, tenant):
        lead = _lead(client, tenant)
        response = client.patch(f"/api/leads/{lead['id']}", json={"status": "CONTACTED"}, headers=tenant["headers"])
        assert response.status_code == 200
        assert response.json()["status"] == "CONTACTED"

        activities = client.get(f"/api/leads/{lead['id']}/activities", headers=tenant["headers"]).json()
        assert activities[0]["type"] == "STATUS_CHANGE"
        assert activities[0]["meta"] == {"from": "NEW", "to": "CONTACTED"}

    def test_same_status_writes_no_activity(self, client, tenant):
        lead = _lead(client, tenant)
        client.patch(f"/api/leads/{lead['id']}", json={"status": "NEW"}, headers=tenant["headers"])
        assert client.get(f"/api/leads/{lead['id']}/activities", headers=tenant["headers"]).json() == []

    def test_add_note(self, client, tenant):
        lead = _lead(client, tenant)
        response = client.post(f"/api/leads/{lead['id']}/activities", json={"type": "CALL", "body": "Left voicemail"},
                               headers=tenant["headers"])
        assert response.status_code == 201
        assert response.json()["type"] == "CALL"
        assert response.json()["created_by"] == tenant["user_id"]

    def test_convert_creates_customer(self, client, tenant):
        lead = _lead(client, tenant)
        response = client.post(f"/api/leads/{lead['id']}/convert", headers=tenant["headers"])
        assert response.status_code == 200, response.text
        customer = response.json()
        assert customer["name"] == "Ada Byron"
        assert customer["email"] == lead["email"]

        converted = client.get(f"/api/leads/{lead['id']}", headers=tenant["headers"]).json()
        assert converted["status"] == "WON"
        assert converted["customer_id"] == customer["id"]

        activities = client.get(f"/api/leads/{lead['id']}/activities", headers=tenant["headers"]).json()
        assert activities[0]["type"] == "CONVERTED"
        assert activities[0]["meta"]["reused_customer"] is False

    def test_convert_reuses_customer_with_same_email(self, client, tenant):
        email = _email("repeat")
        existing = client.post("/api/customers", json={"name": "Repeat Client", "email": email},
                               headers=tenant["headers"]).json()
        lead = _lead(client, tenant, email=email)

        customer = client.post(f"/api/leads/{lead['id']}/convert", headers=tenant["headers"]).json()
        assert customer["id"] == existing["id"]
        assert customer["name"] == "Repeat Client"

    def test_delete_lead(self, client, tenant):
        lead = _lead(client, tenant)
        client.post(f"/api/leads/{lead['id']}/activities", json={"body": "note"}, headers=tenant["headers"])
        assert client.delete(f"/api/leads/{lead['id']}", headers=tenant["headers"]).status_code == 204
        assert client.get(f"/api/leads/{lead['id']}", headers=tenant["headers"]).status_code == 404

    def test_viewer_can_read_but_not_write(self, client, tenant, add_user):
        viewer = add_user(tenant, role="viewer")
        assert client.get("/api/leads", headers=viewer["headers"]).status_code == 200
        response = client.post("/api/leads", json={"first_name": "Nope"}, headers=viewer["headers"])
        assert response.status_code == 403


class TestCustomers:
    def test_duplicate_email_is_409(self, client, tenant):
        email = _email("dup")
        assert client.post("/api/customers", json={"name": "First", "email": email},
                           headers=tenant["headers"]).status_code == 201
        response = client.post("/api/customers", json={"name": "Second", "email": email.upper()},
                               headers=tenant["headers"])
        assert response.status_code == 409
        assert response.json()["detail"] == "A customer with this email already exists"

    def test_same_email_in_another_tenant_is_fine(self, client, tenant, make_tenant):
        email = _email("shared")
        other = make_tenant(package="starter")
        assert client.post("/api/customers", json={"name": "Here", "email": email},
                           headers=tenant["headers"]).status_code == 201
        assert client.post("/api/customers", json={"name": "There", "email": email},
                           headers=other["headers"]).status_code == 201

    def test_invalid_email_is_422(self, client, tenant):
        response = client.post("/api/customers", json={"name": "Bad", "email": "not-an-email"},
                               headers=tenant["headers"])
        assert response.status_code == 422

    def test_update_and_search(self, client, tenant):
        created = client.post("/api/customers", json={"name": "Katherine Johnson", "email": _email("kj")},
                              headers=tenant["headers"]).json()
        updated = client.patch(f"/api/customers/{created['id']}", json={"phone": "555-0100"},
                               headers=tenant["headers"])
        assert updated.status_code == 200
        assert updated.json()["phone"] == "555-0100"

        found = client.get("/api/customers", params={"q": "katherine"}, headers=tenant["headers"]).json()
        assert [c["id"] for c in found["items"]] == [created["id"]]

    def test_delete_blocked_by_active_booking(self, client, tenant, venue_space, booking_payload):
        _, space_id = venue_space(tenant)
        customer = client.post("/api/customers", json={"name": "Busy Client", "email": _email("busy")},
                               headers=tenant["headers"]).json()
        booking = client.post("/api/bookings",
                              json=booking_payload(space_id, event_date="2032-03-03", customer_id=customer["id"]),
                              headers=tenant["headers"])
        assert booking.status_code == 201, booking.text

        response = client.delete(f"/api/customers/{customer['id']}", headers=tenant["headers"])
        assert response.status_code == 409

        history = client.get(f"/api/customers/{customer['id']}/bookings", headers=tenant["headers"]).json()
        assert [b["id"] for b in history] == [booking.json()["id"]]

        client.post(f"/api/bookings/{booking.json()['id']}/cancel", json={"reason": "client_request"},
                    headers=tenant["headers"])
        assert client.delete(f"/api/customers/{customer['id']}", headers=tenant["headers"]).status_code == 204
