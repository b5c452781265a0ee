"""
Public venue directory and website inquiries.

Covers which venues are listed, that an inquiry lands as a NEW website lead
in the tenant that owns the venue, and that nothing in the request body can
steer it into another tenant.

Run: pytest backend/test_public_inquiries.py -v
"""

import uuid

import pytest

from backend.auth_context import get_db


def _venue(client, tenant, name, city="Lisbon", capacity=150):
    response = client.post("/api/venues", json={"name": name, "city": city, "capacity": capacity},
                           headers=tenant["headers"])
    assert response.status_code == 201, response.text
    venue_id = response.json()["id"]
    space = client.post(f"/api/venues/{venue_id}/spaces", json={"name": "Terrace", "capacity": 90},
                        headers=tenant["headers"])
    assert space.status_code == 201, space.text
    return venue_id, space.json()["id"]


def _set_tenant_status(tenant_id, status):
    conn = get_db()
    try:
        conn.execute("UPDATE tenants SET status = ? WHERE id = ?", (status, tenant_id))
        conn.commit()
    finally:
        conn.close()


def _listed(client, q):
    response = client.get("/api/public/venues", params={"q": q})
    assert response.status_code == 200, response.text
    return response.json()


def _inquiry(venue_id, **overrides):
    body = {
        "venue_id": venue_id,
        "contact_name": "Ada Byron King",
        "contact_email": "Ada@Example.com",
        "event_type": "wedding",
        "event_date": "2032-05-01",
        "guest_count": 80,
        "message": "Looking for an evening reception.",
    }
    body.update(overrides)
    return body


@pytest.fixture
def two_venues(client, make_tenant):
    tag = uuid.uuid4().hex[:8]
    a = make_tenant(package="professional", name=f"Harbour Events {tag}")
    b = make_tenant(package="professional", name=f"Hilltop Venues {tag}")
    a["venue_id"], a["space_id"] = _venue(client, a, f"Harbour Loft {tag}")
    b["venue_id"], b["space_id"] = _venue(client, b, f"Hilltop Barn {tag}")
    return {"tag": tag, "a": a, "b": b}


class TestPublicVenues:
    def test_lists_active_venues_without_auth(self, client, two_venues):
        body = _listed(client, two_venues["tag"])
        assert body["total"] == 2
        names = {v["name"] for v in body["items"]}
        assert names == {f"Harbour Loft {two_venues['tag']}", f"Hilltop Barn {two_venues['tag']}"}
        venue = body["items"][0]
        assert "tenant_id" not in venue
        assert venue["tenant_name"].endswith(two_venues["tag"])
        assert venue["spaces"][0]["name"] == "Terrace"

    def test_inactive_venue_is_hidden(self, client, two_venues):
        a = two_venues["a"]
        assert client.patch(f"/api/venues/{a['venue_id']}", json={"is_active": False},
                            headers=a["headers"]).status_code == 200
        names = {v["name"] for v in _listed(client, two_venues["tag"])["items"]}
        assert names == {f"Hilltop Barn {two_venues['tag']}"}

    @pytest.mark.parametrize("status", ["suspended", "canceled", "past_due"])
    def test_inactive_tenant_is_hidden(self, client, two_venues, status):
        _set_tenant_status(two_venues["b"]["tenant_id"], status)
        names = {v["name"] for v in _listed(client, two_venues["tag"])["items"]}
        assert names == {f"Harbour Loft {two_venues['tag']}"}

    def test_package_without_leads_is_hidden(self, client, make_tenant):
        tag = uuid.uuid4().hex[:8]
        starter = make_tenant(package="starter")
        _venue(client, starter, f"Corner Room {tag}")
        assert _listed(client, tag)["total"] == 0

    def test_filters(self, client, two_venues):
        tag = two_venues["tag"]
        response = client.get("/api/public/venues", params={"q": tag, "city": "lisbon", "min_capacity": 120})
        assert response.json()["total"] == 2
        response = client.get("/api/public/venues", params={"q": tag, "min_capacity": 500})
        assert response.json()["total"] == 0
        response = client.get("/api/public/venues", params={"q": f"Harbour Loft {tag}"})
        assert [v["name"] for v in response.json()["items"]] == [f"Harbour Loft {tag}"]


class TestPublicInquiries:
    def test_inquiry_becomes_new_website_lead(self, client, two_venues):
        a = two_venues["a"]
        response = client.post("/api/public/inquiries", json=_inquiry(a["venue_id"], space_id=a["space_id"]))
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["venue_id"] == a["venue_id"]
        assert body["tenant_name"].startswith("Harbour Events")

        lead = client.get(f"/api/leads/{body['inquiry_id']}", headers=a["headers"])
        assert lead.status_code == 200
        lead = lead.json()
        assert lead["status"] == "NEW"
        assert lead["source"] == "website"
        assert lead["first_name"] == "Ada"
        assert lead["last_name"] == "Byron King"
        assert lead["email"] == "ada@example.com"
        assert lead["guest_count"] == 80
        assert "Terrace" in lead["notes"]
        assert "evening reception" in lead["notes"]

        activities = client.get(f"/api/leads/{body['inquiry_id']}/activities", headers=a["headers"])
        assert activities.status_code == 200
        assert activities.json()[0]["body"] == "Inquiry received from website"

    def test_tenant_comes_from_the_venue_not_the_body(self, client, two_venues):
        a, b = two_venues["a"], two_venues["b"]
        payload = _inquiry(a["venue_id"], tenant_id=b["tenant_id"], contact_email="steer@example.com")
        response = client.post("/api/public/inquiries", json=payload)
        assert response.status_code == 201, response.text
        lead_id = response.json()["inquiry_id"]

        assert client.get(f"/api/leads/{lead_id}", headers=a["headers"]).status_code == 200
        assert client.get(f"/api/leads/{lead_id}", headers=b["headers"]).status_code == 404
        b_emails = {lead["email"] for lead in client.get("/api/leads", headers=b["headers"]).json()["items"]}
        assert "steer@example.com" not in b_emails

    def test_space_from_another_tenant_is_rejected(self, client, two_venues):
        a, b = two_venues["a"], two_venues["b"]
        response = client.post("/api/public/inquiries", json=_inquiry(a["venue_id"], space_id=b["space_id"]))
        assert response.status_code == 400
        assert client.get("/api/leads", headers=a["headers"]).json()["total"] == 0

    def test_unknown_or_closed_venue_is_404(self, client, two_venues):
        assert client.post("/api/public/inquiries", json=_inquiry(999999)).status_code == 404
        b = two_venues["b"]
        _set_tenant_status(b["tenant_id"], "suspended")
        assert client.post("/api/public/inquiries", json=_inquiry(b["venue_id"])).status_code == 404

    @pytest.mark.parametrize("field,value", [("contact_email", "not-an-email"), ("contact_name", "  "),
                                             ("contact_email", "")])
    def test_contact_details_required(self, client, two_venues, field, value):
        response = client.post("/api/public/inquiries", json=_inquiry(two_venues["a"]["venue_id"], **{field: value}))
        assert response.status_code == 422
