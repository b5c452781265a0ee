"""
Proposal lifecycle (draft -> sent -> viewed -> accepted -> converted) and
the payments that move a booking along its status flow.

Run: pytest backend/test_proposals_payments.py -v
"""

import sqlite3
from unittest.mock import patch

import pytest


@pytest.fixture
def tenant(make_tenant, venue_space, client):
    tenant = make_tenant(package="professional")
    venue_id, space_id = venue_space(tenant)
    customer = client.post(
        "/api/customers",
        json={"name": "Grace Hopper", "email": f"grace_{tenant['tenant_id']}@example.com"},
        headers=tenant["headers"],
    )
    assert customer.status_code == 201, customer.text
    tenant.update(venue_id=venue_id, space_id=space_id, customer_id=customer.json()["id"])
    return tenant


@pytest.fixture
def proposal(client, tenant):
    def _create(event_date="2031-11-20", **overrides):
        body = {
            "customer_id": tenant["customer_id"],
            "title": "Autumn Wedding",
            "total_amount": 2000,
            "deposit_percent": 25,
            "event_details": {
                "event_name": "Hopper Wedding",
                "event_type": "wedding",
                "event_date": event_date,
                "start_time": "16:00",
                "end_time": "23:00",
                "guest_count": 60,
                "space_id": tenant["space_id"],
            },
        }
        body.update(overrides)
        response = client.post("/api/proposals", json=body, headers=tenant["headers"])
        assert response.status_code == 201, response.text
        return response.json()

    return _create


def _send_and_accept(client, tenant, proposal_id, signature="Grace Hopper"):
    sent = client.post(f"/api/proposals/{proposal_id}/send", headers=tenant["headers"])
    assert sent.status_code == 200, sent.text
    token = sent.json()["public_token"]
    accepted = client.post(f"/api/public/proposals/{token}/accept", json={"signature": signature})
    assert accepted.status_code == 200, accepted.text
    return token


class TestProposalLifecycle:
    def test_create_is_draft(self, proposal):
        created = proposal()
        assert created["status"] == "draft"
        assert created["public_token"] is None
        assert created["customer_name"] == "Grace Hopper"
        assert created["event_details"]["guest_count"] == 60

    def test_send_issues_token_and_logs_email(self, client, tenant, proposal):
        created = proposal()
        sent = client.post(f"/api/proposals/{created['id']}/send", headers=tenant["headers"]).json()
        assert sent["status"] == "sent"
        assert len(sent["public_token"]) >= 16
        assert sent["sent_at"]

        resent = client.post(f"/api/proposals/{created['id']}/send", headers=tenant["headers"]).json()
        assert resent["public_token"] == sent["public_token"]

        comms = client.get("/api/communications", params={"customer_id": tenant["customer_id"]},
                           headers=tenant["headers"]).json()
        assert comms["total"] >= 1
        # SMTP is not configured in tests
        assert comms["items"][0]["status"] == "skipped"

    def test_public_view_marks_viewed(self, client, tenant, proposal):
        created = proposal()
        token = client.post(f"/api/proposals/{created['id']}/send", headers=tenant["headers"]).json()["public_token"]

        public = client.get(f"/api/public/proposals/{token}")
        assert public.status_code == 200
        body = public.json()
        assert body["status"] == "viewed"
        assert body["customer_name"] == "Grace Hopper"
        assert "id" not in body

        staff_view = client.get(f"/api/proposals/{created['id']}", headers=tenant["headers"]).json()
        assert staff_view["viewed_at"]

    def test_unknown_token_is_404(self, client):
        assert client.get("/api/public/proposals/" + "x" * 32).status_code == 404

    def test_accept_requires_signature(self, client, tenant, proposal):
        created = proposal()
        token = client.post(f"/api/proposals/{created['id']}/send", headers=tenant["headers"]).json()["public_token"]
        response = client.post(f"/api/public/proposals/{token}/accept", json={"signature": "  "})
        assert response.status_code == 400

    def test_decline_closes_proposal(self, client, tenant, proposal):
        created = proposal()
        token = client.post(f"/api/proposals/{created['id']}/send", headers=tenant["headers"]).json()["public_token"]
        declined = client.post(f"/api/public/proposals/{token}/decline", json={"reason": "Over budget"})
        assert declined.status_code == 200
        assert declined.json()["status"] == "declined"
        assert "Over budget" in declined.json()["content"]

        again = client.post(f"/api/public/proposals/{token}/accept", json={"signature": "Grace"})
        assert again.status_code == 400
        assert again.json()["detail"] == "Proposal is already declined"

    def test_expired_proposal_cannot_be_accepted(self, client, tenant, proposal):
        created = proposal(valid_until="2000-01-01")
        token = client.post(f"/api/proposals/{created['id']}/send", headers=tenant["headers"]).json()["public_token"]
        response = client.post(f"/api/public/proposals/{token}/accept", json={"signature": "Grace"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Proposal has expired"

    def test_sent_proposal_cannot_be_edited(self, client, tenant, proposal):
        created = proposal()
        _send_and_accept(client, tenant, created["id"])
        response = client.patch(f"/api/proposals/{created['id']}", json={"title": "Changed"},
                                headers=tenant["headers"])
        assert response.status_code == 400


class TestConvertToBooking:
    def test_convert_accepted_proposal(self, client, tenant, proposal):
        created = proposal()
        _send_and_accept(client, tenant, created["id"])

        response = client.post(f"/api/proposals/{created['id']}/convert-to-booking", headers=tenant["headers"])
        assert response.status_code == 201, response.text
        booking = response.json()
        assert booking["status"] == "tentative"
        assert booking["total_amount"] == 2000
        assert booking["deposit_amount"] == 500
        assert booking["proposal_id"] == created["id"]
        assert booking["customer_id"] == tenant["customer_id"]
        assert booking["venue_id"] == tenant["venue_id"]

        converted = client.get(f"/api/proposals/{created['id']}", headers=tenant["headers"]).json()
        assert converted["status"] == "converted"
        assert converted["booking_id"] == booking["id"]

        # Proposal bookings do not send a second confirmation email
        comms = client.get("/api/communications", params={"booking_id": booking["id"]},
                           headers=tenant["headers"]).json()
        assert comms["total"] == 0

    def test_draft_cannot_be_converted(self, client, tenant, proposal):
        created = proposal()
        response = client.post(f"/api/proposals/{created['id']}/convert-to-booking", headers=tenant["headers"])
        assert response.status_code == 400

    def test_incomplete_event_details(self, client, tenant, proposal):
        created = proposal(event_details={"event_name": "TBD"})
        _send_and_accept(client, tenant, created["id"])
        response = client.post(f"/api/proposals/{created['id']}/convert-to-booking", headers=tenant["headers"])
        assert response.status_code == 400
        assert "incomplete" in response.json()["detail"]

    def test_slot_taken_since_proposal(self, client, tenant, proposal, booking_payload):
        created = proposal(event_date="2031-11-21")
        _send_and_accept(client, tenant, created["id"])
        blocker = client.post(
            "/api/bookings",
            json=booking_payload(tenant["space_id"], event_date="2031-11-21", start="18:00", end="20:00"),
            headers=tenant["headers"],
        )
        assert blocker.status_code == 201

        response = client.post(f"/api/proposals/{created['id']}/convert-to-booking", headers=tenant["headers"])
        assert response.status_code == 409
        assert response.json()["conflictingBooking"]["id"] == blocker.json()["id"]
        still_accepted = client.get(f"/api/proposals/{created['id']}", headers=tenant["headers"]).json()
        assert still_accepted["status"] == "accepted"

    def test_failed_convert_leaves_no_booking_behind(self, client, tenant, proposal):
        created = proposal(event_date="2031-11-22")
        _send_and_accept(client, tenant, created["id"])

        with patch("backend.booking_service.record_audit", side_effect=sqlite3.OperationalError("disk I/O error")):
            response = client.post(f"/api/proposals/{created['id']}/convert-to-booking",
                                   headers=tenant["headers"])
        assert response.status_code == 500

        listed = client.get("/api/bookings", params={"date_from": "2031-11-22", "date_to": "2031-11-22"},
                            headers=tenant["headers"]).json()
        assert listed["total"] == 0
        current = client.get(f"/api/proposals/{created['id']}", headers=tenant["headers"]).json()
        assert current["status"] == "accepted"
        assert current["booking_id"] is None

        retry = client.post(f"/api/proposals/{created['id']}/convert-to-booking", headers=tenant["headers"])
        assert retry.status_code == 201


class TestPayments:
    @pytest.fixture
    def booking(self, client, tenant, proposal):
        created = proposal(event_date="2031-12-05")
        _send_and_accept(client, tenant, created["id"])
        response = client.post(f"/api/proposals/{created['id']}/convert-to-booking", headers=tenant["headers"])
        assert response.status_code == 201
        return response.json()

    def _pay(self, client, tenant, booking_id, amount, payment_type="deposit", expect=201):
        response = client.post(
            "/api/payments",
            json={"booking_id": booking_id, "amount": amount, "payment_type": payment_type, "method": "card"},
            headers=tenant["headers"],
        )
        assert response.status_code == expect, response.text
        return response.json()

    def _booking(self, client, tenant, booking_id):
        return client.get(f"/api/bookings/{booking_id}", headers=tenant["headers"]).json()

    def test_partial_deposit_keeps_tentative(self, client, tenant, booking):
        self._pay(client, tenant, booking["id"], 200)
        current = self._booking(client, tenant, booking["id"])
        assert current["status"] == "tentative"
        assert current["deposit_paid"] is False

    def test_deposit_then_balance(self, client, tenant, booking):
        self._pay(client, tenant, booking["id"], 500)
        current = self._booking(client, tenant, booking["id"])
        assert current["status"] == "confirmed_deposit_paid"
        assert current["deposit_paid"] is True

        self._pay(client, tenant, booking["id"], 1500, payment_type="balance")
        assert self._booking(client, tenant, booking["id"])["status"] == "confirmed_fully_paid"

        listed = client.get("/api/payments", params={"booking_id": booking["id"]}, headers=tenant["headers"]).json()
        assert listed["total"] == 2

    def test_refund_is_negative_and_never_moves_status_back(self, client, tenant, booking):
        payment = self._pay(client, tenant, booking["id"], 2000, payment_type="balance")
        assert self._booking(client, tenant, booking["id"])["status"] == "confirmed_fully_paid"

        refund = client.post(f"/api/payments/{payment['id']}/refund", json={"amount": 300, "reason": "Fewer guests"},
                             headers=tenant["headers"])
        assert refund.status_code == 201, refund.text
        assert refund.json()["amount"] == -300
        assert refund.json()["payment_type"] == "refund"
        assert refund.json()["refunded_payment_id"] == payment["id"]
        assert self._booking(client, tenant, booking["id"])["status"] == "confirmed_fully_paid"

        too_much = client.post(f"/api/payments/{payment['id']}/refund", json={"amount": 1800},
                               headers=tenant["headers"])
        assert too_much.status_code == 400

        rest = client.post(f"/api/payments/{payment['id']}/refund", json={}, headers=tenant["headers"])
        assert rest.status_code == 201
        assert rest.json()["amount"] == -1700

    def test_refund_row_cannot_be_refunded(self, client, tenant, booking):
        payment = self._pay(client, tenant, booking["id"], 100)
        refund = client.post(f"/api/payments/{payment['id']}/refund", json={}, headers=tenant["headers"]).json()
        response = client.post(f"/api/payments/{refund['id']}/refund", json={}, headers=tenant["headers"])
        assert response.status_code == 400

    def test_no_payments_on_cancelled_booking(self, client, tenant, booking):
        client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "client_request"},
                    headers=tenant["headers"])
        self._pay(client, tenant, booking["id"], 100, expect=400)

    def test_online_payments_need_enterprise(self, client, tenant, booking):
        response = client.post("/api/payments/intent", json={"booking_id": booking["id"]}, headers=tenant["headers"])
        assert response.status_code == 403

    def test_online_payments_need_stripe_key(self, client, make_tenant):
        enterprise = make_tenant(package="enterprise")
        response = client.post("/api/payments/intent", json={"booking_id": 1}, headers=enterprise["headers"])
        assert response.status_code == 503
        assert response.json()["detail"] == "Online payments are not configured"
