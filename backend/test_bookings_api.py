"""
Booking API tests: creation, conflict responses, availability, updates,
cancellation, multi-date contracts and the calendar feed.

Run: pytest backend/test_bookings_api.py -v
"""

import pytest

from backend.auth_context import get_db


@pytest.fixture
def tenant(make_tenant, venue_space, client):
    tenant = make_tenant(package="professional")
    venue_id, space_id = venue_space(tenant, capacity=80)
    customer = client.post("/api/customers", json={"name": "Ada Lovelace"}, headers=tenant["headers"])
    assert customer.status_code == 201, customer.text
    tenant.update(venue_id=venue_id, space_id=space_id, customer_id=customer.json()["id"])
    return tenant


@pytest.fixture
def create(client, tenant, booking_payload):
    def _create(expect=201, **overrides):
        response = client.post("/api/bookings", json=booking_payload(tenant["space_id"], **overrides),
                               headers=tenant["headers"])
        assert response.status_code == expect, response.text
        return response.json()

    return _create


class TestCreate:
    def test_create_fills_venue_from_space(self, tenant, create):
        booking = create(customer_id=tenant["customer_id"])
        assert booking["venue_id"] == tenant["venue_id"]
        assert booking["space_name"] == "Ballroom"
        assert booking["customer_name"] == "Ada Lovelace"
        assert booking["status"] == "inquiry"
        assert booking["start_time"] == "10:00"

    def test_times_are_normalized(self, create):
        booking = create(start="9:00", end="11:30:00", event_date="2031-06-20")
        assert booking["start_time"] == "09:00"
        assert booking["end_time"] == "11:30"

    def test_overnight_window_is_rejected(self, create):
        create(expect=422, start="22:00", end="02:00")

    def test_guests_over_capacity(self, client, create):
        body = create(expect=400, guest_count=81)
        assert "exceeds capacity" in body["detail"]

    def test_space_outside_venue(self, client, tenant, booking_payload):
        other = client.post("/api/venues", json={"name": "Annex"}, headers=tenant["headers"]).json()
        payload = booking_payload(tenant["space_id"], venue_id=other["id"])
        response = client.post("/api/bookings", json=payload, headers=tenant["headers"])
        assert response.status_code == 400
        assert response.json()["detail"] == "Space does not belong to the selected venue"

    def test_legacy_status_is_mapped(self, create):
        assert create(status="confirmed", event_date="2031-06-21")["status"] == "tentative"

    @pytest.mark.parametrize("status", ["confirmed_deposit_paid", "confirmed_fully_paid", "completed", "cancelled"])
    def test_create_cannot_skip_the_booking_flow(self, client, tenant, create, status):
        body = create(expect=422, status=status, event_date="2031-06-23")
        assert "New bookings start as one of" in str(body["detail"])
        listed = client.get("/api/bookings", params={"date_from": "2031-06-23", "date_to": "2031-06-23"},
                            headers=tenant["headers"]).json()
        assert listed["total"] == 0

    @pytest.mark.parametrize("status", ["inquiry", "pending", "tentative"])
    def test_create_accepts_opening_statuses(self, create, status):
        assert create(status=status, event_date="2031-06-24", start="08:00", end="09:00")["status"] == status

    def test_create_writes_audit_row(self, tenant, create):
        booking = create(event_date="2031-06-22")
        conn = get_db()
        try:
            row = conn.execute(
                "SELECT * FROM audit_logs WHERE tenant_id = ? AND entity_type = 'booking' AND entity_id = ?",
                (tenant["tenant_id"], booking["id"]),
            ).fetchone()
        finally:
            conn.close()
        assert row["action"] == "booking.create"


class TestConflicts:
    def test_overlap_returns_409_with_conflicting_booking(self, tenant, create):
        first = create(customer_id=tenant["customer_id"], event_name="Morning Talk")
        body = create(expect=409, start="13:00", end="15:00")

        assert body["detail"] == "Time slot conflict"
        conflict = body["conflictingBooking"]
        assert conflict["id"] == first["id"]
        assert conflict["eventName"] == "Morning Talk"
        assert conflict["customerName"] == "Ada Lovelace"
        assert conflict["startTime"] == "10:00"
        assert conflict["endTime"] == "14:00"
        assert conflict["eventDate"] == "2031-06-14"
        assert conflict["status"] == "inquiry"

    def test_unknown_customer_label(self, create):
        create()
        body = create(expect=409, start="11:00", end="12:00")
        assert body["conflictingBooking"]["customerName"] == "Unknown Customer"

    def test_back_to_back_is_allowed(self, create):
        create()
        create(start="14:00", end="16:00")
        create(start="08:00", end="10:00")

    def test_other_space_same_time_is_allowed(self, client, tenant, create, booking_payload):
        space = client.post(f"/api/venues/{tenant['venue_id']}/spaces", json={"name": "Terrace", "capacity": 50},
                            headers=tenant["headers"]).json()
        create()
        response = client.post("/api/bookings", json=booking_payload(space["id"]), headers=tenant["headers"])
        assert response.status_code == 201

    def test_cancelled_booking_frees_the_slot(self, client, tenant, create):
        first = create()
        cancel = client.post(f"/api/bookings/{first['id']}/cancel", json={"reason": "client_request"},
                             headers=tenant["headers"])
        assert cancel.status_code == 200
        create()


class TestAvailability:
    def test_available_and_taken(self, client, tenant, create):
        booking = create()
        params = {"event_date": "2031-06-14", "start_time": "12:00", "end_time": "13:00",
                  "space_id": tenant["space_id"]}

        taken = client.get("/api/bookings/availability", params=params, headers=tenant["headers"]).json()
        assert taken["available"] is False
        assert taken["conflictingBooking"]["id"] == booking["id"]

        free = client.get("/api/bookings/availability", params={**params, "start_time": "14:00", "end_time": "15:00"},
                          headers=tenant["headers"]).json()
        assert free == {"available": True, "conflictingBooking": None}

        rescheduling = client.get("/api/bookings/availability",
                                  params={**params, "exclude_booking_id": booking["id"]},
                                  headers=tenant["headers"]).json()
        assert rescheduling["available"] is True

    def test_bad_window_is_400(self, client, tenant):
        params = {"event_date": "2031-06-14", "start_time": "15:00", "end_time": "13:00",
                  "space_id": tenant["space_id"]}
        response = client.get("/api/bookings/availability", params=params, headers=tenant["headers"])
        assert response.status_code == 400


class TestUpdate:
    def test_reschedule_onto_taken_slot_is_409(self, client, tenant, create):
        create()
        second = create(start="15:00", end="17:00")
        response = client.patch(f"/api/bookings/{second['id']}", json={"start_time": "13:00"},
                                headers=tenant["headers"])
        assert response.status_code == 409
        assert "conflictingBooking" in response.json()

    def test_reschedule_within_own_slot(self, client, tenant, create):
        booking = create()
        response = client.patch(f"/api/bookings/{booking['id']}", json={"start_time": "11:00", "end_time": "15:00"},
                                headers=tenant["headers"])
        assert response.status_code == 200
        assert response.json()["start_time"] == "11:00"

    def test_status_must_follow_flow(self, client, tenant, create):
        booking = create()
        skip = client.patch(f"/api/bookings/{booking['id']}", json={"status": "confirmed_fully_paid"},
                            headers=tenant["headers"])
        assert skip.status_code == 400
        assert "Invalid status transition" in skip.json()["detail"]

        step = client.patch(f"/api/bookings/{booking['id']}", json={"status": "pending"},
                            headers=tenant["headers"])
        assert step.status_code == 200
        assert step.json()["status"] == "pending"

    def test_cancel_via_patch_needs_reason(self, client, tenant, create):
        booking = create()
        response = client.patch(f"/api/bookings/{booking['id']}", json={"status": "cancelled"},
                                headers=tenant["headers"])
        assert response.status_code == 400

        response = client.patch(f"/api/bookings/{booking['id']}",
                                json={"status": "cancelled", "cancellation_reason": "weather"},
                                headers=tenant["headers"])
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["cancellation_reason"] == "weather"
        assert body["cancelled_by"] == tenant["user_id"]

    def test_end_before_start_after_merge(self, client, tenant, create):
        booking = create()
        response = client.patch(f"/api/bookings/{booking['id']}", json={"end_time": "09:00"},
                                headers=tenant["headers"])
        assert response.status_code == 400


class TestCancelAndDelete:
    def test_cancel_records_reason_and_is_idempotent(self, client, tenant, create):
        booking = create()
        url = f"/api/bookings/{booking['id']}/cancel"
        first = client.post(url, json={"reason": "venue_issue", "note": "Flooded"}, headers=tenant["headers"])
        assert first.status_code == 200
        assert first.json()["cancellation_note"] == "Flooded"
        assert first.json()["cancelled_at"]

        again = client.post(url, json={"reason": "other"}, headers=tenant["headers"])
        assert again.status_code == 200
        assert again.json()["cancellation_reason"] == "venue_issue"

    def test_cancel_requires_reason(self, client, tenant, create):
        booking = create()
        response = client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "   "},
                               headers=tenant["headers"])
        assert response.status_code in (400, 422)

    def test_completed_booking_cannot_be_cancelled(self, client, tenant, create):
        booking = create(status="tentative")
        url = f"/api/bookings/{booking['id']}"
        for step in ("confirmed_deposit_paid", "confirmed_fully_paid"):
            assert client.patch(url, json={"status": step}, headers=tenant["headers"]).status_code == 200
        done = client.patch(url, json={"status": "completed"}, headers=tenant["headers"])
        assert done.status_code == 200
        assert done.json()["completed_at"]
        response = client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "too late"},
                               headers=tenant["headers"])
        assert response.status_code == 400

    def test_delete(self, client, tenant, create):
        booking = create()
        assert client.delete(f"/api/bookings/{booking['id']}", headers=tenant["headers"]).status_code == 204
        assert client.get(f"/api/bookings/{booking['id']}", headers=tenant["headers"]).status_code == 404


class TestContracts:
    def _body(self, tenant, booking_payload, dates, start="10:00", end="14:00"):
        return {
            "contract": {"contract_name": "Summer series", "customer_id": tenant["customer_id"]},
            "bookings": [booking_payload(tenant["space_id"], event_date=d, start=start, end=end, total_amount=500)
                         for d in dates],
        }

    def test_multi_date_contract(self, client, tenant, booking_payload):
        body = self._body(tenant, booking_payload, ["2031-07-01", "2031-07-08", "2031-07-15"])
        response = client.post("/api/bookings/contract", json=body, headers=tenant["headers"])
        assert response.status_code == 201, response.text
        contract = response.json()
        assert contract["booking_count"] == 3
        assert contract["total_amount"] == 1500
        assert contract["customer_name"] == "Ada Lovelace"
        assert all(b["contract_id"] == contract["id"] for b in contract["bookings"])
        assert all(b["customer_id"] == tenant["customer_id"] for b in contract["bookings"])

        listed = client.get("/api/contracts", headers=tenant["headers"]).json()
        assert listed["total"] == 1
        assert listed["items"][0]["booking_count"] == 3

    def test_conflict_with_stored_booking_rolls_back_everything(self, client, tenant, create, booking_payload):
        existing = create(event_date="2031-07-08")
        body = self._body(tenant, booking_payload, ["2031-07-01", "2031-07-08"], start="12:00", end="13:00")
        response = client.post("/api/bookings/contract", json=body, headers=tenant["headers"])

        assert response.status_code == 409
        payload = response.json()
        assert payload["detail"] == "Time slot conflict in multi-date booking"
        assert payload["bookingIndex"] == 1
        assert payload["conflictingBooking"]["id"] == existing["id"]

        bookings = client.get("/api/bookings", params={"date_from": "2031-07-01", "date_to": "2031-07-01"},
                              headers=tenant["headers"]).json()
        assert bookings["total"] == 0
        assert client.get("/api/contracts", headers=tenant["headers"]).json()["total"] == 0

    def test_conflict_inside_the_batch(self, client, tenant, booking_payload):
        body = self._body(tenant, booking_payload, ["2031-07-01", "2031-07-01"])
        response = client.post("/api/bookings/contract", json=body, headers=tenant["headers"])
        assert response.status_code == 409
        assert response.json()["bookingIndex"] == 1
        assert response.json()["conflictingBooking"]["id"] is None


class TestListAndCalendar:
    def test_filters(self, client, tenant, create):
        create(event_date="2031-09-01")
        create(event_date="2031-09-02", status="pending")
        pending = client.get("/api/bookings", params={"status": "pending"}, headers=tenant["headers"]).json()
        assert [b["event_date"] for b in pending["items"]] == ["2031-09-02"]

        bad = client.get("/api/bookings", params={"status": "booked"}, headers=tenant["headers"])
        assert bad.status_code == 400

    def test_calendar_events(self, client, tenant, create):
        kept = create(event_date="2031-10-10")
        dropped = create(event_date="2031-10-11")
        client.post(f"/api/bookings/{dropped['id']}/cancel", json={"reason": "other"}, headers=tenant["headers"])

        events = client.get("/api/calendar/events", params={"start": "2031-10-01", "end": "2031-10-31"},
                            headers=tenant["headers"]).json()
        assert [e["id"] for e in events] == [kept["id"]]
        event = events[0]
        assert event["start"] == "2031-10-10T10:00"
        assert event["end"] == "2031-10-10T14:00"
        assert event["color"].startswith("#")

        with_cancelled = client.get(
            "/api/calendar/events",
            params={"start": "2031-10-01", "end": "2031-10-31", "include_cancelled": True},
            headers=tenant["headers"],
        ).json()
        assert {e["id"] for e in with_cancelled} == {kept["id"], dropped["id"]}
