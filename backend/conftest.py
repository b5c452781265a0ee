"""
Shared pytest fixtures for the backend.

The app reads DATABASE_PATH at import time, so the temp database and the
integration switches are set here, before any test module imports
backend.main.
"""

import os
import tempfile
import uuid

TEST_DB_PATH = tempfile.mktemp(suffix=".db")
os.environ["DATABASE_PATH"] = TEST_DB_PATH
os.environ["ENV"] = "dev"
os.environ.pop("DATABASE_URL", None)
for _key in ("SMTP_HOST", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "GEMINI_API_KEY"):
    os.environ[_key] = ""

import pytest
from fastapi.testclient import TestClient

from backend.main import app
from backend.auth_context import create_access_token, get_db, hash_password
from backend.entitlements import create_tenant

# One bcrypt hash for every fixture user keeps the suite fast
TEST_PASSWORD = "correct-horse-battery"
_TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@pytest.fixture(scope="session")
def client():
    return TestClient(app)


def _token(user_id: int, email: str, tenant_id):
    return create_access_token({"sub": str(user_id), "email": email, "tenant_id": tenant_id})


def insert_user(tenant_id, role="tenant_admin", email=None, is_active=True):
    email = email or f"user_{uuid.uuid4().hex[:10]}@example.com"
    conn = get_db()
    try:
        cur = conn.execute(
            """
            INSERT INTO users (email, password_hash, role, tenant_id, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, datetime('now'))
            """,
            (email, _TEST_PASSWORD_HASH, role, tenant_id, int(is_active)),
        )
        conn.commit()
        user_id = cur.lastrowid
    finally:
        conn.close()
    token = _token(user_id, email, tenant_id)
    return {
        "user_id": user_id,
        "email": email,
        "tenant_id": tenant_id,
        "role": role,
        "token": token,
        "headers": {"Authorization": f"Bearer {token}"},
    }


@pytest.fixture
def make_tenant():
    """
    Factory: make_tenant(package="professional", status="active", role="tenant_admin")
    creates a tenant plus one user and returns ids, token and auth headers.
    """

    def _make(package="professional", status="active", role="tenant_admin", name=None):
        conn = get_db()
        try:
            tenant_id = create_tenant(conn, name or f"Test Venue Co {uuid.uuid4().hex[:6]}", package, status)
            conn.commit()
        finally:
            conn.close()
        user = insert_user(tenant_id, role=role)
        user["package"] = package
        return user

    return _make


@pytest.fixture
def add_user():
    """Factory: add_user(tenant, role="staff") adds another user to an existing tenant."""

    def _add(tenant, role="staff", is_active=True):
        return insert_user(tenant["tenant_id"], role=role, is_active=is_active)

    return _add


@pytest.fixture
def super_admin():
    return insert_user(None, role="super_admin")


@pytest.fixture
def venue_space(client):
    """
    Factory: venue_space(tenant, capacity=100) creates a venue with one space
    through the API and returns (venue_id, space_id).
    """

    def _create(tenant, capacity=100):
        venue = client.post("/api/venues", json={"name": "Grand Hall"}, headers=tenant["headers"])
        assert venue.status_code == 201, venue.text
        venue_id = venue.json()["id"]
        space = client.post(
            f"/api/venues/{venue_id}/spaces",
            json={"name": "Ballroom", "capacity": capacity, "hourly_rate": 150, "setup_styles": ["banquet"]},
            headers=tenant["headers"],
        )
        assert space.status_code == 201, space.text
        return venue_id, space.json()["id"]

    return _create


def _booking_payload(space_id, event_date="2031-06-14", start="10:00", end="14:00", **extra):
    payload = {
        "event_name": "Spring Gala",
        "event_type": "party",
        "space_id": space_id,
        "event_date": event_date,
        "start_time": start,
        "end_time": end,
        "guest_count": 40,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def booking_payload():
    """booking_payload(space_id, event_date=..., start=..., end=..., **overrides) -> request body"""
    return _booking_payload
