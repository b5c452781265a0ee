"""
Registration, login and refresh-token session tests.

Run: pytest backend/test_auth.py -v
"""

import uuid

import jwt
import pytest

from backend.auth_context import get_db, hash_password, verify_password
from backend.config import ALGORITHM, SECRET_KEY
from backend.main import hash_token, verify_token_hash

PASSWORD = "s3cure-enough-pass"


@pytest.fixture
def registered(client):
    """Register a fresh tenant and log its admin in."""
    email = f"owner_{uuid.uuid4().hex[:10]}@example.com"
    response = client.post(
        "/auth/register",
        json={"email": email, "password": PASSWORD, "tenant_name": "Lakeside Events", "first_name": "Lin"},
    )
    assert response.status_code == 200, response.text
    login = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert login.status_code == 200, login.text
    return {"email": email, "register": response.json(), "login": login.json()}


def test_auth_context_exports_resolve():
    from backend import auth_context

    for name in auth_context.__all__:
        assert hasattr(auth_context, name), name
    assert "row_to_dict" not in auth_context.__all__
    assert not hasattr(auth_context, "row_to_dict")


class TestPasswords:
    def test_bcrypt_round_trip(self):
        hashed = hash_password("hunter22hunter22")
        assert hashed.startswith("$2")
        assert verify_password("hunter22hunter22", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_garbage_hash_never_verifies(self):
        assert not verify_password("anything", "")
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_refresh_token_hash(self):
        assert verify_token_hash("abc", hash_token("abc"))
        assert not verify_token_hash("abc", hash_token("abd"))
        assert not verify_token_hash("abc", None)


class TestRegister:
    def test_register_creates_trialing_starter_tenant(self, client, registered):
        user = registered["register"]["user"]
        assert user["role"] == "tenant_admin"
        assert user["first_name"] == "Lin"

        conn = get_db()
        try:
            tenant = conn.execute("SELECT * FROM tenants WHERE id = ?", (user["tenant_id"],)).fetchone()
        finally:
            conn.close()
        assert tenant["package"] == "starter"
        assert tenant["status"] == "trialing"
        assert tenant["slug"].startswith("lakeside-events")

    def test_register_token_carries_string_subject(self, registered):
        claims = jwt.decode(registered["register"]["access_token"], SECRET_KEY, algorithms=[ALGORITHM])
        assert claims["sub"] == str(registered["register"]["user"]["id"])
        assert claims["tenant_id"] == registered["register"]["user"]["tenant_id"]

    def test_duplicate_email_is_rejected(self, client, registered):
        response = client.post(
            "/auth/register",
            json={"email": registered["email"].upper(), "password": PASSWORD, "tenant_name": "Copycat"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Email already registered"

    def test_short_password_is_422(self, client):
        response = client.post("/auth/register", json={"email": "short@example.com", "password": "abc"})
        assert response.status_code == 422

    def test_same_tenant_name_gets_unique_slug(self, client):
        slugs = set()
        for _ in range(2):
            email = f"twin_{uuid.uuid4().hex[:10]}@example.com"
            body = client.post("/auth/register",
                               json={"email": email, "password": PASSWORD, "tenant_name": "Twin Hall"}).json()
            conn = get_db()
            try:
                slugs.add(conn.execute("SELECT slug FROM tenants WHERE id = ?",
                                       (body["user"]["tenant_id"],)).fetchone()["slug"])
            finally:
                conn.close()
        assert len(slugs) == 2


class TestLogin:
    def test_login_returns_session(self, registered):
        login = registered["login"]
        assert login["access_token"]
        assert login["refresh_token"]
        assert login["session_id"]
        assert login["user"]["email"] == registered["email"]

    def test_login_token_works(self, client, registered):
        headers = {"Authorization": f"Bearer {registered['login']['access_token']}"}
        me = client.get("/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["user"]["email"] == registered["email"]
        assert me.json()["tenant_status"] == "trialing"

    def test_wrong_password(self, client, registered):
        response = client.post("/auth/login", json={"email": registered["email"], "password": "nope-nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    def test_unknown_email(self, client):
        response = client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        assert response.status_code == 401

    def test_login_records_last_login(self, registered):
        conn = get_db()
        try:
            row = conn.execute("SELECT last_login_at FROM users WHERE email = ?", (registered["email"],)).fetchone()
        finally:
            conn.close()
        assert row["last_login_at"]

    def test_inactive_user_cannot_log_in(self, client, registered):
        conn = get_db()
        try:
            conn.execute("UPDATE users SET is_active = 0 WHERE email = ?", (registered["email"],))
            conn.commit()
        finally:
            conn.close()
        response = client.post("/auth/login", json={"email": registered["email"], "password": PASSWORD})
        assert response.status_code == 403


class TestRefreshAndLogout:
    def test_refresh_rotates_token(self, client, registered):
        login = registered["login"]
        first = client.post("/auth/refresh",
                            json={"session_id": login["session_id"], "refresh_token": login["refresh_token"]})
        assert first.status_code == 200
        rotated = first.json()["refresh_token"]
        assert rotated != login["refresh_token"]

        # The old refresh token is dead after rotation
        replay = client.post("/auth/refresh",
                             json={"session_id": login["session_id"], "refresh_token": login["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["detail"] == "Invalid refresh token"

        again = client.post("/auth/refresh", json={"session_id": login["session_id"], "refresh_token": rotated})
        assert again.status_code == 200

    def test_unknown_session(self, client):
        response = client.post("/auth/refresh", json={"session_id": "missing", "refresh_token": "x"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid session"

    def test_expired_session(self, client, registered):
        login = registered["login"]
        conn = get_db()
        try:
            conn.execute("UPDATE auth_sessions SET expires_at = '2000-01-01T00:00:00' WHERE id = ?",
                         (login["session_id"],))
            conn.commit()
        finally:
            conn.close()
        response = client.post("/auth/refresh",
                               json={"session_id": login["session_id"], "refresh_token": login["refresh_token"]})
        assert response.status_code == 401
        assert response.json()["detail"] == "Session expired"

    def test_logout_revokes_and_is_idempotent(self, client, registered):
        login = registered["login"]
        body = {"session_id": login["session_id"], "refresh_token": login["refresh_token"]}
        assert client.post("/auth/logout", json=body).status_code == 200
        assert client.post("/auth/logout", json=body).status_code == 200

        response = client.post("/auth/refresh", json=body)
        assert response.status_code == 401
        assert response.json()["detail"] == "Session revoked"

    def test_logout_with_wrong_refresh_token(self, client, registered):
        response = client.post("/auth/logout",
                               json={"session_id": registered["login"]["session_id"], "refresh_token": "wrong"})
        assert response.status_code == 401

    def test_logout_unknown_session_is_ok(self, client):
        assert client.post("/auth/logout", json={"session_id": "never-existed"}).status_code == 200
