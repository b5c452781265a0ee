"""
SMTP transport, templates and the logged, non-fatal delivery wrapper.

Run: pytest backend/test_email_service.py -v
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from backend import email_service
from backend.auth_context import get_db


@pytest.fixture
def smtp_on():
    with patch("backend.email_service.SMTP_HOST", "smtp.test.local"), \
            patch("backend.email_service.SMTP_PORT", 587), \
            patch("backend.email_service.SMTP_USER", "mailer"), \
            patch("backend.email_service.SMTP_PASSWORD", "secret"):
        yield


def _comm_rows(tenant_id):
    conn = get_db()
    try:
        return conn.execute("SELECT * FROM communications WHERE tenant_id = ? ORDER BY id",
                            (tenant_id,)).fetchall()
    finally:
        conn.close()


class TestSendEmail:
    def test_not_configured(self):
        with patch("backend.email_service.SMTP_HOST", ""):
            with pytest.raises(email_service.EmailNotConfigured):
                email_service.send_email("a@example.com", "Hi", "<p>Hi</p>")

    def test_starttls_path(self, smtp_on):
        server = MagicMock()
        with patch("backend.email_service.smtplib.SMTP", return_value=server) as smtp:
            message_id = email_service.send_email("guest@example.com", "Hello", "<p>Hello</p>", "Hello")

        smtp.assert_called_once_with("smtp.test.local", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        args = server.sendmail.call_args[0]
        assert args[1] == ["guest@example.com"]
        assert "Subject: Hello" in args[2]
        server.quit.assert_called_once()
        assert message_id.startswith("smtp-")

    def test_implicit_tls_on_465(self, smtp_on):
        server = MagicMock()
        with patch("backend.email_service.SMTP_PORT", 465), \
                patch("backend.email_service.smtplib.SMTP_SSL", return_value=server) as smtp_ssl, \
                patch("backend.email_service.smtplib.SMTP") as plain:
            email_service.send_email("guest@example.com", "Hello", "<p>Hello</p>")

        smtp_ssl.assert_called_once()
        plain.assert_not_called()
        server.starttls.assert_not_called()

    def test_smtp_failure_is_wrapped(self, smtp_on):
        server = MagicMock()
        server.sendmail.side_effect = smtplib.SMTPRecipientsRefused({"guest@example.com": (550, b"no")})
        with patch("backend.email_service.smtplib.SMTP", return_value=server):
            with pytest.raises(email_service.EmailDeliveryError):
                email_service.send_email("guest@example.com", "Hello", "<p>Hello</p>")
        server.quit.assert_called_once()

    def test_connection_error_is_wrapped(self, smtp_on):
        with patch("backend.email_service.smtplib.SMTP", side_effect=OSError("connection refused")):
            with pytest.raises(email_service.EmailDeliveryError):
                email_service.send_email("guest@example.com", "Hello", "<p>Hello</p>")


class TestDeliver:
    MESSAGE = {"subject": "Booking confirmation", "html": "<p>See you soon</p>"}

    def test_sent_row(self, smtp_on, make_tenant):
        tenant = make_tenant()
        conn = get_db()
        try:
            with patch("backend.email_service.smtplib.SMTP", return_value=MagicMock()):
                assert email_service.deliver(conn, tenant["tenant_id"], "guest@example.com", self.MESSAGE)
        finally:
            conn.close()
        rows = _comm_rows(tenant["tenant_id"])
        assert [(r["status"], r["channel"], r["recipient"]) for r in rows] == [("sent", "email", "guest@example.com")]

    def test_failed_row_does_not_raise(self, smtp_on, make_tenant):
        tenant = make_tenant()
        conn = get_db()
        try:
            with patch("backend.email_service.smtplib.SMTP", side_effect=OSError("down")):
                assert email_service.deliver(conn, tenant["tenant_id"], "guest@example.com", self.MESSAGE) is False
        finally:
            conn.close()
        row = _comm_rows(tenant["tenant_id"])[0]
        assert row["status"] == "failed"
        assert "down" in row["error"]

    def test_skipped_without_smtp(self, make_tenant):
        tenant = make_tenant()
        conn = get_db()
        try:
            with patch("backend.email_service.SMTP_HOST", ""):
                email_service.deliver(conn, tenant["tenant_id"], "guest@example.com", self.MESSAGE)
        finally:
            conn.close()
        assert _comm_rows(tenant["tenant_id"])[0]["status"] == "skipped"


class TestTemplates:
    BOOKING = {
        "event_name": "Gala <Night>",
        "event_date": "2032-01-01",
        "start_time": "18:00",
        "end_time": "23:00",
        "guest_count": 80,
        "total_amount": 4200,
        "cancellation_reason": None,
    }

    def test_confirmation_escapes_html(self):
        message = email_service.booking_confirmation_email(self.BOOKING, {"name": "Ann & Co"}, "Lakeside")
        assert message["subject"] == "Booking confirmation: Gala <Night> on 2032-01-01"
        assert "Gala &lt;Night&gt;" in message["html"]
        assert "Ann &amp; Co" in message["html"]
        assert "$4,200.00" in message["html"]

    def test_cancellation_without_reason(self):
        message = email_service.booking_cancellation_email(self.BOOKING, {"name": "Ann"}, "Lakeside")
        assert "not specified" in message["html"]

    def test_proposal_link(self):
        proposal = {"public_token": "tok123", "title": "Summer Party", "total_amount": None}
        message = email_service.proposal_email(proposal, {"name": "Ann"}, "Lakeside")
        assert "?proposal=tok123" in message["html"]
        assert "see proposal" in message["html"]


class TestPreferences:
    def test_stored_prefs_merge_over_defaults(self, client, make_tenant):
        tenant = make_tenant()
        client.put("/api/settings/notifications", json={"email_notifications": False}, headers=tenant["headers"])
        conn = get_db()
        try:
            prefs = email_service.get_notification_prefs(conn, tenant["tenant_id"])
        finally:
            conn.close()
        assert prefs["email_notifications"] is False
        assert prefs["booking_confirmations"] is True
