"""
backend/email_service.py

Outbound email over SMTP plus the booking/proposal notification templates.

send_email() raises on delivery problems. The notify_* helpers used by the
routes never raise: a failed email is logged to the communications table
and the request that triggered it still succeeds.
"""

from __future__ import annotations

import html
import json
import logging
import smtplib
import sqlite3
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Mapping, Optional

try:
    from backend.config import APP_BASE_URL, SMTP_FROM, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER
except ModuleNotFoundError:
    from config import APP_BASE_URL, SMTP_FROM, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER

logger = logging.getLogger(__name__)


class EmailNotConfigured(RuntimeError):
    """SMTP_HOST is not set."""


class EmailDeliveryError(RuntimeError):
    """The SMTP server rejected or failed the message."""


DEFAULT_NOTIFICATION_PREFS: Dict[str, bool] = {
    "email_notifications": True,
    "push_notifications": False,
    "booking_confirmations": True,
    "payment_reminders": True,
    "maintenance_alerts": True,
}


# ============================================================================
# Transport
# ============================================================================

def send_email(to: str, subject: str, html_content: str, text_content: Optional[str] = None) -> str:
    """
    Send one email. Port 465 uses implicit TLS, anything else STARTTLS.

    Returns:
        A local message id

    Raises:
        EmailNotConfigured: SMTP_HOST unset
        EmailDeliveryError: connection, auth or send failure
    """
    if not SMTP_HOST:
        raise EmailNotConfigured("SMTP_HOST is not configured")

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = SMTP_FROM
    msg["To"] = to
    if text_content:
        msg.attach(MIMEText(text_content, "plain"))
    msg.attach(MIMEText(html_content, "html"))

    context = ssl.create_default_context()
    try:
        if SMTP_PORT == 465:
            server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, context=context, timeout=30)
        else:
            server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30)
            server.starttls(context=context)
        try:
            if SMTP_USER:
                server.login(SMTP_USER, SMTP_PASSWORD)
            server.sendmail(SMTP_FROM, [to], msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        raise EmailDeliveryError(f"SMTP send failed: {e}") from e

    message_id = f"smtp-{datetime.utcnow().timestamp()}"
    logger.info("[EMAIL] Sent %r to %s via %s", subject, to, SMTP_HOST)
    return message_id


# ============================================================================
# Preferences
# ============================================================================

def get_notification_prefs(conn: sqlite3.Connection, tenant_id: int) -> Dict[str, bool]:
    """Tenant notification settings merged over the defaults."""
    prefs = dict(DEFAULT_NOTIFICATION_PREFS)
    row = conn.execute(
        "SELECT value FROM settings WHERE tenant_id = ? AND key = 'notifications'",
        (tenant_id,),
    ).fetchone()
    if row and row["value"]:
        try:
            stored = json.loads(row["value"])
        except (json.JSONDecodeError, TypeError):
            stored = {}
        if isinstance(stored, dict):
            prefs.update({k: bool(v) for k, v in stored.items() if k in prefs})
    return prefs


# ============================================================================
# Templates
# ============================================================================

def _layout(title: str, body: str, tenant_name: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:0 auto\">"
        f"<h2 style=\"color:#1F2937\">{html.escape(title)}</h2>"
        f"{body}"
        f"<p style=\"color:#6B7280;font-size:12px\">Sent by {html.escape(tenant_name)} via Venuin</p>"
        "</div>"
    )


def _booking_table(booking: Mapping[str, Any]) -> str:
    rows = [
        ("Event", booking["event_name"]),
        ("Date", booking["event_date"]),
        ("Time", f"{booking['start_time']} - {booking['end_time']}"),
        ("Guests", booking["guest_count"]),
    ]
    if booking["total_amount"]:
        rows.append(("Total", f"${float(booking['total_amount']):,.2f}"))
    cells = "".join(
        f"<tr><td style=\"padding:4px 12px 4px 0\"><b>{label}</b></td><td>{html.escape(str(value))}</td></tr>"
        for label, value in rows
    )
    return f"<table>{cells}</table>"


def booking_confirmation_email(booking: Mapping[str, Any], customer: Mapping[str, Any], tenant_name: str) -> Dict[str, str]:
    body = (
        f"<p>Hi {html.escape(customer['name'])},</p>"
        "<p>Your booking has been received. Here are the details:</p>"
        f"{_booking_table(booking)}"
        "<p>We will be in touch about next steps.</p>"
    )
    return {
        "subject": f"Booking confirmation: {booking['event_name']} on {booking['event_date']}",
        "html": _layout("Booking Confirmation", body, tenant_name),
    }


def booking_cancellation_email(booking: Mapping[str, Any], customer: Mapping[str, Any], tenant_name: str) -> Dict[str, str]:
    reason = booking["cancellation_reason"] or "not specified"
    body = (
        f"<p>Hi {html.escape(customer['name'])},</p>"
        "<p>The following booking has been cancelled:</p>"
        f"{_booking_table(booking)}"
        f"<p><b>Reason:</b> {html.escape(reason)}</p>"
    )
    return {
        "subject": f"Booking cancelled: {booking['event_name']} on {booking['event_date']}",
        "html": _layout("Booking Cancelled", body, tenant_name),
    }


def proposal_email(proposal: Mapping[str, Any], customer: Mapping[str, Any], tenant_name: str) -> Dict[str, str]:
    link = f"{APP_BASE_URL}/?proposal={proposal['public_token']}"
    total = f"${float(proposal['total_amount']):,.2f}" if proposal["total_amount"] else "see proposal"
    body = (
        f"<p>Hi {html.escape(customer['name'])},</p>"
        f"<p>{html.escape(tenant_name)} has sent you a proposal: <b>{html.escape(proposal['title'])}</b> ({total}).</p>"
        f"<p><a href=\"{html.escape(link)}\">View and respond to your proposal</a></p>"
    )
    return {
        "subject": f"Your proposal from {tenant_name}: {proposal['title']}",
        "html": _layout("New Proposal", body, tenant_name),
    }


# ============================================================================
# Logged, non-fatal delivery
# ============================================================================

def deliver(
    conn: sqlite3.Connection,
    tenant_id: int,
    recipient: str,
    message: Dict[str, str],
    *,
    customer_id: Optional[int] = None,
    booking_id: Optional[int] = None,
    proposal_id: Optional[int] = None,
) -> bool:
    """
    Send and record in communications. Returns True when delivered.
    Never raises for delivery problems.
    """
    status, error = "sent", None
    try:
        send_email(recipient, message["subject"], message["html"])
    except EmailNotConfigured:
        status, error = "skipped", "smtp not configured"
        logger.info("[EMAIL] SMTP not configured, skipped %r to %s", message["subject"], recipient)
    except EmailDeliveryError as e:
        status, error = "failed", str(e)
        logger.error("[EMAIL] Delivery failed for %s: %s", recipient, e)

    conn.execute(
        """
        INSERT INTO communications (
            tenant_id, customer_id, booking_id, proposal_id, channel,
            recipient, subject, body, status, error, created_at
        ) VALUES (?, ?, ?, ?, 'email', ?, ?, ?, ?, ?, ?)
        """,
        (
            tenant_id, customer_id, booking_id, proposal_id,
            recipient, message["subject"], message["html"], status, error,
            datetime.utcnow().isoformat() + "Z",
        ),
    )
    conn.commit()
    return status == "sent"


def _customer_and_tenant(conn: sqlite3.Connection, tenant_id: int, customer_id: Optional[int]):
    if not customer_id:
        return None, None
    customer = conn.execute(
        "SELECT id, name, email FROM customers WHERE id = ? AND tenant_id = ?",
        (customer_id, tenant_id),
    ).fetchone()
    tenant = conn.execute("SELECT name FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
    return customer, (tenant["name"] if tenant else "Venuin")


def notify_booking_created(conn: sqlite3.Connection, booking: Mapping[str, Any]) -> bool:
    """
    Confirmation email for a manually created booking.
    Skipped for proposal-originated bookings and when the tenant turned
    confirmations off.
    """
    tenant_id = booking["tenant_id"]
    if booking["proposal_id"]:
        logger.info("[EMAIL] Skipping confirmation for proposal booking id=%s", booking["id"])
        return False

    prefs = get_notification_prefs(conn, tenant_id)
    if not (prefs["email_notifications"] and prefs["booking_confirmations"]):
        return False

    customer, tenant_name = _customer_and_tenant(conn, tenant_id, booking["customer_id"])
    if not customer or not customer["email"]:
        return False

    message = booking_confirmation_email(booking, customer, tenant_name)
    return deliver(conn, tenant_id, customer["email"], message,
                   customer_id=customer["id"], booking_id=booking["id"])


def notify_booking_cancelled(conn: sqlite3.Connection, booking: Mapping[str, Any]) -> bool:
    tenant_id = booking["tenant_id"]
    prefs = get_notification_prefs(conn, tenant_id)
    if not prefs["email_notifications"]:
        return False

    customer, tenant_name = _customer_and_tenant(conn, tenant_id, booking["customer_id"])
    if not customer or not customer["email"]:
        return False

    message = booking_cancellation_email(booking, customer, tenant_name)
    return deliver(conn, tenant_id, customer["email"], message,
                   customer_id=customer["id"], booking_id=booking["id"])


def notify_proposal_sent(conn: sqlite3.Connection, proposal: Mapping[str, Any]) -> bool:
    tenant_id = proposal["tenant_id"]
    customer, tenant_name = _customer_and_tenant(conn, tenant_id, proposal["customer_id"])
    if not customer or not customer["email"]:
        return False

    message = proposal_email(proposal, customer, tenant_name)
    return deliver(conn, tenant_id, customer["email"], message,
                   customer_id=customer["id"], proposal_id=proposal["id"])
