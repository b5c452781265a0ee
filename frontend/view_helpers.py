# frontend/view_helpers.py
# Pure helpers behind the Streamlit pages (no st.* calls, unit-testable)

from __future__ import annotations

import calendar
import math
from datetime import date, time
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple

import pandas as pd

BOOKING_STATUSES: List[str] = [
    "inquiry",
    "pending",
    "tentative",
    "confirmed_deposit_paid",
    "confirmed_fully_paid",
    "completed",
    "cancelled",
]

STATUS_LABELS: Dict[str, str] = {
    "inquiry": "Inquiry",
    "pending": "Pending",
    "tentative": "Tentative",
    "confirmed_deposit_paid": "Confirmed (Deposit Paid)",
    "confirmed_fully_paid": "Confirmed (Fully Paid)",
    "completed": "Completed",
    "cancelled": "Cancelled",
}

STATUS_ICONS: Dict[str, str] = {
    "inquiry": "⚪",
    "pending": "🟡",
    "tentative": "🟠",
    "confirmed_deposit_paid": "🔵",
    "confirmed_fully_paid": "🟢",
    "completed": "✅",
    "cancelled": "❌",
}

LEAD_STATUSES: List[str] = ["NEW", "CONTACTED", "TOUR_SCHEDULED", "PROPOSAL_SENT", "WON", "LOST"]

# Sidebar pages: (label, capability needed or None)
TENANT_PAGES: List[Tuple[str, Optional[str]]] = [
    ("Dashboard", "reports:view"),
    ("Bookings", "bookings:read"),
    ("Calendar", "bookings:read"),
    ("Venues", "venues:read"),
    ("Customers", "customers:read"),
    ("Proposals", "proposals:read"),
    ("Leads", "leads:read"),
    ("Payments", "payments:read"),
    ("Settings", None),
    ("Audit Log", "audit:view"),
]


def format_money(value: Optional[float]) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "n/a"
    if value < 0:
        return f"-${abs(value):,.2f}"
    return f"${value:,.2f}"


def format_status(status: Optional[str]) -> str:
    if not status:
        return "Unknown"
    label = STATUS_LABELS.get(status, status.replace("_", " ").title())
    icon = STATUS_ICONS.get(status)
    return f"{icon} {label}" if icon else label


def conflict_message(body: Mapping[str, Any]) -> str:
    """
    Render a 409 body ({"detail", "conflictingBooking", "bookingIndex"?})
    as one line for st.error.
    """
    detail = body.get("detail") or "This time slot is already booked"
    other = body.get("conflictingBooking") or {}
    if not other:
        return str(detail)

    parts = [str(detail)]
    name = other.get("eventName")
    if name:
        parts.append(f"Conflicts with \"{name}\"")
    if other.get("customerName"):
        parts.append(f"for {other['customerName']}")
    when = " ".join(p for p in (other.get("eventDate"), _time_span(other)) if p)
    if when:
        parts.append(f"on {when}")
    message = " ".join(parts[1:])
    if "bookingIndex" in body:
        message = f"Booking #{int(body['bookingIndex']) + 1}: {message}"
    return f"{parts[0]}. {message}" if message else parts[0]


def _time_span(other: Mapping[str, Any]) -> str:
    start, end = other.get("startTime"), other.get("endTime")
    if start and end:
        return f"{start}-{end}"
    return start or ""


def _as_text(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M")
    return value


def build_payload(form: Mapping[str, Any], keep_zero: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Turn raw widget values into a JSON body: dates/times to ISO text, blank
    strings and None dropped, zero numbers dropped unless named in keep_zero.
    """
    keep = set(keep_zero)
    payload: Dict[str, Any] = {}
    for key, raw in form.items():
        value = _as_text(raw)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        elif isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0 and key not in keep:
            continue
        payload[key] = value
    return payload


def month_bounds(year: int, month: int) -> Tuple[str, str]:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1).isoformat(), date(year, month, last).isoformat()


def group_events_by_day(events: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    """Calendar events keyed by YYYY-MM-DD, each day ordered by start."""
    days: Dict[str, List[Mapping[str, Any]]] = {}
    for event in events:
        day = str(event.get("start", ""))[:10]
        if day:
            days.setdefault(day, []).append(event)
    for items in days.values():
        items.sort(key=lambda e: str(e.get("start", "")))
    return dict(sorted(days.items()))


def revenue_frame(report: Mapping[str, Any]) -> pd.DataFrame:
    """Monthly revenue report as a frame indexed by month label."""
    months = report.get("months") or []
    if not months:
        return pd.DataFrame(columns=["revenue", "paid", "bookings"])
    frame = pd.DataFrame(months)
    frame = frame.set_index("label")
    return frame[["revenue", "paid", "bookings"]]


def bookings_frame(items: List[Mapping[str, Any]]) -> pd.DataFrame:
    columns = ["id", "event_date", "start_time", "end_time", "event_name", "customer_name",
               "venue_name", "space_name", "guest_count", "status", "total_amount"]
    if not items:
        return pd.DataFrame(columns=columns)
    frame = pd.DataFrame(items)
    for column in columns:
        if column not in frame.columns:
            frame[column] = None
    frame = frame[columns].copy()
    frame["status"] = frame["status"].map(format_status)
    return frame


def proposal_token(query_params: Mapping[str, Any]) -> Optional[str]:
    """?proposal=<token> from st.query_params; tokens are at least 16 chars."""
    raw = query_params.get("proposal")
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if not raw:
        return None
    token = str(raw).strip()
    return token if len(token) >= 16 else None


def identity_from_me(me: Mapping[str, Any], loaded_at: float) -> Dict[str, Any]:
    """The /auth/me body reshaped for the session capabilities cache."""
    return {
        "role": me.get("role"),
        "package": me.get("package"),
        "tenant": me.get("tenant"),
        "tenant_status": me.get("tenant_status"),
        "is_super_admin": bool(me.get("is_super_admin")),
        "assumed_tenant": bool(me.get("assumed_tenant")),
        "list": list(me.get("capabilities") or []),
        "loaded_at": loaded_at,
    }


def fill_auth_keys(ss: MutableMapping[str, Any]) -> List[str]:
    """
    Fill the canonical tenant_id/role/package keys from current_user and
    the capabilities cache. Existing values are never overwritten and
    nothing is invented.

    Returns:
        Names of the keys that were set
    """
    actually_set = []

    current_user = ss.get("current_user")
    if current_user and isinstance(current_user, dict):
        for key in ("tenant_id", "role"):
            if current_user.get(key) is not None and ss.get(key) is None:
                ss[key] = current_user[key]
                actually_set.append(key)

    capabilities = ss.get("capabilities")
    if capabilities and isinstance(capabilities, dict):
        if capabilities.get("package") and ss.get("package") is None:
            ss["package"] = capabilities["package"]
            actually_set.append("package")
        if capabilities.get("role") and ss.get("role") is None:
            ss["role"] = capabilities["role"]
            actually_set.append("role_from_cap")
        tenant = capabilities.get("tenant")
        if tenant and ss.get("tenant_id") is None:
            ss["tenant_id"] = tenant.get("id")
            actually_set.append("tenant_id_from_cap")

    return actually_set


def visible_pages(capabilities: Optional[Mapping[str, Any]]) -> List[str]:
    """
    Sidebar pages for the cached identity. A super admin without an assumed
    tenant only gets the console.
    """
    if not capabilities:
        return ["Login"]
    granted = set(capabilities.get("list") or [])
    pages: List[str] = []
    has_tenant = bool(capabilities.get("tenant"))
    if has_tenant:
        pages = [label for label, cap in TENANT_PAGES if cap is None or cap in granted]
    if capabilities.get("is_super_admin"):
        pages.append("Super Admin")
    return pages or ["Settings"]
