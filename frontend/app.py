# frontend/app.py
# Venuin – venue operations console (bookings, CRM, payments, reports)
#
# Run from repo root: streamlit run frontend/app.py
# Or from frontend folder: streamlit run app.py

from __future__ import annotations

import time
from datetime import date, datetime, time as dtime
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st

try:
    from frontend.config import APP_BASE_URL, ENABLE_DEBUG_UI, ENV, IS_DEV
except ModuleNotFoundError:
    from config import APP_BASE_URL, ENABLE_DEBUG_UI, ENV, IS_DEV

try:
    from frontend.auth import (
        init_auth_state, set_auth, clear_auth, is_authenticated,
        require_auth, get_current_user, get_role, get_package
    )
except ModuleNotFoundError:
    from auth import (
        init_auth_state, set_auth, clear_auth, is_authenticated,
        require_auth, get_current_user, get_role, get_package
    )

try:
    from frontend.api_client import api_request, error_detail
except ModuleNotFoundError:
    from api_client import api_request, error_detail

try:
    from frontend.view_helpers import (
        BOOKING_STATUSES, LEAD_STATUSES, bookings_frame, build_payload, conflict_message,
        fill_auth_keys, format_money, format_status, group_events_by_day, identity_from_me,
        month_bounds, proposal_token, revenue_frame, visible_pages
    )
except ModuleNotFoundError:
    from view_helpers import (
        BOOKING_STATUSES, LEAD_STATUSES, bookings_frame, build_payload, conflict_message,
        fill_auth_keys, format_money, format_status, group_events_by_day, identity_from_me,
        month_bounds, proposal_token, revenue_frame, visible_pages
    )


st.set_page_config(page_title="Venuin", page_icon="🏛️", layout="wide")

# --------------------------------------------------------------------
# State helpers
# --------------------------------------------------------------------


def init_state() -> None:
    ss = st.session_state

    init_auth_state()

    # Set in main() from auth state so logged-out users always land on Login
    ss.setdefault("nav_page", None)

    ss.setdefault("calendar_month", date.today().replace(day=1))

    ss.setdefault("_backend_status", "unknown")  # "ok", "timeout", "connection_error", "unknown"
    ss.setdefault("_backend_last_ping_time", 0.0)
    ss.setdefault("_backend_was_down", False)


init_state()

ss = st.session_state


def go_to(page: str) -> None:
    """Single place that changes pages; reruns immediately."""
    st.session_state["nav_page"] = page
    st.rerun()


# --------------------------------------------------------------------
# Capability helpers
# --------------------------------------------------------------------


def fetch_and_cache_capabilities() -> bool:
    """
    Load /auth/me into session_state["capabilities"]. Called once after
    login and again whenever the token changes (assume / leave tenant).

    Returns:
        True if successful, False otherwise
    """
    if not ss.get("auth_token"):
        _set_cap_status("not_authenticated", "No auth token")
        return False

    resp = api_request("GET", "/auth/me", timeout=10)
    if resp is None:
        _set_cap_status("backend_unreachable", "No response")
        ss["capabilities"] = None
        return False
    if resp.status_code != 200:
        _set_cap_status("auth_failed" if resp.status_code in (401, 403) else "backend_error",
                        f"HTTP {resp.status_code}")
        ss["capabilities"] = None
        return False

    ss["capabilities"] = identity_from_me(resp.json(), time.time())
    _set_cap_status("ok", None)
    if IS_DEV:
        caps = ss["capabilities"]
        print(f"[CAPABILITIES] Cached: package={caps['package']}, role={caps['role']}, "
              f"capabilities={len(caps['list'])}, assumed={caps['assumed_tenant']}")
    return True


def _set_cap_status(status: str, error: Optional[str]) -> None:
    ss["_cap_fetch_status"] = status
    ss["_cap_fetch_last_error"] = error
    if IS_DEV and status != "ok":
        print(f"[CAPABILITIES] {status}: {error}")


def can(capability: str) -> bool:
    """
    True if the cached identity grants the capability. Hydrates the cache
    once per session when it is missing. The API still enforces everything.
    """
    if not is_authenticated():
        return False

    caps = ss.get("capabilities")
    if not caps or not isinstance(caps, dict):
        if ss.get("_capabilities_fetch_attempted"):
            return False
        ss["_capabilities_fetch_attempted"] = True
        if not fetch_and_cache_capabilities():
            return False
        caps = ss.get("capabilities") or {}

    return capability in caps.get("list", [])


def normalize_auth_context() -> None:
    """Fill tenant_id/role/package from already-authenticated sources."""
    actually_set = fill_auth_keys(ss)
    if IS_DEV and actually_set:
        print(f"[AUTH] Normalized keys: {actually_set}")


def apply_pending_actions() -> bool:
    """
    Apply deferred actions BEFORE any widget is created.

    Widgets own their session_state keys once instantiated in a run, so
    login results and navigation redirects are parked in
    "_apply_payload" / "_post_login_nav" and applied here at the top of
    main(), followed by one rerun. Each action is popped so it runs once.

    Returns:
        True if any action was applied (caller should st.rerun() once)
    """
    applied_any = False

    if ss.get("_apply_payload"):
        payload = ss.pop("_apply_payload")
        set_auth(
            payload["auth_token"],
            payload.get("current_user") or {},
            payload.get("session_id"),
            payload.get("refresh_token"),
        )
        fetch_and_cache_capabilities()
        applied_any = True
        if IS_DEV:
            print("[DEFERRED] Applied auth payload")

    if ss.get("_post_login_nav"):
        target_page = ss.pop("_post_login_nav")
        ss["nav_page"] = target_page
        applied_any = True
        if IS_DEV:
            print(f"[DEFERRED] Navigation redirect to {target_page}")

    normalize_auth_context()
    return applied_any


# --------------------------------------------------------------------
# Utility functions
# --------------------------------------------------------------------


def handle_api_error(resp: Optional[requests.Response], operation: str = "operation") -> None:
    """User-facing message for a non-2xx response."""
    if resp is None:
        return
    if resp.status_code == 409:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        st.error(f"📅 {conflict_message(body)}")
    elif resp.status_code == 402:
        st.error(f"💳 **Package limit reached:** {error_detail(resp, 'Upgrade required')}")
        st.info("Ask your account admin to move to a larger package.")
    elif resp.status_code == 403:
        st.error(f"🔒 **Permission denied:** {error_detail(resp, 'Insufficient permissions')}")
    elif resp.status_code == 404:
        st.error(f"Not found: {error_detail(resp, operation)}")
    elif resp.status_code == 503:
        st.warning(f"⚙️ {error_detail(resp, 'Service not configured')}")
    else:
        st.error(f"{operation} failed: {error_detail(resp)}")


def fetch_json(path: str, params: Optional[Dict[str, Any]] = None, default: Any = None) -> Any:
    """GET helper for read-only page data; shows the error and returns default."""
    resp = api_request("GET", path, params=params, timeout=15)
    if resp is None:
        return default
    if resp.status_code != 200:
        handle_api_error(resp, path)
        return default
    return resp.json()


def fetch_items(path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    data = fetch_json(path, params=params, default={})
    if isinstance(data, list):
        return data
    return data.get("items", []) if isinstance(data, dict) else []


def is_logged_in() -> bool:
    return is_authenticated()


def _options(items: List[Dict[str, Any]], label_key: str = "name") -> Dict[str, Optional[int]]:
    """selectbox options: label -> id, with a leading "None"."""
    options: Dict[str, Optional[int]] = {"None": None}
    for item in items:
        options[f"{item.get(label_key)} (#{item['id']})"] = item["id"]
    return options


# --------------------------------------------------------------------
# Layout helpers
# --------------------------------------------------------------------


def render_sidebar() -> None:
    with st.sidebar:
        st.markdown("## 🏛️ Venuin")

        if not is_logged_in():
            st.caption("Venue bookings, proposals and payments")
            return

        caps = ss.get("capabilities") or {}
        user = get_current_user() or {}
        st.caption(f"👤 {user.get('email', '')}")
        tenant = caps.get("tenant") or {}
        if tenant:
            st.caption(f"🏢 {tenant.get('name')} · {str(get_package() or '').title()} · {tenant.get('status')}")
        st.caption(f"Role: {get_role()}")

        if caps.get("assumed_tenant"):
            st.warning("Acting inside this tenant as super admin")
            if ss.get("_super_admin_token") and st.button("Leave tenant", key="leave_tenant"):
                ss["_apply_payload"] = ss.pop("_super_admin_token")
                ss["_post_login_nav"] = "Super Admin"
                st.rerun()

        st.markdown("---")
        pages = visible_pages(caps)
        current = ss.get("nav_page")
        for page in pages:
            if st.button(page, key=f"nav_{page}", type="primary" if page == current else "secondary",
                         use_container_width=True):
                go_to(page)

        st.markdown("---")
        if st.button("Log out", key="logout"):
            if ss.get("session_id"):
                api_request("POST", "/auth/logout",
                            json={"session_id": ss["session_id"], "refresh_token": ss.get("refresh_token")},
                            timeout=5)
            clear_auth()
            go_to("Login")

        if ENABLE_DEBUG_UI:
            with st.expander("Debug", expanded=False):
                st.caption(f"ENV: {ENV}")
                st.caption(f"Backend: {ss.get('_backend_status')}")
                st.caption(f"Capabilities: {ss.get('_cap_fetch_status')}")
                if st.button("Reload capabilities", key="debug_reload_caps"):
                    fetch_and_cache_capabilities()
                    st.rerun()


# --------------------------------------------------------------------
# Dashboard
# --------------------------------------------------------------------


def render_dashboard() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Dashboard")
    summary = fetch_json("/api/reports/summary", default=None)
    if not summary:
        return

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Active bookings", summary["active_bookings"])
    c2.metric("Upcoming", summary["upcoming_bookings"])
    c3.metric("Revenue", format_money(summary["revenue"]))
    c4.metric("Outstanding", format_money(summary["outstanding"]))

    c5, c6, c7, c8 = st.columns(4)
    c5.metric("Collected", format_money(summary["collected"]))
    c6.metric("Cancelled", summary["cancelled_bookings"])
    c7.metric("Customers", summary["customers"])
    c8.metric("Lead conversion", f"{summary['lead_conversion_rate']:.1f}%")

    st.markdown("---")
    year = st.number_input("Year", min_value=2000, max_value=2100, value=date.today().year, step=1,
                           key="dashboard_year")
    report = fetch_json("/api/reports/revenue", params={"year": int(year)}, default=None)
    if report:
        st.subheader(f"Revenue {report['year']}: {format_money(report['total_revenue'])}")
        frame = revenue_frame(report)
        st.bar_chart(frame[["revenue", "paid"]])

    left, right = st.columns(2)
    with left:
        st.subheader("Cancellation reasons")
        cancellations = fetch_json("/api/reports/cancellations", default={})
        if cancellations and cancellations.get("items"):
            st.dataframe(pd.DataFrame(cancellations["items"]), hide_index=True, use_container_width=True)
        else:
            st.caption("No cancellations.")
    with right:
        st.subheader("By venue")
        if can("reports:advanced"):
            venues = fetch_json("/api/reports/venues", default={})
            if venues and venues.get("items"):
                st.dataframe(pd.DataFrame(venues["items"]), hide_index=True, use_container_width=True)
            else:
                st.caption("No bookings yet.")
        else:
            st.caption("Venue breakdown is part of the Professional package.")

    if can("ai:use"):
        with st.expander("✨ AI insights"):
            if st.button("Generate insights", key="ai_insights"):
                resp = api_request("POST", "/api/ai/insights", timeout=60)
                if resp is not None and resp.status_code == 200:
                    st.markdown(resp.json()["text"])
                else:
                    handle_api_error(resp, "AI insights")


# --------------------------------------------------------------------
# Bookings
# --------------------------------------------------------------------


def render_bookings() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Bookings")

    f1, f2, f3 = st.columns(3)
    status_filter = f1.selectbox("Status", ["All"] + BOOKING_STATUSES, key="bookings_status_filter",
                                 format_func=lambda s: s if s == "All" else format_status(s))
    date_from = f2.date_input("From", value=None, key="bookings_from")
    date_to = f3.date_input("To", value=None, key="bookings_to")

    params = build_payload({
        "status": None if status_filter == "All" else status_filter,
        "date_from": date_from,
        "date_to": date_to,
    })
    items = fetch_items("/api/bookings", params=params)
    st.dataframe(bookings_frame(items), hide_index=True, use_container_width=True)

    if can("bookings:manage"):
        tab_new, tab_manage, tab_check = st.tabs(["New booking", "Manage booking", "Check availability"])
        with tab_new:
            _render_booking_form()
        with tab_manage:
            _render_booking_actions(items)
        with tab_check:
            _render_availability_check()
    else:
        _render_availability_check()


def _venue_space_pickers(prefix: str) -> Dict[str, Optional[int]]:
    venues = fetch_json("/api/venues-with-spaces", default=[]) or []
    venue_options = _options(venues)
    venue_label = st.selectbox("Venue", list(venue_options), key=f"{prefix}_venue")
    venue_id = venue_options[venue_label]

    spaces = next((v.get("spaces", []) for v in venues if v["id"] == venue_id), [])
    space_options = _options(spaces)
    space_label = st.selectbox("Space", list(space_options), key=f"{prefix}_space")
    return {"venue_id": venue_id, "space_id": space_options[space_label]}


def _render_booking_form() -> None:
    customers = fetch_items("/api/customers")
    customer_options = _options(customers)
    location = _venue_space_pickers("new_booking")

    with st.form("new_booking_form", clear_on_submit=False):
        event_name = st.text_input("Event name")
        event_type = st.selectbox("Event type", ["wedding", "corporate", "party", "conference", "other"])
        customer_label = st.selectbox("Customer", list(customer_options))
        c1, c2, c3 = st.columns(3)
        event_date = c1.date_input("Date", value=date.today())
        start_time = c2.time_input("Start", value=dtime(18, 0))
        end_time = c3.time_input("End", value=dtime(23, 0))
        c4, c5, c6 = st.columns(3)
        guest_count = c4.number_input("Guests", min_value=1, value=50, step=1)
        total_amount = c5.number_input("Total amount", min_value=0.0, value=0.0, step=100.0)
        deposit_amount = c6.number_input("Deposit", min_value=0.0, value=0.0, step=50.0)
        status = st.selectbox("Status", BOOKING_STATUSES[:3], format_func=format_status)
        notes = st.text_area("Notes")
        submitted = st.form_submit_button("Create booking", type="primary")

    if not submitted:
        return

    payload = build_payload({
        "event_name": event_name,
        "event_type": event_type,
        "customer_id": customer_options[customer_label],
        "venue_id": location["venue_id"],
        "space_id": location["space_id"],
        "event_date": event_date,
        "start_time": start_time,
        "end_time": end_time,
        "guest_count": int(guest_count),
        "status": status,
        "total_amount": total_amount,
        "deposit_amount": deposit_amount,
        "notes": notes,
    })
    resp = api_request("POST", "/api/bookings", json=payload)
    if resp is None:
        return
    if resp.status_code == 201:
        booking = resp.json()
        st.success(f"Booked \"{booking['event_name']}\" on {booking['event_date']} ({format_status(booking['status'])})")
    else:
        handle_api_error(resp, "Create booking")


def _render_booking_actions(items: List[Dict[str, Any]]) -> None:
    if not items:
        st.caption("No bookings match the filters.")
        return

    labels = {f"#{b['id']} {b['event_date']} {b['event_name']}": b for b in items}
    label = st.selectbox("Booking", list(labels), key="manage_booking")
    booking = labels[label]
    st.write(f"Status: **{format_status(booking['status'])}** · "
             f"Total {format_money(booking.get('total_amount'))} · Deposit {format_money(booking.get('deposit_amount'))}")

    if booking["status"] in ("cancelled", "completed"):
        st.caption("This booking is closed.")
        return

    c1, c2 = st.columns(2)
    with c1:
        with st.form(f"status_form_{booking['id']}"):
            new_status = st.selectbox("Move to", BOOKING_STATUSES, index=BOOKING_STATUSES.index(booking["status"]),
                                      format_func=format_status)
            if st.form_submit_button("Update status"):
                resp = api_request("PATCH", f"/api/bookings/{booking['id']}", json={"status": new_status})
                if resp is not None and resp.status_code == 200:
                    st.success(f"Status is now {format_status(resp.json()['status'])}")
                else:
                    handle_api_error(resp, "Update status")
    with c2:
        with st.form(f"cancel_form_{booking['id']}"):
            reason = st.text_input("Cancellation reason")
            note = st.text_area("Note")
            if st.form_submit_button("Cancel booking"):
                if not reason.strip():
                    st.error("A cancellation reason is required.")
                else:
                    resp = api_request("POST", f"/api/bookings/{booking['id']}/cancel",
                                       json=build_payload({"reason": reason, "note": note}))
                    if resp is not None and resp.status_code == 200:
                        st.success("Booking cancelled.")
                    else:
                        handle_api_error(resp, "Cancel booking")


def _render_availability_check() -> None:
    location = _venue_space_pickers("availability")
    c1, c2, c3 = st.columns(3)
    event_date = c1.date_input("Date", value=date.today(), key="availability_date")
    start_time = c2.time_input("Start", value=dtime(18, 0), key="availability_start")
    end_time = c3.time_input("End", value=dtime(23, 0), key="availability_end")

    if st.button("Check", key="availability_check"):
        params = build_payload({
            "event_date": event_date,
            "start_time": start_time,
            "end_time": end_time,
            "venue_id": location["venue_id"],
            "space_id": location["space_id"],
        })
        result = fetch_json("/api/bookings/availability", params=params)
        if result is None:
            return
        if result["available"]:
            st.success("✅ Available")
        else:
            st.error(f"📅 {conflict_message({'detail': 'Not available', 'conflictingBooking': result['conflictingBooking']})}")


# --------------------------------------------------------------------
# Calendar
# --------------------------------------------------------------------


def render_calendar() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Calendar")
    month: date = ss["calendar_month"]

    c1, c2, c3 = st.columns([1, 3, 1])
    if c1.button("◀ Previous", key="cal_prev"):
        ss["calendar_month"] = (month.replace(day=1) - pd.Timedelta(days=1)).replace(day=1)
        st.rerun()
    c2.subheader(month.strftime("%B %Y"))
    if c3.button("Next ▶", key="cal_next"):
        ss["calendar_month"] = (month.replace(day=28) + pd.Timedelta(days=4)).replace(day=1)
        st.rerun()

    include_cancelled = st.checkbox("Show cancelled", key="cal_include_cancelled")
    start, end = month_bounds(month.year, month.month)
    events = fetch_json("/api/calendar/events",
                        params={"start": start, "end": end, "include_cancelled": include_cancelled},
                        default=[]) or []

    days = group_events_by_day(events)
    if not days:
        st.caption("Nothing booked this month.")
        return

    for day, day_events in days.items():
        st.markdown(f"**{datetime.strptime(day, '%Y-%m-%d').strftime('%a %d %b')}**")
        for event in day_events:
            where = " / ".join(p for p in (event.get("venue_name"), event.get("space_name")) if p)
            st.markdown(
                f"<span style='color:{event['color']}'>●</span> {event['start'][11:16]}-{event['end'][11:16]} "
                f"{event['title']} · {format_status(event['status'])}"
                f"{' · ' + where if where else ''} · {event.get('guest_count', 0)} guests",
                unsafe_allow_html=True,
            )


# --------------------------------------------------------------------
# Venues & spaces
# --------------------------------------------------------------------


def render_venues() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Venues & Spaces")
    venues = fetch_json("/api/venues-with-spaces", default=[]) or []

    for venue in venues:
        status = "" if venue.get("is_active", True) else " (inactive)"
        with st.expander(f"🏛️ {venue['name']}{status} · capacity {venue.get('capacity') or 'n/a'}"):
            st.caption(", ".join(p for p in (venue.get("address"), venue.get("city")) if p))
            spaces = venue.get("spaces", [])
            if spaces:
                st.dataframe(pd.DataFrame(spaces)[["id", "name", "capacity", "hourly_rate", "is_active"]],
                             hide_index=True, use_container_width=True)
            if can("venues:manage"):
                _render_space_form(venue["id"])
                if st.button("Delete venue", key=f"delete_venue_{venue['id']}"):
                    resp = api_request("DELETE", f"/api/venues/{venue['id']}")
                    if resp is not None and resp.status_code == 204:
                        st.success("Venue deleted.")
                        st.rerun()
                    else:
                        handle_api_error(resp, "Delete venue")

    if can("venues:manage"):
        st.markdown("---")
        st.subheader("Add venue")
        with st.form("new_venue_form", clear_on_submit=True):
            name = st.text_input("Name")
            c1, c2, c3 = st.columns(3)
            address = c1.text_input("Address")
            city = c2.text_input("City")
            capacity = c3.number_input("Capacity", min_value=0, value=0, step=10)
            description = st.text_area("Description")
            if st.form_submit_button("Create venue", type="primary"):
                resp = api_request("POST", "/api/venues", json=build_payload({
                    "name": name, "address": address, "city": city,
                    "capacity": int(capacity), "description": description,
                }))
                if resp is not None and resp.status_code == 201:
                    st.success(f"Created {resp.json()['name']}")
                    st.rerun()
                else:
                    handle_api_error(resp, "Create venue")


def _render_space_form(venue_id: int) -> None:
    with st.form(f"new_space_form_{venue_id}", clear_on_submit=True):
        c1, c2, c3 = st.columns(3)
        name = c1.text_input("Space name")
        capacity = c2.number_input("Capacity", min_value=0, value=0, step=10)
        hourly_rate = c3.number_input("Hourly rate", min_value=0.0, value=0.0, step=25.0)
        styles = st.text_input("Setup styles (comma separated)")
        if st.form_submit_button("Add space"):
            resp = api_request("POST", f"/api/venues/{venue_id}/spaces", json=build_payload({
                "name": name, "capacity": int(capacity), "hourly_rate": hourly_rate,
                "setup_styles": [s.strip() for s in styles.split(",") if s.strip()],
            }))
            if resp is not None and resp.status_code == 201:
                st.success(f"Added {resp.json()['name']}")
                st.rerun()
            else:
                handle_api_error(resp, "Add space")


# --------------------------------------------------------------------
# Customers
# --------------------------------------------------------------------


def render_customers() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Customers")
    q = st.text_input("Search name, email or company", key="customers_q")
    customers = fetch_items("/api/customers", params=build_payload({"q": q}))
    if customers:
        frame = pd.DataFrame(customers)[["id", "name", "email", "phone", "company", "booking_count", "lifetime_value"]]
        st.dataframe(frame, hide_index=True, use_container_width=True)
    else:
        st.caption("No customers yet.")

    if customers:
        labels = {f"#{c['id']} {c['name']}": c for c in customers}
        chosen = labels[st.selectbox("Customer", list(labels), key="customer_detail")]
        history = fetch_json(f"/api/customers/{chosen['id']}/bookings", default=[]) or []
        st.caption(f"{len(history)} booking(s) · lifetime value {format_money(chosen.get('lifetime_value'))}")
        if history:
            st.dataframe(bookings_frame(history), hide_index=True, use_container_width=True)
        if can("customers:manage") and st.button("Delete customer", key=f"delete_customer_{chosen['id']}"):
            resp = api_request("DELETE", f"/api/customers/{chosen['id']}")
            if resp is not None and resp.status_code == 204:
                st.success("Customer deleted.")
                st.rerun()
            else:
                handle_api_error(resp, "Delete customer")

    if can("customers:manage"):
        st.markdown("---")
        st.subheader("Add customer")
        with st.form("new_customer_form", clear_on_submit=True):
            c1, c2 = st.columns(2)
            name = c1.text_input("Name")
            email = c2.text_input("Email")
            c3, c4 = st.columns(2)
            phone = c3.text_input("Phone")
            company = c4.text_input("Company")
            notes = st.text_area("Notes")
            if st.form_submit_button("Create customer", type="primary"):
                resp = api_request("POST", "/api/customers", json=build_payload({
                    "name": name, "email": email, "phone": phone, "company": company, "notes": notes,
                }))
                if resp is not None and resp.status_code == 201:
                    st.success(f"Created {resp.json()['name']}")
                    st.rerun()
                else:
                    handle_api_error(resp, "Create customer")


# --------------------------------------------------------------------
# Proposals
# --------------------------------------------------------------------


def render_proposals() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Proposals")
    proposals = fetch_items("/api/proposals")
    if proposals:
        frame = pd.DataFrame(proposals)[["id", "title", "customer_name", "status", "total_amount", "valid_until"]]
        st.dataframe(frame, hide_index=True, use_container_width=True)

        labels = {f"#{p['id']} {p['title']} ({p['status']})": p for p in proposals}
        proposal = labels[st.selectbox("Proposal", list(labels), key="proposal_detail")]
        _render_proposal_actions(proposal)
    else:
        st.caption("No proposals yet.")

    if can("proposals:manage"):
        st.markdown("---")
        _render_proposal_form()


def _render_proposal_actions(proposal: Dict[str, Any]) -> None:
    if proposal.get("public_token"):
        st.caption(f"Customer link: {APP_BASE_URL}/?proposal={proposal['public_token']}")
    if not can("proposals:manage"):
        return

    c1, c2, c3 = st.columns(3)
    if proposal["status"] in ("draft", "sent", "viewed") and c1.button("Send to customer", key="proposal_send"):
        resp = api_request("POST", f"/api/proposals/{proposal['id']}/send")
        if resp is not None and resp.status_code == 200:
            st.success("Proposal sent.")
            st.rerun()
        else:
            handle_api_error(resp, "Send proposal")
    if proposal["status"] == "accepted" and c2.button("Convert to booking", key="proposal_convert"):
        resp = api_request("POST", f"/api/proposals/{proposal['id']}/convert-to-booking")
        if resp is not None and resp.status_code == 201:
            booking = resp.json()
            st.success(f"Booking #{booking['id']} created as {format_status(booking['status'])}")
        else:
            handle_api_error(resp, "Convert proposal")
    if proposal["status"] == "draft" and c3.button("Delete draft", key="proposal_delete"):
        resp = api_request("DELETE", f"/api/proposals/{proposal['id']}")
        if resp is not None and resp.status_code == 204:
            st.rerun()
        else:
            handle_api_error(resp, "Delete proposal")


def _render_proposal_form() -> None:
    st.subheader("New proposal")
    customers = fetch_items("/api/customers")
    if not customers:
        st.caption("Add a customer first.")
        return
    customer_options = {f"{c['name']} (#{c['id']})": c["id"] for c in customers}
    location = _venue_space_pickers("proposal")

    if can("ai:use") and st.button("✨ Draft with AI", key="proposal_ai"):
        resp = api_request("POST", "/api/ai/proposal-draft", timeout=60, json=build_payload({
            "event_type": ss.get("proposal_event_type") or "event",
            "guest_count": ss.get("proposal_guests"),
            "venue_id": location["venue_id"],
        }))
        if resp is not None and resp.status_code == 200:
            ss["proposal_content"] = resp.json()["text"]
        else:
            handle_api_error(resp, "AI draft")

    with st.form("new_proposal_form"):
        customer_label = st.selectbox("Customer", list(customer_options))
        title = st.text_input("Title")
        c1, c2 = st.columns(2)
        event_name = c1.text_input("Event name")
        event_type = c2.text_input("Event type", key="proposal_event_type")
        c3, c4, c5 = st.columns(3)
        event_date = c3.date_input("Event date", value=date.today())
        start_time = c4.time_input("Start", value=dtime(18, 0))
        end_time = c5.time_input("End", value=dtime(23, 0))
        c6, c7, c8 = st.columns(3)
        guest_count = c6.number_input("Guests", min_value=1, value=50, step=1, key="proposal_guests")
        total_amount = c7.number_input("Total", min_value=0.0, value=0.0, step=100.0)
        deposit_percent = c8.number_input("Deposit %", min_value=0.0, max_value=100.0, value=30.0, step=5.0)
        valid_until = st.date_input("Valid until", value=None)
        content = st.text_area("Proposal text", key="proposal_content", height=200)
        submitted = st.form_submit_button("Create proposal", type="primary")

    if not submitted:
        return
    details = build_payload({
        "event_name": event_name or title,
        "event_type": event_type,
        "event_date": event_date,
        "start_time": start_time,
        "end_time": end_time,
        "guest_count": int(guest_count),
        "venue_id": location["venue_id"],
        "space_id": location["space_id"],
    })
    payload = build_payload({
        "customer_id": customer_options[customer_label],
        "title": title,
        "content": content,
        "total_amount": total_amount,
        "deposit_percent": deposit_percent,
        "valid_until": valid_until,
    }, keep_zero=["deposit_percent"])
    payload["event_details"] = details
    resp = api_request("POST", "/api/proposals", json=payload)
    if resp is not None and resp.status_code == 201:
        st.success(f"Proposal #{resp.json()['id']} saved as draft.")
    else:
        handle_api_error(resp, "Create proposal")


def render_public_proposal(token: str) -> None:
    """Customer-facing view opened from the emailed ?proposal=<token> link."""
    resp = api_request("GET", f"/api/public/proposals/{token}")
    if resp is None:
        return
    if resp.status_code != 200:
        st.error(error_detail(resp, "Proposal not found"))
        return

    proposal = resp.json()
    st.title(proposal["title"])
    if proposal.get("tenant_name"):
        st.caption(f"From {proposal['tenant_name']}")
    details = proposal.get("event_details") or {}
    st.write(" · ".join(str(details[k]) for k in ("event_name", "event_date", "start_time", "end_time")
                        if details.get(k)))
    if details.get("guest_count"):
        st.write(f"Guests: {details['guest_count']}")
    st.markdown(proposal.get("content") or "")
    st.metric("Total", format_money(proposal.get("total_amount")))
    st.caption(f"Deposit: {proposal.get('deposit_percent', 0):.0f}% · Valid until {proposal.get('valid_until') or 'n/a'}")

    if proposal["status"] not in ("sent", "viewed"):
        st.info(f"This proposal is {proposal['status']}.")
        return

    with st.form("public_accept"):
        signature = st.text_input("Type your full name to accept")
        if st.form_submit_button("Accept proposal", type="primary"):
            result = api_request("POST", f"/api/public/proposals/{token}/accept", json={"signature": signature})
            if result is not None and result.status_code == 200:
                st.success("Thank you! The venue will be in touch to confirm your booking.")
            else:
                st.error(error_detail(result, "Could not accept"))
    with st.form("public_decline"):
        reason = st.text_area("Reason (optional)")
        if st.form_submit_button("Decline"):
            result = api_request("POST", f"/api/public/proposals/{token}/decline",
                                 json=build_payload({"reason": reason}))
            if result is not None and result.status_code == 200:
                st.info("Proposal declined.")
            else:
                st.error(error_detail(result, "Could not decline"))


# --------------------------------------------------------------------
# Leads
# --------------------------------------------------------------------


def render_leads() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Leads")
    c1, c2 = st.columns(2)
    status_filter = c1.selectbox("Status", ["All"] + LEAD_STATUSES, key="leads_status_filter")
    q = c2.text_input("Search", key="leads_q")
    leads = fetch_items("/api/leads", params=build_payload({
        "status": None if status_filter == "All" else status_filter, "q": q,
    }))

    if leads:
        frame = pd.DataFrame(leads)[["id", "first_name", "last_name", "email", "event_type", "guest_count",
                                     "budget", "status", "source"]]
        st.dataframe(frame, hide_index=True, use_container_width=True)
        labels = {f"#{item['id']} {item['first_name']} {item.get('last_name') or ''} ({item['status']})": item for item in leads}
        lead = labels[st.selectbox("Lead", list(labels), key="lead_detail")]
        _render_lead_detail(lead)
    else:
        st.caption("No leads.")

    if can("leads:manage"):
        st.markdown("---")
        st.subheader("Add lead")
        with st.form("new_lead_form", clear_on_submit=True):
            a, b = st.columns(2)
            first_name = a.text_input("First name")
            last_name = b.text_input("Last name")
            c, d = st.columns(2)
            email = c.text_input("Email")
            phone = d.text_input("Phone")
            e, f, g = st.columns(3)
            event_type = e.text_input("Event type")
            guest_count = f.number_input("Guests", min_value=0, value=0, step=10)
            budget = g.number_input("Budget", min_value=0.0, value=0.0, step=500.0)
            source = st.selectbox("Source", ["website", "referral", "walk-in", "phone", "other"])
            if st.form_submit_button("Create lead", type="primary"):
                resp = api_request("POST", "/api/leads", json=build_payload({
                    "first_name": first_name, "last_name": last_name, "email": email, "phone": phone,
                    "event_type": event_type, "guest_count": int(guest_count), "budget": budget, "source": source,
                }))
                if resp is not None and resp.status_code == 201:
                    st.success("Lead created.")
                    st.rerun()
                else:
                    handle_api_error(resp, "Create lead")


def _render_lead_detail(lead: Dict[str, Any]) -> None:
    activities = fetch_json(f"/api/leads/{lead['id']}/activities", default=[]) or []
    for activity in activities:
        st.caption(f"{activity.get('created_at', '')[:16]} · {activity['type']} · {activity.get('body') or ''}")

    if not can("leads:manage"):
        return

    c1, c2 = st.columns(2)
    with c1:
        new_status = st.selectbox("Move to", LEAD_STATUSES, index=LEAD_STATUSES.index(lead["status"]),
                                  key=f"lead_status_{lead['id']}")
        if st.button("Update", key=f"lead_update_{lead['id']}"):
            resp = api_request("PATCH", f"/api/leads/{lead['id']}", json={"status": new_status})
            if resp is not None and resp.status_code == 200:
                st.rerun()
            else:
                handle_api_error(resp, "Update lead")
        if not lead.get("customer_id") and st.button("Convert to customer", key=f"lead_convert_{lead['id']}"):
            resp = api_request("POST", f"/api/leads/{lead['id']}/convert")
            if resp is not None and resp.status_code in (200, 201):
                st.success(f"Customer {resp.json()['name']} ready.")
                st.rerun()
            else:
                handle_api_error(resp, "Convert lead")
    with c2:
        with st.form(f"lead_activity_{lead['id']}", clear_on_submit=True):
            kind = st.selectbox("Activity", ["NOTE", "CALL", "EMAIL"])
            body = st.text_area("Details")
            if st.form_submit_button("Log activity"):
                resp = api_request("POST", f"/api/leads/{lead['id']}/activities", json={"type": kind, "body": body})
                if resp is not None and resp.status_code == 201:
                    st.rerun()
                else:
                    handle_api_error(resp, "Log activity")


# --------------------------------------------------------------------
# Payments
# --------------------------------------------------------------------


def render_payments() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Payments")
    bookings = [b for b in fetch_items("/api/bookings") if b["status"] != "cancelled"]
    if not bookings:
        st.caption("No open bookings.")
        return

    labels = {f"#{b['id']} {b['event_date']} {b['event_name']}": b for b in bookings}
    booking = labels[st.selectbox("Booking", list(labels), key="payments_booking")]
    payments = fetch_items("/api/payments", params={"booking_id": booking["id"]})
    paid = sum(p["amount"] for p in payments if p["status"] == "completed")

    c1, c2, c3 = st.columns(3)
    c1.metric("Total", format_money(booking.get("total_amount")))
    c2.metric("Paid", format_money(paid))
    c3.metric("Status", format_status(booking["status"]))

    if payments:
        st.dataframe(pd.DataFrame(payments)[["id", "amount", "payment_type", "method", "status", "processed_at"]],
                     hide_index=True, use_container_width=True)

    if not can("payments:manage"):
        return

    left, right = st.columns(2)
    with left:
        with st.form("record_payment", clear_on_submit=True):
            st.subheader("Record payment")
            amount = st.number_input("Amount", min_value=0.0, value=0.0, step=50.0)
            payment_type = st.selectbox("Type", ["deposit", "balance"])
            method = st.selectbox("Method", ["card", "cash", "check", "bank_transfer"])
            if st.form_submit_button("Record", type="primary"):
                resp = api_request("POST", "/api/payments", json={
                    "booking_id": booking["id"], "amount": amount, "payment_type": payment_type, "method": method,
                })
                if resp is not None and resp.status_code == 201:
                    st.success(f"Recorded {format_money(resp.json()['amount'])}")
                    st.rerun()
                else:
                    handle_api_error(resp, "Record payment")
    with right:
        refundable = [p for p in payments if p["amount"] > 0 and p["status"] == "completed"]
        if refundable:
            with st.form("refund_payment", clear_on_submit=True):
                st.subheader("Refund")
                options = {f"#{p['id']} {format_money(p['amount'])} {p['payment_type']}": p["id"] for p in refundable}
                chosen = st.selectbox("Payment", list(options))
                amount = st.number_input("Amount (blank = full)", min_value=0.0, value=0.0, step=50.0)
                reason = st.text_input("Reason")
                if st.form_submit_button("Refund"):
                    resp = api_request("POST", f"/api/payments/{options[chosen]}/refund",
                                       json=build_payload({"amount": amount, "reason": reason}))
                    if resp is not None and resp.status_code == 201:
                        st.success(f"Refunded {format_money(-resp.json()['amount'])}")
                        st.rerun()
                    else:
                        handle_api_error(resp, "Refund")

    if can("payments:online") and st.button("Create online payment link", key="payments_intent"):
        resp = api_request("POST", "/api/payments/intent", json={"booking_id": booking["id"]})
        if resp is not None and resp.status_code == 200:
            intent = resp.json()
            st.success(f"Payment intent {intent['id']} for {format_money(intent['amount'])} ({intent['status']})")
        else:
            handle_api_error(resp, "Online payment")


# --------------------------------------------------------------------
# Settings & users
# --------------------------------------------------------------------


def render_settings() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Settings")
    tenant = fetch_json("/api/tenant", default=None)
    if tenant:
        package = tenant["package"]
        st.info(f"**{tenant['name']}** · {str(package.get('name', '')).title()} package · {tenant['status']}")
        usage = tenant.get("usage") or {}
        if usage:
            st.caption(" · ".join(f"{k.replace('_', ' ')}: {v}" for k, v in usage.items()))

    can_edit = can("settings:manage")

    st.subheader("Notifications")
    prefs = fetch_json("/api/settings/notifications", default=None)
    if prefs:
        with st.form("notification_prefs"):
            values = {key: st.checkbox(key.replace("_", " ").capitalize(), value=value, disabled=not can_edit)
                      for key, value in prefs.items()}
            if st.form_submit_button("Save notifications", disabled=not can_edit):
                resp = api_request("PUT", "/api/settings/notifications", json=values)
                if resp is not None and resp.status_code == 200:
                    st.success("Saved.")
                else:
                    handle_api_error(resp, "Save notifications")

    st.subheader("Business details")
    settings = (fetch_json("/api/settings", default={}) or {}).get("values", {})
    with st.form("business_settings"):
        business_name = st.text_input("Display name", value=settings.get("business_name") or "", disabled=not can_edit)
        timezone = st.text_input("Timezone", value=settings.get("timezone") or "UTC", disabled=not can_edit)
        currency = st.text_input("Currency", value=settings.get("currency") or "USD", disabled=not can_edit)
        if st.form_submit_button("Save", disabled=not can_edit):
            resp = api_request("PUT", "/api/settings", json={"values": {
                "business_name": business_name, "timezone": timezone, "currency": currency,
            }})
            if resp is not None and resp.status_code == 200:
                st.success("Saved.")
            else:
                handle_api_error(resp, "Save settings")

    if can("users:manage") and get_role() == "tenant_admin":
        _render_users()


def _render_users() -> None:
    st.subheader("Team")
    users = fetch_items("/api/users")
    me = (get_current_user() or {}).get("id")
    for user in users:
        c1, c2, c3 = st.columns([3, 2, 2])
        c1.write(f"{user['email']}{' (you)' if user['id'] == me else ''}")
        if user["id"] == me:
            c2.caption(user["role"])
            continue
        roles = ["tenant_admin", "manager", "staff", "viewer"]
        role = c2.selectbox("Role", roles, index=roles.index(user["role"]) if user["role"] in roles else 2,
                            key=f"user_role_{user['id']}", label_visibility="collapsed")
        active = c3.checkbox("Active", value=bool(user.get("is_active", True)), key=f"user_active_{user['id']}")
        if role != user["role"] or active != bool(user.get("is_active", True)):
            resp = api_request("PATCH", f"/api/users/{user['id']}", json={"role": role, "is_active": active})
            if resp is not None and resp.status_code == 200:
                st.rerun()
            else:
                handle_api_error(resp, "Update user")

    with st.form("new_user_form", clear_on_submit=True):
        c1, c2, c3 = st.columns(3)
        email = c1.text_input("Email")
        password = c2.text_input("Temporary password", type="password")
        role = c3.selectbox("Role", ["manager", "staff", "viewer", "tenant_admin"])
        if st.form_submit_button("Add user"):
            resp = api_request("POST", "/api/users", json={"email": email, "password": password, "role": role})
            if resp is not None and resp.status_code == 201:
                st.success(f"Added {resp.json()['email']}")
                st.rerun()
            else:
                handle_api_error(resp, "Add user")


def render_audit_log() -> None:
    if not require_auth(redirect_to_login=True):
        return

    st.header("Audit Log")
    c1, c2 = st.columns(2)
    entity_type = c1.selectbox("Entity", ["All", "booking", "payment", "proposal", "customer", "tenant"],
                               key="audit_entity")
    limit = c2.number_input("Limit", min_value=1, max_value=500, value=100, step=50, key="audit_limit")
    logs = fetch_items("/api/audit-logs", params=build_payload({
        "entity_type": None if entity_type == "All" else entity_type, "limit": int(limit),
    }))
    if logs:
        st.dataframe(pd.DataFrame(logs)[["created_at", "action", "entity_type", "entity_id", "user_id", "details"]],
                     hide_index=True, use_container_width=True)
    else:
        st.caption("No entries.")


# --------------------------------------------------------------------
# Super admin
# --------------------------------------------------------------------


def render_super_admin() -> None:
    if not require_auth(redirect_to_login=True):
        return

    caps = ss.get("capabilities") or {}
    if not caps.get("is_super_admin"):
        st.error("Super admin access required.")
        return

    st.header("Platform")
    analytics = fetch_json("/api/super-admin/analytics", default=None)
    if analytics:
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Tenants", analytics["tenants"])
        c2.metric("Users", analytics["users"])
        c3.metric("Active bookings", analytics["active_bookings"])
        c4.metric("Booked revenue", format_money(analytics["booked_revenue"]))
        st.caption(" · ".join(f"{k}: {v}" for k, v in analytics["tenants_by_package"].items()))

    c1, c2 = st.columns(2)
    q = c1.text_input("Search tenants", key="sa_q")
    status = c2.selectbox("Status", ["All", "trialing", "active", "past_due", "suspended", "canceled"], key="sa_status")
    tenants = fetch_items("/api/super-admin/tenants", params=build_payload({
        "q": q, "status": None if status == "All" else status,
    }))
    if tenants:
        st.dataframe(pd.DataFrame(tenants), hide_index=True, use_container_width=True)

        labels = {f"#{t['id']} {t['name']} ({t['package']}, {t['status']})": t for t in tenants}
        tenant = labels[st.selectbox("Tenant", list(labels), key="sa_tenant")]

        with st.form("sa_update_tenant"):
            packages = ["starter", "professional", "enterprise"]
            statuses = ["trialing", "active", "past_due", "suspended", "canceled"]
            a, b = st.columns(2)
            package = a.selectbox("Package", packages, index=packages.index(tenant["package"]))
            new_status = b.selectbox("Status", statuses, index=statuses.index(tenant["status"]))
            if st.form_submit_button("Update tenant"):
                resp = api_request("PATCH", f"/api/super-admin/tenants/{tenant['id']}",
                                   json={"package": package, "status": new_status})
                if resp is not None and resp.status_code == 200:
                    st.success("Tenant updated.")
                    st.rerun()
                else:
                    handle_api_error(resp, "Update tenant")

        with st.form("sa_assume"):
            reason = st.text_input("Reason for access (logged)")
            if st.form_submit_button("Assume tenant"):
                resp = api_request("POST", "/api/super-admin/assume-tenant",
                                   json={"tenant_id": tenant["id"], "reason": reason})
                if resp is not None and resp.status_code == 200:
                    body = resp.json()
                    ss["_super_admin_token"] = {
                        "auth_token": ss.get("auth_token"),
                        "current_user": ss.get("current_user"),
                        "session_id": ss.get("session_id"),
                        "refresh_token": ss.get("refresh_token"),
                    }
                    user = dict(ss.get("current_user") or {}, tenant_id=body["tenant_id"])
                    # Assumed tokens cannot be refreshed; expiry drops back to the console
                    ss["_apply_payload"] = {"auth_token": body["access_token"], "current_user": user,
                                            "session_id": None, "refresh_token": None}
                    ss["_post_login_nav"] = "Dashboard"
                    st.rerun()
                else:
                    handle_api_error(resp, "Assume tenant")

    st.markdown("---")
    st.subheader("Create tenant")
    with st.form("sa_create_tenant", clear_on_submit=True):
        name = st.text_input("Business name")
        a, b = st.columns(2)
        package = a.selectbox("Package", ["starter", "professional", "enterprise"])
        tenant_status = b.selectbox("Status", ["trialing", "active"])
        c, d = st.columns(2)
        admin_email = c.text_input("Admin email")
        admin_password = d.text_input("Admin password", type="password")
        if st.form_submit_button("Create tenant", type="primary"):
            resp = api_request("POST", "/api/super-admin/tenants", json=build_payload({
                "name": name, "package": package, "status": tenant_status,
                "admin_email": admin_email, "admin_password": admin_password,
            }))
            if resp is not None and resp.status_code == 201:
                st.success(f"Created {resp.json()['name']}")
                st.rerun()
            else:
                handle_api_error(resp, "Create tenant")


# --------------------------------------------------------------------
# Login
# --------------------------------------------------------------------


def _login(email: str, password: str) -> bool:
    resp = api_request("POST", "/auth/login", json={"email": email, "password": password}, timeout=15)
    if resp is None:
        return False
    if resp.status_code != 200:
        st.error(error_detail(resp, "Login failed"))
        return False

    data = resp.json()
    ss["_apply_payload"] = {
        "auth_token": data["access_token"],
        "current_user": data["user"],
        "session_id": data["session_id"],
        "refresh_token": data["refresh_token"],
    }
    ss["_post_login_nav"] = "Super Admin" if data["user"].get("role") == "super_admin" else "Dashboard"
    ss["_clear_login_fields"] = True
    return True


def render_login() -> None:
    # Widget keys can only be reset before the widgets exist in this run
    if ss.get("_clear_login_fields"):
        for key in ("login_email", "login_password", "register_password"):
            ss.pop(key, None)
        ss.pop("_clear_login_fields", None)

    st.title("🏛️ Venuin")
    st.caption("Bookings, proposals and payments for event venues.")

    tab_login, tab_register = st.tabs(["Log in", "Create account"])
    with tab_login:
        with st.form("login_form"):
            email = st.text_input("Email", key="login_email")
            password = st.text_input("Password", type="password", key="login_password")
            if st.form_submit_button("Log in", type="primary"):
                if _login(email.strip(), password):
                    st.rerun()

    with tab_register:
        with st.form("register_form"):
            tenant_name = st.text_input("Venue business name")
            c1, c2 = st.columns(2)
            first_name = c1.text_input("First name")
            last_name = c2.text_input("Last name")
            email = st.text_input("Work email", key="register_email")
            password = st.text_input("Password (8+ characters)", type="password", key="register_password")
            if st.form_submit_button("Create account", type="primary"):
                resp = api_request("POST", "/auth/register", json=build_payload({
                    "tenant_name": tenant_name, "first_name": first_name, "last_name": last_name,
                    "email": email, "password": password,
                }), timeout=15)
                if resp is not None and resp.status_code == 200:
                    # Registration returns no refresh session; log in for one
                    if _login(email.strip(), password):
                        st.rerun()
                else:
                    handle_api_error(resp, "Registration")


PAGES = {
    "Login": render_login,
    "Dashboard": render_dashboard,
    "Bookings": render_bookings,
    "Calendar": render_calendar,
    "Venues": render_venues,
    "Customers": render_customers,
    "Proposals": render_proposals,
    "Leads": render_leads,
    "Payments": render_payments,
    "Settings": render_settings,
    "Audit Log": render_audit_log,
    "Super Admin": render_super_admin,
}


def main() -> None:
    init_auth_state()

    # Customer proposal links need no login
    token = proposal_token(st.query_params)
    if token:
        render_public_proposal(token)
        return

    if apply_pending_actions():
        st.rerun()

    if is_logged_in() and not ss.get("capabilities"):
        fetch_and_cache_capabilities()

    if not ss.get("nav_page"):
        ss["nav_page"] = "Dashboard" if is_authenticated() else "Login"

    nav_page = ss.get("nav_page", "Login")
    if IS_DEV:
        print(f"[ROUTING] page={nav_page} | token_present={bool(ss.get('auth_token'))} | role={get_role()}")

    if nav_page != "Login" and not is_authenticated():
        nav_page = ss["nav_page"] = "Login"
    elif is_authenticated() and nav_page not in visible_pages(ss.get("capabilities")):
        pages = visible_pages(ss.get("capabilities"))
        nav_page = ss["nav_page"] = pages[0]

    render_sidebar()
    PAGES.get(nav_page, render_login)()


if __name__ == "__main__":
    main()
