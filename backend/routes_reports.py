"""
backend/routes_reports.py

Dashboard and reporting endpoints. All figures are computed per tenant
straight from bookings/payments/leads; nothing is cached.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.authz import Capability
    from backend.booking_status import CANCELLED
    from backend.dependencies import require_capability
    from backend.tenant import TenantContext, get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from authz import Capability
    from booking_status import CANCELLED
    from dependencies import require_capability
    from tenant import TenantContext, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/reports",
    tags=["reports"],
)

VIEW = Depends(require_capability(Capability.REPORTS_VIEW))
ADVANCED = Depends(require_capability(Capability.REPORTS_ADVANCED))

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def _scalar(conn: sqlite3.Connection, sql: str, params) -> float:
    row = conn.execute(sql, params).fetchone()
    return (row[0] or 0) if row else 0


def build_summary(conn: sqlite3.Connection, scope: TenantContext, today: Optional[str] = None) -> Dict[str, Any]:
    """
    Headline numbers for the dashboard.

    revenue is the contracted total of non-cancelled bookings; collected is
    the net of recorded payments (refunds are stored negative).
    """
    today = today or date.today().isoformat()
    clause, params = scope.filter("tenant_id")

    total = _scalar(conn, f"SELECT COUNT(*) FROM bookings WHERE {clause}", params)
    cancelled = _scalar(conn, f"SELECT COUNT(*) FROM bookings WHERE {clause} AND status = ?", (*params, CANCELLED))
    revenue = _scalar(
        conn,
        f"SELECT SUM(COALESCE(total_amount, 0)) FROM bookings WHERE {clause} AND status != ?",
        (*params, CANCELLED),
    )
    upcoming = _scalar(
        conn,
        f"SELECT COUNT(*) FROM bookings WHERE {clause} AND status != ? AND event_date >= ?",
        (*params, CANCELLED, today),
    )
    collected = _scalar(conn, f"SELECT SUM(amount) FROM payments WHERE {clause}", params)
    customers = _scalar(conn, f"SELECT COUNT(*) FROM customers WHERE {clause}", params)
    leads = _scalar(conn, f"SELECT COUNT(*) FROM leads WHERE {clause}", params)
    won = _scalar(conn, f"SELECT COUNT(*) FROM leads WHERE {clause} AND status = 'WON'", params)

    return {
        "total_bookings": int(total),
        "active_bookings": int(total - cancelled),
        "upcoming_bookings": int(upcoming),
        "cancelled_bookings": int(cancelled),
        "revenue": round(float(revenue), 2),
        "collected": round(float(collected), 2),
        "outstanding": round(float(revenue) - float(collected), 2),
        "customers": int(customers),
        "leads": int(leads),
        "leads_won": int(won),
        "lead_conversion_rate": round(won * 100.0 / leads, 1) if leads else 0.0,
    }


def venue_breakdown(conn: sqlite3.Connection, scope: TenantContext) -> List[Dict[str, Any]]:
    clause, params = scope.filter("v.tenant_id")
    rows = conn.execute(
        f"""
        SELECT v.id AS venue_id, v.name AS venue_name,
               COUNT(b.id) AS bookings,
               COALESCE(SUM(b.total_amount), 0) AS revenue,
               COALESCE(SUM(b.guest_count), 0) AS guests
        FROM venues v
        LEFT JOIN bookings b
               ON b.venue_id = v.id AND b.tenant_id = v.tenant_id AND b.status != ?
        WHERE {clause}
        GROUP BY v.id, v.name
        ORDER BY revenue DESC, v.name
        """,
        (CANCELLED, *params),
    ).fetchall()
    return [
        {
            "venue_id": r["venue_id"],
            "venue_name": r["venue_name"],
            "bookings": int(r["bookings"]),
            "revenue": round(float(r["revenue"]), 2),
            "guests": int(r["guests"]),
        }
        for r in rows
    ]


@router.get("/summary", dependencies=[VIEW])
def report_summary(ctx: AuthContext = Depends(require_auth_context)) -> Dict[str, Any]:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        return build_summary(conn, scope)
    except sqlite3.Error as e:
        logger.error("[REPORTS] DB error on summary: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/revenue", dependencies=[VIEW])
def report_revenue(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    ctx: AuthContext = Depends(require_auth_context),
) -> Dict[str, Any]:
    """Booked and collected revenue per month of `year` (default: current year)."""
    year = year or date.today().year
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("b.tenant_id")
    pay_clause, pay_params = scope.filter("p.tenant_id")

    conn = scope.connect()
    try:
        booked = conn.execute(
            f"""
            SELECT substr(b.event_date, 6, 2) AS month, COUNT(*) AS bookings,
                   COALESCE(SUM(b.total_amount), 0) AS revenue
            FROM bookings b
            WHERE {clause} AND b.status != ? AND substr(b.event_date, 1, 4) = ?
            GROUP BY month
            """,
            (*params, CANCELLED, str(year)),
        ).fetchall()
        collected = conn.execute(
            f"""
            SELECT substr(b.event_date, 6, 2) AS month, COALESCE(SUM(p.amount), 0) AS paid
            FROM payments p
            JOIN bookings b ON b.id = p.booking_id AND b.tenant_id = p.tenant_id
            WHERE {pay_clause} AND substr(b.event_date, 1, 4) = ?
            GROUP BY month
            """,
            (*pay_params, str(year)),
        ).fetchall()
    except sqlite3.Error as e:
        logger.error("[REPORTS] DB error on revenue: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    by_month = {r["month"]: r for r in booked}
    paid = {r["month"]: float(r["paid"]) for r in collected}
    months = []
    for i, label in enumerate(MONTHS, start=1):
        key = f"{i:02d}"
        row = by_month.get(key)
        months.append({
            "month": i,
            "label": label,
            "bookings": int(row["bookings"]) if row else 0,
            "revenue": round(float(row["revenue"]), 2) if row else 0.0,
            "paid": round(paid.get(key, 0.0), 2),
        })
    return {
        "year": year,
        "months": months,
        "total_revenue": round(sum(m["revenue"] for m in months), 2),
        "total_paid": round(sum(m["paid"] for m in months), 2),
    }


@router.get("/venues", dependencies=[ADVANCED])
def report_venues(ctx: AuthContext = Depends(require_auth_context)) -> Dict[str, Any]:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        items = venue_breakdown(conn, scope)
        return {"items": items, "total": len(items)}
    except sqlite3.Error as e:
        logger.error("[REPORTS] DB error on venues: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/cancellations", dependencies=[VIEW])
def report_cancellations(ctx: AuthContext = Depends(require_auth_context)) -> Dict[str, Any]:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("tenant_id")
    conn = scope.connect()
    try:
        rows = conn.execute(
            f"""
            SELECT COALESCE(NULLIF(TRIM(cancellation_reason), ''), 'unspecified') AS reason, COUNT(*) AS n
            FROM bookings
            WHERE {clause} AND status = ?
            GROUP BY reason
            ORDER BY n DESC, reason
            """,
            (*params, CANCELLED),
        ).fetchall()
    except sqlite3.Error as e:
        logger.error("[REPORTS] DB error on cancellations: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    items = [{"reason": r["reason"], "count": int(r["n"])} for r in rows]
    return {"items": items, "total": sum(i["count"] for i in items)}
