"""
backend/routes_public.py

Unauthenticated lead capture: the public venue directory and the quote
request form behind it.

A venue is listed while it is active and its tenant is active or trialing
on a package with lead management. An inquiry becomes a NEW lead with
source "website" in the tenant that owns the venue; the request body never
chooses the tenant.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query

try:
    from backend.audit import record_audit
    from backend.authz import PACKAGE_CAPABILITIES, Capability
    from backend.db import now_iso, system_db
    from backend.models import LeadActivityType, LeadStatus
    from backend.routes_leads import add_activity
    from backend.schemas_crm import (
        PublicInquiryRequest,
        PublicInquiryResponse,
        PublicSpace,
        PublicVenueListResponse,
        PublicVenueResponse,
    )
except ModuleNotFoundError:
    from audit import record_audit
    from authz import PACKAGE_CAPABILITIES, Capability
    from db import now_iso, system_db
    from models import LeadActivityType, LeadStatus
    from routes_leads import add_activity
    from schemas_crm import (
        PublicInquiryRequest,
        PublicInquiryResponse,
        PublicSpace,
        PublicVenueListResponse,
        PublicVenueResponse,
    )

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/public",
    tags=["public"],
)

LISTED_TENANT_STATUSES = ("active", "trialing")
LEAD_PACKAGES = tuple(sorted(
    name for name, caps in PACKAGE_CAPABILITIES.items() if Capability.LEADS_MANAGE.value in caps
))
WEBSITE_SOURCE = "website"


def _listed_clause() -> tuple:
    """WHERE fragment (venues v JOIN tenants t) for venues open to the public."""
    statuses = ", ".join("?" for _ in LISTED_TENANT_STATUSES)
    packages = ", ".join("?" for _ in LEAD_PACKAGES)
    clause = f"v.is_active = 1 AND t.status IN ({statuses}) AND t.package IN ({packages})"
    return clause, (*LISTED_TENANT_STATUSES, *LEAD_PACKAGES)


def _spaces_by_venue(conn: sqlite3.Connection, venues: List[sqlite3.Row]) -> Dict[int, List[PublicSpace]]:
    spaces: Dict[int, List[PublicSpace]] = defaultdict(list)
    for venue in venues:
        rows = conn.execute(
            """
            SELECT id, name, capacity FROM spaces
            WHERE venue_id = ? AND tenant_id = ? AND is_active = 1
            ORDER BY name
            """,
            (venue["id"], venue["tenant_id"]),
        ).fetchall()
        spaces[venue["id"]] = [PublicSpace(**dict(r)) for r in rows]
    return spaces


@router.get("/venues", response_model=PublicVenueListResponse)
def list_public_venues(
    q: Optional[str] = Query(None, min_length=1, max_length=200),
    city: Optional[str] = Query(None, min_length=1, max_length=100),
    min_capacity: Optional[int] = Query(None, ge=1),
    limit: int = Query(24, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> PublicVenueListResponse:
    clause, params = _listed_clause()
    where = f"WHERE {clause}"
    args: List[Any] = list(params)
    if q:
        pattern = f"%{q}%"
        where += " AND (lower(v.name) LIKE lower(?) OR lower(v.description) LIKE lower(?))"
        args += [pattern, pattern]
    if city:
        where += " AND lower(v.city) = lower(?)"
        args.append(city.strip())
    if min_capacity is not None:
        where += (" AND (v.capacity >= ? OR EXISTS (SELECT 1 FROM spaces s WHERE s.venue_id = v.id"
                  " AND s.tenant_id = v.tenant_id AND s.is_active = 1 AND s.capacity >= ?))")
        args += [min_capacity, min_capacity]

    base = f"FROM venues v JOIN tenants t ON t.id = v.tenant_id {where}"
    conn = system_db()
    try:
        total = conn.execute(f"SELECT COUNT(*) AS n {base}", args).fetchone()["n"]
        rows = conn.execute(
            f"""
            SELECT v.id, v.tenant_id, v.name, v.description, v.city, v.capacity, t.name AS tenant_name
            {base}
            ORDER BY v.name, v.id
            LIMIT ? OFFSET ?
            """,
            (*args, limit, offset),
        ).fetchall()
        spaces = _spaces_by_venue(conn, rows)
    except sqlite3.Error as e:
        logger.error("[PUBLIC] DB error on venue list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    return PublicVenueListResponse(
        items=[PublicVenueResponse(**dict(r), spaces=spaces[r["id"]]) for r in rows],
        total=int(total),
    )


def _inquiry_notes(request: PublicInquiryRequest, venue_name: str, space_name: Optional[str]) -> str:
    lines = [f"Website inquiry for {venue_name}" + (f" ({space_name})" if space_name else "")]
    if request.message:
        lines += ["", request.message.strip()]
    return "\n".join(lines)


@router.post("/inquiries", response_model=PublicInquiryResponse, status_code=201)
def submit_inquiry(request: PublicInquiryRequest) -> PublicInquiryResponse:
    """
    Raises:
        HTTPException(404): Venue unknown, inactive, or not taking inquiries
        HTTPException(400): Space does not belong to the venue
    """
    clause, params = _listed_clause()
    conn = system_db()
    try:
        venue = conn.execute(
            f"""
            SELECT v.id, v.tenant_id, v.name, t.name AS tenant_name
            FROM venues v JOIN tenants t ON t.id = v.tenant_id
            WHERE v.id = ? AND {clause}
            """,
            (request.venue_id, *params),
        ).fetchone()
        if not venue:
            raise HTTPException(status_code=404, detail="Venue not found")
        tenant_id = venue["tenant_id"]

        space_name = None
        if request.space_id is not None:
            space = conn.execute(
                "SELECT name FROM spaces WHERE id = ? AND venue_id = ? AND tenant_id = ? AND is_active = 1",
                (request.space_id, venue["id"], tenant_id),
            ).fetchone()
            if not space:
                raise HTTPException(status_code=400, detail="Space does not belong to the selected venue")
            space_name = space["name"]

        first_name, _, last_name = request.contact_name.partition(" ")
        now = now_iso()
        cur = conn.execute(
            """
            INSERT INTO leads (tenant_id, first_name, last_name, email, phone, event_type, guest_count,
                               budget, preferred_date, source, status, notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, first_name, last_name.strip() or None, request.contact_email, request.contact_phone,
             request.event_type, request.guest_count, request.budget, request.event_date,
             WEBSITE_SOURCE, LeadStatus.NEW.value, _inquiry_notes(request, venue["name"], space_name), now, now),
        )
        lead_id = cur.lastrowid
        add_activity(conn, tenant_id, lead_id, LeadActivityType.NOTE.value, "Inquiry received from website",
                     None, meta={"venue_id": venue["id"], "space_id": request.space_id})
        record_audit(conn, tenant_id=tenant_id, user_id=None, action="lead.inquiry",
                     entity_type="lead", entity_id=lead_id, details={"venue_id": venue["id"]})
        conn.commit()
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PUBLIC] DB error on inquiry: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    logger.info("[PUBLIC] Inquiry lead_id=%s venue_id=%s tenant_id=%s", lead_id, venue["id"], tenant_id)
    return PublicInquiryResponse(
        inquiry_id=lead_id,
        venue_id=venue["id"],
        venue_name=venue["name"],
        tenant_name=venue["tenant_name"],
    )
