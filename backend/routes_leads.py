"""
backend/routes_leads.py

Sales pipeline: leads, their activity timeline, and conversion of a won
lead into a customer.

Statuses: NEW, CONTACTED, TOUR_SCHEDULED, PROPOSAL_SENT, WON, LOST
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.authz import Capability
    from backend.db import load_json, now_iso
    from backend.dependencies import require_capability
    from backend.models import LeadStatus
    from backend.routes_customers import find_customer_by_email
    from backend.schemas_crm import (
        CustomerResponse,
        LeadActivityCreateRequest,
        LeadActivityResponse,
        LeadCreateRequest,
        LeadListResponse,
        LeadResponse,
        LeadUpdateRequest,
    )
    from backend.tenant import assert_rows_scoped, fetch_owned, get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from authz import Capability
    from db import load_json, now_iso
    from dependencies import require_capability
    from models import LeadStatus
    from routes_customers import find_customer_by_email
    from schemas_crm import (
        CustomerResponse,
        LeadActivityCreateRequest,
        LeadActivityResponse,
        LeadCreateRequest,
        LeadListResponse,
        LeadResponse,
        LeadUpdateRequest,
    )
    from tenant import assert_rows_scoped, fetch_owned, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/leads",
    tags=["leads"],
)

READ = Depends(require_capability(Capability.LEADS_READ))
MANAGE = Depends(require_capability(Capability.LEADS_MANAGE))


def add_activity(
    conn: sqlite3.Connection,
    tenant_id: int,
    lead_id: int,
    activity_type: str,
    body: Optional[str],
    user_id: Optional[int],
    meta: Optional[Dict[str, Any]] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO lead_activities (tenant_id, lead_id, type, body, meta, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (tenant_id, lead_id, activity_type, body, json.dumps(meta or {}), user_id, now_iso()),
    )
    return cur.lastrowid


def _activity(row: sqlite3.Row) -> LeadActivityResponse:
    data = dict(row)
    data["meta"] = load_json(data.get("meta"), {})
    return LeadActivityResponse(**data)


@router.get("", response_model=LeadListResponse, dependencies=[READ])
def list_leads(
    status: Optional[LeadStatus] = Query(None),
    q: Optional[str] = Query(None, min_length=1, max_length=200),
    ctx: AuthContext = Depends(require_auth_context),
) -> LeadListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("tenant_id")
    sql = f"SELECT * FROM leads WHERE {clause}"
    args: List[Any] = list(params)
    if status is not None:
        sql += " AND status = ?"
        args.append(status.value)
    if q:
        pattern = f"%{q}%"
        sql += (" AND (lower(first_name) LIKE lower(?) OR lower(last_name) LIKE lower(?)"
                " OR lower(email) LIKE lower(?))")
        args += [pattern, pattern, pattern]
    sql += " ORDER BY created_at DESC, id DESC"

    conn = scope.connect()
    try:
        rows = conn.execute(sql, args).fetchall()
        assert_rows_scoped(rows, scope, label="leads:list")
        return LeadListResponse(items=[LeadResponse(**dict(r)) for r in rows], total=len(rows))
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("", response_model=LeadResponse, status_code=201, dependencies=[MANAGE])
def create_lead(
    request: LeadCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> LeadResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    now = now_iso()
    conn = scope.connect()
    try:
        cur = conn.execute(
            """
            INSERT INTO leads (tenant_id, first_name, last_name, email, phone, event_type, guest_count,
                               budget, preferred_date, source, status, notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, request.first_name, request.last_name, request.email, request.phone,
             request.event_type, request.guest_count, request.budget, request.preferred_date,
             request.source, request.status.value, request.notes, now, now),
        )
        lead_id = cur.lastrowid
        conn.commit()
        logger.info("[LEADS] Created lead_id=%s tenant_id=%s source=%s", lead_id, tenant_id, request.source)
        return LeadResponse(**dict(fetch_owned(conn, "leads", lead_id, scope)))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/{lead_id}", response_model=LeadResponse, dependencies=[READ])
def get_lead(
    lead_id: int = Path(..., description="Lead ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> LeadResponse:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        return LeadResponse(**dict(fetch_owned(conn, "leads", lead_id, scope, not_found="Lead not found")))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/{lead_id}", response_model=LeadResponse, dependencies=[MANAGE])
@router.patch("/{lead_id}", response_model=LeadResponse, dependencies=[MANAGE])
def update_lead(
    request: LeadUpdateRequest,
    lead_id: int = Path(..., description="Lead ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> LeadResponse:
    """A status change also writes a STATUS_CHANGE activity."""
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)
    if changes.get("status") is not None:
        changes["status"] = changes["status"].value
    elif "status" in changes:
        del changes["status"]

    conn = scope.connect()
    try:
        current = fetch_owned(conn, "leads", lead_id, scope, not_found="Lead not found")
        if changes:
            changes["updated_at"] = now_iso()
            assignments = ", ".join(f"{col} = ?" for col in changes)
            conn.execute(
                f"UPDATE leads SET {assignments} WHERE id = ? AND tenant_id = ?",
                (*changes.values(), lead_id, tenant_id),
            )
            new_status = changes.get("status")
            if new_status and new_status != current["status"]:
                add_activity(conn, tenant_id, lead_id, "STATUS_CHANGE",
                             f"Status changed from {current['status']} to {new_status}", ctx.user_id,
                             meta={"from": current["status"], "to": new_status})
            conn.commit()
        return LeadResponse(**dict(fetch_owned(conn, "leads", lead_id, scope)))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.delete("/{lead_id}", status_code=204, dependencies=[MANAGE])
def delete_lead(
    lead_id: int = Path(..., description="Lead ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Response:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        fetch_owned(conn, "leads", lead_id, scope, not_found="Lead not found")
        conn.execute("DELETE FROM lead_activities WHERE lead_id = ? AND tenant_id = ?", (lead_id, tenant_id))
        conn.execute("DELETE FROM leads WHERE id = ? AND tenant_id = ?", (lead_id, tenant_id))
        conn.commit()
        return Response(status_code=204)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on delete: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Activities
# ============================================================================

@router.get("/{lead_id}/activities", response_model=List[LeadActivityResponse], dependencies=[READ])
def list_activities(
    lead_id: int = Path(..., description="Lead ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> List[LeadActivityResponse]:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        lead = fetch_owned(conn, "leads", lead_id, scope, not_found="Lead not found")
        rows = conn.execute(
            "SELECT * FROM lead_activities WHERE lead_id = ? AND tenant_id = ? ORDER BY created_at DESC, id DESC",
            (lead_id, lead["tenant_id"]),
        ).fetchall()
        return [_activity(r) for r in rows]
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on activities: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/{lead_id}/activities", response_model=LeadActivityResponse, status_code=201, dependencies=[MANAGE])
def create_activity(
    request: LeadActivityCreateRequest,
    lead_id: int = Path(..., description="Lead ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> LeadActivityResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        fetch_owned(conn, "leads", lead_id, scope, not_found="Lead not found")
        activity_id = add_activity(conn, tenant_id, lead_id, request.type.value, request.body, ctx.user_id)
        conn.execute("UPDATE leads SET updated_at = ? WHERE id = ? AND tenant_id = ?", (now_iso(), lead_id, tenant_id))
        conn.commit()
        row = conn.execute(
            "SELECT * FROM lead_activities WHERE id = ? AND tenant_id = ?", (activity_id, tenant_id)
        ).fetchone()
        return _activity(row)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on activity create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Conversion
# ============================================================================

@router.post("/{lead_id}/convert", response_model=CustomerResponse,
             dependencies=[MANAGE, Depends(require_capability(Capability.CUSTOMERS_MANAGE))])
def convert_lead(
    lead_id: int = Path(..., description="Lead ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> CustomerResponse:
    """
    Make the lead a customer of the caller's tenant. An existing customer
    with the same email is reused. The lead is marked WON.
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        lead = fetch_owned(conn, "leads", lead_id, scope, not_found="Lead not found")
        now = now_iso()

        customer = find_customer_by_email(conn, tenant_id, lead["email"]) if lead["email"] else None
        if customer:
            customer_id = customer["id"]
            reused = True
        else:
            name = " ".join(part for part in (lead["first_name"], lead["last_name"]) if part)
            cur = conn.execute(
                """
                INSERT INTO customers (tenant_id, name, email, phone, event_type, status, source, notes,
                                       created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?, ?)
                """,
                (tenant_id, name, lead["email"], lead["phone"], lead["event_type"],
                 lead["source"] or "lead", lead["notes"], now, now),
            )
            customer_id = cur.lastrowid
            reused = False

        conn.execute(
            "UPDATE leads SET status = 'WON', customer_id = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (customer_id, now, lead_id, tenant_id),
        )
        add_activity(conn, tenant_id, lead_id, "CONVERTED",
                     f"Converted to customer #{customer_id}", ctx.user_id,
                     meta={"customer_id": customer_id, "reused_customer": reused})
        conn.commit()
        logger.info("[LEADS] Converted lead_id=%s to customer_id=%s (reused=%s)", lead_id, customer_id, reused)

        row = conn.execute(
            "SELECT * FROM customers WHERE id = ? AND tenant_id = ?", (customer_id, tenant_id)
        ).fetchone()
        return CustomerResponse(**dict(row))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[LEADS] DB error on convert: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
