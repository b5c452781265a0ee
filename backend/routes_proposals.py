"""
backend/routes_proposals.py

Proposals: staff-side CRUD and sending, the customer-facing public view
(token in the URL, no login), and conversion of an accepted proposal into
a tentative booking.

Proposal flow: draft -> sent -> viewed -> accepted | declined; accepted -> converted
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response
from pydantic import ValidationError

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.authz import Capability
    from backend.booking_service import get_booking_detail, reserve_booking, resolve_references
    from backend.booking_status import TENTATIVE
    from backend.conflicts import BookingConflictError
    from backend.db import load_json, now_iso, system_db
    from backend.dependencies import require_capability
    from backend.email_service import notify_proposal_sent
    from backend.schemas_bookings import BookingCreateRequest, BookingResponse
    from backend.schemas_crm import (
        ProposalAcceptRequest,
        ProposalCreateRequest,
        ProposalDeclineRequest,
        ProposalListResponse,
        ProposalResponse,
        ProposalUpdateRequest,
        PublicProposalResponse,
    )
    from backend.tenant import assert_rows_scoped, fetch_owned, get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from authz import Capability
    from booking_service import get_booking_detail, reserve_booking, resolve_references
    from booking_status import TENTATIVE
    from conflicts import BookingConflictError
    from db import load_json, now_iso, system_db
    from dependencies import require_capability
    from email_service import notify_proposal_sent
    from schemas_bookings import BookingCreateRequest, BookingResponse
    from schemas_crm import (
        ProposalAcceptRequest,
        ProposalCreateRequest,
        ProposalDeclineRequest,
        ProposalListResponse,
        ProposalResponse,
        ProposalUpdateRequest,
        PublicProposalResponse,
    )
    from tenant import assert_rows_scoped, fetch_owned, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/proposals",
    tags=["proposals"],
)

public_router = APIRouter(
    prefix="/api/public/proposals",
    tags=["public"],
)

READ = Depends(require_capability(Capability.PROPOSALS_READ))
MANAGE = Depends(require_capability(Capability.PROPOSALS_MANAGE))

OPEN_STATUSES = ("sent", "viewed")
DEFAULT_DEPOSIT_PERCENT = 30.0

_PROPOSAL_SQL = """
    SELECT p.*, c.name AS customer_name
    FROM proposals p
    LEFT JOIN customers c ON c.id = p.customer_id AND c.tenant_id = p.tenant_id
"""


def _response(row: sqlite3.Row) -> ProposalResponse:
    data = dict(row)
    data["event_details"] = load_json(data.get("event_details"), {})
    if data.get("deposit_percent") is None:
        data["deposit_percent"] = DEFAULT_DEPOSIT_PERCENT
    return ProposalResponse(**data)


def _load(conn: sqlite3.Connection, proposal_id: int, tenant_id: int) -> sqlite3.Row:
    return conn.execute(f"{_PROPOSAL_SQL} WHERE p.id = ? AND p.tenant_id = ?", (proposal_id, tenant_id)).fetchone()


def deposit_for(total_amount: Optional[float], deposit_percent: Optional[float]) -> Optional[float]:
    """Deposit owed on a proposal total; the percentage defaults to 30."""
    if total_amount is None:
        return None
    percent = DEFAULT_DEPOSIT_PERCENT if deposit_percent is None else float(deposit_percent)
    return round(float(total_amount) * percent / 100.0, 2)


def _is_expired(valid_until: Optional[str]) -> bool:
    if not valid_until:
        return False
    try:
        return date.fromisoformat(valid_until[:10]) < date.today()
    except ValueError:
        return False


# ============================================================================
# Staff endpoints
# ============================================================================

@router.get("", response_model=ProposalListResponse, dependencies=[READ])
def list_proposals(
    status: Optional[str] = Query(None),
    customer_id: Optional[int] = Query(None),
    ctx: AuthContext = Depends(require_auth_context),
) -> ProposalListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("p.tenant_id")
    sql = f"{_PROPOSAL_SQL} WHERE {clause}"
    args = list(params)
    if status:
        sql += " AND p.status = ?"
        args.append(status)
    if customer_id is not None:
        sql += " AND p.customer_id = ?"
        args.append(customer_id)
    sql += " ORDER BY p.created_at DESC"

    conn = scope.connect()
    try:
        rows = conn.execute(sql, args).fetchall()
        assert_rows_scoped(rows, scope, label="proposals:list")
        return ProposalListResponse(items=[_response(r) for r in rows], total=len(rows))
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("", response_model=ProposalResponse, status_code=201, dependencies=[MANAGE])
def create_proposal(
    request: ProposalCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> ProposalResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    now = now_iso()

    conn = scope.connect()
    try:
        fetch_owned(conn, "customers", request.customer_id, scope, not_found="Customer not found")
        cur = conn.execute(
            """
            INSERT INTO proposals (tenant_id, customer_id, title, content, event_details, total_amount,
                                   deposit_percent, status, valid_until, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)
            """,
            (tenant_id, request.customer_id, request.title, request.content,
             json.dumps(request.event_details), request.total_amount, request.deposit_percent,
             request.valid_until, now, now),
        )
        proposal_id = cur.lastrowid
        conn.commit()
        logger.info("[PROPOSALS] Created proposal_id=%s tenant_id=%s", proposal_id, tenant_id)
        return _response(_load(conn, proposal_id, tenant_id))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/{proposal_id}", response_model=ProposalResponse, dependencies=[READ])
def get_proposal(
    proposal_id: int = Path(..., description="Proposal ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> ProposalResponse:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        row = fetch_owned(conn, "proposals", proposal_id, scope, not_found="Proposal not found")
        return _response(_load(conn, proposal_id, row["tenant_id"]))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/{proposal_id}", response_model=ProposalResponse, dependencies=[MANAGE])
@router.patch("/{proposal_id}", response_model=ProposalResponse, dependencies=[MANAGE])
def update_proposal(
    request: ProposalUpdateRequest,
    proposal_id: int = Path(..., description="Proposal ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> ProposalResponse:
    """Only draft, sent and viewed proposals can be edited."""
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)
    if "event_details" in changes:
        changes["event_details"] = json.dumps(changes["event_details"] or {})

    conn = scope.connect()
    try:
        current = fetch_owned(conn, "proposals", proposal_id, scope, not_found="Proposal not found")
        if current["status"] not in ("draft", *OPEN_STATUSES):
            raise HTTPException(status_code=400, detail=f"Cannot edit a {current['status']} proposal")
        if changes:
            changes["updated_at"] = now_iso()
            assignments = ", ".join(f"{col} = ?" for col in changes)
            conn.execute(
                f"UPDATE proposals SET {assignments} WHERE id = ? AND tenant_id = ?",
                (*changes.values(), proposal_id, tenant_id),
            )
            conn.commit()
        return _response(_load(conn, proposal_id, tenant_id))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.delete("/{proposal_id}", status_code=204, dependencies=[MANAGE])
def delete_proposal(
    proposal_id: int = Path(..., description="Proposal ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Response:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        fetch_owned(conn, "proposals", proposal_id, scope, not_found="Proposal not found")
        conn.execute("DELETE FROM proposals WHERE id = ? AND tenant_id = ?", (proposal_id, tenant_id))
        conn.commit()
        return Response(status_code=204)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on delete: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/{proposal_id}/send", response_model=ProposalResponse, dependencies=[MANAGE])
def send_proposal(
    proposal_id: int = Path(..., description="Proposal ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> ProposalResponse:
    """
    Issue the public link and email it to the customer. Resending keeps the
    same link.
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        current = fetch_owned(conn, "proposals", proposal_id, scope, not_found="Proposal not found")
        if current["status"] not in ("draft", *OPEN_STATUSES):
            raise HTTPException(status_code=400, detail=f"Cannot send a {current['status']} proposal")

        token = current["public_token"] or secrets.token_urlsafe(32)
        now = now_iso()
        status = "sent" if current["status"] == "draft" else current["status"]
        conn.execute(
            """
            UPDATE proposals SET public_token = ?, status = ?, sent_at = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (token, status, now, now, proposal_id, tenant_id),
        )
        conn.commit()

        proposal = _load(conn, proposal_id, tenant_id)
        try:
            notify_proposal_sent(conn, proposal)
        except sqlite3.Error as e:
            logger.warning("[EMAIL] Could not log proposal email for proposal_id=%s: %s", proposal_id, e)
        logger.info("[PROPOSALS] Sent proposal_id=%s tenant_id=%s", proposal_id, tenant_id)
        return _response(proposal)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on send: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/{proposal_id}/convert-to-booking", response_model=BookingResponse, status_code=201,
             dependencies=[MANAGE, Depends(require_capability(Capability.BOOKINGS_MANAGE))])
def convert_to_booking(
    proposal_id: int = Path(..., description="Proposal ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> BookingResponse:
    """
    Turn an accepted proposal into a tentative booking. The deposit is the
    proposal total times its deposit percentage. No confirmation email is
    sent; the customer already signed the proposal.

    Raises:
        HTTPException(400): Proposal not accepted, or event details incomplete
        BookingConflictError (409): Slot taken since the proposal was written
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        proposal = fetch_owned(conn, "proposals", proposal_id, scope, not_found="Proposal not found")
        if proposal["status"] != "accepted":
            raise HTTPException(status_code=400, detail="Only accepted proposals can be converted to a booking")

        details: Dict[str, Any] = load_json(proposal["event_details"], {})
        try:
            booking = BookingCreateRequest(
                event_name=details.get("event_name") or proposal["title"],
                event_type=details.get("event_type") or "event",
                customer_id=proposal["customer_id"],
                venue_id=details.get("venue_id"),
                space_id=details.get("space_id"),
                event_date=details.get("event_date"),
                start_time=details.get("start_time"),
                end_time=details.get("end_time"),
                guest_count=details.get("guest_count") or 1,
                status=TENTATIVE,
                total_amount=proposal["total_amount"],
                deposit_amount=deposit_for(proposal["total_amount"], proposal["deposit_percent"]),
                notes=details.get("notes"),
                proposal_id=proposal_id,
            )
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
            raise HTTPException(status_code=400, detail=f"Proposal event details are incomplete: {fields}")

        fields = resolve_references(conn, tenant_id, booking.model_dump())
        booking_id = reserve_booking(conn, tenant_id, ctx.user_id, fields, audit_action="proposal.convert",
                                     converted_proposal_id=proposal_id)
        logger.info("[PROPOSALS] Converted proposal_id=%s to booking_id=%s", proposal_id, booking_id)
        return BookingResponse(**dict(get_booking_detail(conn, booking_id, tenant_id)))
    except (HTTPException, BookingConflictError):
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on convert: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Public endpoints (no auth; the token is the credential)
# ============================================================================

def _public_lookup(conn: sqlite3.Connection, token: str) -> sqlite3.Row:
    row = conn.execute(
        """
        SELECT p.*, t.name AS tenant_name, c.name AS customer_name
        FROM proposals p
        JOIN tenants t ON t.id = p.tenant_id
        LEFT JOIN customers c ON c.id = p.customer_id AND c.tenant_id = p.tenant_id
        WHERE p.public_token = ?
        """,
        (token,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return row


def _public_response(row: sqlite3.Row) -> PublicProposalResponse:
    data = dict(row)
    data["event_details"] = load_json(data.get("event_details"), {})
    if data.get("deposit_percent") is None:
        data["deposit_percent"] = DEFAULT_DEPOSIT_PERCENT
    return PublicProposalResponse(**data)


@public_router.get("/{token}", response_model=PublicProposalResponse)
def view_public_proposal(token: str = Path(..., min_length=16, max_length=128)) -> PublicProposalResponse:
    """Customer view. The first view moves sent -> viewed."""
    conn = system_db()
    try:
        row = _public_lookup(conn, token)
        if row["status"] == "sent":
            now = now_iso()
            conn.execute(
                "UPDATE proposals SET status = 'viewed', viewed_at = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
                (now, now, row["id"], row["tenant_id"]),
            )
            conn.commit()
            row = _public_lookup(conn, token)
        return _public_response(row)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on public view: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@public_router.post("/{token}/accept", response_model=PublicProposalResponse)
def accept_public_proposal(
    request: ProposalAcceptRequest,
    token: str = Path(..., min_length=16, max_length=128),
) -> PublicProposalResponse:
    """
    Raises:
        HTTPException(400): Missing signature, proposal expired or no longer open
    """
    if not request.signature:
        raise HTTPException(status_code=400, detail="Signature is required to accept the proposal")

    conn = system_db()
    try:
        row = _public_lookup(conn, token)
        if row["status"] not in OPEN_STATUSES:
            raise HTTPException(status_code=400, detail=f"Proposal is already {row['status']}")
        if _is_expired(row["valid_until"]):
            raise HTTPException(status_code=400, detail="Proposal has expired")

        now = now_iso()
        conn.execute(
            """
            UPDATE proposals SET status = 'accepted', signature = ?, accepted_at = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (request.signature, now, now, row["id"], row["tenant_id"]),
        )
        conn.commit()
        logger.info("[PROPOSALS] Accepted proposal_id=%s tenant_id=%s", row["id"], row["tenant_id"])
        return _public_response(_public_lookup(conn, token))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on accept: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@public_router.post("/{token}/decline", response_model=PublicProposalResponse)
def decline_public_proposal(
    request: ProposalDeclineRequest,
    token: str = Path(..., min_length=16, max_length=128),
) -> PublicProposalResponse:
    conn = system_db()
    try:
        row = _public_lookup(conn, token)
        if row["status"] not in OPEN_STATUSES:
            raise HTTPException(status_code=400, detail=f"Proposal is already {row['status']}")
        now = now_iso()
        content = row["content"]
        if request.reason:
            content = f"{content or ''}\n\nDeclined: {request.reason}".strip()
        conn.execute(
            """
            UPDATE proposals SET status = 'declined', declined_at = ?, content = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (now, content, now, row["id"], row["tenant_id"]),
        )
        conn.commit()
        logger.info("[PROPOSALS] Declined proposal_id=%s tenant_id=%s", row["id"], row["tenant_id"])
        return _public_response(_public_lookup(conn, token))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PROPOSALS] DB error on decline: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
