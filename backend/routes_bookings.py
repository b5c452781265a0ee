"""
backend/routes_bookings.py

Booking, contract (multi-date booking) and calendar endpoints.

Security guarantees:
- Reads require "bookings:read", writes "bookings:manage"
- tenant_id comes from the auth context only
- Booking, customer, venue and space ids are verified against the tenant (404)

Conflict rules live in backend/conflicts.py; a taken slot is answered with
409 and the conflicting booking (rendered by the handler in main.py).
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.audit import record_audit
    from backend.authz import Capability
    from backend.booking_service import (
        BOOKING_DETAIL_SQL,
        get_booking_detail,
        reserve_booking,
        reserve_contract,
        resolve_references,
        slot_for,
    )
    from backend.booking_status import (
        CANCELLED,
        COMPLETED,
        STATUS_COLORS,
        InvalidStatusTransition,
        normalize_status,
        validate_transition,
    )
    from backend.conflicts import (
        BookingConflictError,
        Slot,
        conflict_payload,
        find_conflict,
        normalize_date,
        normalize_time,
        parse_time_to_minutes,
    )
    from backend.db import now_iso
    from backend.dependencies import require_capability
    from backend.email_service import notify_booking_cancelled, notify_booking_created
    from backend.schemas_bookings import (
        AvailabilityResponse,
        BookingCancelRequest,
        BookingCreateRequest,
        BookingListResponse,
        BookingResponse,
        BookingUpdateRequest,
        CalendarEvent,
        ContractBookingRequest,
        ContractListResponse,
        ContractResponse,
    )
    from backend.tenant import assert_rows_scoped, fetch_owned, get_tenant_context
    from backend.config import IS_DEV
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from audit import record_audit
    from authz import Capability
    from booking_service import (
        BOOKING_DETAIL_SQL,
        get_booking_detail,
        reserve_booking,
        reserve_contract,
        resolve_references,
        slot_for,
    )
    from booking_status import (
        CANCELLED,
        COMPLETED,
        STATUS_COLORS,
        InvalidStatusTransition,
        normalize_status,
        validate_transition,
    )
    from conflicts import (
        BookingConflictError,
        Slot,
        conflict_payload,
        find_conflict,
        normalize_date,
        normalize_time,
        parse_time_to_minutes,
    )
    from db import now_iso
    from dependencies import require_capability
    from email_service import notify_booking_cancelled, notify_booking_created
    from schemas_bookings import (
        AvailabilityResponse,
        BookingCancelRequest,
        BookingCreateRequest,
        BookingListResponse,
        BookingResponse,
        BookingUpdateRequest,
        CalendarEvent,
        ContractBookingRequest,
        ContractListResponse,
        ContractResponse,
    )
    from tenant import assert_rows_scoped, fetch_owned, get_tenant_context
    from config import IS_DEV

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["bookings"],
)

READ = Depends(require_capability(Capability.BOOKINGS_READ))
MANAGE = Depends(require_capability(Capability.BOOKINGS_MANAGE))

# Changing any of these moves the booking in time or space
_SLOT_FIELDS = ("event_date", "start_time", "end_time", "space_id", "venue_id")


def _send_quietly(notify, conn: sqlite3.Connection, booking: sqlite3.Row) -> None:
    """Email side effects never fail the request."""
    try:
        notify(conn, booking)
    except sqlite3.Error as e:
        logger.warning("[EMAIL] Could not log notification for booking_id=%s: %s", booking["id"], e)


# ============================================================================
# Bookings
# ============================================================================

@router.get("/bookings", response_model=BookingListResponse, dependencies=[READ])
def list_bookings(
    status: Optional[str] = Query(None, description="Filter by status"),
    venue_id: Optional[int] = Query(None),
    space_id: Optional[int] = Query(None),
    customer_id: Optional[int] = Query(None),
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD inclusive"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD inclusive"),
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_auth_context),
) -> BookingListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("b.tenant_id")
    where = f"WHERE {clause}"
    args: List[Any] = list(params)

    try:
        if status:
            where += " AND b.status = ?"
            args.append(normalize_status(status))
        if date_from:
            where += " AND substr(b.event_date, 1, 10) >= ?"
            args.append(normalize_date(date_from))
        if date_to:
            where += " AND substr(b.event_date, 1, 10) <= ?"
            args.append(normalize_date(date_to))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    for column, value in (("b.venue_id", venue_id), ("b.space_id", space_id), ("b.customer_id", customer_id)):
        if value is not None:
            where += f" AND {column} = ?"
            args.append(value)

    conn = scope.connect()
    try:
        total = conn.execute(f"SELECT COUNT(*) AS n FROM bookings b {where}", args).fetchone()["n"]
        rows = conn.execute(
            f"{BOOKING_DETAIL_SQL} {where} ORDER BY b.event_date, b.start_time LIMIT ? OFFSET ?",
            (*args, limit, offset),
        ).fetchall()
        assert_rows_scoped(rows, scope, label="bookings:list")
        if IS_DEV:
            logger.debug("[BOOKINGS] List tenant_id=%s results=%d", scope.tenant_id, len(rows))
        return BookingListResponse(items=[BookingResponse(**dict(r)) for r in rows], total=total)
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/bookings", response_model=BookingResponse, status_code=201, dependencies=[MANAGE])
def create_booking(
    request: BookingCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> BookingResponse:
    """
    Create a booking after checking the slot is free.

    Raises:
        HTTPException(400): Space outside venue, or guests over capacity
        HTTPException(404): Customer/venue/space not in this tenant
        BookingConflictError (409): Overlapping non-cancelled booking in the same space and date
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()

    conn = scope.connect()
    try:
        fields = resolve_references(conn, tenant_id, request.model_dump())
        booking_id = reserve_booking(conn, tenant_id, ctx.user_id, fields)
        booking = get_booking_detail(conn, booking_id, tenant_id)
        _send_quietly(notify_booking_created, conn, booking)
        return BookingResponse(**dict(booking))
    except (HTTPException, BookingConflictError):
        raise
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/bookings/availability", response_model=AvailabilityResponse, dependencies=[READ])
def check_availability(
    event_date: str = Query(..., description="YYYY-MM-DD"),
    start_time: str = Query(..., description="HH:MM"),
    end_time: str = Query(..., description="HH:MM"),
    space_id: Optional[int] = Query(None),
    venue_id: Optional[int] = Query(None),
    exclude_booking_id: Optional[int] = Query(None, description="Ignore this booking (rescheduling)"),
    ctx: AuthContext = Depends(require_auth_context),
) -> AvailabilityResponse:
    """Dry-run conflict check; nothing is written."""
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    try:
        slot = Slot(
            event_date=normalize_date(event_date),
            start_time=normalize_time(start_time),
            end_time=normalize_time(end_time),
            space_id=space_id,
            venue_id=venue_id,
        )
        if slot.end_minutes <= slot.start_minutes:
            raise ValueError("end_time must be after start_time")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    conn = scope.connect()
    try:
        conflict = find_conflict(conn, tenant_id, slot, exclude_booking_id=exclude_booking_id)
        if conflict is None:
            return AvailabilityResponse(available=True)
        return AvailabilityResponse(available=False, conflictingBooking=conflict_payload(conflict))
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on availability: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/bookings/{booking_id}", response_model=BookingResponse, dependencies=[READ])
def get_booking(
    booking_id: int = Path(..., description="Booking ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> BookingResponse:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        row = fetch_owned(conn, "bookings", booking_id, scope, not_found="Booking not found")
        return BookingResponse(**dict(get_booking_detail(conn, booking_id, row["tenant_id"])))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.patch("/bookings/{booking_id}", response_model=BookingResponse, dependencies=[MANAGE])
@router.put("/bookings/{booking_id}", response_model=BookingResponse, dependencies=[MANAGE])
def update_booking(
    request: BookingUpdateRequest,
    booking_id: int = Path(..., description="Booking ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> BookingResponse:
    """
    Partial update.

    Moving the booking (date, times, space) re-runs the conflict check with
    the booking itself excluded. Status changes must follow the booking flow.

    Raises:
        HTTPException(400): Invalid status move, end before start, cancel without reason
        HTTPException(404): Booking not in this tenant
        BookingConflictError (409): New slot is taken
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)
    now = now_iso()

    conn = scope.connect()
    try:
        current = fetch_owned(conn, "bookings", booking_id, scope, not_found="Booking not found")
        merged: Dict[str, Any] = {**dict(current), **changes}

        if "status" in changes and changes["status"] is not None:
            try:
                merged["status"] = validate_transition(current["status"], changes["status"])
            except InvalidStatusTransition as e:
                raise HTTPException(status_code=400, detail=str(e))
            if merged["status"] == CANCELLED and current["status"] != CANCELLED:
                if not merged.get("cancellation_reason"):
                    raise HTTPException(status_code=400, detail="cancellation_reason is required to cancel a booking")
                changes["cancelled_at"] = now
                changes["cancelled_by"] = ctx.user_id
            if merged["status"] == COMPLETED and current["status"] != COMPLETED:
                changes["completed_at"] = now
            changes["status"] = merged["status"]

        if parse_time_to_minutes(merged["end_time"]) <= parse_time_to_minutes(merged["start_time"]):
            raise HTTPException(status_code=400, detail="end_time must be after start_time")

        if any(k in changes for k in ("customer_id", "venue_id", "space_id", "guest_count")):
            if "venue_id" not in changes and changes.get("space_id") is not None:
                merged["venue_id"] = None
            resolved = resolve_references(conn, tenant_id, merged)
            if resolved.get("venue_id") != current["venue_id"]:
                changes["venue_id"] = resolved["venue_id"]
            merged = resolved

        if "deposit_paid" in changes and changes["deposit_paid"] is not None:
            changes["deposit_paid"] = int(changes["deposit_paid"])

        moved = any(k in changes and changes[k] != current[k] for k in _SLOT_FIELDS)
        if not changes:
            return BookingResponse(**dict(get_booking_detail(conn, booking_id, tenant_id)))

        changes["updated_at"] = now
        assignments = ", ".join(f"{col} = ?" for col in changes)

        conn.execute("BEGIN IMMEDIATE")
        try:
            if moved and merged["status"] != CANCELLED:
                conflict = find_conflict(conn, tenant_id, slot_for(merged), exclude_booking_id=booking_id)
                if conflict is not None:
                    raise BookingConflictError(conflict)
            conn.execute(
                f"UPDATE bookings SET {assignments} WHERE id = ? AND tenant_id = ?",
                (*changes.values(), booking_id, tenant_id),
            )
            record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="booking.update",
                         entity_type="booking", entity_id=booking_id,
                         details={k: v for k, v in changes.items() if k != "updated_at"})
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        booking = get_booking_detail(conn, booking_id, tenant_id)
        if changes.get("status") == CANCELLED and current["status"] != CANCELLED:
            _send_quietly(notify_booking_cancelled, conn, booking)
        return BookingResponse(**dict(booking))
    except (HTTPException, BookingConflictError):
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, dependencies=[MANAGE])
def cancel_booking(
    request: BookingCancelRequest,
    booking_id: int = Path(..., description="Booking ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> BookingResponse:
    """
    Cancel with a reason. The slot is released immediately and the customer
    is emailed when notifications are on.

    Raises:
        HTTPException(400): Booking already completed
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    if not request.reason:
        raise HTTPException(status_code=400, detail="Cancellation reason is required")

    conn = scope.connect()
    try:
        current = fetch_owned(conn, "bookings", booking_id, scope, not_found="Booking not found")
        if current["status"] == CANCELLED:
            return BookingResponse(**dict(get_booking_detail(conn, booking_id, tenant_id)))
        try:
            validate_transition(current["status"], CANCELLED)
        except InvalidStatusTransition as e:
            raise HTTPException(status_code=400, detail=str(e))

        now = now_iso()
        conn.execute(
            """
            UPDATE bookings
            SET status = 'cancelled', cancellation_reason = ?, cancellation_note = ?,
                cancelled_at = ?, cancelled_by = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (request.reason, request.note, now, ctx.user_id, now, booking_id, tenant_id),
        )
        record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="booking.cancel",
                     entity_type="booking", entity_id=booking_id, details={"reason": request.reason})
        conn.commit()
        logger.info("[BOOKINGS] Cancelled booking_id=%s tenant_id=%s", booking_id, tenant_id)

        booking = get_booking_detail(conn, booking_id, tenant_id)
        _send_quietly(notify_booking_cancelled, conn, booking)
        return BookingResponse(**dict(booking))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on cancel: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.delete("/bookings/{booking_id}", status_code=204, dependencies=[MANAGE])
def delete_booking(
    booking_id: int = Path(..., description="Booking ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Response:
    """Hard delete, including the booking's payment rows."""
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        current = fetch_owned(conn, "bookings", booking_id, scope, not_found="Booking not found")
        conn.execute("DELETE FROM payments WHERE booking_id = ? AND tenant_id = ?", (booking_id, tenant_id))
        conn.execute("DELETE FROM bookings WHERE id = ? AND tenant_id = ?", (booking_id, tenant_id))
        record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="booking.delete",
                     entity_type="booking", entity_id=booking_id,
                     details={"event_name": current["event_name"], "event_date": current["event_date"]})
        conn.commit()
        return Response(status_code=204)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[BOOKINGS] DB error on delete: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Contracts (multi-date bookings)
# ============================================================================

def _contract_response(conn: sqlite3.Connection, contract_id: int, tenant_id: int) -> ContractResponse:
    contract = conn.execute(
        """
        SELECT k.*, c.name AS customer_name
        FROM contracts k
        LEFT JOIN customers c ON c.id = k.customer_id AND c.tenant_id = k.tenant_id
        WHERE k.id = ? AND k.tenant_id = ?
        """,
        (contract_id, tenant_id),
    ).fetchone()
    bookings = conn.execute(
        f"{BOOKING_DETAIL_SQL} WHERE b.contract_id = ? AND b.tenant_id = ? ORDER BY b.event_date, b.start_time",
        (contract_id, tenant_id),
    ).fetchall()
    items = [BookingResponse(**dict(b)) for b in bookings]
    return ContractResponse(**dict(contract), booking_count=len(items), bookings=items)


@router.post("/bookings/contract", response_model=ContractResponse, status_code=201, dependencies=[MANAGE])
def create_contract_bookings(
    request: ContractBookingRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> ContractResponse:
    """
    Create a contract with several bookings in one transaction. All or nothing.

    Raises:
        BookingConflictError (409): "Time slot conflict in multi-date booking"
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    contract = request.contract.model_dump()

    conn = scope.connect()
    try:
        if contract.get("customer_id") is not None:
            resolve_references(conn, tenant_id, {"customer_id": contract["customer_id"]})
        if request.proposal_id is not None:
            fetch_owned(conn, "proposals", request.proposal_id, scope, not_found="Proposal not found")

        bookings = [resolve_references(conn, tenant_id, b.model_dump()) for b in request.bookings]
        created = reserve_contract(conn, tenant_id, ctx.user_id, contract, bookings, request.proposal_id)

        for booking_id in created["booking_ids"]:
            booking = get_booking_detail(conn, booking_id, tenant_id)
            _send_quietly(notify_booking_created, conn, booking)
        return _contract_response(conn, created["contract_id"], tenant_id)
    except (HTTPException, BookingConflictError):
        raise
    except sqlite3.Error as e:
        logger.error("[CONTRACTS] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/contracts", response_model=ContractListResponse, dependencies=[READ])
def list_contracts(ctx: AuthContext = Depends(require_auth_context)) -> ContractListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("k.tenant_id")
    conn = scope.connect()
    try:
        rows = conn.execute(
            f"""
            SELECT k.*, c.name AS customer_name,
                   (SELECT COUNT(*) FROM bookings b WHERE b.contract_id = k.id AND b.tenant_id = k.tenant_id) AS booking_count
            FROM contracts k
            LEFT JOIN customers c ON c.id = k.customer_id AND c.tenant_id = k.tenant_id
            WHERE {clause}
            ORDER BY k.created_at DESC
            """,
            params,
        ).fetchall()
        assert_rows_scoped(rows, scope, label="contracts:list")
        return ContractListResponse(items=[ContractResponse(**dict(r)) for r in rows], total=len(rows))
    except sqlite3.Error as e:
        logger.error("[CONTRACTS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/contracts/{contract_id}", response_model=ContractResponse, dependencies=[READ])
def get_contract(
    contract_id: int = Path(..., description="Contract ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> ContractResponse:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        row = fetch_owned(conn, "contracts", contract_id, scope, not_found="Contract not found")
        return _contract_response(conn, contract_id, row["tenant_id"])
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[CONTRACTS] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Calendar
# ============================================================================

@router.get("/calendar/events", response_model=List[CalendarEvent], dependencies=[READ])
def calendar_events(
    start: str = Query(..., description="YYYY-MM-DD inclusive"),
    end: str = Query(..., description="YYYY-MM-DD inclusive"),
    include_cancelled: bool = Query(False),
    ctx: AuthContext = Depends(require_auth_context),
) -> List[CalendarEvent]:
    """Bookings in a date range, shaped for a calendar widget."""
    scope = get_tenant_context(ctx)
    try:
        start_date, end_date = normalize_date(start), normalize_date(end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    clause, params = scope.filter("b.tenant_id")
    sql = f"{BOOKING_DETAIL_SQL} WHERE {clause} AND substr(b.event_date, 1, 10) BETWEEN ? AND ?"
    if not include_cancelled:
        sql += " AND b.status != 'cancelled'"
    sql += " ORDER BY b.event_date, b.start_time"

    conn = scope.connect()
    try:
        rows = conn.execute(sql, (*params, start_date, end_date)).fetchall()
        assert_rows_scoped(rows, scope, label="calendar")
        events = []
        for r in rows:
            status = normalize_status(r["status"])
            day = r["event_date"][:10]
            events.append(CalendarEvent(
                id=r["id"],
                title=r["event_name"],
                start=f"{day}T{r['start_time']}",
                end=f"{(r['end_date'] or day)[:10]}T{r['end_time']}",
                status=status,
                color=STATUS_COLORS.get(status, "#6B7280"),
                venue_name=r["venue_name"],
                space_name=r["space_name"],
                customer_name=r["customer_name"],
                guest_count=r["guest_count"] or 0,
            ))
        return events
    except sqlite3.Error as e:
        logger.error("[CALENDAR] DB error: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
