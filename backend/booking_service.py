"""
backend/booking_service.py

Booking persistence shared by the booking, contract, proposal and payment
routes: reference validation, the locked check-then-insert, and payment
driven status updates.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fastapi import HTTPException

try:
    from backend.audit import record_audit
    from backend.booking_status import status_after_payment
    from backend.conflicts import BookingConflictError, Slot, find_batch_conflict, find_conflict
    from backend.db import now_iso
except ModuleNotFoundError:
    from audit import record_audit
    from booking_status import status_after_payment
    from conflicts import BookingConflictError, Slot, find_batch_conflict, find_conflict
    from db import now_iso


logger = logging.getLogger(__name__)

# Columns a caller may set on insert
BOOKING_FIELDS = (
    "event_name",
    "event_type",
    "customer_id",
    "venue_id",
    "space_id",
    "event_date",
    "end_date",
    "start_time",
    "end_time",
    "guest_count",
    "status",
    "total_amount",
    "deposit_amount",
    "notes",
    "proposal_id",
)

BOOKING_DETAIL_SQL = """
    SELECT b.*,
           c.name AS customer_name,
           v.name AS venue_name,
           s.name AS space_name
    FROM bookings b
    LEFT JOIN customers c ON c.id = b.customer_id AND c.tenant_id = b.tenant_id
    LEFT JOIN venues v ON v.id = b.venue_id AND v.tenant_id = b.tenant_id
    LEFT JOIN spaces s ON s.id = b.space_id AND s.tenant_id = b.tenant_id
"""


def get_booking_detail(conn: sqlite3.Connection, booking_id: int, tenant_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        f"{BOOKING_DETAIL_SQL} WHERE b.id = ? AND b.tenant_id = ?",
        (booking_id, tenant_id),
    ).fetchone()


def resolve_references(conn: sqlite3.Connection, tenant_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check customer/venue/space ids against the tenant and fill venue_id
    from the space when only the space was given.

    Raises:
        HTTPException(404): referenced row missing or in another tenant
        HTTPException(400): space outside the venue, or guests over capacity
    """
    resolved = dict(fields)

    if resolved.get("customer_id") is not None:
        row = conn.execute(
            "SELECT id FROM customers WHERE id = ? AND tenant_id = ?",
            (resolved["customer_id"], tenant_id),
        ).fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Customer not found")

    if resolved.get("venue_id") is not None:
        row = conn.execute(
            "SELECT id FROM venues WHERE id = ? AND tenant_id = ?",
            (resolved["venue_id"], tenant_id),
        ).fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Venue not found")

    if resolved.get("space_id") is not None:
        space = conn.execute(
            "SELECT id, venue_id, capacity, name FROM spaces WHERE id = ? AND tenant_id = ?",
            (resolved["space_id"], tenant_id),
        ).fetchone()
        if not space:
            raise HTTPException(status_code=404, detail="Space not found")
        if resolved.get("venue_id") is None:
            resolved["venue_id"] = space["venue_id"]
        elif space["venue_id"] != resolved["venue_id"]:
            raise HTTPException(status_code=400, detail="Space does not belong to the selected venue")
        guests = resolved.get("guest_count")
        if space["capacity"] and guests and guests > space["capacity"]:
            raise HTTPException(
                status_code=400,
                detail=f"Guest count {guests} exceeds capacity of {space['name']} ({space['capacity']})",
            )

    return resolved


def slot_for(fields: Mapping[str, Any]) -> Slot:
    return Slot(
        event_date=fields["event_date"],
        start_time=fields["start_time"],
        end_time=fields["end_time"],
        space_id=fields.get("space_id"),
        venue_id=fields.get("venue_id"),
    )


def insert_booking(
    conn: sqlite3.Connection,
    tenant_id: int,
    user_id: Optional[int],
    fields: Mapping[str, Any],
    contract_id: Optional[int] = None,
) -> int:
    """INSERT only; no conflict check and no commit."""
    now = now_iso()
    values = [fields.get(name) for name in BOOKING_FIELDS]
    columns = ", ".join(BOOKING_FIELDS)
    placeholders = ", ".join("?" for _ in BOOKING_FIELDS)
    cur = conn.execute(
        f"""
        INSERT INTO bookings (tenant_id, {columns}, contract_id, created_by, created_at, updated_at)
        VALUES (?, {placeholders}, ?, ?, ?, ?)
        """,
        (tenant_id, *values, contract_id, user_id, now, now),
    )
    return cur.lastrowid


def reserve_booking(
    conn: sqlite3.Connection,
    tenant_id: int,
    user_id: Optional[int],
    fields: Mapping[str, Any],
    audit_action: str = "booking.create",
    converted_proposal_id: Optional[int] = None,
) -> int:
    """
    Conflict-check and insert one booking under BEGIN IMMEDIATE so a
    concurrent request cannot take the slot between the scan and the insert.

    converted_proposal_id marks that proposal converted in the same
    transaction, so a failure leaves neither the booking nor the status change.

    Raises:
        BookingConflictError: slot already taken
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        conflict = find_conflict(conn, tenant_id, slot_for(fields))
        if conflict is not None:
            logger.info("[BOOKINGS] Conflict for tenant_id=%s with booking_id=%s", tenant_id, conflict["id"])
            raise BookingConflictError(conflict)
        booking_id = insert_booking(conn, tenant_id, user_id, fields)
        if converted_proposal_id is not None:
            conn.execute(
                """
                UPDATE proposals SET status = 'converted', booking_id = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (booking_id, now_iso(), converted_proposal_id, tenant_id),
            )
        record_audit(conn, tenant_id=tenant_id, user_id=user_id, action=audit_action,
                     entity_type="booking", entity_id=booking_id,
                     details={"event_date": fields["event_date"], "space_id": fields.get("space_id")})
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("[BOOKINGS] Created booking_id=%s tenant_id=%s", booking_id, tenant_id)
    return booking_id


def reserve_contract(
    conn: sqlite3.Connection,
    tenant_id: int,
    user_id: Optional[int],
    contract: Mapping[str, Any],
    bookings: Sequence[Mapping[str, Any]],
    proposal_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Create a contract and all of its bookings atomically. Every booking is
    checked against stored bookings and against the rest of the batch.

    Raises:
        BookingConflictError: any booking in the batch conflicts
    """
    now = now_iso()
    slots = [slot_for(b) for b in bookings]
    total = sum(float(b.get("total_amount") or 0) for b in bookings)

    conn.execute("BEGIN IMMEDIATE")
    try:
        hit = find_batch_conflict(conn, tenant_id, slots)
        if hit is not None:
            index, row = hit
            raise BookingConflictError(row, message="Time slot conflict in multi-date booking", index=index)

        cur = conn.execute(
            """
            INSERT INTO contracts (tenant_id, customer_id, contract_name, status, total_amount, notes, created_at, updated_at)
            VALUES (?, ?, ?, 'active', ?, ?, ?, ?)
            """,
            (tenant_id, contract.get("customer_id"), contract["contract_name"], total,
             contract.get("notes"), now, now),
        )
        contract_id = cur.lastrowid

        booking_ids: List[int] = []
        for fields in bookings:
            data = dict(fields)
            if proposal_id is not None:
                data["proposal_id"] = proposal_id
            if data.get("customer_id") is None:
                data["customer_id"] = contract.get("customer_id")
            booking_ids.append(insert_booking(conn, tenant_id, user_id, data, contract_id=contract_id))

        if proposal_id is not None:
            conn.execute(
                """
                UPDATE proposals SET contract_id = ?, status = 'sent',
                       sent_at = COALESCE(sent_at, ?), updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (contract_id, now, now, proposal_id, tenant_id),
            )

        record_audit(conn, tenant_id=tenant_id, user_id=user_id, action="contract.create",
                     entity_type="contract", entity_id=contract_id,
                     details={"booking_ids": booking_ids, "total_amount": total})
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info("[CONTRACTS] Created contract_id=%s with %d bookings tenant_id=%s",
                contract_id, len(booking_ids), tenant_id)
    return {"contract_id": contract_id, "booking_ids": booking_ids, "total_amount": total}


# ============================================================================
# Payments -> status
# ============================================================================


def paid_total(conn: sqlite3.Connection, tenant_id: int, booking_id: int) -> float:
    """Net amount received: completed payments minus refunds."""
    row = conn.execute(
        """
        SELECT COALESCE(SUM(CASE WHEN payment_type = 'refund' THEN -ABS(amount) ELSE amount END), 0) AS paid
        FROM payments
        WHERE tenant_id = ? AND booking_id = ? AND status = 'completed'
        """,
        (tenant_id, booking_id),
    ).fetchone()
    return float(row["paid"] or 0)


def apply_payment_progress(conn: sqlite3.Connection, tenant_id: int, booking_id: int) -> Dict[str, Any]:
    """
    Recompute deposit_paid and advance the booking status after a payment.
    Does not commit.
    """
    booking = conn.execute(
        "SELECT id, status, total_amount, deposit_amount FROM bookings WHERE id = ? AND tenant_id = ?",
        (booking_id, tenant_id),
    ).fetchone()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    paid = paid_total(conn, tenant_id, booking_id)
    deposit_target = booking["deposit_amount"] or booking["total_amount"] or 0
    deposit_paid = bool(deposit_target) and paid >= float(deposit_target)
    new_status = status_after_payment(booking["status"], booking["total_amount"], booking["deposit_amount"], paid)

    conn.execute(
        "UPDATE bookings SET deposit_paid = ?, status = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
        (int(deposit_paid), new_status, now_iso(), booking_id, tenant_id),
    )
    if new_status != booking["status"]:
        logger.info("[PAYMENTS] booking_id=%s status %s -> %s (paid=%.2f)",
                    booking_id, booking["status"], new_status, paid)
    return {"paid": paid, "deposit_paid": deposit_paid, "status": new_status}
