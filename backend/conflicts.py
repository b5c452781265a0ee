"""
backend/conflicts.py

Booking time-slot conflict detection.

A candidate booking conflicts with an existing one when both are in the same
tenant, the same space, on the same calendar date, the existing booking is
not cancelled, and the half-open minute ranges overlap:

    new_start < existing_end and new_end > existing_start

Back-to-back bookings (one ends 14:00, next starts 14:00) do not conflict.
The scan is linear over the bookings of that space and date.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

try:
    from backend.config import IS_DEV
except ModuleNotFoundError:
    from config import IS_DEV

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")

# Statuses that no longer hold a slot
NON_BLOCKING_STATUSES = ("cancelled",)


def parse_time_to_minutes(value: str) -> int:
    """
    Convert "HH:MM" (optionally "HH:MM:SS") to minutes after midnight.

    Raises:
        ValueError: malformed or out-of-range time
    """
    if not isinstance(value, str):
        raise ValueError(f"Invalid time: {value!r}")
    match = _TIME_RE.match(value)
    if not match:
        raise ValueError(f"Invalid time format (expected HH:MM): {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Time out of range: {value!r}")
    return hours * 60 + minutes


def normalize_time(value: str) -> str:
    """Canonical zero-padded "HH:MM"."""
    total = parse_time_to_minutes(value)
    return f"{total // 60:02d}:{total % 60:02d}"


def normalize_date(value: Union[str, date, datetime]) -> str:
    """
    Calendar date as "YYYY-MM-DD".
    Accepts date/datetime objects, plain dates and ISO timestamps.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or len(value) < 10:
        raise ValueError(f"Invalid date: {value!r}")
    try:
        return date.fromisoformat(value[:10]).isoformat()
    except ValueError:
        raise ValueError(f"Invalid date (expected YYYY-MM-DD): {value!r}")


def times_overlap(new_start: int, new_end: int, existing_start: int, existing_end: int) -> bool:
    return new_start < existing_end and new_end > existing_start


@dataclass(frozen=True)
class Slot:
    """One requested (space, date, time window)."""
    event_date: str
    start_time: str
    end_time: str
    space_id: Optional[int] = None
    venue_id: Optional[int] = None

    @property
    def start_minutes(self) -> int:
        return parse_time_to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return parse_time_to_minutes(self.end_time)


def same_place(a: Slot, b: Slot) -> bool:
    """
    Same space. Bookings without a space compete with each other inside the
    same venue only.
    """
    if a.space_id is not None or b.space_id is not None:
        return a.space_id == b.space_id
    return a.venue_id == b.venue_id


def slots_conflict(a: Slot, b: Slot) -> bool:
    if not same_place(a, b) or a.event_date != b.event_date:
        return False
    return times_overlap(a.start_minutes, a.end_minutes, b.start_minutes, b.end_minutes)


def find_conflict_in(candidate: Slot, existing: Iterable[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """
    Linear scan of existing booking rows for the first conflict with candidate.
    Cancelled rows and rows with unreadable times are skipped.
    """
    for row in existing:
        if row["status"] in NON_BLOCKING_STATUSES:
            continue
        try:
            other = Slot(
                event_date=normalize_date(row["event_date"]),
                start_time=row["start_time"],
                end_time=row["end_time"],
                space_id=row["space_id"],
                venue_id=row["venue_id"],
            )
            if slots_conflict(candidate, other):
                return row
        except ValueError as e:
            logger.warning("[CONFLICTS] Skipping booking id=%s with unreadable slot: %s", row["id"], e)
    return None


def _candidate_rows(
    conn: sqlite3.Connection,
    tenant_id: int,
    slot: Slot,
    exclude_booking_id: Optional[int] = None,
) -> List[sqlite3.Row]:
    sql = """
        SELECT b.id, b.tenant_id, b.event_name, b.customer_id, b.venue_id, b.space_id,
               b.event_date, b.start_time, b.end_time, b.status,
               c.name AS customer_name
        FROM bookings b
        LEFT JOIN customers c ON c.id = b.customer_id AND c.tenant_id = b.tenant_id
        WHERE b.tenant_id = ?
          AND b.status != 'cancelled'
          AND substr(b.event_date, 1, 10) = ?
    """
    params: List[Any] = [tenant_id, slot.event_date]
    if slot.space_id is not None:
        sql += " AND b.space_id = ?"
        params.append(slot.space_id)
    else:
        sql += " AND b.space_id IS NULL"
        if slot.venue_id is None:
            sql += " AND b.venue_id IS NULL"
        else:
            sql += " AND b.venue_id = ?"
            params.append(slot.venue_id)
    if exclude_booking_id is not None:
        sql += " AND b.id != ?"
        params.append(exclude_booking_id)
    sql += " ORDER BY b.start_time, b.id"
    return conn.execute(sql, params).fetchall()


def find_conflict(
    conn: sqlite3.Connection,
    tenant_id: int,
    slot: Slot,
    exclude_booking_id: Optional[int] = None,
) -> Optional[sqlite3.Row]:
    """
    First stored booking that conflicts with slot, or None.

    Args:
        exclude_booking_id: skip this booking (used when rescheduling it)
    """
    rows = _candidate_rows(conn, tenant_id, slot, exclude_booking_id)
    conflict = find_conflict_in(slot, rows)
    if IS_DEV:
        logger.debug("[CONFLICTS] tenant_id=%s space_id=%s date=%s %s-%s scanned=%d conflict=%s",
                     tenant_id, slot.space_id, slot.event_date, slot.start_time, slot.end_time,
                     len(rows), conflict["id"] if conflict else None)
    return conflict


def find_batch_conflict(
    conn: sqlite3.Connection,
    tenant_id: int,
    slots: Sequence[Slot],
) -> Optional[Tuple[int, Dict[str, Any]]]:
    """
    Check a multi-date request: each slot against stored bookings, then
    against the earlier slots of the same batch.

    Returns:
        (index of offending slot, conflicting booking as dict) or None.
        Batch-internal conflicts report id=None and the other slot's times.
    """
    for i, slot in enumerate(slots):
        stored = find_conflict(conn, tenant_id, slot)
        if stored is not None:
            return i, dict(stored)
        for j in range(i):
            if slots_conflict(slot, slots[j]):
                other = slots[j]
                return i, {
                    "id": None,
                    "event_name": f"Booking #{j + 1} in this request",
                    "customer_name": None,
                    "event_date": other.event_date,
                    "start_time": other.start_time,
                    "end_time": other.end_time,
                    "status": "requested",
                }
    return None


def conflict_payload(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Client-facing description of the conflicting booking."""
    return {
        "id": row["id"],
        "eventName": row["event_name"],
        "customerName": row["customer_name"] or "Unknown Customer",
        "startTime": row["start_time"],
        "endTime": row["end_time"],
        "status": row["status"],
        "eventDate": row["event_date"],
    }


class BookingConflictError(Exception):
    """
    Raised by routes when a slot is taken. main.py renders it as
    409 {"detail": message, "conflictingBooking": {...}}.
    """

    def __init__(self, row: Mapping[str, Any], message: str = "Time slot conflict", index: Optional[int] = None):
        self.conflicting = conflict_payload(row)
        self.message = message
        self.index = index
        super().__init__(message)

    def to_content(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"detail": self.message, "conflictingBooking": self.conflicting}
        if self.index is not None:
            content["bookingIndex"] = self.index
        return content
