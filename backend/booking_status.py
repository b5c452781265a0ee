"""
backend/booking_status.py

Booking lifecycle.

inquiry -> pending -> tentative -> confirmed_deposit_paid -> confirmed_fully_paid -> completed
Any non-terminal status may move to cancelled. completed and cancelled are terminal.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

INQUIRY = "inquiry"
PENDING = "pending"
TENTATIVE = "tentative"
CONFIRMED_DEPOSIT_PAID = "confirmed_deposit_paid"
CONFIRMED_FULLY_PAID = "confirmed_fully_paid"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUS_ORDER: List[str] = [
    INQUIRY,
    PENDING,
    TENTATIVE,
    CONFIRMED_DEPOSIT_PAID,
    CONFIRMED_FULLY_PAID,
    COMPLETED,
]

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    INQUIRY: frozenset({PENDING, CANCELLED}),
    PENDING: frozenset({TENTATIVE, CANCELLED}),
    TENTATIVE: frozenset({CONFIRMED_DEPOSIT_PAID, CANCELLED}),
    CONFIRMED_DEPOSIT_PAID: frozenset({CONFIRMED_FULLY_PAID, CANCELLED}),
    CONFIRMED_FULLY_PAID: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}

# Values written by older clients
LEGACY_STATUS_MAP: Dict[str, str] = {
    "confirmed": TENTATIVE,
    "proposal_shared": PENDING,
}

# A new booking starts here; paid and closed statuses are reached by transitions
CREATE_STATUSES: FrozenSet[str] = frozenset({INQUIRY, PENDING, TENTATIVE})

# Calendar colours
STATUS_COLORS: Dict[str, str] = {
    INQUIRY: "#9CA3AF",
    PENDING: "#F59E0B",
    TENTATIVE: "#3B82F6",
    CONFIRMED_DEPOSIT_PAID: "#10B981",
    CONFIRMED_FULLY_PAID: "#059669",
    COMPLETED: "#6B7280",
    CANCELLED: "#EF4444",
}


class InvalidStatusTransition(ValueError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition from {current} to {requested}")


def normalize_status(status: Optional[str]) -> str:
    """Map legacy values; unknown values raise ValueError."""
    value = (status or INQUIRY).strip().lower()
    value = LEGACY_STATUS_MAP.get(value, value)
    if value not in ALLOWED_TRANSITIONS:
        raise ValueError(f"Unknown booking status: {status!r}")
    return value


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS[normalize_status(status)]


def can_transition(current: str, requested: str) -> bool:
    current_n = normalize_status(current)
    requested_n = normalize_status(requested)
    if current_n == requested_n:
        return True
    return requested_n in ALLOWED_TRANSITIONS[current_n]


def validate_transition(current: str, requested: str) -> str:
    """
    Return the normalized requested status.

    Raises:
        InvalidStatusTransition: move not allowed from current
    """
    requested_n = normalize_status(requested)
    if not can_transition(current, requested_n):
        raise InvalidStatusTransition(normalize_status(current), requested_n)
    return requested_n


def path_to(current: str, target: str) -> List[str]:
    """
    Forward steps from current to target along the main flow (excluding current).
    Empty if target is not ahead of current.
    """
    current_n = normalize_status(current)
    target_n = normalize_status(target)
    if current_n not in STATUS_ORDER or target_n not in STATUS_ORDER:
        return []
    start = STATUS_ORDER.index(current_n)
    end = STATUS_ORDER.index(target_n)
    if end <= start:
        return []
    return STATUS_ORDER[start + 1:end + 1]


def status_after_payment(
    current: str,
    total_amount: Optional[float],
    deposit_amount: Optional[float],
    paid_amount: float,
) -> str:
    """
    Status a booking should hold after payments totalling paid_amount.

    Fully paid moves to confirmed_fully_paid, a met deposit to
    confirmed_deposit_paid. Payments never move a booking backwards and
    never touch completed or cancelled bookings.
    """
    current_n = normalize_status(current)
    if is_terminal(current_n):
        return current_n

    target = current_n
    if total_amount and paid_amount >= float(total_amount):
        target = CONFIRMED_FULLY_PAID
    elif deposit_amount and paid_amount >= float(deposit_amount):
        target = CONFIRMED_DEPOSIT_PAID

    if target == current_n or not path_to(current_n, target):
        return current_n
    return target
