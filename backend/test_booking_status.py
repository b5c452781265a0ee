"""
Booking lifecycle rules.

Run: pytest backend/test_booking_status.py -v
"""

import pytest

from backend import booking_status
from backend.booking_status import (
    CANCELLED,
    COMPLETED,
    CONFIRMED_DEPOSIT_PAID,
    CONFIRMED_FULLY_PAID,
    INQUIRY,
    PENDING,
    TENTATIVE,
    InvalidStatusTransition,
    can_transition,
    is_terminal,
    normalize_status,
    path_to,
    status_after_payment,
    validate_transition,
)
from frontend.view_helpers import BOOKING_STATUSES, STATUS_LABELS


class TestNormalize:
    def test_legacy_values(self):
        assert normalize_status("confirmed") == TENTATIVE
        assert normalize_status("proposal_shared") == PENDING

    def test_case_and_whitespace(self):
        assert normalize_status("  Tentative ") == TENTATIVE

    def test_empty_defaults_to_inquiry(self):
        assert normalize_status(None) == INQUIRY
        assert normalize_status("") == INQUIRY

    def test_unknown_raises(self):
        with pytest.raises(ValueError):
            normalize_status("booked")


class TestTransitions:
    @pytest.mark.parametrize("current,requested", [
        (INQUIRY, PENDING),
        (PENDING, TENTATIVE),
        (TENTATIVE, CONFIRMED_DEPOSIT_PAID),
        (CONFIRMED_DEPOSIT_PAID, CONFIRMED_FULLY_PAID),
        (CONFIRMED_FULLY_PAID, COMPLETED),
        (INQUIRY, CANCELLED),
        (CONFIRMED_FULLY_PAID, CANCELLED),
    ])
    def test_allowed(self, current, requested):
        assert can_transition(current, requested)
        assert validate_transition(current, requested) == requested

    @pytest.mark.parametrize("current,requested", [
        (INQUIRY, TENTATIVE),
        (TENTATIVE, PENDING),
        (COMPLETED, CANCELLED),
        (CANCELLED, INQUIRY),
        (CONFIRMED_DEPOSIT_PAID, COMPLETED),
    ])
    def test_rejected(self, current, requested):
        assert not can_transition(current, requested)
        with pytest.raises(InvalidStatusTransition) as exc:
            validate_transition(current, requested)
        assert exc.value.current == current
        assert exc.value.requested == requested

    def test_same_status_is_a_no_op(self):
        assert can_transition(CANCELLED, CANCELLED)
        assert validate_transition(TENTATIVE, "confirmed") == TENTATIVE

    def test_terminal(self):
        assert is_terminal(COMPLETED)
        assert is_terminal(CANCELLED)
        assert not is_terminal(TENTATIVE)

    def test_path_to(self):
        assert path_to(PENDING, CONFIRMED_DEPOSIT_PAID) == [TENTATIVE, CONFIRMED_DEPOSIT_PAID]
        assert path_to(TENTATIVE, PENDING) == []
        assert path_to(TENTATIVE, CANCELLED) == []


class TestPaymentProgress:
    def test_deposit_met(self):
        assert status_after_payment(TENTATIVE, 1000, 300, 300) == CONFIRMED_DEPOSIT_PAID

    def test_fully_paid(self):
        assert status_after_payment(CONFIRMED_DEPOSIT_PAID, 1000, 300, 1000) == CONFIRMED_FULLY_PAID

    def test_partial_payment_keeps_status(self):
        assert status_after_payment(TENTATIVE, 1000, 300, 100) == TENTATIVE

    def test_never_moves_backwards(self):
        assert status_after_payment(CONFIRMED_FULLY_PAID, 1000, 300, 0) == CONFIRMED_FULLY_PAID

    def test_terminal_untouched(self):
        assert status_after_payment(CANCELLED, 1000, 300, 1000) == CANCELLED
        assert status_after_payment(COMPLETED, 1000, 300, 0) == COMPLETED

    def test_inquiry_fully_paid_jumps_forward(self):
        assert status_after_payment(INQUIRY, 500, None, 500) == CONFIRMED_FULLY_PAID


class TestStatusSurface:
    def test_create_statuses_open_the_flow(self):
        assert booking_status.CREATE_STATUSES == {INQUIRY, PENDING, TENTATIVE}
        for status in booking_status.CREATE_STATUSES:
            assert not is_terminal(status)
            assert CONFIRMED_DEPOSIT_PAID in path_to(status, CONFIRMED_DEPOSIT_PAID)

    def test_display_labels_live_in_the_frontend(self):
        assert not hasattr(booking_status, "STATUS_LABELS")
        assert set(STATUS_LABELS) == set(booking_status.ALLOWED_TRANSITIONS)
        assert set(BOOKING_STATUSES[:3]) == booking_status.CREATE_STATUSES
