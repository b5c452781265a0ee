"""
backend/schemas_bookings.py

Pydantic schemas for bookings, contracts (multi-date bookings) and the
calendar feed.

Times are "HH:MM" 24h strings and are normalized to zero-padded form.
An event must end after it starts on the same day.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

try:
    from backend.booking_status import CREATE_STATUSES, normalize_status
    from backend.conflicts import normalize_date, normalize_time, parse_time_to_minutes
except ModuleNotFoundError:
    from booking_status import CREATE_STATUSES, normalize_status
    from conflicts import normalize_date, normalize_time, parse_time_to_minutes


def _check_window(start_time: Optional[str], end_time: Optional[str]) -> None:
    if start_time and end_time and parse_time_to_minutes(end_time) <= parse_time_to_minutes(start_time):
        raise ValueError("end_time must be after start_time")


class BookingCreateRequest(BaseModel):
    event_name: str = Field(..., min_length=1, max_length=200)
    event_type: str = Field(..., min_length=1, max_length=100, description="wedding, corporate, party, ...")
    customer_id: Optional[int] = None
    venue_id: Optional[int] = None
    space_id: Optional[int] = None
    event_date: str = Field(..., description="YYYY-MM-DD")
    end_date: Optional[str] = None
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    guest_count: int = Field(..., ge=1)
    status: str = "inquiry"
    total_amount: Optional[float] = Field(None, ge=0)
    deposit_amount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=5000)
    proposal_id: Optional[int] = None

    @field_validator("event_name", "event_type", mode="before")
    @classmethod
    def trim(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("event_date", "end_date")
    @classmethod
    def valid_date(cls, v):
        if v is None:
            return v
        return normalize_date(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def valid_time(cls, v):
        return normalize_time(v)

    @field_validator("status")
    @classmethod
    def valid_status(cls, v):
        status = normalize_status(v)
        if status not in CREATE_STATUSES:
            raise ValueError(f"New bookings start as one of: {', '.join(sorted(CREATE_STATUSES))}")
        return status

    @model_validator(mode="after")
    def end_after_start(self):
        _check_window(self.start_time, self.end_time)
        if self.end_date and self.end_date < self.event_date:
            raise ValueError("end_date must not be before event_date")
        return self


class BookingUpdateRequest(BaseModel):
    """Partial update. Fields left out keep their stored values."""
    event_name: Optional[str] = Field(None, min_length=1, max_length=200)
    event_type: Optional[str] = Field(None, min_length=1, max_length=100)
    customer_id: Optional[int] = None
    venue_id: Optional[int] = None
    space_id: Optional[int] = None
    event_date: Optional[str] = None
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    guest_count: Optional[int] = Field(None, ge=1)
    status: Optional[str] = None
    total_amount: Optional[float] = Field(None, ge=0)
    deposit_amount: Optional[float] = Field(None, ge=0)
    deposit_paid: Optional[bool] = None
    notes: Optional[str] = Field(None, max_length=5000)
    cancellation_reason: Optional[str] = Field(None, max_length=200)
    cancellation_note: Optional[str] = Field(None, max_length=2000)

    @field_validator("event_date", "end_date")
    @classmethod
    def valid_date(cls, v):
        if v is None:
            return v
        return normalize_date(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def valid_time(cls, v):
        if v is None:
            return v
        return normalize_time(v)

    @field_validator("status")
    @classmethod
    def valid_status(cls, v):
        if v is None:
            return v
        return normalize_status(v)

    @model_validator(mode="after")
    def end_after_start(self):
        _check_window(self.start_time, self.end_time)
        return self


class BookingCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=200, description="Why the booking was cancelled")
    note: Optional[str] = Field(None, max_length=2000)

    @field_validator("reason", mode="before")
    @classmethod
    def trim_reason(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class BookingResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    event_name: str
    event_type: str
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    venue_id: Optional[int] = None
    venue_name: Optional[str] = None
    space_id: Optional[int] = None
    space_name: Optional[str] = None
    event_date: str
    end_date: Optional[str] = None
    start_time: str
    end_time: str
    guest_count: int
    status: str
    total_amount: Optional[float] = None
    deposit_amount: Optional[float] = None
    deposit_paid: bool = False
    contract_id: Optional[int] = None
    proposal_id: Optional[int] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancellation_note: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancelled_by: Optional[int] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def legacy_status(cls, v):
        return normalize_status(v)


class BookingListResponse(BaseModel):
    items: List[BookingResponse] = Field(default_factory=list)
    total: int = 0


class AvailabilityResponse(BaseModel):
    available: bool
    conflictingBooking: Optional[Dict[str, Any]] = None


# ========================================================================
# CONTRACTS
# ========================================================================

class ContractCreate(BaseModel):
    contract_name: str = Field(..., min_length=1, max_length=200)
    customer_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=5000)


class ContractBookingRequest(BaseModel):
    contract: ContractCreate
    bookings: List[BookingCreateRequest] = Field(..., min_length=1, max_length=100)
    proposal_id: Optional[int] = None


class ContractResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    contract_name: str
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    status: str
    total_amount: float = 0
    notes: Optional[str] = None
    booking_count: int = 0
    created_at: Optional[str] = None
    bookings: List[BookingResponse] = Field(default_factory=list)


class ContractListResponse(BaseModel):
    items: List[ContractResponse] = Field(default_factory=list)
    total: int = 0


# ========================================================================
# CALENDAR
# ========================================================================

class CalendarEvent(BaseModel):
    id: int
    title: str
    start: str
    end: str
    status: str
    color: str
    venue_name: Optional[str] = None
    space_name: Optional[str] = None
    customer_name: Optional[str] = None
    guest_count: int = 0
