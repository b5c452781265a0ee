"""
backend/schemas_crm.py

Pydantic schemas for customers, leads, proposals and payments.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

try:
    from backend.models import LeadActivityType, LeadStatus, PaymentType
except ModuleNotFoundError:
    from models import LeadActivityType, LeadStatus, PaymentType


def _trim(v):
    if isinstance(v, str):
        return v.strip()
    return v


def _normalize_email(v):
    if isinstance(v, str):
        v = v.strip().lower()
        if not v:
            return None
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email address")
    return v


# ========================================================================
# CUSTOMERS
# ========================================================================

class CustomerCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: Optional[str] = Field(None, max_length=254)
    phone: Optional[str] = Field(None, max_length=50)
    company: Optional[str] = Field(None, max_length=200)
    event_type: Optional[str] = Field(None, max_length=100)
    status: str = Field("active", max_length=30)
    source: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=5000)

    @field_validator("name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return _normalize_email(v)


class CustomerUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = Field(None, max_length=254)
    phone: Optional[str] = Field(None, max_length=50)
    company: Optional[str] = Field(None, max_length=200)
    event_type: Optional[str] = Field(None, max_length=100)
    status: Optional[str] = Field(None, max_length=30)
    source: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=5000)

    @field_validator("name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return _normalize_email(v)


class CustomerResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    event_type: Optional[str] = None
    status: Optional[str] = None
    source: Optional[str] = None
    notes: Optional[str] = None
    booking_count: int = 0
    lifetime_value: float = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CustomerListResponse(BaseModel):
    items: List[CustomerResponse] = Field(default_factory=list)
    total: int = 0


# ========================================================================
# LEADS
# ========================================================================

class LeadCreateRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    email: Optional[str] = Field(None, max_length=254)
    phone: Optional[str] = Field(None, max_length=50)
    event_type: Optional[str] = Field(None, max_length=100)
    guest_count: Optional[int] = Field(None, ge=0)
    budget: Optional[float] = Field(None, ge=0)
    preferred_date: Optional[str] = None
    source: Optional[str] = Field(None, max_length=100, description="website, referral, walk-in, ...")
    status: LeadStatus = LeadStatus.NEW
    notes: Optional[str] = Field(None, max_length=5000)

    @field_validator("first_name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return _normalize_email(v)


class LeadUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    email: Optional[str] = Field(None, max_length=254)
    phone: Optional[str] = Field(None, max_length=50)
    event_type: Optional[str] = Field(None, max_length=100)
    guest_count: Optional[int] = Field(None, ge=0)
    budget: Optional[float] = Field(None, ge=0)
    preferred_date: Optional[str] = None
    source: Optional[str] = Field(None, max_length=100)
    status: Optional[LeadStatus] = None
    notes: Optional[str] = Field(None, max_length=5000)

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return _normalize_email(v)


class LeadResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: str
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    event_type: Optional[str] = None
    guest_count: Optional[int] = None
    budget: Optional[float] = None
    preferred_date: Optional[str] = None
    source: Optional[str] = None
    status: str
    notes: Optional[str] = None
    customer_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LeadListResponse(BaseModel):
    items: List[LeadResponse] = Field(default_factory=list)
    total: int = 0


class LeadActivityCreateRequest(BaseModel):
    type: LeadActivityType = LeadActivityType.NOTE
    body: str = Field(..., min_length=1, max_length=5000)


class LeadActivityResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    lead_id: int
    type: str
    body: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[int] = None
    created_at: Optional[str] = None


# ========================================================================
# PUBLIC LEAD CAPTURE
# ========================================================================

class PublicSpace(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    capacity: Optional[int] = None


class PublicVenueResponse(BaseModel):
    """A bookable venue as shown to anonymous visitors. No tenant ids."""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    description: Optional[str] = None
    city: Optional[str] = None
    capacity: Optional[int] = None
    tenant_name: str
    spaces: List[PublicSpace] = Field(default_factory=list)


class PublicVenueListResponse(BaseModel):
    items: List[PublicVenueResponse] = Field(default_factory=list)
    total: int = 0


class PublicInquiryRequest(BaseModel):
    """
    Quote request from the public venue page. The owning tenant is taken
    from venue_id; unknown fields such as tenant_id are dropped.
    """
    venue_id: int
    space_id: Optional[int] = None
    contact_name: str = Field(..., min_length=1, max_length=200)
    contact_email: str = Field(..., max_length=254)
    contact_phone: Optional[str] = Field(None, max_length=50)
    event_type: Optional[str] = Field(None, max_length=100)
    event_date: Optional[str] = None
    guest_count: Optional[int] = Field(None, ge=1)
    budget: Optional[float] = Field(None, ge=0)
    message: Optional[str] = Field(None, max_length=5000)

    @field_validator("contact_name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)

    @field_validator("contact_email", mode="before")
    @classmethod
    def clean_email(cls, v):
        v = _normalize_email(v)
        if not v:
            raise ValueError("contact_email is required")
        return v


class PublicInquiryResponse(BaseModel):
    inquiry_id: int
    venue_id: int
    venue_name: str
    tenant_name: str
    message: str = "Inquiry submitted"


# ========================================================================
# PROPOSALS
# ========================================================================

class ProposalCreateRequest(BaseModel):
    customer_id: int
    title: str = Field(..., min_length=1, max_length=200)
    content: Optional[str] = Field(None, max_length=50000)
    event_details: Dict[str, Any] = Field(
        default_factory=dict,
        description="event_name, event_type, event_date, start_time, end_time, guest_count, venue_id, space_id",
    )
    total_amount: Optional[float] = Field(None, ge=0)
    deposit_percent: float = Field(30, ge=0, le=100)
    valid_until: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def trim_title(cls, v):
        return _trim(v)


class ProposalUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = Field(None, max_length=50000)
    event_details: Optional[Dict[str, Any]] = None
    total_amount: Optional[float] = Field(None, ge=0)
    deposit_percent: Optional[float] = Field(None, ge=0, le=100)
    valid_until: Optional[str] = None


class ProposalResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    booking_id: Optional[int] = None
    title: str
    content: Optional[str] = None
    event_details: Dict[str, Any] = Field(default_factory=dict)
    total_amount: Optional[float] = None
    deposit_percent: float = 30
    status: str
    public_token: Optional[str] = None
    valid_until: Optional[str] = None
    signature: Optional[str] = None
    sent_at: Optional[str] = None
    viewed_at: Optional[str] = None
    accepted_at: Optional[str] = None
    declined_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProposalListResponse(BaseModel):
    items: List[ProposalResponse] = Field(default_factory=list)
    total: int = 0


class PublicProposalResponse(BaseModel):
    """What the customer sees: no internal ids beyond the proposal itself."""
    model_config = ConfigDict(extra="ignore")

    title: str
    content: Optional[str] = None
    event_details: Dict[str, Any] = Field(default_factory=dict)
    total_amount: Optional[float] = None
    deposit_percent: float = 30
    status: str
    valid_until: Optional[str] = None
    tenant_name: Optional[str] = None
    customer_name: Optional[str] = None


class ProposalAcceptRequest(BaseModel):
    signature: str = Field("", max_length=200, description="Typed full name of the signer")

    @field_validator("signature", mode="before")
    @classmethod
    def trim_signature(cls, v):
        return _trim(v)


class ProposalDeclineRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


# ========================================================================
# PAYMENTS
# ========================================================================

class PaymentCreateRequest(BaseModel):
    booking_id: int
    amount: float = Field(..., gt=0)
    payment_type: PaymentType = PaymentType.deposit
    method: str = Field("card", max_length=30, description="card, cash, check, bank_transfer, stripe")
    notes: Optional[str] = Field(None, max_length=2000)


class PaymentIntentRequest(BaseModel):
    booking_id: int
    payment_type: PaymentType = PaymentType.deposit
    amount: Optional[float] = Field(None, gt=0, description="Defaults to the outstanding deposit or balance")


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0, description="Defaults to the full payment amount")
    reason: Optional[str] = Field(None, max_length=500)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    booking_id: int
    amount: float
    payment_type: str
    method: str
    status: str
    stripe_payment_intent_id: Optional[str] = None
    refunded_payment_id: Optional[int] = None
    notes: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: Optional[str] = None


class PaymentListResponse(BaseModel):
    items: List[PaymentResponse] = Field(default_factory=list)
    total: int = 0
