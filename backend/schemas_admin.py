"""
backend/schemas_admin.py

Pydantic schemas for auth, tenant staff, settings, super admin and the AI
assistant.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

try:
    from backend.models import PackageName, TenantStatus, UserRole
except ModuleNotFoundError:
    from models import PackageName, TenantStatus, UserRole


def _email(v):
    if isinstance(v, str):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("invalid email address")
    return v


# ========================================================================
# AUTH
# ========================================================================

class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=8, max_length=128)
    tenant_name: str = Field("My Venue", min_length=1, max_length=200)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return _email(v)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    user: Dict[str, Any]


class RefreshRequest(BaseModel):
    session_id: str
    refresh_token: str


class LogoutRequest(BaseModel):
    session_id: str
    refresh_token: Optional[str] = None


# ========================================================================
# TENANT STAFF
# ========================================================================

class UserCreateRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=8, max_length=128)
    role: UserRole = UserRole.staff
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return _email(v)


class UserUpdateRequest(BaseModel):
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    tenant_id: Optional[int] = None
    is_active: bool = True
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class UserListResponse(BaseModel):
    items: List[UserResponse] = Field(default_factory=list)
    total: int = 0


# ========================================================================
# SETTINGS
# ========================================================================

class SettingsUpdateRequest(BaseModel):
    """Arbitrary key/value pairs; values are stored as JSON."""
    values: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("values")
    @classmethod
    def keys_valid(cls, v):
        for key in v:
            if not key or len(key) > 100:
                raise ValueError("setting keys must be 1-100 characters")
            if key == "notifications":
                raise ValueError("use /api/settings/notifications for notification preferences")
        return v


class NotificationSettings(BaseModel):
    email_notifications: bool = True
    push_notifications: bool = False
    booking_confirmations: bool = True
    payment_reminders: bool = True
    maintenance_alerts: bool = True


class NotificationSettingsUpdate(BaseModel):
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    booking_confirmations: Optional[bool] = None
    payment_reminders: Optional[bool] = None
    maintenance_alerts: Optional[bool] = None


# ========================================================================
# SUPER ADMIN
# ========================================================================

class TenantCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    package: PackageName = PackageName.starter
    status: TenantStatus = TenantStatus.trialing
    contact_email: Optional[str] = Field(None, max_length=254)
    admin_email: Optional[str] = Field(None, max_length=254, description="Create a tenant_admin user")
    admin_password: Optional[str] = Field(None, min_length=8, max_length=128)

    @field_validator("admin_email", "contact_email", mode="before")
    @classmethod
    def clean_email(cls, v):
        if v is None:
            return v
        return _email(v)


class TenantUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    package: Optional[PackageName] = None
    status: Optional[TenantStatus] = None
    contact_email: Optional[str] = Field(None, max_length=254)


class AssumeTenantRequest(BaseModel):
    tenant_id: int
    reason: str = Field(..., description="Why support needs access (min 10 characters)")

    @field_validator("reason", mode="before")
    @classmethod
    def trim_reason(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


# ========================================================================
# AI
# ========================================================================

class ProposalDraftRequest(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=100)
    customer_id: Optional[int] = None
    venue_id: Optional[int] = None
    event_date: Optional[str] = None
    guest_count: Optional[int] = Field(None, ge=0)
    budget: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=2000)


class AIResponse(BaseModel):
    text: str
    model: str
