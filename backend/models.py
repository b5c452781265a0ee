from enum import Enum


# Enums
class UserRole(str, Enum):
    super_admin = "super_admin"
    tenant_admin = "tenant_admin"
    manager = "manager"
    staff = "staff"
    viewer = "viewer"


class PackageName(str, Enum):
    starter = "starter"
    professional = "professional"
    enterprise = "enterprise"


class TenantStatus(str, Enum):
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    suspended = "suspended"
    canceled = "canceled"


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    TOUR_SCHEDULED = "TOUR_SCHEDULED"
    PROPOSAL_SENT = "PROPOSAL_SENT"
    WON = "WON"
    LOST = "LOST"


class LeadActivityType(str, Enum):
    NOTE = "NOTE"
    CALL = "CALL"
    EMAIL = "EMAIL"
    STATUS_CHANGE = "STATUS_CHANGE"
    CONVERTED = "CONVERTED"


class PaymentType(str, Enum):
    deposit = "deposit"
    balance = "balance"
    refund = "refund"
