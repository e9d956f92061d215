"""Enum definitions for application constants."""

from billing_api.db.enums.auth import Role
from billing_api.db.enums.billing import (
    AdjustmentType,
    AffiliateType,
    AuditAction,
    CoverageType,
    InvoiceStatus,
    PaymentStatus,
)
from billing_api.db.enums.permissions import (
    BROKER_EMPLOYEES,
    ROLES_CAN_VIEW_INVOICES,
    SUPER_ADMIN_ONLY,
)

__all__ = [
    "Role",
    "AdjustmentType",
    "AffiliateType",
    "AuditAction",
    "CoverageType",
    "InvoiceStatus",
    "PaymentStatus",
    "BROKER_EMPLOYEES",
    "ROLES_CAN_VIEW_INVOICES",
    "SUPER_ADMIN_ONLY",
]
