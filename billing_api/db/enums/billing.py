"""Invoice, policy and enrollment enums."""

from enum import Enum


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states (see services.invoice_lifecycle)."""

    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    DISCREPANCY = "DISCREPANCY"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"


class AffiliateType(str, Enum):
    """Only OWNER affiliates are billed; dependents ride on the owner's tier price."""

    OWNER = "OWNER"
    DEPENDENT = "DEPENDENT"


class CoverageType(str, Enum):
    """Coverage tiers, each priced by its own premium on the policy."""

    T = "T"  # self only
    TPLUS1 = "TPLUS1"  # self + 1
    TPLUSF = "TPLUSF"  # self + family


class AdjustmentType(str, Enum):
    """Kinds of pro-rated adjustment lines in the lagged billing window."""

    JOINED = "JOINED"
    LEFT = "LEFT"
    JOINED_AND_LEFT = "JOINED_AND_LEFT"
    TIER_CHANGED = "TIER_CHANGED"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    VALIDATION_CALCULATED = "VALIDATION_CALCULATED"
