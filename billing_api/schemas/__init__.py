"""Pydantic schemas for API request/response models."""

from billing_api.schemas.invoice import (
    AuditLogRead,
    InvoiceCreate,
    InvoicePolicyRead,
    InvoiceRead,
    InvoiceUpdate,
)

__all__ = [
    "AuditLogRead",
    "InvoiceCreate",
    "InvoicePolicyRead",
    "InvoiceRead",
    "InvoiceUpdate",
]
