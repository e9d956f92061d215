"""Pydantic schemas for invoices, invoice policies and their audit trail."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from billing_api.db.enums import InvoiceStatus, PaymentStatus


BILLING_PERIOD_PATTERN = r"^\d{4}-\d{2}$"

# Columns that cannot be cleared once set
NON_NULLABLE_UPDATE_FIELDS = frozenset(
    {
        "invoice_number",
        "insurer_invoice_number",
        "client_id",
        "insurer_id",
        "total_amount",
        "issue_date",
        "payment_status",
        "status",
    }
)


class InvoiceCreate(BaseModel):
    """Request schema for registering an insurer invoice."""
    invoice_number: str = Field(..., min_length=1, max_length=100)
    insurer_invoice_number: str = Field(..., min_length=1, max_length=100)
    client_id: UUID
    insurer_id: UUID
    billing_period: str | None = Field(None, pattern=BILLING_PERIOD_PATTERN)
    total_amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    tax_amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    actual_affiliate_count: int | None = Field(None, ge=0)
    issue_date: date
    due_date: date | None = None
    discrepancy_notes: str | None = Field(None, max_length=5000)
    policy_ids: list[UUID] = Field(default_factory=list)

    @field_validator("policy_ids")
    @classmethod
    def dedupe_policy_ids(cls, value: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def check_due_date(self) -> "InvoiceCreate":
        if self.due_date and self.due_date < self.issue_date:
            raise ValueError("due_date must be on or after issue_date")
        return self


class InvoiceUpdate(BaseModel):
    """
    Partial update for an invoice.

    Only the fields present in the request body are applied
    (``model_dump(exclude_unset=True)``). Which of them may change depends
    on the invoice's current status; see ``services.invoice_lifecycle``.
    """
    model_config = {"extra": "forbid"}

    invoice_number: str | None = Field(None, min_length=1, max_length=100)
    insurer_invoice_number: str | None = Field(None, min_length=1, max_length=100)
    client_id: UUID | None = None
    insurer_id: UUID | None = None
    billing_period: str | None = Field(None, pattern=BILLING_PERIOD_PATTERN)
    total_amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    tax_amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    actual_affiliate_count: int | None = Field(None, ge=0)
    expected_amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    expected_affiliate_count: int | None = Field(None, ge=0)
    issue_date: date | None = None
    due_date: date | None = None
    payment_date: date | None = None
    payment_status: PaymentStatus | None = None
    discrepancy_notes: str | None = Field(None, max_length=5000)
    status: InvoiceStatus | None = None

    @model_validator(mode="after")
    def check_fields(self) -> "InvoiceUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        cleared = sorted(
            name
            for name in self.model_fields_set & NON_NULLABLE_UPDATE_FIELDS
            if getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")
        return self


class InvoicePolicyRead(BaseModel):
    policy_id: UUID
    policy_number: str
    expected_amount: Decimal
    expected_breakdown: dict[str, Any]
    expected_affiliate_count: int
    added_at: datetime


class InvoiceRead(BaseModel):
    """Full invoice shape returned by every invoice endpoint."""
    id: UUID
    invoice_number: str
    insurer_invoice_number: str
    client_id: UUID
    client_name: str
    insurer_id: UUID
    insurer_name: str
    status: InvoiceStatus
    payment_status: PaymentStatus
    billing_period: str | None
    total_amount: Decimal
    tax_amount: Decimal | None
    actual_affiliate_count: int | None
    expected_amount: Decimal | None
    expected_affiliate_count: int | None
    count_matches: bool | None
    amount_matches: bool | None
    discrepancy_notes: str | None
    issue_date: date
    due_date: date | None
    payment_date: date | None
    created_at: datetime
    updated_at: datetime
    policies: list[InvoicePolicyRead] = []


class AuditLogRead(BaseModel):
    id: UUID
    action: str
    resource_type: str
    resource_id: UUID
    user_id: UUID | None
    changes: dict[str, Any] | None
    metadata: dict[str, Any] | None
    created_at: datetime
