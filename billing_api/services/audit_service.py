"""Audit trail for invoice mutations.

Rows are added to the caller's session and committed together with the
mutation they describe; this module never commits.
"""

from typing import Any, Iterable
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_api.db.enums import AuditAction
from billing_api.db.models import AuditLog, Invoice


INVOICE_RESOURCE = "Invoice"

INVOICE_AUDIT_FIELDS = (
    "invoice_number",
    "insurer_invoice_number",
    "client_id",
    "insurer_id",
    "status",
    "payment_status",
    "billing_period",
    "total_amount",
    "tax_amount",
    "actual_affiliate_count",
    "expected_amount",
    "expected_affiliate_count",
    "count_matches",
    "amount_matches",
    "discrepancy_notes",
    "issue_date",
    "due_date",
    "payment_date",
)


def snapshot(obj: Any, fields: Iterable[str] = INVOICE_AUDIT_FIELDS) -> dict[str, Any]:
    """JSON-safe copy of ``fields`` on ``obj`` (Decimal, UUID and dates encoded)."""
    return jsonable_encoder({field: getattr(obj, field) for field in fields})


def log_invoice_event(
    db: Session,
    *,
    action: AuditAction,
    invoice_id: UUID,
    user_id: UUID | None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    changes = None
    if before is not None or after is not None:
        changes = {"before": before, "after": after}
    entry = AuditLog(
        action=action.value,
        resource_type=INVOICE_RESOURCE,
        resource_id=invoice_id,
        user_id=user_id,
        changes=changes,
        details=jsonable_encoder(details) if details is not None else None,
    )
    db.add(entry)
    return entry


def list_invoice_events(db: Session, invoice: Invoice) -> list[AuditLog]:
    """Audit rows for an invoice, newest first."""
    return list(
        db.scalars(
            select(AuditLog)
            .where(
                AuditLog.resource_type == INVOICE_RESOURCE,
                AuditLog.resource_id == invoice.id,
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        )
    )
