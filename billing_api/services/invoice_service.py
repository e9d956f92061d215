"""Invoice creation, detail lookup and the shared invoice response shape."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from billing_api.core.structured_logging import build_log_context
from billing_api.db.enums import (
    BROKER_EMPLOYEES,
    ROLES_CAN_VIEW_INVOICES,
    AuditAction,
    InvoiceStatus,
    PaymentStatus,
    Role,
)
from billing_api.db.models import AuditLog, Client, Insurer, Invoice, InvoicePolicy, Policy
from billing_api.schemas.invoice import (
    AuditLogRead,
    InvoiceCreate,
    InvoicePolicyRead,
    InvoiceRead,
)
from billing_api.services import audit_service, user_service
from billing_api.services.errors import BadRequestError, NotFoundError

logger = logging.getLogger(__name__)


# =============================================================================
# Loading / response shape
# =============================================================================

def load_invoice(db: Session, invoice_id: UUID, for_update: bool = False) -> Invoice | None:
    """Invoice with client, insurer and policies (ordered by ``added_at``)."""
    stmt = (
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .options(
            selectinload(Invoice.client),
            selectinload(Invoice.insurer),
            selectinload(Invoice.policies).selectinload(InvoicePolicy.policy),
        )
    )
    if for_update:
        stmt = stmt.with_for_update(of=Invoice)
    return db.scalar(stmt)


def to_invoice_read(invoice: Invoice) -> InvoiceRead:
    return InvoiceRead(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        insurer_invoice_number=invoice.insurer_invoice_number,
        client_id=invoice.client_id,
        client_name=invoice.client.name,
        insurer_id=invoice.insurer_id,
        insurer_name=invoice.insurer.name,
        status=invoice.status,
        payment_status=invoice.payment_status,
        billing_period=invoice.billing_period,
        total_amount=invoice.total_amount,
        tax_amount=invoice.tax_amount,
        actual_affiliate_count=invoice.actual_affiliate_count,
        expected_amount=invoice.expected_amount,
        expected_affiliate_count=invoice.expected_affiliate_count,
        count_matches=invoice.count_matches,
        amount_matches=invoice.amount_matches,
        discrepancy_notes=invoice.discrepancy_notes,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        payment_date=invoice.payment_date,
        created_at=invoice.created_at,
        updated_at=invoice.updated_at,
        policies=[
            InvoicePolicyRead(
                policy_id=link.policy_id,
                policy_number=link.policy.policy_number,
                expected_amount=link.expected_amount,
                expected_breakdown=link.expected_breakdown or {},
                expected_affiliate_count=link.expected_affiliate_count,
                added_at=link.added_at,
            )
            for link in invoice.policies
        ],
    )


def get_invoice_read(db: Session, invoice_id: UUID) -> InvoiceRead:
    """Reload an invoice from the database and build its response."""
    db.expire_all()
    invoice = load_invoice(db, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    return to_invoice_read(invoice)


# =============================================================================
# Detail / audit trail
# =============================================================================

def get_invoice_for_user(db: Session, user_id: UUID | None, invoice_id: UUID) -> InvoiceRead:
    """
    Invoice detail.

    Broker employees see every invoice; a CLIENT_ADMIN only invoices of
    their own client (anything else reads as not found).
    """
    user, role = user_service.require_role(db, user_id, ROLES_CAN_VIEW_INVOICES, "view invoices")
    invoice = load_invoice(db, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    if role == Role.CLIENT_ADMIN and invoice.client_id != user.client_id:
        raise NotFoundError("Invoice not found")
    return to_invoice_read(invoice)


def list_invoice_audit_logs(
    db: Session, user_id: UUID | None, invoice_id: UUID
) -> list[AuditLogRead]:
    user_service.require_role(db, user_id, BROKER_EMPLOYEES, "view invoice history")
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    return [_audit_to_read(entry) for entry in audit_service.list_invoice_events(db, invoice)]


def _audit_to_read(entry: AuditLog) -> AuditLogRead:
    return AuditLogRead(
        id=entry.id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        user_id=entry.user_id,
        changes=entry.changes,
        metadata=entry.details,
        created_at=entry.created_at,
    )


# =============================================================================
# Create
# =============================================================================

def check_client_and_insurer(db: Session, client_id: UUID, insurer_id: UUID) -> None:
    """
    Raises:
        NotFoundError: client or insurer missing
        BadRequestError: client or insurer inactive
    """
    client = db.get(Client, client_id)
    if not client:
        raise NotFoundError("Client not found")
    if not client.is_active:
        raise BadRequestError("Client is inactive")

    insurer = db.get(Insurer, insurer_id)
    if not insurer:
        raise NotFoundError("Insurer not found")
    if not insurer.is_active:
        raise BadRequestError("Insurer is inactive")


def check_policies(db: Session, policy_ids: list[UUID], insurer_id: UUID) -> None:
    if not policy_ids:
        return
    policies = db.scalars(select(Policy).where(Policy.id.in_(policy_ids))).all()
    found = {policy.id for policy in policies}
    missing = [str(pid) for pid in policy_ids if pid not in found]
    if missing:
        raise NotFoundError(f"Policies not found: {', '.join(missing)}")

    foreign = [p.policy_number for p in policies if p.insurer_id != insurer_id]
    if foreign:
        raise BadRequestError(
            f"Policies do not belong to the invoice insurer: {', '.join(sorted(foreign))}"
        )


def check_invoice_number_available(
    db: Session, invoice_number: str, exclude_id: UUID | None = None
) -> None:
    stmt = select(Invoice.id).where(Invoice.invoice_number == invoice_number)
    if exclude_id is not None:
        stmt = stmt.where(Invoice.id != exclude_id)
    if db.scalar(stmt):
        raise BadRequestError(f"Invoice number '{invoice_number}' already exists")


def create_invoice(db: Session, user_id: UUID | None, data: InvoiceCreate) -> InvoiceRead:
    """
    Register an insurer invoice in PENDING / PENDING_PAYMENT with its policies.

    Expected figures start empty; run the validation calculator to fill them.
    """
    user, role = user_service.require_role(db, user_id, BROKER_EMPLOYEES, "create invoices")

    check_client_and_insurer(db, data.client_id, data.insurer_id)
    check_policies(db, data.policy_ids, data.insurer_id)
    check_invoice_number_available(db, data.invoice_number)

    invoice = Invoice(
        invoice_number=data.invoice_number,
        insurer_invoice_number=data.insurer_invoice_number,
        client_id=data.client_id,
        insurer_id=data.insurer_id,
        status=InvoiceStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING_PAYMENT.value,
        billing_period=data.billing_period,
        total_amount=data.total_amount,
        tax_amount=data.tax_amount,
        actual_affiliate_count=data.actual_affiliate_count,
        issue_date=data.issue_date,
        due_date=data.due_date,
        discrepancy_notes=data.discrepancy_notes,
    )
    invoice.policies = [InvoicePolicy(policy_id=pid) for pid in data.policy_ids]

    try:
        db.add(invoice)
        db.flush()
        audit_service.log_invoice_event(
            db,
            action=AuditAction.CREATE,
            invoice_id=invoice.id,
            user_id=user.id,
            after=audit_service.snapshot(invoice),
            details={"role": role.value, "policy_ids": data.policy_ids},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "Invoice created",
        extra=build_log_context(
            user_id=user.id,
            invoice_id=invoice.id,
            role=role.value,
            billing_period=invoice.billing_period,
            policy_count=len(data.policy_ids),
        ),
    )
    return get_invoice_read(db, invoice.id)
