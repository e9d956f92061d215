"""Invoice edit orchestration.

Runs the lifecycle checks in a fixed order, each one aborting before any
write:

1. requesting user resolves (UnauthorizedError)
2. invoice exists (NotFoundError)
3. role may edit in the current status (ForbiddenError)
4. non-status fields are editable in the current status (BadRequestError)
5. the status change is an allowed transition (BadRequestError)
6. the transition's required fields are present (BadRequestError)
   changed client/insurer still exist, are active and own the linked
   policies; a changed invoice number is not taken (NotFoundError,
   BadRequestError)
7. moving into VALIDATED/DISCREPANCY: the status is re-derived from the
   expected vs. reported figures; the derived status replaces the
   requested one
8. invoice update and audit row are committed together
9. the reloaded invoice is returned
"""

import logging
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_api.core.structured_logging import build_log_context
from billing_api.db.enums import AuditAction, InvoiceStatus
from billing_api.schemas.invoice import InvoiceRead, InvoiceUpdate
from billing_api.services import audit_service, invoice_service, user_service
from billing_api.services.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from billing_api.services.invoice_lifecycle import (
    VALIDATION_STATUSES,
    InvoiceLifecycleValidator,
    determine_validation_status,
    invoice_lifecycle_validator,
)

logger = logging.getLogger(__name__)


def _number(value: Any, as_int: bool = False) -> Decimal | int:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise BadRequestError("Invalid validation values")
    if not number.is_finite():
        raise BadRequestError("Invalid validation values")
    return int(number) if as_int else number


def update_invoice(
    db: Session,
    user_id: UUID | None,
    invoice_id: UUID,
    data: InvoiceUpdate,
    validator: InvoiceLifecycleValidator = invoice_lifecycle_validator,
) -> InvoiceRead:
    """Apply a partial update to an invoice. See the module docstring for the order of checks."""
    user = user_service.get_user(db, user_id)
    if not user:
        raise UnauthorizedError("User not found")
    role = user_service.get_user_role(user)
    role_name = role.value if role else user.role

    invoice = invoice_service.load_invoice(db, invoice_id, for_update=True)
    if not invoice:
        logger.warning(
            "Invoice not found for update",
            extra=build_log_context(user_id=user.id, invoice_id=invoice_id),
        )
        raise NotFoundError("Invoice not found")

    current_status = invoice.status

    if not validator.can_user_edit(role_name, current_status):
        logger.warning(
            "User role cannot edit invoice in current status",
            extra=build_log_context(
                user_id=user.id, invoice_id=invoice.id, role=role_name, status=current_status
            ),
        )
        raise ForbiddenError(f"Role '{role_name}' cannot edit invoices in status {current_status}")

    updates = data.model_dump(exclude_unset=True)
    requested_status = updates.pop("status", None)

    forbidden = validator.forbidden_fields(updates.keys(), current_status)
    if forbidden:
        logger.warning(
            "Attempted to edit forbidden invoice fields",
            extra=build_log_context(
                user_id=user.id,
                invoice_id=invoice.id,
                status=current_status,
                forbidden_fields=forbidden,
            ),
        )
        raise BadRequestError(
            f"Fields cannot be edited in status {current_status}: {', '.join(forbidden)}"
        )

    target_status = InvoiceStatus(requested_status) if requested_status else None
    is_transitioning = target_status is not None and target_status.value != current_status

    if is_transitioning:
        if not validator.can_transition(current_status, target_status):
            logger.warning(
                "Invalid invoice status transition",
                extra=build_log_context(
                    user_id=user.id,
                    invoice_id=invoice.id,
                    from_status=current_status,
                    to_status=target_status.value,
                ),
            )
            raise BadRequestError(
                f"Cannot change status from {current_status} to {target_status.value}"
            )

        current_state = audit_service.snapshot(invoice)
        missing = validator.missing_requirements(current_state, updates, target_status)
        if missing:
            logger.warning(
                "Invoice transition requirements not met",
                extra=build_log_context(
                    user_id=user.id,
                    invoice_id=invoice.id,
                    from_status=current_status,
                    to_status=target_status.value,
                    missing_fields=missing,
                ),
            )
            raise BadRequestError(
                f"Missing required fields for this transition: {', '.join(missing)}"
            )

    if "client_id" in updates or "insurer_id" in updates:
        insurer_id = updates.get("insurer_id", invoice.insurer_id)
        invoice_service.check_client_and_insurer(
            db, updates.get("client_id", invoice.client_id), insurer_id
        )
        if insurer_id != invoice.insurer_id:
            # Linked policies are priced with their insurer's cutoff day
            invoice_service.check_policies(
                db, [link.policy_id for link in invoice.policies], insurer_id
            )
    if "invoice_number" in updates:
        invoice_service.check_invoice_number_available(
            db, updates["invoice_number"], exclude_id=invoice.id
        )

    final_status = target_status
    outcome = None
    if is_transitioning and target_status in VALIDATION_STATUSES:
        merged = {
            name: updates.get(name, getattr(invoice, name))
            for name in (
                "expected_amount",
                "expected_affiliate_count",
                "total_amount",
                "actual_affiliate_count",
            )
        }
        if merged["expected_amount"] is None or merged["expected_affiliate_count"] is None:
            raise BadRequestError("Expected amounts must be calculated first")
        if merged["total_amount"] is None or merged["actual_affiliate_count"] is None:
            raise BadRequestError("Incomplete data to validate the invoice")

        outcome = determine_validation_status(
            expected_amount=_number(merged["expected_amount"]),
            total_amount=_number(merged["total_amount"]),
            expected_count=_number(merged["expected_affiliate_count"], as_int=True),
            actual_count=_number(merged["actual_affiliate_count"], as_int=True),
        )
        final_status = outcome.status
        logger.info(
            "Invoice status determined from validation comparison",
            extra=build_log_context(
                user_id=user.id,
                invoice_id=invoice.id,
                requested_status=target_status.value,
                system_status=outcome.status.value,
                count_matches=outcome.count_matches,
                amount_matches=outcome.amount_matches,
                expected_amount=str(merged["expected_amount"]),
                total_amount=str(merged["total_amount"]),
                variance=str(outcome.amount_difference),
            ),
        )

    before = audit_service.snapshot(invoice)
    status_transition = (
        f"{current_status} -> {final_status.value}" if is_transitioning else None
    )
    try:
        for name, value in updates.items():
            setattr(invoice, name, value.value if isinstance(value, Enum) else value)
        if is_transitioning:
            invoice.status = final_status.value
        if outcome is not None:
            invoice.count_matches = outcome.count_matches
            invoice.amount_matches = outcome.amount_matches

        audit_service.log_invoice_event(
            db,
            action=AuditAction.UPDATE,
            invoice_id=invoice.id,
            user_id=user.id,
            before=before,
            after=audit_service.snapshot(invoice),
            details={
                "role": role_name,
                "status_transition": status_transition,
                "requested_status": target_status.value if target_status else None,
            },
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "Invoice updated",
        extra=build_log_context(
            user_id=user.id,
            invoice_id=invoice.id,
            role=role_name,
            updated_fields=sorted(updates),
            status_transition=status_transition,
        ),
    )
    return invoice_service.get_invoice_read(db, invoice.id)
