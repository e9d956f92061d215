"""Invoice API endpoints: create, detail, audit trail, validation and edit."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from billing_api.core.deps import get_current_user_id, get_db, require_csrf_header
from billing_api.schemas.invoice import AuditLogRead, InvoiceCreate, InvoiceRead, InvoiceUpdate
from billing_api.services import billing_calculator, invoice_edit_service, invoice_service
from billing_api.services.errors import (
    BadRequestError,
    ForbiddenError,
    InvoiceServiceError,
    NotFoundError,
    UnauthorizedError,
)

router = APIRouter()

_ERROR_STATUS = {
    UnauthorizedError: status.HTTP_401_UNAUTHORIZED,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    BadRequestError: status.HTTP_400_BAD_REQUEST,
}


def _http_error(exc: InvoiceServiceError) -> HTTPException:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=str(exc))


@router.post(
    "",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_csrf_header)],
)
def create_invoice(
    data: InvoiceCreate,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Register an insurer invoice (broker employees)."""
    try:
        return invoice_service.create_invoice(db, user_id, data)
    except InvoiceServiceError as e:
        raise _http_error(e)


@router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Get invoice detail. Client admins only see their own client's invoices."""
    try:
        return invoice_service.get_invoice_for_user(db, user_id, invoice_id)
    except InvoiceServiceError as e:
        raise _http_error(e)


@router.get("/{invoice_id}/audit-logs", response_model=list[AuditLogRead])
def list_invoice_audit_logs(
    invoice_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Audit trail of an invoice, newest first."""
    try:
        return invoice_service.list_invoice_audit_logs(db, user_id, invoice_id)
    except InvoiceServiceError as e:
        raise _http_error(e)


@router.post(
    "/{invoice_id}/validate",
    response_model=InvoiceRead,
    dependencies=[Depends(require_csrf_header)],
)
def validate_invoice(
    invoice_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Calculate the expected amount and owner count of an invoice.

    Overwrites previous results; the invoice status is left unchanged.
    """
    try:
        return billing_calculator.calculate_invoice_validation(db, user_id, invoice_id)
    except InvoiceServiceError as e:
        raise _http_error(e)


@router.put(
    "/{invoice_id}",
    response_model=InvoiceRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_invoice(
    invoice_id: UUID,
    data: InvoiceUpdate,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Partially update an invoice.

    A move into VALIDATED or DISCREPANCY stores the status derived from the
    expected vs. reported figures, whichever of the two was requested.
    """
    try:
        return invoice_edit_service.update_invoice(db, user_id, invoice_id, data)
    except InvoiceServiceError as e:
        raise _http_error(e)
