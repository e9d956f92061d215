import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from billing_api.db.enums import Role
from billing_api.db.models import AuditLog, Insurer, Invoice
from billing_api.schemas.invoice import InvoiceUpdate
from billing_api.services.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from billing_api.services.invoice_edit_service import update_invoice


@pytest.fixture
def calculated_invoice(make_invoice, test_policy):
    """PENDING invoice after calculation: expected 45 250 / 90, insurer says 47 000 / 95."""
    return make_invoice(
        [test_policy],
        billing_period="2025-05",
        total_amount=Decimal("47000.00"),
        tax_amount=Decimal("0.00"),
        actual_affiliate_count=95,
        expected_amount=Decimal("45250.00"),
        expected_affiliate_count=90,
        due_date=date(2025, 5, 31),
    )


def _audit_rows(db):
    return db.scalars(select(AuditLog).where(AuditLog.action == "UPDATE")).all()


def _reload(db, invoice_id):
    db.expire_all()
    return db.get(Invoice, invoice_id)


# =============================================================================
# Status auto-determination
# =============================================================================

def test_requested_validated_becomes_discrepancy_on_mismatch(db, broker_user, calculated_invoice):
    result = update_invoice(db, broker_user.id, calculated_invoice.id, InvoiceUpdate(status="VALIDATED"))

    assert result.status == "DISCREPANCY"
    assert result.count_matches is False
    assert result.amount_matches is False


@pytest.mark.parametrize("requested", ["VALIDATED", "DISCREPANCY"])
def test_matching_figures_always_validate(db, broker_user, calculated_invoice, requested):
    data = InvoiceUpdate(
        status=requested,
        total_amount=Decimal("45251.00"),
        actual_affiliate_count=90,
    )

    result = update_invoice(db, broker_user.id, calculated_invoice.id, data)

    assert result.status == "VALIDATED"
    assert result.count_matches is True
    assert result.amount_matches is True
    assert result.total_amount == Decimal("45251.00")


def test_amount_just_over_tolerance_is_discrepancy(db, broker_user, calculated_invoice):
    data = InvoiceUpdate(status="VALIDATED", total_amount=Decimal("45251.01"), actual_affiliate_count=90)

    result = update_invoice(db, broker_user.id, calculated_invoice.id, data)

    assert result.status == "DISCREPANCY"
    assert result.count_matches is True
    assert result.amount_matches is False


def test_transition_without_calculation_is_rejected(db, broker_user, make_invoice, test_policy):
    invoice = make_invoice(
        [test_policy],
        total_amount=Decimal("1000.00"),
        tax_amount=Decimal("0.00"),
        actual_affiliate_count=2,
        due_date=date(2025, 2, 28),
    )

    with pytest.raises(BadRequestError, match="calculated first"):
        update_invoice(db, broker_user.id, invoice.id, InvoiceUpdate(status="VALIDATED"))

    assert _reload(db, invoice.id).status == "PENDING"


def test_update_audit_row_records_transition(db, broker_user, calculated_invoice):
    update_invoice(db, broker_user.id, calculated_invoice.id, InvoiceUpdate(status="VALIDATED"))

    [entry] = _audit_rows(db)
    assert entry.resource_type == "Invoice"
    assert entry.resource_id == calculated_invoice.id
    assert entry.user_id == broker_user.id
    assert entry.changes["before"]["status"] == "PENDING"
    assert entry.changes["after"]["status"] == "DISCREPANCY"
    assert entry.changes["after"]["count_matches"] is False
    assert entry.details == {
        "role": "OPERATIONS_EMPLOYEE",
        "status_transition": "PENDING -> DISCREPANCY",
        "requested_status": "VALIDATED",
    }


# =============================================================================
# Validation layers (each aborts before writing)
# =============================================================================

def test_forbidden_field_on_pending_lists_that_field(db, broker_user, calculated_invoice):
    data = InvoiceUpdate(payment_status="PAID", discrepancy_notes="paid early")

    with pytest.raises(BadRequestError) as exc_info:
        update_invoice(db, broker_user.id, calculated_invoice.id, data)

    assert str(exc_info.value).endswith(": payment_status")
    invoice = _reload(db, calculated_invoice.id)
    assert invoice.payment_status == "PENDING_PAYMENT"
    assert invoice.discrepancy_notes is None
    assert _audit_rows(db) == []


def test_missing_requirements_block_before_auto_determination(db, broker_user, make_invoice, test_policy):
    invoice = make_invoice(
        [test_policy],
        total_amount=Decimal("1000.00"),
        tax_amount=Decimal("0.00"),
        actual_affiliate_count=2,
        expected_amount=Decimal("1000.00"),
        expected_affiliate_count=2,
    )

    with pytest.raises(BadRequestError, match="due_date"):
        update_invoice(db, broker_user.id, invoice.id, InvoiceUpdate(status="VALIDATED"))

    reloaded = _reload(db, invoice.id)
    assert reloaded.status == "PENDING"
    assert reloaded.count_matches is None
    assert _audit_rows(db) == []


def test_requirement_can_be_satisfied_in_same_request(db, broker_user, make_invoice, test_policy):
    invoice = make_invoice(
        [test_policy],
        total_amount=Decimal("1000.00"),
        tax_amount=Decimal("0.00"),
        actual_affiliate_count=2,
        expected_amount=Decimal("1000.00"),
        expected_affiliate_count=2,
    )

    data = InvoiceUpdate(status="VALIDATED", due_date=date(2025, 2, 28))
    result = update_invoice(db, broker_user.id, invoice.id, data)

    assert result.status == "VALIDATED"
    assert result.due_date == date(2025, 2, 28)


def test_illegal_transition_is_rejected(db, broker_user, make_invoice, test_policy):
    invoice = make_invoice([test_policy], status="VALIDATED")

    with pytest.raises(BadRequestError, match="VALIDATED to PENDING"):
        update_invoice(db, broker_user.id, invoice.id, InvoiceUpdate(status="PENDING"))


def test_discrepancy_needs_notes_to_validate(db, broker_user, calculated_invoice):
    calculated_invoice.status = "DISCREPANCY"
    db.commit()

    with pytest.raises(BadRequestError, match="discrepancy_notes"):
        update_invoice(db, broker_user.id, calculated_invoice.id, InvoiceUpdate(status="VALIDATED"))


def test_same_status_is_not_a_transition(db, broker_user, calculated_invoice):
    data = InvoiceUpdate(status="PENDING", discrepancy_notes="waiting for insurer")

    result = update_invoice(db, broker_user.id, calculated_invoice.id, data)

    assert result.status == "PENDING"
    assert result.count_matches is None
    assert _audit_rows(db)[0].details["status_transition"] is None


def test_cancel_from_pending(db, broker_user, make_invoice, test_policy):
    invoice = make_invoice([test_policy])

    result = update_invoice(db, broker_user.id, invoice.id, InvoiceUpdate(status="CANCELLED"))

    assert result.status == "CANCELLED"


def test_cancelled_invoice_notes_are_super_admin_only(
    db, broker_user, super_admin, make_invoice, test_policy
):
    invoice = make_invoice([test_policy], status="CANCELLED")
    data = InvoiceUpdate(discrepancy_notes="duplicate of INV-001")

    with pytest.raises(ForbiddenError):
        update_invoice(db, broker_user.id, invoice.id, data)

    result = update_invoice(db, super_admin.id, invoice.id, data)
    assert result.discrepancy_notes == "duplicate of INV-001"


@pytest.mark.parametrize("role", [Role.CLIENT_ADMIN, Role.AFFILIATE, Role.AGENT])
def test_non_broker_roles_are_forbidden(db, make_user, calculated_invoice, role):
    user = make_user(role)

    with pytest.raises(ForbiddenError):
        update_invoice(db, user.id, calculated_invoice.id, InvoiceUpdate(status="VALIDATED"))

    assert _reload(db, calculated_invoice.id).status == "PENDING"
    assert _audit_rows(db) == []


def test_unknown_user_is_unauthorized(db, calculated_invoice):
    with pytest.raises(UnauthorizedError):
        update_invoice(db, uuid.uuid4(), calculated_invoice.id, InvoiceUpdate(status="VALIDATED"))


def test_unknown_invoice_is_not_found(db, broker_user):
    with pytest.raises(NotFoundError):
        update_invoice(db, broker_user.id, uuid.uuid4(), InvoiceUpdate(status="VALIDATED"))


def test_changing_client_to_unknown_one_is_not_found(db, broker_user, calculated_invoice):
    with pytest.raises(NotFoundError, match="Client"):
        update_invoice(db, broker_user.id, calculated_invoice.id, InvoiceUpdate(client_id=uuid.uuid4()))


def test_taken_invoice_number_is_bad_request(db, broker_user, make_invoice, calculated_invoice):
    other = make_invoice()

    with pytest.raises(BadRequestError, match="already exists"):
        update_invoice(
            db, broker_user.id, calculated_invoice.id,
            InvoiceUpdate(invoice_number=other.invoice_number),
        )

    assert _reload(db, calculated_invoice.id).invoice_number != other.invoice_number
    assert _audit_rows(db) == []


def test_resubmitting_own_invoice_number_is_allowed(db, broker_user, calculated_invoice):
    data = InvoiceUpdate(invoice_number=calculated_invoice.invoice_number)

    result = update_invoice(db, broker_user.id, calculated_invoice.id, data)

    assert result.invoice_number == calculated_invoice.invoice_number


def test_insurer_change_must_own_linked_policies(db, broker_user, calculated_invoice, test_policy):
    other = Insurer(name="Other Insurer", billing_cutoff_day=1)
    db.add(other)
    db.commit()

    with pytest.raises(BadRequestError, match=test_policy.policy_number):
        update_invoice(db, broker_user.id, calculated_invoice.id, InvoiceUpdate(insurer_id=other.id))

    assert _reload(db, calculated_invoice.id).insurer_id != other.id
    assert _audit_rows(db) == []


def test_insurer_change_without_policies_is_allowed(db, broker_user, make_invoice):
    invoice = make_invoice()
    other = Insurer(name="Other Insurer", billing_cutoff_day=1)
    db.add(other)
    db.commit()

    result = update_invoice(db, broker_user.id, invoice.id, InvoiceUpdate(insurer_id=other.id))

    assert result.insurer_id == other.id
    assert result.insurer_name == "Other Insurer"
