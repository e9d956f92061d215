"""Invoice lifecycle rules: who may edit what, in which status, and where it may go.

The rules are data (``INVOICE_LIFECYCLE_BLUEPRINT``); ``InvoiceLifecycleValidator``
only reads them, so alternative blueprints can be injected.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping

from billing_api.db.enums import BROKER_EMPLOYEES, SUPER_ADMIN_ONLY, InvoiceStatus, Role


# Fixed rounding tolerance between expected and reported amounts
AMOUNT_MATCH_TOLERANCE = Decimal("1.00")

VALIDATION_STATUSES = frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.DISCREPANCY})

PENDING_VALIDATION_REQUIREMENTS = (
    "billing_period",
    "tax_amount",
    "actual_affiliate_count",
    "due_date",
)


@dataclass(frozen=True)
class InvoiceLifecycleRules:
    label: str
    allowed_editors: frozenset[Role]
    editable_fields: frozenset[str]
    allowed_transitions: frozenset[InvoiceStatus]
    transition_requirements: Mapping[InvoiceStatus, tuple[str, ...]] = field(default_factory=dict)


INVOICE_LIFECYCLE_BLUEPRINT: dict[InvoiceStatus, InvoiceLifecycleRules] = {
    InvoiceStatus.PENDING: InvoiceLifecycleRules(
        label="Pendiente",
        allowed_editors=BROKER_EMPLOYEES,
        editable_fields=frozenset(
            {
                "invoice_number",
                "insurer_invoice_number",
                "client_id",
                "insurer_id",
                "billing_period",
                "total_amount",
                "tax_amount",
                "actual_affiliate_count",
                "expected_amount",
                "expected_affiliate_count",
                "issue_date",
                "due_date",
                "discrepancy_notes",
            }
        ),
        allowed_transitions=frozenset(
            {InvoiceStatus.VALIDATED, InvoiceStatus.DISCREPANCY, InvoiceStatus.CANCELLED}
        ),
        transition_requirements={
            InvoiceStatus.VALIDATED: PENDING_VALIDATION_REQUIREMENTS,
            InvoiceStatus.DISCREPANCY: PENDING_VALIDATION_REQUIREMENTS,
        },
    ),
    InvoiceStatus.VALIDATED: InvoiceLifecycleRules(
        label="Validada",
        allowed_editors=BROKER_EMPLOYEES,
        editable_fields=frozenset({"payment_status", "payment_date", "discrepancy_notes"}),
        allowed_transitions=frozenset({InvoiceStatus.DISCREPANCY, InvoiceStatus.CANCELLED}),
    ),
    InvoiceStatus.DISCREPANCY: InvoiceLifecycleRules(
        label="Discrepancia",
        allowed_editors=BROKER_EMPLOYEES,
        editable_fields=frozenset(
            {
                "discrepancy_notes",
                "expected_amount",
                "actual_affiliate_count",
                "total_amount",
                "tax_amount",
                "billing_period",
                "payment_status",
                "payment_date",
            }
        ),
        allowed_transitions=frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.CANCELLED}),
        transition_requirements={InvoiceStatus.VALIDATED: ("discrepancy_notes",)},
    ),
    InvoiceStatus.CANCELLED: InvoiceLifecycleRules(
        label="Cancelada",
        allowed_editors=SUPER_ADMIN_ONLY,
        editable_fields=frozenset({"discrepancy_notes"}),
        allowed_transitions=frozenset(),
    ),
}


def _as_status(value: Any) -> InvoiceStatus | None:
    try:
        return InvoiceStatus(value)
    except ValueError:
        return None


def _as_role(value: Any) -> Role | None:
    try:
        return Role(value)
    except ValueError:
        return None


class InvoiceLifecycleValidator:
    """Pure checks over a lifecycle blueprint. Unknown statuses allow nothing."""

    def __init__(
        self,
        blueprint: Mapping[InvoiceStatus, InvoiceLifecycleRules] = INVOICE_LIFECYCLE_BLUEPRINT,
    ):
        self.blueprint = blueprint

    def rules_for(self, status: Any) -> InvoiceLifecycleRules | None:
        status = _as_status(status)
        if status is None:
            return None
        return self.blueprint.get(status)

    def can_user_edit(self, role: Any, status: Any) -> bool:
        rules = self.rules_for(status)
        role = _as_role(role)
        if rules is None or role is None:
            return False
        return role in rules.allowed_editors

    def forbidden_fields(self, fields: Iterable[str], status: Any) -> list[str]:
        """Fields from ``fields`` not editable in ``status``, in input order."""
        fields = list(fields)
        rules = self.rules_for(status)
        if rules is None:
            return fields
        return [name for name in fields if name not in rules.editable_fields]

    def can_transition(self, from_status: Any, to_status: Any) -> bool:
        rules = self.rules_for(from_status)
        target = _as_status(to_status)
        if rules is None or target is None:
            return False
        return target in rules.allowed_transitions

    def missing_requirements(
        self,
        current: Mapping[str, Any],
        updates: Mapping[str, Any],
        to_status: Any,
    ) -> list[str]:
        """
        Required fields for ``current.status -> to_status`` that are empty on
        the merged state (``None`` and ``""`` both count as empty).
        """
        rules = self.rules_for(current.get("status") or InvoiceStatus.PENDING)
        target = _as_status(to_status)
        if rules is None or target is None:
            return []
        requirements = rules.transition_requirements.get(target, ())
        merged = {**current, **updates}
        return [name for name in requirements if merged.get(name) in (None, "")]


invoice_lifecycle_validator = InvoiceLifecycleValidator()


@dataclass(frozen=True)
class ValidationOutcome:
    status: InvoiceStatus
    count_matches: bool
    amount_matches: bool
    amount_difference: Decimal


def determine_validation_status(
    expected_amount: Decimal,
    total_amount: Decimal,
    expected_count: int,
    actual_count: int,
    tolerance: Decimal = AMOUNT_MATCH_TOLERANCE,
) -> ValidationOutcome:
    """VALIDATED when counts are equal and amounts are within ``tolerance``, else DISCREPANCY."""
    difference = Decimal(total_amount) - Decimal(expected_amount)
    count_matches = int(expected_count) == int(actual_count)
    amount_matches = abs(difference) <= tolerance
    status = (
        InvoiceStatus.VALIDATED
        if count_matches and amount_matches
        else InvoiceStatus.DISCREPANCY
    )
    return ValidationOutcome(
        status=status,
        count_matches=count_matches,
        amount_matches=amount_matches,
        amount_difference=difference,
    )
