"""Invoice validation calculator.

Computes the expected owner count and premium amount of an invoice, per
policy and in aggregate, from the enrollment ledger. Two billing models
are available and a deployment uses exactly one (``BILLING_MODEL``):

* ``lagged`` (T+1 lagged billing): invoice M = BASE + ADJUSTMENTS.
  BASE bills every owner enrolled at the M-1 cutoff one full premium at
  their current tier. ADJUSTMENTS pro-rate the enrollment activity of the
  window ``(cutoff M-2, cutoff M-1]`` against the calendar month in which
  it happened.
* ``prorata``: every owner enrolled during month M is billed
  ``premium * days_active / days_in_period``.

Only OWNER affiliates are billed; dependents are priced into the owner's
tier. Owners without a tier, or whose tier has no premium on the policy,
are skipped, logged and listed under ``skipped`` in the breakdown.

The per-policy functions are pure; ``calculate_invoice_validation`` loads
the ledger in three batched queries, runs them and overwrites the stored
expected figures in one transaction. Invoice status and the match flags
are never touched here.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Literal
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from billing_api.core.config import settings
from billing_api.core.structured_logging import build_log_context
from billing_api.db.enums import (
    BROKER_EMPLOYEES,
    AdjustmentType,
    AffiliateType,
    AuditAction,
    CoverageType,
    InvoiceStatus,
)
from billing_api.db.models import Affiliate, Invoice, InvoicePolicy, Policy, PolicyAffiliate
from billing_api.schemas.invoice import InvoiceRead
from billing_api.services import audit_service, invoice_service, user_service
from billing_api.services.billing_dates import (
    AdjustmentWindow,
    BillingPeriod,
    days_between_inclusive,
    days_in_month,
    end_of_day_exclusive_utc,
    get_adjustment_window,
    parse_billing_period,
    start_of_day_utc,
    to_utc_date,
)
from billing_api.services.errors import BadRequestError, NotFoundError

logger = logging.getLogger(__name__)

BillingModel = Literal["lagged", "prorata"]

CENTS = Decimal("0.01")
ZERO = Decimal("0")

TIER_PREMIUM_FIELDS = {
    CoverageType.T.value: "t_premium",
    CoverageType.TPLUS1.value: "tplus1_premium",
    CoverageType.TPLUSF.value: "tplusf_premium",
}
TIERS = tuple(TIER_PREMIUM_FIELDS)


# =============================================================================
# Types
# =============================================================================

@dataclass(frozen=True)
class EnrollmentRecord:
    """One owner's enrollment on one policy, as read from the ledger."""
    policy_id: UUID
    affiliate_id: UUID
    affiliate_name: str
    coverage_type: str | None
    added_at: datetime
    removed_at: datetime | None = None
    previous_coverage_type: str | None = None
    tier_changed_at: datetime | None = None


@dataclass
class PolicyCalculation:
    policy_id: UUID
    expected_amount: Decimal
    expected_affiliate_count: int
    breakdown: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================

def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def money_json(value: Decimal) -> float:
    return float(round_money(value))


def premium_for_tier(policy: Any, tier: str | None) -> Decimal | None:
    """Premium configured on ``policy`` for ``tier``; None if unknown or unset."""
    attr = TIER_PREMIUM_FIELDS.get(tier or "")
    if attr is None:
        return None
    premium = getattr(policy, attr)
    return Decimal(premium) if premium is not None else None


def prorate(premium: Decimal, days: int, month_days: int) -> Decimal:
    return premium * days / month_days


def _month_days_of(day: date) -> int:
    return days_in_month(day.year, day.month)


def _skip(
    skipped: list[dict[str, Any]],
    policy: Any,
    owner: EnrollmentRecord,
    reason: str,
    section: str,
    tier: str | None = None,
) -> None:
    logger.warning(
        "Owner skipped in invoice calculation",
        extra=build_log_context(
            policy_id=str(owner.policy_id),
            policy_number=getattr(policy, "policy_number", None),
            affiliate_id=str(owner.affiliate_id),
            tier=tier,
            reason=reason,
            section=section,
        ),
    )
    skipped.append(
        {
            "affiliate_id": str(owner.affiliate_id),
            "section": section,
            "reason": reason,
            "tier": tier,
        }
    )


def _priced(
    skipped: list[dict[str, Any]], policy: Any, owner: EnrollmentRecord, section: str
) -> tuple[str, Decimal] | None:
    tier = owner.coverage_type
    if not tier:
        _skip(skipped, policy, owner, "missing_tier", section)
        return None
    premium = premium_for_tier(policy, tier)
    if premium is None:
        _skip(skipped, policy, owner, "missing_premium", section, tier)
        return None
    return tier, premium


def _adjustment(
    owner: EnrollmentRecord,
    kind: AdjustmentType,
    activity_date: date,
    coverage_days: int,
    amount: Decimal,
    tier: str,
    **extra: str,
) -> dict[str, Any]:
    line = {
        "affiliate_id": str(owner.affiliate_id),
        "affiliate_name": owner.affiliate_name,
        "type": kind.value,
        "activity_date": activity_date.isoformat(),
        "coverage_days": coverage_days,
        "amount": money_json(amount),
        "tier": tier,
    }
    line.update(extra)
    return line


# =============================================================================
# Model B: T+1 lagged billing
# =============================================================================

def calculate_lagged_policy(
    policy: Any,
    window: AdjustmentWindow,
    base_owners: Iterable[EnrollmentRecord],
    window_owners: Iterable[EnrollmentRecord],
    tier_changed_owners: Iterable[EnrollmentRecord] = (),
) -> PolicyCalculation:
    """
    Expected amount of one policy under T+1 lagged billing.

    ``base_owners`` are the owners enrolled at ``window.base_cutoff``;
    ``window_owners`` those added or removed inside the window;
    ``tier_changed_owners`` those whose tier changed inside the window.
    Each adjustment is rounded to cents; the policy total is
    ``round(base + sum(adjustments))`` and the expected count is the base
    count (adjustments change the amount only).
    """
    skipped: list[dict[str, Any]] = []

    by_tier = {tier: {"count": 0, "amount": ZERO} for tier in TIERS}
    for owner in base_owners:
        priced = _priced(skipped, policy, owner, "base")
        if priced is None:
            continue
        tier, premium = priced
        by_tier[tier]["count"] += 1
        by_tier[tier]["amount"] += premium

    base_count = sum(bucket["count"] for bucket in by_tier.values())
    base_amount = sum((bucket["amount"] for bucket in by_tier.values()), ZERO)

    adjustments: list[dict[str, Any]] = []
    amounts: list[Decimal] = []

    for owner in window_owners:
        added = to_utc_date(owner.added_at)
        removed = to_utc_date(owner.removed_at) if owner.removed_at else None
        joined_in_window = window.contains(added)
        left_in_window = removed is not None and window.contains(removed)
        if not joined_in_window and not left_in_window:
            continue

        priced = _priced(skipped, policy, owner, "window")
        if priced is None:
            continue
        tier, premium = priced

        if joined_in_window and left_in_window:
            coverage_days = days_between_inclusive(added, removed)
            amount = round_money(prorate(premium, coverage_days, _month_days_of(added)))
            kind, activity = AdjustmentType.JOINED_AND_LEFT, added
        elif joined_in_window:
            month_days = _month_days_of(added)
            coverage_days = month_days - added.day + 1
            amount = round_money(prorate(premium, coverage_days, month_days))
            kind, activity = AdjustmentType.JOINED, added
        else:
            month_days = _month_days_of(removed)
            coverage_days = removed.day
            overbilled_days = month_days - coverage_days
            # Removal on the last day of the month leaves nothing to credit
            amount = (
                -round_money(prorate(premium, overbilled_days, month_days))
                if overbilled_days
                else ZERO
            )
            kind, activity = AdjustmentType.LEFT, removed

        amounts.append(amount)
        adjustments.append(_adjustment(owner, kind, activity, coverage_days, amount, tier))

    for owner in tier_changed_owners:
        old_tier = owner.previous_coverage_type
        new_tier = owner.coverage_type
        if not old_tier or not new_tier or not owner.tier_changed_at:
            continue
        changed = to_utc_date(owner.tier_changed_at)
        if not window.contains(changed):
            continue

        old_premium = premium_for_tier(policy, old_tier)
        new_premium = premium_for_tier(policy, new_tier)
        if old_premium is None or new_premium is None:
            _skip(skipped, policy, owner, "missing_premium", "tier_change",
                  new_tier if new_premium is None else old_tier)
            continue

        month_days = _month_days_of(changed)
        days_at_new_tier = month_days - changed.day + 1
        # Old tier was billed the full month; charge the new tier from the change on
        net = (
            -prorate(old_premium, days_at_new_tier, month_days)
            + prorate(new_premium, days_at_new_tier, month_days)
        )
        amount = round_money(net)
        amounts.append(amount)
        adjustments.append(
            _adjustment(
                owner, AdjustmentType.TIER_CHANGED, changed, days_at_new_tier, amount,
                new_tier, old_tier=old_tier, new_tier=new_tier,
            )
        )

    adjustments_total = sum(amounts, ZERO)
    total = round_money(base_amount + adjustments_total)

    breakdown = {
        "model": "lagged",
        "base_cutoff": window.base_cutoff.isoformat(),
        "window_start": window.window_start.isoformat(),
        "window_end": window.window_end.isoformat(),
        "base": {
            "count": base_count,
            "amount": money_json(base_amount),
            "by_tier": {
                tier: {"count": bucket["count"], "amount": money_json(bucket["amount"])}
                for tier, bucket in by_tier.items()
            },
        },
        "adjustments": adjustments,
        "adjustments_total": money_json(adjustments_total),
        "total": money_json(total),
        "skipped": skipped,
    }
    return PolicyCalculation(
        policy_id=policy.id,
        expected_amount=total,
        expected_affiliate_count=base_count,
        breakdown=breakdown,
    )


# =============================================================================
# Model A: direct pro-rata
# =============================================================================

def calculate_prorata_policy(
    policy: Any,
    period: BillingPeriod,
    owners: Iterable[EnrollmentRecord],
) -> PolicyCalculation:
    """
    Expected amount of one policy, pro-rating each owner by the days of
    ``period`` they were enrolled. Tier amounts are rounded to cents and
    the policy total is their sum.
    """
    skipped: list[dict[str, Any]] = []
    by_tier = {
        tier: {"full_period": 0, "pro_rated": 0, "count": 0, "amount": ZERO}
        for tier in TIERS
    }

    for owner in owners:
        start = max(to_utc_date(owner.added_at), period.period_start)
        end = period.period_end
        if owner.removed_at is not None:
            end = min(to_utc_date(owner.removed_at), end)
        days_active = days_between_inclusive(start, end)
        if days_active <= 0:
            continue

        priced = _priced(skipped, policy, owner, "period")
        if priced is None:
            continue
        tier, premium = priced

        bucket = by_tier[tier]
        bucket["count"] += 1
        if days_active == period.days_in_period:
            bucket["full_period"] += 1
        else:
            bucket["pro_rated"] += 1
        bucket["amount"] += prorate(premium, days_active, period.days_in_period)

    tier_amounts = {tier: round_money(bucket["amount"]) for tier, bucket in by_tier.items()}
    total = sum(tier_amounts.values(), ZERO)
    count = sum(bucket["count"] for bucket in by_tier.values())

    breakdown = {
        "model": "prorata",
        "period_start": period.period_start.isoformat(),
        "period_end": period.period_end.isoformat(),
        "days_in_period": period.days_in_period,
        "by_tier": {
            tier: {
                "full_period": bucket["full_period"],
                "pro_rated": bucket["pro_rated"],
                "count": bucket["count"],
                "amount": float(tier_amounts[tier]),
            }
            for tier, bucket in by_tier.items()
        },
        "total": float(total),
        "skipped": skipped,
    }
    return PolicyCalculation(
        policy_id=policy.id,
        expected_amount=total,
        expected_affiliate_count=count,
        breakdown=breakdown,
    )


# =============================================================================
# Ledger loading
# =============================================================================

def _owner_query(policy_ids: list[UUID]):
    return (
        select(PolicyAffiliate, Affiliate)
        .join(Affiliate, Affiliate.id == PolicyAffiliate.affiliate_id)
        .where(
            PolicyAffiliate.policy_id.in_(policy_ids),
            Affiliate.affiliate_type == AffiliateType.OWNER.value,
        )
        .order_by(PolicyAffiliate.added_at, PolicyAffiliate.affiliate_id)
    )


def _to_records(rows) -> list[EnrollmentRecord]:
    return [
        EnrollmentRecord(
            policy_id=link.policy_id,
            affiliate_id=affiliate.id,
            affiliate_name=affiliate.full_name,
            coverage_type=affiliate.coverage_type,
            added_at=link.added_at,
            removed_at=link.removed_at,
            previous_coverage_type=affiliate.previous_coverage_type,
            tier_changed_at=affiliate.tier_changed_at,
        )
        for link, affiliate in rows
    ]


def group_by_policy(records: Iterable[EnrollmentRecord]) -> dict[UUID, list[EnrollmentRecord]]:
    grouped: dict[UUID, list[EnrollmentRecord]] = defaultdict(list)
    for record in records:
        grouped[record.policy_id].append(record)
    return grouped


def load_lagged_ledger(
    db: Session, policy_ids: list[UUID], window: AdjustmentWindow
) -> tuple[dict, dict, dict]:
    """
    Base, window and tier-changed owners across all policies, three queries.

    Bounds are whole UTC days: ``date(ts) <= d`` is ``ts < start of d+1``.
    """
    after_cutoff = end_of_day_exclusive_utc(window.base_cutoff)
    after_window_start = end_of_day_exclusive_utc(window.window_start)
    after_window_end = end_of_day_exclusive_utc(window.window_end)

    base_rows = db.execute(
        _owner_query(policy_ids).where(
            PolicyAffiliate.added_at < after_cutoff,
            or_(PolicyAffiliate.removed_at.is_(None), PolicyAffiliate.removed_at >= after_cutoff),
        )
    ).all()

    window_rows = db.execute(
        _owner_query(policy_ids).where(
            or_(
                and_(
                    PolicyAffiliate.added_at >= after_window_start,
                    PolicyAffiliate.added_at < after_window_end,
                ),
                and_(
                    PolicyAffiliate.removed_at >= after_window_start,
                    PolicyAffiliate.removed_at < after_window_end,
                ),
            )
        )
    ).all()

    tier_rows = db.execute(
        _owner_query(policy_ids).where(
            Affiliate.tier_changed_at >= after_window_start,
            Affiliate.tier_changed_at < after_window_end,
            Affiliate.previous_coverage_type.is_not(None),
        )
    ).all()

    return (
        group_by_policy(_to_records(base_rows)),
        group_by_policy(_to_records(window_rows)),
        group_by_policy(_to_records(tier_rows)),
    )


def load_period_ledger(db: Session, policy_ids: list[UUID], period: BillingPeriod) -> dict:
    """Owners whose enrollment intersects ``period``, one query."""
    rows = db.execute(
        _owner_query(policy_ids).where(
            PolicyAffiliate.added_at < end_of_day_exclusive_utc(period.period_end),
            or_(
                PolicyAffiliate.removed_at.is_(None),
                PolicyAffiliate.removed_at >= start_of_day_utc(period.period_start),
            ),
        )
    ).all()
    return group_by_policy(_to_records(rows))


# =============================================================================
# Orchestration
# =============================================================================

def calculate_invoice_validation(
    db: Session,
    user_id: UUID | None,
    invoice_id: UUID,
    billing_model: BillingModel | None = None,
) -> InvoiceRead:
    """
    Recalculate and store the expected figures of an invoice.

    Overwrites ``InvoicePolicy.expected_*`` and ``Invoice.expected_*``
    together with a VALIDATION_CALCULATED audit row, then returns the
    reloaded invoice. Running it twice on an unchanged ledger yields the
    same figures.

    Raises:
        UnauthorizedError: user not found
        ForbiddenError: role outside the broker-employee family
        NotFoundError: invoice not found
        BadRequestError: cancelled invoice, missing/invalid billing period,
            no policies on the invoice
    """
    model = billing_model or settings.BILLING_MODEL
    user, role = user_service.require_role(db, user_id, BROKER_EMPLOYEES, "calculate invoices")

    invoice = db.scalar(
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .options(
            selectinload(Invoice.insurer),
            selectinload(Invoice.policies).selectinload(InvoicePolicy.policy),
        )
    )
    if not invoice:
        raise NotFoundError("Invoice not found")
    if invoice.status == InvoiceStatus.CANCELLED.value:
        raise BadRequestError("Cannot calculate a cancelled invoice")
    if not invoice.billing_period:
        raise BadRequestError("Invoice has no billing period")

    cutoff_day = invoice.insurer.billing_cutoff_day
    try:
        period = parse_billing_period(invoice.billing_period)
        window = get_adjustment_window(invoice.billing_period, cutoff_day)
    except ValueError:
        raise BadRequestError(f"Invalid billing period: {invoice.billing_period}")

    invoice_policies = list(invoice.policies)
    if not invoice_policies:
        raise BadRequestError("Invoice has no policies. Add policies first.")

    policies: list[Policy] = [link.policy for link in invoice_policies]
    policy_ids = [policy.id for policy in policies]

    if model == "prorata":
        owners_by_policy = load_period_ledger(db, policy_ids, period)
        calculations = {
            policy.id: calculate_prorata_policy(policy, period, owners_by_policy.get(policy.id, []))
            for policy in policies
        }
    else:
        base_by_policy, window_by_policy, tier_by_policy = load_lagged_ledger(db, policy_ids, window)
        calculations = {
            policy.id: calculate_lagged_policy(
                policy,
                window,
                base_by_policy.get(policy.id, []),
                window_by_policy.get(policy.id, []),
                tier_by_policy.get(policy.id, []),
            )
            for policy in policies
        }

    total_amount = round_money(sum((c.expected_amount for c in calculations.values()), ZERO))
    total_count = sum(c.expected_affiliate_count for c in calculations.values())

    before = audit_service.snapshot(invoice, ("expected_amount", "expected_affiliate_count"))
    try:
        for link in invoice_policies:
            calculation = calculations[link.policy_id]
            link.expected_amount = calculation.expected_amount
            link.expected_breakdown = calculation.breakdown
            link.expected_affiliate_count = calculation.expected_affiliate_count

        invoice.expected_amount = total_amount
        invoice.expected_affiliate_count = total_count

        audit_service.log_invoice_event(
            db,
            action=AuditAction.VALIDATION_CALCULATED,
            invoice_id=invoice.id,
            user_id=user.id,
            before=before,
            after=audit_service.snapshot(invoice, ("expected_amount", "expected_affiliate_count")),
            details={
                "role": role.value,
                "billing_model": model,
                "billing_period": invoice.billing_period,
                "policies_calculated": len(calculations),
            },
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "Invoice validation calculated",
        extra=build_log_context(
            user_id=user.id,
            invoice_id=invoice.id,
            role=role.value,
            billing_model=model,
            billing_period=invoice.billing_period,
            cutoff_day=cutoff_day,
            base_cutoff=window.base_cutoff.isoformat(),
            window_start=window.window_start.isoformat(),
            window_end=window.window_end.isoformat(),
            policies_calculated=len(calculations),
            expected_count=total_count,
            expected_amount=str(total_amount),
        ),
    )

    return invoice_service.get_invoice_read(db, invoice.id)
