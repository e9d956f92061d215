"""SQLAlchemy ORM models for users, clients, policies, enrollment and invoices."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_api.db.base import Base
from billing_api.db.enums import AffiliateType, InvoiceStatus, PaymentStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

Money = Numeric(12, 2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Auth
# =============================================================================

class User(Base):
    """
    An authenticated user of the brokerage back office.

    Role is global (no org scoping). CLIENT_ADMIN users carry the client
    they administer in ``client_id``.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


# =============================================================================
# Clients, Insurers, Policies
# =============================================================================

class Client(Base):
    """A company whose employees are insured through the broker."""
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class Insurer(Base):
    """Insurance carrier. ``billing_cutoff_day`` defines its billing period boundaries."""
    __tablename__ = "insurers"
    __table_args__ = (
        CheckConstraint(
            "billing_cutoff_day BETWEEN 1 AND 31", name="ck_insurers_billing_cutoff_day"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_cutoff_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class Policy(Base):
    """Group policy of a client with one insurer, priced per coverage tier."""
    __tablename__ = "policies"
    __table_args__ = (
        Index("idx_policies_client", "client_id"),
        Index("idx_policies_insurer", "insurer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    policy_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False
    )
    insurer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("insurers.id", ondelete="RESTRICT"), nullable=False
    )
    t_premium: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    tplus1_premium: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    tplusf_premium: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    client: Mapped["Client"] = relationship()
    insurer: Mapped["Insurer"] = relationship()


class Affiliate(Base):
    """
    An insured person. OWNER affiliates are billed at their coverage tier;
    DEPENDENT affiliates are covered by the owner's tier price.

    ``previous_coverage_type``/``tier_changed_at`` record the most recent
    tier change so the lagged calculator can pro-rate it.
    """
    __tablename__ = "affiliates"
    __table_args__ = (Index("idx_affiliates_type", "affiliate_type"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    affiliate_type: Mapped[str] = mapped_column(
        String(20), default=AffiliateType.OWNER.value, nullable=False
    )
    coverage_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    previous_coverage_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tier_changed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class PolicyAffiliate(Base):
    """Enrollment ledger: affiliate covered by policy over ``[added_at, removed_at]``."""
    __tablename__ = "policy_affiliates"
    __table_args__ = (
        Index("idx_policy_affiliates_added", "policy_id", "added_at"),
        Index("idx_policy_affiliates_removed", "policy_id", "removed_at"),
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("affiliates.id", ondelete="CASCADE"), primary_key=True
    )
    added_at: Mapped[datetime] = mapped_column(nullable=False)
    removed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    affiliate: Mapped["Affiliate"] = relationship()


# =============================================================================
# Invoices
# =============================================================================

class Invoice(Base):
    """
    Insurer invoice for one client and billing period.

    ``total_amount``/``actual_affiliate_count`` are the insurer-reported
    figures; ``expected_*`` are computed by the validation calculator and
    ``count_matches``/``amount_matches`` are set only on a transition into
    VALIDATED or DISCREPANCY. Invoices are never deleted (CANCELLED is the
    soft delete).
    """
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_client", "client_id"),
        Index("idx_invoices_insurer", "insurer_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_payment_status", "payment_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    insurer_invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False
    )
    insurer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("insurers.id", ondelete="RESTRICT"), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), default=InvoiceStatus.PENDING.value, nullable=False
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PENDING_PAYMENT.value, nullable=False
    )
    billing_period: Mapped[str | None] = mapped_column(String(7), nullable=True)

    # Insurer-reported figures
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    actual_affiliate_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Calculated figures
    expected_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    expected_affiliate_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    count_matches: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    amount_matches: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    discrepancy_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )

    client: Mapped["Client"] = relationship()
    insurer: Mapped["Insurer"] = relationship()
    policies: Mapped[list["InvoicePolicy"]] = relationship(
        back_populates="invoice",
        order_by="InvoicePolicy.added_at",
        cascade="all, delete-orphan",
    )


class InvoicePolicy(Base):
    """Policy billed on an invoice; ``expected_*`` are overwritten on each calculation."""
    __tablename__ = "invoice_policies"
    __table_args__ = (Index("idx_invoice_policies_policy", "policy_id"),)

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), primary_key=True
    )
    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True
    )
    expected_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    expected_breakdown: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    expected_affiliate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )

    invoice: Mapped["Invoice"] = relationship(back_populates="policies")
    policy: Mapped["Policy"] = relationship()


# =============================================================================
# Audit
# =============================================================================

class AuditLog(Base):
    """
    Append-only audit trail of invoice mutations.

    Written in the same transaction as the mutation it records.
    ``changes`` holds ``{"before": ..., "after": ...}`` snapshots.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_resource_created", "resource_type", "resource_id", "created_at"),
        Index("idx_audit_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    changes: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
