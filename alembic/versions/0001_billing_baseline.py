"""Baseline migration - Billing tables

Revision ID: 0001_billing_baseline
Revises:
Create Date: 2026-10-17

Creates users, clients, insurers, policies, the enrollment ledger,
invoices, invoice policies and the audit log.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_billing_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create billing tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Clients / Insurers
    # ==========================================================================
    op.execute('''
        CREATE TABLE clients (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE insurers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            billing_cutoff_day INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_insurers_billing_cutoff_day CHECK (billing_cutoff_day BETWEEN 1 AND 31)
        )
    ''')

    # ==========================================================================
    # Users
    # ==========================================================================
    op.execute('''
        CREATE TABLE users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) UNIQUE NOT NULL,
            display_name VARCHAR(255) NOT NULL,
            role VARCHAR(50) NOT NULL,
            client_id UUID REFERENCES clients(id) ON DELETE SET NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            token_version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Policies and enrollment ledger
    # ==========================================================================
    op.execute('''
        CREATE TABLE policies (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            policy_number VARCHAR(100) UNIQUE NOT NULL,
            client_id UUID NOT NULL REFERENCES clients(id) ON DELETE RESTRICT,
            insurer_id UUID NOT NULL REFERENCES insurers(id) ON DELETE RESTRICT,
            t_premium NUMERIC(12, 2),
            tplus1_premium NUMERIC(12, 2),
            tplusf_premium NUMERIC(12, 2),
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    ''')
    op.execute('CREATE INDEX idx_policies_client ON policies(client_id)')
    op.execute('CREATE INDEX idx_policies_insurer ON policies(insurer_id)')

    op.execute('''
        CREATE TABLE affiliates (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            client_id UUID NOT NULL REFERENCES clients(id) ON DELETE RESTRICT,
            first_name VARCHAR(100) NOT NULL,
            last_name VARCHAR(100) NOT NULL,
            affiliate_type VARCHAR(20) NOT NULL DEFAULT 'OWNER',
            coverage_type VARCHAR(20),
            previous_coverage_type VARCHAR(20),
            tier_changed_at TIMESTAMPTZ
        )
    ''')
    op.execute('CREATE INDEX idx_affiliates_type ON affiliates(affiliate_type)')

    op.execute('''
        CREATE TABLE policy_affiliates (
            policy_id UUID NOT NULL REFERENCES policies(id) ON DELETE CASCADE,
            affiliate_id UUID NOT NULL REFERENCES affiliates(id) ON DELETE CASCADE,
            added_at TIMESTAMPTZ NOT NULL,
            removed_at TIMESTAMPTZ,
            PRIMARY KEY (policy_id, affiliate_id)
        )
    ''')
    op.execute('CREATE INDEX idx_policy_affiliates_added ON policy_affiliates(policy_id, added_at)')
    op.execute('CREATE INDEX idx_policy_affiliates_removed ON policy_affiliates(policy_id, removed_at)')

    # ==========================================================================
    # Invoices
    # ==========================================================================
    op.execute('''
        CREATE TABLE invoices (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            invoice_number VARCHAR(100) UNIQUE NOT NULL,
            insurer_invoice_number VARCHAR(100) NOT NULL,
            client_id UUID NOT NULL REFERENCES clients(id) ON DELETE RESTRICT,
            insurer_id UUID NOT NULL REFERENCES insurers(id) ON DELETE RESTRICT,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            payment_status VARCHAR(20) NOT NULL DEFAULT 'PENDING_PAYMENT',
            billing_period VARCHAR(7),
            total_amount NUMERIC(12, 2) NOT NULL,
            tax_amount NUMERIC(12, 2),
            actual_affiliate_count INTEGER,
            expected_amount NUMERIC(12, 2),
            expected_affiliate_count INTEGER,
            count_matches BOOLEAN,
            amount_matches BOOLEAN,
            discrepancy_notes TEXT,
            issue_date DATE NOT NULL,
            due_date DATE,
            payment_date DATE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_invoices_client ON invoices(client_id)')
    op.execute('CREATE INDEX idx_invoices_insurer ON invoices(insurer_id)')
    op.execute('CREATE INDEX idx_invoices_status ON invoices(status)')
    op.execute('CREATE INDEX idx_invoices_payment_status ON invoices(payment_status)')

    op.execute('''
        CREATE TABLE invoice_policies (
            invoice_id UUID NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
            policy_id UUID NOT NULL REFERENCES policies(id) ON DELETE CASCADE,
            expected_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
            expected_breakdown JSONB NOT NULL DEFAULT '{}'::jsonb,
            expected_affiliate_count INTEGER NOT NULL DEFAULT 0,
            added_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (invoice_id, policy_id)
        )
    ''')
    op.execute('CREATE INDEX idx_invoice_policies_policy ON invoice_policies(policy_id)')

    # ==========================================================================
    # Audit log (append only)
    # ==========================================================================
    op.execute('''
        CREATE TABLE audit_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            action VARCHAR(50) NOT NULL,
            resource_type VARCHAR(50) NOT NULL,
            resource_id UUID NOT NULL,
            user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            changes JSONB,
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_audit_resource_created ON audit_logs(resource_type, resource_id, created_at)')
    op.execute('CREATE INDEX idx_audit_user_created ON audit_logs(user_id, created_at)')


def downgrade() -> None:
    """Drop billing tables."""
    for table in (
        'audit_logs',
        'invoice_policies',
        'invoices',
        'policy_affiliates',
        'affiliates',
        'policies',
        'users',
        'insurers',
        'clients',
    ):
        op.execute(f'DROP TABLE IF EXISTS {table}')
