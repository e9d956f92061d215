"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, schema created and dropped per test
- Seed factories for clients, insurers, policies, owners, users and invoices
- JWT token minting and HTTPX AsyncClients with cookie + CSRF header
"""
import os
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncGenerator, Generator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# Tests always run against an in-memory database
os.environ["DATABASE_URL"] = "sqlite://"

from billing_api.main import app  # noqa: E402
from billing_api.core.deps import COOKIE_NAME, get_db  # noqa: E402
from billing_api.core.security import create_session_token  # noqa: E402
from billing_api.db.base import Base  # noqa: E402
from billing_api.db.enums import (  # noqa: E402
    AffiliateType,
    CoverageType,
    InvoiceStatus,
    PaymentStatus,
    Role,
)
from billing_api.db.models import (  # noqa: E402
    Affiliate,
    Client,
    Insurer,
    Invoice,
    InvoicePolicy,
    Policy,
    PolicyAffiliate,
    User,
)
from billing_api.db.session import SessionLocal, engine  # noqa: E402


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    App code commits freely; the whole database is dropped afterwards.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_client_company(db: Session) -> Client:
    client = Client(name="Acme Corp")
    db.add(client)
    db.commit()
    return client


@pytest.fixture(scope="function")
def test_insurer(db: Session) -> Insurer:
    insurer = Insurer(name="Seguros Atlas", billing_cutoff_day=15)
    db.add(insurer)
    db.commit()
    return insurer


@pytest.fixture(scope="function")
def make_policy(db: Session, test_client_company: Client, test_insurer: Insurer):
    def _make(
        t_premium: str | None = "500.00",
        tplus1_premium: str | None = "800.00",
        tplusf_premium: str | None = "1200.00",
        insurer: Insurer | None = None,
    ) -> Policy:
        policy = Policy(
            policy_number=f"POL-{uuid.uuid4().hex[:8]}",
            client_id=test_client_company.id,
            insurer_id=(insurer or test_insurer).id,
            t_premium=Decimal(t_premium) if t_premium else None,
            tplus1_premium=Decimal(tplus1_premium) if tplus1_premium else None,
            tplusf_premium=Decimal(tplusf_premium) if tplusf_premium else None,
        )
        db.add(policy)
        db.commit()
        return policy

    return _make


@pytest.fixture(scope="function")
def test_policy(make_policy) -> Policy:
    return make_policy()


@pytest.fixture(scope="function")
def add_owner(db: Session, test_client_company: Client):
    """Enroll a new affiliate on a policy (an OWNER on tier T by default)."""
    def _add(
        policy: Policy,
        added_at: datetime,
        removed_at: datetime | None = None,
        coverage_type: str | None = CoverageType.T.value,
        affiliate_type: str = AffiliateType.OWNER.value,
        previous_coverage_type: str | None = None,
        tier_changed_at: datetime | None = None,
        commit: bool = True,
    ) -> Affiliate:
        affiliate = Affiliate(
            client_id=test_client_company.id,
            first_name="Ana",
            last_name=f"Owner {uuid.uuid4().hex[:6]}",
            affiliate_type=affiliate_type,
            coverage_type=coverage_type,
            previous_coverage_type=previous_coverage_type,
            tier_changed_at=tier_changed_at,
        )
        db.add(affiliate)
        db.flush()
        db.add(
            PolicyAffiliate(
                policy_id=policy.id,
                affiliate_id=affiliate.id,
                added_at=added_at,
                removed_at=removed_at,
            )
        )
        if commit:
            db.commit()
        return affiliate

    return _add


@pytest.fixture(scope="function")
def make_invoice(db: Session, test_client_company: Client, test_insurer: Insurer):
    def _make(policies=(), **fields) -> Invoice:
        values = {
            "invoice_number": f"INV-{uuid.uuid4().hex[:8]}",
            "insurer_invoice_number": f"ATL-{uuid.uuid4().hex[:6]}",
            "client_id": test_client_company.id,
            "insurer_id": test_insurer.id,
            "status": InvoiceStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING_PAYMENT.value,
            "billing_period": "2025-02",
            "total_amount": Decimal("0"),
            "issue_date": date(2025, 2, 1),
        }
        values.update(fields)
        invoice = Invoice(**values)
        invoice.policies = [InvoicePolicy(policy_id=policy.id) for policy in policies]
        db.add(invoice)
        db.commit()
        return invoice

    return _make


# =============================================================================
# User / Auth Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def make_user(db: Session):
    def _make(role: Role, client_id: uuid.UUID | None = None) -> User:
        user = User(
            email=f"{role.value.lower()}-{uuid.uuid4().hex[:8]}@broker.test",
            display_name=f"Test {role.value.title()}",
            role=role.value,
            client_id=client_id,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture(scope="function")
def broker_user(make_user) -> User:
    return make_user(Role.OPERATIONS_EMPLOYEE)


@pytest.fixture(scope="function")
def super_admin(make_user) -> User:
    return make_user(Role.SUPER_ADMIN)


@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    token: str
    cookie_name: str = COOKIE_NAME


def auth_for(user: User) -> TestAuth:
    return TestAuth(user=user, token=create_session_token(user.id, user.token_version))


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def make_client(db: Session) -> Generator:
    """
    Factory for AsyncClients sharing the test session.

    ``make_client(user)`` sends the user's session cookie and the CSRF
    header; ``make_client()`` is unauthenticated.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    def _make(user: User | None = None, csrf: bool = True) -> AsyncClient:
        cookies = {}
        if user is not None:
            auth = auth_for(user)
            cookies[auth.cookie_name] = auth.token
        headers = {"X-Requested-With": "XMLHttpRequest"} if csrf else {}
        return AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            cookies=cookies,
            headers=headers,
        )

    yield _make

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(make_client, broker_user: User) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient authenticated as a broker employee."""
    async with make_client(broker_user) as c:
        yield c
