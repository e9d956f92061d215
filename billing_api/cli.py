"""CLI tools for billing administration."""

from uuid import UUID

import click
from sqlalchemy import select

from billing_api.core.security import create_session_token
from billing_api.db.enums import Role
from billing_api.db.models import Client, User
from billing_api.db.session import SessionLocal
from billing_api.services import billing_calculator
from billing_api.services.errors import InvoiceServiceError


@click.group()
def cli():
    """Broker billing CLI tools."""
    pass


@cli.command()
@click.option("--email", required=True, help="User email address")
@click.option("--name", "display_name", required=True, help="Display name")
@click.option(
    "--role",
    required=True,
    type=click.Choice([r.value for r in Role], case_sensitive=False),
    help="Global role",
)
@click.option("--client-id", default=None, help="Client administered (CLIENT_ADMIN only)")
def create_user(email: str, display_name: str, role: str, client_id: str | None):
    """
    Create a user with a global role.

    Example:
        billing-api create-user --email ops@broker.com --name "Ops" --role OPERATIONS_EMPLOYEE
    """
    role = role.upper()
    if client_id and role != Role.CLIENT_ADMIN.value:
        click.echo("❌ --client-id only applies to CLIENT_ADMIN users")
        return

    db = SessionLocal()
    try:
        existing = db.scalar(select(User).where(User.email == email.lower()))
        if existing:
            click.echo(f"❌ User with email '{email}' already exists")
            return

        client_uuid = UUID(client_id) if client_id else None
        if client_uuid and not db.get(Client, client_uuid):
            click.echo(f"❌ Client {client_id} not found")
            return

        user = User(
            email=email.lower(),
            display_name=display_name,
            role=role,
            client_id=client_uuid,
        )
        db.add(user)
        db.commit()

        click.echo(f"✓ Created user: {user.email}")
        click.echo(f"  ID: {user.id}")
        click.echo(f"  Role: {role}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--email", required=True, help="User email address")
def issue_token(email: str):
    """Print a session token for a user (for scripts and API testing)."""
    db = SessionLocal()
    try:
        user = db.scalar(select(User).where(User.email == email.lower()))
        if not user or not user.is_active:
            click.echo(f"❌ No active user with email '{email}'")
            return
        click.echo(create_session_token(user.id, user.token_version))
    finally:
        db.close()


@cli.command()
@click.option("--invoice-id", required=True, help="Invoice ID")
@click.option("--as-email", required=True, help="Email of the broker employee running it")
def calculate_invoice(invoice_id: str, as_email: str):
    """Run the invoice validation calculator (BILLING_MODEL) and print the expected figures."""
    db = SessionLocal()
    try:
        user = db.scalar(select(User).where(User.email == as_email.lower()))
        result = billing_calculator.calculate_invoice_validation(
            db, user.id if user else None, UUID(invoice_id)
        )
        click.echo(f"✓ Invoice {result.invoice_number} ({result.billing_period})")
        click.echo(f"  Expected amount: {result.expected_amount}")
        click.echo(f"  Expected owners: {result.expected_affiliate_count}")
        for policy in result.policies:
            click.echo(
                f"  - {policy.policy_number}: {policy.expected_amount} "
                f"({policy.expected_affiliate_count} owners)"
            )
    except InvoiceServiceError as e:
        click.echo(f"❌ {e}")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
