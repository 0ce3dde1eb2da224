# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/marketplace/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to the factory (PowerShell: $env:FLASK_APP="marketplace:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
#
# User bootstrap:
# - python -m flask users create --email admin@market.local --role ADMIN --phone "+2348000000000"
#   Create a user.
# - python -m flask users issue-token --email admin@market.local
#   Mint a bearer token for API calls (printed once, stored hashed).
# - python -m flask users revoke-token --token <token>
#   Revoke a leaked or retired token.
#
# Supplier bootstrap/inspection:
# - python -m flask suppliers create --name "Ada Foods" --user-email ada@market.local --whatsapp "+2348011111111"
#   Create a supplier profile owned by an existing SUPPLIER user.
# - python -m flask suppliers verify-bank 3 --bank-code 058 --account-number 0123456789 --account-name "Ada Foods Ltd"
#   Record verified bank details and enable payouts.
# - python -m flask suppliers balance 3
#   Print the replayed balance for a supplier.
#
# Order repair:
# - python -m flask orders split 34
#   Re-run the (idempotent) purchase order splitter for a paid order.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Supplier, User
from .errors import DomainError
from .services import ledger_service, payout_service, purchase_order_service, session_service
from .services.concurrency import UnitOfWork
from .states import BankVerificationStatus, UserRole
from .time_utils import utcnow


def _format_kobo(amount: int) -> str:
    return f"NGN {amount / 100:,.2f}"


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (no-op for tables that already exist)."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--role', type=click.Choice([r.value for r in UserRole]), default=UserRole.SHOPPER.value, help='Role')
@click.option('--phone', default=None, help='Phone number for SMS codes')
@click.option('--full-name', default=None, help='Display name')
@with_appcontext
def create_user_cli(email, role, phone, full_name):
    """Create a user."""
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL User {email} already exists")
        return

    user = User(email=email, role=UserRole(role), phone=phone, full_name=full_name, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user {user.email} (ID: {user.id}, role: {role})")


@users_group.command('issue-token')
@click.option('--email', prompt=True, help='Email address')
@with_appcontext
def issue_token_cli(email):
    """Mint a bearer session token for a user."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL User {email} not found")
        return
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Token for {user.email} (expires {session.expires_at:%Y-%m-%d %H:%M} UTC):")
    click.echo(token)


@users_group.command('revoke-token')
@click.option('--token', prompt=True, hide_input=True, help='Bearer token to revoke')
@with_appcontext
def revoke_token_cli(token):
    """Revoke a bearer session token."""
    if not session_service.revoke_session(token.strip()):
        click.echo("FAIL Token not found or already revoked")
        return
    click.echo("PASS Token revoked")


@click.group('suppliers')
def suppliers_group():
    """Supplier bootstrap and inspection commands."""


@suppliers_group.command('create')
@click.option('--name', prompt=True, help='Supplier name')
@click.option('--user-email', default=None, help='Owning SUPPLIER user')
@click.option('--whatsapp', default=None, help='WhatsApp number for PO notifications')
@click.option('--contact-email', default=None, help='Contact email')
@with_appcontext
def create_supplier_cli(name, user_email, whatsapp, contact_email):
    """Create a supplier profile."""
    user_id = None
    if user_email:
        user = db.session.query(User).filter_by(email=user_email.strip().lower()).first()
        if not user:
            click.echo(f"FAIL User {user_email} not found")
            return
        if user.role != UserRole.SUPPLIER:
            click.echo(f"FAIL User {user_email} is not a SUPPLIER")
            return
        user_id = user.id

    supplier = Supplier(
        name=name,
        user_id=user_id,
        whatsapp_phone=whatsapp,
        contact_email=contact_email,
        is_active=True,
    )
    db.session.add(supplier)
    db.session.commit()
    click.echo(f"PASS Created supplier {supplier.name} (ID: {supplier.id})")


@suppliers_group.command('verify-bank')
@click.argument('supplier_id', type=int)
@click.option('--bank-code', required=True)
@click.option('--account-number', required=True)
@click.option('--account-name', required=True)
@click.option('--bank-name', default=None)
@click.option('--country', default='NG', show_default=True)
@with_appcontext
def verify_bank_cli(supplier_id, bank_code, account_number, account_name, bank_name, country):
    """Record verified bank details and enable payouts."""
    supplier = db.session.get(Supplier, supplier_id)
    if not supplier:
        click.echo(f"FAIL Supplier {supplier_id} not found")
        return

    supplier.bank_code = bank_code
    supplier.account_number = account_number
    supplier.account_name = account_name
    supplier.bank_name = bank_name
    supplier.bank_country = country.upper()
    supplier.bank_verification_status = BankVerificationStatus.VERIFIED
    supplier.bank_verified_at = utcnow()
    supplier.is_payout_enabled = True
    db.session.commit()

    readiness = payout_service.check_payout_readiness(supplier)
    if readiness.ready:
        click.echo(f"PASS Supplier {supplier.name} is payout-ready")
    else:
        click.echo(f"WARN Supplier {supplier.name} still missing: {', '.join(readiness.missing)}")


@suppliers_group.command('balance')
@click.argument('supplier_id', type=int)
@with_appcontext
def supplier_balance_cli(supplier_id):
    """Print a supplier's balance replayed from allocations and ledger."""
    supplier = db.session.get(Supplier, supplier_id)
    if not supplier:
        click.echo(f"FAIL Supplier {supplier_id} not found")
        return

    balance = ledger_service.get_supplier_balance(db.session, supplier.id)
    click.echo(f"Supplier {supplier.name} (ID: {supplier.id})")
    click.echo(f"  Paid out:          {_format_kobo(balance.paid_out_kobo)}")
    click.echo(f"  Ledger credits:    {_format_kobo(balance.ledger_credits_kobo)}")
    click.echo(f"  Ledger debits:     {_format_kobo(balance.ledger_debits_kobo)}")
    click.echo(f"  Net:               {_format_kobo(balance.net_kobo)}")
    click.echo(f"  Available:         {_format_kobo(balance.available_balance_kobo)}")
    click.echo(f"  Outstanding debt:  {_format_kobo(balance.outstanding_debt_kobo)}")
    click.echo(f"  Pending / approved / held: "
               f"{_format_kobo(balance.pending_kobo)} / {_format_kobo(balance.approved_kobo)} / {_format_kobo(balance.held_kobo)}")


@click.group('orders')
def orders_group():
    """Order repair commands."""


@orders_group.command('split')
@click.argument('order_id', type=int)
@with_appcontext
def split_order_cli(order_id):
    """Run the purchase order splitter for an order."""
    try:
        result = purchase_order_service.split_order(UnitOfWork(), order_id)
    except DomainError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(
        f"PASS Order {result.order_id}: {len(result.purchase_orders)} purchase orders "
        f"({len(result.created_ids)} created, {len(result.changed_ids)} changed)"
    )
    if result.unassigned_item_ids:
        click.echo(f"WARN Items without a chosen supplier: {result.unassigned_item_ids}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(suppliers_group)
    app.cli.add_command(orders_group)
