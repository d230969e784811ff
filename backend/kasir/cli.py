# Overview: Flask CLI command groups for bootstrap, scheduled sweeps, and maintenance.

# backend/kasir/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create tables (if missing) and seed the default subscription packages.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --name "Admin" --email admin@kasir.local --password "Password123!" --role ADMIN --verified
#   Create a user (prompts if options are omitted).
#
# Scheduled sweeps (cron):
# - python -m flask subscriptions expire
#   Mark ACTIVE/TRIAL subscriptions past their end date EXPIRED.
# - python -m flask subscriptions remind
#   Send the 7-day and 3-day renewal reminders (each at most once).
# - python -m flask payments reconcile --order SUB-...
#   Reconcile one payment (gateway status query or activation retry).
# - python -m flask payments reconcile-pending --older-than 60
#   Reconcile every PENDING payment older than N minutes.

import click
from datetime import timedelta
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db, get_payment_gateway
from .models import Payment
from .models.auth import ROLE_ADMIN, ROLE_USER
from .models.billing import PAYMENT_PENDING
from .services.auth_service import create_user, PasswordValidationError
from .services import payment_service, reminder_service, subscription_service
from .validation import ServiceError
from .time_utils import utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create tables and seed the default subscription packages (idempotent)."""
    click.echo("START Initializing Kasir system...")

    db.create_all()
    click.echo("PASS Tables ready")

    packages = subscription_service.seed_default_packages()
    for package in packages:
        click.echo(
            f"PASS Package {package.name} (ID: {package.id}) "
            f"price={package.price} stores={package.max_stores} members={package.max_members}"
        )

    click.echo("DONE System initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if current_app.config.get("ENVIRONMENT") == "production":
        raise click.ClickException("reset-db is disabled in production")
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to seed packages.")


@click.group('users')
def users_group():
    """User provisioning commands."""


@users_group.command('create')
@click.option('--name', prompt=True)
@click.option('--email', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice([ROLE_USER, ROLE_ADMIN]), default=ROLE_USER)
@click.option('--verified', is_flag=True, help='Mark the email as verified')
@click.option('--phone', default=None)
@with_appcontext
def create_user_command(name, email, password, role, verified, phone):
    """Create a user account."""
    try:
        user = create_user(name, email, password, phone=phone, role=role, is_email_verified=verified)
    except PasswordValidationError as e:
        raise click.ClickException(f"Invalid password: {e.message}")
    except ServiceError as e:
        raise click.ClickException(e.message)

    click.echo(f"PASS Created user {user.email} (ID: {user.id}, role: {user.role})")


@click.group('subscriptions')
def subscriptions_group():
    """Scheduled subscription sweeps."""


@subscriptions_group.command('expire')
@with_appcontext
def expire_command():
    """Expire subscriptions whose end date has passed."""
    expired = reminder_service.expire_subscriptions()
    click.echo(f"PASS Expired {expired} subscription(s)")


@subscriptions_group.command('remind')
@with_appcontext
def remind_command():
    """Send first (7-day) and second (3-day) renewal reminders."""
    first = reminder_service.send_first_reminders()
    second = reminder_service.send_second_reminders()
    click.echo(f"PASS Sent {first} first reminder(s) and {second} second reminder(s)")


@click.group('payments')
def payments_group():
    """Payment maintenance commands."""


@payments_group.command('reconcile')
@click.option('--order', 'merchant_order_id', required=True, help='Merchant order id')
@with_appcontext
def reconcile_command(merchant_order_id):
    """Reconcile one payment against the gateway."""
    try:
        result = payment_service.reconcile_payment(merchant_order_id, gateway=get_payment_gateway())
    except ServiceError as e:
        raise click.ClickException(e.message)

    click.echo(f"PASS {merchant_order_id}: {result['action']} ({result.get('message') or result.get('outcome')})")


@payments_group.command('reconcile-pending')
@click.option('--older-than', 'older_than', default=60, show_default=True, help='Minutes since creation')
@with_appcontext
def reconcile_pending_command(older_than):
    """Reconcile every PENDING payment created more than N minutes ago."""
    cutoff = utcnow() - timedelta(minutes=older_than)
    order_ids = [
        row.merchant_order_id
        for row in db.session.query(Payment.merchant_order_id)
        .filter(Payment.status == PAYMENT_PENDING, Payment.created_at < cutoff)
        .order_by(Payment.id.asc())
        .all()
    ]

    gateway = get_payment_gateway()
    failures = 0
    for merchant_order_id in order_ids:
        try:
            result = payment_service.reconcile_payment(merchant_order_id, gateway=gateway)
            click.echo(f"PASS {merchant_order_id}: {result['action']}")
        except ServiceError as e:
            failures += 1
            click.echo(f"FAIL {merchant_order_id}: {e.message}")

    click.echo(f"DONE Reconciled {len(order_ids) - failures}/{len(order_ids)} pending payment(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(subscriptions_group)
    app.cli.add_command(payments_group)
