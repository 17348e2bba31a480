# Overview: Flask CLI command groups for bootstrap, sequence maintenance, audit inspection and request upkeep.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-email admin@backoffice.local]
#   Idempotent bootstrap: creates tables, roles, permissions and role grants.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Document sequences:
# - python -m flask sequences list
#   Show every counter with its year and last issued number.
# - python -m flask sequences reset ORDER --yes
#   Set a counter back to 0 (next number is 0001).
# - python -m flask sequences sync ORDER [--year 2026]
#   Raise a counter to the highest number already used in its table.
#
# Audit trail:
# - python -m flask audit history Order 42
#   Print a record's history (with related items and payments), oldest first.
#
# Authorization requests:
# - python -m flask authorizations pending [--type EXPENSE_ORDER]
#   List status and edit requests waiting for review.
# - python -m flask authorizations expire
#   Mark approved edit requests past their window as EXPIRED (cron, every minute).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services import audit_service, authorization_service, permission_service, sequence_service
from .services.document_types import DOCUMENT_TYPES


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-email', default=None, help='Create (or reuse) an admin user with this email')
@with_appcontext
def init_system(admin_email):
    """
    Initialize the backoffice: tables, roles, capabilities and default grants.

    Safe to run repeatedly.
    """
    click.echo("START Initializing backoffice...")

    db.create_all()
    click.echo("PASS Tables ready")

    counts = permission_service.seed_security()
    click.echo(
        f"PASS Created {counts['roles']} roles, {counts['permissions']} permissions, "
        f"{counts['grants']} role grants"
    )

    if admin_email:
        user = db.session.query(User).filter_by(email=admin_email).first()
        if user:
            click.echo(f"WARN  User '{admin_email}' already exists, ensuring admin role...")
        else:
            user = User(email=admin_email, first_name="Admin")
            db.session.add(user)
            db.session.commit()
            click.echo(f"PASS Created user: {admin_email}")
        permission_service.assign_role(user.id, "admin")

    click.echo("DONE Backoffice initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('sequences')
def sequences_group():
    """Document number counters."""


@sequences_group.command('list')
@with_appcontext
def list_sequences():
    counters = sequence_service.list_counters()
    if not counters:
        click.echo("No counters yet (they are created on first allocation)")
        return

    for counter in counters:
        click.echo(
            f"{counter.document_type:<16} {counter.prefix:<6} {counter.year}  last={counter.last_number}"
        )


@sequences_group.command('reset')
@click.argument('document_type')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_sequence(document_type, yes):
    """Set a counter back to 0."""
    if not yes:
        click.confirm(
            f"WARN Resetting {document_type} can reissue numbers already in use. Continue?",
            abort=True,
        )
    try:
        counter = sequence_service.reset_counter(document_type)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {counter.document_type} reset (year {counter.year})")


@sequences_group.command('sync')
@click.argument('document_type')
@click.option('--year', type=int, default=None, help='Year to sync (defaults to current)')
@with_appcontext
def sync_sequence(document_type, year):
    """Raise a counter to the highest number used in its document table."""
    doc_type = DOCUMENT_TYPES.get(document_type)
    if doc_type is None:
        raise click.ClickException(
            f"Unknown document type '{document_type}'. Choose from: {', '.join(sorted(DOCUMENT_TYPES))}"
        )

    try:
        counter = sequence_service.sync_counter_from_table(
            doc_type.name,
            doc_type.model,
            doc_type.number_field,
            doc_type.prefix,
            year,
        )
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {counter.document_type} {counter.year} last={counter.last_number}")


@click.group('audit')
def audit_group():
    """Audit trail inspection."""


@audit_group.command('history')
@click.argument('model')
@click.argument('record_id')
@with_appcontext
def audit_history(model, record_id):
    """Print the history of MODEL #RECORD_ID (e.g. Order 42)."""
    try:
        entries = audit_service.history_for(record_id, model)
    except ValueError as e:
        raise click.ClickException(str(e))
    if not entries:
        click.echo("No audit entries")
        return

    for entry in entries:
        actor = entry["user"]["email"] if entry["user"] else "system"
        click.echo(
            f"{entry['created_at']}  {entry['action']:<6} {entry['model']}#{entry['record_id']}  by {actor}"
        )


@click.group('authorizations')
def authorizations_group():
    """Authorization request inspection."""


@authorizations_group.command('pending')
@click.option('--type', 'document_type', default=None, help='Filter by document type')
@with_appcontext
def pending_authorizations(document_type):
    requests = authorization_service.find_pending_requests(document_type=document_type)
    edit_requests = authorization_service.find_pending_edit_requests(document_type=document_type)
    if not requests and not edit_requests:
        click.echo("No pending requests")
        return

    for req in requests:
        click.echo(
            f"#{req.id} {req.document_type} {req.document_id}: {req.current_status} -> "
            f"{req.requested_status} (user {req.requested_by_user_id}) {req.reason or ''}".rstrip()
        )
    for req in edit_requests:
        click.echo(
            f"edit #{req.id} {req.document_type} {req.document_id} "
            f"(user {req.requested_by_user_id}) {req.observations or ''}".rstrip()
        )


@authorizations_group.command('expire')
@with_appcontext
def expire_edit_permissions():
    """Close approved edit windows that have run out (run every minute)."""
    count = authorization_service.expire_edit_permissions()
    click.echo(f"PASS Expired {count} edit permissions")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sequences_group)
    app.cli.add_command(audit_group)
    app.cli.add_command(authorizations_group)
