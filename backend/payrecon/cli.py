# Overview: Flask CLI command groups for schema bootstrap, sequence inspection, and reconciliation follow-up.

# backend/payrecon/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (does not touch existing data).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo customer and catalog product to try checkout against.
#
# Document sequences:
# - python -m flask sequences show
#   List per-prefix counters (INV, SO, ADJ, CM) and the next number each will issue.
# - python -m flask sequences seed --prefix INV --next 1500
#   Move a counter forward (e.g. after importing legacy invoices). Never moves backwards.
#
# Reconciliation:
# - python -m flask reconciliation list [--status open|resolved|all] [--kind outcome_unknown]
#   List items needing a human (captured-but-unrecorded money, unknown gateway outcomes).
# - python -m flask reconciliation attempts --order-id 12
#   List gateway attempts for an order.
# - python -m flask reconciliation resolve-attempt 7 --outcome failed --note "Not in merchant portal"
#   Close a pending/unknown gateway attempt and unblock the order.
# - python -m flask reconciliation resolve 3 --note "Posted by hand"
#   Close a reconciliation item.

import click
from flask.cli import with_appcontext

from .errors import PaymentError
from .extensions import db
from .models import Customer, Product, ProductSize
from .services import reconciliation_service
from .services.sequence_service import (
    SequenceAllocationError,
    format_document_number,
    peek_counters,
    seed_counter,
)
from .time_utils import utcnow


@click.group('system')
def system_group():
    """Schema bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created (existing tables untouched).")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the payment ledgers!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Idempotently create a demo customer and a sized product."""
    customer = db.session.query(Customer).filter_by(email="demo@payrecon.local").first()
    if customer is None:
        customer = Customer(
            name="Demo Customer",
            email="demo@payrecon.local",
            credit_limit_cents=50000,
            credit_used_cents=0,
        )
        db.session.add(customer)
        click.echo("PASS Created demo customer")
    else:
        click.echo("WARN  Demo customer already exists, skipping...")

    product = db.session.query(Product).filter_by(sku="DEMO-TEE").first()
    if product is None:
        product = Product(sku="DEMO-TEE", name="Demo Tee")
        db.session.add(product)
        db.session.flush()
        for label in ("S", "M", "L"):
            db.session.add(ProductSize(
                product_id=product.id,
                size_label=label,
                unit_price_cents=1500,
                stock_quantity=25,
            ))
        click.echo("PASS Created demo product DEMO-TEE (S/M/L)")
    else:
        click.echo("WARN  Demo product already exists, skipping...")

    db.session.commit()
    click.echo(f"Customer ID: {customer.id}  Product ID: {product.id}")


# =============================================================================
# SEQUENCES
# =============================================================================

@click.group('sequences')
def sequences_group():
    """Document number counters."""


@sequences_group.command('show')
@with_appcontext
def show_sequences():
    counters = peek_counters()
    if not counters:
        click.echo("No counters yet (they are created on first allocation).")
        return

    year = utcnow().year
    click.echo("\n" + "="*60)
    click.echo(f"{'Prefix':<10} {'Next':<10} {'Next document number'}")
    click.echo("="*60)
    for counter in counters:
        preview = format_document_number(counter.prefix, counter.next_number, year)
        click.echo(f"{counter.prefix:<10} {counter.next_number:<10} {preview}")
    click.echo("="*60 + "\n")


@sequences_group.command('seed')
@click.option('--prefix', required=True, help='Counter prefix, e.g. INV')
@click.option('--next', 'next_number', type=int, required=True, help='Next number to issue')
@with_appcontext
def seed_sequence(prefix, next_number):
    try:
        counter = seed_counter(prefix, next_number)
    except SequenceAllocationError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS {counter.prefix} will issue {format_document_number(counter.prefix, counter.next_number)} next")


# =============================================================================
# RECONCILIATION
# =============================================================================

@click.group('reconciliation')
def reconciliation_group():
    """Follow-up on money the ledger could not record on its own."""


@reconciliation_group.command('list')
@click.option('--status', type=click.Choice(['open', 'resolved', 'all']), default='open')
@click.option('--kind', default=None, help='ledger_write_failed or outcome_unknown')
@with_appcontext
def list_reconciliation(status, kind):
    items = reconciliation_service.list_items(status=None if status == 'all' else status, kind=kind)
    if not items:
        click.echo("No reconciliation items.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Kind':<22} {'Order':<7} {'Attempt':<8} {'Amount':>10}  {'Gateway txn':<16} {'Status'}")
    click.echo("="*100)
    for item in items:
        amount = f"${item.amount_cents / 100:,.2f}"
        click.echo(
            f"{item.id:<5} {item.kind:<22} {item.order_id or '-':<7} {item.gateway_attempt_id or '-':<8} "
            f"{amount:>10}  {item.gateway_transaction_id or '-':<16} {item.status}"
        )
    click.echo("="*100 + "\n")


@reconciliation_group.command('attempts')
@click.option('--order-id', type=int, required=True)
@with_appcontext
def list_gateway_attempts(order_id):
    attempts = reconciliation_service.list_attempts(order_id)
    if not attempts:
        click.echo(f"No gateway attempts for order {order_id}.")
        return
    for attempt in attempts:
        click.echo(
            f"{attempt.id:<5} {attempt.attempt_type:<20} {attempt.method:<12} "
            f"{attempt.amount_cents:>10} {attempt.status:<10} {attempt.gateway_transaction_id or '-'}"
        )


@reconciliation_group.command('resolve-attempt')
@click.argument('attempt_id', type=int)
@click.option('--outcome', type=click.Choice(['captured', 'failed']), required=True)
@click.option('--note', required=True, help='What was checked at the gateway')
@click.option('--gateway-txn', default=None, help='Gateway transaction id (required for captured)')
@click.option('--auth-code', default=None)
@click.option('--by', 'resolved_by', default='cli')
@with_appcontext
def resolve_attempt(attempt_id, outcome, note, gateway_txn, auth_code, resolved_by):
    try:
        attempt = reconciliation_service.resolve_gateway_attempt(
            attempt_id,
            outcome,
            note=note,
            resolved_by=resolved_by,
            gateway_transaction_id=gateway_txn,
            auth_code=auth_code,
        )
    except PaymentError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Attempt {attempt.id} on order {attempt.order_id} resolved as {attempt.status}")


@reconciliation_group.command('resolve')
@click.argument('item_id', type=int)
@click.option('--note', required=True)
@click.option('--by', 'resolved_by', default='cli')
@with_appcontext
def resolve_reconciliation_item(item_id, note, resolved_by):
    try:
        item = reconciliation_service.resolve_item(item_id, note=note, resolved_by=resolved_by)
    except PaymentError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Reconciliation item {item.id} resolved")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sequences_group)
    app.cli.add_command(reconciliation_group)
