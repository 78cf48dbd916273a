# Overview: Flask CLI command groups for bootstrap, alert scans, and ledger maintenance.

# backend/labstock/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo department, two labs and a few items (idempotent).
#
# Stock ledger:
# - python -m flask stock alerts [--lab-id 1] [--days 30]
#   Print low-stock, expiring and expired items grouped by lab.
# - python -m flask stock verify-history [--item-id 5]
#   Replay stock log entries and report items whose history does not add up.
# - python -m flask stock pending-moves [--older-than-minutes 10]
#   List moves whose stock left the source lab but never arrived.
# - python -m flask stock compensate-move MOVE_ID
#   Return the stock of a pending move to its source item (safe to repeat).

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import Department, Lab, Item
from .services import alert_service
from .services import stock_history_service
from .services import stock_ledger_service
from .services.stock_errors import StockLedgerError
from .time_utils import today_utc


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (no-op for tables that already exist)."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock log!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Create demo reference data.

    Department CHEM with labs CHEM-A and CHEM-B, plus a few items in CHEM-A.
    Items are registered at their starting quantity; later changes go through
    the ledger.
    """
    dept = db.session.query(Department).filter_by(code="CHEM").first()
    if not dept:
        dept = Department(name="Chemistry", code="CHEM")
        db.session.add(dept)
        db.session.flush()
        click.echo("PASS Created department CHEM")

    labs = {}
    for code, name in (("CHEM-A", "Organic Chemistry Lab"), ("CHEM-B", "Analytical Chemistry Lab")):
        lab = db.session.query(Lab).filter_by(code=code).first()
        if not lab:
            lab = Lab(department_id=dept.id, name=name, code=code, is_active=True)
            db.session.add(lab)
            db.session.flush()
            click.echo(f"PASS Created lab {code}")
        labs[code] = lab

    today = today_utc()
    demo_items = [
        ("Ethanol 96%", "consumable", "L", 12, 5, today + timedelta(days=180)),
        ("Nitrile gloves (M)", "consumable", "box", 3, 4, None),
        ("Sodium chloride", "consumable", "kg", 8, 2, today + timedelta(days=14)),
        ("Magnetic stirrer", "non_consumable", "unit", 2, None, None),
    ]
    for name, item_type, unit, quantity, minimum, expiry in demo_items:
        exists = db.session.query(Item).filter_by(lab_id=labs["CHEM-A"].id, name=name, type=item_type).first()
        if exists:
            continue
        db.session.add(Item(
            lab_id=labs["CHEM-A"].id,
            name=name,
            type=item_type,
            unit=unit,
            quantity=quantity,
            minimum_quantity=minimum,
            expiry_date=expiry,
        ))
        click.echo(f"PASS Created item {name}")

    db.session.commit()
    click.echo("PASS Demo data ready.")


@click.group('stock')
def stock_group():
    """Stock ledger inspection and recovery commands."""


def _print_rows(title, rows, columns):
    if not rows:
        return
    click.echo(f"  {title} ({len(rows)})")
    for row in rows:
        click.echo("    " + "  ".join(f"{row.get(col)!s:<12}" for col in columns))


@stock_group.command('alerts')
@click.option('--lab-id', type=int, help='Restrict the scan to one lab')
@click.option('--days', type=click.IntRange(min=0), default=None, help='Expiry window in days')
@with_appcontext
def scan_alerts(lab_id, days):
    """Print stock alerts grouped by lab."""
    low = alert_service.group_by_lab(alert_service.low_stock(lab_id=lab_id))
    soon = alert_service.group_by_lab(
        alert_service.expiring(lab_id=lab_id, within_days=days, include_expired=False)
    )
    gone = alert_service.group_by_lab(alert_service.expired(lab_id=lab_id))

    lab_ids = sorted(set(low) | set(soon) | set(gone))
    if not lab_ids:
        click.echo("No stock alerts.")
        return

    click.echo("\n" + "="*80)
    for lid in lab_ids:
        lab = db.session.get(Lab, lid)
        click.echo(f"Lab {lid}: {lab.name if lab else '?'}")
        _print_rows("Low stock", low.get(lid, []), ("id", "name", "quantity", "minimum_quantity"))
        _print_rows("Expiring soon", soon.get(lid, []), ("id", "name", "expiry_date", "days_until_expiry"))
        _print_rows("Expired", gone.get(lid, []), ("id", "name", "expiry_date", "quantity"))
    click.echo("="*80 + "\n")


@stock_group.command('verify-history')
@click.option('--item-id', type=int, help='Verify a single item')
@with_appcontext
def verify_history(item_id):
    """Replay stock log entries against current quantities."""
    if item_id is not None:
        item_ids = [item_id]
    else:
        item_ids = [row[0] for row in db.session.query(Item.id).order_by(Item.id).all()]

    failures = 0
    for iid in item_ids:
        try:
            report = stock_history_service.verify_item_history(iid)
        except StockLedgerError as e:
            raise click.ClickException(e.message)
        if report["consistent"]:
            continue
        failures += 1
        click.echo(f"FAIL item {iid}: {len(report['mismatches'])} mismatch(es)")
        for m in report["mismatches"]:
            click.echo(f"    entry {m['entry_id']}: expected {m['expected']}, recorded {m['recorded']}")

    if failures:
        raise click.ClickException(f"{failures} item(s) with inconsistent history")
    click.echo(f"PASS {len(item_ids)} item(s) verified.")


@stock_group.command('pending-moves')
@click.option('--older-than-minutes', type=int, default=None, help='Only moves older than this')
@with_appcontext
def pending_moves(older_than_minutes):
    """List moves stuck between debit and credit."""
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    moves = stock_ledger_service.list_pending_moves(older_than=older_than)

    if not moves:
        click.echo("No pending moves.")
        return

    click.echo(f"{'Move ID':<34} {'Item':<8} {'From':<6} {'To':<6} {'Qty':<6} {'Created'}")
    for m in moves:
        click.echo(
            f"{m['move_id']:<34} {m['source_item_id']:<8} {m['source_lab_id']:<6} "
            f"{m['target_lab_id']:<6} {m['quantity']:<6} {m['created_at']}"
        )


@stock_group.command('compensate-move')
@click.argument('move_id')
@click.option('--actor', 'actor_id', default='cli', help='Actor recorded on the compensation entry')
@with_appcontext
def compensate_move_cli(move_id, actor_id):
    """Return the debited stock of a pending move to its source item."""
    try:
        result = stock_ledger_service.compensate_move(
            move_id,
            actor_id=actor_id,
            failure_reason="compensated from CLI",
        )
    except StockLedgerError as e:
        raise click.ClickException(e.message)

    if not result.log_entries:
        click.echo(f"Move {move_id} was already compensated.")
        return
    click.echo(f"PASS Move {move_id} compensated; item {result.item['id']} now at {result.item['quantity']}.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
