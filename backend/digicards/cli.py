# Overview: Flask CLI command groups for card stock, order delivery, inventory healing, and wallets.

# backend/digicards/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to digicards (PowerShell: $env:FLASK_APP="digicards").
# - Use: python -m flask <group> <command> [options]
#
# Card stock:
# - python -m flask cards import --tenant-id 1 --product-id 5 --file codes.csv
#   Load AVAILABLE cards from a CSV (code,pin,expiry_date) or .xlsx sheet. Duplicates are skipped.
# - python -m flask cards expire --tenant-id 1
#   Flag unsold cards whose expiry date has passed.
# - python -m flask cards release 301 302
#   Return RESERVED cards to stock (SOLD cards are never released).
#
# Order delivery:
# - python -m flask orders fulfill 42
#   Run delivery for a paid or wallet-pending order and store the snapshot.
# - python -m flask orders files 42
#   List generated export files for an order.
#
# Customer inventory:
# - python -m flask inventory heal --tenant-id 1 --user-id abc123 [--email buyer@example.com]
#   Re-link historical codes to a customer (same healing the inventory read runs).
#
# Wallets:
# - python -m flask wallets credit abc123 5000 --tenant-id 1 [--reference TOPUP-1]
#   Add funds (in cents), creating the wallet on first use.
# - python -m flask wallets balance abc123
#   Show the current balance in cents.

import csv
from pathlib import Path

import click
from flask.cli import with_appcontext

from .errors import DigicardsError
from .services import card_inventory_service, fulfillment_service, inventory_reconcile_service, wallet_service
from .time_utils import parse_iso_datetime


def _read_stock_rows(path: Path) -> list[tuple]:
    """Rows of (code, pin, expiry_date) from a CSV or Excel file."""
    if path.suffix.lower() in {".xlsx", ".xlsm"}:
        from openpyxl import load_workbook
        wb = load_workbook(path, read_only=True, data_only=True)
        data = list(wb.active.values)
        if not data:
            return []
        headers = [str(h).strip().lower() if h is not None else "" for h in data[0]]
        records = [{headers[i]: row[i] for i in range(min(len(headers), len(row)))} for row in data[1:]]
    else:
        with path.open(newline="", encoding="utf-8") as fh:
            records = [{(k or "").strip().lower(): v for k, v in row.items()} for row in csv.DictReader(fh)]

    rows = []
    for record in records:
        code = record.get("code") or record.get("card_code") or record.get("serial")
        pin = record.get("pin") or record.get("card_pin")
        expiry = record.get("expiry_date") or record.get("expiry")
        if expiry is not None and not hasattr(expiry, "year"):
            expiry = parse_iso_datetime(str(expiry))
        rows.append((str(code).strip() if code is not None else "", str(pin).strip() if pin else None, expiry))
    return rows


@click.group('cards')
def cards_group():
    """Local card stock commands."""


@cards_group.command('import')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--product-id', type=int, required=True, help='Product the codes belong to')
@click.option('--file', 'file_path', type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@with_appcontext
def import_cards_command(tenant_id, product_id, file_path):
    """Import AVAILABLE cards from a CSV or Excel file."""
    try:
        rows = _read_stock_rows(file_path)
    except ValueError as e:
        raise click.ClickException(f"Could not parse {file_path.name}: {e}")

    try:
        report = card_inventory_service.import_cards(tenant_id, product_id, rows)
    except DigicardsError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Imported {report.imported} card(s), skipped {report.skipped}")


@cards_group.command('expire')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@with_appcontext
def expire_cards_command(tenant_id):
    """Mark expired unsold cards."""
    count = card_inventory_service.mark_expired_cards(tenant_id)
    click.echo(f"PASS Marked {count} card(s) EXPIRED")


@cards_group.command('release')
@click.argument('card_ids', nargs=-1, type=int, required=True)
@with_appcontext
def release_cards_command(card_ids):
    """Release RESERVED cards back to stock."""
    count = card_inventory_service.release_cards(list(card_ids))
    click.echo(f"PASS Released {count} of {len(card_ids)} card(s)")


@click.group('orders')
def orders_group():
    """Order delivery commands."""


@orders_group.command('fulfill')
@click.argument('order_id', type=int)
@with_appcontext
def fulfill_order_command(order_id):
    """Deliver codes for a paid or wallet-pending order."""
    try:
        result = fulfillment_service.fulfill_paid_order(order_id)
    except DigicardsError as e:
        raise click.ClickException(str(e))

    if result is None:
        click.echo("WARN  Order skipped (not paid, not wallet-pending, or already delivered)")
        return

    for outcome in result.items:
        status = "PASS" if outcome.succeeded else "FAIL"
        detail = f"{len(outcome.cards)} code(s) via {outcome.source}" if outcome.succeeded else outcome.error
        click.echo(f"{status} {outcome.product_name} x{outcome.quantity}: {detail}")
        click.echo(f"     path: {' -> '.join(outcome.path)}")

    if result.error:
        click.echo(f"FAIL {result.error}")
    else:
        click.echo(f"DONE Delivered {result.code_count} code(s)")
        if result.pending_reveal:
            click.echo("WARN  Codes stay blurred until the wallet deduction succeeds")


@orders_group.command('files')
@click.argument('order_id', type=int)
@with_appcontext
def order_files_command(order_id):
    """List export files generated for an order."""
    try:
        files = fulfillment_service.get_delivery_files(order_id)
    except DigicardsError as e:
        raise click.ClickException(str(e))
    if not files:
        click.echo("No files generated for this order")
        return
    for entry in files:
        click.echo(f"{entry['format']:6} {entry['url']}")


@click.group('inventory')
def inventory_group():
    """Customer inventory commands."""


@inventory_group.command('heal')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--user-id', help='Customer ID (local or external)')
@click.option('--email', help='Customer email')
@with_appcontext
def heal_inventory_command(tenant_id, user_id, email):
    """Re-link historical codes to a customer."""
    if not user_id and not email:
        raise click.UsageError("--user-id or --email is required")
    report = inventory_reconcile_service.heal_inventory(tenant_id, user_id, email)
    click.echo(
        f"PASS Scanned {report.scanned_orders} order(s) and {report.scanned_card_orders} card order(s); "
        f"created {report.created}, reassigned {report.reassigned}"
    )


@click.group('wallets')
def wallets_group():
    """Customer wallet commands."""


@wallets_group.command('credit')
@click.argument('user_id')
@click.argument('amount_cents', type=int)
@click.option('--tenant-id', type=int, help='Tenant ID for a new wallet')
@click.option('--reference', help='External reference for the ledger row')
@with_appcontext
def credit_wallet_command(user_id, amount_cents, tenant_id, reference):
    """Add funds to a customer wallet."""
    try:
        tx = wallet_service.credit(
            user_id,
            amount_cents,
            tenant_id=tenant_id,
            description="Manual top-up",
            reference=reference,
        )
    except DigicardsError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Balance {tx.balance_before_cents} -> {tx.balance_after_cents}")


@wallets_group.command('balance')
@click.argument('user_id')
@with_appcontext
def wallet_balance_command(user_id):
    """Show a wallet balance."""
    click.echo(f"{user_id}: {wallet_service.get_balance(user_id)}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(cards_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(wallets_group)
