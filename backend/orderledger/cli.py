# Overview: Flask CLI command groups for bootstrap, inspection, and ledger checks.

# backend/orderledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev only; use `flask db upgrade` for managed databases).
# - python -m flask system seed-demo
#   Idempotent demo catalog: supplier, materials with opening stock, products with recipes.
#
# Stock:
# - python -m flask stock verify [--material-id 3]
#   Check that every balance equals its ledger sum; exits 1 on drift.
# - python -m flask stock low
#   List LOW/CRITICAL materials with reorder suggestions.
#
# Orders:
# - python -m flask orders undo-log 42
#   Show the undo log of an order, newest first.
#
# Conflicts:
# - python -m flask conflicts list [--status DETECTED] [--table orders]
#   List recorded write conflicts.

import sys

import click
from flask.cli import with_appcontext

from .errors import NotFoundError
from .extensions import db
from .models import Product, ProductRecipe, RawMaterial, Supplier
from .services import catalog_service, conflict_service, order_service, stock_advisor_service, stock_ledger_service


@click.group("system")
def system_group():
    """System bootstrap commands."""


@system_group.command("init-db")
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created")


DEMO_MATERIALS = [
    # name, unit, opening stock, min, unit price cents
    ("Oak plank", "pcs", "40", "10", 850),
    ("Wood glue", "ml", "2000", "500", 2),
    ("Gold leaf", "sheet", "25", "20", 120),
    ("Linen cord", "m", "150", "30", 15),
]

DEMO_PRODUCTS = [
    # sku, name, price cents, recipe lines (material name | None, qty, option_key, labor cost cents)
    ("BOX-01", "Keepsake box", 4500, [
        ("Oak plank", "2", None, None),
        ("Wood glue", "30", None, None),
        ("Gold leaf", "1", "gold_leaf", None),
        (None, "0.5", None, 2400),
    ]),
    ("FRM-01", "Picture frame", 3200, [
        ("Oak plank", "1", None, None),
        ("Linen cord", "0.5", None, None),
    ]),
]


@system_group.command("seed-demo")
@click.option("--actor", default="seed", help="Actor recorded on the opening-balance movements")
@with_appcontext
def seed_demo(actor):
    """Load a small demo catalog. Existing rows (by name/sku) are left alone."""
    supplier = Supplier.query.filter_by(name="Demo Timber Co").first()
    if supplier is None:
        supplier = catalog_service.create_supplier({"name": "Demo Timber Co", "contact": "orders@timber.example"})
        click.echo(f"PASS Created supplier {supplier.name}")

    materials = {}
    for name, unit, opening, minimum, price in DEMO_MATERIALS:
        material = RawMaterial.query.filter_by(name=name).first()
        if material is None:
            material = catalog_service.create_material(
                {
                    "name": name,
                    "stock_unit": unit,
                    "min_stock_quantity": minimum,
                    "unit_price_cents": price,
                    "supplier_id": supplier.id,
                    "opening_stock": opening,
                },
                actor=actor,
            )
            click.echo(f"PASS Created material {name} ({opening} {unit})")
        else:
            click.echo(f"WARN  Material {name} already exists, skipping...")
        materials[name] = material.id

    for sku, name, price, lines in DEMO_PRODUCTS:
        if Product.query.filter_by(sku=sku).first() is not None:
            click.echo(f"WARN  Product {sku} already exists, skipping...")
            continue
        product = catalog_service.create_product({"sku": sku, "name": name, "price_cents": price})
        for material_name, qty, option_key, labor_cents in lines:
            payload = {"quantity": qty, "option_key": option_key}
            if material_name is None:
                payload.update({"item_type": "LABOR", "unit_cost_cents": labor_cents})
            else:
                payload["raw_material_id"] = materials[material_name]
            catalog_service.add_recipe_line(product.id, payload)
        click.echo(f"PASS Created product {sku} with {len(lines)} recipe line(s)")

    click.echo(
        f"DONE {RawMaterial.query.count()} materials, {Product.query.count()} products, "
        f"{ProductRecipe.query.count()} recipe lines"
    )


@click.group("stock")
def stock_group():
    """Stock ledger inspection."""


@stock_group.command("verify")
@click.option("--material-id", type=int, default=None, help="Check a single material")
@with_appcontext
def verify_stock(material_id):
    """Compare every balance with the sum of its movements."""
    drifted = stock_ledger_service.verify_conservation(material_id)
    if not drifted:
        click.echo("PASS Every balance matches its ledger")
        return
    for row in drifted:
        click.echo(
            f"FAIL {row['material_id']:>5}  {row['name']:<30} balance={row['stock_quantity']} "
            f"ledger={row['ledger_sum']} drift={row['drift']}"
        )
    sys.exit(1)


@stock_group.command("low")
@with_appcontext
def low_stock():
    """List materials at LOW or CRITICAL level."""
    rows = stock_advisor_service.low_stock_report()
    if not rows:
        click.echo("No materials below threshold")
        return
    click.echo(f"{'ID':>5}  {'Name':<30} {'Level':<9} {'Stock':>12} {'Min':>12} {'Reorder':>12}")
    for r in rows:
        click.echo(
            f"{r['material_id']:>5}  {r['name']:<30} {r['level']:<9} {r['stock_quantity']:>12} "
            f"{r['min_stock_quantity']:>12} {r['suggested_reorder_qty']:>12}"
        )


@click.group("orders")
def orders_group():
    """Order inspection."""


@orders_group.command("undo-log")
@click.argument("order_id", type=int)
@with_appcontext
def undo_log(order_id):
    """Show an order's undo log, newest first (the first row is what undo pops)."""
    try:
        entries = order_service.list_undo_entries(order_id)
    except NotFoundError as e:
        raise click.ClickException(e.message)
    if not entries:
        click.echo(f"Order {order_id} has nothing to undo")
        return
    for e in entries:
        click.echo(
            f"{e.id:>6}  {e.previous_status:>13} -> {e.new_status:<13} stock={e.stock_effect:<8} "
            f"actor={e.actor or '-'}  {e.created_at}"
        )


@click.group("conflicts")
def conflicts_group():
    """Write-conflict review."""


@conflicts_group.command("list")
@click.option("--status", default=None, help="DETECTED or RESOLVED")
@click.option("--table", "entity_table", default=None, help="orders or raw_materials")
@click.option("--limit", default=50, show_default=True)
@with_appcontext
def list_conflicts(status, entity_table, limit):
    """List recorded conflicts, newest first."""
    records = conflict_service.list_conflicts(status=status, entity_table=entity_table, limit=limit)
    if not records:
        click.echo("No conflicts")
        return
    for r in records:
        fields = ", ".join(f["field"] for f in r.fields)
        click.echo(
            f"{r.id:>5}  {r.entity_table}:{r.entity_id:<6} {r.priority:<6} {r.status:<9} "
            f"fields=[{fields}]  {r.detected_at}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(conflicts_group)
