# Overview: Flask CLI command groups for bootstrap, inspection, and ledger maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init --tenant "Acme Corp" --code ACME
#   Idempotent bootstrap: creates the tenant and its default location.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tenant management:
# - python -m flask tenants list
# - python -m flask tenants add-location --tenant-id 1 --name "Warehouse" --code WH
#
# Catalog:
# - python -m flask products create --tenant-id 1 --sku SKU-1 --name "Widget" --price-cents 1999
#
# Ledger maintenance:
# - python -m flask stock reconcile [--tenant-id 1]
#   Report stock records whose quantity differs from the sum of their movements.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Location, Product, Tenant
from .services import stock_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--tenant', 'tenant_name', default='Default Tenant', help='Tenant name')
@click.option('--code', 'tenant_code', default='DEFAULT', help='Tenant code')
@click.option('--location', 'location_name', default='Main Location', help='Default location name')
@with_appcontext
def init_system(tenant_name, tenant_code, location_name):
    """
    Initialize a tenant with its default location.

    Safe to re-run: existing rows are reused.
    """
    click.echo("START Initializing stock ledger...")

    tenant = db.session.query(Tenant).filter_by(code=tenant_code).first()
    if not tenant:
        tenant = Tenant(name=tenant_name, code=tenant_code, is_active=True)
        db.session.add(tenant)
        db.session.commit()
        click.echo(f"PASS Created tenant: {tenant.name} (ID: {tenant.id}, Code: {tenant.code})")
    else:
        click.echo(f"PASS Using existing tenant: {tenant.name} (ID: {tenant.id})")

    location = db.session.query(Location).filter_by(tenant_id=tenant.id, is_default=True).first()
    if not location:
        location = Location(tenant_id=tenant.id, name=location_name, code="MAIN", is_default=True)
        db.session.add(location)
        db.session.commit()
        click.echo(f"PASS Created default location: {location.name} (ID: {location.id})")
    else:
        click.echo(f"PASS Using existing default location: {location.name} (ID: {location.id})")

    click.echo(f"DONE Tenant {tenant.id} ready. Send X-Tenant-ID: {tenant.id} with API requests.")


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


# =============================================================================
# TENANT MANAGEMENT COMMANDS
# =============================================================================

@click.group('tenants')
def tenants_group():
    """Tenant and location management commands."""


@tenants_group.command('list')
@with_appcontext
def list_tenants():
    """List all tenants."""
    tenants = db.session.query(Tenant).order_by(Tenant.id).all()

    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active':<8} {'Locations'}")
    click.echo("="*70)

    for tenant in tenants:
        location_count = db.session.query(Location).filter_by(tenant_id=tenant.id).count()
        active_str = "Yes" if tenant.is_active else "No"
        click.echo(f"{tenant.id:<5} {tenant.name:<30} {tenant.code or '-':<15} {active_str:<8} {location_count}")

    click.echo("="*70 + "\n")


@tenants_group.command('add-location')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--name', required=True, help='Location name')
@click.option('--code', help='Location code (unique within tenant)')
@click.option('--default', 'is_default', is_flag=True, help='Make this the default location')
@with_appcontext
def add_location_cli(tenant_id, name, code, is_default):
    """Add a stock location to a tenant."""
    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        click.echo(f"FAIL Tenant {tenant_id} not found")
        return

    if is_default:
        db.session.query(Location).filter_by(tenant_id=tenant_id, is_default=True).update({"is_default": False})

    location = Location(tenant_id=tenant_id, name=name, code=code, is_default=is_default)
    db.session.add(location)
    db.session.commit()
    click.echo(f"PASS Created location: {location.name} (ID: {location.id}, Tenant: {tenant.name})")


# =============================================================================
# CATALOG COMMANDS
# =============================================================================

@click.group('products')
def products_group():
    """Minimal catalog commands."""


@products_group.command('create')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--sku', required=True, help='SKU (unique within tenant)')
@click.option('--name', required=True, help='Product name')
@click.option('--price-cents', type=int, default=None, help='Catalog price in cents')
@with_appcontext
def create_product_cli(tenant_id, sku, name, price_cents):
    """Create a product for a tenant."""
    existing = db.session.query(Product).filter_by(tenant_id=tenant_id, sku=sku).first()
    if existing:
        click.echo(f"FAIL Product with SKU '{sku}' already exists (ID: {existing.id})")
        return

    product = Product(tenant_id=tenant_id, sku=sku, name=name, price_cents=price_cents)
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product: {product.name} (ID: {product.id}, SKU: {product.sku})")


# =============================================================================
# LEDGER MAINTENANCE COMMANDS
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock ledger maintenance commands."""


@stock_group.command('reconcile')
@click.option('--tenant-id', type=int, default=None, help='Limit to one tenant')
@with_appcontext
def reconcile_cli(tenant_id):
    """Report stock records that disagree with their movement history."""
    mismatches = stock_service.find_inconsistent_records(tenant_id)

    if not mismatches:
        click.echo("PASS All stock records match their movement ledger")
        return

    for row in mismatches:
        click.echo(
            f"FAIL tenant={row['tenant_id']} product={row['product_id']} location={row['location_id']} "
            f"quantity={row['quantity']} ledger={row['ledger_quantity']}"
        )
    click.echo(f"FAIL {len(mismatches)} inconsistent stock record(s)")
    raise click.exceptions.Exit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)
    app.cli.add_command(products_group)
    app.cli.add_command(stock_group)
