# Overview: Pytest coverage for the Flask CLI command groups.

from stockledger.extensions import db
from stockledger.models import Location, Product, StockRecord, Tenant


class TestSystemCommands:
    def test_init_is_idempotent(self, app, db_session):
        runner = app.test_cli_runner()

        first = runner.invoke(args=["system", "init", "--tenant", "Acme Corp", "--code", "ACME"])
        second = runner.invoke(args=["system", "init", "--tenant", "Acme Corp", "--code", "ACME"])

        assert first.exit_code == 0, first.output
        assert "Created tenant: Acme Corp" in first.output
        assert second.exit_code == 0, second.output
        assert "Using existing tenant" in second.output

        tenants = db_session.query(Tenant).filter_by(code="ACME").all()
        assert len(tenants) == 1
        locations = db_session.query(Location).filter_by(tenant_id=tenants[0].id).all()
        assert len(locations) == 1
        assert locations[0].is_default is True

    def test_tenants_list(self, app, tenant_a, tenant_b):
        result = app.test_cli_runner().invoke(args=["tenants", "list"])
        assert result.exit_code == 0
        assert "ACME" in result.output
        assert "BETA" in result.output

    def test_add_default_location_replaces_previous(self, app, db_session, tenant_a, location_a):
        result = app.test_cli_runner().invoke(args=[
            "tenants", "add-location", "--tenant-id", str(tenant_a.id),
            "--name", "Warehouse", "--code", "WH", "--default",
        ])
        assert result.exit_code == 0, result.output

        defaults = db_session.query(Location).filter_by(tenant_id=tenant_a.id, is_default=True).all()
        assert [loc.code for loc in defaults] == ["WH"]


class TestProductCommands:
    def test_create_product(self, app, db_session, tenant_a):
        runner = app.test_cli_runner()
        args = [
            "products", "create", "--tenant-id", str(tenant_a.id),
            "--sku", "SKU-1", "--name", "Widget", "--price-cents", "1999",
        ]

        result = runner.invoke(args=args)
        assert result.exit_code == 0, result.output
        product = db_session.query(Product).filter_by(tenant_id=tenant_a.id, sku="SKU-1").one()
        assert product.price_cents == 1999

        duplicate = runner.invoke(args=args)
        assert "already exists" in duplicate.output
        assert db_session.query(Product).filter_by(sku="SKU-1").count() == 1


class TestStockCommands:
    def test_reconcile_clean_ledger(self, app, db_session, ctx_a, product_a, location_a, stock_in):
        stock_in(ctx_a, product_a, location_a, 5)

        result = app.test_cli_runner().invoke(args=["stock", "reconcile"])
        assert result.exit_code == 0, result.output
        assert "PASS" in result.output

    def test_reconcile_reports_drift(self, app, db_session, ctx_a, tenant_a, product_a, location_a, stock_in):
        stock_in(ctx_a, product_a, location_a, 5)
        db_session.query(StockRecord).filter_by(product_id=product_a.id).update({"quantity": 9})
        db.session.commit()

        result = app.test_cli_runner().invoke(args=["stock", "reconcile", "--tenant-id", str(tenant_a.id)])
        assert result.exit_code == 1
        assert "quantity=9 ledger=5" in result.output
