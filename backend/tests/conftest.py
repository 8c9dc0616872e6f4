"""
Pytest fixtures for stock ledger backend tests.

Provides test database setup, two-tenant fixtures, and a test client.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Tenant, Location, Customer, Product
from stockledger.services import stock_service
from stockledger.services.tenant_service import TenantContext


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CHECKOUT_RETRY_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def tenant_a(db_session):
    """Create Tenant A (first tenant)."""
    tenant = Tenant(name="Tenant A - Acme Corp", code="ACME", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def tenant_b(db_session):
    """Create Tenant B (second tenant)."""
    tenant = Tenant(name="Tenant B - Beta Inc", code="BETA", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def location_a(db_session, tenant_a):
    """Default location of Tenant A."""
    location = Location(tenant_id=tenant_a.id, name="Main A", code="A1", is_default=True)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def location_a2(db_session, tenant_a, location_a):
    """Second location of Tenant A."""
    location = Location(tenant_id=tenant_a.id, name="Warehouse A", code="A2")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def location_b(db_session, tenant_b):
    location = Location(tenant_id=tenant_b.id, name="Main B", code="B1", is_default=True)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def product_a(db_session, tenant_a):
    """Create Product in Tenant A."""
    product = Product(tenant_id=tenant_a.id, sku="PROD-A-001", name="Product A", price_cents=1000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_a2(db_session, tenant_a):
    product = Product(tenant_id=tenant_a.id, sku="PROD-A-002", name="Product A2", price_cents=250)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session, tenant_b):
    """Create Product in Tenant B."""
    product = Product(tenant_id=tenant_b.id, sku="PROD-B-001", name="Product B", price_cents=2000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer_a(db_session, tenant_a):
    customer = Customer(tenant_id=tenant_a.id, name="Alice", email="alice@acme.test")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def ctx_a(tenant_a):
    return TenantContext(tenant_id=tenant_a.id, actor_id=7)


@pytest.fixture(scope='function')
def ctx_b(tenant_b):
    return TenantContext(tenant_id=tenant_b.id, actor_id=8)


@pytest.fixture(scope='function')
def stock_in():
    """Helper: receive quantity of a product into a location."""
    def _stock_in(context, product, location, quantity):
        return stock_service.append_movement(
            context,
            product_id=product.id,
            location_id=location.id,
            movement_type="IN",
            quantity=quantity,
            reference_type="PURCHASE",
        )
    return _stock_in


def tenant_headers(tenant_id: int, actor_id: int | None = None) -> dict:
    """Helper to create tenant context headers."""
    headers = {'X-Tenant-ID': str(tenant_id)}
    if actor_id is not None:
        headers['X-Actor-ID'] = str(actor_id)
    return headers
