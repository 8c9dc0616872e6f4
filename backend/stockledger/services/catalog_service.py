# Overview: Tenant-scoped catalog lookups (products, locations, customers) consumed by the core.

from __future__ import annotations

from ..errors import CustomerNotFound, LocationNotFound, ProductNotFound
from ..extensions import db
from ..models import Customer, Location, Product


def get_product(tenant_id: int, product_id: int, *, require_active: bool = False) -> Product:
    """
    Load a product owned by tenant_id.

    A product that exists under another tenant is reported as not found;
    existence in a foreign tenant is never revealed.
    """
    product = db.session.query(Product).filter_by(id=product_id, tenant_id=tenant_id).first()
    if product is None:
        raise ProductNotFound(product_id)
    if require_active and not product.is_active:
        raise ProductNotFound(product_id, f"Product {product_id} is inactive")
    return product


def get_products(tenant_id: int, product_ids, *, require_active: bool = False) -> dict[int, Product]:
    """Batch variant of get_product; raises on the first missing id."""
    wanted = list(dict.fromkeys(product_ids))
    if not wanted:
        return {}

    rows = (
        db.session.query(Product)
        .filter(Product.tenant_id == tenant_id, Product.id.in_(wanted))
        .all()
    )
    by_id = {p.id: p for p in rows}

    for product_id in wanted:
        product = by_id.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if require_active and not product.is_active:
            raise ProductNotFound(product_id, f"Product {product_id} is inactive")
    return by_id


def get_location(tenant_id: int, location_id: int) -> Location:
    location = db.session.query(Location).filter_by(id=location_id, tenant_id=tenant_id).first()
    if location is None or not location.is_active:
        raise LocationNotFound(location_id)
    return location


def default_location(tenant_id: int) -> Location:
    """
    The tenant's default location: the one flagged is_default, else the
    oldest active location.
    """
    base = db.session.query(Location).filter_by(tenant_id=tenant_id, is_active=True)
    location = base.filter_by(is_default=True).order_by(Location.id).first()
    if location is None:
        location = base.order_by(Location.id).first()
    if location is None:
        raise LocationNotFound(None, "No location available")
    return location


def resolve_location(tenant_id: int, location_id: int | None) -> Location:
    if location_id is None:
        return default_location(tenant_id)
    return get_location(tenant_id, location_id)


def get_customer(tenant_id: int, customer_id: int) -> Customer:
    customer = db.session.query(Customer).filter_by(id=customer_id, tenant_id=tenant_id).first()
    if customer is None:
        raise CustomerNotFound(customer_id)
    return customer
