# Overview: Service-layer operations for checkout; encapsulates business logic and database work.

"""
Checkout Service - cart to committed order in one atomic unit

WHY: Two checkouts competing for the same unit of stock must never both
succeed. Validation that needs no locks runs first for fast failure; the
rest runs as a single serializable unit that either commits a complete
order with its stock deductions or leaves no trace.

ATOMIC UNIT:
1. Idempotency replay (optional key)
2. Allocate order number
3. Lock stock records, validate aggregated quantities per product
4. Append OUT movements referencing the order number
5. Create Order + OrderItems
6. Append initial OrderStatusEvent
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta

from flask import current_app

from ..errors import IdempotencyConflict, InsufficientStock, ValidationError
from ..extensions import db
from ..models import CheckoutIdempotencyKey, Order, OrderItem
from stockledger.time_utils import utcnow
from . import catalog_service, stock_service
from .concurrency import run_atomic
from .document_service import next_document_number
from .order_service import (
    ORDER_STATUSES,
    PAYMENT_STATUS_UNPAID,
    STATUS_CANCELLED,
    apply_status_side_effects,
    record_status_event,
)

logger = logging.getLogger(__name__)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _money(value, field: str) -> int:
    if value is None:
        return 0
    if not _is_int(value) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer (cents)")
    return value


def _normalize_items(items) -> list[dict]:
    if not items:
        raise ValidationError("Checkout must contain at least one item")

    lines = []
    for idx, item in enumerate(items):
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not _is_int(product_id):
            raise ValidationError(f"items[{idx}].product_id must be an integer")
        if not _is_int(quantity) or quantity <= 0:
            raise ValidationError(f"items[{idx}].quantity must be a positive integer")
        if item.get("unit_price_cents") is None:
            raise ValidationError(f"items[{idx}].unit_price_cents is required")

        unit_price = _money(item.get("unit_price_cents"), f"items[{idx}].unit_price_cents")
        discount = _money(item.get("discount_cents"), f"items[{idx}].discount_cents")
        tax = _money(item.get("tax_cents"), f"items[{idx}].tax_cents")

        if discount > unit_price * quantity:
            raise ValidationError(f"items[{idx}].discount_cents exceeds line amount")

        lines.append({
            "product_id": product_id,
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "discount_cents": discount,
            "tax_cents": tax,
            "line_total_cents": unit_price * quantity - discount + tax,
        })
    return lines


def compute_totals(lines: list[dict], *, discount_cents: int = 0, tax_cents: int | None = None, shipping_cents: int = 0) -> dict:
    """
    subtotal = sum(unit_price * quantity - line discount)
    tax      = sum(line tax), unless an explicit override is given
    total    = subtotal + tax - discount + shipping
    """
    subtotal = sum(l["unit_price_cents"] * l["quantity"] - l["discount_cents"] for l in lines)
    tax = sum(l["tax_cents"] for l in lines) if tax_cents is None else tax_cents
    total = subtotal + tax - discount_cents + shipping_cents
    if total < 0:
        raise ValidationError("Order discount exceeds order value")
    return {
        "subtotal_cents": subtotal,
        "tax_cents": tax,
        "discount_cents": discount_cents,
        "shipping_cents": shipping_cents,
        "total_cents": total,
    }


def request_fingerprint(payload: dict) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _replay_idempotent(tenant_id: int, key: str, request_hash: str) -> Order | None:
    """
    Return the order a previous checkout with this key created, if the key
    is still inside the idempotency window. An expired key is released.
    """
    row = (
        db.session.query(CheckoutIdempotencyKey)
        .filter_by(tenant_id=tenant_id, key=key)
        .first()
    )
    if row is None:
        return None

    window = current_app.config.get("IDEMPOTENCY_WINDOW_SECONDS", 86400)
    if row.created_at < utcnow() - timedelta(seconds=window):
        db.session.delete(row)
        db.session.flush()
        return None

    if row.request_hash != request_hash:
        raise IdempotencyConflict(
            "Idempotency key already used with a different request",
            details={"idempotency_key": key, "order_id": row.order_id},
        )
    return row.order


def _validate_on_hand(location_id: int, lines: list[dict], names: dict[int, str]) -> None:
    """Lock every record touched and compare aggregated requests with on-hand."""
    product_totals: dict[int, int] = {}
    for line in lines:
        product_totals[line["product_id"]] = product_totals.get(line["product_id"], 0) + line["quantity"]

    # Deterministic lock order
    for product_id in sorted(product_totals):
        requested = product_totals[product_id]
        available = stock_service.get_locked_quantity(product_id, location_id)
        if available < requested:
            raise InsufficientStock(
                product_id=product_id,
                location_id=location_id,
                requested=requested,
                available=available,
                product_name=names.get(product_id),
            )


def _deduct_stock(context, location_id: int, order_number: str, lines: list[dict], names: dict[int, str]) -> list:
    movements = []
    for line in lines:
        movements.append(stock_service._append_movement_locked(
            tenant_id=context.tenant_id,
            product_id=line["product_id"],
            location_id=location_id,
            movement_type=stock_service.MOVEMENT_OUT,
            quantity=line["quantity"],
            reference_type=stock_service.REF_ORDER,
            reference_id=order_number,
            note=f"Order {order_number}",
            actor_id=context.actor_id,
            product_name=names.get(line["product_id"]),
        ))
    return movements


def _create_order(context, *, order_number: str, location_id: int, lines: list[dict], names: dict[int, str], totals: dict, status: str, fields: dict) -> Order:
    order = Order(
        tenant_id=context.tenant_id,
        location_id=location_id,
        order_number=order_number,
        status=status,
        payment_status=PAYMENT_STATUS_UNPAID,
        paid_cents=0,
        due_cents=totals["total_cents"],
        created_by_actor_id=context.actor_id,
        **totals,
        **fields,
    )
    for line in lines:
        order.items.append(OrderItem(product_name=names.get(line["product_id"], ""), **line))

    apply_status_side_effects(order, status)
    db.session.add(order)
    db.session.flush()
    return order


def checkout(context, **kwargs) -> Order:
    """Convert a cart into a committed order; see place_order()."""
    order, _ = place_order(context, **kwargs)
    return order


def place_order(
    context,
    *,
    items,
    location_id: int | None = None,
    customer_id: int | None = None,
    discount_cents: int = 0,
    tax_cents: int | None = None,
    shipping_cents: int = 0,
    initial_status: str | None = None,
    note: str | None = None,
    delivery_address: str | None = None,
    delivery_phone: str | None = None,
    delivery_notes: str | None = None,
    idempotency_key: str | None = None,
) -> tuple[Order, bool]:
    """
    Convert a cart into a committed order with its stock deductions.

    Returns (order, replayed); replayed is True when an earlier checkout
    with the same idempotency key produced the order.

    items: [{"product_id", "quantity", "unit_price_cents",
             "discount_cents"?, "tax_cents"?}]

    Raises:
        ValidationError: malformed cart or money values
        ProductNotFound / LocationNotFound / CustomerNotFound
        InsufficientStock: a product's aggregated request exceeds on-hand
        IdempotencyConflict: key reused with a different cart
        TransientConflict: contention or timeout; nothing was written
    """
    # --- Pre-commit validation (no locks, no writes) ---
    lines = _normalize_items(items)
    discount_cents = _money(discount_cents, "discount_cents")
    shipping_cents = _money(shipping_cents, "shipping_cents")
    if tax_cents is not None:
        tax_cents = _money(tax_cents, "tax_cents")
    totals = compute_totals(lines, discount_cents=discount_cents, tax_cents=tax_cents, shipping_cents=shipping_cents)

    status = initial_status or current_app.config.get("ORDER_INITIAL_STATUS", "PENDING")
    if status not in ORDER_STATUSES or status == STATUS_CANCELLED:
        raise ValidationError(f"Invalid initial status: {status}")

    products = catalog_service.get_products(
        context.tenant_id, [l["product_id"] for l in lines], require_active=True
    )
    names = {pid: p.name for pid, p in products.items()}
    location = catalog_service.resolve_location(context.tenant_id, location_id)
    if customer_id is not None:
        catalog_service.get_customer(context.tenant_id, customer_id)

    resolved_location_id = location.id
    fields = {
        "customer_id": customer_id,
        "note": note,
        "delivery_address": delivery_address,
        "delivery_phone": delivery_phone,
        "delivery_notes": delivery_notes,
    }

    request_hash = None
    if idempotency_key:
        request_hash = request_fingerprint({
            "items": lines,
            "location_id": resolved_location_id,
            "status": status,
            **totals,
            **fields,
        })

    prefix = current_app.config.get("ORDER_NUMBER_PREFIX", "ORD")
    replayed = {"value": False}

    # --- Atomic unit ---
    def _op():
        replayed["value"] = False
        if idempotency_key:
            existing = _replay_idempotent(context.tenant_id, idempotency_key, request_hash)
            if existing is not None:
                replayed["value"] = True
                return existing

        order_number = next_document_number(
            tenant_id=context.tenant_id, document_type="ORDER", prefix=prefix
        )
        _validate_on_hand(resolved_location_id, lines, names)
        _deduct_stock(context, resolved_location_id, order_number, lines, names)
        order = _create_order(
            context,
            order_number=order_number,
            location_id=resolved_location_id,
            lines=lines,
            names=names,
            totals=totals,
            status=status,
            fields=fields,
        )
        record_status_event(order, status, note="Order created", actor_id=context.actor_id)

        if idempotency_key:
            db.session.add(CheckoutIdempotencyKey(
                tenant_id=context.tenant_id,
                key=idempotency_key,
                request_hash=request_hash,
                order_id=order.id,
                created_at=utcnow(),
            ))
        return order

    order = run_atomic(_op)

    if replayed["value"]:
        logger.info("Checkout replayed idempotency key %s -> order %s", idempotency_key, order.order_number)
    else:
        logger.info(
            "Checkout created order %s (%d line(s), total %s cents)",
            order.order_number, len(lines), order.total_cents,
        )
    return order, replayed["value"]
