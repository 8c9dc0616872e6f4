# backend/stockledger/routes/orders.py
"""
Order routes: checkout and the order lifecycle.

All routes require a tenant context (X-Tenant-ID header).

Checkout accepts an optional Idempotency-Key header; replaying the same key
with the same body returns the original order with 200 instead of 201.
"""
from flask import Blueprint, request, jsonify, g

from ..decorators import require_tenant, handle_ledger_errors
from ..errors import ValidationError
from ..models import OrderPayment
from ..services import checkout_service, order_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    coerce_money,
    coerce_optional_int,
    parse_checkout_items,
)


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

IDEMPOTENCY_HEADER = "Idempotency-Key"

PAYMENT_POLICY = ModelValidationPolicy(
    writable_fields={"amount_cents", "method", "reference", "note"},
    required_on_create={"amount_cents", "method"},
)

CHECKOUT_FIELDS = {
    "items",
    "location_id",
    "customer_id",
    "discount_cents",
    "tax_cents",
    "shipping_cents",
    "status",
    "note",
    "delivery_address",
    "delivery_phone",
    "delivery_notes",
}


def _optional_str(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    return str(value).strip() or None


@orders_bp.post("")
@require_tenant
@handle_ledger_errors("checkout")
def checkout_route():
    """
    Checkout: create an order and deduct its stock atomically.

    Request body:
    {
        "items": [{"product_id", "quantity", "unit_price_cents",
                   "discount_cents"?, "tax_cents"?}],
        "location_id": int (optional, tenant default otherwise),
        "customer_id": int (optional),
        "discount_cents": int, "tax_cents": int, "shipping_cents": int,
        "status": str (optional initial status),
        "note", "delivery_address", "delivery_phone", "delivery_notes"
    }

    Returns:
        201: order created
        200: idempotent replay
        400 / 404 / 409 / 503: see error code
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    unknown = set(payload) - CHECKOUT_FIELDS
    if unknown:
        raise ValidationError(f"Field not allowed: {sorted(unknown)[0]}")

    idempotency_key = (request.headers.get(IDEMPOTENCY_HEADER) or "").strip() or None
    if idempotency_key and len(idempotency_key) > 128:
        raise ValidationError("Idempotency-Key exceeds max length 128")

    order, replayed = checkout_service.place_order(
        g.tenant_context,
        items=parse_checkout_items(payload.get("items")),
        location_id=coerce_optional_int(payload.get("location_id"), "location_id"),
        customer_id=coerce_optional_int(payload.get("customer_id"), "customer_id"),
        discount_cents=coerce_money(payload.get("discount_cents"), "discount_cents") or 0,
        tax_cents=coerce_money(payload.get("tax_cents"), "tax_cents"),
        shipping_cents=coerce_money(payload.get("shipping_cents"), "shipping_cents") or 0,
        initial_status=_optional_str(payload, "status"),
        note=_optional_str(payload, "note"),
        delivery_address=_optional_str(payload, "delivery_address"),
        delivery_phone=_optional_str(payload, "delivery_phone"),
        delivery_notes=_optional_str(payload, "delivery_notes"),
        idempotency_key=idempotency_key,
    )

    return jsonify(order.to_dict(include_items=True)), 200 if replayed else 201


@orders_bp.get("")
@require_tenant
@handle_ledger_errors("list orders")
def list_orders_route():
    """Query params: status, payment_status, limit (default 100, max 500)."""
    limit = coerce_optional_int(request.args.get("limit"), "limit") or 100
    if limit < 1 or limit > 500:
        raise ValidationError("limit must be between 1 and 500")

    orders = order_service.list_orders(
        g.tenant_context,
        status=request.args.get("status"),
        payment_status=request.args.get("payment_status"),
        limit=limit,
    )
    return jsonify({"orders": [o.to_dict(include_items=False) for o in orders]}), 200


@orders_bp.get("/<int:order_id>")
@require_tenant
@handle_ledger_errors("get order")
def get_order_route(order_id: int):
    order = order_service.get_order(g.tenant_context, order_id)
    return jsonify(order.to_dict(include_items=True, include_history=True)), 200


@orders_bp.put("/<int:order_id>/status")
@require_tenant
@handle_ledger_errors("update order status")
def update_status_route(order_id: int):
    """
    Request body:
    {"status": str, "note": str (optional), "cancel_reason": str (optional)}
    """
    payload = request.get_json(silent=True) or {}
    new_status = _optional_str(payload, "status")
    if not new_status:
        raise ValidationError("status is required")

    order = order_service.update_status(
        g.tenant_context,
        order_id,
        new_status,
        note=_optional_str(payload, "note"),
        cancel_reason=_optional_str(payload, "cancel_reason"),
    )
    return jsonify(order.to_dict(include_items=True, include_history=True)), 200


@orders_bp.post("/<int:order_id>/payments")
@require_tenant
@handle_ledger_errors("add order payment")
def add_payment_route(order_id: int):
    """
    Request body:
    {"amount_cents": int, "method": str, "reference": str?, "note": str?}
    """
    payload = request.get_json(silent=True) or {}
    data = validate_payload(model=OrderPayment, payload=payload, policy=PAYMENT_POLICY)

    order = order_service.add_payment(
        g.tenant_context,
        order_id,
        amount_cents=data["amount_cents"],
        method=data["method"],
        reference=data.get("reference"),
        note=data.get("note"),
    )
    return jsonify(order.to_dict(include_items=False, include_history=True)), 201


@orders_bp.delete("/<int:order_id>")
@require_tenant
@handle_ledger_errors("cancel order")
def cancel_order_route(order_id: int):
    """Cancel an order. Optional body: {"reason": str}."""
    payload = request.get_json(silent=True) or {}
    order = order_service.cancel(g.tenant_context, order_id, reason=_optional_str(payload, "reason"))
    return jsonify(order.to_dict(include_items=True, include_history=True)), 200
