# backend/stockledger/routes/stock.py
"""
Stock ledger routes.

All routes require a tenant context (X-Tenant-ID header).

- POST /api/stock/movements            append one movement
- GET  /api/stock/movements            list movements (newest first)
- GET  /api/stock                      list stock records
- GET  /api/stock/<product>/<location> current on-hand
- POST /api/stock/check-availability   batch availability check
- POST /api/stock/transfers            move stock between locations
"""
from flask import Blueprint, request, jsonify, g

from ..decorators import require_tenant, handle_ledger_errors
from ..models import StockMovement
from ..services import stock_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    coerce_int,
    coerce_optional_int,
    parse_quantity_requests,
)
from ..errors import ValidationError


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")

MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "location_id", "type", "quantity", "reference_type", "reference_id", "note"},
    required_on_create={"product_id", "location_id", "type", "quantity"},
)


@stock_bp.post("/movements")
@require_tenant
@handle_ledger_errors("append stock movement")
def append_movement_route():
    """
    Append a stock movement.

    Request body:
    {
        "product_id": int,
        "location_id": int,
        "type": "IN" | "OUT" | "ADJUST",
        "quantity": int (positive for IN/OUT, signed for ADJUST),
        "reference_type": str (optional),
        "reference_id": str (optional),
        "note": str (optional)
    }

    Returns:
        201: movement + resulting stock
        400: validation error / invalid adjustment
        404: product or location not found
        409: insufficient stock
    """
    payload = request.get_json(silent=True) or {}
    data = validate_payload(model=StockMovement, payload=payload, policy=MOVEMENT_POLICY)

    movement = stock_service.append_movement(
        g.tenant_context,
        product_id=data["product_id"],
        location_id=data["location_id"],
        movement_type=data["type"],
        quantity=data["quantity"],
        reference_type=data.get("reference_type"),
        reference_id=data.get("reference_id"),
        note=data.get("note"),
    )
    stock = stock_service.get_stock(
        g.tenant_context, product_id=movement.product_id, location_id=movement.location_id
    )
    return jsonify({"movement": movement.to_dict(), "stock": stock.to_dict()}), 201


@stock_bp.get("/movements")
@require_tenant
@handle_ledger_errors("list stock movements")
def list_movements_route():
    """
    List stock movements.

    Query params: product_id, location_id, type, reference_type,
    reference_id, limit (default 200, max 1000)
    """
    limit = coerce_optional_int(request.args.get("limit"), "limit") or 200
    if limit < 1 or limit > 1000:
        raise ValidationError("limit must be between 1 and 1000")

    movements = stock_service.list_movements(
        g.tenant_context,
        product_id=coerce_optional_int(request.args.get("product_id"), "product_id"),
        location_id=coerce_optional_int(request.args.get("location_id"), "location_id"),
        movement_type=request.args.get("type"),
        reference_type=request.args.get("reference_type"),
        reference_id=request.args.get("reference_id"),
        limit=limit,
    )
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@stock_bp.get("")
@require_tenant
@handle_ledger_errors("list stock")
def list_stock_route():
    """
    List stock records.

    Query params: location_id, product_id, limit (default 200, max 1000)
    """
    limit = coerce_optional_int(request.args.get("limit"), "limit") or 200
    if limit < 1 or limit > 1000:
        raise ValidationError("limit must be between 1 and 1000")

    records = stock_service.list_stock(
        g.tenant_context,
        location_id=coerce_optional_int(request.args.get("location_id"), "location_id"),
        product_id=coerce_optional_int(request.args.get("product_id"), "product_id"),
        limit=limit,
    )
    return jsonify({"stock": [
        {
            **r.to_dict(),
            "sku": r.product.sku,
            "product_name": r.product.name,
            "location_name": r.location.name,
        }
        for r in records
    ]}), 200


@stock_bp.get("/<int:product_id>/<int:location_id>")
@require_tenant
@handle_ledger_errors("get stock")
def get_stock_route(product_id: int, location_id: int):
    stock = stock_service.get_stock(g.tenant_context, product_id=product_id, location_id=location_id)
    return jsonify(stock.to_dict()), 200


@stock_bp.post("/check-availability")
@require_tenant
@handle_ledger_errors("check stock availability")
def check_availability_route():
    """
    Batch availability check. Reserves nothing.

    Request body:
    {"items": [{"product_id": int, "location_id": int, "quantity": int}, ...]}

    Returns:
        200: {"items": [...], "all_available": bool}
    """
    payload = request.get_json(silent=True) or {}
    requests = parse_quantity_requests(payload.get("items"))

    results = stock_service.check_availability(g.tenant_context, requests)
    return jsonify({
        "items": results,
        "all_available": all(r["satisfiable"] for r in results),
    }), 200


@stock_bp.post("/transfers")
@require_tenant
@handle_ledger_errors("transfer stock")
def transfer_stock_route():
    """
    Transfer stock between two locations.

    Request body:
    {
        "from_location_id": int,
        "to_location_id": int,
        "items": [{"product_id": int, "quantity": int}, ...],
        "note": str (optional)
    }
    """
    payload = request.get_json(silent=True) or {}
    if payload.get("from_location_id") is None or payload.get("to_location_id") is None:
        raise ValidationError("from_location_id and to_location_id are required")

    result = stock_service.transfer_stock(
        g.tenant_context,
        from_location_id=coerce_int(payload["from_location_id"], "from_location_id"),
        to_location_id=coerce_int(payload["to_location_id"], "to_location_id"),
        items=parse_quantity_requests(payload.get("items"), fields=("product_id", "quantity")),
        note=payload.get("note"),
    )
    return jsonify({
        "reference_id": result["reference_id"],
        "movements": [m.to_dict() for m in result["movements"]],
    }), 201
