# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

# backend/stockledger/services/stock_service.py

from __future__ import annotations

import logging

from sqlalchemy import func

from ..errors import InsufficientStock, InvalidAdjustment, ValidationError
from ..extensions import db
from ..models import StockMovement, StockRecord
from stockledger.time_utils import utcnow
from . import catalog_service
from .concurrency import lock_for_update, run_atomic
from .document_service import next_document_number
"""
Stock Ledger Invariants (authoritative)

Ledger model:
- StockMovement rows are append-only; they are never updated or deleted.
- StockRecord.quantity is the materialized running sum of quantity_delta
  over the movements for its (product_id, location_id) pair.
- The record and the movement that explains the change are written in the
  same DB transaction. Nothing else writes StockRecord.quantity.

Business invariants:
- On-hand quantity may never go negative.
- IN/OUT take a positive magnitude; the sign comes from the type.
- ADJUST takes a signed, non-zero delta.
- OUT below zero -> InsufficientStock; ADJUST below zero -> InvalidAdjustment.
  In both cases nothing is written.

Reads:
- get_stock / check_availability are pure reads. They lock nothing, so a
  satisfiable answer is not a promise that a later checkout will succeed.
"""

logger = logging.getLogger(__name__)

MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_ADJUST = "ADJUST"

VALID_MOVEMENT_TYPES = [MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUST]

REF_ORDER = "ORDER"
REF_ORDER_CANCEL = "ORDER_CANCEL"
REF_TRANSFER = "TRANSFER"
REF_ADJUSTMENT = "ADJUSTMENT"
REF_PURCHASE = "PURCHASE"
REF_RETURN = "RETURN"
REF_MANUAL = "MANUAL"

VALID_REFERENCE_TYPES = [
    REF_ORDER,
    REF_ORDER_CANCEL,
    REF_TRANSFER,
    REF_ADJUSTMENT,
    REF_PURCHASE,
    REF_RETURN,
    REF_MANUAL,
]


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_movement(movement_type: str, quantity, reference_type: str | None = None) -> None:
    if movement_type not in VALID_MOVEMENT_TYPES:
        raise ValidationError(
            f"Invalid movement type: {movement_type}. Must be one of {VALID_MOVEMENT_TYPES}"
        )
    if not _is_int(quantity):
        raise ValidationError("quantity must be an integer")
    if movement_type == MOVEMENT_ADJUST:
        if quantity == 0:
            raise ValidationError("quantity must be non-zero for ADJUST")
    elif quantity <= 0:
        raise ValidationError(f"quantity must be > 0 for {movement_type}")
    if reference_type is not None and reference_type not in VALID_REFERENCE_TYPES:
        raise ValidationError(
            f"Invalid reference type: {reference_type}. Must be one of {VALID_REFERENCE_TYPES}"
        )


def signed_delta(movement_type: str, quantity: int) -> int:
    if movement_type == MOVEMENT_OUT:
        return -quantity
    return quantity


def _load_stock_record(product_id: int, location_id: int, *, lock: bool = True) -> StockRecord | None:
    query = db.session.query(StockRecord).filter_by(product_id=product_id, location_id=location_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_locked_quantity(product_id: int, location_id: int) -> int:
    """On-hand quantity read under a row lock; 0 when no record exists yet."""
    record = _load_stock_record(product_id, location_id, lock=True)
    return record.quantity if record is not None else 0


def _append_movement_locked(
    *,
    tenant_id: int,
    product_id: int,
    location_id: int,
    movement_type: str,
    quantity: int,
    reference_type: str | None = None,
    reference_id: str | None = None,
    note: str | None = None,
    actor_id: int | None = None,
    product_name: str | None = None,
) -> StockMovement:
    """Core append logic without validation of references, retry, or commit.

    Called by append_movement() and by the larger atomic units (checkout,
    cancellation, transfer) that compose several appends in one transaction.
    """
    record = _load_stock_record(product_id, location_id, lock=True)
    current = record.quantity if record is not None else 0
    delta = signed_delta(movement_type, quantity)
    new_quantity = current + delta

    if new_quantity < 0:
        if movement_type == MOVEMENT_OUT:
            raise InsufficientStock(
                product_id=product_id,
                location_id=location_id,
                requested=quantity,
                available=current,
                product_name=product_name,
            )
        raise InvalidAdjustment(
            "Adjustment would result in negative stock",
            details={
                "product_id": product_id,
                "location_id": location_id,
                "quantity": current,
                "delta": delta,
            },
        )

    if record is None:
        record = StockRecord(
            tenant_id=tenant_id,
            product_id=product_id,
            location_id=location_id,
            quantity=0,
        )
        db.session.add(record)

    record.quantity = new_quantity

    movement = StockMovement(
        tenant_id=tenant_id,
        product_id=product_id,
        location_id=location_id,
        type=movement_type,
        quantity=quantity,
        quantity_delta=delta,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        note=note,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def append_movement(
    context,
    *,
    product_id: int,
    location_id: int,
    movement_type: str,
    quantity: int,
    reference_type: str | None = None,
    reference_id: str | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Append one movement and update the StockRecord as a single atomic unit.

    This is the only sanctioned path to change on-hand quantity.

    Raises:
        ValidationError: bad type or quantity
        ProductNotFound / LocationNotFound: reference not owned by the tenant
        InsufficientStock: OUT would go below zero
        InvalidAdjustment: ADJUST would go below zero
        TransientConflict: contention outlived the retry attempts
    """
    _validate_movement(movement_type, quantity, reference_type)
    catalog_service.get_product(context.tenant_id, product_id)
    catalog_service.get_location(context.tenant_id, location_id)

    def _op():
        return _append_movement_locked(
            tenant_id=context.tenant_id,
            product_id=product_id,
            location_id=location_id,
            movement_type=movement_type,
            quantity=quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            note=note,
            actor_id=context.actor_id,
        )

    movement = run_atomic(_op)
    logger.info(
        "Stock movement %s %s product=%s location=%s",
        movement_type, quantity, product_id, location_id,
    )
    return movement


def get_stock(context, *, product_id: int, location_id: int) -> StockRecord:
    """
    Current StockRecord for the pair.

    When no movement has happened yet, returns an unsaved zero-quantity
    record; nothing is written.
    """
    catalog_service.get_product(context.tenant_id, product_id)
    catalog_service.get_location(context.tenant_id, location_id)

    record = (
        db.session.query(StockRecord)
        .filter_by(tenant_id=context.tenant_id, product_id=product_id, location_id=location_id)
        .first()
    )
    if record is not None:
        return record

    return StockRecord(
        tenant_id=context.tenant_id,
        product_id=product_id,
        location_id=location_id,
        quantity=0,
    )


def list_stock(
    context,
    *,
    location_id: int | None = None,
    product_id: int | None = None,
    limit: int = 200,
) -> list[StockRecord]:
    """Materialized stock records for the tenant, most recently changed first."""
    q = db.session.query(StockRecord).filter(StockRecord.tenant_id == context.tenant_id)
    if location_id is not None:
        q = q.filter(StockRecord.location_id == location_id)
    if product_id is not None:
        q = q.filter(StockRecord.product_id == product_id)

    return (
        q.order_by(StockRecord.updated_at.desc(), StockRecord.id.desc())
        .limit(limit)
        .all()
    )


def check_availability(context, requests) -> list[dict]:
    """
    Batch "can these quantities be satisfied right now" query.

    requests: iterable of {"product_id", "location_id", "quantity"} dicts.
    Returns one row per request, in request order. Unknown pairs read as 0.
    Reserves nothing.
    """
    wanted = []
    for req in requests:
        product_id = req.get("product_id")
        location_id = req.get("location_id")
        quantity = req.get("quantity")
        if not _is_int(product_id) or not _is_int(location_id):
            raise ValidationError("product_id and location_id must be integers")
        if not _is_int(quantity) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        wanted.append((product_id, location_id, quantity))

    if not wanted:
        return []

    product_ids = {w[0] for w in wanted}
    location_ids = {w[1] for w in wanted}
    rows = (
        db.session.query(StockRecord.product_id, StockRecord.location_id, StockRecord.quantity)
        .filter(
            StockRecord.tenant_id == context.tenant_id,
            StockRecord.product_id.in_(product_ids),
            StockRecord.location_id.in_(location_ids),
        )
        .all()
    )
    on_hand = {(r.product_id, r.location_id): r.quantity for r in rows}

    result = []
    for product_id, location_id, quantity in wanted:
        available = on_hand.get((product_id, location_id), 0)
        result.append({
            "product_id": product_id,
            "location_id": location_id,
            "requested": quantity,
            "available": available,
            "satisfiable": available >= quantity,
        })
    return result


def list_movements(
    context,
    *,
    product_id: int | None = None,
    location_id: int | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    limit: int = 200,
) -> list[StockMovement]:
    q = db.session.query(StockMovement).filter(StockMovement.tenant_id == context.tenant_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if location_id is not None:
        q = q.filter(StockMovement.location_id == location_id)
    if movement_type is not None:
        q = q.filter(StockMovement.type == movement_type)
    if reference_type is not None:
        q = q.filter(StockMovement.reference_type == reference_type)
    if reference_id is not None:
        q = q.filter(StockMovement.reference_id == str(reference_id))

    return (
        q.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def transfer_stock(
    context,
    *,
    from_location_id: int,
    to_location_id: int,
    items,
    note: str | None = None,
) -> dict:
    """
    Move stock between two locations of the same tenant.

    One atomic unit: per item an OUT at the source and an IN at the
    destination, both referencing the same TRF-* transfer number.
    """
    if from_location_id == to_location_id:
        raise ValidationError("Cannot transfer to the same location")
    if not items:
        raise ValidationError("Transfer must contain at least one item")

    for item in items:
        _validate_movement(MOVEMENT_OUT, item.get("quantity"))

    source = catalog_service.get_location(context.tenant_id, from_location_id)
    destination = catalog_service.get_location(context.tenant_id, to_location_id)
    products = catalog_service.get_products(context.tenant_id, [i.get("product_id") for i in items])
    names = {pid: p.name for pid, p in products.items()}

    def _op():
        reference = next_document_number(tenant_id=context.tenant_id, document_type="TRANSFER", prefix="TRF")
        movements = []
        for item in items:
            common = dict(
                tenant_id=context.tenant_id,
                product_id=item["product_id"],
                quantity=item["quantity"],
                reference_type=REF_TRANSFER,
                reference_id=reference,
                note=note,
                actor_id=context.actor_id,
                product_name=names.get(item["product_id"]),
            )
            movements.append(_append_movement_locked(
                location_id=source.id, movement_type=MOVEMENT_OUT, **common
            ))
            movements.append(_append_movement_locked(
                location_id=destination.id, movement_type=MOVEMENT_IN, **common
            ))
        return {"reference_id": reference, "movements": movements}

    result = run_atomic(_op)
    logger.info("Transfer %s from location %s to %s", result["reference_id"], from_location_id, to_location_id)
    return result


def get_ledger_quantity(product_id: int, location_id: int) -> int:
    """On-hand derived from the movement log alone."""
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity_delta), 0)
    ).filter(
        StockMovement.product_id == product_id,
        StockMovement.location_id == location_id,
    )
    return int(q.scalar() or 0)


def reconcile_stock(context, *, product_id: int, location_id: int) -> dict:
    """Compare the materialized record with the sum of its movements."""
    record = get_stock(context, product_id=product_id, location_id=location_id)
    ledger_quantity = get_ledger_quantity(product_id, location_id)
    return {
        "product_id": product_id,
        "location_id": location_id,
        "quantity": record.quantity,
        "ledger_quantity": ledger_quantity,
        "consistent": record.quantity == ledger_quantity,
    }


def find_inconsistent_records(tenant_id: int | None = None) -> list[dict]:
    """
    Every StockRecord whose quantity differs from its movement sum.

    Used by the `flask stock reconcile` command.
    """
    sums = (
        db.session.query(
            StockMovement.product_id,
            StockMovement.location_id,
            func.sum(StockMovement.quantity_delta).label("ledger_quantity"),
        )
        .group_by(StockMovement.product_id, StockMovement.location_id)
        .subquery()
    )
    q = db.session.query(
        StockRecord,
        func.coalesce(sums.c.ledger_quantity, 0),
    ).outerjoin(
        sums,
        (sums.c.product_id == StockRecord.product_id) & (sums.c.location_id == StockRecord.location_id),
    )
    if tenant_id is not None:
        q = q.filter(StockRecord.tenant_id == tenant_id)

    mismatches = []
    for record, ledger_quantity in q.all():
        if record.quantity != int(ledger_quantity):
            mismatches.append({
                "tenant_id": record.tenant_id,
                "product_id": record.product_id,
                "location_id": record.location_id,
                "quantity": record.quantity,
                "ledger_quantity": int(ledger_quantity),
            })
    return mismatches
