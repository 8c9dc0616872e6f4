# Overview: Service-layer operations for the order lifecycle; encapsulates business logic and database work.

"""
Order Lifecycle Service

WHY: An order is created once by checkout and is afterwards mutated only
through the operations below. Fulfillment status and payment status are
two independent axes.

FULFILLMENT:
    PENDING -> CONFIRMED -> PROCESSING -> READY -> DELIVERED
    CANCELLED reachable from any non-terminal status.
    DELIVERED and CANCELLED are terminal.

    The directed graph is only enforced when ENFORCE_STATUS_TRANSITIONS is
    on. By default any status may follow any other through update_status.

PAYMENT:
    UNPAID -> PARTIAL -> PAID, driven solely by paid_cents vs total_cents.

AUDIT:
- Every update_status/cancel call appends one OrderStatusEvent.
- Every add_payment call appends one OrderPayment.
- Cancellation appends compensating IN movements (ORDER_CANCEL) once per
  cancellation, tracked by Order.stock_restored_at. Reopening a restocked
  order appends OUT movements (ORDER) for the same items.
"""

from __future__ import annotations

import logging

from flask import current_app

from ..errors import (
    AlreadyCancelled,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    ValidationError,
)
from ..extensions import db
from ..models import Order, OrderPayment, OrderStatusEvent
from stockledger.time_utils import utcnow
from .concurrency import lock_for_update, run_atomic
from . import stock_service

logger = logging.getLogger(__name__)


# =============================================================================
# FULFILLMENT STATUS (CONSTANTS)
# =============================================================================

STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_PROCESSING = "PROCESSING"
STATUS_READY = "READY"
STATUS_DELIVERED = "DELIVERED"
STATUS_CANCELLED = "CANCELLED"

ORDER_STATUSES = [
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_PROCESSING,
    STATUS_READY,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
]

TERMINAL_STATUSES = {STATUS_DELIVERED, STATUS_CANCELLED}

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED, STATUS_CANCELLED},
    STATUS_CONFIRMED: {STATUS_PROCESSING, STATUS_CANCELLED},
    STATUS_PROCESSING: {STATUS_READY, STATUS_CANCELLED},
    STATUS_READY: {STATUS_DELIVERED, STATUS_CANCELLED},
    STATUS_DELIVERED: set(),
    STATUS_CANCELLED: set(),
}

DEFAULT_CANCEL_REASON = "Cancelled by user"


# =============================================================================
# PAYMENT STATUS / TENDER TYPES (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_UNPAID = "UNPAID"
PAYMENT_STATUS_PARTIAL = "PARTIAL"
PAYMENT_STATUS_PAID = "PAID"

TENDER_CASH = "CASH"
TENDER_CARD = "CARD"
TENDER_CHECK = "CHECK"
TENDER_BANK_TRANSFER = "BANK_TRANSFER"
TENDER_MOBILE = "MOBILE"
TENDER_GIFT_CARD = "GIFT_CARD"
TENDER_STORE_CREDIT = "STORE_CREDIT"

VALID_TENDER_TYPES = [
    TENDER_CASH,
    TENDER_CARD,
    TENDER_CHECK,
    TENDER_BANK_TRANSFER,
    TENDER_MOBILE,
    TENDER_GIFT_CARD,
    TENDER_STORE_CREDIT,
]


# =============================================================================
# HELPERS
# =============================================================================

def payment_status_for(paid_cents: int, total_cents: int) -> str:
    due = max(0, total_cents - paid_cents)
    if due == 0:
        return PAYMENT_STATUS_PAID
    if paid_cents > 0:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_UNPAID


def is_transition_allowed(current: str, new: str) -> bool:
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(current, set())


def _load_order(context, order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id, tenant_id=context.tenant_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def apply_status_side_effects(order: Order, status: str, *, now=None) -> None:
    """Timestamps and flags that come with entering a status."""
    now = now or utcnow()
    if status == STATUS_READY:
        order.is_delivery_ready = True
        order.ready_at = now
    elif status == STATUS_DELIVERED:
        order.delivered_at = now
    elif status == STATUS_CANCELLED:
        order.cancelled_at = now


def record_status_event(order: Order, status: str, *, note: str | None = None, actor_id: int | None = None) -> OrderStatusEvent:
    event = OrderStatusEvent(
        status=status,
        note=note,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    order.status_history.append(event)
    return event


def _restore_stock_locked(order: Order, *, actor_id: int | None = None) -> list:
    """
    Append one compensating IN movement per order item.

    No-op when stock was already restored for this order.
    """
    if order.stock_restored_at is not None:
        return []

    movements = []
    for item in order.items:
        movements.append(stock_service._append_movement_locked(
            tenant_id=order.tenant_id,
            product_id=item.product_id,
            location_id=order.location_id,
            movement_type=stock_service.MOVEMENT_IN,
            quantity=item.quantity,
            reference_type=stock_service.REF_ORDER_CANCEL,
            reference_id=order.order_number,
            note=f"Cancel {order.order_number}",
            actor_id=actor_id,
        ))
    order.stock_restored_at = utcnow()
    return movements


def _reapply_stock_locked(order: Order, *, actor_id: int | None = None) -> list:
    """
    Deduct the items of a restocked order again when it leaves CANCELLED.

    Raises InsufficientStock when the returned units have since been used.
    """
    if order.stock_restored_at is None:
        return []

    product_totals: dict[int, int] = {}
    names: dict[int, str] = {}
    for item in order.items:
        product_totals[item.product_id] = product_totals.get(item.product_id, 0) + item.quantity
        names[item.product_id] = item.product_name

    for product_id in sorted(product_totals):
        available = stock_service.get_locked_quantity(product_id, order.location_id)
        if available < product_totals[product_id]:
            raise InsufficientStock(
                product_id=product_id,
                location_id=order.location_id,
                requested=product_totals[product_id],
                available=available,
                product_name=names.get(product_id),
            )

    movements = []
    for item in order.items:
        movements.append(stock_service._append_movement_locked(
            tenant_id=order.tenant_id,
            product_id=item.product_id,
            location_id=order.location_id,
            movement_type=stock_service.MOVEMENT_OUT,
            quantity=item.quantity,
            reference_type=stock_service.REF_ORDER,
            reference_id=order.order_number,
            note=f"Reopen {order.order_number}",
            actor_id=actor_id,
            product_name=item.product_name,
        ))
    order.stock_restored_at = None
    return movements


def _reopen_locked(order: Order, *, actor_id: int | None) -> None:
    _reapply_stock_locked(order, actor_id=actor_id)
    order.cancelled_at = None
    order.cancel_reason = None


def _cancel_locked(order: Order, *, reason: str | None, note: str | None, actor_id: int | None) -> None:
    order.status = STATUS_CANCELLED
    apply_status_side_effects(order, STATUS_CANCELLED)
    order.cancel_reason = reason or DEFAULT_CANCEL_REASON
    record_status_event(order, STATUS_CANCELLED, note=note or order.cancel_reason, actor_id=actor_id)

    if current_app.config.get("RESTOCK_ON_CANCEL", True):
        _restore_stock_locked(order, actor_id=actor_id)


# =============================================================================
# READS
# =============================================================================

def get_order(context, order_id: int) -> Order:
    return _load_order(context, order_id)


def list_order_history(context, order_id: int) -> list[OrderStatusEvent]:
    order = _load_order(context, order_id)
    return list(order.status_history)


def list_orders(
    context,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    limit: int = 100,
) -> list[Order]:
    q = db.session.query(Order).filter(Order.tenant_id == context.tenant_id)
    if status is not None:
        q = q.filter(Order.status == status)
    if payment_status is not None:
        q = q.filter(Order.payment_status == payment_status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


# =============================================================================
# MUTATIONS
# =============================================================================

def update_status(
    context,
    order_id: int,
    new_status: str,
    *,
    note: str | None = None,
    cancel_reason: str | None = None,
) -> Order:
    """
    Move an order to new_status and append a status event.

    Side effects apply only when the status actually changes. Entering
    CANCELLED goes through the same path as cancel(), including restock.
    Leaving CANCELLED deducts restocked items again and clears the
    cancellation fields.

    Raises:
        ValidationError: unknown status
        OrderNotFound: order not owned by the tenant
        InvalidTransition: strict graph enabled and the edge is not allowed
        InsufficientStock: reopening a cancelled order whose stock is gone
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}. Must be one of {ORDER_STATUSES}")

    enforce = current_app.config.get("ENFORCE_STATUS_TRANSITIONS", False)

    def _op():
        order = _load_order(context, order_id, lock=True)
        current = order.status

        if enforce and not is_transition_allowed(current, new_status):
            raise InvalidTransition(
                f"Cannot move order from {current} to {new_status}",
                details={"order_id": order.id, "from": current, "to": new_status},
            )

        if current == new_status:
            record_status_event(order, new_status, note=note, actor_id=context.actor_id)
        elif new_status == STATUS_CANCELLED:
            _cancel_locked(order, reason=cancel_reason, note=note, actor_id=context.actor_id)
        else:
            if current == STATUS_CANCELLED:
                _reopen_locked(order, actor_id=context.actor_id)
            order.status = new_status
            apply_status_side_effects(order, new_status)
            record_status_event(order, new_status, note=note, actor_id=context.actor_id)
        return order

    order = run_atomic(_op)
    logger.info("Order %s status -> %s", order.order_number, new_status)
    return order


def add_payment(
    context,
    order_id: int,
    *,
    amount_cents: int,
    method: str,
    reference: str | None = None,
    note: str | None = None,
) -> Order:
    """
    Record a payment against an order.

    paid_cents only grows. Overpayment is accepted and clamps due_cents at 0.

    Raises:
        ValidationError: non-positive amount, unknown tender type, or the
            order is cancelled
        OrderNotFound: order not owned by the tenant
    """
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer")
    if method not in VALID_TENDER_TYPES:
        raise ValidationError(f"Invalid payment method: {method}. Must be one of {VALID_TENDER_TYPES}")

    def _op():
        order = _load_order(context, order_id, lock=True)
        if order.status == STATUS_CANCELLED:
            raise ValidationError(
                "Cannot add payment to a cancelled order",
                details={"order_id": order.id},
            )

        order.payments.append(OrderPayment(
            amount_cents=amount_cents,
            method=method,
            reference=reference,
            note=note,
            actor_id=context.actor_id,
            created_at=utcnow(),
        ))
        order.paid_cents = (order.paid_cents or 0) + amount_cents
        order.due_cents = max(0, order.total_cents - order.paid_cents)
        order.payment_status = payment_status_for(order.paid_cents, order.total_cents)
        return order

    order = run_atomic(_op)
    logger.info("Payment of %s cents on order %s (%s)", amount_cents, order.order_number, order.payment_status)
    return order


def cancel(context, order_id: int, *, reason: str | None = None) -> Order:
    """
    Cancel an order and, when RESTOCK_ON_CANCEL is on, restore its stock.

    Any order that is not already CANCELLED may be cancelled, DELIVERED
    included, unless the strict graph is enabled.

    Raises:
        OrderNotFound: order not owned by the tenant
        AlreadyCancelled: order is already CANCELLED (nothing changes)
        InvalidTransition: strict graph enabled and the order is DELIVERED
    """
    enforce = current_app.config.get("ENFORCE_STATUS_TRANSITIONS", False)

    def _op():
        order = _load_order(context, order_id, lock=True)
        if order.status == STATUS_CANCELLED:
            raise AlreadyCancelled(order.id)
        if enforce and not is_transition_allowed(order.status, STATUS_CANCELLED):
            raise InvalidTransition(
                f"Cannot move order from {order.status} to {STATUS_CANCELLED}",
                details={"order_id": order.id, "from": order.status, "to": STATUS_CANCELLED},
            )
        _cancel_locked(order, reason=reason, note=None, actor_id=context.actor_id)
        return order

    order = run_atomic(_op)
    logger.info("Order %s cancelled", order.order_number)
    return order
