# Overview: Pytest coverage for the order lifecycle.

"""
Order Lifecycle Tests

Covers:
- Status side effects (READY / DELIVERED / CANCELLED) and the status history
- Permissive vs strict transition graph
- Payment accounting (paid never decreases, due clamps at zero)
- Cancellation: AlreadyCancelled, DELIVERED orders, restock once per cancel
- Reopening a cancelled order deducts its stock again
"""

import pytest

from stockledger.errors import (
    AlreadyCancelled,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    ValidationError,
)
from stockledger.models import OrderPayment, OrderStatusEvent
from stockledger.services import checkout_service, order_service, stock_service


@pytest.fixture
def order(db_session, ctx_a, product_a, location_a, stock_in):
    """PENDING order for 4 x Product A with total 100.00."""
    stock_in(ctx_a, product_a, location_a, 10)
    return checkout_service.checkout(
        ctx_a,
        items=[{"product_id": product_a.id, "quantity": 4, "unit_price_cents": 2500}],
    )


def _on_hand(ctx, product, location):
    return stock_service.get_stock(ctx, product_id=product.id, location_id=location.id).quantity


class TestUpdateStatus:
    def test_ready_then_delivered(self, db_session, ctx_a, order):
        ready = order_service.update_status(ctx_a, order.id, "READY", note="Packed")
        assert ready.status == "READY"
        assert ready.is_delivery_ready is True
        assert ready.ready_at is not None
        assert ready.delivered_at is None

        delivered = order_service.update_status(ctx_a, order.id, "DELIVERED")
        assert delivered.status == "DELIVERED"
        assert delivered.delivered_at is not None

        history = order_service.list_order_history(ctx_a, order.id)
        assert [e.status for e in history] == ["PENDING", "READY", "DELIVERED"]
        assert history[1].note == "Packed"
        assert history[1].actor_id == 7

    def test_same_status_appends_event_without_side_effects(self, db_session, ctx_a, order):
        order_service.update_status(ctx_a, order.id, "READY")
        first_ready_at = order_service.get_order(ctx_a, order.id).ready_at

        order_service.update_status(ctx_a, order.id, "READY", note="Still ready")

        reloaded = order_service.get_order(ctx_a, order.id)
        assert reloaded.ready_at == first_ready_at
        assert db_session.query(OrderStatusEvent).filter_by(order_id=order.id).count() == 3

    def test_permissive_by_default(self, db_session, ctx_a, order):
        order_service.update_status(ctx_a, order.id, "DELIVERED")
        back = order_service.update_status(ctx_a, order.id, "PENDING")
        assert back.status == "PENDING"

    def test_strict_graph_when_enabled(self, app, db_session, ctx_a, order, monkeypatch):
        monkeypatch.setitem(app.config, "ENFORCE_STATUS_TRANSITIONS", True)

        with pytest.raises(InvalidTransition):
            order_service.update_status(ctx_a, order.id, "DELIVERED")

        for status in ("CONFIRMED", "PROCESSING", "READY", "DELIVERED"):
            order_service.update_status(ctx_a, order.id, status)

        with pytest.raises(InvalidTransition):
            order_service.update_status(ctx_a, order.id, "PENDING")

        assert order_service.get_order(ctx_a, order.id).status == "DELIVERED"

    def test_unknown_status_rejected(self, db_session, ctx_a, order):
        with pytest.raises(ValidationError):
            order_service.update_status(ctx_a, order.id, "SHIPPED")

    def test_missing_order(self, db_session, ctx_a, tenant_a):
        with pytest.raises(OrderNotFound):
            order_service.update_status(ctx_a, 999999, "READY")

    def test_foreign_tenant_order_not_found(self, db_session, ctx_b, order):
        with pytest.raises(OrderNotFound):
            order_service.update_status(ctx_b, order.id, "READY")
        with pytest.raises(OrderNotFound):
            order_service.get_order(ctx_b, order.id)

    def test_status_cancelled_restocks(self, db_session, ctx_a, order, product_a, location_a):
        assert _on_hand(ctx_a, product_a, location_a) == 6

        cancelled = order_service.update_status(ctx_a, order.id, "CANCELLED", cancel_reason="Customer request")

        assert cancelled.status == "CANCELLED"
        assert cancelled.cancelled_at is not None
        assert cancelled.cancel_reason == "Customer request"
        assert _on_hand(ctx_a, product_a, location_a) == 10


class TestAddPayment:
    def test_partial_then_overpaid(self, db_session, ctx_a, order):
        assert order.total_cents == 10000

        first = order_service.add_payment(ctx_a, order.id, amount_cents=6000, method="CASH")
        assert first.paid_cents == 6000
        assert first.due_cents == 4000
        assert first.payment_status == "PARTIAL"

        second = order_service.add_payment(ctx_a, order.id, amount_cents=5000, method="CARD", reference="AUTH-1")
        assert second.paid_cents == 11000
        assert second.due_cents == 0
        assert second.payment_status == "PAID"

        payments = db_session.query(OrderPayment).filter_by(order_id=order.id).order_by(OrderPayment.id).all()
        assert [p.amount_cents for p in payments] == [6000, 5000]
        assert payments[1].reference == "AUTH-1"

    def test_exact_payment_is_paid(self, db_session, ctx_a, order):
        paid = order_service.add_payment(ctx_a, order.id, amount_cents=10000, method="CASH")
        assert paid.payment_status == "PAID"
        assert paid.due_cents == 0

    def test_payment_status_independent_of_fulfillment(self, db_session, ctx_a, order):
        order_service.update_status(ctx_a, order.id, "DELIVERED")
        delivered = order_service.get_order(ctx_a, order.id)
        assert delivered.payment_status == "UNPAID"

        paid = order_service.add_payment(ctx_a, order.id, amount_cents=10000, method="CASH")
        assert paid.status == "DELIVERED"
        assert paid.payment_status == "PAID"

    @pytest.mark.parametrize("amount", [0, -100, 1.5])
    def test_non_positive_amount_rejected(self, db_session, ctx_a, order, amount):
        with pytest.raises(ValidationError):
            order_service.add_payment(ctx_a, order.id, amount_cents=amount, method="CASH")
        assert order_service.get_order(ctx_a, order.id).paid_cents == 0

    def test_unknown_method_rejected(self, db_session, ctx_a, order):
        with pytest.raises(ValidationError):
            order_service.add_payment(ctx_a, order.id, amount_cents=100, method="BITCOIN")

    def test_cancelled_order_rejects_payment(self, db_session, ctx_a, order):
        order_service.cancel(ctx_a, order.id)
        with pytest.raises(ValidationError):
            order_service.add_payment(ctx_a, order.id, amount_cents=100, method="CASH")

    def test_paid_never_decreases(self, db_session, ctx_a, order):
        seen = []
        for amount in (100, 2500, 1, 9000):
            updated = order_service.add_payment(ctx_a, order.id, amount_cents=amount, method="CASH")
            seen.append(updated.paid_cents)
            assert updated.due_cents == max(0, updated.total_cents - updated.paid_cents)
        assert seen == sorted(seen)


class TestCancel:
    def test_cancel_sets_fields_and_restocks(self, db_session, ctx_a, order, product_a, location_a):
        cancelled = order_service.cancel(ctx_a, order.id)

        assert cancelled.status == "CANCELLED"
        assert cancelled.cancel_reason == "Cancelled by user"
        assert cancelled.cancelled_at is not None
        assert cancelled.stock_restored_at is not None
        assert _on_hand(ctx_a, product_a, location_a) == 10

        restock = stock_service.list_movements(ctx_a, reference_type="ORDER_CANCEL")
        assert len(restock) == 1
        assert restock[0].type == "IN"
        assert restock[0].quantity == 4
        assert restock[0].reference_id == order.order_number

        history = order_service.list_order_history(ctx_a, order.id)
        assert [e.status for e in history] == ["PENDING", "CANCELLED"]

    def test_cancel_twice_raises_and_changes_nothing(self, db_session, ctx_a, order, product_a, location_a):
        first = order_service.cancel(ctx_a, order.id, reason="Duplicate order")
        cancelled_at = first.cancelled_at
        version = first.version_id

        with pytest.raises(AlreadyCancelled):
            order_service.cancel(ctx_a, order.id, reason="Again")

        reloaded = order_service.get_order(ctx_a, order.id)
        assert reloaded.cancel_reason == "Duplicate order"
        assert reloaded.cancelled_at == cancelled_at
        assert reloaded.version_id == version
        assert _on_hand(ctx_a, product_a, location_a) == 10
        assert db_session.query(OrderStatusEvent).filter_by(order_id=order.id).count() == 2

    def test_delivered_order_can_be_cancelled(self, db_session, ctx_a, order, product_a, location_a):
        order_service.update_status(ctx_a, order.id, "DELIVERED")

        cancelled = order_service.cancel(ctx_a, order.id, reason="Returned")

        assert cancelled.status == "CANCELLED"
        assert cancelled.cancel_reason == "Returned"
        assert _on_hand(ctx_a, product_a, location_a) == 10

    def test_strict_graph_blocks_cancel_of_delivered(self, app, db_session, ctx_a, order, monkeypatch):
        monkeypatch.setitem(app.config, "ENFORCE_STATUS_TRANSITIONS", True)
        for status in ("CONFIRMED", "PROCESSING", "READY", "DELIVERED"):
            order_service.update_status(ctx_a, order.id, status)

        with pytest.raises(InvalidTransition):
            order_service.cancel(ctx_a, order.id)
        with pytest.raises(InvalidTransition):
            order_service.update_status(ctx_a, order.id, "CANCELLED")

        assert order_service.get_order(ctx_a, order.id).status == "DELIVERED"

    def test_reopen_deducts_restocked_items_again(self, db_session, ctx_a, order, product_a, location_a):
        order_service.cancel(ctx_a, order.id)
        assert _on_hand(ctx_a, product_a, location_a) == 10

        reopened = order_service.update_status(ctx_a, order.id, "PENDING")

        assert reopened.status == "PENDING"
        assert reopened.cancelled_at is None
        assert reopened.cancel_reason is None
        assert reopened.stock_restored_at is None
        assert _on_hand(ctx_a, product_a, location_a) == 6

        outs = stock_service.list_movements(ctx_a, reference_type="ORDER", reference_id=order.order_number)
        assert sorted(m.quantity for m in outs) == [4, 4]

    def test_reopened_order_cannot_sell_the_same_units_twice(self, db_session, ctx_a, order, product_a, location_a):
        order_service.cancel(ctx_a, order.id)
        order_service.update_status(ctx_a, order.id, "PENDING")
        order_service.update_status(ctx_a, order.id, "DELIVERED")

        with pytest.raises(InsufficientStock):
            checkout_service.checkout(
                ctx_a, items=[{"product_id": product_a.id, "quantity": 7, "unit_price_cents": 100}]
            )
        assert _on_hand(ctx_a, product_a, location_a) == 6

    def test_reopen_fails_when_units_were_sold(self, db_session, ctx_a, order, product_a, location_a):
        order_service.cancel(ctx_a, order.id)
        checkout_service.checkout(
            ctx_a, items=[{"product_id": product_a.id, "quantity": 8, "unit_price_cents": 100}]
        )

        with pytest.raises(InsufficientStock) as exc_info:
            order_service.update_status(ctx_a, order.id, "READY")

        assert exc_info.value.available == 2
        reloaded = order_service.get_order(ctx_a, order.id)
        assert reloaded.status == "CANCELLED"
        assert reloaded.stock_restored_at is not None
        assert _on_hand(ctx_a, product_a, location_a) == 2

    def test_cancel_after_reopen_restocks_again(self, db_session, ctx_a, order, product_a, location_a):
        order_service.cancel(ctx_a, order.id)
        order_service.update_status(ctx_a, order.id, "PENDING")
        order_service.cancel(ctx_a, order.id)

        assert _on_hand(ctx_a, product_a, location_a) == 10
        assert len(stock_service.list_movements(ctx_a, reference_type="ORDER_CANCEL")) == 2
        assert stock_service.find_inconsistent_records() == []

    def test_reopen_without_restock_leaves_stock(self, app, db_session, ctx_a, order, product_a, location_a, monkeypatch):
        monkeypatch.setitem(app.config, "RESTOCK_ON_CANCEL", False)
        order_service.cancel(ctx_a, order.id)

        order_service.update_status(ctx_a, order.id, "PENDING")

        assert _on_hand(ctx_a, product_a, location_a) == 6

    def test_restock_can_be_disabled(self, app, db_session, ctx_a, order, product_a, location_a, monkeypatch):
        monkeypatch.setitem(app.config, "RESTOCK_ON_CANCEL", False)

        cancelled = order_service.cancel(ctx_a, order.id)

        assert cancelled.stock_restored_at is None
        assert _on_hand(ctx_a, product_a, location_a) == 6


class TestListOrders:
    def test_filters_and_tenant_scope(self, db_session, ctx_a, ctx_b, order, product_a, location_a):
        second = checkout_service.checkout(
            ctx_a, items=[{"product_id": product_a.id, "quantity": 1, "unit_price_cents": 100}]
        )
        order_service.cancel(ctx_a, second.id)

        assert {o.id for o in order_service.list_orders(ctx_a)} == {order.id, second.id}
        assert [o.id for o in order_service.list_orders(ctx_a, status="CANCELLED")] == [second.id]
        assert [o.id for o in order_service.list_orders(ctx_a, payment_status="UNPAID", limit=1)] == [second.id]
        assert order_service.list_orders(ctx_b) == []
