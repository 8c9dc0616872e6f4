# Overview: Concurrency coverage for checkout, numbering and cancellation.

"""
Concurrency tests.

The threaded cases run against a file-backed SQLite database so that every
worker gets its own connection; in-memory SQLite shares one connection.
"""
import os
import tempfile
import threading
import time
import unittest

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from stockledger import create_app
from stockledger.errors import AlreadyCancelled, InsufficientStock, TransientConflict
from stockledger.extensions import db
from stockledger.models import Location, Product, StockMovement, Tenant
from stockledger.services import checkout_service, concurrency, order_service, stock_service
from stockledger.services.concurrency import run_atomic, run_with_retry
from stockledger.services.tenant_service import TenantContext


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "CHECKOUT_RETRY_ATTEMPTS": 5,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            tenant = Tenant(name="Concurrency Tenant", code="CONCUR")
            db.session.add(tenant)
            db.session.commit()
            self.context = TenantContext(tenant_id=tenant.id, actor_id=1)

            location = Location(tenant_id=tenant.id, name="Main", code="MAIN", is_default=True)
            db.session.add(location)
            db.session.commit()
            self.location_id = location.id

            product = Product(tenant_id=tenant.id, sku="CONCUR-1", name="Concurrent Product", price_cents=1000)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _seed(self, quantity):
        with self.app.app_context():
            stock_service.append_movement(
                self.context,
                product_id=self.product_id,
                location_id=self.location_id,
                movement_type="IN",
                quantity=quantity,
            )

    def _on_hand(self):
        with self.app.app_context():
            return stock_service.get_stock(
                self.context, product_id=self.product_id, location_id=self.location_id
            ).quantity

    def _run_workers(self, target, count):
        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    value = target()
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _checkout(self, quantity):
        return checkout_service.checkout(
            self.context,
            items=[{"product_id": self.product_id, "quantity": quantity, "unit_price_cents": 1000}],
        ).order_number

    def test_two_checkouts_race_for_last_units(self):
        self._seed(5)

        results = self._run_workers(lambda: self._checkout(4), 2)

        successes = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        self.assertEqual(len(successes), 1, results)
        self.assertEqual(len(failures), 1, results)
        self.assertEqual(failures[0].available, 1)
        self.assertEqual(self._on_hand(), 1)

    def test_oversubscribed_checkouts_never_oversell(self):
        self._seed(7)

        results = self._run_workers(lambda: self._checkout(2), 6)

        successes = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        self.assertEqual(len(successes), 3, results)
        self.assertEqual(len(failures), 3, results)
        self.assertEqual(self._on_hand(), 1)

        with self.app.app_context():
            outs = db.session.query(StockMovement).filter_by(type="OUT").count()
            self.assertEqual(outs, 3)
            self.assertEqual(stock_service.find_inconsistent_records(), [])

    def test_order_numbers_unique_under_concurrency(self):
        self._seed(10)

        results = self._run_workers(lambda: self._checkout(1), 10)

        errors = [r for r in results if not isinstance(r, str)]
        self.assertFalse(errors)
        self.assertEqual(len(results), len(set(results)))
        self.assertEqual(self._on_hand(), 0)

    def test_concurrent_cancel_restocks_once(self):
        self._seed(5)
        with self.app.app_context():
            order = checkout_service.checkout(
                self.context,
                items=[{"product_id": self.product_id, "quantity": 3, "unit_price_cents": 1000}],
            )
            order_id = order.id

        results = self._run_workers(lambda: order_service.cancel(self.context, order_id).status, 4)

        self.assertEqual(results.count("CANCELLED"), 1, results)
        self.assertEqual(len([r for r in results if isinstance(r, AlreadyCancelled)]), 3, results)
        self.assertEqual(self._on_hand(), 5)


class TestRetryPolicy:
    def test_transient_error_retried_then_succeeds(self, db_session):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("UPDATE stock_records", {}, Exception("database is locked"))
            return "ok"

        assert run_with_retry(flaky, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.parametrize("error", [
        OperationalError("SELECT 1", {}, Exception("could not serialize access")),
        StaleDataError("version mismatch"),
        IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")),
    ])
    def test_exhausted_retries_raise_transient_conflict(self, db_session, error):
        def always_fails():
            raise error

        with pytest.raises(TransientConflict) as exc_info:
            run_with_retry(always_fails, attempts=2, backoff_base=0)

        assert exc_info.value.details["attempts"] == 2
        assert exc_info.value.status_code == 503

    def test_business_errors_are_not_retried(self, db_session):
        calls = []

        def fails():
            calls.append(1)
            raise ValueError("not transient")

        with pytest.raises(ValueError):
            run_with_retry(fails, attempts=3, backoff_base=0)
        assert len(calls) == 1

    def test_unit_starts_after_open_read_transaction(self, db_session, ctx_a, product_a, location_a):
        db_session.query(Tenant).all()
        assert db.session().in_transaction()

        movement = run_atomic(lambda: stock_service._append_movement_locked(
            tenant_id=ctx_a.tenant_id,
            product_id=product_a.id,
            location_id=location_a.id,
            movement_type="IN",
            quantity=3,
        ))

        assert movement.id is not None
        assert db_session.query(StockMovement).count() == 1

    def test_retry_gets_remaining_time_not_full_timeout(self, db_session, monkeypatch):
        timeouts = []
        real_begin = concurrency.begin_serializable

        def recording_begin(timeout_seconds=None):
            timeouts.append(timeout_seconds)
            real_begin(timeout_seconds)

        monkeypatch.setattr(concurrency, "begin_serializable", recording_begin)
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                time.sleep(0.05)
                raise OperationalError("UPDATE stock_records", {}, Exception("database is locked"))
            return "ok"

        assert run_atomic(flaky, attempts=2, timeout_seconds=30, backoff_base=0) == "ok"

        assert len(timeouts) == 2
        assert timeouts[0] <= 30
        assert timeouts[1] <= 30 - 0.05

    def test_unit_past_deadline_is_rolled_back(self, db_session, ctx_a, product_a, location_a):
        def slow_unit():
            return stock_service._append_movement_locked(
                tenant_id=ctx_a.tenant_id,
                product_id=product_a.id,
                location_id=location_a.id,
                movement_type="IN",
                quantity=5,
            )

        with pytest.raises(TransientConflict):
            run_atomic(slow_unit, attempts=1, timeout_seconds=-1)

        assert db_session.query(StockMovement).count() == 0
