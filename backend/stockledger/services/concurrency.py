# Overview: Service-layer operations for concurrency; encapsulates transaction, locking and retry policy.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import TransientConflict
from ..extensions import db

"""
Concurrency model (authoritative)

- No in-process locks. All coordination is delegated to the database.
- An atomic unit runs in a fresh transaction at the strongest isolation the
  backend offers:
    - PostgreSQL: SERIALIZABLE, plus SELECT ... FOR UPDATE on contended rows
      and a statement_timeout bounded by the unit's deadline.
    - SQLite: BEGIN IMMEDIATE (one writer at a time).
- OperationalError (deadlock, serialization failure, lock timeout),
  StaleDataError (version_id mismatch) and IntegrityError (lost race on a
  lazily created unique row) roll back and retry with exponential backoff.
- When attempts or the deadline run out the caller gets TransientConflict.
  Nothing from a failed attempt is ever committed, so the caller may retry.
"""

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS = (OperationalError, StaleDataError, IntegrityError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; BEGIN IMMEDIATE covers it there.
    """
    return query.with_for_update()


def begin_serializable(timeout_seconds: float | None = None) -> None:
    """Open the current unit's transaction at serializable strength."""
    if db.session().in_transaction():
        # Close whatever read-only transaction pre-validation left open.
        db.session.commit()

    dialect = db.engine.dialect.name
    if dialect == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))
    elif dialect == "postgresql":
        db.session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        if timeout_seconds:
            db.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))


def run_with_retry(
    func,
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    deadline: float | None = None,
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Any other exception rolls the session back and propagates unchanged.
    """
    for attempt in range(attempts):
        try:
            return func()
        except TRANSIENT_DB_ERRORS as exc:
            db.session.rollback()
            out_of_time = deadline is not None and time.monotonic() >= deadline
            if attempt >= attempts - 1 or out_of_time:
                logger.warning("Giving up after %d attempt(s): %s", attempt + 1, exc.__class__.__name__)
                raise TransientConflict(
                    "Concurrent update conflict, please retry",
                    details={"attempts": attempt + 1, "reason": exc.__class__.__name__},
                ) from exc
            delay = backoff_base * (2 ** attempt)
            logger.info("Retrying after %s (attempt %d, sleeping %.2fs)", exc.__class__.__name__, attempt + 1, delay)
            time.sleep(delay)
        except Exception:
            db.session.rollback()
            raise


def run_atomic(
    func,
    *,
    attempts: int | None = None,
    timeout_seconds: float | None = None,
    backoff_base: float = 0.1,
):
    """
    Run func as one serializable, all-or-nothing unit and commit it.

    func must not commit; it is re-invoked from scratch on retry. A unit that
    outlives timeout_seconds is rolled back and reported as TransientConflict.
    """
    if attempts is None:
        attempts = current_app.config.get("CHECKOUT_RETRY_ATTEMPTS", 3)
    if timeout_seconds is None:
        timeout_seconds = current_app.config.get("CHECKOUT_TIMEOUT_SECONDS", 30)

    deadline = time.monotonic() + timeout_seconds

    def _unit():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransientConflict(
                "Transaction timed out, please retry",
                details={"timeout_seconds": timeout_seconds},
            )
        begin_serializable(remaining)
        result = func()
        db.session.flush()
        if time.monotonic() > deadline:
            raise TransientConflict(
                "Transaction timed out, please retry",
                details={"timeout_seconds": timeout_seconds},
            )
        db.session.commit()
        return result

    return run_with_retry(_unit, attempts=attempts, backoff_base=backoff_base, deadline=deadline)
