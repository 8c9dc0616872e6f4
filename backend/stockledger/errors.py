# Overview: Exception taxonomy shared by the stock ledger, checkout and order lifecycle.

"""
Every failure the core reports is a LedgerError carrying:
- a human message (str(exc))
- a machine code (e.g. "INSUFFICIENT_STOCK")
- the HTTP status the API layer answers with
- a details dict with the identifiers the caller needs to act on it

Validation errors are raised before any mutation. Errors raised inside an
atomic unit are raised after the session has been rolled back.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all core errors."""
    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class ValidationError(LedgerError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"


class TenantContextError(LedgerError):
    """Tenant context missing or unresolvable at the API boundary."""
    code = "TENANT_CONTEXT_MISSING"
    status_code = 401


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class ProductNotFound(NotFoundError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id, message: str | None = None):
        super().__init__(message or f"Product {product_id} not found", {"product_id": product_id})


class LocationNotFound(NotFoundError):
    code = "LOCATION_NOT_FOUND"

    def __init__(self, location_id, message: str | None = None):
        super().__init__(message or f"Location {location_id} not found", {"location_id": location_id})


class CustomerNotFound(NotFoundError):
    code = "CUSTOMER_NOT_FOUND"

    def __init__(self, customer_id):
        super().__init__(f"Customer {customer_id} not found", {"customer_id": customer_id})


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})


# =============================================================================
# STOCK
# =============================================================================

class InsufficientStock(LedgerError):
    """Requested quantity exceeds on-hand at commit time."""
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(
        self,
        *,
        product_id: int,
        location_id: int,
        requested: int,
        available: int,
        product_name: str | None = None,
    ):
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}",
            {
                "product_id": product_id,
                "location_id": location_id,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.location_id = location_id
        self.requested = requested
        self.available = available


class InvalidAdjustment(LedgerError):
    """A manual adjustment would drive on-hand negative."""
    code = "INVALID_ADJUSTMENT"


# =============================================================================
# ORDER LIFECYCLE
# =============================================================================

class AlreadyCancelled(LedgerError):
    code = "ORDER_ALREADY_CANCELLED"
    status_code = 409

    def __init__(self, order_id):
        super().__init__("Order is already cancelled", {"order_id": order_id})


class InvalidTransition(LedgerError):
    code = "INVALID_TRANSITION"
    status_code = 409


class IdempotencyConflict(LedgerError):
    """Idempotency key reused with a different request body."""
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


# =============================================================================
# CONCURRENCY
# =============================================================================

class TransientConflict(LedgerError):
    """Contention, store unavailability or timeout; safe to retry."""
    code = "TRANSIENT_CONFLICT"
    status_code = 503
