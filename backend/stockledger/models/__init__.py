from .tenancy import Tenant, Location, Customer
from .inventory import Product, StockRecord, StockMovement
from .orders import Order, OrderItem, OrderStatusEvent, OrderPayment, CheckoutIdempotencyKey
from .documents import DocumentSequence

__all__ = [
    'Tenant', 'Location', 'Customer',
    'Product', 'StockRecord', 'StockMovement',
    'Order', 'OrderItem', 'OrderStatusEvent', 'OrderPayment', 'CheckoutIdempotencyKey',
    'DocumentSequence',
]
