from .customers import Customer, SavedPaymentMethod
from .catalog import Product, ProductSize, StockMovement
from .orders import Order, OrderLine, OrderLineSize, OrderActivity
from .billing import Invoice, PaymentTransaction, AccountTransaction, CreditMemo, Adjustment, GatewayAttempt
from .sequences import SequenceCounter
from .reconciliation import ReconciliationItem

__all__ = [
    'Customer', 'SavedPaymentMethod',
    'Product', 'ProductSize', 'StockMovement',
    'Order', 'OrderLine', 'OrderLineSize', 'OrderActivity',
    'Invoice', 'PaymentTransaction', 'AccountTransaction', 'CreditMemo', 'Adjustment', 'GatewayAttempt',
    'SequenceCounter',
    'ReconciliationItem',
]
