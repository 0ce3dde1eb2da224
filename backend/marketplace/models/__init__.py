from .accounts import User, SessionToken
from .suppliers import Supplier
from .catalog import Product, ProductVariant, SupplierProductOffer, SupplierVariantOffer
from .orders import Order, OrderItem, Payment, PaymentEvent, OrderActionCode
from .fulfillment import PurchaseOrder, PurchaseOrderItem, DeliveryChallenge
from .payouts import SupplierPaymentAllocation, SupplierLedgerEntry, LedgerImmutableError
from .refunds import Refund, RefundItem, RefundEvent
from .activity import OrderActivity, Notification

__all__ = [
    'User', 'SessionToken',
    'Supplier',
    'Product', 'ProductVariant', 'SupplierProductOffer', 'SupplierVariantOffer',
    'Order', 'OrderItem', 'Payment', 'PaymentEvent', 'OrderActionCode',
    'PurchaseOrder', 'PurchaseOrderItem', 'DeliveryChallenge',
    'SupplierPaymentAllocation', 'SupplierLedgerEntry', 'LedgerImmutableError',
    'Refund', 'RefundItem', 'RefundEvent',
    'OrderActivity', 'Notification',
]
