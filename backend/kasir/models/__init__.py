from .auth import User, SessionToken
from .tenancy import Store, StoreMember
from .catalog import Product, ProductVariant
from .customers import Customer
from .sales import Transaction, TransactionItem
from .billing import SubscriptionPackage, Subscription, Payment, PaymentEvent

__all__ = [
    'User', 'SessionToken',
    'Store', 'StoreMember',
    'Product', 'ProductVariant',
    'Customer',
    'Transaction', 'TransactionItem',
    'SubscriptionPackage', 'Subscription', 'Payment', 'PaymentEvent',
]
