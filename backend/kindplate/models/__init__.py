from .business import Business, Review
from .offers import Offer
from .inventory import Reservation, AvailabilityEvent
from .cart import Cart, CartItem
from .orders import Order, OrderItem, OrderEvent
from .payments import Payment
from .waitlist import WaitlistSubscription, WaitlistNotificationLog
from .security import SecurityEvent

__all__ = [
    'Business', 'Review',
    'Offer',
    'Reservation', 'AvailabilityEvent',
    'Cart', 'CartItem',
    'Order', 'OrderItem', 'OrderEvent',
    'Payment',
    'WaitlistSubscription', 'WaitlistNotificationLog',
    'SecurityEvent',
]
