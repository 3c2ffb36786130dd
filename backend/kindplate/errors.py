# Overview: Domain error taxonomy shared by services and routes.

"""
Every error a service raises on purpose derives from DomainError.

Routes turn them into JSON responses with a stable machine-readable code,
a human message and optional details. Anything else that escapes a service
is a bug and is logged as a 500.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for expected, user-facing failures."""

    code = "DOMAIN_ERROR"
    http_status = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None, details: dict | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(DomainError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class Forbidden(DomainError):
    code = "FORBIDDEN"
    http_status = 403
    default_message = "Not allowed"


# =============================================================================
# INVENTORY
# =============================================================================

class OfferNotFound(DomainError):
    code = "OFFER_NOT_FOUND"
    http_status = 404
    default_message = "Offer not found"


class OfferInactive(DomainError):
    code = "OFFER_INACTIVE"
    http_status = 409
    default_message = "Offer is no longer available"


class OutOfStock(DomainError):
    """Offer is sold out. Terminal, retrying will not help."""
    code = "OUT_OF_STOCK"
    http_status = 409
    default_message = "This offer is sold out"


class InsufficientQuantity(OutOfStock):
    """Some units remain, but fewer than requested."""
    code = "INSUFFICIENT_QUANTITY"
    default_message = "Not enough units left for this offer"


class ReservationContention(DomainError):
    """Reservation kept losing races after every retry."""
    code = "CONTENTION"
    http_status = 409
    default_message = "Offer is in high demand, please try again"


class ReservationNotHeld(DomainError):
    code = "RESERVATION_NOT_HELD"
    http_status = 409
    default_message = "Reservation is no longer held"


# =============================================================================
# CART
# =============================================================================

class CartConflict(DomainError):
    code = "CART_BUSINESS_CONFLICT"
    http_status = 409
    default_message = "Your cart has items from another business"


class CartItemNotFound(DomainError):
    code = "CART_ITEM_NOT_FOUND"
    http_status = 404
    default_message = "Item is not in the cart"


class EmptyCart(DomainError):
    code = "EMPTY_CART"
    default_message = "Cart is empty"


# =============================================================================
# ORDERS
# =============================================================================

class OrderNotFound(DomainError):
    code = "ORDER_NOT_FOUND"
    http_status = 404
    default_message = "Order not found"


class InvalidTransition(DomainError):
    code = "INVALID_STATE"
    http_status = 409
    default_message = "Order cannot move to that state"


class StaleState(DomainError):
    """Transition precondition no longer holds. Caller must refetch."""
    code = "STALE_STATE"
    http_status = 409
    default_message = "Order was updated elsewhere, please refresh"


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentError(DomainError):
    code = "PAYMENT_ERROR"
    default_message = "Payment could not be processed"


class PaymentNotFound(PaymentError):
    code = "PAYMENT_NOT_FOUND"
    http_status = 404
    default_message = "Payment not found"


class PaymentExists(PaymentError):
    code = "PAYMENT_EXISTS"
    http_status = 409
    default_message = "A payment for this order is already in progress"


class InvalidAmount(PaymentError):
    code = "INVALID_AMOUNT"
    default_message = "Payment amount does not match"


class ProviderUnverified(PaymentError):
    code = "SIGNATURE_INVALID"
    http_status = 401
    default_message = "Callback signature could not be verified"


class PaymentTimeout(PaymentError):
    code = "PAYMENT_PROVIDER_TIMEOUT"
    http_status = 504
    default_message = "Payment provider did not answer in time, please try again later"


class PaymentProviderError(PaymentError):
    code = "PAYMENT_PROVIDER_ERROR"
    http_status = 502
    default_message = "Payment provider rejected the request"


# =============================================================================
# PICKUP
# =============================================================================

class PickupError(DomainError):
    code = "PICKUP_ERROR"


class PickupNotFound(PickupError):
    code = "NOT_FOUND"
    http_status = 404
    default_message = "No order matches this code"


class WrongBusiness(PickupError):
    code = "WRONG_BUSINESS"
    http_status = 403
    default_message = "This order belongs to another business"


class PickupInvalidState(PickupError):
    code = "INVALID_STATE"
    http_status = 409
    default_message = "Order is not ready for pickup"


class AlreadyVerified(PickupError):
    code = "ALREADY_VERIFIED"
    http_status = 409
    default_message = "This order was already picked up"


class CodeMismatch(PickupError):
    code = "CODE_MISMATCH"
    http_status = 422
    default_message = "Pickup code does not match"
