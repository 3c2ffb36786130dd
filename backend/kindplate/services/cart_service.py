# Overview: Cart aggregator; per-customer working set with a single-business rule.

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CartConflict,
    CartItemNotFound,
    InsufficientQuantity,
    OfferInactive,
    OfferNotFound,
    ValidationError,
)
from ..extensions import db
from ..models import Cart, CartItem, Offer
from .concurrency import conditional_update, run_in_transaction, run_with_retry
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 99


def _validate_quantity(quantity) -> int:
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationError("quantity must be an integer")
    if quantity <= 0 or quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"quantity must be between 1 and {MAX_LINE_QUANTITY}")
    return quantity


def _load_orderable_offer(offer_id: int) -> Offer:
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise OfferNotFound(details={"offer_id": offer_id})
    if not offer.is_active:
        raise OfferInactive(details={"offer_id": offer_id})
    return offer


def _check_advisory_quantity(offer: Offer, quantity: int) -> None:
    # Advisory only; the real guard is the reservation at checkout.
    if quantity > offer.quantity_available:
        raise InsufficientQuantity(
            details={"offer_id": offer.id, "requested": quantity, "available": offer.quantity_available}
        )


def get_items(customer_id: int) -> list[CartItem]:
    return (
        db.session.query(CartItem)
        .filter(CartItem.customer_id == customer_id)
        .order_by(CartItem.id.asc())
        .all()
    )


def cart_business_ids(customer_id: int) -> set[int]:
    rows = (
        db.session.query(Offer.business_id)
        .join(CartItem, CartItem.offer_id == Offer.id)
        .filter(CartItem.customer_id == customer_id)
        .distinct()
        .all()
    )
    return {business_id for (business_id,) in rows}


def get_cart(customer_id: int) -> dict:
    """Cart view with totals. Prices are the current offer prices."""
    items = get_items(customer_id)
    lines = [item.to_dict() for item in items]
    business_ids = {line["business_id"] for line in lines}
    return {
        "customer_id": customer_id,
        "business_id": next(iter(business_ids)) if len(business_ids) == 1 else None,
        "items": lines,
        "item_count": sum(line["quantity"] for line in lines),
        "subtotal_cents": sum(line["line_total_cents"] or 0 for line in lines),
    }


def _claim_cart(customer_id: int, business_id: int, *, replace: bool, ts: datetime) -> None:
    """
    Make business_id the cart's business, or raise CartConflict.

    The carts row is the single point of contention: the first add for a
    business wins the guarded UPDATE, and a concurrent add for another
    business waits on the row and then fails its precondition.
    """
    if db.session.get(Cart, customer_id) is None:
        db.session.add(Cart(customer_id=customer_id, business_id=None, updated_at=ts))
        db.session.flush()

    won = conditional_update(
        update(Cart)
        .where(
            Cart.customer_id == customer_id,
            or_(Cart.business_id.is_(None), Cart.business_id == business_id),
        )
        .values(business_id=business_id, updated_at=ts)
    )
    if won:
        return

    current = db.session.execute(
        select(Cart.business_id).where(Cart.customer_id == customer_id)
    ).scalar_one()
    holding = current in cart_business_ids(customer_id)
    if holding and not replace:
        raise CartConflict(details={"cart_business_id": current, "offer_business_id": business_id})

    # Take over from a business whose lines are gone (or being replaced)
    won = conditional_update(
        update(Cart)
        .where(Cart.customer_id == customer_id, Cart.business_id == current)
        .values(business_id=business_id, updated_at=ts)
    )
    if not won:
        raise CartConflict(details={"offer_business_id": business_id})


def add_item(
    customer_id: int,
    offer_id: int,
    quantity: int = 1,
    *,
    replace: bool = False,
    now: datetime | None = None,
) -> dict:
    """
    Add an offer to the cart, or increase its quantity if already present.

    If the cart holds items from another business this fails with
    CartConflict unless replace=True, in which case the old items are
    removed first.
    """
    quantity = _validate_quantity(quantity)

    def _op() -> dict:
        ts = now or utcnow()
        offer = _load_orderable_offer(offer_id)

        _claim_cart(customer_id, offer.business_id, replace=replace, ts=ts)
        if replace:
            (
                db.session.query(CartItem)
                .filter(
                    CartItem.customer_id == customer_id,
                    CartItem.offer_id.in_(
                        select(Offer.id).where(Offer.business_id != offer.business_id)
                    ),
                )
                .delete(synchronize_session=False)
            )

        item = (
            db.session.query(CartItem)
            .filter_by(customer_id=customer_id, offer_id=offer_id)
            .first()
        )
        new_quantity = quantity + (item.quantity if item else 0)
        _validate_quantity(new_quantity)
        _check_advisory_quantity(offer, new_quantity)

        if item:
            item.quantity = new_quantity
            item.updated_at = ts
        else:
            db.session.add(CartItem(customer_id=customer_id, offer_id=offer_id, quantity=new_quantity))
        db.session.flush()
        return get_cart(customer_id)

    try:
        return run_in_transaction(_op)
    except IntegrityError:
        # A concurrent add created the carts row or this line first; retry on top of it
        db.session.rollback()
        return run_in_transaction(_op)


def update_item(
    customer_id: int,
    offer_id: int,
    quantity: int,
    *,
    now: datetime | None = None,
) -> dict:
    """Set the quantity of an existing cart line."""
    quantity = _validate_quantity(quantity)

    def _op() -> dict:
        item = (
            db.session.query(CartItem)
            .filter_by(customer_id=customer_id, offer_id=offer_id)
            .first()
        )
        if item is None:
            raise CartItemNotFound(details={"offer_id": offer_id})
        offer = _load_orderable_offer(offer_id)
        _check_advisory_quantity(offer, quantity)
        item.quantity = quantity
        item.updated_at = now or utcnow()
        db.session.commit()
        return get_cart(customer_id)

    return run_with_retry(_op)


def remove_item(customer_id: int, offer_id: int) -> dict:
    deleted = (
        db.session.query(CartItem)
        .filter_by(customer_id=customer_id, offer_id=offer_id)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    if not deleted:
        raise CartItemNotFound(details={"offer_id": offer_id})
    return get_cart(customer_id)


def clear_cart(customer_id: int, *, commit: bool = True) -> int:
    deleted = (
        db.session.query(CartItem)
        .filter_by(customer_id=customer_id)
        .delete(synchronize_session=False)
    )
    if commit:
        db.session.commit()
    return deleted
