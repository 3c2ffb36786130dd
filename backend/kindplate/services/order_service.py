# Overview: Order state machine entry points; owns order side effects (reservations, codes, compensation).

from __future__ import annotations

import logging
from datetime import datetime, time

from flask import current_app
from sqlalchemy import exists, select

from ..actors import Actor, SYSTEM
from ..errors import (
    EmptyCart,
    Forbidden,
    InvalidTransition,
    OrderNotFound,
    StaleState,
    ValidationError,
)
from ..extensions import db
from ..models import Offer, Order, OrderItem, Payment, Reservation
from . import cart_service, inventory_service
from .concurrency import run_in_transaction
from .ledger_service import append_order_event
from .lifecycle_service import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_DRAFT,
    STATUS_PAID,
    STATUS_READY,
    load_order,
    transition,
)
from .pickup_service import generate_pickup_code
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)

CUSTOMER_CANCELLABLE = {STATUS_DRAFT, STATUS_CONFIRMED}
STAFF_CANCELLABLE = {STATUS_DRAFT, STATUS_CONFIRMED, STATUS_PAID}
PAID_OR_LATER = {STATUS_PAID, STATUS_READY, STATUS_COMPLETED}
ACTIVE_PAYMENT_STATUSES = ("pending", "processing")


# =============================================================================
# PRICING
# =============================================================================

def compute_service_fee(subtotal_cents: int) -> int:
    """Flat fee plus an optional basis-point share of the subtotal (rounded half up)."""
    flat = int(current_app.config["SERVICE_FEE_FLAT_CENTS"])
    bps = int(current_app.config["SERVICE_FEE_BPS"])
    return flat + (subtotal_cents * bps + 5000) // 10000


def get_pricing_config() -> dict:
    return {
        "service_fee_flat_cents": int(current_app.config["SERVICE_FEE_FLAT_CENTS"]),
        "service_fee_bps": int(current_app.config["SERVICE_FEE_BPS"]),
        "reservation_ttl_minutes": int(current_app.config["RESERVATION_TTL_MINUTES"]),
    }


# =============================================================================
# ACCESS
# =============================================================================

def get_order_for_actor(order_id: int, actor: Actor) -> Order:
    """
    Load an order the actor may see.

    Customers get OrderNotFound for orders that are not theirs so ids do
    not leak; businesses get Forbidden.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(details={"order_id": order_id})
    if actor.is_admin:
        return order
    if actor.is_user and order.customer_id == actor.actor_id:
        return order
    if actor.is_business:
        if order.business_id == actor.actor_id:
            return order
        raise Forbidden("Order belongs to another business")
    raise OrderNotFound(details={"order_id": order_id})


def list_customer_orders(customer_id: int, *, status: str | None = None, limit: int = 50) -> list[Order]:
    q = db.session.query(Order).filter(Order.customer_id == customer_id)
    if status:
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def list_business_orders(business_id: int, *, status: str | None = None, limit: int = 100) -> list[Order]:
    q = db.session.query(Order).filter(Order.business_id == business_id, Order.status != STATUS_DRAFT)
    if status:
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def _order_reservations(order_id: int) -> list[tuple[str, str]]:
    """(token, status) of every reservation attached to the order, read fresh."""
    return [
        (token, status) for token, status in db.session.execute(
            select(Reservation.token, Reservation.status)
            .where(Reservation.order_id == order_id)
            .order_by(Reservation.offer_id)
        ).all()
    ]


# =============================================================================
# PICKUP WINDOW
# =============================================================================

def _validate_pickup_window(order: Order, start: time | None, end: time | None) -> None:
    if start is None or end is None:
        raise ValidationError("pickup_time_start and pickup_time_end are required")
    if start >= end:
        raise ValidationError("pickup_time_start must be before pickup_time_end")

    offer_ids = [item.offer_id for item in order.items]
    offers = db.session.query(Offer).filter(Offer.id.in_(offer_ids)).all()
    for offer in offers:
        if start < offer.pickup_time_start or end > offer.pickup_time_end:
            raise ValidationError(
                "Pickup window is outside the offer's pickup hours",
                details={
                    "offer_id": offer.id,
                    "pickup_time_start": offer.pickup_time_start.strftime("%H:%M"),
                    "pickup_time_end": offer.pickup_time_end.strftime("%H:%M"),
                },
            )


# =============================================================================
# DRAFT
# =============================================================================

def create_draft(
    customer_id: int,
    *,
    pickup_time_start: time | None = None,
    pickup_time_end: time | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Turn the customer's cart into a draft order holding inventory.

    All or nothing: every line is reserved inside one transaction, so if
    any reservation fails the whole draft (and the reservations already
    taken for earlier lines) rolls back.
    """
    actor = Actor("user", customer_id)

    def _op() -> int:
        ts = now or utcnow()
        items = cart_service.get_items(customer_id)
        if not items:
            raise EmptyCart()

        business_ids = {item.offer.business_id for item in items}
        if len(business_ids) != 1:
            raise ValidationError("Cart mixes businesses; clear it and try again")

        order = Order(
            customer_id=customer_id,
            business_id=business_ids.pop(),
            status=STATUS_DRAFT,
            notes=notes,
            created_at=ts,
        )
        db.session.add(order)
        db.session.flush()

        subtotal = 0
        # Stable order keeps lock acquisition consistent across checkouts
        for item in sorted(items, key=lambda i: i.offer_id):
            offer = item.offer
            reservation = inventory_service.reserve(
                offer.id, item.quantity, order_id=order.id, now=ts, autocommit=False
            )
            line_total = offer.discounted_price_cents * item.quantity
            subtotal += line_total
            db.session.add(OrderItem(
                order_id=order.id,
                offer_id=offer.id,
                reservation_id=reservation.id,
                title=offer.title,
                quantity=item.quantity,
                unit_price_cents=offer.discounted_price_cents,
                line_total_cents=line_total,
            ))

        fee = compute_service_fee(subtotal)
        order.subtotal_cents = subtotal
        order.service_fee_cents = fee
        order.total_cents = subtotal + fee
        db.session.flush()

        if pickup_time_start is not None or pickup_time_end is not None:
            _validate_pickup_window(order, pickup_time_start, pickup_time_end)
            order.pickup_time_start = pickup_time_start
            order.pickup_time_end = pickup_time_end

        append_order_event(
            order_id=order.id,
            event_type="order.draft",
            from_status=None,
            to_status=STATUS_DRAFT,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            reason="checkout",
            metadata={"lines": [{"offer_id": i.offer_id, "quantity": i.quantity} for i in items]},
            occurred_at=ts,
        )
        cart_service.clear_cart(customer_id, commit=False)
        return order.id

    order_id = run_in_transaction(_op)
    logger.info("Draft order %s created for customer %s", order_id, customer_id)
    return load_order(order_id)


def update_draft(
    order_id: int,
    actor: Actor,
    *,
    pickup_time_start: time | None = None,
    pickup_time_end: time | None = None,
    notes: str | None = None,
) -> Order:
    """Edit pickup window / notes while the order is still a draft."""
    def _op() -> int:
        order = get_order_for_actor(order_id, actor)
        if not actor.is_user:
            raise Forbidden("Only the customer can edit a draft")
        if order.status != STATUS_DRAFT:
            raise InvalidTransition("Only draft orders can be edited", details={"status": order.status})

        changes = {}
        start = pickup_time_start if pickup_time_start is not None else order.pickup_time_start
        end = pickup_time_end if pickup_time_end is not None else order.pickup_time_end
        if pickup_time_start is not None or pickup_time_end is not None:
            _validate_pickup_window(order, start, end)
            order.pickup_time_start = start
            order.pickup_time_end = end
            changes["pickup_time_start"] = start.strftime("%H:%M")
            changes["pickup_time_end"] = end.strftime("%H:%M")
        if notes is not None:
            order.notes = notes
            changes["notes"] = True
        if not changes:
            raise ValidationError("Nothing to update")
        order.updated_at = utcnow()
        # version_id on the mapper makes this flush fail if a transition ran meanwhile
        db.session.flush()
        append_order_event(
            order_id=order.id,
            event_type="order.details_updated",
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            metadata=changes,
        )
        return order.id

    return load_order(run_in_transaction(_op))


# =============================================================================
# TRANSITIONS
# =============================================================================

def confirm(
    order_id: int,
    actor: Actor,
    *,
    pickup_time_start: time | None = None,
    pickup_time_end: time | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Order:
    """draft -> confirmed. Validates the pickup window; no inventory effect."""
    def _op() -> int:
        order = get_order_for_actor(order_id, actor)
        if not actor.is_user:
            raise Forbidden("Only the customer can confirm an order")
        start = pickup_time_start or order.pickup_time_start
        end = pickup_time_end or order.pickup_time_end
        _validate_pickup_window(order, start, end)

        values = {"pickup_time_start": start, "pickup_time_end": end}
        if notes is not None:
            values["notes"] = notes
        transition(
            order_id,
            expected=STATUS_DRAFT,
            new=STATUS_CONFIRMED,
            actor=actor,
            reason="customer_confirmed",
            metadata={"pickup_time_start": start.strftime("%H:%M"), "pickup_time_end": end.strftime("%H:%M")},
            values=values,
            now=now,
        )
        return order_id

    return load_order(run_in_transaction(_op))


def mark_paid(order_id: int, *, payment_id: int, now: datetime | None = None) -> tuple[Order, bool]:
    """
    confirmed -> paid, inside the caller's transaction.

    Generates the pickup code and commits every reservation. Idempotent:
    an order already paid (or further along) is returned with False, so a
    repeated callback or a callback racing a status poll never commits
    inventory twice. Caller commits.
    """
    order = load_order(order_id)
    if order.status in PAID_OR_LATER:
        return order, False
    if order.status != STATUS_CONFIRMED:
        raise StaleState(
            "Order can no longer be paid",
            details={"order_id": order_id, "expected": STATUS_CONFIRMED, "actual": order.status},
        )

    ts = now or utcnow()
    try:
        order = transition(
            order_id,
            expected=STATUS_CONFIRMED,
            new=STATUS_PAID,
            actor=SYSTEM,
            reason="payment_succeeded",
            metadata={"payment_id": payment_id},
            values={"pickup_code": generate_pickup_code()},
            now=ts,
        )
    except StaleState:
        order = load_order(order_id)
        if order.status in PAID_OR_LATER:
            return order, False
        raise

    for token, _status in _order_reservations(order_id):
        inventory_service.commit(token, now=ts, autocommit=False)
    return order, True


def mark_ready(order_id: int, actor: Actor, *, now: datetime | None = None) -> Order:
    """paid -> ready_for_pickup (business only, optional step)."""
    def _op() -> int:
        order = get_order_for_actor(order_id, actor)
        if not (actor.is_business or actor.is_admin):
            raise Forbidden("Only the business can mark an order ready")
        transition(
            order.id,
            expected=STATUS_PAID,
            new=STATUS_READY,
            actor=actor,
            reason="prepared",
            now=now,
        )
        return order.id

    return load_order(run_in_transaction(_op))


def cancel_in_transaction(order_id: int, actor: Actor, *, reason: str, now: datetime | None = None) -> Order:
    """
    Cancel and compensate inside the caller's transaction.

    HELD reservations are released; COMMITTED ones (order was paid) are
    restocked. Open payments are marked cancelled so a late provider
    success is flagged for refund instead of reviving the order; a payment
    that already succeeded is flagged for refund here.
    """
    from . import payment_service

    ts = now or utcnow()
    order = load_order(order_id)
    allowed = CUSTOMER_CANCELLABLE if actor.is_user else STAFF_CANCELLABLE
    if order.status not in allowed:
        raise InvalidTransition(
            f"Order in status {order.status} cannot be cancelled",
            details={"order_id": order_id, "status": order.status},
        )

    previous = order.status
    order = transition(
        order_id,
        expected=previous,
        new=STATUS_CANCELLED,
        actor=actor,
        reason=reason,
        values={"cancel_reason": reason},
        now=ts,
    )

    for token, status in _order_reservations(order_id):
        if status == inventory_service.RESERVATION_HELD:
            inventory_service.release(token, reason=reason, now=ts, autocommit=False)
        elif status == inventory_service.RESERVATION_COMMITTED:
            inventory_service.restock_committed(token, reason=reason, now=ts, autocommit=False)

    payment_service.cancel_open_payments(order_id, reason="order_cancelled", now=ts)
    if previous in PAID_OR_LATER:
        payment_service.flag_refunds_for_order(order_id, reason="order_cancelled", now=ts)
    logger.info("Order %s cancelled from %s by %s (%s)", order_id, previous, actor.actor_type, reason)
    return order


def cancel(order_id: int, actor: Actor, *, reason: str | None = None, now: datetime | None = None) -> Order:
    def _op() -> int:
        order = get_order_for_actor(order_id, actor)
        cancel_in_transaction(order.id, actor, reason=reason or f"{actor.actor_type}_cancelled", now=now)
        return order.id

    return load_order(run_in_transaction(_op))


# =============================================================================
# SWEEP
# =============================================================================

def sweep_expired_reservations(*, now: datetime | None = None) -> dict:
    """
    Cancel draft/confirmed orders whose holds expired and that have no
    payment in flight; then release expired holds with no order.
    """
    ts = now or utcnow()
    open_payment = exists().where(
        Payment.order_id == Order.id,
        Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
    )
    order_ids = [
        oid for (oid,) in (
            db.session.query(Order.id)
            .join(Reservation, Reservation.order_id == Order.id)
            .filter(
                Order.status.in_((STATUS_DRAFT, STATUS_CONFIRMED)),
                Reservation.status == inventory_service.RESERVATION_HELD,
                Reservation.expires_at < ts,
                ~open_payment,
            )
            .distinct()
            .all()
        )
    ]

    cancelled = 0
    for order_id in order_ids:
        try:
            run_in_transaction(
                lambda oid=order_id: cancel_in_transaction(oid, SYSTEM, reason="reservation_expired", now=ts)
            )
            cancelled += 1
        except (StaleState, InvalidTransition):
            # Moved on (paid or cancelled) while we were sweeping
            db.session.rollback()

    orphans = inventory_service.release_orphaned_holds(now=ts)
    if cancelled or orphans:
        logger.info("Reservation sweep: cancelled %s order(s), released %s orphan hold(s)", cancelled, orphans)
    return {"cancelled_orders": cancelled, "released_orphans": orphans}
