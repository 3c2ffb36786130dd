# Overview: Inventory ledger; the only writer of Offer.quantity_available.

"""
Inventory Ledger

================================================================================
PURPOSE: Grant and return holds on an offer's scarce quantity without locks
================================================================================

PRIMITIVE:
    UPDATE offers
       SET quantity_available = quantity_available - :n
     WHERE id = :id AND is_active AND quantity_available >= :n

    Exactly one affected row means the hold was granted. Zero rows means
    someone else got there first, the offer is gone, or it is sold out; we
    re-read the row to tell those apart. Quantity can never go negative
    because the guard and the decrement are one statement.

RESERVATION STATES:
    HELD -> COMMITTED -> RESTOCKED
    HELD -> RELEASED

    reserve   subtracts and creates a HELD row
    release   HELD -> RELEASED and adds the quantity back
    commit    HELD -> COMMITTED, no quantity change; repeat calls are no-ops
    restock_committed  COMMITTED -> RESTOCKED and adds the quantity back

AVAILABILITY EVENTS:
    Any write that moves quantity_available from 0 to >0 appends a
    "restocked" event; any write that moves it from >0 to 0 appends a
    "depleted" event. Both go in the same transaction as the write.

TRANSACTIONS:
    With autocommit=True (default) each call is its own retried write
    transaction. Order flows pass autocommit=False and commit once for the
    whole order, so a failing line rolls back the lines reserved before it.
================================================================================
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select, update

from ..errors import (
    OfferInactive,
    OfferNotFound,
    OutOfStock,
    InsufficientQuantity,
    ReservationContention,
    ReservationNotHeld,
    ValidationError,
)
from ..extensions import db
from ..models import AvailabilityEvent, Offer, Reservation
from .concurrency import conditional_update, run_in_transaction
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

RESERVATION_HELD = "HELD"
RESERVATION_COMMITTED = "COMMITTED"
RESERVATION_RELEASED = "RELEASED"
RESERVATION_RESTOCKED = "RESTOCKED"

EVENT_RESTOCKED = "restocked"
EVENT_DEPLETED = "depleted"
EVENT_OFFER_PUBLISHED = "offer_published"

# Lost races before we give up and report contention
RESERVE_ATTEMPTS = 5


def _in_transaction(func, autocommit: bool):
    if autocommit:
        return run_in_transaction(func, attempts=5)
    return func()


def _current_quantity(offer_id: int):
    """Fresh (is_active, quantity_available) straight from the database."""
    return db.session.execute(
        select(Offer.is_active, Offer.quantity_available).where(Offer.id == offer_id)
    ).first()


def _record_transition(offer_id: int, before: int, after: int, now: datetime) -> AvailabilityEvent | None:
    if before == 0 and after > 0:
        event_type = EVENT_RESTOCKED
    elif before > 0 and after == 0:
        event_type = EVENT_DEPLETED
    else:
        return None
    event = AvailabilityEvent(
        offer_id=offer_id,
        event_type=event_type,
        quantity_before=before,
        quantity_after=after,
        occurred_at=now,
    )
    db.session.add(event)
    db.session.flush()
    logger.info("Offer %s availability %s (%s -> %s)", offer_id, event_type, before, after)
    return event


def record_offer_published(offer_id: int, quantity: int, *, now: datetime | None = None) -> AvailabilityEvent:
    """Append an offer_published event. Caller commits."""
    event = AvailabilityEvent(
        offer_id=offer_id,
        event_type=EVENT_OFFER_PUBLISHED,
        quantity_before=quantity,
        quantity_after=quantity,
        occurred_at=now or utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event


def _add_quantity(offer_id: int, quantity: int, now: datetime) -> int:
    """Unconditional increment used when returning held or committed units."""
    conditional_update(
        update(Offer)
        .where(Offer.id == offer_id)
        .values(
            quantity_available=Offer.quantity_available + quantity,
            version_id=Offer.version_id + 1,
            updated_at=now,
        )
    )
    row = _current_quantity(offer_id)
    after = row.quantity_available
    _record_transition(offer_id, after - quantity, after, now)
    return after


# =============================================================================
# RESERVE / RELEASE / COMMIT
# =============================================================================

def reserve(
    offer_id: int,
    quantity: int,
    *,
    order_id: int | None = None,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
    autocommit: bool = True,
) -> Reservation:
    """
    Take a hold of `quantity` units of an offer.

    Raises OfferNotFound, OfferInactive, OutOfStock (sold out),
    InsufficientQuantity (fewer units than asked) or ReservationContention.
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    def _op() -> Reservation:
        ts = now or utcnow()
        ttl = ttl_minutes if ttl_minutes is not None else current_app.config["RESERVATION_TTL_MINUTES"]

        for _ in range(RESERVE_ATTEMPTS):
            won = conditional_update(
                update(Offer)
                .where(
                    Offer.id == offer_id,
                    Offer.is_active.is_(True),
                    Offer.quantity_available >= quantity,
                )
                .values(
                    quantity_available=Offer.quantity_available - quantity,
                    version_id=Offer.version_id + 1,
                    updated_at=ts,
                )
            )
            if won == 1:
                break

            row = _current_quantity(offer_id)
            if row is None:
                raise OfferNotFound(details={"offer_id": offer_id})
            if not row.is_active:
                raise OfferInactive(details={"offer_id": offer_id})
            if row.quantity_available == 0:
                raise OutOfStock(details={"offer_id": offer_id, "available": 0})
            if row.quantity_available < quantity:
                raise InsufficientQuantity(
                    details={"offer_id": offer_id, "requested": quantity, "available": row.quantity_available}
                )
            # Enough units showed up again between our UPDATE and SELECT
        else:
            raise ReservationContention(details={"offer_id": offer_id})

        after = _current_quantity(offer_id).quantity_available
        _record_transition(offer_id, after + quantity, after, ts)

        reservation = Reservation(
            token=str(uuid.uuid4()),
            offer_id=offer_id,
            order_id=order_id,
            quantity=quantity,
            status=RESERVATION_HELD,
            expires_at=ts + timedelta(minutes=ttl),
        )
        db.session.add(reservation)
        db.session.flush()
        return reservation

    return _in_transaction(_op, autocommit)


def get_reservation(token: str) -> Reservation | None:
    return db.session.query(Reservation).filter_by(token=token).first()


def release(
    token: str,
    *,
    reason: str = "released",
    now: datetime | None = None,
    autocommit: bool = True,
) -> bool:
    """
    Return a HELD reservation's units to the offer.

    Returns True if this call released it, False if it was already
    released. Releasing a committed reservation is an error; use
    restock_committed for that.
    """
    def _op() -> bool:
        ts = now or utcnow()
        won = conditional_update(
            update(Reservation)
            .where(Reservation.token == token, Reservation.status == RESERVATION_HELD)
            .values(status=RESERVATION_RELEASED, released_at=ts, release_reason=reason)
        )
        res = db.session.execute(
            select(Reservation.offer_id, Reservation.quantity, Reservation.status).where(Reservation.token == token)
        ).first()
        if res is None:
            raise ReservationNotHeld("Unknown reservation", details={"token": token})
        if won != 1:
            if res.status in (RESERVATION_RELEASED, RESERVATION_RESTOCKED):
                return False
            raise ReservationNotHeld(details={"token": token, "status": res.status})

        _add_quantity(res.offer_id, res.quantity, ts)
        return True

    return _in_transaction(_op, autocommit)


def commit(token: str, *, now: datetime | None = None, autocommit: bool = True) -> bool:
    """
    Make a HELD reservation permanent.

    Idempotent: returns True on the first commit and False when the token
    is already COMMITTED. The quantity was subtracted at reserve time, so a
    commit never touches the offer row.
    """
    def _op() -> bool:
        ts = now or utcnow()
        won = conditional_update(
            update(Reservation)
            .where(Reservation.token == token, Reservation.status == RESERVATION_HELD)
            .values(status=RESERVATION_COMMITTED, committed_at=ts)
        )
        if won == 1:
            return True
        status = db.session.execute(
            select(Reservation.status).where(Reservation.token == token)
        ).scalar()
        if status == RESERVATION_COMMITTED:
            return False
        raise ReservationNotHeld(details={"token": token, "status": status})

    return _in_transaction(_op, autocommit)


def restock_committed(
    token: str,
    *,
    reason: str = "order_cancelled",
    now: datetime | None = None,
    autocommit: bool = True,
) -> bool:
    """Compensate a committed reservation (paid order cancelled). Idempotent."""
    def _op() -> bool:
        ts = now or utcnow()
        won = conditional_update(
            update(Reservation)
            .where(Reservation.token == token, Reservation.status == RESERVATION_COMMITTED)
            .values(status=RESERVATION_RESTOCKED, released_at=ts, release_reason=reason)
        )
        res = db.session.execute(
            select(Reservation.offer_id, Reservation.quantity, Reservation.status).where(Reservation.token == token)
        ).first()
        if res is None:
            raise ReservationNotHeld("Unknown reservation", details={"token": token})
        if won != 1:
            if res.status == RESERVATION_RESTOCKED:
                return False
            raise ReservationNotHeld(details={"token": token, "status": res.status})
        _add_quantity(res.offer_id, res.quantity, ts)
        return True

    return _in_transaction(_op, autocommit)


def extend_holds(order_id: int, expires_at: datetime) -> int:
    """Push out expiry of an order's HELD reservations. Caller commits."""
    return conditional_update(
        update(Reservation)
        .where(
            Reservation.order_id == order_id,
            Reservation.status == RESERVATION_HELD,
            Reservation.expires_at < expires_at,
        )
        .values(expires_at=expires_at)
    )


# =============================================================================
# RESTOCK (business adjusts availability)
# =============================================================================

def restock(offer_id: int, delta: int, *, now: datetime | None = None, autocommit: bool = True) -> int:
    """
    Increase (delta > 0) or decrease (delta < 0) an offer's availability.

    A decrease below zero fails with InsufficientQuantity instead of
    clamping. Returns the new quantity_available.
    """
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")

    def _op() -> int:
        ts = now or utcnow()
        stmt = update(Offer).where(Offer.id == offer_id)
        if delta < 0:
            stmt = stmt.where(Offer.quantity_available >= -delta)
        won = conditional_update(
            stmt.values(
                quantity_available=Offer.quantity_available + delta,
                version_id=Offer.version_id + 1,
                updated_at=ts,
            )
        )
        row = _current_quantity(offer_id)
        if row is None:
            raise OfferNotFound(details={"offer_id": offer_id})
        if won != 1:
            raise InsufficientQuantity(
                "Cannot remove more units than are available",
                details={"offer_id": offer_id, "requested": -delta, "available": row.quantity_available},
            )
        after = row.quantity_available
        _record_transition(offer_id, after - delta, after, ts)
        return after

    return _in_transaction(_op, autocommit)


# =============================================================================
# SWEEP
# =============================================================================

def release_orphaned_holds(*, now: datetime | None = None) -> int:
    """
    Release expired HELD reservations that never got attached to an order.

    Holds that belong to an order are reclaimed by cancelling the order
    (order_service.sweep_expired_reservations) so the order and its
    reservations never disagree.
    """
    ts = now or utcnow()
    tokens = [
        t for (t,) in db.session.query(Reservation.token).filter(
            Reservation.status == RESERVATION_HELD,
            Reservation.order_id.is_(None),
            Reservation.expires_at < ts,
        ).all()
    ]
    released = 0
    for token in tokens:
        if release(token, reason="expired", now=ts):
            released += 1
    if released:
        logger.info("Released %s orphaned reservation(s)", released)
    return released

