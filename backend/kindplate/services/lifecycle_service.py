# Overview: Order state machine primitive; the only writer of Order.status.

"""
Order Lifecycle

================================================================================
PURPOSE: Move orders through a closed set of states, one guarded step at a time
================================================================================

STATE MACHINE:
    draft -> confirmed -> paid -> ready_for_pickup -> completed
                                \\-----------------> completed
    draft | confirmed | paid -> cancelled

    draft:            created from a cart, inventory HELD
    confirmed:        pickup window chosen, waiting for payment
    paid:             payment succeeded, inventory COMMITTED, pickup_code issued
    ready_for_pickup: business prepared the order (optional)
    completed:        pickup verified, terminal
    cancelled:        terminal, inventory returned

RULES (NON-NEGOTIABLE):
1. Only transitions listed in TRANSITIONS exist.
2. Each transition is one UPDATE ... WHERE id = :id AND status = :expected.
   Zero affected rows raises StaleState; the caller refetches and decides.
3. Each successful transition appends exactly one order event in the same
   transaction.
4. Nothing else in the codebase assigns Order.status.

Callers (order_service, payment_service, pickup_service) own the side
effects: reservations, pickup codes, compensation. This module only
guarantees the step itself.
================================================================================
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update

from ..actors import Actor
from ..errors import InvalidTransition, OrderNotFound, StaleState
from ..extensions import db
from ..models import Order
from .concurrency import conditional_update
from .ledger_service import append_order_event
from kindplate.time_utils import utcnow


STATUS_DRAFT = "draft"
STATUS_CONFIRMED = "confirmed"
STATUS_PAID = "paid"
STATUS_READY = "ready_for_pickup"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_DRAFT: frozenset({STATUS_CONFIRMED, STATUS_CANCELLED}),
    STATUS_CONFIRMED: frozenset({STATUS_PAID, STATUS_CANCELLED}),
    STATUS_PAID: frozenset({STATUS_READY, STATUS_COMPLETED, STATUS_CANCELLED}),
    STATUS_READY: frozenset({STATUS_COMPLETED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}
VALID_STATUSES = set(TRANSITIONS)

# Column stamped when an order enters a state
_STATUS_TIMESTAMPS = {
    STATUS_CONFIRMED: "confirmed_at",
    STATUS_PAID: "paid_at",
    STATUS_READY: "ready_at",
    STATUS_COMPLETED: "completed_at",
    STATUS_CANCELLED: "cancelled_at",
}


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise InvalidTransition(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def load_order(order_id: int) -> Order:
    """Fresh copy of the order from the database (bypasses stale identity map state)."""
    order = db.session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFound(details={"order_id": order_id})
    return order


def transition(
    order_id: int,
    *,
    expected: str,
    new: str,
    actor: Actor,
    reason: str | None = None,
    metadata: dict | None = None,
    values: dict | None = None,
    extra_guards: tuple = (),
    now: datetime | None = None,
) -> Order:
    """
    Perform one guarded status transition and record its event.

    Args:
        expected: status the caller believes the order is in
        new: target status; must be allowed from `expected`
        values: extra columns to set in the same UPDATE (pickup_code, ...)
        extra_guards: extra WHERE conditions (e.g. pickup_verified_at IS NULL)

    Raises:
        InvalidTransition: expected -> new is not in TRANSITIONS
        OrderNotFound: no such order
        StaleState: order is no longer in `expected` (or a guard failed)

    Flushes, never commits.
    """
    validate_status(expected)
    validate_status(new)
    if not can_transition(expected, new):
        raise InvalidTransition(
            f"Cannot move order from {expected} to {new}",
            details={"order_id": order_id, "from": expected, "to": new},
        )

    ts = now or utcnow()
    assignments = dict(values or {})
    stamp = _STATUS_TIMESTAMPS.get(new)
    if stamp:
        assignments.setdefault(stamp, ts)
    assignments.update(status=new, updated_at=ts, version_id=Order.version_id + 1)

    won = conditional_update(
        update(Order)
        .where(Order.id == order_id, Order.status == expected, *extra_guards)
        .values(**assignments)
    )
    if won != 1:
        current = db.session.get(Order, order_id, populate_existing=True)
        if current is None:
            raise OrderNotFound(details={"order_id": order_id})
        raise StaleState(details={"order_id": order_id, "expected": expected, "actual": current.status})

    append_order_event(
        order_id=order_id,
        event_type=f"order.{new}",
        from_status=expected,
        to_status=new,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        reason=reason,
        metadata=metadata,
        occurred_at=ts,
    )
    return load_order(order_id)
