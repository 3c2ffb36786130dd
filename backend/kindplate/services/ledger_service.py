# Overview: Append-only order event log; the single "emit order event" operation.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import OrderEvent
from kindplate.time_utils import utcnow
"""
Order Event Invariants (authoritative)

- Append-only audit log; rows are never updated or deleted.
- Written inside the same DB transaction as the change they record.
- Every order status transition writes exactly one event (lifecycle_service).
- Pickup verification attempts and payment anomalies write their own events.
- actor_type is a closed set.
"""

ACTOR_TYPES = {"user", "business", "system", "admin"}


def append_order_event(
    *,
    order_id: int,
    event_type: str,
    actor_type: str,
    actor_id: int | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    reason: str | None = None,
    metadata: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> OrderEvent:
    """
    Append one order event. Flushes, never commits.

    - No domain logic here.
    - No deletes/updates of existing events.
    """
    if actor_type not in ACTOR_TYPES:
        raise ValueError(f"Invalid actor_type '{actor_type}'")

    ev = OrderEvent(
        order_id=order_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        actor_type=actor_type,
        reason=reason,
        event_metadata=metadata or {},
        created_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_order_events(order_id: int) -> list[OrderEvent]:
    return (
        db.session.query(OrderEvent)
        .filter(OrderEvent.order_id == order_id)
        .order_by(OrderEvent.id.asc())
        .all()
    )
