from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z


class Reservation(db.Model):
    """
    Temporary hold against an offer's quantity_available.

    The quantity is already subtracted from the offer while HELD.
    HELD -> COMMITTED keeps the decrement permanently.
    HELD -> RELEASED gives it back (abandonment, cancellation, sweep).
    COMMITTED -> RESTOCKED gives it back after the order was paid and then cancelled.

    Status changes go through conditional UPDATEs in inventory_service so
    a token is released or committed at most once.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        db.Index("ix_reservations_status_expires", "status", "expires_at"),
        db.CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(36), nullable=False, unique=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="HELD", index=True)  # HELD, COMMITTED, RELEASED, RESTOCKED
    expires_at = db.Column(db.DateTime, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    committed_at = db.Column(db.DateTime, nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    release_reason = db.Column(db.String(64), nullable=True)

    offer = db.relationship("Offer")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token": self.token,
            "offer_id": self.offer_id,
            "order_id": self.order_id,
            "quantity": self.quantity,
            "status": self.status,
            "expires_at": to_utc_z(self.expires_at),
            "committed_at": to_utc_z(self.committed_at),
            "released_at": to_utc_z(self.released_at),
            "release_reason": self.release_reason,
        }

    def __repr__(self) -> str:
        return f"<Reservation {self.id} offer={self.offer_id} qty={self.quantity} {self.status}>"


class AvailabilityEvent(db.Model):
    """
    Append-only record of an offer crossing zero or being published.

    Written in the same transaction as the quantity change. The waitlist
    notifier consumes rows with processed_at IS NULL after commit.
    """
    __tablename__ = "availability_events"
    __table_args__ = (
        db.Index("ix_availability_events_pending", "processed_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False, index=True)
    event_type = db.Column(db.String(32), nullable=False)  # restocked, depleted, offer_published
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)
    occurred_at = db.Column(db.DateTime, nullable=False)
    processed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "event_type": self.event_type,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "occurred_at": to_utc_z(self.occurred_at),
            "processed_at": to_utc_z(self.processed_at),
        }
