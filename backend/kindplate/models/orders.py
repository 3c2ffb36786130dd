from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z, format_clock_time


class Order(db.Model):
    """
    Customer order created from a cart snapshot.

    WHY: The order, not the cart, is what holds inventory and money. Line
    prices are frozen at creation so later offer edits never change it.

    STATUS is written only by lifecycle_service.transition() which issues a
    conditional UPDATE guarded by the expected prior status.

    pickup_code is generated on confirmed -> paid; pickup_verified_at is set
    exactly once by the pickup verifier.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
        db.Index("ix_orders_business_status", "business_id", "status"),
        db.CheckConstraint(
            "status IN ('draft', 'confirmed', 'paid', 'ready_for_pickup', 'completed', 'cancelled')",
            name="ck_orders_status_valid",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default="draft", index=True)

    # Money in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    service_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    pickup_time_start = db.Column(db.Time, nullable=True)
    pickup_time_end = db.Column(db.Time, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    pickup_code = db.Column(db.String(16), nullable=True)
    pickup_verified_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    ready_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    business = db.relationship("Business", backref=db.backref("orders", lazy=True))
    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, *, include_items: bool = True, include_code: bool = False) -> dict:
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "business_id": self.business_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "service_fee_cents": self.service_fee_cents,
            "total_cents": self.total_cents,
            "pickup_time_start": format_clock_time(self.pickup_time_start),
            "pickup_time_end": format_clock_time(self.pickup_time_end),
            "notes": self.notes,
            "pickup_verified_at": to_utc_z(self.pickup_verified_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "paid_at": to_utc_z(self.paid_at),
            "ready_at": to_utc_z(self.ready_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        if include_code:
            data["pickup_code"] = self.pickup_code
        return data

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.status}>"


class OrderItem(db.Model):
    """Order line. Price is a snapshot of the offer at order time."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False, index=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=True)

    title = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    reservation = db.relationship("Reservation")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderEvent(db.Model):
    """
    Order audit log.

    IMMUTABLE: Never update or delete. Every status transition writes
    exactly one row; pickup verification attempts and payment anomalies
    write additional rows with their own event types.
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.Index("ix_order_events_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)  # order.confirmed, pickup.verify_failed, ...
    from_status = db.Column(db.String(24), nullable=True)
    to_status = db.Column(db.String(24), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)
    actor_type = db.Column(db.String(16), nullable=False)  # user, business, system, admin
    reason = db.Column(db.String(255), nullable=True)
    event_metadata = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "reason": self.reason,
            "metadata": self.event_metadata or {},
            "created_at": to_utc_z(self.created_at),
        }
