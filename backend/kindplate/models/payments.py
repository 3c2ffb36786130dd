from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z


class Payment(db.Model):
    """
    Online payment attempt for an order.

    WHY: An order may be paid after one or more failed attempts, so payments
    are separate rows (1:n). At most one may be pending/processing at a time.

    STATUS: pending -> processing -> succeeded | failed | cancelled.
    Driven by provider callbacks, status polling and the local expiry sweep.
    Every change is a conditional UPDATE in payment_service.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("provider_reference", name="uq_payments_provider_reference"),
        db.Index("ix_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="RUB")
    payment_method = db.Column(db.String(16), nullable=False)  # card, sbp
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    idempotence_key = db.Column(db.String(36), nullable=False, unique=True)
    provider = db.Column(db.String(32), nullable=False)
    provider_reference = db.Column(db.String(128), nullable=True)
    confirmation_url = db.Column(db.String(1024), nullable=True)
    return_url = db.Column(db.String(1024), nullable=True)

    failure_reason = db.Column(db.String(255), nullable=True)
    refund_required = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="Payment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "status": self.status,
            "provider": self.provider,
            "provider_reference": self.provider_reference,
            "confirmation_url": self.confirmation_url,
            "failure_reason": self.failure_reason,
            "refund_required": self.refund_required,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "expires_at": to_utc_z(self.expires_at),
            "completed_at": to_utc_z(self.completed_at),
        }

    def __repr__(self) -> str:
        return f"<Payment {self.id} order={self.order_id} {self.status}>"
