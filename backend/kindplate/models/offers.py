from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z, format_clock_time


class Offer(db.Model):
    """
    Discounted, quantity-limited listing owned by a business.

    INVARIANT: quantity_available >= 0 and is written only through
    inventory_service (conditional UPDATE). Never assign it on a loaded
    instance and flush.
    """
    __tablename__ = "offers"
    __table_args__ = (
        db.CheckConstraint("quantity_available >= 0", name="ck_offers_quantity_nonnegative"),
        db.CheckConstraint("discounted_price_cents <= original_price_cents", name="ck_offers_discount_le_original"),
        db.Index("ix_offers_business_active", "business_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, nullable=True, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Money in cents
    original_price_cents = db.Column(db.Integer, nullable=False)
    discounted_price_cents = db.Column(db.Integer, nullable=False)

    quantity_available = db.Column(db.Integer, nullable=False, default=0)

    # Daily pickup window (local business time)
    pickup_time_start = db.Column(db.Time, nullable=False)
    pickup_time_end = db.Column(db.Time, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Optional schedule; processed by `flask jobs publish-offers`
    publish_at = db.Column(db.DateTime, nullable=True, index=True)
    unpublish_at = db.Column(db.DateTime, nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    business = db.relationship("Business", backref=db.backref("offers", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "category_id": self.category_id,
            "title": self.title,
            "description": self.description,
            "original_price_cents": self.original_price_cents,
            "discounted_price_cents": self.discounted_price_cents,
            "quantity_available": self.quantity_available,
            "pickup_time_start": format_clock_time(self.pickup_time_start),
            "pickup_time_end": format_clock_time(self.pickup_time_end),
            "is_active": self.is_active,
            "publish_at": to_utc_z(self.publish_at),
            "unpublish_at": to_utc_z(self.unpublish_at),
            "version_id": self.version_id,
        }

    def __repr__(self) -> str:
        return f"<Offer {self.id} qty={self.quantity_available}>"
