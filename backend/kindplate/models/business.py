from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z


class Business(db.Model):
    """
    Food business that publishes offers.

    Profile CRUD lives outside this service; we only keep what ordering,
    area matching and the quality badge need.

    QUALITY BADGE: quality_* / total_orders / completed_orders /
    repeat_customers / avg_rating / is_top are written ONLY by
    quality_service.recompute(). Request handlers never touch them.
    """
    __tablename__ = "businesses"
    __table_args__ = (
        db.Index("ix_businesses_location", "latitude", "longitude"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # Quality badge (derived)
    quality_score = db.Column(db.Float, nullable=False, default=0.0)
    total_orders = db.Column(db.Integer, nullable=False, default=0)
    completed_orders = db.Column(db.Integer, nullable=False, default=0)
    repeat_customers = db.Column(db.Integer, nullable=False, default=0)
    avg_rating = db.Column(db.Float, nullable=False, default=0.0)
    is_top = db.Column(db.Boolean, nullable=False, default=False, index=True)
    quality_updated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "quality": {
                "score": round(self.quality_score or 0.0, 2),
                "total_orders": self.total_orders,
                "completed_orders": self.completed_orders,
                "repeat_customers": self.repeat_customers,
                "avg_rating": round(self.avg_rating or 0.0, 2),
                "is_top": self.is_top,
                "updated_at": to_utc_z(self.quality_updated_at),
            },
        }

    def __repr__(self) -> str:
        return f"<Business {self.id} {self.name!r}>"


class Review(db.Model):
    """Customer review of a completed order. Only published reviews count toward the rating."""
    __tablename__ = "reviews"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_reviews_order"),
        db.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    is_published = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    business = db.relationship("Business", backref=db.backref("reviews", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "rating": self.rating,
            "comment": self.comment,
            "is_published": self.is_published,
            "created_at": to_utc_z(self.created_at),
        }
