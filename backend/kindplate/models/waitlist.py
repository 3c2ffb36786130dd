from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z


class WaitlistSubscription(db.Model):
    """
    User wish to hear about offers in a scope.

    scope_type: offer | business | category (scope_id required)
                area (latitude/longitude/radius_km required, scope_id NULL)

    Created on subscribe, deleted on unsubscribe, never updated.
    """
    __tablename__ = "waitlist_subscriptions"
    __table_args__ = (
        db.Index("ix_waitlist_subscriptions_scope", "scope_type", "scope_id"),
        db.Index("ix_waitlist_subscriptions_area", "scope_type", "latitude"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    scope_type = db.Column(db.String(16), nullable=False)
    scope_id = db.Column(db.Integer, nullable=True)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    radius_km = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "scope_type": self.scope_type,
            "scope_id": self.scope_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius_km": self.radius_km,
            "created_at": to_utc_z(self.created_at),
        }


class WaitlistNotificationLog(db.Model):
    """
    Append-only record of notifications we decided to send.

    ANTI-SPAM: the unique (offer_id, user_id, notification_type, time_bucket)
    key stops two racing dispatchers from both sending inside one window.
    """
    __tablename__ = "waitlist_notification_logs"
    __table_args__ = (
        db.UniqueConstraint(
            "offer_id", "user_id", "notification_type", "time_bucket",
            name="uq_waitlist_notification_bucket",
        ),
        db.Index("ix_waitlist_notification_offer_user_sent", "offer_id", "user_id", "sent_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    notification_type = db.Column(db.String(32), nullable=False)  # restock, offer_live
    matched_scope = db.Column(db.String(16), nullable=False)
    time_bucket = db.Column(db.Integer, nullable=False)
    delivered = db.Column(db.Boolean, nullable=True)  # NULL until the channel answers
    sent_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "user_id": self.user_id,
            "notification_type": self.notification_type,
            "matched_scope": self.matched_scope,
            "delivered": self.delivered,
            "sent_at": to_utc_z(self.sent_at),
        }
