from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z


class SecurityEvent(db.Model):
    """
    Security event audit log.

    WHY: Rejected payment callbacks and other authentication failures must
    leave a trace without touching domain state.

    IMMUTABLE: Never update. Deleted only by the retention cleanup job.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_type_occurred", "event_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    actor_id = db.Column(db.Integer, nullable=True)  # Nullable for anonymous callers
    actor_type = db.Column(db.String(16), nullable=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # PROVIDER_UNVERIFIED, ...
    resource = db.Column(db.String(128), nullable=True)  # e.g., "/api/payments/webhook"
    action = db.Column(db.String(64), nullable=True)

    success = db.Column(db.Boolean, nullable=False)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
