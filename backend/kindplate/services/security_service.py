# Overview: Security event logging and retention.

from __future__ import annotations

import logging
from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)


def log_security_event(
    *,
    event_type: str,
    success: bool,
    reason: str | None = None,
    resource: str | None = None,
    action: str | None = None,
    actor_id: int | None = None,
    actor_type: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """
    Record a security event in its own commit.

    Called on rejection paths where the surrounding work is about to be
    abandoned, so the event must not share that transaction.
    """
    db.session.rollback()
    event = SecurityEvent(
        event_type=event_type,
        success=success,
        reason=reason,
        resource=resource,
        action=action,
        actor_id=actor_id,
        actor_type=actor_type,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    db.session.commit()
    logger.warning("Security event %s: %s", event_type, reason)
    return event


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """Delete security events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete()
    db.session.commit()
    return deleted
