# Overview: Waitlist subscriptions and the anti-spam notifier fed by availability events.

"""
Waitlist Notifier

Inputs are availability_events rows (restocked, offer_published) written
by the inventory ledger and the offer scheduler. "depleted" events are
consumed silently: running out is never news for a waitlist.

For each event every matching subscriber is found, scopes evaluated in
priority order offer > business > category > area, and each user is
counted once under the highest-priority scope that matched.

ANTI-SPAM: one notification per (offer, user) per WAITLIST_ANTISPAM_HOURS.
The log row is committed before the send. The log's unique key on
(offer_id, user_id, notification_type, time_bucket) stops a racing
dispatcher from sending the same notification twice.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import OfferNotFound, ValidationError
from ..extensions import db
from ..models import (
    AvailabilityEvent,
    Business,
    Offer,
    WaitlistNotificationLog,
    WaitlistSubscription,
)
from .concurrency import conditional_update
from .inventory_service import EVENT_OFFER_PUBLISHED, EVENT_RESTOCKED
from .notification_channels import get_channel
from kindplate.time_utils import epoch_seconds, utcnow

logger = logging.getLogger(__name__)

SCOPE_OFFER = "offer"
SCOPE_BUSINESS = "business"
SCOPE_CATEGORY = "category"
SCOPE_AREA = "area"
SCOPE_PRIORITY = (SCOPE_OFFER, SCOPE_BUSINESS, SCOPE_CATEGORY, SCOPE_AREA)

NOTIFICATION_RESTOCK = "restock"
NOTIFICATION_OFFER_LIVE = "offer_live"
EVENT_NOTIFICATION_TYPES = {
    EVENT_RESTOCKED: NOTIFICATION_RESTOCK,
    EVENT_OFFER_PUBLISHED: NOTIFICATION_OFFER_LIVE,
}

MAX_RADIUS_KM = 50
EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

def _positive_int(value, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def _coordinate(value, field: str, limit: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number")
    if not -limit <= value <= limit:
        raise ValidationError(f"{field} out of range")
    return float(value)


def subscribe(
    user_id: int,
    scope_type: str,
    *,
    scope_id: int | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    radius_km: float | None = None,
) -> tuple[WaitlistSubscription, bool]:
    """
    Create a subscription. Returns (subscription, created).

    Subscribing twice to the same scope returns the existing row.
    """
    if scope_type not in SCOPE_PRIORITY:
        raise ValidationError(f"scope_type must be one of: {', '.join(SCOPE_PRIORITY)}")

    q = db.session.query(WaitlistSubscription).filter_by(user_id=user_id, scope_type=scope_type)
    if scope_type == SCOPE_AREA:
        lat = _coordinate(latitude, "latitude", 90)
        lon = _coordinate(longitude, "longitude", 180)
        radius = radius_km if radius_km is not None else current_app.config["WAITLIST_DEFAULT_RADIUS_KM"]
        if isinstance(radius, bool) or not isinstance(radius, (int, float)) or not 0 < radius <= MAX_RADIUS_KM:
            raise ValidationError(f"radius_km must be between 0 and {MAX_RADIUS_KM}")
        existing = q.filter_by(latitude=lat, longitude=lon, radius_km=float(radius)).first()
        values = {"latitude": lat, "longitude": lon, "radius_km": float(radius)}
    else:
        scope_id = _positive_int(scope_id, "scope_id")
        if scope_type == SCOPE_OFFER and db.session.get(Offer, scope_id) is None:
            raise OfferNotFound(details={"offer_id": scope_id})
        if scope_type == SCOPE_BUSINESS and db.session.get(Business, scope_id) is None:
            raise ValidationError("Business not found", details={"business_id": scope_id})
        existing = q.filter_by(scope_id=scope_id).first()
        values = {"scope_id": scope_id}

    if existing is not None:
        return existing, False

    sub = WaitlistSubscription(user_id=user_id, scope_type=scope_type, **values)
    db.session.add(sub)
    db.session.commit()
    return sub, True


def list_subscriptions(user_id: int) -> list[WaitlistSubscription]:
    return (
        db.session.query(WaitlistSubscription)
        .filter_by(user_id=user_id)
        .order_by(WaitlistSubscription.id.asc())
        .all()
    )


def unsubscribe(user_id: int, subscription_id: int) -> bool:
    deleted = (
        db.session.query(WaitlistSubscription)
        .filter_by(id=subscription_id, user_id=user_id)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return bool(deleted)


def unsubscribe_scope(user_id: int, scope_type: str, scope_id: int | None = None) -> int:
    if scope_type not in SCOPE_PRIORITY:
        raise ValidationError(f"scope_type must be one of: {', '.join(SCOPE_PRIORITY)}")
    q = db.session.query(WaitlistSubscription).filter_by(user_id=user_id, scope_type=scope_type)
    if scope_type != SCOPE_AREA:
        q = q.filter_by(scope_id=_positive_int(scope_id, "scope_id"))
    deleted = q.delete(synchronize_session=False)
    db.session.commit()
    return deleted


# =============================================================================
# MATCHING
# =============================================================================

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def match_recipients(offer: Offer) -> dict[int, str]:
    """user_id -> highest-priority scope that matched this offer."""
    matches: dict[int, str] = {}

    def _take(rows, scope):
        for (user_id,) in rows:
            matches.setdefault(user_id, scope)

    base = db.session.query(WaitlistSubscription.user_id)
    _take(base.filter_by(scope_type=SCOPE_OFFER, scope_id=offer.id).all(), SCOPE_OFFER)
    _take(base.filter_by(scope_type=SCOPE_BUSINESS, scope_id=offer.business_id).all(), SCOPE_BUSINESS)
    if offer.category_id is not None:
        _take(base.filter_by(scope_type=SCOPE_CATEGORY, scope_id=offer.category_id).all(), SCOPE_CATEGORY)

    business = offer.business
    if business is not None and business.latitude is not None and business.longitude is not None:
        # Coarse latitude band in SQL, exact distance in Python
        band = MAX_RADIUS_KM / KM_PER_DEGREE_LAT
        candidates = (
            db.session.query(WaitlistSubscription)
            .filter(
                WaitlistSubscription.scope_type == SCOPE_AREA,
                WaitlistSubscription.latitude.between(business.latitude - band, business.latitude + band),
            )
            .all()
        )
        for sub in candidates:
            if sub.user_id in matches:
                continue
            distance = haversine_km(sub.latitude, sub.longitude, business.latitude, business.longitude)
            if distance <= (sub.radius_km or current_app.config["WAITLIST_DEFAULT_RADIUS_KM"]):
                matches[sub.user_id] = SCOPE_AREA
    return matches


# =============================================================================
# NOTIFY
# =============================================================================

def antispam_window() -> timedelta:
    return timedelta(hours=int(current_app.config["WAITLIST_ANTISPAM_HOURS"]))


def time_bucket(now: datetime, window: timedelta) -> int:
    return epoch_seconds(now) // max(int(window.total_seconds()), 1)


def build_message(offer: Offer, notification_type: str) -> dict:
    if notification_type == NOTIFICATION_OFFER_LIVE:
        title = "New offer!"
        body = f"{offer.title} is available now!"
    else:
        title = "Back in stock"
        body = f"{offer.title} is available again ({offer.quantity_available} left)"
    return {
        "title": title,
        "body": body,
        "data": {
            "type": notification_type,
            "offer_id": offer.id,
            "business_id": offer.business_id,
            "url": f"/vendor/{offer.business_id}",
        },
    }


def _recently_notified(offer_id: int, user_id: int, cutoff: datetime) -> bool:
    return db.session.query(
        db.session.query(WaitlistNotificationLog.id)
        .filter(
            WaitlistNotificationLog.offer_id == offer_id,
            WaitlistNotificationLog.user_id == user_id,
            WaitlistNotificationLog.sent_at > cutoff,
        )
        .exists()
    ).scalar()


def notify_offer(offer_id: int, notification_type: str, *, now: datetime | None = None) -> dict:
    """
    Notify everyone waiting for this offer, at most once per window each.

    Returns counts {"sent", "throttled", "failed"}.
    """
    ts = now or utcnow()
    stats = {"sent": 0, "throttled": 0, "failed": 0}

    offer = db.session.get(Offer, offer_id, populate_existing=True)
    if offer is None or not offer.is_active or offer.quantity_available <= 0:
        return stats

    window = antispam_window()
    cutoff = ts - window
    bucket = time_bucket(ts, window)
    message = build_message(offer, notification_type)
    channel = get_channel()

    for user_id, scope in sorted(match_recipients(offer).items()):
        if _recently_notified(offer_id, user_id, cutoff):
            stats["throttled"] += 1
            continue

        entry = WaitlistNotificationLog(
            offer_id=offer_id,
            user_id=user_id,
            notification_type=notification_type,
            matched_scope=scope,
            time_bucket=bucket,
            sent_at=ts,
        )
        db.session.add(entry)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            stats["throttled"] += 1
            continue

        delivered = channel.send(user_id, {**message, "data": {**message["data"], "scope": scope}})
        entry.delivered = delivered
        db.session.commit()
        stats["sent" if delivered else "failed"] += 1

    logger.info("Waitlist offer %s (%s): %s", offer_id, notification_type, stats)
    return stats


def dispatch_pending(*, now: datetime | None = None, limit: int = 100) -> dict:
    """Consume unprocessed availability events. Each event is claimed before it is handled."""
    ts = now or utcnow()
    totals = {"events": 0, "sent": 0, "throttled": 0, "failed": 0}

    events = (
        db.session.query(AvailabilityEvent.id, AvailabilityEvent.offer_id, AvailabilityEvent.event_type)
        .filter(AvailabilityEvent.processed_at.is_(None))
        .order_by(AvailabilityEvent.id.asc())
        .limit(limit)
        .all()
    )
    for event_id, offer_id, event_type in events:
        claimed = conditional_update(
            update(AvailabilityEvent)
            .where(AvailabilityEvent.id == event_id, AvailabilityEvent.processed_at.is_(None))
            .values(processed_at=ts)
        )
        db.session.commit()
        if claimed != 1:
            continue
        totals["events"] += 1

        notification_type = EVENT_NOTIFICATION_TYPES.get(event_type)
        if notification_type is None:
            continue
        try:
            stats = notify_offer(offer_id, notification_type, now=ts)
        except Exception:
            db.session.rollback()
            # Release the claim so the next run retries this event
            conditional_update(
                update(AvailabilityEvent)
                .where(AvailabilityEvent.id == event_id)
                .values(processed_at=None)
            )
            db.session.commit()
            raise
        for key, value in stats.items():
            totals[key] += value
    return totals


def dispatch_pending_safely(*, now: datetime | None = None) -> dict | None:
    """Inline dispatch after a request commits. Never fails the request."""
    try:
        return dispatch_pending(now=now)
    except Exception:
        db.session.rollback()
        logger.exception("Waitlist dispatch failed; the dispatch job will pick it up")
        return None
