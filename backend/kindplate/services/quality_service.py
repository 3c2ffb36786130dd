# Overview: Quality badge scorer; recomputes a business's derived reputation fields.

from __future__ import annotations

import logging
import math
from datetime import datetime

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Business, Order, OrderEvent, Review
from .lifecycle_service import STATUS_COMPLETED
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# FORMULA
# =============================================================================

WEIGHT_COMPLETION = 0.30
WEIGHT_RATING = 0.25
WEIGHT_REPEAT = 0.25
WEIGHT_ACTIVITY = 0.20

MIN_ORDERS = 10

TOP_MIN_ORDERS = 10
TOP_MIN_SCORE = 75.0
TOP_MIN_COMPLETION = 0.90
TOP_MIN_RATING = 4.5

# Events after which a business's badge may be out of date
TRIGGER_EVENTS = ("order.completed", "order.cancelled")


def compute_score(*, total_orders: int, completed_orders: int, unique_customers: int,
                  repeat_customers: int, avg_rating: float) -> tuple[float, bool]:
    """Return (score in [0, 100], is_top)."""
    if total_orders < MIN_ORDERS:
        return 0.0, False

    completion_rate = completed_orders / total_orders
    repeat_rate = repeat_customers / unique_customers if unique_customers else 0.0
    rating_score = (avg_rating / 5.0) * 100
    activity_score = min(100.0, math.log10(total_orders + 1) * 50)

    score = (
        completion_rate * 100 * WEIGHT_COMPLETION
        + rating_score * WEIGHT_RATING
        + repeat_rate * 100 * WEIGHT_REPEAT
        + activity_score * WEIGHT_ACTIVITY
    )
    score = max(0.0, min(100.0, score))

    is_top = (
        total_orders >= TOP_MIN_ORDERS
        and score >= TOP_MIN_SCORE
        and completion_rate >= TOP_MIN_COMPLETION
        and avg_rating >= TOP_MIN_RATING
    )
    return round(score, 2), is_top


# =============================================================================
# RECOMPUTE
# =============================================================================

def recompute(business_id: int, *, now: datetime | None = None) -> dict:
    """
    Recalculate and store the badge for one business.

    Orders count once they reached paid; abandoned drafts and unpaid
    cancellations say nothing about the business.
    """
    ts = now or utcnow()
    business = db.session.get(Business, business_id)
    if business is None:
        raise ValueError(f"Business {business_id} not found")

    counted = db.session.query(Order).filter(
        Order.business_id == business_id,
        Order.paid_at.isnot(None),
    )
    total_orders = counted.count()
    completed_orders = counted.filter(Order.status == STATUS_COMPLETED).count()

    per_customer = (
        db.session.query(Order.customer_id, func.count(Order.id))
        .filter(Order.business_id == business_id, Order.paid_at.isnot(None))
        .group_by(Order.customer_id)
        .all()
    )
    unique_customers = len(per_customer)
    repeat_customers = sum(1 for _, n in per_customer if n > 1)

    avg_rating = (
        db.session.query(func.avg(Review.rating))
        .filter(Review.business_id == business_id, Review.is_published.is_(True))
        .scalar()
    )
    avg_rating = float(avg_rating or 0.0)

    score, is_top = compute_score(
        total_orders=total_orders,
        completed_orders=completed_orders,
        unique_customers=unique_customers,
        repeat_customers=repeat_customers,
        avg_rating=avg_rating,
    )

    business.quality_score = score
    business.total_orders = total_orders
    business.completed_orders = completed_orders
    business.repeat_customers = repeat_customers
    business.avg_rating = round(avg_rating, 2)
    business.is_top = is_top
    business.quality_updated_at = ts
    db.session.commit()

    return {
        "business_id": business_id,
        "quality_score": score,
        "total_orders": total_orders,
        "completed_orders": completed_orders,
        "repeat_customers": repeat_customers,
        "avg_rating": round(avg_rating, 2),
        "is_top": is_top,
    }


def stale_business_ids() -> list[int]:
    """Businesses with completions, cancellations or reviews newer than their badge."""
    event_changed = (
        db.session.query(Order.business_id)
        .join(OrderEvent, OrderEvent.order_id == Order.id)
        .join(Business, Business.id == Order.business_id)
        .filter(
            OrderEvent.event_type.in_(TRIGGER_EVENTS),
            or_(Business.quality_updated_at.is_(None), OrderEvent.created_at > Business.quality_updated_at),
        )
        .distinct()
    )
    review_changed = (
        db.session.query(Review.business_id)
        .join(Business, Business.id == Review.business_id)
        .filter(or_(Business.quality_updated_at.is_(None), Review.created_at > Business.quality_updated_at))
        .distinct()
    )
    ids = {bid for (bid,) in event_changed.all()} | {bid for (bid,) in review_changed.all()}
    return sorted(ids)


def recompute_many(business_ids: list[int], *, now: datetime | None = None) -> dict:
    """Recompute each business independently. A failure is logged and left for the next run."""
    done = failed = 0
    for business_id in business_ids:
        try:
            recompute(business_id, now=now)
            done += 1
        except Exception:
            db.session.rollback()
            failed += 1
            logger.exception("Quality recompute failed for business %s", business_id)
    return {"recomputed": done, "failed": failed}


def recompute_stale(*, now: datetime | None = None) -> dict:
    return recompute_many(stale_business_ids(), now=now)


def recompute_all(*, now: datetime | None = None) -> dict:
    ids = [bid for (bid,) in db.session.query(Business.id).order_by(Business.id).all()]
    return recompute_many(ids, now=now)
