# Overview: Offer reads and the publish/unpublish schedule.

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select, update

from ..actors import Actor
from ..errors import Forbidden, OfferNotFound
from ..extensions import db
from ..models import Offer
from . import inventory_service
from .concurrency import conditional_update, run_in_transaction
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)


def get_offer(offer_id: int) -> Offer:
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise OfferNotFound(details={"offer_id": offer_id})
    return offer


def restock_for_business(offer_id: int, delta: int, actor: Actor) -> Offer:
    """Business-side availability change; the ledger does the write."""
    offer = get_offer(offer_id)
    if not (actor.is_admin or (actor.is_business and offer.business_id == actor.actor_id)):
        raise Forbidden("Offer belongs to another business")
    inventory_service.restock(offer_id, delta)
    return db.session.get(Offer, offer_id, populate_existing=True)


def process_schedule(*, now: datetime | None = None) -> dict:
    """
    Activate offers whose publish_at has come and deactivate those past
    unpublish_at. Activation of an offer with stock emits offer_published.
    """
    ts = now or utcnow()

    def _op() -> dict:
        due = db.session.execute(
            select(Offer.id, Offer.quantity_available).where(
                Offer.is_active.is_(False),
                Offer.publish_at.isnot(None),
                Offer.publish_at <= ts,
                or_(Offer.unpublish_at.is_(None), Offer.unpublish_at > ts),
            )
        ).all()
        published = 0
        for offer_id, quantity in due:
            won = conditional_update(
                update(Offer)
                .where(Offer.id == offer_id, Offer.is_active.is_(False))
                .values(is_active=True, updated_at=ts, version_id=Offer.version_id + 1)
            )
            if won == 1:
                published += 1
                if quantity > 0:
                    inventory_service.record_offer_published(offer_id, quantity, now=ts)

        unpublished = conditional_update(
            update(Offer)
            .where(
                Offer.is_active.is_(True),
                Offer.unpublish_at.isnot(None),
                Offer.unpublish_at <= ts,
            )
            .values(is_active=False, updated_at=ts, version_id=Offer.version_id + 1)
        )
        return {"published": published, "unpublished": unpublished}

    result = run_in_transaction(_op)
    if result["published"] or result["unpublished"]:
        logger.info("Offer schedule: %s", result)
    return result
