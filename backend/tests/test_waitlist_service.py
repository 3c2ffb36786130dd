# Overview: Pytest coverage for waitlist subscriptions, scope matching and anti-spam dispatch.

"""
Waitlist Notifier Tests

1. A restock from zero (or a scheduled publish) notifies matching subscribers
2. Each user is notified once per event under the highest-priority scope
3. The anti-spam window holds back repeats for the same offer and user
4. Depletion and inactive offers notify nobody
"""

from datetime import timedelta

import pytest

from kindplate.errors import OfferNotFound, ValidationError
from kindplate.extensions import db
from kindplate.models import AvailabilityEvent, Offer, WaitlistNotificationLog
from kindplate.services import inventory_service, offer_service, waitlist_service
from kindplate.services.notification_channels import LogChannel, get_channel
from kindplate.time_utils import utcnow


def _sent():
    return get_channel().sent


def _restock_from_zero(offer, units=3):
    inventory_service.restock(offer.id, units)


@pytest.fixture
def sold_out(business, make_offer):
    return make_offer(business, quantity=0, category_id=7)


class TestSubscriptions:
    def test_subscribe_is_idempotent(self, db_session, sold_out):
        sub, created = waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        again, created_again = waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)

        assert created is True
        assert created_again is False
        assert again.id == sub.id

    def test_area_defaults_radius(self, db_session):
        sub, _ = waitlist_service.subscribe(1, "area", latitude=55.75, longitude=37.62)
        assert sub.radius_km == 5.0
        assert sub.scope_id is None

    @pytest.mark.parametrize("kwargs", [
        {"scope_type": "planet", "scope_id": 1},
        {"scope_type": "category"},
        {"scope_type": "category", "scope_id": -3},
        {"scope_type": "area", "latitude": 95.0, "longitude": 37.0},
        {"scope_type": "area", "latitude": 55.0, "longitude": 37.0, "radius_km": 500},
        {"scope_type": "business", "scope_id": 99999},
    ])
    def test_invalid_subscriptions(self, db_session, kwargs):
        scope_type = kwargs.pop("scope_type")
        with pytest.raises(ValidationError):
            waitlist_service.subscribe(1, scope_type, **kwargs)

    def test_unknown_offer(self, db_session):
        with pytest.raises(OfferNotFound):
            waitlist_service.subscribe(1, "offer", scope_id=99999)

    def test_unsubscribe(self, db_session, sold_out, business):
        sub, _ = waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        waitlist_service.subscribe(1, "business", scope_id=business.id)

        assert waitlist_service.unsubscribe(2, sub.id) is False
        assert waitlist_service.unsubscribe(1, sub.id) is True
        assert waitlist_service.unsubscribe_scope(1, "business", business.id) == 1
        assert waitlist_service.list_subscriptions(1) == []


class TestMatching:
    def test_priority_offer_over_business(self, db_session, business, sold_out):
        waitlist_service.subscribe(1, "business", scope_id=business.id)
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        waitlist_service.subscribe(2, "category", scope_id=7)

        assert waitlist_service.match_recipients(sold_out) == {1: "offer", 2: "category"}

    def test_area_uses_distance(self, db_session, business, sold_out):
        # ~1 km from the business
        waitlist_service.subscribe(1, "area", latitude=55.7648, longitude=37.6173, radius_km=2)
        # Same latitude band, ~8 km east
        waitlist_service.subscribe(2, "area", latitude=55.7558, longitude=37.7450, radius_km=3)

        assert waitlist_service.match_recipients(sold_out) == {1: "area"}

    def test_haversine(self):
        # Moscow -> Saint Petersburg is roughly 634 km
        assert waitlist_service.haversine_km(55.7558, 37.6173, 59.9343, 30.3351) == pytest.approx(634, abs=5)


class TestDispatch:
    def test_restock_notifies_subscribers(self, db_session, business, sold_out):
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        waitlist_service.subscribe(2, "business", scope_id=business.id)

        _restock_from_zero(sold_out)
        totals = waitlist_service.dispatch_pending()

        assert totals == {"events": 1, "sent": 2, "throttled": 0, "failed": 0}
        assert isinstance(get_channel(), LogChannel)
        assert sorted(user_id for user_id, _ in _sent()) == [1, 2]
        message = dict(_sent())[1]
        assert message["title"] == "Back in stock"
        assert message["data"]["offer_id"] == sold_out.id
        assert message["data"]["scope"] == "offer"

    def test_user_matching_several_scopes_gets_one(self, db_session, business, sold_out):
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        waitlist_service.subscribe(1, "business", scope_id=business.id)
        waitlist_service.subscribe(1, "area", latitude=55.7558, longitude=37.6173)

        _restock_from_zero(sold_out)
        waitlist_service.dispatch_pending()

        assert len(_sent()) == 1
        log = db_session.query(WaitlistNotificationLog).one()
        assert log.matched_scope == "offer"
        assert log.delivered is True

    def test_antispam_window(self, db_session, sold_out):
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        t0 = utcnow()

        _restock_from_zero(sold_out, units=1)
        waitlist_service.dispatch_pending(now=t0)
        # Sells out and comes back an hour later
        inventory_service.reserve(sold_out.id, 1)
        _restock_from_zero(sold_out, units=1)
        totals = waitlist_service.dispatch_pending(now=t0 + timedelta(hours=1))

        assert totals["throttled"] == 1
        assert totals["sent"] == 0
        assert len(_sent()) == 1

        # Once the window has passed the user hears about it again
        inventory_service.reserve(sold_out.id, 1)
        _restock_from_zero(sold_out, units=1)
        totals = waitlist_service.dispatch_pending(now=t0 + timedelta(hours=25))
        assert totals["sent"] == 1
        assert len(_sent()) == 2

    def test_depletion_notifies_nobody(self, db_session, business, make_offer):
        offer = make_offer(business, quantity=1)
        waitlist_service.subscribe(1, "offer", scope_id=offer.id)

        inventory_service.reserve(offer.id, 1)
        totals = waitlist_service.dispatch_pending()

        assert totals["events"] == 1
        assert totals["sent"] == 0
        assert _sent() == []

    def test_inactive_offer_notifies_nobody(self, db_session, business, make_offer):
        offer = make_offer(business, quantity=0, is_active=False)
        waitlist_service.subscribe(1, "offer", scope_id=offer.id)

        inventory_service.restock(offer.id, 2)
        waitlist_service.dispatch_pending()

        assert _sent() == []

    def test_events_are_consumed_once(self, db_session, sold_out):
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        _restock_from_zero(sold_out)

        waitlist_service.dispatch_pending()
        second = waitlist_service.dispatch_pending()

        assert second["events"] == 0
        assert db_session.query(AvailabilityEvent).filter(AvailabilityEvent.processed_at.is_(None)).count() == 0

    def test_failed_delivery_is_recorded(self, app, db_session, sold_out):
        class DownChannel(LogChannel):
            def send(self, user_id, message):
                return False

        app.extensions["kindplate.notification_channel"] = DownChannel()
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        _restock_from_zero(sold_out)

        totals = waitlist_service.dispatch_pending()

        assert totals["failed"] == 1
        assert db_session.query(WaitlistNotificationLog).one().delivered is False

    def test_channel_error_releases_claim(self, app, db_session, sold_out):
        class BrokenChannel(LogChannel):
            def send(self, user_id, message):
                raise RuntimeError("gateway exploded")

        app.extensions["kindplate.notification_channel"] = BrokenChannel()
        waitlist_service.subscribe(1, "offer", scope_id=sold_out.id)
        _restock_from_zero(sold_out)

        assert waitlist_service.dispatch_pending_safely() is None
        pending = db_session.query(AvailabilityEvent).filter(AvailabilityEvent.processed_at.is_(None)).count()
        assert pending == 1


class TestScheduledPublish:
    def test_publish_notifies_offer_live(self, db_session, business, make_offer):
        now = utcnow()
        offer = make_offer(business, quantity=4, is_active=False, publish_at=now - timedelta(minutes=1))
        waitlist_service.subscribe(1, "business", scope_id=business.id)

        result = offer_service.process_schedule(now=now)
        waitlist_service.dispatch_pending(now=now)

        assert result == {"published": 1, "unpublished": 0}
        assert db_session.get(Offer, offer.id, populate_existing=True).is_active is True
        assert [m["title"] for _, m in _sent()] == ["New offer!"]
        assert _sent()[0][1]["data"]["type"] == "offer_live"

    def test_unpublish(self, db_session, business, make_offer):
        now = utcnow()
        offer = make_offer(business, quantity=4, unpublish_at=now - timedelta(minutes=1))

        result = offer_service.process_schedule(now=now)

        assert result == {"published": 0, "unpublished": 1}
        assert db.session.get(Offer, offer.id, populate_existing=True).is_active is False
