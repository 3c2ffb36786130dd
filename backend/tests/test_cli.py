# Overview: Pytest coverage for the Flask CLI job commands.

from datetime import timedelta

from conftest import draft_order
from kindplate.extensions import db
from kindplate.models import Business, Offer, Order, SecurityEvent
from kindplate.time_utils import utcnow


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "seed-demo"])
    second = runner.invoke(args=["system", "seed-demo"])

    assert first.exit_code == 0, first.output
    assert "Created business" in first.output
    assert "Using existing business" in second.output
    assert db.session.query(Business).count() == 1
    assert db.session.query(Offer).count() == 2


def test_run_all(app, db_session, offer):
    order = draft_order(1, offer)
    db.session.get(Order, order.id).items[0].reservation.expires_at = utcnow() - timedelta(minutes=1)
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["jobs", "run-all"])

    assert result.exit_code == 0, result.output
    assert "Cancelled 1 order(s)" in result.output
    assert "Recomputed" in result.output
    assert db.session.get(Order, order.id, populate_existing=True).status == "cancelled"


def test_publish_offers(app, db_session, business, make_offer):
    due = make_offer(business, is_active=False, publish_at=utcnow() - timedelta(minutes=1))

    result = app.test_cli_runner().invoke(args=["jobs", "publish-offers"])

    assert result.exit_code == 0, result.output
    assert "Published 1, unpublished 0 offer(s)" in result.output
    assert db.session.get(Offer, due.id, populate_existing=True).is_active is True


def test_quality_recompute_one(app, db_session, business):
    result = app.test_cli_runner().invoke(args=["quality", "recompute", "--business-id", str(business.id)])
    assert result.exit_code == 0, result.output
    assert "Recomputed 1 business(es), 0 failed" in result.output


def test_cleanup_security_events(app, db_session):
    db.session.add(SecurityEvent(event_type="PROVIDER_UNVERIFIED", success=False,
                                 occurred_at=utcnow() - timedelta(days=200)))
    db.session.add(SecurityEvent(event_type="PROVIDER_UNVERIFIED", success=False, occurred_at=utcnow()))
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["maintenance", "cleanup-security-events", "--retention-days", "90"])

    assert "Deleted 1 security event(s)" in result.output
    assert db.session.query(SecurityEvent).count() == 1
