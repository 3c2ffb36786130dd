"""
Pytest fixtures for kindplate backend tests.

Provides the test app on an in-memory database, a clean session per test,
a business with offers, and helpers that walk an order through checkout.
"""

from datetime import time

import pytest

from kindplate import create_app
from kindplate.actors import Actor
from kindplate.extensions import db
from kindplate.models import Business, Offer
from kindplate.services import cart_service, order_service, payment_service

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'PAYMENT_PROVIDER': 'sandbox',
    'PAYMENT_WEBHOOK_SECRET': 'test-secret',
    'PAYMENT_FAILURE_POLICY': 'retry',
    'NOTIFICATION_CHANNEL': 'log',
    'SERVICE_FEE_FLAT_CENTS': 5000,
    'SERVICE_FEE_BPS': 0,
    'RESERVATION_TTL_MINUTES': 15,
    'LOG_LEVEL': 'WARNING',
}

PROVIDER_KEY = "kindplate.payment_provider"
CHANNEL_KEY = "kindplate.notification_channel"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(dict(TEST_CONFIG))

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data (and fresh provider / channel doubles) for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions.pop(PROVIDER_KEY, None)
        app.extensions.pop(CHANNEL_KEY, None)

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def business(db_session):
    """Bakery in central Moscow."""
    b = Business(name="Corner Bakery", latitude=55.7558, longitude=37.6173)
    db_session.add(b)
    db_session.commit()
    return b


@pytest.fixture(scope='function')
def other_business(db_session):
    b = Business(name="Harbour Deli", latitude=59.9343, longitude=30.3351)
    db_session.add(b)
    db_session.commit()
    return b


@pytest.fixture(scope='function')
def make_offer(db_session):
    """Factory: make_offer(business, quantity=5, **overrides)."""
    def _make(business, quantity=5, **overrides):
        fields = dict(
            business_id=business.id,
            title="Surprise box",
            original_price_cents=30000,
            discounted_price_cents=15000,
            quantity_available=quantity,
            pickup_time_start=time(18, 0),
            pickup_time_end=time(20, 0),
            is_active=True,
        )
        fields.update(overrides)
        offer = Offer(**fields)
        db_session.add(offer)
        db_session.commit()
        return offer
    return _make


@pytest.fixture(scope='function')
def offer(business, make_offer):
    return make_offer(business, quantity=5)


def customer(customer_id=1):
    return Actor("user", customer_id)


def staff(business):
    return Actor("business", business.id)


def draft_order(customer_id, offer, quantity=1, **kwargs):
    cart_service.add_item(customer_id, offer.id, quantity)
    return order_service.create_draft(customer_id, **kwargs)


def confirmed_order(customer_id, offer, quantity=1, **kwargs):
    order = draft_order(customer_id, offer, quantity, **kwargs)
    return order_service.confirm(
        order.id,
        customer(customer_id),
        pickup_time_start=time(18, 0),
        pickup_time_end=time(19, 0),
    )


def paid_order(customer_id, offer, quantity=1):
    order = confirmed_order(customer_id, offer, quantity)
    payment = payment_service.create_payment(order.id, customer(customer_id), payment_method="card")
    payment_service.apply_provider_status(payment.id, "succeeded", source="test")
    return order_service.get_order_for_actor(order.id, customer(customer_id))


def actor_headers(actor_type, actor_id):
    return {"X-Actor-Type": actor_type, "X-Actor-Id": str(actor_id)}
