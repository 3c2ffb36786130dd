# Overview: Pytest coverage for payment creation, signed callbacks, polling and expiry.

"""
Payment Coordinator Tests

SECURITY: unsigned or badly signed callbacks change nothing and leave a
security event. Success is applied once whichever path reports it first.
"""

import json
from datetime import timedelta

import httpx
import pytest

from conftest import PROVIDER_KEY, confirmed_order, customer, draft_order, staff
from kindplate.errors import (
    InvalidAmount,
    PaymentExists,
    PaymentNotFound,
    PaymentTimeout,
    ProviderUnverified,
    StaleState,
    ValidationError,
)
from kindplate.extensions import db
from kindplate.models import Offer, Order, OrderEvent, Payment, SecurityEvent
from kindplate.services import order_service, payment_service
from kindplate.services.payment_providers import (
    HttpPaymentProvider,
    PaymentProvider,
    SandboxProvider,
    get_provider,
)
from kindplate.time_utils import utcnow

SECRET = "test-secret"


def _signed(payload):
    body = json.dumps(payload).encode("utf-8")
    return body, payment_service.compute_signature(SECRET, body)


def _order(order_id):
    return db.session.get(Order, order_id, populate_existing=True)


def _quantity(offer_id):
    return db.session.get(Offer, offer_id, populate_existing=True).quantity_available


def _events(order_id, event_type):
    return db.session.query(OrderEvent).filter_by(order_id=order_id, event_type=event_type).count()


class TimeoutProvider(PaymentProvider):
    name = "sandbox"

    def create_payment(self, **kwargs):
        raise PaymentTimeout()

    def fetch_status(self, reference):
        raise PaymentTimeout()


class TestCreatePayment:
    def test_create(self, db_session, offer):
        order = confirmed_order(1, offer)

        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")

        assert payment.status == payment_service.STATUS_PROCESSING
        assert payment.amount_cents == order.total_cents == 20000
        assert payment.provider == "sandbox"
        assert payment.provider_reference.startswith("sbx_")
        assert payment.confirmation_url
        assert _events(order.id, "payment.created") == 1

    def test_extends_holds_past_payment_window(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")

        hold = _order(order.id).items[0].reservation
        assert hold.expires_at >= payment.expires_at

    def test_only_one_in_flight(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment_service.create_payment(order.id, customer(1), payment_method="card")

        with pytest.raises(PaymentExists):
            payment_service.create_payment(order.id, customer(1), payment_method="sbp")

    def test_draft_cannot_be_paid(self, db_session, offer):
        order = draft_order(1, offer)
        with pytest.raises(StaleState):
            payment_service.create_payment(order.id, customer(1), payment_method="card")

    def test_unknown_method(self, db_session, offer):
        order = confirmed_order(1, offer)
        with pytest.raises(ValidationError):
            payment_service.create_payment(order.id, customer(1), payment_method="cash")

    def test_business_cannot_pay(self, db_session, business, offer):
        order = confirmed_order(1, offer)
        with pytest.raises(ValidationError):
            payment_service.create_payment(order.id, staff(business), payment_method="card")

    def test_provider_timeout_leaves_pending(self, app, db_session, offer):
        app.extensions[PROVIDER_KEY] = TimeoutProvider()
        order = confirmed_order(1, offer)

        with pytest.raises(PaymentTimeout):
            payment_service.create_payment(order.id, customer(1), payment_method="card")

        payment = payment_service.latest_payment(order.id)
        assert payment.status == payment_service.STATUS_PENDING
        assert _order(order.id).status == "confirmed"


class TestCallbacks:
    def test_signed_success_pays_order(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        body, sig = _signed({
            "payment_reference": payment.provider_reference,
            "status": "succeeded",
            "amount_cents": payment.amount_cents,
        })

        result = payment_service.handle_callback(body, sig)

        assert result.status == payment_service.STATUS_SUCCEEDED
        assert result.completed_at is not None
        assert _order(order.id).status == "paid"

    def test_replayed_callback_is_harmless(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        body, sig = _signed({
            "payment_reference": payment.provider_reference,
            "status": "succeeded",
            "amount_cents": payment.amount_cents,
        })

        payment_service.handle_callback(body, sig)
        code = _order(order.id).pickup_code
        payment_service.handle_callback(body, sig)

        assert _events(order.id, "order.paid") == 1
        assert _order(order.id).pickup_code == code
        assert _quantity(offer.id) == 4

    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_unverified_callback_rejected(self, db_session, offer, signature):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        body = json.dumps({
            "payment_reference": payment.provider_reference,
            "status": "succeeded",
            "amount_cents": payment.amount_cents,
        }).encode()

        with pytest.raises(ProviderUnverified):
            payment_service.handle_callback(body, signature, ip_address="203.0.113.9")

        assert _order(order.id).status == "confirmed"
        event = db_session.query(SecurityEvent).filter_by(event_type="PROVIDER_UNVERIFIED").one()
        assert event.success is False
        assert event.ip_address == "203.0.113.9"

    def test_no_secret_configured_fails_closed(self, app, db_session, offer, monkeypatch):
        monkeypatch.setitem(app.config, "PAYMENT_WEBHOOK_SECRET", "")
        body = b'{"payment_id": 1, "status": "succeeded"}'
        assert payment_service.verify_signature(body, payment_service.compute_signature("", body)) is False

    def test_amount_mismatch(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        body, sig = _signed({
            "payment_reference": payment.provider_reference,
            "status": "succeeded",
            "amount_cents": 1,
        })

        with pytest.raises(InvalidAmount):
            payment_service.handle_callback(body, sig)
        assert _order(order.id).status == "confirmed"
        assert db_session.query(SecurityEvent).filter_by(event_type="PAYMENT_AMOUNT_MISMATCH").count() == 1

    def test_unknown_reference(self, db_session):
        body, sig = _signed({"payment_reference": "sbx_nope", "status": "succeeded", "amount_cents": 1})
        with pytest.raises(PaymentNotFound):
            payment_service.handle_callback(body, sig)

    def test_unknown_status(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        body, sig = _signed({"payment_reference": payment.provider_reference, "status": "weird"})
        with pytest.raises(ValidationError):
            payment_service.handle_callback(body, sig)


class TestOutcomes:
    def test_failure_keeps_order_for_retry(self, db_session, offer):
        order = confirmed_order(1, offer)
        first = payment_service.create_payment(order.id, customer(1), payment_method="card")

        payment_service.apply_provider_status(first.id, "failed", source="test")

        assert _order(order.id).status == "confirmed"
        assert _events(order.id, "payment.failed") == 1
        second = payment_service.create_payment(order.id, customer(1), payment_method="sbp")
        assert second.id != first.id

    def test_failure_policy_cancel(self, app, db_session, offer, monkeypatch):
        monkeypatch.setitem(app.config, "PAYMENT_FAILURE_POLICY", "cancel")
        order = confirmed_order(1, offer, quantity=2)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")

        payment_service.apply_provider_status(payment.id, "cancelled", source="test")

        assert _order(order.id).status == "cancelled"
        assert _quantity(offer.id) == 5

    def test_late_success_flags_refund(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        order_service.cancel(order.id, customer(1))

        result = payment_service.apply_provider_status(payment.id, "succeeded", source="callback")

        assert result.refund_required is True
        assert _order(order.id).status == "cancelled"
        assert _events(order.id, "payment.refund_required") == 1
        assert _quantity(offer.id) == 5

    def test_callback_after_poll_success_is_not_a_refund(self, db_session, offer, monkeypatch):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        # Row as read by a callback that started before the poll committed
        before_poll = payment_service._get_payment(payment.id)
        db.session.expunge(before_poll)
        assert before_poll.status == payment_service.STATUS_PROCESSING

        payment_service.apply_provider_status(payment.id, "succeeded", source="poll")
        monkeypatch.setattr(payment_service, "_get_payment", lambda _pid: before_poll)
        payment_service.apply_provider_status(payment.id, "succeeded", source="callback")

        stored = db.session.get(Payment, payment.id, populate_existing=True)
        assert stored.status == payment_service.STATUS_SUCCEEDED
        assert stored.refund_required is False
        assert _order(order.id).status == "paid"
        assert _events(order.id, "payment.refund_required") == 0
        assert _events(order.id, "order.paid") == 1

    def test_processing_then_success_by_poll(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
        get_provider().statuses[payment.provider_reference] = "succeeded"

        status = payment_service.get_order_payment_status(order.id, customer(1))

        assert status["order_status"] == "paid"
        assert status["payment"]["status"] == "succeeded"

    def test_status_without_poll(self, db_session, business, offer):
        order = confirmed_order(1, offer)
        payment_service.create_payment(order.id, customer(1), payment_method="card")

        status = payment_service.get_order_payment_status(order.id, staff(business), poll=False)

        assert status["order_status"] == "confirmed"
        assert status["payment"]["status"] == "processing"


class TestExpiry:
    def test_stale_payment_expires_and_cancels(self, db_session, offer):
        t0 = utcnow()
        order = confirmed_order(1, offer, quantity=2)
        payment_service.create_payment(order.id, customer(1), payment_method="card", now=t0)

        result = payment_service.expire_stale_payments(now=t0 + timedelta(minutes=31))

        assert result == {"expired": 1, "settled": 0}
        payment = payment_service.latest_payment(order.id)
        assert payment.status == payment_service.STATUS_FAILED
        assert payment.failure_reason == "expired"
        assert _order(order.id).status == "cancelled"
        assert _quantity(offer.id) == 5

    def test_provider_settles_before_expiry(self, db_session, offer):
        t0 = utcnow()
        order = confirmed_order(1, offer)
        payment = payment_service.create_payment(order.id, customer(1), payment_method="card", now=t0)
        get_provider().statuses[payment.provider_reference] = "succeeded"

        result = payment_service.expire_stale_payments(now=t0 + timedelta(minutes=31))

        assert result == {"expired": 0, "settled": 1}
        assert _order(order.id).status == "paid"

    def test_nothing_due(self, db_session, offer):
        order = confirmed_order(1, offer)
        payment_service.create_payment(order.id, customer(1), payment_method="card")
        assert payment_service.expire_stale_payments() == {"expired": 0, "settled": 0}


class TestProviders:
    def test_sandbox_selected_by_default(self, db_session):
        assert isinstance(get_provider(), SandboxProvider)
        assert get_provider() is get_provider()

    def test_http_provider_maps_timeout(self, monkeypatch):
        def _timeout(self, method, url, **kwargs):
            raise httpx.ReadTimeout("timed out")

        monkeypatch.setattr(httpx.Client, "request", _timeout)
        provider = HttpPaymentProvider("https://pay.example", "shop", "key", timeout=1)

        with pytest.raises(PaymentTimeout):
            provider.fetch_status("pay_123")

    def test_http_provider_parses_create(self, monkeypatch):
        seen = {}

        def _ok(self, method, url, **kwargs):
            seen.update(method=method, url=url, **kwargs)
            return httpx.Response(200, json={
                "id": "pay_1",
                "status": "pending",
                "confirmation": {"confirmation_url": "https://pay.example/c/pay_1"},
            })

        monkeypatch.setattr(httpx.Client, "request", _ok)
        provider = HttpPaymentProvider("https://pay.example/", "shop", "key")

        result = provider.create_payment(
            amount_cents=20050, currency="RUB", payment_method="sbp",
            return_url="https://app.example/return", idempotence_key="k-1", metadata={"order_id": 1},
        )

        assert result.reference == "pay_1"
        assert result.status == "processing"
        assert seen["url"] == "https://pay.example/payments"
        assert seen["json"]["amount"] == {"value": "200.50", "currency": "RUB"}
        assert seen["json"]["payment_method_data"] == {"type": "sbp"}
        assert seen["headers"] == {"Idempotence-Key": "k-1"}


def test_callback_by_payment_id(db_session, offer):
    order = confirmed_order(1, offer)
    payment = payment_service.create_payment(order.id, customer(1), payment_method="card")
    body, sig = _signed({"payment_id": payment.id, "status": "failed"})

    result = payment_service.handle_callback(body, sig)

    assert result.status == payment_service.STATUS_FAILED
    assert db_session.query(Payment).filter_by(order_id=order.id).count() == 1
