# Overview: Pytest coverage for pickup codes, QR payloads and one-time verification.

import base64

import pytest

from conftest import confirmed_order, customer, paid_order, staff
from kindplate.errors import (
    AlreadyVerified,
    CodeMismatch,
    PickupInvalidState,
    PickupNotFound,
    WrongBusiness,
)
from kindplate.extensions import db
from kindplate.models import Order, OrderEvent
from kindplate.services import order_service, pickup_service
from kindplate.time_utils import utcnow


def _order(order_id):
    return db.session.get(Order, order_id, populate_existing=True)


def _failed_attempts(order_id):
    return (
        db.session.query(OrderEvent)
        .filter_by(order_id=order_id, event_type="pickup.verify_failed")
        .order_by(OrderEvent.id)
        .all()
    )


class TestCodes:
    def test_code_shape(self):
        for _ in range(50):
            code = pickup_service.generate_pickup_code()
            assert len(code) == pickup_service.PICKUP_CODE_LENGTH
            assert set(code) <= set(pickup_service.PICKUP_CODE_ALPHABET)

    def test_normalize(self):
        assert pickup_service.normalize_code(" ab3k-9qzp ") == "AB3K9QZP"
        assert pickup_service.normalize_code(None) == ""

    def test_payload_roundtrip(self):
        payload = pickup_service.build_qr_payload(42, "AB3K9QZP")
        assert payload == "kindplate:pickup:42:AB3K9QZP"
        assert pickup_service.parse_qr_payload(payload) == (42, "AB3K9QZP")

    @pytest.mark.parametrize("payload", ["", "hello", "kindplate:pickup:x:CODE", "kindplate:pickup:7:"])
    def test_malformed_payload(self, payload):
        with pytest.raises(PickupNotFound):
            pickup_service.parse_qr_payload(payload)


class TestIssuePayload:
    def test_paid_order_gets_qr(self, app, db_session, offer):
        order = paid_order(1, offer)
        now = utcnow()

        data = pickup_service.issue_pickup_payload(order.id, customer(1), now=now)

        assert data["pickup_code"] == order.pickup_code
        assert data["payload"] == f"kindplate:pickup:{order.id}:{order.pickup_code}"
        assert data["qr_code"].startswith("data:image/svg+xml;base64,")
        svg = base64.b64decode(data["qr_code"].split(",", 1)[1])
        assert b"<svg" in svg
        assert data["expires_at"].endswith("Z")

    def test_code_does_not_change_between_requests(self, db_session, offer):
        order = paid_order(1, offer)
        first = pickup_service.issue_pickup_payload(order.id, customer(1))
        second = pickup_service.issue_pickup_payload(order.id, customer(1))
        assert first["pickup_code"] == second["pickup_code"]

    def test_unpaid_order(self, db_session, offer):
        order = confirmed_order(1, offer)
        with pytest.raises(PickupInvalidState):
            pickup_service.issue_pickup_payload(order.id, customer(1))

    def test_other_customer(self, db_session, offer):
        order = paid_order(1, offer)
        with pytest.raises(PickupNotFound):
            pickup_service.issue_pickup_payload(order.id, customer(2))


class TestVerify:
    def test_verify_completes_once(self, db_session, business, offer):
        order = paid_order(1, offer)

        completed = pickup_service.verify(order.id, order.pickup_code, business.id)

        assert completed.status == "completed"
        assert completed.pickup_verified_at is not None
        with pytest.raises(AlreadyVerified):
            pickup_service.verify(order.id, order.pickup_code, business.id)

    def test_ready_order_can_be_verified(self, db_session, business, offer):
        order = paid_order(1, offer)
        order_service.mark_ready(order.id, staff(business))
        assert pickup_service.verify(order.id, order.pickup_code, business.id).status == "completed"

    def test_code_is_case_and_space_tolerant(self, db_session, business, offer):
        order = paid_order(1, offer)
        typed = " " + order.pickup_code.lower()[:4] + " " + order.pickup_code.lower()[4:]
        assert pickup_service.verify(order.id, typed, business.id).status == "completed"

    def test_wrong_code_is_audited(self, db_session, business, offer):
        order = paid_order(1, offer)
        wrong = "22222222" if order.pickup_code != "22222222" else "33333333"

        with pytest.raises(CodeMismatch):
            pickup_service.verify(order.id, wrong, business.id)

        assert _order(order.id).status == "paid"
        attempts = _failed_attempts(order.id)
        assert [a.reason for a in attempts] == ["CODE_MISMATCH"]
        assert attempts[0].actor_type == "business"
        assert attempts[0].actor_id == business.id

    def test_wrong_business(self, db_session, offer, other_business):
        order = paid_order(1, offer)
        with pytest.raises(WrongBusiness):
            pickup_service.verify(order.id, order.pickup_code, other_business.id)
        assert _order(order.id).status == "paid"
        assert [a.reason for a in _failed_attempts(order.id)] == ["WRONG_BUSINESS"]

    def test_unpaid_order(self, db_session, business, offer):
        order = confirmed_order(1, offer)
        with pytest.raises(PickupInvalidState):
            pickup_service.verify(order.id, "ANYTHING", business.id)

    def test_unknown_order(self, db_session, business):
        with pytest.raises(PickupNotFound):
            pickup_service.verify(987654, "ABCDEFGH", business.id)

    def test_cancelled_order(self, db_session, business, offer):
        order = paid_order(1, offer)
        code = order.pickup_code
        order_service.cancel(order.id, staff(business))
        with pytest.raises(PickupInvalidState):
            pickup_service.verify(order.id, code, business.id)

    def test_verify_scanned(self, db_session, business, offer):
        order = paid_order(1, offer)
        payload = pickup_service.build_qr_payload(order.id, order.pickup_code)

        assert pickup_service.verify_scanned(payload, business.id).status == "completed"

    def test_completion_event(self, db_session, business, offer):
        order = paid_order(1, offer)
        pickup_service.verify(order.id, order.pickup_code, business.id)

        event = db_session.query(OrderEvent).filter_by(order_id=order.id, event_type="order.completed").one()
        assert (event.from_status, event.to_status) == ("paid", "completed")
        assert event.reason == "pickup_verified"
