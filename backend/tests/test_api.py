# Overview: Pytest coverage for the HTTP surface (actor headers, status codes, error bodies).

"""
API Tests

Walks the customer / business flow over HTTP and checks that domain
errors come back as {"error": CODE, "message", "details"} with the right
status, and that routes refuse callers of the wrong actor type.
"""

import json

import pytest

from conftest import actor_headers
from kindplate.services import inventory_service, payment_service

USER = actor_headers("user", 1)
OTHER_USER = actor_headers("user", 2)
ADMIN = actor_headers("admin", 1)


def _business_headers(business):
    return actor_headers("business", business.id)


def _checkout(client, offer, quantity=1, headers=USER):
    r = client.post("/api/cart", json={"offer_id": offer.id, "quantity": quantity}, headers=headers)
    assert r.status_code == 200, r.get_json()
    r = client.post("/api/orders/draft", json={}, headers=headers)
    assert r.status_code == 201, r.get_json()
    order_id = r.get_json()["id"]
    r = client.post(
        f"/api/orders/{order_id}/confirm",
        json={"pickup_time_start": "18:00", "pickup_time_end": "19:00"},
        headers=headers,
    )
    assert r.status_code == 200, r.get_json()
    return order_id


def _pay(client, order_id, headers=USER):
    r = client.post("/api/payments/create", json={"order_id": order_id, "payment_method": "card"}, headers=headers)
    assert r.status_code == 201, r.get_json()
    payment = r.get_json()["payment"]
    body = json.dumps({
        "payment_reference": payment["provider_reference"],
        "status": "succeeded",
        "amount_cents": payment["amount_cents"],
    }).encode()
    r = client.post(
        "/api/payments/webhook",
        data=body,
        headers={"X-Payment-Signature": payment_service.compute_signature("test-secret", body),
                 "Content-Type": "application/json"},
    )
    assert r.status_code == 200, r.get_json()
    return payment


class TestActors:
    @pytest.mark.parametrize("method,path", [
        ("get", "/api/cart"),
        ("post", "/api/orders/draft"),
        ("get", "/api/orders/mine"),
        ("post", "/api/payments/create"),
        ("post", "/api/pickup/scan"),
        ("get", "/api/waitlist/subscriptions"),
    ])
    def test_requires_actor(self, client, db_session, method, path):
        r = getattr(client, method)(path)
        assert r.status_code == 401

    def test_malformed_actor_id(self, client, db_session):
        r = client.get("/api/cart", headers={"X-Actor-Type": "user", "X-Actor-Id": "abc"})
        assert r.status_code == 401

    def test_business_cannot_use_cart(self, client, db_session, business):
        r = client.get("/api/cart", headers=_business_headers(business))
        assert r.status_code == 403

    def test_customer_cannot_restock(self, client, db_session, offer):
        r = client.post(f"/api/offers/{offer.id}/restock", json={"delta": 1}, headers=USER)
        assert r.status_code == 403


class TestPublic:
    def test_health(self, client, db_session):
        r = client.get("/api/health")
        assert r.status_code == 200
        body = r.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"

    def test_order_config(self, client, db_session):
        r = client.get("/api/orders/config")
        assert r.get_json()["service_fee_flat_cents"] == 5000

    def test_get_offer(self, client, db_session, offer):
        r = client.get(f"/api/offers/{offer.id}")
        assert r.status_code == 200
        assert r.get_json()["pickup_time_start"] == "18:00"

        r = client.get("/api/offers/99999")
        assert r.status_code == 404
        assert r.get_json()["error"] == "OFFER_NOT_FOUND"


class TestCheckoutFlow:
    def test_full_flow(self, client, db_session, business, offer):
        order_id = _checkout(client, offer, quantity=2)
        _pay(client, order_id)

        r = client.get(f"/api/orders/{order_id}", headers=USER)
        assert r.get_json()["status"] == "paid"
        assert "pickup_code" not in r.get_json()

        r = client.get(f"/api/orders/{order_id}/qr", headers=USER)
        assert r.status_code == 200
        qr = r.get_json()
        assert qr["qr_code"].startswith("data:image/svg+xml;base64,")

        r = client.post(f"/api/orders/{order_id}/ready", headers=_business_headers(business))
        assert r.get_json()["status"] == "ready_for_pickup"

        r = client.post("/api/pickup/scan", json={"payload": qr["payload"]}, headers=_business_headers(business))
        assert r.status_code == 200
        assert r.get_json()["order"]["status"] == "completed"

        r = client.get(f"/api/orders/{order_id}/events", headers=ADMIN)
        types = [e["event_type"] for e in r.get_json()["events"]]
        assert types == [
            "order.draft", "order.confirmed", "payment.created",
            "order.paid", "order.ready_for_pickup", "order.completed",
        ]

    def test_payment_status_poll(self, client, db_session, offer):
        order_id = _checkout(client, offer)
        client.post("/api/payments/create", json={"order_id": order_id, "payment_method": "sbp"}, headers=USER)

        r = client.get(f"/api/payments/order/{order_id}/status", headers=USER)

        assert r.status_code == 200
        assert r.get_json()["order_status"] == "confirmed"
        assert r.get_json()["payment"]["status"] == "processing"

    def test_second_payment_conflicts(self, client, db_session, offer):
        order_id = _checkout(client, offer)
        client.post("/api/payments/create", json={"order_id": order_id, "payment_method": "card"}, headers=USER)

        r = client.post("/api/payments/create", json={"order_id": order_id, "payment_method": "card"}, headers=USER)

        assert r.status_code == 409
        assert r.get_json()["error"] == "PAYMENT_EXISTS"

    def test_out_of_stock_at_checkout(self, client, db_session, business, make_offer):
        offer = make_offer(business, quantity=1)
        client.post("/api/cart", json={"offer_id": offer.id, "quantity": 1}, headers=USER)
        inventory_service.reserve(offer.id, 1)

        r = client.post("/api/orders/draft", json={}, headers=USER)

        assert r.status_code == 409
        assert r.get_json()["error"] == "OUT_OF_STOCK"

    def test_cart_conflict(self, client, db_session, offer, other_business, make_offer):
        foreign = make_offer(other_business, quantity=2)
        client.post("/api/cart", json={"offer_id": offer.id}, headers=USER)

        r = client.post("/api/cart", json={"offer_id": foreign.id}, headers=USER)

        assert r.status_code == 409
        body = r.get_json()
        assert body["error"] == "CART_BUSINESS_CONFLICT"
        assert set(body) == {"error", "message", "details"}

    def test_bad_quantity(self, client, db_session, offer):
        r = client.post("/api/cart", json={"offer_id": offer.id, "quantity": "lots"}, headers=USER)
        assert r.status_code == 400
        assert r.get_json()["error"] == "VALIDATION_ERROR"

    def test_confirm_with_offset_time_is_rejected(self, client, db_session, offer):
        client.post("/api/cart", json={"offer_id": offer.id}, headers=USER)
        order_id = client.post("/api/orders/draft", json={}, headers=USER).get_json()["id"]

        r = client.post(
            f"/api/orders/{order_id}/confirm",
            json={"pickup_time_start": "18:00+03:00", "pickup_time_end": "19:00"},
            headers=USER,
        )

        assert r.status_code == 400
        assert r.get_json()["error"] == "VALIDATION_ERROR"
        assert client.get(f"/api/orders/{order_id}", headers=USER).get_json()["status"] == "draft"

    def test_cancel_draft(self, client, db_session, offer):
        client.post("/api/cart", json={"offer_id": offer.id, "quantity": 2}, headers=USER)
        order_id = client.post("/api/orders/draft", json={}, headers=USER).get_json()["id"]

        r = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "changed_mind"}, headers=USER)

        assert r.status_code == 200
        assert r.get_json()["status"] == "cancelled"
        assert client.get(f"/api/offers/{offer.id}").get_json()["quantity_available"] == 5

    def test_other_customer_gets_404(self, client, db_session, offer):
        order_id = _checkout(client, offer)
        r = client.get(f"/api/orders/{order_id}", headers=OTHER_USER)
        assert r.status_code == 404

    def test_wrong_pickup_code(self, client, db_session, business, offer):
        order_id = _checkout(client, offer)
        _pay(client, order_id)

        r = client.post(
            f"/api/orders/{order_id}/pickup/verify",
            json={"code": "not-the-code"},
            headers=_business_headers(business),
        )

        assert r.status_code == 422
        assert r.get_json()["error"] == "CODE_MISMATCH"


class TestPaymentQueries:
    def test_single_payment_status(self, client, db_session, offer):
        order_id = _checkout(client, offer)
        payment = _pay(client, order_id)

        r = client.get(f"/api/payments/{payment['id']}/status", headers=USER)

        assert r.status_code == 200
        body = r.get_json()
        assert body["order_id"] == order_id
        assert body["order_status"] == "paid"
        assert body["payment"]["status"] == "succeeded"

    def test_single_payment_status_access(self, client, db_session, business, offer, other_business):
        order_id = _checkout(client, offer)
        payment = _pay(client, order_id)
        path = f"/api/payments/{payment['id']}/status"

        assert client.get(path, headers=OTHER_USER).status_code == 404
        assert client.get(path, headers=_business_headers(other_business)).status_code == 403
        assert client.get(path, headers=_business_headers(business)).status_code == 200
        assert client.get(path, headers=ADMIN).status_code == 200
        r = client.get("/api/payments/999999/status", headers=USER)
        assert r.status_code == 404
        assert r.get_json()["error"] == "PAYMENT_NOT_FOUND"

    def test_list_own_payments(self, client, db_session, offer):
        order_id = _checkout(client, offer)
        payment = _pay(client, order_id)

        r = client.get("/api/payments", headers=USER)
        assert r.status_code == 200
        assert [p["id"] for p in r.get_json()["payments"]] == [payment["id"]]

        r = client.get("/api/payments", headers=OTHER_USER)
        assert r.get_json()["payments"] == []

        r = client.get("/api/payments?status=bogus", headers=USER)
        assert r.status_code == 400

    def test_list_requires_customer(self, client, db_session, business):
        assert client.get("/api/payments", headers=_business_headers(business)).status_code == 403


class TestWebhook:
    def test_unsigned_rejected(self, client, db_session):
        r = client.post("/api/payments/webhook", json={"payment_id": 1, "status": "succeeded"})
        assert r.status_code == 401
        assert r.get_json()["error"] == "SIGNATURE_INVALID"


class TestRestockAndWaitlist:
    def test_restock_notifies_waitlist(self, app, client, db_session, business, make_offer):
        offer = make_offer(business, quantity=0)
        r = client.post("/api/waitlist/subscriptions", json={"scope_type": "offer", "scope_id": offer.id}, headers=USER)
        assert r.status_code == 201
        r = client.post("/api/waitlist/subscriptions", json={"scope_type": "offer", "scope_id": offer.id}, headers=USER)
        assert r.status_code == 200
        assert r.get_json()["created"] is False

        r = client.post(f"/api/offers/{offer.id}/restock", json={"delta": 4}, headers=_business_headers(business))

        assert r.status_code == 200
        assert r.get_json()["quantity_available"] == 4
        sent = app.extensions["kindplate.notification_channel"].sent
        assert [user_id for user_id, _ in sent] == [1]

    def test_restock_other_business(self, client, db_session, offer, other_business):
        r = client.post(f"/api/offers/{offer.id}/restock", json={"delta": 1}, headers=_business_headers(other_business))
        assert r.status_code == 403

    def test_restock_below_zero(self, client, db_session, business, offer):
        r = client.post(f"/api/offers/{offer.id}/restock", json={"delta": -9}, headers=_business_headers(business))
        assert r.status_code == 409
        assert r.get_json()["error"] == "INSUFFICIENT_QUANTITY"

    def test_list_and_delete_subscriptions(self, client, db_session, business):
        r = client.post("/api/waitlist/subscriptions",
                        json={"scope_type": "area", "latitude": 55.75, "longitude": 37.61}, headers=USER)
        sub_id = r.get_json()["subscription"]["id"]

        r = client.get("/api/waitlist/subscriptions", headers=USER)
        assert [s["id"] for s in r.get_json()["subscriptions"]] == [sub_id]

        assert client.delete(f"/api/waitlist/subscriptions/{sub_id}", headers=OTHER_USER).status_code == 404
        assert client.delete(f"/api/waitlist/subscriptions/{sub_id}", headers=USER).status_code == 200

    def test_delete_by_scope(self, client, db_session, business):
        client.post("/api/waitlist/subscriptions", json={"scope_type": "business", "scope_id": business.id}, headers=USER)

        r = client.delete(f"/api/waitlist/subscriptions?scope_type=business&scope_id={business.id}", headers=USER)

        assert r.get_json()["deleted"] == 1

    def test_delete_by_scope_bad_id(self, client, db_session):
        r = client.delete("/api/waitlist/subscriptions?scope_type=offer&scope_id=--5", headers=USER)

        assert r.status_code == 400
        assert r.get_json()["error"] == "VALIDATION_ERROR"
