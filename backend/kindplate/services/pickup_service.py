# Overview: Pickup verifier; issues QR payloads and performs one-time pickup verification.

"""
Pickup Verification

The pickup code is created once, when the order becomes paid, and never
changes. The QR payload shown to the customer can be regenerated at will;
its expires_at only limits how long the app displays it. Expiry of a
displayed QR never invalidates the code itself.

verify() checks, in order:
    1. order exists                     -> PickupNotFound
    2. order belongs to the business    -> WrongBusiness
    3. not already verified             -> AlreadyVerified
    4. status is paid/ready_for_pickup  -> PickupInvalidState
    5. code matches (constant time)     -> CodeMismatch

Every attempt is audited as an order event (failures as
pickup.verify_failed, success as the order.completed transition). The
failure event is committed even though the call then raises. Failed
attempts never change the order itself.
"""

from __future__ import annotations

import base64
import hmac
import io
import logging
import secrets
from datetime import datetime, timedelta

import qrcode
import qrcode.image.svg
from flask import current_app

from ..actors import Actor, ACTOR_BUSINESS
from ..errors import (
    AlreadyVerified,
    CodeMismatch,
    PickupError,
    PickupInvalidState,
    PickupNotFound,
    StaleState,
    WrongBusiness,
)
from ..extensions import db
from ..models import Order
from .concurrency import run_in_transaction
from .ledger_service import append_order_event
from .lifecycle_service import STATUS_COMPLETED, STATUS_PAID, STATUS_READY, transition
from kindplate.time_utils import utcnow, to_utc_z

logger = logging.getLogger(__name__)

# No 0/O/1/I/L so codes survive being read aloud or typed
PICKUP_CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
PICKUP_CODE_LENGTH = 8
QR_PAYLOAD_PREFIX = "kindplate:pickup"
PICKUP_STATUSES = {STATUS_PAID, STATUS_READY}


def generate_pickup_code() -> str:
    return "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(PICKUP_CODE_LENGTH))


def normalize_code(code: str | None) -> str:
    if not code:
        return ""
    return "".join(ch for ch in str(code).upper() if ch.isalnum())


def build_qr_payload(order_id: int, pickup_code: str) -> str:
    return f"{QR_PAYLOAD_PREFIX}:{order_id}:{pickup_code}"


def parse_qr_payload(payload: str) -> tuple[int, str]:
    """Split a scanned payload into (order_id, code). Raises PickupNotFound if malformed."""
    text = (payload or "").strip()
    prefix = QR_PAYLOAD_PREFIX + ":"
    if not text.startswith(prefix):
        raise PickupNotFound("Unrecognised QR code")
    order_part, _, code = text[len(prefix):].partition(":")
    if not order_part.isdigit() or not code:
        raise PickupNotFound("Unrecognised QR code")
    return int(order_part), code


def render_qr_svg(payload: str) -> str:
    """Render payload as an SVG data URI."""
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgPathImage, box_size=10, border=2)
    buf = io.BytesIO()
    img.save(buf)
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def issue_pickup_payload(order_id: int, actor: Actor, *, now: datetime | None = None) -> dict:
    """
    QR payload for the customer who owns a paid / ready order.

    Returns {qr_code, pickup_code, payload, expires_at}.
    """
    order = db.session.get(Order, order_id)
    if order is None or not (actor.is_admin or (actor.is_user and order.customer_id == actor.actor_id)):
        raise PickupNotFound("Order not found")
    if order.status not in PICKUP_STATUSES or not order.pickup_code:
        raise PickupInvalidState(details={"status": order.status})

    ts = now or utcnow()
    ttl = int(current_app.config["PICKUP_QR_TTL_SECONDS"])
    payload = build_qr_payload(order.id, order.pickup_code)
    return {
        "order_id": order.id,
        "qr_code": render_qr_svg(payload),
        "payload": payload,
        "pickup_code": order.pickup_code,
        "expires_at": to_utc_z(ts + timedelta(seconds=ttl)),
    }


def _check(order: Order, presented: str, business_id: int) -> PickupError | None:
    if order.business_id != business_id:
        return WrongBusiness()
    if order.pickup_verified_at is not None or order.status == STATUS_COMPLETED:
        return AlreadyVerified(details={"verified_at": to_utc_z(order.pickup_verified_at)})
    if order.status not in PICKUP_STATUSES:
        return PickupInvalidState(details={"status": order.status})
    expected = normalize_code(order.pickup_code)
    if not expected or not hmac.compare_digest(normalize_code(presented).encode(), expected.encode()):
        return CodeMismatch()
    return None


def verify(order_id: int, presented_code: str, actor_business_id: int, *, now: datetime | None = None) -> Order:
    """
    Verify a pickup and complete the order. Single use.

    Raises one of PickupNotFound, WrongBusiness, AlreadyVerified,
    PickupInvalidState, CodeMismatch after auditing the attempt.
    """
    actor = Actor(ACTOR_BUSINESS, actor_business_id)

    def _op() -> PickupError | None:
        ts = now or utcnow()
        order = db.session.get(Order, order_id, populate_existing=True)
        if order is None:
            return PickupNotFound()

        failure = _check(order, presented_code, actor_business_id)
        if failure is not None:
            append_order_event(
                order_id=order.id,
                event_type="pickup.verify_failed",
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                reason=failure.code,
                metadata={"status": order.status},
                occurred_at=ts,
            )
            return failure

        transition(
            order.id,
            expected=order.status,
            new=STATUS_COMPLETED,
            actor=actor,
            reason="pickup_verified",
            values={"pickup_verified_at": ts},
            extra_guards=(Order.pickup_verified_at.is_(None),),
            now=ts,
        )
        return None

    try:
        failure = run_in_transaction(_op)
    except StaleState:
        # Lost a race with another verification; re-run to audit the outcome
        failure = run_in_transaction(_op)

    if failure is not None:
        logger.warning(
            "Pickup verification failed for order %s by business %s: %s",
            order_id, actor_business_id, failure.code,
        )
        raise failure

    logger.info("Order %s picked up (business %s)", order_id, actor_business_id)
    return db.session.get(Order, order_id, populate_existing=True)


def verify_scanned(payload: str, actor_business_id: int, *, now: datetime | None = None) -> Order:
    order_id, code = parse_qr_payload(payload)
    return verify(order_id, code, actor_business_id, now=now)
