# Overview: Payment coordinator; reconciles provider outcomes with order state.

"""
Payment Coordinator

Two independent triggers feed outcomes in: signed provider callbacks and
customer status polling (plus the expiry sweep). All of them end in
apply_provider_status(), which is idempotent, so the order moves to paid
once no matter how many times, or by which path, success is reported.

Network calls to the provider never run inside a database transaction.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select, update

from ..actors import Actor, SYSTEM
from ..errors import (
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    PaymentExists,
    PaymentNotFound,
    PaymentProviderError,
    PaymentTimeout,
    ProviderUnverified,
    StaleState,
    ValidationError,
)
from ..extensions import db
from ..models import Order, Payment
from . import order_service
from .concurrency import conditional_update, run_in_transaction
from .inventory_service import extend_holds
from .ledger_service import append_order_event
from .lifecycle_service import STATUS_CONFIRMED, STATUS_DRAFT, load_order
from .payment_providers import get_provider
from .security_service import log_security_event
from kindplate.time_utils import utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

PAYMENT_METHODS = {"card", "sbp"}

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

VALID_STATUSES = {STATUS_PENDING, STATUS_PROCESSING, STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELLED}
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)

SIGNATURE_HEADER = "X-Payment-Signature"


def _payment_timeout() -> timedelta:
    return timedelta(minutes=int(current_app.config["PAYMENT_PENDING_TIMEOUT_MINUTES"]))


def _get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id, populate_existing=True)
    if payment is None:
        raise PaymentNotFound(details={"payment_id": payment_id})
    return payment


# =============================================================================
# CREATE
# =============================================================================

def create_payment(
    order_id: int,
    actor: Actor,
    *,
    payment_method: str,
    return_url: str | None = None,
    now: datetime | None = None,
) -> Payment:
    """
    Start a payment for a confirmed order and return it with the provider's
    confirmation_url.

    Raises PaymentExists if one is already in flight, PaymentTimeout if the
    provider does not answer in time (the payment stays pending and is
    reconciled or expired later), PaymentProviderError if it refuses.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of: {', '.join(sorted(PAYMENT_METHODS))}"
        )

    def _open() -> int:
        ts = now or utcnow()
        order = order_service.get_order_for_actor(order_id, actor)
        if not actor.is_user:
            raise ValidationError("Only the customer can pay for an order")

        # Touch the order row: serializes concurrent create_payment calls
        won = conditional_update(
            update(Order)
            .where(Order.id == order.id, Order.status == STATUS_CONFIRMED)
            .values(version_id=Order.version_id + 1)
        )
        if won != 1:
            current = load_order(order.id)
            raise StaleState(
                "Order is not awaiting payment, please refresh",
                details={"order_id": order.id, "status": current.status},
            )

        active = (
            db.session.query(Payment)
            .filter(Payment.order_id == order.id, Payment.status.in_(ACTIVE_STATUSES))
            .first()
        )
        if active is not None:
            raise PaymentExists(details={"payment_id": active.id})

        expires_at = ts + _payment_timeout()
        payment = Payment(
            order_id=order.id,
            customer_id=order.customer_id,
            amount_cents=order.total_cents,
            payment_method=payment_method,
            status=STATUS_PENDING,
            idempotence_key=str(uuid.uuid4()),
            provider=get_provider().name,
            return_url=return_url,
            created_at=ts,
            expires_at=expires_at,
        )
        db.session.add(payment)
        db.session.flush()

        # Holds must outlive the payment window
        ttl = timedelta(minutes=int(current_app.config["RESERVATION_TTL_MINUTES"]))
        extend_holds(order.id, expires_at + ttl)

        append_order_event(
            order_id=order.id,
            event_type="payment.created",
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            metadata={"payment_id": payment.id, "amount_cents": payment.amount_cents, "method": payment_method},
            occurred_at=ts,
        )
        return payment.id

    payment_id = run_in_transaction(_open)
    payment = _get_payment(payment_id)

    try:
        result = get_provider().create_payment(
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            payment_method=payment.payment_method,
            return_url=return_url,
            idempotence_key=payment.idempotence_key,
            metadata={"order_id": payment.order_id, "payment_id": payment.id},
        )
    except PaymentTimeout:
        logger.warning("Provider timeout creating payment %s; left pending", payment_id)
        raise
    except PaymentProviderError as exc:
        _finish(payment_id, STATUS_FAILED, failure_reason="provider_rejected")
        logger.warning("Provider rejected payment %s: %s", payment_id, exc)
        raise

    def _attach() -> int:
        conditional_update(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == STATUS_PENDING)
            .values(
                provider_reference=result.reference,
                confirmation_url=result.confirmation_url,
                status=STATUS_PROCESSING,
                updated_at=utcnow(),
            )
        )
        return payment_id

    run_in_transaction(_attach)
    return _get_payment(payment_id)


def _finish(payment_id: int, status: str, *, failure_reason: str | None = None) -> bool:
    def _op() -> bool:
        ts = utcnow()
        won = conditional_update(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(ACTIVE_STATUSES))
            .values(status=status, failure_reason=failure_reason, updated_at=ts, completed_at=ts)
        )
        return won == 1
    return run_in_transaction(_op)


def cancel_open_payments(order_id: int, *, reason: str, now: datetime | None = None) -> int:
    """Mark in-flight payments of an order cancelled. Caller commits."""
    ts = now or utcnow()
    return conditional_update(
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status.in_(ACTIVE_STATUSES))
        .values(status=STATUS_CANCELLED, failure_reason=reason, updated_at=ts, completed_at=ts)
    )


# =============================================================================
# APPLY OUTCOME (single idempotent entry point)
# =============================================================================

def _flag_refund(payment: Payment, reason: str, ts: datetime) -> None:
    won = conditional_update(
        update(Payment)
        .where(Payment.id == payment.id, Payment.refund_required.is_(False))
        .values(refund_required=True, updated_at=ts)
    )
    if won == 1:
        append_order_event(
            order_id=payment.order_id,
            event_type="payment.refund_required",
            actor_type=SYSTEM.actor_type,
            reason=reason,
            metadata={"payment_id": payment.id, "amount_cents": payment.amount_cents},
            occurred_at=ts,
        )
        logger.error("Payment %s for order %s needs a refund (%s)",
                     payment.id, payment.order_id, reason)


def flag_refunds_for_order(order_id: int, *, reason: str, now: datetime | None = None) -> int:
    """Flag every succeeded payment of a cancelled order for refund. Caller commits."""
    ts = now or utcnow()
    payments = (
        db.session.query(Payment)
        .filter(Payment.order_id == order_id, Payment.status == STATUS_SUCCEEDED)
        .all()
    )
    for payment in payments:
        _flag_refund(payment, reason, ts)
    return len(payments)


def apply_provider_status(payment_id: int, status: str, *, source: str, now: datetime | None = None) -> Payment:
    """
    Apply a provider-reported status to a payment and its order.

    succeeded:  payment -> succeeded, order confirmed -> paid (once).
                A repeat is acknowledged and changes nothing.
                Success for a payment we already closed, or for an order that
                can no longer be paid, flags refund_required instead.
    failed / cancelled: payment closes; the order stays confirmed unless
                PAYMENT_FAILURE_POLICY is "cancel".
    processing: pending -> processing.
    """
    if status not in VALID_STATUSES:
        raise ValidationError(f"Unknown payment status '{status}'")

    def _op() -> int:
        ts = now or utcnow()
        payment = _get_payment(payment_id)

        if status == STATUS_PENDING:
            return payment.id

        if status == STATUS_PROCESSING:
            conditional_update(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == STATUS_PENDING)
                .values(status=STATUS_PROCESSING, updated_at=ts)
            )
            return payment.id

        won = conditional_update(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(ACTIVE_STATUSES))
            .values(status=status, updated_at=ts, completed_at=ts)
        )

        if status == STATUS_SUCCEEDED:
            if not won:
                # Another trigger closed it first; decide on the stored status
                current = db.session.execute(
                    select(Payment.status).where(Payment.id == payment.id)
                ).scalar_one()
                if current != STATUS_SUCCEEDED:
                    _flag_refund(payment, f"payment_{current}", ts)
                return payment.id
            try:
                order_service.mark_paid(payment.order_id, payment_id=payment.id, now=ts)
            except (StaleState, InvalidTransition):
                _flag_refund(payment, "order_not_payable", ts)
            logger.info("Payment %s succeeded via %s", payment.id, source)
            return payment.id

        if won:
            order = load_order(payment.order_id)
            append_order_event(
                order_id=order.id,
                event_type=f"payment.{status}",
                actor_type=SYSTEM.actor_type,
                reason=source,
                metadata={"payment_id": payment.id},
                occurred_at=ts,
            )
            policy = current_app.config["PAYMENT_FAILURE_POLICY"]
            if policy == "cancel" and order.status in (STATUS_DRAFT, STATUS_CONFIRMED):
                order_service.cancel_in_transaction(order.id, SYSTEM, reason=f"payment_{status}", now=ts)
            logger.info("Payment %s %s via %s", payment.id, status, source)
        return payment.id

    return _get_payment(run_in_transaction(_op))


# =============================================================================
# CALLBACKS
# =============================================================================

def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None) -> bool:
    """Fail closed: no secret configured or no signature means unverified."""
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET") or ""
    if not secret or not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def handle_callback(
    body: bytes,
    signature: str | None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> Payment:
    """
    Authenticate and apply a provider callback.

    Expected body (JSON): {"payment_reference": str, "status": str,
    "amount_cents": int}. "payment_id" may be sent instead of the reference.
    """
    if not verify_signature(body, signature):
        log_security_event(
            event_type="PROVIDER_UNVERIFIED",
            success=False,
            reason="Payment callback signature missing or invalid",
            resource="/api/payments/webhook",
            action="POST",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise ProviderUnverified()

    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("Callback body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("Callback body must be an object")

    reference = data.get("payment_reference")
    payment = None
    if reference:
        payment = db.session.query(Payment).filter_by(provider_reference=str(reference)).first()
    elif isinstance(data.get("payment_id"), int):
        payment = db.session.get(Payment, data["payment_id"])
    if payment is None:
        raise PaymentNotFound(details={"payment_reference": reference})

    raw_status = data.get("status")
    status = raw_status if raw_status in VALID_STATUSES else None
    if status is None:
        raise ValidationError(f"Unknown payment status '{raw_status}'")

    amount = data.get("amount_cents")
    if status == STATUS_SUCCEEDED and amount != payment.amount_cents:
        log_security_event(
            event_type="PAYMENT_AMOUNT_MISMATCH",
            success=False,
            reason=f"payment {payment.id}: expected {payment.amount_cents}, got {amount}",
            resource="/api/payments/webhook",
            action="POST",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise InvalidAmount(details={"payment_id": payment.id})

    return apply_provider_status(payment.id, status, source="callback", now=now)


# =============================================================================
# POLLING / QUERIES
# =============================================================================

def latest_payment(order_id: int) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter(Payment.order_id == order_id)
        .order_by(Payment.id.desc())
        .first()
    )


def poll_provider(payment: Payment, *, now: datetime | None = None) -> Payment:
    """Ask the provider about an in-flight payment. Timeouts leave it as is."""
    if payment.status not in ACTIVE_STATUSES or not payment.provider_reference:
        return payment
    try:
        status = get_provider().fetch_status(payment.provider_reference)
    except (PaymentTimeout, PaymentProviderError):
        logger.warning("Could not poll provider for payment %s", payment.id)
        return payment
    if status and status != payment.status:
        return apply_provider_status(payment.id, status, source="poll", now=now)
    return payment


def get_payment_for_actor(payment_id: int, actor: Actor) -> Payment:
    """Customers only see their own payments, businesses those of their orders."""
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound(details={"payment_id": payment_id})
    if actor.is_admin:
        return payment
    if actor.is_user and payment.customer_id == actor.actor_id:
        return payment
    if actor.is_business:
        order = load_order(payment.order_id)
        if order.business_id == actor.actor_id:
            return payment
        raise Forbidden("Payment belongs to another business")
    raise PaymentNotFound(details={"payment_id": payment_id})


def get_payment_status(payment_id: int, actor: Actor, *, poll: bool = True) -> dict:
    payment = get_payment_for_actor(payment_id, actor)
    if poll:
        payment = poll_provider(payment)
    order = load_order(payment.order_id)
    return {
        "order_id": order.id,
        "order_status": order.status,
        "payment": payment.to_dict(),
    }


def list_customer_payments(customer_id: int, *, status: str | None = None, limit: int = 50) -> list[Payment]:
    q = db.session.query(Payment).filter(Payment.customer_id == customer_id)
    if status:
        if status not in VALID_STATUSES:
            raise ValidationError(f"Unknown payment status '{status}'")
        q = q.filter(Payment.status == status)
    return q.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()


def get_order_payment_status(order_id: int, actor: Actor, *, poll: bool = True) -> dict:
    order = order_service.get_order_for_actor(order_id, actor)
    payment = latest_payment(order.id)
    if payment is not None and poll:
        payment = poll_provider(payment)
    order = load_order(order.id)
    return {
        "order_id": order.id,
        "order_status": order.status,
        "payment": payment.to_dict() if payment else None,
    }


# =============================================================================
# EXPIRY
# =============================================================================

def expire_stale_payments(*, now: datetime | None = None) -> dict:
    """
    Close payments stuck in pending/processing past expires_at.

    The provider is asked first; anything it cannot settle becomes failed
    ("expired") and, if its order never reached paid, the order is
    cancelled so its reservations return to stock.
    """
    ts = now or utcnow()
    stale_ids = [
        pid for (pid,) in db.session.query(Payment.id).filter(
            Payment.status.in_(ACTIVE_STATUSES),
            Payment.expires_at < ts,
        ).all()
    ]

    expired = settled = 0
    for payment_id in stale_ids:
        payment = poll_provider(_get_payment(payment_id), now=ts)
        if payment.status not in ACTIVE_STATUSES:
            settled += 1
            continue

        def _op(pid=payment_id) -> bool:
            won = conditional_update(
                update(Payment)
                .where(Payment.id == pid, Payment.status.in_(ACTIVE_STATUSES))
                .values(status=STATUS_FAILED, failure_reason="expired", updated_at=ts, completed_at=ts)
            )
            if won != 1:
                return False
            p = _get_payment(pid)
            order = load_order(p.order_id)
            append_order_event(
                order_id=order.id,
                event_type="payment.failed",
                actor_type=SYSTEM.actor_type,
                reason="expired",
                metadata={"payment_id": pid},
                occurred_at=ts,
            )
            if order.status in (STATUS_DRAFT, STATUS_CONFIRMED):
                order_service.cancel_in_transaction(order.id, SYSTEM, reason="payment_expired", now=ts)
            return True

        if run_in_transaction(_op):
            expired += 1

    if expired or settled:
        logger.info("Payment sweep: expired %s, settled by provider %s", expired, settled)
    return {"expired": expired, "settled": settled}
