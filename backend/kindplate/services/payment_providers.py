# Overview: Clients for the external payment provider (opaque to the rest of the service).

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import PaymentProviderError, PaymentTimeout

logger = logging.getLogger(__name__)

# Provider status -> our payment status
PROVIDER_STATUS_MAP = {
    "pending": "processing",
    "waiting_for_capture": "processing",
    "processing": "processing",
    "succeeded": "succeeded",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "failed": "failed",
}

METHOD_TYPES = {"card": "bank_card", "sbp": "sbp"}


@dataclass(frozen=True)
class ProviderPayment:
    reference: str
    confirmation_url: str | None
    status: str


class PaymentProvider:
    """What payment_service needs from a provider."""

    name = "base"

    def create_payment(self, *, amount_cents: int, currency: str, payment_method: str,
                       return_url: str | None, idempotence_key: str, metadata: dict) -> ProviderPayment:
        raise NotImplementedError

    def fetch_status(self, reference: str) -> str | None:
        """Our status for the provider payment, or None if unknown."""
        raise NotImplementedError


class SandboxProvider(PaymentProvider):
    """
    Local stand-in used in development and tests.

    Payments stay "processing" until a signed callback (or a test) says
    otherwise.
    """

    name = "sandbox"

    def __init__(self):
        self.statuses: dict[str, str] = {}

    def create_payment(self, *, amount_cents, currency, payment_method, return_url, idempotence_key, metadata):
        reference = f"sbx_{uuid.uuid4().hex}"
        self.statuses[reference] = "processing"
        return ProviderPayment(
            reference=reference,
            confirmation_url=f"/sandbox/pay/{reference}",
            status="processing",
        )

    def fetch_status(self, reference):
        return self.statuses.get(reference)


class HttpPaymentProvider(PaymentProvider):
    """
    REST provider client (YooKassa-style API).

    Every call is bounded by PAYMENT_PROVIDER_TIMEOUT_SECONDS; a timeout
    surfaces as PaymentTimeout and the payment is reconciled later.
    """

    name = "http"

    def __init__(self, base_url: str, shop_id: str, secret_key: str, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.auth = (shop_id, secret_key)
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with httpx.Client(timeout=self.timeout, auth=self.auth) as client:
                r = client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Payment provider timeout on %s %s", method, path)
            raise PaymentTimeout() from exc
        except httpx.HTTPError as exc:
            logger.warning("Payment provider unreachable on %s %s: %s", method, path, exc)
            raise PaymentProviderError("Payment provider is unreachable") from exc

        if r.status_code >= 400:
            logger.warning("Payment provider error %s on %s %s: %s", r.status_code, method, path, r.text[:500])
            raise PaymentProviderError(details={"provider_status": r.status_code})
        return r.json()

    def create_payment(self, *, amount_cents, currency, payment_method, return_url, idempotence_key, metadata):
        body = {
            "amount": {"value": f"{amount_cents // 100}.{amount_cents % 100:02d}", "currency": currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": return_url},
            "payment_method_data": {"type": METHOD_TYPES[payment_method]},
            "metadata": metadata,
        }
        data = self._request("POST", "/payments", json=body, headers={"Idempotence-Key": idempotence_key})
        return ProviderPayment(
            reference=data["id"],
            confirmation_url=(data.get("confirmation") or {}).get("confirmation_url"),
            status=PROVIDER_STATUS_MAP.get(data.get("status"), "processing"),
        )

    def fetch_status(self, reference):
        data = self._request("GET", f"/payments/{reference}")
        return PROVIDER_STATUS_MAP.get(data.get("status"))


def get_provider() -> PaymentProvider:
    """Provider bound to the current app (built once from config)."""
    provider = current_app.extensions.get("kindplate.payment_provider")
    if provider is not None:
        return provider

    cfg = current_app.config
    if cfg["PAYMENT_PROVIDER"] == "http":
        provider = HttpPaymentProvider(
            cfg["PAYMENT_PROVIDER_URL"],
            cfg["PAYMENT_PROVIDER_SHOP_ID"],
            cfg["PAYMENT_PROVIDER_SECRET_KEY"],
            timeout=cfg["PAYMENT_PROVIDER_TIMEOUT_SECONDS"],
        )
    else:
        provider = SandboxProvider()
    current_app.extensions["kindplate.payment_provider"] = provider
    return provider
