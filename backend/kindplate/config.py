# backend/kindplate/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///kindplate.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Inventory holds
    RESERVATION_TTL_MINUTES = _int_env("RESERVATION_TTL_MINUTES", 15)

    # Payment provider (credentials are owned by the deployment, not by us)
    PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "sandbox")  # sandbox | http
    PAYMENT_PROVIDER_URL = os.environ.get("PAYMENT_PROVIDER_URL", "")
    PAYMENT_PROVIDER_SHOP_ID = os.environ.get("PAYMENT_PROVIDER_SHOP_ID", "")
    PAYMENT_PROVIDER_SECRET_KEY = os.environ.get("PAYMENT_PROVIDER_SECRET_KEY", "")
    PAYMENT_PROVIDER_TIMEOUT_SECONDS = _int_env("PAYMENT_PROVIDER_TIMEOUT_SECONDS", 10)
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_PENDING_TIMEOUT_MINUTES = _int_env("PAYMENT_PENDING_TIMEOUT_MINUTES", 30)
    PAYMENT_FAILURE_POLICY = os.environ.get("PAYMENT_FAILURE_POLICY", "retry")  # retry | cancel

    # Pricing
    SERVICE_FEE_FLAT_CENTS = _int_env("SERVICE_FEE_FLAT_CENTS", 5000)
    SERVICE_FEE_BPS = _int_env("SERVICE_FEE_BPS", 0)

    # Pickup
    PICKUP_QR_TTL_SECONDS = _int_env("PICKUP_QR_TTL_SECONDS", 300)

    # Waitlist
    WAITLIST_ANTISPAM_HOURS = _int_env("WAITLIST_ANTISPAM_HOURS", 24)
    WAITLIST_DEFAULT_RADIUS_KM = _int_env("WAITLIST_DEFAULT_RADIUS_KM", 5)
    NOTIFICATION_CHANNEL = os.environ.get("NOTIFICATION_CHANNEL", "log")  # log | webhook
    NOTIFICATION_WEBHOOK_URL = os.environ.get("NOTIFICATION_WEBHOOK_URL", "")

    # Callable(request) -> Actor | None; None means the gateway header loader
    IDENTITY_LOADER = None

    # Browser origins allowed to call the API directly
    CORS_ORIGINS = tuple(
        o.strip() for o in os.environ.get(
            "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ).split(",") if o.strip()
    )
