# Overview: Delivery channels for waitlist notifications (transport is external).

from __future__ import annotations

import logging

import httpx
from flask import current_app

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 5


class NotificationChannel:
    name = "base"

    def send(self, user_id: int, message: dict) -> bool:
        """Hand the message to the transport. True if it was accepted."""
        raise NotImplementedError


class LogChannel(NotificationChannel):
    """Development channel: writes the notification to the log."""

    name = "log"

    def __init__(self):
        self.sent: list[tuple[int, dict]] = []

    def send(self, user_id, message):
        self.sent.append((user_id, message))
        logger.info("Notify user %s: %s", user_id, message.get("title"))
        return True


class WebhookChannel(NotificationChannel):
    """Posts notifications to the push/email gateway."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def send(self, user_id, message):
        try:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(self.url, json={"user_id": user_id, **message})
        except httpx.HTTPError as exc:
            logger.warning("Notification gateway unreachable for user %s: %s", user_id, exc)
            return False
        if r.status_code >= 300:
            logger.warning("Notification gateway returned %s for user %s", r.status_code, user_id)
            return False
        return True


def get_channel() -> NotificationChannel:
    channel = current_app.extensions.get("kindplate.notification_channel")
    if channel is not None:
        return channel
    if current_app.config["NOTIFICATION_CHANNEL"] == "webhook":
        channel = WebhookChannel(current_app.config["NOTIFICATION_WEBHOOK_URL"])
    else:
        channel = LogChannel()
    current_app.extensions["kindplate.notification_channel"] = channel
    return channel
