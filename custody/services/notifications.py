import logging
from functools import lru_cache

import httpx

from custody.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class NotificationSink:
    """Best-effort event delivery. ``notify`` must never raise."""

    def notify(self, event: str, payload: dict) -> None:
        raise NotImplementedError


class ConsoleNotificationSink(NotificationSink):
    def notify(self, event: str, payload: dict) -> None:
        logger.info("[notify][console] event=%s payload=%s", event, payload)


class WebhookNotificationSink(NotificationSink):
    def __init__(self, url: str, *, timeout: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def notify(self, event: str, payload: dict) -> None:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, json={"event": event, "data": payload})
            if response.status_code >= 400:
                logger.warning("Notification webhook returned HTTP %s for %s", response.status_code, event)
        except httpx.HTTPError as exc:
            logger.warning("Notification webhook failed for %s: %s", event, exc)


def build_notification_sink(settings: Settings) -> NotificationSink:
    provider = (settings.notification_sink or "console").strip().lower()
    if provider == "webhook":
        if settings.notification_webhook_url:
            return WebhookNotificationSink(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
        logger.warning("NOTIFICATION_SINK=webhook but NOTIFICATION_WEBHOOK_URL is empty; using console")
    elif provider != "console":
        logger.warning("Unknown NOTIFICATION_SINK %r; using console", provider)
    return ConsoleNotificationSink()


@lru_cache
def get_notification_sink() -> NotificationSink:
    return build_notification_sink(get_settings())
