"""
push_web.py — Web Push (RFC 8030) channel.

The endpoint is the browser's push subscription URL; the subscription's
``p256dh`` and ``auth`` keys travel in the endpoint metadata. Payload
encryption and VAPID signing happen in the gateway, which receives the
subscription and the clear-text notification.

A push service answering ``410 Gone`` means the subscription has expired;
that maps to UNSUBSCRIBED and deactivates the endpoint.
"""

from __future__ import annotations

from typing import Any, Dict
from urllib.parse import urlparse

from backend.app.notifications.channels.base import ChannelAdapter, EndpointValidationError
from backend.app.notifications.models import (
    ChannelType,
    DeliveryOptions,
    Priority,
    RenderedContent,
)

DEFAULT_TTL_SECONDS = 24 * 3600

_URGENCY = {
    Priority.LOW.value: "low",
    Priority.NORMAL.value: "normal",
    Priority.HIGH.value: "high",
}


class PushWebChannel(ChannelAdapter):
    channel_type = ChannelType.PUSH_WEB
    log_label = "WEBPUSH"

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        url = (endpoint or "").strip()
        parsed = urlparse(url)
        if parsed.scheme != "https" or not parsed.netloc:
            raise EndpointValidationError("Push subscription endpoint must be an https URL")
        if self.config.provider != "simulation":
            keys = metadata.get("keys") or metadata
            if not keys.get("p256dh") or not keys.get("auth"):
                raise EndpointValidationError("Push subscription is missing p256dh/auth keys")
        return url

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        keys = options.metadata.get("keys") or {
            k: options.metadata[k] for k in ("p256dh", "auth") if k in options.metadata
        }
        return {
            "subscription": {"endpoint": endpoint, "keys": keys},
            "notification": {
                "title": content.title,
                "body": content.message,
                "data": {**content.data, "notification_id": options.notification_id},
            },
            "ttl": DEFAULT_TTL_SECONDS,
            "urgency": _URGENCY.get(options.priority, "normal"),
        }
