"""
push_ios.py — Apple Push Notification service (APNs) channel.

Endpoints are 64-character hex device tokens. The payload follows the
APNs JSON layout (``aps.alert``); custom data rides alongside ``aps``.
An APNs ``410 Unregistered`` reply maps to UNSUBSCRIBED and deactivates
the token.
"""

from __future__ import annotations

import re
from typing import Any, Dict

from backend.app.notifications.channels.base import ChannelAdapter, EndpointValidationError
from backend.app.notifications.models import (
    ChannelType,
    DeliveryOptions,
    Priority,
    RenderedContent,
)

DEVICE_TOKEN_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class PushIOSChannel(ChannelAdapter):
    channel_type = ChannelType.PUSH_IOS
    log_label = "APNS"

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        token = (endpoint or "").strip().replace(" ", "")
        if not DEVICE_TOKEN_RE.match(token):
            raise EndpointValidationError("APNs device token must be 64 hex characters")
        return token.lower()

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        aps: Dict[str, Any] = {
            "alert": {"title": content.title, "body": content.message},
            "sound": "default",
        }
        if "badge" in content.data:
            aps["badge"] = content.data["badge"]

        payload: Dict[str, Any] = {
            "device_token": endpoint,
            # 10 = immediate, 5 = power-considerate
            "priority": 10 if options.priority == Priority.HIGH.value else 5,
            "push_type": "alert",
            "payload": {
                "aps": aps,
                "notification_id": options.notification_id,
                **{k: v for k, v in content.data.items() if k != "badge"},
            },
        }
        topic = options.metadata.get("bundle_id")
        if topic:
            payload["topic"] = topic
        return payload
