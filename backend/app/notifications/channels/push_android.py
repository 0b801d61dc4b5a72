"""
push_android.py — Firebase Cloud Messaging (FCM) channel.

Endpoints are FCM registration tokens. FCM ``data`` values must be
strings, so custom data is stringified. ``404 UNREGISTERED`` from FCM
maps to ENDPOINT_UNREACHABLE and deactivates the token.
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

REGISTRATION_TOKEN_RE = re.compile(r"^[A-Za-z0-9_:\-]{32,4096}$")


class PushAndroidChannel(ChannelAdapter):
    channel_type = ChannelType.PUSH_ANDROID
    log_label = "FCM"

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        token = (endpoint or "").strip()
        if not REGISTRATION_TOKEN_RE.match(token):
            raise EndpointValidationError("Malformed FCM registration token")
        return token

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        data = {k: str(v) for k, v in content.data.items()}
        data["notification_id"] = options.notification_id
        return {
            "message": {
                "token": endpoint,
                "notification": {"title": content.title, "body": content.message},
                "data": data,
                "android": {
                    "priority": "high" if options.priority == Priority.HIGH.value else "normal",
                },
            },
        }
