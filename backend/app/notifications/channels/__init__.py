"""
channels — Per-channel delivery adapters.

Each adapter exposes:
    send(endpoint, content, options) → DeliveryResult

Adapters never raise and never retry; classification of the returned
error code and the retry decision live in the orchestrator.
"""

from __future__ import annotations

from typing import Dict, Optional

from backend.app.core.config import Settings, settings as default_settings
from backend.app.notifications.channels.base import ChannelAdapter, ChannelConfig
from backend.app.notifications.channels.email_channel import EmailChannel
from backend.app.notifications.channels.in_app import InAppChannel
from backend.app.notifications.channels.push_android import PushAndroidChannel
from backend.app.notifications.channels.push_ios import PushIOSChannel
from backend.app.notifications.channels.push_web import PushWebChannel
from backend.app.notifications.channels.sms_channel import SmsChannel
from backend.app.notifications.models import ChannelType

__all__ = [
    "ChannelAdapter",
    "ChannelConfig",
    "EmailChannel",
    "InAppChannel",
    "PushAndroidChannel",
    "PushIOSChannel",
    "PushWebChannel",
    "SmsChannel",
    "build_channel_adapters",
]


def _config(cfg: Settings, prefix: str, sender: Optional[str] = None) -> ChannelConfig:
    return ChannelConfig(
        provider=getattr(cfg, f"{prefix}_PROVIDER"),
        api_url=getattr(cfg, f"{prefix}_API_URL"),
        api_key=getattr(cfg, f"{prefix}_API_KEY"),
        timeout_seconds=getattr(cfg, f"{prefix}_TIMEOUT_SECONDS"),
        sender=sender,
    )


def build_channel_adapters(cfg: Optional[Settings] = None) -> Dict[ChannelType, ChannelAdapter]:
    """One adapter per channel type, configured from settings."""
    cfg = cfg or default_settings
    return {
        ChannelType.EMAIL: EmailChannel(
            _config(cfg, "EMAIL", cfg.EMAIL_FROM),
            tracking_enabled=cfg.EMAIL_TRACKING_ENABLED,
            public_base_url=cfg.PUBLIC_BASE_URL,
        ),
        ChannelType.SMS: SmsChannel(
            _config(cfg, "SMS", cfg.SMS_SENDER),
            default_country_code=cfg.SMS_DEFAULT_COUNTRY_CODE,
        ),
        ChannelType.PUSH_IOS: PushIOSChannel(_config(cfg, "PUSH_IOS")),
        ChannelType.PUSH_ANDROID: PushAndroidChannel(_config(cfg, "PUSH_ANDROID")),
        ChannelType.PUSH_WEB: PushWebChannel(_config(cfg, "PUSH_WEB")),
        ChannelType.IN_APP: InAppChannel(backlog_size=cfg.IN_APP_BACKLOG_SIZE),
    }
