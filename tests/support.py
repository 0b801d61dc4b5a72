"""
Test doubles shared across test modules.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Union

from backend.app.core.config import Settings
from backend.app.notifications.channels.base import ChannelAdapter, ChannelConfig
from backend.app.notifications.engine import NotificationEngine
from backend.app.notifications.models import (
    ChannelType,
    DeliveryOptions,
    DeliveryResult,
    ErrorCode,
    RenderedContent,
)

# Monday 2024-03-04 10:00 UTC
START = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


Outcome = Union[DeliveryResult, ErrorCode, Exception]


class ScriptedChannel(ChannelAdapter):
    """
    Adapter whose results are queued by the test.

    Each queued outcome is consumed by one ``send``: a DeliveryResult is
    returned as-is, an ErrorCode becomes a failure with that code, an
    exception is raised inside the adapter. With nothing queued it succeeds.
    """

    log_label = "SCRIPTED"

    def __init__(self, channel_type: ChannelType):
        super().__init__(ChannelConfig(provider="scripted"))
        self.channel_type = channel_type
        self.outcomes: List[Outcome] = []
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *outcomes: Outcome) -> "ScriptedChannel":
        self.outcomes.extend(outcomes)
        return self

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        return endpoint

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        return {"to": endpoint, "title": content.title, "message": content.message}

    async def _deliver(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> DeliveryResult:
        self.calls.append({"endpoint": endpoint, "content": content, "options": options})
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, ErrorCode):
            return DeliveryResult.failure(outcome, f"scripted {outcome.value}", provider=self.provider)
        if isinstance(outcome, DeliveryResult):
            return outcome
        return DeliveryResult(
            success=True,
            external_id=f"ext-{options.notification_id[:8]}-{len(self.calls)}",
            provider=self.provider,
        )


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "CACHE_ENABLED": False,
        "SCHEDULER_ENABLED": False,
        "EMAIL_TRACKING_ENABLED": False,
        "WEBHOOK_SECRET": "test-secret",
    }
    values.update(overrides)
    return Settings(**values)


def scripted(engine: NotificationEngine, channel_type: Union[ChannelType, str]) -> ScriptedChannel:
    adapter = engine.channels[ChannelType(channel_type)]
    assert isinstance(adapter, ScriptedChannel)
    return adapter


async def event_types(engine: NotificationEngine, notification_id: str) -> List[str]:
    return [e.event_type for e in await engine.events.history(notification_id)]
