"""
engine.py — Composition root for the delivery engine.

Builds every collaborator from one session factory and one ``Settings``
object, owns the background jobs, and is what the API layer depends on.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import Settings, settings as default_settings
from backend.app.notifications.channels import ChannelAdapter, InAppChannel, build_channel_adapters
from backend.app.notifications.event_log import EventLog
from backend.app.notifications.models import ChannelType
from backend.app.notifications.orchestrator import NotificationOrchestrator
from backend.app.notifications.preferences import PreferenceStore
from backend.app.notifications.rate_limiter import RateLimiter
from backend.app.notifications.registry import ChannelRegistry
from backend.app.notifications.scheduler import PeriodicJob, RateWindowReaper, RetryScheduler
from backend.app.notifications.store import NotificationStore
from backend.app.notifications.templates import TemplateStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationEngine:
    """
    Usage:
        engine = NotificationEngine(async_session_factory)
        await engine.start()      # retry scheduler + reaper
        await engine.orchestrator.send_notification(request)
        await engine.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        channels: Optional[Dict[ChannelType, ChannelAdapter]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        cfg = settings or default_settings
        self.settings = cfg
        self.session_factory = session_factory
        self.clock = clock

        self.events = EventLog(session_factory, clock=clock)
        self.store = NotificationStore(session_factory, self.events, clock=clock)
        self.preferences = PreferenceStore(session_factory, clock=clock, cache_ttl=cfg.PREFERENCE_CACHE_TTL)
        self.rate_limiter = RateLimiter(session_factory, clock=clock)
        self.registry = ChannelRegistry(session_factory, clock=clock)
        self.templates = TemplateStore(session_factory, clock=clock)
        self.channels = channels if channels is not None else build_channel_adapters(cfg)

        self.orchestrator = NotificationOrchestrator(
            store=self.store,
            event_log=self.events,
            preferences=self.preferences,
            rate_limiter=self.rate_limiter,
            registry=self.registry,
            templates=self.templates,
            channels=self.channels,
            settings=cfg,
            clock=clock,
        )
        self.retry_scheduler = RetryScheduler(
            self.orchestrator,
            self.store,
            interval_seconds=cfg.RETRY_SCAN_INTERVAL_SECONDS,
            batch_size=cfg.SCHEDULER_BATCH_SIZE,
            in_flight_timeout_seconds=cfg.IN_FLIGHT_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.reaper = RateWindowReaper(
            self.rate_limiter,
            interval_seconds=cfg.RATE_WINDOW_REAP_INTERVAL_SECONDS,
            retention_hours=cfg.RATE_WINDOW_RETENTION_HOURS,
            clock=clock,
        )

    @property
    def jobs(self) -> List[PeriodicJob]:
        return [self.retry_scheduler, self.reaper]

    @property
    def in_app(self) -> Optional[InAppChannel]:
        adapter = self.channels.get(ChannelType.IN_APP)
        return adapter if isinstance(adapter, InAppChannel) else None

    async def start(self):
        if not self.settings.SCHEDULER_ENABLED:
            logger.info("Background jobs disabled (SCHEDULER_ENABLED=false)")
            return
        for job in self.jobs:
            await job.start()

    async def stop(self):
        for job in self.jobs:
            await job.stop()
        for adapter in self.channels.values():
            await adapter.close()

    def status(self) -> Dict[str, Any]:
        return {
            "channels": {ct.value: adapter.provider for ct, adapter in self.channels.items()},
            "jobs": [job.to_dict() for job in self.jobs],
        }


def get_engine(request: Request) -> NotificationEngine:
    """FastAPI dependency: the engine created in the app lifespan."""
    return request.app.state.engine
