"""
event_log.py — Append-only notification event history.

Every lifecycle event goes through ``EventLog.append``. Callers that change
a notification's status pass their open session so the status update and
the event commit (or roll back) together.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.notifications.models import EventType
from backend.app.notifications.records import NotificationEvent

logger = logging.getLogger(__name__)


class EventLog:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def append(
        self,
        notification_id: str,
        event_type: EventType,
        data: Optional[Dict[str, Any]] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> NotificationEvent:
        """
        Record one event.

        With ``session`` the row joins the caller's transaction; without it
        the event is committed on its own.
        """
        event = NotificationEvent(
            notification_id=notification_id,
            event_type=EventType(event_type).value,
            event_data=data or {},
            event_timestamp=self._clock(),
        )
        if session is not None:
            session.add(event)
        else:
            async with self._session_factory() as own, own.begin():
                own.add(event)

        logger.debug(
            "Event %s for %s", event.event_type, notification_id,
            extra={"notification_id": notification_id, "event_type": event.event_type},
        )
        return event

    async def history(self, notification_id: str) -> List[NotificationEvent]:
        """Events for one notification, oldest first."""
        stmt = (
            select(NotificationEvent)
            .where(NotificationEvent.notification_id == notification_id)
            .order_by(NotificationEvent.event_timestamp, NotificationEvent.id)
        )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())
