"""
store.py — Durable notification records and their state transitions.

The store is the delivery queue: due work is found by scanning for
``pending`` rows whose ``next_retry_at`` has passed and ``scheduled`` rows
whose ``scheduled_at`` has passed.

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

    claim()       UPDATE .. SET status='in_flight' WHERE id=? AND <due>
                  rowcount == 1  → this caller owns the attempt
                  rowcount == 0  → someone else does (or it is not due)

    transition()  UPDATE .. WHERE id=? AND status IN (<expected>)
                  + one notification_events row, same transaction

    A notification therefore has exactly one writer per attempt, and a
    lost race never produces a second "sent" or "failed" event.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import ValidationError
from backend.app.notifications.event_log import EventLog
from backend.app.notifications.models import (
    ChannelType,
    EventType,
    NotificationStatus,
)
from backend.app.notifications.records import Notification

logger = logging.getLogger(__name__)

PENDING = NotificationStatus.PENDING.value
SCHEDULED = NotificationStatus.SCHEDULED.value
IN_FLIGHT = NotificationStatus.IN_FLIGHT.value

# Notifications shown in the in-app inbox
_INBOX_STATUSES = (NotificationStatus.SENT.value, NotificationStatus.DELIVERED.value)


def _due_clause(now: datetime, stale_before: Optional[datetime] = None):
    """Rows a delivery attempt may claim at ``now``."""
    pending_due = and_(
        Notification.status == PENDING,
        Notification.next_retry_at.is_not(None),
        Notification.next_retry_at <= now,
    )
    scheduled_due = and_(
        Notification.status == SCHEDULED,
        Notification.scheduled_at <= now,
    )
    clauses = [pending_due, scheduled_due]
    if stale_before is not None:
        # created but never attempted (worker died between insert and claim)
        clauses.append(and_(
            Notification.status == PENDING,
            Notification.next_retry_at.is_(None),
            Notification.updated_at <= stale_before,
        ))
    return or_(*clauses)


class NotificationStore:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_log: EventLog,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self._events = event_log
        self._clock = clock

    # ── Create / read ──

    async def create(
        self,
        *,
        user_id: int,
        channel_type: str,
        category: str,
        priority: str,
        title: str,
        message: str,
        data: Dict[str, Any],
        status: NotificationStatus = NotificationStatus.PENDING,
        template_id: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        html_content: Optional[str] = None,
    ) -> Notification:
        """Insert a notification and its ``created`` event atomically."""
        now = self._clock()
        notification = Notification(
            user_id=user_id,
            template_id=template_id,
            channel_type=channel_type,
            category=category,
            priority=priority,
            status=NotificationStatus(status).value,
            title=title,
            message=message,
            html_content=html_content,
            data=data,
            retry_count=0,
            scheduled_at=scheduled_at,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session, session.begin():
            session.add(notification)
            await session.flush()
            await self._events.append(
                notification.id,
                EventType.CREATED,
                {"status": notification.status, "channel_type": channel_type},
                session=session,
            )
        return notification

    async def get(self, notification_id: str) -> Optional[Notification]:
        async with self._session_factory() as session:
            return await session.get(Notification, notification_id)

    async def get_by_external_id(self, channel_type: str, external_id: str) -> Optional[Notification]:
        stmt = (
            select(Notification)
            .where(
                Notification.channel_type == channel_type,
                Notification.external_id == external_id,
            )
            .order_by(Notification.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.scalars(stmt)).first()

    # ── Claim / transition ──

    async def claim(self, notification_id: str) -> Optional[Notification]:
        """
        Take exclusive ownership of one delivery attempt.

        Returns the claimed row (now ``in_flight``) or None when the row is
        missing, not due, or already claimed.
        """
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, _due_clause(now, stale_before=now))
                .values(status=IN_FLIGHT, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return await session.get(Notification, notification_id)

    async def transition(
        self,
        notification_id: str,
        *,
        from_statuses: Iterable[NotificationStatus],
        to_status: NotificationStatus,
        event_type: EventType,
        event_data: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Optional[Notification]:
        """
        Move a notification between states, appending exactly one event.

        Nothing is written when the row is not currently in one of
        ``from_statuses``; the caller gets None.
        """
        expected = [NotificationStatus(s).value for s in from_statuses]
        values = {"status": NotificationStatus(to_status).value, "updated_at": self._clock(), **fields}
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.status.in_(expected))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            await self._events.append(notification_id, event_type, event_data, session=session)
            return await session.get(Notification, notification_id)

    # ── Due scan ──

    async def find_due(self, *, limit: int = 100, stale_before: Optional[datetime] = None) -> List[str]:
        """Ids of notifications whose retry or schedule time has passed."""
        now = self._clock()
        stmt = (
            select(Notification.id)
            .where(_due_clause(now, stale_before))
            .order_by(Notification.updated_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Return ``in_flight`` rows abandoned before ``older_than`` to ``pending``."""
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Notification)
                .where(Notification.status == IN_FLIGHT, Notification.updated_at < older_than)
                .values(status=PENDING, next_retry_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount
        if released:
            logger.warning("Released %d stale in-flight claim(s)", released)
        return released

    async def mark_rate_counted(self, notification_id: str) -> bool:
        """True only for the first caller; later attempts must not charge the window again."""
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.rate_counted.is_(False))
                .values(rate_counted=True)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ── Inbox ──

    async def list_for_user(
        self,
        user_id: int,
        *,
        channel_type: Optional[str] = None,
        category: Optional[str] = None,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Notification], bool]:
        """Newest first. Returns (page, has_more)."""
        stmt = select(Notification).where(Notification.user_id == user_id)
        if channel_type:
            stmt = stmt.where(Notification.channel_type == channel_type)
        if category:
            stmt = stmt.where(Notification.category == category)
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        stmt = (
            stmt.order_by(Notification.created_at.desc(), Notification.id)
            .offset(offset)
            .limit(limit + 1)
        )
        async with self._session_factory() as session:
            rows = list((await session.scalars(stmt)).all())
        return rows[:limit], len(rows) > limit

    async def unread_count(self, user_id: int) -> int:
        stmt = select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id,
            Notification.channel_type == ChannelType.IN_APP.value,
            Notification.status.in_(_INBOX_STATUSES),
            Notification.read_at.is_(None),
        )
        async with self._session_factory() as session:
            return int(await session.scalar(stmt) or 0)

    async def mark_read(self, notification_id: str, user_id: int) -> Optional[Notification]:
        """Set ``read_at`` on one in-app notification (idempotent)."""
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            notification = await session.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                return None
            if notification.channel_type != ChannelType.IN_APP.value:
                raise ValidationError(
                    "Only in-app notifications can be marked read",
                    field="notification_id",
                    channel_type=notification.channel_type,
                )
            if notification.read_at is None:
                notification.read_at = now
                notification.updated_at = now
        return notification

    async def mark_all_read(self, user_id: int) -> int:
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.channel_type == ChannelType.IN_APP.value,
                    Notification.read_at.is_(None),
                )
                .values(read_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
