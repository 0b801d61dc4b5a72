"""
rate_limiter.py — Per (user, channel, category) daily delivery caps.

═══════════════════════════════════════════════════════════════════════════
WINDOWS
═══════════════════════════════════════════════════════════════════════════

    Fixed UTC calendar days:  [00:00, next 00:00)
    One counter row per (user, channel_type, category, window_start).

    A send at 23:59:59 lands in today's window; one at 00:00:00 lands in
    tomorrow's, whose counter starts from zero.

═══════════════════════════════════════════════════════════════════════════
ATOMIC RESERVATION
═══════════════════════════════════════════════════════════════════════════

    1. INSERT counter row (count=0) ON CONFLICT DO NOTHING
    2. UPDATE .. SET count = count + 1 WHERE <key> AND count < :limit
    3. rowcount == 1 → allowed, slot consumed
       rowcount == 0 → limit reached, nothing consumed

    Two concurrent requests for the last slot cannot both succeed: the
    conditional UPDATE serialises on the counter row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import dialect_insert
from backend.app.notifications.models import ChannelType
from backend.app.notifications.records import RateLimitCounter

logger = logging.getLogger(__name__)


def day_window(moment: datetime) -> Tuple[datetime, datetime]:
    """UTC day containing ``moment`` as [start, end)."""
    moment = moment.astimezone(timezone.utc)
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


@dataclass
class RateLimitDecision:
    allowed: bool
    current: int
    limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
        }


class RateLimiter:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self._clock = clock

    @staticmethod
    def _key(user_id: int, channel_type: ChannelType, category: str, window_start: datetime):
        return (
            RateLimitCounter.user_id == user_id,
            RateLimitCounter.channel_type == ChannelType(channel_type).value,
            RateLimitCounter.category == category,
            RateLimitCounter.window_start == window_start,
        )

    async def _current(self, session: AsyncSession, key) -> int:
        return int(await session.scalar(select(RateLimitCounter.count).where(*key)) or 0)

    async def check(self, user_id: int, channel_type: ChannelType, category: str, limit: int) -> RateLimitDecision:
        """Read-only: would one more delivery fit in the current window?"""
        window_start, window_end = day_window(self._clock())
        key = self._key(user_id, channel_type, category, window_start)
        async with self._session_factory() as session:
            current = await self._current(session, key)
        return RateLimitDecision(current < limit, current, limit, window_end)

    async def reserve(self, user_id: int, channel_type: ChannelType, category: str, limit: int) -> RateLimitDecision:
        """Atomically check the cap and consume one slot if there is room."""
        now = self._clock()
        window_start, window_end = day_window(now)
        key = self._key(user_id, channel_type, category, window_start)

        async with self._session_factory() as session, session.begin():
            seed = dialect_insert(session, RateLimitCounter.__table__).values(
                user_id=user_id,
                channel_type=ChannelType(channel_type).value,
                category=category,
                count=0,
                window_start=window_start,
                window_end=window_end,
                created_at=now,
                updated_at=now,
            ).on_conflict_do_nothing(
                index_elements=["user_id", "channel_type", "category", "window_start"],
            )
            await session.execute(seed)

            result = await session.execute(
                update(RateLimitCounter)
                .where(*key, RateLimitCounter.count < limit)
                .values(count=RateLimitCounter.count + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            allowed = result.rowcount == 1
            current = await self._current(session, key)

        if not allowed:
            logger.info(
                "Rate limit reached for user %s %s/%s (%d/%d)",
                user_id, ChannelType(channel_type).value, category, current, limit,
                extra={"user_id": user_id, "channel": ChannelType(channel_type).value},
            )
        return RateLimitDecision(allowed, current, limit, window_end)

    async def increment(self, user_id: int, channel_type: ChannelType, category: str) -> int:
        """Unconditionally count one delivery; returns the new count."""
        now = self._clock()
        window_start, window_end = day_window(now)
        async with self._session_factory() as session, session.begin():
            stmt = dialect_insert(session, RateLimitCounter.__table__).values(
                user_id=user_id,
                channel_type=ChannelType(channel_type).value,
                category=category,
                count=1,
                window_start=window_start,
                window_end=window_end,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "channel_type", "category", "window_start"],
                set_={"count": RateLimitCounter.__table__.c["count"] + 1, "updated_at": now},
            )
            await session.execute(stmt)
            return await self._current(session, self._key(user_id, channel_type, category, window_start))

    async def release(self, user_id: int, channel_type: ChannelType, category: str) -> None:
        """Give back a slot taken by ``reserve`` in the current window."""
        window_start, _ = day_window(self._clock())
        key = self._key(user_id, channel_type, category, window_start)
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(RateLimitCounter)
                .where(*key, RateLimitCounter.count > 0)
                .values(count=RateLimitCounter.count - 1, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )

    async def reap_expired(self, retention: timedelta = timedelta(hours=24)) -> int:
        """Delete windows that ended more than ``retention`` ago."""
        cutoff = self._clock() - retention
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(RateLimitCounter)
                .where(RateLimitCounter.window_end < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
