"""
preferences.py — Per-user, per-channel, per-category delivery preferences.

A user who never stated a preference is opted in, with the channel's
default daily cap. Resolved preferences are cached in Redis and dropped
from the cache whenever they are written.

Recognised ``settings`` keys:
    frequency_limit     int > 0, deliveries per UTC day (frequencyLimit accepted)
    quiet_hours_start   "HH:MM" UTC
    quiet_hours_end     "HH:MM" UTC; a window may wrap past midnight
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.cache import cache_delete, cache_get, cache_set
from backend.app.core.config import settings as app_settings
from backend.app.core.database import dialect_insert
from backend.app.core.errors import ValidationError
from backend.app.notifications.models import (
    Category,
    ChannelType,
    DEFAULT_FREQUENCY_LIMITS,
)
from backend.app.notifications.records import UserPreference

logger = logging.getLogger(__name__)

# Categories never deferred by quiet hours
QUIET_HOURS_EXEMPT = frozenset({Category.TRANSACTIONAL.value, Category.SYSTEM.value})


def _parse_hhmm(value: Any, field_name: str) -> time:
    try:
        hours, minutes = str(value).split(":")
        return time(int(hours), int(minutes))
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be HH:MM", field=field_name)


@dataclass
class ResolvedPreference:
    """Effective preference for one (user, channel, category)."""
    enabled: bool = True
    frequency_limit: int = 100
    settings: Dict[str, Any] = field(default_factory=dict)
    explicit: bool = False  # a stored row exists

    def quiet_until(self, now: datetime, category: str) -> Optional[datetime]:
        """End of the quiet window containing ``now``, or None."""
        start = self.settings.get("quiet_hours_start")
        end = self.settings.get("quiet_hours_end")
        if not start or not end or category in QUIET_HOURS_EXEMPT:
            return None

        start_t = _parse_hhmm(start, "quiet_hours_start")
        end_t = _parse_hhmm(end, "quiet_hours_end")
        now = now.astimezone(timezone.utc)
        today_end = now.replace(hour=end_t.hour, minute=end_t.minute, second=0, microsecond=0)
        current = now.time().replace(tzinfo=None)

        if start_t == end_t:
            return None
        if start_t < end_t:
            return today_end if start_t <= current < end_t else None
        # Window wraps midnight, e.g. 22:00 → 07:00
        if current >= start_t:
            return today_end + timedelta(days=1)
        if current < end_t:
            return today_end
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "frequency_limit": self.frequency_limit,
            "settings": self.settings,
        }


def frequency_limit_from(settings: Dict[str, Any], channel_type: ChannelType) -> int:
    raw = settings.get("frequency_limit", settings.get("frequencyLimit"))
    if raw is None:
        return DEFAULT_FREQUENCY_LIMITS[channel_type]
    return int(raw)


def validate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Check recognised keys; unknown keys pass through untouched."""
    limit = settings.get("frequency_limit", settings.get("frequencyLimit"))
    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationError("frequency_limit must be a positive integer", field="frequency_limit")
    if ("quiet_hours_start" in settings) != ("quiet_hours_end" in settings):
        raise ValidationError("quiet_hours_start and quiet_hours_end go together", field="quiet_hours_start")
    for key in ("quiet_hours_start", "quiet_hours_end"):
        if key in settings:
            _parse_hhmm(settings[key], key)
    return settings


class PreferenceStore:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        cache_ttl: int = app_settings.PREFERENCE_CACHE_TTL,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._cache_ttl = cache_ttl

    @staticmethod
    def _cache_key(user_id: int, channel_type: str, category: str) -> str:
        return f"pref:{user_id}:{channel_type}:{category}"

    async def resolve(self, user_id: int, channel_type: ChannelType, category: str) -> ResolvedPreference:
        """Effective preference; default-enabled when nothing is stored."""
        channel_type = ChannelType(channel_type)
        key = self._cache_key(user_id, channel_type.value, category)
        cached = await cache_get(key)
        if cached is not None:
            return ResolvedPreference(**cached)

        stmt = select(UserPreference).where(
            UserPreference.user_id == user_id,
            UserPreference.channel_type == channel_type.value,
            UserPreference.category == category,
        )
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()

        if row is None:
            resolved = ResolvedPreference(frequency_limit=DEFAULT_FREQUENCY_LIMITS[channel_type])
        else:
            resolved = ResolvedPreference(
                enabled=row.enabled,
                frequency_limit=frequency_limit_from(row.settings or {}, channel_type),
                settings=row.settings or {},
                explicit=True,
            )

        await cache_set(key, {**resolved.to_dict(), "explicit": resolved.explicit}, ttl=self._cache_ttl)
        return resolved

    async def get_preferences(self, user_id: int) -> List[UserPreference]:
        stmt = (
            select(UserPreference)
            .where(UserPreference.user_id == user_id)
            .order_by(UserPreference.channel_type, UserPreference.category)
        )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def set_preferences(self, user_id: int, items: List[Dict[str, Any]]) -> List[UserPreference]:
        """
        Upsert preferences keyed by (user, channel_type, category).

        Each item: {"channel_type", "category", "enabled", "settings"}.
        All items are validated before anything is written.
        """
        rows = []
        for item in items:
            try:
                channel_type = ChannelType(item.get("channel_type"))
            except ValueError:
                raise ValidationError(
                    f"Unknown channel type '{item.get('channel_type')}'", field="channel_type",
                )
            category = item.get("category")
            if not category:
                raise ValidationError("category is required", field="category")
            rows.append({
                "user_id": user_id,
                "channel_type": channel_type.value,
                "category": category,
                "enabled": bool(item.get("enabled", True)),
                "settings": validate_settings(dict(item.get("settings") or {})),
            })

        now = self._clock()
        async with self._session_factory() as session, session.begin():
            for row in rows:
                stmt = dialect_insert(session, UserPreference.__table__).values(**row, created_at=now, updated_at=now)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "channel_type", "category"],
                    set_={
                        "enabled": stmt.excluded.enabled,
                        "settings": stmt.excluded.settings,
                        "updated_at": now,
                    },
                )
                await session.execute(stmt)

        await cache_delete(*(self._cache_key(user_id, r["channel_type"], r["category"]) for r in rows))
        logger.info("Preferences updated for user %s (%d entries)", user_id, len(rows), extra={"user_id": user_id})
        return await self.get_preferences(user_id)
