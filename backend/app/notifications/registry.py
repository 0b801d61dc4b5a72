"""
registry.py — Registered delivery endpoints per user and channel.

An endpoint is an email address, phone number, device token, push
subscription URL or in-app session id. Delivery uses the most recently
used endpoint that is both active and verified.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import dialect_insert
from backend.app.core.errors import ValidationError
from backend.app.notifications.models import ChannelType
from backend.app.notifications.records import ChannelEndpoint

logger = logging.getLogger(__name__)


class ChannelRegistry:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def register(
        self,
        user_id: int,
        channel_type: ChannelType,
        endpoint: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        verified: bool = True,
    ) -> ChannelEndpoint:
        """
        Upsert an endpoint keyed by (user, channel_type, endpoint).

        Re-registering reactivates the endpoint and refreshes
        ``last_used_at`` so it becomes the preferred one.
        """
        try:
            channel_type = ChannelType(channel_type)
        except ValueError:
            raise ValidationError(f"Unknown channel type '{channel_type}'", field="channel_type")
        endpoint = (endpoint or "").strip()
        if not endpoint:
            raise ValidationError("endpoint is required", field="endpoint")

        now = self._clock()
        values = {
            "user_id": user_id,
            "channel_type": channel_type.value,
            "endpoint": endpoint,
            "metadata": metadata or {},
            "is_active": True,
            "is_verified": verified,
            "verified_at": now if verified else None,
            "last_used_at": now,
            "created_at": now,
            "updated_at": now,
        }
        async with self._session_factory() as session, session.begin():
            stmt = dialect_insert(session, ChannelEndpoint.__table__).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "channel_type", "endpoint"],
                set_={
                    "metadata": stmt.excluded["metadata"],
                    "is_active": True,
                    "last_used_at": now,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            record = (await session.scalars(
                select(ChannelEndpoint).where(
                    ChannelEndpoint.user_id == user_id,
                    ChannelEndpoint.channel_type == channel_type.value,
                    ChannelEndpoint.endpoint == endpoint,
                )
            )).one()

        logger.info(
            "Channel registered: user %s %s", user_id, channel_type.value,
            extra={"user_id": user_id, "channel": channel_type.value},
        )
        return record

    async def resolve(self, user_id: int, channel_type: ChannelType) -> Optional[ChannelEndpoint]:
        """Active, verified endpoint with the latest ``last_used_at``."""
        stmt = (
            select(ChannelEndpoint)
            .where(
                ChannelEndpoint.user_id == user_id,
                ChannelEndpoint.channel_type == ChannelType(channel_type).value,
                ChannelEndpoint.is_active.is_(True),
                ChannelEndpoint.is_verified.is_(True),
            )
            .order_by(ChannelEndpoint.last_used_at.desc(), ChannelEndpoint.id.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.scalars(stmt)).first()

    async def list_for_user(self, user_id: int, *, active_only: bool = False) -> List[ChannelEndpoint]:
        stmt = select(ChannelEndpoint).where(ChannelEndpoint.user_id == user_id)
        if active_only:
            stmt = stmt.where(ChannelEndpoint.is_active.is_(True))
        stmt = stmt.order_by(ChannelEndpoint.channel_type, ChannelEndpoint.last_used_at.desc())
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def touch(self, endpoint_id: int) -> None:
        """Record a successful delivery through ``endpoint_id``."""
        now = self._clock()
        await self._update(endpoint_id, last_used_at=now, updated_at=now)

    async def verify(self, endpoint_id: int) -> bool:
        now = self._clock()
        return await self._update(endpoint_id, is_verified=True, verified_at=now, updated_at=now)

    async def deactivate(self, endpoint_id: int, *, reason: str = "") -> bool:
        changed = await self._update(endpoint_id, is_active=False, updated_at=self._clock())
        if changed:
            logger.warning("Endpoint %s deactivated: %s", endpoint_id, reason or "unspecified")
        return changed

    async def deactivate_by_endpoint(self, channel_type: ChannelType, endpoint: str) -> int:
        """Deactivate every active registration of ``endpoint`` (any user)."""
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ChannelEndpoint)
                .where(
                    ChannelEndpoint.channel_type == ChannelType(channel_type).value,
                    ChannelEndpoint.endpoint == endpoint,
                    ChannelEndpoint.is_active.is_(True),
                )
                .values(is_active=False, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def _update(self, endpoint_id: int, **values: Any) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ChannelEndpoint)
                .where(ChannelEndpoint.id == endpoint_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
