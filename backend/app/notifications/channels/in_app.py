"""
in_app.py — Real-time in-app notification channel.

═══════════════════════════════════════════════════════════════════════════
PRESENCE & BACKLOG
═══════════════════════════════════════════════════════════════════════════

    user online  (≥1 live connection)
        → pushed to every connection, result status "delivered"

    user offline
        → appended to the user's backlog, result status "queued"
          backlog holds the newest 100 entries; older ones are dropped

    connect(user)
        → backlog replayed in order, then cleared; replayed ids are
          reported to ``on_replay`` so they can be marked delivered

    Presence and backlog live in this process. Several API workers each
    keep their own view of who is connected.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from backend.app.notifications.channels.base import (
    ChannelAdapter,
    ChannelConfig,
    EndpointValidationError,
)
from backend.app.notifications.models import (
    ChannelType,
    DeliveryOptions,
    DeliveryResult,
    RenderedContent,
)

logger = logging.getLogger(__name__)

Sink = Callable[[Dict[str, Any]], Awaitable[None]]
ReplayHook = Callable[[List[str]], Awaitable[None]]

DEFAULT_BACKLOG_SIZE = 100


class InAppChannel(ChannelAdapter):
    channel_type = ChannelType.IN_APP
    log_label = "IN_APP"
    requires_registration = False

    def __init__(
        self,
        config: Optional[ChannelConfig] = None,
        *,
        backlog_size: int = DEFAULT_BACKLOG_SIZE,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(config or ChannelConfig(provider="in_process"))
        self.backlog_size = backlog_size
        self._clock = clock
        self._connections: Dict[str, Dict[str, Sink]] = {}
        self._backlog: Dict[str, Deque[Dict[str, Any]]] = {}
        self.on_replay: Optional[ReplayHook] = None

    # ── Presence ──

    def is_online(self, user_id: Any) -> bool:
        return bool(self._connections.get(str(user_id)))

    def pending_count(self, user_id: Any) -> int:
        return len(self._backlog.get(str(user_id), ()))

    async def connect(self, user_id: Any, connection_id: str, sink: Sink) -> int:
        """Register a live connection and replay the backlog; returns replay count."""
        key = str(user_id)
        self._connections.setdefault(key, {})[connection_id] = sink
        logger.info("[IN_APP] User %s connected (%s)", key, connection_id)

        backlog = self._backlog.pop(key, None)
        if not backlog:
            return 0

        replayed: List[str] = []
        for message in backlog:
            try:
                await sink(message)
            except Exception as exc:
                # Connection died mid-replay: keep what is left for next time
                logger.warning("[IN_APP] Replay to %s interrupted: %s", key, exc)
                remaining = list(backlog)[len(replayed):]
                self._backlog[key] = deque(remaining, maxlen=self.backlog_size)
                self._connections.get(key, {}).pop(connection_id, None)
                break
            replayed.append(message["notification_id"])

        if replayed and self.on_replay is not None:
            await self.on_replay(replayed)
        return len(replayed)

    def disconnect(self, user_id: Any, connection_id: str) -> None:
        key = str(user_id)
        connections = self._connections.get(key)
        if connections is None:
            return
        connections.pop(connection_id, None)
        if not connections:
            del self._connections[key]
        logger.info("[IN_APP] User %s disconnected (%s)", key, connection_id)

    # ── Adapter ──

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        key = str(endpoint or "").strip()
        if not key:
            raise EndpointValidationError("In-app delivery needs a user id")
        return key

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        return {
            "type": "notification",
            "notification_id": options.notification_id,
            "title": content.title,
            "message": content.message,
            "category": options.category,
            "priority": options.priority,
            "data": content.data,
            "created_at": self._clock().isoformat(),
        }

    async def _deliver(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> DeliveryResult:
        message = self.build_payload(endpoint, content, options)
        pushed = 0
        for connection_id, sink in list(self._connections.get(endpoint, {}).items()):
            try:
                await sink(message)
                pushed += 1
            except Exception as exc:
                logger.warning("[IN_APP] Dropping dead connection %s: %s", connection_id, exc)
                self.disconnect(endpoint, connection_id)

        if pushed:
            return DeliveryResult(
                success=True,
                external_id=options.notification_id,
                status="delivered",
                provider=self.provider,
                provider_response={"connections": pushed},
            )

        backlog = self._backlog.setdefault(endpoint, deque(maxlen=self.backlog_size))
        if len(backlog) == backlog.maxlen:
            logger.info("[IN_APP] Backlog full for user %s, dropping oldest", endpoint)
        backlog.append(message)
        return DeliveryResult(
            success=True,
            external_id=options.notification_id,
            status="queued",
            provider=self.provider,
            provider_response={"backlog_size": len(backlog)},
        )
