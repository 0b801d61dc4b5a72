"""
ORM records — the persistent state of the delivery engine.

Tables:
    notification_templates         reusable subject/body/html templates
    notifications                  one row per (user, channel) notification
    notification_events            append-only lifecycle audit trail
    user_notification_preferences  per (user, channel, category) opt-in
    notification_channels          registered delivery endpoints
    notification_rate_limits       per-day delivery counters

All timestamps are UTC (see ``UTCDateTime``). JSON columns are JSONB on
PostgreSQL.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from backend.app.core.database import Base, JSONType, UTCDateTime

# Autoincrement needs INTEGER PRIMARY KEY on SQLite
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    channel_type = Column(String(32), nullable=False)
    category = Column(String(50), nullable=False)
    subject = Column(String(255))
    body_template = Column(Text, nullable=False)
    html_template = Column(Text)
    default_data = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channel_type": self.channel_type,
            "category": self.category,
            "subject": self.subject,
            "body_template": self.body_template,
            "html_template": self.html_template,
            "default_data": self.default_data or {},
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_due_retry", "status", "next_retry_at"),
        Index("ix_notifications_due_scheduled", "status", "scheduled_at"),
        Index("ix_notifications_user_channel", "user_id", "channel_type"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(Integer, nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("notification_templates.id"), nullable=True)
    channel_type = Column(String(32), nullable=False)
    category = Column(String(50), nullable=False)
    priority = Column(String(20), nullable=False, default="normal")
    status = Column(String(20), nullable=False, default="pending")
    title = Column(String(255), nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    html_content = Column(Text)
    data = Column(JSONType, nullable=False, default=dict)
    endpoint_id = Column(Integer, nullable=True)  # last endpoint attempted
    external_id = Column(String(255), index=True)
    last_error = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    rate_counted = Column(Boolean, nullable=False, default=False)  # deferred send charged to its window
    next_retry_at = Column(UTCDateTime)
    scheduled_at = Column(UTCDateTime)
    expires_at = Column(UTCDateTime)
    sent_at = Column(UTCDateTime)
    delivered_at = Column(UTCDateTime)
    read_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "template_id": self.template_id,
            "channel_type": self.channel_type,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "title": self.title,
            "message": self.message,
            "html_content": self.html_content,
            "data": self.data or {},
            "external_id": self.external_id,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "next_retry_at": _iso(self.next_retry_at),
            "scheduled_at": _iso(self.scheduled_at),
            "expires_at": _iso(self.expires_at),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "read_at": _iso(self.read_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class NotificationEvent(Base):
    __tablename__ = "notification_events"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    notification_id = Column(
        String(36), ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    event_type = Column(String(20), nullable=False)
    event_data = Column(JSONType, nullable=False, default=dict)
    event_timestamp = Column(UTCDateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "event_type": self.event_type,
            "event_data": self.event_data or {},
            "event_timestamp": _iso(self.event_timestamp),
        }


class UserPreference(Base):
    __tablename__ = "user_notification_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "channel_type", "category", name="uq_preference_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    channel_type = Column(String(32), nullable=False)
    category = Column(String(50), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    settings = Column(JSONType, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "channel_type": self.channel_type,
            "category": self.category,
            "enabled": self.enabled,
            "settings": self.settings or {},
            "updated_at": _iso(self.updated_at),
        }


class ChannelEndpoint(Base):
    __tablename__ = "notification_channels"
    __table_args__ = (
        UniqueConstraint("user_id", "channel_type", "endpoint", name="uq_channel_endpoint"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    channel_type = Column(String(32), nullable=False)
    endpoint = Column(String(500), nullable=False)
    # "metadata" is reserved on declarative classes
    endpoint_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(UTCDateTime)
    last_used_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel_type": self.channel_type,
            "endpoint": self.endpoint,
            "metadata": self.endpoint_metadata or {},
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "verified_at": _iso(self.verified_at),
            "last_used_at": _iso(self.last_used_at),
        }


class RateLimitCounter(Base):
    __tablename__ = "notification_rate_limits"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "channel_type", "category", "window_start",
            name="uq_rate_limit_window",
        ),
        Index("ix_rate_limits_window_end", "window_end"),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    channel_type = Column(String(32), nullable=False)
    category = Column(String(50), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    window_start = Column(UTCDateTime, nullable=False)
    window_end = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)
