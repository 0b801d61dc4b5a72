"""
Pydantic schemas for the notification API.

Separated from the route handler so they are reusable across
the codebase (WebSocket handlers, background workers, tests).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.notifications.models import (
    Category,
    ChannelType,
    NotificationRequest,
    Priority,
)


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------

class SendNotificationRequest(BaseModel):
    """Request body for POST /api/v1/notifications/send."""
    user_id: int = Field(..., ge=1, examples=[42])
    channel_type: ChannelType = Field(..., examples=["email"])
    category: str = Field(
        Category.TRANSACTIONAL.value,
        min_length=1, max_length=50,
        description="transactional | marketing | system | reminder (other values accepted)",
        examples=["marketing"],
    )
    priority: Priority = Field(Priority.NORMAL, examples=["high"])
    title: str = Field("", max_length=255, examples=["Your order shipped"])
    message: str = Field("", examples=["Order #1042 is on its way."])
    data: Dict[str, Any] = Field(default_factory=dict, examples=[{"order_id": 1042}])
    template_id: Optional[int] = Field(None, ge=1)
    scheduled_at: Optional[datetime] = Field(
        None, description="Future time to deliver at; past values send now",
    )
    expires_at: Optional[datetime] = Field(None, description="Give up if not delivered by then")

    def to_request(self) -> NotificationRequest:
        return NotificationRequest(
            user_id=self.user_id,
            channel_type=self.channel_type.value,
            category=self.category,
            priority=self.priority.value,
            title=self.title,
            message=self.message,
            data=self.data,
            template_id=self.template_id,
            scheduled_at=self.scheduled_at,
            expires_at=self.expires_at,
        )


class BulkSendRequest(BaseModel):
    notifications: List[SendNotificationRequest] = Field(..., min_length=1, max_length=1000)


class SendResponse(BaseModel):
    success: bool
    notification_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    external_id: Optional[str] = None
    scheduled_at: Optional[str] = None


class BulkSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BulkSendResponse(BaseModel):
    results: List[SendResponse]
    summary: BulkSummary


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

class NotificationListResponse(BaseModel):
    notifications: List[Dict[str, Any]]
    unread_count: int
    limit: int
    offset: int
    has_more: bool


class NotificationDetailResponse(BaseModel):
    notification: Dict[str, Any]
    events: List[Dict[str, Any]]


class MarkAllReadResponse(BaseModel):
    updated: int


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

class PreferenceItem(BaseModel):
    channel_type: ChannelType
    category: str = Field(..., min_length=1, max_length=50)
    enabled: bool = True
    settings: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"frequency_limit": 5, "quiet_hours_start": "22:00", "quiet_hours_end": "07:00"}],
    )


class SetPreferencesRequest(BaseModel):
    preferences: List[PreferenceItem] = Field(..., min_length=1)


class PreferencesResponse(BaseModel):
    user_id: int
    preferences: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class RegisterChannelRequest(BaseModel):
    user_id: int = Field(..., ge=1)
    channel_type: ChannelType
    endpoint: str = Field(..., min_length=1, max_length=500, examples=["+15551234567"])
    metadata: Dict[str, Any] = Field(default_factory=dict)
    verified: bool = True

    @field_validator("endpoint")
    @classmethod
    def strip_endpoint(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("endpoint must not be blank")
        return v


class ChannelListResponse(BaseModel):
    user_id: int
    channels: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class CreateTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, examples=["order_shipped"])
    channel_type: ChannelType
    category: str = Field(Category.TRANSACTIONAL.value, min_length=1, max_length=50)
    subject: Optional[str] = Field(None, max_length=255, examples=["Order {{order_id}} shipped"])
    body_template: str = Field(..., min_length=1, examples=["Hi {{name}}, your order is on its way."])
    html_template: Optional[str] = None
    default_data: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


# ---------------------------------------------------------------------------
# Provider callbacks
# ---------------------------------------------------------------------------

class WebhookResponse(BaseModel):
    processed: bool
    kind: str


class InboundSmsRequest(BaseModel):
    from_number: str = Field(..., alias="from", min_length=1)
    body: str = ""

    model_config = {"populate_by_name": True}
