"""
Data models for the multi-channel notification delivery engine.

Defines:
    • ChannelType, Category, Priority — request vocabulary
    • NotificationStatus, EventType — lifecycle vocabulary
    • ErrorCode, FailureClass — delivery outcome classification
    • NotificationRequest — what a caller asks to send
    • RenderedContent, DeliveryOptions, DeliveryResult — the adapter contract
    • SendResult, BulkSendResult — what the orchestrator returns

═══════════════════════════════════════════════════════════════════════════
NOTIFICATION LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    pending ──claim──► in_flight ──ok──► sent ──callback──► delivered
       ▲                   │                 │
       │   retryable &     │ permanent /     └──bounce / fail──► failed
       └── retries left ───┤ retries spent
                           ▼
                        failed
    scheduled ──due──► in_flight            scheduled / pending ──► cancelled

    Terminal: delivered, failed, cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════

class ChannelType(str, Enum):
    """Delivery medium."""
    EMAIL = "email"
    SMS = "sms"
    PUSH_IOS = "push_ios"
    PUSH_ANDROID = "push_android"
    PUSH_WEB = "push_web"
    IN_APP = "in_app"


class Category(str, Enum):
    """Known notification categories (free-form strings are also stored)."""
    TRANSACTIONAL = "transactional"
    MARKETING = "marketing"
    SYSTEM = "system"
    REMINDER = "reminder"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"  # claimed by exactly one delivery attempt
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELLED,
})


class EventType(str, Enum):
    CREATED = "created"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    CANCELLED = "cancelled"


class ErrorCode(str, Enum):
    """Normalised provider/adapter error codes."""
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INVALID_ENDPOINT = "INVALID_ENDPOINT"
    ENDPOINT_UNREACHABLE = "ENDPOINT_UNREACHABLE"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TEMPLATE_ERROR = "TEMPLATE_ERROR"
    EXPIRED = "EXPIRED"


class FailureClass(str, Enum):
    VALIDATION = "validation"   # malformed input, never retried
    TRANSIENT = "transient"     # retried with backoff
    PERMANENT = "permanent"     # terminal; endpoint may be deactivated


# Codes worth retrying with backoff
TRANSIENT_ERROR_CODES = frozenset(c.value for c in (
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.RATE_LIMITED,
    ErrorCode.SERVICE_UNAVAILABLE,
))

# Codes that prove the stored endpoint is dead
ENDPOINT_ERROR_CODES = frozenset(c.value for c in (
    ErrorCode.INVALID_ENDPOINT,
    ErrorCode.ENDPOINT_UNREACHABLE,
    ErrorCode.UNSUBSCRIBED,
))

VALIDATION_ERROR_CODES = frozenset(c.value for c in (
    ErrorCode.INVALID_ENDPOINT,
    ErrorCode.TEMPLATE_ERROR,
))


def classify_error(code: Optional[str]) -> FailureClass:
    """Map a normalised error code onto the retry taxonomy."""
    if code in TRANSIENT_ERROR_CODES:
        return FailureClass.TRANSIENT
    if code in VALIDATION_ERROR_CODES:
        return FailureClass.VALIDATION
    return FailureClass.PERMANENT


class SendReason(str, Enum):
    """Why a send did not (or did not yet) reach a provider."""
    VALIDATION_ERROR = "validation_error"
    BLOCKED_BY_PREFERENCE = "blocked_by_preference"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    NO_ACTIVE_CHANNEL = "no_active_channel"
    UNSUPPORTED_CHANNEL = "unsupported_channel"
    RETRY_SCHEDULED = "retry_scheduled"
    DELIVERY_FAILED = "delivery_failed"
    NOT_CLAIMABLE = "not_claimable"
    EXPIRED = "expired"
    QUIET_HOURS = "quiet_hours"


# Per-channel daily caps applied when a preference has no frequency_limit
DEFAULT_FREQUENCY_LIMITS: Dict[ChannelType, int] = {
    ChannelType.EMAIL: 100,
    ChannelType.SMS: 100,
    ChannelType.PUSH_IOS: 100,
    ChannelType.PUSH_ANDROID: 100,
    ChannelType.PUSH_WEB: 100,
    ChannelType.IN_APP: 100,
}


# ═══════════════════════════════════════════════════════════════════════════
# Request
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationRequest:
    """A caller's request to notify one user over one channel."""
    user_id: int
    channel_type: str
    message: str = ""
    title: str = ""
    category: str = Category.TRANSACTIONAL.value
    priority: str = Priority.NORMAL.value
    data: Dict[str, Any] = field(default_factory=dict)
    template_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "channel_type": self.channel_type,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "priority": self.priority,
            "data": self.data,
            "template_id": self.template_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Adapter contract
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RenderedContent:
    """Final text handed to a channel adapter."""
    title: str = ""
    message: str = ""
    html: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryOptions:
    notification_id: str
    user_id: int
    category: str = Category.TRANSACTIONAL.value
    priority: str = Priority.NORMAL.value
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    """
    Outcome of one adapter call. Adapters always return one of these,
    never raise; ``retryable`` follows from ``error_code``.
    """
    success: bool
    external_id: Optional[str] = None
    status: str = "sent"  # sent | delivered | queued | failed
    error: Optional[str] = None
    error_code: Optional[str] = None
    provider: str = ""
    duration_ms: float = 0.0
    provider_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return not self.success and self.error_code in TRANSIENT_ERROR_CODES

    @property
    def failure_class(self) -> Optional[FailureClass]:
        if self.success:
            return None
        return classify_error(self.error_code)

    @classmethod
    def failure(
        cls,
        error_code: ErrorCode,
        error: str,
        *,
        provider: str = "",
        **provider_response: Any,
    ) -> "DeliveryResult":
        return cls(
            success=False,
            status="failed",
            error=error,
            error_code=error_code.value,
            provider=provider,
            provider_response=provider_response,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "provider": self.provider,
            "duration_ms": round(self.duration_ms, 1),
        }
        if self.external_id:
            d["external_id"] = self.external_id
        if not self.success:
            d["error"] = self.error
            d["error_code"] = self.error_code
            d["retryable"] = self.retryable
        return d


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SendResult:
    """Structured outcome of send/deliver; expected failures never raise."""
    success: bool
    notification_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    external_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success}
        if self.notification_id:
            d["notification_id"] = self.notification_id
        if self.status:
            d["status"] = self.status
        if self.reason:
            d["reason"] = self.reason
        if self.error:
            d["error"] = self.error
        if self.external_id:
            d["external_id"] = self.external_id
        if self.scheduled_at:
            d["scheduled_at"] = self.scheduled_at.isoformat()
        return d


@dataclass
class BulkSendResult:
    results: List[SendResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": {
                "total": self.total,
                "successful": self.successful,
                "failed": self.failed,
            },
        }
