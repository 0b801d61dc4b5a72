"""
webhooks.py — Provider delivery-receipt authentication and normalisation.

Providers call back with their own vocabulary ("MessageStatus=undelivered",
"event=bounce", "status=delivered"). This module turns a raw callback into
a ``DeliveryCallback`` whose ``kind`` the orchestrator understands.

═══════════════════════════════════════════════════════════════════════════
AUTHENTICATION
═══════════════════════════════════════════════════════════════════════════

    X-Signature: sha256=<hex HMAC-SHA256(WEBHOOK_SECRET, raw request body)>

    The bare hex digest is accepted too. Comparison is constant-time.
    Callbacks failing verification are rejected before parsing.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from backend.app.notifications.channels.sms_channel import map_receipt_status
from backend.app.notifications.models import ChannelType

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
_SIGNATURE_PREFIX = "sha256="


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{_SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of an ``X-Signature`` header against ``body``."""
    if not signature or not secret:
        return False
    provided = signature.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


class CallbackKind(str, Enum):
    PENDING = "pending"      # still in transit; nothing to record
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"
    COMPLAINT = "complaint"  # recipient marked it as spam
    OPENED = "opened"
    CLICKED = "clicked"
    UNKNOWN = "unknown"


_STATUS_KINDS = {
    "pending": CallbackKind.PENDING,
    "queued": CallbackKind.PENDING,
    "processed": CallbackKind.PENDING,
    "deferred": CallbackKind.PENDING,
    "sent": CallbackKind.SENT,
    "delivered": CallbackKind.DELIVERED,
    "delivery": CallbackKind.DELIVERED,
    "failed": CallbackKind.FAILED,
    "undelivered": CallbackKind.FAILED,
    "dropped": CallbackKind.FAILED,
    "rejected": CallbackKind.FAILED,
    "bounce": CallbackKind.BOUNCED,
    "bounced": CallbackKind.BOUNCED,
    "complaint": CallbackKind.COMPLAINT,
    "spamreport": CallbackKind.COMPLAINT,
    "open": CallbackKind.OPENED,
    "opened": CallbackKind.OPENED,
    "click": CallbackKind.CLICKED,
    "clicked": CallbackKind.CLICKED,
}


@dataclass
class DeliveryCallback:
    channel_type: ChannelType
    external_id: str
    kind: CallbackKind
    raw_status: str = ""
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


def classify_status(channel_type: ChannelType, status: str) -> CallbackKind:
    status = (status or "").strip().lower()
    if channel_type == ChannelType.SMS:
        mapped = map_receipt_status(status)
        if mapped != "unknown":
            status = mapped
    return _STATUS_KINDS.get(status, CallbackKind.UNKNOWN)


def _first(payload: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_callback(channel_type: ChannelType, payload: Dict[str, Any]) -> DeliveryCallback:
    """
    Normalise one provider callback body.

    Raises:
        ValueError: no message id or no status in the payload.
    """
    external_id = _first(payload, "external_id", "message_id", "MessageSid", "sg_message_id", "id")
    status = _first(payload, "status", "event", "MessageStatus", "type")
    if external_id is None:
        raise ValueError("callback has no message id")
    if status is None:
        raise ValueError("callback has no status")

    error_code = _first(payload, "error_code", "ErrorCode", "reason_code")
    error_message = _first(payload, "error_message", "ErrorMessage", "reason")
    return DeliveryCallback(
        channel_type=ChannelType(channel_type),
        external_id=str(external_id),
        kind=classify_status(ChannelType(channel_type), str(status)),
        raw_status=str(status),
        error_code=str(error_code) if error_code is not None else None,
        error_message=str(error_message) if error_message is not None else None,
        data={k: v for k, v in payload.items() if k in ("url", "user_agent", "ip", "timestamp")},
    )
