"""
sms_channel.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • HTTP API to an SMS gateway (Twilio / MSG91 style JSON API) or simulation
    • Numbers normalised to E.164 before sending
    • Delivery receipts arrive via provider webhook

═══════════════════════════════════════════════════════════════════════════
MESSAGE RULES
═══════════════════════════════════════════════════════════════════════════

    • Marketing messages end with "Reply STOP to opt out."
    • Bodies are capped at 1600 characters (concatenated SMS limit);
      longer text is cut to 1597 chars + "..."
    • Segment count: 1 segment ≤ 160 chars, otherwise 153 chars/segment
    • Inbound STOP / UNSUBSCRIBE / QUIT / END / CANCEL deactivate the number
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from backend.app.notifications.channels.base import (
    ChannelAdapter,
    ChannelConfig,
    EndpointValidationError,
)
from backend.app.notifications.models import (
    Category,
    ChannelType,
    DeliveryOptions,
    RenderedContent,
)

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600
SMS_SINGLE_SEGMENT = 160
SMS_CONCAT_SEGMENT = 153  # 7 chars of each part go to the UDH
OPT_OUT_FOOTER = "\n\nReply STOP to opt out."
OPT_OUT_KEYWORDS = frozenset({"STOP", "UNSUBSCRIBE", "QUIT", "END", "CANCEL"})

# Gateway receipt status → lifecycle callback status
STATUS_MAP = {
    "queued": "pending",
    "accepted": "pending",
    "sending": "pending",
    "sent": "sent",
    "delivered": "delivered",
    "failed": "failed",
    "undelivered": "failed",
}

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str, default_country_code: str = "1") -> str:
    """
    Normalise a phone number to E.164.

    Args:
        raw: Number as entered ("+44 20 7946 0958", "(555) 123-4567").
        default_country_code: Prefixed to bare 10-digit national numbers.

    Raises:
        EndpointValidationError: fewer than 10 or more than 15 digits.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 10 and not (raw or "").strip().startswith("+"):
        digits = f"{default_country_code}{digits}"
    if not 10 <= len(digits) <= 15:
        raise EndpointValidationError(f"Invalid phone number: {raw!r}")
    return f"+{digits}"


def segment_count(body: str) -> int:
    if len(body) <= SMS_SINGLE_SEGMENT:
        return 1
    return -(-len(body) // SMS_CONCAT_SEGMENT)


def format_body(content: RenderedContent, category: str) -> str:
    body = content.message
    if category == Category.MARKETING.value:
        body += OPT_OUT_FOOTER
    if len(body) > SMS_MAX_LENGTH:
        body = body[: SMS_MAX_LENGTH - 3] + "..."
    return body


def is_opt_out(message: str) -> bool:
    """True when an inbound SMS is an opt-out request."""
    return (message or "").strip().upper() in OPT_OUT_KEYWORDS


def map_receipt_status(status: str) -> str:
    return STATUS_MAP.get((status or "").lower(), "unknown")


class SmsChannel(ChannelAdapter):
    channel_type = ChannelType.SMS
    log_label = "SMS"

    def __init__(
        self,
        config: Optional[ChannelConfig] = None,
        *,
        default_country_code: str = "1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config, transport=transport)
        self.default_country_code = default_country_code

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        return normalize_phone(endpoint, self.default_country_code)

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        body = format_body(content, options.category)
        payload: Dict[str, Any] = {
            "to": endpoint,
            "body": body,
            "segments": segment_count(body),
        }
        if self.config.sender:
            payload["from"] = self.config.sender
        return payload
