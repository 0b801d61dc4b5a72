"""
email_channel.py — Email delivery channel.

Delivery mechanism:
    • HTTP mail gateway (SendGrid/SES/Mailgun style JSON API) or simulation
    • Multipart body: plain text + HTML (generated when no HTML template)
    • Delivery, bounce and complaint receipts arrive via provider webhook

═══════════════════════════════════════════════════════════════════════════
TRACKING
═══════════════════════════════════════════════════════════════════════════

    When tracking is enabled the HTML body is rewritten before sending:

        <a href="https://shop.example/x">   →   <a href="{base}/api/v1/notifications/{id}/track/click?url=https%3A...">
        </body>                               →   <img src="{base}/api/v1/notifications/{id}/track/open" ...></body>

    The tracking endpoints record ``clicked`` / ``opened`` events and never
    fail the reader's request.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from backend.app.notifications.channels.base import (
    ChannelAdapter,
    ChannelConfig,
    EndpointValidationError,
)
from backend.app.notifications.models import (
    ChannelType,
    DeliveryOptions,
    Priority,
    RenderedContent,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_LINK_RE = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)

TRACKING_PATH = "/api/v1/notifications/{notification_id}/track"


def build_default_html(content: RenderedContent) -> str:
    """Minimal HTML body for messages without an HTML template."""
    paragraphs = "".join(
        f"<p>{html.escape(line)}</p>" for line in content.message.split("\n") if line.strip()
    )
    return (
        "<html><body>"
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">'
        f"<h2>{html.escape(content.title)}</h2>"
        f"{paragraphs}"
        "</div>"
        "</body></html>"
    )


def add_tracking(body: str, base_url: str, notification_id: str) -> str:
    """Rewrite links through the click tracker and append the open pixel."""
    track = base_url.rstrip("/") + TRACKING_PATH.format(notification_id=notification_id)

    def _rewrite(match: "re.Match[str]") -> str:
        target = html.unescape(match.group(1))
        return f'href="{track}/click?url={quote(target, safe="")}"'

    body = _LINK_RE.sub(_rewrite, body)
    pixel = f'<img src="{track}/open" width="1" height="1" alt="" style="display:none" />'
    if "</body>" in body:
        return body.replace("</body>", f"{pixel}</body>", 1)
    return body + pixel


class EmailChannel(ChannelAdapter):
    channel_type = ChannelType.EMAIL
    log_label = "EMAIL"

    def __init__(
        self,
        config: Optional[ChannelConfig] = None,
        *,
        tracking_enabled: bool = False,
        public_base_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config, transport=transport)
        self.tracking_enabled = tracking_enabled and bool(public_base_url)
        self.public_base_url = public_base_url

    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        address = (endpoint or "").strip()
        if not EMAIL_RE.match(address):
            raise EndpointValidationError(f"Invalid email address: {endpoint!r}")
        return address

    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        body_html = content.html or build_default_html(content)
        if self.tracking_enabled:
            body_html = add_tracking(body_html, self.public_base_url, options.notification_id)

        headers = {"X-Notification-ID": options.notification_id}
        if options.priority == Priority.HIGH.value:
            headers["X-Priority"] = "1"

        return {
            "from": self.config.sender or "notifications@example.com",
            "to": endpoint,
            "subject": content.title,
            "text": content.message,
            "html": body_html,
            "headers": headers,
            "tags": [options.category],
        }
