"""
Request middleware — correlation IDs and delivery-aware access logs.

Provider webhooks, tracking pixels and inbox calls all name the thing they
touch in the URL. The middleware lifts that out of the path before routing
so every log line written while serving the request carries it:

    /api/v1/notifications/{uuid}/track/open   → notification_id
    /api/v1/notifications/webhooks/{channel}  → channel
    /api/v1/notifications/channels/{user_id}  → user_id
    /api/v1/notifications/preferences/{user}  → user_id

Responses get X-Request-ID and X-Process-Time headers.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "/api/v1/notifications"

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")

_UUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"


def _patterns(prefix: str):
    base = re.escape(prefix.rstrip("/"))
    return (
        (re.compile(rf"^{base}/webhooks/(?P<channel>[a-z_]+)(?:/inbound)?/?$"), ()),
        (re.compile(rf"^{base}/(?:channels|preferences)/(?P<user_id>\d+)/?$"), ("user_id",)),
        (re.compile(rf"^{base}/(?P<notification_id>{_UUID})(?:/.*)?$"), ()),
    )


def delivery_context(path: str, prefix: str = DEFAULT_PREFIX) -> Dict[str, Any]:
    """Notification id, channel or user id named by a request path."""
    for pattern, numeric in _patterns(prefix):
        match = pattern.match(path)
        if match:
            return {
                key: int(value) if key in numeric else value
                for key, value in match.groupdict().items()
            }
    return {}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with timing, inject correlation ID and delivery context."""

    def __init__(self, app: ASGIApp, prefix: str = DEFAULT_PREFIX):
        super().__init__(app)
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:16])
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        delivery = delivery_context(path, self.prefix)

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            **delivery,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500, **delivery},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    **delivery,
                },
            )

        set_request_context()
        return response
