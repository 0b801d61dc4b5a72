"""
base.py — Channel adapter contract and shared provider plumbing.

Every adapter exposes one coroutine:

    send(endpoint, content, options) → DeliveryResult

and never raises. Endpoint validation, the per-call timeout, provider
dispatch and error normalisation all live here; concrete adapters supply
``validate_endpoint`` and ``build_payload``.

═══════════════════════════════════════════════════════════════════════════
PROVIDERS
═══════════════════════════════════════════════════════════════════════════

    simulation   log the payload, return a synthetic external id
    http         POST the JSON payload to the configured gateway URL
                 (bearer API key), read the provider's message id back

═══════════════════════════════════════════════════════════════════════════
ERROR NORMALISATION
═══════════════════════════════════════════════════════════════════════════

    asyncio / httpx timeout      → TIMEOUT               (transient)
    connection / transport error → NETWORK_ERROR         (transient)
    HTTP 429                     → RATE_LIMITED          (transient)
    HTTP 5xx                     → SERVICE_UNAVAILABLE   (transient)
    HTTP 404                     → ENDPOINT_UNREACHABLE  (permanent)
    HTTP 410                     → UNSUBSCRIBED          (permanent)
    other HTTP 4xx               → PROVIDER_REJECTED     (permanent)
    malformed endpoint           → INVALID_ENDPOINT      (validation)
    anything else                → PROVIDER_ERROR        (permanent)
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from backend.app.notifications.models import (
    ChannelType,
    DeliveryOptions,
    DeliveryResult,
    ErrorCode,
    RenderedContent,
)

logger = logging.getLogger(__name__)


@dataclass
class ChannelConfig:
    provider: str = "simulation"  # simulation | http
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0
    sender: Optional[str] = None


class EndpointValidationError(ValueError):
    """The endpoint can never be delivered to as written."""


class ProviderError(Exception):
    """A provider answered, and the answer was a failure."""

    def __init__(self, code: ErrorCode, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


def error_code_for_status(status_code: int) -> ErrorCode:
    if status_code == 429:
        return ErrorCode.RATE_LIMITED
    if status_code >= 500:
        return ErrorCode.SERVICE_UNAVAILABLE
    if status_code == 404:
        return ErrorCode.ENDPOINT_UNREACHABLE
    if status_code == 410:
        return ErrorCode.UNSUBSCRIBED
    return ErrorCode.PROVIDER_REJECTED


class ChannelAdapter(abc.ABC):
    """Base class for one delivery medium."""

    channel_type: ChannelType
    log_label = "CHANNEL"
    # False → the user id itself is the endpoint (no registry lookup)
    requires_registration = True

    def __init__(
        self,
        config: Optional[ChannelConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ChannelConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def provider(self) -> str:
        return self.config.provider

    # ── Subclass hooks ──

    @abc.abstractmethod
    def validate_endpoint(self, endpoint: str, metadata: Dict[str, Any]) -> str:
        """Return the normalised endpoint or raise EndpointValidationError."""

    @abc.abstractmethod
    def build_payload(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> Dict[str, Any]:
        """Provider-neutral JSON payload for one message."""

    def _headers(self, options: DeliveryOptions) -> Dict[str, str]:
        headers = {"X-Notification-ID": options.notification_id}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    # ── Public API ──

    async def send(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> DeliveryResult:
        """Deliver one message. Always returns; never raises."""
        start = time.perf_counter()
        try:
            normalised = self.validate_endpoint(endpoint, options.metadata)
            result = await asyncio.wait_for(
                self._deliver(normalised, content, options),
                timeout=self.config.timeout_seconds,
            )
        except EndpointValidationError as exc:
            result = DeliveryResult.failure(ErrorCode.INVALID_ENDPOINT, str(exc), provider=self.provider)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            result = DeliveryResult.failure(
                ErrorCode.TIMEOUT,
                f"No provider response within {self.config.timeout_seconds:.0f}s",
                provider=self.provider,
            )
        except httpx.TransportError as exc:
            result = DeliveryResult.failure(ErrorCode.NETWORK_ERROR, str(exc) or type(exc).__name__, provider=self.provider)
        except ProviderError as exc:
            result = DeliveryResult.failure(
                exc.code, str(exc), provider=self.provider, status_code=exc.status_code,
            )
        except Exception as exc:
            logger.exception("[%s] Unexpected adapter error for %s", self.log_label, options.notification_id)
            result = DeliveryResult.failure(ErrorCode.PROVIDER_ERROR, str(exc) or type(exc).__name__, provider=self.provider)

        result.duration_ms = (time.perf_counter() - start) * 1000
        if not result.provider:
            result.provider = self.provider
        if not result.success:
            logger.warning(
                "[%s] Notification %s failed: %s (%s)",
                self.log_label, options.notification_id, result.error, result.error_code,
                extra={
                    "notification_id": options.notification_id,
                    "channel": self.channel_type.value,
                    "error_code": result.error_code,
                    "duration_ms": result.duration_ms,
                },
            )
        return result

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Provider dispatch ──

    async def _deliver(self, endpoint: str, content: RenderedContent, options: DeliveryOptions) -> DeliveryResult:
        payload = self.build_payload(endpoint, content, options)
        if self.config.provider == "simulation":
            return self._simulate(endpoint, payload, options)
        if self.config.provider == "http":
            return await self._post(payload, options)
        raise ProviderError(ErrorCode.PROVIDER_ERROR, f"Unknown {self.log_label.lower()} provider: {self.config.provider}")

    def _simulate(self, endpoint: str, payload: Dict[str, Any], options: DeliveryOptions) -> DeliveryResult:
        external_id = f"sim_{self.channel_type.value}_{uuid.uuid4().hex[:16]}"
        logger.info(
            "[%s] Notification %s → %s (simulated)",
            self.log_label, options.notification_id, endpoint,
            extra={"notification_id": options.notification_id, "channel": self.channel_type.value},
        )
        return DeliveryResult(
            success=True,
            external_id=external_id,
            provider="simulation",
            provider_response={"mode": "simulated", "endpoint": endpoint, "payload_keys": sorted(payload)},
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def _post(self, payload: Dict[str, Any], options: DeliveryOptions) -> DeliveryResult:
        if not self.config.api_url:
            raise ProviderError(ErrorCode.PROVIDER_ERROR, f"{self.log_label} gateway URL is not configured")

        response = await self._get_client().post(
            self.config.api_url, json=payload, headers=self._headers(options),
        )
        if response.status_code >= 400:
            raise ProviderError(
                error_code_for_status(response.status_code),
                f"Provider returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        external_id = (
            body.get("id")
            or body.get("message_id")
            or body.get("name")
            or response.headers.get("x-message-id")
            or uuid.uuid4().hex
        )
        logger.info(
            "[%s] Notification %s accepted by gateway (HTTP %d)",
            self.log_label, options.notification_id, response.status_code,
            extra={"notification_id": options.notification_id, "channel": self.channel_type.value},
        )
        return DeliveryResult(
            success=True,
            external_id=str(external_id),
            provider="http",
            provider_response={"status_code": response.status_code, **body},
        )
