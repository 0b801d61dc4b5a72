"""
orchestrator.py — Notification delivery orchestration engine.

Pipeline for one send:
    1. Validate the request and render its template
    2. Check the user's preference (blocked → nothing persisted)
    3. Defer into quiet hours / honour scheduled_at
    4. Reserve a rate-limit slot (limit reached → nothing persisted)
    5. Persist the notification + "created" event
    6. Claim it, resolve the endpoint, call the channel adapter
    7. Record sent / delivered, or classify the failure:
         transient & retries left → pending, next_retry_at = now + 60s·2^n
         otherwise                → failed (dead endpoints deactivated)

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    failure #   retry_count after   next attempt
    ─────────   ─────────────────   ───────────────
        1               1            +120 s
        2               2            +240 s
        3               3            +480 s
        4               3            none → failed

    Only TIMEOUT, NETWORK_ERROR, RATE_LIMITED and SERVICE_UNAVAILABLE are
    retried. The Retry Scheduler re-enters ``deliver_notification`` when
    ``next_retry_at`` passes.

═══════════════════════════════════════════════════════════════════════════
STATE OWNERSHIP
═══════════════════════════════════════════════════════════════════════════

    Every attempt starts with ``NotificationStore.claim`` and every outcome
    is a ``transition`` out of ``in_flight``. Two workers racing on the same
    notification cannot both deliver it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import ConflictError, NotFoundError, ValidationError
from backend.app.notifications.channels.base import ChannelAdapter, EndpointValidationError
from backend.app.notifications.channels.in_app import InAppChannel
from backend.app.notifications.channels.sms_channel import is_opt_out, normalize_phone
from backend.app.notifications.event_log import EventLog
from backend.app.notifications.models import (
    ENDPOINT_ERROR_CODES,
    BulkSendResult,
    ChannelType,
    DeliveryOptions,
    DeliveryResult,
    ErrorCode,
    EventType,
    FailureClass,
    NotificationRequest,
    NotificationStatus,
    Priority,
    RenderedContent,
    SendReason,
    SendResult,
)
from backend.app.notifications.preferences import PreferenceStore
from backend.app.notifications.rate_limiter import RateLimiter
from backend.app.notifications.records import Notification
from backend.app.notifications.registry import ChannelRegistry
from backend.app.notifications.store import NotificationStore
from backend.app.notifications.templates import TemplateStore, TemplateSyntaxError, render_content
from backend.app.notifications.webhooks import CallbackKind, DeliveryCallback

logger = logging.getLogger(__name__)

SentListener = Callable[[Dict[str, Any]], Awaitable[None]]

IN_FLIGHT = (NotificationStatus.IN_FLIGHT,)

# Row states showing a concurrent worker already took over the first attempt
TAKEN_OVER = {
    NotificationStatus.IN_FLIGHT.value,
    NotificationStatus.SENT.value,
    NotificationStatus.DELIVERED.value,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_next_retry(now: datetime, retry_count: int, base_delay_seconds: int = 60) -> datetime:
    """Exponential backoff: ``now + base · 2^retry_count``."""
    return now + timedelta(seconds=base_delay_seconds * (2 ** retry_count))


class NotificationOrchestrator:
    """
    Drives notifications through their lifecycle.

    Usage:
        orchestrator = NotificationOrchestrator(
            store=store, event_log=events, preferences=prefs,
            rate_limiter=limiter, registry=registry, templates=templates,
            channels=build_channel_adapters(),
        )
        result = await orchestrator.send_notification(
            NotificationRequest(user_id=42, channel_type="email", title="Hi", message="...")
        )
    """

    def __init__(
        self,
        *,
        store: NotificationStore,
        event_log: EventLog,
        preferences: PreferenceStore,
        rate_limiter: RateLimiter,
        registry: ChannelRegistry,
        templates: TemplateStore,
        channels: Dict[ChannelType, ChannelAdapter],
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        cfg = settings or default_settings
        self.store = store
        self.events = event_log
        self.preferences = preferences
        self.rate_limiter = rate_limiter
        self.registry = registry
        self.templates = templates
        self.channels = channels
        self._clock = clock

        self.max_retries = cfg.MAX_RETRIES
        self.retry_base_delay = cfg.RETRY_BASE_DELAY_SECONDS
        self.count_failed_attempts = cfg.RATE_LIMIT_COUNT_FAILED_ATTEMPTS
        self._semaphore = asyncio.Semaphore(cfg.MAX_CONCURRENT_DELIVERIES)
        self._listeners: List[SentListener] = []
        # in-app ids replayed on connect while their attempt was still in flight
        self._early_replays: Set[str] = set()

        in_app = channels.get(ChannelType.IN_APP)
        if isinstance(in_app, InAppChannel):
            in_app.on_replay = self._acknowledge_replay

    # ═══════════════════════════════════════════════════════════════════
    # Send
    # ═══════════════════════════════════════════════════════════════════

    async def send_notification(self, request: NotificationRequest) -> SendResult:
        """
        Accept one notification request.

        Returns a structured result for every expected outcome (validation
        error, preference block, rate limit, delivery failure). Storage
        failures propagate.
        """
        try:
            channel_type = self._validate(request)
            content, template_id = await self._render(request)
        except ValidationError as exc:
            logger.info("Rejected send for user %s: %s", request.user_id, exc.message)
            return SendResult(success=False, reason=SendReason.VALIDATION_ERROR.value, error=exc.message)

        category = request.category

        preference = await self.preferences.resolve(request.user_id, channel_type, category)
        if not preference.enabled:
            logger.info(
                "Blocked by preference: user %s %s/%s", request.user_id, channel_type.value, category,
                extra={"user_id": request.user_id, "channel": channel_type.value},
            )
            return SendResult(success=False, reason=SendReason.BLOCKED_BY_PREFERENCE.value)

        now = self._clock()
        scheduled_at = _as_utc(request.scheduled_at)
        reason = None
        if scheduled_at is None or scheduled_at <= now:
            scheduled_at = None
            quiet_end = preference.quiet_until(now, category)
            if quiet_end is not None:
                scheduled_at, reason = quiet_end, SendReason.QUIET_HOURS.value

        # ── Deferred: admit now, count when dispatched ──
        if scheduled_at is not None:
            decision = await self.rate_limiter.check(request.user_id, channel_type, category, preference.frequency_limit)
            if not decision.allowed:
                return SendResult(success=False, reason=SendReason.RATE_LIMIT_EXCEEDED.value)
            notification = await self._persist(
                request, channel_type, content, template_id, NotificationStatus.SCHEDULED, scheduled_at,
            )
            logger.info(
                "Notification %s scheduled for %s", notification.id, scheduled_at.isoformat(),
                extra={"notification_id": notification.id, "channel": channel_type.value},
            )
            return SendResult(
                success=True,
                notification_id=notification.id,
                status=NotificationStatus.SCHEDULED.value,
                reason=reason,
                scheduled_at=scheduled_at,
            )

        # ── Immediate ──
        decision = await self.rate_limiter.reserve(request.user_id, channel_type, category, preference.frequency_limit)
        if not decision.allowed:
            return SendResult(success=False, reason=SendReason.RATE_LIMIT_EXCEEDED.value)

        try:
            notification = await self._persist(
                request, channel_type, content, template_id, NotificationStatus.PENDING, None,
            )
        except Exception:
            await self.rate_limiter.release(request.user_id, channel_type, category)
            raise

        result = await self.deliver_notification(notification.id)
        if result.reason == SendReason.NOT_CLAIMABLE.value and result.status in TAKEN_OVER:
            # Another worker took over the attempt; the send itself was accepted
            logger.info(
                "Notification %s picked up by another worker (%s)", notification.id, result.status,
                extra={"notification_id": notification.id, "channel": channel_type.value},
            )
            result = SendResult(success=True, notification_id=notification.id, status=result.status)
        if not result.success and not self.count_failed_attempts:
            await self.rate_limiter.release(request.user_id, channel_type, category)
        return result

    async def send_bulk(self, requests: Iterable[NotificationRequest]) -> BulkSendResult:
        """Send each request independently; one failure never aborts the rest."""
        bulk = BulkSendResult()
        for request in requests:
            bulk.results.append(await self.send_notification(request))
        logger.info(
            "Bulk send: %d total, %d successful, %d failed",
            bulk.total, bulk.successful, bulk.failed,
        )
        return bulk

    # ═══════════════════════════════════════════════════════════════════
    # Deliver
    # ═══════════════════════════════════════════════════════════════════

    async def deliver_notification(self, notification_id: str) -> SendResult:
        """
        Make one delivery attempt for a persisted notification.

        Safe to call concurrently: only the caller that wins the claim
        touches the channel; everyone else gets ``not_claimable``.
        """
        notification = await self.store.claim(notification_id)
        if notification is None:
            current = await self.store.get(notification_id)
            return SendResult(
                success=False,
                notification_id=notification_id,
                status=current.status if current else None,
                reason=SendReason.NOT_CLAIMABLE.value,
            )

        channel_type = ChannelType(notification.channel_type)
        now = self._clock()

        if notification.expires_at is not None and notification.expires_at <= now:
            return await self._fail(
                notification, SendReason.EXPIRED, ErrorCode.EXPIRED.value, "Notification expired before delivery",
            )

        adapter = self.channels.get(channel_type)
        if adapter is None:
            return await self._fail(
                notification, SendReason.UNSUPPORTED_CHANNEL, None, f"No adapter for {channel_type.value}",
            )

        endpoint_id: Optional[int] = None
        metadata: Dict[str, Any] = {}
        if adapter.requires_registration:
            record = await self.registry.resolve(notification.user_id, channel_type)
            if record is None:
                return await self._fail(
                    notification, SendReason.NO_ACTIVE_CHANNEL, None,
                    f"No active {channel_type.value} endpoint for user {notification.user_id}",
                )
            endpoint, endpoint_id, metadata = record.endpoint, record.id, record.endpoint_metadata or {}
        else:
            endpoint = str(notification.user_id)

        # First dispatch of a scheduled notification counts toward today's cap
        if notification.scheduled_at is not None and await self.store.mark_rate_counted(notification.id):
            await self.rate_limiter.increment(notification.user_id, channel_type, notification.category)

        content = RenderedContent(
            title=notification.title,
            message=notification.message,
            html=notification.html_content,
            data=notification.data or {},
        )
        options = DeliveryOptions(
            notification_id=notification.id,
            user_id=notification.user_id,
            category=notification.category,
            priority=notification.priority,
            metadata=metadata,
        )
        async with self._semaphore:
            result = await adapter.send(endpoint, content, options)

        if result.success:
            return await self._mark_sent(notification, result, endpoint_id)
        return await self._handle_failure(notification, result, endpoint_id)

    async def _mark_sent(self, notification: Notification, result: DeliveryResult, endpoint_id: Optional[int]) -> SendResult:
        now = self._clock()
        delivered = result.status == "delivered"
        to_status = NotificationStatus.DELIVERED if delivered else NotificationStatus.SENT
        fields: Dict[str, Any] = {
            "external_id": result.external_id,
            "endpoint_id": endpoint_id,
            "sent_at": now,
            "next_retry_at": None,
            "last_error": None,
        }
        if delivered:
            fields["delivered_at"] = now

        updated = await self.store.transition(
            notification.id,
            from_statuses=IN_FLIGHT,
            to_status=to_status,
            event_type=EventType.DELIVERED if delivered else EventType.SENT,
            event_data={
                "external_id": result.external_id,
                "provider": result.provider,
                "result_status": result.status,
                "attempt": notification.retry_count + 1,
            },
            **fields,
        )
        if updated is None:
            logger.warning("Lost ownership of %s before recording success", notification.id)
            return SendResult(success=False, notification_id=notification.id, reason=SendReason.NOT_CLAIMABLE.value)

        if to_status == NotificationStatus.SENT and notification.id in self._early_replays:
            self._early_replays.discard(notification.id)
            await self._acknowledge_replay([notification.id])

        if endpoint_id is not None:
            await self.registry.touch(endpoint_id)

        logger.info(
            "Notification %s %s via %s (%s)",
            notification.id, to_status.value, notification.channel_type, result.external_id,
            extra={
                "notification_id": notification.id,
                "channel": notification.channel_type,
                "duration_ms": result.duration_ms,
            },
        )
        await self._emit_sent(updated, result)
        return SendResult(
            success=True,
            notification_id=notification.id,
            status=result.status if result.status == "queued" else to_status.value,
            external_id=result.external_id,
        )

    async def _handle_failure(self, notification: Notification, result: DeliveryResult, endpoint_id: Optional[int]) -> SendResult:
        if endpoint_id is not None and result.error_code in ENDPOINT_ERROR_CODES:
            await self.registry.deactivate(endpoint_id, reason=result.error_code)

        if result.failure_class == FailureClass.TRANSIENT and notification.retry_count < self.max_retries:
            retry_count = notification.retry_count + 1
            next_retry_at = compute_next_retry(self._clock(), retry_count, self.retry_base_delay)
            updated = await self.store.transition(
                notification.id,
                from_statuses=IN_FLIGHT,
                to_status=NotificationStatus.PENDING,
                event_type=EventType.FAILED,
                event_data={
                    "error": result.error,
                    "error_code": result.error_code,
                    "provider": result.provider,
                    "attempt": retry_count,
                    "will_retry": True,
                    "next_retry_at": next_retry_at.isoformat(),
                },
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                last_error=result.error,
                endpoint_id=endpoint_id,
            )
            if updated is None:
                return SendResult(success=False, notification_id=notification.id, reason=SendReason.NOT_CLAIMABLE.value)
            logger.info(
                "Notification %s retry %d/%d at %s (%s)",
                notification.id, retry_count, self.max_retries, next_retry_at.isoformat(), result.error_code,
                extra={"notification_id": notification.id, "error_code": result.error_code},
            )
            return SendResult(
                success=False,
                notification_id=notification.id,
                status=NotificationStatus.PENDING.value,
                reason=SendReason.RETRY_SCHEDULED.value,
                error=result.error,
            )

        return await self._fail(
            notification, SendReason.DELIVERY_FAILED, result.error_code, result.error,
            provider=result.provider, endpoint_id=endpoint_id,
        )

    async def _fail(
        self,
        notification: Notification,
        reason: SendReason,
        error_code: Optional[str],
        error: Optional[str],
        *,
        provider: str = "",
        endpoint_id: Optional[int] = None,
    ) -> SendResult:
        """Terminal failure out of ``in_flight``."""
        updated = await self.store.transition(
            notification.id,
            from_statuses=IN_FLIGHT,
            to_status=NotificationStatus.FAILED,
            event_type=EventType.FAILED,
            event_data={
                "reason": reason.value,
                "error": error,
                "error_code": error_code,
                "provider": provider,
                "attempt": notification.retry_count + 1,
                "will_retry": False,
            },
            last_error=error,
            next_retry_at=None,
            endpoint_id=endpoint_id,
        )
        if updated is None:
            return SendResult(success=False, notification_id=notification.id, reason=SendReason.NOT_CLAIMABLE.value)
        logger.warning(
            "Notification %s failed: %s (%s)", notification.id, reason.value, error,
            extra={"notification_id": notification.id, "error_code": error_code, "channel": notification.channel_type},
        )
        return SendResult(
            success=False,
            notification_id=notification.id,
            status=NotificationStatus.FAILED.value,
            reason=reason.value,
            error=error,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Cancel
    # ═══════════════════════════════════════════════════════════════════

    async def cancel_notification(self, notification_id: str, user_id: Optional[int] = None) -> Notification:
        """Cancel a scheduled (or retry-waiting) notification."""
        notification = await self.store.get(notification_id)
        if notification is None or (user_id is not None and notification.user_id != user_id):
            raise NotFoundError("Notification", notification_id=notification_id)

        updated = await self.store.transition(
            notification_id,
            from_statuses=(NotificationStatus.SCHEDULED, NotificationStatus.PENDING),
            to_status=NotificationStatus.CANCELLED,
            event_type=EventType.CANCELLED,
            event_data={"previous_status": notification.status},
            next_retry_at=None,
        )
        if updated is None:
            current = await self.store.get(notification_id)
            raise ConflictError(
                "Notification can no longer be cancelled",
                current_status=current.status if current else None,
                notification_id=notification_id,
            )
        logger.info("Notification %s cancelled", notification_id, extra={"notification_id": notification_id})
        return updated

    # ═══════════════════════════════════════════════════════════════════
    # Provider callbacks & engagement tracking
    # ═══════════════════════════════════════════════════════════════════

    async def handle_delivery_callback(self, callback: DeliveryCallback) -> bool:
        """
        Apply a provider receipt. Returns True when it changed state or
        recorded an event; unknown ids and stale receipts return False.
        """
        notification = await self.store.get_by_external_id(callback.channel_type.value, callback.external_id)
        if notification is None:
            logger.warning(
                "Callback for unknown %s message %s", callback.channel_type.value, callback.external_id,
            )
            return False

        kind = callback.kind
        event_data = {"provider_status": callback.raw_status, **callback.data}
        if callback.error_code:
            event_data["error_code"] = callback.error_code
        if callback.error_message:
            event_data["error"] = callback.error_message

        if kind == CallbackKind.DELIVERED:
            updated = await self.store.transition(
                notification.id,
                from_statuses=(NotificationStatus.SENT,),
                to_status=NotificationStatus.DELIVERED,
                event_type=EventType.DELIVERED,
                event_data=event_data,
                delivered_at=self._clock(),
            )
            return updated is not None

        if kind in (CallbackKind.FAILED, CallbackKind.BOUNCED):
            dead_endpoint = kind == CallbackKind.BOUNCED or callback.error_code in ENDPOINT_ERROR_CODES
            if dead_endpoint and notification.endpoint_id is not None:
                await self.registry.deactivate(notification.endpoint_id, reason=callback.raw_status)
            updated = await self.store.transition(
                notification.id,
                from_statuses=(NotificationStatus.SENT, NotificationStatus.DELIVERED),
                to_status=NotificationStatus.FAILED,
                event_type=EventType.BOUNCED if kind == CallbackKind.BOUNCED else EventType.FAILED,
                event_data=event_data,
                last_error=callback.error_message or callback.raw_status,
            )
            return updated is not None

        if kind == CallbackKind.COMPLAINT:
            # Message arrived; the recipient does not want this address used again
            if notification.endpoint_id is not None:
                await self.registry.deactivate(notification.endpoint_id, reason="complaint")
            await self.events.append(notification.id, EventType.BOUNCED, {**event_data, "complaint": True})
            return True

        if kind in (CallbackKind.OPENED, CallbackKind.CLICKED):
            event_type = EventType.OPENED if kind == CallbackKind.OPENED else EventType.CLICKED
            return await self.record_tracking_event(notification.id, event_type, event_data)

        logger.debug("Ignoring %s callback for %s", callback.raw_status, notification.id)
        return False

    async def record_tracking_event(
        self,
        notification_id: str,
        event_type: EventType,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record an open/click. Never raises: tracking must not break the
        reader's request.
        """
        try:
            notification = await self.store.get(notification_id)
            if notification is None:
                logger.info("Tracking %s for unknown notification %s", EventType(event_type).value, notification_id)
                return False
            # Engagement proves arrival
            if notification.status == NotificationStatus.SENT.value:
                await self.store.transition(
                    notification_id,
                    from_statuses=(NotificationStatus.SENT,),
                    to_status=NotificationStatus.DELIVERED,
                    event_type=EventType.DELIVERED,
                    event_data={"inferred_from": EventType(event_type).value},
                    delivered_at=self._clock(),
                )
            await self.events.append(notification_id, event_type, data or {})
            return True
        except Exception:
            logger.exception("Failed to record %s for %s", event_type, notification_id)
            return False

    async def handle_inbound_sms(self, from_number: str, body: str) -> Dict[str, Any]:
        """Process an inbound SMS; opt-out keywords deactivate the number."""
        if not is_opt_out(body):
            return {"opted_out": False, "endpoints_deactivated": 0}
        sms = self.channels.get(ChannelType.SMS)
        country_code = getattr(sms, "default_country_code", "1")
        try:
            number = normalize_phone(from_number, country_code)
        except EndpointValidationError:
            raise ValidationError(f"Invalid phone number: {from_number!r}", field="from")
        deactivated = await self.registry.deactivate_by_endpoint(ChannelType.SMS, number)
        logger.info("SMS opt-out from %s: %d endpoint(s) deactivated", number, deactivated)
        return {"opted_out": True, "endpoints_deactivated": deactivated}

    async def register_channel(
        self,
        user_id: int,
        channel_type: Union[ChannelType, str],
        endpoint: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        verified: bool = True,
    ):
        """Normalise ``endpoint`` with the channel's own rules, then upsert it."""
        try:
            channel_type = ChannelType(channel_type)
        except ValueError:
            raise ValidationError(f"Unknown channel type '{channel_type}'", field="channel_type")
        adapter = self.channels.get(channel_type)
        if adapter is not None:
            try:
                endpoint = adapter.validate_endpoint(endpoint, metadata or {})
            except EndpointValidationError as exc:
                raise ValidationError(str(exc), field="endpoint")
        return await self.registry.register(user_id, channel_type, endpoint, metadata, verified=verified)

    async def _acknowledge_replay(self, notification_ids: List[str]) -> None:
        """In-app backlog entries reached the user on reconnect."""
        now = self._clock()
        for notification_id in notification_ids:
            updated = await self.store.transition(
                notification_id,
                from_statuses=(NotificationStatus.SENT,),
                to_status=NotificationStatus.DELIVERED,
                event_type=EventType.DELIVERED,
                event_data={"replayed": True},
                delivered_at=now,
            )
            if updated is None:
                current = await self.store.get(notification_id)
                if current is not None and current.status == NotificationStatus.IN_FLIGHT.value:
                    # _mark_sent acknowledges it once the queued attempt is recorded
                    self._early_replays.add(notification_id)

    # ═══════════════════════════════════════════════════════════════════
    # Listeners
    # ═══════════════════════════════════════════════════════════════════

    def add_sent_listener(self, listener: SentListener) -> None:
        self._listeners.append(listener)

    def remove_sent_listener(self, listener: SentListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit_sent(self, notification: Notification, result: DeliveryResult) -> None:
        payload = {
            "notification_id": notification.id,
            "user_id": notification.user_id,
            "channel_type": notification.channel_type,
            "category": notification.category,
            "status": notification.status,
            "external_id": result.external_id,
        }
        for listener in list(self._listeners):
            try:
                await listener(payload)
            except Exception:
                logger.exception("Sent listener %r failed for %s", listener, notification.id)

    # ═══════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════

    def _validate(self, request: NotificationRequest) -> ChannelType:
        if request.user_id is None or isinstance(request.user_id, bool) or not isinstance(request.user_id, int):
            raise ValidationError("user_id is required", field="user_id")
        try:
            channel_type = ChannelType(request.channel_type)
        except ValueError:
            raise ValidationError(f"Unknown channel type '{request.channel_type}'", field="channel_type")
        if not request.category or not isinstance(request.category, str):
            raise ValidationError("category is required", field="category")
        if request.priority not in {p.value for p in Priority}:
            raise ValidationError(f"Unknown priority '{request.priority}'", field="priority")
        if not isinstance(request.data, dict):
            raise ValidationError("data must be an object", field="data")
        if request.template_id is None and not (request.message or "").strip():
            raise ValidationError("message is required", field="message")
        expires_at = _as_utc(request.expires_at)
        if expires_at is not None and expires_at <= self._clock():
            raise ValidationError("expires_at is in the past", field="expires_at")
        return channel_type

    async def _render(self, request: NotificationRequest) -> Tuple[RenderedContent, Optional[int]]:
        """Rendered content plus the id of the template actually used."""
        template = None
        if request.template_id is not None:
            template = await self.templates.get(request.template_id)
            if template is None or not template.is_active:
                logger.warning("Template %s missing or inactive, sending verbatim", request.template_id)
                template = None
        try:
            content = render_content(
                template,
                title=request.title or "",
                message=request.message or "",
                data=request.data,
            )
        except TemplateSyntaxError as exc:
            raise ValidationError(f"Template error: {exc}", field="template_id")
        if not content.message.strip():
            raise ValidationError("message is required", field="message")
        return content, template.id if template is not None else None

    async def _persist(
        self,
        request: NotificationRequest,
        channel_type: ChannelType,
        content: RenderedContent,
        template_id: Optional[int],
        status: NotificationStatus,
        scheduled_at: Optional[datetime],
    ) -> Notification:
        return await self.store.create(
            user_id=request.user_id,
            channel_type=channel_type.value,
            category=request.category,
            priority=request.priority,
            title=content.title,
            message=content.message,
            html_content=content.html,
            data=content.data,
            status=status,
            template_id=template_id,
            scheduled_at=scheduled_at,
            expires_at=_as_utc(request.expires_at),
        )
