"""
test_orchestrator.py — End-to-end behaviour of the delivery orchestrator.

Covers:
    • Request validation and template rendering at send time
    • Preference gate, daily rate limits, quiet hours
    • Delivery through registered endpoints, endpoint selection
    • Retry with exponential backoff and terminal failure
    • Exactly-once delivery under concurrent attempts
    • Scheduling, expiry, cancellation
    • In-app presence, backlog replay
    • Provider callbacks, open/click tracking, SMS opt-out
    • Sent listeners and bulk sends

Every test runs against a fresh SQLite database with scripted channel
adapters and a frozen clock (see conftest.py).

Run with:
    pytest tests/test_orchestrator.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.errors import ConflictError, NotFoundError, ValidationError
from backend.app.notifications.engine import NotificationEngine
from backend.app.notifications.models import (
    ChannelType,
    DeliveryResult,
    ErrorCode,
    EventType,
    NotificationRequest,
)
from backend.app.notifications.orchestrator import compute_next_retry
from backend.app.notifications.webhooks import parse_callback
from tests.support import START, event_types, make_settings, scripted

SMS = ChannelType.SMS
EMAIL = ChannelType.EMAIL
PHONE = "+15551234567"


def _request(**overrides) -> NotificationRequest:
    fields = dict(
        user_id=1,
        channel_type="sms",
        category="transactional",
        title="Hi",
        message="Hello there",
    )
    fields.update(overrides)
    return NotificationRequest(**fields)


async def _register(engine, channel_type=SMS, endpoint=PHONE, user_id=1, **kwargs):
    return await engine.registry.register(user_id, channel_type, endpoint, **kwargs)


async def _limit(engine, limit, channel_type="sms", category="marketing", **settings):
    await engine.preferences.set_preferences(1, [{
        "channel_type": channel_type,
        "category": category,
        "enabled": True,
        "settings": {"frequency_limit": limit, **settings},
    }])


async def _stored(engine, user_id=1):
    rows, _ = await engine.store.list_for_user(user_id, limit=100)
    return rows


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Validation & rendering
# ═══════════════════════════════════════════════════════════════════════════

class TestValidation:

    @pytest.mark.parametrize("overrides", [
        {"user_id": None},
        {"user_id": "1"},
        {"user_id": True},
        {"channel_type": "fax"},
        {"category": ""},
        {"priority": "urgent"},
        {"data": ["not", "a", "dict"]},
        {"message": "   "},
        {"expires_at": START - timedelta(seconds=1)},
    ])
    async def test_invalid_requests_rejected_without_side_effects(self, engine, overrides):
        await _register(engine)
        result = await engine.orchestrator.send_notification(_request(**overrides))

        assert result.success is False
        assert result.reason == "validation_error"
        assert result.error
        assert await _stored(engine) == []
        assert scripted(engine, SMS).calls == []

    async def test_valid_request_with_all_priorities(self, engine):
        await _register(engine)
        for priority in ("low", "normal", "high"):
            result = await engine.orchestrator.send_notification(_request(priority=priority))
            assert result.success, priority


class TestTemplates:

    async def test_template_rendered_and_stored(self, engine):
        await _register(engine)
        template = await engine.templates.create(
            name="otp",
            channel_type="sms",
            category="transactional",
            subject="Your code",
            body_template="Your code is {{code}}{{#if ttl}}, valid {{ttl}} min{{/if}}",
        )
        result = await engine.orchestrator.send_notification(
            _request(template_id=template.id, title="", message="", data={"code": "123456", "ttl": 5})
        )

        assert result.success
        notification = await engine.store.get(result.notification_id)
        assert notification.title == "Your code"
        assert notification.message == "Your code is 123456, valid 5 min"
        assert notification.template_id == template.id
        sent_content = scripted(engine, SMS).calls[0]["content"]
        assert sent_content.message == "Your code is 123456, valid 5 min"

    async def test_template_defaults_merged_with_data(self, engine):
        await _register(engine)
        template = await engine.templates.create(
            name="promo",
            channel_type="sms",
            category="marketing",
            body_template="{{greeting}} {{name}}",
            default_data={"greeting": "Hello", "name": "friend"},
        )
        result = await engine.orchestrator.send_notification(
            _request(template_id=template.id, message="", data={"name": "Ava"})
        )
        assert (await engine.store.get(result.notification_id)).message == "Hello Ava"

    async def test_html_template_escapes_values(self, engine):
        await _register(engine, EMAIL, "ava@example.com")
        template = await engine.templates.create(
            name="welcome",
            channel_type="email",
            category="transactional",
            subject="Welcome",
            body_template="Welcome {{name}}",
            html_template="<h1>Welcome {{name}}</h1>",
        )
        result = await engine.orchestrator.send_notification(
            _request(channel_type="email", template_id=template.id, message="", data={"name": "<Ava>"})
        )

        notification = await engine.store.get(result.notification_id)
        assert notification.message == "Welcome <Ava>"
        assert notification.html_content == "<h1>Welcome &lt;Ava&gt;</h1>"
        assert scripted(engine, EMAIL).calls[0]["content"].html == notification.html_content

    async def test_missing_template_sends_verbatim(self, engine):
        await _register(engine)
        result = await engine.orchestrator.send_notification(
            _request(template_id=999, message="Plain {{x}}", data={"x": 1})
        )
        assert result.success
        notification = await engine.store.get(result.notification_id)
        assert notification.message == "Plain {{x}}"
        assert notification.template_id is None

    async def test_inactive_template_sends_verbatim(self, engine):
        await _register(engine)
        template = await engine.templates.create(
            name="old", channel_type="sms", category="system", body_template="Old {{x}}", is_active=False,
        )
        result = await engine.orchestrator.send_notification(
            _request(template_id=template.id, message="New text")
        )
        assert (await engine.store.get(result.notification_id)).message == "New text"

    async def test_missing_template_without_message_rejected(self, engine):
        result = await engine.orchestrator.send_notification(_request(template_id=999, message=""))
        assert result.reason == "validation_error"
        assert await _stored(engine) == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Preferences & rate limits
# ═══════════════════════════════════════════════════════════════════════════

class TestPreferenceGate:

    async def test_disabled_preference_blocks_without_persisting(self, engine):
        await _register(engine)
        await engine.preferences.set_preferences(1, [
            {"channel_type": "sms", "category": "marketing", "enabled": False},
        ])

        result = await engine.orchestrator.send_notification(_request(category="marketing"))

        assert result.success is False
        assert result.reason == "blocked_by_preference"
        assert result.notification_id is None
        assert await _stored(engine) == []
        assert (await engine.rate_limiter.check(1, SMS, "marketing", 10)).current == 0
        assert scripted(engine, SMS).calls == []

    async def test_other_category_still_allowed(self, engine):
        await _register(engine)
        await engine.preferences.set_preferences(1, [
            {"channel_type": "sms", "category": "marketing", "enabled": False},
        ])
        assert (await engine.orchestrator.send_notification(_request(category="transactional"))).success


class TestRateLimits:

    async def test_limit_caps_successful_sends(self, engine):
        await _register(engine)
        await _limit(engine, 2)

        results = [await engine.orchestrator.send_notification(_request(category="marketing")) for _ in range(3)]

        assert [r.success for r in results] == [True, True, False]
        assert results[2].reason == "rate_limit_exceeded"
        assert len(await _stored(engine)) == 2
        assert len(scripted(engine, SMS).calls) == 2

    async def test_limit_resets_next_day(self, engine, clock):
        await _register(engine)
        await _limit(engine, 1)

        assert (await engine.orchestrator.send_notification(_request(category="marketing"))).success
        blocked = await engine.orchestrator.send_notification(_request(category="marketing"))
        assert blocked.reason == "rate_limit_exceeded"

        clock.advance(days=1)
        assert (await engine.orchestrator.send_notification(_request(category="marketing"))).success

    async def test_failed_attempt_consumes_slot_by_default(self, engine):
        await _register(engine)
        await _limit(engine, 1)
        scripted(engine, SMS).queue(ErrorCode.PROVIDER_REJECTED)

        first = await engine.orchestrator.send_notification(_request(category="marketing"))
        second = await engine.orchestrator.send_notification(_request(category="marketing"))

        assert first.reason == "delivery_failed"
        assert second.reason == "rate_limit_exceeded"

    async def test_failed_attempt_released_when_configured(self, session_factory, channels, clock):
        engine = NotificationEngine(
            session_factory,
            settings=make_settings(RATE_LIMIT_COUNT_FAILED_ATTEMPTS=False),
            channels=channels,
            clock=clock,
        )
        await _register(engine)
        await _limit(engine, 1)
        scripted(engine, SMS).queue(ErrorCode.PROVIDER_REJECTED)

        first = await engine.orchestrator.send_notification(_request(category="marketing"))
        second = await engine.orchestrator.send_notification(_request(category="marketing"))

        assert first.success is False
        assert second.success is True
        await engine.stop()


class TestQuietHours:

    async def test_marketing_deferred_to_window_end(self, engine, clock):
        await _register(engine)
        await _limit(engine, 10, quiet_hours_start="22:00", quiet_hours_end="07:00")
        clock.advance(hours=13)  # 23:00 UTC

        result = await engine.orchestrator.send_notification(_request(category="marketing"))

        assert result.success
        assert result.status == "scheduled"
        assert result.reason == "quiet_hours"
        assert result.scheduled_at == datetime(2024, 3, 5, 7, 0, tzinfo=timezone.utc)
        assert scripted(engine, SMS).calls == []

    async def test_outside_window_sends_now(self, engine):
        await _register(engine)
        await _limit(engine, 10, quiet_hours_start="22:00", quiet_hours_end="07:00")
        result = await engine.orchestrator.send_notification(_request(category="marketing"))
        assert result.status == "sent"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Delivery
# ═══════════════════════════════════════════════════════════════════════════

class TestDelivery:

    async def test_successful_send(self, engine):
        endpoint = await _register(engine)

        result = await engine.orchestrator.send_notification(_request())

        assert result.success
        assert result.status == "sent"
        assert result.external_id.startswith("ext-")
        notification = await engine.store.get(result.notification_id)
        assert notification.status == "sent"
        assert notification.external_id == result.external_id
        assert notification.endpoint_id == endpoint.id
        assert notification.sent_at == START
        assert await event_types(engine, notification.id) == ["created", "sent"]

        call = scripted(engine, SMS).calls[0]
        assert call["endpoint"] == PHONE
        assert call["options"].notification_id == notification.id
        assert call["content"].message == "Hello there"

    async def test_provider_confirmed_delivery(self, engine):
        await _register(engine, ChannelType.PUSH_IOS, "a" * 64)
        scripted(engine, ChannelType.PUSH_IOS).queue(
            DeliveryResult(success=True, external_id="apns-1", status="delivered", provider="scripted")
        )

        result = await engine.orchestrator.send_notification(_request(channel_type="push_ios"))

        assert result.status == "delivered"
        notification = await engine.store.get(result.notification_id)
        assert notification.delivered_at == START
        assert await event_types(engine, notification.id) == ["created", "delivered"]

    async def test_no_endpoint_fails_without_calling_adapter(self, engine):
        result = await engine.orchestrator.send_notification(_request())

        assert result.success is False
        assert result.reason == "no_active_channel"
        assert result.status == "failed"
        assert (await engine.store.get(result.notification_id)).status == "failed"
        assert await event_types(engine, result.notification_id) == ["created", "failed"]
        assert scripted(engine, SMS).calls == []

    async def test_unverified_endpoint_not_used(self, engine):
        await _register(engine, verified=False)
        result = await engine.orchestrator.send_notification(_request())
        assert result.reason == "no_active_channel"

    async def test_most_recently_used_endpoint_wins(self, engine, clock):
        await _register(engine, endpoint="+15550000001")
        clock.advance(minutes=1)
        await _register(engine, endpoint="+15550000002")

        await engine.orchestrator.send_notification(_request())

        assert scripted(engine, SMS).calls[0]["endpoint"] == "+15550000002"

    async def test_unsupported_channel(self, session_factory, settings, clock):
        engine = NotificationEngine(session_factory, settings=settings, channels={}, clock=clock)
        result = await engine.orchestrator.send_notification(_request())
        assert result.reason == "unsupported_channel"
        assert (await engine.store.get(result.notification_id)).status == "failed"

    async def test_invalid_endpoint_deactivated(self, engine):
        await _register(engine)
        scripted(engine, SMS).queue(ErrorCode.INVALID_ENDPOINT)

        result = await engine.orchestrator.send_notification(_request())

        assert result.reason == "delivery_failed"
        assert await engine.registry.resolve(1, SMS) is None
        assert len(scripted(engine, SMS).calls) == 1

    async def test_adapter_crash_is_permanent_failure(self, engine):
        await _register(engine)
        scripted(engine, SMS).queue(RuntimeError("boom"))

        result = await engine.orchestrator.send_notification(_request())

        assert result.reason == "delivery_failed"
        notification = await engine.store.get(result.notification_id)
        assert notification.status == "failed"
        assert notification.retry_count == 0
        assert notification.last_error == "boom"


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Retries
# ═══════════════════════════════════════════════════════════════════════════

class TestRetries:

    def test_backoff_formula(self):
        assert compute_next_retry(START, 1) == START + timedelta(seconds=120)
        assert compute_next_retry(START, 3) == START + timedelta(seconds=480)
        assert compute_next_retry(START, 0, base_delay_seconds=10) == START + timedelta(seconds=10)

    async def test_transient_failures_back_off_then_fail(self, engine, clock):
        await _register(engine)
        adapter = scripted(engine, SMS).queue(*[ErrorCode.TIMEOUT] * 4)

        result = await engine.orchestrator.send_notification(_request())
        nid = result.notification_id
        assert result.reason == "retry_scheduled"
        assert result.status == "pending"

        for expected_count, delay in ((1, 120), (2, 240), (3, 480)):
            notification = await engine.store.get(nid)
            assert notification.status == "pending"
            assert notification.retry_count == expected_count
            assert notification.next_retry_at == clock() + timedelta(seconds=delay)
            clock.advance(seconds=delay)
            result = await engine.orchestrator.deliver_notification(nid)

        assert result.reason == "delivery_failed"
        notification = await engine.store.get(nid)
        assert notification.status == "failed"
        assert notification.retry_count == 3
        assert notification.next_retry_at is None
        assert len(adapter.calls) == 4

        history = await engine.events.history(nid)
        assert [e.event_type for e in history] == ["created"] + ["failed"] * 4
        assert [e.event_data["will_retry"] for e in history[1:]] == [True, True, True, False]

    async def test_retry_not_attempted_early(self, engine, clock):
        await _register(engine)
        scripted(engine, SMS).queue(ErrorCode.SERVICE_UNAVAILABLE)
        nid = (await engine.orchestrator.send_notification(_request())).notification_id

        clock.advance(seconds=119)
        early = await engine.orchestrator.deliver_notification(nid)

        assert early.reason == "not_claimable"
        assert early.status == "pending"
        assert len(scripted(engine, SMS).calls) == 1

    async def test_retry_succeeds(self, engine, clock):
        await _register(engine)
        scripted(engine, SMS).queue(ErrorCode.NETWORK_ERROR)
        nid = (await engine.orchestrator.send_notification(_request())).notification_id

        clock.advance(seconds=120)
        result = await engine.orchestrator.deliver_notification(nid)

        assert result.success
        notification = await engine.store.get(nid)
        assert notification.status == "sent"
        assert notification.retry_count == 1
        assert notification.next_retry_at is None
        assert notification.last_error is None
        assert await event_types(engine, nid) == ["created", "failed", "sent"]

    async def test_permanent_failure_not_retried(self, engine):
        await _register(engine)
        scripted(engine, SMS).queue(ErrorCode.PROVIDER_REJECTED)

        result = await engine.orchestrator.send_notification(_request())

        notification = await engine.store.get(result.notification_id)
        assert notification.status == "failed"
        assert notification.retry_count == 0
        assert notification.next_retry_at is None


class TestExactlyOnce:

    async def test_concurrent_attempts_deliver_once(self, engine):
        await _register(engine)
        notification = await engine.store.create(
            user_id=1, channel_type="sms", category="transactional", priority="normal",
            title="t", message="m", data={},
        )

        results = await asyncio.gather(
            *(engine.orchestrator.deliver_notification(notification.id) for _ in range(5))
        )

        assert sum(r.success for r in results) == 1
        assert {r.reason for r in results if not r.success} == {"not_claimable"}
        assert (await event_types(engine, notification.id)).count("sent") == 1
        assert len(scripted(engine, SMS).calls) == 1

    async def test_terminal_notification_not_redelivered(self, engine):
        await _register(engine)
        result = await engine.orchestrator.send_notification(_request())

        again = await engine.orchestrator.deliver_notification(result.notification_id)

        assert again.reason == "not_claimable"
        assert again.status == "sent"
        assert len(scripted(engine, SMS).calls) == 1

    async def test_unknown_notification(self, engine):
        result = await engine.orchestrator.deliver_notification("missing")
        assert result.reason == "not_claimable"
        assert result.status is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Scheduling, expiry, cancellation
# ═══════════════════════════════════════════════════════════════════════════

class TestScheduling:

    async def test_scheduled_send_dispatched_once_when_due(self, engine, clock):
        await _register(engine)
        at = START + timedelta(minutes=5)

        result = await engine.orchestrator.send_notification(_request(scheduled_at=at))

        assert result.success
        assert result.status == "scheduled"
        assert result.scheduled_at == at
        assert scripted(engine, SMS).calls == []
        assert (await engine.rate_limiter.check(1, SMS, "transactional", 10)).current == 0

        assert (await engine.retry_scheduler.run_once())["due"] == 0

        clock.advance(minutes=5)
        summary = await engine.retry_scheduler.run_once()
        assert summary == {"released": 0, "due": 1, "sent": 1, "failed": 0}
        assert (await engine.retry_scheduler.run_once())["due"] == 0

        assert len(scripted(engine, SMS).calls) == 1
        assert (await engine.store.get(result.notification_id)).status == "sent"
        assert (await engine.rate_limiter.check(1, SMS, "transactional", 10)).current == 1

    async def test_redispatch_after_crash_not_counted_twice(self, engine, clock, monkeypatch):
        await _register(engine)
        result = await engine.orchestrator.send_notification(_request(scheduled_at=START + timedelta(minutes=5)))
        transition = engine.store.transition
        crashed = []

        async def crash_once(*args, **kwargs):
            if not crashed:
                crashed.append(True)
                raise RuntimeError("worker died")
            return await transition(*args, **kwargs)

        monkeypatch.setattr(engine.store, "transition", crash_once)

        clock.advance(minutes=5)
        assert (await engine.retry_scheduler.run_once())["failed"] == 1
        assert (await engine.store.get(result.notification_id)).status == "in_flight"

        clock.advance(minutes=10)
        summary = await engine.retry_scheduler.run_once()

        assert summary["released"] == 1
        assert summary["sent"] == 1
        assert len(scripted(engine, SMS).calls) == 2
        assert (await engine.rate_limiter.check(1, SMS, "transactional", 10)).current == 1

    async def test_past_schedule_sends_immediately(self, engine):
        await _register(engine)
        result = await engine.orchestrator.send_notification(
            _request(scheduled_at=START - timedelta(minutes=1))
        )
        assert result.status == "sent"

    async def test_naive_schedule_treated_as_utc(self, engine):
        await _register(engine)
        result = await engine.orchestrator.send_notification(
            _request(scheduled_at=datetime(2024, 3, 4, 12, 0))
        )
        assert result.scheduled_at == datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)

    async def test_scheduled_send_checks_limit(self, engine):
        await _register(engine)
        await _limit(engine, 1)
        assert (await engine.orchestrator.send_notification(_request(category="marketing"))).success

        result = await engine.orchestrator.send_notification(
            _request(category="marketing", scheduled_at=START + timedelta(hours=1))
        )
        assert result.reason == "rate_limit_exceeded"

    async def test_expired_before_dispatch(self, engine, clock):
        await _register(engine)
        result = await engine.orchestrator.send_notification(_request(
            scheduled_at=START + timedelta(minutes=10),
            expires_at=START + timedelta(minutes=5),
        ))

        clock.advance(minutes=10)
        outcome = await engine.orchestrator.deliver_notification(result.notification_id)

        assert outcome.reason == "expired"
        history = await engine.events.history(result.notification_id)
        assert history[-1].event_type == "failed"
        assert history[-1].event_data["error_code"] == "EXPIRED"
        assert scripted(engine, SMS).calls == []


class TestCancel:

    async def test_cancel_scheduled(self, engine, clock):
        await _register(engine)
        result = await engine.orchestrator.send_notification(_request(scheduled_at=START + timedelta(hours=1)))

        cancelled = await engine.orchestrator.cancel_notification(result.notification_id, user_id=1)

        assert cancelled.status == "cancelled"
        assert await event_types(engine, result.notification_id) == ["created", "cancelled"]
        clock.advance(hours=2)
        assert (await engine.retry_scheduler.run_once())["due"] == 0
        assert scripted(engine, SMS).calls == []

    async def test_cancel_pending_retry(self, engine, clock):
        await _register(engine)
        scripted(engine, SMS).queue(ErrorCode.TIMEOUT)
        nid = (await engine.orchestrator.send_notification(_request())).notification_id

        await engine.orchestrator.cancel_notification(nid)
        clock.advance(seconds=120)

        assert (await engine.orchestrator.deliver_notification(nid)).reason == "not_claimable"

    async def test_cancel_after_send_conflicts(self, engine):
        await _register(engine)
        nid = (await engine.orchestrator.send_notification(_request())).notification_id

        with pytest.raises(ConflictError) as exc:
            await engine.orchestrator.cancel_notification(nid)
        assert exc.value.details["current_status"] == "sent"
        assert await event_types(engine, nid) == ["created", "sent"]

    async def test_cancel_other_users_notification(self, engine):
        result = await engine.orchestrator.send_notification(_request(scheduled_at=START + timedelta(hours=1)))
        with pytest.raises(NotFoundError):
            await engine.orchestrator.cancel_notification(result.notification_id, user_id=2)

    async def test_cancel_missing(self, engine):
        with pytest.raises(NotFoundError):
            await engine.orchestrator.cancel_notification("missing")


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: In-app
# ═══════════════════════════════════════════════════════════════════════════

class TestInApp:

    async def test_online_user_receives_immediately(self, engine):
        received = []

        async def sink(message):
            received.append(message)

        await engine.in_app.connect(1, "conn-1", sink)
        result = await engine.orchestrator.send_notification(_request(channel_type="in_app"))

        assert result.status == "delivered"
        assert received[0]["notification_id"] == result.notification_id
        assert received[0]["message"] == "Hello there"
        assert await event_types(engine, result.notification_id) == ["created", "delivered"]

    async def test_offline_user_gets_backlog_on_connect(self, engine):
        result = await engine.orchestrator.send_notification(_request(channel_type="in_app"))

        assert result.success
        assert result.status == "queued"
        assert (await engine.store.get(result.notification_id)).status == "sent"
        assert await engine.store.unread_count(1) == 1

        received = []

        async def sink(message):
            received.append(message)

        replayed = await engine.in_app.connect(1, "conn-1", sink)

        assert replayed == 1
        assert [m["notification_id"] for m in received] == [result.notification_id]
        history = await engine.events.history(result.notification_id)
        assert [e.event_type for e in history] == ["created", "sent", "delivered"]
        assert history[-1].event_data == {"replayed": True}

    async def test_connect_while_queued_attempt_in_flight(self, engine):
        in_app = engine.in_app
        deliver = in_app._deliver
        received = []

        async def sink(message):
            received.append(message)

        async def deliver_then_connect(endpoint, content, options):
            result = await deliver(endpoint, content, options)
            await in_app.connect(1, "conn-1", sink)
            return result

        in_app._deliver = deliver_then_connect
        result = await engine.orchestrator.send_notification(_request(channel_type="in_app"))

        assert result.success
        assert [m["notification_id"] for m in received] == [result.notification_id]
        assert (await engine.store.get(result.notification_id)).status == "delivered"
        history = await engine.events.history(result.notification_id)
        assert [e.event_type for e in history] == ["created", "sent", "delivered"]
        assert history[-1].event_data == {"replayed": True}

    async def test_in_app_needs_no_registration(self, engine):
        result = await engine.orchestrator.send_notification(_request(channel_type="in_app", user_id=42))
        assert result.success


# ═══════════════════════════════════════════════════════════════════════════
# Section 7: Callbacks & tracking
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryCallbacks:

    async def _sent(self, engine, channel_type=SMS, endpoint=PHONE):
        await _register(engine, channel_type, endpoint)
        result = await engine.orchestrator.send_notification(_request(channel_type=channel_type.value))
        return result

    async def test_delivered_receipt(self, engine):
        result = await self._sent(engine)
        callback = parse_callback(SMS, {"MessageSid": result.external_id, "MessageStatus": "delivered"})

        assert await engine.orchestrator.handle_delivery_callback(callback) is True
        notification = await engine.store.get(result.notification_id)
        assert notification.status == "delivered"
        assert notification.delivered_at is not None

        # Duplicate receipt
        assert await engine.orchestrator.handle_delivery_callback(callback) is False
        assert (await event_types(engine, result.notification_id)).count("delivered") == 1

    async def test_bounce_fails_and_deactivates(self, engine):
        result = await self._sent(engine, EMAIL, "ava@example.com")
        callback = parse_callback(EMAIL, {
            "sg_message_id": result.external_id, "event": "bounce", "reason": "mailbox unavailable",
        })

        assert await engine.orchestrator.handle_delivery_callback(callback)
        notification = await engine.store.get(result.notification_id)
        assert notification.status == "failed"
        assert notification.last_error == "mailbox unavailable"
        assert (await event_types(engine, result.notification_id))[-1] == "bounced"
        assert await engine.registry.resolve(1, EMAIL) is None

    async def test_failed_receipt_with_endpoint_error(self, engine):
        result = await self._sent(engine)
        callback = parse_callback(SMS, {
            "external_id": result.external_id, "status": "undelivered", "error_code": "INVALID_ENDPOINT",
        })

        assert await engine.orchestrator.handle_delivery_callback(callback)
        assert (await engine.store.get(result.notification_id)).status == "failed"
        assert await engine.registry.resolve(1, SMS) is None

    async def test_failed_receipt_keeps_endpoint(self, engine):
        result = await self._sent(engine)
        callback = parse_callback(SMS, {"external_id": result.external_id, "status": "failed"})

        assert await engine.orchestrator.handle_delivery_callback(callback)
        assert await engine.registry.resolve(1, SMS) is not None

    async def test_complaint_deactivates_without_status_change(self, engine):
        result = await self._sent(engine, EMAIL, "ava@example.com")
        callback = parse_callback(EMAIL, {"external_id": result.external_id, "event": "spamreport"})

        assert await engine.orchestrator.handle_delivery_callback(callback)
        assert (await engine.store.get(result.notification_id)).status == "sent"
        history = await engine.events.history(result.notification_id)
        assert history[-1].event_type == "bounced"
        assert history[-1].event_data["complaint"] is True
        assert await engine.registry.resolve(1, EMAIL) is None

    async def test_open_receipt_implies_delivery(self, engine):
        result = await self._sent(engine, EMAIL, "ava@example.com")
        callback = parse_callback(EMAIL, {"external_id": result.external_id, "event": "open"})

        assert await engine.orchestrator.handle_delivery_callback(callback)
        assert (await engine.store.get(result.notification_id)).status == "delivered"
        assert await event_types(engine, result.notification_id) == ["created", "sent", "delivered", "opened"]

    async def test_in_transit_receipt_ignored(self, engine):
        result = await self._sent(engine)
        callback = parse_callback(SMS, {"external_id": result.external_id, "status": "queued"})
        assert await engine.orchestrator.handle_delivery_callback(callback) is False
        assert (await engine.store.get(result.notification_id)).status == "sent"

    async def test_unknown_message_id(self, engine):
        callback = parse_callback(SMS, {"external_id": "nope", "status": "delivered"})
        assert await engine.orchestrator.handle_delivery_callback(callback) is False


class TestTracking:

    async def test_click_records_event(self, engine):
        await _register(engine, EMAIL, "ava@example.com")
        nid = (await engine.orchestrator.send_notification(_request(channel_type="email"))).notification_id

        recorded = await engine.orchestrator.record_tracking_event(
            nid, EventType.CLICKED, {"url": "https://example.com/offer"},
        )

        assert recorded
        history = await engine.events.history(nid)
        assert history[-1].event_type == "clicked"
        assert history[-1].event_data == {"url": "https://example.com/offer"}
        assert (await engine.store.get(nid)).status == "delivered"

    async def test_repeat_opens_recorded(self, engine):
        await _register(engine, EMAIL, "ava@example.com")
        nid = (await engine.orchestrator.send_notification(_request(channel_type="email"))).notification_id

        await engine.orchestrator.record_tracking_event(nid, EventType.OPENED)
        await engine.orchestrator.record_tracking_event(nid, EventType.OPENED)

        types = await event_types(engine, nid)
        assert types.count("opened") == 2
        assert types.count("delivered") == 1

    async def test_unknown_notification(self, engine):
        assert await engine.orchestrator.record_tracking_event("missing", EventType.OPENED) is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 8: Channel registration & SMS opt-out
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistrationAndOptOut:

    async def test_opt_out_deactivates_number_for_all_users(self, engine):
        await _register(engine, user_id=1)
        await _register(engine, user_id=2)

        outcome = await engine.orchestrator.handle_inbound_sms("+1 (555) 123-4567", " stop ")

        assert outcome == {"opted_out": True, "endpoints_deactivated": 2}
        assert await engine.registry.resolve(1, SMS) is None
        assert await engine.registry.resolve(2, SMS) is None

    async def test_ordinary_reply_ignored(self, engine):
        await _register(engine)
        outcome = await engine.orchestrator.handle_inbound_sms(PHONE, "thanks!")
        assert outcome == {"opted_out": False, "endpoints_deactivated": 0}
        assert await engine.registry.resolve(1, SMS) is not None

    async def test_opt_out_from_invalid_number(self, engine):
        with pytest.raises(ValidationError):
            await engine.orchestrator.handle_inbound_sms("12", "STOP")

    async def test_register_channel_validates_with_adapter(self, engine):
        with pytest.raises(ValidationError) as exc:
            await engine.orchestrator.register_channel(1, "in_app", "   ")
        assert exc.value.details["field"] == "endpoint"

    async def test_register_channel_unknown_type(self, engine):
        with pytest.raises(ValidationError):
            await engine.orchestrator.register_channel(1, "fax", "123")

    async def test_register_channel(self, engine):
        record = await engine.orchestrator.register_channel(1, "sms", PHONE, {"label": "mobile"})
        assert record.is_active and record.is_verified
        assert (await engine.registry.resolve(1, SMS)).id == record.id


# ═══════════════════════════════════════════════════════════════════════════
# Section 9: Listeners & bulk
# ═══════════════════════════════════════════════════════════════════════════

class TestSentListeners:

    async def test_listener_receives_sent_notifications(self, engine):
        await _register(engine)
        seen = []

        async def listener(payload):
            seen.append(payload)

        engine.orchestrator.add_sent_listener(listener)
        result = await engine.orchestrator.send_notification(_request())

        assert seen == [{
            "notification_id": result.notification_id,
            "user_id": 1,
            "channel_type": "sms",
            "category": "transactional",
            "status": "sent",
            "external_id": result.external_id,
        }]

        engine.orchestrator.remove_sent_listener(listener)
        await engine.orchestrator.send_notification(_request())
        assert len(seen) == 1

    async def test_failing_listener_does_not_break_delivery(self, engine):
        await _register(engine)
        seen = []

        async def broken(payload):
            raise RuntimeError("listener down")

        async def listener(payload):
            seen.append(payload["notification_id"])

        engine.orchestrator.add_sent_listener(broken)
        engine.orchestrator.add_sent_listener(listener)
        result = await engine.orchestrator.send_notification(_request())

        assert result.success
        assert seen == [result.notification_id]

    async def test_not_called_on_failure(self, engine):
        seen = []

        async def listener(payload):
            seen.append(payload)

        engine.orchestrator.add_sent_listener(listener)
        await engine.orchestrator.send_notification(_request())  # no endpoint
        assert seen == []


class TestBulk:

    async def test_each_request_independent(self, engine):
        await _register(engine)
        await engine.preferences.set_preferences(1, [
            {"channel_type": "sms", "category": "marketing", "enabled": False},
        ])

        bulk = await engine.orchestrator.send_bulk([
            _request(),
            _request(channel_type="fax"),
            _request(category="marketing"),
            _request(message="second"),
        ])

        assert [r.success for r in bulk.results] == [True, False, False, True]
        assert [r.reason for r in bulk.results[1:3]] == ["validation_error", "blocked_by_preference"]
        assert bulk.to_dict()["summary"] == {"total": 4, "successful": 2, "failed": 2}
        assert len(scripted(engine, SMS).calls) == 2

    async def test_empty_batch(self, engine):
        bulk = await engine.orchestrator.send_bulk([])
        assert bulk.total == 0
