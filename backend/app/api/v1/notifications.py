"""
FastAPI route: Multi-channel notification delivery endpoints.

Provides endpoints to:
    POST /api/v1/notifications/send                  — send one notification
    POST /api/v1/notifications/send-bulk             — send many, independently
    GET  /api/v1/notifications?user_id=              — inbox listing + unread count
    GET  /api/v1/notifications/{id}                  — one notification + history
    POST /api/v1/notifications/{id}/cancel           — cancel a scheduled send
    PUT  /api/v1/notifications/{id}/read             — mark one in-app read
    PUT  /api/v1/notifications/read-all              — mark all in-app read
    GET  /api/v1/notifications/preferences/{user_id} — stored preferences
    PUT  /api/v1/notifications/preferences/{user_id} — upsert preferences
    POST /api/v1/notifications/channels              — register an endpoint
    GET  /api/v1/notifications/channels/{user_id}    — list endpoints
    POST /api/v1/notifications/templates             — create a template
    GET  /api/v1/notifications/templates             — list templates
    GET  /api/v1/notifications/templates/{id}        — one template
    POST /api/v1/notifications/webhooks/{channel}    — provider delivery receipt
    POST /api/v1/notifications/webhooks/sms/inbound  — inbound SMS (opt-out)
    GET  /api/v1/notifications/{id}/track/open       — email open pixel
    GET  /api/v1/notifications/{id}/track/click      — email click redirect
    WS   /api/v1/notifications/ws/{user_id}          — in-app real-time feed
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import RedirectResponse, Response

from backend.app.api.schemas import (
    BulkSendRequest,
    BulkSendResponse,
    ChannelListResponse,
    CreateTemplateRequest,
    InboundSmsRequest,
    MarkAllReadResponse,
    NotificationDetailResponse,
    NotificationListResponse,
    PreferencesResponse,
    RegisterChannelRequest,
    SendNotificationRequest,
    SendResponse,
    SetPreferencesRequest,
    WebhookResponse,
)
from backend.app.core.errors import AuthenticationError, NotFoundError, ValidationError
from backend.app.notifications.engine import NotificationEngine, get_engine
from backend.app.notifications.models import ChannelType, EventType
from backend.app.notifications.webhooks import SIGNATURE_HEADER, parse_callback, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
_NO_CACHE = {"Cache-Control": "no-store, no-cache, must-revalidate, private"}


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------

@router.post("/send", response_model=SendResponse)
async def send_notification(
    body: SendNotificationRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    """
    Send one notification.

    Policy outcomes (blocked_by_preference, rate_limit_exceeded,
    no_active_channel, ...) come back as ``success: false`` with a reason
    and HTTP 200; only malformed bodies are rejected with 422.
    """
    result = await engine.orchestrator.send_notification(body.to_request())
    return result.to_dict()


@router.post("/send-bulk", response_model=BulkSendResponse)
async def send_bulk(
    body: BulkSendRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    bulk = await engine.orchestrator.send_bulk(n.to_request() for n in body.notifications)
    return bulk.to_dict()


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    user_id: int = Query(..., ge=1),
    channel_type: Optional[ChannelType] = Query(None),
    category: Optional[str] = Query(None),
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: NotificationEngine = Depends(get_engine),
):
    rows, has_more = await engine.store.list_for_user(
        user_id,
        channel_type=channel_type.value if channel_type else None,
        category=category,
        unread_only=unread_only,
        limit=limit,
        offset=offset,
    )
    return {
        "notifications": [n.to_dict() for n in rows],
        "unread_count": await engine.store.unread_count(user_id),
        "limit": limit,
        "offset": offset,
        "has_more": has_more,
    }


@router.put("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    user_id: int = Query(..., ge=1),
    engine: NotificationEngine = Depends(get_engine),
):
    return {"updated": await engine.store.mark_all_read(user_id)}


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

@router.get("/preferences/{user_id}", response_model=PreferencesResponse)
async def get_preferences(user_id: int, engine: NotificationEngine = Depends(get_engine)):
    rows = await engine.preferences.get_preferences(user_id)
    return {"user_id": user_id, "preferences": [p.to_dict() for p in rows]}


@router.put("/preferences/{user_id}", response_model=PreferencesResponse)
async def set_preferences(
    user_id: int,
    body: SetPreferencesRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    items = [
        {
            "channel_type": p.channel_type.value,
            "category": p.category,
            "enabled": p.enabled,
            "settings": p.settings,
        }
        for p in body.preferences
    ]
    rows = await engine.preferences.set_preferences(user_id, items)
    return {"user_id": user_id, "preferences": [p.to_dict() for p in rows]}


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@router.post("/channels", status_code=201)
async def register_channel(
    body: RegisterChannelRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    record = await engine.orchestrator.register_channel(
        body.user_id, body.channel_type, body.endpoint, body.metadata, verified=body.verified,
    )
    return record.to_dict()


@router.get("/channels/{user_id}", response_model=ChannelListResponse)
async def list_channels(
    user_id: int,
    active_only: bool = Query(False),
    engine: NotificationEngine = Depends(get_engine),
):
    rows = await engine.registry.list_for_user(user_id, active_only=active_only)
    return {"user_id": user_id, "channels": [c.to_dict() for c in rows]}


@router.post("/channels/{endpoint_id}/verify")
async def verify_channel(endpoint_id: int, engine: NotificationEngine = Depends(get_engine)):
    if not await engine.registry.verify(endpoint_id):
        raise NotFoundError("Channel endpoint", endpoint_id=endpoint_id)
    return {"endpoint_id": endpoint_id, "verified": True}


@router.post("/channels/{endpoint_id}/deactivate")
async def deactivate_channel(endpoint_id: int, engine: NotificationEngine = Depends(get_engine)):
    if not await engine.registry.deactivate(endpoint_id, reason="requested"):
        raise NotFoundError("Channel endpoint", endpoint_id=endpoint_id)
    return {"endpoint_id": endpoint_id, "active": False}


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@router.post("/templates", status_code=201)
async def create_template(
    body: CreateTemplateRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    template = await engine.templates.create(
        name=body.name,
        channel_type=body.channel_type.value,
        category=body.category,
        subject=body.subject,
        body_template=body.body_template,
        html_template=body.html_template,
        default_data=body.default_data,
        is_active=body.is_active,
    )
    return template.to_dict()


@router.get("/templates")
async def list_templates(
    channel_type: Optional[ChannelType] = Query(None),
    active_only: bool = Query(True),
    engine: NotificationEngine = Depends(get_engine),
):
    rows = await engine.templates.list(
        channel_type=channel_type.value if channel_type else None,
        active_only=active_only,
    )
    return {"templates": [t.to_dict() for t in rows]}


@router.get("/templates/{template_id}")
async def get_template(template_id: int, engine: NotificationEngine = Depends(get_engine)):
    template = await engine.templates.get(template_id)
    if template is None:
        raise NotFoundError("Template", template_id=template_id)
    return template.to_dict()


# ---------------------------------------------------------------------------
# Provider callbacks
# ---------------------------------------------------------------------------

async def _authenticated_json(request: Request, engine: NotificationEngine) -> dict:
    """Verify ``X-Signature`` over the raw body, then decode it."""
    raw = await request.body()
    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), engine.settings.WEBHOOK_SECRET):
        logger.warning("Rejected webhook %s: bad signature", request.url.path)
        raise AuthenticationError("Invalid webhook signature")
    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationError("Webhook body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


@router.post("/webhooks/sms/inbound")
async def inbound_sms(request: Request, engine: NotificationEngine = Depends(get_engine)):
    payload = await _authenticated_json(request, engine)
    body = InboundSmsRequest.model_validate(payload)
    return await engine.orchestrator.handle_inbound_sms(body.from_number, body.body)


@router.post("/webhooks/{channel_type}", response_model=WebhookResponse)
async def delivery_webhook(
    channel_type: ChannelType,
    request: Request,
    engine: NotificationEngine = Depends(get_engine),
):
    payload = await _authenticated_json(request, engine)
    try:
        callback = parse_callback(channel_type, payload)
    except ValueError as e:
        raise ValidationError(str(e))
    processed = await engine.orchestrator.handle_delivery_callback(callback)
    return {"processed": processed, "kind": callback.kind.value}


# ---------------------------------------------------------------------------
# Single notification
# ---------------------------------------------------------------------------

@router.get("/{notification_id}", response_model=NotificationDetailResponse)
async def get_notification(notification_id: str, engine: NotificationEngine = Depends(get_engine)):
    notification = await engine.store.get(notification_id)
    if notification is None:
        raise NotFoundError("Notification", notification_id=notification_id)
    events = await engine.events.history(notification_id)
    return {"notification": notification.to_dict(), "events": [e.to_dict() for e in events]}


@router.post("/{notification_id}/cancel")
async def cancel_notification(
    notification_id: str,
    user_id: Optional[int] = Query(None),
    engine: NotificationEngine = Depends(get_engine),
):
    notification = await engine.orchestrator.cancel_notification(notification_id, user_id)
    return notification.to_dict()


@router.put("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user_id: int = Query(..., ge=1),
    engine: NotificationEngine = Depends(get_engine),
):
    notification = await engine.store.mark_read(notification_id, user_id)
    if notification is None:
        raise NotFoundError("Notification", notification_id=notification_id)
    return notification.to_dict()


# ---------------------------------------------------------------------------
# Engagement tracking (never fails the reader)
# ---------------------------------------------------------------------------

@router.get("/{notification_id}/track/open")
async def track_open(
    notification_id: str,
    request: Request,
    engine: NotificationEngine = Depends(get_engine),
):
    await engine.orchestrator.record_tracking_event(
        notification_id,
        EventType.OPENED,
        {"user_agent": request.headers.get("user-agent", "")},
    )
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=_NO_CACHE)


@router.get("/{notification_id}/track/click")
async def track_click(
    notification_id: str,
    request: Request,
    url: str = Query(...),
    engine: NotificationEngine = Depends(get_engine),
):
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Redirect target must be an http(s) URL", field="url")
    await engine.orchestrator.record_tracking_event(
        notification_id,
        EventType.CLICKED,
        {"url": url, "user_agent": request.headers.get("user-agent", "")},
    )
    return RedirectResponse(url, status_code=302, headers=_NO_CACHE)


# ---------------------------------------------------------------------------
# In-app real-time feed
# ---------------------------------------------------------------------------

@router.websocket("/ws/{user_id}")
async def in_app_feed(websocket: WebSocket, user_id: int):
    """
    Live in-app feed. Backlogged notifications are replayed on connect.

    Client messages:
        {"type": "ping"}                           → {"type": "pong"}
        {"type": "read", "notification_id": "..."} → marks it read
    """
    engine: NotificationEngine = websocket.app.state.engine
    in_app = engine.in_app
    if in_app is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    await websocket.send_json({
        "type": "connected",
        "unread_count": await engine.store.unread_count(user_id),
    })
    await in_app.connect(user_id, connection_id, websocket.send_json)
    try:
        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                await websocket.send_json({"type": "pong"})
            elif kind == "read" and message.get("notification_id"):
                try:
                    await engine.store.mark_read(str(message["notification_id"]), user_id)
                except ValidationError as e:
                    await websocket.send_json({"type": "error", "message": e.message})
    except WebSocketDisconnect:
        pass
    finally:
        in_app.disconnect(user_id, connection_id)
