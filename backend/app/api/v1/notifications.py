"""
FastAPI routes: notification submission, status and provider callbacks.

Provides endpoints to:
    POST /api/v1/notifications                        — submit a notification
    GET  /api/v1/notifications/stats[?days=N]         — delivery and engagement rates
    GET  /api/v1/notifications/queue/depth            — pending items
    GET  /api/v1/notifications/providers/health       — circuit state per provider
    PUT  /api/v1/notifications/templates/{name}       — add / replace a template
    PUT  /api/v1/notifications/preferences/{user_id}  — recipient preferences
    POST /api/v1/notifications/webhooks/{provider}    — provider status events
    GET  /api/v1/notifications/{id}                   — record status
    POST /api/v1/notifications/{id}/cancel            — cancel before dispatch

Webhook bodies are authenticated with an HMAC-SHA256 hex digest of the raw
body in ``X-Webhook-Signature`` when ``WEBHOOK_VERIFY`` and
``WEBHOOK_SECRET`` are set.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError

from backend.app.api.schemas import (
    CancelResponse,
    PreferencesInput,
    QueueDepthResponse,
    SubmitNotificationRequest,
    SubmitNotificationResponse,
    TemplateInput,
    WebhookEvent,
)
from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import DeliveryEngineError, InputError, WebhookSignatureError
from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.models import (
    Category,
    Channel,
    QuietHours,
    Recipient,
    RecipientPreferences,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_engine(request: Request) -> NotificationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise DeliveryEngineError("Delivery engine not initialised", status_code=503, error_code="NOT_READY")
    return engine


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


# ---------------------------------------------------------------------------
# Submission & queries
# ---------------------------------------------------------------------------

@router.post("", response_model=SubmitNotificationResponse, status_code=202)
def submit_notification(
    body: SubmitNotificationRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    """
    Accept a notification for delivery.

    Returns 202 with the record status. Suppressed and failed submissions
    are still 202: they have a record the caller can inspect.
    """
    notification_id = engine.submit(
        Recipient(**body.recipient.model_dump()),
        body.channel,
        body.template_name,
        body.variables,
        category=body.category,
        priority=body.priority,
        dedup_keys=body.dedup_keys,
        metadata=body.metadata,
    )
    record = engine.get_status(notification_id)
    return SubmitNotificationResponse(
        notification_id=notification_id,
        status=record.status.value,
        not_before=record.not_before.isoformat() if record.not_before else None,
        error_kind=record.error_kind,
        duplicate_of=record.duplicate_of,
    )


@router.get("/stats")
def delivery_stats(
    days: Optional[int] = Query(None, ge=1, le=365, description="Only records created in the last N days"),
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return engine.delivery_stats(days)


@router.get("/queue/depth", response_model=QueueDepthResponse)
def queue_depth(
    channel: Optional[Channel] = Query(None),
    engine: NotificationEngine = Depends(get_engine),
):
    return QueueDepthResponse(
        channel=channel.value if channel else None,
        depth=engine.get_queue_depth(channel),
    )


@router.get("/providers/health")
def provider_health(engine: NotificationEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return engine.provider_health()


# ---------------------------------------------------------------------------
# Templates & preferences
# ---------------------------------------------------------------------------

@router.put("/templates/{name}")
def put_template(
    name: str,
    body: TemplateInput,
    engine: NotificationEngine = Depends(get_engine),
):
    register = getattr(engine.renderer, "register", None)
    if register is None:
        raise DeliveryEngineError(
            "Template renderer is read-only", status_code=405, error_code="READ_ONLY",
        )
    register(name, body=body.body, subject=body.subject, channel=body.channel)
    logger.info("Template %s registered (channel=%s)", name, body.channel.value if body.channel else "*")
    return {"name": name, "channel": body.channel.value if body.channel else None}


@router.put("/preferences/{user_id}")
def put_preferences(
    user_id: str,
    body: PreferencesInput,
    engine: NotificationEngine = Depends(get_engine),
):
    quiet_hours = None
    if body.quiet_hours is not None:
        quiet_hours = QuietHours(
            start=body.quiet_hours.start,
            end=body.quiet_hours.end,
            timezone=body.quiet_hours.timezone,
        )
    prefs = RecipientPreferences(
        user_id=user_id,
        quiet_hours=quiet_hours,
        frequency=body.frequency,
        timezone=body.timezone,
        opted_out=frozenset(
            (Channel(entry["channel"]), Category(entry["category"])) for entry in body.opted_out
        ),
    )
    engine.preferences.set(prefs)
    return {"user_id": user_id, "frequency": prefs.frequency.value}


# ---------------------------------------------------------------------------
# Provider callbacks
# ---------------------------------------------------------------------------

@router.post("/webhooks/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    engine: NotificationEngine = Depends(get_engine),
    settings: Settings = Depends(get_app_settings),
):
    raw = await request.body()

    if settings.WEBHOOK_VERIFY and settings.WEBHOOK_SECRET:
        signature = request.headers.get("X-Webhook-Signature")
        if not verify_signature(settings.WEBHOOK_SECRET, raw, signature):
            logger.warning("Rejected webhook from %s: bad signature", provider, extra={"provider": provider})
            raise WebhookSignatureError()

    try:
        event = WebhookEvent.model_validate_json(raw)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise InputError("Malformed webhook body", errors=errors) from None

    record = engine.record_event(
        event.notification_id or event.provider_message_id,
        event.event,
        reason=event.reason,
    )
    return {"notification_id": record.id, "status": record.status.value, "event": event.event}


# ---------------------------------------------------------------------------
# Single record
# ---------------------------------------------------------------------------

@router.get("/{notification_id}")
def get_notification(
    notification_id: str,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return engine.get_status(notification_id).to_dict()


@router.post("/{notification_id}/cancel", response_model=CancelResponse)
def cancel_notification(
    notification_id: str,
    engine: NotificationEngine = Depends(get_engine),
):
    cancelled = engine.cancel(notification_id)
    record = engine.get_status(notification_id)
    return CancelResponse(
        notification_id=notification_id,
        cancelled=cancelled,
        status=record.status.value,
    )
