"""
Pydantic schemas for the notification API.

Separated from the route handlers so they are reusable across
the codebase (workers, scripts, tests).
"""

from __future__ import annotations

from datetime import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from backend.app.delivery.models import Category, Channel, Frequency


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class RecipientInput(BaseModel):
    """Target user and contact addresses."""
    user_id: str = Field(..., min_length=1, examples=["user_42"])
    email: Optional[str] = Field(None, examples=["asha@example.com"])
    phone: Optional[str] = Field(None, description="E.164", examples=["+919876543210"])
    push_token: Optional[str] = Field(None)


class SubmitNotificationRequest(BaseModel):
    """Request body for POST /api/v1/notifications."""
    recipient: RecipientInput
    channel: Channel = Field(..., examples=["email"])
    template_name: str = Field(..., min_length=1, examples=["order_shipped"])
    variables: Dict[str, Any] = Field(default_factory=dict, examples=[{"order_id": "A-1042"}])
    category: Category = Field(Category.TRANSACTIONAL, examples=["transactional"])
    priority: Optional[int] = Field(None, ge=0, le=10, description="Higher is sooner")
    dedup_keys: List[str] = Field(
        default_factory=list,
        description="Variable names that take part in duplicate detection",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TemplateInput(BaseModel):
    """Request body for PUT /api/v1/notifications/templates/{name}."""
    body: str = Field(..., min_length=1, examples=["Hi {{ name }}, order {{ order_id }} shipped."])
    subject: Optional[str] = Field(None, examples=["Order {{ order_id }} shipped"])
    channel: Optional[Channel] = Field(None, description="Omit to apply to every channel")


class QuietHoursInput(BaseModel):
    start: time = Field(..., examples=["22:00"])
    end: time = Field(..., examples=["07:00"])
    timezone: str = Field("UTC", examples=["Asia/Kolkata"])


class PreferencesInput(BaseModel):
    """Request body for PUT /api/v1/notifications/preferences/{user_id}."""
    quiet_hours: Optional[QuietHoursInput] = None
    frequency: Frequency = Frequency.IMMEDIATE
    timezone: str = "UTC"
    opted_out: List[Dict[str, str]] = Field(
        default_factory=list,
        description="Pairs of channel and category the user declined",
        examples=[[{"channel": "sms", "category": "marketing"}]],
    )

    @model_validator(mode="after")
    def _check_opt_outs(self) -> "PreferencesInput":
        for entry in self.opted_out:
            Channel(entry.get("channel"))
            Category(entry.get("category"))
        return self


class WebhookEvent(BaseModel):
    """Provider status callback."""
    event: str = Field(..., examples=["delivered"])
    notification_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _needs_identifier(self) -> "WebhookEvent":
        if not (self.notification_id or self.provider_message_id):
            raise ValueError("notification_id or provider_message_id is required")
        return self


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class SubmitNotificationResponse(BaseModel):
    notification_id: str
    status: str
    not_before: Optional[str] = None
    error_kind: Optional[str] = None
    duplicate_of: Optional[str] = None


class CancelResponse(BaseModel):
    notification_id: str
    cancelled: bool
    status: str


class QueueDepthResponse(BaseModel):
    channel: Optional[str] = None
    depth: int
