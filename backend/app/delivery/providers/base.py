"""
base.py — Provider adapter contract and per-channel message shaping.

Every adapter implements ``send`` and normalises its own failures at the
boundary. ``deliver`` guarantees the dispatcher only ever sees one of:

    TransientProviderError  → retryable (timeout, 5xx, connection reset)
    RateLimitError          → rate-limited (429)
    PermanentProviderError  → non-retryable (address blocked, bad credentials)
    InputError              → non-retryable, input-specific

so the dispatcher never needs provider-specific knowledge.

═══════════════════════════════════════════════════════════════════════════
CHANNEL LIMITS
═══════════════════════════════════════════════════════════════════════════

    Channel   Subject         Body
    ───────   ─────────────   ───────────────────────────────
    email     as rendered     as rendered
    sms       dropped         ≤160 chars per GSM 7-bit segment,
                              ≤SMS_MAX_SEGMENTS segments
    push      ≤65 chars       ≤240 chars
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional

from backend.app.core.errors import (
    InputError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from backend.app.delivery.models import Channel, DeliveryResult, OutboundMessage

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160      # GSM 7-bit encoding
SMS_MAX_SEGMENTS = 3
PUSH_MAX_TITLE = 65
PUSH_MAX_BODY = 240


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def sms_segments(body: str) -> int:
    """Number of GSM 7-bit segments needed for ``body``."""
    return 1 + (max(len(body), 1) - 1) // SMS_MAX_GSM7


def shape_message(message: OutboundMessage) -> OutboundMessage:
    """Fit a rendered message into its channel's length limits."""
    if message.channel == Channel.SMS:
        body = _truncate(message.body, SMS_MAX_GSM7 * SMS_MAX_SEGMENTS)
        return replace(message, subject=None, body=body)
    if message.channel == Channel.PUSH:
        title = _truncate(message.subject, PUSH_MAX_TITLE) if message.subject else None
        return replace(message, subject=title, body=_truncate(message.body, PUSH_MAX_BODY))
    return message


class ProviderAdapter(ABC):
    """
    One concrete delivery service for one channel.

    Subclasses implement ``send`` and may refine ``classify_error``.
    """

    def __init__(self, name: str, channel: Channel, *, timeout_seconds: Optional[float] = None):
        self.name = name
        self.channel = channel
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def send(self, message: OutboundMessage) -> DeliveryResult:
        """Hand the message to the provider. May raise anything."""

    def classify_error(self, exc: Exception) -> ProviderError:
        """Map an arbitrary exception to a classified provider error."""
        if isinstance(exc, (TimeoutError, ConnectionError)):
            return TransientProviderError(self.name, str(exc) or type(exc).__name__)
        if isinstance(exc, (ValueError, LookupError)):
            return PermanentProviderError(self.name, str(exc))
        return TransientProviderError(self.name, f"{type(exc).__name__}: {exc}")

    def deliver(self, message: OutboundMessage) -> DeliveryResult:
        """
        Shape, send and normalise.

        Returns
        -------
        DeliveryResult
            On acceptance by the provider.

        Raises
        ------
        ProviderError | InputError
            Always classified; never a raw library exception.
        """
        if message.channel != self.channel:
            raise InputError(
                f"Provider {self.name} handles {self.channel.value}, not {message.channel.value}",
                field="channel",
            )

        shaped = shape_message(message)
        start = time.perf_counter()
        try:
            result = self.send(shaped)
        except (ProviderError, InputError):
            raise
        except Exception as exc:
            classified = self.classify_error(exc)
            logger.debug("Provider %s raised %s → %s", self.name, type(exc).__name__, type(classified).__name__)
            raise classified from exc

        result.duration_ms = (time.perf_counter() - start) * 1000
        return result

    def close(self) -> None:
        """Release network resources; the registry calls this when dropping the adapter."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, channel={self.channel.value!r})"
