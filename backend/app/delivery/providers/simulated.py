"""
simulated.py — In-process provider for development, dry runs and tests.

Logs the message instead of sending it. An optional script of outcomes lets
tests make the provider fail a fixed number of times:

    SimulatedProvider("primary", Channel.EMAIL,
                      script=[TransientProviderError("primary", "timeout"), None])

Each call consumes the next script entry: an exception is raised, ``None``
means success. Once the script is exhausted every call succeeds (or raises
``default_error`` when given).
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Iterable, List, Optional

from backend.app.delivery.models import Channel, DeliveryResult, OutboundMessage
from backend.app.delivery.providers.base import ProviderAdapter, sms_segments

logger = logging.getLogger(__name__)


class SimulatedProvider(ProviderAdapter):
    """Provider that records calls and returns scripted outcomes."""

    def __init__(
        self,
        name: str,
        channel: Channel,
        *,
        script: Optional[Iterable[Optional[Exception]]] = None,
        default_error: Optional[Exception] = None,
        latency_seconds: float = 0.0,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(name, channel, timeout_seconds=timeout_seconds)
        self._script: List[Optional[Exception]] = list(script or [])
        self.default_error = default_error
        self.latency_seconds = latency_seconds
        self.calls: List[OutboundMessage] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def send(self, message: OutboundMessage) -> DeliveryResult:
        with self._lock:
            self.calls.append(message)
            outcome = self._script.pop(0) if self._script else self.default_error

        if self.latency_seconds:
            time.sleep(self.latency_seconds)

        if outcome is not None:
            raise outcome

        logger.info(
            "[%s/%s] %s → %s: %d chars",
            self.channel.value.upper(), self.name,
            message.notification_id, message.to_address, len(message.body),
        )

        response = {"mode": "simulated", "provider": self.name, "message_length": len(message.body)}
        if self.channel == Channel.SMS:
            response["segments"] = sms_segments(message.body)

        return DeliveryResult(
            provider=self.name,
            provider_message_id=f"sim-{uuid.uuid4().hex[:16]}",
            response=response,
        )
