"""
http.py — Generic JSON-over-HTTP provider adapter (httpx).

Posts one message to a relay endpoint:

    POST {endpoint}
    Authorization: Bearer {api_key}
    Idempotency-Key: {attempt token or notification id}

    {"to": ..., "from": ..., "channel": ..., "subject": ..., "body": ...,
     "reference": notification_id}

and reads ``id`` / ``message_id`` from the JSON answer.

Status classification:

    429                 → RateLimitError (Retry-After honoured)
    408, 5xx            → TransientProviderError
    401, 403            → PermanentProviderError (provider-specific)
    other 4xx           → PermanentProviderError (recipient-specific)
    timeout / transport → TransientProviderError
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import (
    PermanentProviderError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from backend.app.delivery.models import Channel, DeliveryResult, OutboundMessage
from backend.app.delivery.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpProvider(ProviderAdapter):
    """Provider reached through a JSON HTTP API."""

    def __init__(
        self,
        name: str,
        channel: Channel,
        endpoint: str,
        *,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        timeout_seconds: Optional[float] = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(name, channel, timeout_seconds=timeout_seconds)
        self.endpoint = endpoint
        self.api_key = api_key
        self.sender = sender
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout_seconds or 30.0)
        return self._client

    def _headers(self, message: OutboundMessage) -> Dict[str, str]:
        headers = {"Idempotency-Key": message.attempt_token or message.notification_id}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def send(self, message: OutboundMessage) -> DeliveryResult:
        payload: Dict[str, Any] = {
            "to": message.to_address,
            "from": self.sender,
            "channel": message.channel.value,
            "subject": message.subject,
            "body": message.body,
            "reference": message.notification_id,
        }

        response = self._get_client().post(
            self.endpoint, json=payload, headers=self._headers(message),
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            data = {}

        message_id = data.get("id") or data.get("message_id")
        logger.info(
            "[%s/%s] %s accepted as %s",
            self.channel.value.upper(), self.name, message.notification_id, message_id,
        )
        return DeliveryResult(
            provider=self.name,
            provider_message_id=str(message_id) if message_id else None,
            response={"status_code": response.status_code, **data},
        )

    def classify_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            code = exc.response.status_code
            detail = exc.response.text[:200]
            if code == 429:
                return RateLimitError(
                    self.name,
                    retry_after=_parse_retry_after(exc.response.headers.get("Retry-After")),
                )
            if code == 408 or code >= 500:
                return TransientProviderError(self.name, f"HTTP {code}", status_code=code)
            if code in (401, 403):
                return PermanentProviderError(
                    self.name, f"HTTP {code}: {detail}", provider_specific=True, status_code=code,
                )
            return PermanentProviderError(self.name, f"HTTP {code}: {detail}", status_code=code)

        if isinstance(exc, httpx.TimeoutException):
            return TransientProviderError(self.name, "timeout")
        if isinstance(exc, httpx.TransportError):
            return TransientProviderError(self.name, f"transport error: {exc}")
        return super().classify_error(exc)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
