"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Submission-time errors that propagate to the caller (InputError, ...)
    • Provider errors normalised into three failure classes
      (retryable / non-retryable / rate-limited) for the dispatcher
    • Machine-readable error kinds stored on notification records
    • Consistent JSON error response format

Usage:
    from backend.app.core.errors import (
        InputError,
        TransientProviderError,
        register_error_handlers,
    )

    raise InputError("Malformed email address", field="recipient.email")
"""

from __future__ import annotations

import logging
import traceback
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings
from backend.app.core.logging_config import get_log_context

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Error Kinds & Failure Classes
# ═══════════════════════════════════════════════════════════════════════════

class ErrorKind(str, Enum):
    """Machine-readable reason stored on a failed/suppressed record."""
    INVALID_INPUT            = "invalid_input"
    TEMPLATE_NOT_FOUND       = "template_not_found"
    TEMPLATE_RENDER_ERROR    = "template_render_error"
    TRANSIENT_PROVIDER_ERROR = "transient_provider_error"
    RATE_LIMITED             = "rate_limited"
    PERMANENT_PROVIDER_ERROR = "permanent_provider_error"
    EXHAUSTED_RETRIES        = "exhausted_retries"
    NO_AVAILABLE_PROVIDER    = "no_available_provider"
    CANCELLED                = "cancelled"
    DUPLICATE                = "duplicate"
    OPTED_OUT                = "opted_out"


class FailureClass(str, Enum):
    """How the dispatcher must treat a provider failure."""
    RETRYABLE     = "retryable"
    NON_RETRYABLE = "non_retryable"
    RATE_LIMITED  = "rate_limited"


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryEngineError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(DeliveryEngineError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class InputError(DeliveryEngineError):
    """
    Malformed submission (422) — non-retryable.

    Raised synchronously at submission time; provider adapters also raise it
    when a provider rejects an address as syntactically invalid.
    """

    error_kind = ErrorKind.INVALID_INPUT
    failure_class = FailureClass.NON_RETRYABLE
    provider_specific = False

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="INVALID_INPUT",
            details=d,
        )


class TemplateNotFound(DeliveryEngineError):
    """Template collaborator has no template with this name."""

    error_kind = ErrorKind.TEMPLATE_NOT_FOUND

    def __init__(self, template_name: str):
        super().__init__(
            message=f"Template not found: {template_name}",
            status_code=422,
            error_code="TEMPLATE_NOT_FOUND",
            details={"template_name": template_name},
        )


class TemplateRenderError(DeliveryEngineError):
    """Template exists but could not be rendered with the given variables."""

    error_kind = ErrorKind.TEMPLATE_RENDER_ERROR

    def __init__(self, template_name: str, message: str = ""):
        super().__init__(
            message=f"Template '{template_name}' failed to render: {message}",
            status_code=422,
            error_code="TEMPLATE_RENDER_ERROR",
            details={"template_name": template_name},
        )


class InvalidTransition(DeliveryEngineError):
    """A record was asked to move along an edge the state machine forbids (409)."""

    def __init__(self, notification_id: str, current: str, target: str):
        super().__init__(
            message=f"Notification {notification_id} cannot move from {current} to {target}",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={
                "notification_id": notification_id,
                "current": current,
                "target": target,
            },
        )


class WebhookSignatureError(DeliveryEngineError):
    """Webhook body does not match its HMAC signature (401)."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="INVALID_SIGNATURE",
        )


class ProviderError(DeliveryEngineError):
    """Base for failures raised by provider adapters."""

    error_kind = ErrorKind.TRANSIENT_PROVIDER_ERROR
    failure_class = FailureClass.RETRYABLE
    provider_specific = True

    def __init__(self, provider: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Provider '{provider}' failed: {message}",
            status_code=502,
            error_code="PROVIDER_ERROR",
            details={"provider": provider, **details},
        )
        self.provider = provider


class TransientProviderError(ProviderError):
    """Timeout, 5xx, connection reset — retryable, counts against the circuit."""


class RateLimitError(ProviderError):
    """
    Provider answered 429 or a local bucket is exhausted.

    Retryable, but a scheduling delay rather than a provider-health event.
    """

    error_kind = ErrorKind.RATE_LIMITED
    failure_class = FailureClass.RATE_LIMITED
    provider_specific = False

    def __init__(
        self,
        provider: str,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
    ):
        super().__init__(provider, message, retry_after_seconds=retry_after)
        self.status_code = 429
        self.error_code = "RATE_LIMIT_EXCEEDED"
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """
    Provider refuses the message for good — non-retryable.

    provider_specific=False: the address is invalid or blocked at this
    provider (a recipient problem, not a provider-health event).
    provider_specific=True: the provider itself rejects us (bad credentials,
    suspended account) and the failure counts against its circuit.
    """

    error_kind = ErrorKind.PERMANENT_PROVIDER_ERROR
    failure_class = FailureClass.NON_RETRYABLE

    def __init__(self, provider: str, message: str = "", *, provider_specific: bool = False, **details: Any):
        super().__init__(provider, message, **details)
        self.provider_specific = provider_specific


class ExhaustedRetries(DeliveryEngineError):
    """Terminal: the attempts budget is consumed."""

    error_kind = ErrorKind.EXHAUSTED_RETRIES

    def __init__(self, notification_id: str, attempts: int, last_error: str = ""):
        super().__init__(
            message=f"Notification {notification_id} failed after {attempts} attempts: {last_error}",
            status_code=500,
            error_code="EXHAUSTED_RETRIES",
            details={"notification_id": notification_id, "attempts": attempts},
        )


# ═══════════════════════════════════════════════════════════════════════════
# JSON Error Envelope
# ═══════════════════════════════════════════════════════════════════════════

def error_envelope(
    status_code: int,
    code: str,
    message: str,
    *,
    kind: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """
    Render an error as ``{"error": {...}}``.

    ``kind`` mirrors the error kind stored on notification records, so API
    callers and record readers see the same vocabulary. The request id from
    the log context is echoed back for support lookups.
    """
    error: Dict[str, Any] = {"code": code, "message": message, "status": status_code}
    if kind:
        error["kind"] = kind
    if details:
        error["details"] = details

    request_id = get_log_context().get("request_id")
    if request_id:
        error["request_id"] = request_id
    if request is not None and not settings.is_production:
        error["endpoint"] = f"{request.method} {request.url.path}"

    return JSONResponse(status_code=status_code, content={"error": error})


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Map engine, validation and unexpected errors onto the JSON envelope."""

    @app.exception_handler(DeliveryEngineError)
    async def on_engine_error(request: Request, exc: DeliveryEngineError):
        kind = getattr(exc, "error_kind", None)
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s rejected with %s: %s",
            request.url.path, exc.error_code, exc.message,
            extra={"status_code": exc.status_code, "error_kind": kind.value if kind else None},
        )
        return error_envelope(
            exc.status_code, exc.error_code, exc.message,
            kind=kind.value if kind else None, details=exc.details, request=request,
        )

    @app.exception_handler(ValueError)
    async def on_value_error(request: Request, exc: ValueError):
        logger.warning("%s rejected: %s", request.url.path, exc)
        return error_envelope(
            422, "INVALID_INPUT", str(exc),
            kind=ErrorKind.INVALID_INPUT.value, request=request,
        )

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.critical("Unhandled error on %s", request.url.path, exc_info=exc)
        if settings.DEBUG:
            message = f"{type(exc).__name__}: {exc}"
            details = {"traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)}
        else:
            message, details = "Internal server error", None
        return error_envelope(500, "INTERNAL_ERROR", message, details=details, request=request)
