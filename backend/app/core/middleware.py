"""
Request middleware — correlation IDs, timing and notification context.

Provides:
    • X-Request-ID header injection (correlation ID)
    • X-Process-Time header
    • One structured log entry per request
    • Log context derived from the route, so handler and engine logs for
      ``/api/v1/notifications/{id}`` carry ``notification_id`` and webhook
      calls carry ``provider``
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_log_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")

_NOTIFICATION_PATH = re.compile(r"^/api/v1/notifications/(ntf_[0-9a-f]+)(?:/|$)")
_WEBHOOK_PATH = re.compile(r"^/api/v1/notifications/webhooks/([^/]+)$")


def _route_context(path: str) -> Dict[str, Any]:
    """Identifiers that can be read off the URL before the handler runs."""
    ctx: Dict[str, Any] = {}
    match = _WEBHOOK_PATH.match(path)
    if match:
        ctx["provider"] = match.group(1)
        return ctx
    match = _NOTIFICATION_PATH.match(path)
    if match:
        ctx["notification_id"] = match.group(1)
    return ctx


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing, inject correlation ID.

    4xx responses log at WARNING, 5xx at ERROR. Health-check and docs traffic is
    not logged.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        route_ctx = _route_context(path)

        set_log_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            **route_ctx,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, (time.perf_counter() - start) * 1000, client_ip,
                extra={"status_code": 500, **route_ctx},
            )
            set_log_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    **route_ctx,
                },
            )

        set_log_context()
        return response
