"""
Observability middleware.

Provides:
- Correlation ID tracking across requests
- Request/response logging with timing

When CORRELATION_IDS_ENABLED is active every request gets a correlation ID,
taken from the X-Correlation-ID header or generated, and echoed back on the
response.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from restaurant_ops.core.feature_flags import is_enabled

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger("requests")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach a correlation ID to the request context and response headers."""

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not is_enabled("CORRELATION_IDS_ENABLED"):
            return await call_next(request)

        correlation_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        correlation_id_var.set(correlation_id)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with status and duration."""

    EXCLUDED_PATHS = {"/health", "/health/ready", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        start_time = time.time()
        correlation_id = get_correlation_id() or "no-correlation-id"

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"[{correlation_id}] {request.method} {request.url.path} "
                f"failed after {duration_ms:.2f}ms: {e}",
                exc_info=True,
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            log_level,
            f"[{correlation_id}] {request.method} {request.url.path} "
            f"completed {response.status_code} in {duration_ms:.2f}ms",
        )
        return response
