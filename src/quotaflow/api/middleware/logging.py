"""Request logging middleware.

Every log line emitted while a request is in flight carries its correlation
ID. Webhook deliveries reuse the provider's ``webhook-id`` header when the
caller sent no ``X-Correlation-ID``, so a delivery can be traced from the
provider dashboard to our logs.
"""

from __future__ import annotations

import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from quotaflow.core.logging import (
    bind_contextvars,
    clear_contextvars,
    get_logger,
    set_correlation_id,
)
from quotaflow.core.rate_limiter import get_client_ip

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
WEBHOOK_ID_HEADER = "webhook-id"


def resolve_correlation_id(request: Request) -> str:
    return (
        request.headers.get(CORRELATION_ID_HEADER)
        or request.headers.get(WEBHOOK_ID_HEADER)
        or str(uuid4())
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds request context and logs one line per finished request."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        clear_contextvars()
        correlation_id = set_correlation_id(resolve_correlation_id(request))
        bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
            client_ip=get_client_ip(request),
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", duration_ms=_elapsed_ms(started))
            raise

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=_elapsed_ms(started),
        )
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        clear_contextvars()
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
