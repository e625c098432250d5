"""Metrics middleware for automatic request tracking."""

from time import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from quotaflow.core.metrics import active_requests, request_latency_seconds, request_total


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects latency, request count and in-flight gauge per route.

    Health and metrics endpoints are excluded.
    """

    EXCLUDED_PATHS = {"/metrics", "/health", "/health/ready"}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.EXCLUDED_PATHS:
            return await call_next(request)

        method = request.method
        active_requests.inc()
        start_time = time()
        status = "500"

        try:
            response: Response = await call_next(request)
            status = str(response.status_code)
        finally:
            # The route is only known once routing has run
            endpoint = self._get_endpoint(request)
            request_latency_seconds.labels(endpoint=endpoint, method=method).observe(
                time() - start_time
            )
            request_total.labels(endpoint=endpoint, method=method, status=status).inc()
            active_requests.dec()

        return response

    def _get_endpoint(self, request: Request) -> str:
        """Full route template for matched requests, else the raw path.

        ``/api/v1/quota/u1/ai_proposals`` is labelled
        ``/api/v1/quota/{user_id}/{feature}``. The template is rebuilt from the
        request path so router prefixes are kept.
        """
        if request.scope.get("route") is None:
            return request.url.path

        segments = request.url.path.split("/")
        pending = {name: str(value) for name, value in request.path_params.items()}
        for index in range(len(segments) - 1, -1, -1):
            for name, value in pending.items():
                if segments[index] == value:
                    segments[index] = f"{{{name}}}"
                    del pending[name]
                    break
        return "/".join(segments)
