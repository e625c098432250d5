"""FastAPI middleware components."""

from quotaflow.api.middleware.exception_handler import setup_exception_handlers
from quotaflow.api.middleware.logging import LoggingMiddleware
from quotaflow.api.middleware.metrics import MetricsMiddleware

__all__ = [
    "LoggingMiddleware",
    "MetricsMiddleware",
    "setup_exception_handlers",
]
