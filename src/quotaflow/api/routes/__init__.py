"""API routes module."""

from quotaflow.api.routes.billing import router as billing_router
from quotaflow.api.routes.health import router as health_router
from quotaflow.api.routes.quota import router as quota_router

__all__ = [
    "billing_router",
    "health_router",
    "quota_router",
]
