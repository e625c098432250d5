"""Rate limiting dependencies for API endpoints."""

from fastapi import Request

from quotaflow.core.rate_limiter import IngressRateLimiter, check_rate_limit


def get_rate_limiter(request: Request) -> IngressRateLimiter:
    return request.app.state.rate_limiter


async def rate_limit_ingress(request: Request) -> None:
    """Rate limit dependency for webhook and quota endpoints."""
    check_rate_limit(request, get_rate_limiter(request))
