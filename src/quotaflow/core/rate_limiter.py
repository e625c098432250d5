"""In-process ingress rate limiting on top of ``limits``.

Counters live in a ``MemoryStorage`` owned by this process. Replicas do not
share state, so a deployment with N instances admits up to N times the
configured rate.
"""

import math
import time

from fastapi import Request
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from quotaflow.core.exceptions import RateLimitError
from quotaflow.core.logging import get_logger

logger = get_logger(__name__)


class IngressRateLimiter:
    """Moving-window limiter sized from a sustained rate and a burst.

    A client may spend ``burst_size`` requests at once and then gets them
    back at ``requests_per_minute``: the window admits ``burst_size`` hits
    every ``burst_size / requests_per_minute`` minutes.
    """

    def __init__(
        self,
        requests_per_minute: int,
        burst_size: int,
        *,
        storage: MemoryStorage | None = None,
    ) -> None:
        if requests_per_minute < 1 or burst_size < 1:
            raise ValueError("requests_per_minute and burst_size must be positive")
        self.requests_per_minute = requests_per_minute
        self.burst_size = burst_size
        self.window_seconds = max(1, math.ceil(burst_size * 60 / requests_per_minute))
        self.item: RateLimitItem = RateLimitItemPerSecond(burst_size, self.window_seconds)
        self.storage = storage or MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self.storage)

    def acquire(self, key: str) -> bool:
        """Record one request for ``key`` if the window has room."""
        return self._strategy.hit(self.item, key)

    def retry_after(self, key: str) -> int:
        """Seconds until ``key`` may send another request."""
        stats = self._strategy.get_window_stats(self.item, key)
        if stats.remaining > 0:
            return 0
        return max(1, math.ceil(stats.reset_time - time.time()))

    def reset(self) -> None:
        self.storage.reset()


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, considering proxies."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


def check_rate_limit(request: Request, limiter: IngressRateLimiter) -> None:
    """Check rate limit for the given request.

    Args:
        request: The incoming HTTP request
        limiter: Limiter for this route group

    Raises:
        RateLimitError: If the client has used up its window
    """
    key = f"{request.url.path}:{get_client_ip(request)}"
    if limiter.acquire(key):
        return

    retry_after = limiter.retry_after(key)
    logger.warning("rate_limit_exceeded", key=key, retry_after=retry_after)
    raise RateLimitError(
        f"Rate limit exceeded. Maximum {limiter.requests_per_minute} requests per minute allowed.",
        retry_after=retry_after,
        limit=limiter.requests_per_minute,
    )
