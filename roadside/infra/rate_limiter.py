# roadside/infra/rate_limiter.py
"""
Per-client sliding-window rate limiting for the public link endpoints
(bid submission, vendor preview, customer pages).

Each process keeps its own window, so with N replicas the effective limit
is N x ``max_requests``.
"""
from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import inc_counter

logger = get_logger(__name__)


class InMemoryRateLimiter:

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Record a hit for ``key`` if it is under the limit.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = self._clock()
        cutoff = now - self.window_seconds

        with self._lock:
            hits = [ts for ts in self._requests[key] if ts > cutoff]
            self._requests[key] = hits

            if len(hits) >= self.max_requests:
                retry_after = int(hits[0] + self.window_seconds - now) + 1
                logger.warning(
                    "Rate limit exceeded: key=%s count=%d limit=%d",
                    key[:4] + "***", len(hits), self.max_requests,
                )
                return False, retry_after

            hits.append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """Forget keys idle for ``max_age_seconds``. Returns keys removed."""
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [k for k, hits in self._requests.items() if not hits or hits[-1] < cutoff]
            for key in stale:
                del self._requests[key]
        return len(stale)


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """FastAPI dependency: 429 with Retry-After once a client IP is over the limit."""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        allowed, retry_after = self.limiter.is_allowed(client_ip(request))
        if not allowed:
            inc_counter("rate_limited_total", path=request.url.path.split("/")[1] or "root")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
