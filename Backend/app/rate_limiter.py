"""
Per-IP rate limiting for unauthenticated endpoints.

Public booking creation and rating submission are open to anyone with the
tenant URL, so each client IP gets a sliding-window allowance per endpoint.

Usage:
    @router.post("/bookings", dependencies=[Depends(rate_limit_dependency(10))])
    async def create_public_booking(...):
        ...

State is in-memory and per-process.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    def __init__(self, cleanup_interval: float = 300.0):
        # {(client_ip, endpoint): deque[timestamps]}
        self.hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self.cleanup_interval = cleanup_interval
        self.last_cleanup = time.monotonic()

    @staticmethod
    def client_ip(request: Request) -> str:
        """First X-Forwarded-For hop when proxied, else the socket peer."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _cleanup(self, now: float, horizon: float) -> None:
        if now - self.last_cleanup < self.cleanup_interval:
            return
        for key in list(self.hits.keys()):
            window = self.hits[key]
            while window and window[0] <= now - horizon:
                window.popleft()
            if not window:
                del self.hits[key]
        self.last_cleanup = now

    def hit(self, key: Tuple[str, str], max_requests: int, window_seconds: int) -> Tuple[bool, int]:
        """
        Record one request for key if within the limit.

        Returns (allowed, retry_after_seconds).
        """
        now = time.monotonic()
        self._cleanup(now, 3600)

        window = self.hits[key]
        while window and window[0] <= now - window_seconds:
            window.popleft()

        if len(window) >= max_requests:
            retry_after = max(1, int(window[0] + window_seconds - now))
            return False, retry_after

        window.append(now)
        return True, 0

    def clear(self, client_ip: Optional[str] = None) -> None:
        if client_ip is None:
            self.hits.clear()
            return
        for key in [k for k in self.hits if k[0] == client_ip]:
            del self.hits[key]


_limiter = SlidingWindowLimiter()


def rate_limit_dependency(max_requests: int, window_seconds: int = 60):
    """Build a FastAPI dependency enforcing max_requests per window per client IP."""

    async def dependency(request: Request) -> None:
        ip = _limiter.client_ip(request)
        endpoint = request.url.path
        allowed, retry_after = _limiter.hit((ip, endpoint), max_requests, window_seconds)
        if not allowed:
            logger.warning(f"[RATE_LIMIT] Blocked {ip} on {endpoint}: limit {max_requests}/{window_seconds}s")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Too many requests. Try again in {retry_after} seconds.",
                headers={"Retry-After": str(retry_after)},
            )

    return dependency


def clear_rate_limits(client_ip: Optional[str] = None) -> None:
    _limiter.clear(client_ip)
