"""
Upstream Rate Limiting

Energi Data Service allows 40 requests per 10 seconds per caller, shared by
every route in the process. A sliding window keeps us under that limit.
"""

from collections import deque
from typing import Callable, Optional
import asyncio
import time

import structlog

logger = structlog.get_logger(__name__)


class SlidingWindowLimiter:
    """
    Sliding window rate limiter.

    Keeps the grant time of every request still inside the window, per key.
    A new request is admitted while the window holds fewer than
    requests_per_window grants.
    """

    def __init__(
        self,
        requests_per_window: int,
        window_seconds: float,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be at least 1")
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock

        self._grants: dict[str, deque] = {}
        self._lock = asyncio.Lock()

        self.logger = logger.bind(component="rate_limiter", limiter=name)

    def _live_grants(self, key: str) -> deque:
        grants = self._grants.setdefault(key, deque())
        cutoff = self._clock() - self.window_seconds
        while grants and grants[0] <= cutoff:
            grants.popleft()
        return grants

    def _seconds_until_free(self, key: str) -> float:
        grants = self._live_grants(key)
        if len(grants) < self.requests_per_window:
            return 0.0
        return max(grants[0] + self.window_seconds - self._clock(), 0.01)

    async def acquire(self, key: str = "default", tokens: int = 1) -> bool:
        """Take tokens now if the window has room; never waits"""
        async with self._lock:
            grants = self._live_grants(key)
            if len(grants) + tokens > self.requests_per_window:
                self.logger.debug("upstream_rate_limited", key=key, in_window=len(grants))
                return False

            now = self._clock()
            grants.extend([now] * tokens)
            return True

    async def wait_for_token(self, key: str = "default", timeout: Optional[float] = None) -> bool:
        """
        Block until a token is granted or timeout seconds pass.

        Returns:
            True when a token was taken, False on timeout
        """
        give_up_at = None if timeout is None else self._clock() + timeout

        while not await self.acquire(key):
            async with self._lock:
                pause = self._seconds_until_free(key)

            if give_up_at is not None:
                remaining = give_up_at - self._clock()
                if remaining <= 0:
                    self.logger.warning("upstream_rate_limit_wait_expired", key=key, timeout=timeout)
                    return False
                pause = min(pause, remaining)

            await asyncio.sleep(pause)

        return True

    async def get_remaining(self, key: str = "default") -> int:
        async with self._lock:
            return self.requests_per_window - len(self._live_grants(key))

    async def reset(self, key: str = "default") -> None:
        async with self._lock:
            self._grants.pop(key, None)
        self.logger.info("upstream_rate_limit_reset", key=key)
