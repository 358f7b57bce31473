import asyncio
import logging
import threading
import time
from collections import deque
from typing import Union

from .types import RateLimitConfig

# ---------- Base window (shared logic; synchronization handled by subclasses) ----------


class _SlidingWindow:
    """Self-imposed request budget: at most max_requests per trailing window.

    This is advisory throttling on our side; server-side 429s are handled by
    the client's retry loop.
    """

    def __init__(self, config: Union[RateLimitConfig, None] = None, **kwargs):
        config = config or RateLimitConfig(
            max_requests=kwargs.get("max_requests", RateLimitConfig.max_requests),
            window=kwargs.get("window", RateLimitConfig.window),
        )
        if config.max_requests <= 0 or config.window <= 0:
            raise ValueError("max_requests and window must be positive")
        self.max_requests = config.max_requests
        self.window = config.window
        self._timestamps: deque[float] = deque()
        self._logger = logging.getLogger("ascgate")

    def _now(self) -> float:
        return time.monotonic()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

    def _try_record(self) -> float:
        """Record a request if the window has room; otherwise return the wait needed."""
        now = self._now()
        self._prune(now)
        if len(self._timestamps) < self.max_requests:
            self._timestamps.append(now)
            return 0.0
        # at least one wakeup quantum so a zero/negative wait can't spin
        return max(0.001, self.window - (now - self._timestamps[0]))

    def _log_wait(self, delay: float) -> None:
        self._logger.info(
            f"rate limit reached ({self.max_requests}/{self.window:g}s); sleeping ~{delay:.2f}s"
        )


# ---------- Sync limiter (threads) ----------


class RateLimiter(_SlidingWindow):
    def __init__(self, config: Union[RateLimitConfig, None] = None, **kwargs):
        super().__init__(config, **kwargs)
        self._lock = threading.Lock()

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def acquire_slot(self) -> None:
        """Block until the window has room, then count this request."""
        while True:
            with self._lock:
                delay = self._try_record()
            if delay <= 0:
                return
            self._log_wait(delay)
            self._sleep(delay)

    def pending(self) -> int:
        with self._lock:
            self._prune(self._now())
            return len(self._timestamps)


# ---------- Async limiter (asyncio) ----------


class AsyncRateLimiter(_SlidingWindow):
    def __init__(self, config: Union[RateLimitConfig, None] = None, **kwargs):
        super().__init__(config, **kwargs)
        self._lock = asyncio.Lock()

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def acquire_slot(self) -> None:
        while True:
            async with self._lock:
                delay = self._try_record()
            if delay <= 0:
                return
            self._log_wait(delay)
            await self._sleep(delay)

    async def pending(self) -> int:
        async with self._lock:
            self._prune(self._now())
            return len(self._timestamps)
