"""
Per-source rate limiting using a sliding window of admission timestamps
"""
import time
import logging
import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RateWindow:
    """Sliding set of request timestamps for one source"""

    def __init__(self, max_requests: int, window_seconds: float):
        """
        Args:
            max_requests: Requests admitted per window
            window_seconds: Window length in seconds
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.timestamps: Deque[float] = deque()
        # asyncio.Lock wakes waiters in the order they arrived
        self.lock = asyncio.Lock()

    def purge(self, now: float):
        """Drop timestamps that have left the window"""
        cutoff = now - self.window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def wait_time(self, now: float) -> float:
        """Seconds until a request may be admitted (0 if now)"""
        self.purge(now)
        if len(self.timestamps) < self.max_requests:
            return 0.0
        return max(0.0, self.timestamps[0] + self.window_seconds - now)


class SourceRateLimiter:
    """Per-source sliding-window admission control"""

    def __init__(
        self,
        limits: Optional[Dict[str, Tuple[int, float]]] = None,
        default_limit: Tuple[int, float] = (10, 60.0),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        """
        Args:
            limits: source -> (max_requests, window_seconds)
            default_limit: budget for sources without an explicit limit
            clock: monotonic time source
            sleep: coroutine used to wait
        """
        self._limits: Dict[str, Tuple[int, float]] = dict(limits or {})
        self.default_limit = default_limit
        self._clock = clock
        self._sleep = sleep
        # Source -> RateWindow, created lazily
        self._windows: Dict[str, RateWindow] = {}

    def configure(self, source: str, max_requests: int, window_seconds: float):
        """Set the budget for a source. Resets its window if one exists."""
        self._limits[source] = (max_requests, window_seconds)
        if source in self._windows:
            self._windows[source] = RateWindow(max_requests, window_seconds)
        logger.debug(f"[rate_limiter] {source}: {max_requests} requests per {window_seconds}s")

    def _window(self, source: str) -> RateWindow:
        window = self._windows.get(source)
        if window is None:
            max_requests, window_seconds = self._limits.get(source, self.default_limit)
            window = RateWindow(max_requests, window_seconds)
            self._windows[source] = window
        return window

    async def await_slot(self, source: str) -> float:
        """
        Wait until a request to source may proceed, then record it.

        Waiters for the same source are admitted in arrival order.

        Returns:
            Seconds spent waiting
        """
        window = self._window(source)
        waited = 0.0
        async with window.lock:
            while True:
                now = self._clock()
                delay = window.wait_time(now)
                if delay <= 0:
                    window.timestamps.append(now)
                    break
                logger.debug(f"[rate_limiter] Waiting {delay:.2f}s for slot - {source}")
                await self._sleep(delay)
                waited += delay
        return waited

    def usage(self, source: str) -> Dict:
        """Current window occupancy for a source"""
        window = self._window(source)
        window.purge(self._clock())
        return {
            'source': source,
            'in_window': len(window.timestamps),
            'max_requests': window.max_requests,
            'window_seconds': window.window_seconds,
        }

    def sources(self):
        return sorted(set(self._limits) | set(self._windows))
