"""
Rate Limiter — Process-wide minimum spacing between order dispatches.
"""

from __future__ import annotations
import asyncio
import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """Enforces 1 / max_per_second seconds between consecutive acquire() returns."""

    def __init__(self, max_per_second: float):
        if max_per_second <= 0:
            raise ValueError(f"max_per_second must be positive, got {max_per_second}")
        self.min_interval = 1.0 / max_per_second
        self._last: float = float("-inf")
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            loop = asyncio.get_running_loop()
            wait = self._last + self.min_interval - loop.time()
            if wait > 0:
                logger.debug(f"[EXEC] Rate limiting: waiting {wait * 1000:.0f}ms")
                await asyncio.sleep(wait)
            self._last = loop.time()
