"""Per-host rate limiting utilities."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict

from syncengine.utils.retry import Sleep


class RateLimiter:
    """Minimum spacing between requests to the same host."""

    def __init__(self, *, rate: float = 2.0, sleep: Sleep = asyncio.sleep) -> None:
        self.rate = rate
        self.sleep = sleep
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_request: dict[str, float] = defaultdict(lambda: 0.0)

    async def wait_for_host(self, host: str) -> None:
        lock = self._locks[host]
        async with lock:
            now = time.monotonic()
            wait = self._last_request[host] + 1.0 / self.rate - now
            if wait > 0:
                await self.sleep(wait)
            self._last_request[host] = time.monotonic()
