"""Per-host request pacing for feed fetches."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from feedrank.constants import PER_HOST_MIN_INTERVAL_SECONDS
from feedrank.url_utils import host_key


class HostRateLimiter:
    """Enforces a minimum interval between requests to the same host.

    There is no queue: each caller computes its own delay against the latest
    stamp for the host. The read-then-write is not atomic, so two concurrent
    callers for one host can both see a stale stamp and run closer together
    than ``min_interval``. That only loosens the pacing.
    """

    def __init__(
        self,
        min_interval: float = PER_HOST_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: dict[str, float] = {}

    def wait_time(self, url: str) -> float:
        last = self._last_request.get(host_key(url))
        if last is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - last))

    async def acquire(self, url: str) -> float:
        """Delay until ``url``'s host may be hit again, then stamp it. Returns the wait."""
        host = host_key(url)
        wait = self.wait_time(url)
        if wait > 0:
            await self._sleep(wait)
        self._last_request[host] = self._clock()
        return wait

    def reset(self) -> None:
        self._last_request.clear()
