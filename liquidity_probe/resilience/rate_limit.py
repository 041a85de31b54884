from __future__ import annotations

import asyncio
import logging
from typing import Callable

from liquidity_probe.common import log_event


class TokenBucketLimiter:
    """Admission control for one remote endpoint.

    Capacity equals the configured requests per second, so up to that many
    calls pass immediately after an idle period and the long-run rate never
    exceeds it. Capacity is at least one token; a rate below one per second
    still refills at that rate. Shared by every search that talks to the
    endpoint.
    """

    def __init__(
        self,
        requests_per_second: float,
        *,
        clock: Callable[[], float] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if requests_per_second <= 0:
            raise ValueError(f"requests_per_second must be positive, got {requests_per_second}")
        self._capacity = max(1.0, float(requests_per_second))
        self._rate_per_second = float(requests_per_second)
        self._tokens = self._capacity
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._updated_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> float:
        return self._capacity

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def _refill(self, *, now: float) -> None:
        if self._updated_at is None:
            self._updated_at = now
            return
        elapsed = max(0.0, now - self._updated_at)
        if elapsed > 0:
            self._tokens = min(
                self._capacity,
                self._tokens + (elapsed * self._rate_per_second),
            )
            self._updated_at = now

    def available_tokens(self) -> float:
        self._refill(now=self._now())
        return max(0.0, self._tokens)

    def _wait_time_for_one(self) -> float:
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self._rate_per_second

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                self._refill(now=self._now())
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait_seconds = self._wait_time_for_one()
                tokens = self._tokens

            log_event(
                self._logger,
                level="debug",
                event="rate_limiter_wait",
                message="Waiting for quote rate limiter token",
                wait_seconds=round(wait_seconds, 6),
                tokens=round(tokens, 6),
                capacity=self._capacity,
            )
            # Other acquirers may drain the bucket while we sleep, so re-check.
            await asyncio.sleep(wait_seconds)
