"""Fixed-window rate limiting backed by the portal store."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional, Tuple

import anyio

from .database import Database
from .models import RateLimitRecord, RateLimitResult

logger = logging.getLogger("investor_portal.ratelimit")

STALE_RECORD_AGE_MS = 24 * 60 * 60 * 1000
CLEANUP_BATCH_SIZE = 500


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_ms: int


# Ten broadcasts per hour per administrator.
BROADCAST_RATE_LIMIT = RateLimitPolicy(max_requests=10, window_ms=60 * 60 * 1000)


def _now_ms() -> int:
    return int(time.time() * 1000)


def apply_window(
    current: Optional[RateLimitRecord],
    principal_id: str,
    *,
    now: int,
    max_requests: int,
    window_ms: int,
) -> Tuple[Optional[RateLimitRecord], RateLimitResult]:
    """Evaluate one request against ``current`` and return the next state."""

    fresh = RateLimitRecord(principal_id=principal_id, count=1, window_start=now, last_request=now)
    if current is None or now - current.window_start >= window_ms:
        return fresh, RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=now + window_ms)

    reset_at = current.window_start + window_ms
    if current.count >= max_requests:
        return current, RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

    updated = RateLimitRecord(
        principal_id=principal_id,
        count=current.count + 1,
        window_start=current.window_start,
        last_request=now,
    )
    return updated, RateLimitResult(
        allowed=True,
        remaining=max_requests - updated.count,
        reset_at=reset_at,
    )


class RateLimiter:
    """Count requests per principal; fails open when the store is unhealthy."""

    def __init__(self, database: Database, *, clock: Callable[[], int] = _now_ms) -> None:
        self._database = database
        self._clock = clock

    async def check(self, principal_id: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        mutator = partial(
            apply_window,
            principal_id=principal_id,
            now=now,
            max_requests=max_requests,
            window_ms=window_ms,
        )
        try:
            return await anyio.to_thread.run_sync(self._database.mutate_rate_limit, principal_id, mutator)
        except Exception:
            logger.exception("Rate limit check failed for %s; allowing request", principal_id)
            return RateLimitResult(allowed=True, remaining=max_requests, reset_at=now + window_ms)

    async def check_policy(self, principal_id: str, policy: RateLimitPolicy) -> RateLimitResult:
        return await self.check(principal_id, policy.max_requests, policy.window_ms)

    async def purge_stale(
        self,
        *,
        max_age_ms: int = STALE_RECORD_AGE_MS,
        batch_size: int = CLEANUP_BATCH_SIZE,
    ) -> int:
        """Delete counters idle for longer than ``max_age_ms``; never raises."""

        cutoff = self._clock() - max_age_ms
        try:
            deleted = await anyio.to_thread.run_sync(
                partial(self._database.purge_rate_limits, cutoff, batch_size=batch_size)
            )
        except Exception:
            logger.exception("Rate limit cleanup failed")
            return 0
        if deleted:
            logger.info("Removed %s stale rate limit records", deleted)
        return deleted


class RateLimitJanitor:
    """Periodic job that purges stale rate limit counters."""

    def __init__(self, limiter: RateLimiter, *, interval: float) -> None:
        self._limiter = limiter
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0 or self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="rate-limit-janitor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._limiter.purge_stale()


__all__ = [
    "BROADCAST_RATE_LIMIT",
    "RateLimitJanitor",
    "RateLimitPolicy",
    "RateLimiter",
    "apply_window",
]
