"""Sliding window rate limiter.

Each admitted request is recorded as a timestamped entry in the counter
store; a request is admitted only when fewer than ``limit`` entries fall
inside the trailing window. Evaluation is one atomic store batch, so two
concurrent requests can never both take the last slot.
"""

import time
from typing import Callable

from careerguard.app.middleware.rate_limit.models import (
    RateLimitResult,
    WindowEntry,
    retry_after_seconds,
)
from careerguard.app.middleware.rate_limit.store import CounterStore


class SlidingWindowLimiter:
    """Sliding window limiter backed by a CounterStore."""

    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    async def consume(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Try to admit one request for ``key``.

        Raises:
            StoreUnavailableError: When the counter store cannot answer.
        """
        now = self._clock()
        entry = WindowEntry(timestamp=now)
        hit = await self._store.hit_sliding_window(key, now, window_seconds, limit, entry)
        reset_time = self._reset_time(hit.oldest, now, window_seconds)

        if hit.admitted:
            # count is the pre-insert size, so this request is already deducted
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - hit.count - 1),
                reset_time=reset_time,
                key=key,
                entry_member=entry.member,
            )

        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_time=reset_time,
            retry_after=retry_after_seconds(reset_time, now),
        )

    async def release(self, key: str, member: str) -> bool:
        """Remove a previously admitted entry, freeing its slot.

        Raises:
            StoreUnavailableError: When the counter store cannot answer.
        """
        return await self._store.remove_window_entry(key, member)

    async def peek(self, key: str, window_seconds: float) -> tuple[int, float]:
        """Return ``(used, reset_time)`` for ``key`` without recording a hit."""
        now = self._clock()
        hit = await self._store.window_status(key, now, window_seconds)
        return hit.count, self._reset_time(hit.oldest, now, window_seconds)

    @staticmethod
    def _reset_time(oldest: float | None, now: float, window_seconds: float) -> float:
        if oldest is None:
            return now + window_seconds
        return oldest + window_seconds
