"""Load-adaptive rate limiting.

The controller scales a base limit down as the process gets busier. Load
is a single-node heuristic built from this process's CPU share and
resident memory; it is not a cluster-wide signal.
"""

import math
import os
import time
from typing import Callable, Optional, Protocol

from careerguard.app.core.config import Settings
from careerguard.app.core.logging import get_logger
from careerguard.app.core.utils import clamp_unit, current_rss_bytes
from careerguard.app.middleware.rate_limit.models import RateLimitResult
from careerguard.app.middleware.rate_limit.sliding_window import SlidingWindowLimiter

logger = get_logger(__name__)


class LoadSampler(Protocol):
    def sample(self) -> float:
        """Return the current load factor in [0, 1]."""
        ...


class ProcessLoadSampler:
    """Samples CPU share and resident memory of the current process.

    CPU share is process CPU time over wall time since the previous sample,
    divided across available cores. Memory is RSS against a configured
    budget. Load is the average of the two, cached for ``sample_interval``.
    """

    def __init__(
        self,
        memory_budget_bytes: int,
        sample_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        cpu_clock: Callable[[], float] = time.process_time,
        memory_reader: Callable[[], int] = current_rss_bytes,
    ):
        if memory_budget_bytes <= 0:
            raise ValueError("memory_budget_bytes must be positive")
        self._memory_budget = memory_budget_bytes
        self._sample_interval = sample_interval
        self._clock = clock
        self._cpu_clock = cpu_clock
        self._memory_reader = memory_reader
        self._cpu_count = os.cpu_count() or 1
        self._last_wall: Optional[float] = None
        self._last_cpu: Optional[float] = None
        self._cached: Optional[float] = None
        self._sampled_at = 0.0

    @classmethod
    def from_settings(cls, config: Settings) -> "ProcessLoadSampler":
        return cls(
            memory_budget_bytes=config.adaptive_memory_budget_mb * 1024 * 1024,
            sample_interval=config.adaptive_sample_interval_seconds,
        )

    def _cpu_share(self, wall: float) -> float:
        cpu = self._cpu_clock()
        share = 0.0
        if self._last_wall is not None and self._last_cpu is not None:
            elapsed = wall - self._last_wall
            if elapsed > 0:
                share = (cpu - self._last_cpu) / elapsed / self._cpu_count
        self._last_wall = wall
        self._last_cpu = cpu
        return clamp_unit(share)

    def sample(self) -> float:
        now = self._clock()
        if self._cached is not None and now - self._sampled_at < self._sample_interval:
            return self._cached
        cpu_load = self._cpu_share(now)
        memory_load = clamp_unit(self._memory_reader() / self._memory_budget)
        self._cached = clamp_unit((cpu_load + memory_load) / 2)
        self._sampled_at = now
        return self._cached


class AdaptiveController:
    """Sliding window limiting with a load-scaled limit."""

    def __init__(
        self,
        limiter: SlidingWindowLimiter,
        sampler: LoadSampler,
        base_limit: int = 100,
        min_limit: int = 10,
        window_seconds: int = 60,
    ):
        self._limiter = limiter
        self._sampler = sampler
        self.base_limit = base_limit
        self.min_limit = min_limit
        self.window_seconds = window_seconds

    def effective_limit(self, base_limit: Optional[int] = None, min_limit: Optional[int] = None) -> int:
        base = base_limit if base_limit is not None else self.base_limit
        floor_limit = min_limit if min_limit is not None else self.min_limit
        load = clamp_unit(self._sampler.sample())
        return max(floor_limit, math.floor(base * (1 - load)))

    async def consume(
        self,
        key: str,
        base_limit: Optional[int] = None,
        min_limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        limit = self.effective_limit(base_limit, min_limit)
        window = window_seconds if window_seconds is not None else self.window_seconds
        logger.debug(f"Adaptive limit for {key}: {limit}")
        return await self._limiter.consume(key, limit, window)
