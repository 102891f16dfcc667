"""Counter store backends for rate limiting.

The counter store is the only state shared across processes. Redis is the
production backend; the in-memory backend serves single-instance
deployments and tests. Backends raise StoreUnavailableError on transport
failure and never fall back to local counting.
"""

import asyncio
import bisect
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import redis
import redis.asyncio as aioredis

from careerguard.app.core.config import Settings
from careerguard.app.core.logging import get_logger
from careerguard.app.core.retry import RetryPolicy, call_with_retry
from careerguard.app.exceptions import StoreUnavailableError
from careerguard.app.middleware.rate_limit.models import WindowEntry, WindowHit
from careerguard.app.middleware.rate_limit.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)

T = TypeVar("T")

# TTL given to prefixed keys found without one during cleanup
ORPHAN_KEY_TTL_SECONDS = 3600


class CounterStore(ABC):
    """Abstract base class for counter store backends."""

    @abstractmethod
    async def hit_sliding_window(
        self,
        key: str,
        now: float,
        window_seconds: float,
        limit: int,
        entry: WindowEntry,
    ) -> WindowHit:
        """Prune, count and conditionally insert in one atomic batch.

        Args:
            key: Rate limit key
            now: Current UNIX time in seconds
            window_seconds: Trailing window length
            limit: Maximum entries allowed in the window
            entry: Entry to insert when the window has room

        Returns:
            WindowHit with the pre-insert count and oldest remaining timestamp
        """

    @abstractmethod
    async def window_status(self, key: str, now: float, window_seconds: float) -> WindowHit:
        """Prune and count without inserting."""

    @abstractmethod
    async def remove_window_entry(self, key: str, member: str) -> bool:
        """Take one entry back out of a window; returns whether it was there."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a plain value, or None when missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        """Write a plain value with a TTL."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys of any kind; returns how many existed."""

    @abstractmethod
    async def cleanup(self) -> int:
        """Housekeeping pass; returns the number of keys touched."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the backend is reachable."""

    async def close(self) -> None:
        """Release connections."""


@dataclass
class _ValueEntry:
    value: str
    expires_at: float


@dataclass
class _WindowSet:
    scores: List[Tuple[float, str]]
    expires_at: float


class InMemoryCounterStore(CounterStore):
    """Process-local counter store with TTL support.

    Suitable for single-instance deployments and tests. Running several
    workers multiplies the effective limits, since each keeps its own state.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: Dict[str, _WindowSet] = {}
        self._values: Dict[str, _ValueEntry] = {}
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: float) -> bool:
        return self._clock() >= expires_at

    def _prune(self, key: str, now: float, window_seconds: float) -> Optional[_WindowSet]:
        window = self._windows.get(key)
        if window is None:
            return None
        if self._expired(window.expires_at):
            del self._windows[key]
            return None
        cutoff = bisect.bisect_right(window.scores, (now - window_seconds, "￿"))
        del window.scores[:cutoff]
        return window

    async def hit_sliding_window(
        self,
        key: str,
        now: float,
        window_seconds: float,
        limit: int,
        entry: WindowEntry,
    ) -> WindowHit:
        async with self._lock:
            window = self._prune(key, now, window_seconds)
            count = len(window.scores) if window else 0
            admitted = count < limit
            if admitted:
                if window is None:
                    window = _WindowSet(scores=[], expires_at=0.0)
                    self._windows[key] = window
                bisect.insort(window.scores, (entry.timestamp, entry.member))
            if window is not None and (admitted or count > 0):
                window.expires_at = self._clock() + window_seconds
            oldest = window.scores[0][0] if window and window.scores else None
            return WindowHit(admitted=admitted, count=count, oldest=oldest)

    async def window_status(self, key: str, now: float, window_seconds: float) -> WindowHit:
        async with self._lock:
            window = self._prune(key, now, window_seconds)
            if window is None or not window.scores:
                return WindowHit(admitted=False, count=0)
            return WindowHit(admitted=False, count=len(window.scores), oldest=window.scores[0][0])

    async def remove_window_entry(self, key: str, member: str) -> bool:
        async with self._lock:
            window = self._windows.get(key)
            if window is None:
                return False
            for index, (_, existing) in enumerate(window.scores):
                if existing == member:
                    del window.scores[index]
                    return True
            return False

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            if self._expired(entry.expires_at):
                del self._values[key]
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        async with self._lock:
            self._values[key] = _ValueEntry(value=value, expires_at=self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._windows.pop(key, None) is not None:
                    removed += 1
                if self._values.pop(key, None) is not None:
                    removed += 1
            return removed

    async def cleanup(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of keys removed.
        """
        async with self._lock:
            expired_windows = [
                key for key, window in self._windows.items()
                if self._expired(window.expires_at) or not window.scores
            ]
            for key in expired_windows:
                del self._windows[key]
            expired_values = [
                key for key, entry in self._values.items() if self._expired(entry.expires_at)
            ]
            for key in expired_values:
                del self._values[key]
            return len(expired_windows) + len(expired_values)

    async def ping(self) -> bool:
        return True


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisCounterStore(CounterStore):
    """Redis-based distributed counter store.

    Sliding windows live in sorted sets and are evaluated by a Lua script,
    so prune, count and insert happen in one atomic step on the server.
    Every call is bounded by the retry policy's per-attempt timeout and
    retry budget.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "ratelimit:",
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize Redis counter store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL, used when no client is given
            key_prefix: Namespace prepended to every key
            retry_policy: Timeout and retry budget for each call
        """
        self._redis = redis_client
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._policy = retry_policy or RetryPolicy()

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            if not self._redis_url:
                raise StoreUnavailableError("connect")
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def _execute(self, operation: str, func: Callable[[Any], Awaitable[T]]) -> T:
        redis_client = self._get_redis()
        try:
            return await call_with_retry(lambda: func(redis_client), self._policy, operation)
        except (redis.RedisError, asyncio.TimeoutError, OSError) as e:
            raise StoreUnavailableError(operation, e) from e

    async def hit_sliding_window(
        self,
        key: str,
        now: float,
        window_seconds: float,
        limit: int,
        entry: WindowEntry,
    ) -> WindowHit:
        ttl_ms = int(math.ceil(window_seconds * 1000))
        result = await self._execute(
            "sliding_window",
            lambda r: r.eval(
                SLIDING_WINDOW_SCRIPT,
                1,  # Number of keys
                self._k(key),  # KEYS[1]
                repr(now),  # ARGV[1]
                repr(float(window_seconds)),  # ARGV[2]
                limit,  # ARGV[3]
                entry.member,  # ARGV[4]
                ttl_ms,  # ARGV[5]
            ),
        )
        admitted, count, oldest = result[0], result[1], _decode(result[2])
        return WindowHit(
            admitted=bool(int(admitted)),
            count=int(count),
            oldest=float(oldest) if oldest not in (None, "") else None,
        )

    async def window_status(self, key: str, now: float, window_seconds: float) -> WindowHit:
        redis_key = self._k(key)

        async def run(r: Any) -> list:
            pipe = r.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            return await pipe.execute()

        results = await self._execute("window_status", run)
        count = int(results[1])
        oldest_entries = results[2]
        oldest = float(oldest_entries[0][1]) if oldest_entries else None
        return WindowHit(admitted=False, count=count, oldest=oldest)

    async def remove_window_entry(self, key: str, member: str) -> bool:
        removed = await self._execute("remove_window_entry", lambda r: r.zrem(self._k(key), member))
        return bool(removed)

    async def get(self, key: str) -> Optional[str]:
        value = await self._execute("get", lambda r: r.get(self._k(key)))
        return _decode(value)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ttl_ms = max(1, int(math.ceil(ttl_seconds * 1000)))
        await self._execute("set", lambda r: r.set(self._k(key), value, px=ttl_ms))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        redis_keys = [self._k(key) for key in keys]
        return int(await self._execute("delete", lambda r: r.delete(*redis_keys)))

    async def cleanup(self) -> int:
        """Give a TTL to any prefixed key that has none.

        Keys written by this store always carry a TTL; this catches keys
        left behind by older deployments or manual edits.
        """
        async def run(r: Any) -> int:
            updated = 0
            async for raw_key in r.scan_iter(match=f"{self._prefix}*", count=500):
                if await r.ttl(raw_key) == -1:
                    await r.expire(raw_key, ORPHAN_KEY_TTL_SECONDS)
                    updated += 1
            return updated

        return await self._execute("cleanup", run)

    async def ping(self) -> bool:
        try:
            return bool(await self._execute("ping", lambda r: r.ping()))
        except StoreUnavailableError as e:
            logger.warning(f"Counter store ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


def build_counter_store(config: Settings, clock: Callable[[], float] = time.time) -> CounterStore:
    """Select the counter store backend from settings."""
    if config.redis_enabled:
        logger.info("Using Redis counter store")
        return RedisCounterStore(
            redis_url=config.redis_url,
            key_prefix=config.redis_key_prefix,
            retry_policy=RetryPolicy.from_settings(config),
        )
    logger.info("Using in-memory counter store")
    return InMemoryCounterStore(clock=clock)
