"""Shared fixtures for throttling tests."""

import fnmatch
from typing import Dict, List, Optional

import pytest

from careerguard.app.core.config import Settings
from careerguard.app.core.retry import RetryPolicy
from careerguard.app.middleware.rate_limit.store import InMemoryCounterStore, RedisCounterStore


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands = []
        return results


class FakeRedis:
    """In-process stand-in for redis.asyncio.Redis.

    Supports the commands RedisCounterStore issues, evaluates the sliding
    window script natively, and can be told to fail every call.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.strings: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.fail_with: Optional[BaseException] = None
        self.calls = 0
        self.closed = False

    def _check(self) -> None:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with

    def _alive(self, key: str) -> bool:
        expires_at = self.expiry.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            self.zsets.pop(key, None)
            self.strings.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.zsets or key in self.strings

    def keys(self) -> List[str]:
        return [k for k in list(self.zsets) + list(self.strings) if self._alive(k)]

    async def eval(self, script, numkeys, key, now, window, limit, member, ttl_ms):
        self._check()
        now, window, limit = float(now), float(window), int(limit)
        await self.zremrangebyscore(key, "-inf", now - window, _counted=False)
        zset = self.zsets.get(key, {}) if self._alive(key) else {}
        count = len(zset)
        admitted = 0
        if count < limit:
            self.zsets.setdefault(key, {})[member] = now
            admitted = 1
        if admitted or count > 0:
            self.expiry[key] = self.clock() + int(ttl_ms) / 1000
        current = self.zsets.get(key, {})
        oldest = min(current.values()) if current else None
        return [admitted, count, repr(oldest) if oldest is not None else ""]

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def zremrangebyscore(self, key, low, high, _counted=True):
        if _counted:
            self._check()
        if not self._alive(key) or key not in self.zsets:
            return 0
        high = float(high)
        zset = self.zsets[key]
        doomed = [m for m, score in zset.items() if score <= high]
        for member in doomed:
            del zset[member]
        if not zset:
            del self.zsets[key]
            self.expiry.pop(key, None)
        return len(doomed)

    async def zcard(self, key):
        self._check()
        return len(self.zsets.get(key, {})) if self._alive(key) else 0

    async def zrange(self, key, start, stop, withscores=False):
        self._check()
        if not self._alive(key) or key not in self.zsets:
            return []
        ordered = sorted(self.zsets[key].items(), key=lambda item: item[1])
        selected = ordered[start:stop + 1]
        return selected if withscores else [m for m, _ in selected]

    async def zrem(self, key, *members):
        self._check()
        if not self._alive(key) or key not in self.zsets:
            return 0
        zset = self.zsets[key]
        removed = sum(1 for member in members if zset.pop(member, None) is not None)
        if not zset:
            del self.zsets[key]
            self.expiry.pop(key, None)
        return removed

    async def get(self, key):
        self._check()
        return self.strings.get(key) if self._alive(key) else None

    async def set(self, key, value, px=None):
        self._check()
        self.strings[key] = value
        if px is not None:
            self.expiry[key] = self.clock() + px / 1000
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.zsets.pop(key, None)
            self.strings.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def ttl(self, key):
        self._check()
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - self.clock())

    async def expire(self, key, seconds):
        self._check()
        if not self._alive(key):
            return False
        self.expiry[key] = self.clock() + seconds
        return True

    async def scan_iter(self, match="*", count=None):
        self._check()
        for key in self.keys():
            if fnmatch.fnmatch(key, match):
                yield key

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def redis_store(fake_redis):
    return RedisCounterStore(
        redis_client=fake_redis,
        key_prefix="ratelimit:",
        retry_policy=RetryPolicy(max_retries=1, base_delay=0.0, max_delay=0.0, attempt_timeout=0.5),
    )


@pytest.fixture(params=["memory", "redis"])
def store(request, memory_store, redis_store):
    """Run a test against both counter store backends."""
    return memory_store if request.param == "memory" else redis_store


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        admin_token="test-admin-token",
        dedup_execution_timeout_seconds=5.0,
        maintenance_interval_seconds=3600.0,
    )
