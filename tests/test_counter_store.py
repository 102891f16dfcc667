"""Tests for the counter store backends."""

import asyncio

import pytest
import redis

from careerguard.app.core.config import Settings
from careerguard.app.core.retry import RetryPolicy
from careerguard.app.exceptions import StoreUnavailableError
from careerguard.app.middleware.rate_limit.models import WindowEntry
from careerguard.app.middleware.rate_limit.store import (
    ORPHAN_KEY_TTL_SECONDS,
    InMemoryCounterStore,
    RedisCounterStore,
    build_counter_store,
)


async def hit(store, clock, key="k", window=60, limit=3):
    now = clock()
    return await store.hit_sliding_window(key, now, window, limit, WindowEntry(timestamp=now))


class TestSlidingWindowBatch:
    """Behaviour shared by both backends."""

    @pytest.mark.asyncio
    async def test_admits_until_limit(self, store, clock):
        results = []
        for _ in range(4):
            results.append(await hit(store, clock))
            clock.advance(1)

        assert [r.admitted for r in results] == [True, True, True, False]
        assert [r.count for r in results] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_reports_oldest_entry(self, store, clock):
        first = clock()
        await hit(store, clock)
        clock.advance(5)
        result = await hit(store, clock)

        assert result.oldest == pytest.approx(first)

    @pytest.mark.asyncio
    async def test_entries_expire_out_of_window(self, store, clock):
        for _ in range(3):
            await hit(store, clock)
        clock.advance(60)

        result = await hit(store, clock)
        assert result.admitted is True
        assert result.count == 0

    @pytest.mark.asyncio
    async def test_remove_window_entry_frees_slot(self, store, clock):
        entries = [WindowEntry(timestamp=clock()) for _ in range(3)]
        for entry in entries:
            await store.hit_sliding_window("k", clock(), 60, 3, entry)

        assert await store.remove_window_entry("k", entries[1].member) is True
        assert await store.remove_window_entry("k", entries[1].member) is False
        assert await store.remove_window_entry("missing", "nope") is False

        status = await store.window_status("k", clock(), 60)
        assert status.count == 2
        assert (await hit(store, clock)).admitted is True

    @pytest.mark.asyncio
    async def test_same_timestamp_entries_are_distinct(self, store, clock):
        await hit(store, clock)
        result = await hit(store, clock)
        assert result.count == 1

    @pytest.mark.asyncio
    async def test_rejected_hits_are_not_recorded(self, store, clock):
        for _ in range(5):
            await hit(store, clock, limit=2)

        status = await store.window_status("k", clock(), 60)
        assert status.count == 2

    @pytest.mark.asyncio
    async def test_window_status_does_not_insert(self, store, clock):
        status = await store.window_status("k", clock(), 60)
        assert status.count == 0
        assert status.oldest is None

        await hit(store, clock)
        status = await store.window_status("k", clock(), 60)
        assert status.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, store, clock):
        for _ in range(3):
            await hit(store, clock, key="a")
        result = await hit(store, clock, key="b")
        assert result.admitted is True


class TestValues:

    @pytest.mark.asyncio
    async def test_set_get_and_expiry(self, store, clock):
        await store.set("bucket", '{"tokens": 1}', ttl_seconds=10)
        assert await store.get("bucket") == '{"tokens": 1}'

        clock.advance(10)
        assert await store.get("bucket") is None

    @pytest.mark.asyncio
    async def test_delete_counts_existing_keys(self, store, clock):
        await store.set("a", "1", ttl_seconds=10)
        await hit(store, clock, key="b")

        assert await store.delete("a", "b", "missing") == 2
        assert await store.get("a") is None
        assert (await store.window_status("b", clock(), 60)).count == 0

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True


class TestInMemoryCounterStore:

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_entries(self, memory_store, clock):
        await memory_store.set("a", "1", ttl_seconds=5)
        await hit(memory_store, clock, key="b", window=5)
        await memory_store.set("c", "1", ttl_seconds=100)

        clock.advance(6)
        assert await memory_store.cleanup() == 2
        assert await memory_store.get("c") == "1"


class TestRedisCounterStore:

    @pytest.mark.asyncio
    async def test_keys_are_prefixed(self, redis_store, fake_redis, clock):
        await hit(redis_store, clock, key="auth:10.0.0.1|bob")
        await redis_store.set("block:x", "1", ttl_seconds=10)

        assert "ratelimit:auth:10.0.0.1|bob" in fake_redis.zsets
        assert "ratelimit:block:x" in fake_redis.strings

    @pytest.mark.asyncio
    async def test_window_key_gets_ttl(self, redis_store, fake_redis, clock):
        await hit(redis_store, clock, window=60)
        assert fake_redis.expiry["ratelimit:k"] == pytest.approx(clock() + 60)

    @pytest.mark.asyncio
    async def test_connection_error_raises_store_unavailable(self, redis_store, fake_redis, clock):
        fake_redis.fail_with = redis.ConnectionError("connection refused")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await hit(redis_store, clock)

        assert exc_info.value.operation == "sliding_window"
        # One attempt plus one retry
        assert fake_redis.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_not_retried(self, redis_store, fake_redis):
        fake_redis.fail_with = redis.ResponseError("WRONGTYPE")

        with pytest.raises(StoreUnavailableError):
            await redis_store.get("k")

        assert fake_redis.calls == 1

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, fake_redis):
        async def slow_get(key):
            await asyncio.sleep(1)

        fake_redis.get = slow_get
        store = RedisCounterStore(
            redis_client=fake_redis,
            retry_policy=RetryPolicy(max_retries=0, attempt_timeout=0.01),
        )

        with pytest.raises(StoreUnavailableError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_ping_returns_false_on_failure(self, redis_store, fake_redis):
        fake_redis.fail_with = redis.ConnectionError("down")
        assert await redis_store.ping() is False

    @pytest.mark.asyncio
    async def test_cleanup_sets_ttl_on_orphan_keys(self, redis_store, fake_redis, clock):
        fake_redis.strings["ratelimit:orphan"] = "1"
        fake_redis.strings["other:untouched"] = "1"
        await redis_store.set("fresh", "1", ttl_seconds=30)

        assert await redis_store.cleanup() == 1
        assert fake_redis.expiry["ratelimit:orphan"] == pytest.approx(clock() + ORPHAN_KEY_TTL_SECONDS)
        assert "other:untouched" not in fake_redis.expiry

    @pytest.mark.asyncio
    async def test_close(self, redis_store, fake_redis):
        await redis_store.close()
        assert fake_redis.closed is True


class TestBuildCounterStore:

    def test_in_memory_by_default(self):
        store = build_counter_store(Settings(_env_file=None, redis_enabled=False))
        assert isinstance(store, InMemoryCounterStore)

    def test_redis_when_enabled(self):
        store = build_counter_store(Settings(_env_file=None, redis_enabled=True))
        assert isinstance(store, RedisCounterStore)
