"""Tests for block records."""

import pytest

from careerguard.app.middleware.rate_limit.blocks import BlockManager, block_key


@pytest.fixture
def blocks(store, clock):
    return BlockManager(store, clock)


class TestBlockManager:

    @pytest.mark.asyncio
    async def test_no_block_by_default(self, blocks):
        assert await blocks.get_block("auth:1.2.3.4|bob") is None

    @pytest.mark.asyncio
    async def test_block_lasts_full_duration(self, blocks, clock):
        start = clock()
        record = await blocks.block("k", 900)
        assert record.blocked_until == pytest.approx(start + 900)

        clock.advance(899)
        active = await blocks.get_block("k")
        assert active is not None
        assert active.seconds_left(clock()) == 1

        clock.advance(1)
        assert await blocks.get_block("k") is None

    @pytest.mark.asyncio
    async def test_clear_removes_block(self, blocks):
        await blocks.block("k", 300)
        await blocks.clear("k")
        assert await blocks.get_block("k") is None

    @pytest.mark.asyncio
    async def test_block_key_is_separate_from_window_key(self, blocks, store):
        await blocks.block("k", 300)
        assert await store.get(block_key("k")) is not None
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_malformed_record_is_ignored(self, blocks, store):
        await store.set(block_key("k"), "garbage", ttl_seconds=60)
        assert await blocks.get_block("k") is None
