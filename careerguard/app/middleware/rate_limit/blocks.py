"""Temporary bans that short-circuit limiter evaluation."""

import time
from typing import Callable, Optional

from careerguard.app.core.logging import get_log_context, get_logger
from careerguard.app.middleware.rate_limit.models import BlockRecord
from careerguard.app.middleware.rate_limit.store import CounterStore

logger = get_logger(__name__)

BLOCK_PREFIX = "block:"


def block_key(key: str) -> str:
    return f"{BLOCK_PREFIX}{key}"


class BlockManager:
    """Reads and writes block records in the counter store.

    A block record holds the UNIX time until which ``key`` is banned and
    expires from the store at that moment.
    """

    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    async def get_block(self, key: str) -> Optional[BlockRecord]:
        raw = await self._store.get(block_key(key))
        if raw is None:
            return None
        try:
            blocked_until = float(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed block record for {key}: {raw!r}")
            return None
        if blocked_until <= self._clock():
            return None
        return BlockRecord(key=key, blocked_until=blocked_until)

    async def block(self, key: str, duration_seconds: float) -> BlockRecord:
        blocked_until = self._clock() + duration_seconds
        await self._store.set(block_key(key), repr(blocked_until), duration_seconds)
        logger.warning(
            f"Key blocked for {duration_seconds}s",
            extra=get_log_context(rate_limit_key=key, blocked_until=blocked_until),
        )
        return BlockRecord(key=key, blocked_until=blocked_until)

    async def clear(self, key: str) -> None:
        await self._store.delete(block_key(key))
