"""Token bucket rate limiter for burst-tolerant, cost-weighted endpoints.

Bucket state is a small JSON document in the counter store. Tokens are
added in whole units; ``last_refill`` only advances by the intervals that
actually produced tokens, so partial progress toward the next token is
never lost between requests.
"""

import json
import math
import time
from dataclasses import dataclass
from typing import Callable

from careerguard.app.core.config import Settings
from careerguard.app.core.logging import get_logger
from careerguard.app.middleware.rate_limit.models import (
    RateLimitResult,
    TokenBucketState,
    retry_after_seconds,
)
from careerguard.app.middleware.rate_limit.store import CounterStore

logger = get_logger(__name__)

TOKEN_BUCKET_MESSAGE = "AI service rate limit exceeded. Tokens will replenish over time."


@dataclass(frozen=True)
class TokenBucketConfig:
    """Token bucket parameters.

    Attributes:
        tokens_per_interval: Tokens added per interval
        interval_seconds: Refill interval length
        max_burst: Bucket capacity
        cost: Tokens consumed per request
    """
    tokens_per_interval: int = 10
    interval_seconds: float = 60.0
    max_burst: int = 5
    cost: int = 1

    def __post_init__(self):
        if self.tokens_per_interval < 1:
            raise ValueError("tokens_per_interval must be at least 1")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.max_burst < 1:
            raise ValueError("max_burst must be at least 1")
        if not 1 <= self.cost <= self.max_burst:
            raise ValueError("cost must be between 1 and max_burst")

    @classmethod
    def from_settings(cls, config: Settings) -> "TokenBucketConfig":
        return cls(
            tokens_per_interval=config.ai_tokens_per_interval,
            interval_seconds=config.ai_interval_seconds,
            max_burst=config.ai_max_burst,
            cost=config.ai_cost_per_request,
        )

    @property
    def seconds_per_token(self) -> float:
        return self.interval_seconds / self.tokens_per_interval

    @property
    def state_ttl_seconds(self) -> float:
        # Never expire a partially drained bucket before it could have refilled
        return max(self.interval_seconds, self.max_burst * self.seconds_per_token)


class TokenBucketLimiter:
    """Token bucket limiter backed by a CounterStore."""

    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    async def _load(self, key: str, config: TokenBucketConfig, now: float) -> TokenBucketState:
        raw = await self._store.get(key)
        if raw is None:
            return TokenBucketState(tokens=float(config.max_burst), last_refill=now)
        try:
            return TokenBucketState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding corrupt token bucket state for {key}: {e}")
            return TokenBucketState(tokens=float(config.max_burst), last_refill=now)

    @staticmethod
    def _refill(state: TokenBucketState, config: TokenBucketConfig, now: float) -> None:
        if state.tokens >= config.max_burst:
            # A full bucket earns nothing while it sits idle
            state.last_refill = now
            return
        elapsed = max(0.0, now - state.last_refill)
        tokens_to_add = math.floor(elapsed / config.interval_seconds * config.tokens_per_interval)
        if tokens_to_add <= 0:
            return
        state.tokens = min(float(config.max_burst), state.tokens + tokens_to_add)
        if state.tokens >= config.max_burst:
            state.last_refill = now
        else:
            state.last_refill += tokens_to_add * config.seconds_per_token

    async def consume(self, key: str, config: TokenBucketConfig) -> RateLimitResult:
        """Try to take ``config.cost`` tokens from the bucket at ``key``.

        Raises:
            StoreUnavailableError: When the counter store cannot answer.
        """
        now = self._clock()
        state = await self._load(key, config, now)
        self._refill(state, config, now)

        if state.tokens >= config.cost:
            state.tokens -= config.cost
            await self._store.set(key, json.dumps(state.to_dict()), config.state_ttl_seconds)
            next_token = state.last_refill + config.seconds_per_token
            return RateLimitResult(
                allowed=True,
                limit=config.max_burst,
                remaining=int(state.tokens),
                reset_time=next_token if state.tokens < config.max_burst else now,
            )

        tokens_needed = math.ceil(config.cost - state.tokens)
        reset_time = state.last_refill + tokens_needed * config.seconds_per_token
        return RateLimitResult(
            allowed=False,
            limit=config.max_burst,
            remaining=int(state.tokens),
            reset_time=reset_time,
            retry_after=retry_after_seconds(reset_time, now),
            message=TOKEN_BUCKET_MESSAGE,
        )
