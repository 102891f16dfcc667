"""Rate limit orchestration.

RateLimitService ties the strategy registry, block manager and limiters
together and owns the fail-open policy: any failure inside the throttling
layer admits the request and is logged, it never reaches the client.
"""

import time
from typing import Callable, Optional, Union

from careerguard.app.core.config import Settings
from careerguard.app.core.logging import get_log_context, get_logger
from careerguard.app.exceptions import StoreUnavailableError, UnknownStrategyError
from careerguard.app.middleware.rate_limit.adaptive import AdaptiveController, LoadSampler
from careerguard.app.middleware.rate_limit.blocks import BlockManager, block_key
from careerguard.app.middleware.rate_limit.models import (
    RateLimitResult,
    RateLimitStatus,
    retry_after_seconds,
)
from careerguard.app.middleware.rate_limit.sliding_window import SlidingWindowLimiter
from careerguard.app.middleware.rate_limit.store import CounterStore
from careerguard.app.middleware.rate_limit.strategies import (
    RateLimitKey,
    RequestIdentity,
    StrategyDefinition,
    StrategyName,
    StrategyRegistry,
)
from careerguard.app.middleware.rate_limit.token_bucket import TokenBucketConfig, TokenBucketLimiter
from careerguard.app.services.performance import PerformanceMonitor

logger = get_logger(__name__)

BLOCKED_MESSAGE = "You have been temporarily blocked due to too many requests."

# Fallback window for fail-open results when no strategy could be resolved
DEFAULT_WINDOW_SECONDS = 60


class RateLimitService:
    """Evaluates rate limits for request identities."""

    def __init__(
        self,
        store: CounterStore,
        registry: Optional[StrategyRegistry] = None,
        load_sampler: Optional[LoadSampler] = None,
        monitor: Optional[PerformanceMonitor] = None,
        clock: Callable[[], float] = time.time,
        adaptive_base_limit: int = 100,
        adaptive_min_limit: int = 10,
        adaptive_window_seconds: int = 60,
        token_bucket_config: Optional[TokenBucketConfig] = None,
    ):
        self.store = store
        self.registry = registry or StrategyRegistry()
        self.monitor = monitor
        self._clock = clock
        self.blocks = BlockManager(store, clock)
        self.sliding_window = SlidingWindowLimiter(store, clock)
        self.token_bucket = TokenBucketLimiter(store, clock)
        self.token_bucket_config = token_bucket_config or TokenBucketConfig()
        self.adaptive = (
            AdaptiveController(
                self.sliding_window,
                load_sampler,
                base_limit=adaptive_base_limit,
                min_limit=adaptive_min_limit,
                window_seconds=adaptive_window_seconds,
            )
            if load_sampler is not None
            else None
        )

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        store: CounterStore,
        load_sampler: Optional[LoadSampler] = None,
        monitor: Optional[PerformanceMonitor] = None,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimitService":
        return cls(
            store,
            registry=StrategyRegistry.from_settings(config),
            load_sampler=load_sampler,
            monitor=monitor,
            clock=clock,
            adaptive_base_limit=config.adaptive_base_limit,
            adaptive_min_limit=config.adaptive_min_limit,
            adaptive_window_seconds=config.adaptive_window_seconds,
            token_bucket_config=TokenBucketConfig.from_settings(config),
        )

    async def _record(self, strategy: str, result: RateLimitResult) -> None:
        if self.monitor is None:
            return
        if result.fail_open:
            outcome = "fail_open"
        elif result.blocked:
            outcome = "blocked"
        elif result.allowed:
            outcome = "allowed"
        else:
            outcome = "rejected"
        await self.monitor.record_rate_limit(strategy, outcome)

    def _fail_open(self, limit: int, window_seconds: float) -> RateLimitResult:
        return RateLimitResult.open(limit, self._clock(), window_seconds)

    async def check(
        self,
        strategy_name: Union[StrategyName, str],
        identity: RequestIdentity,
        points: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> RateLimitResult:
        """Evaluate a named strategy for ``identity``.

        Never raises; unknown strategies and store failures admit the request.
        """
        label = getattr(strategy_name, "value", str(strategy_name))
        try:
            strategy = self.registry.get(strategy_name).with_overrides(points=points, duration=duration)
        except (UnknownStrategyError, ValueError) as e:
            logger.error(f"{e}; request allowed", extra=get_log_context(strategy=label))
            result = self._fail_open(points or 0, duration or DEFAULT_WINDOW_SECONDS)
            await self._record(label, result)
            return result
        return await self.evaluate(strategy, strategy.key_for(identity))

    async def evaluate(self, strategy: StrategyDefinition, key: str) -> RateLimitResult:
        """Block check, then sliding window, then block escalation on rejection."""
        label = strategy.name.value
        context = get_log_context(strategy=label, rate_limit_key=key)
        try:
            result = await self._evaluate(strategy, key)
        except StoreUnavailableError as e:
            logger.warning(f"Rate limit check failed open: {e}", extra=context)
            result = self._fail_open(strategy.limit_points, strategy.window_seconds)
        except Exception:
            logger.exception("Unexpected rate limiter error; request allowed", extra=context)
            result = self._fail_open(strategy.limit_points, strategy.window_seconds)

        if not result.allowed:
            logger.warning(
                "Rate limit blocked" if result.blocked else "Rate limit exceeded",
                extra=context,
            )
        await self._record(label, result)
        return result

    async def _evaluate(self, strategy: StrategyDefinition, key: str) -> RateLimitResult:
        now = self._clock()
        block = await self.blocks.get_block(key)
        if block is not None:
            return self._blocked_result(strategy, block.blocked_until, now)

        result = await self.sliding_window.consume(key, strategy.limit_points, strategy.window_seconds)
        if result.allowed:
            result.refundable = strategy.skip_successful
            return result

        result.message = strategy.message
        if strategy.block_seconds is None:
            return result

        try:
            block = await self.blocks.block(key, strategy.block_seconds)
        except StoreUnavailableError as e:
            logger.warning(
                f"Could not write block record: {e}",
                extra=get_log_context(strategy=strategy.name.value, rate_limit_key=key),
            )
            return result
        return self._blocked_result(strategy, block.blocked_until, now)

    @staticmethod
    def _blocked_result(strategy: StrategyDefinition, blocked_until: float, now: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            limit=strategy.limit_points,
            remaining=0,
            reset_time=blocked_until,
            retry_after=retry_after_seconds(blocked_until, now),
            blocked=True,
            message=BLOCKED_MESSAGE,
        )

    async def refund(self, result: RateLimitResult) -> bool:
        """Take an admitted attempt back out of its window.

        Used for strategies that only count failed attempts. Never raises; a
        refund that cannot reach the store leaves the attempt counted.
        """
        if not result.refundable or result.key is None or result.entry_member is None:
            return False
        try:
            return await self.sliding_window.release(result.key, result.entry_member)
        except StoreUnavailableError as e:
            logger.warning(
                f"Could not refund rate limit attempt: {e}",
                extra=get_log_context(rate_limit_key=result.key),
            )
            return False

    async def check_token_bucket(
        self,
        identity: RequestIdentity,
        config: Optional[TokenBucketConfig] = None,
        namespace: str = "bucket",
    ) -> RateLimitResult:
        """Token bucket evaluation keyed by user id or client IP. Never raises."""
        config = config or self.token_bucket_config
        key = str(RateLimitKey(namespace, identity.subject))
        context = get_log_context(strategy=namespace, rate_limit_key=key)
        try:
            result = await self.token_bucket.consume(key, config)
        except StoreUnavailableError as e:
            logger.warning(f"Token bucket check failed open: {e}", extra=context)
            result = self._fail_open(config.max_burst, config.interval_seconds)
        except Exception:
            logger.exception("Unexpected token bucket error; request allowed", extra=context)
            result = self._fail_open(config.max_burst, config.interval_seconds)
        if not result.allowed:
            logger.warning("Token bucket exhausted", extra=context)
        await self._record(namespace, result)
        return result

    async def check_adaptive(
        self,
        identity: RequestIdentity,
        base_limit: Optional[int] = None,
        min_limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        """Load-scaled sliding window keyed by user id or client IP. Never raises."""
        key = str(RateLimitKey("adaptive", identity.subject))
        context = get_log_context(strategy="adaptive", rate_limit_key=key)
        window = window_seconds or DEFAULT_WINDOW_SECONDS
        if self.adaptive is None:
            logger.error("Adaptive limiting requested without a load sampler; request allowed", extra=context)
            result = self._fail_open(base_limit or 0, window)
        else:
            try:
                result = await self.adaptive.consume(key, base_limit, min_limit, window_seconds)
            except StoreUnavailableError as e:
                logger.warning(f"Adaptive check failed open: {e}", extra=context)
                result = self._fail_open(base_limit or self.adaptive.base_limit, window)
            except Exception:
                logger.exception("Unexpected adaptive limiter error; request allowed", extra=context)
                result = self._fail_open(base_limit or self.adaptive.base_limit, window)
        if not result.allowed:
            logger.warning("Adaptive rate limit exceeded", extra=context)
        await self._record("adaptive", result)
        return result

    async def reset(self, key: str) -> int:
        """Clear the window, bucket and block record for ``key``.

        Raises:
            StoreUnavailableError: When the counter store cannot answer.
        """
        removed = await self.store.delete(key, block_key(key))
        logger.info(f"Rate limit reset for key: {key}", extra=get_log_context(rate_limit_key=key))
        return removed

    async def get_status(self, key: str, points: int, duration: int) -> RateLimitStatus:
        """Current window usage for ``key`` without consuming a slot.

        Raises:
            StoreUnavailableError: When the counter store cannot answer.
        """
        used, reset_time = await self.sliding_window.peek(key, duration)
        block = await self.blocks.get_block(key)
        return RateLimitStatus(
            key=key,
            used=used,
            limit=points,
            remaining=max(0, points - used),
            reset_time=reset_time,
            blocked_until=block.blocked_until if block else None,
        )

    async def cleanup(self) -> int:
        """Store housekeeping pass; returns keys touched, 0 on store failure."""
        try:
            cleaned = await self.store.cleanup()
        except StoreUnavailableError as e:
            logger.warning(f"Rate limit cleanup skipped: {e}")
            return 0
        logger.info(f"Rate limit cleanup touched {cleaned} keys")
        return cleaned

    async def close(self) -> None:
        await self.store.close()
