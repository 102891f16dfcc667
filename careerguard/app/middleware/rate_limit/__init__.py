"""Rate limiting middleware package.

Sliding window, token bucket and adaptive limiters over a shared counter
store, with named strategies and escalating blocks.

Components:
- models.py: Result and state dataclasses
- store.py: CounterStore ABC with Redis and in-memory backends
- sliding_window.py / token_bucket.py / adaptive.py: Limiters
- blocks.py: Block records
- strategies.py: StrategyName, StrategyDefinition, StrategyRegistry
- service.py: RateLimitService, the fail-open orchestrator
- middleware.py: RateLimitMiddleware for app-wide limits
"""

from careerguard.app.middleware.rate_limit.adaptive import (
    AdaptiveController,
    LoadSampler,
    ProcessLoadSampler,
)
from careerguard.app.middleware.rate_limit.blocks import BlockManager
from careerguard.app.middleware.rate_limit.middleware import RateLimitMiddleware
from careerguard.app.middleware.rate_limit.models import (
    BlockRecord,
    RateLimitResult,
    RateLimitStatus,
    TokenBucketState,
    WindowEntry,
    WindowHit,
)
from careerguard.app.middleware.rate_limit.service import RateLimitService
from careerguard.app.middleware.rate_limit.sliding_window import SlidingWindowLimiter
from careerguard.app.middleware.rate_limit.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    build_counter_store,
)
from careerguard.app.middleware.rate_limit.strategies import (
    DEFAULT_STRATEGIES,
    RateLimitKey,
    RequestIdentity,
    StrategyDefinition,
    StrategyName,
    StrategyRegistry,
)
from careerguard.app.middleware.rate_limit.token_bucket import TokenBucketConfig, TokenBucketLimiter

__all__ = [
    "AdaptiveController",
    "LoadSampler",
    "ProcessLoadSampler",
    "BlockManager",
    "RateLimitMiddleware",
    "BlockRecord",
    "RateLimitResult",
    "RateLimitStatus",
    "TokenBucketState",
    "WindowEntry",
    "WindowHit",
    "RateLimitService",
    "SlidingWindowLimiter",
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "build_counter_store",
    "DEFAULT_STRATEGIES",
    "RateLimitKey",
    "RequestIdentity",
    "StrategyDefinition",
    "StrategyName",
    "StrategyRegistry",
    "TokenBucketConfig",
    "TokenBucketLimiter",
]
