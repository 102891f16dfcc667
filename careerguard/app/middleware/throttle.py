"""Route-level throttling dependencies.

Usage::

    @router.post("/auth/login", dependencies=[Depends(limit(StrategyName.AUTH))])
    async def login(...): ...

    @router.post("/resume/generate", dependencies=[Depends(token_bucket())])
    async def generate(...): ...

Each dependency resolves the RateLimitService from ``app.state``, sets the
X-RateLimit-* headers on admitted responses and raises
RateLimitExceededError on rejection. A failing limiter admits the request.
"""

import inspect
from typing import AsyncIterator, Awaitable, Callable, Mapping, Optional, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware import Middleware

from careerguard.app.core.logging import get_log_context, get_logger
from careerguard.app.exceptions import RateLimitExceededError
from careerguard.app.middleware.dedup import DeduplicationMiddleware, KeyGenerator
from careerguard.app.middleware.identity import get_user_roles, identity_from_request
from careerguard.app.middleware.rate_limit.models import RateLimitResult
from careerguard.app.middleware.rate_limit.service import RateLimitService
from careerguard.app.middleware.rate_limit.strategies import StrategyName
from careerguard.app.middleware.rate_limit.token_bucket import TokenBucketConfig
from careerguard.app.services.dedup import DeduplicationCoordinator

logger = get_logger(__name__)

ExemptPredicate = Callable[[Request], Union[bool, Awaitable[bool]]]

ThrottleDependency = Callable[[Request, Response], Awaitable[Optional[RateLimitResult]]]

# Role used for callers without any roles on request.state.user
ANONYMOUS_ROLE = "anonymous"


def get_rate_limiter(request: Request) -> RateLimitService:
    return request.app.state.rate_limiter


async def _is_exempt(exempt: Optional[ExemptPredicate], request: Request) -> bool:
    if exempt is None:
        return False
    outcome = exempt(request)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return bool(outcome)


def _apply(result: RateLimitResult, response: Response) -> RateLimitResult:
    if not result.allowed:
        raise RateLimitExceededError(result)
    if not result.fail_open:
        response.headers.update(result.headers())
    return result


def _points_for_role(
    request: Request,
    points_by_role: Optional[Mapping[str, int]],
    points: Optional[int],
) -> Optional[int]:
    if not points_by_role:
        return points
    roles = get_user_roles(request)
    role = roles[0] if roles else ANONYMOUS_ROLE
    return points_by_role.get(role, points_by_role.get("default", points))


def limit(
    strategy_name: Union[StrategyName, str],
    points: Optional[int] = None,
    duration: Optional[int] = None,
    exempt: Optional[ExemptPredicate] = None,
    points_by_role: Optional[Mapping[str, int]] = None,
) -> Callable[[Request, Response], AsyncIterator[Optional[RateLimitResult]]]:
    """Sliding window limit using a named strategy.

    Args:
        strategy_name: Registered strategy
        points: Override the strategy's limit for this route
        duration: Override the strategy's window (seconds) for this route
        exempt: Predicate; requests it accepts skip the limit
        points_by_role: Limit per user role, e.g. ``{"user": 10, "admin": 50}``.
            The first role on ``request.state.user`` picks the entry; callers
            without roles use ``"anonymous"``, unknown roles use ``"default"``.

    For strategies with ``skip_successful`` set, an admitted attempt is taken
    back out of the window when the route completes without raising.
    """
    if points_by_role is not None:
        invalid = {role: value for role, value in points_by_role.items() if value < 1}
        if invalid:
            raise ValueError(f"points_by_role limits must be at least 1: {invalid}")
        points_by_role = dict(points_by_role)

    async def dependency(request: Request, response: Response) -> AsyncIterator[Optional[RateLimitResult]]:
        if await _is_exempt(exempt, request):
            yield None
            return
        service = get_rate_limiter(request)
        identity = await identity_from_request(request, read_body=True)
        result = await service.check(
            strategy_name,
            identity,
            points=_points_for_role(request, points_by_role, points),
            duration=duration,
        )
        yield _apply(result, response)
        # Only reached when the route did not raise
        if result.refundable:
            await service.refund(result)

    return dependency


def _resolve_bucket(
    defaults: TokenBucketConfig,
    tokens_per_interval: Optional[int],
    interval: Optional[float],
    max_burst: Optional[int],
    cost: Optional[int],
) -> TokenBucketConfig:
    return TokenBucketConfig(
        tokens_per_interval=tokens_per_interval if tokens_per_interval is not None else defaults.tokens_per_interval,
        interval_seconds=interval if interval is not None else defaults.interval_seconds,
        max_burst=max_burst if max_burst is not None else defaults.max_burst,
        cost=cost if cost is not None else defaults.cost,
    )


def token_bucket(
    tokens_per_interval: Optional[int] = None,
    interval: Optional[float] = None,
    max_burst: Optional[int] = None,
    cost: Optional[int] = None,
    exempt: Optional[ExemptPredicate] = None,
) -> ThrottleDependency:
    """Token bucket limit; unset parameters fall back to the AI defaults in settings.

    Raises:
        ValueError: When every parameter is given and they are inconsistent.
    """
    explicit = (tokens_per_interval, interval, max_burst, cost)
    fixed: Optional[TokenBucketConfig] = None
    if all(value is not None for value in explicit):
        fixed = TokenBucketConfig(
            tokens_per_interval=tokens_per_interval,
            interval_seconds=interval,
            max_burst=max_burst,
            cost=cost,
        )

    async def dependency(request: Request, response: Response) -> Optional[RateLimitResult]:
        if await _is_exempt(exempt, request):
            return None
        service = get_rate_limiter(request)
        config = fixed
        if config is None:
            try:
                config = _resolve_bucket(service.token_bucket_config, *explicit)
            except ValueError as e:
                logger.error(
                    f"Invalid token bucket configuration for {request.url.path}: {e}; request allowed",
                    extra=get_log_context(strategy="bucket", path=request.url.path),
                )
                return None
        identity = await identity_from_request(request)
        result = await service.check_token_bucket(identity, config)
        return _apply(result, response)

    return dependency


def adaptive(
    base_limit: Optional[int] = None,
    min_limit: Optional[int] = None,
    window: Optional[int] = None,
    exempt: Optional[ExemptPredicate] = None,
) -> ThrottleDependency:
    """Sliding window whose limit shrinks as process load grows."""

    async def dependency(request: Request, response: Response) -> Optional[RateLimitResult]:
        if await _is_exempt(exempt, request):
            return None
        identity = await identity_from_request(request)
        result = await get_rate_limiter(request).check_adaptive(
            identity, base_limit=base_limit, min_limit=min_limit, window_seconds=window
        )
        return _apply(result, response)

    return dependency


def deduplicate(
    coordinator: DeduplicationCoordinator,
    key_generator: Optional[KeyGenerator] = None,
) -> Middleware:
    """Middleware entry that coalesces identical concurrent requests.

    Example:
        app = FastAPI(middleware=[deduplicate(DeduplicationCoordinator(30.0))])
    """
    return Middleware(DeduplicationMiddleware, coordinator=coordinator, key_generator=key_generator)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(),
        headers=exc.result.headers(),
    )
