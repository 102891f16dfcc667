"""App-wide rate limiting middleware."""

from typing import Iterable, Optional, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from careerguard.app.exceptions import RateLimitExceededError
from careerguard.app.middleware.identity import identity_from_request
from careerguard.app.middleware.rate_limit.service import RateLimitService
from careerguard.app.middleware.rate_limit.strategies import StrategyName


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies one strategy (``global`` by default) to every request.

    Rejections are answered here with the 429 body; admitted responses get
    the X-RateLimit-* headers. Exempt paths skip evaluation entirely.
    """

    def __init__(
        self,
        app,
        service: RateLimitService,
        strategy: Union[StrategyName, str] = StrategyName.GLOBAL,
        exempt_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.service = service
        self.strategy = strategy
        self.exempt_paths = frozenset(exempt_paths or ())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.exempt_paths or request.method == "OPTIONS":
            return await call_next(request)

        identity = await identity_from_request(request)
        result = await self.service.check(self.strategy, identity)

        if not result.allowed:
            error = RateLimitExceededError(result)
            return JSONResponse(status_code=429, content=error.to_response(), headers=result.headers())

        response = await call_next(request)
        if not result.fail_open:
            for name, value in result.headers().items():
                # Endpoint-level limits are stricter and take precedence
                response.headers.setdefault(name, value)
        return response
