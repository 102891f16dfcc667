"""Custom exceptions for the throttling layer."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from careerguard.app.middleware.rate_limit.models import RateLimitResult


class ThrottleException(Exception):
    """Base class for throttling exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Throttle error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(ThrottleException):
    """Raised when the counter store cannot be reached or timed out.

    Callers recover locally by failing open; it never reaches the client.
    """
    status_code = 503

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f"Counter store unavailable during {operation}"
        if cause is not None:
            detail += f": {type(cause).__name__}: {cause}"
        super().__init__(detail)


class UnknownStrategyError(ThrottleException):
    """Raised when a rate limit strategy name is not registered."""
    status_code = 500

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown rate limit strategy: {name}")


class RateLimitExceededError(ThrottleException):
    """Ends a request that a limiter rejected.

    Only the HTTP adapter raises this; limiters themselves return a
    RateLimitResult. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: "RateLimitResult"):
        self.result = result
        super().__init__(result.message or "Too many requests")

    def to_response(self) -> dict:
        """Convert to the 429 response body."""
        body = {
            "error": "rate_limit_blocked" if self.result.blocked else "rate_limit_exceeded",
            "message": self.message,
            "limit": self.result.limit,
            "remaining": self.result.remaining,
            "reset": self.result.reset_epoch,
        }
        if self.result.retry_after is not None:
            body["retryAfter"] = self.result.retry_after
        return body


class DeduplicationTimeoutError(ThrottleException):
    """Raised to every waiter when a coalesced execution exceeds its timeout."""
    status_code = 504

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Deduplicated request timed out after {timeout}s")
