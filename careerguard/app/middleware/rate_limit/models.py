"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

import math
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_time`` is a UNIX timestamp in seconds (float). ``blocked`` marks
    a rejection caused by an active block record rather than the limiter;
    ``fail_open`` marks an admission granted because the store failed.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: Optional[int] = None
    blocked: bool = False
    fail_open: bool = False
    message: Optional[str] = None
    # Window entry behind an admission, so it can be taken back
    key: Optional[str] = None
    entry_member: Optional[str] = None
    refundable: bool = False

    @property
    def reset_epoch(self) -> int:
        return int(math.ceil(self.reset_time))

    def headers(self) -> Dict[str, str]:
        """Rate limit headers for the HTTP response."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_epoch),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    @classmethod
    def open(cls, limit: int, now: float, window_seconds: float) -> "RateLimitResult":
        """Admission granted without a store decision."""
        return cls(
            allowed=True,
            limit=limit,
            remaining=limit,
            reset_time=now + window_seconds,
            fail_open=True,
        )


def retry_after_seconds(reset_time: float, now: float) -> int:
    """Whole seconds until ``reset_time``, never less than 1."""
    return max(1, int(math.ceil(reset_time - now)))


@dataclass(frozen=True)
class WindowEntry:
    """One admitted request inside a sliding window.

    Stored as a sorted-set member scored by its timestamp; the nonce keeps
    members unique when two requests share a timestamp.
    """
    timestamp: float
    nonce: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def member(self) -> str:
        return f"{self.timestamp!r}-{self.nonce}"


@dataclass
class WindowHit:
    """Outcome of one atomic sliding-window batch in the counter store.

    Attributes:
        admitted: Whether the entry was inserted
        count: Entries in the window before the insert
        oldest: Timestamp of the oldest remaining entry, if any
    """
    admitted: bool
    count: int
    oldest: Optional[float] = None


@dataclass
class TokenBucketState:
    """Token bucket state for token bucket algorithm."""
    tokens: float
    last_refill: float

    def to_dict(self) -> dict:
        return {"tokens": self.tokens, "last_refill": self.last_refill}

    @classmethod
    def from_dict(cls, data: dict) -> "TokenBucketState":
        return cls(tokens=float(data["tokens"]), last_refill=float(data["last_refill"]))


@dataclass(frozen=True)
class BlockRecord:
    """A temporary ban that short-circuits limiter evaluation for a key."""
    key: str
    blocked_until: float

    def seconds_left(self, now: float) -> int:
        return max(1, int(math.ceil(self.blocked_until - now)))


@dataclass
class RateLimitStatus:
    """Read-only view of a key's current window usage."""
    key: str
    used: int
    limit: int
    remaining: int
    reset_time: float
    blocked_until: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "key": self.key,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": int(math.ceil(self.reset_time)),
            "blocked_until": (
                int(math.ceil(self.blocked_until)) if self.blocked_until is not None else None
            ),
        }
