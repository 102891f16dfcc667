"""Named rate limit strategies and their registry.

A strategy bundles a key function with limit, window, optional block
duration and rejection message. The registry is built once at startup and
is read-only afterwards.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Union

from careerguard.app.core.config import Settings
from careerguard.app.exceptions import UnknownStrategyError


class StrategyName(str, Enum):
    GLOBAL = "global"
    API = "api"
    AI = "ai"
    AUTH = "auth"
    HEAVY = "heavy"
    USER = "user"
    IP_STRICT = "ip-strict"


@dataclass(frozen=True)
class RequestIdentity:
    """What the throttling layer knows about the caller.

    ``body`` holds the parsed JSON body when one was available; only the
    auth strategy reads it.
    """
    client_ip: str = "unknown"
    user_id: Optional[str] = None
    path: str = "/"
    method: str = "GET"
    body: Optional[Any] = None

    @property
    def subject(self) -> str:
        """User id when authenticated, client IP otherwise."""
        return self.user_id or self.client_ip

    def body_field(self, *names: str) -> Optional[str]:
        if not isinstance(self.body, dict):
            return None
        for name in names:
            value = self.body.get(name)
            if isinstance(value, str) and value:
                return value
        return None


@dataclass(frozen=True)
class RateLimitKey:
    """Counter store key: ``{strategy}:{identity}[:{path}]``."""
    strategy: str
    identity: str
    path: Optional[str] = None

    def __str__(self) -> str:
        if self.path is None:
            return f"{self.strategy}:{self.identity}"
        return f"{self.strategy}:{self.identity}:{self.path}"


KeyFunction = Callable[[RequestIdentity], RateLimitKey]


def _by_ip(name: str) -> KeyFunction:
    return lambda identity: RateLimitKey(name, identity.client_ip)


def _by_subject(name: str) -> KeyFunction:
    return lambda identity: RateLimitKey(name, identity.subject)


def _by_subject_and_path(name: str) -> KeyFunction:
    return lambda identity: RateLimitKey(name, identity.subject, identity.path)


def _by_ip_and_username(name: str) -> KeyFunction:
    def key_fn(identity: RequestIdentity) -> RateLimitKey:
        username = identity.body_field("username", "email") or "anonymous"
        return RateLimitKey(name, f"{identity.client_ip}|{username.lower()}")
    return key_fn


@dataclass(frozen=True)
class StrategyDefinition:
    """Immutable limiter configuration for one strategy."""
    name: StrategyName
    key_fn: KeyFunction
    limit_points: int
    window_seconds: int
    block_seconds: Optional[int] = None
    message: str = "Too many requests, please try again later."
    # Admitted attempts that end without an error are taken back out of the window
    skip_successful: bool = False

    def __post_init__(self):
        if self.limit_points < 1:
            raise ValueError(f"{self.name.value}: limit_points must be at least 1")
        if self.window_seconds < 1:
            raise ValueError(f"{self.name.value}: window_seconds must be at least 1")
        if self.block_seconds is not None and self.block_seconds < 1:
            raise ValueError(f"{self.name.value}: block_seconds must be at least 1")

    def key_for(self, identity: RequestIdentity) -> str:
        return str(self.key_fn(identity))

    def with_overrides(
        self,
        points: Optional[int] = None,
        duration: Optional[int] = None,
        block_duration: Optional[int] = None,
        message: Optional[str] = None,
        skip_successful: Optional[bool] = None,
    ) -> "StrategyDefinition":
        changes: Dict[str, Any] = {}
        if points is not None:
            changes["limit_points"] = points
        if duration is not None:
            changes["window_seconds"] = duration
        if block_duration is not None:
            changes["block_seconds"] = block_duration
        if message is not None:
            changes["message"] = message
        if skip_successful is not None:
            changes["skip_successful"] = skip_successful
        return dataclasses.replace(self, **changes) if changes else self


DEFAULT_STRATEGIES = (
    StrategyDefinition(
        name=StrategyName.GLOBAL,
        key_fn=_by_ip(StrategyName.GLOBAL.value),
        limit_points=1000,
        window_seconds=60,
        message="Too many requests from this IP, please try again later.",
    ),
    StrategyDefinition(
        name=StrategyName.API,
        key_fn=_by_subject_and_path(StrategyName.API.value),
        limit_points=100,
        window_seconds=60,
        message="API rate limit exceeded, please slow down.",
    ),
    StrategyDefinition(
        name=StrategyName.AI,
        key_fn=_by_subject(StrategyName.AI.value),
        limit_points=10,
        window_seconds=60,
        block_seconds=300,
        message="AI service rate limit exceeded. Please wait before making more requests.",
    ),
    StrategyDefinition(
        name=StrategyName.AUTH,
        key_fn=_by_ip_and_username(StrategyName.AUTH.value),
        limit_points=5,
        window_seconds=60,
        block_seconds=900,
        message="Too many authentication attempts. Please try again later.",
        skip_successful=True,
    ),
    StrategyDefinition(
        name=StrategyName.HEAVY,
        key_fn=_by_subject(StrategyName.HEAVY.value),
        limit_points=5,
        window_seconds=300,
        message="Too many resource-intensive requests. Please wait before trying again.",
    ),
    StrategyDefinition(
        name=StrategyName.USER,
        key_fn=_by_subject_and_path(StrategyName.USER.value),
        limit_points=60,
        window_seconds=60,
        message="User rate limit exceeded.",
    ),
    StrategyDefinition(
        name=StrategyName.IP_STRICT,
        key_fn=_by_ip(StrategyName.IP_STRICT.value),
        limit_points=30,
        window_seconds=60,
        message="Too many requests from this IP address.",
    ),
)


class StrategyRegistry:
    """Read-only lookup of strategy definitions by name."""

    def __init__(self, definitions: Iterable[StrategyDefinition] = DEFAULT_STRATEGIES):
        table: Dict[StrategyName, StrategyDefinition] = {}
        for definition in definitions:
            if definition.name in table:
                raise ValueError(f"Duplicate strategy definition: {definition.name.value}")
            table[definition.name] = definition
        self._definitions: Mapping[StrategyName, StrategyDefinition] = MappingProxyType(table)

    @classmethod
    def from_settings(cls, config: Settings) -> "StrategyRegistry":
        """Build the default registry with ``RATE_LIMIT_OVERRIDES`` applied.

        Raises:
            ValueError: If an override names an unknown strategy.
        """
        definitions = {d.name: d for d in DEFAULT_STRATEGIES}
        for raw_name, override in config.rate_limit_overrides.items():
            try:
                name = StrategyName(raw_name)
            except ValueError:
                raise ValueError(
                    f"RATE_LIMIT_OVERRIDES names unknown strategy '{raw_name}'"
                ) from None
            definitions[name] = definitions[name].with_overrides(
                points=override.points,
                duration=override.duration,
                block_duration=override.block_duration,
                message=override.message,
                skip_successful=override.skip_successful,
            )
        return cls(definitions.values())

    def get(self, name: Union[StrategyName, str]) -> StrategyDefinition:
        """Look up a strategy.

        Raises:
            UnknownStrategyError: If ``name`` is not registered.
        """
        try:
            key = StrategyName(name)
        except ValueError:
            raise UnknownStrategyError(str(name)) from None
        definition = self._definitions.get(key)
        if definition is None:
            raise UnknownStrategyError(key.value)
        return definition

    def __contains__(self, name: object) -> bool:
        try:
            return StrategyName(name) in self._definitions
        except ValueError:
            return False

    def __iter__(self) -> Iterator[StrategyDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)
