"""Rate limiting data models.

This module contains the rules, overrides and results the limiter works with.
All configuration types are immutable once constructed and validate
themselves, so misconfiguration fails at startup rather than per request.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, FrozenSet, Mapping, Optional, Tuple

from starlette.requests import Request

from quotagate.app.exceptions import RateLimitConfigError

# Caller-supplied predicate over the request; must not mutate it.
RequestPredicate = Callable[[Request], bool]


class RateLimitAlgorithm(str, Enum):
    """Counting algorithm used against the shared store."""
    FIXED_WINDOW = "fixed_window"
    SLIDING_LOG = "sliding_log"

    @classmethod
    def parse(cls, value: "RateLimitAlgorithm | str") -> "RateLimitAlgorithm":
        try:
            return cls(value)
        except ValueError:
            raise RateLimitConfigError(
                f"Unknown rate limit algorithm: {value!r}"
            ) from None


class Decision(str, Enum):
    """Outcome of a quota check.

    STORE_ERROR means the store could not be consulted; the request is
    let through.
    """
    ALLOW = "allow"
    DENY = "deny"
    STORE_ERROR = "store_error"


def _require_positive_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise RateLimitConfigError(f"{name} must be a positive integer, got {value!r}")


@dataclass(frozen=True)
class RateLimitRule:
    """At most ``max_requests`` accepted per ``window_seconds``."""
    window_seconds: int
    max_requests: int

    def __post_init__(self) -> None:
        _require_positive_int("window_seconds", self.window_seconds)
        _require_positive_int("max_requests", self.max_requests)


@dataclass(frozen=True)
class RuleSet:
    """Default rules plus exact-path endpoint rules."""
    authenticated: RateLimitRule
    unauthenticated: RateLimitRule
    endpoints: Mapping[str, RateLimitRule] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for path, rule in self.endpoints.items():
            if not isinstance(rule, RateLimitRule):
                raise RateLimitConfigError(f"Endpoint rule for {path!r} is not a RateLimitRule")
        # Read-only copy of the caller mapping
        object.__setattr__(self, "endpoints", MappingProxyType(dict(self.endpoints)))


@dataclass(frozen=True)
class RuleSetOverlay:
    """Partial rule set laid over the defaults; None keeps the default."""
    authenticated: Optional[RateLimitRule] = None
    unauthenticated: Optional[RateLimitRule] = None
    endpoints: Optional[Mapping[str, RateLimitRule]] = None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class RateLimitOverride:
    """Time-bounded rule that takes precedence over the rule set.

    Attributes:
        start_time: First instant the override applies (inclusive)
        end_time: Last instant the override applies (inclusive)
        rule: Rule to enforce while active
        endpoints: Paths the override is limited to, None for every path
        criteria: Predicate the request must satisfy, None for every request
    """
    start_time: datetime
    end_time: datetime
    rule: RateLimitRule
    endpoints: Optional[FrozenSet[str]] = None
    criteria: Optional[RequestPredicate] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "start_time", as_utc(self.start_time))
        object.__setattr__(self, "end_time", as_utc(self.end_time))
        if self.end_time < self.start_time:
            raise RateLimitConfigError("Override end_time is before start_time")
        if not isinstance(self.rule, RateLimitRule):
            raise RateLimitConfigError("Override rule must be a RateLimitRule")
        if self.endpoints is not None:
            if isinstance(self.endpoints, str):
                raise RateLimitConfigError("Override endpoints must be a collection of paths")
            object.__setattr__(self, "endpoints", frozenset(self.endpoints))
        if self.criteria is not None and not callable(self.criteria):
            raise RateLimitConfigError("Override criteria must be callable")


@dataclass(frozen=True)
class RateLimitPolicy:
    """Everything the resolver needs: rule set plus overrides in caller order."""
    rule_set: RuleSet
    overrides: Tuple[RateLimitOverride, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "overrides", tuple(self.overrides))


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    decision: Decision
    key: str
    rule: RateLimitRule
    count: Optional[int] = None  # Requests recorded in the current window, if known

    @property
    def allowed(self) -> bool:
        return self.decision is not Decision.DENY
