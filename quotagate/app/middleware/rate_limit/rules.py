"""Rule resolution for the rate limiter.

Picks the single effective rule for a request, in priority order:

1. the most recently started override active for the request
2. an exact-path endpoint rule
3. the authenticated or unauthenticated default

Resolution is a pure function of its inputs; nothing is cached between
requests because override activation depends on the clock and the request.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from starlette.requests import Request

from quotagate.app.middleware.rate_limit.models import (
    RateLimitOverride,
    RateLimitPolicy,
    RateLimitRule,
    RuleSet,
    RuleSetOverlay,
    as_utc,
)

HOUR = 60 * 60

DEFAULT_RULE_SET = RuleSet(
    authenticated=RateLimitRule(window_seconds=HOUR, max_requests=200),
    unauthenticated=RateLimitRule(window_seconds=HOUR, max_requests=100),
    endpoints={
        "/api/public": RateLimitRule(window_seconds=HOUR, max_requests=100),
        "/api/auth": RateLimitRule(window_seconds=HOUR, max_requests=50),
    },
)


def build_rule_set(
    custom: Optional[RuleSetOverlay] = None,
    base: RuleSet = DEFAULT_RULE_SET,
) -> RuleSet:
    """Lay caller-supplied rules over the defaults.

    Each of ``authenticated``, ``unauthenticated`` and every endpoint entry
    is replaced independently; anything the caller leaves out keeps the
    base value.

    Args:
        custom: Partial rules to apply, or None for the defaults unchanged
        base: Rule set to start from

    Returns:
        The merged RuleSet
    """
    if custom is None:
        return base
    endpoints = dict(base.endpoints)
    endpoints.update(custom.endpoints or {})
    return RuleSet(
        authenticated=custom.authenticated or base.authenticated,
        unauthenticated=custom.unauthenticated or base.unauthenticated,
        endpoints=endpoints,
    )


def request_path(request: Request) -> str:
    return request.url.path


def is_override_active(
    override: RateLimitOverride,
    request: Request,
    now: datetime,
) -> bool:
    """Check whether one override applies to a request at ``now``."""
    now = as_utc(now)
    if not override.start_time <= now <= override.end_time:
        return False
    if override.endpoints is not None and request_path(request) not in override.endpoints:
        return False
    if override.criteria is not None and not override.criteria(request):
        return False
    return True


def active_overrides(
    overrides: Optional[Iterable[RateLimitOverride]],
    request: Request,
    now: datetime,
) -> List[RateLimitOverride]:
    """Return the overrides active for a request, most recently started first.

    Criteria predicates are only called for overrides whose time window and
    endpoint scope already match.
    """
    if not overrides:
        return []
    active = [o for o in overrides if is_override_active(o, request, now)]
    # Stable sort keeps caller order among equal start times
    active.sort(key=lambda o: o.start_time, reverse=True)
    return active


def resolve_rule(
    request: Request,
    now: datetime,
    policy: RateLimitPolicy,
    authenticated: bool,
) -> RateLimitRule:
    """Resolve the effective rule for a request.

    Args:
        request: Incoming request (path and anything override criteria read)
        now: Current instant
        policy: Rule set and overrides
        authenticated: Result of the host's authentication predicate

    Returns:
        The one rule to enforce for this request
    """
    active = active_overrides(policy.overrides, request, now)
    if active:
        return active[0].rule

    endpoint_rule = policy.rule_set.endpoints.get(request_path(request))
    if endpoint_rule is not None:
        return endpoint_rule

    if authenticated:
        return policy.rule_set.authenticated
    return policy.rule_set.unauthenticated
