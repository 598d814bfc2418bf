"""Rate limiting middleware for quotagate.

This module plugs the rate limit decision engine into a Starlette/FastAPI
application. Counters live in a shared store so that limits hold across
every server instance, with fixed window and sliding log algorithms.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from quotagate.app.core.logging import get_log_context, get_logger
from quotagate.app.core.store import CounterStore

# Re-export models
from quotagate.app.middleware.rate_limit.models import (
    Decision,
    RateLimitAlgorithm,
    RateLimitOverride,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitRule,
    RequestPredicate,
    RuleSet,
    RuleSetOverlay,
)

# Re-export rule resolution and enforcement
from quotagate.app.middleware.rate_limit.rules import (
    DEFAULT_RULE_SET,
    active_overrides,
    build_rule_set,
    resolve_rule,
)
from quotagate.app.middleware.rate_limit.backends import (
    FixedWindowCounter,
    RateLimitBackend,
    SlidingLog,
)
from quotagate.app.middleware.rate_limit.enforcer import QuotaEnforcer

logger = get_logger(__name__)

__all__ = [
    # Models
    "Decision",
    "RateLimitAlgorithm",
    "RateLimitOverride",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitRule",
    "RuleSet",
    "RuleSetOverlay",
    # Rules
    "DEFAULT_RULE_SET",
    "active_overrides",
    "build_rule_set",
    "resolve_rule",
    # Backends
    "RateLimitBackend",
    "FixedWindowCounter",
    "SlidingLog",
    "QuotaEnforcer",
    # Middleware
    "RATE_LIMIT_EXCEEDED_BODY",
    "RateLimitMiddleware",
    "get_client_identity",
    "make_identity_key",
]

RATE_LIMIT_EXCEEDED_BODY = {
    "error": "Too Many Requests",
    "message": "Rate limit exceeded",
}


def _never_authenticated(request: Request) -> bool:
    return False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_client_identity(request: Request) -> str:
    """Get the raw client identity for the request.

    The X-Forwarded-For header is used verbatim when present (no splitting
    or normalization), otherwise the transport peer address.

    Args:
        request: FastAPI request object

    Returns:
        Client identity string, "unknown" if none is available
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def make_identity_key(prefix: str, client: str, path: str) -> str:
    """Build the counter store key ``<prefix><client>:<path>``."""
    return f"{prefix}{client}:{path}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Limits are tracked per client identity and path. For each request the
    effective rule is resolved (active override, then endpoint rule, then
    the authenticated/unauthenticated default) and checked against the
    shared counter store.

    Denied requests get a 429 response. Allowed requests, and requests
    whose check failed for any reason, continue unmodified.
    """

    def __init__(
        self,
        app,
        store: CounterStore,
        key_prefix: str = "rl",
        is_authenticated: Optional[RequestPredicate] = None,
        algorithm: RateLimitAlgorithm | str = RateLimitAlgorithm.FIXED_WINDOW,
        custom_limits: Optional[RuleSetOverlay] = None,
        overrides: Iterable[RateLimitOverride] = (),
        mount_path: str = "/",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the middleware.

        Args:
            app: ASGI application to wrap
            store: Shared counter store
            key_prefix: Prefix for identity keys in the store
            is_authenticated: Predicate deciding which default rule applies
            algorithm: fixed_window (default) or sliding_log
            custom_limits: Rules laid over the built-in defaults
            overrides: Time-bounded rules taking precedence over everything else
            mount_path: Only paths under this prefix are rate limited
            clock: Source of the current instant, UTC now by default

        Raises:
            RateLimitConfigError: If any rule, override or the algorithm is invalid
        """
        super().__init__(app)
        self.key_prefix = key_prefix
        self.is_authenticated = is_authenticated or _never_authenticated
        self.policy = RateLimitPolicy(
            rule_set=build_rule_set(custom_limits),
            overrides=tuple(overrides),
        )
        self.enforcer = QuotaEnforcer(store, algorithm)
        self.mount_path = mount_path.rstrip("/") or "/"
        self.clock = clock or _utcnow

    def _is_limited_path(self, path: str) -> bool:
        if self.mount_path == "/":
            return True
        return path == self.mount_path or path.startswith(self.mount_path + "/")

    async def check(self, request: Request) -> RateLimitResult:
        """Resolve the rule for a request and consume quota for it."""
        now = self.clock()
        path = request.url.path
        client = get_client_identity(request)
        authenticated = bool(self.is_authenticated(request))

        rule = resolve_rule(request, now, self.policy, authenticated)
        key = make_identity_key(self.key_prefix, client, path)
        return await self.enforcer.check_and_consume(key, rule, now)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self._is_limited_path(request.url.path):
            return await call_next(request)

        try:
            result = await self.check(request)
        except Exception:
            logger.exception(
                "Rate limiter error; request allowed",
                extra=get_log_context(path=request.url.path),
            )
            return await call_next(request)

        if not result.allowed:
            logger.info(
                "Rate limit exceeded",
                extra=get_log_context(
                    client=get_client_identity(request),
                    path=request.url.path,
                    rate_limit_key=result.key,
                    algorithm=self.enforcer.algorithm.value,
                    decision=result.decision.value,
                    max_requests=result.rule.max_requests,
                    window_seconds=result.rule.window_seconds,
                ),
            )
            return JSONResponse(status_code=429, content=RATE_LIMIT_EXCEEDED_BODY)

        return await call_next(request)
