"""Quota enforcer: runs the configured algorithm and fails open on store errors."""

from datetime import datetime
from typing import Dict

import redis

from quotagate.app.core.logging import get_log_context, get_logger
from quotagate.app.core.store import CounterStore
from quotagate.app.exceptions import CounterStoreError
from quotagate.app.middleware.rate_limit.backends import (
    FixedWindowCounter,
    RateLimitBackend,
    SlidingLog,
)
from quotagate.app.middleware.rate_limit.models import (
    Decision,
    RateLimitAlgorithm,
    RateLimitResult,
    RateLimitRule,
)

logger = get_logger(__name__)

STORE_EXCEPTIONS = (
    redis.RedisError,
    CounterStoreError,
    OSError,
)

_BACKENDS: Dict[RateLimitAlgorithm, type[RateLimitBackend]] = {
    RateLimitAlgorithm.FIXED_WINDOW: FixedWindowCounter,
    RateLimitAlgorithm.SLIDING_LOG: SlidingLog,
}


class QuotaEnforcer:
    """Checks and consumes quota for identity keys against a shared store.

    Store failures never propagate: they are logged and reported as
    ``Decision.STORE_ERROR``, which callers treat as allowed.
    """

    def __init__(
        self,
        store: CounterStore,
        algorithm: RateLimitAlgorithm | str = RateLimitAlgorithm.FIXED_WINDOW,
    ):
        """Initialize the enforcer.

        Args:
            store: Shared counter store, injected by the caller
            algorithm: fixed_window (default) or sliding_log

        Raises:
            RateLimitConfigError: If the algorithm is unknown
        """
        self.store = store
        self.algorithm = RateLimitAlgorithm.parse(algorithm)
        self._backend = _BACKENDS[self.algorithm]()

    async def check_and_consume(
        self,
        key: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> RateLimitResult:
        """Check the key against the rule, recording the request if allowed."""
        try:
            return await self._backend.check_and_consume(self.store, key, rule, now)
        except STORE_EXCEPTIONS as e:
            return self._handle_store_failure(key, rule, e)

    def _handle_store_failure(
        self,
        key: str,
        rule: RateLimitRule,
        error: Exception,
    ) -> RateLimitResult:
        logger.warning(
            f"Rate limiting fail-open triggered due to {type(error).__name__}: {error}. "
            "Request allowed without rate limit check.",
            extra=get_log_context(
                rate_limit_key=key,
                algorithm=self.algorithm.value,
                decision=Decision.STORE_ERROR.value,
            ),
        )
        return RateLimitResult(decision=Decision.STORE_ERROR, key=key, rule=rule)
