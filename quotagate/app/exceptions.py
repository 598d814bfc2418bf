"""Custom exceptions for quotagate."""


class QuotaGateException(Exception):
    """Base class for quotagate exceptions."""

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class RateLimitConfigError(QuotaGateException, ValueError):
    """Raised when a rule, override or algorithm is misconfigured.

    Always raised while building the limiter, never per request.
    """

    def __init__(self, message: str = "Invalid rate limit configuration"):
        super().__init__(message)


class CounterStoreError(QuotaGateException):
    """Raised when the shared counter store cannot serve a call.

    Redis errors surface as ``redis.RedisError``; this covers the cases
    that are not Redis' own, such as the client package being missing.
    """

    def __init__(self, message: str = "Counter store unavailable", key: str | None = None):
        self.key = key
        super().__init__(message)
