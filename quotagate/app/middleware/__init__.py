"""Middleware package for quotagate."""

from quotagate.app.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "RateLimitMiddleware",
]
