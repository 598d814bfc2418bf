"""quotagate: shared-store request rate limiting for FastAPI services."""

__version__ = "0.1.0"
