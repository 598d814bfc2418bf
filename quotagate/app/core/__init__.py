"""Core utilities for quotagate."""

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger, setup_logging
from quotagate.app.core.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    build_counter_store,
)

__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "build_counter_store",
    "settings",
    "get_logger",
    "setup_logging",
]
