"""Shared counter store used by the rate limiter.

Provides a pluggable store abstraction with Redis and in-memory
implementations. Every server instance must point at the same Redis
database for limits to hold across processes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import asyncio
import time

import redis.asyncio as aioredis

from quotagate.app.core.config import Settings
from quotagate.app.core.logging import get_logger
from quotagate.app.exceptions import CounterStoreError

logger = get_logger(__name__)


@dataclass
class _StoreEntry:
    """Internal store entry with TTL tracking."""

    value: str
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class CounterStore(ABC):
    """Abstract base class for counter stores.

    Keys are opaque strings. Values are returned as ``str``.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Retrieve the value for a key, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, clearing any existing time-to-live."""
        pass

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer value, creating it at 0 if absent.

        Returns:
            The value after the increment.
        """
        pass

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set a key's time-to-live.

        Returns:
            True if the key existed and the TTL was set.
        """
        pass

    async def close(self) -> None:
        """Release any underlying connections."""
        return None


class InMemoryCounterStore(CounterStore):
    """In-memory counter store with TTL support.

    Mirrors the subset of Redis semantics the rate limiter relies on.
    State is per process, so limits are not shared between instances;
    use it for tests and single-instance development.

    Expired entries are dropped when read, and swept from the whole store
    every ``sweep_interval`` writes.
    """

    def __init__(self, clock=time.monotonic, sweep_interval: int = 1000) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._writes = 0

    def _remove_expired(self) -> int:
        now = self._clock()
        expired_keys = [key for key, entry in self._data.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._data[key]
        return len(expired_keys)

    def _note_write(self) -> None:
        self._writes += 1
        if self._writes >= self._sweep_interval:
            self._writes = 0
            self._remove_expired()

    def _live_entry(self, key: str) -> _StoreEntry | None:
        entry = self._data.get(key)
        if entry is not None and entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._note_write()
            self._data[key] = _StoreEntry(value=str(value))

    async def incr(self, key: str) -> int:
        async with self._lock:
            self._note_write()
            entry = self._live_entry(key)
            if entry is None:
                entry = _StoreEntry(value="0")
                self._data[key] = entry
            try:
                current = int(entry.value)
            except ValueError:
                raise CounterStoreError(
                    "value is not an integer or out of range", key=key
                ) from None
            entry.value = str(current + 1)
            return current + 1

    async def expire(self, key: str, seconds: int) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + seconds
            return True

    async def ttl(self, key: str) -> float | None:
        """Seconds left before a key expires, None if it has no TTL or is absent."""
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - self._clock()

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the store.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            return self._remove_expired()


class RedisCounterStore(CounterStore):
    """Redis-based counter store.

    The client is created lazily from ``redis_url`` unless one is injected.
    Responses are decoded to ``str``.

    Example:
        >>> store = RedisCounterStore("redis://localhost:6379/0")
        >>> await store.incr("rl10.0.0.1:/api/public")
    """

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: aioredis.Redis | None = None,
        socket_timeout: float | None = None,
    ) -> None:
        if redis_url is None and redis_client is None:
            raise CounterStoreError("RedisCounterStore needs a redis_url or a redis_client")
        self._redis_url = redis_url
        self._redis = redis_client
        self._socket_timeout = socket_timeout

    def _get_client(self) -> aioredis.Redis:
        """Get or create the Redis client connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_timeout=self._socket_timeout,
            )
            logger.info("Redis counter store client created")
        return self._redis

    async def get(self, key: str) -> str | None:
        value = await self._get_client().get(key)
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def set(self, key: str, value: str) -> None:
        await self._get_client().set(key, value)

    async def incr(self, key: str) -> int:
        return int(await self._get_client().incr(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._get_client().expire(key, seconds))

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            # Use aclose() for proper async cleanup in redis-py 5.0+
            await self._redis.aclose()
            self._redis = None


def build_counter_store(app_settings: Settings) -> CounterStore:
    """Create the counter store selected by configuration.

    Args:
        app_settings: Settings to read ``redis_enabled`` and connection info from.

    Returns:
        A RedisCounterStore, or an InMemoryCounterStore when Redis is disabled.
    """
    if app_settings.redis_enabled:
        return RedisCounterStore(
            redis_url=app_settings.redis_url,
            socket_timeout=app_settings.redis_socket_timeout,
        )
    logger.warning(
        "Redis disabled; using in-memory counter store. "
        "Limits are not shared between server instances."
    )
    return InMemoryCounterStore()
