"""Counting algorithms run against the shared counter store.

Two algorithms are supported:

- fixed window: one integer counter per key, reset when the key's TTL
  (the rule's window) expires. A burst straddling a window boundary can
  reach about twice the nominal rate.
- sliding log: a JSON list of millisecond timestamps per key, pruned to
  the trailing window on every check.

Neither algorithm catches store errors; ``QuotaEnforcer`` does.
"""

import json
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from quotagate.app.core.logging import get_logger
from quotagate.app.core.store import CounterStore
from quotagate.app.middleware.rate_limit.models import (
    Decision,
    RateLimitResult,
    RateLimitRule,
    as_utc,
)

logger = get_logger(__name__)


def to_millis(now: datetime) -> int:
    return int(as_utc(now).timestamp() * 1000)


class RateLimitBackend(ABC):
    """Abstract base class for counting algorithms."""

    @abstractmethod
    async def check_and_consume(
        self,
        store: CounterStore,
        key: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> RateLimitResult:
        """Decide whether the request under ``key`` fits ``rule``.

        Args:
            store: Shared counter store
            key: Request identity key
            rule: Effective rule for the request
            now: Current instant

        Returns:
            RateLimitResult with ALLOW or DENY
        """
        pass


class FixedWindowCounter(RateLimitBackend):
    """Fixed window counter using GET / INCR / EXPIRE.

    Denies once the stored count reaches ``max_requests``. The TTL is set
    only by the increment that creates the key; two instances racing on
    the first increment both set the same TTL, which is harmless.
    """

    @staticmethod
    def _parse_count(key: str, raw: str | None) -> int:
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable counter for {key!r}, treating as 0")
            return 0

    async def check_and_consume(
        self,
        store: CounterStore,
        key: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> RateLimitResult:
        count = self._parse_count(key, await store.get(key))

        if count >= rule.max_requests:
            return RateLimitResult(decision=Decision.DENY, key=key, rule=rule, count=count)

        new_count = await store.incr(key)
        if new_count == 1:
            await store.expire(key, rule.window_seconds)

        return RateLimitResult(decision=Decision.ALLOW, key=key, rule=rule, count=new_count)


class SlidingLog(RateLimitBackend):
    """Sliding log of request timestamps stored as a JSON list.

    Denies when the pruned log holds more than ``max_requests`` entries,
    so one request beyond ``max_requests`` is admitted per window. The
    pruned log is written back on deny as well as allow.

    The read-modify-write is not atomic: concurrent requests for the same
    key on different instances may each append to a stale read.
    """

    @staticmethod
    def _parse_log(key: str, raw: str | None) -> List[int]:
        if raw is None:
            return []
        try:
            entries = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable request log for {key!r}, treating as empty")
            return []
        if not isinstance(entries, list) or not all(
            (isinstance(ts, int) and not isinstance(ts, bool))
            or (isinstance(ts, float) and math.isfinite(ts))
            for ts in entries
        ):
            logger.debug(f"Malformed request log for {key!r}, treating as empty")
            return []
        return [int(ts) for ts in entries]

    async def _write_log(
        self,
        store: CounterStore,
        key: str,
        entries: List[int],
        rule: RateLimitRule,
    ) -> None:
        await store.set(key, json.dumps(entries))
        await store.expire(key, rule.window_seconds)

    async def check_and_consume(
        self,
        store: CounterStore,
        key: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> RateLimitResult:
        now_ms = to_millis(now)
        window_start = now_ms - rule.window_seconds * 1000

        entries = self._parse_log(key, await store.get(key))
        in_window = [ts for ts in entries if ts > window_start]

        if len(in_window) > rule.max_requests:
            await self._write_log(store, key, in_window, rule)
            return RateLimitResult(
                decision=Decision.DENY, key=key, rule=rule, count=len(in_window)
            )

        in_window.append(now_ms)
        await self._write_log(store, key, in_window, rule)
        return RateLimitResult(
            decision=Decision.ALLOW, key=key, rule=rule, count=len(in_window)
        )
