"""Daily free-tier quota: per-caller counters keyed by UTC calendar day.

Storage sits behind the ``QuotaStore`` port with two implementations:

  - RedisQuotaStore: atomic INCR in Redis; the first increment of a day sets a
    24h expiry so keys clean themselves up. Any Redis error falls back to an
    in-process shadow counter, which also remembers every value Redis returned
    so a mid-sequence outage neither repeats nor skips a count.
  - MemoryQuotaStore: in-process only; lost on restart. Used when no Redis URL
    is configured.

Which one backs the tracker is decided once, at startup, by build_quota_store().
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "signal:usage"
DAY_TTL_SECONDS = 86_400
FREE_TIER_DAILY_LIMIT = 5
REDIS_TIMEOUT_SECONDS = 0.5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_today() -> date:
    return _utc_now().date()


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


class QuotaStore(ABC):
    """Counter storage used by QuotaTracker."""

    backend: str = "unknown"

    @abstractmethod
    async def get(self, key: str) -> int:
        """Current value of the counter (0 if absent)."""
        ...

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically add one and return the new value. Sets the TTL on creation."""
        ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class MemoryQuotaStore(QuotaStore):
    """Process-local counters with lazy expiry."""

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counts: dict[str, tuple[int, float]] = {}  # key → (count, expires_at)
        self._lock = threading.Lock()

    def peek(self, key: str) -> int:
        with self._lock:
            return self._live_count(key, self._clock())

    def _live_count(self, key: str, now: float) -> int:
        entry = self._counts.get(key)
        if entry is None:
            return 0
        count, expires_at = entry
        if now >= expires_at:
            del self._counts[key]
            return 0
        return count

    async def get(self, key: str) -> int:
        return self.peek(key)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            count = self._live_count(key, now)
            if count == 0:
                self._counts[key] = (1, now + ttl_seconds)
                return 1
            expires_at = self._counts[key][1]
            self._counts[key] = (count + 1, expires_at)
            return count + 1

    def raise_to(self, key: str, value: int, ttl_seconds: int) -> None:
        """Lift the counter to at least ``value``; never lowers it."""
        with self._lock:
            now = self._clock()
            count = self._live_count(key, now)
            if value <= count:
                return
            expires_at = self._counts[key][1] if key in self._counts else now + ttl_seconds
            self._counts[key] = (value, expires_at)


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------


class RedisQuotaStore(QuotaStore):
    """Redis counters with a transparent in-memory fallback."""

    backend = "redis"

    def __init__(self, client: aioredis.Redis, fallback: MemoryQuotaStore | None = None):
        self._client = client
        self._fallback = fallback or MemoryQuotaStore()

    async def get(self, key: str) -> int:
        try:
            raw = await self._client.get(key)
        except RedisError:
            logger.exception("Redis read failed for %s, using in-memory count", key)
            return self._fallback.peek(key)
        return max(int(raw or 0), self._fallback.peek(key))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            count = await self._client.incr(key)
            if count == 1:
                await self._client.expire(key, ttl_seconds)

            floor = self._fallback.peek(key)
            if count <= floor:
                # Redis missed increments served from memory during an outage
                count = floor + 1
                await self._client.set(key, count, ex=ttl_seconds)
        except RedisError:
            logger.exception("Redis increment failed for %s, counting in memory", key)
            return await self._fallback.incr(key, ttl_seconds)

        self._fallback.raise_to(key, count, ttl_seconds)
        return count

    async def close(self) -> None:
        await self._client.aclose()


def build_quota_store(redis_url: str, timeout_seconds: float = REDIS_TIMEOUT_SECONDS) -> QuotaStore:
    """Pick the quota backend from configuration. Called once at startup.

    Socket timeouts are kept short so an unreachable Redis surfaces as a
    RedisError (and the in-memory fallback) instead of hanging the request.
    """
    if not redis_url:
        logger.warning("REDIS_URL not set; daily usage is tracked in memory and resets on restart")
        return MemoryQuotaStore()

    client = aioredis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=timeout_seconds,
        socket_timeout=timeout_seconds,
    )
    logger.info("Daily usage tracked in Redis")
    return RedisQuotaStore(client)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class QuotaTracker:
    """Per-caller daily usage on top of a QuotaStore.

    Usage:
        tracker = QuotaTracker(build_quota_store(settings.redis_url), daily_limit=5)

        if await tracker.get_usage(ip) >= tracker.daily_limit:
            ...reject...
        new_total = await tracker.increment_usage(ip)
    """

    def __init__(
        self,
        store: QuotaStore,
        daily_limit: int = FREE_TIER_DAILY_LIMIT,
        today: Callable[[], date] = _utc_today,
        key_prefix: str = KEY_PREFIX,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.daily_limit = daily_limit
        self._today = today
        self._now = now
        self._key_prefix = key_prefix

    @property
    def backend(self) -> str:
        return self.store.backend

    def key_for(self, caller: str) -> str:
        return f"{self._key_prefix}:{caller}:{self._today().isoformat()}"

    async def get_usage(self, caller: str) -> int:
        return await self.store.get(self.key_for(caller))

    async def increment_usage(self, caller: str) -> int:
        return await self.store.incr(self.key_for(caller), DAY_TTL_SECONDS)

    def remaining(self, usage: int) -> int:
        return max(0, self.daily_limit - usage)

    def is_exhausted(self, usage: int) -> bool:
        return usage >= self.daily_limit

    def seconds_until_reset(self) -> int:
        """Whole seconds until the next UTC midnight, when every counter starts over (at least 1)."""
        now = self._now()
        next_midnight = datetime.combine(now.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
        return max(1, math.ceil((next_midnight - now).total_seconds()))
