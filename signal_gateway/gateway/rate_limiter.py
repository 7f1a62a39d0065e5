"""Burst Limiter: per-caller fixed-window request counter.

The first request from a caller opens a window of ``window_seconds``; up to
``max_per_window`` requests are admitted inside it. An expired window is
replaced by a fresh one, never incremented.

Per-process and best-effort: separate gateway instances keep separate
counters. It is a cheap first line of defense in front of the daily quota.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable

from signal_gateway.gateway.types import BurstRecord

logger = logging.getLogger(__name__)

BURST_WINDOW_SECONDS = 60.0
BURST_MAX_REQUESTS = 10
MAX_TRACKED_CALLERS = 10_000  # expired records are swept once this many are held


class BurstLimiter:
    """Fixed-window limiter keyed by caller identity.

    Usage:
        limiter = BurstLimiter(window_seconds=60, max_per_window=10)

        if not limiter.allow(caller_ip):
            raise BurstLimitError(retry_after=limiter.retry_after(caller_ip))
    """

    def __init__(
        self,
        window_seconds: float = BURST_WINDOW_SECONDS,
        max_per_window: int = BURST_MAX_REQUESTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_per_window = max_per_window
        self._clock = clock
        self._records: dict[str, BurstRecord] = {}
        self._lock = threading.Lock()

    def allow(self, caller: str) -> bool:
        """Count one request for the caller. False if the current window is full."""
        with self._lock:
            now = self._clock()
            if len(self._records) >= MAX_TRACKED_CALLERS:
                self._prune_locked(now)
            record = self._records.get(caller)

            if record is None or record.expired(now):
                self._records[caller] = BurstRecord(count=1, window_reset_at=now + self.window_seconds)
                return True

            if record.count >= self.max_per_window:
                logger.info("Burst limit hit for %s (%d in window)", caller, record.count)
                return False

            record.count += 1
            return True

    def retry_after(self, caller: str) -> int:
        """Whole seconds until the caller's window resets (at least 1)."""
        with self._lock:
            record = self._records.get(caller)
            if record is None:
                return 1
            remaining = record.window_reset_at - self._clock()
            return max(1, math.ceil(remaining))

    def prune(self) -> int:
        """Drop expired records. Returns the number removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        expired = [caller for caller, record in self._records.items() if record.expired(now)]
        for caller in expired:
            del self._records[caller]
        return len(expired)

    def get_stats(self, caller: str) -> dict:
        with self._lock:
            record = self._records.get(caller)
            now = self._clock()
            active = record is not None and not record.expired(now)
            return {
                "caller": caller,
                "count": record.count if active else 0,
                "max_per_window": self.max_per_window,
                "window_seconds": self.window_seconds,
            }
