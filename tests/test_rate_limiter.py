"""Tests for the Burst Limiter."""

from __future__ import annotations

import pytest

from signal_gateway.gateway.rate_limiter import BURST_MAX_REQUESTS, BURST_WINDOW_SECONDS, BurstLimiter

CALLER = "203.0.113.7"


class TestBurstLimiter:
    @pytest.fixture
    def limiter(self, clock):
        return BurstLimiter(window_seconds=60, max_per_window=10, clock=clock)

    def test_defaults(self):
        assert BURST_WINDOW_SECONDS == 60.0
        assert BURST_MAX_REQUESTS == 10

    def test_exactly_max_per_window_allowed(self, limiter):
        results = [limiter.allow(CALLER) for _ in range(11)]
        assert results == [True] * 10 + [False]

    def test_rejections_do_not_extend_count(self, limiter):
        for _ in range(15):
            limiter.allow(CALLER)
        assert limiter.get_stats(CALLER)["count"] == 10

    def test_new_window_after_expiry(self, limiter, clock):
        for _ in range(11):
            limiter.allow(CALLER)

        clock.advance(61)

        assert limiter.allow(CALLER) is True
        assert limiter.get_stats(CALLER)["count"] == 1

    def test_window_boundary_is_inclusive(self, limiter, clock):
        for _ in range(10):
            limiter.allow(CALLER)
        clock.advance(60)
        # still inside the window at exactly windowResetAt
        assert limiter.allow(CALLER) is False

    def test_callers_are_independent(self, limiter):
        for _ in range(10):
            limiter.allow(CALLER)
        assert limiter.allow(CALLER) is False
        assert limiter.allow("198.51.100.1") is True

    def test_retry_after_is_seconds_left_in_window(self, limiter, clock):
        for _ in range(10):
            limiter.allow(CALLER)
        clock.advance(15.5)
        assert limiter.retry_after(CALLER) == 45

    def test_retry_after_minimum_one(self, limiter):
        assert limiter.retry_after("nobody") == 1

    def test_prune_drops_expired_records(self, limiter, clock):
        limiter.allow("a")
        limiter.allow("b")
        clock.advance(61)
        limiter.allow("c")

        assert limiter.prune() == 2
        assert limiter.get_stats("a")["count"] == 0
        assert limiter.get_stats("c")["count"] == 1
