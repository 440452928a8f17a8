"""Unit tests for the fixed-window RateLimiter."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from taskflow_gateway.services.rate_limiter import RateLimiter


def test_requests_up_to_ceiling_are_admitted(clock):
    limiter = RateLimiter("token", clock=clock.monotonic)

    decisions = [limiter.check_and_increment("tok", 1000, 3600) for _ in range(1000)]

    assert all(d.allowed for d in decisions)
    assert decisions[-1].count == 1000
    assert decisions[-1].remaining == 0


def test_request_over_ceiling_is_rejected_without_drift(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    for _ in range(5):
        assert limiter.check_and_increment("1.2.3.4", 5, 60).allowed

    rejected = [limiter.check_and_increment("1.2.3.4", 5, 60) for _ in range(50)]

    assert not any(d.allowed for d in rejected)
    assert all(d.count == 6 for d in rejected)
    assert limiter.peek("1.2.3.4").count == 6


def test_window_resets_after_it_elapses(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    for _ in range(3):
        limiter.check_and_increment("k", 3, 60)
    assert not limiter.check_and_increment("k", 3, 60).allowed

    clock.advance(60)
    decision = limiter.check_and_increment("k", 3, 60)

    assert decision.allowed
    assert decision.count == 1


def test_window_is_fixed_not_sliding(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    limiter.check_and_increment("k", 2, 60)
    clock.advance(59)
    limiter.check_and_increment("k", 2, 60)
    assert not limiter.check_and_increment("k", 2, 60).allowed

    # One second later the window that opened at t=0 is over.
    clock.advance(1)
    assert limiter.check_and_increment("k", 2, 60).allowed


def test_retry_after_is_remaining_window_time(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    limiter.check_and_increment("k", 1, 60)
    clock.advance(20.5)

    decision = limiter.check_and_increment("k", 1, 60)

    assert not decision.allowed
    assert decision.retry_after == 40


def test_keys_are_independent(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    limiter.check_and_increment("a", 1, 60)

    assert not limiter.check_and_increment("a", 1, 60).allowed
    assert limiter.check_and_increment("b", 1, 60).allowed


def test_concurrent_increments_admit_exactly_ceiling():
    limiter = RateLimiter("ip")

    with ThreadPoolExecutor(max_workers=32) as pool:
        decisions = list(pool.map(lambda _: limiter.check_and_increment("hot", 100, 60), range(500)))

    assert sum(d.allowed for d in decisions) == 100
    assert limiter.peek("hot").count == 101


def test_sweep_drops_only_elapsed_windows(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    limiter.check_and_increment("old", 10, 60)
    clock.advance(30)
    limiter.check_and_increment("fresh", 10, 60)
    clock.advance(31)

    assert limiter.sweep() == 1
    assert limiter.peek("old") is None
    assert limiter.peek("fresh").count == 1


def test_reset_clears_a_key(clock):
    limiter = RateLimiter("ip", clock=clock.monotonic)
    limiter.check_and_increment("k", 1, 60)
    limiter.reset("k")

    assert limiter.check_and_increment("k", 1, 60).allowed
