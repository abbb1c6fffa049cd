"""Tests for session rate limiting."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from docchat.chat.ratelimit import ClientRateGuard, SessionRateLimiter, build_rules, evaluate_window
from docchat.core.errors import ValidationError


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_burst_of_three_in_two_seconds() -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=10, window_seconds=60, burst=3, burst_window_seconds=10, clock=clock)
    decisions = []
    for _ in range(3):
        decisions.append(limiter.admit("s1"))
        clock.advance(0.6)
    fourth = limiter.admit("s1")
    assert all(decision.allowed for decision in decisions)
    assert fourth.allowed is False
    assert fourth.reason == "burst_limit"
    assert 0 < fourth.retry_after_seconds <= 10


def test_sessions_are_independent() -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=4, window_seconds=60, burst=2, burst_window_seconds=10, clock=clock)
    assert limiter.admit("a").allowed and limiter.admit("a").allowed
    assert limiter.admit("a").allowed is False
    assert limiter.admit("b").allowed is True


def test_per_window_limit_applies_after_bursts() -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=4, window_seconds=60, burst=2, burst_window_seconds=10, clock=clock)
    for _ in range(4):
        assert limiter.admit("s").allowed
        clock.advance(11)
    denied = limiter.admit("s")
    assert denied.allowed is False
    assert denied.reason == "rate_limit"
    assert denied.limit == 4
    # The oldest message leaves the 60s window 16 seconds from now.
    assert denied.retry_after_seconds == 16


def test_denied_messages_do_not_consume_slots() -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=10, window_seconds=60, burst=1, burst_window_seconds=5, clock=clock)
    assert limiter.admit("s").allowed
    for _ in range(5):
        assert limiter.admit("s").allowed is False
    clock.advance(5)
    assert limiter.admit("s").allowed


@pytest.mark.parametrize("spacing", [1.0, 2.5, 6.0])
def test_sliding_window_never_exceeds_limit(spacing: float) -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=5, window_seconds=20, burst=2, burst_window_seconds=4, clock=clock)
    admitted: list[float] = []
    for _ in range(60):
        if limiter.admit("s").allowed:
            admitted.append(clock.now)
        clock.advance(spacing)
    for stamp in admitted:
        assert sum(1 for other in admitted if stamp <= other < stamp + 20) <= 5
        assert sum(1 for other in admitted if stamp <= other < stamp + 4) <= 2


def test_rate_limit_payload_shape() -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=3, window_seconds=60, burst=1, burst_window_seconds=10, clock=clock)
    limiter.admit("s")
    payload = limiter.admit("s").to_dict()
    assert payload == {
        "type": "rate_limit_exceeded",
        "retry_after": 10,
        "reason": "burst_limit",
        "limit": 1,
        "window_seconds": 10,
    }


def test_per_window_must_exceed_burst() -> None:
    with pytest.raises(ValidationError):
        build_rules(per_window=3, window_seconds=60, burst=3, burst_window_seconds=10)


def test_sweep_evicts_idle_sessions() -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=10, window_seconds=60, burst=3, burst_window_seconds=10, clock=clock)
    limiter.admit("old")
    clock.advance(30)
    limiter.admit("recent")
    clock.advance(31)
    assert limiter.sweep() == 1
    assert limiter.stats()["active_sessions"] == 1


def test_start_and_stop_sweeper() -> None:
    async def scenario() -> None:
        limiter = SessionRateLimiter(sweep_interval_seconds=0.01)
        limiter.start()
        await asyncio.sleep(0.03)
        await limiter.stop()
        await limiter.stop()

    asyncio.run(scenario())


def test_client_guard_matches_server_decision() -> None:
    clock = FakeClock()
    rules = build_rules(10, 60, 3, 10)
    guard = ClientRateGuard(rules, clock=clock)
    limiter = SessionRateLimiter(clock=clock)
    for _ in range(3):
        assert guard.check().allowed
        guard.record()
        assert limiter.admit("s").allowed
    assert guard.check() == limiter.admit("s")


def test_evaluate_window_is_pure() -> None:
    rules = build_rules(10, 60, 3, 10)
    stamps = [0.0, 1.0, 2.0]
    assert evaluate_window(stamps, 3.0, rules).allowed is False
    assert evaluate_window(stamps, 10.0, rules).allowed is True
    assert stamps == [0.0, 1.0, 2.0]


@pytest.mark.parametrize("burst", [1, 3, 5])
def test_one_slot_reopens_when_oldest_message_ages_out(burst: int) -> None:
    clock = FakeClock()
    limiter = SessionRateLimiter(per_window=burst + 10, window_seconds=600, burst=burst, burst_window_seconds=10, clock=clock)
    for _ in range(burst):
        assert limiter.admit("s").allowed
        clock.advance(1)
    denied = limiter.admit("s")
    assert denied.allowed is False
    assert denied.retry_after_seconds == 10 - burst
    clock.advance(denied.retry_after_seconds)
    assert limiter.admit("s").allowed
    assert limiter.admit("s").allowed is False


class SlowClock(FakeClock):
    """Stalls every read so concurrent callers overlap inside ``admit``."""

    def __call__(self) -> float:
        time.sleep(0.005)
        return self.now


def test_concurrent_messages_cannot_share_last_slot() -> None:
    clock = SlowClock()
    limiter = SessionRateLimiter(per_window=10, window_seconds=60, burst=3, burst_window_seconds=10, clock=clock)
    assert limiter.admit("s").allowed and limiter.admit("s").allowed
    start = threading.Barrier(8)
    decisions = []

    def send() -> None:
        start.wait()
        decisions.append(limiter.admit("s"))

    threads = [threading.Thread(target=send) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sum(decision.allowed for decision in decisions) == 1
    assert {decision.reason for decision in decisions if not decision.allowed} == {"burst_limit"}
