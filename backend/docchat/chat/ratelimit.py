"""Sliding-window message rate limiting per chat session."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from docchat.core.config import Settings
from docchat.core.errors import ValidationError
from docchat.core.logging import get_logger, log_context
from docchat.core.metrics import RATE_LIMIT_DENIALS

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class WindowRule:
    reason: str
    limit: int
    window_seconds: float


@dataclass(frozen=True, slots=True)
class Admission:
    allowed: bool
    retry_after_seconds: int | None = None
    reason: str | None = None
    limit: int | None = None
    window_seconds: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "rate_limit_exceeded",
            "retry_after": self.retry_after_seconds,
            "reason": self.reason,
            "limit": self.limit,
            "window_seconds": self.window_seconds,
        }


def build_rules(per_window: int, window_seconds: float, burst: int, burst_window_seconds: float) -> tuple[WindowRule, ...]:
    if per_window <= burst:
        raise ValidationError("The per-window limit must be greater than the burst limit")
    # Burst is checked first so its shorter countdown wins.
    return (
        WindowRule("burst_limit", burst, burst_window_seconds),
        WindowRule("rate_limit", per_window, window_seconds),
    )


def evaluate_window(timestamps: Iterable[float], now: float, rules: Sequence[WindowRule]) -> Admission:
    """Decide whether one more message fits every rule, without recording it."""
    stamps = list(timestamps)
    for rule in rules:
        in_window = [stamp for stamp in stamps if now - stamp < rule.window_seconds]
        if len(in_window) >= rule.limit:
            retry_after = math.ceil(min(in_window) + rule.window_seconds - now)
            return Admission(
                allowed=False,
                retry_after_seconds=max(1, retry_after),
                reason=rule.reason,
                limit=rule.limit,
                window_seconds=rule.window_seconds,
            )
    return Admission(allowed=True)


class SessionRateLimiter:
    """Per-session limits with an explicit lifecycle.

    Evaluation and recording happen under one lock, so two concurrent
    messages from the same session cannot both take the last slot.
    """

    def __init__(
        self,
        per_window: int = 10,
        window_seconds: float = 60.0,
        burst: int = 3,
        burst_window_seconds: float = 10.0,
        sweep_interval_seconds: float = 300.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.rules = build_rules(per_window, window_seconds, burst, burst_window_seconds)
        self.max_window = max(rule.window_seconds for rule in self.rules)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sessions: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = time.monotonic) -> "SessionRateLimiter":
        return cls(
            per_window=settings.rate_limit_per_minute,
            window_seconds=settings.rate_limit_window_seconds,
            burst=settings.rate_limit_burst,
            burst_window_seconds=settings.rate_limit_burst_window_seconds,
            sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
            clock=clock,
        )

    def admit(self, session_id: str) -> Admission:
        with self._lock:
            now = self._clock()
            stamps = self._sessions.get(session_id)
            if stamps is not None:
                while stamps and now - stamps[0] >= self.max_window:
                    stamps.popleft()
            decision = evaluate_window(stamps or (), now, self.rules)
            if decision.allowed:
                if stamps is None:
                    stamps = self._sessions[session_id] = deque()
                stamps.append(now)
        if not decision.allowed:
            RATE_LIMIT_DENIALS.labels(reason=decision.reason).inc()
            logger.info(
                "Rate limited session",
                extra=log_context(session_id=session_id, reason=decision.reason, retry_after=decision.retry_after_seconds),
            )
        return decision

    def sweep(self) -> int:
        """Evict sessions with no activity inside the largest window."""
        with self._lock:
            now = self._clock()
            stale = [
                session_id
                for session_id, stamps in self._sessions.items()
                if not stamps or now - stamps[-1] >= self.max_window
            ]
            for session_id in stale:
                del self._sessions[session_id]
        if stale:
            logger.debug("Swept %s idle sessions", len(stale))
        return len(stale)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "active_sessions": len(self._sessions),
                "tracked_timestamps": sum(len(stamps) for stamps in self._sessions.values()),
            }

    def start(self) -> None:
        """Begin periodic sweeping on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop(), name="rate-limit-sweep")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()


class ClientRateGuard:
    """Caller-side copy of the limiter that saves a doomed round trip.

    Its verdict is advisory; the server always decides again.
    """

    def __init__(self, rules: Sequence[WindowRule], clock: Clock = time.monotonic) -> None:
        self.rules = tuple(rules)
        self._clock = clock
        self._stamps: deque[float] = deque()

    def check(self) -> Admission:
        return evaluate_window(self._stamps, self._clock(), self.rules)

    def record(self) -> None:
        self._stamps.append(self._clock())
        horizon = max(rule.window_seconds for rule in self.rules)
        now = self._clock()
        while self._stamps and now - self._stamps[0] >= horizon:
            self._stamps.popleft()


__all__ = [
    "WindowRule",
    "Admission",
    "build_rules",
    "evaluate_window",
    "SessionRateLimiter",
    "ClientRateGuard",
]
