"""Bounded exponential backoff and per-operation budgets."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from docchat.core.config import Settings
from docchat.core.errors import OperationTimeoutError, ProcessingError, classify
from docchat.core.logging import get_logger, log_context
from docchat.core.metrics import PROVIDER_RETRIES

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
        )

    def delay_for(self, attempt: int, error: ProcessingError | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if error is not None and error.retry_after is not None:
            return min(error.retry_after, self.max_delay * 6)
        delay = min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay += delay * random.uniform(0.0, 0.2)
        return delay

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: str,
        context: Mapping[str, Any] | None = None,
    ) -> T:
        """Await ``fn()`` until it succeeds, fails terminally or attempts run out.

        The classified error of the last attempt is raised on exhaustion.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify(exc, context)
                if not error.retryable or attempt >= self.max_attempts:
                    if error is not exc:
                        raise error from exc
                    raise
                delay = self.delay_for(attempt, error)
                PROVIDER_RETRIES.labels(operation=operation, kind=error.kind.value).inc()
                logger.warning(
                    "Retrying %s after %s (attempt %s/%s)",
                    operation,
                    error.kind.value,
                    attempt,
                    self.max_attempts,
                    extra=log_context(operation=operation, delay=round(delay, 3), error=error.message),
                )
                await asyncio.sleep(delay)


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await with a budget; expiry is a hard, non-retryable timeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(
            f"{operation} exceeded its {seconds:g}s budget",
            hard=True,
            context={"operation": operation, "timeout_seconds": seconds},
        ) from exc


__all__ = ["RetryPolicy", "with_timeout"]
