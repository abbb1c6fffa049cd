"""Time helpers.

Timestamps are stored as epoch milliseconds and surfaced as aware UTC
datetimes; durations are measured on the monotonic clock.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ms_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started) * 1000)


__all__ = ["now_ms", "utc_now", "ms_to_datetime", "elapsed_ms"]
