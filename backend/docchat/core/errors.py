"""Typed processing errors and the classifier that produces them.

Every retry loop consults :func:`classify` instead of inspecting raw provider
or driver exceptions. The classifier maps arbitrary exceptions onto a closed
set of variants, each of which knows whether retrying it can help.
"""

from __future__ import annotations

import asyncio
import sqlite3
from enum import Enum
from typing import Any, Mapping, Sequence

import httpx

from docchat.utils.time import utc_now


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER = "server"
    DATABASE = "database"
    EXTRACTION = "extraction"
    EMBEDDING = "embedding"
    PARTIAL_FAILURE = "partial_failure"
    UNKNOWN = "unknown"


class ProcessingError(Exception):
    """Base class for classified errors. Unknown failures are assumed transient."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = utc_now()

    @property
    def retry_after(self) -> float | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, retryable={self.retryable})"


class ValidationError(ProcessingError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, retryable=False, context=context)


class NotFoundError(ValidationError):
    """Referenced document or resource does not exist."""


class AccessDeniedError(ValidationError):
    """Caller may not access the referenced document."""


class OperationTimeoutError(ProcessingError):
    """A soft timeout is a transient network stall; a hard one exhausted its budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        hard: bool = False,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=not hard, context=context)
        self.hard = hard


class RateLimitError(ProcessingError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=True, context=context)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class NetworkError(ProcessingError):
    kind = ErrorKind.NETWORK


class ServerError(ProcessingError):
    kind = ErrorKind.SERVER

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=True, context=context)
        self.status_code = status_code


class DatabaseError(ProcessingError):
    """Constraint violations are permanent; locking and capacity errors are transient."""

    kind = ErrorKind.DATABASE

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=transient, context=context)
        self.transient = transient


class ExtractionError(ProcessingError):
    kind = ErrorKind.EXTRACTION

    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, retryable=False, context=context)


class PDFExtractionError(ExtractionError):
    pass


class AudioExtractionError(ExtractionError):
    pass


class EmbeddingError(ProcessingError):
    kind = ErrorKind.EMBEDDING

    def __init__(
        self,
        message: str,
        *,
        chunk_index: int | None = None,
        retryable: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable, context=context)
        self.chunk_index = chunk_index


class PartialFailureError(ProcessingError):
    """Some sub-operations succeeded and some failed.

    ``successes`` holds whatever the caller can keep; ``failures`` holds the
    classified error of every sub-operation that must be resumed.
    """

    kind = ErrorKind.PARTIAL_FAILURE

    def __init__(
        self,
        message: str,
        *,
        successes: Any = None,
        failures: Sequence[ProcessingError] = (),
        context: Mapping[str, Any] | None = None,
    ) -> None:
        failures = list(failures)
        # Resumable only while some failure could still succeed.
        super().__init__(message, retryable=any(failure.retryable for failure in failures), context=context)
        self.successes = successes
        self.failures = failures

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["failures"] = [failure.to_dict() for failure in self.failures]
        return payload


_NETWORK_CODES = {"ECONNREFUSED", "ENOTFOUND", "ECONNRESET", "ETIMEDOUT", "EPIPE"}


def classify(exc: BaseException, context: Mapping[str, Any] | None = None) -> ProcessingError:
    """Map any exception onto a :class:`ProcessingError` variant."""
    if isinstance(exc, ProcessingError):
        if context:
            for key, value in context.items():
                exc.context.setdefault(key, value)
        return exc

    message = str(exc) or type(exc).__name__
    ctx = dict(context or {})
    ctx.setdefault("error_type", type(exc).__name__)

    if isinstance(exc, httpx.HTTPStatusError):
        return _from_status(
            exc.response.status_code,
            message,
            ctx,
            retry_after=_parse_retry_after(exc.response.headers.get("retry-after")),
        )
    if isinstance(exc, httpx.TimeoutException):
        return OperationTimeoutError(message, hard=False, context=ctx)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(message, context=ctx)
    if isinstance(exc, sqlite3.IntegrityError):
        return DatabaseError(message, transient=False, context=ctx)
    if isinstance(exc, sqlite3.OperationalError):
        return DatabaseError(message, transient=True, context=ctx)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return OperationTimeoutError(message, hard=False, context=ctx)
    if isinstance(exc, (ConnectionError, OSError)):
        return NetworkError(message, context=ctx)

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int):
        return _from_status(
            status,
            message,
            ctx,
            retry_after=_parse_retry_after(getattr(exc, "retry_after", None)),
        )

    code = getattr(exc, "code", None)
    if isinstance(code, str):
        if code == "rate_limit_exceeded":
            return RateLimitError(message, context=ctx)
        if code in _NETWORK_CODES:
            return NetworkError(message, context=ctx)
        if code.startswith("23"):
            return DatabaseError(message, transient=False, context=ctx)
        if code.startswith(("40", "53")):
            return DatabaseError(message, transient=True, context=ctx)

    return ProcessingError(message, retryable=True, context=ctx)


def _from_status(
    status: int,
    message: str,
    ctx: dict[str, Any],
    *,
    retry_after: float | None = None,
) -> ProcessingError:
    ctx["status_code"] = status
    if status == 429:
        return RateLimitError(message, retry_after=retry_after, context=ctx)
    if status == 408:
        return OperationTimeoutError(message, hard=False, context=ctx)
    if status >= 500:
        return ServerError(message, status_code=status, context=ctx)
    if 400 <= status < 500:
        return ValidationError(message, context=ctx)
    return ProcessingError(message, retryable=True, context=ctx)


def _parse_retry_after(value: Any) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, seconds)


__all__ = [
    "ErrorKind",
    "ProcessingError",
    "ValidationError",
    "NotFoundError",
    "AccessDeniedError",
    "OperationTimeoutError",
    "RateLimitError",
    "NetworkError",
    "ServerError",
    "DatabaseError",
    "ExtractionError",
    "PDFExtractionError",
    "AudioExtractionError",
    "EmbeddingError",
    "PartialFailureError",
    "classify",
]
