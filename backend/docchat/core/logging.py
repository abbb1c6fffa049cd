"""Structured logging for DocChat.

Records are rendered as one JSON object per line. Fields passed through
``log_context`` land on a single record; fields bound with ``bind_context``
(request id, chat session, document) are attached to every record emitted
inside the block, including records from other modules.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

import orjson

_DEFAULT_LEVEL = os.environ.get("DOCCHAT_LOG_LEVEL", "INFO")
_DEFAULT_FORMAT = os.environ.get("DOCCHAT_LOG_FORMAT", "json")
_CONTEXT_PREFIX = "ctx_"
_QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "multipart")

_bound: ContextVar[dict[str, Any]] = ContextVar("docchat_log_context", default={})


class ContextFilter(logging.Filter):
    """Copy bound context onto records that do not set the field themselves."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _bound.get().items():
            attr = _CONTEXT_PREFIX + key
            if not hasattr(record, attr):
                setattr(record, attr, value)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - thin wrapper
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        context = {
            key[len(_CONTEXT_PREFIX) :]: value
            for key, value in record.__dict__.items()
            if key.startswith(_CONTEXT_PREFIX)
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


def configure_logging(level: str | int = _DEFAULT_LEVEL, fmt: str = _DEFAULT_FORMAT) -> None:
    """Install a single stdout handler on the root logger."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.handlers = [handler]
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "docchat") -> logging.Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def log_context(**fields: Any) -> dict[str, Any]:
    """Build an ``extra`` mapping for one record."""
    return {_CONTEXT_PREFIX + key: value for key, value in fields.items()}


@contextmanager
def bind_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every record logged inside the block."""
    token = _bound.set({**_bound.get(), **fields})
    try:
        yield
    finally:
        _bound.reset(token)


def bound_context() -> dict[str, Any]:
    return dict(_bound.get())


__all__ = ["configure_logging", "get_logger", "log_context", "bind_context", "bound_context"]
