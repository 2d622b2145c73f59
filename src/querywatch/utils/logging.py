"""Structured logging helpers for querywatch."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar, Token
from typing import Optional

_request_id: ContextVar[str | None] = ContextVar("querywatch_request_id", default=None)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logger = logging.getLogger("querywatch")
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(request_id)s | %(name)s | %(message)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    logger.addHandler(handler)
    logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(f"querywatch.{name}")


def bind_request_id(value: Optional[str]) -> Token:
    """
    Tag log lines emitted from the current context with ``value``.

    Only the log formatter reads this; tracking state is always passed explicitly.
    """

    return _request_id.set(value)


def unbind_request_id(token: Token) -> None:
    _request_id.reset(token)


def get_request_id() -> str | None:
    return _request_id.get()


def time_call(name: str, logger: logging.Logger, *, threshold_ms: float = 100, **extra):
    start = time.monotonic()

    class Timer:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            elapsed_ms = (time.monotonic() - start) * 1000
            level = logging.WARNING if elapsed_ms >= threshold_ms else logging.DEBUG
            logger.log(level, "%s took %.2fms", name, elapsed_ms, extra={**extra, "elapsed_ms": elapsed_ms})

    return Timer()
