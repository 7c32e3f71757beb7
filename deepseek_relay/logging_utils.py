"""
Centralized logging and error classification for the streaming relay.

structlog is configured once on import. Operations (HTTP client setup, one
streaming session) are logged through ``operation_context`` or its decorator
form ``log_operation``, which time the block and tag failures with a stable
category from ``RelayErrorHandler``.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from deepseek_relay.llm.exceptions import (
    ConfigError,
    HttpError,
    NotInitializedError,
    ParseError,
    SinkError,
    StreamCancelledError,
    StreamStartError,
    StreamTimeoutError,
    TransportError,
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Type variables for generic decorators
P = ParamSpec("P")
T = TypeVar("T")
AsyncCallable = Callable[P, Awaitable[T]]

logger = structlog.get_logger(__name__)


def configure_logging(level: str | int = "INFO") -> None:
    """Route stdlib (and therefore structlog) output to stderr at ``level``."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format="%(message)s")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    return structlog.get_logger(name)


class RelayErrorHandler:
    """Centralized error classification with structured logging."""

    @staticmethod
    def classify_error(error: BaseException) -> str:  # noqa: PLR0911
        """
        Classify an error into a stable category for structured logs.

        Args:
            error: The exception to classify

        Returns:
            Error category string
        """
        if isinstance(error, StreamCancelledError):
            return "cancelled"
        if isinstance(error, ConfigError | NotInitializedError):
            return "config_error"
        if isinstance(error, HttpError):
            return "http_error"
        if isinstance(error, StreamTimeoutError | TimeoutError):
            return "timeout_error"
        if isinstance(error, TransportError | httpx.TransportError):
            return "connection_error"
        if isinstance(error, ParseError | ValidationError):
            return "parse_error"
        if isinstance(error, SinkError | StreamStartError):
            return "sink_error"
        if isinstance(error, ConnectionError | OSError):
            return "connection_error"
        return "unknown_error"

    @staticmethod
    def log_failure(
        error: BaseException,
        operation: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        """
        Log a failed operation with its classification.

        Returns:
            The error category that was logged
        """
        category = RelayErrorHandler.classify_error(error)
        logger.error(
            "Operation failed",
            operation=operation,
            error_type=type(error).__name__,
            error_category=category,
            error_message=str(error),
            **(context or {}),
        )
        return category


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _failure_fields(error: Exception, started: float | None) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_category": RelayErrorHandler.classify_error(error),
        "error_message": str(error),
    }
    if started is not None:
        fields["duration_ms"] = _elapsed_ms(started)
    return fields


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
    log_timing: bool = True,
) -> AsyncIterator[structlog.stdlib.BoundLogger]:
    """
    Log the start and the outcome of the enclosed block.

    Yields the operation's bound logger; callers add their own events and
    ``bind()`` more context (a stream id, say) under the same ``operation``.
    Failures are logged with their error category and re-raised.
    """
    op_log = logger.bind(operation=operation, **(context or {}))
    op_log.info("Operation started")
    started = time.perf_counter() if log_timing else None

    try:
        yield op_log
    except Exception as e:
        op_log.error("Operation failed", **_failure_fields(e, started))
        raise

    timing = {"duration_ms": _elapsed_ms(started)} if started is not None else {}
    op_log.info("Operation completed successfully", **timing)


def log_operation(
    operation: str,
    *,
    log_timing: bool = True,
    context: dict[str, Any] | None = None,
) -> Callable[[AsyncCallable[P, T]], AsyncCallable[P, T]]:
    """Decorator form of ``operation_context`` for async callables."""
    def decorator(func: AsyncCallable[P, T]) -> AsyncCallable[P, T]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            async with operation_context(
                operation,
                context={"function": func.__name__, **(context or {})},
                log_timing=log_timing,
            ):
                return await func(*args, **kwargs)

        return wrapper
    return decorator


class ContextualLogger:
    """Structured logger carrying a fixed context, such as one component."""

    def __init__(self, base_context: dict[str, Any] | None = None):
        self.base_context = dict(base_context or {})
        self._logger = logger.bind(**self.base_context)

    def bind(self, **context: Any) -> ContextualLogger:
        """Return a child logger; this one keeps its own context."""
        return ContextualLogger({**self.base_context, **context})

    def _emit(self, level: str, message: str, context: dict[str, Any]) -> None:
        getattr(self._logger, level)(message, **context)

    def debug(self, message: str, **context: Any) -> None:
        self._emit("debug", message, context)

    def info(self, message: str, **context: Any) -> None:
        self._emit("info", message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._emit("warning", message, context)

    def error(self, message: str, **context: Any) -> None:
        self._emit("error", message, context)
