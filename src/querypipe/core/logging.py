"""Structured logging infrastructure for querypipe.

Provides structured logging using structlog with pipeline-specific context
such as request_id, operation_name, and retry attempt. Supports console and
JSON output, optionally mirrored to a rotating log file.

Example usage:
    from querypipe.core.logging import get_logger, configure_logging, with_context

    # Configure once at startup
    configure_logging(level="DEBUG", format="console")

    # Get a component-specific logger
    logger = get_logger("batching")

    # Log with auto-context
    logger.info("batch.flushed", size=5)

    # Use a request context for automatic correlation
    ctx = RequestContext(request_id="abc-123", operation_name="GetCourse")
    with with_context(ctx):
        logger.info("request.started")  # Includes request_id, operation_name
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Key fragments whose values are never logged or echoed into error context
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "token",
    "secret",
    "password",
    "credential",
    "bearer",
    "authorization",
    "cookie",
})

REDACTED = "[REDACTED]"


def is_sensitive_key(key: str) -> bool:
    """Check whether a field name looks like it holds a secret."""
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SENSITIVE_PATTERNS)


def redact(value: Any) -> Any:
    """Recursively redact sensitive keys from mappings and lists.

    Args:
        value: Arbitrary JSON-like value.

    Returns:
        A copy of the value with sensitive mapping entries replaced.
    """
    if isinstance(value, Mapping):
        return {
            k: REDACTED if is_sensitive_key(str(k)) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [redact(v) for v in value]
    return value


@dataclass(frozen=True)
class RequestContext:
    """Immutable context for correlating log entries across one request.

    Attributes:
        request_id: Correlation id of the pipeline invocation.
        operation_name: GraphQL operation name, if any.
        attempt: Zero-based attempt number within the invocation.
        component: Component name for the current operation.
    """

    request_id: str
    operation_name: str | None = None
    attempt: int = 0
    component: str = "pipeline"

    def with_attempt(self, attempt: int) -> RequestContext:
        """Create a new context for another attempt of the same request."""
        return replace(self, attempt=attempt)

    def with_component(self, component: str) -> RequestContext:
        """Create a new context with the specified component."""
        return replace(self, component=component)

    def to_dict(self) -> dict[str, Any]:
        """Convert context to a dictionary for logging (excludes None values)."""
        result: dict[str, Any] = {
            "request_id": self.request_id,
            "attempt": self.attempt,
            "component": self.component,
        }
        if self.operation_name is not None:
            result["operation_name"] = self.operation_name
        return result


# ContextVar keeps concurrent pipeline invocations isolated
_current_context: ContextVar[RequestContext | None] = ContextVar(
    "querypipe_context", default=None
)


def get_current_context() -> RequestContext | None:
    """Get the current RequestContext if set."""
    return _current_context.get()


@contextmanager
def with_context(ctx: RequestContext) -> Iterator[RequestContext]:
    """Context manager that sets RequestContext for the duration of a block.

    Args:
        ctx: The RequestContext to use for the block.

    Yields:
        The RequestContext that was set.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields (one level deep)."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if is_sensitive_key(key):
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = {
                k: REDACTED if is_sensitive_key(str(k)) else v
                for k, v in value.items()
            }
        else:
            sanitized[key] = value
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds an ISO8601 UTC timestamp."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active RequestContext.

    Explicit bindings take precedence over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            if key not in event_dict:
                event_dict[key] = value
    return event_dict


class PipelineLogger:
    """Logger wrapper around structlog bound to a component name.

    The underlying structlog logger is fetched lazily on every call so that
    loggers created at import time still honor configure_logging().
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> PipelineLogger:
        """Create a new logger with additional bound context."""
        new_logger = PipelineLogger.__new__(PipelineLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def unbind(self, *keys: str) -> PipelineLogger:
        """Create a new logger with the given keys removed."""
        new_logger = PipelineLogger.__new__(PipelineLogger)
        new_logger._component = self._component
        new_logger._context = {k: v for k, v in self._context.items() if k not in keys}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._get_logger().critical(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an exception with traceback; call from within an except block."""
        self._get_logger().exception(event, **kw)


def _shared_processors(include_timestamps: bool, include_context: bool) -> list[Processor]:
    """Processors run once per event, before any handler renders it."""
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        processors.append(_add_context)
    if include_timestamps:
        processors.append(_add_timestamp)
    processors += [
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    return processors


def _attach(handler: logging.Handler, renderer: Processor, level: int) -> logging.Handler:
    # Each handler renders the shared event dict its own way
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    handler.setLevel(level)
    return handler


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console", "both"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 3,
    include_timestamps: bool = True,
    include_context: bool = True,
) -> None:
    """Configure querypipe structured logging.

    Call once at startup; later calls replace the root handlers.

    Args:
        level: Minimum log level to capture.
        format: "console" renders human-readable lines to stderr. "json"
            writes one JSON object per line to ``file_path``, or to stdout
            when no file is given. "both" does the two at once and needs
            ``file_path``.
        file_path: Rotating log file for JSON output.
        max_file_size_mb: Rotate the file after this many megabytes.
        backup_count: Rotated files to keep.
        include_timestamps: Add an ISO8601 UTC ``timestamp``.
        include_context: Merge the active RequestContext into every entry.

    Raises:
        ValueError: If format="both" but file_path is not provided.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    json_renderer = structlog.processors.JSONRenderer()
    handlers: list[logging.Handler] = []

    if format != "json":
        console_renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        handlers.append(_attach(logging.StreamHandler(sys.stderr), console_renderer, log_level))

    if format != "console":
        json_target: logging.Handler
        if file_path is None:
            json_target = logging.StreamHandler(sys.stdout)
        else:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            json_target = RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        handlers.append(_attach(json_target, json_renderer, log_level))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for old in root_logger.handlers[:]:
        root_logger.removeHandler(old)
    for handler in handlers:
        root_logger.addHandler(handler)

    # Not cached on first use: module-level loggers pick up later calls
    structlog.configure(
        processors=[
            *_shared_processors(include_timestamps, include_context),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> PipelineLogger:
    """Get a logger for a component.

    Example:
        logger = get_logger("recovery")
        logger.info("recovery.retry_scheduled", delay=1.2)
    """
    return PipelineLogger(component, **initial_context)


__all__ = [
    "REDACTED",
    "RequestContext",
    "PipelineLogger",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "is_sensitive_key",
    "redact",
    "with_context",
]
