"""Telemetry sinks for classified errors and stage metrics.

Reporting is fire-and-forget. ``SafeTelemetry`` wraps any sink so that a
failing or slow sink can never block or raise into the pipeline: exceptions
are logged and dropped, and coroutine-returning sinks are scheduled as
background tasks instead of awaited.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Mapping
from typing import Any, Protocol

from querypipe.core.errors import ClassifiedError
from querypipe.core.logging import get_logger

_logger = get_logger("telemetry")


class TelemetrySink(Protocol):
    """Destination for error reports and stage metrics."""

    def report_error(self, error: ClassifiedError) -> Any: ...

    def report_metrics(self, source: str, metrics: Mapping[str, Any]) -> Any: ...


class NullTelemetrySink:
    """Discards everything."""

    def report_error(self, error: ClassifiedError) -> None:
        return None

    def report_metrics(self, source: str, metrics: Mapping[str, Any]) -> None:
        return None


class LoggingTelemetrySink:
    """Writes reports to the structured log."""

    def report_error(self, error: ClassifiedError) -> None:
        _logger.info("telemetry.error", **error.to_dict())

    def report_metrics(self, source: str, metrics: Mapping[str, Any]) -> None:
        _logger.debug("telemetry.metrics", source=source, **dict(metrics))


class SafeTelemetry:
    """Never-throwing, never-blocking wrapper around a TelemetrySink."""

    def __init__(self, sink: TelemetrySink | None = None) -> None:
        self.sink: TelemetrySink = sink or NullTelemetrySink()
        self.failures = 0
        self._pending: set[asyncio.Future[Any]] = set()

    def report_error(self, error: ClassifiedError) -> None:
        self._dispatch("report_error", error)

    def report_metrics(self, source: str, metrics: Mapping[str, Any]) -> None:
        self._dispatch("report_metrics", source, dict(metrics))

    def _dispatch(self, method: str, *args: Any) -> None:
        try:
            outcome = getattr(self.sink, method)(*args)
        except Exception:
            self._record_failure(method)
            return
        if inspect.isawaitable(outcome):
            try:
                future = asyncio.ensure_future(outcome, loop=asyncio.get_running_loop())
            except RuntimeError:
                # No running loop to host the coroutine
                if inspect.iscoroutine(outcome):
                    outcome.close()
                self._record_failure(method)
                return
            self._pending.add(future)
            future.add_done_callback(lambda f: self._settled(method, f))

    def _settled(self, method: str, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        if future.exception() is not None:
            self._record_failure(method, future.exception())

    def _record_failure(self, method: str, exc: BaseException | None = None) -> None:
        self.failures += 1
        if exc is None:
            _logger.warning("telemetry.sink_failed", method=method, exc_info=True)
        else:
            _logger.warning(
                "telemetry.sink_failed",
                method=method,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for scheduled asynchronous reports to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "LoggingTelemetrySink",
    "NullTelemetrySink",
    "SafeTelemetry",
    "TelemetrySink",
]
