"""Error-notification events for UI and state layers.

The pipeline publishes one ErrorNotification per surfaced failure and per
scheduled retry. Subscribers may be sync or async callables; a failing
subscriber is logged and, after repeated consecutive failures, disabled.
Publishing never raises.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from querypipe.core.errors import ClassifiedError, ErrorKind, Severity
from querypipe.core.logging import get_logger
from querypipe.execution.recovery import HandlerResult

_logger = get_logger("events")

_MAX_CONSECUTIVE_FAILURES = 10


@dataclass(frozen=True)
class ErrorNotification:
    """What a user-facing layer needs to render a failure."""

    kind: ErrorKind
    severity: Severity
    user_message: str
    retryable: bool
    actions: tuple[str, ...] = ()
    error_id: str | None = None
    retry_delay: float | None = None
    """Seconds until the next attempt, for "retrying in Ns" messages."""

    redirect_to: str | None = None
    terminal: bool = True
    """False while the pipeline is still retrying."""

    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_recovery(
        cls,
        error: ClassifiedError,
        result: HandlerResult,
    ) -> ErrorNotification:
        return cls(
            kind=error.kind,
            severity=error.severity,
            user_message=result.user_message or error.user_message,
            retryable=error.retryable,
            actions=tuple(result.actions),
            error_id=error.id,
            retry_delay=result.retry_delay,
            redirect_to=result.redirect_to,
            terminal=not result.should_retry,
            metadata={"operation_name": error.context.operation_name, "code": error.code},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "actions": list(self.actions),
            "error_id": self.error_id,
            "retry_delay": self.retry_delay,
            "redirect_to": self.redirect_to,
            "terminal": self.terminal,
            "metadata": dict(self.metadata),
        }


EventFilter = Callable[[ErrorNotification], bool] | None
EventCallback = Callable[[ErrorNotification], Any]


class _Subscriber:
    __slots__ = ("callback", "event_filter", "consecutive_failures")

    def __init__(self, callback: EventCallback, event_filter: EventFilter) -> None:
        self.callback = callback
        self.event_filter = event_filter
        self.consecutive_failures: int = 0


class ErrorEventBus:
    """In-process pub/sub for ErrorNotification.

    Usage::

        bus = ErrorEventBus()
        sub_id = bus.subscribe(show_toast, event_filter=lambda n: n.terminal)
        await bus.publish(notification)
        bus.unsubscribe(sub_id)
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, _Subscriber] = {}
        self.published = 0

    def subscribe(
        self,
        callback: EventCallback,
        *,
        event_filter: EventFilter = None,
    ) -> str:
        """Register a subscriber and return its subscription id."""
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = _Subscriber(callback, event_filter)
        _logger.debug("events.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        removed = self._subscribers.pop(sub_id, None) is not None
        if removed:
            _logger.debug("events.unsubscribed", sub_id=sub_id)
        return removed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, notification: ErrorNotification) -> int:
        """Deliver to every matching subscriber; returns how many received it."""
        self.published += 1
        delivered = 0
        for sub_id, sub in list(self._subscribers.items()):
            if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(notification):
                    continue
            except Exception:
                _logger.warning(
                    "events.filter_error",
                    subscriber_id=sub_id,
                    kind=notification.kind.value,
                    exc_info=True,
                )
                continue
            try:
                result = sub.callback(notification)
                if asyncio.iscoroutine(result):
                    await result
                sub.consecutive_failures = 0
                delivered += 1
            except Exception:
                sub.consecutive_failures += 1
                _logger.warning(
                    "events.subscriber_error",
                    subscriber_id=sub_id,
                    kind=notification.kind.value,
                    consecutive_failures=sub.consecutive_failures,
                    exc_info=True,
                )
                if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                    _logger.error(
                        "events.subscriber_disabled",
                        subscriber_id=sub_id,
                        reason=f"{_MAX_CONSECUTIVE_FAILURES} consecutive failures",
                    )
        return delivered


__all__ = ["ErrorEventBus", "ErrorNotification", "EventCallback", "EventFilter"]
