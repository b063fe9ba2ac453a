"""Single-flight sharing of identical in-flight read operations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any, TypeVar

from querypipe.core.logging import get_logger

from .request import GraphQLRequest, OperationType

_logger = get_logger("dedup")

T = TypeVar("T")


class _InFlight:
    __slots__ = ("task", "subscribers")

    def __init__(self, task: asyncio.Future[Any]) -> None:
        self.task = task
        self.subscribers = 0


class RequestDeduplicator:
    """Shares one execution among identical concurrent queries.

    Only plain queries are eligible; mutations, subscriptions and ``@live``
    queries always execute on their own. The shared execution is removed from
    the in-flight map as soon as it settles, successfully or not, so a failed
    request never blocks later identical ones.

    A caller that is cancelled only detaches itself. The shared execution is
    cancelled when its last caller detaches.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._in_flight: dict[str, _InFlight] = {}
        self.total_requests = 0
        self.deduplicated_requests = 0
        self.executions = 0

    def is_eligible(self, request: GraphQLRequest) -> bool:
        if not self.enabled:
            return False
        return request.operation_type is OperationType.QUERY and not request.has_directive("live")

    def is_in_flight(self, request: GraphQLRequest) -> bool:
        entry = self._in_flight.get(request.dedup_key)
        return entry is not None and not entry.task.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def deduplicate(
        self,
        request: GraphQLRequest,
        execute: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``execute`` or join an identical execution already in flight."""
        self.total_requests += 1
        if not self.is_eligible(request):
            self.executions += 1
            return await execute()

        key = request.dedup_key
        entry = self._in_flight.get(key)
        if entry is None or entry.task.done():
            entry = _InFlight(asyncio.ensure_future(execute()))
            self._in_flight[key] = entry
            entry.task.add_done_callback(partial(self._settled, key, entry))
            self.executions += 1
        else:
            self.deduplicated_requests += 1
            _logger.debug(
                "dedup.joined",
                operation_name=request.name,
                subscribers=entry.subscribers + 1,
            )

        entry.subscribers += 1
        try:
            return await asyncio.shield(entry.task)
        finally:
            entry.subscribers -= 1
            if entry.subscribers == 0 and not entry.task.done():
                _logger.debug("dedup.abandoned", operation_name=request.name)
                entry.task.cancel()

    def _settled(self, key: str, entry: _InFlight, task: asyncio.Future[Any]) -> None:
        if self._in_flight.get(key) is entry:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark retrieved; subscribers already received it through shield()
            task.exception()

    def metrics(self) -> dict[str, int]:
        return {
            "total_requests": self.total_requests,
            "deduplicated_requests": self.deduplicated_requests,
            "executions": self.executions,
            "in_flight": self.in_flight,
        }

    def reset_metrics(self) -> None:
        self.total_requests = 0
        self.deduplicated_requests = 0
        self.executions = 0

    def clear(self) -> None:
        """Forget in-flight entries without cancelling them."""
        self._in_flight.clear()


__all__ = ["RequestDeduplicator"]
