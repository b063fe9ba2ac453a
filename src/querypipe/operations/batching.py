"""Request batching: timing windows, similarity grouping and metrics.

Requests are queued for up to ``batch_timeout_seconds``. The queue flushes
immediately once it holds ``max_batch_size`` items; otherwise a single
timer, shared by every queued item, flushes it when the window closes.

On flush, items are grouped by similarity (operation name + query-hash
prefix) when intelligent batching is on, or kept as one priority-ordered
group otherwise. Single-item groups, and every group when no batch executor
is available, are forwarded individually. Multi-item groups go through the
batch executor as one call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from querypipe.core.config import BatchingConfig
from querypipe.core.constants import BATCH_SIMILARITY_HASH_CHARS
from querypipe.core.logging import get_logger
from querypipe.execution.scheduling import AsyncioScheduler, Scheduler, TimerHandle
from querypipe.telemetry import SafeTelemetry

from .dedup import RequestDeduplicator
from .request import ExecutionResult, GraphQLRequest

_logger = get_logger("batching")

Forward = Callable[[GraphQLRequest], Awaitable[ExecutionResult]]
BatchExecutor = Callable[[Sequence[GraphQLRequest]], Awaitable[Sequence[ExecutionResult]]]

# Estimated round-trip share saved per request that joins a batch
_SAVINGS_PER_BATCHED_REQUEST = 0.1
_GAIN_PER_SAVING = 0.5


@dataclass
class BatchedOperation:
    """One queued request awaiting flush."""

    request: GraphQLRequest
    future: asyncio.Future[ExecutionResult]
    forward: Forward
    timestamp: float
    priority: int


@dataclass
class BatchMetrics:
    """Reporting-only counters. Never consulted for control flow."""

    total_requests: int = 0
    batched_requests: int = 0
    """Requests flushed in a group of two or more."""

    deduplicated_requests: int = 0
    flushes: int = 0
    average_batch_size: float = 0.0
    average_wait_time: float = 0.0
    """Mean seconds between enqueue and flush."""

    network_savings: float = 0.0
    performance_gain: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PerformanceReport:
    metrics: BatchMetrics
    batching_rate: float
    deduplication_rate: float
    network_efficiency: float
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "efficiency": {
                "batching_rate": self.batching_rate,
                "deduplication_rate": self.deduplication_rate,
                "network_efficiency": self.network_efficiency,
            },
            "recommendations": list(self.recommendations),
        }


class RequestBatcher:
    """Queues requests and flushes them in similarity groups.

    Args:
        config: Window size, timeout and grouping mode.
        scheduler: Timer source for the flush window.
        deduplicator: Joins identical in-flight queries before queueing.
        batch_executor: Sends a multi-item group as one call. When None,
            group members are forwarded individually.
        telemetry: Receives metrics after every flush.
    """

    def __init__(
        self,
        config: BatchingConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        deduplicator: RequestDeduplicator | None = None,
        batch_executor: BatchExecutor | None = None,
        telemetry: SafeTelemetry | None = None,
    ) -> None:
        self.config = config or BatchingConfig()
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.deduplicator = deduplicator
        self.batch_executor = batch_executor
        self.telemetry = telemetry or SafeTelemetry()
        self.metrics = BatchMetrics()

        self._queue: list[BatchedOperation] = []
        self._timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._waited_items = 0

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    # ─── Entry point ──────────────────────────────────────────────────

    async def add_to_batch(self, request: GraphQLRequest, forward: Forward) -> ExecutionResult:
        """Queue ``request`` and wait for its result.

        ``forward`` executes the request when it is flushed individually.
        Cancelling the caller removes only its own queue entry.
        """
        self.metrics.total_requests += 1
        dedup = self.deduplicator
        if self.config.deduplicate and dedup is not None and dedup.is_eligible(request):
            if dedup.is_in_flight(request):
                self.metrics.deduplicated_requests += 1
            return await dedup.deduplicate(request, lambda: self._enqueue(request, forward))
        return await self._enqueue(request, forward)

    async def _enqueue(self, request: GraphQLRequest, forward: Forward) -> ExecutionResult:
        op = BatchedOperation(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            forward=forward,
            timestamp=self.scheduler.now(),
            priority=request.priority,
        )
        self._queue.append(op)
        if len(self._queue) >= self.config.max_batch_size:
            self._flush_now(reason="max_size")
        elif self._timer is None:
            self._timer = self.scheduler.call_later(
                self.config.batch_timeout_seconds, self._on_timer
            )
        try:
            return await op.future
        except asyncio.CancelledError:
            self._withdraw(op)
            raise

    def _withdraw(self, op: BatchedOperation) -> None:
        try:
            self._queue.remove(op)
        except ValueError:
            return
        _logger.debug("batch.withdrawn", operation_name=op.request.name, queued=len(self._queue))
        if not self._queue:
            self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_now(reason="timeout")

    # ─── Flush ────────────────────────────────────────────────────────

    def flush(self) -> list[asyncio.Task[None]]:
        """Flush the queue now. Returns the tasks executing the groups."""
        return self._flush_now(reason="explicit")

    def _flush_now(self, reason: str) -> list[asyncio.Task[None]]:
        # Runs without suspension: the queue is swapped out in one step
        self._cancel_timer()
        ops = [op for op in self._queue if not op.future.done()]
        self._queue = []
        if not ops:
            return []

        groups = self._group(ops)
        tasks: list[asyncio.Task[None]] = []
        for members in groups.values():
            if len(members) > 1 and self.batch_executor is not None:
                tasks.append(self._spawn(self._run_group(members, self.batch_executor)))
            else:
                for op in members:
                    tasks.append(self._spawn(self._run_single(op)))

        self._record_flush(ops, groups)
        _logger.debug(
            "batch.flushed",
            reason=reason,
            size=len(ops),
            groups=len(groups),
        )
        return tasks

    def _group(self, ops: list[BatchedOperation]) -> dict[str, list[BatchedOperation]]:
        if not self.config.intelligent:
            return {"all": sorted(ops, key=lambda op: op.priority, reverse=True)}
        groups: dict[str, list[BatchedOperation]] = {}
        for op in ops:
            groups.setdefault(self.similarity_key(op.request), []).append(op)
        return groups

    @staticmethod
    def similarity_key(request: GraphQLRequest) -> str:
        prefix = request.query_hash[:BATCH_SIMILARITY_HASH_CHARS]
        return f"{request.name or 'anonymous'}_{prefix}"

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_single(self, op: BatchedOperation) -> None:
        if op.future.done():
            return
        current = asyncio.current_task()
        # A caller that gives up after flush stops its own execution
        if current is not None:
            op.future.add_done_callback(lambda f: current.cancel() if f.cancelled() else None)
        try:
            result = await op.forward(op.request)
        except asyncio.CancelledError:
            op.future.cancel()
            raise
        except Exception as exc:
            if not op.future.done():
                op.future.set_exception(exc)
            return
        if not op.future.done():
            op.future.set_result(result)

    async def _run_group(
        self, members: list[BatchedOperation], executor: BatchExecutor
    ) -> None:
        live = [op for op in members if not op.future.done()]
        if not live:
            return
        try:
            results = await executor([op.request for op in live])
            if len(results) != len(live):
                raise ValueError(
                    f"Batch executor returned {len(results)} results for {len(live)} requests"
                )
        except asyncio.CancelledError:
            for op in live:
                op.future.cancel()
            raise
        except Exception as exc:
            _logger.warning(
                "batch.execute_failed",
                size=len(live),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            for op in live:
                if not op.future.done():
                    op.future.set_exception(exc)
            return
        for op, result in zip(live, results, strict=True):
            if not op.future.done():
                op.future.set_result(result)

    # ─── Metrics ──────────────────────────────────────────────────────

    def _record_flush(
        self,
        ops: list[BatchedOperation],
        groups: dict[str, list[BatchedOperation]],
    ) -> None:
        m = self.metrics
        now = self.scheduler.now()
        size = len(ops)

        m.flushes += 1
        m.average_batch_size += (size - m.average_batch_size) / m.flushes
        for op in ops:
            self._waited_items += 1
            m.average_wait_time += (now - op.timestamp - m.average_wait_time) / self._waited_items
        m.batched_requests += sum(len(g) for g in groups.values() if len(g) > 1)

        savings = max(0.0, (size - 1) * _SAVINGS_PER_BATCHED_REQUEST)
        m.network_savings += savings
        m.performance_gain += savings * _GAIN_PER_SAVING

        self.telemetry.report_metrics("batching", m.to_dict())

    def performance_report(self) -> PerformanceReport:
        m = self.metrics
        total = m.total_requests
        batching_rate = m.batched_requests / total if total else 0.0
        dedup_rate = m.deduplicated_requests / total if total else 0.0
        efficiency = m.network_savings / total if total else 0.0

        recommendations: list[str] = []
        if batching_rate < 0.3:
            recommendations.append("Consider increasing batch timeout to improve batching rate")
        if dedup_rate < 0.1:
            recommendations.append("Review query patterns to identify deduplication opportunities")
        if m.average_wait_time > 0.2:
            recommendations.append("Reduce batch timeout to improve response times")
        if efficiency < 0.05:
            recommendations.append("Optimize query structure for better batching efficiency")

        return PerformanceReport(
            metrics=BatchMetrics(**m.to_dict()),
            batching_rate=batching_rate,
            deduplication_rate=dedup_rate,
            network_efficiency=efficiency,
            recommendations=recommendations,
        )

    def reset_metrics(self) -> None:
        self.metrics = BatchMetrics()
        self._waited_items = 0

    # ─── Shutdown ─────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Flush anything still queued and wait for in-flight groups."""
        self._flush_now(reason="close")
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "BatchExecutor",
    "BatchMetrics",
    "BatchedOperation",
    "Forward",
    "PerformanceReport",
    "RequestBatcher",
]
