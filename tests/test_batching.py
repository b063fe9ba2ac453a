"""Tests for the request batcher.

Covers:
- Flush triggers: max size, timeout window, explicit flush, close
- Grouping: similarity keys, priority ordering, batch executor
- Cancellation of queued requests
- Metrics and performance reports
"""

import asyncio
from collections.abc import Sequence

import pytest

from querypipe.core.config import BatchingConfig
from querypipe.execution.scheduling import VirtualScheduler
from querypipe.operations import (
    ExecutionResult,
    GraphQLRequest,
    RequestBatcher,
    RequestDeduplicator,
)
from querypipe.telemetry import SafeTelemetry

from tests.helpers import RecordingSink


# ─── Helpers ──────────────────────────────────────────────────────────

USER_QUERY = "query GetUser($id: ID!) { user(id: $id) { id name } }"
COURSE_QUERY = "query GetCourse($id: ID!) { course(id: $id) { id title } }"


def _user(user_id: str) -> GraphQLRequest:
    return GraphQLRequest(USER_QUERY, {"id": user_id})


class _Forwarder:
    """Records individually forwarded requests."""

    def __init__(self) -> None:
        self.requests: list[GraphQLRequest] = []

    async def __call__(self, request: GraphQLRequest) -> ExecutionResult:
        self.requests.append(request)
        return ExecutionResult(data={"id": request.variables.get("id")})


class _BatchExecutor:
    """Records groups sent as one batch."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.batches: list[list[GraphQLRequest]] = []
        self.fail_with = fail_with

    async def __call__(self, requests: Sequence[GraphQLRequest]) -> list[ExecutionResult]:
        self.batches.append(list(requests))
        if self.fail_with is not None:
            raise self.fail_with
        return [ExecutionResult(data={"id": r.variables.get("id")}) for r in requests]


def _batcher(scheduler: VirtualScheduler, **config) -> RequestBatcher:
    return RequestBatcher(BatchingConfig(**config), scheduler=scheduler)


# ─── Flush triggers ───────────────────────────────────────────────────


class TestFlushTriggers:
    """When the queue is flushed."""

    @pytest.mark.asyncio
    async def test_full_queue_flushes_immediately(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler, max_batch_size=3)
        forward = _Forwarder()
        tasks = [
            asyncio.ensure_future(batcher.add_to_batch(_user(str(i)), forward)) for i in range(3)
        ]
        await scheduler.settle()

        assert all(t.done() for t in tasks)
        assert [t.result().data["id"] for t in tasks] == ["0", "1", "2"]
        assert batcher.queue_size == 0
        assert batcher.timer_armed is False
        assert scheduler.now() == 0.0

    @pytest.mark.asyncio
    async def test_single_request_waits_for_window(self, scheduler: VirtualScheduler) -> None:
        """One request flushes only when the timeout elapses."""
        batcher = _batcher(scheduler, batch_timeout_seconds=0.1)
        forward = _Forwarder()
        task = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        await scheduler.settle()
        assert batcher.queue_size == 1
        assert batcher.timer_armed is True

        await scheduler.advance(0.05)
        assert not task.done()
        await scheduler.advance(0.05)
        assert task.done()
        assert task.result().data == {"id": "1"}
        assert len(forward.requests) == 1

    @pytest.mark.asyncio
    async def test_one_timer_for_the_whole_queue(self, scheduler: VirtualScheduler) -> None:
        """Later arrivals do not extend the window."""
        batcher = _batcher(scheduler, batch_timeout_seconds=0.1)
        forward = _Forwarder()
        first = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        await scheduler.advance(0.05)
        second = asyncio.ensure_future(batcher.add_to_batch(_user("2"), forward))
        await scheduler.advance(0.05)
        assert first.done() and second.done()
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_explicit_flush(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler)
        forward = _Forwarder()
        task = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        await scheduler.settle()
        await asyncio.gather(*batcher.flush())
        assert (await task).data == {"id": "1"}
        assert batcher.flush() == []

    @pytest.mark.asyncio
    async def test_aclose_flushes(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler)
        forward = _Forwarder()
        task = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        await scheduler.settle()
        await batcher.aclose()
        await scheduler.settle()
        assert task.done()


# ─── Grouping ─────────────────────────────────────────────────────────


class TestGrouping:
    """Similarity grouping and the batch executor."""

    @pytest.mark.asyncio
    async def test_similar_requests_share_a_batch(self, scheduler: VirtualScheduler) -> None:
        executor = _BatchExecutor()
        batcher = RequestBatcher(BatchingConfig(), scheduler=scheduler, batch_executor=executor)
        forward = _Forwarder()
        tasks = [
            asyncio.ensure_future(batcher.add_to_batch(_user(str(i)), forward)) for i in range(3)
        ]
        await scheduler.advance(0.1)

        assert len(executor.batches) == 1
        assert [r.variables["id"] for r in executor.batches[0]] == ["0", "1", "2"]
        assert forward.requests == []
        assert [t.result().data["id"] for t in tasks] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_different_operations_are_split(self, scheduler: VirtualScheduler) -> None:
        """Single-member groups go through the individual forward path."""
        executor = _BatchExecutor()
        batcher = RequestBatcher(BatchingConfig(), scheduler=scheduler, batch_executor=executor)
        forward = _Forwarder()
        user = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        course = asyncio.ensure_future(
            batcher.add_to_batch(GraphQLRequest(COURSE_QUERY, {"id": "c1"}), forward)
        )
        await scheduler.advance(0.1)

        assert executor.batches == []
        assert len(forward.requests) == 2
        assert user.done() and course.done()

    def test_similarity_key(self) -> None:
        key = RequestBatcher.similarity_key(_user("1"))
        assert key.startswith("GetUser_")
        assert key == RequestBatcher.similarity_key(_user("2"))
        assert len(key) == len("GetUser_") + 8

    @pytest.mark.asyncio
    async def test_plain_batching_orders_by_priority(self, scheduler: VirtualScheduler) -> None:
        executor = _BatchExecutor()
        batcher = RequestBatcher(
            BatchingConfig(intelligent=False),
            scheduler=scheduler,
            batch_executor=executor,
        )
        forward = _Forwarder()
        query = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        mutation = asyncio.ensure_future(
            batcher.add_to_batch(GraphQLRequest("mutation Save { save { id } }"), forward)
        )
        await scheduler.advance(0.1)

        assert len(executor.batches) == 1
        names = [r.name for r in executor.batches[0]]
        assert names == ["Save", "GetUser"]
        assert query.done() and mutation.done()

    @pytest.mark.asyncio
    async def test_batch_failure_reaches_every_member(self, scheduler: VirtualScheduler) -> None:
        executor = _BatchExecutor(fail_with=RuntimeError("batch rejected"))
        batcher = RequestBatcher(BatchingConfig(), scheduler=scheduler, batch_executor=executor)
        forward = _Forwarder()
        tasks = [
            asyncio.ensure_future(batcher.add_to_batch(_user(str(i)), forward)) for i in range(2)
        ]
        await scheduler.advance(0.1)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)

    @pytest.mark.asyncio
    async def test_forward_failure_is_isolated(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler)

        async def forward(request: GraphQLRequest) -> ExecutionResult:
            if request.variables["id"] == "bad":
                raise RuntimeError("boom")
            return ExecutionResult(data={"ok": True})

        good = asyncio.ensure_future(batcher.add_to_batch(_user("good"), forward))
        bad = asyncio.ensure_future(batcher.add_to_batch(_user("bad"), forward))
        await scheduler.advance(0.1)
        assert (await good).data == {"ok": True}
        with pytest.raises(RuntimeError, match="boom"):
            await bad


# ─── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    """A cancelled caller only removes its own entry."""

    @pytest.mark.asyncio
    async def test_cancel_before_flush(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler)
        forward = _Forwarder()
        keep = asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward))
        drop = asyncio.ensure_future(batcher.add_to_batch(_user("2"), forward))
        await scheduler.settle()
        assert batcher.queue_size == 2

        drop.cancel()
        await scheduler.settle()
        assert batcher.queue_size == 1
        assert batcher.timer_armed is True

        await scheduler.advance(0.1)
        assert keep.done()
        assert [r.variables["id"] for r in forward.requests] == ["1"]

    @pytest.mark.asyncio
    async def test_last_cancellation_disarms_timer(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler)
        task = asyncio.ensure_future(batcher.add_to_batch(_user("1"), _Forwarder()))
        await scheduler.settle()
        task.cancel()
        await scheduler.settle()
        assert batcher.queue_size == 0
        assert batcher.timer_armed is False
        assert scheduler.pending == 0


# ─── Deduplication inside the batcher ─────────────────────────────────


class TestBatcherDeduplication:
    """Identical queries join before queueing."""

    @pytest.mark.asyncio
    async def test_identical_requests_queue_once(self, scheduler: VirtualScheduler) -> None:
        batcher = RequestBatcher(
            BatchingConfig(),
            scheduler=scheduler,
            deduplicator=RequestDeduplicator(),
        )
        forward = _Forwarder()
        tasks = [
            asyncio.ensure_future(batcher.add_to_batch(_user("1"), forward)) for _ in range(3)
        ]
        await scheduler.settle()
        assert batcher.queue_size == 1

        await scheduler.advance(0.1)
        assert len(forward.requests) == 1
        assert all(t.result().data == {"id": "1"} for t in tasks)
        assert batcher.metrics.deduplicated_requests == 2


# ─── Metrics ──────────────────────────────────────────────────────────


class TestMetrics:
    """Reporting-only metrics."""

    @pytest.mark.asyncio
    async def test_flush_metrics(self, scheduler: VirtualScheduler, sink: RecordingSink) -> None:
        batcher = RequestBatcher(
            BatchingConfig(),
            scheduler=scheduler,
            telemetry=SafeTelemetry(sink),
        )
        forward = _Forwarder()
        for i in range(3):
            asyncio.ensure_future(batcher.add_to_batch(_user(str(i)), forward))
        await scheduler.advance(0.1)

        m = batcher.metrics
        assert m.total_requests == 3
        assert m.flushes == 1
        assert m.batched_requests == 3
        assert m.average_batch_size == 3.0
        assert m.average_wait_time == pytest.approx(0.1)
        assert m.network_savings == pytest.approx(0.2)
        assert m.performance_gain == pytest.approx(0.1)
        assert sink.metrics[-1][0] == "batching"
        assert sink.metrics[-1][1]["flushes"] == 1

    @pytest.mark.asyncio
    async def test_running_mean_of_batch_size(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler, max_batch_size=2)
        forward = _Forwarder()
        for i in range(2):
            asyncio.ensure_future(batcher.add_to_batch(_user(str(i)), forward))
        await scheduler.settle()
        asyncio.ensure_future(batcher.add_to_batch(_user("x"), forward))
        await scheduler.advance(0.1)
        assert batcher.metrics.flushes == 2
        assert batcher.metrics.average_batch_size == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_performance_report(self, scheduler: VirtualScheduler) -> None:
        batcher = _batcher(scheduler)
        asyncio.ensure_future(batcher.add_to_batch(_user("1"), _Forwarder()))
        await scheduler.advance(0.1)

        report = batcher.performance_report()
        assert report.batching_rate == 0.0
        assert "Consider increasing batch timeout to improve batching rate" in report.recommendations
        payload = report.to_dict()
        assert payload["metrics"]["total_requests"] == 1
        assert set(payload["efficiency"]) == {
            "batching_rate",
            "deduplication_rate",
            "network_efficiency",
        }

        batcher.reset_metrics()
        assert batcher.metrics.total_requests == 0
