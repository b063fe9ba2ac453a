"""Shared test doubles for querypipe tests."""

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from querypipe.core.errors import (
    ClassifiedError,
    FailureError,
    ProtocolFailure,
    TransportFailure,
)
from querypipe.operations import ExecutionResult, GraphQLRequest

Outcome = ExecutionResult | BaseException | Callable[[GraphQLRequest], ExecutionResult]


def ok(data: dict[str, Any]) -> ExecutionResult:
    return ExecutionResult(data=data)


def http_error(status: int) -> FailureError:
    return FailureError(TransportFailure(message=f"HTTP {status}", status=status))


def protocol_error(code: str, message: str = "failed") -> FailureError:
    return FailureError(ProtocolFailure(code=code, message=message))


class ScriptedTransport:
    """Transport replaying a script of outcomes.

    Each call consumes the next outcome; the last one repeats forever.
    Outcomes may be results, exceptions, or callables of the request.
    """

    def __init__(self, *outcomes: Outcome) -> None:
        if not outcomes:
            raise ValueError("ScriptedTransport needs at least one outcome")
        self.outcomes = list(outcomes)
        self.requests: list[GraphQLRequest] = []
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next(self, request: GraphQLRequest) -> ExecutionResult:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, ExecutionResult):
            return outcome
        return outcome(request)

    async def execute(self, request: GraphQLRequest) -> ExecutionResult:
        await asyncio.sleep(0)
        return self._next(request)

    async def aclose(self) -> None:
        self.closed = True


class ScriptedBatchTransport(ScriptedTransport):
    """ScriptedTransport that also accepts wire batches."""

    def __init__(self, *outcomes: Outcome) -> None:
        super().__init__(*outcomes)
        self.batches: list[list[GraphQLRequest]] = []

    async def execute_batch(self, requests: Sequence[GraphQLRequest]) -> list[ExecutionResult]:
        await asyncio.sleep(0)
        self.batches.append(list(requests))
        return [self._next(r) for r in requests]


class FakeTokenProvider:
    """In-memory TokenProvider.

    ``gate``, when set, holds every refresh until the event is set.
    """

    def __init__(
        self,
        token: str | None = "access-1",
        refreshed: str | None = "access-2",
        *,
        expired: bool = False,
        fail_with: Exception | None = None,
    ) -> None:
        self.token = token
        self.refreshed = refreshed
        self.expired = expired
        self.fail_with = fail_with
        self.gate: asyncio.Event | None = None
        self.refresh_calls = 0
        self.cleared = 0

    async def get_access_token(self) -> str | None:
        return self.token

    def is_expired(self, token: str) -> bool:
        return self.expired

    async def refresh_access_token(self) -> str | None:
        self.refresh_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        if self.refreshed:
            self.token = self.refreshed
            self.expired = False
        return self.refreshed

    async def clear_tokens(self) -> None:
        self.cleared += 1
        self.token = None


class RecordingSink:
    """TelemetrySink that keeps everything it is given."""

    def __init__(self) -> None:
        self.errors: list[ClassifiedError] = []
        self.metrics: list[tuple[str, dict[str, Any]]] = []

    def report_error(self, error: ClassifiedError) -> None:
        self.errors.append(error)

    def report_metrics(self, source: str, metrics: dict[str, Any]) -> None:
        self.metrics.append((source, dict(metrics)))
