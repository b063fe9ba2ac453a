"""Transport collaborator protocols.

A transport executes one request and returns its ExecutionResult, or raises
``FailureError`` carrying a ``TransportFailure`` (no usable HTTP response) or
``ProtocolFailure``. GraphQL ``errors`` in an otherwise valid response are
returned in the result, not raised; the pipeline decides what they mean.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from querypipe.operations.request import ExecutionResult, GraphQLRequest


@runtime_checkable
class Transport(Protocol):
    async def execute(self, request: GraphQLRequest) -> ExecutionResult: ...


@runtime_checkable
class BatchTransport(Transport, Protocol):
    """Transport able to send several operations in one round trip."""

    async def execute_batch(
        self, requests: Sequence[GraphQLRequest]
    ) -> Sequence[ExecutionResult]:
        """Results in request order, one per request."""
        ...


__all__ = ["BatchTransport", "Transport"]
