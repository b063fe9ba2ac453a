"""Request and result models shared by every pipeline stage."""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from graphql import DocumentNode, GraphQLError, OperationDefinitionNode, parse, print_ast

from querypipe.core.constants import (
    PRIORITY_MUTATION,
    PRIORITY_QUERY,
    PRIORITY_SUBSCRIPTION,
)
from querypipe.core.errors import FailureError, ProtocolFailure


class OperationType(str, Enum):
    QUERY = "query"
    MUTATION = "mutation"
    SUBSCRIPTION = "subscription"


_PRIORITIES: dict[OperationType, int] = {
    OperationType.MUTATION: PRIORITY_MUTATION,
    OperationType.SUBSCRIPTION: PRIORITY_SUBSCRIPTION,
    OperationType.QUERY: PRIORITY_QUERY,
}


def _stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class GraphQLRequest:
    """One outbound operation.

    The document is parsed lazily and cached. A document that fails to parse
    raises FailureError carrying a ``GRAPHQL_PARSE_FAILED`` protocol failure,
    so a malformed query classifies as a validation error.
    """

    query: str
    variables: dict[str, Any] = field(default_factory=dict)
    operation_name: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    context: dict[str, Any] = field(default_factory=dict)
    """Caller-supplied metadata; forwarded to error context, never sent."""

    _document: DocumentNode | None = field(default=None, init=False, repr=False, compare=False)

    @property
    def document(self) -> DocumentNode:
        if self._document is None:
            try:
                self._document = parse(self.query)
            except GraphQLError as exc:
                raise FailureError(
                    ProtocolFailure(code="GRAPHQL_PARSE_FAILED", message=exc.message)
                ) from exc
        return self._document

    @property
    def operation(self) -> OperationDefinitionNode:
        """The operation definition selected by ``operation_name``."""
        operations = [
            d for d in self.document.definitions if isinstance(d, OperationDefinitionNode)
        ]
        if self.operation_name is not None:
            for op in operations:
                if op.name is not None and op.name.value == self.operation_name:
                    return op
            raise FailureError(
                ProtocolFailure(
                    code="GRAPHQL_VALIDATION_FAILED",
                    message=f"Unknown operation named '{self.operation_name}'.",
                )
            )
        if len(operations) != 1:
            raise FailureError(
                ProtocolFailure(
                    code="GRAPHQL_VALIDATION_FAILED",
                    message="Must provide operation name if query contains multiple operations.",
                )
            )
        return operations[0]

    @property
    def operation_type(self) -> OperationType:
        return OperationType(self.operation.operation.value)

    @property
    def name(self) -> str | None:
        """Explicit operation name, else the name declared in the document."""
        if self.operation_name:
            return self.operation_name
        op = self.operation
        return op.name.value if op.name is not None else None

    @property
    def priority(self) -> int:
        return _PRIORITIES[self.operation_type]

    @property
    def normalized_query(self) -> str:
        """Canonical printed document; whitespace and comments do not matter."""
        return print_ast(self.document)

    @property
    def query_hash(self) -> str:
        return hashlib.sha256(self.normalized_query.encode()).hexdigest()

    @property
    def dedup_key(self) -> str:
        """Stable identity of (operation name, normalized query, variables)."""
        digest = hashlib.sha256(
            f"{self.normalized_query}\n{_stable_json(self.variables)}".encode()
        ).hexdigest()
        return f"{self.name or 'anonymous'}:{digest}"

    def has_directive(self, name: str) -> bool:
        """Whether the selected operation carries ``@name``."""
        return any(d.name.value == name for d in self.operation.directives or ())

    def with_query(self, query: str) -> GraphQLRequest:
        """Copy with a different document; identity and variables are kept."""
        return replace(self, query=query)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": self.query, "variables": self.variables}
        if self.operation_name:
            payload["operationName"] = self.operation_name
        return payload


@dataclass
class ExecutionResult:
    """Response body of one operation."""

    data: dict[str, Any] | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    extensions: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> ExecutionResult:
        """Build from a decoded response body.

        Raises:
            ValueError: If ``payload`` is not a response object.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Expected a response object, got {type(payload).__name__}")
        if "data" not in payload and "errors" not in payload:
            raise ValueError("Response has neither 'data' nor 'errors'")
        return cls(
            data=payload.get("data"),
            errors=list(payload.get("errors") or []),
            extensions=dict(payload.get("extensions") or {}),
        )

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"data": self.data}
        if self.errors:
            result["errors"] = self.errors
        if self.extensions:
            result["extensions"] = self.extensions
        return result


__all__ = ["ExecutionResult", "GraphQLRequest", "OperationType"]
