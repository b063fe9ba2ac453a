"""Data models for error classification.

This module provides:
- ErrorContext: Request correlation data attached to a classified error
- ClassifiedError: Immutable classification of one observed failure
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from querypipe.core.logging import redact
from querypipe.utils.time import utc_now

from .codes import ErrorCategory, ErrorKind, Severity
from .failures import Failure


def new_error_id() -> str:
    """Generate an opaque identifier for one classification."""
    return f"err_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class ErrorContext:
    """Where a failure happened.

    Variables are redacted of sensitive keys on construction via
    :meth:`build`; constructing directly keeps them as given.
    """

    operation_name: str | None = None
    """GraphQL operation name."""

    variables: Mapping[str, Any] = field(default_factory=dict)
    """Operation variables with sensitive keys redacted."""

    request_id: str | None = None
    """Correlation id of the pipeline invocation; retry state is keyed on it."""

    metadata: Mapping[str, Any] = field(default_factory=dict)
    """Free-form data, also available to user-message interpolation."""

    @classmethod
    def build(
        cls,
        operation_name: str | None = None,
        variables: Mapping[str, Any] | None = None,
        request_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ErrorContext:
        return cls(
            operation_name=operation_name,
            variables=redact(dict(variables or {})),
            request_id=request_id,
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "variables": dict(self.variables),
            "request_id": self.request_id,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ClassifiedError:
    """A failure with its classification and recovery metadata.

    Created once per observed failure by the ErrorClassifier and never
    mutated. Category and default severity follow from ``kind``; transport
    failures may escalate severity by status class.
    """

    kind: ErrorKind
    category: ErrorCategory
    severity: Severity
    code: str
    """Protocol extension code, ``HTTP_<status>``, or runtime exception name."""

    message: str
    """Technical message."""

    user_message: str
    """Display message, already interpolated."""

    retryable: bool
    retry_delay: float
    """Suggested delay before the first retry (seconds)."""

    max_retries: int
    context: ErrorContext = field(default_factory=ErrorContext)
    failure: Failure | None = field(default=None, compare=False, repr=False)
    """The typed failure that was classified."""

    id: str = field(default_factory=new_error_id)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def status(self) -> int | None:
        """HTTP status for transport failures, None otherwise."""
        return getattr(self.failure, "status", None)

    @property
    def retry_key(self) -> str:
        """Key under which retry attempts for this failure are tracked."""
        return self.context.request_id or self.id

    def to_dict(self) -> dict[str, Any]:
        """Serialize for telemetry and event payloads."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "retry_delay": self.retry_delay,
            "max_retries": self.max_retries,
            "context": self.context.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


__all__ = [
    "ClassifiedError",
    "ErrorContext",
    "new_error_id",
]
