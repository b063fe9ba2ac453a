"""Exception hierarchy for querypipe."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from querypipe.execution.recovery import HandlerResult

    from .codes import ErrorKind, Severity
    from .failures import Failure
    from .models import ClassifiedError


class QueryPipeError(Exception):
    """Base class for all querypipe errors."""


class ConfigurationError(QueryPipeError):
    """Configuration file is missing, unparsable, or invalid."""


class FailureError(QueryPipeError):
    """Raised by transports and pipeline stages to carry a typed failure."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure


class PipelineError(QueryPipeError):
    """Terminal, user-visible failure of a pipeline request.

    Raised only after classification and recovery have run and recovery did
    not produce a retry.
    """

    def __init__(self, error: ClassifiedError, result: HandlerResult) -> None:
        super().__init__(result.user_message or error.user_message)
        self.error = error
        self.result = result

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def severity(self) -> Severity:
        return self.error.severity

    @property
    def user_message(self) -> str:
        return self.result.user_message or self.error.user_message

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    @property
    def retry_delay(self) -> float | None:
        return self.result.retry_delay

    @property
    def redirect_to(self) -> str | None:
        return self.result.redirect_to

    @property
    def actions(self) -> list[str]:
        return list(self.result.actions)


__all__ = [
    "ConfigurationError",
    "FailureError",
    "PipelineError",
    "QueryPipeError",
]
