"""ErrorClassifier: typed failure -> ClassifiedError.

Classification is pure and deterministic apart from the generated id and
timestamp. Each failure origin has a dedicated entry point; ``classify``
dispatches on the failure variant.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Protocol

from querypipe.core.logging import get_logger

from .codes import (
    KIND_CATEGORY,
    KIND_RETRY_BEHAVIOR,
    KIND_SEVERITY,
    PROTOCOL_CODE_KINDS,
    PROTOCOL_CODE_SEVERITY,
    RETRYABLE_CLIENT_STATUSES,
    RETRYABLE_KINDS,
    UPLOAD_HIGH_SEVERITY_CODES,
    UPLOAD_LOW_SEVERITY_CODES,
    UPLOAD_NON_RETRYABLE_CODES,
    ErrorKind,
    RetryBehavior,
    Severity,
    kind_for_status,
    severity_for_status,
)
from .failures import (
    Failure,
    ProtocolFailure,
    RuntimeFailure,
    SubscriptionFailure,
    TransportFailure,
    UploadFailure,
    failure_from_exception,
)
from .messages import MessageCatalog
from .models import ClassifiedError, ErrorContext

_logger = get_logger("errors")


# =============================================================================
# Runtime-exception sniffing patterns, checked in order
# =============================================================================

_DEFAULT_NETWORK_PATTERNS: list[str] = [r"network", r"fetch"]
_DEFAULT_UPLOAD_PATTERNS: list[str] = [r"upload", r"file"]
_DEFAULT_SUBSCRIPTION_PATTERNS: list[str] = [r"subscription", r"socket"]
_DEFAULT_CACHE_PATTERNS: list[str] = [r"cache"]

# Fallback for Python connection errors whose text mentions none of the above
_DEFAULT_CONNECTION_PATTERNS: list[str] = [r"connect", r"timed? ?out"]


def _compile(strings: list[str]) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{s})" for s in strings), re.IGNORECASE)


class RetryOverrideLookup(Protocol):
    """Source of server-communicated retry behavior per error code."""

    def behavior_for(self, code: str, default: RetryBehavior) -> RetryBehavior: ...


# =============================================================================
# Error Classifier
# =============================================================================


class ErrorClassifier:
    """Classifies typed failures into ClassifiedError records.

    Args:
        messages: Catalog used to resolve user messages.
        retry_overrides: Optional server-communicated retry behavior per code;
            takes precedence over kind defaults.
        network_patterns: Override for runtime network-substring patterns.
    """

    def __init__(
        self,
        messages: MessageCatalog | None = None,
        retry_overrides: RetryOverrideLookup | None = None,
        network_patterns: list[str] | None = None,
    ) -> None:
        self.messages = messages or MessageCatalog()
        self.retry_overrides = retry_overrides
        self._runtime_patterns: list[tuple[ErrorKind, re.Pattern[str]]] = [
            (ErrorKind.NETWORK, _compile(network_patterns or _DEFAULT_NETWORK_PATTERNS)),
            (ErrorKind.UPLOAD, _compile(_DEFAULT_UPLOAD_PATTERNS)),
            (ErrorKind.SUBSCRIPTION, _compile(_DEFAULT_SUBSCRIPTION_PATTERNS)),
            (ErrorKind.CACHE, _compile(_DEFAULT_CACHE_PATTERNS)),
            (ErrorKind.NETWORK, _compile(_DEFAULT_CONNECTION_PATTERNS)),
        ]

    def classify(
        self,
        failure: Failure,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify any failure variant.

        Raises:
            TypeError: If ``failure`` is not one of the failure variants.
        """
        if isinstance(failure, ProtocolFailure):
            return self.classify_protocol_error(failure, context)
        if isinstance(failure, TransportFailure):
            return self.classify_transport_error(failure, context)
        if isinstance(failure, UploadFailure):
            return self.classify_upload_error(failure, context)
        if isinstance(failure, SubscriptionFailure):
            return self.classify_subscription_error(failure, context)
        if isinstance(failure, RuntimeFailure):
            return self.classify_runtime_error(failure, context)
        raise TypeError(f"Unsupported failure type: {type(failure).__name__}")

    def classify_exception(
        self,
        exc: BaseException,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify an exception, unwrapping a carried failure when present."""
        return self.classify(failure_from_exception(exc), context)

    def classify_protocol_error(
        self,
        failure: ProtocolFailure,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify by extension code; unrecognized codes become UNKNOWN."""
        code = failure.code or "UNKNOWN_ERROR"
        kind = PROTOCOL_CODE_KINDS.get(code, ErrorKind.UNKNOWN)
        return self._build(
            kind=kind,
            code=code,
            message=failure.message,
            failure=failure,
            context=context,
            severity=PROTOCOL_CODE_SEVERITY.get(code),
        )

    def classify_transport_error(
        self,
        failure: TransportFailure,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify by HTTP status; no status means a connection failure."""
        status = failure.status
        if status is None:
            kind = ErrorKind.NETWORK
            code = "NETWORK_ERROR"
            retryable = True
        else:
            kind = kind_for_status(status)
            code = f"HTTP_{status}"
            retryable = kind in RETRYABLE_KINDS
            if kind is ErrorKind.NETWORK and 400 <= status < 500:
                retryable = status in RETRYABLE_CLIENT_STATUSES
            if status >= 500:
                retryable = True
        return self._build(
            kind=kind,
            code=code,
            message=failure.message,
            failure=failure,
            context=context,
            severity=severity_for_status(status),
            retryable=retryable,
            status=status,
        )

    def classify_runtime_error(
        self,
        failure: RuntimeFailure,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify an uncaught exception by name and message substrings."""
        text = f"{failure.name} {failure.message}"
        kind = ErrorKind.UNKNOWN
        for candidate, pattern in self._runtime_patterns:
            if pattern.search(text):
                kind = candidate
                break
        if kind is ErrorKind.UNKNOWN and isinstance(
            failure.exception, ConnectionError | TimeoutError
        ):
            kind = ErrorKind.NETWORK
        return self._build(
            kind=kind,
            code=failure.name,
            message=failure.message,
            failure=failure,
            context=context,
        )

    def classify_upload_error(
        self,
        failure: UploadFailure,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify an upload failure by its explicit code."""
        code = failure.code
        if code in UPLOAD_HIGH_SEVERITY_CODES:
            severity = Severity.HIGH
        elif code in UPLOAD_LOW_SEVERITY_CODES:
            severity = Severity.LOW
        else:
            severity = Severity.MEDIUM
        values: dict[str, Any] = {}
        if failure.file_name:
            values["file_name"] = failure.file_name
        if failure.upload_id:
            values["upload_id"] = failure.upload_id
        return self._build(
            kind=ErrorKind.UPLOAD,
            code=code,
            message=failure.message,
            failure=failure,
            context=context,
            severity=severity,
            retryable=code not in UPLOAD_NON_RETRYABLE_CODES,
            values=values,
        )

    def classify_subscription_error(
        self,
        failure: SubscriptionFailure,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Classify a real-time channel failure."""
        return self._build(
            kind=ErrorKind.SUBSCRIPTION,
            code=failure.code or failure.type or "SUBSCRIPTION_ERROR",
            message=failure.message,
            failure=failure,
            context=context,
        )

    def fallback(
        self,
        message: str,
        context: ErrorContext | None = None,
    ) -> ClassifiedError:
        """Generic UNKNOWN classification used when classification itself fails."""
        return self._build(
            kind=ErrorKind.UNKNOWN,
            code="CLASSIFICATION_FAILED",
            message=message,
            failure=None,
            context=context,
        )

    def _build(
        self,
        *,
        kind: ErrorKind,
        code: str,
        message: str,
        failure: Failure | None,
        context: ErrorContext | None,
        severity: Severity | None = None,
        retryable: bool | None = None,
        status: int | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> ClassifiedError:
        context = context or ErrorContext()
        if retryable is None:
            retryable = kind in RETRYABLE_KINDS

        behavior = KIND_RETRY_BEHAVIOR[kind]
        if self.retry_overrides is not None:
            behavior = self.retry_overrides.behavior_for(code, behavior)
        if not retryable:
            behavior = RetryBehavior(0.0, 0)

        interpolation: dict[str, Any] = {
            **context.metadata,
            "operation": context.operation_name or "request",
            "code": code,
            "status": status,
            **(values or {}),
        }
        result = ClassifiedError(
            kind=kind,
            category=KIND_CATEGORY[kind],
            severity=severity or KIND_SEVERITY[kind],
            code=code,
            message=message,
            user_message=self.messages.message_for(kind, code, status, interpolation),
            retryable=retryable,
            retry_delay=behavior.delay_seconds,
            max_retries=behavior.max_retries,
            context=context,
            failure=failure,
        )
        _logger.warning(
            "error_classified",
            error_id=result.id,
            kind=result.kind.value,
            severity=result.severity.value,
            code=result.code,
            retryable=result.retryable,
            operation_name=context.operation_name,
            request_id=context.request_id,
            message=result.message,
        )
        return result


__all__ = ["ErrorClassifier", "RetryOverrideLookup"]
