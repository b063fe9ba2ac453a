"""Error kinds, categories, severities, and recovery strategies.

Contains the taxonomy enums and the static lookup tables the classifier and
the recovery manager consult.

Error Kind Taxonomy
===================

Every failure observed by the pipeline is assigned exactly one kind. The kind
fixes the default category, severity, retryability and recovery strategy.

    | Kind | Category | Severity | Retryable | Delay | Max | Strategy |
    |------|----------|----------|-----------|-------|-----|----------|
    | authentication | authentication | high | No | 0s | 0 | refresh_token |
    | authorization | authorization | medium | No | 0s | 0 | show_error |
    | validation | user_input | low | No | 0s | 0 | show_error |
    | network | network | medium | Yes | 1s | 3 | retry |
    | upload | client | medium | Yes* | 2s | 3 | retry |
    | subscription | network | low | Yes | 1s | 10 | retry |
    | cache | client | medium | Yes | 0.5s | 2 | retry |
    | unknown | system | high | Yes | 2s | 2 | retry |

    *Upload failures with a denylisted code are not retryable.

Transport failures derive the kind from the HTTP status and escalate
severity by status class (>=500 high, 401/403 medium, other 4xx low).
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

# =============================================================================
# Enums
# =============================================================================


class ErrorKind(str, Enum):
    """Kinds of failure, one per recovery behavior."""

    AUTHENTICATION = "authentication"
    """Caller is not (or no longer) authenticated."""

    AUTHORIZATION = "authorization"
    """Caller is authenticated but not allowed to perform the operation."""

    VALIDATION = "validation"
    """Request was rejected because of its input."""

    NETWORK = "network"
    """Connectivity problem or transient server-side failure."""

    UPLOAD = "upload"
    """File upload failed."""

    SUBSCRIPTION = "subscription"
    """Real-time channel failed or dropped."""

    CACHE = "cache"
    """Client-side cache inconsistency."""

    UNKNOWN = "unknown"
    """Unclassified failure."""


class ErrorCategory(str, Enum):
    """Coarse grouping of error kinds for reporting."""

    USER_INPUT = "user_input"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    SERVER = "server"
    CLIENT = "client"
    SYSTEM = "system"


class Severity(str, Enum):
    """Severity levels, ordered by `rank` (higher is more severe)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class RecoveryStrategy(str, Enum):
    """Recovery actions the ErrorRecoveryManager can take."""

    RETRY = "retry"
    REFRESH_TOKEN = "refresh_token"
    REDIRECT_LOGIN = "redirect_login"
    SHOW_ERROR = "show_error"
    CUSTOM = "custom"


class RetryBehavior(NamedTuple):
    """Default retry timing for a kind.

    Attributes:
        delay_seconds: Suggested delay before the first retry.
        max_retries: Retry budget before the failure becomes terminal.
    """

    delay_seconds: float
    max_retries: int


# =============================================================================
# Kind-level defaults
# =============================================================================

KIND_CATEGORY: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.AUTHENTICATION: ErrorCategory.AUTHENTICATION,
    ErrorKind.AUTHORIZATION: ErrorCategory.AUTHORIZATION,
    ErrorKind.VALIDATION: ErrorCategory.USER_INPUT,
    ErrorKind.NETWORK: ErrorCategory.NETWORK,
    ErrorKind.UPLOAD: ErrorCategory.CLIENT,
    ErrorKind.SUBSCRIPTION: ErrorCategory.NETWORK,
    ErrorKind.CACHE: ErrorCategory.CLIENT,
    ErrorKind.UNKNOWN: ErrorCategory.SYSTEM,
}

KIND_SEVERITY: dict[ErrorKind, Severity] = {
    ErrorKind.AUTHENTICATION: Severity.HIGH,
    ErrorKind.AUTHORIZATION: Severity.MEDIUM,
    ErrorKind.VALIDATION: Severity.LOW,
    ErrorKind.NETWORK: Severity.MEDIUM,
    ErrorKind.UPLOAD: Severity.MEDIUM,
    ErrorKind.SUBSCRIPTION: Severity.LOW,
    ErrorKind.CACHE: Severity.MEDIUM,
    ErrorKind.UNKNOWN: Severity.HIGH,
}

RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.UNKNOWN,
    ErrorKind.SUBSCRIPTION,
    ErrorKind.CACHE,
})

KIND_RETRY_BEHAVIOR: dict[ErrorKind, RetryBehavior] = {
    ErrorKind.AUTHENTICATION: RetryBehavior(0.0, 0),
    ErrorKind.AUTHORIZATION: RetryBehavior(0.0, 0),
    ErrorKind.VALIDATION: RetryBehavior(0.0, 0),
    ErrorKind.NETWORK: RetryBehavior(1.0, 3),
    ErrorKind.UPLOAD: RetryBehavior(2.0, 3),
    ErrorKind.SUBSCRIPTION: RetryBehavior(1.0, 10),
    ErrorKind.CACHE: RetryBehavior(0.5, 2),
    ErrorKind.UNKNOWN: RetryBehavior(2.0, 2),
}

KIND_RECOVERY: dict[ErrorKind, RecoveryStrategy] = {
    ErrorKind.AUTHENTICATION: RecoveryStrategy.REFRESH_TOKEN,
    ErrorKind.AUTHORIZATION: RecoveryStrategy.SHOW_ERROR,
    ErrorKind.VALIDATION: RecoveryStrategy.SHOW_ERROR,
    ErrorKind.NETWORK: RecoveryStrategy.RETRY,
    ErrorKind.UPLOAD: RecoveryStrategy.RETRY,
    ErrorKind.SUBSCRIPTION: RecoveryStrategy.RETRY,
    ErrorKind.CACHE: RecoveryStrategy.RETRY,
    ErrorKind.UNKNOWN: RecoveryStrategy.RETRY,
}

# =============================================================================
# Origin-specific lookup tables
# =============================================================================

PROTOCOL_CODE_KINDS: dict[str, ErrorKind] = {
    # Authentication
    "UNAUTHENTICATED": ErrorKind.AUTHENTICATION,
    "TOKEN_EXPIRED": ErrorKind.AUTHENTICATION,
    "INVALID_TOKEN": ErrorKind.AUTHENTICATION,
    "TOKEN_REFRESH_FAILED": ErrorKind.AUTHENTICATION,
    # Authorization
    "FORBIDDEN": ErrorKind.AUTHORIZATION,
    "INSUFFICIENT_PERMISSIONS": ErrorKind.AUTHORIZATION,
    # Validation
    "BAD_USER_INPUT": ErrorKind.VALIDATION,
    "GRAPHQL_VALIDATION_FAILED": ErrorKind.VALIDATION,
    "GRAPHQL_PARSE_FAILED": ErrorKind.VALIDATION,
    "VALIDATION_ERROR": ErrorKind.VALIDATION,
    # Server side
    "INTERNAL_SERVER_ERROR": ErrorKind.UNKNOWN,
    "DATABASE_ERROR": ErrorKind.UNKNOWN,
    "SERVICE_UNAVAILABLE": ErrorKind.NETWORK,
    "RATE_LIMITED": ErrorKind.NETWORK,
    "TIMEOUT": ErrorKind.NETWORK,
    "NETWORK_ERROR": ErrorKind.NETWORK,
    # Uploads
    "UPLOAD_ERROR": ErrorKind.UPLOAD,
    "UPLOAD_FAILED": ErrorKind.UPLOAD,
    "FILE_TOO_LARGE": ErrorKind.UPLOAD,
    "INVALID_FILE_TYPE": ErrorKind.UPLOAD,
    # Real-time
    "SUBSCRIPTION_ERROR": ErrorKind.SUBSCRIPTION,
    "SUBSCRIPTION_FAILED": ErrorKind.SUBSCRIPTION,
    "WEBSOCKET_ERROR": ErrorKind.SUBSCRIPTION,
    # Cache
    "CACHE_ERROR": ErrorKind.CACHE,
    "CACHE_MISS": ErrorKind.CACHE,
}

PROTOCOL_CODE_SEVERITY: dict[str, Severity] = {
    "DATABASE_ERROR": Severity.CRITICAL,
    "SERVICE_UNAVAILABLE": Severity.HIGH,
    "TOKEN_EXPIRED": Severity.MEDIUM,
}

HTTP_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    404: ErrorKind.VALIDATION,
    408: ErrorKind.NETWORK,
    409: ErrorKind.VALIDATION,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.NETWORK,
}
"""Explicit status mappings; any status >= 500 maps to NETWORK."""

RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})
"""4xx statuses that remain retryable for NETWORK-kind failures."""

UPLOAD_NON_RETRYABLE_CODES = frozenset({
    "FILE_TOO_LARGE",
    "INVALID_FILE_TYPE",
    "VALIDATION_ERROR",
})

UPLOAD_HIGH_SEVERITY_CODES = frozenset({"SERVER_ERROR", "NETWORK_ERROR"})
UPLOAD_LOW_SEVERITY_CODES = frozenset({
    "FILE_TOO_LARGE",
    "INVALID_FILE_TYPE",
    "VALIDATION_ERROR",
})


def kind_for_status(status: int) -> ErrorKind:
    """Map an HTTP status to an error kind."""
    if status >= 500:
        return ErrorKind.NETWORK
    return HTTP_STATUS_KINDS.get(status, ErrorKind.NETWORK)


def severity_for_status(status: int | None) -> Severity:
    """Severity of a transport failure given its status (None = no response)."""
    if status is None:
        return Severity.MEDIUM
    if status >= 500:
        return Severity.HIGH
    if status in (401, 403):
        return Severity.MEDIUM
    if status >= 400:
        return Severity.LOW
    return Severity.MEDIUM


__all__ = [
    "ErrorCategory",
    "ErrorKind",
    "HTTP_STATUS_KINDS",
    "KIND_CATEGORY",
    "KIND_RECOVERY",
    "KIND_RETRY_BEHAVIOR",
    "KIND_SEVERITY",
    "PROTOCOL_CODE_KINDS",
    "PROTOCOL_CODE_SEVERITY",
    "RETRYABLE_CLIENT_STATUSES",
    "RETRYABLE_KINDS",
    "RecoveryStrategy",
    "RetryBehavior",
    "Severity",
    "UPLOAD_HIGH_SEVERITY_CODES",
    "UPLOAD_LOW_SEVERITY_CODES",
    "UPLOAD_NON_RETRYABLE_CODES",
    "kind_for_status",
    "severity_for_status",
]
