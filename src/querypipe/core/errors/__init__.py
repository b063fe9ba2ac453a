"""Error taxonomy, typed failures, and classification."""

from .classifier import ErrorClassifier, RetryOverrideLookup
from .codes import (
    ErrorCategory,
    ErrorKind,
    RecoveryStrategy,
    RetryBehavior,
    Severity,
)
from .exceptions import (
    ConfigurationError,
    FailureError,
    PipelineError,
    QueryPipeError,
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

__all__ = [
    "ClassifiedError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorContext",
    "ErrorKind",
    "Failure",
    "FailureError",
    "MessageCatalog",
    "PipelineError",
    "ProtocolFailure",
    "QueryPipeError",
    "RecoveryStrategy",
    "RetryBehavior",
    "RetryOverrideLookup",
    "RuntimeFailure",
    "Severity",
    "SubscriptionFailure",
    "TransportFailure",
    "UploadFailure",
    "failure_from_exception",
]
