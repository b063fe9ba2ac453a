"""Tests for the error classifier.

Covers:
- Transport failures: status -> kind, severity escalation, retryability
- Protocol failures: extension codes, unknown and missing codes
- Runtime exceptions: substring sniffing and FailureError unwrapping
- Upload and subscription failures
- Server retry overrides and user-message resolution
"""

import pytest

from querypipe.core.errors import (
    ErrorCategory,
    ErrorClassifier,
    ErrorContext,
    ErrorKind,
    FailureError,
    MessageCatalog,
    ProtocolFailure,
    RuntimeFailure,
    Severity,
    SubscriptionFailure,
    TransportFailure,
    UploadFailure,
)
from querypipe.core.errors.messages import SERVER_ERROR_MESSAGE, interpolate
from querypipe.core.logging import REDACTED
from querypipe.execution.backoff import ServerRetryOverrides


# =============================================================================
# Transport failures
# =============================================================================


class TestTransportClassification:
    """Tests for classify_transport_error()."""

    @pytest.mark.parametrize(
        "status, kind, severity, retryable",
        [
            (400, ErrorKind.VALIDATION, Severity.LOW, False),
            (401, ErrorKind.AUTHENTICATION, Severity.MEDIUM, False),
            (403, ErrorKind.AUTHORIZATION, Severity.MEDIUM, False),
            (404, ErrorKind.VALIDATION, Severity.LOW, False),
            (408, ErrorKind.NETWORK, Severity.LOW, True),
            (418, ErrorKind.NETWORK, Severity.LOW, False),
            (422, ErrorKind.VALIDATION, Severity.LOW, False),
            (429, ErrorKind.NETWORK, Severity.LOW, True),
            (500, ErrorKind.NETWORK, Severity.HIGH, True),
            (503, ErrorKind.NETWORK, Severity.HIGH, True),
            (599, ErrorKind.NETWORK, Severity.HIGH, True),
        ],
    )
    def test_status_table(
        self,
        classifier: ErrorClassifier,
        status: int,
        kind: ErrorKind,
        severity: Severity,
        retryable: bool,
    ) -> None:
        """Each status maps to one kind, a severity by class, and retryability."""
        error = classifier.classify(TransportFailure(message="boom", status=status))
        assert error.kind is kind
        assert error.severity is severity
        assert error.retryable is retryable
        assert error.code == f"HTTP_{status}"
        assert error.status == status

    def test_no_status_is_a_connection_failure(self, classifier: ErrorClassifier) -> None:
        """A failure with no response is a retryable network error."""
        error = classifier.classify(TransportFailure(message="connection refused"))
        assert error.kind is ErrorKind.NETWORK
        assert error.category is ErrorCategory.NETWORK
        assert error.code == "NETWORK_ERROR"
        assert error.retryable is True
        assert error.retry_delay == 1.0
        assert error.max_retries == 3

    def test_non_retryable_has_zero_budget(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(TransportFailure(message="nope", status=403))
        assert error.retry_delay == 0.0
        assert error.max_retries == 0

    def test_server_error_message(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(TransportFailure(message="bad gateway", status=502))
        assert error.user_message == SERVER_ERROR_MESSAGE

    def test_status_specific_message(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(TransportFailure(message="missing", status=404))
        assert error.user_message == "The requested resource could not be found."

    def test_unauthenticated_status_uses_kind_message(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(TransportFailure(message="unauthorized", status=401))
        assert error.user_message == "Please log in to continue."


# =============================================================================
# Protocol failures
# =============================================================================


class TestProtocolClassification:
    """Tests for classify_protocol_error()."""

    @pytest.mark.parametrize(
        "code, kind, severity",
        [
            ("UNAUTHENTICATED", ErrorKind.AUTHENTICATION, Severity.HIGH),
            ("TOKEN_EXPIRED", ErrorKind.AUTHENTICATION, Severity.MEDIUM),
            ("FORBIDDEN", ErrorKind.AUTHORIZATION, Severity.MEDIUM),
            ("BAD_USER_INPUT", ErrorKind.VALIDATION, Severity.LOW),
            ("GRAPHQL_PARSE_FAILED", ErrorKind.VALIDATION, Severity.LOW),
            ("DATABASE_ERROR", ErrorKind.UNKNOWN, Severity.CRITICAL),
            ("SERVICE_UNAVAILABLE", ErrorKind.NETWORK, Severity.HIGH),
            ("RATE_LIMITED", ErrorKind.NETWORK, Severity.MEDIUM),
            ("CACHE_MISS", ErrorKind.CACHE, Severity.MEDIUM),
            ("WEBSOCKET_ERROR", ErrorKind.SUBSCRIPTION, Severity.LOW),
        ],
    )
    def test_code_table(
        self,
        classifier: ErrorClassifier,
        code: str,
        kind: ErrorKind,
        severity: Severity,
    ) -> None:
        error = classifier.classify(ProtocolFailure(code=code, message="x"))
        assert error.kind is kind
        assert error.severity is severity
        assert error.code == code

    def test_unknown_code_is_unknown_kind(self, classifier: ErrorClassifier) -> None:
        """Unrecognized codes classify as Unknown, which stays retryable."""
        error = classifier.classify(ProtocolFailure(code="SOMETHING_NEW", message="?"))
        assert error.kind is ErrorKind.UNKNOWN
        assert error.category is ErrorCategory.SYSTEM
        assert error.severity is Severity.HIGH
        assert error.retryable is True

    def test_missing_code(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(ProtocolFailure(code=None, message="no code"))
        assert error.kind is ErrorKind.UNKNOWN
        assert error.code == "UNKNOWN_ERROR"

    def test_from_graphql_error(self, classifier: ErrorClassifier) -> None:
        """A response error entry carries its code, path and extensions."""
        failure = ProtocolFailure.from_graphql_error({
            "message": "Not allowed",
            "path": ["course", 0, "title"],
            "extensions": {"code": "FORBIDDEN", "field": "title"},
        })
        assert failure.path == ("course", 0, "title")
        assert failure.extensions["field"] == "title"
        error = classifier.classify(failure)
        assert error.kind is ErrorKind.AUTHORIZATION
        assert error.message == "Not allowed"

    def test_code_message(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(ProtocolFailure(code="TOKEN_EXPIRED", message="expired"))
        assert error.user_message == "Your session has expired. Please log in again."
        assert error.message == "expired"


# =============================================================================
# Runtime exceptions
# =============================================================================


class TestRuntimeClassification:
    """Tests for classify_runtime_error() and classify_exception()."""

    @pytest.mark.parametrize(
        "name, message, kind",
        [
            ("TypeError", "Failed to fetch", ErrorKind.NETWORK),
            ("Error", "NetworkError when attempting request", ErrorKind.NETWORK),
            ("Error", "upload aborted", ErrorKind.UPLOAD),
            ("Error", "socket closed unexpectedly", ErrorKind.SUBSCRIPTION),
            ("Error", "cache is inconsistent", ErrorKind.CACHE),
            ("ConnectionRefusedError", "[Errno 111] refused", ErrorKind.NETWORK),
            ("Error", "request timed out", ErrorKind.NETWORK),
            ("ValueError", "bad value", ErrorKind.UNKNOWN),
        ],
    )
    def test_substring_sniffing(
        self,
        classifier: ErrorClassifier,
        name: str,
        message: str,
        kind: ErrorKind,
    ) -> None:
        error = classifier.classify(RuntimeFailure(name=name, message=message))
        assert error.kind is kind
        assert error.code == name

    def test_plain_exception(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify_exception(ValueError("boom"))
        assert error.kind is ErrorKind.UNKNOWN
        assert error.code == "ValueError"
        assert error.message == "boom"

    def test_connection_error_without_hint_is_network(self, classifier: ErrorClassifier) -> None:
        """Python connection errors are network failures even with bland text."""
        error = classifier.classify_exception(BrokenPipeError("pipe"))
        assert error.kind is ErrorKind.NETWORK

    def test_failure_error_is_unwrapped(self, classifier: ErrorClassifier) -> None:
        exc = FailureError(ProtocolFailure(code="FORBIDDEN", message="no"))
        error = classifier.classify_exception(exc)
        assert error.kind is ErrorKind.AUTHORIZATION
        assert error.failure is exc.failure

    def test_unsupported_failure_type(self, classifier: ErrorClassifier) -> None:
        with pytest.raises(TypeError, match="Unsupported failure type"):
            classifier.classify("boom")  # type: ignore[arg-type]

    def test_fallback(self, classifier: ErrorClassifier) -> None:
        error = classifier.fallback("classifier exploded")
        assert error.kind is ErrorKind.UNKNOWN
        assert error.code == "CLASSIFICATION_FAILED"
        assert error.failure is None


# =============================================================================
# Upload and subscription failures
# =============================================================================


class TestUploadAndSubscription:
    """Tests for the upload and real-time entry points."""

    def test_file_too_large(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(
            UploadFailure(code="FILE_TOO_LARGE", message="413", file_name="avatar.png")
        )
        assert error.kind is ErrorKind.UPLOAD
        assert error.severity is Severity.LOW
        assert error.retryable is False
        assert error.max_retries == 0
        assert error.user_message == "avatar.png is too large. Please choose a smaller file."

    def test_generic_upload_failure_retries(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(UploadFailure(code="UPLOAD_FAILED", message="reset"))
        assert error.retryable is True
        assert error.severity is Severity.MEDIUM
        assert error.retry_delay == 2.0
        assert error.max_retries == 3
        assert error.user_message == "File upload failed. Please try again."

    def test_server_side_upload_failure_is_high(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(UploadFailure(code="SERVER_ERROR", message="500"))
        assert error.severity is Severity.HIGH

    def test_subscription_failure(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(SubscriptionFailure(message="closed"))
        assert error.kind is ErrorKind.SUBSCRIPTION
        assert error.code == "SUBSCRIPTION_ERROR"
        assert error.severity is Severity.LOW
        assert error.retryable is True
        assert error.max_retries == 10


# =============================================================================
# Overrides, messages and context
# =============================================================================


class TestOverridesAndMessages:
    """Tests for retry overrides, message catalogs and error context."""

    def test_server_override_wins_over_kind_default(self) -> None:
        overrides = ServerRetryOverrides({"RATE_LIMITED": {"base_delay": 5.0, "max_attempts": 7}})
        classifier = ErrorClassifier(retry_overrides=overrides)
        error = classifier.classify(ProtocolFailure(code="RATE_LIMITED", message="slow down"))
        assert error.retry_delay == 5.0
        assert error.max_retries == 7

    def test_override_does_not_make_failure_retryable(self) -> None:
        overrides = ServerRetryOverrides({"FORBIDDEN": {"max_attempts": 4}})
        classifier = ErrorClassifier(retry_overrides=overrides)
        error = classifier.classify(ProtocolFailure(code="FORBIDDEN", message="no"))
        assert error.retryable is False
        assert error.max_retries == 0

    def test_translation_with_interpolation(self) -> None:
        catalog = MessageCatalog(
            locale="fr",
            translations={"fr": {"network": "Problème de connexion pendant {operation}"}},
        )
        classifier = ErrorClassifier(messages=catalog)
        error = classifier.classify(
            TransportFailure(message="refused"),
            ErrorContext.build(operation_name="GetCourse"),
        )
        assert error.user_message == "Problème de connexion pendant GetCourse"

    def test_unknown_locale_falls_back_to_english(self) -> None:
        classifier = ErrorClassifier(messages=MessageCatalog(locale="de"))
        error = classifier.classify(ProtocolFailure(code="FORBIDDEN", message="no"))
        assert error.user_message == "You don't have permission to perform this action."

    def test_interpolate_keeps_unknown_placeholders(self) -> None:
        assert interpolate("Hello {name}, {missing}", {"name": "Ada"}) == "Hello Ada, {missing}"

    def test_interpolate_tolerates_malformed_template(self) -> None:
        assert interpolate("Broken {", {}) == "Broken {"

    def test_context_variables_are_redacted(self, classifier: ErrorClassifier) -> None:
        context = ErrorContext.build(
            operation_name="Login",
            variables={"email": "a@example.com", "password": "hunter2"},
            request_id="req-1",
        )
        error = classifier.classify(ProtocolFailure(code="BAD_USER_INPUT", message="x"), context)
        assert error.context.variables == {"email": "a@example.com", "password": REDACTED}
        assert error.retry_key == "req-1"

    def test_to_dict(self, classifier: ErrorClassifier) -> None:
        error = classifier.classify(TransportFailure(message="down", status=503))
        payload = error.to_dict()
        assert payload["kind"] == "network"
        assert payload["severity"] == "high"
        assert payload["code"] == "HTTP_503"
        assert payload["id"].startswith("err_")
        assert payload["context"]["operation_name"] is None

    def test_ids_are_unique(self, classifier: ErrorClassifier) -> None:
        first = classifier.classify(TransportFailure(message="a", status=500))
        second = classifier.classify(TransportFailure(message="a", status=500))
        assert first.id != second.id
