"""Typed failure variants, one per failure origin.

The classifier dispatches on the variant type rather than probing optional
fields of a loosely-shaped error object.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import FailureError


@dataclass(frozen=True)
class ProtocolFailure:
    """A GraphQL error reported in the response body."""

    code: str | None
    """Value of ``extensions.code``; None when the server sent none."""

    message: str
    path: tuple[str | int, ...] = ()
    extensions: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_graphql_error(cls, error: Mapping[str, Any]) -> ProtocolFailure:
        """Build from one entry of a response's ``errors`` list."""
        extensions = error.get("extensions") or {}
        code = extensions.get("code")
        return cls(
            code=str(code) if code is not None else None,
            message=str(error.get("message", "GraphQL error")),
            path=tuple(error.get("path") or ()),
            extensions=dict(extensions),
        )


@dataclass(frozen=True)
class TransportFailure:
    """The request did not produce a usable HTTP response.

    ``status`` is None for connection-level failures (refused, reset,
    timed out before any response).
    """

    message: str
    status: int | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str | None = None


@dataclass(frozen=True)
class RuntimeFailure:
    """An unexpected exception raised while handling the request."""

    name: str
    message: str
    exception: BaseException | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_exception(cls, exc: BaseException) -> RuntimeFailure:
        return cls(name=type(exc).__name__, message=str(exc), exception=exc)


@dataclass(frozen=True)
class UploadFailure:
    """A file upload failed with an explicit upload error code."""

    code: str
    message: str
    upload_id: str | None = None
    file_name: str | None = None


@dataclass(frozen=True)
class SubscriptionFailure:
    """A real-time subscription channel failed."""

    message: str
    code: str | None = None
    type: str | None = None


Failure = (
    ProtocolFailure
    | TransportFailure
    | RuntimeFailure
    | UploadFailure
    | SubscriptionFailure
)


def failure_from_exception(exc: BaseException) -> Failure:
    """Extract the typed failure carried by an exception.

    FailureError instances carry their variant; anything else is wrapped as a
    RuntimeFailure.
    """
    if isinstance(exc, FailureError):
        return exc.failure
    return RuntimeFailure.from_exception(exc)


__all__ = [
    "Failure",
    "ProtocolFailure",
    "RuntimeFailure",
    "SubscriptionFailure",
    "TransportFailure",
    "UploadFailure",
    "failure_from_exception",
]
