"""User-facing messages for classified errors.

Messages are looked up from most to least specific (protocol/upload code,
HTTP status, kind) and interpolated with ``str.format_map`` against the
error context. Unknown placeholders are left in place rather than raising.

Per-locale tables may override any entry; lookups fall back to English.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .codes import ErrorKind

DEFAULT_LOCALE = "en"

KIND_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTHENTICATION: "Please log in to continue.",
    ErrorKind.AUTHORIZATION: "You don't have permission to perform this action.",
    ErrorKind.VALIDATION: "Please check your input and try again.",
    ErrorKind.NETWORK: "Connection problem. Please check your internet connection.",
    ErrorKind.UPLOAD: "File upload failed. Please try again.",
    ErrorKind.SUBSCRIPTION: "Real-time connection lost. Reconnecting...",
    ErrorKind.CACHE: "Data synchronization issue. Please refresh the page.",
    ErrorKind.UNKNOWN: "Something went wrong. Please try again.",
}

STATUS_MESSAGES: dict[int, str] = {
    404: "The requested resource could not be found.",
    408: "Request timed out. Please check your connection and try again.",
    429: "Too many requests. Please wait a moment and try again.",
}

SERVER_ERROR_MESSAGE = "Server is temporarily unavailable. Please try again later."

CODE_MESSAGES: dict[str, str] = {
    "TOKEN_EXPIRED": "Your session has expired. Please log in again.",
    "INVALID_TOKEN": "Invalid authentication. Please log in again.",
    "TOKEN_REFRESH_FAILED": "Unable to refresh session. Please log in again.",
    "INSUFFICIENT_PERMISSIONS": "You don't have sufficient permissions for this action.",
    "SERVICE_UNAVAILABLE": SERVER_ERROR_MESSAGE,
    "RATE_LIMITED": "Too many requests. Please wait a moment and try again.",
    "TIMEOUT": "The request took too long. Please try again.",
}

UPLOAD_CODE_MESSAGES: dict[str, str] = {
    "FILE_TOO_LARGE": "{file_name} is too large. Please choose a smaller file.",
    "INVALID_FILE_TYPE": "{file_name} is not a supported file type.",
    "UPLOAD_TIMEOUT": "Upload timed out. Please try again.",
    "NETWORK_ERROR": "Network error during upload. Please check your connection.",
    "SERVER_ERROR": "Server error during upload. Please try again later.",
    "VALIDATION_ERROR": "The file failed validation. Please check it and try again.",
}


class _KeepMissing(dict):  # type: ignore[type-arg]
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def interpolate(template: str, values: Mapping[str, Any]) -> str:
    """Fill ``{placeholders}`` from values, keeping unknown ones verbatim."""
    try:
        return template.format_map(_KeepMissing(values))
    except (ValueError, IndexError, AttributeError):
        # Malformed braces in a template; show it as-is
        return template


class MessageCatalog:
    """Resolves user messages for classified errors.

    Args:
        locale: Active locale.
        translations: Optional ``{locale: {key: template}}`` overrides where
            key is a code string, ``"HTTP_<status>"``, or an ErrorKind value.
    """

    def __init__(
        self,
        locale: str = DEFAULT_LOCALE,
        translations: Mapping[str, Mapping[str, str]] | None = None,
    ) -> None:
        self.locale = locale
        self._translations = {k: dict(v) for k, v in (translations or {}).items()}

    def _override(self, key: str) -> str | None:
        table = self._translations.get(self.locale)
        if table is None:
            return None
        return table.get(key)

    def template_for(
        self,
        kind: ErrorKind,
        code: str | None = None,
        status: int | None = None,
    ) -> str:
        """Pick the most specific template for the failure."""
        if code:
            table = UPLOAD_CODE_MESSAGES if kind is ErrorKind.UPLOAD else CODE_MESSAGES
            template = self._override(code) or table.get(code)
            if template:
                return template
        if status is not None:
            template = self._override(f"HTTP_{status}") or STATUS_MESSAGES.get(status)
            if template:
                return template
            if status >= 500:
                return self._override("HTTP_5XX") or SERVER_ERROR_MESSAGE
        return self._override(kind.value) or KIND_MESSAGES[kind]

    def message_for(
        self,
        kind: ErrorKind,
        code: str | None = None,
        status: int | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> str:
        """Resolve and interpolate a user message."""
        merged: dict[str, Any] = {"file_name": "The file"}
        merged.update(values or {})
        return interpolate(self.template_for(kind, code, status), merged)


__all__ = [
    "CODE_MESSAGES",
    "DEFAULT_LOCALE",
    "KIND_MESSAGES",
    "MessageCatalog",
    "SERVER_ERROR_MESSAGE",
    "STATUS_MESSAGES",
    "UPLOAD_CODE_MESSAGES",
    "interpolate",
]
