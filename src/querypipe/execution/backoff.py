"""Exponential backoff with jitter and the retry predicate.

Delay for attempt ``n`` (zero-based)::

    capped = min(base_delay * multiplier ** n, max_delay)
    delay  = capped + uniform(0, jitter_factor * capped)

Policies are chosen per error kind. A server-communicated override for the
failure's code takes precedence over the kind default.

Example usage:
    calculator = BackoffCalculator()
    policy = calculator.policy_for(classified_error)
    delay = calculator.delay(attempt=2, policy=policy)
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from querypipe.core.constants import RETRYABLE_HTTP_STATUSES, RETRYABLE_PROTOCOL_CODES
from querypipe.core.errors import (
    ClassifiedError,
    ErrorKind,
    ProtocolFailure,
    RetryBehavior,
    TransportFailure,
)
from querypipe.core.logging import get_logger

_logger = get_logger("backoff")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry budget and delay curve for one class of failure."""

    max_attempts: int = 3
    """Retries allowed before the failure becomes terminal."""

    base_delay: float = 1.0
    """Delay for the first retry (seconds)."""

    max_delay: float = 10.0
    """Ceiling applied before jitter (seconds)."""

    multiplier: float = 2.0
    jitter_factor: float = 0.1
    """Jitter adds up to this fraction of the capped delay."""

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0.0 and 1.0")

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_POLICIES: dict[ErrorKind, BackoffPolicy] = {
    ErrorKind.NETWORK: BackoffPolicy(3, 1.0, 10.0, 2.0, 0.1),
    ErrorKind.UNKNOWN: BackoffPolicy(2, 2.0, 8.0, 2.0, 0.2),
    ErrorKind.SUBSCRIPTION: BackoffPolicy(10, 1.0, 30.0, 1.5, 0.1),
    ErrorKind.CACHE: BackoffPolicy(2, 0.5, 2.0, 2.0, 0.1),
    ErrorKind.UPLOAD: BackoffPolicy(3, 2.0, 15.0, 2.0, 0.15),
    ErrorKind.AUTHENTICATION: BackoffPolicy(1, 0.0, 0.0, 1.0, 0.0),
    ErrorKind.AUTHORIZATION: BackoffPolicy(0, 0.0, 0.0, 1.0, 0.0),
    ErrorKind.VALIDATION: BackoffPolicy(0, 0.0, 0.0, 1.0, 0.0),
}

_POLICY_FIELDS = frozenset(f.name for f in fields(BackoffPolicy))


class ServerRetryOverrides:
    """Retry policies communicated by the server, keyed by error code.

    Entries may be partial; missing fields fall back to the kind default
    when the override is applied.
    """

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._overrides: dict[str, dict[str, Any]] = {}
        if overrides:
            self.update(overrides)

    def update(self, payload: Mapping[str, Mapping[str, Any]]) -> None:
        """Merge a server payload ``{code: {field: value}}``.

        Unknown fields are ignored; invalid values raise ValueError when the
        override is applied.
        """
        for code, entry in payload.items():
            clean = {k: v for k, v in entry.items() if k in _POLICY_FIELDS}
            ignored = sorted(set(entry) - _POLICY_FIELDS)
            if ignored:
                _logger.debug("retry_override.fields_ignored", code=code, fields=ignored)
            self._overrides.setdefault(code, {}).update(clean)
        _logger.info("retry_override.updated", codes=sorted(payload))

    def clear(self) -> None:
        self._overrides.clear()

    def get(self, code: str) -> dict[str, Any] | None:
        entry = self._overrides.get(code)
        return dict(entry) if entry is not None else None

    def apply(self, code: str, policy: BackoffPolicy) -> BackoffPolicy:
        """Return ``policy`` with the override for ``code`` applied."""
        entry = self._overrides.get(code)
        if not entry:
            return policy
        return replace(policy, **entry)

    def behavior_for(self, code: str, default: RetryBehavior) -> RetryBehavior:
        """RetryBehavior view used by the classifier."""
        entry = self._overrides.get(code)
        if not entry:
            return default
        return RetryBehavior(
            delay_seconds=float(entry.get("base_delay", default.delay_seconds)),
            max_retries=int(entry.get("max_attempts", default.max_retries)),
        )

    def __contains__(self, code: object) -> bool:
        return code in self._overrides

    def __len__(self) -> int:
        return len(self._overrides)


class BackoffCalculator:
    """Computes retry delays.

    Args:
        policies: Per-kind policies; missing kinds use DEFAULT_POLICIES.
        overrides: Server-communicated per-code overrides.
        rng: Source of uniform [0, 1) values for jitter.
    """

    def __init__(
        self,
        policies: Mapping[ErrorKind, BackoffPolicy] | None = None,
        overrides: ServerRetryOverrides | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policies: dict[ErrorKind, BackoffPolicy] = {**DEFAULT_POLICIES, **(policies or {})}
        self.overrides = overrides or ServerRetryOverrides()
        self._rng = rng

    def policy_for(self, error: ClassifiedError) -> BackoffPolicy:
        """Resolve the policy for a classified error."""
        policy = self.policies.get(error.kind)
        if policy is None:
            policy = BackoffPolicy(
                max_attempts=error.max_retries,
                base_delay=error.retry_delay,
                max_delay=max(error.retry_delay, 10.0),
            )
        return self.overrides.apply(error.code, policy)

    @staticmethod
    def capped_delay(attempt: int, policy: BackoffPolicy) -> float:
        """Delay before jitter for a zero-based attempt number."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # float overflow for very large attempt numbers
        try:
            raw = policy.base_delay * (policy.multiplier ** attempt)
        except OverflowError:
            raw = policy.max_delay
        return min(raw, policy.max_delay)

    def delay(self, attempt: int, policy: BackoffPolicy) -> float:
        """Delay including jitter for a zero-based attempt number."""
        capped = self.capped_delay(attempt, policy)
        return capped + self._rng() * policy.jitter_factor * capped


class RetryChecker:
    """Decides whether a failure should be retried.

    Considers the attempt budget, connection failures with no status,
    protocol extension codes, and transport statuses. Other failure origins
    defer to the classifier's retryability.
    """

    def __init__(
        self,
        retryable_statuses: Iterable[int] = RETRYABLE_HTTP_STATUSES,
        retryable_codes: Iterable[str] = RETRYABLE_PROTOCOL_CODES,
    ) -> None:
        self.retryable_statuses = frozenset(retryable_statuses)
        self.retryable_codes = frozenset(retryable_codes)

    def is_retryable(
        self,
        error: ClassifiedError,
        attempts: int,
        max_attempts: int,
    ) -> bool:
        if attempts >= max_attempts:
            return False
        failure = error.failure
        if isinstance(failure, TransportFailure):
            if failure.status is None:
                return True
            return failure.status in self.retryable_statuses
        if isinstance(failure, ProtocolFailure):
            return error.code in self.retryable_codes
        return error.retryable


__all__ = [
    "BackoffCalculator",
    "BackoffPolicy",
    "DEFAULT_POLICIES",
    "RetryChecker",
    "ServerRetryOverrides",
]
