"""Retry, backoff and authentication configuration models."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field, model_validator

from querypipe.core.constants import (
    DEFAULT_LOGIN_PATH,
    RETRYABLE_HTTP_STATUSES,
    RETRYABLE_PROTOCOL_CODES,
    TOKEN_REFRESH_TIMEOUT_SECONDS,
)
from querypipe.core.errors import ErrorKind
from querypipe.execution.backoff import (
    BackoffCalculator,
    BackoffPolicy,
    RetryChecker,
    ServerRetryOverrides,
)

# Config field name -> BackoffPolicy field name
_POLICY_FIELD_MAP: dict[str, str] = {
    "max_attempts": "max_attempts",
    "base_delay_seconds": "base_delay",
    "max_delay_seconds": "max_delay",
    "multiplier": "multiplier",
    "jitter_factor": "jitter_factor",
}


class BackoffPolicyConfig(BaseModel):
    """Backoff curve for one error kind or server error code.

    Example YAML:
        retry:
          policies:
            network:
              max_attempts: 5
              base_delay_seconds: 0.5
    """

    max_attempts: int = Field(default=3, ge=0, description="Retries before the failure is terminal")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Delay for the first retry")
    max_delay_seconds: float = Field(default=10.0, ge=0, description="Cap applied before jitter")
    multiplier: float = Field(default=2.0, ge=1, description="Exponential growth per attempt")
    jitter_factor: float = Field(
        default=0.1,
        ge=0,
        le=1,
        description="Jitter adds up to this fraction of the capped delay",
    )

    @model_validator(mode="after")
    def _validate_delay_range(self) -> BackoffPolicyConfig:
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"base_delay_seconds ({self.base_delay_seconds}) must not exceed "
                f"max_delay_seconds ({self.max_delay_seconds})"
            )
        return self

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            multiplier=self.multiplier,
            jitter_factor=self.jitter_factor,
        )

    def to_override(self) -> dict[str, Any]:
        """Only the explicitly set fields, keyed by BackoffPolicy field name."""
        return {
            _POLICY_FIELD_MAP[name]: value
            for name, value in self.model_dump(exclude_unset=True).items()
        }


class RetryConfig(BaseModel):
    """Retry behavior for the request pipeline."""

    policies: dict[ErrorKind, BackoffPolicyConfig] = Field(
        default_factory=dict,
        description="Per-kind policies; kinds not listed keep the built-in defaults",
    )
    server_overrides: dict[str, BackoffPolicyConfig] = Field(
        default_factory=dict,
        description="Per-error-code overrides; unset fields fall back to the kind policy",
    )
    retryable_statuses: list[int] = Field(
        default_factory=lambda: sorted(RETRYABLE_HTTP_STATUSES),
        description="Transport statuses treated as transient",
    )
    retryable_codes: list[str] = Field(
        default_factory=lambda: sorted(RETRYABLE_PROTOCOL_CODES),
        description="Protocol extension codes treated as transient",
    )

    def build_overrides(self) -> ServerRetryOverrides:
        return ServerRetryOverrides(
            {code: entry.to_override() for code, entry in self.server_overrides.items()}
        )

    def build_calculator(
        self,
        overrides: ServerRetryOverrides | None = None,
        rng: Callable[[], float] | None = None,
    ) -> BackoffCalculator:
        policies = {kind: entry.to_policy() for kind, entry in self.policies.items()}
        if rng is None:
            return BackoffCalculator(policies, overrides or self.build_overrides())
        return BackoffCalculator(policies, overrides or self.build_overrides(), rng=rng)

    def build_checker(self) -> RetryChecker:
        return RetryChecker(self.retryable_statuses, self.retryable_codes)


class AuthConfig(BaseModel):
    """Token refresh and login redirect settings."""

    refresh_timeout_seconds: float = Field(
        default=TOKEN_REFRESH_TIMEOUT_SECONDS,
        gt=0,
        description="Ceiling for one token refresh before it is treated as failed",
    )
    login_path: str = Field(
        default=DEFAULT_LOGIN_PATH,
        min_length=1,
        description="Redirect target when authentication cannot be recovered",
    )
    max_auth_replays: int = Field(
        default=1,
        ge=0,
        description="Times a request is replayed after a successful token refresh",
    )


__all__ = ["AuthConfig", "BackoffPolicyConfig", "RetryConfig"]
