"""Deduplication, batching and query optimization configuration models."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from querypipe.core.constants import (
    BATCH_MAX_SIZE,
    BATCH_TIMEOUT_SECONDS,
    OPTIMIZER_MAX_COMPLEXITY,
    OPTIMIZER_MAX_DEPTH,
)


class DeduplicationConfig(BaseModel):
    """Sharing of identical in-flight queries."""

    enabled: bool = Field(default=True, description="Share identical in-flight queries")


class BatchingConfig(BaseModel):
    """Request batching window and grouping.

    Example YAML:
        batching:
          max_batch_size: 20
          batch_timeout_seconds: 0.05
    """

    enabled: bool = Field(default=True, description="Queue requests into batches")
    max_batch_size: int = Field(
        default=BATCH_MAX_SIZE,
        ge=1,
        description="Queue length that flushes immediately",
    )
    batch_timeout_seconds: float = Field(
        default=BATCH_TIMEOUT_SECONDS,
        ge=0,
        description="Window a queued request waits before the queue flushes",
    )
    intelligent: bool = Field(
        default=True,
        description="Group by operation similarity instead of one priority-ordered batch",
    )
    deduplicate: bool = Field(
        default=True,
        description="Join identical in-flight queries before queueing",
    )

    @classmethod
    def preset(cls, name: str) -> BatchingConfig:
        """Named configuration: aggressive, balanced or conservative."""
        try:
            values = _BATCHING_PRESETS[name]
        except KeyError:
            raise ValueError(
                f"Unknown batching preset '{name}'. "
                f"Expected one of: {', '.join(sorted(_BATCHING_PRESETS))}"
            ) from None
        return cls(**values)


_BATCHING_PRESETS: dict[str, dict[str, object]] = {
    "aggressive": {"max_batch_size": 20, "batch_timeout_seconds": 0.05, "intelligent": True},
    "balanced": {"max_batch_size": 10, "batch_timeout_seconds": 0.1, "intelligent": True},
    "conservative": {"max_batch_size": 5, "batch_timeout_seconds": 0.2, "intelligent": False},
}


class OptimizerConfig(BaseModel):
    """Field pruning and complexity limits for read queries."""

    enabled: bool = Field(default=True, description="Run the optimizer stage")
    enable_pruning: bool = Field(default=True, description="Remove unused fields")
    max_depth: int = Field(
        default=OPTIMIZER_MAX_DEPTH,
        ge=1,
        description="Selection sets deeper than this are truncated",
    )
    always_include: list[str] = Field(
        default_factory=lambda: ["id", "__typename"],
        description="Fields never pruned (names or dotted paths)",
    )
    always_exclude: list[str] = Field(
        default_factory=list,
        description="Fields always removed (names or dotted paths)",
    )
    enable_complexity_analysis: bool = Field(
        default=True,
        description="Log a warning when a query exceeds max_complexity",
    )
    max_complexity: float = Field(
        default=OPTIMIZER_MAX_COMPLEXITY,
        gt=0,
        description="Complexity score considered too expensive",
    )

    @model_validator(mode="after")
    def _validate_field_lists(self) -> OptimizerConfig:
        overlap = set(self.always_include) & set(self.always_exclude)
        if overlap:
            raise ValueError(
                f"Fields cannot be both included and excluded: {', '.join(sorted(overlap))}"
            )
        return self


__all__ = ["BatchingConfig", "DeduplicationConfig", "OptimizerConfig"]
