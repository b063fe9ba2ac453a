"""Normalized cache configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from querypipe.core.constants import (
    CACHE_MAX_AGE_SECONDS,
    CACHE_PERSISTENCE_KEY,
    CACHE_SCHEMA_VERSION,
)

FetchPolicy = Literal["network-only", "cache-first", "no-cache"]


class CacheConfig(BaseModel):
    """Normalized cache, garbage collection and persistence settings.

    Example YAML:
        cache:
          fetch_policy: cache-first
          persistence_dir: ~/.cache/querypipe
    """

    enabled: bool = Field(default=True, description="Keep a normalized cache")
    fetch_policy: FetchPolicy = Field(
        default="network-only",
        description="network-only writes results back; cache-first answers from cache; "
        "no-cache bypasses the cache",
    )
    gc_debounce_seconds: float | None = Field(
        default=None,
        ge=0,
        description="Also collect unreachable entities this long after writes (None: only after evictions)",
    )
    persistence_key: str = Field(
        default=CACHE_PERSISTENCE_KEY,
        min_length=1,
        description="Key under which the snapshot is stored",
    )
    persistence_dir: Path | None = Field(
        default=None,
        description="Directory for the JSON file store (None: keep snapshots in memory)",
    )
    schema_version: int = Field(
        default=CACHE_SCHEMA_VERSION,
        ge=1,
        description="Snapshots with a different version are discarded on restore",
    )
    max_age_seconds: float = Field(
        default=CACHE_MAX_AGE_SECONDS,
        gt=0,
        description="Snapshots older than this are discarded on restore",
    )


__all__ = ["CacheConfig", "FetchPolicy"]
