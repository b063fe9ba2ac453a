"""Normalized client cache: identity, merge policies, updates, invalidation, persistence."""

from .identity import composite_identity, default_identity, entity_id
from .invalidation import CacheInvalidator, InvalidationResult, InvalidationRule
from .persistence import (
    CachePersistence,
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    SnapshotInfo,
)
from .policies import (
    ACCUMULATE_MAX,
    DEEP_MERGE,
    REPLACE,
    AccumulateMaxPolicy,
    DeepMergePolicy,
    FieldPolicy,
    MergeByKeyPolicy,
    MergeContext,
    MergePolicy,
    PaginatedPolicy,
    ReplacePolicy,
    TypePolicy,
)
from .store import CacheStats, NormalizedCache
from .updates import (
    CacheUpdate,
    CacheUpdateResult,
    CacheUpdater,
    ListTarget,
    MutationOperation,
    OptimisticUpdate,
    temp_id,
)

__all__ = [
    "ACCUMULATE_MAX",
    "AccumulateMaxPolicy",
    "CacheInvalidator",
    "CachePersistence",
    "CacheStats",
    "CacheUpdate",
    "CacheUpdateResult",
    "CacheUpdater",
    "DEEP_MERGE",
    "DeepMergePolicy",
    "FieldPolicy",
    "InMemoryStore",
    "InvalidationResult",
    "InvalidationRule",
    "JsonFileStore",
    "KeyValueStore",
    "ListTarget",
    "MergeByKeyPolicy",
    "MergeContext",
    "MergePolicy",
    "MutationOperation",
    "NormalizedCache",
    "OptimisticUpdate",
    "PaginatedPolicy",
    "REPLACE",
    "ReplacePolicy",
    "SnapshotInfo",
    "TypePolicy",
    "composite_identity",
    "default_identity",
    "entity_id",
    "temp_id",
]
