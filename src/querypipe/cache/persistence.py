"""Cache persistence over a key/value store.

The snapshot is one JSON document::

    {"version": 1, "timestamp": 1760000000.0, "data": {<entities>}}

``restore`` fails closed: a missing, unparsable, version-mismatched or stale
snapshot leaves the live cache untouched, and mismatched or stale snapshots
are deleted from the store.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from querypipe.core.constants import (
    CACHE_MAX_AGE_SECONDS,
    CACHE_PERSISTENCE_KEY,
    CACHE_SCHEMA_VERSION,
)
from querypipe.core.logging import get_logger
from querypipe.utils.time import epoch_seconds, seconds_since

from .store import NormalizedCache

_logger = get_logger("cache.persistence")


# ─── Stores ───────────────────────────────────────────────────────────


class KeyValueStore(ABC):
    """String key/value storage used for cache snapshots."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Stored value, or None if absent."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def remove(self, key: str) -> None: ...


class InMemoryStore(KeyValueStore):
    """Dict-backed store for tests and short-lived processes."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def remove(self, key: str) -> None:
        self.values.pop(key, None)


class JsonFileStore(KeyValueStore):
    """One file per key: ``{directory}/{key}.json``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        # Sanitize key for filesystem
        safe_key = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)
        return self.directory / f"{safe_key}.json"

    async def get(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    async def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        # Write atomically using temp file + rename
        temp_file = path.with_suffix(".json.tmp")
        temp_file.write_text(value, encoding="utf-8")
        temp_file.rename(path)

    async def remove(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


# ─── Persistence ──────────────────────────────────────────────────────


@dataclass
class SnapshotInfo:
    version: Any
    timestamp: float | None
    age_seconds: float | None
    entities: int
    size_bytes: int
    compatible: bool
    """Version matches the expected schema version."""

    stale: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CachePersistence:
    """Saves and restores a NormalizedCache snapshot.

    Args:
        cache: The live cache.
        store: Where the snapshot is kept.
        key: Store key for the snapshot.
        version: Schema version stamped on save and required on restore.
        max_age_seconds: Snapshots older than this are discarded.
        clock: Wall-clock source (seconds since the epoch).
    """

    def __init__(
        self,
        cache: NormalizedCache,
        store: KeyValueStore,
        *,
        key: str = CACHE_PERSISTENCE_KEY,
        version: int = CACHE_SCHEMA_VERSION,
        max_age_seconds: float = CACHE_MAX_AGE_SECONDS,
        clock: Callable[[], float] = epoch_seconds,
    ) -> None:
        self.cache = cache
        self.store = store
        self.key = key
        self.version = version
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    async def save(self) -> int:
        """Persist the current store; returns the snapshot size in bytes."""
        payload = json.dumps(
            {
                "version": self.version,
                "timestamp": self._clock(),
                "data": self.cache.snapshot(),
            },
            default=str,
        )
        await self.store.set(self.key, payload)
        _logger.info(
            "cache.persisted",
            key=self.key,
            entities=len(self.cache),
            size_bytes=len(payload),
        )
        return len(payload)

    async def restore(self) -> bool:
        """Replace the live cache with the persisted snapshot if it is usable."""
        raw = await self.store.get(self.key)
        if raw is None:
            return False
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            _logger.warning("cache.restore_failed", key=self.key, reason="invalid_json", error=str(e))
            await self.store.remove(self.key)
            return False
        if not isinstance(payload, dict):
            _logger.warning("cache.restore_failed", key=self.key, reason="invalid_payload")
            await self.store.remove(self.key)
            return False

        version = payload.get("version")
        if version != self.version:
            _logger.info(
                "cache.restore_discarded",
                key=self.key,
                reason="version_mismatch",
                found=version,
                expected=self.version,
            )
            await self.store.remove(self.key)
            return False

        age = self._age(payload.get("timestamp"))
        if age is None or age > self.max_age_seconds:
            _logger.info("cache.restore_discarded", key=self.key, reason="stale", age_seconds=age)
            await self.store.remove(self.key)
            return False

        try:
            self.cache.replace_snapshot(payload.get("data"))
        except ValueError as e:
            _logger.warning("cache.restore_failed", key=self.key, reason="invalid_data", error=str(e))
            await self.store.remove(self.key)
            return False

        _logger.info("cache.restored", key=self.key, entities=len(self.cache), age_seconds=age)
        return True

    async def clear(self) -> None:
        await self.store.remove(self.key)

    async def info(self) -> SnapshotInfo | None:
        """Describe the persisted snapshot without restoring it."""
        raw = await self.store.get(self.key)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            return SnapshotInfo(None, None, None, 0, len(raw), False, True)
        data = payload.get("data")
        timestamp = payload.get("timestamp")
        age = self._age(timestamp)
        return SnapshotInfo(
            version=payload.get("version"),
            timestamp=timestamp if isinstance(timestamp, int | float) else None,
            age_seconds=age,
            entities=len(data) if isinstance(data, dict) else 0,
            size_bytes=len(raw),
            compatible=payload.get("version") == self.version,
            stale=age is None or age > self.max_age_seconds,
        )

    def _age(self, timestamp: Any) -> float | None:
        return seconds_since(timestamp, self._clock())


__all__ = [
    "CachePersistence",
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
    "SnapshotInfo",
]
