"""Post-mutation cache updates and optimistic writes.

A mutation response often changes more than the entities it returns: a
created object belongs in a cached list, a deleted one must leave it.
CacheUpdater edits stored list fields directly (by storage key) instead of
dropping them, so lists stay readable without a refetch.

OptimisticUpdate applies such edits before the server answers and restores
the touched fields if the mutation fails.

Example:
    with OptimisticUpdate(cache) as optimistic:
        optimistic.apply(
            CacheUpdate(MutationOperation.MERGE, "Course", {"title": title}, id=course_id)
        )
        await pipeline.execute(rename_course)

``RequestPipeline.mutate`` wraps the same steps for creates, where the
optimistic entry must give way to the server's.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import Any

from querypipe.core.constants import ROOT_QUERY
from querypipe.core.logging import get_logger

from .identity import entity_id
from .policies import REF, is_ref
from .store import NormalizedCache

_logger = get_logger("cache")

_MISSING = object()

ListEditor = Callable[[list[Any]], list[Any]]


def temp_id() -> str:
    """Placeholder id for an object the server has not created yet."""
    return f"temp_{uuid.uuid4().hex[:12]}"


# =============================================================================
# Update descriptions
# =============================================================================


class MutationOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MERGE = "merge"
    DELETE = "delete"
    APPEND = "append"
    PREPEND = "prepend"


@dataclass(frozen=True)
class ListTarget:
    """One stored list field, e.g. ``courses`` on ROOT_QUERY for given arguments."""

    field_name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    entity_key: str = ROOT_QUERY


@dataclass(frozen=True)
class CacheUpdate:
    """A cache edit that follows one mutation."""

    operation: MutationOperation
    typename: str
    data: Mapping[str, Any] = field(default_factory=dict)
    id: Any = None
    """Entity id; falls back to ``data["id"]``."""

    target: ListTarget | None = None
    """List to insert into or remove from."""

    @property
    def entity_id(self) -> Any:
        return self.id if self.id is not None else self.data.get("id")


@dataclass
class CacheUpdateResult:
    success: bool
    updated_entities: list[str] = field(default_factory=list)
    error: Exception | None = None


# =============================================================================
# Updater
# =============================================================================


class CacheUpdater:
    """List and entity edits over a NormalizedCache.

    List edits return False when the list is not cached: there is nothing
    to keep consistent until it is fetched.
    """

    def __init__(self, cache: NormalizedCache) -> None:
        self.cache = cache

    def apply(self, update: CacheUpdate) -> CacheUpdateResult:
        """Apply one post-mutation update.

        CREATE and UPDATE write the entity whether or not it is cached;
        MERGE only touches an entity that is already cached.

        Failures are logged and reported in the result, never raised.
        """
        updated: list[str] = []
        try:
            self._apply(update, updated)
        except Exception as exc:
            _logger.warning(
                "cache.update_failed",
                operation=update.operation.value,
                typename=update.typename,
                error=str(exc),
            )
            return CacheUpdateResult(success=False, updated_entities=updated, error=exc)
        _logger.debug(
            "cache.updated",
            operation=update.operation.value,
            typename=update.typename,
            entities=updated,
        )
        return CacheUpdateResult(success=True, updated_entities=updated)

    def _apply(self, update: CacheUpdate, updated: list[str]) -> None:
        operation = update.operation
        typename = update.typename

        if operation in (MutationOperation.APPEND, MutationOperation.PREPEND):
            if update.target is None:
                raise ValueError(f"{operation.value} requires a list target")
            item = self._item(update)
            if operation is MutationOperation.APPEND:
                inserted = self.add_to_list(update.target, item)
            else:
                inserted = self.prepend_to_list(update.target, item)
            if inserted:
                updated.append(self._identify(item))
            return

        if operation is MutationOperation.CREATE:
            item = self._item(update)
            updated.append(self.cache.write_entity(item))
            if update.target is not None:
                self.add_to_list(update.target, item)
            return

        ident = update.entity_id
        if ident is None:
            raise ValueError(f"{operation.value} requires an entity id")
        key = entity_id(typename, ident)

        if operation is MutationOperation.UPDATE:
            self.cache.write_entity(self._item(update, ident))
            updated.append(key)
        elif operation is MutationOperation.MERGE:
            if self.cache.update_entity(typename, ident, update.data):
                updated.append(key)
        elif operation is MutationOperation.DELETE:
            if update.target is not None:
                self.remove_from_list(update.target, typename, ident)
            if self.cache.evict(typename, ident):
                updated.append(key)

    # ─── Lists ────────────────────────────────────────────────────────

    def update_list(self, target: ListTarget, edit: ListEditor) -> bool:
        """Replace a stored list with ``edit(stored items)``.

        Items are stored form: ``{"__ref": ...}`` for entities, plain dicts
        for inline objects. ``edit`` may return raw objects; they are
        normalized on write.
        """
        current = self.cache.read_field(
            target.field_name, entity_key=target.entity_key, args=target.args
        )
        if not isinstance(current, list):
            return False
        self.cache.write_field(
            target.field_name, edit(current), entity_key=target.entity_key, args=target.args
        )
        return True

    def add_to_list(self, target: ListTarget, item: Mapping[str, Any]) -> bool:
        """Append ``item`` unless the list already holds it."""
        return self._insert(target, item, at_start=False)

    def prepend_to_list(self, target: ListTarget, item: Mapping[str, Any]) -> bool:
        """Prepend ``item`` unless the list already holds it."""
        return self._insert(target, item, at_start=True)

    def remove_from_list(self, target: ListTarget, typename: str, ident: Any) -> bool:
        """Drop every occurrence of one entity from a list; True if any was removed."""
        key = entity_id(typename, ident)
        removed = False

        def edit(items: list[Any]) -> list[Any]:
            nonlocal removed
            kept = [i for i in items if self._key_of(i) != key]
            removed = len(kept) != len(items)
            return kept

        return self.update_list(target, edit) and removed

    def update_in_list(
        self,
        target: ListTarget,
        typename: str,
        ident: Any,
        updates: Mapping[str, Any],
    ) -> bool:
        """Apply ``updates`` to one list member.

        A referenced member is updated through its entity, so every other
        list or field pointing at it sees the change too.
        """
        key = entity_id(typename, ident)
        found = False

        def edit(items: list[Any]) -> list[Any]:
            nonlocal found
            result = []
            for item in items:
                if self._key_of(item) == key:
                    found = True
                    if not is_ref(item):
                        item = {**item, **updates}
                result.append(item)
            return result

        if not self.update_list(target, edit) or not found:
            return False
        if self.cache.has(typename, ident):
            self.cache.update_entity(typename, ident, updates)
        return True

    def _insert(self, target: ListTarget, item: Mapping[str, Any], *, at_start: bool) -> bool:
        key = self._identify(item)
        inserted = False

        def edit(items: list[Any]) -> list[Any]:
            nonlocal inserted
            if any(self._key_of(i) == key for i in items):
                return items
            inserted = True
            return [dict(item), *items] if at_start else [*items, dict(item)]

        return self.update_list(target, edit) and inserted

    # ─── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _item(update: CacheUpdate, ident: Any = None) -> dict[str, Any]:
        item = {"__typename": update.typename, **update.data}
        if ident is not None:
            item["id"] = ident
        return item

    def _identify(self, item: Mapping[str, Any]) -> str:
        key = self.cache.identify(item)
        if key is None:
            raise ValueError(f"Cannot identify object of type {item.get('__typename')!r}")
        return key

    def _key_of(self, item: Any) -> str | None:
        if is_ref(item):
            return item[REF]
        if isinstance(item, Mapping):
            return self.cache.identify(item)
        return None


# =============================================================================
# Optimistic updates
# =============================================================================


class OptimisticUpdate:
    """Cache edits applied ahead of a mutation response.

    The store is snapshotted on construction. ``rollback()`` restores only
    the fields the optimistic edits changed and that still hold the edited
    value; anything written since (by the server response or by other
    requests) is kept. Entities that exist only because of the edits are
    removed.

    As a context manager it rolls back when the block raises and commits
    otherwise.
    """

    def __init__(self, cache: NormalizedCache, updater: CacheUpdater | None = None) -> None:
        self.cache = cache
        self.updater = updater or CacheUpdater(cache)
        self._before: dict[str, dict[str, Any]] | None = cache.snapshot()
        self._applied: dict[str, dict[str, Any]] | None = None
        self._rollback_actions: list[Callable[[], None]] = []
        self.results: list[CacheUpdateResult] = []

    @property
    def pending(self) -> bool:
        return self._before is not None

    def apply(self, *updates: CacheUpdate) -> list[CacheUpdateResult]:
        """Apply updates.

        Raises:
            RuntimeError: If the update was already committed or rolled back.
        """
        if self._before is None:
            raise RuntimeError("Optimistic update is no longer pending")
        results = [self.updater.apply(u) for u in updates]
        self._applied = self.cache.snapshot()
        self.results.extend(results)
        return results

    def add_rollback(self, action: Callable[[], None]) -> None:
        """Extra undo step run after the cache is restored."""
        self._rollback_actions.append(action)

    def commit(self) -> None:
        """Keep the optimistic state; the server confirmed it."""
        self._before = None
        self._applied = None
        self._rollback_actions.clear()

    def rollback(self) -> int:
        """Restore every field the optimistic edits changed.

        Returns:
            Number of fields restored. 0 when nothing was pending.
        """
        before = self._before
        if before is None:
            return 0
        applied = self._applied if self._applied is not None else before
        self._before = None
        self._applied = None

        restored = 0
        for key in set(before) | set(applied):
            old = before.get(key)
            new = applied.get(key)
            if old == new:
                continue
            old_fields = old or {}
            new_fields = new or {}
            current = self.cache.stored(key) or {}
            for name in set(old_fields) | set(new_fields):
                previous = old_fields.get(name, _MISSING)
                edited = new_fields.get(name, _MISSING)
                # Untouched by the edits, or rewritten since they were applied
                if edited == previous or current.get(name, _MISSING) != edited:
                    continue
                if previous is _MISSING:
                    current.pop(name, None)
                else:
                    current[name] = previous
                restored += 1
            self.cache.put_stored(key, current if current or old is not None else None)

        for action in self._rollback_actions:
            try:
                action()
            except Exception:
                _logger.warning("cache.rollback_action_failed", exc_info=True)
        self._rollback_actions.clear()
        _logger.info("cache.optimistic_rolled_back", fields=restored)
        return restored

    def __enter__(self) -> OptimisticUpdate:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.rollback()
        else:
            self.commit()


__all__ = [
    "CacheUpdate",
    "CacheUpdateResult",
    "CacheUpdater",
    "ListTarget",
    "MutationOperation",
    "OptimisticUpdate",
    "temp_id",
]
