"""Normalized object cache.

Responses are flattened into entities keyed by identity (``"User:1"``).
Each entity maps field storage keys to values; a field with arguments is
stored as ``name({"arg":value})``. Nested entities are replaced by
``{"__ref": "<key>"}`` and objects without an identity stay inline in their
parent. Root fields live on ``ROOT_QUERY`` / ``ROOT_MUTATION`` /
``ROOT_SUBSCRIPTION``.

Rewriting a field merges through its FieldPolicy, so concurrent responses
that fetched different sub-objects of one entity combine instead of
overwriting each other.

Unreachable entities are collected after every explicit eviction and,
when ``gc_debounce_seconds`` is set, also a while after writes.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from graphql import (
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    InlineFragmentNode,
    SelectionNode,
    SelectionSetNode,
    value_from_ast_untyped,
)

from querypipe.core.constants import ROOT_MUTATION, ROOT_QUERY, ROOT_SUBSCRIPTION
from querypipe.core.logging import get_logger
from querypipe.execution.scheduling import AsyncioScheduler, Scheduler, TimerHandle
from querypipe.operations.request import GraphQLRequest, OperationType

from .identity import ROOT_TYPENAMES, default_identity, entity_id, typename_of
from .policies import (
    DEFAULT_FIELD_POLICY,
    REF,
    FieldPolicy,
    MergeContext,
    TypePolicy,
    is_ref,
)

_logger = get_logger("cache")

_MISSING = object()

ROOT_IDS: dict[OperationType, str] = {
    OperationType.QUERY: ROOT_QUERY,
    OperationType.MUTATION: ROOT_MUTATION,
    OperationType.SUBSCRIPTION: ROOT_SUBSCRIPTION,
}

# (normalized value, resolved arguments, field name) per storage key
_FieldWrites = dict[str, tuple[Any, dict[str, Any], str]]


def storage_key(field_name: str, args: Mapping[str, Any]) -> str:
    if not args:
        return field_name
    encoded = json.dumps(dict(args), sort_keys=True, separators=(",", ":"), default=str)
    return f"{field_name}({encoded})"


def _field_name_of(key: str) -> str:
    return key.split("(", 1)[0]


def _iter_refs(value: Any) -> Iterator[str]:
    if isinstance(value, dict):
        if is_ref(value):
            yield value[REF]
            return
        for item in value.values():
            yield from _iter_refs(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_refs(item)


@dataclass
class CacheStats:
    entities: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    reads: int = 0
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    collected: int = 0
    size_bytes: int = 0

    @property
    def hit_rate(self) -> float:
        return self.hits / self.reads if self.reads else 0.0

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["hit_rate"] = self.hit_rate
        return result


class DocumentWalk:
    """Variables and fragments for walking one operation against the store."""

    def __init__(
        self,
        request: GraphQLRequest,
        possible_types: Mapping[str, frozenset[str]],
    ) -> None:
        self.variables = request.variables
        self.selection_set = request.operation.selection_set
        self.fragments = {
            d.name.value: d
            for d in request.document.definitions
            if isinstance(d, FragmentDefinitionNode)
        }
        self.possible_types = possible_types

    def args(self, node: FieldNode) -> dict[str, Any]:
        if not node.arguments:
            return {}
        return {
            arg.name.value: value_from_ast_untyped(arg.value, self.variables)
            for arg in node.arguments
        }

    def condition(self, node: SelectionNode, directive: str) -> bool | None:
        """Resolved ``if`` argument of ``@skip``/``@include``; None when absent."""
        for applied in node.directives or ():
            if applied.name.value != directive:
                continue
            for arg in applied.arguments or ():
                if arg.name.value == "if":
                    return bool(value_from_ast_untyped(arg.value, self.variables))
            return False
        return None

    def included(self, node: SelectionNode) -> bool:
        if self.condition(node, "skip"):
            return False
        return self.condition(node, "include") is not False

    def type_matches(self, condition: str | None, typename: str | None) -> bool:
        if condition is None or typename is None or condition == typename:
            return True
        return typename in self.possible_types.get(condition, ())

    def fields(self, selection_set: SelectionSetNode, typename: str | None) -> Iterator[FieldNode]:
        for selection in selection_set.selections:
            if not self.included(selection):
                continue
            if isinstance(selection, FieldNode):
                yield selection
            elif isinstance(selection, InlineFragmentNode):
                condition = selection.type_condition.name.value if selection.type_condition else None
                if self.type_matches(condition, typename):
                    yield from self.fields(selection.selection_set, typename)
            elif isinstance(selection, FragmentSpreadNode):
                fragment = self.fragments.get(selection.name.value)
                if fragment is not None and self.type_matches(
                    fragment.type_condition.name.value, typename
                ):
                    yield from self.fields(fragment.selection_set, typename)


def _response_key(node: FieldNode) -> str:
    return node.alias.value if node.alias else node.name.value


class NormalizedCache:
    """Process-wide normalized store owned by one pipeline.

    Args:
        type_policies: Identity functions and field policies per typename.
            Root fields are configured under ``"Query"``.
        possible_types: Interface/union name -> concrete typenames, used to
            match fragment type conditions.
        scheduler: Timer source for debounced collection.
        gc_debounce_seconds: Collect this long after the last write. None
            disables write-triggered collection.
    """

    def __init__(
        self,
        type_policies: Mapping[str, TypePolicy] | None = None,
        possible_types: Mapping[str, Iterable[str]] | None = None,
        *,
        scheduler: Scheduler | None = None,
        gc_debounce_seconds: float | None = None,
    ) -> None:
        self.type_policies: dict[str, TypePolicy] = dict(type_policies or {})
        self.possible_types = {k: frozenset(v) for k, v in (possible_types or {}).items()}
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.gc_debounce_seconds = gc_debounce_seconds

        self._entities: dict[str, dict[str, Any]] = {}
        self._retained: dict[str, int] = {}
        self._gc_timer: TimerHandle | None = None
        self._stats = CacheStats()

    def __contains__(self, key: object) -> bool:
        return key in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    # ─── Policies ─────────────────────────────────────────────────────

    def add_type_policy(self, typename: str, policy: TypePolicy) -> None:
        self.type_policies[typename] = policy

    def identify(self, obj: Mapping[str, Any]) -> str | None:
        """Cache key for a response object, or None if it stays inline."""
        typename = obj.get("__typename")
        policy = self.type_policies.get(typename) if typename else None
        if policy is not None and policy.identify is not None:
            return policy.identify(obj)
        return default_identity(obj)

    def field_policy(self, typename: str | None, field_name: str) -> FieldPolicy:
        policy = self.type_policies.get(typename) if typename else None
        if policy is None:
            return DEFAULT_FIELD_POLICY
        return policy.fields.get(field_name, DEFAULT_FIELD_POLICY)

    def storage_key_for(
        self,
        typename: str | None,
        field_name: str,
        args: Mapping[str, Any] | None = None,
    ) -> str:
        policy = self.field_policy(typename, field_name)
        return storage_key(field_name, policy.storage_args(args or {}))

    def _typename(self, key: str) -> str | None:
        entity = self._entities.get(key)
        if entity is not None and isinstance(entity.get("__typename"), str):
            return entity["__typename"]
        return typename_of(key)

    # ─── Operations ───────────────────────────────────────────────────

    def write_query(self, request: GraphQLRequest, data: Mapping[str, Any]) -> None:
        """Normalize a response against the request's document."""
        walk = DocumentWalk(request, self.possible_types)
        root = ROOT_IDS[request.operation_type]
        typename = ROOT_TYPENAMES[root]
        writes = self._normalize_fields(data, walk.selection_set, typename, walk)
        self._merge_entity(root, typename, writes)
        self._after_write()
        _logger.debug(
            "cache.write_query",
            operation_name=request.name,
            root=root,
            entities=len(self._entities),
        )

    def read_query(self, request: GraphQLRequest) -> dict[str, Any] | None:
        """Denormalize a result for ``request``; None if any field is missing."""
        self._stats.reads += 1
        walk = DocumentWalk(request, self.possible_types)
        root = ROOT_IDS[request.operation_type]
        entity = self._entities.get(root)
        result: Any = _MISSING
        if entity is not None:
            result = self._read_fields(entity, ROOT_TYPENAMES[root], walk.selection_set, walk)
        if result is _MISSING:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return copy.deepcopy(result)

    # ─── Normalization ────────────────────────────────────────────────

    def _normalize_fields(
        self,
        data: Mapping[str, Any],
        selection_set: SelectionSetNode,
        typename: str | None,
        walk: DocumentWalk,
    ) -> _FieldWrites:
        writes: _FieldWrites = {}
        for node in walk.fields(selection_set, typename):
            response_key = _response_key(node)
            if response_key not in data:
                continue
            name = node.name.value
            args = walk.args(node)
            key = self.storage_key_for(typename, name, args)
            value = self._normalize_value(data[response_key], node.selection_set, walk)
            previous = writes.get(key)
            if (
                previous is not None
                and isinstance(previous[0], dict)
                and isinstance(value, dict)
                and not is_ref(value)
            ):
                value = {**previous[0], **value}
            writes[key] = (value, args, name)
        return writes

    def _normalize_value(
        self,
        value: Any,
        selection_set: SelectionSetNode | None,
        walk: DocumentWalk,
    ) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            return [self._normalize_value(v, selection_set, walk) for v in value]
        if selection_set is None or not isinstance(value, Mapping):
            return copy.deepcopy(value)
        typename = value.get("__typename")
        writes = self._normalize_fields(value, selection_set, typename, walk)
        key = self.identify(value)
        if key is None:
            return {k: v for k, (v, _, _) in writes.items()}
        self._merge_entity(key, typename, writes)
        return {REF: key}

    def _normalize_raw(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self._normalize_raw(v) for v in value]
        if not isinstance(value, Mapping) or is_ref(value):
            return copy.deepcopy(value)
        writes: _FieldWrites = {k: (self._normalize_raw(v), {}, k) for k, v in value.items()}
        key = self.identify(value)
        if key is None:
            return {k: v for k, (v, _, _) in writes.items()}
        self._merge_entity(key, value.get("__typename"), writes)
        return {REF: key}

    def _merge_entity(self, key: str, typename: str | None, writes: _FieldWrites) -> None:
        typename = typename or self._typename(key)
        entity = self._entities.setdefault(key, {})
        for storage, (incoming, args, name) in writes.items():
            policy = self.field_policy(typename, name)
            ctx = MergeContext(field_name=name, args=args, typename=typename, resolve=self._resolve)
            entity[storage] = policy.merge.merge(entity.get(storage), incoming, ctx)
        self._stats.writes += 1

    def _resolve(self, value: Any) -> Any:
        if is_ref(value):
            return self._entities.get(value[REF], value)
        return value

    # ─── Denormalization ──────────────────────────────────────────────

    def _read_fields(
        self,
        stored: Mapping[str, Any],
        typename: str | None,
        selection_set: SelectionSetNode,
        walk: DocumentWalk,
    ) -> Any:
        out: dict[str, Any] = {}
        for node in walk.fields(selection_set, typename):
            response_key = _response_key(node)
            name = node.name.value
            if name == "__typename":
                value = stored.get("__typename", typename)
                if value is None:
                    return _MISSING
                out[response_key] = value
                continue
            key = self.storage_key_for(typename, name, walk.args(node))
            if key not in stored:
                return _MISSING
            value = self._read_value(stored[key], node.selection_set, walk)
            if value is _MISSING:
                return _MISSING
            previous = out.get(response_key)
            if isinstance(previous, dict) and isinstance(value, dict):
                value = {**previous, **value}
            out[response_key] = value
        return out

    def _read_value(
        self,
        value: Any,
        selection_set: SelectionSetNode | None,
        walk: DocumentWalk,
    ) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            items = []
            for item in value:
                # Evicted list members drop out of the list
                if is_ref(item) and item[REF] not in self._entities:
                    continue
                resolved = self._read_value(item, selection_set, walk)
                if resolved is _MISSING:
                    return _MISSING
                items.append(resolved)
            return items
        if selection_set is None:
            return value
        if is_ref(value):
            key = value[REF]
            entity = self._entities.get(key)
            if entity is None:
                return _MISSING
            return self._read_fields(entity, self._typename(key), selection_set, walk)
        if isinstance(value, dict):
            return self._read_fields(value, value.get("__typename"), selection_set, walk)
        return _MISSING

    # ─── Entities ─────────────────────────────────────────────────────

    def write_entity(self, data: Mapping[str, Any]) -> str:
        """Write a raw object (and the entities nested in it).

        Raises:
            ValueError: If the object has no identity.
        """
        key = self.identify(data)
        if key is None:
            raise ValueError(f"Cannot identify object of type {data.get('__typename')!r}")
        self._normalize_raw(data)
        self._after_write()
        return key

    def read_entity(self, typename: str, ident: Any) -> dict[str, Any] | None:
        """Stored fields of one entity (references unresolved)."""
        self._stats.reads += 1
        entity = self._entities.get(entity_id(typename, ident))
        if entity is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return copy.deepcopy(entity)

    def update_entity(self, typename: str, ident: Any, updates: Mapping[str, Any]) -> bool:
        """Merge ``updates`` into an existing entity; False if it is not cached."""
        key = entity_id(typename, ident)
        if key not in self._entities:
            return False
        writes: _FieldWrites = {k: (self._normalize_raw(v), {}, k) for k, v in updates.items()}
        self._merge_entity(key, typename, writes)
        self._after_write()
        return True

    def read_field(
        self,
        field_name: str,
        *,
        entity_key: str = ROOT_QUERY,
        args: Mapping[str, Any] | None = None,
    ) -> Any:
        """Stored (normalized) value of one field, or None when absent."""
        entity = self._entities.get(entity_key)
        if entity is None:
            return None
        key = self.storage_key_for(self._typename(entity_key), field_name, args)
        return copy.deepcopy(entity.get(key))

    def write_field(
        self,
        field_name: str,
        value: Any,
        *,
        entity_key: str = ROOT_QUERY,
        args: Mapping[str, Any] | None = None,
    ) -> None:
        """Store ``value`` as the whole field, bypassing its merge policy.

        Identifiable objects inside ``value`` are normalized into entities;
        references are kept as they are.
        """
        key = self.storage_key_for(self._typename(entity_key), field_name, args)
        self._entities.setdefault(entity_key, {})[key] = self._normalize_raw(value)
        self._stats.writes += 1
        self._after_write()

    def stored(self, key: str) -> dict[str, Any] | None:
        """Stored fields under a cache id, references unresolved."""
        entity = self._entities.get(key)
        return copy.deepcopy(entity) if entity is not None else None

    def put_stored(self, key: str, fields: Mapping[str, Any] | None) -> None:
        """Replace the stored fields under ``key``; None removes the entity."""
        if fields is None:
            self._entities.pop(key, None)
        else:
            self._entities[key] = copy.deepcopy(dict(fields))

    def has(self, typename: str, ident: Any) -> bool:
        return entity_id(typename, ident) in self._entities

    def keys(self, typename: str | None = None) -> list[str]:
        if typename is None:
            return list(self._entities)
        return [k for k in self._entities if self._typename(k) == typename]

    # ─── Eviction & collection ────────────────────────────────────────

    def evict(self, typename: str, ident: Any, *, collect: bool = True) -> bool:
        """Remove one entity, then collect what became unreachable."""
        return self.evict_key(entity_id(typename, ident), collect=collect)

    def evict_key(self, key: str, *, collect: bool = True) -> bool:
        removed = self._entities.pop(key, None) is not None
        if removed:
            self._stats.evictions += 1
            _logger.debug("cache.evicted", entity=key)
        if collect:
            self.gc()
        return removed

    def evict_field(
        self,
        field_name: str,
        *,
        entity_key: str = ROOT_QUERY,
        args: Mapping[str, Any] | None = None,
        collect: bool = True,
    ) -> int:
        """Drop a stored field.

        With ``args`` only the value stored for those arguments goes;
        without, every stored variant of the field goes.
        """
        entity = self._entities.get(entity_key)
        removed = 0
        if entity is not None:
            if args is None:
                targets = [k for k in entity if _field_name_of(k) == field_name]
            else:
                targets = [self.storage_key_for(self._typename(entity_key), field_name, args)]
            for target in targets:
                if entity.pop(target, _MISSING) is not _MISSING:
                    removed += 1
        if removed:
            self._stats.evictions += removed
            _logger.debug("cache.field_evicted", entity=entity_key, field=field_name, removed=removed)
        if collect:
            self.gc()
        return removed

    def retain(self, key: str) -> None:
        """Keep ``key`` (and what it references) through collection."""
        self._retained[key] = self._retained.get(key, 0) + 1

    def release(self, key: str) -> None:
        count = self._retained.get(key, 0) - 1
        if count > 0:
            self._retained[key] = count
        else:
            self._retained.pop(key, None)

    def gc(self) -> list[str]:
        """Remove entities unreachable from the roots and retained keys."""
        self._cancel_gc_timer()
        roots = [r for r in (ROOT_QUERY, ROOT_MUTATION, ROOT_SUBSCRIPTION) if r in self._entities]
        roots.extend(k for k in self._retained if k in self._entities)
        reachable: set[str] = set()
        stack = list(roots)
        while stack:
            key = stack.pop()
            if key in reachable:
                continue
            reachable.add(key)
            stack.extend(
                ref
                for ref in _iter_refs(self._entities[key])
                if ref in self._entities and ref not in reachable
            )
        dead = [k for k in self._entities if k not in reachable]
        for key in dead:
            del self._entities[key]
        if dead:
            self._stats.collected += len(dead)
            _logger.debug("cache.collected", count=len(dead))
        return dead

    def _after_write(self) -> None:
        if self.gc_debounce_seconds is None:
            return
        self._cancel_gc_timer()
        self._gc_timer = self.scheduler.call_later(self.gc_debounce_seconds, self._debounced_gc)

    def _debounced_gc(self) -> None:
        self._gc_timer = None
        self.gc()

    def _cancel_gc_timer(self) -> None:
        if self._gc_timer is not None:
            self._gc_timer.cancel()
            self._gc_timer = None

    # ─── Snapshots ────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._entities)

    def replace_snapshot(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        """Replace the whole store.

        Raises:
            ValueError: If ``data`` is not a mapping of entity mappings.
        """
        if not isinstance(data, Mapping):
            raise ValueError("Snapshot must be a mapping of entities")
        entities: dict[str, dict[str, Any]] = {}
        for key, fields in data.items():
            if not isinstance(key, str) or not isinstance(fields, Mapping):
                raise ValueError(f"Invalid snapshot entry for {key!r}")
            entities[key] = copy.deepcopy(dict(fields))
        self._entities = entities

    def clear(self) -> None:
        self._cancel_gc_timer()
        self._entities.clear()

    def stats(self) -> CacheStats:
        by_type: dict[str, int] = {}
        for key in self._entities:
            typename = self._typename(key) or "?"
            by_type[typename] = by_type.get(typename, 0) + 1
        stats = copy.copy(self._stats)
        stats.entities = len(self._entities)
        stats.by_type = by_type
        stats.size_bytes = len(json.dumps(self._entities, default=str))
        return stats


__all__ = ["CacheStats", "DocumentWalk", "NormalizedCache", "ROOT_IDS", "storage_key"]
