"""Field merge policies and per-type cache policies.

A merge policy decides the stored value when a field is written again:

- ``ReplacePolicy``: last write wins (the default).
- ``DeepMergePolicy``: nested objects merge key by key.
- ``AccumulateMaxPolicy``: the stored value never decreases.
- ``PaginatedPolicy``: with a cursor argument, pages are concatenated
  (append or prepend); without one, the list is replaced.
- ``MergeByKeyPolicy``: list elements are matched by a key field; incoming
  order wins and unspecified fields carry over from the matched element.

Every policy is idempotent: writing the same value twice leaves the same
stored state as writing it once.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from .identity import IdentityFunction

REF = "__ref"


def is_ref(value: Any) -> bool:
    return isinstance(value, dict) and len(value) == 1 and REF in value


@dataclass(frozen=True)
class MergeContext:
    """What a policy knows about the write in progress."""

    field_name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    typename: str | None = None
    resolve: Callable[[Any], Any] = lambda value: value
    """Follows a ``{"__ref": id}`` to the stored entity; other values pass through."""


class MergePolicy(Protocol):
    name: str

    def merge(self, existing: Any, incoming: Any, ctx: MergeContext) -> Any: ...


class ReplacePolicy:
    name = "replace"

    def merge(self, existing: Any, incoming: Any, ctx: MergeContext) -> Any:
        return incoming


class DeepMergePolicy:
    name = "deep-merge"

    def merge(self, existing: Any, incoming: Any, ctx: MergeContext) -> Any:
        return _deep_merge(existing, incoming)


def _deep_merge(existing: Any, incoming: Any) -> Any:
    if not isinstance(existing, dict) or not isinstance(incoming, dict):
        return incoming
    if is_ref(existing) or is_ref(incoming):
        return incoming
    merged = dict(existing)
    for key, value in incoming.items():
        merged[key] = _deep_merge(existing.get(key), value) if key in existing else value
    return merged


class AccumulateMaxPolicy:
    """Monotonic metrics such as progress or view counts."""

    name = "accumulate-max"

    def merge(self, existing: Any, incoming: Any, ctx: MergeContext) -> Any:
        if existing is None:
            return incoming
        if incoming is None:
            return existing
        try:
            return incoming if incoming > existing else existing
        except TypeError:
            return incoming


def _element_key(value: Any) -> str:
    if is_ref(value):
        return value[REF]
    return json.dumps(value, sort_keys=True, default=str)


class PaginatedPolicy:
    """Cursor pagination.

    Args:
        direction: ``append`` adds later pages at the end, ``prepend`` at
            the start.
        cursor_args: Arguments marking a continuation request. They are
            also left out of the field's storage key so pages share one
            list.
    """

    name = "paginated"

    def __init__(
        self,
        direction: Literal["append", "prepend"] = "append",
        cursor_args: Sequence[str] = ("after", "before", "cursor"),
    ) -> None:
        if direction not in ("append", "prepend"):
            raise ValueError(f"direction must be 'append' or 'prepend', got {direction!r}")
        self.direction = direction
        self.cursor_args = tuple(cursor_args)

    def merge(self, existing: Any, incoming: Any, ctx: MergeContext) -> Any:
        if incoming is None:
            return None
        continuation = any(ctx.args.get(arg) is not None for arg in self.cursor_args)
        if not continuation or not isinstance(existing, list):
            return list(incoming)
        seen = {_element_key(e) for e in existing}
        fresh = [e for e in incoming if _element_key(e) not in seen]
        if self.direction == "append":
            return [*existing, *fresh]
        return [*fresh, *existing]


class MergeByKeyPolicy:
    """Ordered child collections matched element-wise by ``key``.

    Incoming elements appear in incoming order, each combined with the
    existing element of the same key. Existing elements the response did
    not mention follow, in their previous order. Elements without a key are
    taken from the incoming list only.
    """

    name = "merge-by-key"

    def __init__(self, key: str = "id") -> None:
        self.key = key

    def _key_of(self, element: Any, ctx: MergeContext) -> Any:
        resolved = ctx.resolve(element)
        if isinstance(resolved, Mapping):
            return resolved.get(self.key)
        return None

    def merge(self, existing: Any, incoming: Any, ctx: MergeContext) -> Any:
        if incoming is None:
            return None
        if not isinstance(existing, list):
            return list(incoming)

        by_key: dict[Any, Any] = {}
        for element in existing:
            k = self._key_of(element, ctx)
            if k is not None:
                by_key[k] = element

        merged: list[Any] = []
        mentioned: set[Any] = set()
        for element in incoming:
            k = self._key_of(element, ctx)
            if k is None:
                merged.append(element)
                continue
            mentioned.add(k)
            previous = by_key.get(k)
            if isinstance(previous, dict) and isinstance(element, dict) and not is_ref(element):
                merged.append({**previous, **element})
            else:
                # References merge at the entity level
                merged.append(element)
        merged.extend(e for k, e in by_key.items() if k not in mentioned)
        return merged


REPLACE = ReplacePolicy()
DEEP_MERGE = DeepMergePolicy()
ACCUMULATE_MAX = AccumulateMaxPolicy()


@dataclass(frozen=True)
class FieldPolicy:
    merge: MergePolicy = REPLACE
    key_args: Sequence[str] | None = None
    """Arguments that distinguish stored values. None: every argument except
    a paginated policy's cursor arguments."""

    def storage_args(self, args: Mapping[str, Any]) -> dict[str, Any]:
        if self.key_args is not None:
            return {k: args[k] for k in self.key_args if k in args}
        ignored = getattr(self.merge, "cursor_args", ())
        return {k: v for k, v in args.items() if k not in ignored}


@dataclass(frozen=True)
class TypePolicy:
    identify: IdentityFunction | None = None
    fields: Mapping[str, FieldPolicy] = field(default_factory=dict)


DEFAULT_FIELD_POLICY = FieldPolicy()


__all__ = [
    "ACCUMULATE_MAX",
    "AccumulateMaxPolicy",
    "DEEP_MERGE",
    "DEFAULT_FIELD_POLICY",
    "DeepMergePolicy",
    "FieldPolicy",
    "MergeByKeyPolicy",
    "MergeContext",
    "MergePolicy",
    "PaginatedPolicy",
    "REF",
    "REPLACE",
    "ReplacePolicy",
    "TypePolicy",
    "is_ref",
]
