"""Targeted cache invalidation.

Example:
    invalidator = CacheInvalidator(cache)
    invalidator.register(
        "enrollment_created",
        lambda course_id: InvalidationRule(
            typename="Course", id=course_id, root_fields=("enrollments",)
        ),
    )
    invalidator.invalidate_named("enrollment_created", course_id="c1")
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from querypipe.core.constants import ROOT_QUERY
from querypipe.core.logging import get_logger
from querypipe.operations.request import GraphQLRequest

from .store import ROOT_IDS, DocumentWalk, NormalizedCache

_logger = get_logger("cache")

RuleBuilder = Callable[..., "InvalidationRule"]


@dataclass(frozen=True)
class InvalidationRule:
    """What to drop after an application event such as a mutation."""

    typename: str | None = None
    id: Any = None
    """With ``typename``: evict this one entity."""

    root_fields: tuple[str, ...] = ()
    """Root query fields to drop in every argument variant."""

    types: tuple[str, ...] = ()
    """Typenames whose entities are all evicted."""


@dataclass
class InvalidationResult:
    entities: int = 0
    fields: int = 0
    collected: int = 0


class CacheInvalidator:
    """Eviction recipes over a NormalizedCache. Each call collects garbage once."""

    def __init__(self, cache: NormalizedCache) -> None:
        self.cache = cache
        self._rules: dict[str, RuleBuilder] = {}

    def invalidate_entity(self, typename: str, ident: Any) -> bool:
        return self.cache.evict(typename, ident)

    def invalidate_type(self, typename: str) -> InvalidationResult:
        """Evict every entity of ``typename`` and its lower-cased root list field."""
        return self.apply(InvalidationRule(types=(typename,)))

    def invalidate_query(self, request: GraphQLRequest) -> InvalidationResult:
        """Drop the root fields ``request`` selects, for its argument values."""
        result = InvalidationResult()
        root = ROOT_IDS[request.operation_type]
        walk = DocumentWalk(request, self.cache.possible_types)
        for node in walk.fields(walk.selection_set, None):
            result.fields += self.cache.evict_field(
                node.name.value,
                entity_key=root,
                args=walk.args(node),
                collect=False,
            )
        result.collected = len(self.cache.gc())
        self._log(result, source="query", operation_name=request.name)
        return result

    def invalidate_fields(self, names: Iterable[str]) -> InvalidationResult:
        return self.apply(InvalidationRule(root_fields=tuple(names)))

    def invalidate_all(self) -> None:
        self.cache.clear()
        _logger.info("cache.invalidated_all")

    def apply(self, rule: InvalidationRule) -> InvalidationResult:
        result = InvalidationResult()
        if rule.typename is not None and rule.id is not None:
            result.entities += int(self.cache.evict(rule.typename, rule.id, collect=False))
        for typename in rule.types:
            for key in self.cache.keys(typename):
                result.entities += int(self.cache.evict_key(key, collect=False))
            list_field = typename[:1].lower() + typename[1:]
            result.fields += self.cache.evict_field(list_field, entity_key=ROOT_QUERY, collect=False)
        for name in rule.root_fields:
            result.fields += self.cache.evict_field(name, entity_key=ROOT_QUERY, collect=False)
        result.collected = len(self.cache.gc())
        self._log(result, source="rule")
        return result

    # ─── Named rules ──────────────────────────────────────────────────

    def register(self, name: str, builder: RuleBuilder) -> None:
        self._rules[name] = builder

    def invalidate_named(self, name: str, **kwargs: Any) -> InvalidationResult:
        """Apply the rule registered as ``name``.

        Raises:
            KeyError: If no rule is registered under ``name``.
        """
        try:
            builder = self._rules[name]
        except KeyError:
            raise KeyError(f"No invalidation rule named '{name}'") from None
        return self.apply(builder(**kwargs))

    @staticmethod
    def _log(result: InvalidationResult, **kw: Any) -> None:
        _logger.debug(
            "cache.invalidated",
            entities=result.entities,
            fields=result.fields,
            collected=result.collected,
            **kw,
        )


__all__ = ["CacheInvalidator", "InvalidationResult", "InvalidationRule"]
