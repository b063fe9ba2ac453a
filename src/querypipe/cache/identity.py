"""Entity identity functions.

An identity function maps a response object to its cache id, or None when the
object cannot be normalized and is stored inline in its parent instead.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from querypipe.core.constants import ROOT_MUTATION, ROOT_QUERY, ROOT_SUBSCRIPTION

IdentityFunction = Callable[[Mapping[str, Any]], str | None]

ROOT_TYPENAMES: dict[str, str] = {
    ROOT_QUERY: "Query",
    ROOT_MUTATION: "Mutation",
    ROOT_SUBSCRIPTION: "Subscription",
}


def entity_id(typename: str, *parts: Any) -> str:
    """Build ``"<Type>:<part>[:<part>...]"``."""
    return ":".join([typename, *(str(p) for p in parts)])


def default_identity(obj: Mapping[str, Any]) -> str | None:
    """``"<__typename>:<id>"`` when both are present."""
    typename = obj.get("__typename")
    ident = obj.get("id")
    if not typename or ident is None:
        return None
    return entity_id(typename, ident)


def composite_identity(*fields: str) -> IdentityFunction:
    """Identity from several key fields, for join rows with no scalar id.

    Example:
        TypePolicy(identify=composite_identity("enrollmentId", "lessonId"))
        # {"__typename": "LessonProgress", "enrollmentId": 7, "lessonId": 3}
        #   -> "LessonProgress:7:3"
    """
    if not fields:
        raise ValueError("composite_identity needs at least one field")

    def identify(obj: Mapping[str, Any]) -> str | None:
        typename = obj.get("__typename")
        values = [obj.get(f) for f in fields]
        if not typename or any(v is None for v in values):
            return None
        return entity_id(typename, *values)

    return identify


def typename_of(entity_key: str) -> str | None:
    """Typename encoded in a cache id."""
    if entity_key in ROOT_TYPENAMES:
        return ROOT_TYPENAMES[entity_key]
    typename, sep, _ = entity_key.partition(":")
    return typename if sep else None


__all__ = [
    "IdentityFunction",
    "ROOT_TYPENAMES",
    "composite_identity",
    "default_identity",
    "entity_id",
    "typename_of",
]
