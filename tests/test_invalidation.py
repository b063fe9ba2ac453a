"""Tests for targeted cache invalidation."""

import pytest

from querypipe.cache import CacheInvalidator, InvalidationRule, NormalizedCache
from querypipe.execution.scheduling import VirtualScheduler
from querypipe.operations import GraphQLRequest


COURSE_QUERY = "query Course($id: ID!) { course(id: $id) { __typename id title } }"
CATALOG_QUERY = "{ courses { __typename id title } me { __typename id name } }"


def _course(ident: str) -> dict:
    return {"__typename": "Course", "id": ident, "title": f"Course {ident}"}


@pytest.fixture
def cache() -> NormalizedCache:
    cache = NormalizedCache(scheduler=VirtualScheduler())
    for ident in ("c1", "c2"):
        cache.write_query(GraphQLRequest(COURSE_QUERY, {"id": ident}), {"course": _course(ident)})
    cache.write_query(
        GraphQLRequest(CATALOG_QUERY),
        {
            "courses": [_course("c1"), _course("c3")],
            "me": {"__typename": "User", "id": "u1", "name": "Ada"},
        },
    )
    return cache


@pytest.fixture
def invalidator(cache: NormalizedCache) -> CacheInvalidator:
    return CacheInvalidator(cache)


class TestInvalidation:
    """Eviction recipes."""

    def test_invalidate_entity(self, cache: NormalizedCache, invalidator: CacheInvalidator) -> None:
        assert invalidator.invalidate_entity("Course", "c2") is True
        assert not cache.has("Course", "c2")
        assert invalidator.invalidate_entity("Course", "c2") is False

    def test_invalidate_type(self, cache: NormalizedCache, invalidator: CacheInvalidator) -> None:
        result = invalidator.invalidate_type("Course")

        assert result.entities == 3
        assert result.fields == 2
        assert cache.keys("Course") == []
        assert cache.has("User", "u1")

    def test_invalidate_query(self, cache: NormalizedCache, invalidator: CacheInvalidator) -> None:
        request = GraphQLRequest(COURSE_QUERY, {"id": "c2"})
        result = invalidator.invalidate_query(request)

        assert result.fields == 1
        assert result.collected == 1
        assert cache.read_query(request) is None
        assert cache.read_query(GraphQLRequest(COURSE_QUERY, {"id": "c1"})) is not None

    def test_invalidate_fields(self, cache: NormalizedCache, invalidator: CacheInvalidator) -> None:
        result = invalidator.invalidate_fields(["courses"])

        assert result.fields == 1
        # c1 is still reachable through course(id: "c1")
        assert result.collected == 1
        assert cache.has("Course", "c1")
        assert not cache.has("Course", "c3")

    def test_invalidate_all(self, cache: NormalizedCache, invalidator: CacheInvalidator) -> None:
        invalidator.invalidate_all()
        assert len(cache) == 0

    def test_rule_with_entity_and_fields(
        self, cache: NormalizedCache, invalidator: CacheInvalidator
    ) -> None:
        result = invalidator.apply(
            InvalidationRule(typename="User", id="u1", root_fields=("me",))
        )
        assert result.entities == 1
        assert result.fields == 1
        assert not cache.has("User", "u1")


class TestNamedRules:
    """Rules registered under an application event name."""

    def test_invalidate_named(self, cache: NormalizedCache, invalidator: CacheInvalidator) -> None:
        invalidator.register(
            "course_archived",
            lambda course_id: InvalidationRule(
                typename="Course", id=course_id, root_fields=("courses",)
            ),
        )
        result = invalidator.invalidate_named("course_archived", course_id="c1")

        assert result.entities == 1
        assert not cache.has("Course", "c1")
        assert not cache.has("Course", "c3")

    def test_unknown_rule(self, invalidator: CacheInvalidator) -> None:
        with pytest.raises(KeyError, match="course_archived"):
            invalidator.invalidate_named("course_archived")
