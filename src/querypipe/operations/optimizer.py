"""Query optimization: complexity analysis, field pruning, depth limits.

Only read queries are rewritten. Mutations and subscriptions pass through
unchanged because callers depend on every field they select for
optimistic-update reconciliation.

Complexity::

    score = fields + 0.5 * selection_sets
    depth = deepest field nesting
    estimated_cost = score * 10

Field paths are dotted field names (not aliases) from the operation root,
e.g. ``user.profile.avatar``. Allow/deny lists and the used-field set accept
either bare names or paths.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from graphql import (
    DocumentNode,
    FieldNode,
    InlineFragmentNode,
    NameNode,
    OperationDefinitionNode,
    SelectionNode,
    SelectionSetNode,
    Visitor,
    print_ast,
    visit,
)

from querypipe.core.config import OptimizerConfig
from querypipe.core.constants import HEAVY_FIELD_THRESHOLD_SECONDS, OPTIMIZER_COST_PER_POINT
from querypipe.core.logging import get_logger

from .request import GraphQLRequest, OperationType

_logger = get_logger("optimizer")

TYPENAME = "__typename"


# =============================================================================
# Field usage tracking
# =============================================================================


@dataclass
class FieldUsage:
    path: str
    usage_count: int = 0
    total_duration: float = 0.0

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.usage_count if self.usage_count else 0.0


class FieldUsageTracker:
    """Records which fields the application actually reads, and how slow they are."""

    def __init__(self, heavy_threshold: float = HEAVY_FIELD_THRESHOLD_SECONDS) -> None:
        self.heavy_threshold = heavy_threshold
        self._fields: dict[str, FieldUsage] = {}

    def record(self, path: str, duration: float = 0.0) -> None:
        entry = self._fields.setdefault(path, FieldUsage(path))
        entry.usage_count += 1
        entry.total_duration += duration

    def usage(self, path: str) -> int:
        entry = self._fields.get(path)
        return entry.usage_count if entry else 0

    def most_used(self, limit: int = 10) -> list[FieldUsage]:
        return sorted(self._fields.values(), key=lambda f: f.usage_count, reverse=True)[:limit]

    def least_used(self, limit: int = 10) -> list[FieldUsage]:
        return sorted(self._fields.values(), key=lambda f: f.usage_count)[:limit]

    def heavy_fields(self, limit: int = 10) -> list[FieldUsage]:
        heavy = [f for f in self._fields.values() if f.average_duration > self.heavy_threshold]
        return sorted(heavy, key=lambda f: f.average_duration, reverse=True)[:limit]

    def analytics(self) -> dict[str, Any]:
        heavy = self.heavy_fields()
        recommendations: list[str] = []
        if heavy:
            recommendations.append(f"Consider optimizing {len(heavy)} performance-heavy fields")
        return {
            "total_fields": len(self._fields),
            "most_used": [f.path for f in self.most_used()],
            "least_used": [f.path for f in self.least_used()],
            "heavy_fields": [f.path for f in heavy],
            "recommendations": recommendations,
        }

    def clear(self) -> None:
        self._fields.clear()


# =============================================================================
# Complexity
# =============================================================================


@dataclass(frozen=True)
class ComplexityReport:
    field_count: int
    selection_sets: int
    depth: int

    @property
    def score(self) -> float:
        return self.field_count + 0.5 * self.selection_sets

    @property
    def estimated_cost(self) -> float:
        return self.score * OPTIMIZER_COST_PER_POINT

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_count": self.field_count,
            "selection_sets": self.selection_sets,
            "depth": self.depth,
            "score": self.score,
            "estimated_cost": self.estimated_cost,
        }


class _ComplexityVisitor(Visitor):
    def __init__(self) -> None:
        super().__init__()
        self.fields = 0
        self.selection_sets = 0
        self.depth = 0
        self._current = 0

    def enter_field(self, *_args: Any) -> None:
        self.fields += 1
        self._current += 1
        self.depth = max(self.depth, self._current)

    def leave_field(self, *_args: Any) -> None:
        self._current -= 1

    def enter_selection_set(self, *_args: Any) -> None:
        self.selection_sets += 1


def measure(document: DocumentNode) -> ComplexityReport:
    """Complexity of every definition in ``document``."""
    visitor = _ComplexityVisitor()
    visit(document, visitor)
    return ComplexityReport(visitor.fields, visitor.selection_sets, visitor.depth)


# =============================================================================
# Optimizer
# =============================================================================


@dataclass
class OptimizationResult:
    optimized_query: str
    fields_removed: list[str] = field(default_factory=list)
    complexity_delta: float = 0.0
    """Score reduction; positive when the optimized query is cheaper."""

    original: ComplexityReport | None = None
    optimized: ComplexityReport | None = None

    @property
    def modified(self) -> bool:
        return bool(self.fields_removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "optimized_query": self.optimized_query,
            "fields_removed": list(self.fields_removed),
            "complexity_delta": self.complexity_delta,
            "original": self.original.to_dict() if self.original else None,
            "optimized": self.optimized.to_dict() if self.optimized else None,
        }


def _typename_field() -> FieldNode:
    return FieldNode(
        alias=None,
        name=NameNode(value=TYPENAME),
        arguments=(),
        directives=(),
        selection_set=None,
    )


def _placeholder() -> SelectionSetNode:
    return SelectionSetNode(selections=(_typename_field(),))


# AST nodes are never mutated; rewrites build new nodes.


def _with_selections(
    selection_set: SelectionSetNode,
    selections: list[SelectionNode],
) -> SelectionSetNode:
    return SelectionSetNode(selections=tuple(selections), loc=selection_set.loc)


def _with_selection_set(
    node: FieldNode | InlineFragmentNode,
    selection_set: SelectionSetNode,
) -> FieldNode | InlineFragmentNode:
    if isinstance(node, FieldNode):
        return FieldNode(
            alias=node.alias,
            name=node.name,
            arguments=node.arguments,
            directives=node.directives,
            selection_set=selection_set,
            loc=node.loc,
        )
    return InlineFragmentNode(
        type_condition=node.type_condition,
        directives=node.directives,
        selection_set=selection_set,
        loc=node.loc,
    )


def _replace_operation(
    document: DocumentNode,
    operation: OperationDefinitionNode,
    selection_set: SelectionSetNode,
) -> DocumentNode:
    rewritten = OperationDefinitionNode(
        operation=operation.operation,
        name=operation.name,
        variable_definitions=operation.variable_definitions,
        directives=operation.directives,
        selection_set=selection_set,
        loc=operation.loc,
    )
    return DocumentNode(
        definitions=tuple(rewritten if d is operation else d for d in document.definitions),
        loc=document.loc,
    )


class QueryOptimizer:
    """Prunes unused fields and enforces a depth limit on read queries."""

    def __init__(
        self,
        config: OptimizerConfig | None = None,
        tracker: FieldUsageTracker | None = None,
    ) -> None:
        self.config = config or OptimizerConfig()
        self.tracker = tracker or FieldUsageTracker()
        self._include = set(self.config.always_include)
        self._exclude = set(self.config.always_exclude)

    # ─── Analysis ─────────────────────────────────────────────────────

    def analyze(self, query: str) -> ComplexityReport:
        return measure(GraphQLRequest(query).document)

    def exceeds_complexity(self, query: str) -> bool:
        return self.analyze(query).score > self.config.max_complexity

    def performance_recommendations(self, query: str) -> list[str]:
        report = self.analyze(query)
        recommendations: list[str] = []
        if report.depth > 8:
            recommendations.append("Query depth is high, consider flattening the structure")
        if report.field_count > 50:
            recommendations.append("Query selects many fields, consider field pruning")
        if report.score > 500:
            recommendations.append(
                "Query complexity is high, consider breaking into smaller queries"
            )
        return recommendations

    # ─── Optimization ─────────────────────────────────────────────────

    def optimize(
        self,
        query: str,
        used_fields: Iterable[str] | None = None,
        operation_name: str | None = None,
    ) -> OptimizationResult:
        """Optimize one read query.

        Pruning runs only when ``used_fields`` is given. Depth truncation
        always runs.

        Raises:
            FailureError: If the query does not parse.
        """
        request = GraphQLRequest(query, operation_name=operation_name)
        document = request.document
        before = measure(document)

        if request.operation_type is not OperationType.QUERY:
            return OptimizationResult(query, [], 0.0, before, before)

        if self.config.enable_complexity_analysis and before.score > self.config.max_complexity:
            _logger.warning(
                "optimizer.complexity_exceeded",
                operation_name=request.name,
                score=before.score,
                max_complexity=self.config.max_complexity,
            )

        operation = request.operation
        removed: list[str] = []
        selection_set = operation.selection_set

        if self.config.enable_pruning and used_fields is not None:
            used = set(used_fields)
            selection_set = self._prune(selection_set, "", used, removed)
        selection_set = self._truncate(selection_set, "", 1, removed)

        if not removed:
            return OptimizationResult(query, [], 0.0, before, before)

        new_document = _replace_operation(document, operation, selection_set)
        after = measure(new_document)
        _logger.debug(
            "optimizer.pruned",
            operation_name=request.name,
            fields_removed=len(removed),
            score_before=before.score,
            score_after=after.score,
        )
        return OptimizationResult(
            optimized_query=print_ast(new_document),
            fields_removed=removed,
            complexity_delta=before.score - after.score,
            original=before,
            optimized=after,
        )

    def optimize_request(self, request: GraphQLRequest) -> GraphQLRequest:
        """Pipeline stage: optimized copy of ``request`` (same object if unchanged).

        ``request.context["used_fields"]`` supplies the used-field set.
        """
        if not self.config.enabled:
            return request
        result = self.optimize(
            request.query,
            request.context.get("used_fields"),
            request.operation_name,
        )
        if not result.modified:
            return request
        return request.with_query(result.optimized_query)

    # ─── Internals ────────────────────────────────────────────────────

    @staticmethod
    def _matches(names: set[str], name: str, path: str) -> bool:
        return name in names or path in names

    def _keep(self, name: str, path: str, used: set[str]) -> bool:
        if self._matches(self._exclude, name, path):
            return False
        if self._matches(self._include, name, path):
            return True
        if self._matches(used, name, path) or self.tracker.usage(path) > 0:
            return True
        prefix = path + "."
        return any(u.startswith(prefix) for u in used)

    def _prune(
        self,
        selection_set: SelectionSetNode,
        parent: str,
        used: set[str],
        removed: list[str],
    ) -> SelectionSetNode:
        kept: list[SelectionNode] = []
        for selection in selection_set.selections:
            if isinstance(selection, FieldNode):
                name = selection.name.value
                path = f"{parent}.{name}" if parent else name
                if not self._keep(name, path, used):
                    removed.append(path)
                    continue
                if selection.selection_set is not None:
                    selection = _with_selection_set(
                        selection, self._prune(selection.selection_set, path, used, removed)
                    )
                kept.append(selection)
            elif isinstance(selection, InlineFragmentNode):
                kept.append(
                    _with_selection_set(
                        selection, self._prune(selection.selection_set, parent, used, removed)
                    )
                )
            else:
                # Named fragment spreads are left alone
                kept.append(selection)
        if not kept:
            return _placeholder()
        return _with_selections(selection_set, kept)

    def _truncate(
        self,
        selection_set: SelectionSetNode,
        parent: str,
        depth: int,
        removed: list[str],
    ) -> SelectionSetNode:
        if depth > self.config.max_depth:
            for selection in selection_set.selections:
                if isinstance(selection, FieldNode) and selection.name.value != TYPENAME:
                    name = selection.name.value
                    removed.append(f"{parent}.{name}" if parent else name)
            return _placeholder()

        changed = False
        selections: list[SelectionNode] = []
        for selection in selection_set.selections:
            if isinstance(selection, FieldNode) and selection.selection_set is not None:
                name = selection.name.value
                path = f"{parent}.{name}" if parent else name
                inner = self._truncate(selection.selection_set, path, depth + 1, removed)
                if inner is not selection.selection_set:
                    selection = _with_selection_set(selection, inner)
                    changed = True
            elif isinstance(selection, InlineFragmentNode):
                inner = self._truncate(selection.selection_set, parent, depth, removed)
                if inner is not selection.selection_set:
                    selection = _with_selection_set(selection, inner)
                    changed = True
            selections.append(selection)
        if not changed:
            return selection_set
        return _with_selections(selection_set, selections)


__all__ = [
    "ComplexityReport",
    "FieldUsage",
    "FieldUsageTracker",
    "OptimizationResult",
    "QueryOptimizer",
    "measure",
]
