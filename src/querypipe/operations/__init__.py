"""Outbound operation stages: request model, deduplication, batching, optimization."""

from .batching import BatchedOperation, BatchMetrics, PerformanceReport, RequestBatcher
from .dedup import RequestDeduplicator
from .optimizer import (
    ComplexityReport,
    FieldUsageTracker,
    OptimizationResult,
    QueryOptimizer,
)
from .request import ExecutionResult, GraphQLRequest, OperationType

__all__ = [
    "BatchMetrics",
    "BatchedOperation",
    "ComplexityReport",
    "ExecutionResult",
    "FieldUsageTracker",
    "GraphQLRequest",
    "OperationType",
    "OptimizationResult",
    "PerformanceReport",
    "QueryOptimizer",
    "RequestBatcher",
    "RequestDeduplicator",
]
