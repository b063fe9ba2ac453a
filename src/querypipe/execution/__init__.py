"""Retry timing, recovery strategies, and timer scheduling."""

from .backoff import (
    DEFAULT_POLICIES,
    BackoffCalculator,
    BackoffPolicy,
    RetryChecker,
    ServerRetryOverrides,
)
from .recovery import (
    DEFAULT_RECOVERY_PLANS,
    ErrorRecoveryManager,
    HandlerResult,
    InMemoryNavigationStore,
    NavigationStore,
    RecoveryPlan,
    RetryAttempt,
    TokenProvider,
)
from .scheduling import AsyncioScheduler, Scheduler, TimerHandle, VirtualScheduler

__all__ = [
    "AsyncioScheduler",
    "BackoffCalculator",
    "BackoffPolicy",
    "DEFAULT_POLICIES",
    "DEFAULT_RECOVERY_PLANS",
    "ErrorRecoveryManager",
    "HandlerResult",
    "InMemoryNavigationStore",
    "NavigationStore",
    "RecoveryPlan",
    "RetryAttempt",
    "RetryChecker",
    "Scheduler",
    "ServerRetryOverrides",
    "TimerHandle",
    "TokenProvider",
    "VirtualScheduler",
]
