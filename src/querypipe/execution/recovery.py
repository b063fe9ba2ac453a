"""Error recovery: per-kind strategies, retry tracking, token refresh.

The ErrorRecoveryManager takes a ClassifiedError and decides what to do with
it according to the kind's RecoveryPlan:

- RETRY: track a RetryAttempt keyed by the request, compute a backoff delay,
  optionally schedule the supplied operation, or report a terminal result
  once the budget is spent.
- REFRESH_TOKEN: refresh credentials through the TokenProvider. Concurrent
  callers share one in-flight refresh; a refresh that fails or exceeds the
  timeout clears tokens and redirects to login.
- REDIRECT_LOGIN: remember the current location and redirect.
- SHOW_ERROR: terminal, no recovery.
- CUSTOM: delegate to a registered coroutine; falls back to SHOW_ERROR.

Internal failures never propagate out of ``handle_error``; they are logged
and downgraded to SHOW_ERROR.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from querypipe.core.constants import (
    DEFAULT_LOGIN_PATH,
    REDIRECT_AFTER_LOGIN_KEY,
    TOKEN_REFRESH_TIMEOUT_SECONDS,
)
from querypipe.core.errors import ClassifiedError, ErrorKind, RecoveryStrategy
from querypipe.core.errors.codes import KIND_RECOVERY
from querypipe.core.logging import get_logger

from .backoff import BackoffCalculator, RetryChecker
from .scheduling import AsyncioScheduler, Scheduler, TimerHandle

_logger = get_logger("recovery")

RetryableOperation = Callable[[], Awaitable[Any]]


# ─── Collaborators ────────────────────────────────────────────────────


class TokenProvider(Protocol):
    """Access-token source. Storage mechanics are the provider's concern."""

    async def get_access_token(self) -> str | None: ...

    def is_expired(self, token: str) -> bool: ...

    async def refresh_access_token(self) -> str | None:
        """Obtain a new access token; a falsy return means refresh failed."""
        ...

    async def clear_tokens(self) -> None: ...


class NavigationStore(Protocol):
    """Where the application currently is, and where to return after login."""

    def current_location(self) -> str | None: ...

    def save(self, key: str, value: str) -> None: ...


class InMemoryNavigationStore:
    """NavigationStore kept in process memory."""

    def __init__(self, location: str | None = None) -> None:
        self.location = location
        self.saved: dict[str, str] = {}

    def current_location(self) -> str | None:
        return self.location

    def save(self, key: str, value: str) -> None:
        self.saved[key] = value


# ─── Data models ──────────────────────────────────────────────────────


@dataclass
class RetryAttempt:
    """Retry bookkeeping for one request.

    Removed once the budget is exhausted or the retried operation succeeds.
    """

    key: str
    attempts: int = 0
    last_attempt: float | None = None
    next_retry_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt,
            "next_retry_at": self.next_retry_at,
        }


@dataclass
class HandlerResult:
    """Outcome of ErrorRecoveryManager.handle_error()."""

    handled: bool
    """Whether a recovery action was taken."""

    should_retry: bool
    """Whether the caller should run the operation again."""

    user_message: str
    retry_delay: float | None = None
    """Seconds to wait before retrying, when should_retry is set."""

    redirect_to: str | None = None
    actions: list[str] = field(default_factory=list)
    value: Any = None
    """Result of an operation the manager re-ran itself, if any."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "handled": self.handled,
            "should_retry": self.should_retry,
            "user_message": self.user_message,
            "retry_delay": self.retry_delay,
            "redirect_to": self.redirect_to,
            "actions": list(self.actions),
        }


@dataclass(frozen=True)
class RecoveryPlan:
    """How one error kind is recovered."""

    strategy: RecoveryStrategy
    redirect_to: str | None = None
    show_notification: bool = True


DEFAULT_RECOVERY_PLANS: dict[ErrorKind, RecoveryPlan] = {
    kind: RecoveryPlan(
        strategy=strategy,
        show_notification=kind not in (ErrorKind.SUBSCRIPTION, ErrorKind.CACHE),
    )
    for kind, strategy in KIND_RECOVERY.items()
}

CustomHandler = Callable[[ClassifiedError, RetryableOperation | None], Awaitable[HandlerResult]]


# ─── Recovery manager ─────────────────────────────────────────────────


class ErrorRecoveryManager:
    """Executes recovery strategies for classified errors.

    Args:
        token_provider: Credential source for REFRESH_TOKEN recovery.
        navigation: Location store used for post-login restoration.
        backoff: Delay calculator for RETRY recovery.
        retry_checker: Retry predicate for RETRY recovery.
        scheduler: Timer source for scheduled retries and refresh timeouts.
        plans: Per-kind overrides of DEFAULT_RECOVERY_PLANS.
        refresh_timeout: Ceiling for one token refresh (seconds).
        login_path: Redirect target when authentication cannot be recovered.
    """

    def __init__(
        self,
        *,
        token_provider: TokenProvider | None = None,
        navigation: NavigationStore | None = None,
        backoff: BackoffCalculator | None = None,
        retry_checker: RetryChecker | None = None,
        scheduler: Scheduler | None = None,
        plans: Mapping[ErrorKind, RecoveryPlan] | None = None,
        refresh_timeout: float = TOKEN_REFRESH_TIMEOUT_SECONDS,
        login_path: str = DEFAULT_LOGIN_PATH,
    ) -> None:
        self.token_provider = token_provider
        self.navigation = navigation or InMemoryNavigationStore()
        self.backoff = backoff or BackoffCalculator()
        self.retry_checker = retry_checker or RetryChecker()
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.plans: dict[ErrorKind, RecoveryPlan] = {**DEFAULT_RECOVERY_PLANS, **(plans or {})}
        self.refresh_timeout = refresh_timeout
        self.login_path = login_path

        self._attempts: dict[str, RetryAttempt] = {}
        self._custom_handlers: dict[ErrorKind, CustomHandler] = {}
        self._refresh_task: asyncio.Task[bool] | None = None
        self._timers: set[TimerHandle] = set()
        self._background: set[asyncio.Task[None]] = set()
        self.refresh_count = 0
        """Number of refreshes actually issued to the TokenProvider."""

    # ─── Configuration ────────────────────────────────────────────────

    def plan_for(self, kind: ErrorKind) -> RecoveryPlan:
        return self.plans.get(kind, RecoveryPlan(RecoveryStrategy.SHOW_ERROR))

    def set_plan(self, kind: ErrorKind, plan: RecoveryPlan) -> None:
        self.plans[kind] = plan

    def register_custom_handler(self, kind: ErrorKind, handler: CustomHandler) -> None:
        """Route ``kind`` to a custom recovery coroutine."""
        self._custom_handlers[kind] = handler
        self.plans[kind] = replace(self.plan_for(kind), strategy=RecoveryStrategy.CUSTOM)

    def effective_error(self, error: ClassifiedError) -> ClassifiedError:
        """``error`` with the retryability and budget this manager applies.

        The classifier works from static tables; the configured backoff
        policy and the RetryChecker can be stricter (a 501 is classified
        retryable but is not in the retryable status set). Kinds not
        recovered by RETRY are returned unchanged.
        """
        if self.plan_for(error.kind).strategy is not RecoveryStrategy.RETRY:
            return error
        policy = self.backoff.policy_for(error)
        retryable = self.retry_checker.is_retryable(error, 0, policy.max_attempts)
        if retryable:
            max_retries, retry_delay = policy.max_attempts, policy.base_delay
        else:
            max_retries, retry_delay = 0, 0.0
        if (retryable, max_retries, retry_delay) == (
            error.retryable,
            error.max_retries,
            error.retry_delay,
        ):
            return error
        return replace(error, retryable=retryable, max_retries=max_retries, retry_delay=retry_delay)

    # ─── Retry bookkeeping ────────────────────────────────────────────

    def get_retry_attempt(self, key: str) -> RetryAttempt | None:
        return self._attempts.get(key)

    def is_retrying(self, key: str) -> bool:
        return key in self._attempts

    @property
    def retry_attempt_count(self) -> int:
        """Number of requests with live retry state."""
        return len(self._attempts)

    def clear_retry_attempts(self, key: str) -> bool:
        """Drop the retry record for ``key``; True if one existed."""
        return self._attempts.pop(key, None) is not None

    def clear_all_retry_attempts(self) -> None:
        self._attempts.clear()

    # ─── Entry point ──────────────────────────────────────────────────

    async def handle_error(
        self,
        error: ClassifiedError,
        operation: RetryableOperation | None = None,
    ) -> HandlerResult:
        """Run the recovery strategy for ``error``.

        Args:
            error: The classified failure.
            operation: Optional zero-argument coroutine function re-running
                the failed work. RETRY schedules it after the backoff delay;
                REFRESH_TOKEN runs it once after a successful refresh.

        Returns:
            HandlerResult describing what was done and whether to retry.
        """
        plan = self.plan_for(error.kind)
        try:
            if plan.strategy is RecoveryStrategy.RETRY:
                result = self._handle_retry(error, operation)
            elif plan.strategy is RecoveryStrategy.REFRESH_TOKEN:
                result = await self._handle_token_refresh(error, operation, plan)
            elif plan.strategy is RecoveryStrategy.REDIRECT_LOGIN:
                result = self._redirect(error, plan, actions=["redirect_login"])
            elif plan.strategy is RecoveryStrategy.CUSTOM:
                result = await self._handle_custom(error, operation)
            else:
                result = self._show_error(error)
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.error(
                "recovery.internal_error",
                error_id=error.id,
                kind=error.kind.value,
                strategy=plan.strategy.value,
                exc_info=True,
            )
            result = self._show_error(error, actions=["recovery_failed"])

        _logger.info(
            "recovery.completed",
            error_id=error.id,
            kind=error.kind.value,
            strategy=plan.strategy.value,
            handled=result.handled,
            should_retry=result.should_retry,
            retry_delay=result.retry_delay,
            actions=result.actions,
        )
        return result

    async def redirect_to_login(self, error: ClassifiedError) -> HandlerResult:
        """Terminal redirect used when authentication cannot be replayed again."""
        await self._clear_tokens()
        return self._redirect(
            error,
            self.plan_for(error.kind),
            actions=["redirect_login"],
            message="Please log in again.",
        )

    # ─── Strategies ───────────────────────────────────────────────────

    def _handle_retry(
        self,
        error: ClassifiedError,
        operation: RetryableOperation | None,
    ) -> HandlerResult:
        key = error.retry_key
        policy = self.backoff.policy_for(error)
        record = self._attempts.get(key) or RetryAttempt(key=key)

        if not self.retry_checker.is_retryable(error, record.attempts, policy.max_attempts):
            self._attempts.pop(key, None)
            exhausted = 0 < policy.max_attempts <= record.attempts
            _logger.warning(
                "recovery.retry_terminal",
                error_id=error.id,
                retry_key=key,
                attempts=record.attempts,
                max_attempts=policy.max_attempts,
                exhausted=exhausted,
            )
            if exhausted:
                return HandlerResult(
                    handled=True,
                    should_retry=False,
                    user_message=f"{error.user_message} Maximum retry attempts exceeded.",
                    actions=["max_retries_exceeded"],
                )
            return HandlerResult(
                handled=True,
                should_retry=False,
                user_message=error.user_message,
                actions=["not_retryable"],
            )

        delay = self.backoff.delay(record.attempts, policy)
        now = self.scheduler.now()
        record.attempts += 1
        record.last_attempt = now
        record.next_retry_at = now + delay
        self._attempts[key] = record

        if operation is not None:
            self._schedule(key, delay, operation)
            actions = ["scheduled_retry"]
        else:
            actions = ["retry_recommended"]

        _logger.info(
            "recovery.retry_scheduled",
            error_id=error.id,
            retry_key=key,
            attempt=record.attempts,
            max_attempts=policy.max_attempts,
            delay_seconds=round(delay, 3),
        )
        return HandlerResult(
            handled=True,
            should_retry=True,
            user_message=f"{error.user_message} Retrying in {math.ceil(delay)} seconds...",
            retry_delay=delay,
            actions=actions,
        )

    async def _handle_token_refresh(
        self,
        error: ClassifiedError,
        operation: RetryableOperation | None,
        plan: RecoveryPlan,
    ) -> HandlerResult:
        if self.token_provider is None:
            return self._redirect(error, plan, actions=["redirect_login"])

        if not await self.refresh_token():
            await self._clear_tokens()
            return self._redirect(
                error,
                plan,
                actions=["token_refresh_failed", "redirect_login"],
                message="Please log in again.",
            )

        if operation is None:
            return HandlerResult(
                handled=True,
                should_retry=True,
                user_message="Authentication refreshed successfully.",
                retry_delay=0.0,
                actions=["token_refreshed"],
            )

        try:
            value = await operation()
        except Exception:
            _logger.warning("recovery.replay_failed", error_id=error.id, exc_info=True)
            return HandlerResult(
                handled=True,
                should_retry=False,
                user_message=error.user_message,
                actions=["token_refreshed", "operation_retry_failed"],
            )
        return HandlerResult(
            handled=True,
            should_retry=False,
            user_message="Authentication refreshed successfully.",
            actions=["token_refreshed", "operation_retried"],
            value=value,
        )

    async def _handle_custom(
        self,
        error: ClassifiedError,
        operation: RetryableOperation | None,
    ) -> HandlerResult:
        handler = self._custom_handlers.get(error.kind)
        if handler is None:
            return self._show_error(error, actions=["custom_handler_missing"])
        try:
            return await handler(error, operation)
        except Exception:
            _logger.warning("recovery.custom_failed", error_id=error.id, exc_info=True)
            return self._show_error(error, actions=["custom_recovery_failed"])

    def _redirect(
        self,
        error: ClassifiedError,
        plan: RecoveryPlan,
        *,
        actions: list[str],
        message: str | None = None,
    ) -> HandlerResult:
        target = plan.redirect_to or self.login_path
        location = self.navigation.current_location()
        if location and location != target:
            self.navigation.save(REDIRECT_AFTER_LOGIN_KEY, location)
        return HandlerResult(
            handled=True,
            should_retry=False,
            user_message=message or error.user_message,
            redirect_to=target,
            actions=actions,
        )

    @staticmethod
    def _show_error(
        error: ClassifiedError,
        actions: list[str] | None = None,
    ) -> HandlerResult:
        return HandlerResult(
            handled=False,
            should_retry=False,
            user_message=error.user_message,
            actions=actions or ["show_error"],
        )

    # ─── Token refresh (single-flight) ────────────────────────────────

    async def refresh_token(self) -> bool:
        """Refresh credentials, joining an in-flight refresh if one exists.

        Returns False when the refresh fails, raises, or does not finish
        within ``refresh_timeout``.
        """
        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(self._perform_refresh())
            self._refresh_task = task
            task.add_done_callback(self._refresh_finished)
        else:
            _logger.debug("auth.refresh_joined")
        return await self._await_refresh(task)

    async def _perform_refresh(self) -> bool:
        if self.token_provider is None:
            _logger.warning("auth.refresh_unavailable")
            return False
        self.refresh_count += 1
        _logger.info("auth.refresh_started")
        try:
            new_access = await self.token_provider.refresh_access_token()
        except Exception:
            _logger.warning("auth.refresh_error", exc_info=True)
            return False
        succeeded = bool(new_access)
        _logger.info("auth.refresh_finished", succeeded=succeeded)
        return succeeded

    def _refresh_finished(self, task: asyncio.Task[bool]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _await_refresh(self, task: asyncio.Task[bool]) -> bool:
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

        def _on_done(done: asyncio.Task[bool]) -> None:
            if waiter.done():
                return
            if done.cancelled() or done.exception() is not None:
                waiter.set_result(False)
            else:
                waiter.set_result(bool(done.result()))

        def _on_timeout() -> None:
            if not waiter.done():
                _logger.warning("auth.refresh_timeout", timeout_seconds=self.refresh_timeout)
                waiter.set_result(False)

        task.add_done_callback(_on_done)
        timer = self.scheduler.call_later(self.refresh_timeout, _on_timeout)
        try:
            return await waiter
        finally:
            timer.cancel()
            task.remove_done_callback(_on_done)

    async def _clear_tokens(self) -> None:
        if self.token_provider is None:
            return
        try:
            await self.token_provider.clear_tokens()
        except Exception:
            _logger.warning("auth.clear_failed", exc_info=True)

    # ─── Scheduled retries ────────────────────────────────────────────

    def _schedule(self, key: str, delay: float, operation: RetryableOperation) -> None:
        timer: TimerHandle | None = None

        def _fire() -> None:
            if timer is not None:
                self._timers.discard(timer)
            task = asyncio.ensure_future(self._run_scheduled(key, operation))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        timer = self.scheduler.call_later(delay, _fire)
        self._timers.add(timer)

    async def _run_scheduled(self, key: str, operation: RetryableOperation) -> None:
        try:
            await operation()
        except Exception:
            # Record stays; the next classification pass decides what happens
            _logger.warning("recovery.scheduled_retry_failed", retry_key=key, exc_info=True)
            return
        self.clear_retry_attempts(key)
        _logger.info("recovery.scheduled_retry_succeeded", retry_key=key)

    async def aclose(self) -> None:
        """Cancel pending scheduled retries and wait for running ones."""
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "CustomHandler",
    "DEFAULT_RECOVERY_PLANS",
    "ErrorRecoveryManager",
    "HandlerResult",
    "InMemoryNavigationStore",
    "NavigationStore",
    "RecoveryPlan",
    "RetryAttempt",
    "RetryableOperation",
    "TokenProvider",
]
