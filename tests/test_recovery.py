"""Tests for the error recovery manager.

Covers:
- RETRY: attempt tracking, backoff delay, exhaustion, scheduled operations
- REFRESH_TOKEN: single-flight refresh, timeout, failure, replay
- REDIRECT_LOGIN / SHOW_ERROR / CUSTOM strategies
- Internal failures downgraded to SHOW_ERROR
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from querypipe.core.constants import REDIRECT_AFTER_LOGIN_KEY
from querypipe.core.errors import (
    ClassifiedError,
    ErrorClassifier,
    ErrorContext,
    ErrorKind,
    ProtocolFailure,
    RecoveryStrategy,
    TransportFailure,
)
from querypipe.execution.backoff import BackoffCalculator, BackoffPolicy
from querypipe.execution.recovery import (
    DEFAULT_RECOVERY_PLANS,
    ErrorRecoveryManager,
    HandlerResult,
    InMemoryNavigationStore,
    RecoveryPlan,
)
from querypipe.execution.scheduling import VirtualScheduler

from tests.helpers import FakeTokenProvider


# ─── Helpers ──────────────────────────────────────────────────────────


def _error(failure, request_id: str = "req-1") -> ClassifiedError:
    return ErrorClassifier().classify(failure, ErrorContext.build(request_id=request_id))


def _server_down(request_id: str = "req-1") -> ClassifiedError:
    return _error(TransportFailure(message="unavailable", status=503), request_id)


def _expired() -> ClassifiedError:
    return _error(ProtocolFailure(code="TOKEN_EXPIRED", message="expired"))


def _manager(
    scheduler: VirtualScheduler,
    token_provider: FakeTokenProvider | None = None,
    navigation: InMemoryNavigationStore | None = None,
) -> ErrorRecoveryManager:
    return ErrorRecoveryManager(
        token_provider=token_provider,
        navigation=navigation,
        backoff=BackoffCalculator(rng=lambda: 0.0),
        scheduler=scheduler,
    )


class _ExplodingBackoff(BackoffCalculator):
    def delay(self, attempt: int, policy: BackoffPolicy) -> float:
        raise RuntimeError("backoff broke")


# ─── Retry strategy ───────────────────────────────────────────────────


class TestRetry:
    """RETRY recovery and retry bookkeeping."""

    @pytest.mark.asyncio
    async def test_first_retry(self, scheduler: VirtualScheduler) -> None:
        """A retryable failure records an attempt and recommends a delay."""
        manager = _manager(scheduler)
        result = await manager.handle_error(_server_down())

        assert result.handled is True
        assert result.should_retry is True
        assert result.retry_delay == 1.0
        assert result.actions == ["retry_recommended"]
        assert "Retrying in 1 seconds" in result.user_message
        record = manager.get_retry_attempt("req-1")
        assert record is not None
        assert record.attempts == 1
        assert record.next_retry_at == 1.0

    @pytest.mark.asyncio
    async def test_delays_grow_then_exhaust(self, scheduler: VirtualScheduler) -> None:
        """Delays follow the curve; the budget end is terminal and clears state."""
        manager = _manager(scheduler)
        delays = []
        for _ in range(3):
            result = await manager.handle_error(_server_down())
            delays.append(result.retry_delay)
        assert delays == [1.0, 2.0, 4.0]

        final = await manager.handle_error(_server_down())
        assert final.should_retry is False
        assert final.actions == ["max_retries_exceeded"]
        assert "Maximum retry attempts exceeded" in final.user_message
        assert manager.retry_attempt_count == 0

    @pytest.mark.asyncio
    async def test_requests_tracked_separately(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)
        await manager.handle_error(_server_down("a"))
        await manager.handle_error(_server_down("a"))
        await manager.handle_error(_server_down("b"))
        assert manager.get_retry_attempt("a").attempts == 2
        assert manager.get_retry_attempt("b").attempts == 1
        assert manager.retry_attempt_count == 2

        assert manager.clear_retry_attempts("a") is True
        assert manager.clear_retry_attempts("a") is False
        assert manager.is_retrying("b")

    @pytest.mark.asyncio
    async def test_non_retryable_status(self, scheduler: VirtualScheduler) -> None:
        """A network-kind 4xx outside the retryable set is terminal at once."""
        manager = _manager(scheduler)
        result = await manager.handle_error(_error(TransportFailure(message="teapot", status=418)))
        assert result.should_retry is False
        assert result.actions == ["not_retryable"]
        assert manager.retry_attempt_count == 0

    @pytest.mark.asyncio
    async def test_scheduled_operation(self, scheduler: VirtualScheduler) -> None:
        """With an operation, the retry runs after the delay and clears state."""
        manager = _manager(scheduler)
        operation = AsyncMock(return_value="ok")

        result = await manager.handle_error(_server_down(), operation)
        assert result.actions == ["scheduled_retry"]
        operation.assert_not_awaited()

        await scheduler.advance(0.5)
        operation.assert_not_awaited()
        await scheduler.advance(0.5)
        operation.assert_awaited_once()
        assert manager.retry_attempt_count == 0

    @pytest.mark.asyncio
    async def test_failed_scheduled_operation_keeps_record(
        self, scheduler: VirtualScheduler
    ) -> None:
        manager = _manager(scheduler)
        operation = AsyncMock(side_effect=RuntimeError("still down"))
        await manager.handle_error(_server_down(), operation)
        await scheduler.advance(1.0)
        operation.assert_awaited_once()
        assert manager.is_retrying("req-1")

    @pytest.mark.asyncio
    async def test_aclose_cancels_scheduled(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)
        operation = AsyncMock()
        await manager.handle_error(_server_down(), operation)
        await manager.aclose()
        await scheduler.advance(5.0)
        operation.assert_not_awaited()


class TestEffectiveError:
    """Surfaced retryability and budget follow the applied policy."""

    def test_unsupported_status_is_not_retryable(self, scheduler: VirtualScheduler) -> None:
        error = _error(TransportFailure(message="not implemented", status=501))
        assert error.retryable is True

        effective = _manager(scheduler).effective_error(error)

        assert effective.retryable is False
        assert effective.max_retries == 0
        assert effective.id == error.id
        assert effective.code == "HTTP_501"

    def test_budget_follows_configured_policy(self, scheduler: VirtualScheduler) -> None:
        manager = ErrorRecoveryManager(
            backoff=BackoffCalculator(
                {ErrorKind.NETWORK: BackoffPolicy(max_attempts=1, base_delay=0.5)},
                rng=lambda: 0.0,
            ),
            scheduler=scheduler,
        )
        effective = manager.effective_error(_server_down())

        assert effective.retryable is True
        assert effective.max_retries == 1
        assert effective.retry_delay == 0.5

    def test_matching_error_is_returned_as_is(self, scheduler: VirtualScheduler) -> None:
        error = _server_down()
        assert _manager(scheduler).effective_error(error) is error

    def test_other_strategies_are_unchanged(self, scheduler: VirtualScheduler) -> None:
        error = _expired()
        assert _manager(scheduler).effective_error(error) is error


# ─── Token refresh ────────────────────────────────────────────────────


class TestTokenRefresh:
    """REFRESH_TOKEN recovery."""

    @pytest.mark.asyncio
    async def test_refresh_recommends_retry(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        manager = _manager(scheduler, token_provider)
        result = await manager.handle_error(_expired())
        assert result.should_retry is True
        assert result.retry_delay == 0.0
        assert result.actions == ["token_refreshed"]
        assert token_provider.token == "access-2"
        assert manager.refresh_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_failures_share_one_refresh(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        """Two auth failures while a refresh is running trigger one refresh."""
        token_provider.gate = asyncio.Event()
        manager = _manager(scheduler, token_provider)

        first = asyncio.ensure_future(manager.handle_error(_expired()))
        second = asyncio.ensure_future(manager.handle_error(_expired()))
        await scheduler.settle()
        assert token_provider.refresh_calls == 1

        token_provider.gate.set()
        results = await asyncio.gather(first, second)

        assert [r.actions for r in results] == [["token_refreshed"], ["token_refreshed"]]
        assert manager.refresh_count == 1
        assert token_provider.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_sequential_failures_refresh_again(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        manager = _manager(scheduler, token_provider)
        await manager.handle_error(_expired())
        await manager.handle_error(_expired())
        assert manager.refresh_count == 2

    @pytest.mark.asyncio
    async def test_refresh_timeout_redirects(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        """A refresh that outlives the timeout fails and clears tokens."""
        token_provider.gate = asyncio.Event()
        navigation = InMemoryNavigationStore("/courses/42")
        manager = _manager(scheduler, token_provider, navigation)

        task = asyncio.ensure_future(manager.handle_error(_expired()))
        await scheduler.advance(5.0)
        assert not task.done()
        await scheduler.advance(5.0)
        result = await task

        assert result.should_retry is False
        assert result.redirect_to == "/login"
        assert result.actions == ["token_refresh_failed", "redirect_login"]
        assert token_provider.cleared == 1
        assert navigation.saved[REDIRECT_AFTER_LOGIN_KEY] == "/courses/42"

        token_provider.gate.set()
        await scheduler.settle()

    @pytest.mark.asyncio
    async def test_refresh_returns_nothing(self, scheduler: VirtualScheduler) -> None:
        provider = FakeTokenProvider(refreshed=None)
        manager = _manager(scheduler, provider)
        result = await manager.handle_error(_expired())
        assert result.redirect_to == "/login"
        assert "token_refresh_failed" in result.actions
        assert result.user_message == "Please log in again."

    @pytest.mark.asyncio
    async def test_refresh_raises(self, scheduler: VirtualScheduler) -> None:
        provider = FakeTokenProvider(fail_with=RuntimeError("auth server down"))
        manager = _manager(scheduler, provider)
        assert await manager.refresh_token() is False

    @pytest.mark.asyncio
    async def test_direct_refresh_without_provider(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)
        assert await manager.refresh_token() is False
        assert manager.refresh_count == 0

    @pytest.mark.asyncio
    async def test_without_provider_redirects(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)
        result = await manager.handle_error(_expired())
        assert result.actions == ["redirect_login"]
        assert result.redirect_to == "/login"

    @pytest.mark.asyncio
    async def test_replays_operation_after_refresh(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        manager = _manager(scheduler, token_provider)
        operation = AsyncMock(return_value={"data": 1})
        result = await manager.handle_error(_expired(), operation)
        assert result.should_retry is False
        assert result.actions == ["token_refreshed", "operation_retried"]
        assert result.value == {"data": 1}

    @pytest.mark.asyncio
    async def test_replay_failure(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        manager = _manager(scheduler, token_provider)
        operation = AsyncMock(side_effect=RuntimeError("nope"))
        result = await manager.handle_error(_expired(), operation)
        assert result.actions == ["token_refreshed", "operation_retry_failed"]

    @pytest.mark.asyncio
    async def test_redirect_to_login(
        self, scheduler: VirtualScheduler, token_provider: FakeTokenProvider
    ) -> None:
        navigation = InMemoryNavigationStore("/login")
        manager = _manager(scheduler, token_provider, navigation)
        result = await manager.redirect_to_login(_expired())
        assert result.redirect_to == "/login"
        assert token_provider.cleared == 1
        # Already on the login page: nothing to restore
        assert navigation.saved == {}


# ─── Other strategies ─────────────────────────────────────────────────


class TestOtherStrategies:
    """SHOW_ERROR, REDIRECT_LOGIN, CUSTOM and internal failures."""

    @pytest.mark.asyncio
    async def test_show_error(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)
        error = _error(ProtocolFailure(code="FORBIDDEN", message="no"))
        result = await manager.handle_error(error)
        assert result.handled is False
        assert result.should_retry is False
        assert result.actions == ["show_error"]
        assert result.user_message == error.user_message

    @pytest.mark.asyncio
    async def test_redirect_plan(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler, navigation=InMemoryNavigationStore("/home"))
        manager.set_plan(
            ErrorKind.AUTHORIZATION,
            RecoveryPlan(RecoveryStrategy.REDIRECT_LOGIN, redirect_to="/denied"),
        )
        result = await manager.handle_error(_error(ProtocolFailure(code="FORBIDDEN", message="no")))
        assert result.redirect_to == "/denied"
        assert manager.navigation.saved[REDIRECT_AFTER_LOGIN_KEY] == "/home"

    @pytest.mark.asyncio
    async def test_custom_handler(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)

        async def handler(error, operation):
            return HandlerResult(handled=True, should_retry=False, user_message="custom")

        manager.register_custom_handler(ErrorKind.VALIDATION, handler)
        assert manager.plan_for(ErrorKind.VALIDATION).strategy is RecoveryStrategy.CUSTOM
        result = await manager.handle_error(
            _error(ProtocolFailure(code="BAD_USER_INPUT", message="x"))
        )
        assert result.user_message == "custom"

    @pytest.mark.asyncio
    async def test_failing_custom_handler(self, scheduler: VirtualScheduler) -> None:
        manager = _manager(scheduler)
        manager.register_custom_handler(
            ErrorKind.VALIDATION, AsyncMock(side_effect=RuntimeError("bug"))
        )
        result = await manager.handle_error(
            _error(ProtocolFailure(code="BAD_USER_INPUT", message="x"))
        )
        assert result.actions == ["custom_recovery_failed"]

    @pytest.mark.asyncio
    async def test_internal_failure_is_downgraded(self, scheduler: VirtualScheduler) -> None:
        """Recovery never raises; a broken strategy becomes SHOW_ERROR."""
        manager = ErrorRecoveryManager(backoff=_ExplodingBackoff(), scheduler=scheduler)
        result = await manager.handle_error(_server_down())
        assert result.handled is False
        assert result.should_retry is False
        assert result.actions == ["recovery_failed"]

    def test_default_plans(self) -> None:
        assert DEFAULT_RECOVERY_PLANS[ErrorKind.AUTHENTICATION].strategy is (
            RecoveryStrategy.REFRESH_TOKEN
        )
        assert DEFAULT_RECOVERY_PLANS[ErrorKind.NETWORK].strategy is RecoveryStrategy.RETRY
        assert DEFAULT_RECOVERY_PLANS[ErrorKind.SUBSCRIPTION].show_notification is False
        assert DEFAULT_RECOVERY_PLANS[ErrorKind.CACHE].show_notification is False
        assert DEFAULT_RECOVERY_PLANS[ErrorKind.VALIDATION].show_notification is True
