"""Request pipeline composer.

Wires the stages into one request-handling chain::

    execute(request)
      -> [cache-first read]
      -> Deduplicator -> Batcher -> QueryOptimizer -> Transport
      -> result: cache write-back, retry bookkeeping cleared
      -> failure: ErrorClassifier -> ErrorRecoveryManager
                  -> retry (sleep, loop) | PipelineError

Every stateful component is constructed here and owned by the pipeline
instance, so several independent pipelines can live in one process.

Example:
    config = PipelineConfig.from_yaml(Path("pipeline.yaml"))
    pipeline = RequestPipeline.from_config(config, token_provider=tokens)
    result = await pipeline.execute(GraphQLRequest("{ me { id name } }"))
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator, Iterable, Mapping, Sequence
from typing import Any, cast

from querypipe.cache import (
    CacheInvalidator,
    CachePersistence,
    CacheUpdate,
    CacheUpdater,
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    NormalizedCache,
    OptimisticUpdate,
    TypePolicy,
)
from querypipe.core.config import PipelineConfig
from querypipe.core.errors import (
    ClassifiedError,
    ErrorClassifier,
    ErrorContext,
    FailureError,
    PipelineError,
    ProtocolFailure,
    RecoveryStrategy,
)
from querypipe.core.logging import RequestContext, get_logger, with_context
from querypipe.events import ErrorEventBus, ErrorNotification
from querypipe.execution.recovery import (
    ErrorRecoveryManager,
    HandlerResult,
    NavigationStore,
    TokenProvider,
)
from querypipe.execution.scheduling import AsyncioScheduler, Scheduler
from querypipe.operations import (
    ExecutionResult,
    GraphQLRequest,
    OperationType,
    QueryOptimizer,
    RequestBatcher,
    RequestDeduplicator,
)
from querypipe.telemetry import SafeTelemetry, TelemetrySink
from querypipe.transport import BatchTransport, HttpTransport, Transport

_logger = get_logger("pipeline")


class PendingRequest:
    """Awaitable, cancellable handle returned by RequestPipeline.submit().

    Cancelling detaches only this caller: a deduplicated or batched execution
    shared with other callers keeps running for them.
    """

    def __init__(self, request: GraphQLRequest, task: asyncio.Task[ExecutionResult]) -> None:
        self.request = request
        self._task = task

    @property
    def request_id(self) -> str:
        return self.request.request_id

    def cancel(self) -> bool:
        return self._task.cancel()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> ExecutionResult:
        return await self._task

    def __await__(self) -> Generator[Any, None, ExecutionResult]:
        return self._task.__await__()


class RequestPipeline:
    """Resilient GraphQL request pipeline.

    Args:
        transport: Delivers operations; may also implement BatchTransport.
        config: Stage configuration. Defaults apply when omitted.
        token_provider: Credential source for authentication recovery.
        navigation: Location store for post-login restoration.
        scheduler: Timer source for batching, retry delays and cache GC.
        telemetry_sink: Receives classified errors and batch metrics.
        classifier: Replaces the default ErrorClassifier.
        cache: Replaces the cache built from ``config.cache``.
        type_policies: Identity and field policies for the built cache.
        possible_types: Interface/union membership for the built cache.
        event_bus: Receives error notifications.
        persistence_store: Snapshot store; defaults to a JsonFileStore when
            ``config.cache.persistence_dir`` is set, else memory.
        rng: Jitter source for backoff (tests pass a constant).
    """

    def __init__(
        self,
        transport: Transport,
        config: PipelineConfig | None = None,
        *,
        token_provider: TokenProvider | None = None,
        navigation: NavigationStore | None = None,
        scheduler: Scheduler | None = None,
        telemetry_sink: TelemetrySink | None = None,
        classifier: ErrorClassifier | None = None,
        cache: NormalizedCache | None = None,
        type_policies: Mapping[str, TypePolicy] | None = None,
        possible_types: Mapping[str, Iterable[str]] | None = None,
        event_bus: ErrorEventBus | None = None,
        persistence_store: KeyValueStore | None = None,
        rng: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.transport = transport
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.telemetry = SafeTelemetry(telemetry_sink)
        self.events = event_bus or ErrorEventBus()

        overrides = self.config.retry.build_overrides()
        self.classifier = classifier or ErrorClassifier(retry_overrides=overrides)
        self.recovery = ErrorRecoveryManager(
            token_provider=token_provider,
            navigation=navigation,
            backoff=self.config.retry.build_calculator(overrides, rng),
            retry_checker=self.config.retry.build_checker(),
            scheduler=self.scheduler,
            refresh_timeout=self.config.auth.refresh_timeout_seconds,
            login_path=self.config.auth.login_path,
        )

        self.deduplicator = RequestDeduplicator(enabled=self.config.deduplication.enabled)
        self.batcher: RequestBatcher | None = None
        if self.config.batching.enabled:
            self.batcher = RequestBatcher(
                self.config.batching,
                scheduler=self.scheduler,
                deduplicator=self.deduplicator,
                batch_executor=self._execute_batch if self._wire_batching else None,
                telemetry=self.telemetry,
            )
        self.optimizer: QueryOptimizer | None = None
        if self.config.optimizer.enabled:
            self.optimizer = QueryOptimizer(self.config.optimizer)

        cache_config = self.config.cache
        self.cache: NormalizedCache | None = cache
        if self.cache is None and cache_config.enabled:
            self.cache = NormalizedCache(
                type_policies,
                possible_types,
                scheduler=self.scheduler,
                gc_debounce_seconds=cache_config.gc_debounce_seconds,
            )
        self.invalidator: CacheInvalidator | None = None
        self.updater: CacheUpdater | None = None
        self.persistence: CachePersistence | None = None
        if self.cache is not None:
            self.invalidator = CacheInvalidator(self.cache)
            self.updater = CacheUpdater(self.cache)
            if persistence_store is None:
                if cache_config.persistence_dir is not None:
                    persistence_store = JsonFileStore(cache_config.persistence_dir.expanduser())
                else:
                    persistence_store = InMemoryStore()
            self.persistence = CachePersistence(
                self.cache,
                persistence_store,
                key=cache_config.persistence_key,
                version=cache_config.schema_version,
                max_age_seconds=cache_config.max_age_seconds,
            )

        self._pending: set[asyncio.Task[ExecutionResult]] = set()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        *,
        token_provider: TokenProvider | None = None,
        **kwargs: Any,
    ) -> RequestPipeline:
        """Build a pipeline with an HttpTransport for ``config.transport``."""
        transport = HttpTransport(config.transport, token_provider=token_provider)
        return cls(transport, config, token_provider=token_provider, **kwargs)

    @property
    def _wire_batching(self) -> bool:
        return self.config.transport.wire_batching and isinstance(self.transport, BatchTransport)

    # ─── Entry points ─────────────────────────────────────────────────

    async def execute(self, request: GraphQLRequest) -> ExecutionResult:
        """Run ``request`` through the pipeline.

        Retries and token refreshes happen inside this call.

        Raises:
            PipelineError: When recovery ends without a retry.
        """
        base = RequestContext(
            request_id=request.request_id,
            operation_name=self._operation_name(request),
        )
        started = self.scheduler.now()
        attempt = 0
        auth_replays = 0

        try:
            while True:
                with with_context(base.with_attempt(attempt)):
                    try:
                        result = await self._attempt(request)
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        error, outcome = await self._recover(exc, request, auth_replays)
                        if not outcome.should_retry:
                            self.recovery.clear_retry_attempts(request.request_id)
                            await self._notify(error, outcome)
                            _logger.warning(
                                "pipeline.request_failed",
                                kind=error.kind.value,
                                code=error.code,
                                attempts=attempt + 1,
                                actions=outcome.actions,
                            )
                            raise PipelineError(error, outcome) from exc
                        if "token_refreshed" in outcome.actions:
                            auth_replays += 1
                        await self._notify(error, outcome)
                        await self.scheduler.sleep(outcome.retry_delay or 0.0)
                    else:
                        _logger.debug(
                            "pipeline.request_completed",
                            attempts=attempt + 1,
                            duration_seconds=round(self.scheduler.now() - started, 3),
                            partial=bool(result.errors),
                        )
                        return result
                attempt += 1
        finally:
            # Also reached when cancelled during a backoff sleep
            self.recovery.clear_retry_attempts(request.request_id)

    async def mutate(
        self,
        request: GraphQLRequest,
        *,
        optimistic: Sequence[CacheUpdate] = (),
        update: Callable[[ExecutionResult], Iterable[CacheUpdate]] | None = None,
    ) -> ExecutionResult:
        """Execute a mutation with optimistic and post-mutation cache edits.

        ``optimistic`` edits are applied before the request is sent and are
        discarded once it settles, whatever the outcome. On success the
        result is written back again, so server values win over restored
        ones, and ``update`` builds edits from it, e.g. to put a created
        entity into a cached list. Both are ignored when the pipeline has
        no cache.

        Raises:
            PipelineError: When the mutation fails (after the rollback).
        """
        if self.cache is None or self.updater is None:
            return await self.execute(request)

        pending = OptimisticUpdate(self.cache, self.updater)
        if optimistic:
            pending.apply(*optimistic)
        try:
            result = await self.execute(request)
        finally:
            pending.rollback()

        if result.data is not None and self.config.cache.fetch_policy != "no-cache":
            self._write_back(self.cache, request, result.data)
        if update is not None:
            try:
                for edit in update(result):
                    self.updater.apply(edit)
            except Exception:
                # The mutation itself succeeded
                _logger.warning("pipeline.cache_update_failed", exc_info=True)
        return result

    def submit(self, request: GraphQLRequest) -> PendingRequest:
        """Start ``request`` in the background and return a cancellable handle."""
        task = asyncio.ensure_future(self.execute(request))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return PendingRequest(request, task)

    # ─── Stages ───────────────────────────────────────────────────────

    async def _attempt(self, request: GraphQLRequest) -> ExecutionResult:
        fetch_policy = self.config.cache.fetch_policy
        if (
            self.cache is not None
            and fetch_policy == "cache-first"
            and request.operation_type is OperationType.QUERY
        ):
            cached = self.cache.read_query(request)
            if cached is not None:
                _logger.debug("pipeline.cache_hit")
                return ExecutionResult(data=cached)

        if self.batcher is not None:
            result = await self.batcher.add_to_batch(request, self._forward)
        else:
            result = await self.deduplicator.deduplicate(request, lambda: self._forward(request))

        if result.errors and result.data is None:
            first = result.errors[0]
            if not isinstance(first, dict):
                first = {"message": str(first)}
            raise FailureError(ProtocolFailure.from_graphql_error(first))

        if result.data is not None and self.cache is not None and fetch_policy != "no-cache":
            self._write_back(self.cache, request, result.data)
        return result

    def _optimize(self, request: GraphQLRequest) -> GraphQLRequest:
        if self.optimizer is None:
            return request
        return self.optimizer.optimize_request(request)

    async def _forward(self, request: GraphQLRequest) -> ExecutionResult:
        return await self.transport.execute(self._optimize(request))

    async def _execute_batch(self, requests: Sequence[GraphQLRequest]) -> Sequence[ExecutionResult]:
        transport = cast(BatchTransport, self.transport)
        return await transport.execute_batch([self._optimize(r) for r in requests])

    def _write_back(
        self, cache: NormalizedCache, request: GraphQLRequest, data: dict[str, Any]
    ) -> None:
        try:
            cache.write_query(request, data)
        except Exception:
            # The response is still valid for the caller
            _logger.warning("pipeline.cache_write_failed", exc_info=True)

    # ─── Failure path ─────────────────────────────────────────────────

    async def _recover(
        self,
        exc: Exception,
        request: GraphQLRequest,
        auth_replays: int,
    ) -> tuple[ClassifiedError, HandlerResult]:
        context = self._error_context(request)
        try:
            error = self.classifier.classify_exception(exc, context)
        except Exception:
            _logger.error("pipeline.classification_failed", exc_info=True)
            error = self.classifier.fallback(str(exc) or type(exc).__name__, context)
        try:
            error = self.recovery.effective_error(error)
        except Exception:
            _logger.error("pipeline.retry_policy_failed", error_id=error.id, exc_info=True)
        self.telemetry.report_error(error)

        try:
            strategy = self.recovery.plan_for(error.kind).strategy
            if (
                strategy is RecoveryStrategy.REFRESH_TOKEN
                and auth_replays >= self.config.auth.max_auth_replays
            ):
                outcome = await self.recovery.redirect_to_login(error)
            else:
                outcome = await self.recovery.handle_error(error)
        except Exception:
            _logger.error("pipeline.recovery_failed", error_id=error.id, exc_info=True)
            outcome = HandlerResult(
                handled=False,
                should_retry=False,
                user_message=error.user_message,
                actions=["recovery_failed"],
            )
        return error, outcome

    async def _notify(self, error: ClassifiedError, outcome: HandlerResult) -> None:
        if not self.recovery.plan_for(error.kind).show_notification:
            return
        await self.events.publish(ErrorNotification.from_recovery(error, outcome))

    @staticmethod
    def _operation_name(request: GraphQLRequest) -> str | None:
        try:
            return request.name
        except FailureError:
            return request.operation_name

    def _error_context(self, request: GraphQLRequest) -> ErrorContext:
        return ErrorContext.build(
            operation_name=self._operation_name(request),
            variables=request.variables,
            request_id=request.request_id,
            metadata={k: v for k, v in request.context.items() if k != "used_fields"},
        )

    # ─── Shutdown ─────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Cancel outstanding submissions, flush queues, release the transport."""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.batcher is not None:
            await self.batcher.aclose()
        await self.recovery.aclose()
        await self.telemetry.drain()
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()
        _logger.debug("pipeline.closed")


__all__ = ["PendingRequest", "RequestPipeline"]
