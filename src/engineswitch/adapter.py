"""
MigrationAdapter - per-request orchestrator between legacy and candidate engines.

The adapter asks FeatureFlags for one routing decision per request and
executes it:

    legacy     run the legacy engine
    candidate  run the candidate engine; on failure fall back to legacy
               (or return a structured failure when fallback is disabled)
    canary     run both concurrently, return the legacy result, compare the
               candidate's output for observability

Engine errors never escape ``execute()``: they are converted into a failed
ExecutionResult, recorded against the circuit breaker (candidate only), and
handled by the fallback policy. Only candidate outcomes feed the breaker;
it guards the candidate engine.

Engines are any object with ``execute(context)`` (or a plain callable)
returning an ExecutionResult or a result dict. Coroutine functions are
awaited; synchronous ones run in a worker thread via ``asyncio.to_thread``.

Example:
    >>> adapter = MigrationAdapter(flags, legacy_engine, candidate_engine)
    >>> result = await adapter.execute({"table": "users"})
    >>> result.migration_metadata.used_candidate
    False
    >>> await adapter.aclose()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from engineswitch.comparator import OutputComparator
from engineswitch.config import MigrationConfig
from engineswitch.exceptions import (
    CanaryTimeoutError,
    CircuitBreakerOpenError,
    EngineExecutionError,
)
from engineswitch.feature_flags import FeatureFlags
from engineswitch.metrics import MigrationMetrics
from engineswitch.models import (
    CircuitState,
    ComparisonResult,
    EngineKind,
    EnrichedResult,
    ExecutionResult,
    MigrationMetadata,
    RequestContext,
    RoutingDecision,
)
from engineswitch.observability import (
    ATTR_CANARY,
    ATTR_CIRCUIT_STATE,
    ATTR_COMPARISON_MATCH,
    ATTR_ENGINE,
    ATTR_ENGINE_SUCCESS,
    ATTR_ERROR_TYPE,
    ATTR_EXECUTION_ID,
    ATTR_FALLBACK_USED,
    ATTR_ROUTING_KEY,
    ATTR_ROUTING_REASON,
    ATTR_USED_CANDIDATE,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class Engine(Protocol):
    """An execution engine: legacy or candidate."""

    def execute(self, context: RequestContext) -> Any:
        """Run one request; returns an ExecutionResult, a result dict, or an awaitable of either."""
        ...


ResultReporter = Callable[[EnrichedResult], Any]


@dataclass(frozen=True)
class EngineOutcome:
    """Result of one engine run plus the error that made it fail, if any."""

    engine: EngineKind
    result: ExecutionResult
    error: EngineExecutionError | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _coerce_result(raw: Any) -> ExecutionResult:
    if isinstance(raw, ExecutionResult):
        return raw
    if isinstance(raw, Mapping):
        return ExecutionResult.from_dict(raw)
    raise TypeError(f"engine returned {type(raw).__name__}, expected ExecutionResult or dict")


class MigrationAdapter:
    """
    Routes each request to the legacy engine, the candidate engine, or both.

    Thread Safety:
        ``execute`` is safe under many concurrent callers. Adapter counters
        are guarded by a lock; routing state lives in FeatureFlags.

    Attributes:
        feature_flags: Routing policy and circuit breaker owner.
        comparator: Used to compare canary outputs.
    """

    _COUNTER_NAMES = (
        "executions_total",
        "executions_legacy",
        "executions_candidate",
        "canary_tests",
        "canary_timeouts",
        "late_canary_successes",
        "late_canary_failures",
        "fallbacks",
        "candidate_failures",
        "legacy_failures",
    )

    def __init__(
        self,
        feature_flags: FeatureFlags,
        legacy_engine: Engine | Callable[..., Any],
        candidate_engine: Engine | Callable[..., Any],
        *,
        comparator: OutputComparator | None = None,
        reporter: ResultReporter | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            feature_flags: Shared FeatureFlags instance.
            legacy_engine: The trusted engine.
            candidate_engine: The engine being rolled out.
            comparator: Canary output comparator (defaults to OutputComparator()).
            reporter: Optional callback receiving every EnrichedResult.
                Called best-effort; failures are logged and ignored.
            metrics: Metrics container (defaults to a new MigrationMetrics).
            tracer: Optional custom Tracer.
            enable_tracing: Create an OpenTelemetry tracer when no tracer is given.
        """
        self.feature_flags = feature_flags
        self._legacy_engine = legacy_engine
        self._candidate_engine = candidate_engine
        self.comparator = comparator or OutputComparator()
        self._reporter = reporter
        self._metrics = metrics or MigrationMetrics("adapter")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._lock = threading.Lock()
        self._counters: dict[str, int] = dict.fromkeys(self._COUNTER_NAMES, 0)
        self._detached_canaries: set[asyncio.Task[EngineOutcome]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Public API
    # =========================================================================

    async def execute(self, context: RequestContext | Mapping[str, Any] | None = None) -> EnrichedResult:
        """
        Execute one request according to the current routing policy.

        Args:
            context: Request context, a mapping, or None for a minimal context.

        Returns:
            EnrichedResult. Never raises for engine failures; check ``success``.
        """
        ctx = RequestContext.coerce(context)
        decision, config, breaker_state = self.feature_flags.routing_snapshot(ctx)

        with self._tracer.span(
            "engineswitch.adapter.execute",
            {
                ATTR_EXECUTION_ID: str(ctx.request_id),
                ATTR_ROUTING_KEY: ctx.routing_key or "",
                ATTR_ROUTING_REASON: decision.reason,
                ATTR_CANARY: decision.is_canary,
                ATTR_CIRCUIT_STATE: breaker_state.value,
            },
        ) as span:
            if decision.is_canary:
                enriched = await self._execute_canary(ctx, decision, config, breaker_state)
            elif decision.use_candidate:
                enriched = await self._execute_candidate(ctx, decision, config, breaker_state)
            else:
                enriched = await self._execute_legacy(ctx, decision, config, breaker_state)
            if span:
                span.set_attribute(ATTR_USED_CANDIDATE, enriched.migration_metadata.used_candidate)
                span.set_attribute(ATTR_FALLBACK_USED, enriched.migration_metadata.fallback_used)
                span.set_attribute(ATTR_ENGINE_SUCCESS, enriched.success)

        self._report(enriched)
        return enriched

    async def force_execute_system(
        self,
        which: EngineKind | str,
        context: RequestContext | Mapping[str, Any] | None = None,
        *,
        bypass_circuit_breaker: bool = False,
    ) -> EnrichedResult:
        """
        Run one engine directly, skipping routing, canary and fallback.

        Args:
            which: "legacy", "candidate" (or "new"), or an EngineKind.
            context: Request context.
            bypass_circuit_breaker: Allow a candidate run while the breaker is open.

        Returns:
            EnrichedResult from the requested engine.

        Raises:
            ValueError: If ``which`` names no known engine.
            CircuitBreakerOpenError: If the candidate is requested while the
                breaker is open and no bypass was given.
        """
        kind = EngineKind.parse(which)
        ctx = RequestContext.coerce(context)
        config = self.feature_flags.config
        breaker = self.feature_flags.circuit_breaker
        breaker_state = breaker.state

        if kind == EngineKind.CANDIDATE and breaker_state == CircuitState.OPEN:
            if not bypass_circuit_breaker:
                raise CircuitBreakerOpenError(breaker.time_until_half_open())
            logger.warning(
                "Forcing candidate run %s with circuit breaker open",
                ctx.request_id,
                extra={"execution_id": str(ctx.request_id)},
            )

        decision = RoutingDecision(use_candidate=kind == EngineKind.CANDIDATE, reason="forced")
        outcome = await self._run_engine(kind, ctx)
        if kind == EngineKind.CANDIDATE:
            self._record_candidate(outcome)
        self._count_returned(outcome)
        enriched = self._enrich(ctx, outcome.result, decision, config, breaker_state)
        self._report(enriched)
        return enriched

    def statistics(self) -> dict[str, int]:
        """Snapshot of the adapter-local counters."""
        with self._lock:
            return dict(self._counters)

    def collect_service_statistics(self) -> dict[str, Any]:
        """
        Everything an operator needs to judge the rollout.

        Engine ``statistics()`` maps are collected best-effort.
        """
        return {
            "migration_adapter_stats": self.statistics(),
            "feature_flags_state": self.feature_flags.configuration_summary(),
            "performance_metrics": self.feature_flags.performance_statistics(),
            "circuit_breaker_state": self.feature_flags.circuit_breaker_state().value,
            "pending_canary_runs": self.pending_canary_count,
            "legacy_engine_stats": self._engine_statistics(self._legacy_engine, EngineKind.LEGACY),
            "candidate_engine_stats": self._engine_statistics(
                self._candidate_engine, EngineKind.CANDIDATE
            ),
        }

    @property
    def pending_canary_count(self) -> int:
        """Canary candidate runs still going after their timeout."""
        return len(self._detached_canaries)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for detached canary runs and reporter tasks to finish."""
        pending = list(self._detached_canaries) + list(self._background_tasks)
        if not pending:
            return
        _, remaining = await asyncio.wait(pending, timeout=timeout)
        if remaining:
            logger.warning(
                "%d background task(s) still running after drain timeout",
                len(remaining),
                extra={"remaining_tasks": len(remaining)},
            )

    async def aclose(self) -> None:
        """Cancel detached canary runs and reporter tasks."""
        pending = list(self._detached_canaries) + list(self._background_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d background task(s)", len(pending))

    # =========================================================================
    # Routes
    # =========================================================================

    async def _execute_legacy(
        self,
        ctx: RequestContext,
        decision: RoutingDecision,
        config: MigrationConfig,
        breaker_state: CircuitState,
    ) -> EnrichedResult:
        outcome = await self._run_engine(EngineKind.LEGACY, ctx)
        self._count_returned(outcome)
        return self._enrich(ctx, outcome.result, decision, config, breaker_state)

    async def _execute_candidate(
        self,
        ctx: RequestContext,
        decision: RoutingDecision,
        config: MigrationConfig,
        breaker_state: CircuitState,
    ) -> EnrichedResult:
        outcome = await self._run_engine(EngineKind.CANDIDATE, ctx)
        self._record_candidate(outcome)

        if not outcome.failed:
            self._count_returned(outcome)
            return self._enrich(ctx, outcome.result, decision, config, breaker_state)

        assert outcome.error is not None
        if not config.fallback_to_legacy_on_error:
            failure = ExecutionResult.failure(
                f"New pipeline failed: {outcome.error.detail}",
                execution_time_seconds=outcome.result.execution_time_seconds,
            )
            self._count_returned(EngineOutcome(EngineKind.CANDIDATE, failure, outcome.error))
            return self._enrich(ctx, failure, decision, config, breaker_state)

        logger.warning(
            "Candidate engine failed for %s, falling back to legacy: %s",
            ctx.request_id,
            outcome.error.detail,
            extra={"execution_id": str(ctx.request_id)},
        )
        with self._lock:
            self._counters["fallbacks"] += 1
        self._metrics.record_fallback()

        legacy = await self._run_engine(EngineKind.LEGACY, ctx)
        self._count_returned(legacy)
        return self._enrich(
            ctx,
            legacy.result,
            decision,
            config,
            breaker_state,
            fallback_used=True,
        )

    async def _execute_canary(
        self,
        ctx: RequestContext,
        decision: RoutingDecision,
        config: MigrationConfig,
        breaker_state: CircuitState,
    ) -> EnrichedResult:
        loop = asyncio.get_running_loop()
        legacy_task = asyncio.create_task(self._run_engine(EngineKind.LEGACY, ctx))
        candidate_started = loop.time()
        candidate_task = asyncio.create_task(self._run_engine(EngineKind.CANDIDATE, ctx))
        with self._lock:
            self._counters["canary_tests"] += 1

        try:
            legacy = await legacy_task
        except asyncio.CancelledError:
            candidate_task.cancel()
            raise

        remaining = config.canary_timeout_seconds - (loop.time() - candidate_started)
        comparison: ComparisonResult | None = None
        try:
            candidate = await asyncio.wait_for(asyncio.shield(candidate_task), max(remaining, 0.0))
        except TimeoutError:
            self._detach_canary(candidate_task, ctx)
            timeout_error = CanaryTimeoutError(config.canary_timeout_seconds)
            logger.warning(
                "Canary run %s: %s",
                ctx.request_id,
                timeout_error.detail,
                extra={"execution_id": str(ctx.request_id)},
            )
            with self._lock:
                self._counters["canary_timeouts"] += 1
            self._metrics.record_canary("timeout")
            self.feature_flags.record_error(timeout_error)
        except asyncio.CancelledError:
            candidate_task.cancel()
            raise
        else:
            self._record_candidate(candidate)
            if candidate.failed:
                self._metrics.record_canary("candidate_failed")
            else:
                self.feature_flags.record_performance(
                    legacy.result.execution_time_seconds,
                    candidate.result.execution_time_seconds,
                )
                comparison = self.comparator.compare(legacy.result, candidate.result)
                self._log_comparison(ctx, comparison)
                self._metrics.record_canary("match" if comparison.overall_match else "mismatch")

        self._count_returned(legacy)
        return self._enrich(
            ctx,
            legacy.result,
            decision,
            config,
            breaker_state,
            comparison=comparison,
        )

    def _detach_canary(self, task: asyncio.Task[EngineOutcome], ctx: RequestContext) -> None:
        self._detached_canaries.add(task)

        def on_done(done: asyncio.Task[EngineOutcome]) -> None:
            self._detached_canaries.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.error("Detached canary run %s crashed: %s", ctx.request_id, exc, exc_info=exc)
                return
            outcome = done.result()
            if outcome.failed:
                with self._lock:
                    self._counters["late_canary_failures"] += 1
                self.feature_flags.record_error(outcome.error)
                logger.warning(
                    "Late canary failure for %s: %s",
                    ctx.request_id,
                    outcome.error.detail if outcome.error else "",
                )
            else:
                with self._lock:
                    self._counters["late_canary_successes"] += 1
                logger.info("Late canary success for %s", ctx.request_id)

        task.add_done_callback(on_done)

    # =========================================================================
    # Engine execution
    # =========================================================================

    async def _run_engine(self, kind: EngineKind, ctx: RequestContext) -> EngineOutcome:
        """Run one engine, converting every failure into an EngineOutcome."""
        engine = self._legacy_engine if kind == EngineKind.LEGACY else self._candidate_engine
        func = getattr(engine, "execute", engine)
        started = time.perf_counter()
        error: EngineExecutionError | None = None

        with self._tracer.span(
            f"engineswitch.engine.{kind.value}",
            {ATTR_ENGINE: kind.value, ATTR_EXECUTION_ID: str(ctx.request_id)},
        ) as span:
            try:
                if inspect.iscoroutinefunction(func):
                    raw = await func(ctx)
                else:
                    raw = await asyncio.to_thread(func, ctx)
                    if inspect.isawaitable(raw):
                        raw = await raw
                result = _coerce_result(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "%s engine raised %s: %s",
                    kind.value,
                    type(e).__name__,
                    e,
                    exc_info=True,
                    extra={"execution_id": str(ctx.request_id), "engine": kind.value},
                )
                error = EngineExecutionError(kind.value, f"{type(e).__name__}: {e}", cause=e)
                result = ExecutionResult.failure(str(error))
                if span:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                    span.record_exception(e)
            if span:
                span.set_attribute(ATTR_ENGINE_SUCCESS, error is None and result.success)

        elapsed = time.perf_counter() - started
        result = result.with_timing(elapsed)
        if error is None and not result.success:
            detail = "; ".join(result.errors) or "engine reported failure"
            error = EngineExecutionError(kind.value, detail)

        self._metrics.record_execution(kind.value, success=error is None, duration_seconds=elapsed)
        return EngineOutcome(engine=kind, result=result, error=error)

    def _record_candidate(self, outcome: EngineOutcome) -> None:
        if outcome.failed:
            with self._lock:
                self._counters["candidate_failures"] += 1
            self.feature_flags.record_error(outcome.error)
        else:
            self.feature_flags.record_success()

    def _count_returned(self, outcome: EngineOutcome) -> None:
        with self._lock:
            self._counters["executions_total"] += 1
            if outcome.engine == EngineKind.LEGACY:
                self._counters["executions_legacy"] += 1
                if outcome.failed:
                    self._counters["legacy_failures"] += 1
            else:
                self._counters["executions_candidate"] += 1

    # =========================================================================
    # Result enrichment and reporting
    # =========================================================================

    def _enrich(
        self,
        ctx: RequestContext,
        result: ExecutionResult,
        decision: RoutingDecision,
        config: MigrationConfig,
        breaker_state: CircuitState,
        *,
        fallback_used: bool = False,
        comparison: ComparisonResult | None = None,
    ) -> EnrichedResult:
        metadata = MigrationMetadata(
            used_candidate=decision.use_candidate and not fallback_used and not decision.is_canary,
            was_canary_test=decision.is_canary,
            execution_id=ctx.request_id,
            circuit_breaker_state_at_decision=breaker_state,
            config_snapshot=config.to_dict(),
            fallback_used=fallback_used,
            routing_reason=decision.reason,
            comparison=comparison,
        )
        return EnrichedResult(result=result, migration_metadata=metadata)

    def _log_comparison(self, ctx: RequestContext, comparison: ComparisonResult) -> None:
        with self._tracer.span(
            "engineswitch.adapter.compare",
            {
                ATTR_EXECUTION_ID: str(ctx.request_id),
                ATTR_COMPARISON_MATCH: comparison.overall_match,
            },
        ):
            if comparison.overall_match:
                logger.debug("Canary outputs match for %s", ctx.request_id)
                return
            logger.warning(
                "Canary outputs differ for %s: %s",
                ctx.request_id,
                "; ".join(d.description for d in comparison.critical_discrepancies),
                extra={
                    "execution_id": str(ctx.request_id),
                    "critical_discrepancies": len(comparison.critical_discrepancies),
                },
            )

    def _report(self, enriched: EnrichedResult) -> None:
        metadata = enriched.migration_metadata
        logger.debug(
            "Execution %s finished: success=%s candidate=%s canary=%s fallback=%s",
            metadata.execution_id,
            enriched.success,
            metadata.used_candidate,
            metadata.was_canary_test,
            metadata.fallback_used,
            extra={
                "execution_id": str(metadata.execution_id),
                "used_candidate": metadata.used_candidate,
                "fallback_used": metadata.fallback_used,
            },
        )
        if self._reporter is None:
            return
        try:
            outcome = self._reporter(enriched)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._background_tasks.add(task)
                task.add_done_callback(self._on_report_done)
        except Exception:
            logger.exception("Result reporter failed for %s", metadata.execution_id)

    def _on_report_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Result reporter failed: %s", task.exception())

    def _engine_statistics(self, engine: Any, kind: EngineKind) -> dict[str, Any] | None:
        stats = getattr(engine, "statistics", None)
        if not callable(stats) or inspect.iscoroutinefunction(stats):
            return None
        try:
            value = stats()
        except Exception:
            logger.warning("Could not collect %s engine statistics", kind.value, exc_info=True)
            return None
        if isinstance(value, Mapping):
            return dict(value)
        return None


__all__ = ["Engine", "EngineOutcome", "MigrationAdapter", "ResultReporter"]
