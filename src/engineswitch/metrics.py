"""
OpenTelemetry metrics for engine migration.

Metrics gracefully degrade when OpenTelemetry is not installed: every
recording method becomes a no-op on the OTel side while the local counters
behind ``get_snapshot()`` keep working.

Metrics Exposed:
    - engineswitch.executions (Counter): Engine runs by engine and outcome
    - engineswitch.execution.duration (Histogram): Engine run time in seconds
    - engineswitch.canary.runs (Counter): Canary runs by outcome
      (match, mismatch, candidate_failed, timeout)
    - engineswitch.fallbacks (Counter): Candidate failures served by legacy
    - engineswitch.circuit.transitions (Counter): Breaker transitions by target state
    - engineswitch.rollbacks (Counter): Rollbacks by trigger and outcome

Example:
    >>> metrics = MigrationMetrics("codegen")
    >>> metrics.record_execution("legacy", success=True, duration_seconds=0.12)
    >>> metrics.record_canary("match")
    >>> metrics.get_snapshot().executions["legacy"]
    1
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


# Module-level meter instance
_meter: Any = None


def _get_meter() -> Any:
    """
    Get or create the meter instance.

    Returns:
        OpenTelemetry Meter or None
    """
    global _meter
    if _meter is None and OTEL_METRICS_AVAILABLE and metrics is not None:
        _meter = metrics.get_meter("engineswitch", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Counter stand-in used when OpenTelemetry is not available."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram stand-in used when OpenTelemetry is not available."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class MigrationMetricSnapshot:
    """
    Local view of what has been reported.

    Attributes:
        executions: Engine runs keyed by engine.
        failures: Failed executions keyed by engine.
        canary_outcomes: Canary runs keyed by outcome.
        fallbacks: Candidate failures served by legacy.
        circuit_transitions: Breaker transitions keyed by target state.
        rollbacks: Rollbacks keyed by trigger.
    """

    executions: dict[str, int]
    failures: dict[str, int]
    canary_outcomes: dict[str, int]
    fallbacks: int
    circuit_transitions: dict[str, int]
    rollbacks: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "executions": dict(self.executions),
            "failures": dict(self.failures),
            "canary_outcomes": dict(self.canary_outcomes),
            "fallbacks": self.fallbacks,
            "circuit_transitions": dict(self.circuit_transitions),
            "rollbacks": dict(self.rollbacks),
        }


@dataclass
class MigrationMetrics:
    """
    Container for migration metric instruments.

    All methods are thread safe and safe to call without OpenTelemetry.

    Attributes:
        component: Label attached to every measurement (e.g. the tool name).
        enable_metrics: Whether OpenTelemetry instruments are created.
    """

    component: str = "default"
    enable_metrics: bool = True

    _executions_counter: Any = field(default=None, init=False, repr=False)
    _duration_histogram: Any = field(default=None, init=False, repr=False)
    _canary_counter: Any = field(default=None, init=False, repr=False)
    _fallback_counter: Any = field(default=None, init=False, repr=False)
    _transition_counter: Any = field(default=None, init=False, repr=False)
    _rollback_counter: Any = field(default=None, init=False, repr=False)

    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _executions: Counter[str] = field(default_factory=Counter, init=False, repr=False)
    _failures: Counter[str] = field(default_factory=Counter, init=False, repr=False)
    _canary_outcomes: Counter[str] = field(default_factory=Counter, init=False, repr=False)
    _fallbacks: int = field(default=0, init=False, repr=False)
    _transitions: Counter[str] = field(default_factory=Counter, init=False, repr=False)
    _rollbacks: Counter[str] = field(default_factory=Counter, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics and OTEL_METRICS_AVAILABLE:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = _get_meter()
        if meter is None:
            self._setup_noop()
            return

        self._executions_counter = meter.create_counter(
            name="engineswitch.executions",
            unit="executions",
            description="Engine runs by engine and outcome",
        )
        self._duration_histogram = meter.create_histogram(
            name="engineswitch.execution.duration",
            unit="s",
            description="Engine execution time in seconds",
        )
        self._canary_counter = meter.create_counter(
            name="engineswitch.canary.runs",
            unit="runs",
            description="Canary runs by outcome",
        )
        self._fallback_counter = meter.create_counter(
            name="engineswitch.fallbacks",
            unit="executions",
            description="Candidate failures served by the legacy engine",
        )
        self._transition_counter = meter.create_counter(
            name="engineswitch.circuit.transitions",
            unit="transitions",
            description="Circuit breaker transitions by target state",
        )
        self._rollback_counter = meter.create_counter(
            name="engineswitch.rollbacks",
            unit="rollbacks",
            description="Rollbacks by trigger and outcome",
        )

    def _setup_noop(self) -> None:
        self._executions_counter = NoOpCounter()
        self._duration_histogram = NoOpHistogram()
        self._canary_counter = NoOpCounter()
        self._fallback_counter = NoOpCounter()
        self._transition_counter = NoOpCounter()
        self._rollback_counter = NoOpCounter()

    def _attributes(self, **extra: Any) -> dict[str, Any]:
        return {"component": self.component, **extra}

    def record_execution(self, engine: str, *, success: bool, duration_seconds: float) -> None:
        """Record one engine execution and its duration."""
        with self._lock:
            self._executions[engine] += 1
            if not success:
                self._failures[engine] += 1
        attributes = self._attributes(engine=engine, success=success)
        self._executions_counter.add(1, attributes)
        self._duration_histogram.record(duration_seconds, attributes)

    def record_canary(self, outcome: str) -> None:
        """Record a canary run outcome (match, mismatch, candidate_failed, timeout)."""
        with self._lock:
            self._canary_outcomes[outcome] += 1
        self._canary_counter.add(1, self._attributes(outcome=outcome))

    def record_fallback(self) -> None:
        with self._lock:
            self._fallbacks += 1
        self._fallback_counter.add(1, self._attributes())

    def record_circuit_transition(self, to_state: str) -> None:
        with self._lock:
            self._transitions[to_state] += 1
        self._transition_counter.add(1, self._attributes(state=to_state))

    def record_rollback(self, trigger: str, *, success: bool) -> None:
        with self._lock:
            self._rollbacks[trigger] += 1
        self._rollback_counter.add(1, self._attributes(trigger=trigger, success=success))

    def get_snapshot(self) -> MigrationMetricSnapshot:
        """
        Get a snapshot of locally accumulated values.

        Returns:
            MigrationMetricSnapshot with current values
        """
        with self._lock:
            return MigrationMetricSnapshot(
                executions=dict(self._executions),
                failures=dict(self._failures),
                canary_outcomes=dict(self._canary_outcomes),
                fallbacks=self._fallbacks,
                circuit_transitions=dict(self._transitions),
                rollbacks=dict(self._rollbacks),
            )

    @property
    def metrics_enabled(self) -> bool:
        """True if metrics are enabled and OTel is available."""
        return self.enable_metrics and OTEL_METRICS_AVAILABLE
