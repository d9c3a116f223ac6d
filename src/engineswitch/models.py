"""
Data models shared across engineswitch.

Models in this module:

Enums:
    - EngineKind: Which engine produced a result
    - CircuitState: Circuit breaker states
    - RollbackState: Rollback manager lifecycle states
    - RollbackTrigger: What caused a rollback
    - DiscrepancySeverity: Severity of a comparison discrepancy

Execution:
    - RequestContext: Per-request input passed to engines
    - GeneratedFile: One file produced by an engine
    - ExecutionResult: Immutable outcome of an engine run
    - RoutingDecision: Which engine a request goes to
    - MigrationMetadata / EnrichedResult: Adapter output

Observation:
    - PerformanceSample: Legacy vs candidate timing from a canary run
    - Discrepancy / ComparisonResult: Output comparison
    - CircuitTransition: A breaker state change

Persistence:
    - RollbackRecord: One entry of the rollback history (pydantic, persisted)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class EngineKind(Enum):
    """The two engines being migrated between."""

    LEGACY = "legacy"
    CANDIDATE = "candidate"

    @classmethod
    def parse(cls, value: EngineKind | str) -> EngineKind:
        """
        Coerce ``value`` into an EngineKind.

        "new" is accepted as an alias for the candidate engine.

        Raises:
            ValueError: If the value names neither engine.
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "new":
            return cls.CANDIDATE
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown engine {value!r}; expected 'legacy' or 'candidate'") from None


class CircuitState(Enum):
    """
    Circuit breaker state.

    State machine transitions:
        CLOSED -> OPEN: error threshold reached within the window
        OPEN -> HALF_OPEN: recovery timeout elapsed, or manual reset
        HALF_OPEN -> CLOSED: probe(s) succeeded
        HALF_OPEN -> OPEN: probe failed
    """

    CLOSED = "closed"
    """Candidate traffic flows normally."""

    OPEN = "open"
    """Candidate traffic is blocked; everything routes to legacy."""

    HALF_OPEN = "half_open"
    """Candidate traffic is allowed again to probe for recovery."""


class RollbackState(Enum):
    """
    Rollback manager lifecycle.

    State machine transitions:
        HEALTHY -> ROLLED_BACK: rollback triggered and applied
        HEALTHY -> ROLLBACK_FAILED: rollback triggered but could not be applied
        ROLLED_BACK -> ROLLED_BACK: repeated emergency rollback
        ROLLED_BACK -> RECOVERING: recovery attempt started
        ROLLBACK_FAILED -> RECOVERING: bounded retry of recovery
        ROLLBACK_FAILED -> ROLLED_BACK: rollback retried successfully
        RECOVERING -> HEALTHY: normal routing re-armed
        RECOVERING -> ROLLBACK_FAILED: recovery failed
    """

    HEALTHY = "healthy"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    RECOVERING = "recovering"

    def can_transition_to(self, target: RollbackState) -> bool:
        """Check whether moving from this state to ``target`` is allowed."""
        return target in _ROLLBACK_TRANSITIONS[self]


_ROLLBACK_TRANSITIONS: dict[RollbackState, frozenset[RollbackState]] = {
    RollbackState.HEALTHY: frozenset({RollbackState.ROLLED_BACK, RollbackState.ROLLBACK_FAILED}),
    RollbackState.ROLLED_BACK: frozenset(
        {RollbackState.ROLLED_BACK, RollbackState.RECOVERING, RollbackState.ROLLBACK_FAILED}
    ),
    RollbackState.ROLLBACK_FAILED: frozenset(
        {RollbackState.RECOVERING, RollbackState.ROLLED_BACK, RollbackState.ROLLBACK_FAILED}
    ),
    RollbackState.RECOVERING: frozenset({RollbackState.HEALTHY, RollbackState.ROLLBACK_FAILED}),
}


class RollbackTrigger(Enum):
    """What caused a rollback."""

    CIRCUIT_BREAKER = "circuit_breaker"
    EMERGENCY_MANUAL = "emergency_manual"
    PLANNED = "planned"


class DiscrepancySeverity(Enum):
    """How much a comparison discrepancy matters."""

    CRITICAL = "critical"
    """The outputs differ in a way that would change what users get."""

    WARNING = "warning"
    """Worth a look, but does not fail the comparison."""

    INFO = "info"
    """Recorded for observability only."""


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request input handed to both engines.

    Attributes:
        request_id: Unique identifier, also used as the execution id.
        routing_key: Optional key (e.g. a table name) for key-based routing.
        attributes: Free-form request parameters for the engines.
    """

    request_id: UUID = field(default_factory=uuid4)
    routing_key: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: RequestContext | Mapping[str, Any] | None) -> RequestContext:
        """
        Build a context from ``None``, a mapping, or an existing context.

        A mapping may carry ``routing_key`` (or ``table``) and ``request_id``;
        everything else lands in ``attributes``.
        """
        if value is None:
            return cls()
        if isinstance(value, RequestContext):
            return value
        data = dict(value)
        request_id = data.pop("request_id", None)
        routing_key = data.pop("routing_key", None) or data.get("table")
        return cls(
            request_id=request_id if isinstance(request_id, UUID) else uuid4(),
            routing_key=str(routing_key) if routing_key is not None else None,
            attributes=data,
        )


@dataclass(frozen=True)
class GeneratedFile:
    """A file produced by an engine run."""

    path: str
    content: str = ""


@dataclass(frozen=True)
class ExecutionResult:
    """
    Immutable outcome of an engine run.

    Attributes:
        success: Whether the engine reports success.
        generated_models: Model descriptors (usually dicts) the engine produced.
        generated_files: Files the engine produced.
        errors: Error messages.
        execution_time_seconds: Wall-clock duration of the run.
        statistics: Engine-reported counters.
    """

    success: bool
    generated_models: tuple[Any, ...] = ()
    generated_files: tuple[GeneratedFile, ...] = ()
    errors: tuple[str, ...] = ()
    execution_time_seconds: float = 0.0
    statistics: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, *messages: str, execution_time_seconds: float = 0.0) -> ExecutionResult:
        """Create a failed result carrying ``messages``."""
        return cls(
            success=False,
            errors=tuple(messages),
            execution_time_seconds=execution_time_seconds,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionResult:
        """
        Create from the plain-dict shape engines commonly return.

        ``execution_time`` is accepted as an alias of
        ``execution_time_seconds``; files may be GeneratedFile instances,
        ``{"path", "content"}`` dicts, or bare paths.
        """
        files = tuple(_coerce_file(item) for item in data.get("generated_files") or ())
        elapsed = data.get("execution_time_seconds", data.get("execution_time", 0.0))
        return cls(
            success=bool(data.get("success", False)),
            generated_models=tuple(data.get("generated_models") or ()),
            generated_files=files,
            errors=tuple(str(e) for e in data.get("errors") or ()),
            execution_time_seconds=float(elapsed or 0.0),
            statistics=dict(data.get("statistics") or {}),
        )

    def with_timing(self, execution_time_seconds: float) -> ExecutionResult:
        """Return a copy with the measured duration filled in if the engine left it at zero."""
        if self.execution_time_seconds:
            return self
        return ExecutionResult(
            success=self.success,
            generated_models=self.generated_models,
            generated_files=self.generated_files,
            errors=self.errors,
            execution_time_seconds=execution_time_seconds,
            statistics=self.statistics,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "success": self.success,
            "generated_models": list(self.generated_models),
            "generated_files": [{"path": f.path, "content": f.content} for f in self.generated_files],
            "errors": list(self.errors),
            "execution_time_seconds": self.execution_time_seconds,
            "statistics": dict(self.statistics),
        }


def _coerce_file(item: Any) -> GeneratedFile:
    if isinstance(item, GeneratedFile):
        return item
    if isinstance(item, Mapping):
        return GeneratedFile(path=str(item.get("path", "")), content=str(item.get("content", "")))
    return GeneratedFile(path=str(item))


@dataclass(frozen=True)
class RoutingDecision:
    """
    Where one request goes.

    Attributes:
        use_candidate: Primary result comes from the candidate engine.
        is_canary: Run both engines; the legacy result is returned.
        reason: Short machine-readable reason for logs and metadata.
    """

    use_candidate: bool
    is_canary: bool = False
    reason: str = "percentage"


@dataclass(frozen=True)
class PerformanceSample:
    """Legacy vs candidate timing captured during a canary run."""

    legacy_time_seconds: float
    candidate_time_seconds: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class CircuitTransition:
    """A circuit breaker state change, delivered to listeners."""

    from_state: CircuitState
    to_state: CircuitState
    reason: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def opened(self) -> bool:
        """True when this transition opened the breaker."""
        return self.to_state == CircuitState.OPEN


@dataclass(frozen=True)
class Discrepancy:
    """One difference found between two execution results."""

    type: str
    description: str
    severity: DiscrepancySeverity

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ComparisonResult:
    """
    Outcome of comparing a legacy and a candidate result.

    ``overall_match`` only reflects critical discrepancies; warnings and
    informational entries never fail a comparison.
    """

    overall_match: bool
    critical_discrepancies: tuple[Discrepancy, ...] = ()
    warning_discrepancies: tuple[Discrepancy, ...] = ()
    info_discrepancies: tuple[Discrepancy, ...] = ()
    performance_analysis: Mapping[str, Any] = field(default_factory=dict)
    file_comparisons: tuple[Mapping[str, Any], ...] = ()
    model_comparisons: tuple[Mapping[str, Any], ...] = ()

    @property
    def discrepancies(self) -> tuple[Discrepancy, ...]:
        """All discrepancies, most severe first."""
        return self.critical_discrepancies + self.warning_discrepancies + self.info_discrepancies

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_match": self.overall_match,
            "critical_discrepancies": [d.to_dict() for d in self.critical_discrepancies],
            "warning_discrepancies": [d.to_dict() for d in self.warning_discrepancies],
            "info_discrepancies": [d.to_dict() for d in self.info_discrepancies],
            "performance_analysis": dict(self.performance_analysis),
        }


@dataclass(frozen=True)
class MigrationMetadata:
    """
    Routing facts attached to every result the adapter returns.

    Attributes:
        used_candidate: The returned result came from the candidate engine.
        was_canary_test: Both engines ran; the legacy result was returned.
        execution_id: Identifier of this execution (the request id).
        circuit_breaker_state_at_decision: Breaker state when routing was decided.
        config_snapshot: The configuration in effect for the decision.
        fallback_used: The candidate failed and legacy produced the result.
        routing_reason: Why the request was routed the way it was.
        comparison: Canary comparison, when the candidate finished in time.
    """

    used_candidate: bool
    was_canary_test: bool
    execution_id: UUID
    circuit_breaker_state_at_decision: CircuitState
    config_snapshot: Mapping[str, Any]
    fallback_used: bool = False
    routing_reason: str = "percentage"
    comparison: ComparisonResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "used_candidate": self.used_candidate,
            "was_canary_test": self.was_canary_test,
            "execution_id": str(self.execution_id),
            "circuit_breaker_state_at_decision": self.circuit_breaker_state_at_decision.value,
            "config_snapshot": dict(self.config_snapshot),
            "fallback_used": self.fallback_used,
            "routing_reason": self.routing_reason,
            "comparison": self.comparison.to_dict() if self.comparison else None,
        }


@dataclass(frozen=True)
class EnrichedResult:
    """An ExecutionResult plus the migration metadata describing how it was produced."""

    result: ExecutionResult
    migration_metadata: MigrationMetadata

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def errors(self) -> tuple[str, ...]:
        return self.result.errors

    @property
    def generated_models(self) -> tuple[Any, ...]:
        return self.result.generated_models

    @property
    def generated_files(self) -> tuple[GeneratedFile, ...]:
        return self.result.generated_files

    @property
    def execution_time_seconds(self) -> float:
        return self.result.execution_time_seconds

    @property
    def statistics(self) -> Mapping[str, Any]:
        return self.result.statistics

    def to_dict(self) -> dict[str, Any]:
        data = self.result.to_dict()
        data["migration_metadata"] = self.migration_metadata.to_dict()
        return data


class RollbackRecord(BaseModel):
    """
    One entry in the append-only rollback history.

    Persisted as part of the rollback state document; unknown fields written
    by newer versions are ignored when read back.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    triggered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    trigger: RollbackTrigger
    reason: str = ""
    operator: str | None = None
    success: bool = True
    rollback_time_ms: float | None = None
    errors: tuple[str, ...] = ()
