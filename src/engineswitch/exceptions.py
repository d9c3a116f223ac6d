"""
Exceptions for the engineswitch migration-safety layer.

Every exception raised by engineswitch inherits from MigrationError and
carries an ErrorClassification describing how severe it is and whether an
operator (or the system itself) can recover from it.

Exception Hierarchy:
    MigrationError (base)
    +-- ConfigurationError
    |   +-- InvalidPercentageError
    +-- CircuitBreakerOpenError
    +-- EngineExecutionError
    |   +-- CanaryTimeoutError
    +-- PersistenceError
    +-- RollbackStateError

Only ConfigurationError and CircuitBreakerOpenError ever reach callers of
the public API. Engine failures are converted into structured results at
the adapter boundary, persistence failures are logged and absorbed by the
rollback manager, and rollback state errors are recorded as a failed
rollback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.
    """

    CRITICAL = "critical"
    """Routing safety is compromised (e.g. rollback could not be applied)."""

    ERROR = "error"
    """Significant failure that may require operator intervention."""

    WARNING = "warning"
    """Issue that should be monitored but may self-resolve."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The operator can fix the cause and retry
            (bad configuration, forced run against an open breaker).
        TRANSIENT: Likely to resolve by itself (engine timeout, a flaky
            candidate run, a state file briefly unwritable).
        FATAL: Cannot be recovered automatically (corrupt state machine).
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing an error for automated handling and operators.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for logging and status payloads."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class MigrationError(Exception):
    """
    Base exception for all engineswitch errors.

    Also raised directly for operator-facing misuse of the API, such as
    asking for an engine the adapter does not know about.

    Attributes:
        message: Human-readable error description.
        suggested_action: Optional override of the classification's guidance.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and the operator request that failed",
    )

    def __init__(self, message: str, *, suggested_action: str | None = None) -> None:
        self.message = message
        self.suggested_action = suggested_action or self._default_classification.suggested_action
        super().__init__(message)

    @property
    def classification(self) -> ErrorClassification:
        """Classification metadata for this error type."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


class ConfigurationError(MigrationError):
    """
    Raised when a configuration change is invalid.

    Configuration changes are applied all-or-nothing: when this error is
    raised the previously active configuration is still in effect.

    Attributes:
        field: The configuration field that failed validation, if known.
        value: The rejected value.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CONFIGURATION_INVALID",
        category="configuration",
        suggested_action="Correct the rejected setting; the previous configuration is still active",
    )

    def __init__(self, message: str, *, field: str | None = None, value: Any = None) -> None:
        self.field = field
        self.value = value
        super().__init__(message)


class InvalidPercentageError(ConfigurationError):
    """Raised when a percentage setting falls outside 0..100."""

    def __init__(self, field: str, value: Any) -> None:
        super().__init__(
            f"{field} must be between 0 and 100, got {value!r}",
            field=field,
            value=value,
        )


class CircuitBreakerOpenError(MigrationError):
    """
    Raised when an operator forces a candidate run while the breaker is open.

    Pass ``bypass_circuit_breaker=True`` to force the run anyway.

    Attributes:
        time_until_retry: Seconds until the breaker moves to half-open.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CIRCUIT_BREAKER_OPEN",
        category="circuit_breaker",
        suggested_action=(
            "The candidate engine is failing. Wait for the breaker to half-open, "
            "reset it, or pass bypass_circuit_breaker=True for a deliberate drill."
        ),
    )

    def __init__(self, time_until_retry: float = 0.0) -> None:
        self.time_until_retry = time_until_retry
        super().__init__(
            "Circuit breaker is open; refusing to run the candidate engine "
            f"(half-open in {time_until_retry:.1f}s)"
        )


class EngineExecutionError(MigrationError):
    """
    Wraps an error raised by (or a failure reported from) an engine.

    Attributes:
        engine: Which engine failed ("legacy" or "candidate").
        cause: The original exception, if the engine raised one.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="ENGINE_EXECUTION_FAILED",
        category="engine",
        suggested_action="Inspect the engine error; repeated candidate failures will open the breaker",
    )

    def __init__(self, engine: str, detail: str, *, cause: BaseException | None = None) -> None:
        self.engine = engine
        self.detail = detail
        self.cause = cause
        super().__init__(f"{engine} engine failed: {detail}")


class CanaryTimeoutError(EngineExecutionError):
    """Raised (and recorded) when a canary candidate run exceeds its timeout."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CANARY_TIMEOUT",
        category="engine",
        suggested_action="Raise canary_timeout_seconds or investigate candidate latency",
    )

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__("candidate", f"canary run timed out after {timeout_seconds:.3f}s")


class PersistenceError(MigrationError):
    """
    Raised when rollback state cannot be read or written.

    Attributes:
        path: The storage location involved, if file based.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="ROLLBACK_STATE_PERSISTENCE",
        category="persistence",
        suggested_action="Check permissions and disk space for the rollback state path",
    )

    def __init__(self, message: str, *, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class RollbackStateError(MigrationError):
    """Raised on an invalid rollback state transition."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_STATE_INVALID",
        category="rollback",
        suggested_action="Inspect the rollback history; the state file may need manual repair",
    )

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid rollback state transition: {current} -> {target}")


_TRANSIENT_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.WARNING,
    recoverability=ErrorRecoverability.TRANSIENT,
    error_code="TRANSIENT_ERROR",
    category="engine",
    suggested_action="Transient failure; it counts toward the circuit breaker threshold",
)

_UNKNOWN_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.ERROR,
    recoverability=ErrorRecoverability.RECOVERABLE,
    error_code="UNKNOWN_ERROR",
    category="engine",
    suggested_action="Unexpected engine error; review logs for the stack trace",
)


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify an arbitrary exception.

    MigrationError subclasses carry their own classification. Timeouts and
    connection problems are treated as transient; everything else is an
    unknown, operator-recoverable error.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationError):
        return exc.classification
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return _TRANSIENT_CLASSIFICATION
    return _UNKNOWN_CLASSIFICATION
