"""
engineswitch - migration-safety control layer for swapping execution engines.

This library provides:
- Percentage, key-based and sticky routing between a legacy and a candidate engine
- Canary runs that compare both engines while returning the legacy result
- A circuit breaker that stops candidate traffic after repeated failures
- Durable rollback state with automatic, emergency and planned rollbacks
- Health, status and statistics surfaces for operators
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("engineswitch")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from engineswitch.adapter import Engine, EngineOutcome, MigrationAdapter, ResultReporter
from engineswitch.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerMetrics
from engineswitch.comparator import ComparatorConfig, ContentNormalizer, Normalizer, OutputComparator
from engineswitch.config import ManualOverride, MigrationConfig, config_changes_from_env
from engineswitch.exceptions import (
    CanaryTimeoutError,
    CircuitBreakerOpenError,
    ConfigurationError,
    EngineExecutionError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    InvalidPercentageError,
    MigrationError,
    PersistenceError,
    RollbackStateError,
    classify_exception,
)
from engineswitch.feature_flags import FeatureFlags
from engineswitch.metrics import MigrationMetrics, MigrationMetricSnapshot
from engineswitch.models import (
    CircuitState,
    CircuitTransition,
    ComparisonResult,
    Discrepancy,
    DiscrepancySeverity,
    EngineKind,
    EnrichedResult,
    ExecutionResult,
    GeneratedFile,
    MigrationMetadata,
    PerformanceSample,
    RequestContext,
    RollbackRecord,
    RollbackState,
    RollbackTrigger,
    RoutingDecision,
)
from engineswitch.rollback import (
    InMemoryRollbackStateStore,
    JsonFileRollbackStateStore,
    RollbackManager,
    RollbackStateDocument,
    RollbackStateStore,
)
from engineswitch.sync import SyncMigrationAdapter
from engineswitch.system import MigrationSystem, get_system, init_system, reset_system

__all__ = [
    "__version__",
    # Routing
    "FeatureFlags",
    "ManualOverride",
    "MigrationConfig",
    "config_changes_from_env",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    # Execution
    "Engine",
    "EngineOutcome",
    "MigrationAdapter",
    "ResultReporter",
    "SyncMigrationAdapter",
    # Comparison
    "ComparatorConfig",
    "ContentNormalizer",
    "Normalizer",
    "OutputComparator",
    # Rollback
    "InMemoryRollbackStateStore",
    "JsonFileRollbackStateStore",
    "RollbackManager",
    "RollbackStateDocument",
    "RollbackStateStore",
    # Composition
    "MigrationSystem",
    "get_system",
    "init_system",
    "reset_system",
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    # Models
    "CircuitState",
    "CircuitTransition",
    "ComparisonResult",
    "Discrepancy",
    "DiscrepancySeverity",
    "EngineKind",
    "EnrichedResult",
    "ExecutionResult",
    "GeneratedFile",
    "MigrationMetadata",
    "PerformanceSample",
    "RequestContext",
    "RollbackRecord",
    "RollbackState",
    "RollbackTrigger",
    "RoutingDecision",
    # Exceptions
    "CanaryTimeoutError",
    "CircuitBreakerOpenError",
    "ConfigurationError",
    "EngineExecutionError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "InvalidPercentageError",
    "MigrationError",
    "PersistenceError",
    "RollbackStateError",
    "classify_exception",
]
