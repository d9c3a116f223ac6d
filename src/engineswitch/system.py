"""
MigrationSystem - composition root for one migration.

Builds one FeatureFlags, one RollbackManager and the shared metrics and
tracer, then hands adapters out on request. Status, health and statistics
for operators are assembled here from the components.

Core components never look up global state. For applications that want a
process-wide instance, ``init_system()`` / ``get_system()`` wrap exactly one
explicitly initialized MigrationSystem.

Example:
    >>> system = MigrationSystem.from_environment()
    >>> adapter = system.create_adapter(legacy_engine, candidate_engine)
    >>> result = await adapter.execute({"table": "users"})
    >>> system.health_check()["overall_health"]
    'healthy'
"""

from __future__ import annotations

import logging
import os
import random
import threading
from collections.abc import Callable, Mapping
from typing import Any

from engineswitch.adapter import Engine, MigrationAdapter, ResultReporter
from engineswitch.comparator import ComparatorConfig, OutputComparator
from engineswitch.config import ROLLBACK_STATE_PATH_ENV, MigrationConfig, config_changes_from_env
from engineswitch.exceptions import MigrationError
from engineswitch.feature_flags import FeatureFlags
from engineswitch.metrics import MigrationMetrics
from engineswitch.models import CircuitState, RollbackState
from engineswitch.observability import Tracer, create_tracer
from engineswitch.rollback import NotificationHandler, RollbackManager, RollbackStateStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

_SEVERITY_ORDER = {HEALTHY: 0, DEGRADED: 1, CRITICAL: 2}

SLOW_CANDIDATE_PERCENT = 50.0


class MigrationSystem:
    """
    Wires FeatureFlags, RollbackManager, metrics and tracing together.

    Attributes:
        feature_flags: The single FeatureFlags instance.
        rollback_manager: The single RollbackManager instance.
        metrics: Metrics shared by every component.
    """

    def __init__(
        self,
        config: MigrationConfig | None = None,
        *,
        store: RollbackStateStore | None = None,
        state_file_path: str | None = None,
        notification_handler: NotificationHandler | None = None,
        comparator_config: ComparatorConfig | None = None,
        rng: random.Random | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.metrics = metrics or MigrationMetrics("engineswitch")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._comparator_config = comparator_config
        self.feature_flags = FeatureFlags(config, rng=rng, metrics=self.metrics)
        self.rollback_manager = RollbackManager(
            self.feature_flags,
            store,
            state_file_path=state_file_path,
            notification_handler=notification_handler,
            metrics=self.metrics,
            tracer=self._tracer,
        )

    @classmethod
    def from_environment(
        cls,
        environ: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> MigrationSystem:
        """
        Build a system from MIGRATION_* environment variables.

        ``MIGRATION_ROLLBACK_STATE_PATH`` selects the rollback state file
        unless a store or path is passed explicitly.

        Raises:
            ConfigurationError: If a variable is malformed or invalid.
        """
        env = os.environ if environ is None else environ
        config = MigrationConfig().with_changes(**config_changes_from_env(env))
        if "store" not in kwargs and "state_file_path" not in kwargs:
            kwargs["state_file_path"] = env.get(ROLLBACK_STATE_PATH_ENV) or None
        system = cls(config, **kwargs)
        logger.info(
            "Migration system configured from environment: %s%% candidate, canary %s",
            config.new_engine_percentage,
            "on" if config.canary_enabled else "off",
        )
        return system

    # =========================================================================
    # Factories
    # =========================================================================

    def create_comparator(self, **overrides: Any) -> OutputComparator:
        return OutputComparator(self._comparator_config, **overrides)

    def create_adapter(
        self,
        legacy_engine: Engine | Callable[..., Any],
        candidate_engine: Engine | Callable[..., Any],
        *,
        comparator: OutputComparator | None = None,
        reporter: ResultReporter | None = None,
    ) -> MigrationAdapter:
        """Create an adapter that shares this system's flags, metrics and tracer."""
        return MigrationAdapter(
            self.feature_flags,
            legacy_engine,
            candidate_engine,
            comparator=comparator or self.create_comparator(),
            reporter=reporter,
            metrics=self.metrics,
            tracer=self._tracer,
        )

    # =========================================================================
    # Operator actions
    # =========================================================================

    def configure(self, **changes: Any) -> MigrationConfig:
        return self.feature_flags.configure(**changes)

    def configure_from_environment(self, environ: Mapping[str, str] | None = None) -> MigrationConfig:
        return self.feature_flags.configure_from_environment(environ)

    def emergency_rollback(self, reason: str, operator: str | None = None) -> dict[str, Any]:
        return self.rollback_manager.emergency_rollback(reason, operator=operator)

    # =========================================================================
    # Status surfaces
    # =========================================================================

    def current_status(self) -> dict[str, Any]:
        """``{system_health, feature_flags, rollback_status}``"""
        return {
            "system_health": self.health_check()["overall_health"],
            "feature_flags": self.feature_flags.configuration_summary(),
            "rollback_status": self.rollback_manager.current_status(),
        }

    def health_check(self) -> dict[str, Any]:
        """
        Health per component plus the worst of them.

        Returns:
            ``{overall_health, component_health: {name: {status, issues}}}``
            with statuses healthy, degraded or critical.
        """
        components = {
            "feature_flags": self._feature_flags_health(),
            "rollback_manager": self._rollback_health(),
            "performance": self._performance_health(),
        }
        overall = max(
            (c["status"] for c in components.values()),
            key=_SEVERITY_ORDER.__getitem__,
        )
        if overall != HEALTHY:
            logger.info(
                "Migration health %s",
                overall,
                extra={name: c["status"] for name, c in components.items()},
            )
        return {"overall_health": overall, "component_health": components}

    def _feature_flags_health(self) -> dict[str, Any]:
        breaker = self.feature_flags.circuit_breaker_metrics()
        config = self.feature_flags.config
        issues: list[str] = []
        if breaker.state == CircuitState.OPEN:
            issues.append(
                f"Circuit breaker is open; candidate traffic blocked for "
                f"{breaker.time_until_half_open:.0f}s more"
            )
        elif breaker.state == CircuitState.HALF_OPEN:
            issues.append("Circuit breaker is half-open; candidate engine is being probed")
        elif breaker.failures_in_window * 2 >= config.error_threshold and breaker.failures_in_window:
            issues.append(
                f"Circuit breaker has {breaker.failures_in_window} of "
                f"{config.error_threshold} failures in the current window"
            )
        return {"status": DEGRADED if issues else HEALTHY, "issues": issues}

    def _rollback_health(self) -> dict[str, Any]:
        state = self.rollback_manager.current_state()
        if state == RollbackState.ROLLBACK_FAILED:
            return {
                "status": CRITICAL,
                "issues": ["Rollback failed; legacy routing may not be enforced"],
            }
        if state == RollbackState.ROLLED_BACK:
            return {"status": DEGRADED, "issues": ["All traffic rolled back to the legacy engine"]}
        if state == RollbackState.RECOVERING:
            return {"status": DEGRADED, "issues": ["Recovery from rollback in progress"]}
        return {"status": HEALTHY, "issues": []}

    def _performance_health(self) -> dict[str, Any]:
        stats = self.feature_flags.performance_statistics()
        if stats["total_samples"] and stats["avg_delta_percent"] > SLOW_CANDIDATE_PERCENT:
            return {
                "status": DEGRADED,
                "issues": [
                    f"Candidate engine is {stats['avg_delta_percent']:.0f}% slower than legacy "
                    f"over {stats['total_samples']} canary samples"
                ],
            }
        return {"status": HEALTHY, "issues": []}

    def statistics(self) -> dict[str, Any]:
        """``{performance_metrics, rollback_history, feature_flag_state, circuit_breaker_metrics}``"""
        return {
            "performance_metrics": self.feature_flags.performance_statistics(),
            "rollback_history": [
                record.model_dump(mode="json") for record in self.rollback_manager.rollback_history()
            ],
            "feature_flag_state": self.feature_flags.configuration_summary(),
            "circuit_breaker_metrics": self.feature_flags.circuit_breaker_metrics().to_dict(),
            "metrics": self.metrics.get_snapshot().to_dict(),
        }

    def close(self) -> None:
        self.rollback_manager.close()


# =============================================================================
# Process-wide accessor
# =============================================================================

_system: MigrationSystem | None = None
_system_lock = threading.Lock()


def init_system(system: MigrationSystem | None = None, **kwargs: Any) -> MigrationSystem:
    """
    Install the process-wide MigrationSystem.

    Args:
        system: An already built system. When omitted one is built with
            ``MigrationSystem.from_environment(**kwargs)``.

    Returns:
        The installed system.
    """
    global _system
    installed = system or MigrationSystem.from_environment(**kwargs)
    with _system_lock:
        previous, _system = _system, installed
    if previous is not None and previous is not installed:
        previous.close()
    return installed


def get_system() -> MigrationSystem:
    """
    Return the process-wide MigrationSystem.

    Raises:
        MigrationError: If ``init_system()`` has not been called.
    """
    with _system_lock:
        system = _system
    if system is None:
        raise MigrationError(
            "Migration system is not initialized",
            suggested_action="Call engineswitch.system.init_system() at startup",
        )
    return system


def reset_system() -> None:
    """Remove the process-wide MigrationSystem (for tests)."""
    global _system
    with _system_lock:
        previous, _system = _system, None
    if previous is not None:
        previous.close()


__all__ = [
    "CRITICAL",
    "DEGRADED",
    "HEALTHY",
    "MigrationSystem",
    "get_system",
    "init_system",
    "reset_system",
]
