"""
FeatureFlags - routing policy, circuit breaker and performance statistics.

FeatureFlags owns the active MigrationConfig and the CircuitBreaker. It
answers one question per request (which engine?) and collects the evidence
that decides whether the candidate engine can be trusted: candidate
successes and failures, and canary timing samples.

Routing Precedence:
    1. manual_override: FORCE_LEGACY always routes legacy. FORCE_NEW routes
       to the candidate unless the breaker is open.
    2. circuit breaker open: legacy.
    3. routing key listed in candidate_routing_keys: candidate.
    4. canary sampled in: run both engines, return legacy.
    5. new_engine_percentage: candidate with that probability.

Thread Safety:
    Config replacement, statistics and listener registration share one
    RLock. The breaker has its own lock for check-then-transition and is
    never read while the flags lock is held. Rollback listeners are always
    called with neither lock held.

Example:
    >>> flags = FeatureFlags(new_engine_percentage=25)
    >>> decision = flags.routing_decision({"table": "users"})
    >>> flags.record_error(RuntimeError("candidate crashed"))
    >>> flags.circuit_breaker_state()
    <CircuitState.CLOSED: 'closed'>
"""

from __future__ import annotations

import hashlib
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from engineswitch.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerMetrics
from engineswitch.config import ManualOverride, MigrationConfig, config_changes_from_env
from engineswitch.exceptions import ConfigurationError
from engineswitch.metrics import MigrationMetrics
from engineswitch.models import (
    CircuitState,
    CircuitTransition,
    PerformanceSample,
    RequestContext,
    RoutingDecision,
)

logger = logging.getLogger(__name__)

RollbackListener = Callable[[CircuitTransition], None]


def _breaker_config(config: MigrationConfig) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=config.error_threshold,
        success_threshold=config.half_open_success_threshold,
        recovery_timeout_seconds=config.circuit_recovery_timeout_seconds,
        window_seconds=config.error_window_seconds,
        enabled=config.circuit_breaker_enabled,
    )


def sticky_bucket(routing_key: str) -> float:
    """
    Map a routing key to a stable point in [0, 100).

    The same key always lands in the same bucket, across processes.
    """
    digest = hashlib.sha256(routing_key.encode("utf-8")).hexdigest()
    return (int(digest[:8], 16) % 10000) / 100.0


def decide_route(
    config: MigrationConfig,
    breaker_state: CircuitState,
    routing_key: str | None,
    draw: Callable[[], float],
) -> RoutingDecision:
    """
    Pure routing function over a (config, breaker state) snapshot.

    Args:
        config: Active configuration.
        breaker_state: Breaker state at decision time.
        routing_key: Optional request routing key.
        draw: Returns a uniform value in [0, 100); called only when a
            probabilistic choice is needed.

    Returns:
        The routing decision.
    """
    override = config.manual_override
    if override == ManualOverride.FORCE_LEGACY:
        return RoutingDecision(use_candidate=False, reason="manual_override_legacy")

    if breaker_state == CircuitState.OPEN:
        return RoutingDecision(use_candidate=False, reason="circuit_breaker_open")

    if override == ManualOverride.FORCE_NEW:
        return RoutingDecision(use_candidate=True, reason="manual_override_new")

    if routing_key is not None and routing_key in config.candidate_routing_keys:
        return RoutingDecision(use_candidate=True, reason="routing_key")

    if config.canary_enabled and (
        config.force_canary_mode or draw() < config.canary_sample_rate
    ):
        return RoutingDecision(use_candidate=False, is_canary=True, reason="canary")

    percentage = config.new_engine_percentage
    if percentage <= 0:
        return RoutingDecision(use_candidate=False, reason="percentage")
    if percentage >= 100:
        return RoutingDecision(use_candidate=True, reason="percentage")

    if config.sticky_routing and routing_key is not None:
        return RoutingDecision(use_candidate=sticky_bucket(routing_key) < percentage, reason="sticky")
    return RoutingDecision(use_candidate=draw() < percentage, reason="percentage")


class FeatureFlags:
    """
    Owner of migration configuration and circuit breaker state.

    Construct one instance at startup and pass it to every adapter and to
    the rollback manager.

    Attributes:
        config: The active configuration (read-only; use ``configure``).
    """

    def __init__(
        self,
        config: MigrationConfig | None = None,
        *,
        rng: random.Random | None = None,
        metrics: MigrationMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
        **overrides: Any,
    ) -> None:
        """
        Initialize feature flags.

        Args:
            config: Starting configuration (defaults to MigrationConfig()).
            rng: Random source for routing and canary sampling.
            metrics: Metrics container for breaker transitions.
            clock: Monotonic clock for the breaker, injectable for tests.
            **overrides: Configuration fields applied on top of ``config``.

        Raises:
            ConfigurationError: If the starting configuration is invalid.
        """
        base = config or MigrationConfig()
        self._config = base.with_changes(**overrides) if overrides else base
        self._rng = rng or random.Random()
        self._metrics = metrics
        self._lock = threading.RLock()
        self._breaker = CircuitBreaker(_breaker_config(self._config), clock=clock)
        self._breaker.add_listener(self._on_transition)
        self._rollback_listeners: list[RollbackListener] = []

        self._samples: deque[PerformanceSample] = deque(
            maxlen=self._config.performance_sample_limit
        )
        self._legacy_time_sum = 0.0
        self._candidate_time_sum = 0.0
        self._samples_recorded_total = 0

        self._candidate_successes = 0
        self._candidate_errors = 0
        self._last_error: str | None = None
        self._last_error_at: datetime | None = None

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def config(self) -> MigrationConfig:
        with self._lock:
            return self._config

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def configure(self, **changes: Any) -> MigrationConfig:
        """
        Apply configuration changes all-or-nothing.

        Args:
            **changes: MigrationConfig field values.

        Returns:
            The new active configuration.

        Raises:
            ConfigurationError: If any change is invalid; the previous
                configuration stays active.
        """
        with self._lock:
            new_config = self._config.with_changes(**changes)
            self._apply(new_config)
        if changes:
            logger.info(
                "Migration configuration updated: %s",
                ", ".join(sorted(changes)),
                extra={"changes": sorted(changes)},
            )
        return new_config

    def replace_config(self, config: MigrationConfig) -> MigrationConfig:
        """Swap in a complete configuration."""
        if not isinstance(config, MigrationConfig):
            raise ConfigurationError(f"Expected MigrationConfig, got {type(config).__name__}")
        with self._lock:
            self._apply(config)
        logger.info("Migration configuration replaced")
        return config

    def configure_from_environment(self, environ: Mapping[str, str] | None = None) -> MigrationConfig:
        """
        Apply MIGRATION_* environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Raises:
            ConfigurationError: If a variable is malformed or invalid.
        """
        changes = config_changes_from_env(environ)
        return self.configure(**changes)

    def _apply(self, new_config: MigrationConfig) -> None:
        """Install ``new_config``. Caller holds the lock."""
        if new_config.performance_sample_limit != self._config.performance_sample_limit:
            kept = list(self._samples)[-new_config.performance_sample_limit :]
            self._samples = deque(kept, maxlen=new_config.performance_sample_limit)
            self._legacy_time_sum = sum(s.legacy_time_seconds for s in kept)
            self._candidate_time_sum = sum(s.candidate_time_seconds for s in kept)
        self._config = new_config
        self._breaker.reconfigure(_breaker_config(new_config))

    # =========================================================================
    # Routing
    # =========================================================================

    def routing_snapshot(
        self, context: RequestContext | Mapping[str, Any] | None = None
    ) -> tuple[RoutingDecision, MigrationConfig, CircuitState]:
        """
        Decide where one request goes and return what the decision saw.

        The breaker is read first, outside the flags lock, so a half-open
        transition notifies listeners without the lock held. The config is
        then read and the decision made under the lock, so the returned
        config is the one the decision was based on.

        Args:
            context: Request context or mapping; ``None`` is allowed.

        Returns:
            ``(decision, config, breaker_state)`` for the whole request.
        """
        ctx = RequestContext.coerce(context)
        breaker_state = self._breaker.state
        with self._lock:
            config = self._config
            decision = decide_route(
                config,
                breaker_state,
                ctx.routing_key,
                lambda: self._rng.random() * 100.0,
            )
        logger.debug(
            "Routing %s to %s (%s)",
            ctx.request_id,
            "candidate" if decision.use_candidate else "legacy",
            decision.reason,
            extra={
                "execution_id": str(ctx.request_id),
                "routing_key": ctx.routing_key,
                "use_candidate": decision.use_candidate,
                "is_canary": decision.is_canary,
            },
        )
        return decision, config, breaker_state

    def routing_decision(
        self, context: RequestContext | Mapping[str, Any] | None = None
    ) -> RoutingDecision:
        """
        Decide where one request goes.

        Args:
            context: Request context or mapping; ``None`` is allowed.

        Returns:
            RoutingDecision for the whole request.
        """
        return self.routing_snapshot(context)[0]

    def use_candidate(self, context: RequestContext | Mapping[str, Any] | None = None) -> bool:
        """Shorthand for ``routing_decision(context).use_candidate``."""
        return self.routing_decision(context).use_candidate

    def should_run_canary(self, context: RequestContext | Mapping[str, Any] | None = None) -> bool:
        """True when a request would be run as a canary test."""
        return self.routing_decision(context).is_canary

    # =========================================================================
    # Breaker feedback
    # =========================================================================

    def record_success(self) -> None:
        """Record a successful candidate run."""
        with self._lock:
            self._candidate_successes += 1
        self._breaker.record_success()

    def record_error(self, error: BaseException | str | None = None) -> None:
        """
        Record a failed candidate run.

        If the failure opens the breaker and auto rollback is enabled, the
        registered rollback listeners are notified.
        """
        with self._lock:
            self._candidate_errors += 1
            self._last_error = str(error) if error is not None else None
            self._last_error_at = datetime.now(UTC)
        transition = self._breaker.record_failure(error)
        if transition is not None and transition.opened:
            self._emit_rollback_recommended(transition)

    def add_rollback_listener(self, listener: RollbackListener) -> None:
        """Register a callback for "rollback recommended" signals."""
        with self._lock:
            self._rollback_listeners.append(listener)

    def remove_rollback_listener(self, listener: RollbackListener) -> None:
        with self._lock:
            if listener in self._rollback_listeners:
                self._rollback_listeners.remove(listener)

    def _emit_rollback_recommended(self, transition: CircuitTransition) -> None:
        with self._lock:
            if not self._config.auto_rollback_enabled:
                return
            listeners = list(self._rollback_listeners)
        logger.warning(
            "Rollback recommended: %s",
            transition.reason,
            extra={"listeners": len(listeners)},
        )
        for listener in listeners:
            try:
                listener(transition)
            except Exception:
                logger.exception("Rollback listener failed")

    def _on_transition(self, transition: CircuitTransition) -> None:
        if self._metrics is not None:
            self._metrics.record_circuit_transition(transition.to_state.value)

    def circuit_breaker_state(self) -> CircuitState:
        return self._breaker.state

    def circuit_breaker_metrics(self) -> CircuitBreakerMetrics:
        return self._breaker.metrics()

    def trip_circuit_breaker(self, reason: str = "tripped manually") -> None:
        """Force the breaker open immediately (operational drill hook)."""
        self._breaker.trip(reason)

    def reset_circuit_breaker(self) -> None:
        """Move an open breaker to half-open so the next candidate run probes it."""
        self._breaker.reset()

    def close_circuit_breaker(self, reason: str = "closed by operator") -> None:
        """Close the breaker outright."""
        self._breaker.force_close(reason)

    # =========================================================================
    # Performance statistics
    # =========================================================================

    def record_performance(
        self,
        legacy_time_seconds: float,
        candidate_time_seconds: float,
        *,
        timestamp: datetime | None = None,
    ) -> None:
        """
        Record one canary timing sample.

        The buffer is bounded by ``performance_sample_limit``; running sums
        are adjusted when the oldest sample is evicted.
        """
        with self._lock:
            if not self._config.track_performance_metrics:
                return
            if len(self._samples) == self._samples.maxlen:
                evicted = self._samples[0]
                self._legacy_time_sum -= evicted.legacy_time_seconds
                self._candidate_time_sum -= evicted.candidate_time_seconds
            sample = PerformanceSample(
                legacy_time_seconds=legacy_time_seconds,
                candidate_time_seconds=candidate_time_seconds,
                timestamp=timestamp or datetime.now(UTC),
            )
            self._samples.append(sample)
            self._legacy_time_sum += legacy_time_seconds
            self._candidate_time_sum += candidate_time_seconds
            self._samples_recorded_total += 1

    def performance_statistics(self) -> dict[str, Any]:
        """
        Summary of the buffered canary timing samples.

        Returns:
            Dict with ``total_samples``, ``avg_legacy_time``, ``avg_new_time``,
            ``avg_time_difference``, ``avg_delta_percent``, ``performance_ratio`` and
            ``samples_recorded_total``.
        """
        with self._lock:
            count = len(self._samples)
            if count == 0:
                return {
                    "total_samples": 0,
                    "avg_legacy_time": 0.0,
                    "avg_new_time": 0.0,
                    "avg_time_difference": 0.0,
                    "avg_delta_percent": 0.0,
                    "performance_ratio": None,
                    "samples_recorded_total": self._samples_recorded_total,
                }
            avg_legacy = self._legacy_time_sum / count
            avg_new = self._candidate_time_sum / count
            return {
                "total_samples": count,
                "avg_legacy_time": avg_legacy,
                "avg_new_time": avg_new,
                "avg_time_difference": avg_new - avg_legacy,
                "avg_delta_percent": (
                    (avg_new - avg_legacy) / avg_legacy * 100.0 if avg_legacy > 0 else 0.0
                ),
                "performance_ratio": avg_new / avg_legacy if avg_legacy > 0 else None,
                "samples_recorded_total": self._samples_recorded_total,
            }

    # =========================================================================
    # Summaries
    # =========================================================================

    def configuration_summary(self) -> dict[str, Any]:
        """Short operator-facing summary of flags and breaker state."""
        breaker = self._breaker.metrics()
        with self._lock:
            config = self._config
            return {
                "new_pipeline_percentage": config.new_engine_percentage,
                "canary_testing_enabled": config.canary_enabled,
                "canary_sample_rate": config.canary_sample_rate,
                "circuit_breaker_enabled": config.circuit_breaker_enabled,
                "circuit_breaker_state": breaker.state.value,
                "error_count": breaker.failures_in_window,
                "error_threshold": config.error_threshold,
                "fallback_to_legacy_on_error": config.fallback_to_legacy_on_error,
                "auto_rollback_enabled": config.auto_rollback_enabled,
                "manual_override": config.manual_override.value,
                "candidate_routing_keys": sorted(config.candidate_routing_keys),
                "candidate_successes": self._candidate_successes,
                "candidate_errors": self._candidate_errors,
                "last_error": self._last_error,
                "last_error_at": self._last_error_at.isoformat() if self._last_error_at else None,
            }
