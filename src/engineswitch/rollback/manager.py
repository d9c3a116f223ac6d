"""
RollbackManager - durable "send everything back to legacy" switch.

A rollback sets ``manual_override=FORCE_LEGACY`` on the shared FeatureFlags,
appends a RollbackRecord to the history and persists the new state before
returning. Rollbacks come from three places:

    circuit_breaker   FeatureFlags reports the breaker opened (auto rollback)
    emergency_manual  an operator calls ``emergency_rollback``
    planned           a scheduled rollback comes due

State machine:
    healthy -> rolled_back -> recovering -> healthy | rollback_failed
    rollback_failed -> recovering (bounded by max_recovery_attempts)

State is reloaded at construction. A process that restarts while rolled
back re-applies FORCE_LEGACY before serving traffic.

Persistence failures never break a rollback: the in-memory state stays
authoritative and the result reports ``persisted=False``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from engineswitch.config import ManualOverride
from engineswitch.exceptions import MigrationError, PersistenceError, RollbackStateError
from engineswitch.feature_flags import FeatureFlags
from engineswitch.metrics import MigrationMetrics
from engineswitch.models import (
    CircuitState,
    CircuitTransition,
    RollbackRecord,
    RollbackState,
    RollbackTrigger,
)
from engineswitch.observability import (
    ATTR_ROLLBACK_STATE,
    ATTR_ROLLBACK_TRIGGER,
    Tracer,
    create_tracer,
)
from engineswitch.rollback.store import (
    InMemoryRollbackStateStore,
    JsonFileRollbackStateStore,
    RollbackStateDocument,
    RollbackStateStore,
    ScheduledRollback,
)

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[str, dict[str, Any]], Any]

HISTORY_LIMIT = 100

_ROLLBACK_TYPES = {
    RollbackTrigger.CIRCUIT_BREAKER: "automatic",
    RollbackTrigger.EMERGENCY_MANUAL: "manual",
    RollbackTrigger.PLANNED: "planned",
}


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class RollbackManager:
    """
    Owns the rollback lifecycle for one FeatureFlags instance.

    Thread Safety:
        Transitions and persistence are serialized by one RLock.
        Notifications are sent after the lock is released.

    Example:
        >>> manager = RollbackManager(flags, state_file_path="rollback_state.json")
        >>> manager.emergency_rollback("checkout errors", operator="oncall")
        {'success': True, 'trigger': 'emergency_manual', ...}
        >>> manager.current_state()
        <RollbackState.ROLLED_BACK: 'rolled_back'>
    """

    def __init__(
        self,
        feature_flags: FeatureFlags,
        store: RollbackStateStore | None = None,
        *,
        state_file_path: str | None = None,
        notification_handler: NotificationHandler | None = None,
        max_recovery_attempts: int = 3,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        clock: Callable[[], datetime] | None = None,
        subscribe: bool = True,
    ) -> None:
        """
        Initialize the manager and reload persisted state.

        Args:
            feature_flags: The shared FeatureFlags instance.
            store: State store. Defaults to a JSON file store when
                ``state_file_path`` is given, otherwise an in-memory store.
            state_file_path: Path for the default JSON file store.
            notification_handler: ``handler(event, data)`` called best-effort
                for rollback_executed, rollback_failed, rollback_cleared and
                recovery_attempted.
            max_recovery_attempts: Recovery attempts allowed before an
                operator has to clear the state.
            metrics: Metrics container for rollback counts.
            tracer: Optional custom Tracer.
            enable_tracing: Create an OpenTelemetry tracer when no tracer is given.
            clock: Wall clock returning aware datetimes, injectable for tests.
            subscribe: Listen for "rollback recommended" signals from the flags.
        """
        if max_recovery_attempts < 1:
            raise ValueError("max_recovery_attempts must be >= 1")

        if store is None:
            store = (
                JsonFileRollbackStateStore(state_file_path)
                if state_file_path
                else InMemoryRollbackStateStore()
            )
        self._feature_flags = feature_flags
        self._store = store
        self._notification_handler = notification_handler
        self.max_recovery_attempts = max_recovery_attempts
        self._metrics = metrics
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()

        self._state = RollbackState.HEALTHY
        self._history: list[RollbackRecord] = []
        self._recovery_attempts = 0
        self._scheduled: list[ScheduledRollback] = []

        self._load()

        self._subscribed = subscribe
        if subscribe:
            feature_flags.add_rollback_listener(self._on_rollback_recommended)

    # =========================================================================
    # State loading and persistence
    # =========================================================================

    def _load(self) -> None:
        try:
            document = self._store.load()
        except PersistenceError as e:
            logger.error(
                "Could not load rollback state, starting healthy with no history: %s",
                e,
                extra={"error_code": e.error_code},
            )
            return
        if document is None:
            return

        self._state = document.current_state
        self._history = list(document.history[-HISTORY_LIMIT:])
        self._recovery_attempts = document.recovery_attempts
        self._scheduled = list(document.scheduled_rollbacks)

        if self._state == RollbackState.RECOVERING:
            logger.warning("Rollback state was saved mid-recovery; treating it as rolled back")
            self._state = RollbackState.ROLLED_BACK

        if self._state in (RollbackState.ROLLED_BACK, RollbackState.ROLLBACK_FAILED):
            try:
                self._feature_flags.configure(manual_override=ManualOverride.FORCE_LEGACY)
            except Exception:
                logger.exception("Could not re-apply legacy routing for a persisted rollback")
                self._state = RollbackState.ROLLBACK_FAILED

        logger.info(
            "Loaded rollback state %s with %d history record(s)",
            self._state.value,
            len(self._history),
        )

    def _document(self) -> RollbackStateDocument:
        return RollbackStateDocument(
            current_state=self._state,
            history=list(self._history),
            recovery_attempts=self._recovery_attempts,
            scheduled_rollbacks=list(self._scheduled),
            last_updated=self._clock(),
        )

    def _persist(self) -> bool:
        """Write current state. Caller holds the lock."""
        try:
            self._store.save(self._document())
        except PersistenceError as e:
            logger.error(
                "Could not persist rollback state; keeping it in memory: %s",
                e,
                extra={"error_code": e.error_code},
            )
            return False
        return True

    def _transition(self, target: RollbackState) -> None:
        """Move to ``target``. Caller holds the lock."""
        if not self._state.can_transition_to(target):
            raise RollbackStateError(self._state.value, target.value)
        logger.info("Rollback state %s -> %s", self._state.value, target.value)
        self._state = target

    def _append_record(self, record: RollbackRecord) -> None:
        self._history.append(record)
        if len(self._history) > HISTORY_LIMIT:
            del self._history[: len(self._history) - HISTORY_LIMIT]

    def _notify(self, event: str, data: dict[str, Any]) -> None:
        if self._notification_handler is None:
            return
        try:
            self._notification_handler(event, data)
        except Exception:
            logger.exception("Rollback notification handler failed for %s", event)

    # =========================================================================
    # Recommendation
    # =========================================================================

    def rollback_recommended(self) -> bool:
        """True while the circuit breaker is open."""
        return self._feature_flags.circuit_breaker_state() == CircuitState.OPEN

    def rollback_recommendation(self) -> dict[str, Any]:
        """Recommendation with severity and the reasons behind it."""
        breaker = self._feature_flags.circuit_breaker_metrics()
        reasons: list[dict[str, Any]] = []
        if breaker.state == CircuitState.OPEN:
            reasons.append(
                {
                    "trigger": "circuit_breaker_tripped",
                    "detail": f"circuit breaker open, {breaker.failures_in_window} failure(s) in window",
                }
            )
            severity = "critical"
        elif breaker.failures_in_window > 0:
            reasons.append(
                {
                    "trigger": "candidate_errors",
                    "detail": f"{breaker.failures_in_window} candidate failure(s) in window",
                }
            )
            severity = "warning"
        else:
            severity = "info"
        with self._lock:
            already = self._state == RollbackState.ROLLED_BACK
        return {
            "recommended": breaker.state == CircuitState.OPEN,
            "severity": severity,
            "reasons": reasons,
            "already_rolled_back": already,
        }

    def _on_rollback_recommended(self, transition: CircuitTransition) -> None:
        result = self.execute_automatic_rollback()
        if not result["success"] and "reason" in result:
            logger.info("Automatic rollback skipped: %s", result["reason"])

    # =========================================================================
    # Rollback
    # =========================================================================

    def execute_automatic_rollback(self, dry_run: bool = False) -> dict[str, Any]:
        """
        Roll back because the circuit breaker is open.

        Args:
            dry_run: Report what would happen without changing anything.

        Returns:
            ``{success, rollback_time_ms, trigger, type, persisted, ...}``, or
            ``{success: False, reason}`` when no rollback is due.
        """
        trigger = RollbackTrigger.CIRCUIT_BREAKER
        with self._lock:
            if self._state == RollbackState.ROLLED_BACK:
                return {"success": False, "reason": "Already rolled back", "state": self._state.value}
            if not self.rollback_recommended():
                return {
                    "success": False,
                    "reason": "Rollback not recommended: circuit breaker is not open",
                    "state": self._state.value,
                }
            if dry_run:
                return {
                    "success": True,
                    "dry_run": True,
                    "trigger": trigger.value,
                    "type": _ROLLBACK_TYPES[trigger],
                    "state": self._state.value,
                }
            result = self._apply_rollback(trigger, "circuit breaker open", operator=None)
        self._after_rollback(result)
        return result

    def emergency_rollback(self, reason: str, operator: str | None = None) -> dict[str, Any]:
        """
        Roll back now, whatever the breaker says.

        Also trips the circuit breaker, so forced candidate runs need an
        explicit bypass until the rollback is cleared.
        """
        with self._lock:
            result = self._apply_rollback(RollbackTrigger.EMERGENCY_MANUAL, reason, operator=operator)
        self._after_rollback(result)
        return result

    def execute_planned_rollback(
        self,
        reason: str,
        scheduled_at: datetime,
        operator: str | None = None,
    ) -> dict[str, Any]:
        """
        Roll back at ``scheduled_at``.

        Runs immediately when the time has already come; otherwise the
        schedule is persisted and executed by ``run_due_rollbacks``.
        Naive datetimes are taken as UTC.
        """
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=UTC)
        if scheduled_at <= self._clock():
            with self._lock:
                result = self._apply_rollback(RollbackTrigger.PLANNED, reason, operator=operator)
            self._after_rollback(result)
            return result

        scheduled = ScheduledRollback(scheduled_at=scheduled_at, reason=reason, operator=operator)
        with self._lock:
            self._scheduled.append(scheduled)
            persisted = self._persist()
        logger.info("Planned rollback %s scheduled for %s", scheduled.id, scheduled_at.isoformat())
        return {
            "success": True,
            "scheduled": True,
            "schedule_id": scheduled.id,
            "scheduled_at": scheduled_at,
            "reason": reason,
            "operator": operator,
            "persisted": persisted,
        }

    def run_due_rollbacks(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Execute planned rollbacks whose time has come."""
        current = now or self._clock()
        with self._lock:
            due = [s for s in self._scheduled if s.scheduled_at <= current]
            if not due:
                return []
            self._scheduled = [s for s in self._scheduled if s.scheduled_at > current]
            results = [
                self._apply_rollback(RollbackTrigger.PLANNED, s.reason, operator=s.operator)
                for s in due
            ]
        for result in results:
            self._after_rollback(result)
        return results

    def pending_planned_rollbacks(self) -> tuple[ScheduledRollback, ...]:
        with self._lock:
            return tuple(self._scheduled)

    def _apply_rollback(
        self,
        trigger: RollbackTrigger,
        reason: str,
        *,
        operator: str | None,
    ) -> dict[str, Any]:
        """Force legacy routing and record it. Caller holds the lock."""
        started = time.perf_counter()
        errors: list[str] = []

        with self._tracer.span(
            "engineswitch.rollback.execute",
            {ATTR_ROLLBACK_TRIGGER: trigger.value, ATTR_ROLLBACK_STATE: self._state.value},
        ):
            try:
                self._feature_flags.configure(manual_override=ManualOverride.FORCE_LEGACY)
                if trigger == RollbackTrigger.EMERGENCY_MANUAL:
                    self._feature_flags.trip_circuit_breaker(f"emergency rollback: {reason}")
            except Exception as e:
                logger.exception("Rollback step failed")
                errors.append(f"Failed to force legacy routing: {e}")

            target = RollbackState.ROLLBACK_FAILED if errors else RollbackState.ROLLED_BACK
            try:
                self._transition(target)
            except RollbackStateError as e:
                errors.append(str(e))
                self._state = RollbackState.ROLLBACK_FAILED

        success = not errors
        if success:
            self._recovery_attempts = 0
        elapsed = _elapsed_ms(started)
        record = RollbackRecord(
            triggered_at=self._clock(),
            trigger=trigger,
            reason=reason,
            operator=operator,
            success=success,
            rollback_time_ms=elapsed,
            errors=tuple(errors),
        )
        self._append_record(record)
        persisted = self._persist()

        log = logger.warning if success else logger.critical
        log(
            "Rollback (%s) %s: %s",
            trigger.value,
            "applied" if success else "FAILED",
            reason,
            extra={"trigger": trigger.value, "operator": operator, "rollback_time_ms": elapsed},
        )
        return {
            "success": success,
            "rollback_time_ms": elapsed,
            "trigger": trigger.value,
            "type": _ROLLBACK_TYPES[trigger],
            "reason": reason,
            "operator": operator,
            "persisted": persisted,
            "errors": errors,
            "state": self._state.value,
        }

    def _after_rollback(self, result: dict[str, Any]) -> None:
        if self._metrics is not None:
            self._metrics.record_rollback(result["trigger"], success=result["success"])
        self._notify("rollback_executed" if result["success"] else "rollback_failed", dict(result))

    # =========================================================================
    # Recovery
    # =========================================================================

    def attempt_rollback_recovery(self, operator: str | None = None) -> dict[str, Any]:
        """
        Re-arm normal routing after a rollback.

        Allowed from rolled_back or rollback_failed, while the breaker is not
        open, and until ``max_recovery_attempts`` is used up. Failures are
        recorded as rollback_failed and returned, never raised.

        Returns:
            ``{success, recovery_steps, recovery_time_ms, state, ...}``
        """
        started = time.perf_counter()
        with self._lock:
            refusal = self._recovery_refusal()
            if refusal is not None:
                return {
                    "success": False,
                    "reason": refusal,
                    "recovery_steps": [],
                    "recovery_time_ms": _elapsed_ms(started),
                    "state": self._state.value,
                }

            self._recovery_attempts += 1
            steps: list[str] = []
            errors: list[str] = []
            with self._tracer.span(
                "engineswitch.rollback.recover",
                {ATTR_ROLLBACK_STATE: self._state.value},
            ):
                self._transition(RollbackState.RECOVERING)
                steps.append("entered recovering state")
                try:
                    self._feature_flags.configure(manual_override=ManualOverride.NONE)
                    steps.append("cleared manual override")
                    if self._feature_flags.config.manual_override != ManualOverride.NONE:
                        raise MigrationError("manual override still set after clearing it")
                    if self.rollback_recommended():
                        raise MigrationError("circuit breaker opened during recovery")
                    steps.append("verified normal routing is armed")
                    self._transition(RollbackState.HEALTHY)
                    steps.append("returned to healthy state")
                    self._recovery_attempts = 0
                except Exception as e:
                    logger.exception("Rollback recovery failed")
                    errors.append(str(e))
                    steps.append(f"recovery failed: {e}")
                    self._state = RollbackState.ROLLBACK_FAILED
                    try:
                        self._feature_flags.configure(manual_override=ManualOverride.FORCE_LEGACY)
                        steps.append("restored legacy routing")
                    except Exception:
                        logger.exception("Could not restore legacy routing after failed recovery")

            persisted = self._persist()
            result = {
                "success": not errors,
                "recovery_steps": steps,
                "recovery_time_ms": _elapsed_ms(started),
                "state": self._state.value,
                "attempts": self._recovery_attempts,
                "operator": operator,
                "errors": errors,
                "persisted": persisted,
            }

        logger.info(
            "Rollback recovery %s in %.1fms",
            "succeeded" if result["success"] else "failed",
            result["recovery_time_ms"],
            extra={"operator": operator},
        )
        self._notify("recovery_attempted", dict(result))
        return result

    def _recovery_refusal(self) -> str | None:
        """Why recovery cannot run now, or None. Caller holds the lock."""
        if self._state not in (RollbackState.ROLLED_BACK, RollbackState.ROLLBACK_FAILED):
            return f"Not in rolled back or rollback failed state (state is {self._state.value})"
        if self.rollback_recommended():
            return "Circuit breaker is open; recovery deferred until it half-opens"
        if self._recovery_attempts >= self.max_recovery_attempts:
            return (
                f"Recovery attempt limit reached ({self.max_recovery_attempts}); "
                "clear the rollback state to retry"
            )
        return None

    def clear_rollback_state(self, operator: str | None = None) -> dict[str, Any]:
        """
        Operator acknowledgement: close the breaker and recover.

        Resets the recovery attempt budget.
        """
        with self._lock:
            if self._state not in (RollbackState.ROLLED_BACK, RollbackState.ROLLBACK_FAILED):
                return {
                    "success": False,
                    "reason": f"Not in rolled back state (state is {self._state.value})",
                    "state": self._state.value,
                }
            self._feature_flags.close_circuit_breaker(
                f"rollback cleared by {operator or 'operator'}"
            )
            self._recovery_attempts = 0

        result = self.attempt_rollback_recovery(operator=operator)
        if result["success"]:
            self._notify("rollback_cleared", {"operator": operator, "state": result["state"]})
        return result

    # =========================================================================
    # Inspection
    # =========================================================================

    def validate_rollback_success(self) -> dict[str, Any]:
        """Check that a rollback actually took effect."""
        passed: list[dict[str, str]] = []
        failed: list[dict[str, str]] = []

        def check(name: str, ok: bool, detail: str) -> None:
            (passed if ok else failed).append({"check": name, "detail": detail})

        override = self._feature_flags.config.manual_override
        check("feature_flags", override == ManualOverride.FORCE_LEGACY, f"manual_override={override.value}")
        with self._lock:
            state = self._state
        check("rollback_state", state == RollbackState.ROLLED_BACK, f"state={state.value}")
        decision = self._feature_flags.routing_decision()
        check(
            "routing",
            not decision.use_candidate and not decision.is_canary,
            f"routing reason={decision.reason}",
        )
        return {
            "success": not failed,
            "system_health": "healthy" if not failed else "degraded",
            "checks_passed": passed,
            "checks_failed": failed,
        }

    def current_state(self) -> RollbackState:
        with self._lock:
            return self._state

    @property
    def is_rolled_back(self) -> bool:
        return self.current_state() == RollbackState.ROLLED_BACK

    def rollback_history(self) -> tuple[RollbackRecord, ...]:
        """Rollback records, oldest first."""
        with self._lock:
            return tuple(self._history)

    def rollback_count_today(self) -> int:
        today = self._clock().astimezone(UTC).date()
        with self._lock:
            return sum(
                1
                for record in self._history
                if record.success and record.triggered_at.astimezone(UTC).date() == today
            )

    def current_status(self) -> dict[str, Any]:
        """Operator-facing status of the rollback subsystem."""
        recommendation = self.rollback_recommendation()
        flags_state = self._feature_flags.configuration_summary()
        count_today = self.rollback_count_today()
        with self._lock:
            last = self._history[-1] if self._history else None
            return {
                "state": self._state.value,
                "is_rolled_back": self._state == RollbackState.ROLLED_BACK,
                "rollback_count_today": count_today,
                "last_rollback": last.model_dump(mode="json") if last else None,
                "recovery_attempts": self._recovery_attempts,
                "max_recovery_attempts": self.max_recovery_attempts,
                "scheduled_rollbacks": [s.model_dump(mode="json") for s in self._scheduled],
                "feature_flags_state": flags_state,
                "circuit_breaker_state": flags_state["circuit_breaker_state"],
                "recommendation": recommendation,
                "health_indicators": {
                    "circuit_breaker_healthy": flags_state["circuit_breaker_state"] != "open",
                    "manual_override_active": flags_state["manual_override"] != "none",
                    "recent_rollbacks": count_today,
                    "recovery_budget_remaining": max(
                        0, self.max_recovery_attempts - self._recovery_attempts
                    ),
                },
            }

    def close(self) -> None:
        """Stop listening for rollback recommendations."""
        if self._subscribed:
            self._feature_flags.remove_rollback_listener(self._on_rollback_recommended)
            self._subscribed = False


__all__ = ["HISTORY_LIMIT", "NotificationHandler", "RollbackManager"]
