"""
Circuit breaker guarding the candidate engine.

The breaker counts candidate failures inside a sliding time window and opens
once the count reaches the threshold. While open, routing sends everything
to the legacy engine. After the recovery timeout it moves to half-open and
lets candidate traffic probe; successful probes close it again, a failed
probe reopens it.

Every check-then-transition runs under one lock, so concurrent failures can
neither lose updates nor open the breaker twice. Listeners are notified
after the lock is released.

Example:
    >>> breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2))
    >>> breaker.record_failure(RuntimeError("boom"))
    >>> breaker.record_failure(RuntimeError("boom"))
    CircuitTransition(from_state=<CircuitState.CLOSED: 'closed'>, ...)
    >>> breaker.state
    <CircuitState.OPEN: 'open'>
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from engineswitch.models import CircuitState, CircuitTransition

logger = logging.getLogger(__name__)

TransitionListener = Callable[[CircuitTransition], None]


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Failures within the window that open the circuit.
        success_threshold: Successful probes in half-open state to close it.
        recovery_timeout_seconds: Seconds the circuit stays open before half-open.
        window_seconds: Sliding window for counting failures.
        enabled: When False, failures are counted but never open the circuit.
            ``trip()`` still works so operators can run drills.
    """

    failure_threshold: int = 5
    success_threshold: int = 1
    recovery_timeout_seconds: float = 60.0
    window_seconds: float = 300.0
    enabled: bool = True


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    """Point-in-time view of the breaker for status and statistics payloads."""

    state: CircuitState
    failures_in_window: int
    total_failures: int
    total_successes: int
    total_trips: int
    opened_at: datetime | None
    last_failure_at: datetime | None
    time_until_half_open: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures_in_window": self.failures_in_window,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "total_trips": self.total_trips,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "time_until_half_open": self.time_until_half_open,
        }


class CircuitBreaker:
    """
    Thread-safe closed/open/half-open state machine.

    Attributes:
        config: Current configuration (replace with ``reconfigure``).
        name: Name used in log messages.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        name: str = "candidate",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the circuit breaker.

        Args:
            config: Circuit breaker configuration (uses defaults if None).
            name: Name for logging and identification.
            clock: Monotonic clock, injectable for tests.
        """
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_times: deque[float] = deque()
        self._half_open_successes = 0
        self._opened_at_monotonic: float | None = None
        self._opened_at: datetime | None = None
        self._last_failure_at: datetime | None = None
        self._total_failures = 0
        self._total_successes = 0
        self._total_trips = 0
        self._listeners: list[TransitionListener] = []

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked after every state transition."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, transition: CircuitTransition | None) -> None:
        if transition is None:
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(transition)
            except Exception:
                logger.exception(
                    "Circuit breaker '%s' listener failed for %s -> %s",
                    self.name,
                    transition.from_state.value,
                    transition.to_state.value,
                )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> CircuitState:
        """
        Current state.

        Reading the state moves an open circuit to half-open once the
        recovery timeout has elapsed.
        """
        with self._lock:
            transition = self._maybe_half_open()
            state = self._state
        self._notify(transition)
        return state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        """Failures currently inside the window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._failure_times)

    def time_until_half_open(self) -> float:
        """Seconds until an open circuit moves to half-open (0 when not open)."""
        with self._lock:
            return self._time_until_half_open()

    def _time_until_half_open(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at_monotonic is None:
            return 0.0
        elapsed = self._clock() - self._opened_at_monotonic
        return max(0.0, self.config.recovery_timeout_seconds - elapsed)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.window_seconds
        while self._failure_times and self._failure_times[0] <= horizon:
            self._failure_times.popleft()

    def _transition(self, target: CircuitState, reason: str) -> CircuitTransition:
        """Move to ``target``. Caller holds the lock."""
        previous = self._state
        self._state = target
        if target == CircuitState.OPEN:
            self._opened_at_monotonic = self._clock()
            self._opened_at = datetime.now(UTC)
            self._total_trips += 1
            self._half_open_successes = 0
            logger.warning(
                "Circuit breaker '%s' opening (%s -> open): %s",
                self.name,
                previous.value,
                reason,
            )
        elif target == CircuitState.HALF_OPEN:
            self._half_open_successes = 0
            logger.info("Circuit breaker '%s' half-open: %s", self.name, reason)
        else:
            self._failure_times.clear()
            self._opened_at_monotonic = None
            self._opened_at = None
            logger.info("Circuit breaker '%s' closed: %s", self.name, reason)
        return CircuitTransition(from_state=previous, to_state=target, reason=reason)

    def _maybe_half_open(self) -> CircuitTransition | None:
        """Caller holds the lock."""
        if self._state != CircuitState.OPEN or self._opened_at_monotonic is None:
            return None
        if self._time_until_half_open() > 0:
            return None
        return self._transition(
            CircuitState.HALF_OPEN,
            f"recovery timeout of {self.config.recovery_timeout_seconds}s elapsed",
        )

    # =========================================================================
    # Recording
    # =========================================================================

    def record_success(self) -> CircuitTransition | None:
        """
        Record a successful candidate run.

        In closed state this clears the failure window. In half-open state it
        counts toward closing the circuit.

        Returns:
            The transition that happened, if any.
        """
        transitions: list[CircuitTransition] = []
        with self._lock:
            self._total_successes += 1
            timed = self._maybe_half_open()
            if timed:
                transitions.append(timed)
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.success_threshold:
                    transitions.append(
                        self._transition(
                            CircuitState.CLOSED,
                            f"{self._half_open_successes} successful probe(s)",
                        )
                    )
            elif self._state == CircuitState.CLOSED:
                self._failure_times.clear()
        for transition in transitions:
            self._notify(transition)
        return transitions[-1] if transitions else None

    def record_failure(self, error: BaseException | str | None = None) -> CircuitTransition | None:
        """
        Record a failed candidate run.

        Args:
            error: The failure, used for the transition reason.

        Returns:
            The transition that happened, if any.
        """
        detail = str(error) if error is not None else "unspecified error"
        transitions: list[CircuitTransition] = []
        with self._lock:
            now = self._clock()
            self._total_failures += 1
            self._last_failure_at = datetime.now(UTC)
            self._failure_times.append(now)
            self._prune(now)

            timed = self._maybe_half_open()
            if timed:
                transitions.append(timed)

            if self._state == CircuitState.HALF_OPEN:
                transitions.append(
                    self._transition(CircuitState.OPEN, f"probe failed: {detail}")
                )
            elif (
                self._state == CircuitState.CLOSED
                and self.config.enabled
                and len(self._failure_times) >= self.config.failure_threshold
            ):
                transitions.append(
                    self._transition(
                        CircuitState.OPEN,
                        f"{len(self._failure_times)} failures within "
                        f"{self.config.window_seconds}s (threshold "
                        f"{self.config.failure_threshold}); last: {detail}",
                    )
                )
        for transition in transitions:
            self._notify(transition)
        return transitions[-1] if transitions else None

    # =========================================================================
    # Operator controls
    # =========================================================================

    def trip(self, reason: str = "tripped manually") -> CircuitTransition | None:
        """Force the circuit open immediately, bypassing threshold counting."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                # Restart the cool-down so the drill lasts a full timeout.
                self._opened_at_monotonic = self._clock()
                return None
            transition = self._transition(CircuitState.OPEN, reason)
        self._notify(transition)
        return transition

    def reset(self, reason: str = "manual reset") -> CircuitTransition | None:
        """Move an open circuit to half-open so the next candidate run probes it."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return None
            transition = self._transition(CircuitState.HALF_OPEN, reason)
        self._notify(transition)
        return transition

    def force_close(self, reason: str = "closed by operator") -> CircuitTransition | None:
        """Close the circuit outright and clear the failure window."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failure_times.clear()
                return None
            transition = self._transition(CircuitState.CLOSED, reason)
        self._notify(transition)
        return transition

    def reconfigure(self, config: CircuitBreakerConfig) -> None:
        """Apply new thresholds; the current state is kept."""
        with self._lock:
            self.config = config
            self._prune(self._clock())

    def metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            transition = self._maybe_half_open()
            self._prune(self._clock())
            snapshot = CircuitBreakerMetrics(
                state=self._state,
                failures_in_window=len(self._failure_times),
                total_failures=self._total_failures,
                total_successes=self._total_successes,
                total_trips=self._total_trips,
                opened_at=self._opened_at,
                last_failure_at=self._last_failure_at,
                time_until_half_open=self._time_until_half_open(),
            )
        self._notify(transition)
        return snapshot
