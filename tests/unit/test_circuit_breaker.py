"""
Unit tests for the candidate circuit breaker.

Tests cover:
- Threshold counting inside the sliding window
- Recovery timeout and half-open probing
- Operator controls (trip, reset, force_close, reconfigure)
- Listener notification
- Concurrent failure recording
"""

import threading

import pytest

from engineswitch.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from engineswitch.models import CircuitState, CircuitTransition
from tests.conftest import FakeClock


@pytest.fixture
def breaker(fake_clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=3,
            recovery_timeout_seconds=60.0,
            window_seconds=300.0,
        ),
        clock=fake_clock,
    )


class TestThreshold:
    """Tests for opening the circuit."""

    def test_starts_closed(self, breaker: CircuitBreaker) -> None:
        """A new breaker is closed with no failures."""
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.is_open is False

    def test_opens_at_exact_threshold(self, breaker: CircuitBreaker) -> None:
        """The threshold-th failure opens the circuit, not one before."""
        assert breaker.record_failure(RuntimeError("1")) is None
        assert breaker.record_failure(RuntimeError("2")) is None
        assert breaker.state == CircuitState.CLOSED

        transition = breaker.record_failure(RuntimeError("3"))

        assert transition is not None
        assert transition.opened
        assert transition.from_state == CircuitState.CLOSED
        assert breaker.state == CircuitState.OPEN

    def test_transition_reason_mentions_last_error(self, breaker: CircuitBreaker) -> None:
        """The opening reason carries the last failure."""
        breaker.record_failure("a")
        breaker.record_failure("b")
        transition = breaker.record_failure("disk on fire")

        assert transition is not None
        assert "disk on fire" in transition.reason

    def test_failures_outside_window_expire(
        self, breaker: CircuitBreaker, fake_clock: FakeClock
    ) -> None:
        """Failures older than the window do not count."""
        breaker.record_failure("old")
        breaker.record_failure("old")
        fake_clock.advance(301)

        breaker.record_failure("new")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_success_clears_window_when_closed(self, breaker: CircuitBreaker) -> None:
        """A success in closed state resets the failure count."""
        breaker.record_failure("a")
        breaker.record_failure("b")
        breaker.record_success()
        breaker.record_failure("c")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_disabled_breaker_never_opens(self, fake_clock: FakeClock) -> None:
        """With enabled=False failures are counted but do not open."""
        breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=1, enabled=False), clock=fake_clock
        )

        breaker.record_failure("a")
        breaker.record_failure("b")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics().total_failures == 2


class TestRecovery:
    """Tests for half-open probing."""

    def _open(self, breaker: CircuitBreaker) -> None:
        for i in range(3):
            breaker.record_failure(f"failure {i}")

    def test_stays_open_until_timeout(self, breaker: CircuitBreaker, fake_clock: FakeClock) -> None:
        """The circuit stays open for the recovery timeout."""
        self._open(breaker)
        fake_clock.advance(59)

        assert breaker.state == CircuitState.OPEN
        assert breaker.time_until_half_open() == pytest.approx(1.0)

    def test_half_opens_after_timeout(self, breaker: CircuitBreaker, fake_clock: FakeClock) -> None:
        """Reading the state after the timeout moves to half-open."""
        self._open(breaker)
        fake_clock.advance(60)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.time_until_half_open() == 0.0

    def test_successful_probe_closes(self, breaker: CircuitBreaker, fake_clock: FakeClock) -> None:
        """A successful half-open probe closes the circuit."""
        self._open(breaker)
        fake_clock.advance(60)

        transition = breaker.record_success()

        assert transition is not None
        assert transition.to_state == CircuitState.CLOSED
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_failed_probe_reopens(self, breaker: CircuitBreaker, fake_clock: FakeClock) -> None:
        """A failed half-open probe reopens the circuit immediately."""
        self._open(breaker)
        fake_clock.advance(60)
        assert breaker.state == CircuitState.HALF_OPEN

        transition = breaker.record_failure("still broken")

        assert transition is not None
        assert transition.from_state == CircuitState.HALF_OPEN
        assert transition.opened
        assert breaker.state == CircuitState.OPEN
        assert breaker.metrics().total_trips == 2

    def test_success_threshold_requires_several_probes(self, fake_clock: FakeClock) -> None:
        """success_threshold probes are needed to close."""
        breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=1, success_threshold=2, recovery_timeout_seconds=1),
            clock=fake_clock,
        )
        breaker.record_failure("x")
        fake_clock.advance(1)

        assert breaker.record_success() is not None  # the half-open transition
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


class TestOperatorControls:
    """Tests for trip, reset, force_close and reconfigure."""

    def test_trip_opens_immediately(self, breaker: CircuitBreaker) -> None:
        """trip() opens without counting failures."""
        transition = breaker.trip("drill")

        assert transition is not None
        assert transition.reason == "drill"
        assert breaker.state == CircuitState.OPEN

    def test_trip_when_open_restarts_cooldown(
        self, breaker: CircuitBreaker, fake_clock: FakeClock
    ) -> None:
        """Tripping an open circuit restarts the recovery timeout."""
        breaker.trip()
        fake_clock.advance(50)

        assert breaker.trip() is None
        assert breaker.time_until_half_open() == pytest.approx(60.0)

    def test_trip_works_when_disabled(self, fake_clock: FakeClock) -> None:
        """Drills work even when automatic opening is disabled."""
        breaker = CircuitBreaker(CircuitBreakerConfig(enabled=False), clock=fake_clock)

        breaker.trip()

        assert breaker.state == CircuitState.OPEN

    def test_reset_moves_open_to_half_open(self, breaker: CircuitBreaker) -> None:
        """reset() lets the next candidate run probe."""
        breaker.trip()

        transition = breaker.reset()

        assert transition is not None
        assert breaker.state == CircuitState.HALF_OPEN

    def test_reset_is_noop_when_closed(self, breaker: CircuitBreaker) -> None:
        """reset() on a closed breaker changes nothing."""
        assert breaker.reset() is None
        assert breaker.state == CircuitState.CLOSED

    def test_force_close(self, breaker: CircuitBreaker) -> None:
        """force_close() closes and clears the window."""
        breaker.trip()

        breaker.force_close("operator")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_reconfigure_keeps_state(self, breaker: CircuitBreaker) -> None:
        """Reconfiguring applies new thresholds without closing."""
        breaker.record_failure("a")
        breaker.reconfigure(CircuitBreakerConfig(failure_threshold=2))

        breaker.record_failure("b")

        assert breaker.state == CircuitState.OPEN


class TestListeners:
    """Tests for transition listeners."""

    def test_listener_receives_transitions(self, breaker: CircuitBreaker) -> None:
        """Listeners see every transition in order."""
        seen: list[CircuitTransition] = []
        breaker.add_listener(seen.append)

        breaker.trip()
        breaker.reset()
        breaker.record_success()

        assert [t.to_state for t in seen] == [
            CircuitState.OPEN,
            CircuitState.HALF_OPEN,
            CircuitState.CLOSED,
        ]

    def test_failing_listener_does_not_break_breaker(self, breaker: CircuitBreaker) -> None:
        """A listener exception is logged, not raised."""

        def explode(transition: CircuitTransition) -> None:
            raise RuntimeError("listener bug")

        breaker.add_listener(explode)
        breaker.trip()

        assert breaker.state == CircuitState.OPEN

    def test_remove_listener(self, breaker: CircuitBreaker) -> None:
        """Removed listeners are not called."""
        seen: list[CircuitTransition] = []
        breaker.add_listener(seen.append)
        breaker.remove_listener(seen.append)

        breaker.trip()

        assert seen == []


class TestMetrics:
    """Tests for the metrics snapshot."""

    def test_metrics_snapshot(self, breaker: CircuitBreaker) -> None:
        """metrics() reflects counts and timestamps."""
        breaker.record_failure("a")
        breaker.record_success()
        breaker.trip()

        metrics = breaker.metrics()

        assert metrics.state == CircuitState.OPEN
        assert metrics.total_failures == 1
        assert metrics.total_successes == 1
        assert metrics.total_trips == 1
        assert metrics.opened_at is not None
        assert metrics.last_failure_at is not None
        data = metrics.to_dict()
        assert data["state"] == "open"
        assert data["time_until_half_open"] == pytest.approx(60.0)


class TestConcurrency:
    """Tests for concurrent failure recording."""

    def test_concurrent_failures_open_exactly_once(self, fake_clock: FakeClock) -> None:
        """Racing failures never lose counts or open twice."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=50), clock=fake_clock)
        opened: list[CircuitTransition] = []
        breaker.add_listener(lambda t: opened.append(t) if t.opened else None)
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            for _ in range(25):
                breaker.record_failure("x")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert breaker.metrics().total_failures == 200
        assert len(opened) == 1
        assert breaker.state == CircuitState.OPEN
