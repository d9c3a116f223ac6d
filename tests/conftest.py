"""
Shared pytest fixtures for the engineswitch tests.

This module provides:
- Feature flag fixtures (flags, fake_clock) with a seeded random source
- Engine fixtures (legacy_engine, candidate_engine, failing_engine)
- Rollback fixtures (state_store, rollback_manager)
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

import random
from collections.abc import Iterator
from typing import Any

import pytest

from engineswitch import metrics as metrics_module
from engineswitch.feature_flags import FeatureFlags
from engineswitch.metrics import MigrationMetrics
from engineswitch.rollback import InMemoryRollbackStateStore, RollbackManager
from engineswitch.system import reset_system
from tests.fixtures import FailingEngine, RecordingEngine, sample_result

# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "integration: tests that wire several components together")


# ============================================================================
# Skip Condition
# ============================================================================

skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a monotonic clock the test advances by hand."""
    return FakeClock()


# =============================================================================
# Feature Flags
# =============================================================================


@pytest.fixture
def migration_metrics() -> MigrationMetrics:
    """Metrics container with OpenTelemetry instruments disabled."""
    return MigrationMetrics("test", enable_metrics=False)


@pytest.fixture
def flags(fake_clock: FakeClock, migration_metrics: MigrationMetrics) -> FeatureFlags:
    """
    Provide FeatureFlags with a seeded random source and a fake clock.

    Returns:
        FeatureFlags at default configuration (all traffic to legacy).
    """
    return FeatureFlags(rng=random.Random(1234), clock=fake_clock, metrics=migration_metrics)


# =============================================================================
# Engines
# =============================================================================


@pytest.fixture
def legacy_engine() -> RecordingEngine:
    return RecordingEngine(sample_result(execution_time_seconds=0.01), name="legacy")


@pytest.fixture
def candidate_engine() -> RecordingEngine:
    return RecordingEngine(sample_result(execution_time_seconds=0.012), name="candidate")


@pytest.fixture
def failing_engine() -> FailingEngine:
    return FailingEngine(RuntimeError("boom"))


# =============================================================================
# Rollback
# =============================================================================


@pytest.fixture
def state_store() -> InMemoryRollbackStateStore:
    return InMemoryRollbackStateStore()


@pytest.fixture
def rollback_manager(
    flags: FeatureFlags,
    state_store: InMemoryRollbackStateStore,
    migration_metrics: MigrationMetrics,
) -> Iterator[RollbackManager]:
    """
    Provide a RollbackManager subscribed to ``flags``.

    Yields:
        RollbackManager backed by the in-memory ``state_store``.
    """
    manager = RollbackManager(
        flags,
        state_store,
        metrics=migration_metrics,
        enable_tracing=False,
    )
    yield manager
    manager.close()


@pytest.fixture(autouse=True)
def _reset_process_system() -> Iterator[None]:
    """Make sure no test leaks a process-wide MigrationSystem."""
    yield
    reset_system()


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> Iterator[Any]:
    """
    Provide an InMemoryMetricReader for testing metrics.

    A fresh meter provider is created for each test and its meter is
    installed as the engineswitch module meter, so MigrationMetrics built
    inside the test report to this reader.

    Yields:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics_module.reset_meter()
    metrics_module._meter = provider.get_meter("engineswitch")

    yield reader

    metrics_module.reset_meter()
    provider.shutdown()


def collected_points(reader: Any, metric_name: str) -> list[Any]:
    """Data points for ``metric_name`` from an InMemoryMetricReader."""
    data = reader.get_metrics_data()
    points: list[Any] = []
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name == metric_name:
                    points.extend(metric.data.data_points)
    return points


__all__ = [
    "FakeClock",
    "OTEL_METRICS_AVAILABLE",
    "collected_points",
    "skip_if_no_otel_metrics",
]
