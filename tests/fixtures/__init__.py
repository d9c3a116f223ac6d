"""
Shared test fixtures for engineswitch.

Usage:
    from tests.fixtures import (
        RecordingEngine,
        FailingEngine,
        SlowEngine,
        sample_result,
    )
"""

from tests.fixtures.engines import (
    BlockingSlowEngine,
    DictEngine,
    FailingEngine,
    RecordingEngine,
    ReportedFailureEngine,
    SlowEngine,
    SyncRecordingEngine,
    sample_result,
)

__all__ = [
    "BlockingSlowEngine",
    "DictEngine",
    "FailingEngine",
    "RecordingEngine",
    "ReportedFailureEngine",
    "SlowEngine",
    "SyncRecordingEngine",
    "sample_result",
]
