"""
Observability utilities for engineswitch.

Tracing is composition based: components accept a ``tracer`` (or
``enable_tracing``) and fall back to a NullTracer when OpenTelemetry is not
installed. Metrics live in :mod:`engineswitch.metrics`.
"""

from engineswitch.observability.attributes import (
    ATTR_CANARY,
    ATTR_CIRCUIT_STATE,
    ATTR_COMPARISON_MATCH,
    ATTR_ENGINE,
    ATTR_ENGINE_SUCCESS,
    ATTR_ERROR_TYPE,
    ATTR_EXECUTION_ID,
    ATTR_FALLBACK_USED,
    ATTR_ROLLBACK_STATE,
    ATTR_ROLLBACK_TRIGGER,
    ATTR_ROUTING_KEY,
    ATTR_ROUTING_REASON,
    ATTR_USED_CANDIDATE,
)
from engineswitch.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from engineswitch.observability.tracing import OTEL_AVAILABLE, get_tracer

__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_CANARY",
    "ATTR_CIRCUIT_STATE",
    "ATTR_COMPARISON_MATCH",
    "ATTR_ENGINE",
    "ATTR_ENGINE_SUCCESS",
    "ATTR_ERROR_TYPE",
    "ATTR_EXECUTION_ID",
    "ATTR_FALLBACK_USED",
    "ATTR_ROLLBACK_STATE",
    "ATTR_ROLLBACK_TRIGGER",
    "ATTR_ROUTING_KEY",
    "ATTR_ROUTING_REASON",
    "ATTR_USED_CANDIDATE",
]
