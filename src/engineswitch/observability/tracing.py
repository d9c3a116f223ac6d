"""
OpenTelemetry availability check for engineswitch.

OpenTelemetry is an optional dependency (``pip install engineswitch[telemetry]``).
This module is the single place that tries to import it.
"""

from __future__ import annotations

from typing import Any

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


def get_tracer(name: str) -> Any | None:
    """
    Get an OpenTelemetry tracer if available.

    Args:
        name: The name for the tracer (typically __name__ of the module)

    Returns:
        OpenTelemetry Tracer if available, None otherwise
    """
    if not OTEL_AVAILABLE or trace is None:
        return None
    return trace.get_tracer(name)
