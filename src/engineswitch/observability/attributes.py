"""
Span attribute names used across engineswitch.

Keeping the names in one module keeps traces from the adapter, the feature
flags and the rollback manager queryable with the same keys.
"""

ATTR_EXECUTION_ID = "engineswitch.execution_id"
ATTR_ROUTING_KEY = "engineswitch.routing_key"
ATTR_ROUTING_REASON = "engineswitch.routing.reason"
ATTR_USED_CANDIDATE = "engineswitch.routing.used_candidate"
ATTR_CANARY = "engineswitch.routing.canary"
ATTR_FALLBACK_USED = "engineswitch.routing.fallback_used"
ATTR_ENGINE = "engineswitch.engine"
ATTR_ENGINE_SUCCESS = "engineswitch.engine.success"
ATTR_CIRCUIT_STATE = "engineswitch.circuit.state"
ATTR_COMPARISON_MATCH = "engineswitch.canary.match"
ATTR_ROLLBACK_TRIGGER = "engineswitch.rollback.trigger"
ATTR_ROLLBACK_STATE = "engineswitch.rollback.state"
ATTR_ERROR_TYPE = "error.type"

__all__ = [
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
