"""
Rollback management and durable rollback state.

Example:
    >>> from engineswitch.rollback import JsonFileRollbackStateStore, RollbackManager
    >>> manager = RollbackManager(flags, JsonFileRollbackStateStore("rollback_state.json"))
"""

from engineswitch.rollback.manager import HISTORY_LIMIT, NotificationHandler, RollbackManager
from engineswitch.rollback.store import (
    InMemoryRollbackStateStore,
    JsonFileRollbackStateStore,
    RollbackStateDocument,
    RollbackStateStore,
    ScheduledRollback,
)

__all__ = [
    "HISTORY_LIMIT",
    "InMemoryRollbackStateStore",
    "JsonFileRollbackStateStore",
    "NotificationHandler",
    "RollbackManager",
    "RollbackStateDocument",
    "RollbackStateStore",
    "ScheduledRollback",
]
