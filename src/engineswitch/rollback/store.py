"""
Durable storage for rollback state.

The rollback state document is small and written on every transition, so
the file store rewrites it whole: the new content goes to a temporary file
in the target directory, is fsynced, and then atomically replaces the old
file. A reader never observes a partial write.

Documents are pydantic models that ignore unknown fields, so a state file
written by a newer release can still be read.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from engineswitch.exceptions import PersistenceError
from engineswitch.models import RollbackRecord, RollbackState

logger = logging.getLogger(__name__)


class ScheduledRollback(BaseModel):
    """A planned rollback that has not come due yet."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=lambda: uuid4().hex)
    scheduled_at: datetime
    reason: str = ""
    operator: str | None = None


class RollbackStateDocument(BaseModel):
    """
    Everything the rollback manager persists.

    Attributes:
        current_state: Rollback lifecycle state.
        history: Rollback records, oldest first.
        recovery_attempts: Recovery attempts since the last successful rollback.
        scheduled_rollbacks: Planned rollbacks that have not run yet.
        last_updated: When the document was written.
    """

    model_config = ConfigDict(extra="ignore")

    current_state: RollbackState = RollbackState.HEALTHY
    history: list[RollbackRecord] = Field(default_factory=list)
    recovery_attempts: int = 0
    scheduled_rollbacks: list[ScheduledRollback] = Field(default_factory=list)
    last_updated: datetime | None = None


@runtime_checkable
class RollbackStateStore(Protocol):
    """Where rollback state lives between process restarts."""

    def load(self) -> RollbackStateDocument | None:
        """
        Read the stored document.

        Returns:
            The document, or None when nothing has been stored yet.

        Raises:
            PersistenceError: If stored state exists but cannot be read.
        """
        ...

    def save(self, document: RollbackStateDocument) -> None:
        """
        Replace the stored document.

        Raises:
            PersistenceError: If the document cannot be written.
        """
        ...


class InMemoryRollbackStateStore:
    """
    Process-local store, for tests and for deployments that accept losing
    rollback state on restart.

    The document is kept serialized so loads behave like a real store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._payload: str | None = None

    def load(self) -> RollbackStateDocument | None:
        with self._lock:
            payload = self._payload
        if payload is None:
            return None
        return RollbackStateDocument.model_validate_json(payload)

    def save(self, document: RollbackStateDocument) -> None:
        payload = document.model_dump_json()
        with self._lock:
            self._payload = payload

    def clear(self) -> None:
        with self._lock:
            self._payload = None


class JsonFileRollbackStateStore:
    """
    JSON file store with atomic replace.

    Writes are serialized by a lock, so concurrent saves from one process
    never interleave.

    Example:
        >>> store = JsonFileRollbackStateStore("/var/lib/codegen/rollback_state.json")
        >>> manager = RollbackManager(flags, store)
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> RollbackStateDocument | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(
                f"Could not read rollback state from {self.path}: {e}", path=str(self.path)
            ) from e

        if not raw.strip():
            return None
        try:
            return RollbackStateDocument.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(
                f"Rollback state at {self.path} is not valid: {e.error_count()} error(s)",
                path=str(self.path),
            ) from e

    def save(self, document: RollbackStateDocument) -> None:
        if document.last_updated is None:
            document = document.model_copy(update={"last_updated": datetime.now(UTC)})
        payload = document.model_dump_json(indent=2)
        with self._lock:
            tmp_name: str | None = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                )
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
                tmp_name = None
            except OSError as e:
                raise PersistenceError(
                    f"Could not write rollback state to {self.path}: {e}", path=str(self.path)
                ) from e
            finally:
                if tmp_name is not None:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        logger.debug("Could not remove temporary state file %s", tmp_name)
        logger.debug("Rollback state written to %s", self.path)

    def __repr__(self) -> str:
        return f"JsonFileRollbackStateStore({str(self.path)!r})"


__all__ = [
    "InMemoryRollbackStateStore",
    "JsonFileRollbackStateStore",
    "RollbackStateDocument",
    "RollbackStateStore",
    "ScheduledRollback",
]
