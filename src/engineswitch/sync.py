"""
Synchronous facade for MigrationAdapter.

Code generators, management commands and worker processes often have no
event loop. SyncMigrationAdapter runs the async adapter on a private event
loop in a daemon thread, so detached canary runs keep going (and are still
recorded against the circuit breaker) between blocking calls.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Coroutine, Mapping
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from engineswitch.adapter import MigrationAdapter
from engineswitch.models import EngineKind, EnrichedResult, RequestContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncMigrationAdapter:
    """
    Blocking wrapper around a MigrationAdapter.

    Thread Safety:
        Safe to call from many threads; every call is submitted to the same
        private loop.

    Example:
        >>> with SyncMigrationAdapter(adapter, timeout=60.0) as sync_adapter:
        ...     result = sync_adapter.execute({"table": "users"})
        ...     print(result.success)
    """

    def __init__(self, adapter: MigrationAdapter, timeout: float | None = None) -> None:
        """
        Initialize the sync adapter.

        Args:
            adapter: The async MigrationAdapter to wrap.
            timeout: Default timeout in seconds for each call (None waits forever).

        Raises:
            TypeError: If adapter is not a MigrationAdapter.
        """
        if not isinstance(adapter, MigrationAdapter):
            raise TypeError(
                f"adapter must be a MigrationAdapter instance, got {type(adapter).__name__}"
            )
        self._adapter = adapter
        self._timeout = timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._closed = False

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._closed:
                raise RuntimeError("SyncMigrationAdapter is closed")
            if self._loop is None:
                loop = asyncio.new_event_loop()
                thread = threading.Thread(
                    target=loop.run_forever,
                    name="engineswitch-sync-adapter",
                    daemon=True,
                )
                thread.start()
                self._loop = loop
                self._thread = thread
            return self._loop

    def _run_sync(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """
        Run ``coro`` on the private loop and block for its result.

        Raises:
            TimeoutError: If the call exceeds the timeout.
        """
        effective_timeout = timeout if timeout is not None else self._timeout
        try:
            asyncio.get_running_loop()
            logger.warning(
                "SyncMigrationAdapter called from a running event loop. "
                "Use MigrationAdapter directly in async code."
            )
        except RuntimeError:
            pass

        try:
            loop = self._ensure_loop()
        except RuntimeError:
            coro.close()
            raise
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout=effective_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise TimeoutError(f"Sync operation timed out after {effective_timeout}s") from None

    def execute(
        self,
        context: RequestContext | Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> EnrichedResult:
        """Blocking version of ``MigrationAdapter.execute``."""
        return self._run_sync(self._adapter.execute(context), timeout=timeout)

    def force_execute_system(
        self,
        which: EngineKind | str,
        context: RequestContext | Mapping[str, Any] | None = None,
        *,
        bypass_circuit_breaker: bool = False,
        timeout: float | None = None,
    ) -> EnrichedResult:
        """Blocking version of ``MigrationAdapter.force_execute_system``."""
        return self._run_sync(
            self._adapter.force_execute_system(
                which, context, bypass_circuit_breaker=bypass_circuit_breaker
            ),
            timeout=timeout,
        )

    def drain(self, timeout: float | None = None) -> None:
        """Block until detached canary runs finish (or ``timeout`` passes)."""
        self._run_sync(self._adapter.drain(timeout), timeout=None)

    def statistics(self) -> dict[str, int]:
        return self._adapter.statistics()

    def collect_service_statistics(self) -> dict[str, Any]:
        return self._adapter.collect_service_statistics()

    def close(self) -> None:
        """Cancel detached canary runs and stop the private loop."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None:
            return
        try:
            asyncio.run_coroutine_threadsafe(self._adapter.aclose(), loop).result(timeout=5.0)
        except FutureTimeoutError:
            logger.warning("Timed out cancelling detached canary runs")
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5.0)
            if thread.is_alive():
                logger.warning("Event loop thread did not stop within 5s; leaving its loop open")
                return
        loop.close()
        logger.debug("SyncMigrationAdapter closed")

    @property
    def wrapped_adapter(self) -> MigrationAdapter:
        """Get the underlying async MigrationAdapter."""
        return self._adapter

    @property
    def timeout(self) -> float | None:
        return self._timeout

    def __enter__(self) -> SyncMigrationAdapter:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SyncMigrationAdapter(timeout={self._timeout})"


__all__ = ["SyncMigrationAdapter"]
