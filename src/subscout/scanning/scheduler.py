"""Run connection scans in parallel, one job per connection."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from ..core.config import ScanSettings
from ..core.interfaces import ScanRepository
from ..core.models import ScanReport
from ..storage.connection_pool import ConnectionPool
from .orchestrator import ScanOrchestrator

LOGGER = logging.getLogger(__name__)

OrchestratorFactory = Callable[[ScanRepository], ScanOrchestrator]


class ScanScheduler:
    """Submit scans to a thread pool with local duplicate protection.

    Every job borrows its own repository from the connection pool. The
    database claim still guards against scans started by other processes.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        orchestrator_factory: OrchestratorFactory,
        settings: ScanSettings,
    ) -> None:
        self._pool = pool
        self._orchestrator_factory = orchestrator_factory
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="subscout-scan"
        )
        self._jobs: dict[int, Future[ScanReport]] = {}
        self._cancel_events: dict[int, threading.Event] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, connection_id: int) -> Future[ScanReport]:
        """Queue a scan; a connection with a job in flight is rejected."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Scan scheduler has been shut down")
            running = self._jobs.get(connection_id)
            if running is not None and not running.done():
                LOGGER.info("Scan for connection %s already queued", connection_id)
                rejected: Future[ScanReport] = Future()
                rejected.set_result(
                    ScanReport(connection_id, "rejected", reason="scan_in_progress")
                )
                return rejected
            cancel = threading.Event()
            future = self._executor.submit(self._run, connection_id, cancel)
            self._jobs[connection_id] = future
            self._cancel_events[connection_id] = cancel
        future.add_done_callback(lambda _: self._forget(connection_id, future))
        return future

    def scan_all(self, user_id: str | None = None) -> dict[int, Future[ScanReport]]:
        """Queue scans for every active connection, optionally for one user."""
        with self._pool.acquire() as repository:
            connections = repository.list_connections(user_id)
        futures: dict[int, Future[ScanReport]] = {}
        for connection in connections:
            if connection.id is None or connection.status != "active":
                continue
            futures[connection.id] = self.submit(connection.id)
        LOGGER.info("Queued %d scan(s)", len(futures))
        return futures

    def cancel(self, connection_id: int) -> bool:
        """Signal a running scan to stop at its next page boundary."""
        with self._lock:
            event = self._cancel_events.get(connection_id)
        if event is None:
            return False
        event.set()
        LOGGER.info("Cancellation requested for connection %s", connection_id)
        return True

    def is_running(self, connection_id: int) -> bool:
        with self._lock:
            future = self._jobs.get(connection_id)
        return future is not None and not future.done()

    def wait(
        self,
        connection_ids: Iterable[int] | None = None,
        timeout: float | None = None,
    ) -> None:
        """Block until the selected (default: all) in-flight jobs finish."""
        with self._lock:
            if connection_ids is None:
                futures = list(self._jobs.values())
            else:
                futures = [
                    self._jobs[connection_id]
                    for connection_id in connection_ids
                    if connection_id in self._jobs
                ]
        if futures:
            wait(futures, timeout=timeout)

    def shutdown(self, *, cancel_running: bool = False) -> None:
        """Stop accepting jobs and wait for the queued ones."""
        with self._lock:
            self._closed = True
            events = list(self._cancel_events.values())
        if cancel_running:
            for event in events:
                event.set()
        self._executor.shutdown(wait=True)

    def close(self) -> None:
        self.shutdown(cancel_running=True)

    # Internal helpers ---------------------------------------------------------
    def _run(self, connection_id: int, cancel: threading.Event) -> ScanReport:
        with self._pool.acquire() as repository:
            orchestrator = self._orchestrator_factory(repository)
            try:
                return orchestrator.run(connection_id, cancel)
            except Exception:
                LOGGER.exception("Scan job for connection %s crashed", connection_id)
                raise

    def _forget(self, connection_id: int, future: Future[ScanReport]) -> None:
        with self._lock:
            if self._jobs.get(connection_id) is future:
                del self._jobs[connection_id]
                self._cancel_events.pop(connection_id, None)


__all__ = ["OrchestratorFactory", "ScanScheduler"]
