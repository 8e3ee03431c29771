"""
Repository Pool

Hands out SqliteScanRepository instances to scan workers and API requests.
Each repository owns one SQLite connection, so a worker that holds a
repository for a whole scan never shares a cursor with another worker.

Features:
- Connection reuse (reduces connection overhead)
- Configurable pool size (``storage.pool_size``)
- Health check on acquire, replacing broken handles
- Graceful shutdown with connection cleanup
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from queue import Empty, Queue
from threading import Lock
from types import TracebackType

from ..core.config import StorageSettings
from .sqlite import SqliteScanRepository

LOGGER = logging.getLogger(__name__)


class ConnectionPool:
    """Thread-safe pool of SqliteScanRepository handles."""

    def __init__(self, settings: StorageSettings, pool_size: int | None = None):
        """
        Initialize the pool.

        Args:
            settings: Storage settings containing database path
            pool_size: Number of repositories to keep (default: settings.pool_size)
        """
        self.settings = settings
        self.pool_size = pool_size or settings.pool_size
        self._pool: Queue[SqliteScanRepository] = Queue(maxsize=self.pool_size)
        self._lock = Lock()
        self._created_count = 0
        self._closed = False

        for _ in range(self.pool_size):
            self._pool.put(self._create_repository())

        LOGGER.info("Initialized repository pool with %d handles", self.pool_size)

    def _create_repository(self) -> SqliteScanRepository:
        with self._lock:
            if self._closed:
                raise RuntimeError("Connection pool is closed")
            repository = SqliteScanRepository(self.settings)
            self._created_count += 1
            LOGGER.debug("Created repository #%d", self._created_count)
            return repository

    @contextmanager
    def acquire(self, timeout: float = 10.0) -> Iterator[SqliteScanRepository]:
        """
        Borrow a repository for the duration of the ``with`` block.

        Raises:
            RuntimeError: If pool is closed
            TimeoutError: If no repository is available within timeout
        """
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        try:
            repository = self._pool.get(timeout=timeout)
        except Empty as exc:
            raise TimeoutError(
                f"Could not acquire connection within {timeout} seconds"
            ) from exc

        if not repository.ping():
            LOGGER.warning("Repository health check failed, replacing handle")
            repository.close()
            repository = self._create_repository()

        try:
            yield repository
        finally:
            if self._closed:
                repository.close()
            else:
                self._pool.put(repository)

    def close(self) -> None:
        """Close all pooled repositories."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

            closed_count = 0
            while True:
                try:
                    repository = self._pool.get_nowait()
                except Empty:
                    break
                repository.close()
                closed_count += 1

            LOGGER.info("Closed repository pool (%d handles closed)", closed_count)

    def __enter__(self) -> ConnectionPool:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager scope and close pool."""
        self.close()

    @property
    def size(self) -> int:
        """Number of idle repositories."""
        return self._pool.qsize()

    @property
    def is_closed(self) -> bool:
        """Check if pool is closed."""
        return self._closed


__all__ = ["ConnectionPool"]
