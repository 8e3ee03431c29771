"""Mail fetching with retry, backoff and per-connection provider handles."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from typing import TypeVar

from ..core.config import FetchSettings
from ..core.interfaces import (
    MailProvider,
    RetriesExhaustedError,
    TransientFetchError,
)
from ..core.models import Connection, MessagePage, RawMessage

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ProviderFactory = Callable[[Connection], MailProvider]


class MailFetcher:
    """List new message ids and fetch bodies for connections.

    Transient provider failures are retried with capped exponential backoff
    and full jitter; every other ``FetchError`` propagates unchanged.
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        settings: FetchSettings,
        *,
        page_sizes: Mapping[str, int] | None = None,
        default_page_size: int = 50,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        # pylint: disable=too-many-arguments
        if default_page_size <= 0:
            raise ValueError("default_page_size must be positive")
        self._provider_factory = provider_factory
        self._settings = settings
        self._page_sizes = dict(page_sizes or {})
        self._default_page_size = default_page_size
        self._sleep = sleep
        self._rand = rand
        self._providers: dict[int, MailProvider] = {}
        self._lock = threading.Lock()

    def list_new_message_ids(self, connection: Connection) -> MessagePage:
        """Return the next page of message ids after the connection cursor."""
        provider = self._provider_for(connection)
        page_size = self._page_sizes.get(connection.provider, self._default_page_size)
        page = self._with_retries(
            lambda: provider.list_messages(connection.cursor, page_size),
            f"list messages for connection {connection.id}",
        )
        LOGGER.debug(
            "Connection %s listed %d ids (has_more=%s)",
            connection.id,
            len(page.message_ids),
            page.has_more,
        )
        return page

    def fetch_body(self, connection: Connection, message_id: str) -> RawMessage:
        """Return one decoded message for the connection."""
        provider = self._provider_for(connection)
        return self._with_retries(
            lambda: provider.get_message(message_id),
            f"fetch message {message_id}",
        )

    def release(self, connection: Connection) -> None:
        """Close and forget the provider handle for ``connection``."""
        if connection.id is None:
            return
        with self._lock:
            provider = self._providers.pop(connection.id, None)
        if provider is not None:
            provider.close()

    def close(self) -> None:
        """Close every open provider handle."""
        with self._lock:
            providers = list(self._providers.values())
            self._providers.clear()
        for provider in providers:
            provider.close()

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        ceiling = min(
            self._settings.base_delay_seconds * 2 ** (attempt - 1),
            self._settings.max_delay_seconds,
        )
        delay = self._rand() * ceiling
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    # Internal helpers ---------------------------------------------------------
    def _provider_for(self, connection: Connection) -> MailProvider:
        if connection.id is None:
            raise ValueError("Connection must be persisted before fetching")
        with self._lock:
            provider = self._providers.get(connection.id)
            if provider is None:
                provider = self._provider_factory(connection)
                self._providers[connection.id] = provider
            return provider

    def _with_retries(self, operation: Callable[[], T], description: str) -> T:
        max_attempts = self._settings.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return operation()
            except TransientFetchError as exc:
                if attempt >= max_attempts:
                    raise RetriesExhaustedError(
                        f"Gave up trying to {description} after {attempt} attempts: {exc}",
                        attempts=attempt,
                    ) from exc
                delay = self.backoff_delay(attempt, exc.retry_after)
                LOGGER.warning(
                    "Transient failure trying to %s (attempt %d/%d): %s; retrying in %.2fs",
                    description,
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")


__all__ = ["MailFetcher", "ProviderFactory"]
