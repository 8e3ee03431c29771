"""Gmail REST adapter implementing the mail provider interface."""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx

from ..core.config import GmailSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import (
    AuthFetchError,
    CredentialError,
    CredentialProvider,
    MailProvider,
    MessageUnavailableError,
    ProviderFetchError,
    TransientFetchError,
)
from ..core.models import Connection, MessagePage, RawMessage
from ..ingestion.parser import MessageDecoder

LOGGER = logging.getLogger(__name__)

# Gmail reports quota exhaustion as 403 with one of these reasons.
_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
)


@dataclass(slots=True)
class GmailCursor:
    """Position inside an incremental Gmail sweep.

    ``after_epoch`` bounds the search window, ``page_token`` points inside the
    current sweep and ``scan_started`` becomes the next ``after_epoch`` once the
    sweep reaches its last page.
    """

    after_epoch: int
    page_token: str | None = None
    scan_started: int | None = None

    def encode(self) -> str:
        raw = json.dumps(
            {"a": self.after_epoch, "p": self.page_token, "s": self.scan_started},
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, value: str) -> GmailCursor:
        try:
            padded = value + "=" * (-len(value) % 4)
            payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            return cls(
                after_epoch=int(payload["a"]),
                page_token=payload.get("p"),
                scan_started=payload.get("s"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError(f"Malformed Gmail cursor: {value!r}") from exc


class GmailClient(MailProvider):
    """List and fetch messages through the Gmail v1 REST API."""

    def __init__(
        self,
        settings: GmailSettings,
        connection: Connection,
        credentials: CredentialProvider,
        *,
        http_client: httpx.Client | None = None,
        decoder: MessageDecoder | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._settings = settings
        self._connection = connection
        self._credentials = credentials
        self._client = http_client or httpx.Client(timeout=settings.timeout_seconds)
        self._owns_client = http_client is None
        self._decoder = decoder or MessageDecoder()
        self._clock = clock

    # Public API ---------------------------------------------------------------
    def list_messages(self, cursor: str | None, page_size: int) -> MessagePage:
        """Return one page of ids matching the billing search window."""
        now = self._clock()
        if cursor is None:
            start = now - timedelta(days=self._settings.initial_lookback_days)
            position = GmailCursor(after_epoch=int(start.timestamp()))
        else:
            try:
                position = GmailCursor.decode(cursor)
            except ValueError as exc:
                raise ProviderFetchError(str(exc)) from exc
        scan_started = position.scan_started
        if position.page_token is None or scan_started is None:
            scan_started = int(now.timestamp())

        params: dict[str, Any] = {
            "q": f"{self._settings.search_query} after:{position.after_epoch}",
            "maxResults": page_size,
        }
        if position.page_token:
            params["pageToken"] = position.page_token

        payload = self._get("messages", params=params, missing=ProviderFetchError)
        message_ids = tuple(
            str(item["id"]) for item in payload.get("messages", ()) if item.get("id")
        )
        next_token = payload.get("nextPageToken")
        if next_token:
            next_cursor = GmailCursor(
                after_epoch=position.after_epoch,
                page_token=next_token,
                scan_started=scan_started,
            )
            return MessagePage(message_ids, next_cursor.encode(), True)
        # Last page of the sweep: the next sweep starts where this one began.
        final_cursor = GmailCursor(after_epoch=scan_started)
        return MessagePage(message_ids, final_cursor.encode(), False)

    def get_message(self, message_id: str) -> RawMessage:
        """Fetch a message in ``full`` format and decode it."""
        payload = self._get(
            f"messages/{message_id}",
            params={"format": "full"},
            missing=MessageUnavailableError,
        )
        return self._decoder.from_gmail(payload)

    def close(self) -> None:
        """Close the owned HTTP client."""
        if self._owns_client:
            self._client.close()

    # Internal helpers ---------------------------------------------------------
    def _get(
        self,
        path: str,
        *,
        params: dict[str, Any],
        missing: type[ProviderFetchError] | type[MessageUnavailableError],
    ) -> dict[str, Any]:
        url = self._settings.api_base_url.rstrip("/") + "/" + path
        force_refresh = False
        for attempt in (1, 2):
            token = self._access_token(force_refresh=force_refresh)
            try:
                response = self._client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TimeoutException as exc:
                raise TransientFetchError(f"Gmail request timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise TransientFetchError(f"Gmail request failed: {exc}") from exc

            if response.status_code == 401 and attempt == 1:
                LOGGER.info(
                    "Gmail rejected token for connection %s, forcing refresh",
                    self._connection.id,
                )
                force_refresh = True
                continue
            return self._interpret(response, missing)
        raise AuthFetchError("Gmail rejected refreshed credentials")

    def _interpret(
        self,
        response: httpx.Response,
        missing: type[ProviderFetchError] | type[MessageUnavailableError],
    ) -> dict[str, Any]:
        status = response.status_code
        if status == 200:
            try:
                return response.json()
            except ValueError as exc:
                raise TransientFetchError("Gmail returned invalid JSON") from exc

        reason = _error_reason(response)
        detail = f"Gmail returned HTTP {status}" + (f" ({reason})" if reason else "")
        if status == 429 or status >= 500:
            raise TransientFetchError(detail, retry_after=_retry_after(response))
        if status == 403 and reason in _RATE_LIMIT_REASONS:
            raise TransientFetchError(detail, retry_after=_retry_after(response))
        if status in (401, 403):
            raise AuthFetchError(detail)
        if status == 404:
            raise missing(detail)
        raise ProviderFetchError(detail)

    def _access_token(self, *, force_refresh: bool) -> str:
        try:
            return self._credentials.get_access_token(
                self._connection, force_refresh=force_refresh
            )
        except CredentialError as exc:
            raise AuthFetchError(f"Credential refresh failed: {exc}") from exc


def _error_reason(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None
    for item in error.get("errors") or ():
        if isinstance(item, dict) and item.get("reason"):
            return str(item["reason"])
    status = error.get("status")
    return str(status) if status else None


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        return None


__all__ = ["GmailClient", "GmailCursor"]
