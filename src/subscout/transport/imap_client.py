"""IMAP transport adapter authenticating with XOAUTH2."""

from __future__ import annotations

import imaplib
import logging
from collections.abc import Callable
from datetime import timedelta
from types import TracebackType

from ..core.config import ImapSettings
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

ImapConnection = imaplib.IMAP4 | imaplib.IMAP4_SSL
ImapFactory = Callable[[ImapSettings], ImapConnection]


def _default_factory(settings: ImapSettings) -> ImapConnection:
    if settings.use_ssl:
        LOGGER.debug(
            "Connecting to IMAP host %s:%s via SSL", settings.host, settings.port
        )
        return imaplib.IMAP4_SSL(settings.host, settings.port)
    LOGGER.debug(
        "Connecting to IMAP host %s:%s without SSL", settings.host, settings.port
    )
    return imaplib.IMAP4(settings.host, settings.port)


class ImapClient(MailProvider):
    """Page through a mailbox by UID; the cursor is the last UID seen."""

    def __init__(
        self,
        settings: ImapSettings,
        connection: Connection,
        credentials: CredentialProvider,
        *,
        imap_factory: ImapFactory = _default_factory,
        decoder: MessageDecoder | None = None,
        lookback_days: int | None = None,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._settings = settings
        self._account = connection
        self._credentials = credentials
        self._imap_factory = imap_factory
        self._decoder = decoder or MessageDecoder()
        self._lookback_days = lookback_days
        self._connection: ImapConnection | None = None
        self.mailbox = settings.mailbox

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Public API ---------------------------------------------------------------
    def connect(self) -> None:
        """Open the session, authenticate and select the mailbox read-only."""
        if self._connection is not None:
            return

        try:
            connection = self._imap_factory(self._settings)
        except (OSError, imaplib.IMAP4.abort) as exc:
            raise TransientFetchError(f"Failed to reach IMAP server: {exc}") from exc

        try:
            self._authenticate(connection)
            status, _ = connection.select(self.mailbox, readonly=True)
        except imaplib.IMAP4.abort as exc:
            raise TransientFetchError(f"IMAP session dropped: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ProviderFetchError(
                f"Unable to select mailbox '{self.mailbox}'"
            ) from exc
        if status != "OK":
            raise ProviderFetchError(f"Unable to select mailbox '{self.mailbox}'")
        self._connection = connection

    def list_messages(self, cursor: str | None, page_size: int) -> MessagePage:
        """Return UIDs greater than ``cursor`` in ascending order."""
        connection = self._require_connection()
        last_uid = int(cursor) if cursor else 0
        criteria = f"UID {last_uid + 1}:*"
        if cursor is None and self._lookback_days:
            since = utcnow() - timedelta(days=self._lookback_days)
            criteria += f" SINCE {since.strftime('%d-%b-%Y')}"
        LOGGER.debug("Searching %s with %s", self.mailbox, criteria)

        status, data = self._call(connection.uid, "SEARCH", None, criteria)
        if status != "OK":
            raise TransientFetchError("Failed to search for message UIDs")
        raw_ids = data[0].split() if data and data[0] else []
        # "n:*" always matches the highest UID, even when it is below n.
        uids = sorted(uid for uid in (int(raw) for raw in raw_ids) if uid > last_uid)
        if not uids:
            return MessagePage((), cursor, False)

        page = uids[:page_size]
        return MessagePage(
            tuple(str(uid) for uid in page),
            str(page[-1]),
            len(uids) > page_size,
        )

    def get_message(self, message_id: str) -> RawMessage:
        """Fetch one message by UID and decode its RFC822 payload."""
        connection = self._require_connection()
        LOGGER.debug("Fetching RFC822 payload for UID %s", message_id)
        status, fetch_data = self._call(
            connection.uid, "FETCH", message_id, "(RFC822)"
        )
        if status != "OK":
            raise MessageUnavailableError(f"Failed to fetch message UID {message_id}")
        payload = _extract_rfc822(fetch_data or [])
        if payload is None:
            raise MessageUnavailableError(
                f"No RFC822 payload returned for UID {message_id}"
            )
        return self._decoder.from_rfc822(message_id, payload)

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            LOGGER.debug("Closing IMAP connection")
            self._connection.close()
        except imaplib.IMAP4.error:  # pragma: no cover - depends on server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                self._connection.logout()
            except imaplib.IMAP4.error:  # pragma: no cover
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")
            self._connection = None

    # Internal helpers ---------------------------------------------------------
    def _authenticate(self, connection: ImapConnection) -> None:
        for force_refresh in (False, True):
            try:
                token = self._credentials.get_access_token(
                    self._account, force_refresh=force_refresh
                )
            except CredentialError as exc:
                raise AuthFetchError(f"Credential refresh failed: {exc}") from exc
            auth_string = (
                f"user={self._account.external_account}\x01auth=Bearer {token}\x01\x01"
            )
            try:
                LOGGER.debug("Authenticating as %s", self._account.external_account)
                connection.authenticate("XOAUTH2", lambda _: auth_string.encode())
                return
            except imaplib.IMAP4.abort:
                raise
            except imaplib.IMAP4.error as exc:
                if force_refresh:
                    raise AuthFetchError("IMAP server rejected credentials") from exc
                LOGGER.info("IMAP authentication failed, forcing token refresh")

    def _call(
        self, method: Callable[..., tuple[str, list]], *args: object
    ) -> tuple[str, list]:
        try:
            return method(*args)
        except imaplib.IMAP4.abort as exc:
            self._connection = None
            raise TransientFetchError(f"IMAP session dropped: {exc}") from exc
        except OSError as exc:
            self._connection = None
            raise TransientFetchError(f"IMAP socket error: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ProviderFetchError(f"IMAP command failed: {exc}") from exc

    def _require_connection(self) -> ImapConnection:
        if self._connection is None:
            self.connect()
        if self._connection is None:
            raise TransientFetchError("IMAP connection has not been established")
        return self._connection


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract RFC822 payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = ["ImapClient", "ImapFactory"]
