"""Protocol interfaces and error types shared between components."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from .models import (
    Connection,
    DetectionCandidate,
    MessagePage,
    ParsedReceipt,
    RawMessage,
    Receipt,
    ReceiptStats,
    ScanStatus,
    Subscription,
)


class FetchError(RuntimeError):
    """Base class for failures raised while talking to a mail provider."""

    transient = False


class TransientFetchError(FetchError):
    """Temporary provider failure that is worth retrying."""

    transient = True

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RetriesExhaustedError(TransientFetchError):
    """Raised once the retry budget for a transient failure is spent."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuthFetchError(FetchError):
    """Credentials were rejected or could not be refreshed."""


class ProviderFetchError(FetchError):
    """Provider refuses the request permanently (account gone, API retired)."""


class MessageUnavailableError(FetchError):
    """A single message disappeared between listing and retrieval."""


class CredentialError(RuntimeError):
    """Raised when an access token cannot be obtained for a connection."""


class ConnectionNotFoundError(LookupError):
    """Raised when a connection id does not exist."""

    def __init__(self, connection_id: int) -> None:
        super().__init__(f"Connection {connection_id} does not exist")
        self.connection_id = connection_id


class CandidateStateError(RuntimeError):
    """Raised for candidate review transitions that are not allowed."""


class ScanConflictError(RuntimeError):
    """Raised when an operation needs a connection that is being scanned."""


class MailProvider(Protocol):
    """Abstraction over a remote mailbox API."""

    def list_messages(self, cursor: str | None, page_size: int) -> MessagePage:
        """Return the next page of message ids after ``cursor``."""
        raise NotImplementedError

    def get_message(self, message_id: str) -> RawMessage:
        """Return one message reduced to the parser's view."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class CredentialProvider(Protocol):
    """Supplies access tokens for a connection."""

    def get_access_token(
        self, connection: Connection, *, force_refresh: bool = False
    ) -> str:
        """Return a valid access token, refreshing it when required."""
        raise NotImplementedError


class QuotaService(Protocol):
    """Entitlement checks owned by the billing subsystem."""

    def has_email_automation(self, user_id: str) -> bool:
        """Return ``True`` if the user's tier permits inbox scanning."""
        raise NotImplementedError

    def remaining_email_connections(self, user_id: str) -> int | None:
        """Return remaining connection quota, ``None`` meaning unlimited."""
        raise NotImplementedError

    def consume_email_connection(self, user_id: str) -> None:
        """Charge one unit of the connection quota."""
        raise NotImplementedError


class ReceiptParserService(Protocol):
    """Turns a decoded message into parsed receipt fields."""

    def parse(self, message: RawMessage) -> ParsedReceipt:
        """Return the heuristic extraction result for ``message``."""
        raise NotImplementedError


class ScanRepository(Protocol):
    """Persistence required by the scan pipeline."""

    def fetch_connection(self, connection_id: int) -> Connection | None:
        """Return a stored connection by id."""
        raise NotImplementedError

    def list_connections(self, user_id: str | None = None) -> list[Connection]:
        """Return connections, optionally for one user."""
        raise NotImplementedError

    def upsert_connection(
        self, user_id: str, provider: str, external_account: str, auth_handle: str
    ) -> Connection:
        """Create or reactivate a connection for an external account."""
        raise NotImplementedError

    def patch_connection(self, connection_id: int, **fields: Any) -> Connection:
        """Apply a partial update to a connection."""
        raise NotImplementedError

    def claim_scan(self, connection_id: int, stale_after_seconds: int) -> bool:
        """Atomically move a connection into ``in_progress``."""
        raise NotImplementedError

    def release_scan(
        self, connection_id: int, scan_status: ScanStatus, **fields: Any
    ) -> Connection:
        """End a claim by setting ``scan_status`` plus any extra ``fields``."""
        raise NotImplementedError

    def delete_connection(self, connection_id: int) -> bool:
        """Remove a connection together with its receipts."""
        raise NotImplementedError

    def insert_receipt(self, receipt: Receipt) -> Receipt | None:
        """Insert a receipt, returning ``None`` if the message id exists."""
        raise NotImplementedError

    def fetch_receipt(self, connection_id: int, message_id: str) -> Receipt | None:
        """Return the stored receipt for a provider message."""
        raise NotImplementedError

    def list_receipts(
        self,
        connection_id: int,
        *,
        parsed: bool | None = None,
        limit: int | None = None,
    ) -> list[Receipt]:
        """Return receipts for a connection, newest first."""
        raise NotImplementedError

    def update_receipt_parse(self, receipt_id: int, parsed: ParsedReceipt) -> Receipt:
        """Replace the parsed fields of a stored receipt."""
        raise NotImplementedError

    def mark_receipt_reconciled(
        self, receipt_id: int, reconciliation: str, candidate_id: int | None
    ) -> None:
        """Record the reconcile outcome on a receipt."""
        raise NotImplementedError

    def receipt_stats(self, connection_id: int) -> ReceiptStats:
        """Return parsed and unparsed counters for a connection."""
        raise NotImplementedError

    def delete_all_receipts(self) -> int:
        """Delete every stored receipt, returning the number removed."""
        raise NotImplementedError

    def list_candidates(
        self, user_id: str, *, status: str | None = None
    ) -> list[DetectionCandidate]:
        """Return candidates for a user, optionally filtered by status."""
        raise NotImplementedError

    def fetch_candidate(self, candidate_id: int) -> DetectionCandidate | None:
        """Return one candidate by id."""
        raise NotImplementedError

    def insert_candidate(self, candidate: DetectionCandidate) -> DetectionCandidate:
        """Persist a new candidate and return it with its id."""
        raise NotImplementedError

    def update_candidate(self, candidate: DetectionCandidate) -> DetectionCandidate:
        """Persist all mutable fields of an existing candidate."""
        raise NotImplementedError

    def list_subscriptions(
        self, user_id: str, *, active_only: bool = True
    ) -> list[Subscription]:
        """Return tracked subscriptions for a user."""
        raise NotImplementedError

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Persist a subscription and return it with its id."""
        raise NotImplementedError

    def quota_usage(self, user_id: str) -> int:
        """Return consumed connection quota units for a user."""
        raise NotImplementedError

    def increment_quota_usage(self, user_id: str, at: datetime) -> int:
        """Add one consumed unit and return the new total."""
        raise NotImplementedError

    def close(self) -> None:
        """Close database connections if necessary."""
        raise NotImplementedError


__all__ = [
    "AuthFetchError",
    "CandidateStateError",
    "ConnectionNotFoundError",
    "CredentialError",
    "CredentialProvider",
    "FetchError",
    "MailProvider",
    "MessageUnavailableError",
    "ProviderFetchError",
    "QuotaService",
    "ReceiptParserService",
    "RetriesExhaustedError",
    "ScanConflictError",
    "ScanRepository",
    "TransientFetchError",
]
