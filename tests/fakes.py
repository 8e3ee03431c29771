"""In-memory stand-ins for providers, credentials and quota used by tests."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from subscout.core.config import AppSettings, QuotaSettings, StorageSettings
from subscout.core.interfaces import FetchError
from subscout.core.models import Connection, MessagePage, RawMessage

RECEIVED_AT = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)


def make_message(
    message_id: str,
    subject: str,
    body: str = "",
    *,
    sender: str = "billing@netflix.com",
    sender_name: str | None = None,
    received_at: datetime = RECEIVED_AT,
) -> RawMessage:
    return RawMessage(
        message_id=message_id,
        sender=sender,
        sender_name=sender_name,
        subject=subject,
        received_at=received_at,
        body=body,
    )


NETFLIX_RECEIPT = make_message(
    "m-netflix",
    "Your Netflix payment confirmation — $15.49/mo",
    "Thanks for being a member. Amount charged: $15.49",
)
NEWSLETTER = make_message(
    "m-news",
    "Our spring newsletter is here",
    "Read about new releases. Plans from $9.99/month.",
    sender="news@example.org",
)


class FakeProvider:
    """Mail provider serving a fixed message list in cursor-addressed pages.

    The cursor is the index of the next message to return. ``failures`` maps a
    call key (``"list"`` or a message id) to errors raised before success.
    """

    def __init__(
        self,
        messages: Iterable[RawMessage],
        *,
        failures: Mapping[str, list[FetchError]] | None = None,
    ) -> None:
        self.messages = {message.message_id: message for message in messages}
        self.order = list(self.messages)
        self.failures = {key: list(errors) for key, errors in (failures or {}).items()}
        self.list_calls: list[tuple[str | None, int]] = []
        self.fetched: list[str] = []
        self.closed = False

    def add(self, message: RawMessage) -> None:
        self.messages[message.message_id] = message
        self.order.append(message.message_id)

    def list_messages(self, cursor: str | None, page_size: int) -> MessagePage:
        self.list_calls.append((cursor, page_size))
        self._maybe_fail("list")
        start = int(cursor) if cursor else 0
        ids = tuple(self.order[start : start + page_size])
        end = start + len(ids)
        return MessagePage(ids, str(end), end < len(self.order))

    def get_message(self, message_id: str) -> RawMessage:
        self._maybe_fail(message_id)
        self.fetched.append(message_id)
        return self.messages[message_id]

    def close(self) -> None:
        self.closed = True

    def _maybe_fail(self, key: str) -> None:
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)


class FakeCredentials:
    """Credential provider handing out predictable tokens."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, bool]] = []

    def get_access_token(
        self, connection: Connection, *, force_refresh: bool = False
    ) -> str:
        self.calls.append((connection.auth_handle, force_refresh))
        suffix = "fresh" if force_refresh else "cached"
        return f"token-{connection.auth_handle}-{suffix}"


class FakeQuota:
    """Quota service with fixed answers that records consumption."""

    def __init__(self, *, automation: bool = True, remaining: int | None = None):
        self.automation = automation
        self.remaining = remaining
        self.consumed: list[str] = []

    def has_email_automation(self, user_id: str) -> bool:
        return self.automation

    def remaining_email_connections(self, user_id: str) -> int | None:
        return self.remaining

    def consume_email_connection(self, user_id: str) -> None:
        self.consumed.append(user_id)


def build_settings(tmp_path: Path, **overrides: object) -> AppSettings:
    """Return settings pointing at a temporary database, automate tier for u1."""
    values: dict[str, object] = {
        "storage": StorageSettings(db_path=tmp_path / "subscout.db", pool_size=2),
        "quota": QuotaSettings(user_tiers={"u1": "automate"}),
    }
    values.update(overrides)
    return AppSettings(**values)  # type: ignore[arg-type]


__all__ = [
    "FakeCredentials",
    "FakeProvider",
    "FakeQuota",
    "NETFLIX_RECEIPT",
    "NEWSLETTER",
    "RECEIVED_AT",
    "build_settings",
    "make_message",
]
