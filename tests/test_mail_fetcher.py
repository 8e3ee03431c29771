"""Tests for the mail fetcher retry and backoff logic."""

from __future__ import annotations

import pytest

from fakes import NETFLIX_RECEIPT, FakeProvider, make_message
from subscout.core.config import FetchSettings
from subscout.core.interfaces import (
    AuthFetchError,
    RetriesExhaustedError,
    TransientFetchError,
)
from subscout.core.models import Connection
from subscout.ingestion import MailFetcher


def _connection(cursor: str | None = None, provider: str = "gmail") -> Connection:
    return Connection(
        id=1,
        user_id="u1",
        provider=provider,
        external_account="me@example.com",
        auth_handle="h1",
        cursor=cursor,
    )


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _fetcher(
    provider: FakeProvider,
    sleep: SleepRecorder,
    *,
    max_attempts: int = 3,
    rand: float = 1.0,
) -> MailFetcher:
    return MailFetcher(
        lambda _connection: provider,
        FetchSettings(
            max_attempts=max_attempts, base_delay_seconds=1.0, max_delay_seconds=5.0
        ),
        page_sizes={"gmail": 2},
        sleep=sleep,
        rand=lambda: rand,
    )


def test_lists_pages_with_provider_page_size() -> None:
    provider = FakeProvider(
        [make_message(f"m{index}", "Receipt") for index in range(3)]
    )
    fetcher = _fetcher(provider, SleepRecorder())

    first = fetcher.list_new_message_ids(_connection())
    second = fetcher.list_new_message_ids(_connection(first.next_cursor))

    assert first.message_ids == ("m0", "m1")
    assert first.has_more is True
    assert second.message_ids == ("m2",)
    assert second.has_more is False
    assert provider.list_calls == [(None, 2), ("2", 2)]


def test_unknown_provider_uses_default_page_size() -> None:
    provider = FakeProvider([])
    fetcher = _fetcher(provider, SleepRecorder())

    fetcher.list_new_message_ids(_connection(provider="imap"))

    assert provider.list_calls == [(None, 50)]


def test_transient_errors_are_retried_with_backoff() -> None:
    provider = FakeProvider(
        [NETFLIX_RECEIPT],
        failures={
            "m-netflix": [
                TransientFetchError("busy"),
                TransientFetchError("busy", retry_after=4.0),
            ]
        },
    )
    sleep = SleepRecorder()
    fetcher = _fetcher(provider, sleep, rand=0.5)

    message = fetcher.fetch_body(_connection(), "m-netflix")

    assert message is NETFLIX_RECEIPT
    # attempt 1: 0.5 * 1s; attempt 2: max(0.5 * 2s, retry-after 4s)
    assert sleep.delays == [0.5, 4.0]


def test_retries_exhausted_after_max_attempts() -> None:
    provider = FakeProvider(
        [], failures={"list": [TransientFetchError("down") for _ in range(3)]}
    )
    sleep = SleepRecorder()
    fetcher = _fetcher(provider, sleep)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        fetcher.list_new_message_ids(_connection())

    assert excinfo.value.attempts == 3
    assert len(sleep.delays) == 2


def test_permanent_errors_are_not_retried() -> None:
    provider = FakeProvider([], failures={"list": [AuthFetchError("revoked")]})
    sleep = SleepRecorder()
    fetcher = _fetcher(provider, sleep)

    with pytest.raises(AuthFetchError):
        fetcher.list_new_message_ids(_connection())

    assert sleep.delays == []


def test_backoff_delay_is_capped() -> None:
    fetcher = _fetcher(FakeProvider([]), SleepRecorder(), rand=1.0)

    assert fetcher.backoff_delay(1) == pytest.approx(1.0)
    assert fetcher.backoff_delay(3) == pytest.approx(4.0)
    assert fetcher.backoff_delay(10) == pytest.approx(5.0)
    assert fetcher.backoff_delay(1, retry_after=7.5) == pytest.approx(7.5)


def test_release_closes_provider_and_builds_a_new_one() -> None:
    created: list[FakeProvider] = []

    def factory(_connection: Connection) -> FakeProvider:
        provider = FakeProvider([])
        created.append(provider)
        return provider

    fetcher = MailFetcher(factory, FetchSettings())
    connection = _connection()
    fetcher.list_new_message_ids(connection)
    fetcher.list_new_message_ids(connection)
    fetcher.release(connection)
    fetcher.list_new_message_ids(connection)
    fetcher.close()

    assert len(created) == 2
    assert created[0].closed is True
    assert created[1].closed is True
