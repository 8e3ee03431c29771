"""Tests for the SQLite repository."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from subscout.core.config import StorageSettings
from subscout.core.datetime_utils import utcnow
from subscout.core.interfaces import ConnectionNotFoundError
from subscout.core.models import (
    BankEvidence,
    DetectionCandidate,
    EmailEvidence,
    ManualEvidence,
    ParsedReceipt,
    Receipt,
    Subscription,
)
from subscout.storage import SqliteScanRepository


@pytest.fixture(name="repository")
def repository_fixture(tmp_path: Path) -> Iterator[SqliteScanRepository]:
    settings = StorageSettings(db_path=tmp_path / "subscout.db", max_body_chars=20)
    with SqliteScanRepository(settings) as repository:
        yield repository


def _receipt(connection_id: int, message_id: str, **fields: object) -> Receipt:
    values: dict[str, object] = {
        "id": None,
        "connection_id": connection_id,
        "user_id": "u1",
        "message_id": message_id,
        "sender": "billing@netflix.com",
        "subject": "Receipt",
        "received_at": datetime(2025, 3, 1, tzinfo=UTC),
        "raw_body": "Total $15.49",
        "parsed": True,
        "parsing_confidence": 0.8,
        "merchant_name": "Netflix",
        "amount": 15.49,
        "currency": "USD",
        "billing_cycle": "monthly",
        "signals": ("sender:netflix.com", "amount"),
    }
    values.update(fields)
    return Receipt(**values)  # type: ignore[arg-type]


def _candidate(user_id: str = "u1", **fields: object) -> DetectionCandidate:
    values: dict[str, object] = {
        "id": None,
        "user_id": user_id,
        "proposed_name": "Netflix",
        "proposed_amount": 15.49,
        "proposed_currency": "USD",
        "proposed_cadence": "monthly",
        "proposed_next_billing": datetime(2025, 4, 1, tzinfo=UTC),
        "confidence": 0.8,
        "detection_reason": "sender:netflix.com",
        "evidence": EmailEvidence(receipt_ids=(1,), message_ids=("m1",)),
    }
    values.update(fields)
    return DetectionCandidate(**values)  # type: ignore[arg-type]


def test_upsert_connection_creates_then_reactivates(
    repository: SqliteScanRepository,
) -> None:
    created = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert created.id is not None
    assert created.status == "active"
    assert created.scan_status == "not_started"
    assert created.created_at is not None

    repository.patch_connection(
        created.id,
        status="error",
        error_code="auth_revoked",
        error_message="revoked",
        cursor="42",
    )
    again = repository.upsert_connection("u1", "gmail", "me@example.com", "h2")

    assert again.id == created.id
    assert again.status == "active"
    assert again.auth_handle == "h2"
    assert again.error_code is None
    assert again.cursor == "42"
    assert len(repository.list_connections("u1")) == 1


def test_upsert_connection_requires_account(repository: SqliteScanRepository) -> None:
    with pytest.raises(ValueError):
        repository.upsert_connection("u1", "gmail", "", "h1")


def test_patch_connection_validates_fields(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "imap", "me@example.com", "h1")
    assert connection.id is not None

    synced = datetime(2025, 3, 2, 12, 0, tzinfo=UTC)
    patched = repository.patch_connection(
        connection.id, last_synced_at=synced, quota_consumed=True
    )
    assert patched.last_synced_at == synced
    assert patched.quota_consumed is True

    with pytest.raises(ValueError):
        repository.patch_connection(connection.id, user_id="u2")
    with pytest.raises(ConnectionNotFoundError):
        repository.patch_connection(999, cursor="1")


def test_claim_scan_is_exclusive(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None

    assert repository.claim_scan(connection.id, 60) is True
    assert repository.claim_scan(connection.id, 60) is False
    claimed = repository.fetch_connection(connection.id)
    assert claimed is not None
    assert claimed.scan_status == "in_progress"
    assert claimed.scan_heartbeat_at is not None

    released = repository.release_scan(
        connection.id, "completed", total_message_errors=3
    )
    assert released.scan_status == "completed"
    assert released.scan_heartbeat_at is None
    assert released.total_message_errors == 3
    assert repository.claim_scan(connection.id, 60) is True


def test_stale_claim_can_be_taken_over(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None
    repository.patch_connection(
        connection.id,
        scan_status="in_progress",
        scan_heartbeat_at=utcnow() - timedelta(hours=2),
    )

    assert repository.claim_scan(connection.id, 3600) is True


def test_inactive_connection_cannot_be_claimed(
    repository: SqliteScanRepository,
) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None
    repository.patch_connection(connection.id, status="error")

    assert repository.claim_scan(connection.id, 60) is False


def test_insert_receipt_is_idempotent(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None

    stored = repository.insert_receipt(
        _receipt(connection.id, "m1", raw_body="x" * 50)
    )
    duplicate = repository.insert_receipt(_receipt(connection.id, "m1"))

    assert stored is not None
    assert stored.raw_body == "x" * 20
    assert stored.signals == ("sender:netflix.com", "amount")
    assert stored.sender_name is None
    assert duplicate is None
    fetched = repository.fetch_receipt(connection.id, "m1")
    assert fetched is not None and fetched.id == stored.id


def test_list_receipts_filters_and_orders(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None
    base = datetime(2025, 1, 1, tzinfo=UTC)
    for index in range(3):
        repository.insert_receipt(
            _receipt(
                connection.id,
                f"m{index}",
                received_at=base + timedelta(days=index),
                parsed=index != 1,
            )
        )

    newest_first = repository.list_receipts(connection.id)
    assert [r.message_id for r in newest_first] == ["m2", "m1", "m0"]
    unparsed = repository.list_receipts(connection.id, parsed=False)
    assert [r.message_id for r in unparsed] == ["m1"]
    assert len(repository.list_receipts(connection.id, limit=2)) == 2

    stats = repository.receipt_stats(connection.id)
    assert (stats.total, stats.parsed, stats.unparsed, stats.with_candidate) == (
        3,
        2,
        1,
        0,
    )


def test_update_receipt_parse_and_reconciliation(
    repository: SqliteScanRepository,
) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None
    stored = repository.insert_receipt(
        _receipt(connection.id, "m1", parsed=False, parsing_confidence=0.0)
    )
    assert stored is not None and stored.id is not None

    updated = repository.update_receipt_parse(
        stored.id,
        ParsedReceipt(
            message_id="m1",
            parsed=True,
            confidence=0.6,
            merchant_name="Hulu",
            amount=7.99,
            currency="USD",
            billing_cycle="monthly",
            next_charge_date=datetime(2025, 4, 1, tzinfo=UTC),
            receipt_type="renewal",
            signals=("keyword:receipt",),
        ),
    )
    repository.mark_receipt_reconciled(stored.id, "created", 5)

    assert updated.parsed is True
    assert updated.merchant_name == "Hulu"
    assert updated.next_charge_date == datetime(2025, 4, 1, tzinfo=UTC)
    reconciled = repository.fetch_receipt(connection.id, "m1")
    assert reconciled is not None
    assert reconciled.reconciliation == "created"
    assert reconciled.candidate_id == 5
    assert repository.receipt_stats(connection.id).with_candidate == 1


def test_delete_connection_removes_receipts(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None
    repository.insert_receipt(_receipt(connection.id, "m1"))

    assert repository.delete_connection(connection.id) is True
    assert repository.fetch_connection(connection.id) is None
    assert repository.list_receipts(connection.id) == []
    assert repository.delete_connection(connection.id) is False


def test_delete_all_receipts(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None
    repository.insert_receipt(_receipt(connection.id, "m1"))
    repository.insert_receipt(_receipt(connection.id, "m2"))

    assert repository.delete_all_receipts() == 2
    assert repository.receipt_stats(connection.id).total == 0


def test_candidate_evidence_round_trips_each_source(
    repository: SqliteScanRepository,
) -> None:
    email = repository.insert_candidate(_candidate())
    bank = repository.insert_candidate(
        _candidate(evidence=BankEvidence(transaction_ids=("tx-1", "tx-2")))
    )
    manual = repository.insert_candidate(
        _candidate(evidence=ManualEvidence(note="Seen on statement"))
    )

    assert email.source == "email"
    assert email.evidence == EmailEvidence(receipt_ids=(1,), message_ids=("m1",))
    assert bank.evidence == BankEvidence(transaction_ids=("tx-1", "tx-2"))
    assert manual.evidence == ManualEvidence(note="Seen on statement")
    assert [c.id for c in repository.list_candidates("u1")] == [
        email.id,
        bank.id,
        manual.id,
    ]


def test_update_candidate_and_filter_by_status(
    repository: SqliteScanRepository,
) -> None:
    candidate = repository.insert_candidate(_candidate())
    repository.insert_candidate(_candidate(user_id="u2"))
    candidate.status = "dismissed"
    candidate.reviewed_at = datetime(2025, 3, 5, tzinfo=UTC)

    updated = repository.update_candidate(candidate)

    assert updated.status == "dismissed"
    assert updated.reviewed_at == datetime(2025, 3, 5, tzinfo=UTC)
    assert repository.list_candidates("u1", status="pending") == []
    assert len(repository.list_candidates("u1", status="dismissed")) == 1
    fetched = repository.fetch_candidate(updated.id or 0)
    assert fetched is not None and fetched.status == "dismissed"
    assert repository.fetch_candidate(999) is None


def test_subscriptions_and_quota_usage(repository: SqliteScanRepository) -> None:
    active = repository.insert_subscription(
        Subscription(None, "u1", "Netflix", 15.49, "USD", "monthly")
    )
    repository.insert_subscription(
        Subscription(None, "u1", "Hulu", 7.99, "USD", "monthly", is_active=False)
    )

    assert [s.id for s in repository.list_subscriptions("u1")] == [active.id]
    assert len(repository.list_subscriptions("u1", active_only=False)) == 2

    now = datetime(2025, 3, 1, tzinfo=UTC)
    assert repository.quota_usage("u1") == 0
    assert repository.increment_quota_usage("u1", now) == 1
    assert repository.increment_quota_usage("u1", now) == 2
    assert repository.quota_usage("u1") == 2


def test_ping_reports_closed_connection(tmp_path: Path) -> None:
    repository = SqliteScanRepository(StorageSettings(db_path=tmp_path / "db.sqlite"))
    assert repository.ping() is True
    repository.close()
    assert repository.ping() is False


def test_receipt_keeps_sender_display_name(repository: SqliteScanRepository) -> None:
    connection = repository.upsert_connection("u1", "gmail", "me@example.com", "h1")
    assert connection.id is not None

    repository.insert_receipt(
        _receipt(connection.id, "m1", sender_name="Acme Streaming")
    )

    fetched = repository.fetch_receipt(connection.id, "m1")
    assert fetched is not None
    assert fetched.sender_name == "Acme Streaming"


def test_email_evidence_keeps_received_dates(
    repository: SqliteScanRepository,
) -> None:
    dates = (datetime(2025, 3, 1, tzinfo=UTC), datetime(2025, 4, 1, tzinfo=UTC))
    evidence = EmailEvidence(
        receipt_ids=(1, 2), message_ids=("m1", "m2"), received_dates=dates
    )

    stored = repository.insert_candidate(_candidate(evidence=evidence))
    fetched = repository.fetch_candidate(stored.id or 0)

    assert fetched is not None
    assert isinstance(fetched.evidence, EmailEvidence)
    assert fetched.evidence.received_dates == dates
