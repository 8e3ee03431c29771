"""Tests for operator actions on connections and receipts."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from fakes import NETFLIX_RECEIPT, NEWSLETTER
from subscout.core.config import DetectionSettings, StorageSettings
from subscout.core.interfaces import ConnectionNotFoundError, ScanConflictError
from subscout.core.models import Connection, RawMessage, Receipt
from subscout.intelligence import CandidateReconciler, ReceiptParser
from subscout.scanning import ScanAdministrator, ScanScheduler
from subscout.storage import SqliteScanRepository


@pytest.fixture(name="repository")
def repository_fixture(tmp_path: Path) -> Iterator[SqliteScanRepository]:
    settings = StorageSettings(db_path=tmp_path / "subscout.db")
    with SqliteScanRepository(settings) as repository:
        yield repository


@pytest.fixture(name="connection")
def connection_fixture(repository: SqliteScanRepository) -> Connection:
    return repository.upsert_connection("u1", "gmail", "me@gmail.com", "h1")


def _admin(
    repository: SqliteScanRepository, scheduler: ScanScheduler | None = None
) -> ScanAdministrator:
    return ScanAdministrator(
        repository,
        ReceiptParser(),
        CandidateReconciler(repository, DetectionSettings()),
        scheduler=scheduler,
    )


def _store_unparsed(
    repository: SqliteScanRepository, connection_id: int, message: RawMessage
) -> Receipt:
    stored = repository.insert_receipt(
        Receipt(
            id=None,
            connection_id=connection_id,
            user_id="u1",
            message_id=message.message_id,
            sender=message.sender,
            subject=message.subject,
            received_at=message.received_at,
            raw_body=message.body,
            parsed=False,
            parsing_confidence=0.0,
        )
    )
    assert stored is not None
    return stored


def test_reset_clears_progress(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    repository.patch_connection(
        connection.id,
        scan_status="completed",
        cursor="42",
        last_synced_at=datetime(2025, 3, 1, tzinfo=UTC),
        total_emails_scanned=10,
        total_receipts_found=3,
        total_message_errors=4,
        ai_processing_status="completed",
        ai_processed_count=10,
        ai_total_count=10,
        quota_consumed=True,
    )

    reset = _admin(repository).reset(connection.id)

    assert reset.scan_status == "not_started"
    assert reset.cursor is None
    assert reset.last_synced_at is None
    assert reset.total_emails_scanned == 0
    assert reset.total_receipts_found == 0
    assert reset.total_message_errors == 0
    assert reset.scan_heartbeat_at is None
    assert reset.ai_processing_status == "idle"
    assert reset.ai_processed_count == 0
    assert reset.ai_total_count == 0
    assert reset.quota_consumed is True


def test_reset_refuses_running_scan_unless_forced(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    repository.patch_connection(connection.id, scan_status="in_progress")
    admin = _admin(repository)

    with pytest.raises(ScanConflictError):
        admin.reset(connection.id)

    assert admin.reset(connection.id, force=True).scan_status == "not_started"


def test_reset_cancels_local_scan_first(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    scheduler = MagicMock(spec=ScanScheduler)
    scheduler.cancel.return_value = True

    _admin(repository, scheduler).reset(connection.id)

    scheduler.cancel.assert_called_once_with(connection.id)
    scheduler.wait.assert_called_once_with([connection.id], timeout=30.0)


def test_reset_unknown_connection(repository: SqliteScanRepository) -> None:
    with pytest.raises(ConnectionNotFoundError):
        _admin(repository).reset(404)


def test_disconnect_removes_connection_and_receipts(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    _store_unparsed(repository, connection.id, NEWSLETTER)
    admin = _admin(repository)

    assert admin.disconnect(connection.id) is True
    assert repository.fetch_connection(connection.id) is None
    assert repository.list_receipts(connection.id) == []
    assert admin.disconnect(connection.id) is False


def test_purge_receipts_counts_rows(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    _store_unparsed(repository, connection.id, NEWSLETTER)
    _store_unparsed(repository, connection.id, NETFLIX_RECEIPT)
    admin = _admin(repository)

    assert admin.purge_receipts() == 2
    assert admin.purge_receipts() == 0


def test_reparse_upgrades_old_receipts(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    _store_unparsed(repository, connection.id, NETFLIX_RECEIPT)
    _store_unparsed(repository, connection.id, NEWSLETTER)
    admin = _admin(repository)

    report = admin.reparse(connection.id)

    assert report.processed == 2
    assert report.changed == 1
    assert report.newly_parsed == 1
    assert report.candidates_created == 1
    assert report.errors == 0
    upgraded = repository.fetch_receipt(connection.id, "m-netflix")
    assert upgraded is not None
    assert upgraded.parsed is True
    assert upgraded.merchant_name == "Netflix"
    assert upgraded.reconciliation == "created"
    stored = repository.fetch_connection(connection.id)
    assert stored is not None
    assert stored.ai_processing_status == "completed"
    assert stored.ai_processed_count == 2
    assert stored.ai_total_count == 2

    again = admin.reparse(connection.id)

    assert again.changed == 0
    assert again.candidates_created == 0
    assert len(repository.list_candidates("u1")) == 1


def test_reparse_counts_failures(
    repository: SqliteScanRepository, connection: Connection
) -> None:
    assert connection.id is not None
    _store_unparsed(repository, connection.id, NETFLIX_RECEIPT)
    parser = MagicMock()
    parser.parse.side_effect = ValueError("bad encoding")
    admin = ScanAdministrator(
        repository,
        parser,
        CandidateReconciler(repository, DetectionSettings()),
    )

    report = admin.reparse(connection.id)

    assert report.processed == 1
    assert report.errors == 1
    assert report.changed == 0


def test_reparse_unknown_connection(repository: SqliteScanRepository) -> None:
    with pytest.raises(ConnectionNotFoundError):
        _admin(repository).reparse(404)
