"""Operator actions on connections and stored receipts."""

from __future__ import annotations

import logging

from ..core.interfaces import (
    ConnectionNotFoundError,
    ReceiptParserService,
    ScanConflictError,
    ScanRepository,
)
from ..core.models import Connection, ParsedReceipt, RawMessage, Receipt, ReparseReport
from ..intelligence.reconciler import CandidateReconciler
from .scheduler import ScanScheduler

LOGGER = logging.getLogger(__name__)

_PROGRESS_EVERY = 25
_CANCEL_WAIT_SECONDS = 30.0


class ScanAdministrator:
    """Reset, disconnect, purge and re-parse operations."""

    def __init__(
        self,
        repository: ScanRepository,
        parser: ReceiptParserService,
        reconciler: CandidateReconciler,
        *,
        scheduler: ScanScheduler | None = None,
    ) -> None:
        self._repository = repository
        self._parser = parser
        self._reconciler = reconciler
        self._scheduler = scheduler

    def reset(self, connection_id: int, *, force: bool = False) -> Connection:
        """Return a connection to ``not_started`` with no cursor or counters.

        A scan running in this process is cancelled first. A claim held
        elsewhere blocks the reset unless ``force`` is set.
        """
        self._stop_local_scan(connection_id)
        connection = self._require(connection_id)
        if connection.scan_status == "in_progress" and not force:
            raise ScanConflictError(f"Connection {connection_id} is being scanned")
        reset = self._repository.release_scan(
            connection_id,
            "not_started",
            cursor=None,
            last_synced_at=None,
            total_emails_scanned=0,
            total_receipts_found=0,
            total_message_errors=0,
            ai_processing_status="idle",
            ai_processed_count=0,
            ai_total_count=0,
        )
        LOGGER.info("Connection %s reset", connection_id)
        return reset

    def disconnect(self, connection_id: int) -> bool:
        """Cancel any local scan, then delete the connection and its receipts."""
        self._stop_local_scan(connection_id)
        deleted = self._repository.delete_connection(connection_id)
        if deleted:
            LOGGER.info("Connection %s disconnected", connection_id)
        return deleted

    def purge_receipts(self) -> int:
        """Delete every stored receipt."""
        removed = self._repository.delete_all_receipts()
        LOGGER.warning("Purged %d stored receipt(s)", removed)
        return removed

    def reparse(self, connection_id: int) -> ReparseReport:
        """Run the current parser over stored receipts of a connection.

        Parsed fields are replaced in place and receipts that now qualify
        are reconciled. Progress is published through the connection's
        ``ai_*`` fields.
        """
        connection = self._require(connection_id)
        receipts = self._repository.list_receipts(connection_id)
        report = ReparseReport(connection_id)
        self._repository.patch_connection(
            connection_id,
            ai_processing_status="processing",
            ai_total_count=len(receipts),
            ai_processed_count=0,
        )
        try:
            for receipt in receipts:
                self._reparse_one(connection, receipt, report)
                report.processed += 1
                if report.processed % _PROGRESS_EVERY == 0:
                    self._repository.patch_connection(
                        connection_id, ai_processed_count=report.processed
                    )
        except Exception:
            self._repository.patch_connection(
                connection_id, ai_processing_status="error"
            )
            raise
        self._repository.patch_connection(
            connection_id,
            ai_processing_status="completed",
            ai_processed_count=report.processed,
        )
        LOGGER.info(
            "Re-parsed %d receipt(s) for connection %s: %d changed, %d newly parsed",
            report.processed,
            connection_id,
            report.changed,
            report.newly_parsed,
        )
        return report

    # Internal helpers ---------------------------------------------------------
    def _require(self, connection_id: int) -> Connection:
        connection = self._repository.fetch_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def _stop_local_scan(self, connection_id: int) -> None:
        if self._scheduler is None or not self._scheduler.cancel(connection_id):
            return
        self._scheduler.wait([connection_id], timeout=_CANCEL_WAIT_SECONDS)

    def _reparse_one(
        self, connection: Connection, receipt: Receipt, report: ReparseReport
    ) -> None:
        if receipt.id is None:
            return
        try:
            parsed = self._parser.parse(_as_message(receipt))
            if not _differs(receipt, parsed):
                return
            updated = self._repository.update_receipt_parse(receipt.id, parsed)
            report.changed += 1
            if updated.parsed and not receipt.parsed:
                report.newly_parsed += 1
            if updated.parsed and receipt.reconciliation in (None, "ignored"):
                outcome = self._reconciler.reconcile(connection.user_id, updated)
                if outcome.action == "created":
                    report.candidates_created += 1
                elif outcome.action == "merged":
                    report.candidates_merged += 1
        except Exception as exc:  # pylint: disable=broad-except
            report.errors += 1
            LOGGER.error(
                "Failed to re-parse receipt %s: %s", receipt.id, exc, exc_info=True
            )


def _as_message(receipt: Receipt) -> RawMessage:
    return RawMessage(
        message_id=receipt.message_id,
        sender=receipt.sender,
        sender_name=receipt.sender_name,
        subject=receipt.subject,
        received_at=receipt.received_at,
        body=receipt.raw_body or "",
    )


def _differs(receipt: Receipt, parsed: ParsedReceipt) -> bool:
    return (
        receipt.parsed,
        round(receipt.parsing_confidence, 4),
        receipt.merchant_name,
        receipt.amount,
        receipt.currency,
        receipt.billing_cycle,
        receipt.next_charge_date,
        receipt.receipt_type,
        tuple(receipt.signals),
    ) != (
        parsed.parsed,
        round(parsed.confidence, 4),
        parsed.merchant_name,
        parsed.amount,
        parsed.currency,
        parsed.billing_cycle,
        parsed.next_charge_date,
        parsed.receipt_type,
        tuple(parsed.signals),
    )


__all__ = ["ScanAdministrator"]
