"""Scan state machine driving fetch, parse, store and reconcile per page."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from ..core.config import ScanSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import (
    AuthFetchError,
    ConnectionNotFoundError,
    MessageUnavailableError,
    ProviderFetchError,
    QuotaService,
    ReceiptParserService,
    ScanRepository,
    TransientFetchError,
)
from ..core.models import (
    Connection,
    ParsedReceipt,
    RawMessage,
    Receipt,
    ScanReport,
    ScanStatus,
)
from ..ingestion.fetcher import MailFetcher
from ..intelligence.reconciler import CandidateReconciler

LOGGER = logging.getLogger(__name__)


class ScanOrchestrator:
    """Run one incremental scan of a connection.

    The connection is claimed atomically before any work starts, and the
    cursor plus counters are checkpointed after every page so an interrupted
    scan resumes from the last completed page.
    """

    def __init__(
        self,
        repository: ScanRepository,
        fetcher: MailFetcher,
        parser: ReceiptParserService,
        reconciler: CandidateReconciler,
        quota: QuotaService,
        settings: ScanSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
        progress_callback: Callable[[str], None] | None = None,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._repository = repository
        self._fetcher = fetcher
        self._parser = parser
        self._reconciler = reconciler
        self._quota = quota
        self._settings = settings
        self._clock = clock
        self._progress_callback = progress_callback

    def run(
        self, connection_id: int, cancel: threading.Event | None = None
    ) -> ScanReport:
        """Scan ``connection_id`` until the provider has no more pages."""
        connection = self._repository.fetch_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)

        refusal = self._gate(connection_id, connection)
        if refusal is not None:
            return refusal

        previous_status = connection.scan_status
        if not self._repository.claim_scan(
            connection_id, self._settings.stale_after_seconds
        ):
            LOGGER.info("Connection %s is already being scanned", connection_id)
            return ScanReport(connection_id, "rejected", reason="scan_in_progress")
        # A recovered stale claim must not be restored as in_progress.
        if previous_status == "in_progress":
            previous_status = "not_started"

        LOGGER.info(
            "Starting scan for connection %s (%s, cursor %s)",
            connection_id,
            connection.provider,
            connection.cursor,
        )
        current = self._repository.patch_connection(
            connection_id, ai_processing_status="processing"
        )
        try:
            return self._scan(connection_id, current, previous_status, cancel)
        finally:
            self._fetcher.release(current)

    # Internal helpers ---------------------------------------------------------
    def _gate(self, connection_id: int, connection: Connection) -> ScanReport | None:
        user_id = connection.user_id
        if not self._quota.has_email_automation(user_id):
            LOGGER.info("User %s has no email automation entitlement", user_id)
            return ScanReport(
                connection_id, "quota_exceeded", reason="email_automation_unavailable"
            )
        if not connection.quota_consumed:
            remaining = self._quota.remaining_email_connections(user_id)
            if remaining is not None and remaining <= 0:
                LOGGER.info("User %s has no email connections left", user_id)
                return ScanReport(
                    connection_id, "quota_exceeded", reason="connection_limit_reached"
                )
        if connection.status != "active":
            return ScanReport(connection_id, "rejected", reason="connection_inactive")
        return None

    def _scan(
        self,
        connection_id: int,
        connection: Connection,
        previous_status: ScanStatus,
        cancel: threading.Event | None,
    ) -> ScanReport:
        # pylint: disable=too-many-return-statements
        report = ScanReport(connection_id, "completed")
        max_pages = self._settings.max_pages_per_run
        try:
            while True:
                if self._repository.fetch_connection(connection_id) is None:
                    raise ConnectionNotFoundError(connection_id)
                if cancel is not None and cancel.is_set():
                    LOGGER.info("Scan of connection %s cancelled", connection_id)
                    self._suspend(connection_id, previous_status)
                    report.outcome = "cancelled"
                    return report
                if max_pages is not None and report.pages >= max_pages:
                    LOGGER.info(
                        "Scan of connection %s paused after %d page(s)",
                        connection_id,
                        report.pages,
                    )
                    self._suspend(connection_id, previous_status)
                    report.outcome = "paused"
                    return report

                page = self._fetcher.list_new_message_ids(connection)
                errors_before = report.message_errors
                processed = 0
                new_receipts = 0
                for message_id in page.message_ids:
                    stored = self._process_message(
                        connection_id, connection, message_id, report
                    )
                    if stored is None:
                        continue
                    processed += 1
                    new_receipts += int(stored)

                report.pages += 1
                report.emails_scanned += len(page.message_ids)
                report.receipts_found += new_receipts
                # Totals are derived from stored receipts, not page sizes.
                stats = self._repository.receipt_stats(connection_id)
                connection = self._repository.patch_connection(
                    connection_id,
                    cursor=page.next_cursor,
                    total_emails_scanned=stats.total,
                    total_receipts_found=stats.parsed,
                    total_message_errors=connection.total_message_errors
                    + report.message_errors
                    - errors_before,
                    ai_total_count=connection.ai_total_count + len(page.message_ids),
                    ai_processed_count=connection.ai_processed_count + processed,
                    scan_heartbeat_at=self._clock(),
                )
                self._notify(
                    f"Connection {connection_id}: page {report.pages} done, "
                    f"{report.emails_scanned} email(s) scanned"
                )
                if not page.has_more:
                    break
            self._complete(connection_id, connection)
        except ConnectionNotFoundError:
            LOGGER.info(
                "Connection %s was removed during its scan; stopping", connection_id
            )
            report.outcome = "cancelled"
            report.reason = "connection_removed"
            return report
        except AuthFetchError as exc:
            return self._fail(report, "auth_revoked", exc, deactivate=True)
        except ProviderFetchError as exc:
            return self._fail(report, "provider_unsupported", exc, deactivate=True)
        except TransientFetchError as exc:
            return self._fail(report, "provider_unavailable", exc, deactivate=False)
        except Exception as exc:
            self._fail(report, "internal_error", exc, deactivate=False)
            raise

        LOGGER.info(
            "Scan of connection %s completed: %d email(s), %d receipt(s), "
            "%d candidate(s) created, %d merged, %d message error(s)",
            connection_id,
            report.emails_scanned,
            report.receipts_found,
            report.candidates_created,
            report.candidates_merged,
            report.message_errors,
        )
        return report

    def _process_message(
        self,
        connection_id: int,
        connection: Connection,
        message_id: str,
        report: ScanReport,
    ) -> bool | None:
        """Ingest one message.

        Returns ``True`` for a newly stored billing receipt, ``False`` for any
        other message that was handled and ``None`` when it was skipped.
        """
        try:
            return self._ingest(connection_id, connection, message_id, report)
        except (AuthFetchError, ProviderFetchError, ConnectionNotFoundError):
            raise
        except MessageUnavailableError as exc:
            report.message_errors += 1
            LOGGER.info("Message %s is no longer available: %s", message_id, exc)
        except TransientFetchError as exc:
            report.message_errors += 1
            LOGGER.warning("Skipping message %s after retries: %s", message_id, exc)
        except Exception as exc:  # pylint: disable=broad-except
            if self._repository.fetch_connection(connection_id) is None:
                raise ConnectionNotFoundError(connection_id) from exc
            report.message_errors += 1
            LOGGER.error(
                "Failed to process message %s for connection %s: %s",
                message_id,
                connection_id,
                exc,
                exc_info=True,
            )
        return None

    def _ingest(
        self,
        connection_id: int,
        connection: Connection,
        message_id: str,
        report: ScanReport,
    ) -> bool:
        existing = self._repository.fetch_receipt(connection_id, message_id)
        if existing is not None:
            # Finish reconciling a receipt stored by an interrupted scan.
            if existing.parsed and existing.reconciliation is None:
                self._reconcile(connection, existing, report)
            return False

        message = self._fetcher.fetch_body(connection, message_id)
        parsed = self._parser.parse(message)
        stored = self._repository.insert_receipt(
            _build_receipt(connection_id, connection, message_id, message, parsed)
        )
        if stored is None:
            LOGGER.debug("Message %s was stored concurrently", message_id)
            return False
        if not stored.parsed:
            return False
        self._reconcile(connection, stored, report)
        return True

    def _reconcile(
        self, connection: Connection, receipt: Receipt, report: ScanReport
    ) -> None:
        outcome = self._reconciler.reconcile(connection.user_id, receipt)
        report.outcomes.append(outcome)
        if outcome.action == "created":
            report.candidates_created += 1
        elif outcome.action == "merged":
            report.candidates_merged += 1

    def _complete(self, connection_id: int, connection: Connection) -> None:
        quota_consumed = connection.quota_consumed
        if not quota_consumed:
            self._quota.consume_email_connection(connection.user_id)
            quota_consumed = True
        self._repository.release_scan(
            connection_id,
            "completed",
            last_synced_at=self._clock(),
            error_code=None,
            error_message=None,
            ai_processing_status="completed",
            quota_consumed=quota_consumed,
        )

    def _suspend(self, connection_id: int, previous_status: ScanStatus) -> None:
        self._repository.release_scan(
            connection_id, previous_status, ai_processing_status="idle"
        )

    def _fail(
        self,
        report: ScanReport,
        error_code: str,
        exc: Exception,
        *,
        deactivate: bool,
    ) -> ScanReport:
        LOGGER.error(
            "Scan of connection %s failed (%s): %s",
            report.connection_id,
            error_code,
            exc,
            exc_info=error_code == "internal_error",
        )
        fields: dict[str, object] = {
            "error_code": error_code,
            "error_message": str(exc),
            "ai_processing_status": "error",
        }
        if deactivate:
            fields["status"] = "error"
        try:
            self._repository.release_scan(report.connection_id, "error", **fields)
        except ConnectionNotFoundError:
            LOGGER.info("Connection %s no longer exists", report.connection_id)
        report.outcome = "error"
        report.error_code = error_code
        report.error_message = str(exc)
        return report

    def _notify(self, message: str) -> None:
        if self._progress_callback is not None:
            self._progress_callback(message)


def _build_receipt(
    connection_id: int,
    connection: Connection,
    message_id: str,
    message: RawMessage,
    parsed: ParsedReceipt,
) -> Receipt:
    return Receipt(
        id=None,
        connection_id=connection_id,
        user_id=connection.user_id,
        message_id=message_id,
        sender=message.sender,
        sender_name=message.sender_name,
        subject=message.subject,
        received_at=message.received_at,
        raw_body=message.body,
        parsed=parsed.parsed,
        parsing_confidence=parsed.confidence,
        merchant_name=parsed.merchant_name,
        amount=parsed.amount,
        currency=parsed.currency,
        billing_cycle=parsed.billing_cycle,
        next_charge_date=parsed.next_charge_date,
        receipt_type=parsed.receipt_type,
        signals=parsed.signals,
    )


__all__ = ["ScanOrchestrator"]
