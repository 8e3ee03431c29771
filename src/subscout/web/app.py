"""FastAPI application exposing scan state, candidates and admin actions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, status as http_status
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

from subscout.core import AppSettings, ServiceContainer, load_app_settings
from subscout.core.datetime_utils import serialize_datetime
from subscout.core.interfaces import (
    CandidateStateError,
    ConnectionNotFoundError,
    ScanConflictError,
)
from subscout.core.models import (
    CANDIDATE_STATUSES,
    BankEvidence,
    CandidateEvidence,
    Connection,
    DetectionCandidate,
    EmailEvidence,
    Receipt,
    ReceiptStats,
    ReparseReport,
    ScanReport,
    Subscription,
)
from subscout.runtime import build_admin, build_container, build_review
from subscout.scanning import ScanScheduler
from subscout.storage import SqliteScanRepository
from subscout.storage.connection_pool import ConnectionPool
from subscout.transport import SUPPORTED_PROVIDERS

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

LOGGER = logging.getLogger(__name__)


class ConnectionRequest(BaseModel):
    """Body recording a successful provider authorization."""

    user_id: str = Field(min_length=1)
    provider: str
    external_account: str = Field(min_length=1)
    auth_handle: str = Field(min_length=1)


class AcceptRequest(BaseModel):
    """Optional user edits applied when accepting a candidate."""

    name: str | None = None
    amount: float | None = None
    currency: str | None = None
    cadence: str | None = None
    next_billing: datetime | None = None


def create_app(
    settings: AppSettings | None = None,
    *,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or load_app_settings()
    services = container or build_container(app_settings)
    app = FastAPI(title="Subscout")
    # Compress candidate and receipt listings larger than 1KB
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    connection_pool: ConnectionPool = services.resolve("pool")

    def get_repository() -> Iterator[SqliteScanRepository]:
        with connection_pool.acquire(timeout=10.0) as repository:
            yield repository

    def get_scheduler() -> ScanScheduler:
        return services.resolve("scheduler")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Stop running scans and close pooled connections."""
        services.close()
        LOGGER.info("Services closed")

    # Connections --------------------------------------------------------------
    @app.get("/api/connections")
    async def list_connections(
        user_id: str | None = None,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        connections = repository.list_connections(user_id)
        return {"connections": [_serialize_connection(c) for c in connections]}

    @app.post("/api/connections", status_code=http_status.HTTP_201_CREATED)
    async def create_connection(
        payload: ConnectionRequest,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        if payload.provider not in SUPPORTED_PROVIDERS:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported provider '{payload.provider}'",
            )
        connection = repository.upsert_connection(
            payload.user_id,
            payload.provider,
            payload.external_account,
            payload.auth_handle,
        )
        return _serialize_connection(connection)

    @app.get("/api/connections/{connection_id}")
    async def get_connection(
        connection_id: int,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        return _serialize_connection(_require_connection(repository, connection_id))

    @app.get("/api/connections/{connection_id}/receipts")
    async def list_receipts(
        connection_id: int,
        parsed: bool | None = None,
        limit: int = DEFAULT_LIMIT,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        _require_connection(repository, connection_id)
        bounded = max(1, min(limit, MAX_LIMIT))
        receipts = repository.list_receipts(
            connection_id, parsed=parsed, limit=bounded
        )
        return {"receipts": [_serialize_receipt(r) for r in receipts]}

    @app.get("/api/connections/{connection_id}/stats")
    async def receipt_stats(
        connection_id: int,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        _require_connection(repository, connection_id)
        return _serialize_stats(repository.receipt_stats(connection_id))

    @app.post("/api/connections/{connection_id}/scan")
    async def scan_connection(
        connection_id: int,
        scheduler: ScanScheduler = Depends(get_scheduler),  # noqa: B008
    ) -> dict[str, Any]:
        # The scan job borrows its own repository; hold none while it runs.
        with connection_pool.acquire(timeout=10.0) as repository:
            _require_connection(repository, connection_id)
        future = scheduler.submit(connection_id)
        try:
            report = await asyncio.wrap_future(future)
        except ConnectionNotFoundError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)
            ) from exc
        return _serialize_scan_report(report)

    @app.post("/api/connections/{connection_id}/reset")
    async def reset_connection(
        connection_id: int,
        force: bool = False,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        admin = build_admin(services, repository)
        try:
            connection = await asyncio.to_thread(
                admin.reset, connection_id, force=force
            )
        except ConnectionNotFoundError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)
            ) from exc
        except ScanConflictError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)
            ) from exc
        return _serialize_connection(connection)

    @app.delete("/api/connections/{connection_id}")
    async def disconnect_connection(
        connection_id: int,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        admin = build_admin(services, repository)
        deleted = await asyncio.to_thread(admin.disconnect, connection_id)
        if not deleted:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Connection {connection_id} does not exist",
            )
        return {"deleted": True, "connectionId": connection_id}

    @app.post("/api/connections/{connection_id}/reparse")
    async def reparse_connection(
        connection_id: int,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        admin = build_admin(services, repository)
        try:
            report = await asyncio.to_thread(admin.reparse, connection_id)
        except ConnectionNotFoundError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)
            ) from exc
        return _serialize_reparse_report(report)

    # Candidates ---------------------------------------------------------------
    @app.get("/api/users/{user_id}/candidates")
    async def list_candidates(
        user_id: str,
        status: str | None = None,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        if status is not None and status not in CANDIDATE_STATUSES:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown candidate status '{status}'",
            )
        candidates = repository.list_candidates(user_id, status=status)
        return {"candidates": [_serialize_candidate(c) for c in candidates]}

    @app.post("/api/candidates/{candidate_id}/accept")
    async def accept_candidate(
        candidate_id: int,
        payload: AcceptRequest | None = None,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        edits = payload or AcceptRequest()
        try:
            candidate, subscription = build_review(repository).accept(
                candidate_id,
                name=edits.name,
                amount=edits.amount,
                currency=edits.currency,
                cadence=edits.cadence,
                next_billing=edits.next_billing,
            )
        except (LookupError, CandidateStateError, ValueError) as exc:
            raise _review_error(exc) from exc
        return {
            "candidate": _serialize_candidate(candidate),
            "subscription": _serialize_subscription(subscription),
        }

    @app.post("/api/candidates/{candidate_id}/dismiss")
    async def dismiss_candidate(
        candidate_id: int,
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        try:
            candidate = build_review(repository).dismiss(candidate_id)
        except (LookupError, CandidateStateError) as exc:
            raise _review_error(exc) from exc
        return {"candidate": _serialize_candidate(candidate)}

    # Maintenance --------------------------------------------------------------
    @app.post("/api/admin/receipts/purge")
    async def purge_receipts(
        repository: SqliteScanRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        removed = await asyncio.to_thread(
            build_admin(services, repository).purge_receipts
        )
        return {"removed": removed}

    return app


def _require_connection(
    repository: SqliteScanRepository, connection_id: int
) -> Connection:
    connection = repository.fetch_connection(connection_id)
    if connection is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"Connection {connection_id} does not exist",
        )
    return connection


def _review_error(exc: Exception) -> HTTPException:
    if isinstance(exc, LookupError):
        code = http_status.HTTP_404_NOT_FOUND
    elif isinstance(exc, CandidateStateError):
        code = http_status.HTTP_409_CONFLICT
    else:
        code = http_status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


def _serialize_connection(connection: Connection) -> dict[str, Any]:
    return {
        "id": connection.id,
        "userId": connection.user_id,
        "provider": connection.provider,
        "externalAccount": connection.external_account,
        "status": connection.status,
        "scanStatus": connection.scan_status,
        "lastSyncedAt": serialize_datetime(connection.last_synced_at),
        "totalEmailsScanned": connection.total_emails_scanned,
        "totalReceiptsFound": connection.total_receipts_found,
        "totalMessageErrors": connection.total_message_errors,
        "aiProcessingStatus": connection.ai_processing_status,
        "aiProcessedCount": connection.ai_processed_count,
        "aiTotalCount": connection.ai_total_count,
        "errorCode": connection.error_code,
        "errorMessage": connection.error_message,
        "createdAt": serialize_datetime(connection.created_at),
        "updatedAt": serialize_datetime(connection.updated_at),
    }


def _serialize_receipt(receipt: Receipt) -> dict[str, Any]:
    return {
        "id": receipt.id,
        "connectionId": receipt.connection_id,
        "messageId": receipt.message_id,
        "sender": receipt.sender,
        "senderName": receipt.sender_name,
        "subject": receipt.subject,
        "receivedAt": serialize_datetime(receipt.received_at),
        "parsed": receipt.parsed,
        "confidence": receipt.parsing_confidence,
        "merchantName": receipt.merchant_name,
        "amount": receipt.amount,
        "currency": receipt.currency,
        "billingCycle": receipt.billing_cycle,
        "nextChargeDate": serialize_datetime(receipt.next_charge_date),
        "receiptType": receipt.receipt_type,
        "signals": list(receipt.signals),
        "reconciliation": receipt.reconciliation,
        "candidateId": receipt.candidate_id,
    }


def _serialize_stats(stats: ReceiptStats) -> dict[str, Any]:
    return {
        "total": stats.total,
        "parsed": stats.parsed,
        "unparsed": stats.unparsed,
        "withCandidate": stats.with_candidate,
    }


def _serialize_candidate(candidate: DetectionCandidate) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "userId": candidate.user_id,
        "name": candidate.proposed_name,
        "amount": candidate.proposed_amount,
        "currency": candidate.proposed_currency,
        "cadence": candidate.proposed_cadence,
        "nextBilling": serialize_datetime(candidate.proposed_next_billing),
        "confidence": candidate.confidence,
        "reason": candidate.detection_reason,
        "source": candidate.source,
        "status": candidate.status,
        "evidence": _serialize_evidence(candidate.evidence),
        "lastEvidenceAt": serialize_datetime(candidate.last_evidence_at),
        "acceptedSubscriptionId": candidate.accepted_subscription_id,
        "reviewedAt": serialize_datetime(candidate.reviewed_at),
    }


def _serialize_evidence(evidence: CandidateEvidence) -> dict[str, Any]:
    if isinstance(evidence, EmailEvidence):
        return {
            "source": "email",
            "receiptIds": list(evidence.receipt_ids),
            "messageIds": list(evidence.message_ids),
            "senders": list(evidence.senders),
            "subjects": list(evidence.subjects),
            "receivedDates": [
                serialize_datetime(value) for value in evidence.received_dates
            ],
        }
    if isinstance(evidence, BankEvidence):
        return {"source": "bank", "transactionIds": list(evidence.transaction_ids)}
    return {"source": "manual", "note": evidence.note}


def _serialize_subscription(subscription: Subscription) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "userId": subscription.user_id,
        "name": subscription.name,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "billingCycle": subscription.billing_cycle,
        "nextBillingDate": serialize_datetime(subscription.next_billing_date),
        "isActive": subscription.is_active,
        "source": subscription.source,
    }


def _serialize_scan_report(report: ScanReport) -> dict[str, Any]:
    return {
        "connectionId": report.connection_id,
        "outcome": report.outcome,
        "reason": report.reason,
        "pages": report.pages,
        "emailsScanned": report.emails_scanned,
        "receiptsFound": report.receipts_found,
        "candidatesCreated": report.candidates_created,
        "candidatesMerged": report.candidates_merged,
        "messageErrors": report.message_errors,
        "errorCode": report.error_code,
        "errorMessage": report.error_message,
    }


def _serialize_reparse_report(report: ReparseReport) -> dict[str, Any]:
    return {
        "connectionId": report.connection_id,
        "processed": report.processed,
        "changed": report.changed,
        "newlyParsed": report.newly_parsed,
        "candidatesCreated": report.candidates_created,
        "candidatesMerged": report.candidates_merged,
        "errors": report.errors,
    }


__all__ = ["create_app"]
