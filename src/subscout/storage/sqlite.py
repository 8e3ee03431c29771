"""SQLite-backed repository for connections, receipts and candidates."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any, cast

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.interfaces import ConnectionNotFoundError, ScanRepository
from ..core.models import (
    BankEvidence,
    CandidateEvidence,
    Connection,
    DetectionCandidate,
    EmailEvidence,
    ManualEvidence,
    ParsedReceipt,
    Receipt,
    ReceiptStats,
    ScanStatus,
    Subscription,
)

LOGGER = logging.getLogger(__name__)

_PATCHABLE_CONNECTION_FIELDS = frozenset(
    {
        "auth_handle",
        "status",
        "scan_status",
        "cursor",
        "last_synced_at",
        "total_emails_scanned",
        "total_receipts_found",
        "total_message_errors",
        "ai_processing_status",
        "ai_processed_count",
        "ai_total_count",
        "error_code",
        "error_message",
        "scan_heartbeat_at",
        "quota_consumed",
    }
)
_CLAIMABLE_SCAN_STATUSES = ("not_started", "completed", "error")


class SqliteScanRepository(ScanRepository):
    """Persist connections, receipts and detection candidates using SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
            timeout=30.0,
        )
        self._connection.row_factory = sqlite3.Row
        self._enable_foreign_keys()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteScanRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Connections -------------------------------------------------------------
    def fetch_connection(self, connection_id: int) -> Connection | None:
        """Return the stored connection or ``None``."""
        cur = self._connection.execute(
            "SELECT * FROM connections WHERE id = ?", (connection_id,)
        )
        row = cur.fetchone()
        return _row_to_connection(row) if row is not None else None

    def list_connections(self, user_id: str | None = None) -> list[Connection]:
        """Return connections ordered by id, optionally for one user."""
        if user_id is None:
            cur = self._connection.execute("SELECT * FROM connections ORDER BY id")
        else:
            cur = self._connection.execute(
                "SELECT * FROM connections WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
        return [_row_to_connection(row) for row in cur.fetchall()]

    def upsert_connection(
        self, user_id: str, provider: str, external_account: str, auth_handle: str
    ) -> Connection:
        """Record a successful authorization for an external account.

        A known account is reactivated in place so its cursor survives a
        re-authorization; a new account starts with ``not_started``.
        """
        if not external_account:
            raise ValueError("External account is required")
        now = serialize_datetime(utcnow())
        LOGGER.debug("Upserting %s connection for %s", provider, external_account)
        try:
            with self._connection:
                cur = self._connection.execute(
                    """
                    INSERT INTO connections (
                        user_id,
                        provider,
                        external_account,
                        auth_handle,
                        created_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(provider, external_account) DO UPDATE SET
                        user_id=excluded.user_id,
                        auth_handle=excluded.auth_handle,
                        status='active',
                        error_code=NULL,
                        error_message=NULL,
                        updated_at=excluded.updated_at
                    RETURNING *
                    """,
                    (user_id, provider, external_account, auth_handle, now, now),
                )
                row = cur.fetchone()
        except sqlite3.Error as exc:
            LOGGER.error(
                "Database error upserting connection for %s: %s",
                external_account,
                exc,
                exc_info=True,
            )
            raise ValueError(
                f"Failed to upsert connection for {external_account}: {exc}"
            ) from exc
        return _row_to_connection(row)

    def patch_connection(self, connection_id: int, **fields: Any) -> Connection:
        """Apply a partial update; unknown fields raise ``ValueError``."""
        unknown = set(fields) - _PATCHABLE_CONNECTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown connection fields: {', '.join(sorted(unknown))}")
        assignments = ["updated_at = ?"]
        values: list[Any] = [serialize_datetime(utcnow())]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            values.append(_to_column(value))
        values.append(connection_id)
        with self._connection:
            cur = self._connection.execute(
                f"UPDATE connections SET {', '.join(assignments)} WHERE id = ? RETURNING *",
                values,
            )
            row = cur.fetchone()
        if row is None:
            raise ConnectionNotFoundError(connection_id)
        return _row_to_connection(row)

    def claim_scan(self, connection_id: int, stale_after_seconds: int) -> bool:
        """Compare-and-set the connection into ``in_progress``.

        Succeeds only for an active connection that is idle, or whose
        in-progress claim has not sent a heartbeat within the lease window.
        """
        now = utcnow()
        stale_before = serialize_datetime(now - timedelta(seconds=stale_after_seconds))
        with self._connection:
            cur = self._connection.execute(
                f"""
                UPDATE connections SET
                    scan_status = 'in_progress',
                    scan_heartbeat_at = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status = 'active'
                  AND (
                    scan_status IN ({", ".join("?" for _ in _CLAIMABLE_SCAN_STATUSES)})
                    OR (
                        scan_status = 'in_progress'
                        AND (scan_heartbeat_at IS NULL OR scan_heartbeat_at < ?)
                    )
                  )
                """,
                (
                    serialize_datetime(now),
                    serialize_datetime(now),
                    connection_id,
                    *_CLAIMABLE_SCAN_STATUSES,
                    stale_before,
                ),
            )
        claimed = cur.rowcount == 1
        LOGGER.debug("Claim for connection %s: %s", connection_id, claimed)
        return claimed

    def release_scan(
        self, connection_id: int, scan_status: ScanStatus, **fields: Any
    ) -> Connection:
        """End a claim by writing the final ``scan_status``.

        The heartbeat is cleared in the same update so the lease cannot be
        mistaken for a live scan.
        """
        return self.patch_connection(
            connection_id, scan_status=scan_status, scan_heartbeat_at=None, **fields
        )

    def delete_connection(self, connection_id: int) -> bool:
        """Delete receipts first, then the connection itself."""
        LOGGER.debug("Deleting connection %s", connection_id)
        with self._connection:
            self._connection.execute(
                "DELETE FROM receipts WHERE connection_id = ?", (connection_id,)
            )
            cur = self._connection.execute(
                "DELETE FROM connections WHERE id = ?", (connection_id,)
            )
        return cur.rowcount > 0

    # Receipts ----------------------------------------------------------------
    def insert_receipt(self, receipt: Receipt) -> Receipt | None:
        """Insert a receipt once per (connection, message id).

        Returns ``None`` when the message was already stored.
        """
        if not receipt.message_id:
            raise ValueError("Receipt message id is required")
        raw_body = receipt.raw_body
        if raw_body is not None and len(raw_body) > self._settings.max_body_chars:
            raw_body = raw_body[: self._settings.max_body_chars]
        created_at = receipt.created_at or utcnow()
        try:
            with self._connection:
                cur = self._connection.execute(
                    """
                    INSERT INTO receipts (
                        connection_id,
                        user_id,
                        message_id,
                        sender,
                        sender_name,
                        subject,
                        received_at,
                        raw_body,
                        parsed,
                        parsing_confidence,
                        merchant_name,
                        amount,
                        currency,
                        billing_cycle,
                        next_charge_date,
                        receipt_type,
                        signals,
                        reconciliation,
                        candidate_id,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(connection_id, message_id) DO NOTHING
                    RETURNING *
                    """,
                    (
                        receipt.connection_id,
                        receipt.user_id,
                        receipt.message_id,
                        receipt.sender,
                        receipt.sender_name,
                        receipt.subject,
                        serialize_datetime(receipt.received_at),
                        raw_body,
                        1 if receipt.parsed else 0,
                        receipt.parsing_confidence,
                        receipt.merchant_name,
                        receipt.amount,
                        receipt.currency,
                        receipt.billing_cycle,
                        serialize_datetime(receipt.next_charge_date),
                        receipt.receipt_type,
                        json.dumps(list(receipt.signals)),
                        receipt.reconciliation,
                        receipt.candidate_id,
                        serialize_datetime(created_at),
                    ),
                )
                row = cur.fetchone()
        except sqlite3.IntegrityError as exc:
            LOGGER.error(
                "Database integrity error persisting message %s: %s",
                receipt.message_id,
                exc,
                exc_info=True,
            )
            raise ValueError(
                f"Failed to persist message {receipt.message_id}: {exc}"
            ) from exc
        except sqlite3.OperationalError as exc:
            LOGGER.error(
                "Database operational error persisting message %s: %s",
                receipt.message_id,
                exc,
                exc_info=True,
            )
            raise ValueError(
                f"Database error persisting message {receipt.message_id}: {exc}"
            ) from exc
        if row is None:
            LOGGER.debug("Message %s already stored, skipping", receipt.message_id)
            return None
        return _row_to_receipt(row)

    def fetch_receipt(self, connection_id: int, message_id: str) -> Receipt | None:
        """Return the stored receipt for a provider message."""
        cur = self._connection.execute(
            "SELECT * FROM receipts WHERE connection_id = ? AND message_id = ?",
            (connection_id, message_id),
        )
        row = cur.fetchone()
        return _row_to_receipt(row) if row is not None else None

    def list_receipts(
        self,
        connection_id: int,
        *,
        parsed: bool | None = None,
        limit: int | None = None,
    ) -> list[Receipt]:
        """Return receipts for a connection, newest first."""
        clauses = ["connection_id = ?"]
        params: list[Any] = [connection_id]
        if parsed is not None:
            clauses.append("parsed = ?")
            params.append(1 if parsed else 0)
        query = (
            f"SELECT * FROM receipts WHERE {' AND '.join(clauses)} "
            "ORDER BY received_at DESC, id DESC"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cur = self._connection.execute(query, params)
        return [_row_to_receipt(row) for row in cur.fetchall()]

    def update_receipt_parse(self, receipt_id: int, parsed: ParsedReceipt) -> Receipt:
        """Replace the parsed fields of a stored receipt with a fresh result."""
        with self._connection:
            cur = self._connection.execute(
                """
                UPDATE receipts SET
                    parsed = ?,
                    parsing_confidence = ?,
                    merchant_name = ?,
                    amount = ?,
                    currency = ?,
                    billing_cycle = ?,
                    next_charge_date = ?,
                    receipt_type = ?,
                    signals = ?
                WHERE id = ?
                RETURNING *
                """,
                (
                    1 if parsed.parsed else 0,
                    parsed.confidence,
                    parsed.merchant_name,
                    parsed.amount,
                    parsed.currency,
                    parsed.billing_cycle,
                    serialize_datetime(parsed.next_charge_date),
                    parsed.receipt_type,
                    json.dumps(list(parsed.signals)),
                    receipt_id,
                ),
            )
            row = cur.fetchone()
        if row is None:
            raise ValueError(f"Receipt {receipt_id} does not exist")
        return _row_to_receipt(row)

    def mark_receipt_reconciled(
        self, receipt_id: int, reconciliation: str, candidate_id: int | None
    ) -> None:
        """Record the reconcile outcome on a receipt."""
        with self._connection:
            self._connection.execute(
                "UPDATE receipts SET reconciliation = ?, candidate_id = ? WHERE id = ?",
                (reconciliation, candidate_id, receipt_id),
            )

    def receipt_stats(self, connection_id: int) -> ReceiptStats:
        """Return parsed and unparsed counters for a connection."""
        cur = self._connection.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(parsed), 0) AS parsed,
                COALESCE(SUM(CASE WHEN candidate_id IS NOT NULL THEN 1 ELSE 0 END), 0)
                    AS with_candidate
            FROM receipts
            WHERE connection_id = ?
            """,
            (connection_id,),
        )
        row = cur.fetchone()
        total = int(row["total"])
        parsed = int(row["parsed"])
        return ReceiptStats(
            total=total,
            parsed=parsed,
            unparsed=total - parsed,
            with_candidate=int(row["with_candidate"]),
        )

    def delete_all_receipts(self) -> int:
        """Delete every stored receipt, returning the number removed."""
        with self._connection:
            cur = self._connection.execute("DELETE FROM receipts")
        LOGGER.info("Purged %s receipts", cur.rowcount)
        return cur.rowcount

    # Candidates --------------------------------------------------------------
    def list_candidates(
        self, user_id: str, *, status: str | None = None
    ) -> list[DetectionCandidate]:
        """Return candidates for a user, oldest first."""
        if status is None:
            cur = self._connection.execute(
                "SELECT * FROM detection_candidates WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
        else:
            cur = self._connection.execute(
                """
                SELECT * FROM detection_candidates
                WHERE user_id = ? AND status = ?
                ORDER BY id
                """,
                (user_id, status),
            )
        return [_row_to_candidate(row) for row in cur.fetchall()]

    def fetch_candidate(self, candidate_id: int) -> DetectionCandidate | None:
        """Return one candidate by id."""
        cur = self._connection.execute(
            "SELECT * FROM detection_candidates WHERE id = ?", (candidate_id,)
        )
        row = cur.fetchone()
        return _row_to_candidate(row) if row is not None else None

    def insert_candidate(self, candidate: DetectionCandidate) -> DetectionCandidate:
        """Persist a new candidate and return it with its id."""
        now = utcnow()
        with self._connection:
            cur = self._connection.execute(
                """
                INSERT INTO detection_candidates (
                    user_id,
                    proposed_name,
                    proposed_amount,
                    proposed_currency,
                    proposed_cadence,
                    proposed_next_billing,
                    confidence,
                    detection_reason,
                    source,
                    status,
                    evidence,
                    last_evidence_at,
                    accepted_subscription_id,
                    created_at,
                    updated_at,
                    reviewed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    candidate.user_id,
                    candidate.proposed_name,
                    candidate.proposed_amount,
                    candidate.proposed_currency,
                    candidate.proposed_cadence,
                    serialize_datetime(candidate.proposed_next_billing),
                    candidate.confidence,
                    candidate.detection_reason,
                    candidate.source,
                    candidate.status,
                    _encode_evidence(candidate.evidence),
                    serialize_datetime(candidate.last_evidence_at),
                    candidate.accepted_subscription_id,
                    serialize_datetime(candidate.created_at or now),
                    serialize_datetime(now),
                    serialize_datetime(candidate.reviewed_at),
                ),
            )
            row = cur.fetchone()
        return _row_to_candidate(row)

    def update_candidate(self, candidate: DetectionCandidate) -> DetectionCandidate:
        """Persist all mutable fields of an existing candidate."""
        if candidate.id is None:
            raise ValueError("Candidate id is required for updates")
        with self._connection:
            cur = self._connection.execute(
                """
                UPDATE detection_candidates SET
                    proposed_name = ?,
                    proposed_amount = ?,
                    proposed_currency = ?,
                    proposed_cadence = ?,
                    proposed_next_billing = ?,
                    confidence = ?,
                    detection_reason = ?,
                    source = ?,
                    status = ?,
                    evidence = ?,
                    last_evidence_at = ?,
                    accepted_subscription_id = ?,
                    updated_at = ?,
                    reviewed_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (
                    candidate.proposed_name,
                    candidate.proposed_amount,
                    candidate.proposed_currency,
                    candidate.proposed_cadence,
                    serialize_datetime(candidate.proposed_next_billing),
                    candidate.confidence,
                    candidate.detection_reason,
                    candidate.source,
                    candidate.status,
                    _encode_evidence(candidate.evidence),
                    serialize_datetime(candidate.last_evidence_at),
                    candidate.accepted_subscription_id,
                    serialize_datetime(utcnow()),
                    serialize_datetime(candidate.reviewed_at),
                    candidate.id,
                ),
            )
            row = cur.fetchone()
        if row is None:
            raise ValueError(f"Candidate {candidate.id} does not exist")
        return _row_to_candidate(row)

    # Subscriptions -----------------------------------------------------------
    def list_subscriptions(
        self, user_id: str, *, active_only: bool = True
    ) -> list[Subscription]:
        """Return tracked subscriptions for a user."""
        query = "SELECT * FROM subscriptions WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        cur = self._connection.execute(query + " ORDER BY id", (user_id,))
        return [_row_to_subscription(row) for row in cur.fetchall()]

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Persist a subscription and return it with its id."""
        with self._connection:
            cur = self._connection.execute(
                """
                INSERT INTO subscriptions (
                    user_id,
                    name,
                    amount,
                    currency,
                    billing_cycle,
                    next_billing_date,
                    is_active,
                    source,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    subscription.user_id,
                    subscription.name,
                    subscription.amount,
                    subscription.currency,
                    subscription.billing_cycle,
                    serialize_datetime(subscription.next_billing_date),
                    1 if subscription.is_active else 0,
                    subscription.source,
                    serialize_datetime(subscription.created_at or utcnow()),
                ),
            )
            row = cur.fetchone()
        return _row_to_subscription(row)

    # Quota usage -------------------------------------------------------------
    def quota_usage(self, user_id: str) -> int:
        """Return consumed connection quota units for a user."""
        cur = self._connection.execute(
            "SELECT connections_used FROM quota_usage WHERE user_id = ?", (user_id,)
        )
        row = cur.fetchone()
        return int(row[0]) if row else 0

    def increment_quota_usage(self, user_id: str, at: datetime) -> int:
        """Add one consumed unit and return the new total."""
        with self._connection:
            cur = self._connection.execute(
                """
                INSERT INTO quota_usage (user_id, connections_used, updated_at)
                VALUES (?, 1, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    connections_used = connections_used + 1,
                    updated_at = excluded.updated_at
                RETURNING connections_used
                """,
                (user_id, serialize_datetime(at)),
            )
            row = cur.fetchone()
        return int(row[0])

    def ping(self) -> bool:
        """Return ``True`` when the underlying connection answers a query."""
        try:
            self._connection.execute("SELECT 1")
        except sqlite3.Error:
            return False
        return True

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            try:
                with self._connection:
                    self._connection.executescript(script)
            except sqlite3.Error as exc:
                LOGGER.error(
                    "Migration %s failed: %s", migration.name, exc, exc_info=True
                )
                raise ValueError(f"Migration {migration.name} failed: {exc}") from exc


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _encode_evidence(evidence: CandidateEvidence) -> str:
    payload = asdict(evidence)
    if isinstance(evidence, EmailEvidence):
        payload["received_dates"] = [
            serialize_datetime(value) for value in evidence.received_dates
        ]
    return json.dumps(payload)


def _decode_evidence(raw: str) -> CandidateEvidence:
    payload = json.loads(raw)
    source = payload.get("source")
    if source == "email":
        return EmailEvidence(
            receipt_ids=tuple(int(item) for item in payload.get("receipt_ids", ())),
            message_ids=tuple(payload.get("message_ids", ())),
            senders=tuple(payload.get("senders", ())),
            subjects=tuple(payload.get("subjects", ())),
            received_dates=tuple(
                cast(datetime, parse_datetime(value))
                for value in payload.get("received_dates", ())
            ),
        )
    if source == "bank":
        return BankEvidence(transaction_ids=tuple(payload.get("transaction_ids", ())))
    if source == "manual":
        return ManualEvidence(note=payload.get("note"))
    raise ValueError(f"Unknown evidence source: {source!r}")


def _row_to_connection(row: sqlite3.Row) -> Connection:
    return Connection(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        external_account=row["external_account"],
        auth_handle=row["auth_handle"],
        status=row["status"],
        scan_status=row["scan_status"],
        cursor=row["cursor"],
        last_synced_at=parse_datetime(row["last_synced_at"]),
        total_emails_scanned=row["total_emails_scanned"],
        total_receipts_found=row["total_receipts_found"],
        total_message_errors=row["total_message_errors"],
        ai_processing_status=row["ai_processing_status"],
        ai_processed_count=row["ai_processed_count"],
        ai_total_count=row["ai_total_count"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        scan_heartbeat_at=parse_datetime(row["scan_heartbeat_at"]),
        quota_consumed=bool(row["quota_consumed"]),
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_receipt(row: sqlite3.Row) -> Receipt:
    return Receipt(
        id=row["id"],
        connection_id=row["connection_id"],
        user_id=row["user_id"],
        message_id=row["message_id"],
        sender=row["sender"],
        sender_name=row["sender_name"],
        subject=row["subject"],
        received_at=cast(datetime, parse_datetime(row["received_at"])),
        raw_body=row["raw_body"],
        parsed=bool(row["parsed"]),
        parsing_confidence=float(row["parsing_confidence"]),
        merchant_name=row["merchant_name"],
        amount=row["amount"],
        currency=row["currency"],
        billing_cycle=row["billing_cycle"],
        next_charge_date=parse_datetime(row["next_charge_date"]),
        receipt_type=row["receipt_type"],
        signals=tuple(json.loads(row["signals"] or "[]")),
        reconciliation=row["reconciliation"],
        candidate_id=row["candidate_id"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_candidate(row: sqlite3.Row) -> DetectionCandidate:
    return DetectionCandidate(
        id=row["id"],
        user_id=row["user_id"],
        proposed_name=row["proposed_name"],
        proposed_amount=float(row["proposed_amount"]),
        proposed_currency=row["proposed_currency"],
        proposed_cadence=row["proposed_cadence"],
        proposed_next_billing=parse_datetime(row["proposed_next_billing"]),
        confidence=float(row["confidence"]),
        detection_reason=row["detection_reason"],
        evidence=_decode_evidence(row["evidence"]),
        status=row["status"],
        last_evidence_at=parse_datetime(row["last_evidence_at"]),
        accepted_subscription_id=row["accepted_subscription_id"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
        reviewed_at=parse_datetime(row["reviewed_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        amount=float(row["amount"]),
        currency=row["currency"],
        billing_cycle=row["billing_cycle"],
        next_billing_date=parse_datetime(row["next_billing_date"]),
        is_active=bool(row["is_active"]),
        source=row["source"],
        created_at=parse_datetime(row["created_at"]),
    )


__all__ = ["SqliteScanRepository"]
