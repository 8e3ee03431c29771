"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

ConnectionStatus = Literal["active", "error", "disconnected"]
ScanStatus = Literal["not_started", "in_progress", "completed", "error"]
ProcessingStatus = Literal["idle", "processing", "completed", "error"]
BillingCycle = Literal["weekly", "monthly", "quarterly", "yearly", "unknown"]
ReceiptType = Literal[
    "new_subscription",
    "renewal",
    "cancellation",
    "price_change",
    "trial_started",
    "trial_ending",
    "payment_failed",
    "unknown",
]
CandidateSource = Literal["email", "bank", "manual"]
CandidateStatus = Literal["pending", "accepted", "dismissed"]
ReconcileAction = Literal["created", "merged", "ignored"]
ScanOutcome = Literal[
    "completed",
    "paused",
    "error",
    "cancelled",
    "rejected",
    "quota_exceeded",
]

CONNECTION_STATUSES: tuple[ConnectionStatus, ...] = ("active", "error", "disconnected")
SCAN_STATUSES: tuple[ScanStatus, ...] = (
    "not_started",
    "in_progress",
    "completed",
    "error",
)
CANDIDATE_STATUSES: tuple[CandidateStatus, ...] = ("pending", "accepted", "dismissed")


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Connection:
    """Link between a user and one external mail account."""

    id: int | None
    user_id: str
    provider: str
    external_account: str
    auth_handle: str
    status: ConnectionStatus = "active"
    scan_status: ScanStatus = "not_started"
    cursor: str | None = None
    last_synced_at: datetime | None = None
    total_emails_scanned: int = 0
    total_receipts_found: int = 0
    total_message_errors: int = 0
    ai_processing_status: ProcessingStatus = "idle"
    ai_processed_count: int = 0
    ai_total_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    scan_heartbeat_at: datetime | None = None
    quota_consumed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class MessagePage:
    """One page of provider message ids plus the cursor to resume after it."""

    message_ids: tuple[str, ...]
    next_cursor: str | None
    has_more: bool


@dataclass(slots=True)
class RawMessage:
    """Provider message reduced to the fields the receipt parser inspects."""

    message_id: str
    sender: str
    sender_name: str | None
    subject: str
    received_at: datetime
    body: str


@dataclass(slots=True)
class ParsedReceipt:
    """Outcome of running the receipt heuristics over a message."""

    message_id: str
    parsed: bool
    confidence: float
    merchant_name: str | None = None
    amount: float | None = None
    currency: str | None = None
    billing_cycle: BillingCycle | None = None
    next_charge_date: datetime | None = None
    receipt_type: ReceiptType | None = None
    signals: tuple[str, ...] = ()


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Receipt:
    """Stored representation of one ingested provider message."""

    id: int | None
    connection_id: int
    user_id: str
    message_id: str
    sender: str
    subject: str
    received_at: datetime
    raw_body: str | None
    parsed: bool
    parsing_confidence: float
    sender_name: str | None = None
    merchant_name: str | None = None
    amount: float | None = None
    currency: str | None = None
    billing_cycle: BillingCycle | None = None
    next_charge_date: datetime | None = None
    receipt_type: ReceiptType | None = None
    signals: tuple[str, ...] = ()
    reconciliation: str | None = None
    candidate_id: int | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class EmailEvidence:
    """Receipts backing an email-sourced candidate."""

    receipt_ids: tuple[int, ...] = ()
    message_ids: tuple[str, ...] = ()
    senders: tuple[str, ...] = ()
    subjects: tuple[str, ...] = ()
    received_dates: tuple[datetime, ...] = ()
    source: Literal["email"] = "email"


@dataclass(slots=True)
class BankEvidence:
    """Bank transactions backing a bank-sourced candidate."""

    transaction_ids: tuple[str, ...] = ()
    source: Literal["bank"] = "bank"


@dataclass(slots=True)
class ManualEvidence:
    """Free-form note recorded for a manually proposed candidate."""

    note: str | None = None
    source: Literal["manual"] = "manual"


CandidateEvidence = EmailEvidence | BankEvidence | ManualEvidence


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class DetectionCandidate:
    """Proposed subscription awaiting user review."""

    id: int | None
    user_id: str
    proposed_name: str
    proposed_amount: float
    proposed_currency: str
    proposed_cadence: BillingCycle
    proposed_next_billing: datetime | None
    confidence: float
    detection_reason: str
    evidence: CandidateEvidence
    status: CandidateStatus = "pending"
    last_evidence_at: datetime | None = None
    accepted_subscription_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    reviewed_at: datetime | None = None

    @property
    def source(self) -> CandidateSource:
        """Origin of the evidence behind this candidate."""
        return self.evidence.source


@dataclass(slots=True)
class Subscription:
    """Subscription already tracked for a user."""

    id: int | None
    user_id: str
    name: str
    amount: float
    currency: str
    billing_cycle: BillingCycle
    next_billing_date: datetime | None = None
    is_active: bool = True
    source: str = "manual"
    created_at: datetime | None = None


@dataclass(slots=True)
class ReconcileOutcome:
    """Decision taken by the reconciler for one receipt."""

    action: ReconcileAction
    reason: str
    candidate_id: int | None = None


@dataclass(slots=True)
class ScanReport:
    """Outcome summary for one orchestrated scan of a connection."""

    connection_id: int
    outcome: ScanOutcome
    pages: int = 0
    emails_scanned: int = 0
    receipts_found: int = 0
    candidates_created: int = 0
    candidates_merged: int = 0
    message_errors: int = 0
    error_code: str | None = None
    error_message: str | None = None
    reason: str | None = None
    outcomes: list[ReconcileOutcome] = field(default_factory=list)


@dataclass(slots=True)
class ReceiptStats:
    """Parsed/unparsed counters for audit views."""

    total: int
    parsed: int
    unparsed: int
    with_candidate: int


@dataclass(slots=True)
class ReparseReport:
    """Summary of a re-parse pass over stored receipts."""

    connection_id: int
    processed: int = 0
    changed: int = 0
    newly_parsed: int = 0
    candidates_created: int = 0
    candidates_merged: int = 0
    errors: int = 0


__all__ = [
    "BankEvidence",
    "BillingCycle",
    "CANDIDATE_STATUSES",
    "CONNECTION_STATUSES",
    "CandidateEvidence",
    "CandidateSource",
    "CandidateStatus",
    "Connection",
    "ConnectionStatus",
    "DetectionCandidate",
    "EmailEvidence",
    "ManualEvidence",
    "MessagePage",
    "ParsedReceipt",
    "ProcessingStatus",
    "RawMessage",
    "Receipt",
    "ReceiptStats",
    "ReceiptType",
    "ReconcileAction",
    "ReconcileOutcome",
    "ReparseReport",
    "SCAN_STATUSES",
    "ScanOutcome",
    "ScanReport",
    "ScanStatus",
    "Subscription",
]
