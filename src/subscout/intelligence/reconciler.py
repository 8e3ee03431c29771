"""Fold parsed receipts into detection candidates without duplicates."""

from __future__ import annotations

import logging
import statistics
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from ..core.config import DetectionSettings
from ..core.datetime_utils import add_period, utcnow
from ..core.interfaces import ScanRepository
from ..core.models import (
    BillingCycle,
    DetectionCandidate,
    EmailEvidence,
    Receipt,
    ReconcileOutcome,
    Subscription,
)
from .merchants import MerchantDirectory, StaticMerchantDirectory

LOGGER = logging.getLogger(__name__)

# Receipts of these types describe an ending or unpaid subscription.
NON_CANDIDATE_TYPES = frozenset(
    {"cancellation", "trial_started", "trial_ending", "payment_failed"}
)


def cadences_compatible(left: str | None, right: str | None) -> bool:
    """Return ``True`` when two cadences could describe the same subscription."""
    if not left or not right or left == "unknown" or right == "unknown":
        return True
    return left == right


# Accepted median spacing in days, and the nominal period, per cadence.
_INTERVAL_WINDOWS: tuple[tuple[BillingCycle, float, float, float], ...] = (
    ("weekly", 6.0, 8.0, 7.0),
    ("monthly", 25.0, 35.0, 30.0),
    ("quarterly", 85.0, 95.0, 91.0),
    ("yearly", 350.0, 380.0, 365.0),
)


@dataclass(frozen=True, slots=True)
class BillingPattern:
    """Cadence implied by the spacing of a merchant's receipts."""

    cadence: BillingCycle
    median_days: float
    regularity: float
    receipts: int

    @property
    def confidence(self) -> float:
        """Score the pattern: regular spacing first, then sheer repetition."""
        score = self.regularity * 0.7
        if self.receipts >= 3:
            score += 0.15
        if self.receipts >= 5:
            score += 0.1
        return min(1.0, score)


def infer_billing_pattern(dates: Iterable[datetime]) -> BillingPattern | None:
    """Infer a cadence from the median interval between receipt dates.

    Returns ``None`` for fewer than two distinct dates or when the median
    interval matches no known cadence.
    """
    ordered = sorted(set(dates))
    if len(ordered) < 2:
        return None
    intervals = [
        (later - earlier).total_seconds() / 86400
        for earlier, later in zip(ordered, ordered[1:])
    ]
    median = statistics.median(intervals)
    for cadence, low, high, expected in _INTERVAL_WINDOWS:
        if low <= median <= high:
            regularity = sum(
                max(0.0, 1 - abs(interval - expected) / expected)
                for interval in intervals
            ) / len(intervals)
            return BillingPattern(cadence, median, regularity, len(ordered))
    return None


class CandidateReconciler:
    """Create, merge or ignore detection candidates for parsed receipts."""

    def __init__(
        self,
        repository: ScanRepository,
        settings: DetectionSettings,
        directory: MerchantDirectory | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._directory = directory or StaticMerchantDirectory()
        self._clock = clock

    def reconcile(self, user_id: str, receipt: Receipt) -> ReconcileOutcome:
        """Decide what ``receipt`` means for the user's candidates.

        The outcome is also recorded on the receipt so an interrupted scan
        can tell which receipts still need reconciling.
        """
        if receipt.id is None:
            raise ValueError("Receipt must be persisted before reconciling")
        with _user_lock(user_id):
            outcome = self._decide(user_id, receipt)
        self._repository.mark_receipt_reconciled(
            receipt.id, outcome.action, outcome.candidate_id
        )
        level = logging.INFO if outcome.action != "ignored" else logging.DEBUG
        LOGGER.log(
            level,
            "Receipt %s for user %s %s (%s)",
            receipt.message_id,
            user_id,
            outcome.action,
            outcome.reason,
        )
        return outcome

    # Internal helpers ---------------------------------------------------------
    def _decide(self, user_id: str, receipt: Receipt) -> ReconcileOutcome:
        # pylint: disable=too-many-return-statements
        if not receipt.parsed:
            return ReconcileOutcome("ignored", "not_parsed")
        if receipt.parsing_confidence < self._settings.min_confidence:
            return ReconcileOutcome("ignored", "low_confidence")
        if not receipt.merchant_name or receipt.amount is None:
            return ReconcileOutcome("ignored", "incomplete")
        if receipt.receipt_type in NON_CANDIDATE_TYPES:
            return ReconcileOutcome("ignored", f"receipt_type:{receipt.receipt_type}")

        candidates = self._repository.list_candidates(user_id)
        for candidate in candidates:
            evidence = candidate.evidence
            if isinstance(evidence, EmailEvidence) and (
                receipt.id in evidence.receipt_ids
            ):
                return ReconcileOutcome("ignored", "already_in_evidence", candidate.id)

        merchant_name, amount = receipt.merchant_name, receipt.amount
        key = self._directory.canonical_key(merchant_name)
        cadence = receipt.billing_cycle or "unknown"

        tracked = self._matching_subscription(
            self._repository.list_subscriptions(user_id), key, receipt, amount
        )
        if tracked is not None:
            return ReconcileOutcome("ignored", f"tracked_subscription:{tracked.id}")

        related = [
            candidate
            for candidate in candidates
            if self._directory.canonical_key(candidate.proposed_name) == key
            and cadences_compatible(candidate.proposed_cadence, cadence)
        ]
        pending = next((c for c in related if c.status == "pending"), None)
        if pending is not None:
            merged = self._repository.update_candidate(self._merge(pending, receipt))
            return ReconcileOutcome("merged", "pending_candidate", merged.id)

        dismissed = [c.confidence for c in related if c.status == "dismissed"]
        if dismissed:
            threshold = max(dismissed) + self._settings.redetect_margin
            if receipt.parsing_confidence < threshold:
                return ReconcileOutcome("ignored", "dismissed_candidate")

        created = self._repository.insert_candidate(
            self._new_candidate(user_id, receipt, merchant_name, amount)
        )
        return ReconcileOutcome("created", "new_candidate", created.id)

    def _matching_subscription(
        self,
        subscriptions: Iterable[Subscription],
        key: str,
        receipt: Receipt,
        amount: float,
    ) -> Subscription | None:
        for subscription in subscriptions:
            if self._directory.canonical_key(subscription.name) != key:
                continue
            if not cadences_compatible(
                subscription.billing_cycle, receipt.billing_cycle
            ):
                continue
            if subscription.currency.upper() != (receipt.currency or "").upper():
                continue
            tolerance = max(
                abs(subscription.amount) * self._settings.amount_tolerance_pct,
                self._settings.minor_unit_tolerance,
            )
            if abs(subscription.amount - amount) <= tolerance + 1e-9:
                return subscription
        return None

    def _new_candidate(
        self, user_id: str, receipt: Receipt, merchant_name: str, amount: float
    ) -> DetectionCandidate:
        return DetectionCandidate(
            id=None,
            user_id=user_id,
            proposed_name=merchant_name,
            proposed_amount=amount,
            proposed_currency=receipt.currency or "USD",
            proposed_cadence=receipt.billing_cycle or "unknown",
            proposed_next_billing=receipt.next_charge_date,
            confidence=receipt.parsing_confidence,
            detection_reason=_describe(receipt.signals) or "email receipt",
            evidence=EmailEvidence(
                receipt_ids=(receipt.id,) if receipt.id is not None else (),
                message_ids=(receipt.message_id,),
                senders=(receipt.sender,),
                subjects=(receipt.subject,),
                received_dates=(receipt.received_at,),
            ),
            last_evidence_at=receipt.received_at,
            created_at=self._clock(),
        )

    def _merge(
        self, candidate: DetectionCandidate, receipt: Receipt
    ) -> DetectionCandidate:
        evidence = candidate.evidence
        if isinstance(evidence, EmailEvidence) and receipt.id is not None:
            evidence = EmailEvidence(
                receipt_ids=(*evidence.receipt_ids, receipt.id),
                message_ids=(*evidence.message_ids, receipt.message_id),
                senders=_append_unique(evidence.senders, receipt.sender),
                subjects=(*evidence.subjects, receipt.subject),
                received_dates=(*evidence.received_dates, receipt.received_at),
            )
        merged = replace(
            candidate,
            confidence=max(candidate.confidence, receipt.parsing_confidence),
            evidence=evidence,
            detection_reason=_merge_reasons(
                candidate.detection_reason, receipt.signals
            ),
        )
        newer = (
            candidate.last_evidence_at is None
            or receipt.received_at > candidate.last_evidence_at
        )
        if newer and receipt.amount is not None:
            merged.proposed_amount = receipt.amount
            merged.proposed_currency = receipt.currency or merged.proposed_currency
            if receipt.next_charge_date is not None:
                merged.proposed_next_billing = receipt.next_charge_date
            merged.last_evidence_at = receipt.received_at
        if merged.proposed_cadence == "unknown" and receipt.billing_cycle:
            merged.proposed_cadence = receipt.billing_cycle
        if isinstance(evidence, EmailEvidence):
            _apply_billing_pattern(merged, evidence.received_dates)
        return merged


def _apply_billing_pattern(
    candidate: DetectionCandidate, dates: tuple[datetime, ...]
) -> None:
    """Fill cadence and next billing from receipt spacing when it is regular."""
    pattern = infer_billing_pattern(dates)
    if pattern is None:
        return
    if candidate.proposed_cadence == "unknown":
        candidate.proposed_cadence = pattern.cadence
    elif candidate.proposed_cadence != pattern.cadence:
        return
    latest = max(dates)
    stale = candidate.proposed_next_billing is None or (
        candidate.proposed_next_billing <= latest
    )
    if stale:
        candidate.proposed_next_billing = add_period(latest, pattern.cadence)
    candidate.confidence = max(candidate.confidence, pattern.confidence)
    candidate.detection_reason = _merge_reasons(
        candidate.detection_reason, (f"interval:{pattern.cadence}",)
    )


_LOCKS: dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def _user_lock(user_id: str) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _LOCKS.get(user_id)
        if lock is None:
            lock = _LOCKS[user_id] = threading.Lock()
        return lock


def _describe(signals: Iterable[str]) -> str:
    return ", ".join(signals)


def _merge_reasons(existing: str, signals: Iterable[str]) -> str:
    parts = [part.strip() for part in existing.split(",") if part.strip()]
    for signal in signals:
        if signal not in parts:
            parts.append(signal)
    return ", ".join(parts)


def _append_unique(values: tuple[str, ...], value: str) -> tuple[str, ...]:
    return values if value in values else (*values, value)


__all__ = [
    "BillingPattern",
    "CandidateReconciler",
    "NON_CANDIDATE_TYPES",
    "cadences_compatible",
    "infer_billing_pattern",
]
