"""Tests for folding receipts into detection candidates."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from subscout.core.config import DetectionSettings, StorageSettings
from subscout.core.models import (
    DetectionCandidate,
    EmailEvidence,
    Receipt,
    Subscription,
)
from subscout.intelligence import CandidateReconciler
from subscout.intelligence.reconciler import infer_billing_pattern
from subscout.storage import SqliteScanRepository

MARCH = datetime(2025, 3, 1, tzinfo=UTC)
APRIL = datetime(2025, 4, 1, tzinfo=UTC)


@pytest.fixture(name="repository")
def repository_fixture(tmp_path: Path) -> Iterator[SqliteScanRepository]:
    settings = StorageSettings(db_path=tmp_path / "subscout.db")
    with SqliteScanRepository(settings) as repository:
        repository.upsert_connection("u1", "gmail", "me@gmail.com", "h1")
        yield repository


@pytest.fixture(name="reconciler")
def reconciler_fixture(repository: SqliteScanRepository) -> CandidateReconciler:
    return CandidateReconciler(repository, DetectionSettings(), clock=lambda: APRIL)


def _store(
    repository: SqliteScanRepository, message_id: str, **fields: object
) -> Receipt:
    values: dict[str, object] = {
        "id": None,
        "connection_id": 1,
        "user_id": "u1",
        "message_id": message_id,
        "sender": "info@netflix.com",
        "subject": "Your Netflix receipt",
        "received_at": MARCH,
        "raw_body": "Amount charged: $15.49",
        "parsed": True,
        "parsing_confidence": 0.8,
        "merchant_name": "Netflix",
        "amount": 15.49,
        "currency": "USD",
        "billing_cycle": "monthly",
        "receipt_type": "renewal",
        "signals": ("known merchant", "amount"),
    }
    values.update(fields)
    stored = repository.insert_receipt(Receipt(**values))  # type: ignore[arg-type]
    assert stored is not None
    return stored


def _dismissed(repository: SqliteScanRepository, confidence: float) -> None:
    repository.insert_candidate(
        DetectionCandidate(
            id=None,
            user_id="u1",
            proposed_name="Netflix",
            proposed_amount=15.49,
            proposed_currency="USD",
            proposed_cadence="monthly",
            proposed_next_billing=None,
            confidence=confidence,
            detection_reason="known merchant",
            evidence=EmailEvidence(),
            status="dismissed",
        )
    )


def test_first_receipt_creates_candidate(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    receipt = _store(repository, "m1")

    outcome = reconciler.reconcile("u1", receipt)

    assert outcome.action == "created"
    assert outcome.reason == "new_candidate"
    (candidate,) = repository.list_candidates("u1")
    assert candidate.id == outcome.candidate_id
    assert candidate.proposed_name == "Netflix"
    assert candidate.proposed_amount == pytest.approx(15.49)
    assert candidate.proposed_cadence == "monthly"
    assert candidate.confidence == pytest.approx(0.8)
    assert candidate.source == "email"
    assert candidate.detection_reason == "known merchant, amount"
    assert candidate.evidence == EmailEvidence(
        receipt_ids=(receipt.id,),
        message_ids=("m1",),
        senders=("info@netflix.com",),
        subjects=("Your Netflix receipt",),
        received_dates=(MARCH,),
    )
    marked = repository.fetch_receipt(1, "m1")
    assert marked is not None
    assert marked.reconciliation == "created"
    assert marked.candidate_id == candidate.id


def test_price_change_merges_into_pending_candidate(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    first = _store(repository, "m1")
    second = _store(
        repository,
        "m2",
        amount=17.99,
        received_at=APRIL,
        parsing_confidence=0.7,
        receipt_type="price_change",
        signals=("price change",),
    )

    reconciler.reconcile("u1", first)
    outcome = reconciler.reconcile("u1", second)

    assert outcome.action == "merged"
    (candidate,) = repository.list_candidates("u1")
    assert candidate.proposed_amount == pytest.approx(17.99)
    assert candidate.confidence == pytest.approx(0.8)
    assert candidate.last_evidence_at == APRIL
    assert candidate.detection_reason == (
        "known merchant, amount, price change, interval:monthly"
    )
    assert candidate.proposed_next_billing == datetime(2025, 5, 1, tzinfo=UTC)
    assert isinstance(candidate.evidence, EmailEvidence)
    assert candidate.evidence.receipt_ids == (first.id, second.id)
    assert candidate.evidence.senders == ("info@netflix.com",)


def test_older_receipt_does_not_override_amount(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    newer = _store(repository, "m2", amount=17.99, received_at=APRIL)
    older = _store(repository, "m1", received_at=MARCH)

    reconciler.reconcile("u1", newer)
    outcome = reconciler.reconcile("u1", older)

    assert outcome.action == "merged"
    (candidate,) = repository.list_candidates("u1")
    assert candidate.proposed_amount == pytest.approx(17.99)
    assert candidate.last_evidence_at == APRIL


def test_same_receipt_is_not_counted_twice(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    receipt = _store(repository, "m1")

    reconciler.reconcile("u1", receipt)
    outcome = reconciler.reconcile("u1", receipt)

    assert outcome.action == "ignored"
    assert outcome.reason == "already_in_evidence"
    (candidate,) = repository.list_candidates("u1")
    assert isinstance(candidate.evidence, EmailEvidence)
    assert candidate.evidence.receipt_ids == (receipt.id,)


@pytest.mark.parametrize(
    "receipt_type",
    ["cancellation", "trial_started", "trial_ending", "payment_failed"],
)
def test_non_billing_receipts_never_create_candidates(
    repository: SqliteScanRepository,
    reconciler: CandidateReconciler,
    receipt_type: str,
) -> None:
    receipt = _store(repository, "m1", receipt_type=receipt_type)

    outcome = reconciler.reconcile("u1", receipt)

    assert outcome.action == "ignored"
    assert outcome.reason == f"receipt_type:{receipt_type}"
    assert repository.list_candidates("u1") == []


@pytest.mark.parametrize(
    ("fields", "reason"),
    [
        ({"parsed": False, "parsing_confidence": 0.2}, "not_parsed"),
        ({"parsing_confidence": 0.45}, "low_confidence"),
        ({"amount": None}, "incomplete"),
        ({"merchant_name": None}, "incomplete"),
    ],
)
def test_weak_receipts_are_ignored(
    repository: SqliteScanRepository,
    reconciler: CandidateReconciler,
    fields: dict[str, object],
    reason: str,
) -> None:
    receipt = _store(repository, "m1", **fields)

    outcome = reconciler.reconcile("u1", receipt)

    assert outcome.action == "ignored"
    assert outcome.reason == reason
    assert repository.list_candidates("u1") == []


def test_tracked_subscription_suppresses_candidate(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    subscription = repository.insert_subscription(
        Subscription(
            id=None,
            user_id="u1",
            name="NETFLIX.COM",
            amount=15.00,
            currency="usd",
            billing_cycle="monthly",
        )
    )
    receipt = _store(repository, "m1")

    outcome = reconciler.reconcile("u1", receipt)

    assert outcome.action == "ignored"
    assert outcome.reason == f"tracked_subscription:{subscription.id}"
    assert repository.list_candidates("u1") == []


def test_subscription_outside_tolerance_does_not_match(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    repository.insert_subscription(
        Subscription(
            id=None,
            user_id="u1",
            name="Netflix",
            amount=9.99,
            currency="USD",
            billing_cycle="monthly",
        )
    )
    receipt = _store(repository, "m1")

    outcome = reconciler.reconcile("u1", receipt)

    assert outcome.action == "created"


def test_dismissed_candidate_needs_stronger_evidence(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    _dismissed(repository, confidence=0.6)
    weak = _store(repository, "m1", parsing_confidence=0.7)
    strong = _store(repository, "m2", parsing_confidence=0.8)

    ignored = reconciler.reconcile("u1", weak)
    resurfaced = reconciler.reconcile("u1", strong)

    assert ignored.action == "ignored"
    assert ignored.reason == "dismissed_candidate"
    assert resurfaced.action == "created"
    statuses = [candidate.status for candidate in repository.list_candidates("u1")]
    assert statuses == ["dismissed", "pending"]


def test_different_cadence_creates_separate_candidate(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    monthly = _store(repository, "m1")
    yearly = _store(repository, "m2", amount=149.99, billing_cycle="yearly")

    reconciler.reconcile("u1", monthly)
    outcome = reconciler.reconcile("u1", yearly)

    assert outcome.action == "created"
    assert len(repository.list_candidates("u1")) == 2


def test_unsaved_receipt_is_rejected(reconciler: CandidateReconciler) -> None:
    receipt = Receipt(
        id=None,
        connection_id=1,
        user_id="u1",
        message_id="m1",
        sender="info@netflix.com",
        subject="Receipt",
        received_at=MARCH,
        raw_body=None,
        parsed=True,
        parsing_confidence=0.9,
    )

    with pytest.raises(ValueError):
        reconciler.reconcile("u1", receipt)


def test_older_receipt_keeps_upcoming_next_billing(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    upcoming = datetime(2025, 5, 1, tzinfo=UTC)
    newer = _store(repository, "m2", received_at=APRIL, next_charge_date=upcoming)
    older = _store(repository, "m1", received_at=MARCH, next_charge_date=APRIL)

    reconciler.reconcile("u1", newer)
    reconciler.reconcile("u1", older)

    (candidate,) = repository.list_candidates("u1")
    assert candidate.proposed_next_billing == upcoming
    assert isinstance(candidate.evidence, EmailEvidence)
    assert candidate.evidence.received_dates == (APRIL, MARCH)


def test_receipt_spacing_fills_unknown_cadence(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    first = _store(repository, "m1", billing_cycle=None)
    second = _store(repository, "m2", billing_cycle=None, received_at=APRIL)

    reconciler.reconcile("u1", first)
    reconciler.reconcile("u1", second)

    (candidate,) = repository.list_candidates("u1")
    assert candidate.proposed_cadence == "monthly"
    assert candidate.proposed_next_billing == datetime(2025, 5, 1, tzinfo=UTC)
    assert candidate.confidence == pytest.approx(0.8)
    assert candidate.detection_reason.endswith("interval:monthly")


def test_regular_weekly_receipts_raise_confidence(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    dates = [datetime(2025, 3, day, tzinfo=UTC) for day in (1, 8, 15)]
    receipts = [
        _store(
            repository,
            f"m{index}",
            billing_cycle=None,
            parsing_confidence=0.6,
            received_at=received_at,
        )
        for index, received_at in enumerate(dates)
    ]

    for receipt in receipts:
        reconciler.reconcile("u1", receipt)

    (candidate,) = repository.list_candidates("u1")
    assert candidate.proposed_cadence == "weekly"
    assert candidate.proposed_next_billing == datetime(2025, 3, 22, tzinfo=UTC)
    assert candidate.confidence == pytest.approx(0.85)


def test_spacing_that_contradicts_cadence_is_ignored(
    repository: SqliteScanRepository, reconciler: CandidateReconciler
) -> None:
    first = _store(repository, "m1")
    second = _store(repository, "m2", received_at=datetime(2025, 3, 8, tzinfo=UTC))

    reconciler.reconcile("u1", first)
    reconciler.reconcile("u1", second)

    (candidate,) = repository.list_candidates("u1")
    assert candidate.proposed_cadence == "monthly"
    assert candidate.proposed_next_billing is None
    assert "interval" not in candidate.detection_reason


@pytest.mark.parametrize(
    ("dates", "cadence"),
    [
        ([MARCH, APRIL, datetime(2025, 5, 1, tzinfo=UTC)], "monthly"),
        ([MARCH, datetime(2025, 3, 8, tzinfo=UTC)], "weekly"),
        ([datetime(2025, 6, 1, tzinfo=UTC), MARCH], "quarterly"),
        ([datetime(2024, 3, 1, tzinfo=UTC), MARCH], "yearly"),
    ],
)
def test_infer_billing_pattern_from_median_interval(
    dates: list[datetime], cadence: str
) -> None:
    pattern = infer_billing_pattern(dates)

    assert pattern is not None
    assert pattern.cadence == cadence
    assert pattern.receipts == len(dates)
    assert 0.9 <= pattern.regularity <= 1.0


@pytest.mark.parametrize(
    "dates",
    [
        [MARCH],
        [MARCH, MARCH],
        [MARCH, datetime(2025, 3, 13, tzinfo=UTC)],
        [MARCH, datetime(2025, 8, 1, tzinfo=UTC)],
    ],
)
def test_irregular_spacing_has_no_pattern(dates: list[datetime]) -> None:
    assert infer_billing_pattern(dates) is None


def test_pattern_confidence_rewards_repetition() -> None:
    dates = [datetime(2025, month, 1, tzinfo=UTC) for month in range(1, 7)]

    pattern = infer_billing_pattern(dates)
    pair = infer_billing_pattern(dates[:2])

    assert pattern is not None
    assert pair is not None
    assert pattern.cadence == "monthly"
    assert pattern.confidence > pair.confidence
    assert pattern.confidence <= 1.0
