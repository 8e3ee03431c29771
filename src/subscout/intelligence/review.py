"""User review transitions for detection candidates."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import get_args

from ..core.datetime_utils import utcnow
from ..core.interfaces import CandidateStateError, ScanRepository
from ..core.models import BillingCycle, DetectionCandidate, Subscription

LOGGER = logging.getLogger(__name__)

_CADENCES = frozenset(get_args(BillingCycle))


class CandidateReviewService:
    """Accept or dismiss pending candidates.

    Both transitions are terminal. Accepting materializes a tracked
    subscription, optionally with values edited by the user.
    """

    def __init__(
        self,
        repository: ScanRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock

    def accept(
        self,
        candidate_id: int,
        *,
        name: str | None = None,
        amount: float | None = None,
        currency: str | None = None,
        cadence: str | None = None,
        next_billing: datetime | None = None,
    ) -> tuple[DetectionCandidate, Subscription]:
        """Accept a candidate, creating the subscription it describes."""
        # pylint: disable=too-many-arguments
        candidate = self._pending(candidate_id)
        final_name = (name or candidate.proposed_name).strip()
        final_amount = candidate.proposed_amount if amount is None else amount
        final_cadence = cadence or candidate.proposed_cadence
        if not final_name:
            raise ValueError("Subscription name must not be empty")
        if final_amount <= 0:
            raise ValueError("Subscription amount must be positive")
        if final_cadence not in _CADENCES:
            raise ValueError(f"Unknown billing cycle '{final_cadence}'")

        now = self._clock()
        subscription = self._repository.insert_subscription(
            Subscription(
                id=None,
                user_id=candidate.user_id,
                name=final_name,
                amount=round(final_amount, 2),
                currency=(currency or candidate.proposed_currency).upper(),
                billing_cycle=final_cadence,  # type: ignore[arg-type]
                next_billing_date=next_billing or candidate.proposed_next_billing,
                source="email_receipt" if candidate.source == "email" else "detected",
                created_at=now,
            )
        )
        accepted = self._repository.update_candidate(
            replace(
                candidate,
                status="accepted",
                accepted_subscription_id=subscription.id,
                reviewed_at=now,
            )
        )
        LOGGER.info(
            "Candidate %s accepted as subscription %s (%s)",
            candidate_id,
            subscription.id,
            subscription.name,
        )
        return accepted, subscription

    def dismiss(self, candidate_id: int) -> DetectionCandidate:
        """Dismiss a candidate; it only resurfaces on clearly stronger evidence."""
        candidate = self._pending(candidate_id)
        dismissed = self._repository.update_candidate(
            replace(candidate, status="dismissed", reviewed_at=self._clock())
        )
        LOGGER.info("Candidate %s dismissed", candidate_id)
        return dismissed

    def _pending(self, candidate_id: int) -> DetectionCandidate:
        candidate = self._repository.fetch_candidate(candidate_id)
        if candidate is None:
            raise LookupError(f"Candidate {candidate_id} does not exist")
        if candidate.status != "pending":
            raise CandidateStateError(
                f"Candidate {candidate_id} is already {candidate.status}"
            )
        return candidate


__all__ = ["CandidateReviewService"]
