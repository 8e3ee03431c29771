"""Local quota adapter backed by configured tier policies."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from ..core.config import QuotaSettings, TierPolicy
from ..core.datetime_utils import utcnow
from ..core.interfaces import QuotaService, ScanRepository

LOGGER = logging.getLogger(__name__)

_NO_ENTITLEMENTS = TierPolicy(email_scanning=False, max_email_connections=0)


class TierDirectory(Protocol):
    """Resolve the billing tier a user is on."""

    def tier_for(self, user_id: str) -> str:
        """Return the tier name for ``user_id``."""
        raise NotImplementedError


class ConfiguredTierDirectory(TierDirectory):
    """Tier assignments read from ``QuotaSettings.user_tiers``."""

    def __init__(self, settings: QuotaSettings) -> None:
        self._settings = settings

    def tier_for(self, user_id: str) -> str:
        return self._settings.user_tiers.get(user_id, self._settings.default_tier)


class TierQuotaService(QuotaService):
    """Answer entitlement questions from tier policies and stored usage."""

    def __init__(
        self,
        settings: QuotaSettings,
        repository: ScanRepository,
        directory: TierDirectory | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._directory = directory or ConfiguredTierDirectory(settings)
        self._clock = clock

    def policy_for(self, user_id: str) -> TierPolicy:
        """Return the policy of the user's tier; unknown tiers grant nothing."""
        tier = self._directory.tier_for(user_id)
        policy = self._settings.tiers.get(tier)
        if policy is None:
            LOGGER.warning("User %s is on unknown tier '%s'", user_id, tier)
            return _NO_ENTITLEMENTS
        return policy

    def has_email_automation(self, user_id: str) -> bool:
        return self.policy_for(user_id).email_scanning

    def remaining_email_connections(self, user_id: str) -> int | None:
        limit = self.policy_for(user_id).max_email_connections
        if limit is None:
            return None
        return max(limit - self._repository.quota_usage(user_id), 0)

    def consume_email_connection(self, user_id: str) -> None:
        used = self._repository.increment_quota_usage(user_id, self._clock())
        LOGGER.info("User %s has now used %d email connection(s)", user_id, used)


__all__ = ["ConfiguredTierDirectory", "TierDirectory", "TierQuotaService"]
