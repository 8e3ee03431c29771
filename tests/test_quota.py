"""Tests for the tier-based quota adapter."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from subscout.core.config import QuotaSettings, StorageSettings, TierPolicy
from subscout.scanning import ConfiguredTierDirectory, TierQuotaService
from subscout.storage import SqliteScanRepository


@pytest.fixture(name="repository")
def repository_fixture(tmp_path: Path) -> Iterator[SqliteScanRepository]:
    settings = StorageSettings(db_path=tmp_path / "subscout.db")
    with SqliteScanRepository(settings) as repository:
        yield repository


def _settings() -> QuotaSettings:
    return QuotaSettings(
        user_tiers={"pro": "automate", "team": "enterprise", "lost": "legacy"},
        tiers={
            "free": TierPolicy(email_scanning=False, max_email_connections=0),
            "automate": TierPolicy(email_scanning=True, max_email_connections=2),
            "enterprise": TierPolicy(email_scanning=True, max_email_connections=None),
        },
    )


def test_directory_falls_back_to_default_tier() -> None:
    directory = ConfiguredTierDirectory(_settings())

    assert directory.tier_for("pro") == "automate"
    assert directory.tier_for("someone-else") == "free"


def test_automation_follows_tier(repository: SqliteScanRepository) -> None:
    quota = TierQuotaService(_settings(), repository)

    assert quota.has_email_automation("pro") is True
    assert quota.has_email_automation("team") is True
    assert quota.has_email_automation("someone-else") is False


def test_consumption_reduces_remaining(repository: SqliteScanRepository) -> None:
    quota = TierQuotaService(_settings(), repository)

    assert quota.remaining_email_connections("pro") == 2
    quota.consume_email_connection("pro")
    assert quota.remaining_email_connections("pro") == 1
    quota.consume_email_connection("pro")
    quota.consume_email_connection("pro")
    assert quota.remaining_email_connections("pro") == 0
    assert repository.quota_usage("pro") == 3


def test_unlimited_tier_has_no_remaining_bound(
    repository: SqliteScanRepository,
) -> None:
    quota = TierQuotaService(_settings(), repository)
    quota.consume_email_connection("team")

    assert quota.remaining_email_connections("team") is None


def test_unknown_tier_grants_nothing(
    repository: SqliteScanRepository, caplog: pytest.LogCaptureFixture
) -> None:
    quota = TierQuotaService(_settings(), repository)

    with caplog.at_level(logging.WARNING, logger="subscout.scanning.quota"):
        assert quota.has_email_automation("lost") is False

    assert quota.remaining_email_connections("lost") == 0
    assert "unknown tier 'legacy'" in caplog.text


def test_custom_directory_is_consulted(repository: SqliteScanRepository) -> None:
    class BillingDirectory:
        def tier_for(self, user_id: str) -> str:
            return "enterprise" if user_id.endswith("@corp") else "free"

    quota = TierQuotaService(_settings(), repository, BillingDirectory())

    assert quota.has_email_automation("ops@corp") is True
    assert quota.has_email_automation("pro") is False
