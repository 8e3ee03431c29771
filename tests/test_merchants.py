"""Tests for merchant normalization and the alias directory."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from subscout.intelligence import StaticMerchantDirectory, normalize_merchant_name
from subscout.intelligence.merchants import load_merchants


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Netflix", "netflix"),
        ("NETFLIX.COM", "netflix"),
        ("Netflix, Inc.", "netflix"),
        ("  Acme Widgets LLC ", "acme widgets"),
        ("Disney+", "disney+"),
    ],
)
def test_normalize_merchant_name(raw: str, expected: str) -> None:
    assert normalize_merchant_name(raw) == expected


def test_aliases_share_a_canonical_key() -> None:
    directory = StaticMerchantDirectory()

    keys = {
        directory.canonical_key(name)
        for name in ("Netflix", "NETFLIX.COM", "Netflix Inc", "NFLX")
    }

    assert keys == {"netflix"}
    assert directory.canonical_key("Some Gym") == "some gym"


def test_lookup_domain_walks_parent_domains() -> None:
    directory = StaticMerchantDirectory()

    merchant = directory.lookup_domain("info.account.netflix.com")

    assert merchant is not None
    assert merchant.display_name == "Netflix"
    assert directory.lookup_domain("example.com") is None


def test_find_alias_prefers_longest_alias() -> None:
    directory = StaticMerchantDirectory()

    merchant = directory.find_alias("Your YouTube Premium membership")

    assert merchant is not None
    assert merchant.key == "youtube_premium"
    assert directory.find_alias("A note from your landlord") is None


def test_with_extensions_adds_and_replaces_entries(tmp_path: Path) -> None:
    aliases = tmp_path / "merchants.json"
    aliases.write_text(
        json.dumps(
            [
                {"key": "gym", "display_name": "City Gym", "domains": ["citygym.com"]},
                {"key": "netflix", "display_name": "Netflix Premium"},
            ]
        ),
        encoding="utf-8",
    )

    directory = StaticMerchantDirectory.with_extensions(aliases)

    gym = directory.lookup_domain("citygym.com")
    assert gym is not None and gym.display_name == "City Gym"
    assert directory.lookup_domain("netflix.com") is None
    assert directory.canonical_key("Netflix Premium") == "netflix"


def test_load_merchants_rejects_invalid_files(tmp_path: Path) -> None:
    not_a_list = tmp_path / "object.json"
    not_a_list.write_text('{"key": "x"}', encoding="utf-8")
    missing_key = tmp_path / "missing.json"
    missing_key.write_text('[{"display_name": "X"}]', encoding="utf-8")

    with pytest.raises(ValueError):
        load_merchants(not_a_list)
    with pytest.raises(ValueError):
        load_merchants(missing_key)
