"""Merchant directory: known senders, aliases and name normalization."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

_LEGAL_SUFFIX = re.compile(
    r"[\s,]+(?:inc|llc|ltd|limited|corp|corporation|co|gmbh|plc)\.?$"
)
_DOT_COM = re.compile(r"\.com\b")
_NON_WORD = re.compile(r"[^a-z0-9+]+")

# Mailbox hosts and placeholders that never identify a merchant.
GENERIC_DOMAINS = frozenset(
    {
        "gmail",
        "googlemail",
        "yahoo",
        "outlook",
        "hotmail",
        "live",
        "aol",
        "protonmail",
        "mail",
        "email",
        "noreply",
    }
)


@dataclass(frozen=True, slots=True)
class KnownMerchant:
    """Directory entry for a merchant recognised by sender domain or alias."""

    key: str
    display_name: str
    domains: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    typical_cadence: str | None = None


class MerchantDirectory(Protocol):
    """Lookup used by the receipt parser and the reconciler."""

    def lookup_domain(self, domain: str) -> KnownMerchant | None:
        """Return the merchant owning ``domain`` or one of its parents."""
        raise NotImplementedError

    def find_alias(self, text: str) -> KnownMerchant | None:
        """Return the merchant whose alias appears in ``text``."""
        raise NotImplementedError

    def canonical_key(self, name: str) -> str:
        """Return the normalized key two names must share to be the same merchant."""
        raise NotImplementedError


DEFAULT_MERCHANTS: tuple[KnownMerchant, ...] = (
    KnownMerchant(
        "netflix", "Netflix", ("netflix.com",), ("NETFLIX", "NETFLIX.COM", "NFLX"),
        "monthly",
    ),
    KnownMerchant(
        "spotify", "Spotify", ("spotify.com",), ("SPOTIFY", "SPOTIFY USA"), "monthly"
    ),
    KnownMerchant(
        "amazon_prime",
        "Amazon Prime",
        ("primevideo.com",),
        ("AMAZON PRIME", "AMZN PRIME", "PRIME VIDEO"),
        "monthly",
    ),
    KnownMerchant(
        "apple", "Apple", ("apple.com", "itunes.com"), ("APPLE COM BILL", "ITUNES")
    ),
    KnownMerchant(
        "disney_plus",
        "Disney+",
        ("disneyplus.com",),
        ("DISNEY PLUS", "DISNEYPLUS", "DISNEY+"),
        "monthly",
    ),
    KnownMerchant("hulu", "Hulu", ("hulu.com", "hulumail.com"), ("HULU",), "monthly"),
    KnownMerchant(
        "youtube_premium",
        "YouTube Premium",
        ("youtube.com",),
        ("YOUTUBE PREMIUM", "YOUTUBE MUSIC", "GOOGLE YOUTUBE"),
        "monthly",
    ),
    KnownMerchant(
        "adobe",
        "Adobe Creative Cloud",
        ("adobe.com",),
        ("ADOBE", "ADOBE CREATIVE", "ADOBE CC"),
        "monthly",
    ),
    KnownMerchant(
        "microsoft_365",
        "Microsoft 365",
        ("microsoft.com",),
        ("MICROSOFT 365", "OFFICE 365"),
        "monthly",
    ),
    KnownMerchant("dropbox", "Dropbox", ("dropbox.com",), ("DROPBOX",), "monthly"),
    KnownMerchant("notion", "Notion", ("notion.so", "makenotion.com"), ("NOTION",)),
    KnownMerchant("slack", "Slack", ("slack.com",), ("SLACK",)),
    KnownMerchant("zoom", "Zoom", ("zoom.us",), ("ZOOM",)),
    KnownMerchant("github", "GitHub", ("github.com",), ("GITHUB",)),
    KnownMerchant("canva", "Canva", ("canva.com",), ("CANVA",)),
    KnownMerchant("grammarly", "Grammarly", ("grammarly.com",), ("GRAMMARLY",)),
    KnownMerchant(
        "nytimes", "New York Times", ("nytimes.com",), ("NEW YORK TIMES", "NYTIMES")
    ),
    KnownMerchant("audible", "Audible", ("audible.com",), ("AUDIBLE",), "monthly"),
    KnownMerchant("duolingo", "Duolingo", ("duolingo.com",), ("DUOLINGO",)),
    KnownMerchant("patreon", "Patreon", ("patreon.com",), ("PATREON",), "monthly"),
    KnownMerchant("figma", "Figma", ("figma.com",), ("FIGMA",)),
)


def normalize_merchant_name(name: str) -> str:
    """Lowercase, trim and drop legal suffixes and ``.com`` from ``name``."""
    value = name.strip().lower()
    value = _DOT_COM.sub("", value)
    previous = None
    while previous != value:
        previous = value
        value = _LEGAL_SUFFIX.sub("", value).strip()
    return _NON_WORD.sub(" ", value).strip()


class StaticMerchantDirectory(MerchantDirectory):
    """In-memory directory seeded with well-known subscription merchants."""

    def __init__(self, merchants: Iterable[KnownMerchant] = DEFAULT_MERCHANTS) -> None:
        self._merchants: tuple[KnownMerchant, ...] = tuple(merchants)
        self._by_domain: dict[str, KnownMerchant] = {}
        self._by_name: dict[str, KnownMerchant] = {}
        alias_patterns: list[tuple[re.Pattern[str], KnownMerchant]] = []
        for merchant in self._merchants:
            for domain in merchant.domains:
                self._by_domain[domain.lower()] = merchant
            names = (merchant.display_name, merchant.key, *merchant.aliases)
            for alias in names:
                self._by_name.setdefault(normalize_merchant_name(alias), merchant)
            for alias in (merchant.display_name, *merchant.aliases):
                alias_patterns.append((_alias_pattern(alias), merchant))
        # Longest alias wins so "YouTube Premium" beats "YouTube".
        alias_patterns.sort(key=lambda item: len(item[0].pattern), reverse=True)
        self._alias_patterns = tuple(alias_patterns)

    @property
    def merchants(self) -> tuple[KnownMerchant, ...]:
        return self._merchants

    @classmethod
    def with_extensions(cls, path: Path | str | None) -> StaticMerchantDirectory:
        """Return the default directory extended by entries from a JSON file.

        The file holds a list of objects with ``key``, ``display_name`` and
        optional ``domains``, ``aliases`` and ``typical_cadence``. Entries
        whose key matches a default merchant replace it.
        """
        merchants = {merchant.key: merchant for merchant in DEFAULT_MERCHANTS}
        if path is not None:
            for merchant in load_merchants(path):
                merchants[merchant.key] = merchant
        return cls(merchants.values())

    def lookup_domain(self, domain: str) -> KnownMerchant | None:
        candidate = domain.strip().lower()
        while candidate:
            merchant = self._by_domain.get(candidate)
            if merchant is not None:
                return merchant
            _, _, candidate = candidate.partition(".")
        return None

    def find_alias(self, text: str) -> KnownMerchant | None:
        for pattern, merchant in self._alias_patterns:
            if pattern.search(text):
                return merchant
        return None

    def canonical_key(self, name: str) -> str:
        normalized = normalize_merchant_name(name)
        merchant = self._by_name.get(normalized)
        if merchant is not None:
            return merchant.key
        return normalized


def load_merchants(path: Path | str) -> list[KnownMerchant]:
    """Read merchant entries from a JSON file."""
    raw: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Merchant alias file {path} must contain a JSON list")
    merchants = [_merchant_from_mapping(entry) for entry in raw]
    LOGGER.info("Loaded %d merchant entries from %s", len(merchants), path)
    return merchants


def _merchant_from_mapping(entry: Any) -> KnownMerchant:
    if not isinstance(entry, dict) or not entry.get("key"):
        raise ValueError(f"Invalid merchant entry: {entry!r}")
    return KnownMerchant(
        key=str(entry["key"]),
        display_name=str(entry.get("display_name") or entry["key"]),
        domains=_as_tuple(entry.get("domains")),
        aliases=_as_tuple(entry.get("aliases")),
        typical_cadence=entry.get("typical_cadence"),
    )


def _as_tuple(value: Sequence[str] | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(item) for item in value)


def _alias_pattern(alias: str) -> re.Pattern[str]:
    words = [re.escape(part) for part in alias.split()]
    return re.compile(r"(?<![\w])" + r"\s*".join(words) + r"(?![\w])", re.IGNORECASE)


__all__ = [
    "DEFAULT_MERCHANTS",
    "GENERIC_DOMAINS",
    "KnownMerchant",
    "MerchantDirectory",
    "StaticMerchantDirectory",
    "load_merchants",
    "normalize_merchant_name",
]
