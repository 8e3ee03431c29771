"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class GmailSettings(BaseModel):
    """Settings controlling access to the Gmail REST API."""

    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me/",
        description="Base URL for the Gmail users resource",
    )
    page_size: int = Field(
        default=50, ge=1, le=500, description="Message ids requested per page"
    )
    timeout_seconds: float = Field(default=20.0, description="HTTP request timeout")
    search_query: str = Field(
        default=(
            "receipt OR invoice OR subscription OR renewal OR "
            '"payment confirmation" OR billing'
        ),
        description="Gmail search expression narrowing the scanned messages",
    )
    initial_lookback_days: int = Field(
        default=365,
        ge=1,
        description="How far back the very first scan of an account reaches",
    )


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity."""

    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    mailbox: str = Field(default="INBOX", description="Mailbox to scan")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")
    page_size: int = Field(default=50, ge=1, description="UIDs fetched per page")
    initial_lookback_days: int = Field(
        default=365,
        ge=1,
        description="How far back the very first scan of a mailbox reaches",
    )


class OAuthSettings(BaseModel):
    """Settings used to refresh provider access tokens."""

    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint",
    )
    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(default=None, description="OAuth secret")
    timeout_seconds: float = Field(default=15.0, description="Refresh timeout")
    expiry_margin_seconds: int = Field(
        default=60, ge=0, description="Refresh tokens this long before expiry"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./subscout.db"), description="SQLite database path"
    )
    max_body_chars: int = Field(
        default=50_000, ge=1, description="Stored raw body length limit"
    )
    pool_size: int = Field(
        default=4, ge=1, description="Repository handles shared by scan workers"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class FetchSettings(BaseModel):
    """Retry policy applied to provider calls."""

    max_attempts: int = Field(
        default=5, ge=1, description="Attempts per call for transient errors"
    )
    base_delay_seconds: float = Field(
        default=1.0, ge=0.0, description="First backoff delay"
    )
    max_delay_seconds: float = Field(
        default=30.0, ge=0.0, description="Upper bound for a single backoff delay"
    )


class DetectionSettings(BaseModel):
    """Thresholds used when turning receipts into detection candidates."""

    min_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Receipts below this confidence never produce candidates",
    )
    amount_tolerance_pct: float = Field(
        default=0.05,
        ge=0.0,
        description="Relative amount tolerance for matching tracked subscriptions",
    )
    minor_unit_tolerance: float = Field(
        default=0.01,
        ge=0.0,
        description="Absolute amount tolerance floor (one minor currency unit)",
    )
    redetect_margin: float = Field(
        default=0.15,
        ge=0.0,
        le=1.0,
        description="Confidence gain needed to resurface a dismissed candidate",
    )
    merchant_aliases_path: Path | None = Field(
        default=None, description="Optional JSON file extending the alias table"
    )


class ScanSettings(BaseModel):
    """Settings for the scan orchestrator and scheduler."""

    max_workers: int = Field(
        default=4, ge=1, description="Connections scanned in parallel"
    )
    max_pages_per_run: int | None = Field(
        default=None, description="Optional bound on pages processed per run"
    )
    stale_after_seconds: int = Field(
        default=1800,
        ge=1,
        description="An in-progress claim without heartbeat for this long is stale",
    )


class TierPolicy(BaseModel):
    """Entitlements granted by a subscription tier."""

    email_scanning: bool = Field(
        default=False, description="Whether the tier may scan inboxes"
    )
    max_email_connections: int | None = Field(
        default=None, description="Lifetime connection quota, None for unlimited"
    )


def _default_tiers() -> dict[str, TierPolicy]:
    return {
        "free": TierPolicy(email_scanning=False, max_email_connections=0),
        "plus": TierPolicy(email_scanning=False, max_email_connections=0),
        "automate": TierPolicy(email_scanning=True, max_email_connections=3),
    }


class QuotaSettings(BaseModel):
    """Tier configuration consumed by the local quota adapter."""

    default_tier: str = Field(default="free", description="Tier for unknown users")
    user_tiers: dict[str, str] = Field(
        default_factory=dict, description="Explicit user id to tier assignments"
    )
    tiers: dict[str, TierPolicy] = Field(default_factory=_default_tiers)


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    gmail: GmailSettings = Field(default_factory=GmailSettings)
    imap: ImapSettings = Field(default_factory=ImapSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)


ENV_PREFIX = "SUBSCOUT_"
SECRET_SECTION = "secret"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        # Secrets are resolved by the secret store, never by the settings tree.
        if not path or path[0] == SECRET_SECTION:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "DetectionSettings",
    "ENV_PREFIX",
    "FetchSettings",
    "GmailSettings",
    "ImapSettings",
    "LoggingSettings",
    "OAuthSettings",
    "QuotaSettings",
    "ScanSettings",
    "StorageSettings",
    "TierPolicy",
    "load_app_settings",
]
