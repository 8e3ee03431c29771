"""Datetime helpers shared across the application."""

from __future__ import annotations

import calendar
from datetime import UTC, datetime, timedelta

__all__ = [
    "add_months",
    "add_period",
    "ensure_utc",
    "parse_datetime",
    "serialize_datetime",
    "utcnow",
]

_PERIOD_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601 in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC).isoformat()
    return value.astimezone(UTC).isoformat()


def parse_datetime(value: str | None, *, assume_utc: bool = True) -> datetime | None:
    """Parse an ISO 8601 string into a ``datetime`` instance."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None and assume_utc:
        return parsed.replace(tzinfo=UTC)
    return parsed


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping to the month end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_period(value: datetime, cycle: str | None) -> datetime | None:
    """Return ``value`` advanced by one billing period, ``None`` if unknown."""
    if cycle == "weekly":
        return value + timedelta(days=7)
    months = _PERIOD_MONTHS.get(cycle or "")
    if months is None:
        return None
    return add_months(value, months)
