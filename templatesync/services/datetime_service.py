"""Timestamps for manifests and backups: lax input -> strict UTC output."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum

# Backup directory names sort chronologically: YYYYMMDDTHHMMSSffffffZ
BACKUP_NAME_FORMAT = "%Y%m%dT%H%M%S%fZ"


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts ISO 8601 variants (``T`` or space separator, offset or ``Z``)
    and date-only strings, which hand-edited manifests tend to contain.
    Missing timezone defaults to ``default_tz``. Raises ValueError on
    unparseable input.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=pendulum.timezone(default_tz))  # type: ignore[arg-type]
        return value

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # Date-only input
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format as ISO 8601 in UTC; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def normalize_timestamp(value: str | datetime) -> str:
    """Canonical stored form of a timestamp read from disk."""
    return format_iso(parse_datetime(value))


def format_backup_name(dt: datetime) -> str:
    """Format a datetime as a sortable backup directory name (always UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(BACKUP_NAME_FORMAT)
