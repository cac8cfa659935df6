"""Tests for datetime parsing service."""

from datetime import datetime, timedelta, timezone

import pytest

from templatesync.services.datetime_service import (
    format_backup_name,
    format_iso,
    normalize_timestamp,
    now_utc,
    parse_datetime,
)


class TestDatetimeParsing:
    def test_parse_full_format(self) -> None:
        result = parse_datetime("2026-02-02 22:21:29.975359+00")
        assert result.year == 2026
        assert result.month == 2
        assert result.day == 2
        assert result.hour == 22
        assert result.minute == 21

    def test_parse_date_only(self) -> None:
        result = parse_datetime("2026-02-02")
        assert result.year == 2026
        assert result.hour == 0
        assert result.minute == 0

    def test_parse_with_default_timezone(self) -> None:
        result = parse_datetime("2026-02-02 10:30", default_tz="America/New_York")
        assert result.hour == 10
        assert result.utcoffset() == timedelta(hours=-5)

    def test_parse_datetime_naive_adds_tz(self) -> None:
        result = parse_datetime(datetime(2026, 1, 1, 12, 0), default_tz="UTC")
        assert result.tzinfo is not None

    def test_now_utc(self) -> None:
        assert now_utc().tzinfo is not None


class TestFormatting:
    def test_format_iso_roundtrips_through_parse(self) -> None:
        dt = datetime(2026, 2, 2, 22, 21, 29, 975359, tzinfo=timezone.utc)
        assert parse_datetime(format_iso(dt)) == dt

    def test_format_iso_naive_is_utc(self) -> None:
        assert format_iso(datetime(2026, 1, 1)).endswith("+00:00")

    def test_format_iso_converts_to_utc(self) -> None:
        dt = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_iso(dt) == "2026-01-01T10:00:00+00:00"

    def test_normalize_timestamp(self) -> None:
        assert normalize_timestamp("2026-02-02 22:21+02:00") == "2026-02-02T20:21:00+00:00"
        assert normalize_timestamp("2026-02-02") == "2026-02-02T00:00:00+00:00"

    def test_normalize_timestamp_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            normalize_timestamp("not a date")

    def test_backup_name_is_utc_and_compact(self) -> None:
        dt = datetime(2026, 3, 4, 5, 6, 7, 890, tzinfo=timezone(timedelta(hours=2)))
        assert format_backup_name(dt) == "20260304T030607000890Z"

    def test_backup_names_sort_chronologically(self) -> None:
        earlier = datetime(2026, 1, 9, 23, 59, 59, tzinfo=timezone.utc)
        later = datetime(2026, 1, 10, 0, 0, 0, tzinfo=timezone.utc)
        assert format_backup_name(earlier) < format_backup_name(later)
