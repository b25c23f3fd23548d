"""
Unit tests for studybuddy.utils module.

Tests timestamp formatting and parsing helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from studybuddy.utils import format_timestamp, parse_timestamp, utc_now


class TestTimestampFormatting:
    """Test canonical timestamp formatting."""

    def test_utc_now_is_aware(self):
        """Test that the current time carries UTC tzinfo."""
        assert utc_now().tzinfo == timezone.utc

    def test_microsecond_precision(self):
        """Test that timestamps always include microseconds."""
        dt = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2025-01-01T12:00:00.000000+00:00"

    def test_naive_treated_as_utc(self):
        """Test that naive datetimes are assumed to be UTC."""
        assert format_timestamp(datetime(2025, 1, 1)) == "2025-01-01T00:00:00.000000+00:00"

    def test_converted_to_utc(self):
        """Test that other offsets are normalized to UTC."""
        dt = datetime(2025, 1, 1, 2, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(dt) == "2025-01-01T00:00:00.000000+00:00"

    def test_string_order_matches_time_order(self):
        """Test that formatted timestamps sort chronologically."""
        earlier = format_timestamp(datetime(2025, 1, 1, 9, 59, 59, 999999))
        later = format_timestamp(datetime(2025, 1, 1, 10, 0, 0))
        assert earlier < later


class TestTimestampParsing:
    """Test ISO 8601 parsing."""

    def test_parse_round_trip(self):
        """Test that formatted timestamps parse back to the same instant."""
        dt = datetime(2025, 6, 1, 8, 30, 15, 123456, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(dt)) == dt

    def test_parse_zulu_suffix(self):
        """Test that a trailing Z is accepted."""
        assert parse_timestamp("2025-01-01T00:00:00Z") == datetime(
            2025, 1, 1, tzinfo=timezone.utc
        )

    def test_parse_invalid(self):
        """Test that invalid values raise ValueError."""
        for value in ("yesterday", "", None, 12345):
            with pytest.raises(ValueError):
                parse_timestamp(value)
