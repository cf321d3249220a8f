"""Tests for database helpers."""

from datetime import datetime, timedelta, timezone

from subsync.database import naive_utc


class TestNaiveUtc:
    def test_now_is_naive(self):
        assert naive_utc().tzinfo is None

    def test_aware_value_converted_to_utc(self):
        aware = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=-3)))
        assert naive_utc(aware) == datetime(2026, 1, 1, 15, 0)

    def test_naive_value_unchanged(self):
        value = datetime(2026, 1, 1, 12, 0)
        assert naive_utc(value) is value
