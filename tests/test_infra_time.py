"""Tests for time utilities."""

from datetime import datetime, timezone

import pytest

from chatrelay.infra.time import from_epoch_seconds, isoformat, utc_now


class TestUtcNow:
    def test_returns_utc_datetime(self):
        assert utc_now().tzinfo == timezone.utc


class TestFromEpochSeconds:
    def test_string_seconds(self):
        assert from_epoch_seconds("1704067200") == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_numeric_seconds(self):
        assert from_epoch_seconds(1704067200) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "  ", "abc", True, float("nan"), float("inf"), 1e20])
    def test_invalid(self, value):
        assert from_epoch_seconds(value) is None


def test_isoformat():
    assert isoformat(None) is None
    assert isoformat(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00+00:00"
