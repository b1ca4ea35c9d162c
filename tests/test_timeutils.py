"""Tests for gateway timestamp parsing."""
from datetime import datetime, timezone

import pytest

from qris_reconciler.timeutils import WIB, as_utc, parse_timestamp


class TestParseTimestamp:
    """Gateway timestamps normalize to aware UTC or None."""

    def test_iso_with_offset(self) -> None:
        parsed = parse_timestamp("2024-05-01T10:00:00+07:00")

        assert parsed == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    def test_zulu_suffix(self) -> None:
        assert parse_timestamp("2024-05-01T03:00:00Z") == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    def test_naive_values_are_wib(self) -> None:
        assert parse_timestamp("2024-05-01 10:00:00") == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    def test_day_first_statement_format(self) -> None:
        assert parse_timestamp("01/05/2024 10:00") == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [1714532400, 1714532400.0, "1714532400"])
    def test_epoch_seconds(self, value: object) -> None:
        assert parse_timestamp(value) == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "value",
        [
            99999999999999,
            "99999999999999",
            -99999999999999,
            10**400,
            "9" * 5000,
            float("inf"),
            float("nan"),
        ],
    )
    def test_out_of_range_epoch_is_unparseable(self, value: object) -> None:
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize("value", [None, "", "yesterday", "31/02/2024 10:00", "²", True])
    def test_garbage_is_unparseable(self, value: object) -> None:
        assert parse_timestamp(value) is None

    def test_datetime_passthrough(self) -> None:
        naive = datetime(2024, 5, 1, 10, 0)

        assert parse_timestamp(naive) == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)
        assert parse_timestamp(naive, assume=timezone.utc) == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class TestAsUtc:
    def test_wib_is_fixed_offset(self) -> None:
        local = datetime(2024, 12, 31, 23, 30, tzinfo=WIB)

        assert as_utc(local) == datetime(2024, 12, 31, 16, 30, tzinfo=timezone.utc)

    def test_none(self) -> None:
        assert as_utc(None) is None
