"""Unit tests for calendar-month partitioning of service periods."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from upholstery_erp import partitioning


def test_partition_spanning_three_months_yields_ordered_slots():
    """A mid-January to early-March period touches exactly three months."""

    slots = partitioning.partition_months(date(2024, 1, 15), date(2024, 3, 10))

    assert [slot.key for slot in slots] == [(2024, 1), (2024, 2), (2024, 3)]
    assert [slot.label for slot in slots] == ["January 2024", "February 2024", "March 2024"]


def test_partition_seeds_first_month_with_full_share():
    slots = partitioning.partition_months("2024-01-15", "2024-03-10")

    assert [slot.percentage for slot in slots] == [Decimal("100"), Decimal("0"), Decimal("0")]


def test_partition_within_single_month_returns_one_full_slot():
    slots = partitioning.partition_months(date(2024, 5, 2), date(2024, 5, 30))

    assert len(slots) == 1
    assert slots[0].key == (2024, 5)
    assert slots[0].percentage == Decimal("100")


def test_partition_crosses_year_boundary():
    slots = partitioning.partition_months(date(2023, 11, 20), date(2024, 2, 1))

    assert [slot.key for slot in slots] == [(2023, 11), (2023, 12), (2024, 1), (2024, 2)]


def test_partition_ignores_time_of_day():
    """Times on the boundary days must not move a slot into another month."""

    slots = partitioning.partition_months(datetime(2024, 1, 31, 23, 59), datetime(2024, 2, 1, 0, 1))

    assert [slot.key for slot in slots] == [(2024, 1), (2024, 2)]


@pytest.mark.parametrize(
    "start, end",
    [
        (date(2024, 1, 1), date(2024, 1, 1)),
        (date(2023, 12, 31), date(2024, 1, 1)),
        (date(2022, 2, 28), date(2024, 7, 4)),
        (date(2024, 2, 29), date(2025, 3, 1)),
    ],
)
def test_partition_is_gap_free_and_strictly_increasing(start, end):
    slots = partitioning.partition_months(start, end)
    keys = [slot.key for slot in slots]

    assert keys[0] == (start.year, start.month)
    assert keys[-1] == (end.year, end.month)
    for previous, current in zip(keys, keys[1:]):
        assert current > previous
        assert partitioning.shift_month(*previous, 1) == current


def test_partition_rejects_start_after_end():
    with pytest.raises(ValueError, match="after"):
        partitioning.partition_months(date(2024, 3, 1), date(2024, 2, 1))


def test_partition_requires_both_dates():
    with pytest.raises(ValueError, match="required"):
        partitioning.partition_months(None, date(2024, 2, 1))


def test_partition_returns_restartable_list():
    slots = partitioning.partition_months(date(2024, 1, 1), date(2024, 2, 1))

    assert isinstance(slots, list)
    assert list(slots) == list(slots)


# ---------------------------------------------------------------------------
# Date normalization
# ---------------------------------------------------------------------------


def test_to_calendar_date_accepts_plain_and_iso_values():
    assert partitioning.to_calendar_date(date(2024, 1, 15)) == date(2024, 1, 15)
    assert partitioning.to_calendar_date("2024-01-15") == date(2024, 1, 15)
    assert partitioning.to_calendar_date("2024-01-15T10:30:00") == date(2024, 1, 15)
    assert partitioning.to_calendar_date(datetime(2024, 1, 15, 22, 0)) == date(2024, 1, 15)


def test_to_calendar_date_converts_aware_values_to_local_time():
    moment = datetime(2024, 1, 31, 23, 30, tzinfo=UTC)

    assert partitioning.to_calendar_date(moment) == moment.astimezone().date()
    assert partitioning.to_calendar_date("2024-01-31T23:30:00Z") == moment.astimezone().date()


def test_to_calendar_date_accepts_timestamp_mappings():
    seconds = 1_705_000_000

    expected = datetime.fromtimestamp(seconds).date()
    assert partitioning.to_calendar_date({"seconds": seconds, "nanoseconds": 0}) == expected


@pytest.mark.parametrize("value", [None, "", "not a date", 42, {"nanoseconds": 1}])
def test_to_calendar_date_returns_none_for_unusable_values(value):
    assert partitioning.to_calendar_date(value) is None


# ---------------------------------------------------------------------------
# Fallback and day-weighted seeding
# ---------------------------------------------------------------------------


def test_fallback_window_spans_two_months_each_side_of_today():
    slots = partitioning.fallback_window(date(2024, 1, 10))

    assert [slot.key for slot in slots] == [(2023, 11), (2023, 12), (2024, 1), (2024, 2), (2024, 3)]
    assert [slot.percentage for slot in slots] == [0, 0, 100, 0, 0]


def test_day_weighted_partition_splits_by_days_and_sums_to_hundred():
    slots = partitioning.day_weighted_partition(date(2024, 1, 15), date(2024, 2, 14))

    assert [slot.percentage for slot in slots] == [Decimal("54.8387"), Decimal("45.1613")]
    assert sum(slot.percentage for slot in slots) == Decimal("100")


def test_day_weighted_partition_single_day():
    slots = partitioning.day_weighted_partition(date(2024, 6, 1), date(2024, 6, 1))

    assert [(slot.key, slot.percentage) for slot in slots] == [((2024, 6), Decimal("100"))]


def test_day_weighted_partition_long_period_still_sums_to_hundred():
    start = date(2023, 1, 1)
    slots = partitioning.day_weighted_partition(start, start + timedelta(days=400))

    assert len(slots) == 14
    assert sum(slot.percentage for slot in slots) == Decimal("100")


def test_month_helpers():
    assert partitioning.month_key(2024, 3) == "2024-03"
    assert partitioning.month_label(2024, 12) == "December 2024"
    assert partitioning.shift_month(2024, 1, -1) == (2023, 12)
    assert partitioning.shift_month(2024, 11, 3) == (2025, 2)
