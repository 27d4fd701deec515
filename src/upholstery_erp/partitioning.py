"""Calendar-month partitioning of an order's service period.

The helpers in this module turn a pair of instants into the ordered list of
calendar months the period touches. Every result is a fully materialized
list of :class:`MonthSlot` values carrying a default percentage so callers
can seed an allocation ledger directly from it. Nothing here reads or writes
shared state; the functions are pure in their inputs.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, List, Optional, Tuple

from . import log
from .constants import FALLBACK_WINDOW_MONTHS, HUNDRED, MONTH_NAMES, ZERO


_WEIGHT_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class MonthSlot:
    """One calendar month touched by a service period."""

    year: int
    month: int
    label: str
    percentage: Decimal

    @property
    def key(self) -> Tuple[int, int]:
        return (self.year, self.month)


def month_label(year: int, month: int) -> str:
    """Return the human-readable ``"Month Year"`` label for a month."""
    return f"{MONTH_NAMES[month - 1]} {year}"


def month_key(year: int, month: int) -> str:
    """Return the sortable ``"YYYY-MM"`` key used by reports."""
    return f"{year}-{month:02d}"


def shift_month(year: int, month: int, offset: int) -> Tuple[int, int]:
    """Move ``offset`` months forward (or backward) from ``(year, month)``."""
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def to_calendar_date(value: Any) -> Optional[date]:
    """Normalize a stored instant into a local calendar date.

    Documents coming from the store carry instants in several shapes:
    ``datetime`` objects (naive or aware), ``date`` objects, ISO-8601 strings,
    or timestamp mappings with a ``seconds`` entry. Aware datetimes are
    converted to the local timezone before the time of day is discarded so a
    late-evening UTC instant does not land in the following month.

    Args:
        value (Any): Raw instant taken from an order document.

    Returns:
        date | None: Local calendar date, or ``None`` when the value is absent
            or cannot be interpreted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, dict) and "seconds" in value:
        try:
            return datetime.fromtimestamp(float(value["seconds"])).date()
        except (TypeError, ValueError, OverflowError, OSError):
            log.warning("Ignoring unreadable timestamp mapping: %r", value)
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_calendar_date(datetime.fromisoformat(text))
        except ValueError:
            log.warning("Ignoring unparseable date string: %r", value)
            return None
    log.warning("Ignoring unsupported date value of type %s", type(value).__name__)
    return None


def iter_months(start: date, end: date) -> Iterator[Tuple[int, int]]:
    """Yield each ``(year, month)`` pair from ``start`` to ``end`` inclusive."""
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        year, month = shift_month(year, month, 1)


def partition_months(start: Any, end: Any) -> List[MonthSlot]:
    """Split a service period into the calendar months it touches.

    Both instants are reduced to local calendar dates first. A period within a
    single month yields one slot at 100 %. A longer period yields one slot per
    distinct month in chronological order, seeded with 100 % on the first
    month and 0 % elsewhere; the seed is a starting point for manual
    adjustment rather than a proportional split.

    Args:
        start (Any): Start instant of the service period.
        end (Any): End instant of the service period.

    Returns:
        list[MonthSlot]: Chronologically ordered, gap-free month slots.

    Raises:
        ValueError: If either instant is missing or ``start`` falls after
            ``end``.
    """
    start_date = to_calendar_date(start)
    end_date = to_calendar_date(end)
    if start_date is None or end_date is None:
        raise ValueError("Both start and end dates are required to partition a period")
    if start_date > end_date:
        raise ValueError(f"Start date {start_date} is after end date {end_date}")

    slots = [
        MonthSlot(
            year=year,
            month=month,
            label=month_label(year, month),
            percentage=HUNDRED if index == 0 else ZERO,
        )
        for index, (year, month) in enumerate(iter_months(start_date, end_date))
    ]
    log.debug("Partitioned %s..%s into %d month(s)", start_date, end_date, len(slots))
    return slots


def fallback_window(today: date, *, months: int = FALLBACK_WINDOW_MONTHS) -> List[MonthSlot]:
    """Build the date-agnostic window of months around ``today``.

    Used when an order has no service period yet. The window spans ``months``
    on each side of the current month and puts 100 % on the current month.
    """
    slots = []
    for offset in range(-months, months + 1):
        year, month = shift_month(today.year, today.month, offset)
        slots.append(
            MonthSlot(
                year=year,
                month=month,
                label=month_label(year, month),
                percentage=HUNDRED if offset == 0 else ZERO,
            )
        )
    return slots


def day_weighted_partition(start: Any, end: Any) -> List[MonthSlot]:
    """Split a period across months in proportion to the days in each month.

    Both endpoints count as full days. Shares are computed to four decimal
    places and the last month absorbs the rounding remainder so the slots
    always sum to exactly 100.

    Raises:
        ValueError: If either instant is missing or ``start`` falls after
            ``end``.
    """
    start_date = to_calendar_date(start)
    end_date = to_calendar_date(end)
    if start_date is None or end_date is None:
        raise ValueError("Both start and end dates are required to partition a period")
    if start_date > end_date:
        raise ValueError(f"Start date {start_date} is after end date {end_date}")

    total_days = Decimal((end_date - start_date).days + 1)
    months = list(iter_months(start_date, end_date))
    slots: List[MonthSlot] = []
    assigned = ZERO
    for index, (year, month) in enumerate(months):
        if index == len(months) - 1:
            share = HUNDRED - assigned
        else:
            month_start = max(start_date, date(year, month, 1))
            month_end = min(end_date, date(year, month, calendar.monthrange(year, month)[1]))
            days = Decimal((month_end - month_start).days + 1)
            share = (days * HUNDRED / total_days).quantize(_WEIGHT_QUANTUM)
            assigned += share
        slots.append(MonthSlot(year=year, month=month, label=month_label(year, month), percentage=share))
    return slots
