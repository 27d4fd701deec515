"""Month allocation ledger for a single order.

An :class:`AllocationLedger` distributes an order's revenue and cost across
the calendar months of its service period. Ledgers are immutable: every edit
returns a new ledger, which keeps the value held by the orchestrator
unchanged until an edit is explicitly applied.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import HUNDRED, PERCENT_TOLERANCE, ZERO, AllocationStatus
from .financials import OrderTotals, to_decimal, to_money
from .partitioning import MonthSlot, fallback_window, month_label, partition_months


Partitioner = Callable[[Any, Any], List[MonthSlot]]


@dataclass(frozen=True)
class AllocationEntry:
    """Share of an order attributed to one calendar month."""

    month: int
    year: int
    percentage: Decimal
    label: str

    @property
    def key(self) -> Tuple[int, int]:
        return (self.year, self.month)

    @classmethod
    def from_slot(cls, slot: MonthSlot) -> "AllocationEntry":
        return cls(month=slot.month, year=slot.year, percentage=slot.percentage, label=slot.label)


@dataclass(frozen=True)
class LedgerTotals:
    total_percentage: Decimal
    total_revenue: Decimal
    total_cost: Decimal
    total_profit: Decimal


@dataclass(frozen=True)
class EntryShare:
    """Revenue, cost and profit attributed to a single ledger entry."""

    label: str
    percentage: Decimal
    revenue: Decimal
    cost: Decimal
    profit: Decimal


@dataclass(frozen=True)
class AllocationLedger:
    """Ordered month entries plus the order totals they distribute."""

    entries: Tuple[AllocationEntry, ...]
    revenue: Decimal = ZERO
    cost: Decimal = ZERO

    @classmethod
    def from_slots(cls, slots: Iterable[MonthSlot], totals: OrderTotals) -> "AllocationLedger":
        return cls(
            entries=tuple(AllocationEntry.from_slot(slot) for slot in slots),
            revenue=totals.revenue,
            cost=totals.cost,
        )

    @property
    def profit(self) -> Decimal:
        return self.revenue - self.cost

    def set_percentage(self, index: int, raw_value: Any) -> "AllocationLedger":
        """Return a ledger with entry ``index`` set to ``raw_value``.

        Unparseable input counts as zero. The value is clamped to ``[0, 100]``
        and then capped at whatever the other entries leave free, so the
        running total can never exceed 100. Overflow is absorbed silently
        instead of being reported.

        Args:
            index (int): Zero-based position of the entry to edit.
            raw_value (Any): Percentage as typed by the user.

        Returns:
            AllocationLedger: New ledger with the adjusted entry.

        Raises:
            IndexError: If ``index`` does not address an entry.
        """
        if not 0 <= index < len(self.entries):
            raise IndexError(f"Allocation entry {index} does not exist")

        value = min(max(to_decimal(raw_value), ZERO), HUNDRED)
        others = sum((entry.percentage for i, entry in enumerate(self.entries) if i != index), ZERO)
        available = max(ZERO, HUNDRED - others)
        if value > available:
            log.debug("Capping allocation entry %d from %s to %s", index, value, available)
            value = available

        entries = list(self.entries)
        entries[index] = replace(entries[index], percentage=value)
        return replace(self, entries=tuple(entries))

    def totals(self) -> LedgerTotals:
        total_percentage = sum((entry.percentage for entry in self.entries), ZERO)
        revenue = sum((self.revenue * entry.percentage / HUNDRED for entry in self.entries), ZERO)
        cost = sum((self.cost * entry.percentage / HUNDRED for entry in self.entries), ZERO)
        return LedgerTotals(
            total_percentage=total_percentage,
            total_revenue=to_money(revenue),
            total_cost=to_money(cost),
            total_profit=to_money(revenue - cost),
        )

    def status(self) -> AllocationStatus:
        """Classify the ledger total; only ``VALID`` ledgers may be committed."""
        total = sum((entry.percentage for entry in self.entries), ZERO)
        if abs(total - HUNDRED) <= PERCENT_TOLERANCE:
            return AllocationStatus.VALID
        if total > HUNDRED:
            return AllocationStatus.OVER
        return AllocationStatus.UNDER

    def breakdown(self) -> List[EntryShare]:
        """Per-month amounts derived from the order totals, rounded to cents."""
        shares = []
        for entry in self.entries:
            revenue = self.revenue * entry.percentage / HUNDRED
            cost = self.cost * entry.percentage / HUNDRED
            shares.append(
                EntryShare(
                    label=entry.label,
                    percentage=entry.percentage,
                    revenue=to_money(revenue),
                    cost=to_money(cost),
                    profit=to_money(revenue - cost),
                )
            )
        return shares

    def triples(self) -> List[Tuple[int, int, Decimal]]:
        return [(entry.month, entry.year, entry.percentage) for entry in self.entries]

    def to_document(self, calculated_at: datetime) -> Dict[str, Any]:
        """Snapshot stored under ``order.allocation`` when the ledger is applied.

        Only the month, year and percentage of each entry are persisted;
        per-month amounts are recomputed from the order totals when read.
        """
        return {
            "allocations": [
                {"month": entry.month, "year": entry.year, "percentage": entry.percentage}
                for entry in self.entries
            ],
            "revenue": self.revenue,
            "cost": self.cost,
            "profit": self.profit,
            "calculatedAt": calculated_at.isoformat(),
        }


def _entry_month_year(raw: Mapping[str, Any]) -> Optional[Tuple[int, int]]:
    month = raw.get("month")
    year = raw.get("year")
    if (month is None or year is None) and isinstance(raw.get("monthKey"), str):
        parts = raw["monthKey"].split("-")
        if len(parts) == 2:
            year, month = parts
    try:
        return int(str(month).strip()), int(str(year).strip())
    except (TypeError, ValueError):
        return None


def normalize_allocations(raw_entries: Optional[Sequence[Any]]) -> List[AllocationEntry]:
    """Coerce persisted allocation entries into :class:`AllocationEntry` values.

    Month and year are coerced to integers, with ``monthKey`` (``"YYYY-MM"``)
    accepted for entries written before month and year were stored
    separately. Entries with an unreadable date or a month outside 1-12 are
    dropped. Several entries for the same month are merged by adding their
    percentages. The result is ordered chronologically and labels are rebuilt.
    """
    merged: Dict[Tuple[int, int], Decimal] = {}
    for raw in raw_entries or []:
        if not isinstance(raw, Mapping):
            log.warning("Dropping malformed allocation entry: %r", raw)
            continue
        month_year = _entry_month_year(raw)
        if month_year is None or not 1 <= month_year[0] <= 12:
            log.warning("Dropping allocation entry with invalid month: %r", raw)
            continue
        month, year = month_year
        merged[(year, month)] = merged.get((year, month), ZERO) + to_decimal(raw.get("percentage"))

    return [
        AllocationEntry(month=month, year=year, percentage=percentage, label=month_label(year, month))
        for (year, month), percentage in sorted(merged.items())
    ]


def seed_ledger(
    order: Mapping[str, Any],
    totals: OrderTotals,
    *,
    today: date,
    partition: Partitioner = partition_months,
) -> AllocationLedger:
    """Build the initial ledger shown when an allocation edit begins.

    Precedence: the order's persisted allocation when it has usable entries,
    then a partition of the service period, then a window of months around
    ``today`` with the current month at 100 %.

    Args:
        order (Mapping[str, Any]): Order document.
        totals (OrderTotals): Freshly computed order totals.
        today (date): Current local date, used by the fallback window.
        partition (Callable): Service-period partitioner.

    Returns:
        AllocationLedger: Seeded ledger carrying ``totals``.
    """
    persisted = (order.get("allocation") or {}).get("allocations")
    if persisted:
        entries = normalize_allocations(persisted)
        if entries:
            log.debug("Seeding allocation for order '%s' from persisted entries", order.get("id"))
            return AllocationLedger(entries=tuple(entries), revenue=totals.revenue, cost=totals.cost)

    details = order.get("orderDetails") or {}
    start, end = details.get("startDate"), details.get("endDate")
    if start and end:
        try:
            return AllocationLedger.from_slots(partition(start, end), totals)
        except ValueError as exc:
            log.warning("Ignoring service period of order '%s': %s", order.get("id"), exc)

    return AllocationLedger.from_slots(fallback_window(today), totals)
