"""Profit and loss reporting over allocated orders."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import openpyxl
from openpyxl.styles import Font

from . import log
from .allocation import normalize_allocations
from .constants import HUNDRED, ZERO
from .financials import DEFAULT_RATES, FinancialRates, TaxRateTable, compute_totals, to_money
from .partitioning import day_weighted_partition, month_key, month_label, to_calendar_date


REPORT_HEADERS = ("Period", "Label", "Orders", "Revenue", "Cost", "Profit", "Margin %")


@dataclass
class PeriodRow:
    """Accumulated figures for one month, quarter or year."""

    key: str
    label: str
    revenue: Decimal = ZERO
    cost: Decimal = ZERO
    order_ids: List[str] = field(default_factory=list)

    @property
    def profit(self) -> Decimal:
        return self.revenue - self.cost

    @property
    def margin(self) -> Decimal:
        if self.revenue <= ZERO:
            return ZERO
        return to_money(self.profit / self.revenue * HUNDRED)

    def add(self, order_id: str, revenue: Decimal, cost: Decimal) -> None:
        self.revenue += revenue
        self.cost += cost
        if order_id not in self.order_ids:
            self.order_ids.append(order_id)


@dataclass
class PeriodReport:
    monthly: Dict[str, PeriodRow] = field(default_factory=dict)
    quarterly: Dict[str, PeriodRow] = field(default_factory=dict)
    yearly: Dict[str, PeriodRow] = field(default_factory=dict)
    cross_month_orders: List[str] = field(default_factory=list)
    skipped_orders: List[str] = field(default_factory=list)

    def rows(self, period: str) -> List[PeriodRow]:
        """Rows of ``period`` (``monthly``, ``quarterly`` or ``yearly``) in key order."""
        bucket: Dict[str, PeriodRow] = getattr(self, period)
        return [bucket[key] for key in sorted(bucket)]


def _bucket(data: Dict[str, PeriodRow], key: str, label: str) -> PeriodRow:
    row = data.get(key)
    if row is None:
        row = PeriodRow(key=key, label=label)
        data[key] = row
    return row


def order_month_shares(order: Mapping[str, Any]) -> Optional[List[Tuple[int, int, Decimal]]]:
    """Month shares of an order as ``(year, month, percentage)`` triples.

    A persisted allocation wins. Otherwise the span from ``createdAt`` to
    ``statusUpdatedAt`` is split by days; ``None`` means the order carries no
    usable date at all.
    """
    persisted = normalize_allocations((order.get("allocation") or {}).get("allocations"))
    if persisted:
        return [(entry.year, entry.month, entry.percentage) for entry in persisted]

    start = to_calendar_date(order.get("createdAt"))
    end = to_calendar_date(order.get("statusUpdatedAt") or order.get("completedAt"))
    start = start or end
    end = end or start
    if start is None:
        return None
    if end < start:
        start, end = end, start
    return [(slot.year, slot.month, slot.percentage) for slot in day_weighted_partition(start, end)]


def build_period_report(
    orders: Iterable[Mapping[str, Any]],
    tax_rates: TaxRateTable,
    *,
    rates: FinancialRates = DEFAULT_RATES,
    year: Optional[int] = None,
) -> PeriodReport:
    """Aggregate revenue, cost and profit per month, quarter and year.

    Each order's totals are spread over months by its allocation shares and
    then rolled up into quarters and years. Orders without any usable date
    are listed in ``skipped_orders``.

    Args:
        orders (Iterable[Mapping[str, Any]]): Completed order documents.
        tax_rates (Mapping[str, Decimal]): Material company tax rates.
        rates (FinancialRates): Shop-wide rates in percent.
        year (int | None): Restrict the report to one calendar year.

    Returns:
        PeriodReport: Aggregated figures keyed by period.
    """
    report = PeriodReport()
    for order in orders:
        order_id = str(order.get("id", ""))
        shares = order_month_shares(order)
        if shares is None:
            log.warning("Order '%s' has no dates; left out of the report", order_id)
            report.skipped_orders.append(order_id)
            continue
        if len(shares) > 1:
            report.cross_month_orders.append(order_id)

        totals = compute_totals(order, tax_rates, rates=rates)
        for share_year, share_month, percentage in shares:
            if year is not None and share_year != year:
                continue
            if percentage == ZERO:
                continue
            revenue = totals.revenue * percentage / HUNDRED
            cost = totals.cost * percentage / HUNDRED
            quarter = (share_month - 1) // 3 + 1
            _bucket(report.monthly, month_key(share_year, share_month), month_label(share_year, share_month)).add(
                order_id, revenue, cost
            )
            _bucket(report.quarterly, f"{share_year}-Q{quarter}", f"Q{quarter} {share_year}").add(
                order_id, revenue, cost
            )
            _bucket(report.yearly, str(share_year), str(share_year)).add(order_id, revenue, cost)

    log.info(
        "Built period report: %d month(s), %d cross-month order(s), %d skipped",
        len(report.monthly),
        len(report.cross_month_orders),
        len(report.skipped_orders),
    )
    return report


def export_period_report(report: PeriodReport, destination: Path) -> Path:
    """Write the report to an xlsx workbook with one sheet per period type."""

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for period, title in (("monthly", "Monthly"), ("quarterly", "Quarterly"), ("yearly", "Yearly")):
        worksheet = workbook.create_sheet(title=title)
        for column_index, column_name in enumerate(REPORT_HEADERS, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
        for row in report.rows(period):
            worksheet.append(
                [
                    row.key,
                    row.label,
                    len(row.order_ids),
                    float(to_money(row.revenue)),
                    float(to_money(row.cost)),
                    float(to_money(row.profit)),
                    float(row.margin),
                ]
            )

    workbook.save(destination)
    log.info("Exported period report to '%s'", destination)
    return destination
