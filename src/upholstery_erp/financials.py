"""Revenue, cost and profit rules for workshop orders.

Individual and corporate orders keep their line items and payment data under
different field names and follow different tax rules. This module hides both
differences behind :class:`PaymentRecord` and :func:`furniture_groups` and
exposes pure calculation helpers. All arithmetic runs on
:class:`~decimal.Decimal` at full precision; values are rounded to cents only
when they leave the module through :class:`OrderTotals` or
:class:`InvoiceBreakdown`.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import log
from .constants import (
    CENTS,
    DEFAULT_CREDIT_CARD_FEE_RATE,
    DEFAULT_MATERIAL_TAX_RATE,
    DEFAULT_TAX_RATE,
    HUNDRED,
    ZERO,
    Collection,
    OrderType,
    ServiceType,
)


TaxRateTable = Mapping[str, Decimal]


@dataclass(frozen=True)
class FinancialRates:
    """Shop-wide rates expressed in percent."""

    tax_rate: Decimal = DEFAULT_TAX_RATE
    credit_card_fee_rate: Decimal = DEFAULT_CREDIT_CARD_FEE_RATE
    default_material_tax_rate: Decimal = DEFAULT_MATERIAL_TAX_RATE


DEFAULT_RATES = FinancialRates()


@dataclass(frozen=True)
class PaymentRecord:
    """Payment sub-document of an order, tagged with its order variant."""

    order_type: OrderType
    field_name: str
    data: Mapping[str, Any]

    def path(self, name: str) -> str:
        """Return the dotted store path of a payment field."""
        return f"{self.field_name}.{name}"


@dataclass(frozen=True)
class NormalizedPayment:
    """Payment state coerced to one shape regardless of the order variant."""

    amount_paid: Decimal
    deposit: Decimal
    payment_history: Tuple[Mapping[str, Any], ...]
    history_field: str = "paymentHistory"


@dataclass(frozen=True)
class OrderTotals:
    """Rounded revenue, cost and profit of a single order."""

    revenue: Decimal
    cost: Decimal
    profit: Decimal

    @property
    def profit_percentage(self) -> Decimal:
        if self.revenue <= ZERO:
            return ZERO
        return to_money(self.profit / self.revenue * HUNDRED)


@dataclass(frozen=True)
class InvoiceBreakdown:
    """Customer-facing invoice figures, rounded to cents."""

    material: Decimal
    labour: Decimal
    foam: Decimal
    painting: Decimal
    items_subtotal: Decimal
    pickup_delivery: Decimal
    tax: Decimal
    credit_card_fee: Decimal
    grand_total: Decimal
    amount_paid: Decimal
    balance_due: Decimal


class DepositState(str, Enum):
    """Enumerate the deposit situations shown on the workshop dashboard."""

    NOT_REQUIRED = "not_required"
    RECEIVED = "received"
    PARTIAL = "partial"
    UNPAID = "unpaid"


@dataclass(frozen=True)
class DepositStatus:
    state: DepositState
    deposit: Decimal
    amount_paid: Decimal


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Coerce a stored numeric field into a :class:`Decimal`.

    Documents hold numbers as ints, floats or strings, and blank form fields
    come back as ``""`` or ``None``. Anything that does not parse falls back
    to ``default`` rather than raising.
    """
    if value is None or value == "" or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    return result if result.is_finite() else default


def to_money(value: Decimal) -> Decimal:
    """Round a monetary amount to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def order_type_of(order: Mapping[str, Any]) -> OrderType:
    """Return the variant of ``order``; anything not corporate is individual."""
    if order.get("orderType") == OrderType.CORPORATE.value:
        return OrderType.CORPORATE
    return OrderType.INDIVIDUAL


def order_collection(order: Mapping[str, Any]) -> str:
    """Return the store collection that owns ``order``."""
    if order_type_of(order) is OrderType.CORPORATE:
        return Collection.CORPORATE_ORDERS.value
    return Collection.ORDERS.value


def payment_record(order: Mapping[str, Any]) -> PaymentRecord:
    """Select the payment sub-document of ``order`` according to its type."""
    order_type = order_type_of(order)
    field_name = "paymentDetails" if order_type is OrderType.CORPORATE else "paymentData"
    return PaymentRecord(order_type=order_type, field_name=field_name, data=order.get(field_name) or {})


def furniture_groups(order: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    """Return the furniture line-item groups of ``order``."""
    if order_type_of(order) is OrderType.CORPORATE:
        groups = order.get("furnitureGroups")
    else:
        groups = (order.get("furnitureData") or {}).get("groups")
    return list(groups or [])


def normalize_payment(order: Mapping[str, Any]) -> NormalizedPayment:
    """Coerce the payment record of ``order`` into :class:`NormalizedPayment`.

    The history list is read from ``paymentHistory`` and, for documents that
    use the older name, from ``payments``; the field actually present is
    remembered so remediation writes append to the same list.
    """
    record = payment_record(order)
    history_field = "paymentHistory"
    history = record.data.get("paymentHistory")
    if history is None and record.data.get("payments") is not None:
        history_field = "payments"
        history = record.data.get("payments")
    return NormalizedPayment(
        amount_paid=to_decimal(record.data.get("amountPaid")),
        deposit=to_decimal(record.data.get("deposit")),
        payment_history=tuple(history or ()),
        history_field=history_field,
    )


def material_company_tax_rate(
    company: Optional[str],
    tax_rates: TaxRateTable,
    *,
    default_rate: Decimal = DEFAULT_MATERIAL_TAX_RATE,
) -> Decimal:
    """Resolve the cost-side tax rate (as a fraction) for a material company.

    Lookup order: exact match on the lower-cased name, then the first entry
    whose name contains or is contained in the company name, then the
    table's ``default`` entry, then ``default_rate`` percent.
    """
    fallback = tax_rates.get("default", default_rate / HUNDRED)
    if not company:
        return fallback
    name = company.strip().lower()
    if name in tax_rates:
        return tax_rates[name]
    for candidate, rate in tax_rates.items():
        if candidate == "default":
            continue
        if candidate in name or name in candidate:
            return rate
    return fallback


def pickup_delivery_charge(payment: Mapping[str, Any]) -> Decimal:
    """Charge for pickup/delivery: one unit per leg, two when both are booked.

    A missing service type is treated as both legs.
    """
    if not payment.get("pickupDeliveryEnabled"):
        return ZERO
    base = to_decimal(payment.get("pickupDeliveryCost"))
    service = payment.get("pickupDeliveryServiceType") or ServiceType.BOTH.value
    if service in (ServiceType.PICKUP.value, ServiceType.DELIVERY.value):
        return base
    return base * 2


def _line_item_sums(order: Mapping[str, Any]) -> Dict[str, Decimal]:
    corporate = order_type_of(order) is OrderType.CORPORATE
    sums = {"material": ZERO, "labour": ZERO, "foam": ZERO, "painting": ZERO}
    for group in furniture_groups(order):
        sums["material"] += to_decimal(group.get("materialPrice")) * to_decimal(group.get("materialQnty"))
        sums["labour"] += to_decimal(group.get("labourPrice")) * to_decimal(group.get("labourQnty"))
        # Older individual orders stored labour as a flat amount per piece.
        if not corporate and group.get("labourWork") and not group.get("labourPrice"):
            sums["labour"] += to_decimal(group.get("labourWork")) * to_decimal(group.get("quantity"), Decimal(1))
        foam_price = to_decimal(group.get("foamPrice"))
        if group.get("foamEnabled") or (not corporate and foam_price > ZERO):
            sums["foam"] += foam_price * to_decimal(group.get("foamQnty"))
        if group.get("paintingEnabled"):
            sums["painting"] += to_decimal(group.get("paintingLabour")) * to_decimal(group.get("paintingQnty"))
    return sums


def _credit_card_fee_rate(order: Mapping[str, Any], rates: FinancialRates) -> Optional[Decimal]:
    settings = order.get("headerSettings") or {}
    if not (order.get("creditCardFeeEnabled") or settings.get("creditCardFeeEnabled")):
        return None
    override = settings.get("creditCardFeePercentage")
    return to_decimal(override, rates.credit_card_fee_rate) if override not in (None, "") else rates.credit_card_fee_rate


def _raw_invoice_figures(order: Mapping[str, Any], rates: FinancialRates) -> Dict[str, Decimal]:
    sums = _line_item_sums(order)
    items = sums["material"] + sums["labour"] + sums["foam"] + sums["painting"]
    record = payment_record(order)
    pickup = pickup_delivery_charge(record.data)
    tax_fraction = rates.tax_rate / HUNDRED

    if record.order_type is OrderType.CORPORATE:
        taxable = items + pickup
        tax = taxable * tax_fraction
        fee_rate = _credit_card_fee_rate(order, rates)
        fee = (taxable + tax) * fee_rate / HUNDRED if fee_rate is not None else ZERO
        grand_total = taxable + tax + fee
    else:
        tax = (sums["material"] + sums["foam"]) * tax_fraction
        fee = ZERO
        grand_total = items + tax + pickup

    return {**sums, "items": items, "pickup": pickup, "tax": tax, "fee": fee, "grand_total": grand_total}


def compute_invoice_breakdown(order: Mapping[str, Any], *, rates: FinancialRates = DEFAULT_RATES) -> InvoiceBreakdown:
    """Compute the customer-facing invoice figures of ``order``.

    Individual orders are taxed on material and foam only and pay
    pickup/delivery on top. Corporate orders fold pickup/delivery into the
    subtotal, tax the whole subtotal, and add the credit-card surcharge on
    subtotal plus tax when the order or its header settings enable it.

    Args:
        order (Mapping[str, Any]): Order document.
        rates (FinancialRates): Shop-wide rates in percent.

    Returns:
        InvoiceBreakdown: Rounded invoice figures including balance due.
    """
    figures = _raw_invoice_figures(order, rates)
    payment = normalize_payment(order)
    return InvoiceBreakdown(
        material=to_money(figures["material"]),
        labour=to_money(figures["labour"]),
        foam=to_money(figures["foam"]),
        painting=to_money(figures["painting"]),
        items_subtotal=to_money(figures["items"]),
        pickup_delivery=to_money(figures["pickup"]),
        tax=to_money(figures["tax"]),
        credit_card_fee=to_money(figures["fee"]),
        grand_total=to_money(figures["grand_total"]),
        amount_paid=to_money(payment.amount_paid),
        balance_due=to_money(figures["grand_total"] - payment.amount_paid),
    )


def compute_internal_cost(
    order: Mapping[str, Any],
    tax_rates: TaxRateTable,
    *,
    rates: FinancialRates = DEFAULT_RATES,
) -> Decimal:
    """Compute the shop's own cost of ``order`` at full precision.

    Material bought from a supplier is taxed at that supplier's rate; foam,
    other expenses, shipping and extra expenses are untaxed. Customer-facing
    prices never enter this figure.
    """
    total = ZERO
    for group in furniture_groups(order):
        material = to_decimal(group.get("materialJLPrice")) * to_decimal(group.get("materialJLQnty"))
        rate = material_company_tax_rate(
            group.get("materialCompany"),
            tax_rates,
            default_rate=rates.default_material_tax_rate,
        )
        total += material * (1 + rate)
        foam_qty = to_decimal(group.get("foamQnty")) or Decimal(1)
        total += to_decimal(group.get("foamJLPrice")) * foam_qty
        total += to_decimal(group.get("otherExpenses"))
        total += to_decimal(group.get("shipping"))

    for expense in order.get("extraExpenses") or []:
        if isinstance(expense, Mapping):
            total += to_decimal(expense.get("total"))
    return total


def compute_totals(
    order: Mapping[str, Any],
    tax_rates: TaxRateTable,
    *,
    rates: FinancialRates = DEFAULT_RATES,
) -> OrderTotals:
    """Compute the rounded revenue, cost and profit of ``order``.

    The function has no side effects; identical inputs always produce
    identical totals.

    Args:
        order (Mapping[str, Any]): Order document.
        tax_rates (Mapping[str, Decimal]): Material company name (lower case)
            to cost-side tax rate as a fraction.
        rates (FinancialRates): Shop-wide rates in percent.

    Returns:
        OrderTotals: Revenue and cost rounded to cents; profit is their
            difference.
    """
    revenue = to_money(_raw_invoice_figures(order, rates)["grand_total"])
    cost = to_money(compute_internal_cost(order, tax_rates, rates=rates))
    totals = OrderTotals(revenue=revenue, cost=cost, profit=revenue - cost)
    log.debug(
        "Computed totals for order '%s': revenue=%s cost=%s profit=%s",
        order.get("id"),
        totals.revenue,
        totals.cost,
        totals.profit,
    )
    return totals


def deposit_status(order: Mapping[str, Any]) -> DepositStatus:
    """Classify how much of the required deposit has been paid."""
    payment = normalize_payment(order)
    if payment.deposit <= ZERO:
        state = DepositState.NOT_REQUIRED
    elif payment.amount_paid >= payment.deposit:
        state = DepositState.RECEIVED
    elif payment.amount_paid > ZERO:
        state = DepositState.PARTIAL
    else:
        state = DepositState.UNPAID
    return DepositStatus(state=state, deposit=payment.deposit, amount_paid=payment.amount_paid)
