"""Enumerations and numeric constants shared across the workshop engine.

Centralises identifiers used by the data access layer, the financial and
allocation rules, and the CLI so that collection names, status kinds and
rates have a single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")

# Allocation percentages must sum to 100 within this tolerance.
PERCENT_TOLERANCE = Decimal("0.01")
# Payment comparisons (refund-to-zero) use the same cent tolerance.
MONEY_TOLERANCE = Decimal("0.01")

DEFAULT_TAX_RATE = Decimal("13")
DEFAULT_CREDIT_CARD_FEE_RATE = Decimal("2.5")
DEFAULT_MATERIAL_TAX_RATE = Decimal("13")

# Width of the date-agnostic allocation window on each side of today.
FALLBACK_WINDOW_MONTHS = 2

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class OrderType(str, Enum):
    """Enumerate the two order variants and their storage conventions."""

    INDIVIDUAL = "individual"
    CORPORATE = "corporate"


class EndStateType(str, Enum):
    """Enumerate the terminal status kinds defined in the status catalog."""

    DONE = "done"
    CANCELLED = "cancelled"
    PENDING = "pending"


class ServiceType(str, Enum):
    """Enumerate pickup/delivery service options."""

    PICKUP = "pickup"
    DELIVERY = "delivery"
    BOTH = "both"


class AllocationStatus(str, Enum):
    """Enumerate the completeness states of an allocation ledger."""

    VALID = "valid"
    OVER = "over"
    UNDER = "under"


class BlockReason(str, Enum):
    """Enumerate why a status transition was refused."""

    INSUFFICIENT_PAYMENT = "insufficient_payment"
    UNREFUNDED_PAYMENT = "unrefunded_payment"


class Collection(str, Enum):
    """Enumerate the document store collections touched by the engine."""

    ORDERS = "orders"
    CORPORATE_ORDERS = "corporate-orders"
    DONE_ORDERS = "done-orders"
    TAXED_INVOICES = "taxedInvoices"
    INVOICE_STATUSES = "invoiceStatuses"
    CUSTOMERS = "customers"
    MATERIAL_COMPANIES = "materialCompanies"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CENTS",
    "HUNDRED",
    "ZERO",
    "PERCENT_TOLERANCE",
    "MONEY_TOLERANCE",
    "DEFAULT_TAX_RATE",
    "DEFAULT_CREDIT_CARD_FEE_RATE",
    "DEFAULT_MATERIAL_TAX_RATE",
    "FALLBACK_WINDOW_MONTHS",
    "MONTH_NAMES",
    "OrderType",
    "EndStateType",
    "ServiceType",
    "AllocationStatus",
    "BlockReason",
    "Collection",
]
