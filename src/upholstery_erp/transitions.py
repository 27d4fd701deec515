"""Invoice-status transition rules.

The validator decides whether an order may enter a status, given its
normalized payment and computed totals. It never mutates anything; the
``build_*`` helpers only describe the field updates the orchestrator writes
once the user accepts a remediation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from . import log
from .constants import MONEY_TOLERANCE, ZERO, BlockReason, EndStateType
from .financials import NormalizedPayment, OrderTotals, PaymentRecord
from .partitioning import to_calendar_date


FULL_PAYMENT_ENTRY_TYPE = "Status Change - Full Payment"
REFUND_ENTRY_TYPE = "Status Change - Refund"
SYSTEM_PAYMENT_METHOD = "System Adjustment"


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Raised when user input or order state fails a completion rule.

    ``remediation`` names the corrective action the caller may offer, such as
    ``"mark_fully_paid"`` or ``"edit_allocation"``.
    """

    def __init__(self, message: str, *, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.remediation = remediation


@dataclass(frozen=True)
class InvoiceStatus:
    """Entry of the invoice-status catalog."""

    value: str
    label: str
    color: str = ""
    is_end_state: bool = False
    end_state_type: Optional[EndStateType] = None
    is_default: bool = False
    sort_order: int = 0

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "InvoiceStatus":
        raw_type = document.get("endStateType")
        try:
            end_state_type = EndStateType(raw_type) if raw_type else None
        except ValueError:
            log.warning("Unknown end state type '%s' on status '%s'", raw_type, document.get("value"))
            end_state_type = None
        try:
            sort_order = int(document.get("sortOrder") or 0)
        except (TypeError, ValueError):
            sort_order = 0
        return cls(
            value=str(document.get("value", "")),
            label=str(document.get("label") or document.get("value", "")),
            color=str(document.get("color") or ""),
            is_end_state=bool(document.get("isEndState")),
            end_state_type=end_state_type,
            is_default=bool(document.get("isDefault")),
            sort_order=sort_order,
        )


@dataclass(frozen=True)
class Allowed:
    """Transition needs no further input."""


@dataclass(frozen=True)
class RequiresAllocation:
    """Completion is paid in full; an allocation must be collected next."""


@dataclass(frozen=True)
class Blocked:
    """Payment state forbids the transition until a remediation is applied."""

    reason: BlockReason
    amount: Decimal

    @property
    def remediation(self) -> Dict[str, Decimal]:
        if self.reason is BlockReason.INSUFFICIENT_PAYMENT:
            return {"pendingAmount": self.amount}
        return {"refundAmount": self.amount}


@dataclass(frozen=True)
class RequiresPendingDetails:
    """Pending status needs an expected resume date and notes."""


TransitionOutcome = Union[Allowed, RequiresAllocation, Blocked, RequiresPendingDetails]


@dataclass(frozen=True)
class PendingDetails:
    expected_resume_date: date
    notes: str


def validate_transition(
    status: InvoiceStatus,
    payment: NormalizedPayment,
    totals: OrderTotals,
) -> TransitionOutcome:
    """Decide whether an order may enter ``status``.

    Args:
        status (InvoiceStatus): Candidate status from the catalog.
        payment (NormalizedPayment): Current payment state of the order.
        totals (OrderTotals): Computed order totals.

    Returns:
        TransitionOutcome: ``Allowed`` for ordinary statuses,
            ``RequiresAllocation`` for a fully paid completion, ``Blocked``
            for a payment mismatch, and ``RequiresPendingDetails`` for a
            pending status.
    """
    if not status.is_end_state:
        return Allowed()

    if status.end_state_type is EndStateType.DONE:
        if payment.amount_paid >= totals.revenue:
            return RequiresAllocation()
        shortfall = totals.revenue - payment.amount_paid
        log.warning(
            "Completion to '%s' blocked: %s paid of %s revenue",
            status.value,
            payment.amount_paid,
            totals.revenue,
        )
        return Blocked(reason=BlockReason.INSUFFICIENT_PAYMENT, amount=shortfall)

    if status.end_state_type is EndStateType.CANCELLED:
        if abs(payment.amount_paid) <= MONEY_TOLERANCE:
            return Allowed()
        log.warning("Cancellation to '%s' blocked: %s still paid", status.value, payment.amount_paid)
        return Blocked(reason=BlockReason.UNREFUNDED_PAYMENT, amount=payment.amount_paid)

    if status.end_state_type is EndStateType.PENDING:
        return RequiresPendingDetails()

    # End state without a known type carries no payment rule.
    return Allowed()


def _payment_entry(amount: Decimal, entry_type: str, description: str, now: datetime) -> Dict[str, Any]:
    return {
        "amount": amount,
        "date": now.isoformat(),
        "type": entry_type,
        "method": SYSTEM_PAYMENT_METHOD,
        "description": description,
    }


def build_full_payment_update(
    record: PaymentRecord,
    payment: NormalizedPayment,
    totals: OrderTotals,
    *,
    now: datetime,
) -> Dict[str, Any]:
    """Fields that raise ``amountPaid`` to the order revenue.

    A synthetic history entry for the shortfall is appended so the payment
    history keeps adding up to ``amountPaid``.
    """
    shortfall = totals.revenue - payment.amount_paid
    entry = _payment_entry(
        shortfall,
        FULL_PAYMENT_ENTRY_TYPE,
        "Remaining balance recorded when the order was marked done",
        now,
    )
    return {
        record.path("amountPaid"): totals.revenue,
        record.path(payment.history_field): [*payment.payment_history, entry],
    }


def build_refund_update(record: PaymentRecord, payment: NormalizedPayment, *, now: datetime) -> Dict[str, Any]:
    """Fields that refund the order down to zero paid."""
    entry = _payment_entry(
        -payment.amount_paid,
        REFUND_ENTRY_TYPE,
        "Full refund recorded when the order was cancelled",
        now,
    )
    return {
        record.path("amountPaid"): ZERO,
        record.path(payment.history_field): [*payment.payment_history, entry],
    }


def validate_pending_details(expected_resume_date: Any, notes: Optional[str], *, today: date) -> PendingDetails:
    """Check the details collected for a pending status.

    The resume date may be today or later; only the calendar date is
    compared.

    Raises:
        ValidationError: If the date is missing, unreadable or in the past.
    """
    resume = to_calendar_date(expected_resume_date)
    if resume is None:
        log.warning("Pending status rejected: missing expected resume date")
        raise ValidationError("An expected resume date is required for a pending status.")
    if resume < today:
        log.warning("Pending status rejected: resume date %s is before %s", resume, today)
        raise ValidationError(
            f"Expected resume date {resume.isoformat()} is in the past.",
            remediation="choose_resume_date",
        )
    return PendingDetails(expected_resume_date=resume, notes=(notes or "").strip())


def status_update_fields(
    status: InvoiceStatus,
    *,
    now: datetime,
    pending: Optional[PendingDetails] = None,
    cancellation_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Bookkeeping fields written together with a new ``invoiceStatus``."""
    stamp = now.isoformat()
    fields: Dict[str, Any] = {"invoiceStatus": status.value, "statusUpdatedAt": stamp}
    if status.end_state_type is EndStateType.DONE:
        fields["completedAt"] = stamp
    elif status.end_state_type is EndStateType.CANCELLED:
        fields["cancelledAt"] = stamp
        if cancellation_reason:
            fields["cancellationReason"] = cancellation_reason
    elif status.end_state_type is EndStateType.PENDING and pending is not None:
        fields["pendingAt"] = stamp
        fields["expectedResumeDate"] = pending.expected_resume_date.isoformat()
        fields["pendingNotes"] = pending.notes
    return fields
