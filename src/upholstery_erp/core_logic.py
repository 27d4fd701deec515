"""Business logic layer for the workshop completion flow.

This module wires the pure rules (financials, partitioning, allocation and
status transitions) to the collaborators they need: a document store, a tax
rate provider and an optional email service. The :class:`CompletionOrchestrator`
drives one order at a time through validation, allocation, confirmation and
persistence, holding its progress as a single explicit state value.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from . import data_manager, log
from .allocation import AllocationLedger, EntryShare, LedgerTotals, seed_ledger
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    AllocationStatus,
    BlockReason,
    Collection,
    EndStateType,
    OrderType,
)
from .financials import (
    FinancialRates,
    InvoiceBreakdown,
    OrderTotals,
    compute_invoice_breakdown,
    compute_totals,
    normalize_payment,
    order_collection,
    order_type_of,
    payment_record,
    to_decimal,
)
from .partitioning import partition_months, to_calendar_date
from .transitions import (
    Allowed,
    Blocked,
    BusinessRuleViolation,
    InvoiceStatus,
    PendingDetails,
    RequiresAllocation,
    RequiresPendingDetails,
    ValidationError,
    build_full_payment_update,
    build_refund_update,
    status_update_fields,
    validate_pending_details,
    validate_transition,
)


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced order or invoice status is unknown."""


class InvalidStateError(BusinessRuleViolation):
    """Raised when an orchestrator operation is invoked from the wrong state."""


class PersistenceError(Exception):
    """Raised when the document store rejects a read or write."""


class EmailError(Exception):
    """Raised by email adapters when authorization or delivery fails."""


class DocumentStore(Protocol):
    async def read_document(self, collection: str, document_id: str) -> Dict[str, Any]: ...

    async def list_documents(
        self,
        collection: str,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]: ...

    async def update_document(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None: ...

    async def create_record(self, collection: str, data: Mapping[str, Any]) -> str: ...


class TaxRateProvider(Protocol):
    async def get_material_company_tax_rates(self) -> Dict[str, Decimal]: ...


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message: str


class EmailService(Protocol):
    async def ensure_authorized(self) -> None: ...

    async def send_completion_email(
        self,
        order_data: Mapping[str, Any],
        recipient_email: str,
        include_review_request: bool,
        on_progress: Callable[[str], None],
    ) -> EmailResult: ...


class StoreTaxRateProvider:
    """Read material company tax rates from the ``materialCompanies`` collection.

    Rates are stored in percent and returned as fractions keyed by the
    lower-cased company name. Companies without a rate get ``default_rate``.
    """

    def __init__(self, store: DocumentStore, *, default_rate: Decimal) -> None:
        self.store = store
        self.default_rate = default_rate

    async def get_material_company_tax_rates(self) -> Dict[str, Decimal]:
        companies = await self.store.list_documents(Collection.MATERIAL_COMPANIES.value)
        rates: Dict[str, Decimal] = {}
        for company in companies:
            name = str(company.get("name") or "").strip().lower()
            if not name:
                continue
            rates[name] = to_decimal(company.get("taxRate"), self.default_rate) / 100
        log.debug("Loaded tax rates for %d material companies", len(rates))
        return rates


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and collaborators used by the BLL."""

    settings: data_manager.ConfigSettings
    store: DocumentStore
    email_service: Optional[EmailService] = None
    tax_rate_provider: Optional[TaxRateProvider] = None
    clock: Callable[[], datetime] = _utc_now
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def rates(self) -> FinancialRates:
        return self.settings.financial_rates

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        """Current local calendar date."""
        return self.clock().astimezone().date()

    def tax_rates(self) -> TaxRateProvider:
        if self.tax_rate_provider is not None:
            return self.tax_rate_provider
        return StoreTaxRateProvider(self.store, default_rate=self.settings.default_material_tax_rate)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    email_service: Optional[EmailService] = None,
) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        email_service (EmailService | None): Email adapter used for completion
            emails; ``None`` disables sending.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    store = data_manager.WorkbookDocumentStore(workbook, settings.data_file)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store, email_service=email_service)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to write to a store whose schema version is not the expected one.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )
    log.debug("Schema version '%s' validated", context.settings.schema_version)


async def list_invoice_statuses(context: RuntimeContext) -> List[InvoiceStatus]:
    """Return the invoice-status catalog ordered by ``sortOrder``.

    The catalog is read once per context and cached.
    """
    cached = context._cache.get("statuses")
    if cached is None:
        try:
            documents = await context.store.list_documents(Collection.INVOICE_STATUSES.value)
        except Exception as exc:
            raise PersistenceError(f"Unable to load invoice statuses: {exc}") from exc
        cached = sorted(
            (InvoiceStatus.from_document(document) for document in documents),
            key=lambda status: (status.sort_order, status.value),
        )
        context._cache["statuses"] = cached
        log.debug("Populated status cache with %d entries", len(cached))
    return list(cached)


async def get_invoice_status(context: RuntimeContext, value: str) -> InvoiceStatus:
    """Resolve a status by its ``value``.

    Raises:
        MissingReferenceError: If the catalog has no such status.
    """
    for status in await list_invoice_statuses(context):
        if status.value == value:
            return status
    log.warning("Unknown invoice status requested: %s", value)
    raise MissingReferenceError(f"Unknown invoice status: {value}")


async def read_order(context: RuntimeContext, order_id: str) -> Dict[str, Any]:
    """Find an order in either order collection.

    Raises:
        MissingReferenceError: If neither collection holds ``order_id``.
        PersistenceError: If the store fails for another reason.
    """
    for collection in (Collection.ORDERS.value, Collection.CORPORATE_ORDERS.value):
        try:
            order = await context.store.read_document(collection, order_id)
        except KeyError:
            continue
        except Exception as exc:
            raise PersistenceError(f"Unable to read order '{order_id}': {exc}") from exc
        order.setdefault("id", order_id)
        if collection == Collection.CORPORATE_ORDERS.value:
            order.setdefault("orderType", OrderType.CORPORATE.value)
        return order
    log.warning("Order '%s' not found in any order collection", order_id)
    raise MissingReferenceError(f"Unknown order: {order_id}")


async def compute_order_totals(context: RuntimeContext, order: Mapping[str, Any]) -> OrderTotals:
    """Fetch current material tax rates and compute the order totals."""
    try:
        tax_rates = await context.tax_rates().get_material_company_tax_rates()
    except Exception as exc:
        raise PersistenceError(f"Unable to load material tax rates: {exc}") from exc
    return compute_totals(order, tax_rates, rates=context.rates)


def _bill_sort_key(order: Mapping[str, Any]) -> Tuple[Decimal, str]:
    bill = (order.get("orderDetails") or {}).get("billInvoice")
    return to_decimal(bill), str(bill or "")


async def list_orders(
    context: RuntimeContext,
    predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
) -> List[Dict[str, Any]]:
    """Return matching orders of both order collections.

    Documents from ``corporate-orders`` get ``orderType`` set to corporate
    when they do not carry one.

    Raises:
        PersistenceError: If a collection cannot be listed.
    """
    orders: List[Dict[str, Any]] = []
    for collection, order_type in (
        (Collection.ORDERS.value, None),
        (Collection.CORPORATE_ORDERS.value, OrderType.CORPORATE.value),
    ):
        try:
            documents = await context.store.list_documents(collection, predicate)
        except Exception as exc:
            raise PersistenceError(f"Unable to list '{collection}': {exc}") from exc
        for document in documents:
            if order_type is not None:
                document.setdefault("orderType", order_type)
            orders.append(document)
    return orders


async def list_active_orders(context: RuntimeContext) -> List[Dict[str, Any]]:
    """Return orders of both collections whose status is not an end state.

    Results are ordered by bill number, newest first.
    """
    end_values = {status.value for status in await list_invoice_statuses(context) if status.is_end_state}
    orders = await list_orders(context, lambda document: document.get("invoiceStatus") not in end_values)
    orders.sort(key=_bill_sort_key, reverse=True)
    return orders


def customer_name(order: Mapping[str, Any]) -> str:
    """Display name of the customer, or the company and contact for corporate orders."""
    if order_type_of(order) is OrderType.CORPORATE:
        company = (order.get("corporateCustomer") or {}).get("name") or ""
        contact = (order.get("contactPerson") or {}).get("name") or ""
        return f"{company} ({contact})" if company and contact else company or contact
    info = order.get("personalInfo") or {}
    return info.get("customerName") or info.get("name") or ""


async def resolve_customer_email(context: RuntimeContext, order: Mapping[str, Any]) -> Optional[str]:
    """Email address for an individual order's completion email, if any.

    Falls back to the linked customer record when the order itself carries no
    address.
    """
    if order_type_of(order) is OrderType.CORPORATE:
        return None
    email = ((order.get("personalInfo") or {}).get("email") or "").strip()
    if email:
        return email
    customer_id = order.get("customerId")
    if not customer_id:
        return None
    try:
        customer = await context.store.read_document(Collection.CUSTOMERS.value, str(customer_id))
    except KeyError:
        log.warning("Customer '%s' of order '%s' not found", customer_id, order.get("id"))
        return None
    return (customer.get("email") or "").strip() or None


# ---------------------------------------------------------------------------
# Orchestrator states
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Idle:
    """No flow in progress."""


@dataclass(frozen=True)
class Validating:
    order_id: str
    status_value: str


@dataclass(frozen=True)
class AwaitingRemediation:
    """Transition refused until the payment mismatch is remediated."""

    order: Dict[str, Any]
    status: InvoiceStatus
    totals: OrderTotals
    blocked: Blocked


@dataclass(frozen=True)
class CollectingAllocation:
    """Ledger being edited; ``status`` is ``None`` for a standalone edit."""

    order: Dict[str, Any]
    status: Optional[InvoiceStatus]
    totals: OrderTotals
    ledger: AllocationLedger
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    redated: bool = False


@dataclass(frozen=True)
class CollectingPendingDetails:
    order: Dict[str, Any]
    status: InvoiceStatus


@dataclass(frozen=True)
class CompletionSummary:
    """What the user is asked to confirm before a completion is persisted."""

    order_id: str
    bill_invoice: str
    customer_name: str
    status_label: Optional[str]
    shares: List[EntryShare]
    totals: LedgerTotals
    revenue: Decimal
    cost: Decimal
    profit: Decimal
    invoice: InvoiceBreakdown
    recipient_email: Optional[str]

    @property
    def offers_email(self) -> bool:
        return self.recipient_email is not None


@dataclass(frozen=True)
class ConfirmingCompletion:
    collecting: CollectingAllocation
    summary: CompletionSummary


@dataclass(frozen=True)
class Persisting:
    order_id: str
    status_value: Optional[str]


@dataclass
class CompletionResult:
    """Outcome of a committed flow.

    ``email_task`` resolves to the :class:`EmailResult` of the completion
    email when one was requested; the commit itself never depends on it.
    """

    order_id: str
    status_value: Optional[str]
    fields: Dict[str, Any]
    relocated: bool = False
    email_task: Optional["asyncio.Task[EmailResult]"] = None
    warnings: List[str] = field(default_factory=list)

    async def email_result(self) -> Optional[EmailResult]:
        if self.email_task is None:
            return None
        result = await self.email_task
        if not result.success:
            self.warnings.append(f"Email not sent: {result.message}")
        return result


@dataclass(frozen=True)
class Done:
    result: CompletionResult


@dataclass(frozen=True)
class RolledBack:
    """Confirmation was declined; the preserved allocation state is restored."""

    restored: CollectingAllocation


OrchestratorState = Union[
    Idle,
    Validating,
    AwaitingRemediation,
    CollectingAllocation,
    CollectingPendingDetails,
    ConfirmingCompletion,
    Persisting,
    Done,
]


@dataclass(frozen=True)
class Confirmation:
    confirmed: bool
    send_email: bool = True
    include_review_request: bool = True


ConfirmCallback = Callable[[CompletionSummary], Awaitable[Confirmation]]


class CompletionOrchestrator:
    """Drive one order at a time from a status request to a committed change.

    The orchestrator exposes one coroutine per user action. Each action is
    valid only from specific states and raises :class:`InvalidStateError`
    otherwise. Store writes are awaited one after another; a failed write
    raises :class:`PersistenceError` and returns the flow to an interactive
    state without touching the active order list.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context
        self.state: OrchestratorState = Idle()
        self.active_orders: List[Dict[str, Any]] = []

    def _require(self, *allowed: type) -> None:
        if not isinstance(self.state, allowed):
            expected = ", ".join(cls.__name__ for cls in allowed)
            log.warning("Rejected action in state %s (expected %s)", type(self.state).__name__, expected)
            raise InvalidStateError(
                f"Action not allowed while {type(self.state).__name__}; expected {expected}"
            )

    def _enter(self, state: OrchestratorState) -> OrchestratorState:
        log.debug("Orchestrator state %s -> %s", type(self.state).__name__, type(state).__name__)
        self.state = state
        return state

    async def load_active_orders(self) -> List[Dict[str, Any]]:
        self.active_orders = await list_active_orders(self.context)
        log.info("Loaded %d active orders", len(self.active_orders))
        return list(self.active_orders)

    async def request_transition(self, order_id: str, status_value: str) -> OrchestratorState:
        """Start moving ``order_id`` to ``status_value``.

        Ordinary statuses and fully refunded cancellations are committed
        straight away. A completion continues to allocation, a pending status
        to collecting details, and a payment mismatch stops in
        :class:`AwaitingRemediation`.

        Raises:
            MissingReferenceError: If the order or status does not exist.
            PersistenceError: If the store cannot be read or written.
        """
        self._require(Idle, Done)
        self._enter(Validating(order_id=order_id, status_value=status_value))
        try:
            order = await read_order(self.context, order_id)
            status = await get_invoice_status(self.context, status_value)
            return await self._validate(order, status)
        except Exception:
            self._enter(Idle())
            raise

    async def _validate(self, order: Dict[str, Any], status: InvoiceStatus) -> OrchestratorState:
        totals = await compute_order_totals(self.context, order)
        outcome = validate_transition(status, normalize_payment(order), totals)
        log.info(
            "Transition of order '%s' to '%s': %s",
            order.get("id"),
            status.value,
            type(outcome).__name__,
        )
        if isinstance(outcome, Blocked):
            return self._enter(AwaitingRemediation(order=order, status=status, totals=totals, blocked=outcome))
        if isinstance(outcome, RequiresPendingDetails):
            return self._enter(CollectingPendingDetails(order=order, status=status))
        if isinstance(outcome, RequiresAllocation):
            return self._enter(self._collecting(order, status, totals))
        if isinstance(outcome, Allowed):
            fields = status_update_fields(status, now=self.context.now())
            return await self._commit_status(order, status, fields)
        raise TypeError(f"Unexpected transition outcome: {outcome!r}")

    def _collecting(
        self,
        order: Dict[str, Any],
        status: Optional[InvoiceStatus],
        totals: OrderTotals,
    ) -> CollectingAllocation:
        details = order.get("orderDetails") or {}
        ledger = seed_ledger(order, totals, today=self.context.today(), partition=partition_months)
        return CollectingAllocation(
            order=order,
            status=status,
            totals=totals,
            ledger=ledger,
            start_date=to_calendar_date(details.get("startDate")),
            end_date=to_calendar_date(details.get("endDate")),
        )

    async def begin_allocation_edit(self, order_id: str) -> CollectingAllocation:
        """Open the allocation ledger of an order without changing its status."""
        self._require(Idle, Done)
        order = await read_order(self.context, order_id)
        totals = await compute_order_totals(self.context, order)
        return self._enter(self._collecting(order, None, totals))

    async def apply_remediation(self) -> OrchestratorState:
        """Apply the offered payment fix and validate the transition again.

        An unpaid balance is recorded as fully paid; an unrefunded payment is
        refunded to zero. Both append a system payment-history entry.
        """
        self._require(AwaitingRemediation)
        state = self.state
        record = payment_record(state.order)
        payment = normalize_payment(state.order)
        now = self.context.now()
        if state.blocked.reason is BlockReason.INSUFFICIENT_PAYMENT:
            fields = build_full_payment_update(record, payment, state.totals, now=now)
        else:
            fields = build_refund_update(record, payment, now=now)

        collection = order_collection(state.order)
        try:
            await self.context.store.update_document(collection, state.order["id"], fields)
        except Exception as exc:
            log.error("Remediation write for order '%s' failed: %s", state.order.get("id"), exc)
            raise PersistenceError(f"Failed to update payment: {exc}") from exc
        log.info(
            "Applied %s remediation of %s to order '%s'",
            state.blocked.reason.value,
            state.blocked.amount,
            state.order.get("id"),
        )

        self._enter(Validating(order_id=state.order["id"], status_value=state.status.value))
        try:
            order = await read_order(self.context, state.order["id"])
            return await self._validate(order, state.status)
        except Exception:
            self._enter(Idle())
            raise

    def cancel(self) -> Idle:
        """Abandon the current flow without writing anything."""
        self._require(
            AwaitingRemediation,
            CollectingAllocation,
            CollectingPendingDetails,
            ConfirmingCompletion,
            Idle,
            Done,
        )
        log.info("Flow cancelled from %s", type(self.state).__name__)
        return self._enter(Idle())

    def set_percentage(self, index: int, raw_value: Any) -> AllocationLedger:
        self._require(CollectingAllocation)
        state = replace(self.state, ledger=self.state.ledger.set_percentage(index, raw_value))
        self._enter(state)
        return state.ledger

    def redate(self, start: Any, end: Any) -> AllocationLedger:
        """Replace the service period and regenerate the ledger from it.

        Raises:
            ValidationError: If a date is missing or ``start`` is after ``end``.
        """
        self._require(CollectingAllocation)
        start_date = to_calendar_date(start)
        end_date = to_calendar_date(end)
        if start_date is None or end_date is None:
            raise ValidationError("Both start and end dates are required.")
        if start_date > end_date:
            log.warning("Rejected service period %s..%s", start_date, end_date)
            raise ValidationError(
                f"Start date {start_date.isoformat()} is after end date {end_date.isoformat()}."
            )
        state = self.state
        ledger = AllocationLedger.from_slots(partition_months(start_date, end_date), state.totals)
        self._enter(replace(state, ledger=ledger, start_date=start_date, end_date=end_date, redated=True))
        return ledger

    async def submit_pending_details(self, expected_resume_date: Any, notes: Optional[str]) -> OrchestratorState:
        """Validate the pending details and commit the pending status.

        Raises:
            ValidationError: If the resume date is missing or in the past; the
                flow stays in :class:`CollectingPendingDetails`.
        """
        self._require(CollectingPendingDetails)
        state = self.state
        details: PendingDetails = validate_pending_details(expected_resume_date, notes, today=self.context.today())
        fields = status_update_fields(state.status, now=self.context.now(), pending=details)
        return await self._commit_status(state.order, state.status, fields, on_failure=state)

    async def build_summary(self, collecting: CollectingAllocation) -> CompletionSummary:
        order = collecting.order
        ledger = collecting.ledger
        recipient = None
        if collecting.status is not None and collecting.status.end_state_type is EndStateType.DONE:
            recipient = await resolve_customer_email(self.context, order)
        return CompletionSummary(
            order_id=order["id"],
            bill_invoice=str((order.get("orderDetails") or {}).get("billInvoice") or ""),
            customer_name=customer_name(order),
            status_label=collecting.status.label if collecting.status else None,
            shares=ledger.breakdown(),
            totals=ledger.totals(),
            revenue=collecting.totals.revenue,
            cost=collecting.totals.cost,
            profit=collecting.totals.profit,
            invoice=compute_invoice_breakdown(order, rates=self.context.rates),
            recipient_email=recipient if self.context.email_service is not None else None,
        )

    async def confirm_completion(self, confirm: ConfirmCallback) -> Union[Done, RolledBack]:
        """Ask for confirmation, then persist the status and allocation.

        ``confirm`` receives the :class:`CompletionSummary` and resolves to a
        :class:`Confirmation`. Declining restores the exact allocation state
        that was active before the call, and so does an exception raised by
        ``confirm``, which then propagates.

        Raises:
            ValidationError: If the ledger does not sum to 100 %.
            PersistenceError: If a store write fails; the flow returns to
                :class:`CollectingAllocation` with the ledger intact.
        """
        self._require(CollectingAllocation)
        collecting: CollectingAllocation = self.state
        ledger_status = collecting.ledger.status()
        if ledger_status is not AllocationStatus.VALID:
            total = collecting.ledger.totals().total_percentage
            log.warning("Allocation for order '%s' is %s (%s%%)", collecting.order.get("id"), ledger_status.value, total)
            raise ValidationError(
                f"Allocation must total 100% (currently {total}%).",
                remediation="edit_allocation",
            )

        summary = await self.build_summary(collecting)
        self._enter(ConfirmingCompletion(collecting=collecting, summary=summary))
        try:
            decision = await confirm(summary)
        except BaseException:
            log.warning("Confirmation of order '%s' aborted; allocation kept", collecting.order.get("id"))
            self._enter(collecting)
            raise
        if not decision.confirmed:
            log.info("Completion of order '%s' not confirmed; allocation kept", collecting.order.get("id"))
            self._enter(collecting)
            return RolledBack(restored=collecting)

        return await self._persist_completion(collecting, summary, decision)

    async def _persist_completion(
        self,
        collecting: CollectingAllocation,
        summary: CompletionSummary,
        decision: Confirmation,
    ) -> Done:
        order = collecting.order
        status = collecting.status
        now = self.context.now()
        fields: Dict[str, Any] = {}
        if status is not None:
            fields.update(status_update_fields(status, now=now))
        fields["allocation"] = collecting.ledger.to_document(now)
        if collecting.redated and collecting.start_date and collecting.end_date:
            fields["orderDetails.startDate"] = collecting.start_date.isoformat()
            fields["orderDetails.endDate"] = collecting.end_date.isoformat()

        self._enter(Persisting(order_id=order["id"], status_value=status.value if status else None))
        relocate = (
            status is not None
            and status.end_state_type is EndStateType.DONE
            and order_type_of(order) is OrderType.CORPORATE
        )
        try:
            await self.context.store.update_document(order_collection(order), order["id"], fields)
            if relocate:
                await self._relocate_corporate(order, fields, now)
        except Exception as exc:
            log.error("Persisting completion of order '%s' failed: %s", order.get("id"), exc)
            self._enter(collecting)
            raise PersistenceError(f"Failed to save order '{order.get('id')}': {exc}") from exc

        result = CompletionResult(
            order_id=order["id"],
            status_value=status.value if status else None,
            fields=fields,
            relocated=relocate,
        )
        log.info("Committed order '%s' (status=%s)", order["id"], result.status_value)

        if relocate:
            self.active_orders = [item for item in self.active_orders if item.get("id") != order["id"]]

        if decision.send_email and summary.recipient_email and self.context.email_service is not None:
            result.email_task = asyncio.create_task(
                self._send_completion_email(order, summary.recipient_email, decision.include_review_request)
            )

        done = self._enter(Done(result=result))
        await self._reload_after_commit(result)
        return done

    async def _relocate_corporate(self, order: Mapping[str, Any], fields: Mapping[str, Any], now: datetime) -> None:
        """Copy a completed corporate order to ``done-orders`` and ``taxedInvoices``.

        Both copies carry ``originalInvoiceId``; a collection that already
        holds a copy of the order is skipped, so a retry after a partial
        failure creates only the missing record.
        """
        closed = data_manager.apply_dotted_fields(order, fields)
        original_id = closed.pop("id")
        closed_at = now.isoformat()
        copies = (
            (
                Collection.DONE_ORDERS.value,
                {
                    **closed,
                    "orderType": OrderType.CORPORATE.value,
                    "source": "corporate_order",
                    "closedAt": closed_at,
                    "status": EndStateType.DONE.value,
                    "originalInvoiceId": original_id,
                },
            ),
            (
                Collection.TAXED_INVOICES.value,
                {**closed, "closedAt": closed_at, "originalInvoiceId": original_id},
            ),
        )
        for collection, record in copies:
            existing = await self.context.store.list_documents(
                collection,
                lambda document: document.get("originalInvoiceId") == original_id,
            )
            if existing:
                log.info("Order '%s' already copied to '%s'; skipped", original_id, collection)
                continue
            await self.context.store.create_record(collection, record)
        log.info("Copied corporate order '%s' to closed collections", original_id)

    async def _commit_status(
        self,
        order: Mapping[str, Any],
        status: InvoiceStatus,
        fields: Dict[str, Any],
        *,
        on_failure: Optional[OrchestratorState] = None,
    ) -> Done:
        self._enter(Persisting(order_id=order["id"], status_value=status.value))
        try:
            await self.context.store.update_document(order_collection(order), order["id"], fields)
        except Exception as exc:
            log.error("Status write for order '%s' failed: %s", order.get("id"), exc)
            self._enter(on_failure if on_failure is not None else Idle())
            raise PersistenceError(f"Failed to update status of order '{order.get('id')}': {exc}") from exc
        result = CompletionResult(order_id=order["id"], status_value=status.value, fields=fields)
        log.info("Order '%s' moved to status '%s'", order["id"], status.value)
        done = self._enter(Done(result=result))
        await self._reload_after_commit(result)
        return done

    async def _reload_after_commit(self, result: CompletionResult) -> None:
        try:
            await self.load_active_orders()
        except PersistenceError as exc:
            log.warning("Order list not refreshed after committing '%s': %s", result.order_id, exc)
            result.warnings.append(f"Order list not refreshed: {exc}")

    async def _send_completion_email(
        self,
        order: Mapping[str, Any],
        recipient: str,
        include_review_request: bool,
    ) -> EmailResult:
        service = self.context.email_service
        order_id = order.get("id")

        def on_progress(message: str) -> None:
            log.info("Email for order '%s': %s", order_id, message)

        try:
            await service.ensure_authorized()
            result = await service.send_completion_email(order, recipient, include_review_request, on_progress)
        except EmailError as exc:
            log.warning("Completion email for order '%s' failed: %s", order_id, exc)
            return EmailResult(success=False, message=str(exc))
        except Exception as exc:
            log.exception("Email service error for order '%s'", order_id)
            return EmailResult(success=False, message=f"{type(exc).__name__}: {exc}")
        if result.success:
            log.info("Completion email for order '%s' sent to %s", order_id, recipient)
        else:
            log.warning("Completion email for order '%s' not sent: %s", order_id, result.message)
        return result
