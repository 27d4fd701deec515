"""Shared pytest fixtures and utilities for the workshop engine tests."""

from __future__ import annotations

import copy
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from upholstery_erp import constants, core_logic, data_manager  # noqa: E402
from upholstery_erp.constants import Collection  # noqa: E402
from upholstery_erp.setup_excel import DEFAULT_STATUSES, create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Financials]\n"
    "TaxRate = 13\n"
    "CreditCardFeeRate = 2.5\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


class InMemoryStore:
    """Document store double keeping collections in dictionaries.

    ``fail_updates`` / ``fail_creates`` make the matching writes raise,
    ``fail_create_collections`` fails creates in the named collections only, and
    ``calls`` records every write in order.
    """

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.fail_updates = False
        self.fail_creates = False
        self.fail_create_collections: set = set()
        self._counter = 0

    def add(self, collection: str, document: Mapping[str, Any], document_id: Optional[str] = None) -> str:
        self._counter += 1
        document_id = document_id or f"{collection}-{self._counter}"
        body = copy.deepcopy(dict(document))
        body.pop("id", None)
        self.collections.setdefault(collection, {})[document_id] = body
        return document_id

    def get(self, collection: str, document_id: str) -> Dict[str, Any]:
        return self.collections[collection][document_id]

    async def read_document(self, collection: str, document_id: str) -> Dict[str, Any]:
        documents = self.collections.get(collection, {})
        if document_id not in documents:
            raise KeyError(document_id)
        return {**copy.deepcopy(documents[document_id]), "id": document_id}

    async def list_documents(self, collection, predicate=None):
        documents = [
            {**copy.deepcopy(body), "id": document_id}
            for document_id, body in self.collections.get(collection, {}).items()
        ]
        if predicate is not None:
            documents = [document for document in documents if predicate(document)]
        return documents

    async def update_document(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        self.calls.append(("update", collection, dict(fields)))
        if self.fail_updates:
            raise RuntimeError("store unavailable")
        documents = self.collections.get(collection, {})
        if document_id not in documents:
            raise KeyError(document_id)
        documents[document_id] = data_manager.apply_dotted_fields(documents[document_id], fields)

    async def create_record(self, collection: str, data: Mapping[str, Any]) -> str:
        self.calls.append(("create", collection, dict(data)))
        if self.fail_creates or collection in self.fail_create_collections:
            raise RuntimeError("store unavailable")
        return self.add(collection, data)


class FakeEmailService:
    """Email service double recording every send."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.authorized = False
        self.sent: List[Dict[str, Any]] = []

    async def ensure_authorized(self) -> None:
        if self.fail:
            raise core_logic.EmailError("Gmail authorization expired")
        self.authorized = True

    async def send_completion_email(self, order_data, recipient_email, include_review_request, on_progress):
        on_progress("sending")
        self.sent.append(
            {
                "order_id": order_data.get("id"),
                "recipient": recipient_email,
                "include_review_request": include_review_request,
            }
        )
        return core_logic.EmailResult(success=True, message=f"sent to {recipient_email}")


def make_individual_order(
    *,
    amount_paid: Any = 500,
    deposit: Any = 500,
    labour_price: Any = 250,
    labour_qnty: Any = 2,
    start: Optional[str] = "2024-01-15",
    end: Optional[str] = "2024-03-10",
    status: str = "in_progress",
    bill: str = "1001",
    email: str = "ada@example.com",
    **extra: Any,
) -> Dict[str, Any]:
    """Individual order whose revenue is ``labour_price * labour_qnty`` with no tax."""

    order = {
        "orderType": "individual",
        "invoiceStatus": status,
        "personalInfo": {"customerName": "Ada Lovelace", "email": email},
        "orderDetails": {"billInvoice": bill, "startDate": start, "endDate": end},
        "furnitureData": {
            "groups": [
                {
                    "labourPrice": labour_price,
                    "labourQnty": labour_qnty,
                    "materialJLPrice": 50,
                    "materialJLQnty": 2,
                    "materialCompany": "Fabricland",
                    "foamJLPrice": 20,
                    "otherExpenses": 7,
                }
            ]
        },
        "paymentData": {"deposit": deposit, "amountPaid": amount_paid, "paymentHistory": []},
    }
    order.update(extra)
    return order


def make_corporate_order(*, amount_paid: Any = 452, bill: str = "2001", status: str = "in_progress") -> Dict[str, Any]:
    """Corporate order with a 452.00 grand total (400 taxable + 13 %)."""

    return {
        "orderType": "corporate",
        "invoiceStatus": status,
        "corporateCustomer": {"name": "Acme Hotels"},
        "contactPerson": {"name": "Grace Hopper", "email": "grace@acme.test"},
        "orderDetails": {"billInvoice": bill, "startDate": "2024-02-01", "endDate": "2024-02-20"},
        "furnitureGroups": [
            {
                "materialPrice": 100,
                "materialQnty": 2,
                "labourPrice": 150,
                "labourQnty": 1,
                "foamPrice": 40,
                "foamQnty": 1,
                "foamEnabled": False,
                "materialJLPrice": 30,
                "materialJLQnty": 2,
                "materialCompany": "Fabricland",
            }
        ],
        "paymentDetails": {
            "deposit": 100,
            "amountPaid": amount_paid,
            "pickupDeliveryEnabled": True,
            "pickupDeliveryCost": 50,
            "pickupDeliveryServiceType": "delivery",
        },
    }


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "workshop_store.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Upholstery",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "workshop_store.xlsx",
        shop_name="Test Upholstery",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def store() -> InMemoryStore:
    """In-memory store seeded with the default status catalog and one supplier."""

    memory = InMemoryStore()
    for status in DEFAULT_STATUSES:
        memory.add(Collection.INVOICE_STATUSES.value, status, document_id=status["value"])
    memory.add(Collection.MATERIAL_COMPANIES.value, {"name": "Fabricland", "taxRate": 13})
    return memory


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    store: InMemoryStore,
    email_service: FakeEmailService,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context with a fixed clock and in-memory collaborators."""

    return core_logic.RuntimeContext(
        settings=settings,
        store=store,
        email_service=email_service,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def orchestrator(context: core_logic.RuntimeContext) -> core_logic.CompletionOrchestrator:
    return core_logic.CompletionOrchestrator(context)


def confirm_with(decision: core_logic.Confirmation, seen: Optional[list] = None):
    """Build an async confirm callback returning ``decision``."""

    async def _confirm(summary: core_logic.CompletionSummary) -> core_logic.Confirmation:
        if seen is not None:
            seen.append(summary)
        return decision

    return _confirm


def money(value: str) -> Decimal:
    return Decimal(value)
