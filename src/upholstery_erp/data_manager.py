"""Data access layer for the workshop engine.

This module provides the low-level helpers that read from and write to the
store workbook. Business rules belong in :mod:`upholstery_erp.core_logic`.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Document operations: a small document store where every collection is a
   worksheet and every document is a JSON body stored in one row.
"""


from __future__ import annotations

import configparser
import copy
import json
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_CREDIT_CARD_FEE_RATE,
    DEFAULT_MATERIAL_TAX_RATE,
    DEFAULT_TAX_RATE,
)
from .financials import FinancialRates


CONFIG_FILE_NAME = "config.ini"
DOCUMENT_HEADERS = ("DocumentID", "Document", "UpdatedAt")

DocumentPredicate = Callable[[Dict[str, Any]], bool]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    tax_rate: Decimal = DEFAULT_TAX_RATE
    credit_card_fee_rate: Decimal = DEFAULT_CREDIT_CARD_FEE_RATE
    default_material_tax_rate: Decimal = DEFAULT_MATERIAL_TAX_RATE

    @property
    def financial_rates(self) -> FinancialRates:
        return FinancialRates(
            tax_rate=self.tax_rate,
            credit_card_fee_rate=self.credit_card_fee_rate,
            default_material_tax_rate=self.default_material_tax_rate,
        )


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _read_rate(parser: configparser.ConfigParser, option: str, default: Decimal) -> Decimal:
    raw = parser.get("Financials", option, fallback=None)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid value for Financials.{option}: {raw!r}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Financials]`` entries are optional
    percentages that fall back to the shop defaults. A relative ``DataFile``
    is resolved against ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for a relative ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a financial rate is not a number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        tax_rate=_read_rate(parser, "TaxRate", DEFAULT_TAX_RATE),
        credit_card_fee_rate=_read_rate(parser, "CreditCardFeeRate", DEFAULT_CREDIT_CARD_FEE_RATE),
        default_material_tax_rate=_read_rate(parser, "DefaultMaterialTaxRate", DEFAULT_MATERIAL_TAX_RATE),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_document(document: Mapping[str, Any]) -> str:
    """Serialize a document body to JSON for a worksheet cell."""
    return json.dumps(document, default=_json_default, sort_keys=True)


def decode_document(raw: Any) -> Dict[str, Any]:
    """Parse the JSON body stored in a worksheet cell."""
    if raw in (None, ""):
        return {}
    return json.loads(raw)


def apply_dotted_fields(document: Mapping[str, Any], fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``document`` with ``fields`` applied.

    Keys may be dotted paths (``"paymentData.amountPaid"``); missing or
    non-mapping intermediate values are replaced with new dictionaries.
    """
    result = copy.deepcopy(dict(document))
    for path, value in fields.items():
        parts = path.split(".")
        target = result
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = copy.deepcopy(value)
    return result


def generate_document_id() -> str:
    """Return a new opaque document identifier."""
    return uuid.uuid4().hex[:20]


def locate_document_row(workbook: Workbook, collection: str, document_id: str) -> Optional[int]:
    """Find the 1-based row holding ``document_id`` in a collection sheet.

    Raises:
        KeyError: If the collection sheet does not exist.
    """

    if collection not in workbook.sheetnames:
        raise KeyError(f"Unknown collection: {collection}")
    sheet = workbook[collection]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row and str(row[0]) == document_id:
            return row_idx
    return None


class WorkbookDocumentStore:
    """Document store backed by an ``openpyxl`` workbook.

    Each collection is a worksheet with the columns ``DocumentID``,
    ``Document`` and ``UpdatedAt``. Every write saves the workbook to
    ``data_file`` before returning, and a multi-field update rewrites a single
    cell, so either all of its fields land or none do.
    """

    def __init__(self, workbook: Workbook, data_file: Path) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file)

    def _sheet(self, collection: str, *, create: bool = False):
        if collection in self.workbook.sheetnames:
            return self.workbook[collection]
        if not create:
            return None
        sheet = self.workbook.create_sheet(collection)
        sheet.append(list(DOCUMENT_HEADERS))
        log.info("Created collection sheet '%s'", collection)
        return sheet

    def _row_document(self, row: tuple) -> Dict[str, Any]:
        document = decode_document(row[1] if len(row) > 1 else None)
        document["id"] = str(row[0])
        return document

    def _save(self) -> None:
        save_workbook(self.workbook, self.data_file)

    async def read_document(self, collection: str, document_id: str) -> Dict[str, Any]:
        sheet = self._sheet(collection)
        if sheet is None:
            raise KeyError(f"Unknown collection: {collection}")
        for row in sheet.iter_rows(min_row=2, values_only=True):
            if row and row[0] is not None and str(row[0]) == document_id:
                return self._row_document(row)
        raise KeyError(f"Document '{document_id}' not found in '{collection}'")

    async def list_documents(
        self,
        collection: str,
        predicate: Optional[DocumentPredicate] = None,
    ) -> List[Dict[str, Any]]:
        sheet = self._sheet(collection)
        if sheet is None:
            return []
        documents = [
            self._row_document(row)
            for row in sheet.iter_rows(min_row=2, values_only=True)
            if row and row[0] is not None
        ]
        if predicate is not None:
            documents = [document for document in documents if predicate(document)]
        return documents

    async def update_document(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        row_idx = locate_document_row(self.workbook, collection, document_id)
        if row_idx is None:
            raise KeyError(f"Document '{document_id}' not found in '{collection}'")
        sheet = self.workbook[collection]
        body_cell = sheet.cell(row=row_idx, column=2)
        stamp_cell = sheet.cell(row=row_idx, column=3)
        previous = (body_cell.value, stamp_cell.value)
        updated = apply_dotted_fields(decode_document(previous[0]), fields)
        updated.pop("id", None)
        body_cell.value = encode_document(updated)
        stamp_cell.value = datetime.now(UTC).isoformat()
        try:
            self._save()
        except Exception:
            body_cell.value, stamp_cell.value = previous
            log.error("Save failed; reverted %s/%s", collection, document_id)
            raise
        log.info("Updated %s/%s fields: %s", collection, document_id, ", ".join(sorted(fields)))

    async def create_record(self, collection: str, data: Mapping[str, Any]) -> str:
        sheet = self._sheet(collection, create=True)
        document_id = generate_document_id()
        body = dict(data)
        body.pop("id", None)
        sheet.append([document_id, encode_document(body), datetime.now(UTC).isoformat()])
        try:
            self._save()
        except Exception:
            sheet.delete_rows(sheet.max_row)
            log.error("Save failed; dropped new row %s/%s", collection, document_id)
            raise
        log.info("Created %s/%s", collection, document_id)
        return document_id
