"""Utility for initializing an empty workshop store workbook.

The module doubles as a script (``python -m upholstery_erp.setup_excel``) and
as a library used by tests. It creates one sheet per collection and seeds the
default invoice-status catalog.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .constants import Collection


DEFAULT_STATUSES: Sequence[Mapping[str, Any]] = (
    {"value": "in_progress", "label": "In Progress", "color": "#1976d2", "isEndState": False, "isDefault": True, "sortOrder": 1},
    {"value": "pending_payment", "label": "Pending Payment", "color": "#f57c00", "isEndState": False, "isDefault": False, "sortOrder": 2},
    {"value": "done", "label": "Done", "color": "#388e3c", "isEndState": True, "endStateType": "done", "isDefault": False, "sortOrder": 3},
    {"value": "cancelled", "label": "Cancelled", "color": "#d32f2f", "isEndState": True, "endStateType": "cancelled", "isDefault": False, "sortOrder": 4},
    {"value": "pending", "label": "Pending", "color": "#ff9800", "isEndState": True, "endStateType": "pending", "isDefault": False, "sortOrder": 5},
)


def create_store_workbook(
    destination: Path,
    *,
    statuses: Sequence[Mapping[str, Any]] = DEFAULT_STATUSES,
    overwrite: bool = False,
) -> Path:
    """Create the store workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing store workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for collection in Collection:
        worksheet = workbook.create_sheet(title=collection.value)
        for column_index, column_name in enumerate(data_manager.DOCUMENT_HEADERS, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    status_sheet = workbook[Collection.INVOICE_STATUSES.value]
    for status in statuses:
        status_sheet.append([status["value"], data_manager.encode_document(status), None])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=Path(config_path).expanduser().resolve().parent)
    return create_store_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the workshop store workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
