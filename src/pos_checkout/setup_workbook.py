"""Utility for initializing the checkout master workbook.

The module doubles as a script (``python -m pos_checkout.setup_workbook``) and
as a library used by tests. It lays out every sheet the data access layer
reads, with bold header rows and no data.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .data_manager import ConfigSettings

# Column order must match the serialize_* helpers in data_manager.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    data_manager.PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "SalePrice",
        "StockQuantity",
        "IsActive",
    ],
    data_manager.CUSTOMERS_SHEET: [
        "CustomerID",
        "CustomerName",
        "CreditLimit",
        "OutstandingDues",
        "LoyaltyPoints",
    ],
    data_manager.SALES_SHEET: [
        "SaleID",
        "ReceiptNumber",
        "InvoiceNumber",
        "Timestamp",
        "CustomerID",
        "Subtotal",
        "DiscountAmount",
        "TaxAmount",
        "TotalAmount",
        "PaymentMethod",
        "PaymentStatus",
        "AmountTendered",
        "ChangeDue",
        "CashierName",
    ],
    data_manager.SALE_ITEMS_SHEET: [
        "SaleID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "DiscountAmount",
        "TotalPrice",
    ],
    data_manager.STOCK_MOVEMENTS_SHEET: [
        "ProductID",
        "MovementType",
        "Quantity",
        "ReferenceType",
        "ReferenceID",
        "Timestamp",
    ],
    data_manager.BNPL_TRANSACTIONS_SHEET: [
        "SaleID",
        "CustomerID",
        "OriginalAmount",
        "AmountDue",
        "DueDate",
        "Status",
    ],
}

CONFIG_FILE = "config.ini"


def load_settings(config_path: Path) -> ConfigSettings:
    """Read ``config.ini`` the same way the runtime does.

    Relative ``DataFile`` paths are resolved against the config file's
    directory.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If a mandatory ``[System]`` entry is missing.
    """

    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the checkout master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the checkout master workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
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

    print("--- POS Checkout Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except (KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
