"""Data access layer for the checkout engine.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Checkout rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file,
   including an all-or-nothing replacement used by sale commits.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CASHIER_NAME, DEFAULT_LOYALTY_POINTS_PER_CURRENCY, DEFAULT_TAX_RATE, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
STOCK_MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value
BNPL_TRANSACTIONS_SHEET = SheetName.BNPL_TRANSACTIONS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    tax_rate: Decimal = DEFAULT_TAX_RATE
    cashier_name: str = DEFAULT_CASHIER_NAME
    loyalty_points_per_currency: Decimal = DEFAULT_LOYALTY_POINTS_PER_CURRENCY


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit_price: Decimal
    stock_quantity: int
    is_active: bool = True


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    customer_name: str
    credit_limit: Decimal
    outstanding_dues: Decimal
    loyalty_points: int = 0

    @property
    def available_credit(self) -> Decimal:
        # May be negative for over-limit customers.
        return self.credit_limit - self.outstanding_dues


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    receipt_number: str
    invoice_number: str
    timestamp_iso: str
    customer_id: Optional[str]
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    payment_method: str
    payment_status: str
    amount_tendered: Optional[Decimal]
    change_due: Decimal
    cashier_name: str


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class StockMovementRow:
    """In-memory view of a row from the ``StockMovements`` sheet."""

    product_id: str
    movement_type: str
    quantity: int
    reference_type: str
    reference_id: Optional[str]
    timestamp_iso: str


@dataclass(frozen=True)
class BnplTransactionRow:
    """In-memory view of a row from the ``BnplTransactions`` sheet."""

    sale_id: str
    customer_id: str
    original_amount: Decimal
    amount_due: Decimal
    due_date_iso: str
    status: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function walks
    up from the current working directory toward the filesystem root looking
    for a file named ``CONFIG_FILE_NAME``. The first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _parse_rate(parser: configparser.ConfigParser, option: str, default: Decimal) -> Decimal:
    raw = parser.get("Checkout", option, fallback=str(default))
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"{option} must be a number, got {raw!r}") from exc
    if not value.is_finite() or value < Decimal("0"):
        raise ValueError(f"{option} must be zero or positive, got {raw}")
    return value


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Checkout]`` section is optional:
    ``TaxRate`` falls back to ``DEFAULT_TAX_RATE``, ``CashierName`` to
    ``DEFAULT_CASHIER_NAME`` and ``LoyaltyPointsPerCurrency`` to
    ``DEFAULT_LOYALTY_POINTS_PER_CURRENCY``. Relative ``DataFile`` paths are expanded against
    ``base_path`` (or the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative ``DataFile``
            entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``TaxRate`` or ``LoyaltyPointsPerCurrency`` is not a
            non-negative number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    tax_rate = _parse_rate(parser, "TaxRate", DEFAULT_TAX_RATE)
    cashier_name = parser.get("Checkout", "CashierName", fallback=DEFAULT_CASHIER_NAME)
    points_per_currency = _parse_rate(parser, "LoyaltyPointsPerCurrency", DEFAULT_LOYALTY_POINTS_PER_CURRENCY)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        tax_rate=tax_rate,
        cashier_name=cashier_name,
        loyalty_points_per_currency=points_per_currency,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def replace_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook so readers see either the old file or the new one.

    The workbook is serialized to a temporary sibling of ``destination`` and
    then swapped into place with :func:`os.replace`. If serialization fails the
    temporary file is removed and ``destination`` is left untouched.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Workbook path to replace.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    log.debug("Replaced workbook '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped; every other row is converted via
    :func:`deserialize_product`.
    """

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream committed sale headers from the ``Sales`` worksheet."""

    for raw in _iter_sheet(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    """Stream committed sale lines from the ``SaleItems`` worksheet."""

    for raw in _iter_sheet(workbook, SALE_ITEMS_SHEET):
        yield deserialize_sale_item(raw)


def iter_stock_movements(workbook: Workbook) -> Iterable[StockMovementRow]:
    for raw in _iter_sheet(workbook, STOCK_MOVEMENTS_SHEET):
        yield deserialize_stock_movement(raw)


def iter_bnpl_transactions(workbook: Workbook) -> Iterable[BnplTransactionRow]:
    for raw in _iter_sheet(workbook, BNPL_TRANSACTIONS_SHEET):
        yield deserialize_bnpl_transaction(raw)


def find_product(workbook: Workbook, product_id: str) -> Optional[ProductRow]:
    """Return the product whose ``ProductID`` equals ``product_id``, if any."""

    for product in iter_products(workbook):
        if product.product_id == product_id:
            return product
    return None


def find_customer(workbook: Workbook, customer_id: str) -> Optional[CustomerRow]:
    """Return the customer whose ``CustomerID`` equals ``customer_id``, if any."""

    for customer in iter_customers(workbook):
        if customer.customer_id == customer_id:
            return customer
    return None


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header to the ``Sales`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization so Excel preserves precision when the workbook is saved.
    """

    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_item(workbook: Workbook, record: SaleItemRow) -> None:
    workbook[SALE_ITEMS_SHEET].append(serialize_sale_item(record))


def append_stock_movement(workbook: Workbook, record: StockMovementRow) -> None:
    workbook[STOCK_MOVEMENTS_SHEET].append(serialize_stock_movement(record))


def append_bnpl_transaction(workbook: Workbook, record: BnplTransactionRow) -> None:
    workbook[BNPL_TRANSACTIONS_SHEET].append(serialize_bnpl_transaction(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values, label="Product")


def update_customer(workbook: Workbook, customer_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing customer.

    Raises:
        KeyError: If the customer or any referenced column is missing.
    """

    _update_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id, field_values, label="Customer")


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: dict[str, Any],
    *,
    label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    # Validate every column before writing so a bad field leaves the row intact.
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown {label.lower()} field: {unknown[0]}")
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the column that stores the key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Return ``[ProductID, ProductName, SalePrice, StockQuantity, IsActive]``."""

    return [
        record.product_id,
        record.product_name,
        record.unit_price,
        record.stock_quantity,
        record.is_active,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    """Return ``[CustomerID, CustomerName, CreditLimit, OutstandingDues, LoyaltyPoints]``."""

    return [
        record.customer_id,
        record.customer_name,
        record.credit_limit,
        record.outstanding_dues,
        record.loyalty_points,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.receipt_number,
        record.invoice_number,
        record.timestamp_iso,
        record.customer_id,
        record.subtotal,
        record.discount_amount,
        record.tax_amount,
        record.total_amount,
        record.payment_method,
        record.payment_status,
        record.amount_tendered,
        record.change_due,
        record.cashier_name,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_id,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.discount_amount,
        record.total_price,
    ]


def serialize_stock_movement(record: StockMovementRow) -> list[object]:
    return [
        record.product_id,
        record.movement_type,
        record.quantity,
        record.reference_type,
        record.reference_id,
        record.timestamp_iso,
    ]


def serialize_bnpl_transaction(record: BnplTransactionRow) -> list[object]:
    return [
        record.sale_id,
        record.customer_id,
        record.original_amount,
        record.amount_due,
        record.due_date_iso,
        record.status,
    ]


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    return int(Decimal(str(raw))) if raw is not None else 0


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal`, stock becomes ``int`` and the
    id/name fields are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric identifiers.
    """

    product_id, product_name, price_raw, stock_raw, is_active = raw_row[:5]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        unit_price=_to_decimal(price_raw),
        stock_quantity=_to_int(stock_raw),
        is_active=bool(is_active) if is_active is not None else True,
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a strongly typed customer record."""

    customer_id, customer_name, limit_raw, dues_raw = raw_row[:4]
    points_raw = raw_row[4] if len(raw_row) > 4 else None
    return CustomerRow(
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        credit_limit=_to_decimal(limit_raw),
        outstanding_dues=_to_decimal(dues_raw),
        loyalty_points=_to_int(points_raw),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`.

    Optional columns remain ``None`` when the sheet leaves them blank; money
    columns are normalized into :class:`~decimal.Decimal` instances.
    """

    (
        sale_id,
        receipt_number,
        invoice_number,
        timestamp_iso,
        customer_id,
        subtotal_raw,
        discount_raw,
        tax_raw,
        total_raw,
        payment_method,
        payment_status,
        tendered_raw,
        change_raw,
        cashier_name,
    ) = raw_row[:14]

    return SaleRow(
        sale_id=str(sale_id),
        receipt_number=str(receipt_number) if receipt_number is not None else "",
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        customer_id=_optional_str(customer_id),
        subtotal=_to_decimal(subtotal_raw),
        discount_amount=_to_decimal(discount_raw),
        tax_amount=_to_decimal(tax_raw),
        total_amount=_to_decimal(total_raw),
        payment_method=str(payment_method) if payment_method is not None else "",
        payment_status=str(payment_status) if payment_status is not None else "",
        amount_tendered=_to_decimal(tendered_raw) if tendered_raw is not None else None,
        change_due=_to_decimal(change_raw),
        cashier_name=str(cashier_name) if cashier_name is not None else "",
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    sale_id, product_id, quantity_raw, price_raw, discount_raw, total_raw = raw_row[:6]
    return SaleItemRow(
        sale_id=str(sale_id),
        product_id=str(product_id),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(price_raw),
        discount_amount=_to_decimal(discount_raw),
        total_price=_to_decimal(total_raw),
    )


def deserialize_stock_movement(raw_row: Sequence[object]) -> StockMovementRow:
    product_id, movement_type, quantity_raw, reference_type, reference_id, timestamp_iso = raw_row[:6]
    return StockMovementRow(
        product_id=str(product_id),
        movement_type=str(movement_type) if movement_type is not None else "",
        quantity=_to_int(quantity_raw),
        reference_type=str(reference_type) if reference_type is not None else "",
        reference_id=_optional_str(reference_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
    )


def deserialize_bnpl_transaction(raw_row: Sequence[object]) -> BnplTransactionRow:
    sale_id, customer_id, original_raw, due_raw, due_date, status = raw_row[:6]
    return BnplTransactionRow(
        sale_id=str(sale_id),
        customer_id=str(customer_id),
        original_amount=_to_decimal(original_raw),
        amount_due=_to_decimal(due_raw),
        due_date_iso=str(due_date) if due_date is not None else "",
        status=str(status) if status is not None else "",
    )
