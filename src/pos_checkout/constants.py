"""Enumerations and fixed values shared across the checkout modules.

Centralises domain constants so that the data access layer (DAL), the checkout
engine, and the command-line front end rely on a single source of truth for
tender methods, payment states, and workbook sheet names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Minor-unit precision used for every currency amount.
CURRENCY_QUANTUM = Decimal("0.01")

DEFAULT_TAX_RATE = Decimal("17")
DEFAULT_CASHIER_NAME = "POS User"

# Points earned per currency unit on cash and card sales to known customers.
DEFAULT_LOYALTY_POINTS_PER_CURRENCY = Decimal("1")

RECEIPT_PREFIX = "RCPT"
INVOICE_PREFIX = "INV"

# Deferred (BNPL) sales fall due this many days after the sale.
DEFERRED_DUE_DAYS = 30


class TenderMethod(str, Enum):
    """Enumerate the tender types an operator can select for a cart."""

    CASH = "cash"
    CARD = "card"
    DEFERRED = "deferred"


class PaymentStatus(str, Enum):
    """Enumerate the payment states recorded on a committed sale."""

    PAID = "paid"
    PENDING_DEFERRED = "pending_deferred"


class CartState(str, Enum):
    """Enumerate the observable states of a cart."""

    EMPTY = "empty"
    BUILDING = "building"
    READY_TO_FINALIZE = "ready_to_finalize"
    FINALIZING = "finalizing"


class MovementType(str, Enum):
    """Direction of a stock movement entry."""

    OUT = "out"
    IN = "in"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    STOCK_MOVEMENTS = "StockMovements"
    BNPL_TRANSACTIONS = "BnplTransactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CURRENCY_QUANTUM",
    "DEFAULT_TAX_RATE",
    "DEFAULT_CASHIER_NAME",
    "DEFAULT_LOYALTY_POINTS_PER_CURRENCY",
    "RECEIPT_PREFIX",
    "INVOICE_PREFIX",
    "DEFERRED_DUE_DAYS",
    "TenderMethod",
    "PaymentStatus",
    "CartState",
    "MovementType",
    "SheetName",
]
