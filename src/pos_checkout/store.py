"""Persistence contract consumed by the sale finalizer, and its workbook backend.

The finalizer never talks to ``openpyxl`` directly. It reads fresh snapshots
through :class:`CheckoutStore` and performs every write inside one
:meth:`CheckoutStore.atomic` unit. :class:`WorkbookStore` implements the
contract on top of the master workbook:

* each read opens the workbook from disk, so snapshots are never stale;
* a unit loads a private copy of the workbook, applies all writes to it, and
  replaces the file only when the unit exits cleanly;
* units are serialized with a process-wide lock, and stock and credit are
  re-checked inside the unit so concurrent sessions can neither oversell nor
  exceed a credit limit.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import ContextManager, Iterator, Optional, Protocol, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFERRED_DUE_DAYS,
    INVOICE_PREFIX,
    RECEIPT_PREFIX,
    MovementType,
    PaymentStatus,
    TenderMethod,
)
from .errors import CreditIneligible, StockConflict
from .guards import Ineligible, StockShortfall, check_credit


@dataclass(frozen=True)
class SaleLineItem:
    """Committed line captured as plain values so history never changes."""

    product_id: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class SaleDraft:
    """Everything about a sale except the identifiers the store assigns."""

    timestamp: datetime
    customer_id: Optional[str]
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    grand_total: Decimal
    tender_method: TenderMethod
    payment_status: PaymentStatus
    amount_tendered: Optional[Decimal]
    change_due: Decimal
    cashier_name: str


@dataclass(frozen=True)
class Sale:
    """Immutable record of a finalized sale."""

    sale_id: str
    receipt_number: str
    invoice_number: str
    timestamp: datetime
    customer_id: Optional[str]
    items: Tuple[SaleLineItem, ...]
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    grand_total: Decimal
    tender_method: TenderMethod
    payment_status: PaymentStatus
    amount_tendered: Optional[Decimal]
    change_due: Decimal
    cashier_name: str
    loyalty_points_awarded: int = 0


class CheckoutUnit(Protocol):
    """Writes that must land together or not at all."""

    def commit_sale(self, draft: SaleDraft, line_items: Sequence[SaleLineItem]) -> Sale: ...

    def decrement_stock(self, product_id: str, quantity: int) -> None: ...

    def increase_outstanding_dues(self, customer_id: str, amount: Decimal) -> None: ...

    def award_loyalty_points(self, customer_id: str, points: int) -> int: ...


class CheckoutStore(Protocol):
    """Data access the checkout core depends on."""

    def read_product(self, product_id: str) -> data_manager.ProductRow: ...

    def read_customer(self, customer_id: str) -> data_manager.CustomerRow: ...

    def atomic(self) -> ContextManager[CheckoutUnit]: ...


def generate_sale_id(*, prefix: str = "S", when: datetime) -> str:
    """Return ``{prefix}{YYYYMMDDHHMMSSffffff}-{token}``.

    The timestamp keeps identifiers sortable; the random token keeps two sales
    stamped with the same instant apart.
    """

    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8].upper()}"


def generate_invoice_number(when: datetime) -> str:
    """Return ``INV-<epoch milliseconds>`` for ``when``."""

    return f"{INVOICE_PREFIX}-{int(when.timestamp() * 1000)}"


def next_receipt_number(workbook: Workbook, when: datetime) -> str:
    """Allocate the next daily sequential receipt number.

    Receipt numbers have the form ``RCPT-YYYYMMDD-NNNN`` where ``NNNN`` counts
    the sales already recorded for that day, starting at ``0001``.
    """

    day_prefix = f"{RECEIPT_PREFIX}-{when.strftime('%Y%m%d')}-"
    issued = sum(
        1 for sale in data_manager.iter_sales(workbook) if sale.receipt_number.startswith(day_prefix)
    )
    return f"{day_prefix}{issued + 1:04d}"


class WorkbookUnit:
    """Unit of work applying checkout writes to a private workbook copy."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._sale: Optional[Sale] = None

    @property
    def sale(self) -> Optional[Sale]:
        return self._sale

    def commit_sale(self, draft: SaleDraft, line_items: Sequence[SaleLineItem]) -> Sale:
        """Append the sale header, its lines and, for deferred tender, a BNPL entry."""

        when = draft.timestamp
        sale = Sale(
            sale_id=generate_sale_id(when=when),
            receipt_number=next_receipt_number(self.workbook, when),
            invoice_number=generate_invoice_number(when),
            timestamp=when,
            customer_id=draft.customer_id,
            items=tuple(line_items),
            subtotal=draft.subtotal,
            discount_amount=draft.discount_amount,
            tax_amount=draft.tax_amount,
            grand_total=draft.grand_total,
            tender_method=draft.tender_method,
            payment_status=draft.payment_status,
            amount_tendered=draft.amount_tendered,
            change_due=draft.change_due,
            cashier_name=draft.cashier_name,
        )

        data_manager.append_sale(
            self.workbook,
            data_manager.SaleRow(
                sale_id=sale.sale_id,
                receipt_number=sale.receipt_number,
                invoice_number=sale.invoice_number,
                timestamp_iso=when.isoformat(),
                customer_id=sale.customer_id,
                subtotal=sale.subtotal,
                discount_amount=sale.discount_amount,
                tax_amount=sale.tax_amount,
                total_amount=sale.grand_total,
                payment_method=sale.tender_method.value,
                payment_status=sale.payment_status.value,
                amount_tendered=sale.amount_tendered,
                change_due=sale.change_due,
                cashier_name=sale.cashier_name,
            ),
        )
        for item in sale.items:
            data_manager.append_sale_item(
                self.workbook,
                data_manager.SaleItemRow(
                    sale_id=sale.sale_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount_amount=item.discount_amount,
                    total_price=item.line_total,
                ),
            )

        if sale.payment_status is PaymentStatus.PENDING_DEFERRED:
            if sale.customer_id is None:
                raise ValueError("Deferred sale requires a customer")
            due_date = (when + timedelta(days=DEFERRED_DUE_DAYS)).date()
            data_manager.append_bnpl_transaction(
                self.workbook,
                data_manager.BnplTransactionRow(
                    sale_id=sale.sale_id,
                    customer_id=sale.customer_id,
                    original_amount=sale.grand_total,
                    amount_due=sale.grand_total,
                    due_date_iso=due_date.isoformat(),
                    status="pending",
                ),
            )

        self._sale = sale
        return sale

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        """Reduce stock and log an outbound movement.

        Raises:
            KeyError: If the product row does not exist.
            StockConflict: If the stored quantity no longer covers
                ``quantity``; this aborts the whole unit.
        """

        product = data_manager.find_product(self.workbook, product_id)
        if product is None:
            raise KeyError(f"Product not found: {product_id}")
        if quantity > product.stock_quantity:
            raise StockConflict(
                [StockShortfall(product_id=product_id, requested=quantity, available=product.stock_quantity)]
            )

        data_manager.update_product(
            self.workbook,
            product_id,
            field_values={"StockQuantity": product.stock_quantity - quantity},
        )
        reference_id = self._sale.sale_id if self._sale is not None else None
        timestamp = self._sale.timestamp if self._sale is not None else None
        data_manager.append_stock_movement(
            self.workbook,
            data_manager.StockMovementRow(
                product_id=product_id,
                movement_type=MovementType.OUT.value,
                quantity=-quantity,
                reference_type="sale",
                reference_id=reference_id,
                timestamp_iso=timestamp.isoformat() if timestamp is not None else "",
            ),
        )

    def increase_outstanding_dues(self, customer_id: str, amount: Decimal) -> None:
        """Add ``amount`` to the customer's outstanding dues.

        Credit is checked again against the unit's own copy of the customer,
        so a deferred sale committed by another session after the finalizer's
        read cannot push the customer past the limit.

        Raises:
            KeyError: If the customer row does not exist.
            CreditIneligible: If the stored available credit no longer covers
                ``amount``; this aborts the whole unit.
        """

        customer = data_manager.find_customer(self.workbook, customer_id)
        if customer is None:
            raise KeyError(f"Customer not found: {customer_id}")
        verdict = check_credit(customer, amount)
        if isinstance(verdict, Ineligible):
            log.warning("Credit re-check inside commit failed: %s", verdict.describe())
            raise CreditIneligible(verdict)
        data_manager.update_customer(
            self.workbook,
            customer_id,
            field_values={"OutstandingDues": customer.outstanding_dues + amount},
        )

    def award_loyalty_points(self, customer_id: str, points: int) -> int:
        """Add ``points`` to the customer's loyalty balance.

        Returns:
            int: Points actually awarded; ``0`` when ``points`` is not positive
                or the customer row is gone.
        """

        if points <= 0:
            return 0
        customer = data_manager.find_customer(self.workbook, customer_id)
        if customer is None:
            log.warning("Skipped loyalty award for missing customer '%s'", customer_id)
            return 0
        data_manager.update_customer(
            self.workbook,
            customer_id,
            field_values={"LoyaltyPoints": customer.loyalty_points + points},
        )
        return points


class WorkbookStore:
    """:class:`CheckoutStore` backed by the master workbook on disk."""

    _commit_lock = threading.Lock()

    def __init__(self, data_file: Path) -> None:
        self.data_file = Path(data_file)

    def _load(self) -> Workbook:
        return data_manager.open_workbook(self.data_file)

    def read_product(self, product_id: str) -> data_manager.ProductRow:
        """Read a fresh product snapshot.

        Raises:
            KeyError: If the product does not exist.
        """

        product = data_manager.find_product(self._load(), product_id)
        if product is None:
            raise KeyError(f"Product not found: {product_id}")
        return product

    def read_customer(self, customer_id: str) -> data_manager.CustomerRow:
        """Read a fresh customer snapshot.

        Raises:
            KeyError: If the customer does not exist.
        """

        customer = data_manager.find_customer(self._load(), customer_id)
        if customer is None:
            raise KeyError(f"Customer not found: {customer_id}")
        return customer

    @contextmanager
    def atomic(self) -> Iterator[WorkbookUnit]:
        """Yield a unit whose writes reach disk only if the block succeeds."""

        with self._commit_lock:
            unit = WorkbookUnit(self._load())
            yield unit
            data_manager.replace_workbook(unit.workbook, self.data_file)
            log.debug("Committed checkout unit to '%s'", self.data_file)
