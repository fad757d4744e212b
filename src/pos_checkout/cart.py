"""Cart state machine.

A :class:`Cart` is an explicitly owned object: one operator session creates it,
mutates it, and hands it to the finalizer. There is no module-level cart.

Every mutation either raises a :class:`~pos_checkout.errors.CheckoutError`
before touching any state, or applies the change and then re-prices the cart
and re-runs the credit guard. When the credit guard stops approving a
``deferred`` tender, the tender is downgraded to ``cash`` and the downgrade is
returned to the caller in :class:`CartChange`.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from . import log
from .constants import DEFAULT_TAX_RATE, CartState, TenderMethod
from .data_manager import CustomerRow, ProductRow
from .errors import (
    CheckoutError,
    CreditIneligible,
    InsufficientPayment,
    InvalidInput,
    StockUnavailable,
)
from .guards import (
    Accept,
    Clamp,
    CreditVerdict,
    Eligible,
    Ineligible,
    IneligibleReason,
    StockShortfall,
    check_credit,
    check_stock,
)
from .pricing import CartTotals, Discount, coerce_money, price_cart, validate_discount


@dataclass(frozen=True)
class CartLine:
    """One product in the cart with its add-time snapshot."""

    product: ProductRow
    quantity: int
    discount: Optional[Discount] = None

    @property
    def product_id(self) -> str:
        return self.product.product_id

    @property
    def unit_price(self) -> Decimal:
        return self.product.unit_price


@dataclass(frozen=True)
class TenderDowngrade:
    """Reports that ``deferred`` tender was replaced by ``cash``."""

    previous: TenderMethod
    current: TenderMethod
    reason: IneligibleReason


@dataclass(frozen=True)
class CartChange:
    """Result of a successful mutation."""

    totals: CartTotals
    tender_downgrade: Optional[TenderDowngrade] = None

    @property
    def downgraded(self) -> bool:
        return self.tender_downgrade is not None


def _require_quantity(value: Any, *, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput("quantity", value, f"Quantity must be a whole number, got {value!r}")
    if value < minimum:
        raise InvalidInput("quantity", value, f"Quantity must be at least {minimum}, got {value}")
    return value


class Cart:
    """Mutable checkout cart owned by a single operator session."""

    def __init__(self, *, tax_rate: Union[Decimal, int, str] = DEFAULT_TAX_RATE) -> None:
        try:
            rate = Decimal(str(tax_rate))
        except InvalidOperation as exc:
            raise InvalidInput("tax_rate", tax_rate, f"Malformed tax rate: {tax_rate!r}") from exc
        if not rate.is_finite() or rate < Decimal("0"):
            raise InvalidInput("tax_rate", tax_rate, f"Tax rate must be zero or positive, got {tax_rate}")
        self._tax_rate = rate
        self._lines: Dict[str, CartLine] = {}
        self._order_discount: Optional[Discount] = None
        self._customer: Optional[CustomerRow] = None
        self._tender = TenderMethod.CASH
        self._finalizing = False
        self._totals = self.recompute_totals()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def tax_rate(self) -> Decimal:
        return self._tax_rate

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        """Cart lines in insertion order."""
        return tuple(self._lines.values())

    @property
    def order_discount(self) -> Optional[Discount]:
        return self._order_discount

    @property
    def customer(self) -> Optional[CustomerRow]:
        return self._customer

    @property
    def tender_method(self) -> TenderMethod:
        return self._tender

    @property
    def totals(self) -> CartTotals:
        return self._totals

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def line(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    def credit_verdict(self) -> CreditVerdict:
        """Credit guard verdict for the current customer and grand total."""
        return check_credit(self._customer, self._totals.grand_total)

    def stock_shortfalls(self) -> List[StockShortfall]:
        """Lines whose quantity exceeds their add-time stock snapshot."""

        shortfalls = []
        for line in self._lines.values():
            verdict = check_stock(line.product, line.quantity)
            if isinstance(verdict, Clamp):
                shortfalls.append(StockShortfall(line.product_id, line.quantity, verdict.max_available))
        return shortfalls

    @property
    def is_ready(self) -> bool:
        """Whether the cart currently passes every snapshot validation."""

        if self.is_empty or self.stock_shortfalls():
            return False
        if self._tender is TenderMethod.DEFERRED:
            return isinstance(self.credit_verdict(), Eligible)
        return True

    @property
    def state(self) -> CartState:
        if self._finalizing:
            return CartState.FINALIZING
        if self.is_empty:
            return CartState.EMPTY
        return CartState.READY_TO_FINALIZE if self.is_ready else CartState.BUILDING

    def change_due(self, amount_tendered: Any) -> Decimal:
        """Return the change owed for a cash payment of ``amount_tendered``.

        Raises:
            InvalidInput: If the amount is malformed or negative.
            InsufficientPayment: If the amount does not cover the grand total.
        """

        tendered = coerce_money(amount_tendered, field="amount_tendered")
        if tendered < Decimal("0"):
            raise InvalidInput("amount_tendered", amount_tendered, "Tendered amount cannot be negative")
        required = self._totals.grand_total
        if tendered < required:
            raise InsufficientPayment(required=required, tendered=tendered)
        return tendered - required

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_line(self, product: ProductRow, quantity: int = 1) -> CartChange:
        """Add ``quantity`` units of ``product``, merging into an existing line.

        The stock guard runs on the resulting total quantity for the product,
        not only on the increment. The existing line keeps its add-time
        snapshot; the guard uses the snapshot passed in, which is the most
        recent one the caller holds.

        Raises:
            InvalidInput: If ``quantity`` is not a whole number >= 1 or the
                product is inactive.
            StockUnavailable: If the total would exceed stock. ``available``
                is the clamp value; the cart is unchanged.
        """

        self._ensure_mutable()
        _require_quantity(quantity, minimum=1)
        if not product.is_active:
            log.warning("Rejected add of inactive product '%s'", product.product_id)
            raise InvalidInput("product", product.product_id, f"Product '{product.product_id}' is inactive")

        existing = self._lines.get(product.product_id)
        new_quantity = quantity + (existing.quantity if existing else 0)
        self._guard_stock(product, new_quantity)

        if existing is None:
            self._lines[product.product_id] = CartLine(product=product, quantity=new_quantity)
        else:
            self._lines[product.product_id] = replace(existing, quantity=new_quantity)
        log.debug("Cart line '%s' now at quantity %d", product.product_id, new_quantity)
        return self._after_mutation()

    def set_quantity(self, product_id: str, quantity: int) -> CartChange:
        """Set the quantity of an existing line; ``0`` removes the line.

        Raises:
            InvalidInput: If ``quantity`` is negative or not a whole number, or
                the product has no line in the cart.
            StockUnavailable: If ``quantity`` exceeds the line's snapshot.
        """

        self._ensure_mutable()
        _require_quantity(quantity, minimum=0)
        if quantity == 0:
            return self.remove_line(product_id)

        existing = self._lines.get(product_id)
        if existing is None:
            raise InvalidInput("product_id", product_id, f"Product '{product_id}' is not in the cart")
        self._guard_stock(existing.product, quantity)

        self._lines[product_id] = replace(existing, quantity=quantity)
        return self._after_mutation()

    def remove_line(self, product_id: str) -> CartChange:
        """Remove a line. Removing an absent line is a no-op."""

        self._ensure_mutable()
        if self._lines.pop(product_id, None) is not None:
            log.debug("Removed cart line '%s'", product_id)
        return self._after_mutation()

    def set_line_discount(self, product_id: str, discount: Optional[Discount]) -> CartChange:
        """Replace the discount on one line; ``None`` clears it.

        Raises:
            InvalidInput: If the discount is invalid or the line is absent. The
                previous discount is retained.
        """

        self._ensure_mutable()
        if discount is not None:
            validate_discount(discount)
        existing = self._lines.get(product_id)
        if existing is None:
            raise InvalidInput("product_id", product_id, f"Product '{product_id}' is not in the cart")

        self._lines[product_id] = replace(existing, discount=discount)
        return self._after_mutation()

    def set_order_discount(self, discount: Optional[Discount]) -> CartChange:
        """Replace the order-level discount; ``None`` clears it."""

        self._ensure_mutable()
        if discount is not None:
            validate_discount(discount)
        self._order_discount = discount
        return self._after_mutation()

    def select_customer(self, customer: Optional[CustomerRow]) -> CartChange:
        """Select a customer, or ``None`` for a walk-in sale.

        When ``deferred`` tender is active and the new customer cannot cover
        the current total, tender falls back to ``cash``; the returned change
        reports it.
        """

        self._ensure_mutable()
        self._customer = customer
        return self._after_mutation()

    def set_tender_method(self, method: Union[TenderMethod, str]) -> CartChange:
        """Select the tender method.

        Raises:
            InvalidInput: If ``method`` is not a known tender method.
            CreditIneligible: If ``deferred`` is requested and the credit guard
                does not approve the current total.
        """

        self._ensure_mutable()
        try:
            tender = TenderMethod(method)
        except ValueError as exc:
            raise InvalidInput("tender_method", method, f"Unknown tender method: {method!r}") from exc

        if tender is TenderMethod.DEFERRED:
            verdict = self.credit_verdict()
            if isinstance(verdict, Ineligible):
                log.warning("Rejected deferred tender: %s", verdict.describe())
                raise CreditIneligible(verdict)

        self._tender = tender
        return self._after_mutation()

    def recompute_totals(self) -> CartTotals:
        """Price the current cart state and cache the result."""

        self._totals = price_cart(
            self._lines.values(),
            order_discount=self._order_discount,
            tax_rate=self._tax_rate,
        )
        return self._totals

    def clear(self) -> CartChange:
        """Reset to an empty cart, discarding lines, discounts, customer and tender."""

        self._lines.clear()
        self._order_discount = None
        self._customer = None
        self._tender = TenderMethod.CASH
        return CartChange(totals=self.recompute_totals())

    @contextmanager
    def finalizing(self) -> Iterator["Cart"]:
        """Mark the cart as finalizing; mutations are refused until the block exits."""

        self._ensure_mutable()
        self._finalizing = True
        try:
            yield self
        finally:
            self._finalizing = False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_mutable(self) -> None:
        if self._finalizing:
            raise CheckoutError("Cart is being finalized")

    def _guard_stock(self, product: ProductRow, quantity: int) -> None:
        verdict = check_stock(product, quantity)
        if isinstance(verdict, Accept):
            return
        log.warning(
            "Stock guard clamped '%s': requested %d, available %d",
            product.product_id,
            quantity,
            verdict.max_available,
        )
        raise StockUnavailable(product.product_id, quantity, verdict.max_available)

    def _after_mutation(self) -> CartChange:
        totals = self.recompute_totals()
        downgrade = None
        if self._tender is TenderMethod.DEFERRED:
            verdict = check_credit(self._customer, totals.grand_total)
            if isinstance(verdict, Ineligible):
                downgrade = TenderDowngrade(
                    previous=TenderMethod.DEFERRED,
                    current=TenderMethod.CASH,
                    reason=verdict.reason,
                )
                self._tender = TenderMethod.CASH
                log.warning("Deferred tender downgraded to cash: %s", verdict.describe())
        return CartChange(totals=totals, tender_downgrade=downgrade)
