"""Pricing engine for checkout carts.

Pure functions only: nothing in this module performs I/O or mutates its
inputs. Totals are computed in a fixed order so identical carts always price
identically:

1. ``line_base = unit_price * quantity`` and the line's own discount gives
   ``line_total``.
2. ``subtotal`` is the sum of every ``line_total``.
3. The order-level discount applies to ``subtotal`` (it stacks on top of line
   discounts) and gives ``discounted_subtotal``.
4. ``tax_amount = discounted_subtotal * tax_rate / 100``.
5. ``grand_total = discounted_subtotal + tax_amount``.

Every currency amount is quantized to minor units with ``ROUND_HALF_UP``.
A flat discount larger than its base is clamped to the base, so no step can
produce a negative amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Protocol, Tuple, Union

from .constants import CURRENCY_QUANTUM
from .errors import InvalidInput


ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PercentageDiscount:
    """Discount expressed as a percentage of its scope, between 0 and 100."""

    percentage: Decimal

    def describe(self) -> str:
        return f"{self.percentage}%"


@dataclass(frozen=True)
class AmountDiscount:
    """Flat currency discount, capped at its scope's base when applied."""

    amount: Decimal

    def describe(self) -> str:
        return f"{self.amount}"


Discount = Union[PercentageDiscount, AmountDiscount]


class PricedItem(Protocol):
    """Shape of a cart line as seen by the pricing engine."""

    @property
    def product_id(self) -> str: ...

    @property
    def unit_price(self) -> Decimal: ...

    @property
    def quantity(self) -> int: ...

    @property
    def discount(self) -> Optional[Discount]: ...


@dataclass(frozen=True)
class PricedLine:
    """Priced view of one cart line."""

    product_id: str
    quantity: int
    unit_price: Decimal
    line_base: Decimal
    discount_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class CartTotals:
    """Derived totals for a cart, in the order they were computed."""

    lines: Tuple[PricedLine, ...]
    gross_subtotal: Decimal
    line_discount_total: Decimal
    subtotal: Decimal
    order_discount_amount: Decimal
    discounted_subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    grand_total: Decimal

    @property
    def per_line_totals(self) -> Tuple[Decimal, ...]:
        return tuple(line.line_total for line in self.lines)

    @property
    def total_discount_amount(self) -> Decimal:
        """Line discounts plus the order-level discount."""
        return to_money(self.line_discount_total + self.order_discount_amount)


def to_money(value: Union[Decimal, int, str]) -> Decimal:
    """Quantize ``value`` to minor units using round-half-up.

    Args:
        value (Decimal | int | str): Amount to normalize. Strings are parsed
            with :class:`~decimal.Decimal` so callers never pass floats through
            binary rounding.

    Returns:
        Decimal: Amount with exactly two decimal places.
    """

    return Decimal(value).quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)


def _require_finite(discount: Discount, value: Any) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
        raise InvalidInput("discount", discount, f"Discount value must be a Decimal, got {value!r}")
    number = Decimal(value)
    if not number.is_finite():
        raise InvalidInput("discount", discount, f"Discount value must be finite, got {value}")
    return number


def validate_discount(discount: Discount) -> Discount:
    """Check a discount against its invariants and return it unchanged.

    Args:
        discount (Discount): Percentage or amount discount to validate.

    Returns:
        Discount: The same value, so the helper can be used inline.

    Raises:
        InvalidInput: If a value is not a finite number, a percentage falls
            outside ``0..100``, an amount is negative, or the value is not a
            known discount type.
    """

    if isinstance(discount, PercentageDiscount):
        if not Decimal("0") <= _require_finite(discount, discount.percentage) <= HUNDRED:
            raise InvalidInput(
                "discount",
                discount,
                f"Percentage discount must be between 0 and 100, got {discount.percentage}",
            )
        return discount
    if isinstance(discount, AmountDiscount):
        if _require_finite(discount, discount.amount) < Decimal("0"):
            raise InvalidInput(
                "discount",
                discount,
                f"Amount discount must be zero or positive, got {discount.amount}",
            )
        return discount
    raise InvalidInput("discount", discount, f"Unsupported discount type: {discount!r}")


def parse_discount(raw: str) -> Discount:
    """Parse ``"10%"`` into a percentage and ``"10"`` into an amount discount.

    Raises:
        InvalidInput: If the text is not a number, or the parsed discount
            violates its invariants.
    """

    text = raw.strip()
    is_percentage = text.endswith("%")
    number = text[:-1].strip() if is_percentage else text
    try:
        value = Decimal(number)
    except InvalidOperation as exc:
        raise InvalidInput("discount", raw, f"Malformed discount value: {raw!r}") from exc
    if not value.is_finite():
        raise InvalidInput("discount", raw, f"Malformed discount value: {raw!r}")
    discount: Discount = PercentageDiscount(value) if is_percentage else AmountDiscount(value)
    return validate_discount(discount)


def discount_amount(base: Decimal, discount: Optional[Discount]) -> Decimal:
    """Return the amount ``discount`` takes off ``base``, never more than ``base``.

    Args:
        base (Decimal): Pre-discount amount of the scope (a line or the order).
        discount (Discount | None): Discount to apply. ``None`` means no
            discount.

    Returns:
        Decimal: Quantized discount amount in ``[0, base]``.
    """

    if discount is None:
        return ZERO
    if isinstance(discount, PercentageDiscount):
        amount = to_money(base * discount.percentage / HUNDRED)
    elif isinstance(discount, AmountDiscount):
        amount = to_money(discount.amount)
    else:
        raise TypeError(f"Unsupported discount type: {discount!r}")
    # Flat amounts larger than the base are clamped silently.
    return min(amount, base)


def price_line(item: PricedItem) -> PricedLine:
    """Price a single cart line with its own discount applied."""

    line_base = to_money(item.unit_price * item.quantity)
    amount = discount_amount(line_base, item.discount)
    return PricedLine(
        product_id=item.product_id,
        quantity=item.quantity,
        unit_price=to_money(item.unit_price),
        line_base=line_base,
        discount_amount=amount,
        line_total=line_base - amount,
    )


def price_cart(
    items: Iterable[PricedItem],
    *,
    order_discount: Optional[Discount],
    tax_rate: Decimal,
) -> CartTotals:
    """Compute every derived total for a cart.

    The computation follows the module-level ordering exactly; changing the
    order would change rounding and therefore the totals recorded on sales.

    Args:
        items (Iterable[PricedItem]): Cart lines in insertion order.
        order_discount (Discount | None): Order-level discount applied to the
            post-line-discount subtotal.
        tax_rate (Decimal): Tax percentage, e.g. ``Decimal("17")``.

    Returns:
        CartTotals: Immutable totals. An empty cart yields zeros everywhere.
    """

    lines = tuple(price_line(item) for item in items)
    gross_subtotal = sum((line.line_base for line in lines), ZERO)
    line_discount_total = sum((line.discount_amount for line in lines), ZERO)
    subtotal = sum((line.line_total for line in lines), ZERO)

    order_discount_amount = discount_amount(subtotal, order_discount)
    discounted_subtotal = subtotal - order_discount_amount
    tax_amount = to_money(discounted_subtotal * tax_rate / HUNDRED)
    grand_total = discounted_subtotal + tax_amount

    return CartTotals(
        lines=lines,
        gross_subtotal=gross_subtotal,
        line_discount_total=line_discount_total,
        subtotal=subtotal,
        order_discount_amount=order_discount_amount,
        discounted_subtotal=discounted_subtotal,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        grand_total=grand_total,
    )


def coerce_money(value: Any, *, field: str) -> Decimal:
    """Convert caller input into a currency amount or raise ``InvalidInput``."""

    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidInput(field, value, f"Malformed amount for {field}: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidInput(field, value, f"Malformed amount for {field}: {value!r}")
    return to_money(amount)


def loyalty_points_for(amount: Decimal, points_per_currency: Decimal) -> int:
    """Whole loyalty points earned on ``amount``, rounded down."""

    if amount <= ZERO or points_per_currency <= Decimal("0"):
        return 0
    return int((amount * points_per_currency).to_integral_value(rounding=ROUND_FLOOR))
