"""Unit tests for the pure pricing engine."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pos_checkout.cart import CartLine
from pos_checkout.errors import InvalidInput
from pos_checkout.pricing import (
    ZERO,
    AmountDiscount,
    PercentageDiscount,
    discount_amount,
    loyalty_points_for,
    parse_discount,
    price_cart,
    price_line,
    to_money,
    validate_discount,
)


@pytest.fixture
def line(product_factory):
    def _make(product_id="P-1", *, price="100.00", quantity=1, discount=None):
        return CartLine(product=product_factory(product_id, price=price, stock=999), quantity=quantity, discount=discount)

    return _make


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------


def test_to_money_rounds_half_up():
    assert to_money(Decimal("0.005")) == Decimal("0.01")
    assert to_money(Decimal("2.345")) == Decimal("2.35")
    assert to_money(Decimal("2.344")) == Decimal("2.34")


def test_to_money_accepts_strings_and_ints():
    assert to_money("1.1") == Decimal("1.10")
    assert to_money(3) == Decimal("3.00")


# ---------------------------------------------------------------------------
# Discounts
# ---------------------------------------------------------------------------


def test_parse_discount_reads_percentage_and_amount():
    assert parse_discount("10%") == PercentageDiscount(Decimal("10"))
    assert parse_discount(" 12.5 ") == AmountDiscount(Decimal("12.5"))


@pytest.mark.parametrize("raw", ["abc", "%", "ten%", "NaN"])
def test_parse_discount_rejects_malformed_text(raw):
    with pytest.raises(InvalidInput) as excinfo:
        parse_discount(raw)
    assert excinfo.value.field == "discount"


@pytest.mark.parametrize(
    "discount",
    [
        PercentageDiscount(Decimal("-1")),
        PercentageDiscount(Decimal("100.01")),
        AmountDiscount(Decimal("-0.01")),
    ],
)
def test_validate_discount_rejects_out_of_range_values(discount):
    with pytest.raises(InvalidInput):
        validate_discount(discount)


@pytest.mark.parametrize(
    "discount",
    [
        PercentageDiscount(Decimal("NaN")),
        PercentageDiscount(Decimal("Infinity")),
        AmountDiscount(Decimal("Infinity")),
        AmountDiscount(Decimal("sNaN")),
        AmountDiscount("5"),
        PercentageDiscount(True),
    ],
)
def test_validate_discount_rejects_non_finite_and_non_numeric_values(discount):
    with pytest.raises(InvalidInput) as excinfo:
        validate_discount(discount)
    assert excinfo.value.value is discount


def test_validate_discount_accepts_bounds():
    assert validate_discount(PercentageDiscount(Decimal("0"))) == PercentageDiscount(Decimal("0"))
    assert validate_discount(PercentageDiscount(Decimal("100"))) == PercentageDiscount(Decimal("100"))
    assert validate_discount(AmountDiscount(Decimal("0"))) == AmountDiscount(Decimal("0"))


def test_invalid_input_is_also_a_value_error():
    with pytest.raises(ValueError):
        validate_discount(AmountDiscount(Decimal("-5")))


def test_discount_amount_clamps_flat_discount_to_base():
    assert discount_amount(Decimal("30.00"), AmountDiscount(Decimal("50"))) == Decimal("30.00")


def test_discount_amount_rounds_percentage_half_up():
    assert discount_amount(Decimal("33.33"), PercentageDiscount(Decimal("10"))) == Decimal("3.33")
    assert discount_amount(Decimal("0.05"), PercentageDiscount(Decimal("10"))) == Decimal("0.01")


def test_discount_amount_without_discount_is_zero():
    assert discount_amount(Decimal("12.00"), None) == ZERO


def test_discount_amount_rejects_unknown_discount_type():
    with pytest.raises(TypeError):
        discount_amount(Decimal("10.00"), object())  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Line and cart pricing
# ---------------------------------------------------------------------------


def test_price_line_applies_line_discount(line):
    priced = price_line(line(price="100.00", quantity=3, discount=AmountDiscount(Decimal("10"))))

    assert priced.line_base == Decimal("300.00")
    assert priced.discount_amount == Decimal("10.00")
    assert priced.line_total == Decimal("290.00")


def test_price_cart_reference_example(line):
    """Price 100 x 3 less 10 flat, taxed at 5%, gives 304.50."""

    totals = price_cart(
        [line(price="100.00", quantity=3, discount=AmountDiscount(Decimal("10")))],
        order_discount=None,
        tax_rate=Decimal("5"),
    )

    assert totals.subtotal == Decimal("290.00")
    assert totals.tax_amount == Decimal("14.50")
    assert totals.grand_total == Decimal("304.50")


def test_price_cart_composes_line_and_order_discounts_multiplicatively(line):
    items = [
        line("P-1", price="100.00", discount=PercentageDiscount(Decimal("10"))),
        line("P-2", price="100.00", discount=PercentageDiscount(Decimal("10"))),
    ]

    totals = price_cart(items, order_discount=PercentageDiscount(Decimal("10")), tax_rate=Decimal("5"))

    # 0.9 * 0.9 * 200 * 1.05
    assert totals.gross_subtotal == Decimal("200.00")
    assert totals.subtotal == Decimal("180.00")
    assert totals.order_discount_amount == Decimal("18.00")
    assert totals.discounted_subtotal == Decimal("162.00")
    assert totals.grand_total == Decimal("170.10")
    assert totals.total_discount_amount == Decimal("38.00")


def test_price_cart_empty_cart_is_all_zero():
    totals = price_cart([], order_discount=AmountDiscount(Decimal("5")), tax_rate=Decimal("17"))

    assert totals.lines == ()
    assert totals.subtotal == ZERO
    assert totals.order_discount_amount == ZERO
    assert totals.tax_amount == ZERO
    assert totals.grand_total == ZERO


def test_price_cart_never_goes_negative(line):
    items = [line(price="5.00", quantity=2, discount=AmountDiscount(Decimal("50")))]

    totals = price_cart(items, order_discount=AmountDiscount(Decimal("99")), tax_rate=Decimal("17"))

    assert totals.per_line_totals == (ZERO,)
    assert totals.discounted_subtotal == ZERO
    assert totals.grand_total == ZERO


def test_price_cart_preserves_line_order(line):
    items = [line("B", price="1.00"), line("A", price="2.00"), line("C", price="3.00")]

    totals = price_cart(items, order_discount=None, tax_rate=Decimal("0"))

    assert [priced.product_id for priced in totals.lines] == ["B", "A", "C"]
    assert totals.per_line_totals == (Decimal("1.00"), Decimal("2.00"), Decimal("3.00"))


def test_price_cart_rounds_tax_half_up(line):
    totals = price_cart([line(price="0.05")], order_discount=None, tax_rate=Decimal("10"))

    assert totals.tax_amount == Decimal("0.01")
    assert totals.grand_total == Decimal("0.06")


def test_loyalty_points_round_down_to_whole_points():
    assert loyalty_points_for(Decimal("304.50"), Decimal("1")) == 304
    assert loyalty_points_for(Decimal("210.00"), Decimal("0.1")) == 21
    assert loyalty_points_for(Decimal("0.99"), Decimal("1")) == 0


def test_loyalty_points_are_zero_for_empty_totals_or_disabled_rate():
    assert loyalty_points_for(ZERO, Decimal("1")) == 0
    assert loyalty_points_for(Decimal("100.00"), Decimal("0")) == 0
