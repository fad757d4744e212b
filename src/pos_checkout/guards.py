"""Stock and credit guards.

Both guards are synchronous checks over snapshots the caller has already read.
They never fetch data and never mutate anything; the cart runs them after each
mutation and the finalizer runs them again against fresh reads right before
committing.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Union


class StockSnapshot(Protocol):
    @property
    def product_id(self) -> str: ...

    @property
    def stock_quantity(self) -> int: ...


class CreditSnapshot(Protocol):
    @property
    def customer_id(self) -> str: ...

    @property
    def available_credit(self) -> Decimal: ...


# ---------------------------------------------------------------------------
# Stock guard
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Accept:
    """The requested quantity fits within the stock snapshot."""


@dataclass(frozen=True)
class Clamp:
    """The request exceeds stock; ``max_available`` is the most that may be taken."""

    max_available: int

    @property
    def is_rejection(self) -> bool:
        return self.max_available <= 0


StockVerdict = Union[Accept, Clamp]


@dataclass(frozen=True)
class StockShortfall:
    """One conflicting line found during stock re-validation."""

    product_id: str
    requested: int
    available: int


def check_stock(product: StockSnapshot, requested_quantity: int) -> StockVerdict:
    """Validate ``requested_quantity`` against a product stock snapshot.

    Args:
        product (StockSnapshot): Point-in-time product record.
        requested_quantity (int): Total quantity the cart would hold for the
            product, not only the increment being added.

    Returns:
        StockVerdict: :class:`Accept` when the quantity fits, otherwise
            :class:`Clamp` carrying the maximum permissible quantity. Zero or
            negative stock always yields ``Clamp(0)``.
    """

    available = product.stock_quantity
    if available <= 0:
        return Clamp(0)
    if requested_quantity <= available:
        return Accept()
    return Clamp(available)


# ---------------------------------------------------------------------------
# Credit guard
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Eligible:
    """Deferred tender is allowed for the required amount."""


@dataclass(frozen=True)
class NoCustomer:
    """Deferred tender requires a registered customer."""

    def describe(self) -> str:
        return "Deferred payment is only available for registered customers"


@dataclass(frozen=True)
class InsufficientCredit:
    """The customer's available credit does not cover the required amount."""

    customer_id: str
    available_credit: Decimal
    required_amount: Decimal

    @property
    def shortfall(self) -> Decimal:
        return self.required_amount - self.available_credit

    def describe(self) -> str:
        return (
            f"Insufficient credit for customer '{self.customer_id}': "
            f"available {self.available_credit}, required {self.required_amount}"
        )


IneligibleReason = Union[NoCustomer, InsufficientCredit]


@dataclass(frozen=True)
class Ineligible:
    """Deferred tender is blocked for ``reason``."""

    reason: IneligibleReason

    def describe(self) -> str:
        return self.reason.describe()


CreditVerdict = Union[Eligible, Ineligible]


def check_credit(customer: Optional[CreditSnapshot], required_amount: Decimal) -> CreditVerdict:
    """Decide whether deferred tender is allowed for ``required_amount``.

    The check is idempotent but deliberately not cached: totals move with every
    discount or quantity change, so callers re-run it whenever the required
    amount may have changed.

    Args:
        customer (CreditSnapshot | None): Selected customer snapshot, or
            ``None`` for a walk-in sale.
        required_amount (Decimal): Grand total the customer would owe.

    Returns:
        CreditVerdict: :class:`Eligible` or :class:`Ineligible` with a
            :class:`NoCustomer` / :class:`InsufficientCredit` reason.
    """

    if customer is None:
        return Ineligible(NoCustomer())
    available = customer.available_credit
    if available < required_amount:
        return Ineligible(
            InsufficientCredit(
                customer_id=customer.customer_id,
                available_credit=available,
                required_amount=required_amount,
            )
        )
    return Eligible()
