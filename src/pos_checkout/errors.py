"""Exception hierarchy for the checkout engine.

Every rejection raised by the cart or the finalizer is a structured value: the
attributes carry exactly what a caller needs to render a remediation message
(which line, how many units are available, how much credit is missing). None of
these errors is raised after state has been mutated, so catching one always
leaves the cart as it was before the attempt.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional, Sequence

if TYPE_CHECKING:
    from .guards import Ineligible, StockShortfall


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or sale is unknown."""


class StaleContextError(BusinessRuleViolation):
    """Raised when a context's workbook predates a sale committed through the store."""


class CheckoutError(BusinessRuleViolation):
    """Base class for rejections raised by the cart and the sale finalizer."""


class InvalidInput(CheckoutError, ValueError):
    """Malformed quantity or discount rejected at the mutation boundary."""

    def __init__(self, field: str, value: Any, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class StockUnavailable(CheckoutError):
    """The requested quantity for one product exceeds its stock snapshot."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Only {available} unit(s) of '{product_id}' available, {requested} requested"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StockConflict(CheckoutError):
    """One or more cart lines exceed freshly read stock at finalization."""

    def __init__(self, conflicts: Sequence["StockShortfall"]) -> None:
        self.conflicts = tuple(conflicts)
        details = ", ".join(
            f"{item.product_id}: requested {item.requested}, available {item.available}"
            for item in self.conflicts
        )
        super().__init__(f"Stock shortage detected ({details})")


class CreditIneligible(CheckoutError):
    """Deferred tender is blocked by the credit guard."""

    def __init__(self, verdict: "Ineligible") -> None:
        super().__init__(verdict.describe())
        self.verdict = verdict


class InsufficientPayment(CheckoutError):
    """Cash tendered does not cover the grand total."""

    def __init__(self, required: Decimal, tendered: Optional[Decimal]) -> None:
        super().__init__(
            f"Insufficient payment amount: required {required}, tendered {tendered}"
        )
        self.required = required
        self.tendered = tendered


class EmptyCart(CheckoutError):
    """Finalization attempted on a cart with no lines."""

    def __init__(self) -> None:
        super().__init__("Cart is empty")


class FinalizeCancelled(CheckoutError):
    """The caller cancelled finalization before the commit began."""

    def __init__(self) -> None:
        super().__init__("Finalization cancelled before commit")


class PersistenceFailure(CheckoutError):
    """The atomic commit failed; nothing was written."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "StaleContextError",
    "CheckoutError",
    "InvalidInput",
    "StockUnavailable",
    "StockConflict",
    "CreditIneligible",
    "InsufficientPayment",
    "EmptyCart",
    "FinalizeCancelled",
    "PersistenceFailure",
]
