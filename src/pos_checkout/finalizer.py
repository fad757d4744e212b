"""Sale finalizer.

Turns a valid cart into an immutable :class:`~pos_checkout.store.Sale`. The
finalizer never trusts the snapshots held by the cart: immediately before
committing it re-reads the customer and every product through the store and
re-runs both guards. Preconditions are checked in a fixed order and the first
failure aborts the attempt:

1. the cart is not empty;
2. deferred tender: the credit guard approves a fresh customer read;
3. cash tender: the amount tendered covers the grand total;
4. the stock guard approves a fresh read of every line.

Only then does the store's atomic unit run: the sale and its lines are
written, stock is decremented per line and, for deferred tender, the
customer's outstanding dues grow by the grand total. Cash and card sales to
a known customer earn loyalty points in the same unit. A failed unit leaves
nothing behind and the cart untouched; a successful one clears the cart.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, List, Optional

from . import log
from .cart import Cart
from .constants import DEFAULT_LOYALTY_POINTS_PER_CURRENCY, PaymentStatus, TenderMethod
from .data_manager import CustomerRow
from .errors import (
    CheckoutError,
    CreditIneligible,
    EmptyCart,
    FinalizeCancelled,
    InvalidInput,
    PersistenceFailure,
    StockConflict,
)
from .guards import Clamp, Ineligible, NoCustomer, StockShortfall, check_credit, check_stock
from .pricing import ZERO, CartTotals, coerce_money, loyalty_points_for
from .store import CheckoutStore, Sale, SaleDraft, SaleLineItem


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


class SaleFinalizer:
    """Validate and commit carts against a :class:`CheckoutStore`."""

    def __init__(
        self,
        store: CheckoutStore,
        *,
        cashier_name: str,
        loyalty_points_per_currency: Decimal = DEFAULT_LOYALTY_POINTS_PER_CURRENCY,
    ) -> None:
        self.store = store
        self.cashier_name = cashier_name
        self.loyalty_points_per_currency = Decimal(loyalty_points_per_currency)

    def finalize(
        self,
        cart: Cart,
        *,
        amount_tendered: Any = None,
        cancel_event: Optional[threading.Event] = None,
        timestamp: Optional[datetime] = None,
    ) -> Sale:
        """Finalize ``cart`` into a committed sale.

        Args:
            cart (Cart): Cart owned by the calling session.
            amount_tendered (Any): Cash handed over by the customer. Required
                for cash tender, recorded when supplied for other tenders.
            cancel_event (threading.Event | None): When set before the atomic
                commit begins, finalization stops with
                :class:`FinalizeCancelled`. Setting it later has no effect.
            timestamp (datetime | None): Sale time; defaults to now in UTC.

        Returns:
            Sale: The committed sale. The cart has been cleared.

        Raises:
            EmptyCart: If the cart has no lines.
            CreditIneligible: If deferred tender fails the fresh credit check,
                or the store finds the credit consumed when it commits.
            InsufficientPayment: If cash tendered is below the grand total.
            InvalidInput: If the tendered amount is malformed or negative.
            StockConflict: If any line exceeds freshly read stock; every
                offending line is listed.
            FinalizeCancelled: If ``cancel_event`` was set before commit.
            PersistenceFailure: If the atomic commit failed.
        """

        with cart.finalizing():
            totals = cart.recompute_totals()
            if cart.is_empty:
                raise EmptyCart()

            tender = cart.tender_method
            customer = self._recheck_credit(cart, totals)
            tendered, change = self._settle_payment(cart, tender, amount_tendered)
            self._recheck_stock(cart)

            if cancel_event is not None and cancel_event.is_set():
                log.info("Finalization cancelled before commit")
                raise FinalizeCancelled()

            draft = SaleDraft(
                timestamp=_resolve_timestamp(timestamp),
                customer_id=customer.customer_id if customer is not None else None,
                subtotal=totals.gross_subtotal,
                discount_amount=totals.total_discount_amount,
                tax_amount=totals.tax_amount,
                grand_total=totals.grand_total,
                tender_method=tender,
                payment_status=(
                    PaymentStatus.PENDING_DEFERRED if tender is TenderMethod.DEFERRED else PaymentStatus.PAID
                ),
                amount_tendered=tendered,
                change_due=change,
                cashier_name=self.cashier_name,
            )
            line_items = [
                SaleLineItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount_amount=line.discount_amount,
                    line_total=line.line_total,
                )
                for line in totals.lines
            ]
            sale = self._commit(draft, line_items)

        cart.clear()
        log.info(
            "Finalized sale '%s' receipt '%s' (%s, total=%s)",
            sale.sale_id,
            sale.receipt_number,
            sale.tender_method.value,
            sale.grand_total,
        )
        return sale

    def _recheck_credit(self, cart: Cart, totals: CartTotals) -> Optional[CustomerRow]:
        selected = cart.customer
        if cart.tender_method is not TenderMethod.DEFERRED:
            return selected
        if selected is None:
            raise CreditIneligible(Ineligible(NoCustomer()))

        try:
            fresh = self.store.read_customer(selected.customer_id)
        except KeyError:
            log.warning("Customer '%s' vanished before finalization", selected.customer_id)
            raise CreditIneligible(Ineligible(NoCustomer())) from None
        verdict = check_credit(fresh, totals.grand_total)
        if isinstance(verdict, Ineligible):
            log.warning("Credit re-check failed at finalization: %s", verdict.describe())
            raise CreditIneligible(verdict)
        return fresh

    def _settle_payment(self, cart: Cart, tender: TenderMethod, amount_tendered: Any) -> tuple[Optional[Decimal], Decimal]:
        if tender is TenderMethod.CASH:
            if amount_tendered is None:
                amount_tendered = ZERO
            tendered = coerce_money(amount_tendered, field="amount_tendered")
            change = cart.change_due(tendered)
            return tendered, change
        if amount_tendered is None:
            return None, ZERO
        tendered = coerce_money(amount_tendered, field="amount_tendered")
        if tendered < ZERO:
            raise InvalidInput("amount_tendered", amount_tendered, "Tendered amount cannot be negative")
        return tendered, ZERO

    def _recheck_stock(self, cart: Cart) -> None:
        conflicts: List[StockShortfall] = []
        for line in cart.lines:
            try:
                fresh = self.store.read_product(line.product_id)
            except KeyError:
                conflicts.append(StockShortfall(line.product_id, line.quantity, 0))
                continue
            verdict = check_stock(fresh, line.quantity)
            if isinstance(verdict, Clamp):
                conflicts.append(StockShortfall(line.product_id, line.quantity, verdict.max_available))
        if conflicts:
            log.warning("Stock re-check failed for %d line(s)", len(conflicts))
            raise StockConflict(conflicts)

    def _commit(self, draft: SaleDraft, line_items: List[SaleLineItem]) -> Sale:
        try:
            with self.store.atomic() as unit:
                sale = unit.commit_sale(draft, line_items)
                for item in line_items:
                    unit.decrement_stock(item.product_id, item.quantity)
                # Deferred drafts always carry the customer re-read above.
                if draft.tender_method is TenderMethod.DEFERRED and draft.customer_id is not None:
                    unit.increase_outstanding_dues(draft.customer_id, draft.grand_total)
                elif draft.customer_id is not None:
                    points = loyalty_points_for(draft.grand_total, self.loyalty_points_per_currency)
                    awarded = unit.award_loyalty_points(draft.customer_id, points)
                    sale = replace(sale, loyalty_points_awarded=awarded)
        except CheckoutError:
            raise
        except Exception as exc:
            log.error("Sale commit failed: %s", exc)
            raise PersistenceFailure(f"Sale commit failed: {exc}") from exc
        return sale
