"""Runtime layer for the checkout engine.

This module wires configuration, the master workbook, and the checkout core
together. It owns catalog and customer registration and lookups, stock
replenishment, and sale history queries, and it hands out the per-session
objects (:class:`~pos_checkout.cart.Cart`, :class:`~pos_checkout.finalizer.SaleFinalizer`)
configured from ``config.ini``. All workbook I/O goes through the Data Access
Layer (DAL) in :mod:`pos_checkout.data_manager`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .cart import Cart
from .constants import EXPECTED_SCHEMA_VERSION, MovementType, TenderMethod
from .errors import BusinessRuleViolation, MissingReferenceError, StaleContextError
from .finalizer import SaleFinalizer
from .pricing import Discount
from .store import Sale, WorkbookStore


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything an operator enters for one sale, in entry order."""

    items: Sequence[Tuple[str, int]]
    line_discounts: Sequence[Tuple[str, Discount]] = ()
    order_discount: Optional[Discount] = None
    customer_id: Optional[str] = None
    tender_method: TenderMethod = TenderMethod.CASH
    amount_tendered: Optional[Decimal] = None


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the runtime layer."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries keyed by domain area (products, customers,
    sales) that hold precomputed query results so the workbook is not
    re-scanned on every lookup.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _session_state(context: RuntimeContext) -> Dict[str, Any]:
    """Return the bucket tracking unsaved writes and staleness.

    It lives beside the query caches but is never invalidated with them.
    """

    state = context._cache.setdefault("session", {})
    state.setdefault("unsaved", False)
    state.setdefault("stale", False)
    return state


def _require_current(context: RuntimeContext) -> None:
    """Refuse workbook writes on a context that predates a committed sale.

    Raises:
        StaleContextError: If :func:`checkout` committed through the store
            after this context's workbook was loaded.
    """
    if _session_state(context)["stale"]:
        log.warning("Rejected write on stale context for '%s'", context.settings.data_file)
        raise StaleContextError(
            "Workbook changed on disk after a committed sale; call refresh_context() first"
        )


def _mark_unsaved(context: RuntimeContext) -> None:
    _session_state(context)["unsaved"] = True


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "customers")
    if "all" not in bucket:
        all_customers = list(data_manager.iter_customers(context.workbook))
        bucket["all"] = all_customers
        bucket["by_id"] = {customer.customer_id: customer for customer in all_customers}
        log.debug("Populated customers cache with %d entries", len(all_customers))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sales history bucket on demand.

    Sales are immutable after commit, so the bucket stores the header list,
    a ``by_id`` mapping, and the committed lines grouped per sale.
    """

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        items_by_sale: Dict[str, List[data_manager.SaleItemRow]] = {}
        for item in data_manager.iter_sale_items(context.workbook):
            items_by_sale.setdefault(item.sale_id, []).append(item)
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        bucket["items"] = items_by_sale
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows optionally filtered by active status.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        include_inactive (bool): When ``True`` the result includes inactive
            products. Checkout screens only show active ones.

    Returns:
        list[data_manager.ProductRow]: Copy of the cached product dataset in
            sheet order.
    """
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return every registered customer in sheet order."""
    return list(_ensure_customers_cache(context)["all"])


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return the committed sale headers in workbook order."""
    return list(_ensure_sales_cache(context)["all"])


def get_sale_items(context: RuntimeContext, sale_id: str) -> List[data_manager.SaleItemRow]:
    """Return the committed lines of ``sale_id``.

    Raises:
        MissingReferenceError: If no sale with that identifier exists.
    """
    cache = _ensure_sales_cache(context)
    if sale_id not in cache["by_id"]:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}")
    return list(cache["items"].get(sale_id, []))


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    The result is the snapshot cached for this context; the finalizer re-reads
    products from disk before committing, so callers may use it for carts.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        MissingReferenceError: If ``customer_id`` cannot be located.
    """
    cache = _ensure_customers_cache(context)
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    unit_price: Decimal,
    stock_quantity: int = 0,
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Register a new product in the ``Products`` sheet.

    Raises:
        BusinessRuleViolation: If the identifier is already in use.
        ValueError: If the price is negative or the stock is not a
            non-negative whole number.
    """
    _require_current(context)
    if product_id in _ensure_products_cache(context)["by_id"]:
        log.warning("Duplicate product id '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product_id}' already exists")
    require_nonnegative_money(unit_price)
    require_nonnegative_quantity(stock_quantity)

    record = data_manager.ProductRow(
        product_id=product_id,
        product_name=product_name,
        unit_price=unit_price,
        stock_quantity=stock_quantity,
        is_active=is_active,
    )
    data_manager.append_product(context.workbook, record)
    _mark_unsaved(context)
    _invalidate_cache(context, "products")
    log.info("Registered product '%s' (price=%s, stock=%d)", product_id, unit_price, stock_quantity)
    return record


def add_customer(
    context: RuntimeContext,
    *,
    customer_id: str,
    customer_name: str,
    credit_limit: Decimal,
    outstanding_dues: Decimal = Decimal("0.00"),
) -> data_manager.CustomerRow:
    """Register a new customer in the ``Customers`` sheet.

    Raises:
        BusinessRuleViolation: If the identifier is already in use.
        ValueError: If the credit limit or dues are negative.
    """
    _require_current(context)
    if customer_id in _ensure_customers_cache(context)["by_id"]:
        log.warning("Duplicate customer id '%s'", customer_id)
        raise BusinessRuleViolation(f"Customer '{customer_id}' already exists")
    require_nonnegative_money(credit_limit)
    require_nonnegative_money(outstanding_dues)

    record = data_manager.CustomerRow(
        customer_id=customer_id,
        customer_name=customer_name,
        credit_limit=credit_limit,
        outstanding_dues=outstanding_dues,
    )
    data_manager.append_customer(context.workbook, record)
    _mark_unsaved(context)
    _invalidate_cache(context, "customers")
    log.info("Registered customer '%s' (credit limit=%s)", customer_id, credit_limit)
    return record


def record_restock(
    context: RuntimeContext,
    product_id: str,
    quantity: int,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Increase a product's stock and log an inbound stock movement.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        product_id (str): Product being replenished.
        quantity (int): Units received, strictly positive.
        timestamp (datetime | None): Movement time, defaults to now in UTC.

    Returns:
        data_manager.ProductRow: Product snapshot after the restock.

    Raises:
        MissingReferenceError: If the product is unknown.
        BusinessRuleViolation: If the product is inactive.
        ValueError: If ``quantity`` is not a positive whole number.
    """
    _require_current(context)
    product = get_product(context, product_id)
    if not product.is_active:
        log.warning("Attempted restock on inactive product '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product_id}' is inactive")
    require_positive_quantity(quantity)

    when = timestamp if timestamp is not None else datetime.now(UTC)
    new_stock = product.stock_quantity + quantity
    data_manager.update_product(context.workbook, product_id, field_values={"StockQuantity": new_stock})
    data_manager.append_stock_movement(
        context.workbook,
        data_manager.StockMovementRow(
            product_id=product_id,
            movement_type=MovementType.IN.value,
            quantity=quantity,
            reference_type="restock",
            reference_id=None,
            timestamp_iso=when.isoformat(),
        ),
    )
    _mark_unsaved(context)
    _invalidate_cache(context, "products")
    log.info("Restocked '%s' by %d (stock=%d)", product_id, quantity, new_stock)
    return get_product(context, product_id)


def open_store(context: RuntimeContext) -> WorkbookStore:
    """Return the persistence collaborator for the configured workbook."""
    return WorkbookStore(context.settings.data_file)


def new_cart(context: RuntimeContext) -> Cart:
    """Create an empty cart using the configured tax rate."""
    return Cart(tax_rate=context.settings.tax_rate)


def build_finalizer(context: RuntimeContext) -> SaleFinalizer:
    """Create a finalizer bound to the workbook store, cashier, and loyalty rate."""
    return SaleFinalizer(
        open_store(context),
        cashier_name=context.settings.cashier_name,
        loyalty_points_per_currency=context.settings.loyalty_points_per_currency,
    )


def checkout(context: RuntimeContext, request: CheckoutRequest) -> Sale:
    """Build a cart from ``request`` and finalize it.

    Product and customer snapshots come from the context cache; the finalizer
    re-reads both from disk before committing. Unsaved catalog writes on the
    context are persisted first so the store sees them. Once the sale commits,
    the context workbook no longer matches the file: further writes and
    :func:`persist_context` raise :class:`StaleContextError`, and
    :func:`refresh_context` returns a context that includes the sale.

    Args:
        context (RuntimeContext): Runtime context used for lookups and
            settings.
        request (CheckoutRequest): Lines, discounts, customer, and tender.

    Returns:
        Sale: The committed sale.

    Raises:
        MissingReferenceError: If a product or the customer is unknown.
        CheckoutError: Any cart or finalizer rejection; nothing is written.
    """
    if _session_state(context)["unsaved"]:
        persist_context(context)
    cart = new_cart(context)
    for product_id, quantity in request.items:
        cart.add_line(get_product(context, product_id), quantity)
    for product_id, discount in request.line_discounts:
        cart.set_line_discount(product_id, discount)
    if request.order_discount is not None:
        cart.set_order_discount(request.order_discount)
    if request.customer_id is not None:
        cart.select_customer(get_customer(context, request.customer_id))
    cart.set_tender_method(request.tender_method)

    log.debug(
        "Checkout cart built with %d line(s), grand total %s",
        len(cart.lines),
        cart.totals.grand_total,
    )
    sale = build_finalizer(context).finalize(cart, amount_tendered=request.amount_tendered)
    _session_state(context)["stale"] = True
    _invalidate_cache(context, "products", "customers", "sales")
    return sale


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive whole number.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number, zero or greater")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Raises:
        StaleContextError: If a sale was committed through the store after
            the context was loaded; saving would erase it.
    """
    _require_current(context)
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    _session_state(context)["unsaved"] = False
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an
            empty cache. Use it after a sale commit to observe the new state.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
