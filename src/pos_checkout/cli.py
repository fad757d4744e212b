"""Command-line entry points for the POS checkout engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the requests consumed by the runtime layer. The
cart, the guards, and the finalizer never see argparse objects, so the same
checkout path serves tests, scripts, and any other front end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import TenderMethod
from .errors import BusinessRuleViolation, InvalidInput
from .pricing import Discount, coerce_money, parse_discount
from .store import Sale


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``persists_workbook`` is ``False`` for commands that never touch the
    context workbook, either because they only read or because they commit
    through the store's own atomic unit.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    persists_workbook: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Point-of-sale checkout tools for the master workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as checkout and restocks."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "restock": register_restock_command(subparsers),
        "checkout": register_checkout_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings."""
    specs = {
        "stock": register_stock_command(subparsers),
        "customers": register_customers_command(subparsers),
        "sales": register_sales_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", default="0", help="Opening stock quantity (default: 0).")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer in the Customers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--credit-limit", default="0", help="Deferred payment credit limit (default: 0).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Receive stock for an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Build a cart and finalize it into a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT:QTY",
            help="Add QTY units of PRODUCT. Repeat for more lines.",
        )
        parser.add_argument(
            "--line-discount",
            dest="line_discounts",
            action="append",
            default=[],
            metavar="PRODUCT:VALUE[%]",
            help="Discount one line by a flat amount or a percentage.",
        )
        parser.add_argument(
            "--order-discount",
            default=None,
            metavar="VALUE[%]",
            help="Discount the whole order by a flat amount or a percentage.",
        )
        parser.add_argument("--customer", dest="customer_id", default=None)
        parser.add_argument(
            "--tender",
            choices=[member.value for member in TenderMethod],
            default=TenderMethod.CASH.value,
        )
        parser.add_argument("--tendered", default=None, help="Amount handed over by the customer.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_checkout,
        persists_workbook=False,
    )


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive products.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_stock_report,
        persists_workbook=False,
    )


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "Display customers with their available credit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_customers_report,
        persists_workbook=False,
    )


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display committed sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_sales_report,
        persists_workbook=False,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _split_pair(raw: str, *, field: str) -> Tuple[str, str]:
    key, separator, value = raw.rpartition(":")
    if not separator or not key or not value:
        raise InvalidInput(field, raw, f"Expected PRODUCT:VALUE, got {raw!r}")
    return key, value


def parse_item(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT:QTY`` into a product id and a whole quantity.

    Raises:
        InvalidInput: If the text is malformed or the quantity is not an
            integer.
    """
    product_id, quantity_raw = _split_pair(raw, field="item")
    try:
        quantity = int(quantity_raw)
    except ValueError as exc:
        raise InvalidInput("quantity", quantity_raw, f"Quantity must be a whole number, got {quantity_raw!r}") from exc
    return product_id, quantity


def parse_line_discount(raw: str) -> Tuple[str, Discount]:
    """Parse ``PRODUCT:VALUE`` or ``PRODUCT:VALUE%`` into a line discount."""
    product_id, discount_raw = _split_pair(raw, field="line_discount")
    return product_id, parse_discount(discount_raw)


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "product_name": args.product_name,
        "unit_price": coerce_money(args.price, field="price"),
        "stock_quantity": int(args.stock),
        "is_active": not getattr(args, "inactive", False),
    }


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-customer request."""
    return {
        "customer_id": args.customer_id,
        "customer_name": args.customer_name,
        "credit_limit": coerce_money(args.credit_limit, field="credit_limit"),
    }


def translate_checkout(args: argparse.Namespace) -> core_logic.CheckoutRequest:
    """Translate CLI args into a checkout request."""
    return core_logic.CheckoutRequest(
        items=[parse_item(raw) for raw in args.items],
        line_discounts=[parse_line_discount(raw) for raw in args.line_discounts or []],
        order_discount=parse_discount(args.order_discount) if args.order_discount else None,
        customer_id=args.customer_id,
        tender_method=TenderMethod(args.tender),
        amount_tendered=(
            coerce_money(args.tendered, field="amount_tendered") if args.tendered is not None else None
        ),
    )


def format_receipt(sale: Sale) -> List[str]:
    """Render a committed sale as printable receipt lines."""
    lines = [
        f"Receipt {sale.receipt_number}  Invoice {sale.invoice_number}",
        f"Sale {sale.sale_id}  {sale.timestamp.isoformat()}  Cashier: {sale.cashier_name}",
    ]
    for item in sale.items:
        lines.append(
            f"  {item.product_id:<12} {item.quantity:>4} x {item.unit_price:>10}"
            f"  -{item.discount_amount:>8}  {item.line_total:>10}"
        )
    lines.extend(
        [
            f"Subtotal: {sale.subtotal}",
            f"Discount: {sale.discount_amount}",
            f"Tax: {sale.tax_amount}",
            f"Total: {sale.grand_total}",
            f"Paid by {sale.tender_method.value} ({sale.payment_status.value})",
        ]
    )
    if sale.amount_tendered is not None:
        lines.append(f"Tendered: {sale.amount_tendered}  Change: {sale.change_due}")
    if sale.loyalty_points_awarded:
        lines.append(f"Loyalty points earned: {sale.loyalty_points_awarded}")
    return lines


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    payload = translate_add_product(args)
    core_logic.add_product(context, **payload)
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow."""
    payload = translate_add_customer(args)
    core_logic.add_customer(context, **payload)
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow."""
    core_logic.record_restock(context, args.product_id, int(args.quantity))
    return 0


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build the cart, finalize it, and print the receipt."""
    request = translate_checkout(args)
    sale = core_logic.checkout(context, request)
    for line in format_receipt(sale):
        print(line)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per product with price and stock on hand."""
    products = core_logic.list_products(context, include_inactive=getattr(args, "include_inactive", False))
    for product in products:
        status = "" if product.is_active else "  (inactive)"
        print(f"{product.product_id:<12} {product.product_name:<30} {product.unit_price:>10} {product.stock_quantity:>6}{status}")
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print customers with their limit, dues, and available credit."""
    for customer in core_logic.list_customers(context):
        print(
            f"{customer.customer_id:<12} {customer.customer_name:<30} "
            f"limit {customer.credit_limit:>10} dues {customer.outstanding_dues:>10} "
            f"available {customer.available_credit:>10}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per committed sale."""
    for sale in core_logic.list_sales(context):
        customer = sale.customer_id or "-"
        print(
            f"{sale.receipt_number:<20} {sale.timestamp_iso:<32} {customer:<12} "
            f"{sale.payment_method:<9} {sale.total_amount:>10}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].persists_workbook:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
