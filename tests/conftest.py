"""Shared pytest fixtures and utilities for POS checkout tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_checkout import cli, constants, core_logic, data_manager  # noqa: E402
from pos_checkout.errors import CreditIneligible, StockConflict  # noqa: E402
from pos_checkout.guards import Ineligible, StockShortfall, check_credit  # noqa: E402
from pos_checkout.setup_workbook import create_master_workbook  # noqa: E402
from pos_checkout.store import Sale, SaleDraft, SaleLineItem  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Checkout]\n"
    "TaxRate = {tax_rate}\n"
    "CashierName = {cashier_name}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str
    tax_rate: str


def make_product(
    product_id: str = "P-001",
    *,
    price: str = "100.00",
    stock: int = 10,
    name: Optional[str] = None,
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Build a product snapshot without touching a workbook."""

    return data_manager.ProductRow(
        product_id=product_id,
        product_name=name or f"Product {product_id}",
        unit_price=Decimal(price),
        stock_quantity=stock,
        is_active=is_active,
    )


def make_customer(
    customer_id: str = "C-001",
    *,
    credit_limit: str = "1000.00",
    dues: str = "0.00",
    name: Optional[str] = None,
    points: int = 0,
) -> data_manager.CustomerRow:
    """Build a customer snapshot without touching a workbook."""

    return data_manager.CustomerRow(
        customer_id=customer_id,
        customer_name=name or f"Customer {customer_id}",
        credit_limit=Decimal(credit_limit),
        outstanding_dues=Decimal(dues),
        loyalty_points=points,
    )


def seed_workbook(
    workbook_path: Path,
    *,
    products: Sequence[data_manager.ProductRow] = (),
    customers: Sequence[data_manager.CustomerRow] = (),
) -> None:
    """Append products and customers to an existing workbook file."""

    workbook = openpyxl.load_workbook(workbook_path)
    for product in products:
        data_manager.append_product(workbook, product)
    for customer in customers:
        data_manager.append_customer(workbook, customer)
    workbook.save(workbook_path)


@dataclass
class InMemoryUnit:
    """Unit of work double that stages writes until the owning store commits."""

    products: Dict[str, data_manager.ProductRow]
    customers: Dict[str, data_manager.CustomerRow]
    sales: List[Sale] = field(default_factory=list)
    fail_on: Optional[str] = None

    def commit_sale(self, draft: SaleDraft, line_items: Sequence[SaleLineItem]) -> Sale:
        if self.fail_on == "commit_sale":
            raise OSError("disk full")
        sale = Sale(
            sale_id=f"S{len(self.sales) + 1:04d}",
            receipt_number=f"RCPT-TEST-{len(self.sales) + 1:04d}",
            invoice_number="INV-TEST",
            timestamp=draft.timestamp,
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
        self.sales.append(sale)
        return sale

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        if self.fail_on == "decrement_stock":
            raise OSError("write failed")
        product = self.products[product_id]
        if quantity > product.stock_quantity:
            raise StockConflict([StockShortfall(product_id, quantity, product.stock_quantity)])
        self.products[product_id] = data_manager.ProductRow(
            product_id=product.product_id,
            product_name=product.product_name,
            unit_price=product.unit_price,
            stock_quantity=product.stock_quantity - quantity,
            is_active=product.is_active,
        )

    def increase_outstanding_dues(self, customer_id: str, amount: Decimal) -> None:
        customer = self.customers[customer_id]
        verdict = check_credit(customer, amount)
        if isinstance(verdict, Ineligible):
            raise CreditIneligible(verdict)
        self.customers[customer_id] = replace(customer, outstanding_dues=customer.outstanding_dues + amount)

    def award_loyalty_points(self, customer_id: str, points: int) -> int:
        customer = self.customers.get(customer_id)
        if customer is None or points <= 0:
            return 0
        self.customers[customer_id] = replace(customer, loyalty_points=customer.loyalty_points + points)
        return points


class InMemoryStore:
    """``CheckoutStore`` double holding products and customers in dictionaries."""

    def __init__(
        self,
        products: Sequence[data_manager.ProductRow] = (),
        customers: Sequence[data_manager.CustomerRow] = (),
    ) -> None:
        self.products = {product.product_id: product for product in products}
        self.customers = {customer.customer_id: customer for customer in customers}
        self.sales: List[Sale] = []
        self.fail_on: Optional[str] = None
        self.atomic_calls = 0

    def read_product(self, product_id: str) -> data_manager.ProductRow:
        return self.products[product_id]

    def read_customer(self, customer_id: str) -> data_manager.CustomerRow:
        return self.customers[customer_id]

    @contextmanager
    def atomic(self) -> Iterator[InMemoryUnit]:
        self.atomic_calls += 1
        unit = InMemoryUnit(
            products=dict(self.products),
            customers=dict(self.customers),
            sales=list(self.sales),
            fail_on=self.fail_on,
        )
        yield unit
        self.products = unit.products
        self.customers = unit.customers
        self.sales = unit.sales


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        tax_rate: str = "17",
        cashier_name: str = "Test Cashier",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                tax_rate=tax_rate,
                cashier_name=cashier_name,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
            tax_rate=tax_rate,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    """Config bundle whose workbook holds a small catalog and two customers."""

    bundle = config_factory()
    seed_workbook(
        bundle.workbook_path,
        products=[
            make_product("P-100", price="100.00", stock=5),
            make_product("P-200", price="20.00", stock=50),
            make_product("P-OLD", price="5.00", stock=3, is_active=False),
        ],
        customers=[
            make_customer("C-100", credit_limit="1000.00"),
            make_customer("C-200", credit_limit="50.00", dues="40.00"),
        ],
    )
    return bundle


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def fixed_moment() -> datetime:
    return datetime(2024, 3, 9, 14, 30, 0, tzinfo=UTC)


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    return make_product


@pytest.fixture
def customer_factory() -> Callable[..., data_manager.CustomerRow]:
    return make_customer


@pytest.fixture
def workbook_seeder() -> Callable[..., None]:
    return seed_workbook


@pytest.fixture
def store_factory() -> Callable[..., InMemoryStore]:
    return InMemoryStore


@pytest.fixture
def in_memory_store() -> InMemoryStore:
    """Store double seeded with two products and two customers."""

    return InMemoryStore(
        products=[
            make_product("P-100", price="100.00", stock=5),
            make_product("P-200", price="20.00", stock=50),
        ],
        customers=[
            make_customer("C-100", credit_limit="1000.00"),
            make_customer("C-200", credit_limit="50.00", dues="40.00"),
        ],
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> Tuple[str, cli.CommandSpec, Dict[str, bool]]:
    """Provide a placeholder command table entry for dispatch tests."""

    called = {"called": False}

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec, called


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
