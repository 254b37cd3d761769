"""Command-line entry points for StockFlow.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing what
comes back. Every sub-command is described by a :class:`CommandSpec` so the
same parser configuration can be reused by tests or other front-ends.
"""

from __future__ import annotations

import argparse
import base64
import logging
import getpass
import mimetypes
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, credit, documents, exports, log, reports, sales, set_console_level
from .auth import AuthGateway
from .constants import TAX_OPTIONS, PaymentMethod, ReportPeriod, TransactionType, find_tax_option
from .models import Product


PRODUCT_SORTS = ("name-asc", "price-asc", "price-desc", "stock-asc")


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


Subparsers = argparse._SubParsersAction


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def money_argument(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a valid amount: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a valid amount: {raw!r}")
    return value


def date_argument(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {raw!r}") from exc


def item_argument(raw: str) -> Tuple[str, int, Decimal]:
    """Parse ``CODE``, ``CODE:QTY`` or ``CODE:QTY:DISCOUNT%`` cart lines."""

    parts = raw.split(":")
    if not parts[0] or len(parts) > 3:
        raise argparse.ArgumentTypeError(f"expected CODE[:QTY[:DISCOUNT%]], got {raw!r}")
    try:
        quantity = int(parts[1]) if len(parts) > 1 else 1
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"quantity must be a whole number in {raw!r}") from exc
    percent = money_argument(parts[2].rstrip("%")) if len(parts) > 2 else Decimal("0")
    return parts[0], quantity, percent


# ---------------------------------------------------------------------------
# Parser wiring
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockflow",
        description="Point-of-sale, inventory and customer credit tools for a small store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Also print informational log messages.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    account_specs = register_account_commands(subparsers)
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*account_specs.values(), *write_specs.values(), *read_specs.values()])


def _register_all(subparsers: Subparsers, specs: Dict[str, CommandSpec]) -> Dict[str, CommandSpec]:
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_account_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare sign-in, sync and maintenance commands."""
    specs = {
        "register": register_register_command(subparsers),
        "login": register_login_command(subparsers),
        "logout": register_logout_command(subparsers),
        "passwd": register_passwd_command(subparsers),
        "sync": register_sync_command(subparsers),
        "reset": register_reset_command(subparsers),
    }
    return _register_all(subparsers, specs)


def register_write_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and payments."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "delete-category": register_delete_category_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "delete-customer": register_delete_customer_command(subparsers),
        "sale": register_checkout_command(subparsers, TransactionType.SALE),
        "return": register_checkout_command(subparsers, TransactionType.RETURN),
        "pay": register_pay_command(subparsers),
        "profile": register_profile_command(subparsers),
    }
    return _register_all(subparsers, specs)


def register_read_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and documents."""
    specs = {
        "products": register_products_command(subparsers),
        "customers": register_customers_command(subparsers),
        "log": register_log_command(subparsers),
        "report": register_report_command(subparsers),
        "statement": register_statement_command(subparsers),
        "dues": register_dues_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "catalog": register_catalog_command(subparsers),
        "barcode": register_barcode_command(subparsers),
        "export": register_export_command(subparsers),
    }
    return _register_all(subparsers, specs)


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _credential_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", default=None, help="Prompted for when omitted.")


def register_register_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``register``."""
    return _simple_spec("register", "Create an account and sign in.", run_register, _credential_arguments)


def register_login_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``login``."""
    return _simple_spec("login", "Sign in to an existing account.", run_login, _credential_arguments)


def register_logout_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``logout``."""
    return _simple_spec("logout", "Sign out and return to the guest store.", run_logout)


def register_passwd_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``passwd``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--current-password", default=None)
        parser.add_argument("--new-password", default=None)

    return _simple_spec("passwd", "Change the signed-in user's password.", run_passwd, configure)


def register_sync_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    return _simple_spec("sync", "Pull the remote copy and push pending changes.", run_sync)


def register_reset_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``reset``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--yes", action="store_true", help="Confirm deleting all local store data.")

    return _simple_spec("reset", "Delete the current store's local data.", run_reset, configure)


def register_add_product_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--buy-price", type=money_argument, required=True)
        parser.add_argument("--sell-price", type=money_argument, required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--barcode", default="", help="Generated when omitted.")
        parser.add_argument("--product-id", default="", help="Generated when omitted.")
        parser.add_argument("--description", default="")
        parser.add_argument("--hsn", default=None)
        parser.add_argument("--image", type=Path, default=None, help="Image file shown on the catalog.")

    return _simple_spec("add-product", "Add a product to the catalog.", run_add_product, configure)


def register_update_product_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--buy-price", type=money_argument, default=None)
        parser.add_argument("--sell-price", type=money_argument, default=None)
        parser.add_argument("--stock", type=int, default=None)
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--hsn", default=None)
        parser.add_argument("--image", type=Path, default=None)

    return _simple_spec("update-product", "Edit fields of an existing product.", run_update_product, configure)


def register_delete_product_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)

    return _simple_spec("delete-product", "Remove a product from the catalog.", run_delete_product, configure)


def _category_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)


def register_add_category_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    return _simple_spec("add-category", "Add a product category.", run_add_category, _category_arguments)


def register_delete_category_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``delete-category``."""
    return _simple_spec("delete-category", "Remove a product category.", run_delete_category, _category_arguments)


def register_add_customer_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", required=True)

    return _simple_spec("add-customer", "Register a customer.", run_add_customer, configure)


def register_delete_customer_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--confirm-name", required=True, help="The customer's name, retyped.")

    return _simple_spec("delete-customer", "Delete a customer.", run_delete_customer, configure)


def register_checkout_command(subparsers: Subparsers, mode: TransactionType) -> CommandSpec:
    """Register the parser and executor for ``sale`` or ``return``."""
    name = mode.value
    help_text = "Check out a sale." if mode is TransactionType.SALE else "Check out a return."

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=item_argument,
            required=True,
            help="Cart line as CODE[:QTY[:DISCOUNT%%]]; CODE is a barcode or product id.",
        )
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--new-customer-name", default=None)
        parser.add_argument("--new-customer-phone", default=None)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--tax", choices=[option.label for option in TAX_OPTIONS], default=None)
        parser.add_argument("--notes", default=None)
        parser.add_argument("--invoice", type=Path, default=None, help="Also write the invoice PDF here.")

    return _simple_spec(name, help_text, run_checkout, configure)


def register_pay_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``pay``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", type=money_argument, required=True)
        parser.add_argument(
            "--method",
            choices=[PaymentMethod.CASH.value, PaymentMethod.ONLINE.value],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--note", default=None)

    return _simple_spec("pay", "Record a payment against a customer's due.", run_pay, configure)


PROFILE_FIELDS = (
    "store_name",
    "owner_name",
    "gstin",
    "email",
    "phone",
    "address_line1",
    "address_line2",
    "state",
    "bank_name",
    "bank_account",
    "bank_ifsc",
    "bank_holder",
)


def register_profile_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``profile``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        for field_name in PROFILE_FIELDS:
            parser.add_argument(f"--{field_name.replace('_', '-')}", dest=field_name, default=None)
        parser.add_argument("--default-tax", choices=[option.label for option in TAX_OPTIONS], default=None)
        parser.add_argument("--signature", type=Path, default=None, help="Signature image for invoices.")

    return _simple_spec("profile", "Show or edit the store profile.", run_profile, configure)


def register_products_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``products``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--query", default="")
        parser.add_argument("--category", default=None)
        parser.add_argument("--sort", choices=PRODUCT_SORTS, default="name-asc")

    return _simple_spec("products", "List catalog products and stock alerts.", run_products, configure)


def register_customers_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``customers``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--query", default="")
        parser.add_argument("--has-due", action="store_true")
        parser.add_argument("--sort", choices=credit.SORT_KEYS, default="spend")
        parser.add_argument("--ascending", action="store_true")

    return _simple_spec("customers", "List customers with their dues.", run_customers, configure)


def _period_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--period", choices=[member.value for member in ReportPeriod], default=ReportPeriod.ALL.value)
    parser.add_argument("--start", type=date_argument, default=None, help="First day of a custom period.")
    parser.add_argument("--end", type=date_argument, default=None, help="Last day of a custom period.")


def register_log_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    return _simple_spec("log", "Display the transaction log.", run_log, _period_arguments)


def _output_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--output", type=Path, required=True)


def register_report_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``report``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _period_arguments(parser)
        _output_argument(parser)

    return _simple_spec("report", "Write a transaction report PDF.", run_report, configure)


def register_statement_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``statement``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--output", type=Path, default=None, help="Write a PDF instead of printing.")

    return _simple_spec("statement", "Show a customer's account statement.", run_statement, configure)


def register_dues_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``dues``."""
    return _simple_spec("dues", "Write the outstanding dues PDF.", run_dues, _output_argument)


def register_invoice_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--transaction-id", required=True)
        _output_argument(parser)

    return _simple_spec("invoice", "Write the invoice PDF of a transaction.", run_invoice, configure)


def register_catalog_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``catalog``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _output_argument(parser)
        parser.add_argument("--category", default=None)
        parser.add_argument("--internal", action="store_true", help="Include stock and buy prices.")

    return _simple_spec("catalog", "Write the product catalog PDF.", run_catalog, configure)


def register_barcode_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``barcode``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        _output_argument(parser)

    return _simple_spec("barcode", "Write a barcode label PDF for a product.", run_barcode, configure)


def register_export_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    return _simple_spec("export", "Export products, customers and transactions to .xlsx.", run_export, _output_argument)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context and attach the signed-in session."""
    context = core_logic.load_runtime_context(config_path)
    return context.with_session(auth_gateway(context).current_session())


def auth_gateway(context: core_logic.RuntimeContext) -> AuthGateway:
    return AuthGateway(context.settings.data_dir, mirror=context.store.mirror)


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def image_data_url(path: Path) -> str:
    """Read an image file into a ``data:`` URL as stored on products."""

    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.expanduser().read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def translate_add_product(args: argparse.Namespace) -> Product:
    """Translate CLI args into a new catalog product."""
    return Product(
        id=args.product_id,
        barcode=args.barcode,
        name=args.name,
        description=args.description,
        category=args.category,
        buy_price=args.buy_price,
        sell_price=args.sell_price,
        stock=args.stock,
        image=image_data_url(args.image) if args.image else "",
        hsn=args.hsn,
    )


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Collect only the product fields given on the command line."""
    changes: Dict[str, Any] = {}
    for field_name in ("name", "category", "buy_price", "sell_price", "stock", "barcode", "description", "hsn"):
        value = getattr(args, field_name)
        if value is not None:
            changes[field_name] = value
    if args.image is not None:
        changes["image"] = image_data_url(args.image)
    return changes


def translate_checkout(args: argparse.Namespace, settings_tax: Optional[str]) -> Mapping[str, Any]:
    """Translate CLI args into keyword arguments for :func:`sales.checkout`."""
    new_customer = None
    if args.new_customer_name is not None or args.new_customer_phone is not None:
        new_customer = sales.NewCustomer(name=args.new_customer_name or "", phone=args.new_customer_phone or "")
    label = args.tax or settings_tax
    return {
        "payment_method": PaymentMethod(args.method),
        "tax_option": find_tax_option(label) if label else None,
        "customer_id": args.customer_id,
        "new_customer": new_customer,
        "notes": args.notes,
    }


def translate_period(args: argparse.Namespace) -> Tuple[ReportPeriod, Optional[date], Optional[date]]:
    period = ReportPeriod(args.period)
    if (args.start or args.end) and period is not ReportPeriod.CUSTOM:
        period = ReportPeriod.CUSTOM
    return period, args.start, args.end


def _password(value: Optional[str], prompt: str) -> str:
    return value if value is not None else getpass.getpass(prompt)


def _write_output(path: Path, data: bytes) -> Path:
    dest = Path(path).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    log.info("Wrote %d bytes to '%s'", len(data), dest)
    print(f"Wrote {dest}")
    return dest


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create an account and make it the active session."""
    session = auth_gateway(context).register(args.email, _password(args.password, "Password: "))
    print(f"Registered and signed in as {session.identity}")
    return 0


def run_login(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Sign in and pull the account's remote store."""
    session = auth_gateway(context).login(args.email, _password(args.password, "Password: "))
    context.store.pull_remote(session)
    print(f"Signed in as {session.identity}")
    return 0


def run_logout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    auth_gateway(context).logout()
    print("Signed out")
    return 0


def run_passwd(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Change the active user's password after checking the current one."""
    current = _password(args.current_password, "Current password: ")
    new = _password(args.new_password, "New password: ")
    auth_gateway(context).update_password(current, new)
    print("Password updated")
    return 0


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Pull the remote aggregate, then push whatever is still pending."""
    if context.store.mirror is None:
        print("Remote sync is not configured")
        return 0
    if not context.session.authenticated:
        raise core_logic.BusinessRuleViolation("Sign in to sync with the remote store")
    replaced = context.store.pull_remote(context.session)
    result = context.store.flush_mirror()
    print(f"Pulled: {'updated' if replaced else 'unchanged'}; sent {result.sent}, failed {result.failed}, deferred {result.deferred}")
    return 0


def run_reset(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if not args.yes:
        raise core_logic.BusinessRuleViolation("Pass --yes to delete all local data for this store")
    context.store.reset(context.session)
    print("Store data reset")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = translate_add_product(args)
    catalog = core_logic.add_product(context, product)
    added = catalog[-1]
    print(f"Added {added.id} {added.name} (barcode {added.barcode})")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Apply the given field changes to a stored product."""
    state = context.store.load(context.session)
    product = core_logic.get_product(state, args.product_id)
    core_logic.update_product(context, replace(product, **translate_update_product(args)))
    print(f"Updated {args.product_id}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, args.product_id)
    print(f"Deleted {args.product_id}")
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    categories = core_logic.add_category(context, args.name)
    print(", ".join(categories))
    return 0


def run_delete_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    categories = core_logic.delete_category(context, args.name)
    print(", ".join(categories) or "(no categories)")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = credit.add_customer(context, args.name, args.phone)
    print(f"Added {customer.id} {customer.name}")
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    credit.delete_customer(context, args.customer_id, confirm_name=args.confirm_name)
    print(f"Deleted {args.customer_id}")
    return 0


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build a cart from ``--item`` lines and check it out."""
    mode = TransactionType(args.command)
    state = context.store.load(context.session)
    cart = sales.cart_from_lines(state.products, args.items, mode)
    result = sales.checkout(context, cart, **translate_checkout(args, context.settings.default_tax_label))
    tx = result.transaction
    print(f"{tx.type.value.capitalize()} {tx.id}: total {_money(tx.total)} ({tx.payment_method.value})")
    if result.customer is not None:
        print(f"{result.customer.name}: outstanding due {_money(result.customer.total_due)}")
    if args.invoice is not None:
        _write_output(args.invoice, documents.render_invoice(tx, result.state.profile, result.customer))
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    tx = credit.record_payment(context, args.customer_id, args.amount, PaymentMethod(args.method), args.note)
    customer = core_logic.get_customer(context.store.load(context.session), args.customer_id)
    print(f"Payment {tx.id}: {_money(tx.total)}; remaining due {_money(customer.total_due)}")
    return 0


def run_profile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the store profile, applying any given edits first."""
    profile = context.store.load(context.session).profile
    changes: Dict[str, Any] = {
        field_name: getattr(args, field_name)
        for field_name in PROFILE_FIELDS
        if getattr(args, field_name) is not None
    }
    if args.default_tax is not None:
        option = find_tax_option(args.default_tax)
        changes["default_tax_label"] = option.label
        changes["default_tax_rate"] = option.rate
    if args.signature is not None:
        changes["signature_image"] = image_data_url(args.signature)
    if changes:
        profile = core_logic.update_store_profile(context, replace(profile, **changes))
    for field_name in (*PROFILE_FIELDS, "default_tax_label"):
        print(f"{field_name}: {getattr(profile, field_name) or ''}")
    return 0


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    products = context.store.load(context.session).products
    for product in core_logic.search_products(products, args.query, category=args.category, sort_by=args.sort):
        print(
            f"{product.id}\t{product.barcode}\t{product.name}\t{product.category}\t"
            f"buy {_money(product.buy_price)}\tsell {_money(product.sell_price)}\tstock {product.stock}"
        )
    stats = core_logic.inventory_stats(products)
    print(
        f"{stats.product_count} products, stock value {_money(stats.inventory_value)}, "
        f"{stats.low_stock} low, {stats.out_of_stock} out of stock"
    )
    return 0


def run_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customers = context.store.load(context.session).customers
    listing = credit.find_customers(
        customers,
        args.query,
        has_due=args.has_due,
        sort_by=args.sort,
        descending=not args.ascending,
    )
    threshold = credit.high_value_threshold(customers)
    for customer in listing.customers:
        tags = []
        if credit.is_high_value(customer, threshold):
            tags.append("high-value")
        if credit.is_inactive(customer):
            tags.append("inactive")
        print(
            f"{customer.id}\t{customer.name}\t{customer.phone}\tspend {_money(customer.total_spend)}\t"
            f"due {_money(customer.total_due)}\t{' '.join(tags)}".rstrip()
        )
    print(f"{listing.count} customers, total due {_money(listing.total_dues)}")
    return 0


def run_log(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction log reporting workflow."""
    period, start, end = translate_period(args)
    selected = reports.filter_transactions(context.store.load(context.session).transactions, period, start=start, end=end)
    for tx in selected:
        print(f"{tx.date}\t{tx.id}\t{tx.type.value}\t{tx.customer_name or 'Walk-in'}\t{_money(tx.total)}")
    summary = reports.summarize_transactions(selected)
    print(
        f"{summary.count} transactions: revenue {_money(summary.total_revenue)}, "
        f"returns {_money(summary.total_returns)}, payments {_money(summary.total_payments)}, "
        f"gross profit {_money(summary.gross_profit)}"
    )
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    period, start, end = translate_period(args)
    state = context.store.load(context.session)
    selected = reports.filter_transactions(state.transactions, period, start=start, end=end)
    if period is ReportPeriod.CUSTOM:
        label = f"{start or 'beginning'} to {end or 'today'}"
    else:
        label = period.value
    pdf = documents.render_transaction_report(
        selected,
        reports.summarize_transactions(selected),
        state.profile,
        filter_label=label,
    )
    _write_output(args.output, pdf)
    return 0


def run_statement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    state = context.store.load(context.session)
    statement = credit.build_statement(state, args.customer_id)
    if args.output is not None:
        _write_output(args.output, documents.render_statement(statement, state.profile))
        return 0
    for line in statement.lines:
        print(
            f"{line.date[:10]}\t{line.description}\tDr {_money(line.debit)}\tCr {_money(line.credit)}\t"
            f"{_money(abs(line.balance))} {line.marker}"
        )
    print(f"Final due: {_money(statement.final_due)}")
    return 0


def run_dues(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    state = context.store.load(context.session)
    _write_output(args.output, documents.render_customer_dues(state.customers, state.profile))
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    state = context.store.load(context.session)
    tx = next((entry for entry in state.transactions if entry.id == args.transaction_id), None)
    if tx is None:
        log.warning("Transaction lookup failed for id '%s'", args.transaction_id)
        raise core_logic.MissingReferenceError(f"Unknown transaction id: {args.transaction_id}")
    _write_output(args.output, documents.render_invoice(tx, state.profile, state.find_customer(tx.customer_id)))
    return 0


def run_catalog(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    state = context.store.load(context.session)
    pdf = documents.render_catalog(state.products, state.profile, category=args.category, internal=args.internal)
    _write_output(args.output, pdf)
    return 0


def run_barcode(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.get_product(context.store.load(context.session), args.product_id)
    _write_output(args.output, documents.render_barcode_label(product))
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    dest = exports.export_workbook(context.store.load(context.session), args.output)
    print(f"Wrote {dest}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def flush_remote(context: core_logic.RuntimeContext) -> None:
    """Push pending remote writes after a command; failures stay queued."""
    result = context.store.flush_mirror()
    if result is not None and (result.failed or result.deferred):
        log.info("Remote sync pending: %d failed, %d deferred", result.failed, result.deferred)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            flush_remote(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
