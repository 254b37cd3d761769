"""Business logic layer for StockFlow.

This module contains the ledger engine that applies transactions to the
aggregate, the catalog operations layered on top of the persistence gateway,
and the shared validation guards used by the sales and credit workflows. All
I/O goes through :class:`~stockflow.storage.StateStore`; functions here only
derive new aggregates and hand them back for persistence.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    LOW_STOCK_THRESHOLD,
    PaymentMethod,
    TransactionType,
)
from .models import AppState, Customer, Product, StoreProfile, Transaction
from .storage import Session, StaleStateError, StateStore
from .sync import build_mirror


MAX_LEDGER_ATTEMPTS = 3


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or category is unknown."""


class StockLimitExceeded(BusinessRuleViolation):
    """Raised when a sale asks for more units than are in stock."""


class ReturnLimitExceeded(BusinessRuleViolation):
    """Raised when a return asks for more units than were sold."""


class DuplicateCustomerError(BusinessRuleViolation):
    """Raised when a new customer collides with an existing one."""


class PaymentExceedsDueError(BusinessRuleViolation):
    """Raised when a payment is larger than the customer's outstanding due."""


class LedgerConflictError(Exception):
    """Raised when the stored aggregate keeps changing underneath an update."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the state gateway and the active session."""

    settings: data_manager.ConfigSettings
    store: StateStore
    session: Session = Session()

    def with_session(self, session: Session) -> "RuntimeContext":
        return replace(self, session=session)


@dataclass(frozen=True)
class InventoryStats:
    product_count: int
    inventory_value: Decimal
    low_stock: int
    out_of_stock: int


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp. When ``None``
            the current UTC datetime is used.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise
            :func:`datetime.now` in UTC.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None, *, session: Optional[Session] = None) -> RuntimeContext:
    """Load configuration settings and build the state gateway.

    The helper resolves ``config.ini``, parses settings, wires the optional
    remote mirror and returns a :class:`RuntimeContext` bound to ``session``
    (the guest session when omitted).

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        session (Session | None): Identity the context operates on.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = StateStore(settings.data_dir, mirror=build_mirror(settings))
    log.info("Loaded runtime context for data directory '%s'", settings.data_dir)
    return RuntimeContext(settings=settings, store=store, session=session or Session())


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate data compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def generate_id(prefix: str = "", *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}{8 hex chars}``. The timestamp keeps
            identifiers roughly chronological; the random suffix keeps two
            identifiers minted in the same microsecond apart.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{secrets.token_hex(4)}"


def generate_barcode() -> str:
    """Return a placeholder barcode of the form ``GEN-NNNN``."""

    return f"GEN-{1000 + secrets.randbelow(9000)}"


def require_positive_quantity(quantity) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def get_product(state: AppState, product_id: str) -> Product:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is not in the catalog.
    """
    product = state.find_product(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def get_customer(state: AppState, customer_id: str) -> Customer:
    """Resolve a customer by id.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    customer = state.find_customer(customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return customer


def update_state(context: RuntimeContext, transform: Callable[[AppState], AppState], *, action: str) -> AppState:
    """Load, transform and conditionally save the aggregate.

    ``transform`` receives the freshly loaded aggregate and returns the next
    one. The save only succeeds if nobody else wrote the document in between;
    otherwise the aggregate is reloaded and ``transform`` is applied again.
    Business rule violations raised by ``transform`` propagate unchanged and
    nothing is written.

    Args:
        context (RuntimeContext): Runtime context with the store and session.
        transform (Callable[[AppState], AppState]): Pure derivation of the
            next aggregate.
        action (str): Short description used in log messages.

    Returns:
        AppState: The persisted aggregate.

    Raises:
        LedgerConflictError: If every attempt lost the race against another
            writer.
    """
    for attempt in range(1, MAX_LEDGER_ATTEMPTS + 1):
        current = context.store.load(context.session)
        updated = transform(current)
        try:
            return context.store.save(context.session, updated, if_unchanged=True)
        except StaleStateError:
            log.warning("Concurrent update detected while trying to %s (attempt %d)", action, attempt)
    log.error("Giving up on '%s' after %d conflicting attempts", action, MAX_LEDGER_ATTEMPTS)
    raise LedgerConflictError(f"Could not {action}: stored state kept changing")


# ---------------------------------------------------------------------------
# Ledger engine
# ---------------------------------------------------------------------------


def _apply_to_product(product: Product, tx: Transaction) -> Product:
    quantity = tx.quantity_of(product.id)
    if quantity == 0:
        return product
    if tx.type is TransactionType.SALE:
        return replace(product, stock=product.stock - quantity, total_sold=product.total_sold + quantity)
    return replace(product, stock=product.stock + quantity, total_sold=max(0, product.total_sold - quantity))


def _apply_to_customer(customer: Customer, tx: Transaction, now: str) -> Customer:
    amount = abs(tx.total)
    on_credit = tx.payment_method is PaymentMethod.CREDIT

    if tx.type is TransactionType.SALE:
        return replace(
            customer,
            total_spend=customer.total_spend + amount,
            total_due=customer.total_due + amount if on_credit else customer.total_due,
            visit_count=customer.visit_count + 1,
            last_visit=now,
        )

    if tx.type is TransactionType.RETURN:
        total_due = customer.total_due
        if on_credit:
            total_due = customer.total_due - amount
            if total_due < 0:
                log.warning(
                    "Return '%s' exceeds the due of customer '%s' by %s; due floored at zero",
                    tx.id,
                    customer.id,
                    -total_due,
                )
                total_due = Decimal("0")
        return replace(customer, total_spend=customer.total_spend - amount, total_due=total_due)

    return replace(customer, total_due=customer.total_due - amount, last_visit=now)


def apply_transaction(state: AppState, tx: Transaction, *, now: Optional[datetime] = None) -> AppState:
    """Derive the aggregate that results from recording ``tx``.

    The entry is prepended to the ledger (newest first). Sales and returns
    adjust stock and sold counts of the referenced products; payments leave
    the catalog alone. When ``tx.customer_id`` resolves, that customer's
    spend, due and visit fields follow the transaction. The input aggregate
    is not modified.

    Args:
        state (AppState): Aggregate before the transaction.
        tx (Transaction): Fully formed ledger entry. It is trusted as-is.
        now (datetime | None): Visit timestamp, defaulting to the current UTC
            time.

    Returns:
        AppState: The derived aggregate, still carrying ``state.etag``.
    """
    visit = _resolve_timestamp(now).isoformat()

    products = state.products
    if tx.type is not TransactionType.PAYMENT:
        products = tuple(_apply_to_product(product, tx) for product in state.products)

    customers = state.customers
    if state.find_customer(tx.customer_id) is not None:
        customers = tuple(
            _apply_to_customer(customer, tx, visit) if customer.id == tx.customer_id else customer
            for customer in state.customers
        )

    return replace(
        state,
        transactions=(tx,) + state.transactions,
        products=products,
        customers=customers,
    )


def process_transaction(context: RuntimeContext, tx: Transaction) -> AppState:
    """Record ``tx`` in the ledger and persist the resulting aggregate.

    Args:
        context (RuntimeContext): Runtime context with the store and session.
        tx (Transaction): Ledger entry built by a workflow.

    Returns:
        AppState: The persisted aggregate.

    Raises:
        LedgerConflictError: If the stored aggregate kept changing between
            load and save.
    """
    state = update_state(
        context,
        lambda current: apply_transaction(current, tx),
        action=f"record {tx.type.value} '{tx.id}'",
    )
    log.info(
        "Recorded %s transaction '%s' (total=%s, customer=%s, method=%s)",
        tx.type.value.upper(),
        tx.id,
        tx.total,
        tx.customer_id or "walk-in",
        tx.payment_method.value if tx.payment_method else "-",
    )
    return state


# ---------------------------------------------------------------------------
# Catalog operations
# ---------------------------------------------------------------------------


def validate_product(product: Product) -> None:
    """Check the fields every stored product must carry.

    Raises:
        BusinessRuleViolation: If a required text field is blank.
        ValueError: If a price or the stock level is negative.
    """
    for label, value in (("name", product.name), ("barcode", product.barcode), ("category", product.category)):
        if not value.strip():
            log.warning("Product '%s' rejected: missing %s", product.id, label)
            raise BusinessRuleViolation(f"Product {label} is required")
    require_nonnegative_money(product.buy_price)
    require_nonnegative_money(product.sell_price)
    if product.stock < 0:
        log.error("Stock validation failed: %s", product.stock)
        raise ValueError("Stock must be zero or positive")


def add_product(context: RuntimeContext, product: Product) -> Tuple[Product, ...]:
    """Add ``product`` to the catalog and return the updated catalog.

    A blank id or barcode is generated. ``total_sold`` always starts at zero.

    Raises:
        BusinessRuleViolation: If validation fails or the id already exists.
    """
    candidate = replace(
        product,
        id=product.id or generate_id("P"),
        barcode=product.barcode.strip() or generate_barcode(),
        total_sold=0,
    )
    validate_product(candidate)

    def transform(state: AppState) -> AppState:
        if state.find_product(candidate.id) is not None:
            log.warning("Product id '%s' already exists", candidate.id)
            raise BusinessRuleViolation(f"Product id already exists: {candidate.id}")
        return replace(state, products=state.products + (candidate,))

    state = update_state(context, transform, action=f"add product '{candidate.id}'")
    log.info("Added product '%s' (%s, stock=%s)", candidate.id, candidate.name, candidate.stock)
    return state.products


def update_product(context: RuntimeContext, product: Product) -> Tuple[Product, ...]:
    """Replace the stored product sharing ``product.id``.

    Raises:
        MissingReferenceError: If no product has that id.
        BusinessRuleViolation: If validation fails.
    """
    validate_product(product)

    def transform(state: AppState) -> AppState:
        get_product(state, product.id)
        return replace(
            state,
            products=tuple(product if existing.id == product.id else existing for existing in state.products),
        )

    state = update_state(context, transform, action=f"update product '{product.id}'")
    log.info("Updated product '%s'", product.id)
    return state.products


def delete_product(context: RuntimeContext, product_id: str) -> Tuple[Product, ...]:
    """Remove a product. Historical transactions keep their own copies."""

    def transform(state: AppState) -> AppState:
        get_product(state, product_id)
        return replace(state, products=tuple(p for p in state.products if p.id != product_id))

    state = update_state(context, transform, action=f"delete product '{product_id}'")
    log.info("Deleted product '%s'", product_id)
    return state.products


def add_category(context: RuntimeContext, name: str) -> Tuple[str, ...]:
    """Add a category label; duplicates (ignoring case) are a no-op.

    Returns:
        tuple[str, ...]: Categories sorted alphabetically.

    Raises:
        BusinessRuleViolation: If ``name`` is blank.
    """
    label = name.strip()
    if not label:
        log.warning("Rejected blank category name")
        raise BusinessRuleViolation("Category name is required")

    existing = context.store.load(context.session).categories
    if any(category.lower() == label.lower() for category in existing):
        log.debug("Category '%s' already present", label)
        return existing

    def transform(state: AppState) -> AppState:
        if any(category.lower() == label.lower() for category in state.categories):
            return state
        return replace(state, categories=tuple(sorted(state.categories + (label,))))

    state = update_state(context, transform, action=f"add category '{label}'")
    log.info("Added category '%s'", label)
    return state.categories


def delete_category(context: RuntimeContext, name: str) -> Tuple[str, ...]:
    """Remove a category label. Products keep the label they carry."""

    state = update_state(
        context,
        lambda current: replace(current, categories=tuple(c for c in current.categories if c != name)),
        action=f"delete category '{name}'",
    )
    log.info("Deleted category '%s'", name)
    return state.categories


def update_store_profile(context: RuntimeContext, profile: StoreProfile) -> StoreProfile:
    state = update_state(context, lambda current: replace(current, profile=profile), action="update store profile")
    log.info("Updated store profile for '%s'", profile.store_name)
    return state.profile


def search_products(
    products: Tuple[Product, ...],
    query: str = "",
    *,
    category: Optional[str] = None,
    sort_by: str = "name-asc",
) -> List[Product]:
    """Filter and order products for catalog listings.

    Args:
        products (tuple[Product, ...]): Catalog to search.
        query (str): Case-insensitive substring matched against name and
            barcode.
        category (str | None): Exact category label to keep, or ``None``.
        sort_by (str): ``name-asc``, ``price-asc``, ``price-desc`` (by buy
            price) or ``stock-asc``.

    Returns:
        list[Product]: Matching products in the requested order.

    Raises:
        ValueError: If ``sort_by`` is not supported.
    """
    needle = query.strip().lower()
    matches = [
        product
        for product in products
        if (not needle or needle in product.name.lower() or needle in product.barcode.lower())
        and (category is None or product.category == category)
    ]

    if sort_by == "name-asc":
        matches.sort(key=lambda p: p.name.lower())
    elif sort_by == "price-asc":
        matches.sort(key=lambda p: p.buy_price)
    elif sort_by == "price-desc":
        matches.sort(key=lambda p: p.buy_price, reverse=True)
    elif sort_by == "stock-asc":
        matches.sort(key=lambda p: p.stock)
    else:
        raise ValueError(f"Unsupported sort order: {sort_by}")
    return matches


def inventory_stats(products: Tuple[Product, ...]) -> InventoryStats:
    """Summarise the catalog: stock value at buy price and stock alerts."""

    return InventoryStats(
        product_count=len(products),
        inventory_value=sum((p.buy_price * p.stock for p in products), Decimal("0")),
        low_stock=sum(1 for p in products if 0 < p.stock < LOW_STOCK_THRESHOLD),
        out_of_stock=sum(1 for p in products if p.stock == 0),
    )
