"""Sales and returns register.

A :class:`Cart` collects lines in either sale or return mode and guards every
quantity increase against stock (sales) or units sold (returns). Checkout
turns the cart into a ledger entry and hands it to
:func:`~stockflow.core_logic.process_transaction`.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from . import log
from .constants import DiscountMode, PaymentMethod, TaxOption, TransactionType, find_tax_option
from .core_logic import (
    BusinessRuleViolation,
    DuplicateCustomerError,
    MissingReferenceError,
    ReturnLimitExceeded,
    RuntimeContext,
    StockLimitExceeded,
    _resolve_timestamp,
    generate_id,
    get_customer,
    process_transaction,
    require_positive_quantity,
    update_state,
)
from .models import ZERO, AppState, CartItem, Customer, Product, Transaction


PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


def phone_digits(phone: str) -> str:
    return _NON_DIGITS.sub("", phone)


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    discount: Decimal
    taxable: Decimal
    tax: Decimal
    total: Decimal
    tax_option: TaxOption


class Cart:
    """In-memory cart for a single checkout.

    Args:
        mode (TransactionType): ``SALE`` or ``RETURN``.
    """

    def __init__(self, mode: TransactionType = TransactionType.SALE):
        if mode is TransactionType.PAYMENT:
            raise ValueError("A cart can only hold a sale or a return")
        self.mode = mode
        self._lines: Dict[str, CartItem] = {}
        self._discount_modes: Dict[str, DiscountMode] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def __bool__(self) -> bool:
        return bool(self._lines)

    @property
    def items(self) -> Tuple[CartItem, ...]:
        return tuple(self._lines.values())

    def quantity_of(self, product_id: str) -> int:
        line = self._lines.get(product_id)
        return line.quantity if line else 0

    def _check_limit(self, product: Product, quantity: int) -> None:
        if self.mode is TransactionType.SALE:
            if product.stock <= 0:
                log.warning("Rejected '%s': out of stock", product.id)
                raise StockLimitExceeded("Out of Stock!")
            if quantity > product.stock:
                log.warning("Rejected '%s': %d requested, %d in stock", product.id, quantity, product.stock)
                raise StockLimitExceeded(f"Only {product.stock} in stock.")
        else:
            if product.total_sold <= 0:
                log.warning("Rejected return of '%s': never sold", product.id)
                raise ReturnLimitExceeded("Item hasn't been sold yet.")
            if quantity > product.total_sold:
                log.warning("Rejected return of '%s': %d requested, %d sold", product.id, quantity, product.total_sold)
                raise ReturnLimitExceeded(f"Return Limit ({product.total_sold}) Exceeded!")

    def _line(self, product_id: str) -> CartItem:
        try:
            return self._lines[product_id]
        except KeyError as exc:
            raise MissingReferenceError(f"Product not in cart: {product_id}") from exc

    def _requantify(self, line: CartItem, quantity: int) -> CartItem:
        """Change a line's quantity and re-derive its discount."""

        resized = replace(line, quantity=quantity)
        if self._discount_modes.get(line.product_id) is DiscountMode.AMOUNT:
            return _discount_from_amount(resized, line.discount_amount)
        return _discount_from_percent(resized, line.discount_percent)

    def add(self, product: Product, quantity: int = 1) -> CartItem:
        """Add ``quantity`` units of ``product``, merging with an existing line.

        Raises:
            StockLimitExceeded: In sale mode, if the cart would hold more units
                than are in stock.
            ReturnLimitExceeded: In return mode, if the cart would hold more
                units than were ever sold.
            ValueError: If ``quantity`` is not positive.
        """

        require_positive_quantity(quantity)
        existing = self._lines.get(product.id)
        target = (existing.quantity if existing else 0) + quantity
        self._check_limit(product, target)
        if existing is None:
            line = CartItem(product=product, quantity=target)
        else:
            line = self._requantify(replace(existing, product=product), target)
        self._lines[product.id] = line
        log.debug("Cart %s: %s x%d", self.mode.value, product.id, target)
        return line

    def set_quantity(self, product_id: str, quantity: int) -> Optional[CartItem]:
        """Set a line's quantity; zero removes the line."""

        if quantity < 0:
            raise ValueError("Quantity must be zero or positive")
        line = self._line(product_id)
        if quantity == 0:
            self.remove(product_id)
            return None
        self._check_limit(line.product, quantity)
        self._lines[product_id] = self._requantify(line, quantity)
        return self._lines[product_id]

    def change_quantity(self, product_id: str, delta: int) -> Optional[CartItem]:
        """Adjust a line by ``delta``; dropping to zero or below removes it.

        Limits are only checked when the quantity grows.
        """

        line = self._line(product_id)
        target = line.quantity + delta
        if target <= 0:
            self.remove(product_id)
            return None
        if delta > 0:
            self._check_limit(line.product, target)
        self._lines[product_id] = self._requantify(line, target)
        return self._lines[product_id]

    def remove(self, product_id: str) -> None:
        self._lines.pop(product_id, None)
        self._discount_modes.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()
        self._discount_modes.clear()

    def update_discount(self, product_id: str, value: Decimal, mode: DiscountMode) -> CartItem:
        """Set a line discount as a percent or an absolute amount.

        The edited side is clamped (``[0, 100]`` percent, ``[0, gross]``
        amount) and becomes authoritative; the other side is derived from it.
        """

        line = self._line(product_id)
        if mode is DiscountMode.PERCENT:
            updated = _discount_from_percent(line, Decimal(value))
        else:
            updated = _discount_from_amount(line, Decimal(value))
        self._lines[product_id] = updated
        self._discount_modes[product_id] = mode
        return updated

    def totals(self, tax_option: Optional[TaxOption] = None) -> CartTotals:
        """Compute checkout totals; the total is negative in return mode."""

        option = tax_option or find_tax_option(None)
        subtotal = sum((line.gross for line in self._lines.values()), ZERO)
        discount = sum((line.discount_amount for line in self._lines.values()), ZERO)
        taxable = subtotal - discount
        tax = taxable * option.rate / Decimal("100")
        total = taxable + tax
        if self.mode is TransactionType.RETURN:
            total = -total
        return CartTotals(
            subtotal=subtotal,
            discount=discount,
            taxable=taxable,
            tax=tax,
            total=total,
            tax_option=option,
        )


def _discount_from_percent(line: CartItem, percent: Decimal) -> CartItem:
    percent = min(Decimal("100"), max(ZERO, percent))
    return replace(line, discount_percent=percent, discount_amount=line.gross * percent / Decimal("100"))


def _discount_from_amount(line: CartItem, amount: Decimal) -> CartItem:
    gross = line.gross
    amount = min(gross, max(ZERO, amount))
    percent = amount / gross * Decimal("100") if gross > 0 else ZERO
    return replace(line, discount_percent=percent, discount_amount=amount)


def lookup_product(products: Iterable[Product], scan_value: str) -> Optional[Product]:
    """Resolve a scanned or typed code to a product.

    ``scan_value`` may be a raw code or a JSON object carrying ``sku`` or
    ``barcode`` (``barcode`` wins). Barcodes match case-insensitively; ids
    match exactly.
    """

    target = scan_value.strip()
    try:
        payload = json.loads(target)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        if payload.get("sku"):
            target = str(payload["sku"])
        if payload.get("barcode"):
            target = str(payload["barcode"])

    lowered = target.lower()
    for product in products:
        if product.barcode.lower() == lowered or product.id == target:
            return product
    log.debug("No product matches scan value '%s'", scan_value)
    return None


@dataclass(frozen=True)
class NewCustomer:
    name: str
    phone: str


@dataclass(frozen=True)
class CheckoutResult:
    transaction: Transaction
    state: AppState
    customer: Optional[Customer] = None


def validate_new_customer(customers: Iterable[Customer], candidate: NewCustomer) -> NewCustomer:
    """Validate a customer entered at the register.

    Returns:
        NewCustomer: ``candidate`` with name and phone trimmed.

    Raises:
        BusinessRuleViolation: If name or phone is blank, or the phone does not
            hold exactly ten digits.
        DuplicateCustomerError: If a customer with the same name (ignoring
            case) and the same phone digits exists.
    """

    name = candidate.name.strip()
    phone = candidate.phone.strip()
    if not name or not phone:
        log.warning("Rejected new customer: name and phone required")
        raise BusinessRuleViolation("Customer name and phone required.")
    digits = phone_digits(phone)
    if len(digits) != PHONE_DIGITS:
        log.warning("Rejected new customer '%s': phone has %d digits", name, len(digits))
        raise BusinessRuleViolation("Invalid number: Exactly 10 digits required.")
    for existing in customers:
        if existing.name.strip().lower() == name.lower() and phone_digits(existing.phone) == digits:
            log.warning("Rejected new customer '%s': duplicate of '%s'", name, existing.id)
            raise DuplicateCustomerError("Customer with this name and number already exists.")
    return NewCustomer(name=name, phone=phone)


def units_returnable(transactions: Iterable[Transaction], customer_id: str, product_id: str) -> int:
    """Units of ``product_id`` sold to a customer minus those already returned."""

    bought = returned = 0
    for tx in transactions:
        if tx.customer_id != customer_id:
            continue
        if tx.type is TransactionType.SALE:
            bought += tx.quantity_of(product_id)
        elif tx.type is TransactionType.RETURN:
            returned += tx.quantity_of(product_id)
    return bought - returned


def _check_customer_returns(state: AppState, customer: Customer, items: Iterable[CartItem]) -> None:
    for item in items:
        available = units_returnable(state.transactions, customer.id, item.product_id)
        if available < item.quantity:
            log.warning(
                "Rejected return of %d x '%s' for customer '%s': %d returnable",
                item.quantity,
                item.product_id,
                customer.id,
                available,
            )
            raise ReturnLimitExceeded(f"{customer.name} has only bought {available} available to return.")


def _insert_customer(context: RuntimeContext, customer: Customer) -> AppState:
    def transform(state: AppState) -> AppState:
        validate_new_customer(state.customers, NewCustomer(customer.name, customer.phone))
        return replace(state, customers=state.customers + (customer,))

    state = update_state(context, transform, action=f"add customer '{customer.id}'")
    log.info("Added customer '%s' (%s)", customer.id, customer.name)
    return state


def checkout(
    context: RuntimeContext,
    cart: Cart,
    *,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    tax_option: Optional[TaxOption] = None,
    customer_id: Optional[str] = None,
    new_customer: Optional[NewCustomer] = None,
    notes: Optional[str] = None,
    when: Optional[datetime] = None,
) -> CheckoutResult:
    """Turn ``cart`` into a sale or return and record it.

    Every check runs before anything is written: the inline customer is
    validated, a return is limited to what the selected customer actually
    bought and has not yet returned, and a credit checkout needs a customer.
    The inline customer is then stored and the ledger entry recorded. The
    cart is cleared on success.

    Args:
        context (RuntimeContext): Runtime context with the store and session.
        cart (Cart): Lines to check out.
        payment_method (PaymentMethod): How the sale is settled.
        tax_option (TaxOption | None): Tax applied to the taxable amount.
            Defaults to the store profile's default tax label.
        customer_id (str | None): Existing customer to attach.
        new_customer (NewCustomer | None): Customer to create at checkout.
            Mutually exclusive with ``customer_id``.
        notes (str | None): Free text stored on the entry.
        when (datetime | None): Timestamp for the entry.

    Returns:
        CheckoutResult: The recorded transaction and the persisted aggregate.

    Raises:
        BusinessRuleViolation: If the cart is empty, customer details are
            invalid, or credit is requested without a customer.
        ReturnLimitExceeded: If the customer cannot return that many units.
        MissingReferenceError: If ``customer_id`` is unknown.
    """

    if not cart:
        raise BusinessRuleViolation("Cart is empty")
    if customer_id and new_customer:
        raise BusinessRuleViolation("Choose an existing customer or a new one, not both")

    timestamp = _resolve_timestamp(when)
    state = context.store.load(context.session)
    option = tax_option or find_tax_option(state.profile.default_tax_label)

    customer: Optional[Customer] = None
    if new_customer is not None:
        details = validate_new_customer(state.customers, new_customer)
        customer = Customer(
            id=generate_id("C", when=timestamp),
            name=details.name,
            phone=details.phone,
            last_visit=timestamp.isoformat(),
        )
    elif customer_id:
        customer = get_customer(state, customer_id)

    if cart.mode is TransactionType.RETURN and customer is not None:
        _check_customer_returns(state, customer, cart.items)

    if payment_method is PaymentMethod.CREDIT and customer is None:
        log.warning("Rejected credit checkout without a customer")
        raise BusinessRuleViolation("Credit requires a customer.")

    if new_customer is not None:
        _insert_customer(context, customer)

    totals = cart.totals(option)
    tx = Transaction(
        id=generate_id("T", when=timestamp),
        items=cart.items,
        total=totals.total,
        type=cart.mode,
        date=timestamp.isoformat(),
        customer_id=customer.id if customer else None,
        customer_name=customer.name if customer else None,
        subtotal=totals.subtotal,
        discount=totals.discount,
        tax=totals.tax,
        tax_rate=option.rate,
        tax_label=option.label,
        payment_method=payment_method,
        notes=notes,
    )
    state = process_transaction(context, tx)
    cart.clear()
    return CheckoutResult(
        transaction=tx,
        state=state,
        customer=state.find_customer(customer.id) if customer else None,
    )


def cart_from_lines(products: Iterable[Product], lines: List[Tuple[str, int, Decimal]], mode: TransactionType) -> Cart:
    """Build a cart from ``(product code, quantity, discount percent)`` lines."""

    catalog = list(products)
    cart = Cart(mode)
    for code, quantity, percent in lines:
        product = lookup_product(catalog, code)
        if product is None:
            log.warning("Unknown product code '%s'", code)
            raise MissingReferenceError(f"Unknown product: {code}")
        cart.add(product, quantity)
        if percent:
            cart.update_discount(product.id, percent, DiscountMode.PERCENT)
    return cart
