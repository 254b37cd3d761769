"""Customer accounts and credit.

Payments against outstanding dues go through the ledger engine like any other
transaction. Statements are derived by replaying a customer's ledger entries;
the running balance is never stored.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from . import log
from .constants import PAYMENT_TOLERANCE, PaymentMethod, TransactionType
from .core_logic import (
    BusinessRuleViolation,
    DuplicateCustomerError,
    PaymentExceedsDueError,
    RuntimeContext,
    _resolve_timestamp,
    apply_transaction,
    generate_id,
    get_customer,
    update_state,
)
from .models import ZERO, AppState, Customer, Transaction, parse_timestamp
from .sales import phone_digits


INACTIVE_AFTER = timedelta(days=30)
HIGH_VALUE_MIN_CUSTOMERS = 3

SORT_KEYS = ("spend", "due", "lastVisit")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def record_payment(
    context: RuntimeContext,
    customer_id: str,
    amount: Decimal,
    method: PaymentMethod = PaymentMethod.CASH,
    note: Optional[str] = None,
    *,
    when: Optional[datetime] = None,
) -> Transaction:
    """Record a payment towards a customer's outstanding due.

    Args:
        context (RuntimeContext): Runtime context with the store and session.
        customer_id (str): Customer paying.
        amount (Decimal): Amount received. Must be positive and no larger than
            the current due (plus a one-paisa tolerance).
        method (PaymentMethod): ``Cash`` or ``Online``.
        note (str | None): Free text stored on the entry.
        when (datetime | None): Timestamp for the entry.

    Returns:
        Transaction: The recorded payment entry.

    Raises:
        BusinessRuleViolation: If ``amount`` is not positive or ``method`` is
            ``Credit``.
        PaymentExceedsDueError: If ``amount`` exceeds the outstanding due.
        MissingReferenceError: If ``customer_id`` is unknown.
    """

    if amount <= 0:
        log.warning("Rejected payment of %s for '%s': not positive", amount, customer_id)
        raise BusinessRuleViolation("Please enter a valid amount.")
    if method is PaymentMethod.CREDIT:
        log.warning("Rejected payment for '%s' made on credit", customer_id)
        raise BusinessRuleViolation("A payment cannot be made on credit")

    timestamp = _resolve_timestamp(when)
    tx_id = generate_id("T", when=timestamp)
    recorded: List[Transaction] = []

    def transform(state: AppState) -> AppState:
        # Re-checked on every attempt; a competing payment may have landed.
        customer = get_customer(state, customer_id)
        _require_within_due(customer, amount)
        tx = Transaction(
            id=tx_id,
            items=(),
            total=amount,
            type=TransactionType.PAYMENT,
            date=timestamp.isoformat(),
            customer_id=customer.id,
            customer_name=customer.name,
            payment_method=method,
            notes=note or None,
        )
        recorded[:] = [tx]
        return apply_transaction(state, tx)

    update_state(context, transform, action=f"record payment '{tx_id}'")
    tx = recorded[0]
    log.info("Recorded PAYMENT transaction '%s' (total=%s, customer=%s)", tx.id, amount, customer_id)
    return tx


def _require_within_due(customer: Customer, amount: Decimal) -> None:
    if amount > customer.total_due + PAYMENT_TOLERANCE:
        log.warning("Rejected payment of %s for '%s': due is %s", amount, customer.id, customer.total_due)
        raise PaymentExceedsDueError(
            f"Cannot pay more than outstanding due (Max: ₹{customer.total_due:.2f})"
        )


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatementLine:
    date: str
    description: str
    debit: Decimal
    credit: Decimal
    balance: Decimal
    transaction_id: Optional[str] = None

    @property
    def marker(self) -> str:
        """``Dr`` while the customer owes money, ``Cr`` when in credit."""

        return "Dr" if self.balance >= 0 else "Cr"


@dataclass(frozen=True)
class Statement:
    customer: Customer
    lines: Tuple[StatementLine, ...]
    period_start: Optional[str]
    period_end: Optional[str]
    total_sales: Decimal
    total_receipts: Decimal
    closing_balance: Decimal

    @property
    def final_due(self) -> Decimal:
        return abs(self.closing_balance)


def customer_history(transactions: Iterable[Transaction], customer_id: str) -> List[Transaction]:
    """Return a customer's ledger entries, oldest first."""

    history = [tx for tx in transactions if tx.customer_id == customer_id]
    history.sort(key=lambda tx: parse_timestamp(tx.date))
    return history


def _describe(tx: Transaction) -> str:
    label = {
        TransactionType.SALE: "Invoice",
        TransactionType.RETURN: "Return",
        TransactionType.PAYMENT: "Payment",
    }[tx.type]
    return f"{label} #{tx.id[-6:]}"


def build_statement(state: AppState, customer_id: str) -> Statement:
    """Replay a customer's history into a running-balance statement.

    Every sale is a debit. Payments and returns are credits, and a sale paid
    in cash or online credits itself straight away, so only credit sales
    leave a balance behind until a payment settles them. The first line is a
    zero opening balance.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """

    customer = get_customer(state, customer_id)
    history = customer_history(state.transactions, customer_id)

    period_start = history[0].date if history else None
    period_end = history[-1].date if history else None

    lines: List[StatementLine] = [
        StatementLine(date=period_start or "", description="Opening Balance", debit=ZERO, credit=ZERO, balance=ZERO)
    ]
    balance = ZERO
    total_sales = ZERO
    total_receipts = ZERO
    for tx in history:
        amount = abs(tx.total)
        debit = amount if tx.type is TransactionType.SALE else ZERO
        credit = amount if tx.type is not TransactionType.SALE else ZERO
        if tx.type is TransactionType.SALE and tx.payment_method is not PaymentMethod.CREDIT:
            credit += amount
        if tx.type is TransactionType.SALE:
            total_sales += debit
        elif tx.type is TransactionType.PAYMENT:
            total_receipts += amount
        balance += debit - credit
        lines.append(
            StatementLine(
                date=tx.date,
                description=_describe(tx),
                debit=debit,
                credit=credit,
                balance=balance,
                transaction_id=tx.id,
            )
        )

    log.debug("Built statement for '%s' with %d entries", customer_id, len(history))
    return Statement(
        customer=customer,
        lines=tuple(lines),
        period_start=period_start,
        period_end=period_end,
        total_sales=total_sales,
        total_receipts=total_receipts,
        closing_balance=balance,
    )


# ---------------------------------------------------------------------------
# Customer directory
# ---------------------------------------------------------------------------


def add_customer(context: RuntimeContext, name: str, phone: str, *, when: Optional[datetime] = None) -> Customer:
    """Register a customer with zero spend and zero due.

    Raises:
        BusinessRuleViolation: If name or phone is blank.
        DuplicateCustomerError: If another customer has the same phone digits.
    """

    name = name.strip()
    phone = phone.strip()
    if not name or not phone:
        log.warning("Rejected customer: name and phone required")
        raise BusinessRuleViolation("Name and phone number are required.")

    timestamp = _resolve_timestamp(when)
    customer = Customer(
        id=generate_id("C", when=timestamp),
        name=name,
        phone=phone,
        last_visit=timestamp.isoformat(),
    )
    digits = phone_digits(phone)

    def transform(state: AppState) -> AppState:
        if any(phone_digits(existing.phone) == digits for existing in state.customers):
            log.warning("Rejected customer '%s': phone %s already registered", name, phone)
            raise DuplicateCustomerError(f'Customer with phone "{phone}" already exists.')
        return replace(state, customers=state.customers + (customer,))

    update_state(context, transform, action=f"add customer '{customer.id}'")
    log.info("Added customer '%s' (%s)", customer.id, customer.name)
    return customer


def delete_customer(context: RuntimeContext, customer_id: str, *, confirm_name: str) -> Tuple[Customer, ...]:
    """Delete a customer once the caller has retyped the customer's name.

    Ledger entries keep their denormalized customer name.

    Raises:
        BusinessRuleViolation: If ``confirm_name`` does not match.
        MissingReferenceError: If ``customer_id`` is unknown.
    """

    def transform(state: AppState) -> AppState:
        customer = get_customer(state, customer_id)
        if confirm_name.strip() != customer.name:
            log.warning("Delete of customer '%s' not confirmed", customer_id)
            raise BusinessRuleViolation("Type the customer's name to confirm deletion")
        return replace(state, customers=tuple(c for c in state.customers if c.id != customer_id))

    state = update_state(context, transform, action=f"delete customer '{customer_id}'")
    log.info("Deleted customer '%s'", customer_id)
    return state.customers


@dataclass(frozen=True)
class CustomerListing:
    customers: Tuple[Customer, ...]
    total_dues: Decimal

    @property
    def count(self) -> int:
        return len(self.customers)


def find_customers(
    customers: Iterable[Customer],
    query: str = "",
    *,
    has_due: bool = False,
    sort_by: str = "spend",
    descending: bool = True,
) -> CustomerListing:
    """Search, filter and sort the customer directory.

    Args:
        customers (Iterable[Customer]): Directory to search.
        query (str): Case-insensitive substring of the name, or a substring
            of the phone as typed.
        has_due (bool): Keep only customers with a positive due.
        sort_by (str): ``spend``, ``due`` or ``lastVisit``.
        descending (bool): Largest or most recent first.

    Returns:
        CustomerListing: Matching customers and the sum of their dues.

    Raises:
        ValueError: If ``sort_by`` is not supported.
    """

    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {sort_by}")

    needle = query.strip().lower()
    matches = [
        c
        for c in customers
        if (not needle or needle in c.name.lower() or needle in c.phone)
        and (not has_due or c.total_due > 0)
    ]

    if sort_by == "spend":
        matches.sort(key=lambda c: c.total_spend, reverse=descending)
    elif sort_by == "due":
        matches.sort(key=lambda c: c.total_due, reverse=descending)
    else:
        matches.sort(key=lambda c: parse_timestamp(c.last_visit), reverse=descending)

    return CustomerListing(
        customers=tuple(matches),
        total_dues=sum((c.total_due for c in matches), ZERO),
    )


def high_value_threshold(customers: Iterable[Customer]) -> Decimal | float:
    """Spend needed to rank in the top decile.

    Returns ``math.inf`` when there are fewer than three customers.
    """

    spends = sorted((c.total_spend for c in customers), reverse=True)
    if len(spends) < HIGH_VALUE_MIN_CUSTOMERS:
        return math.inf
    return spends[max(0, math.floor(len(spends) * 0.1))]


def is_high_value(customer: Customer, threshold: Decimal | float) -> bool:
    return customer.total_spend > 0 and customer.total_spend >= threshold


def is_inactive(customer: Customer, *, now: Optional[datetime] = None) -> bool:
    """Whether the customer has not visited in the last thirty days."""

    return _resolve_timestamp(now) - parse_timestamp(customer.last_visit) > INACTIVE_AFTER
