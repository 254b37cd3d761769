"""Domain entities for StockFlow.

Every entity is an immutable dataclass. Workflows never mutate an entity in
place; they derive a replacement with :func:`dataclasses.replace` and build a
new :class:`AppState` around it, which is then persisted wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Optional, Tuple

from .constants import PaymentMethod, TransactionType


ZERO = Decimal("0")


@dataclass(frozen=True)
class Product:
    """Catalog entry. ``category`` is a free-text label, not a reference."""

    id: str
    barcode: str
    name: str
    description: str
    category: str
    buy_price: Decimal
    sell_price: Decimal
    stock: int
    total_sold: int = 0
    image: str = ""
    hsn: Optional[str] = None


@dataclass(frozen=True)
class CartItem:
    """A frozen product snapshot attached to a cart line or ledger entry."""

    product: Product
    quantity: int
    discount_percent: Decimal = ZERO
    discount_amount: Decimal = ZERO

    @property
    def product_id(self) -> str:
        return self.product.id

    @property
    def unit_price(self) -> Decimal:
        return self.product.sell_price

    @property
    def gross(self) -> Decimal:
        return self.product.sell_price * self.quantity

    @property
    def net(self) -> Decimal:
        return self.gross - self.discount_amount

    @property
    def margin(self) -> Decimal:
        """Profit of the line before discounts: ``(sell - buy) * qty``."""

        return (self.product.sell_price - self.product.buy_price) * self.quantity


@dataclass(frozen=True)
class Customer:
    id: str
    name: str
    phone: str
    total_spend: Decimal = ZERO
    total_due: Decimal = ZERO
    last_visit: str = ""
    visit_count: int = 0


@dataclass(frozen=True)
class Transaction:
    """Append-only ledger entry. ``total`` is negative for returns."""

    id: str
    items: Tuple[CartItem, ...]
    total: Decimal
    type: TransactionType
    date: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    subtotal: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_label: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None

    def quantity_of(self, product_id: str) -> int:
        """Return how many units of ``product_id`` this entry carries."""

        return sum(item.quantity for item in self.items if item.product_id == product_id)


@dataclass(frozen=True)
class StoreProfile:
    """Singleton business identity used on invoices and statements."""

    store_name: str = "StockFlow Demo"
    owner_name: str = "Admin"
    gstin: str = ""
    email: str = "admin@stockflow.app"
    phone: str = ""
    address_line1: str = "123 Business St"
    address_line2: str = "City Center"
    state: str = "Gujarat"
    bank_name: Optional[str] = None
    bank_account: Optional[str] = None
    bank_ifsc: Optional[str] = None
    bank_holder: Optional[str] = None
    default_tax_rate: Decimal = ZERO
    default_tax_label: str = "None"
    signature_image: Optional[str] = None


@dataclass(frozen=True)
class AppState:
    """The aggregate root persisted as a single document.

    ``etag`` identifies the stored bytes this aggregate was loaded from and is
    never serialized; the gateway uses it for compare-and-swap writes.
    """

    products: Tuple[Product, ...] = ()
    transactions: Tuple[Transaction, ...] = ()
    categories: Tuple[str, ...] = ()
    customers: Tuple[Customer, ...] = ()
    profile: StoreProfile = field(default_factory=StoreProfile)
    etag: Optional[str] = field(default=None, compare=False, repr=False)

    def find_product(self, product_id: str) -> Optional[Product]:
        for product in self.products:
            if product.id == product_id:
                return product
        return None

    def find_customer(self, customer_id: Optional[str]) -> Optional[Customer]:
        if not customer_id:
            return None
        for customer in self.customers:
            if customer.id == customer_id:
                return customer
        return None


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO timestamp as an aware datetime.

    Naive values are taken as UTC. Unreadable values map to the earliest
    representable instant so they sort first.
    """

    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
