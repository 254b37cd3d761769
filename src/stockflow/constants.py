"""Enumerations and fixed tables shared across StockFlow modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), document generators, and the CLI rely on a single source
of truth for critical identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional


# Central schema version expected by all layers when validating config files.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Storage keys; kept compatible with documents written by earlier releases.
STORAGE_KEY_PREFIX = "stockflow_data_v10"
GUEST_STORAGE_KEY = f"{STORAGE_KEY_PREFIX}_guest"
USERS_KEY = "stockflow_users_db"
SESSION_KEY = "stockflow_active_session"
OUTBOX_KEY = "stockflow_outbox"

# Remote document store layout.
STORES_COLLECTION = "stores"
ADMIN_USERS_COLLECTION = "admin_users"
ADMIN_USERS_DOCUMENT = "main"

LOW_STOCK_THRESHOLD = 5
PAYMENT_TOLERANCE = Decimal("0.01")
WALK_IN_CUSTOMER = "Walk-in"


class TransactionType(str, Enum):
    """Enumerate the canonical transaction types recorded in the ledger."""

    SALE = "sale"
    RETURN = "return"
    PAYMENT = "payment"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms."""

    CASH = "Cash"
    CREDIT = "Credit"
    ONLINE = "Online"


class DiscountMode(str, Enum):
    """Which side of a line discount the user edited last."""

    PERCENT = "percent"
    AMOUNT = "amount"


class ReportPeriod(str, Enum):
    """Date windows offered by the transaction report."""

    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_7_DAYS = "7days"
    LAST_15_DAYS = "15days"
    LAST_30_DAYS = "30days"
    LAST_6_MONTHS = "6months"
    LAST_YEAR = "1year"
    CUSTOM = "custom"
    ALL = "all"


class TaxOption(NamedTuple):
    """A named tax rate as printed on invoices."""

    label: str
    rate: Decimal


# GST and IGST share rates on purpose: the label decides how the invoice
# presents the tax (CGST+SGST versus integrated), not the computed amount.
TAX_OPTIONS: tuple[TaxOption, ...] = (
    TaxOption("None", Decimal("0")),
    TaxOption("Exempted", Decimal("0")),
    TaxOption("GST@0%", Decimal("0")),
    TaxOption("IGST@0%", Decimal("0")),
    TaxOption("GST@0.25%", Decimal("0.25")),
    TaxOption("IGST@0.25%", Decimal("0.25")),
    TaxOption("GST@3%", Decimal("3")),
    TaxOption("IGST@3%", Decimal("3")),
    TaxOption("GST@5%", Decimal("5")),
    TaxOption("IGST@5%", Decimal("5")),
    TaxOption("GST@12%", Decimal("12")),
    TaxOption("IGST@12%", Decimal("12")),
    TaxOption("GST@18%", Decimal("18")),
    TaxOption("IGST@18%", Decimal("18")),
    TaxOption("GST@28%", Decimal("28")),
    TaxOption("IGST@28%", Decimal("28")),
)


def find_tax_option(label: Optional[str]) -> TaxOption:
    """Return the tax option registered under ``label``.

    Unknown or missing labels resolve to the first entry (``None`` at 0%),
    matching how the register falls back when a stored default disappears.
    """

    for option in TAX_OPTIONS:
        if option.label == label:
            return option
    return TAX_OPTIONS[0]


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "STORAGE_KEY_PREFIX",
    "GUEST_STORAGE_KEY",
    "USERS_KEY",
    "SESSION_KEY",
    "OUTBOX_KEY",
    "STORES_COLLECTION",
    "ADMIN_USERS_COLLECTION",
    "ADMIN_USERS_DOCUMENT",
    "LOW_STOCK_THRESHOLD",
    "PAYMENT_TOLERANCE",
    "WALK_IN_CUSTOMER",
    "TransactionType",
    "PaymentMethod",
    "DiscountMode",
    "ReportPeriod",
    "TaxOption",
    "TAX_OPTIONS",
    "find_tax_option",
]
