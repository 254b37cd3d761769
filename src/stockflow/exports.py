"""Spreadsheet export of the aggregate for bookkeeping."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import WALK_IN_CUSTOMER
from .models import AppState, Customer, Product, Transaction


SHEET_COLUMNS = {
    "Products": [
        "ProductID",
        "Barcode",
        "Name",
        "Category",
        "HSN",
        "BuyPrice",
        "SellPrice",
        "Stock",
        "TotalSold",
    ],
    "Customers": ["CustomerID", "Name", "Phone", "TotalSpend", "TotalDue", "LastVisit", "VisitCount"],
    "Transactions": [
        "TransactionID",
        "Date",
        "Type",
        "CustomerID",
        "CustomerName",
        "PaymentMethod",
        "Items",
        "Subtotal",
        "Discount",
        "Tax",
        "TaxLabel",
        "Total",
        "Notes",
    ],
}


def product_row(record: Product) -> list[object]:
    return [
        record.id,
        record.barcode,
        record.name,
        record.category,
        record.hsn,
        record.buy_price,
        record.sell_price,
        record.stock,
        record.total_sold,
    ]


def customer_row(record: Customer) -> list[object]:
    return [
        record.id,
        record.name,
        record.phone,
        record.total_spend,
        record.total_due,
        record.last_visit,
        record.visit_count,
    ]


def transaction_row(record: Transaction) -> list[object]:
    """Flatten a ledger entry; items become ``name x qty`` joined by ``; ``."""

    return [
        record.id,
        record.date,
        record.type.value,
        record.customer_id,
        record.customer_name or WALK_IN_CUSTOMER,
        record.payment_method.value if record.payment_method else None,
        "; ".join(f"{item.product.name} x{item.quantity}" for item in record.items),
        record.subtotal,
        record.discount,
        record.tax,
        record.tax_label,
        record.total,
        record.notes,
    ]


def _fill_sheet(workbook: Workbook, title: str, rows: Iterable[Sequence[object]]) -> int:
    sheet = workbook.create_sheet(title=title)
    bold_font = Font(bold=True)
    for col_idx, column_name in enumerate(SHEET_COLUMNS[title], 1):
        cell = sheet.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = bold_font
    count = 0
    for row in rows:
        sheet.append(list(row))
        count += 1
    return count


def build_workbook(state: AppState) -> Workbook:
    """Create a workbook with Products, Customers and Transactions sheets."""

    workbook = openpyxl.Workbook()
    if "Sheet" in workbook.sheetnames:
        del workbook["Sheet"]
    _fill_sheet(workbook, "Products", (product_row(p) for p in state.products))
    _fill_sheet(workbook, "Customers", (customer_row(c) for c in state.customers))
    _fill_sheet(workbook, "Transactions", (transaction_row(t) for t in state.transactions))
    return workbook


def export_workbook(state: AppState, destination: Path) -> Path:
    """Write the aggregate to an ``.xlsx`` file and return its resolved path.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    build_workbook(state).save(dest)
    log.info(
        "Exported %d products, %d customers and %d transactions to '%s'",
        len(state.products),
        len(state.customers),
        len(state.transactions),
        dest,
    )
    return dest
