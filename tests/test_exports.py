"""Tests for the spreadsheet export."""

from __future__ import annotations

from decimal import Decimal

import openpyxl

from stockflow import exports
from stockflow.constants import PaymentMethod, TransactionType
from stockflow.models import AppState, CartItem, Transaction


def test_build_workbook_has_one_sheet_per_collection(product_factory, customer_factory):
    """Headers are bold and each record becomes one row."""

    state = AppState(products=(product_factory(), product_factory(id="p2")), customers=(customer_factory(),))
    workbook = exports.build_workbook(state)

    assert workbook.sheetnames == ["Products", "Customers", "Transactions"]
    products = workbook["Products"]
    assert [cell.value for cell in products[1]] == exports.SHEET_COLUMNS["Products"]
    assert products["A1"].font.bold
    assert products.max_row == 3
    assert workbook["Transactions"].max_row == 1


def test_transaction_row_flattens_items(product_factory):
    """Items are summarised and walk-in customers named."""

    tx = Transaction(
        id="T1",
        items=(CartItem(product_factory(), 2), CartItem(product_factory(id="p2", name="Gadget"), 1)),
        total=Decimal("300"),
        type=TransactionType.SALE,
        date="2024-06-01T10:00:00+00:00",
        payment_method=PaymentMethod.CASH,
    )
    row = exports.transaction_row(tx)

    assert row[2] == "sale"
    assert row[4] == "Walk-in"
    assert row[5] == "Cash"
    assert row[6] == "Widget x2; Gadget x1"
    assert len(row) == len(exports.SHEET_COLUMNS["Transactions"])


def test_export_workbook_writes_file(tmp_path, product_factory):
    """The file is created, including missing parent directories."""

    destination = tmp_path / "out" / "books.xlsx"
    written = exports.export_workbook(AppState(products=(product_factory(),)), destination)

    assert written == destination.resolve()
    loaded = openpyxl.load_workbook(written)
    assert loaded["Products"]["C2"].value == "Widget"
    assert loaded["Products"]["G2"].value == 100
