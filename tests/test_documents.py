"""Tests for the PDF generators and their helpers."""

from __future__ import annotations

import base64
import io
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from PIL import Image

from stockflow import documents, reports
from stockflow.constants import PaymentMethod, TransactionType
from stockflow.credit import build_statement
from stockflow.models import AppState, CartItem, StoreProfile, Transaction


def _png_data_url(color=(200, 30, 30)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 4), color).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture
def sale(product_factory) -> Transaction:
    product = product_factory(image=_png_data_url())
    return Transaction(
        id="T20240601000000abcdef12",
        items=(CartItem(product, 2, Decimal("10"), Decimal("20")),),
        total=Decimal("212.40"),
        type=TransactionType.SALE,
        date=datetime(2024, 6, 1, tzinfo=UTC).isoformat(),
        customer_id="c1",
        customer_name="Asha",
        subtotal=Decimal("200"),
        discount=Decimal("20"),
        tax=Decimal("32.40"),
        tax_rate=Decimal("18"),
        tax_label="GST@18%",
        payment_method=PaymentMethod.CREDIT,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "amount, words",
    [
        (Decimal("0"), "Zero Rupees only"),
        (Decimal("7.99"), "Seven Rupees only"),
        (Decimal("15"), "Fifteen Rupees only"),
        (Decimal("90"), "Ninety Rupees only"),
        (Decimal("118"), "One Hundred and Eighteen Rupees only"),
        (Decimal("1234"), "One Thousand Two Hundred and Thirty Four Rupees only"),
        (Decimal("-250"), "Two Hundred and Fifty Rupees only"),
        (Decimal("2500000"), "2500000 Rupees only"),
    ],
)
def test_amount_in_words(amount, words):
    """Whole rupees are spelled out; paise are dropped."""

    assert documents.amount_in_words(amount) == words


def test_money_formats_with_grouping():
    """Currency strings carry separators and two decimals."""

    assert documents.money(Decimal("1234.5")) == "Rs. 1,234.50"


def test_decode_image_reads_data_urls_and_raw_base64():
    """Both data URLs and bare base64 decode to RGB images."""

    url = _png_data_url()
    picture = documents.decode_image(url)
    assert picture.mode == "RGB"
    assert picture.size == (8, 4)
    assert documents.decode_image(url.split(",", 1)[1]).size == (8, 4)


@pytest.mark.parametrize("value", [None, "", "data:image/png;base64,!!!", base64.b64encode(b"not an image").decode()])
def test_decode_image_skips_unreadable_values(value):
    """Anything that is not an image yields None."""

    assert documents.decode_image(value) is None


def test_label_name_truncates_long_names():
    """Labels keep twenty-two characters and mark the cut."""

    assert documents.label_name("Short") == "Short"
    assert documents.label_name("A" * 30) == "A" * 22 + "..."


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def test_render_invoice_produces_pdf(sale, customer_factory):
    """Invoices render with and without customer details."""

    profile = StoreProfile(signature_image=_png_data_url((0, 0, 0)), bank_name="Bank", bank_account="123")

    assert documents.render_invoice(sale, profile, customer_factory()).startswith(b"%PDF")
    assert documents.render_invoice(sale, StoreProfile()).startswith(b"%PDF")


def test_render_catalog_variants(product_factory):
    """Customer and internal catalogs both render."""

    products = [product_factory(id=str(i), name=f"Item <{i}>", stock=i) for i in range(5)]

    assert documents.render_catalog(products, StoreProfile()).startswith(b"%PDF")
    assert documents.render_catalog(products, StoreProfile(), category="General", internal=True).startswith(b"%PDF")
    assert documents.render_catalog([], StoreProfile()).startswith(b"%PDF")


def test_render_statement_and_dues(sale, customer_factory):
    """Statements and the dues list render from derived data."""

    customer = customer_factory(total_due=Decimal("212.40"))
    statement = build_statement(AppState(customers=(customer,), transactions=(sale,)), "c1")

    assert documents.render_statement(statement, StoreProfile()).startswith(b"%PDF")
    assert documents.render_customer_dues([customer], StoreProfile()).startswith(b"%PDF")


def test_render_transaction_report(sale):
    """The report renders summary boxes and the entry table."""

    summary = reports.summarize_transactions([sale])
    pdf = documents.render_transaction_report(
        [sale],
        summary,
        StoreProfile(),
        filter_label="All time",
        generated_at=datetime(2024, 6, 2, tzinfo=UTC),
    )
    assert pdf.startswith(b"%PDF")


def test_render_barcode_label(product_factory):
    """Labels are small standalone PDFs."""

    pdf = documents.render_barcode_label(product_factory(name="A very long product name indeed"))
    assert pdf.startswith(b"%PDF")
