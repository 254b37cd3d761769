"""PDF documents derived from the aggregate.

Every generator is read-only: it takes domain objects and returns PDF bytes.
Layouts are built with reportlab's platypus flowables; product and signature
images stored as base64 data URLs are decoded with Pillow.
"""

from __future__ import annotations

import base64
import binascii
import io
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence
from xml.sax.saxutils import escape

from PIL import Image as PILImage, UnidentifiedImageError
from reportlab.graphics import renderPDF
from reportlab.graphics.barcode import createBarcodeDrawing
from reportlab.graphics.shapes import Drawing, String
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from . import log
from .constants import WALK_IN_CUSTOMER, TransactionType
from .credit import Statement
from .models import ZERO, Customer, Product, StoreProfile, Transaction, parse_timestamp
from .reports import TransactionSummary


BRAND = colors.HexColor("#5d3a2b")
NAVY = colors.HexColor("#0f3057")
LABEL_NAME_LIMIT = 22

_ONES = ("", "One", "Two", "Three", "Four", "Five", "Six", "Seven", "Eight", "Nine")
_TEENS = ("Ten", "Eleven", "Twelve", "Thirteen", "Fourteen", "Fifteen", "Sixteen", "Seventeen", "Eighteen", "Nineteen")
_TENS = ("", "", "Twenty", "Thirty", "Forty", "Fifty", "Sixty", "Seventy", "Eighty", "Ninety")


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="DocTitle", parent=styles["Heading1"], fontSize=16, alignment=TA_CENTER, textColor=BRAND))
    styles.add(ParagraphStyle(name="Small", parent=styles["Normal"], fontSize=8, leading=10))
    styles.add(ParagraphStyle(name="SmallRight", parent=styles["Normal"], fontSize=8, leading=10, alignment=TA_RIGHT))
    styles.add(ParagraphStyle(name="CardTitle", parent=styles["Normal"], fontSize=9, leading=11, fontName="Helvetica-Bold"))
    return styles


def _build(story: list, *, title: str) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=14 * mm,
        rightMargin=14 * mm,
        topMargin=14 * mm,
        bottomMargin=14 * mm,
        title=title,
    )
    doc.build(story)
    return buffer.getvalue()


def money(value: Decimal) -> str:
    return f"Rs. {value:,.2f}"


def _day(iso: Optional[str]) -> str:
    if not iso:
        return "N/A"
    return parse_timestamp(iso).strftime("%d %b %Y")


def _grid_style(header_color) -> TableStyle:
    return TableStyle(
        [
            ("BACKGROUND", (0, 0), (-1, 0), header_color),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ]
    )


def decode_image(data_url: Optional[str]) -> Optional[PILImage.Image]:
    """Decode a base64 data URL into an RGB Pillow image.

    Returns ``None`` (and logs) when the value is empty or not an image.
    """

    if not data_url:
        return None
    encoded = data_url.split(",", 1)[1] if data_url.startswith("data:") else data_url
    try:
        raw = base64.b64decode(encoded, validate=True)
        with PILImage.open(io.BytesIO(raw)) as picture:
            picture.load()
            converted = picture.convert("RGB")
    except (binascii.Error, ValueError, UnidentifiedImageError, OSError) as exc:
        log.warning("Skipping unreadable image: %s", exc)
        return None
    return converted


def _image_flowable(data_url: Optional[str], width: float, height: float):
    picture = decode_image(data_url)
    if picture is None:
        return None
    buffer = io.BytesIO()
    picture.save(buffer, format="PNG")
    buffer.seek(0)
    image_width, image_height = picture.size
    scale = min(width / image_width, height / image_height)
    return Image(buffer, width=image_width * scale, height=image_height * scale)


def amount_in_words(amount: Decimal) -> str:
    """Spell out the whole-rupee part of ``amount``.

    Amounts of a million rupees or more fall back to digits.
    """

    def convert(n: int) -> str:
        if n < 10:
            return _ONES[n]
        if n < 20:
            return _TEENS[n - 10]
        if n < 100:
            return _TENS[n // 10] + (" " + _ONES[n % 10] if n % 10 else "")
        if n < 1000:
            return _ONES[n // 100] + " Hundred" + (" and " + convert(n % 100) if n % 100 else "")
        if n < 1_000_000:
            return convert(n // 1000) + " Thousand" + (" " + convert(n % 1000) if n % 1000 else "")
        return str(n)

    rupees = int(abs(amount))
    return f"{convert(rupees) or 'Zero'} Rupees only"


# ---------------------------------------------------------------------------
# Invoice
# ---------------------------------------------------------------------------


def render_invoice(tx: Transaction, profile: StoreProfile, customer: Optional[Customer] = None) -> bytes:
    """Render a tax invoice for a sale or return.

    Args:
        tx (Transaction): The ledger entry to print.
        profile (StoreProfile): Business identity, bank details and signature.
        customer (Customer | None): Customer record used for the contact
            number; the entry's denormalized name is printed either way.

    Returns:
        bytes: PDF document.
    """

    styles = _styles()
    story: list = []

    header_lines = [
        profile.address_line1,
        profile.address_line2,
        f"Phone no.: {profile.phone}",
        f"Email: {profile.email}",
        f"GSTIN: {profile.gstin}",
        f"State: {profile.state}",
    ]
    story.append(Paragraph(f"<b>{escape(profile.store_name or 'StockFlow Store')}</b>", styles["Heading2"]))
    story.append(Paragraph("<br/>".join(escape(line) for line in header_lines if line), styles["Small"]))
    story.append(Spacer(1, 6 * mm))
    story.append(Paragraph("Tax Invoice", styles["DocTitle"]))
    story.append(Spacer(1, 4 * mm))

    bill_to = [
        Paragraph("<b>Bill To</b>", styles["Normal"]),
        Paragraph(f"<b>{escape(tx.customer_name or 'Walk-in Customer')}</b>", styles["Small"]),
        Paragraph(f"Contact No.: {escape(customer.phone) if customer else WALK_IN_CUSTOMER}", styles["Small"]),
    ]
    details = [
        Paragraph("<b>Invoice Details</b>", styles["SmallRight"]),
        Paragraph(f"Invoice No.: IN-{tx.id[-4:]}", styles["SmallRight"]),
        Paragraph(f"Date: {_day(tx.date)}", styles["SmallRight"]),
    ]
    story.append(Table([[bill_to, details]], colWidths=["50%", "50%"]))
    story.append(Spacer(1, 4 * mm))

    rows: List[list] = [["#", "Item name", "HSN/SAC", "Quantity", "Price/Unit", "Discount", "Amount"]]
    for index, item in enumerate(tx.items, start=1):
        rows.append(
            [
                index,
                Paragraph(escape(item.product.name), styles["Small"]),
                item.product.hsn or "-",
                item.quantity,
                money(item.unit_price),
                money(item.discount_amount),
                money(item.net),
            ]
        )
    items_table = Table(rows, colWidths=[8 * mm, None, 20 * mm, 16 * mm, 26 * mm, 24 * mm, 28 * mm], repeatRows=1)
    style = _grid_style(BRAND)
    style.add("ALIGN", (3, 1), (3, -1), "CENTER")
    style.add("ALIGN", (4, 1), (-1, -1), "RIGHT")
    items_table.setStyle(style)
    story.append(items_table)
    story.append(Spacer(1, 6 * mm))

    total = tx.total
    rounded = total.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    round_off = rounded - total
    discount = tx.discount or ZERO

    totals: List[list] = [
        ["Sub Total", money(tx.subtotal or ZERO)],
        ["Discount", money(discount)],
    ]
    if tx.tax and tx.tax > 0:
        totals.append([tx.tax_label or "Tax", money(tx.tax)])
    totals.extend(
        [
            ["Round off", f"{'+' if round_off >= 0 else '-'} {money(abs(round_off))}"],
            ["Total", money(rounded)],
            ["Received", money(rounded)],
            ["Balance", money(ZERO)],
            ["You Saved", money(discount)],
        ]
    )
    total_row = len(totals) - 4
    totals_table = Table(totals, colWidths=[30 * mm, 35 * mm])
    totals_table.setStyle(
        TableStyle(
            [
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                ("BACKGROUND", (0, total_row), (-1, total_row), BRAND),
                ("TEXTCOLOR", (0, total_row), (-1, total_row), colors.white),
                ("FONTNAME", (0, total_row), (-1, total_row), "Helvetica-Bold"),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ]
        )
    )
    words = [
        Paragraph("<b>Invoice Amount In Words</b>", styles["Small"]),
        Paragraph(amount_in_words(total), styles["Small"]),
    ]
    story.append(Table([[words, totals_table]], colWidths=["50%", "50%"], style=[("VALIGN", (0, 0), (-1, -1), "TOP")]))
    story.append(Spacer(1, 8 * mm))

    bank_lines = [
        f"Bank Name: {profile.bank_name or '-'}",
        f"Bank Account No.: {profile.bank_account or '-'}",
        f"Bank IFSC code: {profile.bank_ifsc or '-'}",
        f"Account Holder's Name: {profile.bank_holder or '-'}",
    ]
    terms = [
        Paragraph("<b>Terms And Conditions</b>", styles["Small"]),
        Paragraph("Thanks for doing business with us!", styles["Small"]),
        Spacer(1, 4 * mm),
        Paragraph("<b>Pay To:</b>", styles["Small"]),
        Paragraph("<br/>".join(escape(line) for line in bank_lines), styles["Small"]),
    ]
    signature: list = [Paragraph(f"For: {escape(profile.store_name)}", styles["SmallRight"])]
    signature_image = _image_flowable(profile.signature_image, 35 * mm, 12 * mm)
    if signature_image is not None:
        signature_image.hAlign = "RIGHT"
        signature.append(signature_image)
    else:
        signature.append(Spacer(1, 12 * mm))
    signature.append(Paragraph("<b>Authorized Signatory</b>", styles["SmallRight"]))
    story.append(Table([[terms, signature]], colWidths=["50%", "50%"], style=[("VALIGN", (0, 0), (-1, -1), "TOP")]))

    log.info("Rendered invoice for transaction '%s'", tx.id)
    return _build(story, title=f"Invoice {tx.id[-6:]}")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


CATALOG_COLUMNS = 3


def _catalog_card(product: Product, styles, *, internal: bool) -> list:
    card: list = []
    picture = _image_flowable(product.image, 45 * mm, 35 * mm)
    card.append(picture if picture is not None else Paragraph("No Image", styles["Small"]))
    card.append(Paragraph(escape(product.name), styles["CardTitle"]))
    card.append(Paragraph(escape(product.barcode), styles["Small"]))
    if internal:
        margin = product.sell_price - product.buy_price
        card.append(
            Paragraph(
                f"Stock: {product.stock}<br/>Buy: {money(product.buy_price)}<br/>"
                f"Sell: {money(product.sell_price)}<br/>M: {money(margin)}",
                styles["Small"],
            )
        )
    else:
        badge = "In Stock" if product.stock > 0 else "Out of Stock"
        card.append(Paragraph(f"<b>{money(product.sell_price)}</b>  {badge}", styles["Small"]))
    return card


def render_catalog(
    products: Sequence[Product],
    profile: StoreProfile,
    *,
    category: Optional[str] = None,
    internal: bool = False,
) -> bytes:
    """Render product cards three to a row.

    The customer catalog shows price and availability; the internal audit
    variant adds stock, buy price and margin.
    """

    styles = _styles()
    title = "Internal Audit Report" if internal else "Customer Catalog"
    story: list = [
        Paragraph(escape(profile.store_name), styles["DocTitle"]),
        Paragraph(escape(f"{title}{' - ' + category if category else ''}"), styles["Heading3"]),
        Spacer(1, 4 * mm),
    ]

    cards = [_catalog_card(product, styles, internal=internal) for product in products]
    if not cards:
        story.append(Paragraph("No products to show.", styles["Normal"]))
    else:
        rows = [cards[i:i + CATALOG_COLUMNS] for i in range(0, len(cards), CATALOG_COLUMNS)]
        rows[-1] = rows[-1] + [""] * (CATALOG_COLUMNS - len(rows[-1]))
        grid = Table(rows, colWidths=[60 * mm] * CATALOG_COLUMNS)
        grid.setStyle(
            TableStyle(
                [
                    ("BOX", (0, 0), (-1, -1), 0.5, colors.lightgrey),
                    ("INNERGRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ]
            )
        )
        story.append(grid)

    log.info("Rendered %s with %d products", title.lower(), len(cards))
    return _build(story, title=title)


# ---------------------------------------------------------------------------
# Customer documents
# ---------------------------------------------------------------------------


def render_statement(statement: Statement, profile: StoreProfile) -> bytes:
    """Render a party statement with a running Dr/Cr balance."""

    styles = _styles()
    customer = statement.customer
    story: list = [
        Paragraph(escape((profile.store_name or "StockFlow ERP").upper()), styles["DocTitle"]),
        Paragraph(f"Period: {_day(statement.period_start)} To {_day(statement.period_end)}", styles["Small"]),
        Spacer(1, 4 * mm),
    ]
    party = [
        Paragraph("<b>Party Statement</b>", styles["Normal"]),
        Paragraph(f"Party Name: {escape(customer.name.upper())}", styles["Small"]),
        Paragraph(f"Contact: {escape(customer.phone)}", styles["Small"]),
    ]
    store = [
        Paragraph(f"Email: {escape(profile.email or '-')}", styles["SmallRight"]),
        Paragraph(f"GSTIN: {escape(profile.gstin or '-')}", styles["SmallRight"]),
    ]
    story.append(Table([[party, store]], colWidths=["50%", "50%"]))
    story.append(Spacer(1, 4 * mm))

    rows: List[list] = [["Date", "Description", "Debit", "Credit", "", "Balance"]]
    for line in statement.lines:
        rows.append(
            [
                _day(line.date),
                line.description,
                f"{line.debit:.2f}" if line.debit > 0 else "",
                f"{line.credit:.2f}" if line.credit > 0 else "",
                line.marker,
                f"{abs(line.balance):.2f}",
            ]
        )
    table = Table(rows, colWidths=[25 * mm, None, 25 * mm, 25 * mm, 10 * mm, 28 * mm], repeatRows=1)
    style = _grid_style(NAVY)
    style.add("ALIGN", (2, 1), (-1, -1), "RIGHT")
    table.setStyle(style)
    story.append(table)
    story.append(Spacer(1, 6 * mm))

    summary = Table(
        [
            ["Total Sales:", money(statement.total_sales)],
            ["Total Receipts:", money(statement.total_receipts)],
            ["Final Due:", money(statement.final_due)],
        ],
        colWidths=[35 * mm, 35 * mm],
        hAlign="RIGHT",
    )
    summary.setStyle(TableStyle([("ALIGN", (1, 0), (1, -1), "RIGHT"), ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold")]))
    story.append(summary)

    log.info("Rendered statement for customer '%s'", customer.id)
    return _build(story, title=f"Statement {customer.name}")


def render_customer_dues(customers: Iterable[Customer], profile: StoreProfile) -> bytes:
    """Render the customer directory with spend, due and a dues total."""

    styles = _styles()
    rows: List[list] = [["Name", "Phone", "Total Spend", "Due"]]
    total_due = ZERO
    for customer in customers:
        rows.append([customer.name, customer.phone, money(customer.total_spend), money(customer.total_due)])
        total_due += customer.total_due
    rows.append(["TOTAL", "", "", money(total_due)])

    table = Table(rows, colWidths=[None, 35 * mm, 35 * mm, 35 * mm], repeatRows=1)
    style = _grid_style(NAVY)
    style.add("ALIGN", (2, 1), (-1, -1), "RIGHT")
    style.add("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold")
    table.setStyle(style)

    story = [
        Paragraph(escape(profile.store_name), styles["DocTitle"]),
        Paragraph("Customer List", styles["Heading3"]),
        Spacer(1, 4 * mm),
        table,
    ]
    return _build(story, title="Customer List")


# ---------------------------------------------------------------------------
# Transaction report
# ---------------------------------------------------------------------------


def render_transaction_report(
    transactions: Sequence[Transaction],
    summary: TransactionSummary,
    profile: StoreProfile,
    *,
    filter_label: str,
    generated_at: Optional[datetime] = None,
) -> bytes:
    styles = _styles()
    generated_at = generated_at or datetime.now(UTC)
    story: list = [
        Paragraph(escape(profile.store_name), styles["DocTitle"]),
        Paragraph("Transaction Report", styles["Heading3"]),
        Paragraph(f"Generated: {generated_at:%d %b %Y %H:%M}", styles["Small"]),
        Paragraph(f"Filter: {escape(filter_label)}", styles["Small"]),
        Spacer(1, 4 * mm),
    ]

    boxes = Table(
        [
            ["Total Revenue", "Returns", "Net Sales", "Gross Profit"],
            [
                money(summary.total_revenue),
                money(summary.total_returns),
                money(summary.net_sales),
                money(summary.gross_profit),
            ],
        ],
        colWidths=[45 * mm] * 4,
    )
    boxes.setStyle(
        TableStyle(
            [
                ("BOX", (0, 0), (-1, -1), 0.5, colors.grey),
                ("INNERGRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
                ("FONTSIZE", (0, 0), (-1, 0), 8),
                ("FONTNAME", (0, 1), (-1, 1), "Helvetica-Bold"),
                ("ALIGN", (0, 0), (-1, -1), "CENTER"),
            ]
        )
    )
    story.append(boxes)
    story.append(Spacer(1, 6 * mm))

    rows: List[list] = [["Date", "ID", "Type", "Customer", "Method", "Amount"]]
    for tx in transactions:
        sign = "-" if tx.type is TransactionType.RETURN else ""
        rows.append(
            [
                _day(tx.date),
                tx.id[-6:],
                tx.type.value.upper(),
                tx.customer_name or WALK_IN_CUSTOMER,
                tx.payment_method.value if tx.payment_method else "-",
                f"{sign}{money(abs(tx.total))}",
            ]
        )
    table = Table(rows, repeatRows=1)
    style = _grid_style(NAVY)
    style.add("ALIGN", (-1, 1), (-1, -1), "RIGHT")
    table.setStyle(style)
    story.append(table)

    log.info("Rendered transaction report with %d entries", len(transactions))
    return _build(story, title="Transaction Report")


# ---------------------------------------------------------------------------
# Barcode label
# ---------------------------------------------------------------------------


def label_name(name: str) -> str:
    return name if len(name) <= LABEL_NAME_LIMIT else name[:LABEL_NAME_LIMIT] + "..."


def render_barcode_label(product: Product) -> bytes:
    """Render a Code 128 label with the product name and price underneath."""

    barcode = createBarcodeDrawing(
        "Code128",
        value=product.barcode,
        barHeight=18 * mm,
        barWidth=0.35 * mm,
        humanReadable=True,
    )
    width = max(barcode.width, 50 * mm) + 8 * mm
    height = barcode.height + 16 * mm
    label = Drawing(width, height)
    barcode.translate((width - barcode.width) / 2, 12 * mm)
    label.add(barcode)
    label.add(String(width / 2, 7 * mm, label_name(product.name), textAnchor="middle", fontName="Helvetica-Bold", fontSize=9))
    label.add(String(width / 2, 2 * mm, money(product.sell_price), textAnchor="middle", fontName="Helvetica", fontSize=8))

    log.debug("Rendered barcode label for '%s' (%s)", product.id, product.barcode)
    return renderPDF.drawToString(label)
