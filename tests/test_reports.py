"""Tests for report period windows and summaries."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from stockflow import reports
from stockflow.constants import PaymentMethod, ReportPeriod, TransactionType
from stockflow.models import CartItem, Transaction

TODAY = date(2024, 8, 31)


def _on(day: date, tx_id: str = "T", kind: TransactionType = TransactionType.SALE, total: str = "100", items=()):
    return Transaction(
        id=tx_id,
        items=tuple(items),
        total=Decimal(total),
        type=kind,
        date=datetime(day.year, day.month, day.day, 12, tzinfo=UTC).isoformat(),
        payment_method=PaymentMethod.CASH,
    )


@pytest.mark.parametrize(
    "period, expected",
    [
        (ReportPeriod.TODAY, date(2024, 8, 31)),
        (ReportPeriod.YESTERDAY, date(2024, 8, 30)),
        (ReportPeriod.LAST_7_DAYS, date(2024, 8, 24)),
        (ReportPeriod.LAST_30_DAYS, date(2024, 8, 1)),
        (ReportPeriod.LAST_6_MONTHS, date(2024, 2, 29)),
        (ReportPeriod.LAST_YEAR, date(2023, 8, 31)),
        (ReportPeriod.ALL, None),
    ],
)
def test_period_start(period, expected):
    """Rolling windows count back from today; month ends are clamped."""

    assert reports.period_start(period, TODAY) == expected


def test_filter_today_and_yesterday_match_single_days():
    """Single-day periods ignore neighbouring days."""

    ledger = [_on(date(2024, 8, 31), "a"), _on(date(2024, 8, 30), "b"), _on(date(2024, 8, 29), "c")]

    assert [tx.id for tx in reports.filter_transactions(ledger, ReportPeriod.TODAY, today=TODAY)] == ["a"]
    assert [tx.id for tx in reports.filter_transactions(ledger, ReportPeriod.YESTERDAY, today=TODAY)] == ["b"]


def test_filter_rolling_window_includes_start_day():
    """The first day of a rolling window is included."""

    ledger = [_on(date(2024, 8, 23), "old"), _on(date(2024, 8, 24), "edge"), _on(date(2024, 8, 31), "new")]
    selected = reports.filter_transactions(ledger, ReportPeriod.LAST_7_DAYS, today=TODAY)

    assert [tx.id for tx in selected] == ["new", "edge"]


def test_filter_custom_range_is_inclusive_and_open_ended():
    """Custom ranges include both ends and accept a missing side."""

    ledger = [_on(date(2024, 1, day), str(day)) for day in (1, 5, 10)]

    both = reports.filter_transactions(ledger, ReportPeriod.CUSTOM, start=date(2024, 1, 5), end=date(2024, 1, 10))
    open_end = reports.filter_transactions(ledger, ReportPeriod.CUSTOM, start=date(2024, 1, 5))

    assert [tx.id for tx in both] == ["10", "5"]
    assert [tx.id for tx in open_end] == ["10", "5"]


def test_filter_skips_unreadable_dates():
    """Entries without a parsable date are left out."""

    broken = Transaction("x", (), Decimal("1"), TransactionType.SALE, "yesterday-ish")
    assert reports.filter_transactions([broken, _on(TODAY, "ok")], ReportPeriod.ALL, today=TODAY)[0].id == "ok"
    assert len(reports.filter_transactions([broken], ReportPeriod.ALL, today=TODAY)) == 0


def test_offset_timestamps_fall_on_their_utc_day():
    """A sale at 02:00 IST on the 1st still belongs to the UTC 31st."""

    late = Transaction("ist", (), Decimal("1"), TransactionType.SALE, "2024-09-01T02:00:00+05:30")
    early = Transaction("west", (), Decimal("1"), TransactionType.SALE, "2024-08-31T22:00:00-05:00")

    assert reports.transaction_day(late) == date(2024, 8, 31)
    assert reports.transaction_day(early) == date(2024, 9, 1)
    assert [tx.id for tx in reports.filter_transactions([late, early], ReportPeriod.TODAY, today=TODAY)] == ["ist"]


def test_summary_separates_sales_returns_and_payments(product_factory):
    """Revenue, returns, payments and margin are tallied separately."""

    product = product_factory(buy_price=Decimal("60"), sell_price=Decimal("100"))
    ledger = [
        _on(TODAY, "s", TransactionType.SALE, "300", [CartItem(product, 3)]),
        _on(TODAY, "r", TransactionType.RETURN, "-100", [CartItem(product, 1)]),
        _on(TODAY, "p", TransactionType.PAYMENT, "50"),
    ]

    summary = reports.summarize_transactions(ledger)

    assert summary.total_revenue == Decimal("300")
    assert summary.total_returns == Decimal("100")
    assert summary.total_payments == Decimal("50")
    assert summary.net_sales == Decimal("200")
    assert summary.gross_profit == Decimal("80")
    assert summary.count == 3


def test_summary_of_nothing_is_zero():
    """An empty ledger summarises to zeros."""

    summary = reports.summarize_transactions([])
    assert summary.count == 0
    assert summary.net_sales == Decimal("0")
