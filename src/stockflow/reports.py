"""Transaction reporting: period filters and sales summaries."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from . import log
from .constants import ReportPeriod, TransactionType
from .models import ZERO, Transaction, parse_timestamp


@dataclass(frozen=True)
class TransactionSummary:
    """Headline figures of a transaction report.

    ``gross_profit`` is ``(sell - buy) * qty`` over sold lines minus the same
    over returned lines, before discounts and tax.
    """

    total_revenue: Decimal
    total_returns: Decimal
    total_payments: Decimal
    gross_profit: Decimal
    count: int

    @property
    def net_sales(self) -> Decimal:
        return self.total_revenue - self.total_returns


def transaction_day(tx: Transaction) -> Optional[date]:
    """UTC calendar day of ``tx``; naive timestamps are taken as UTC."""

    try:
        moment = datetime.fromisoformat(tx.date)
    except ValueError:
        log.warning("Transaction '%s' has an unreadable date '%s'", tx.id, tx.date)
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.date()


def _months_back(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def period_start(period: ReportPeriod, today: date) -> Optional[date]:
    """First calendar day included by a rolling ``period``."""

    if period is ReportPeriod.TODAY:
        return today
    if period is ReportPeriod.YESTERDAY:
        return today - timedelta(days=1)
    if period is ReportPeriod.LAST_7_DAYS:
        return today - timedelta(days=7)
    if period is ReportPeriod.LAST_15_DAYS:
        return today - timedelta(days=15)
    if period is ReportPeriod.LAST_30_DAYS:
        return today - timedelta(days=30)
    if period is ReportPeriod.LAST_6_MONTHS:
        return _months_back(today, 6)
    if period is ReportPeriod.LAST_YEAR:
        return _months_back(today, 12)
    return None


def filter_transactions(
    transactions: Iterable[Transaction],
    period: ReportPeriod = ReportPeriod.ALL,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    today: Optional[date] = None,
) -> List[Transaction]:
    """Select transactions by calendar day and order them newest first.

    Args:
        transactions (Iterable[Transaction]): Ledger entries.
        period (ReportPeriod): Window to apply. ``today`` and ``yesterday``
            match a single day; the rolling windows include every day from
            their start up to today; ``custom`` uses ``start``/``end``
            (both inclusive, either may be omitted); ``all`` keeps everything.
        start (date | None): First day of a custom range.
        end (date | None): Last day of a custom range.
        today (date | None): Reference day, defaulting to the current UTC
            date.

    Returns:
        list[Transaction]: Matching entries, most recent first.
    """

    today = today or datetime.now(UTC).date()
    selected: List[Transaction] = []
    for tx in transactions:
        day = transaction_day(tx)
        if day is None:
            continue
        if period is ReportPeriod.TODAY or period is ReportPeriod.YESTERDAY:
            keep = day == period_start(period, today)
        elif period is ReportPeriod.CUSTOM:
            keep = (start is None or day >= start) and (end is None or day <= end)
        elif period is ReportPeriod.ALL:
            keep = True
        else:
            keep = day >= period_start(period, today)
        if keep:
            selected.append(tx)

    selected.sort(key=lambda tx: parse_timestamp(tx.date), reverse=True)
    log.debug("Filtered %d transactions for period '%s'", len(selected), period.value)
    return selected


def summarize_transactions(transactions: Iterable[Transaction]) -> TransactionSummary:
    revenue = returns = payments = profit = ZERO
    count = 0
    for tx in transactions:
        count += 1
        amount = abs(tx.total)
        margin = sum((item.margin for item in tx.items), ZERO)
        if tx.type is TransactionType.SALE:
            revenue += amount
            profit += margin
        elif tx.type is TransactionType.RETURN:
            returns += amount
            profit -= margin
        else:
            payments += amount
    return TransactionSummary(
        total_revenue=revenue,
        total_returns=returns,
        total_payments=payments,
        gross_profit=profit,
        count=count,
    )
