"""
Budget Aggregator

Monthly and total budget figures derived from budget-tagged ledger entries.

Only live entries carrying a `budget_id` count. Amounts are signed:
credits add to a budget, debits spend from it. Months are the calendar
month of each entry's `added_time`.

DESIGN DECISION: The reference "now" is always supplied by the caller.
The aggregator never reads a clock, so every series is reproducible.
"""

from collections import defaultdict
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from splitledger.models.ledger import AMOUNT_QUANTUM, LedgerEntry, from_minor_units
from splitledger.models.reports import (
    AverageSpend,
    AverageSpendPeriod,
    BudgetRange,
    CurrencyAmount,
    MonthlyBudget,
    MonthlyBudgetReport,
    MonthlyTotal,
)


Month = tuple[int, int]


def _month_of(moment: datetime) -> Month:
    return moment.year, moment.month


def _month_key(month: Month) -> str:
    return f"{month[0]:04d}-{month[1]:02d}"


def _shift(month: Month, delta: int) -> Month:
    index = month[0] * 12 + (month[1] - 1) + delta
    return index // 12, index % 12 + 1


def _budget_entries(
    entries: Iterable[LedgerEntry],
    budget_id: Optional[str] = None,
) -> list[LedgerEntry]:
    return [
        e for e in entries
        if e.is_live
        and e.budget_id is not None
        and (budget_id is None or e.budget_id == budget_id)
    ]


def month_window(
    entries: Iterable[LedgerEntry],
    range_: BudgetRange,
    now: datetime,
) -> list[Month]:
    """
    Contiguous ascending months covered by a range, ending at now's month.

    `All` starts at the earliest given entry's month, or covers only the
    current month when there are no entries.
    """
    current = _month_of(now)
    if range_.months is not None:
        first = _shift(current, -(range_.months - 1))
    else:
        months = [_month_of(e.added_time) for e in entries]
        first = min(months + [current])

    window = []
    month = first
    while month <= current:
        window.append(month)
        month = _shift(month, 1)
    return window


def compute_monthly(
    entries: Iterable[LedgerEntry],
    currency: str,
    range_: BudgetRange,
    now: datetime,
    budget_id: Optional[str] = None,
) -> list[MonthlyTotal]:
    """
    Signed monthly totals for one currency, oldest month first.

    Every month in the range appears, with a zero total when it has no
    entries. Entries outside the range are ignored.
    """
    live = _budget_entries(entries, budget_id)
    window = month_window(live, BudgetRange(range_), now)

    totals: dict[Month, int] = defaultdict(int)
    for entry in live:
        if entry.currency == currency:
            totals[_month_of(entry.added_time)] += entry.signed_minor

    return [
        MonthlyTotal(month=_month_key(month), total_amount=from_minor_units(totals[month]))
        for month in window
    ]


def compute_total(
    entries: Iterable[LedgerEntry],
    currency: str,
    budget_id: Optional[str] = None,
) -> Decimal:
    """Signed all-time total of one currency's live budget entries."""
    return from_minor_units(sum(
        e.signed_minor for e in _budget_entries(entries, budget_id)
        if e.currency == currency
    ))


def compute_totals_by_currency(
    entries: Iterable[LedgerEntry],
    budget_id: Optional[str] = None,
) -> dict[str, Decimal]:
    """Signed all-time total per currency."""
    totals: dict[str, int] = defaultdict(int)
    for entry in _budget_entries(entries, budget_id):
        totals[entry.currency] += entry.signed_minor
    return {currency: from_minor_units(totals[currency]) for currency in sorted(totals)}


def _rolling_averages(
    monthly: list[MonthlyBudget],
    currencies: list[str],
) -> list[AverageSpendPeriod]:
    """Average absolute spend over the last 1, 2, ... N months."""
    newest_first = list(reversed(monthly))
    periods = []
    running = {currency: Decimal("0") for currency in currencies}
    for months_back, month in enumerate(newest_first, start=1):
        for amount in month.amounts:
            running[amount.currency] += abs(amount.amount)

        averages = [
            AverageSpend(
                currency=currency,
                average_monthly_spend=(running[currency] / months_back).quantize(
                    AMOUNT_QUANTUM, rounding=ROUND_HALF_UP
                ),
                total_spend=running[currency],
                months_analyzed=months_back,
            )
            for currency in currencies
            if running[currency] > 0
        ]
        if not averages:
            averages = [AverageSpend(
                currency=currencies[0],
                average_monthly_spend=Decimal("0.00"),
                total_spend=Decimal("0.00"),
                months_analyzed=months_back,
            )]
        periods.append(AverageSpendPeriod(period_months=months_back, averages=averages))
    return periods


def build_monthly_report(
    entries: Iterable[LedgerEntry],
    range_: BudgetRange,
    now: datetime,
    default_currency: str,
    budget_id: Optional[str] = None,
) -> MonthlyBudgetReport:
    """
    Monthly series for every currency the budget has entries in.

    When there are no entries at all, the series tracks `default_currency`
    with zero amounts.
    """
    live = _budget_entries(entries, budget_id)
    currencies = sorted({e.currency for e in live}) or [default_currency]
    window = month_window(live, BudgetRange(range_), now)

    totals: dict[tuple[Month, str], int] = defaultdict(int)
    for entry in live:
        totals[(_month_of(entry.added_time), entry.currency)] += entry.signed_minor

    monthly = [
        MonthlyBudget(
            month=_month_key(month),
            amounts=[
                CurrencyAmount(currency=c, amount=from_minor_units(totals[(month, c)]))
                for c in currencies
            ],
        )
        for month in window
    ]

    return MonthlyBudgetReport(
        monthly_budgets=monthly,
        available_currencies=currencies,
        default_currency=default_currency if default_currency in currencies else currencies[0],
        average_monthly_spend=_rolling_averages(monthly, currencies),
    )


class BudgetAggregator:
    """Reads a group's live budget entries from the ledger store and aggregates them."""

    def __init__(self, ledger_storage, default_currency: str = "GBP"):
        self._storage = ledger_storage
        self._default_currency = default_currency

    async def get_monthly(
        self,
        group_id: str,
        currency: str,
        range_: BudgetRange,
        now: datetime,
        budget_id: Optional[str] = None,
    ) -> list[MonthlyTotal]:
        entries = await self._storage.query_live(group_id, budget_id=budget_id)
        return compute_monthly(entries, currency, range_, now, budget_id=budget_id)

    async def get_total(
        self,
        group_id: str,
        currency: str,
        budget_id: Optional[str] = None,
    ) -> Decimal:
        entries = await self._storage.query_live(group_id, budget_id=budget_id)
        return compute_total(entries, currency, budget_id=budget_id)

    async def get_totals_by_currency(
        self,
        group_id: str,
        budget_id: Optional[str] = None,
    ) -> dict[str, Decimal]:
        entries = await self._storage.query_live(group_id, budget_id=budget_id)
        return compute_totals_by_currency(entries, budget_id=budget_id)

    async def get_monthly_report(
        self,
        group_id: str,
        range_: BudgetRange,
        now: datetime,
        budget_id: Optional[str] = None,
        default_currency: Optional[str] = None,
    ) -> MonthlyBudgetReport:
        entries = await self._storage.query_live(group_id, budget_id=budget_id)
        return build_monthly_report(
            entries,
            range_,
            now,
            default_currency or self._default_currency,
            budget_id=budget_id,
        )
