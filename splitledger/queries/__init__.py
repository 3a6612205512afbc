"""Derived reads over the ledger and the execution history."""

from splitledger.queries.balances import (
    BalanceCalculator,
    InconsistentEntryError,
    balances_for_user,
    compute_balances,
    compute_pairwise_debts,
)
from splitledger.queries.budgets import (
    BudgetAggregator,
    build_monthly_report,
    compute_monthly,
    compute_total,
    compute_totals_by_currency,
)
from splitledger.queries.history import HistoryReader, InvalidCursorError

__all__ = [
    # Balances
    "BalanceCalculator",
    "InconsistentEntryError",
    "balances_for_user",
    "compute_balances",
    "compute_pairwise_debts",
    # Budgets
    "BudgetAggregator",
    "build_monthly_report",
    "compute_monthly",
    "compute_total",
    "compute_totals_by_currency",
    # History
    "HistoryReader",
    "InvalidCursorError",
]
