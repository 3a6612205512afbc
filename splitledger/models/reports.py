"""
Report Models

Shapes returned by the budget aggregator. All of them are derived from
ledger entries on request and never stored.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BudgetRange(str, Enum):
    """How far back a monthly budget series reaches."""
    SIX_MONTHS = "6M"
    ONE_YEAR = "1Y"
    TWO_YEARS = "2Y"
    ALL = "All"

    @property
    def months(self) -> Optional[int]:
        """Number of months including the current one, None for all."""
        return {
            BudgetRange.SIX_MONTHS: 6,
            BudgetRange.ONE_YEAR: 12,
            BudgetRange.TWO_YEARS: 24,
        }.get(self)


class MonthlyTotal(BaseModel):
    """Signed total of one currency's budget entries in one month."""

    month: str = Field(..., pattern=r"^\d{4}-\d{2}$", description="YYYY-MM")
    total_amount: Decimal


class CurrencyAmount(BaseModel):
    currency: str
    amount: Decimal


class MonthlyBudget(BaseModel):
    """Every tracked currency's total for one month."""

    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    amounts: list[CurrencyAmount] = Field(default_factory=list)


class AverageSpend(BaseModel):
    currency: str
    average_monthly_spend: Decimal
    total_spend: Decimal
    months_analyzed: int = Field(..., ge=1)


class AverageSpendPeriod(BaseModel):
    """Average spend over the most recent `period_months` months."""

    period_months: int = Field(..., ge=1)
    averages: list[AverageSpend] = Field(default_factory=list)


class MonthlyBudgetReport(BaseModel):
    """
    Monthly budget series across currencies.

    `monthly_budgets` is ascending and contiguous: months without entries
    appear with zero amounts.
    """

    monthly_budgets: list[MonthlyBudget] = Field(default_factory=list)
    available_currencies: list[str] = Field(default_factory=list)
    default_currency: str
    average_monthly_spend: list[AverageSpendPeriod] = Field(default_factory=list)
