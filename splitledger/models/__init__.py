"""
Data Models Package

This package contains all Pydantic models used by Split Ledger.
All data flowing through the system must conform to these schemas.
"""

from splitledger.models.ledger import (
    AMOUNT_QUANTUM,
    Budget,
    EntryKind,
    EntrySign,
    LedgerEntry,
    LedgerEntryPage,
    ParticipantShare,
    from_minor_units,
    to_minor_units,
)
from splitledger.models.scheduled import (
    ActionData,
    ActionExecutionResult,
    ActionState,
    ActionType,
    BudgetActionData,
    ExecutionOutcome,
    ExecutionStatus,
    ExpenseActionData,
    Frequency,
    HistoryPage,
    ScheduledAction,
    ScheduledActionHistory,
    ScheduledActionPage,
    ScheduledActionRequest,
    ScheduledActionUpdate,
    SweepResult,
)
from splitledger.models.reports import (
    AverageSpend,
    AverageSpendPeriod,
    BudgetRange,
    CurrencyAmount,
    MonthlyBudget,
    MonthlyBudgetReport,
    MonthlyTotal,
)
from splitledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "AMOUNT_QUANTUM",
    "Budget",
    "EntryKind",
    "EntrySign",
    "LedgerEntry",
    "LedgerEntryPage",
    "ParticipantShare",
    "from_minor_units",
    "to_minor_units",
    # Scheduled action models
    "ActionData",
    "ActionExecutionResult",
    "ActionState",
    "ActionType",
    "BudgetActionData",
    "ExecutionOutcome",
    "ExecutionStatus",
    "ExpenseActionData",
    "Frequency",
    "HistoryPage",
    "ScheduledAction",
    "ScheduledActionHistory",
    "ScheduledActionPage",
    "ScheduledActionRequest",
    "ScheduledActionUpdate",
    "SweepResult",
    # Report models
    "AverageSpend",
    "AverageSpendPeriod",
    "BudgetRange",
    "CurrencyAmount",
    "MonthlyBudget",
    "MonthlyBudgetReport",
    "MonthlyTotal",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
