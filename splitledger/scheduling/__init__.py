"""Scheduled action definitions, recurrence and execution."""

from splitledger.scheduling.executor import (
    ExecutionFailedError,
    ScheduleExecutor,
    ledger_entry_id,
)
from splitledger.scheduling.recurrence import (
    add_months,
    first_occurrence_on_or_after,
    next_execution_date,
    occurrence_date,
)
from splitledger.scheduling.registry import (
    InvalidActionDefinitionError,
    ScheduledActionRegistry,
)

__all__ = [
    "ExecutionFailedError",
    "InvalidActionDefinitionError",
    "ScheduleExecutor",
    "ScheduledActionRegistry",
    "add_months",
    "first_occurrence_on_or_after",
    "ledger_entry_id",
    "next_execution_date",
    "occurrence_date",
]
