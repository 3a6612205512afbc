"""
Scheduled Action Models

A scheduled action is a user-defined recurring instruction that
materializes a new ledger entry on a cadence (daily, weekly, monthly).

DESIGN DECISION: The action payload is a tagged union keyed on
`action_type`. Each action kind has its own strict schema, so adding a new
kind means adding a new model to the union rather than widening a
loosely-typed dict.

DESIGN DECISION: The next execution date is never advanced by mutating a
running date. The action stores how many occurrences have been consumed
(`occurrence_index`) and the date is recomputed from `start_date`. Chaining
months this way never drifts (Jan 31 -> Feb 29 -> Mar 31, not Mar 29).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from splitledger.models.ledger import EntrySign


# =============================================================================
# ENUMS
# =============================================================================

class ActionType(str, Enum):
    """Kinds of ledger entry a scheduled action can materialize."""
    ADD_EXPENSE = "add_expense"
    ADD_BUDGET = "add_budget"


class Frequency(str, Enum):
    """Recurrence cadence."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ExecutionStatus(str, Enum):
    """Outcome recorded in the execution history."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ActionState(str, Enum):
    """
    Lifecycle state of a scheduled action relative to a given day.

    SCHEDULED -> DUE -> (executed) -> SCHEDULED, or SCHEDULED -> DISABLED.
    DELETED is terminal.
    """
    SCHEDULED = "scheduled"
    DUE = "due"
    DISABLED = "disabled"
    DELETED = "deleted"


# =============================================================================
# ACTION PAYLOADS (tagged union on action_type)
# =============================================================================

class ExpenseActionData(BaseModel):
    """Payload for a recurring split expense."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    action_type: Literal["add_expense"] = "add_expense"
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)
    currency: str = Field(..., min_length=1, max_length=10)
    paid_by_user_id: str = Field(..., min_length=1)
    split_pct_shares: dict[str, Decimal] = Field(
        ...,
        min_length=1,
        description="Percentage of the amount owed by each user"
    )

    @field_validator("split_pct_shares")
    @classmethod
    def validate_percentages(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        if any(pct < 0 for pct in v.values()):
            raise ValueError("Split percentages cannot be negative")
        if sum(v.values()) != Decimal("100"):
            raise ValueError("Split percentages must add up to 100")
        return v


class BudgetActionData(BaseModel):
    """Payload for a recurring budget credit or debit."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    action_type: Literal["add_budget"] = "add_budget"
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)
    currency: str = Field(..., min_length=1, max_length=10)
    budget_id: str = Field(..., min_length=1)
    type: EntrySign = Field(
        default=EntrySign.DEBIT,
        description="Credit adds to the budget, debit spends from it"
    )


ActionData = Annotated[
    Union[ExpenseActionData, BudgetActionData],
    Field(discriminator="action_type"),
]


def _tag_action_data(data: Any) -> Any:
    """Copy the outer action_type into a raw action_data dict."""
    if isinstance(data, dict):
        action_type = data.get("action_type")
        action_data = data.get("action_data")
        if isinstance(action_type, Enum):
            action_type = action_type.value
        if isinstance(action_data, dict) and "action_type" not in action_data:
            data = {**data, "action_data": {**action_data, "action_type": action_type}}
    return data


def _check_action_type(action_type: ActionType, action_data: BaseModel) -> None:
    if action_data.action_type != action_type.value:
        raise ValueError(
            f"action_data is for {action_data.action_type}, not {action_type.value}"
        )


# =============================================================================
# SCHEDULED ACTION
# =============================================================================

class ScheduledAction(BaseModel):
    """
    A stored recurring action.

    `version` is bumped by every write and used for compare-and-set
    updates. `claim_token` / `claim_expires_at` hold the executor lease
    for the occurrence currently being executed.
    """
    model_config = ConfigDict(frozen=True)

    # Identity
    id: str = Field(default_factory=lambda: uuid4().hex)
    group_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)

    # Definition
    action_type: ActionType
    action_data: ActionData
    frequency: Frequency
    start_date: date
    is_active: bool = True

    # Recurrence tracking
    occurrence_index: int = Field(default=0, ge=0)
    next_execution_date: date
    last_occurrence_date: Optional[date] = None
    last_executed_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None

    # Concurrency control
    version: int = Field(default=1, ge=1)
    claim_token: Optional[str] = None
    claim_expires_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def tag_action_data(cls, data: Any) -> Any:
        return _tag_action_data(data)

    @model_validator(mode="after")
    def validate_action_type(self) -> "ScheduledAction":
        _check_action_type(self.action_type, self.action_data)
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_due(self, today: date) -> bool:
        """Active, not deleted, and the next execution date has arrived."""
        return (
            self.is_active
            and not self.is_deleted
            and self.next_execution_date <= today
        )

    def state(self, today: date) -> ActionState:
        if self.is_deleted:
            return ActionState.DELETED
        if not self.is_active:
            return ActionState.DISABLED
        if self.next_execution_date <= today:
            return ActionState.DUE
        return ActionState.SCHEDULED

    def is_claimed(self, now: datetime) -> bool:
        """Is another executor currently holding a live lease?"""
        return (
            self.claim_token is not None
            and self.claim_expires_at is not None
            and self.claim_expires_at > now
        )


class ScheduledActionRequest(BaseModel):
    """
    Payload for creating a scheduled action.

    Mirrors the wire shape:
    {action_type, action_data, frequency, start_date, is_active}
    """
    model_config = ConfigDict(extra="forbid")

    action_type: ActionType
    action_data: ActionData
    frequency: Frequency
    start_date: date
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def tag_action_data(cls, data: Any) -> Any:
        return _tag_action_data(data)

    @field_validator("start_date", mode="before")
    @classmethod
    def parse_start_date(cls, v: Any) -> Any:
        """Accept only a calendar date, not a datetime string."""
        if isinstance(v, str):
            return date.fromisoformat(v.strip())
        if isinstance(v, datetime):
            raise ValueError("start_date must be a calendar date")
        return v

    @model_validator(mode="after")
    def validate_action_type(self) -> "ScheduledActionRequest":
        _check_action_type(self.action_type, self.action_data)
        return self


class ScheduledActionUpdate(BaseModel):
    """
    Partial update of a scheduled action.

    Only the fields that are set are applied. `id` and history are never
    writable. `skip_next` consumes the pending occurrence without running it.
    """
    model_config = ConfigDict(extra="forbid")

    is_active: Optional[bool] = None
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    action_data: Optional[ActionData] = None
    skip_next: bool = False

    @field_validator("start_date", mode="before")
    @classmethod
    def parse_start_date(cls, v: Any) -> Any:
        if isinstance(v, str):
            return date.fromisoformat(v.strip())
        if isinstance(v, datetime):
            raise ValueError("start_date must be a calendar date")
        return v


class ScheduledActionPage(BaseModel):
    """A page of scheduled actions, newest first."""

    items: list[ScheduledAction] = Field(default_factory=list)
    total_count: int = Field(ge=0)
    has_more: bool


# =============================================================================
# EXECUTION HISTORY
# =============================================================================

class ScheduledActionHistory(BaseModel):
    """
    One execution attempt of a scheduled action.

    Append-only: the only write is the insert at execution time.
    `sequence` is assigned by the store on insert and is strictly
    increasing, which gives the history reader a stable cursor.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    scheduled_action_id: str
    group_id: str
    action_type: ActionType
    due_date: date
    executed_at: datetime = Field(default_factory=datetime.utcnow)
    status: ExecutionStatus
    produced_ledger_entry_id: Optional[str] = None
    error_message: Optional[str] = None
    action_data: dict[str, Any] = Field(default_factory=dict)
    execution_duration_ms: Optional[int] = Field(default=None, ge=0)
    sequence: Optional[int] = None

    @model_validator(mode="after")
    def validate_outcome(self) -> "ScheduledActionHistory":
        if self.status == ExecutionStatus.SUCCEEDED and not self.produced_ledger_entry_id:
            raise ValueError("A succeeded execution must reference its ledger entry")
        if self.status == ExecutionStatus.FAILED and self.produced_ledger_entry_id:
            raise ValueError("A failed execution cannot reference a ledger entry")
        return self


class HistoryPage(BaseModel):
    """A page of execution history in chronological order."""

    records: list[ScheduledActionHistory] = Field(default_factory=list)
    next_cursor: Optional[str] = None


# =============================================================================
# EXECUTOR RESULTS
# =============================================================================

class ExecutionOutcome(str, Enum):
    """What a single execution attempt did."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ActionExecutionResult(BaseModel):
    """Result of one attempt to execute one occurrence."""

    action_id: str
    due_date: date
    outcome: ExecutionOutcome
    ledger_entry_id: Optional[str] = None
    history_id: Optional[str] = None
    error_message: Optional[str] = None


class SweepResult(BaseModel):
    """Summary of one executor sweep."""

    run_at: datetime
    due_actions: int = Field(ge=0)
    results: list[ActionExecutionResult] = Field(default_factory=list)

    def _count(self, outcome: ExecutionOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(ExecutionOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(ExecutionOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(ExecutionOutcome.SKIPPED)
