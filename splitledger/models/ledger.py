"""
Ledger Data Models

These models define the records of the shared ledger:
1. LedgerEntry - one expense or budget transaction
2. ParticipantShare - one user's portion of an entry
3. Budget - a named container that budget entries are tagged with

DESIGN DECISION: Amounts are stored as integer minor units.
Decimal values only appear at the edges (requests and responses).
Summing integers keeps balances exact no matter how many entries are added.

DESIGN DECISION: Ledger entries are frozen. The only mutation is the
soft delete, which produces a new tombstoned copy. Nothing is ever
physically removed so the full history stays auditable.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


MINOR_UNITS_PER_MAJOR = 100
AMOUNT_QUANTUM = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a decimal amount to integer minor units.

    Raises ValueError for amounts with more than two decimal places
    instead of silently rounding them.
    """
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    if value.quantize(AMOUNT_QUANTUM) != value:
        raise ValueError(f"Amount has more than 2 decimal places: {amount}")
    return int(value * MINOR_UNITS_PER_MAJOR)


def from_minor_units(minor: int) -> Decimal:
    """Convert integer minor units back to a 2-place Decimal."""
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(AMOUNT_QUANTUM)


# =============================================================================
# ENUMS
# =============================================================================

class EntrySign(str, Enum):
    """
    Sign channel for a ledger entry.

    The magnitude is always stored as a non-negative number.
    A debit reduces a budget total, a credit increases it.
    """
    CREDIT = "credit"
    DEBIT = "debit"


class EntryKind(str, Enum):
    """Whether an entry is a split expense or a budget movement."""
    EXPENSE = "expense"
    BUDGET = "budget"


# =============================================================================
# LEDGER MODELS
# =============================================================================

class ParticipantShare(BaseModel):
    """One user's share of a ledger entry, in minor units."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1, max_length=100)
    share_minor: int = Field(..., ge=0)

    @property
    def share(self) -> Decimal:
        return from_minor_units(self.share_minor)


class LedgerEntry(BaseModel):
    """
    A single expense or budget transaction in the shared ledger.

    For an expense, `paid_by` records who put money in and `participants`
    records who the money was spent on. Both lists must sum to the entry's
    magnitude; this is checked once, when the entry is created.

    A budget entry is tagged with `budget_id` and carries no shares.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    # Identity (immutable)
    id: str = Field(
        default_factory=lambda: uuid4().hex,
        min_length=1,
        max_length=100,
        description="Unique entry identifier"
    )
    group_id: str = Field(
        ...,
        min_length=1,
        description="Group whose ledger this entry belongs to"
    )
    added_time: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the entry was created (UTC)"
    )

    # Tombstone
    deleted: Optional[datetime] = Field(
        default=None,
        description="When the entry was soft-deleted, if it was"
    )

    # Amount
    amount_minor: int = Field(
        ...,
        ge=0,
        description="Magnitude in minor units"
    )
    sign: EntrySign = Field(
        default=EntrySign.DEBIT,
        description="Sign channel for the magnitude"
    )
    currency: str = Field(
        ...,
        min_length=1,
        max_length=10,
        description="Currency code, treated as an opaque grouping key"
    )
    description: str = Field(
        default="",
        max_length=255,
    )

    # Split
    paid_by: tuple[ParticipantShare, ...] = Field(default_factory=tuple)
    participants: tuple[ParticipantShare, ...] = Field(default_factory=tuple)

    # Budget association
    budget_id: Optional[str] = None

    @field_validator("paid_by", "participants")
    @classmethod
    def unique_users(
        cls, v: tuple[ParticipantShare, ...]
    ) -> tuple[ParticipantShare, ...]:
        user_ids = [share.user_id for share in v]
        if len(set(user_ids)) != len(user_ids):
            raise ValueError("A user can appear only once per share list")
        return v

    @model_validator(mode="after")
    def validate_shares(self) -> "LedgerEntry":
        """Shares must add up to the entry's magnitude."""
        if self.budget_id is not None:
            if self.paid_by or self.participants:
                raise ValueError("Budget entries do not carry participant shares")
            return self

        if not self.paid_by or not self.participants:
            raise ValueError("Expense entries need payers and participants")
        if sum(s.share_minor for s in self.paid_by) != self.amount_minor:
            raise ValueError("Paid shares must add up to the entry amount")
        if sum(s.share_minor for s in self.participants) != self.amount_minor:
            raise ValueError("Participant shares must add up to the entry amount")
        return self

    @property
    def kind(self) -> EntryKind:
        return EntryKind.BUDGET if self.budget_id is not None else EntryKind.EXPENSE

    @property
    def is_live(self) -> bool:
        return self.deleted is None

    @property
    def signed_minor(self) -> int:
        """Magnitude with the sign channel applied."""
        return self.amount_minor if self.sign == EntrySign.CREDIT else -self.amount_minor

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor)

    def soft_deleted(self, at: datetime) -> "LedgerEntry":
        """Return a tombstoned copy of this entry."""
        if self.deleted is not None:
            raise ValueError(f"Entry {self.id} is already deleted")
        return self.model_copy(update={"deleted": at})


class Budget(BaseModel):
    """A named container that owns budget-tagged ledger entries."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(
        default_factory=lambda: uuid4().hex,
        min_length=1,
        max_length=100,
    )
    group_id: str = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, max_length=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    deleted: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.deleted is None


class LedgerEntryPage(BaseModel):
    """A page of ledger entries, newest first."""

    entries: list[LedgerEntry] = Field(default_factory=list)
    total_count: int = Field(ge=0)
    has_more: bool
