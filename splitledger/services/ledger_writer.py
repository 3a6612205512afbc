"""
Ledger Writer

Builds ledger entries from user-facing inputs: amounts as Decimals, who
paid how much, and split percentages.

DESIGN DECISION: Percentages are converted to integer minor-unit shares
here, once, with the largest-remainder method. The resulting entry always
satisfies the share invariant exactly, so no rounding drift ever reaches
the balance calculator.
"""

from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Union

from splitledger.models.ledger import (
    EntrySign,
    LedgerEntry,
    ParticipantShare,
    to_minor_units,
)


Weight = Union[int, Decimal]


def allocate_largest_remainder(total_minor: int, weights: Mapping[str, Weight]) -> dict[str, int]:
    """
    Split an integer total across keys in proportion to their weights.

    The floor of each exact share is handed out first, then the leftover
    units go one at a time to the largest fractional remainders (ties
    broken by key). The result always sums to `total_minor`.

    Raises:
        ValueError: If weights are empty, negative, or all zero
    """
    if not weights:
        raise ValueError("Cannot allocate across no participants")
    if any(w < 0 for w in weights.values()):
        raise ValueError("Allocation weights cannot be negative")

    weight_total = sum(Decimal(w) for w in weights.values())
    if weight_total == 0:
        raise ValueError("Allocation weights cannot all be zero")

    shares: dict[str, int] = {}
    remainders: list[tuple[Decimal, str]] = []
    for key, weight in weights.items():
        exact = Decimal(total_minor) * Decimal(weight) / weight_total
        floor = int(exact)
        shares[key] = floor
        remainders.append((exact - floor, key))

    leftover = total_minor - sum(shares.values())
    remainders.sort(key=lambda r: (-r[0], r[1]))
    for _, key in remainders[:leftover]:
        shares[key] += 1
    return shares


def build_expense_entry(
    group_id: str,
    amount: Decimal,
    currency: str,
    paid_by: Mapping[str, Decimal],
    split_pct_shares: Mapping[str, Decimal],
    description: str = "",
    sign: EntrySign = EntrySign.DEBIT,
    entry_id: Optional[str] = None,
    added_time: Optional[datetime] = None,
) -> LedgerEntry:
    """
    Build a split expense entry.

    Args:
        group_id: Group whose ledger receives the entry
        amount: Total amount, at most 2 decimal places
        currency: Currency code
        paid_by: How much each payer put in; must add up to `amount`
        split_pct_shares: Percentage each participant owes; must add up to 100
        description: Free text
        sign: DEBIT for a normal expense, CREDIT for a refund
        entry_id: Fixed id (used for deterministic scheduled entries)
        added_time: Creation time, defaults to now

    Raises:
        ValueError: If amounts or percentages don't add up
    """
    amount_minor = to_minor_units(amount)
    if amount_minor <= 0:
        raise ValueError("Expense amount must be positive")
    if sum(Decimal(p) for p in split_pct_shares.values()) != Decimal("100"):
        raise ValueError("Split percentages must add up to 100")

    paid_minor = {user: to_minor_units(paid) for user, paid in paid_by.items()}
    if sum(paid_minor.values()) != amount_minor:
        raise ValueError("Paid amounts must add up to the total amount")

    owed_minor = allocate_largest_remainder(amount_minor, split_pct_shares)

    fields = {
        "group_id": group_id,
        "amount_minor": amount_minor,
        "sign": sign,
        "currency": currency,
        "description": description,
        "paid_by": tuple(
            ParticipantShare(user_id=user, share_minor=share)
            for user, share in paid_minor.items()
        ),
        "participants": tuple(
            ParticipantShare(user_id=user, share_minor=share)
            for user, share in owed_minor.items()
        ),
    }
    if entry_id is not None:
        fields["id"] = entry_id
    if added_time is not None:
        fields["added_time"] = added_time
    return LedgerEntry(**fields)


def build_budget_entry(
    group_id: str,
    budget_id: str,
    amount: Decimal,
    currency: str,
    sign: EntrySign,
    description: str = "",
    entry_id: Optional[str] = None,
    added_time: Optional[datetime] = None,
) -> LedgerEntry:
    """
    Build a budget credit or debit entry.

    Raises:
        ValueError: If the amount is not positive or has more than 2 decimals
    """
    amount_minor = to_minor_units(amount)
    if amount_minor <= 0:
        raise ValueError("Budget amount must be positive")

    fields = {
        "group_id": group_id,
        "amount_minor": amount_minor,
        "sign": sign,
        "currency": currency,
        "description": description,
        "budget_id": budget_id,
    }
    if entry_id is not None:
        fields["id"] = entry_id
    if added_time is not None:
        fields["added_time"] = added_time
    return LedgerEntry(**fields)
