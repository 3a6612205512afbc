"""
Balance Calculator

Derives who owes whom from the live entries of a group's ledger.

SIGN CONVENTION:
For a normal (debit) expense, every payer is credited with what they paid
and every participant is debited with what they owe:

    net[user][currency] = paid_share - owed_share

A credit entry (a refund) reverses both sides. Budget entries move money
in and out of a budget, not between users, so they never affect balances.
A positive net means the group owes that user; a negative net means the
user owes the group. Because paid and owed shares both sum to the entry's
magnitude, every entry contributes zero to each currency column, so the
result always conserves.

DESIGN DECISION: All arithmetic is on integer minor units and the output
is built from sorted keys, so the result depends only on the set of live
entries and never on their order.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from splitledger.models.ledger import EntrySign, LedgerEntry, from_minor_units
from splitledger.services.ledger_writer import allocate_largest_remainder


logger = structlog.get_logger(__name__)


Balances = dict[str, dict[str, Decimal]]


class InconsistentEntryError(Exception):
    """A ledger entry's shares don't add up to its amount."""

    def __init__(self, entry_id: str, reason: str):
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Ledger entry {entry_id} is inconsistent: {reason}")


def _check_entry(entry: LedgerEntry) -> None:
    paid = sum(share.share_minor for share in entry.paid_by)
    owed = sum(share.share_minor for share in entry.participants)
    if paid != entry.amount_minor:
        raise InconsistentEntryError(
            entry.id, f"paid shares total {paid}, amount is {entry.amount_minor}"
        )
    if owed != entry.amount_minor:
        raise InconsistentEntryError(
            entry.id, f"owed shares total {owed}, amount is {entry.amount_minor}"
        )


def _entry_net_minor(entry: LedgerEntry) -> dict[str, int]:
    """Each user's net within one entry, in minor units."""
    direction = 1 if entry.sign == EntrySign.DEBIT else -1
    net: dict[str, int] = defaultdict(int)
    for share in entry.paid_by:
        net[share.user_id] += direction * share.share_minor
    for share in entry.participants:
        net[share.user_id] -= direction * share.share_minor
    return net


def _net_minor(entries: Iterable[LedgerEntry]) -> dict[str, dict[str, int]]:
    """Per-user, per-currency net in minor units over live expense entries."""
    net: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for entry in entries:
        if not entry.is_live or entry.budget_id is not None:
            continue
        _check_entry(entry)
        for user, amount in _entry_net_minor(entry).items():
            net[user][entry.currency] += amount
    return net


def compute_balances(entries: Iterable[LedgerEntry]) -> Balances:
    """
    Net balance per user and currency over the live entries.

    Every user who appears in a live expense entry is present in the
    result, even when their net comes to zero.

    Raises:
        InconsistentEntryError: If any live entry's shares don't add up.
            No partial result is returned.
    """
    net = _net_minor(entries)
    return {
        user: {
            currency: from_minor_units(net[user][currency])
            for currency in sorted(net[user])
        }
        for user in sorted(net)
    }


def compute_pairwise_debts(entries: Iterable[LedgerEntry]) -> dict[str, dict[str, dict[str, Decimal]]]:
    """
    Resolve live expense entries into debtor -> creditor -> currency amounts.

    Debts only arise between users who share an entry: within each entry,
    every user who owes more than they paid owes the entry's net payers in
    proportion to what each of them is owed. Shares are allocated in whole
    minor units. Opposite debts between the same pair are then netted, so a
    pair appears in at most one direction per currency.

    Raises:
        InconsistentEntryError: If any live entry's shares don't add up.
    """
    owed: dict[tuple[str, str, str], int] = defaultdict(int)
    for entry in entries:
        if not entry.is_live or entry.budget_id is not None:
            continue
        _check_entry(entry)

        net = _entry_net_minor(entry)
        creditors = {u: a for u, a in net.items() if a > 0}
        if not creditors:
            continue
        for debtor in sorted(u for u, a in net.items() if a < 0):
            allocation = allocate_largest_remainder(-net[debtor], creditors)
            for creditor, amount in allocation.items():
                owed[(debtor, creditor, entry.currency)] += amount

    debts: dict[str, dict[str, dict[str, Decimal]]] = {}
    for (debtor, creditor, currency) in sorted(owed):
        amount = owed[(debtor, creditor, currency)] - owed.get((creditor, debtor, currency), 0)
        if amount <= 0:
            continue
        debts.setdefault(debtor, {}).setdefault(creditor, {})[currency] = from_minor_units(amount)
    return debts


def balances_for_user(entries: Iterable[LedgerEntry], viewer: str) -> Balances:
    """
    Balances as seen by one user: other user -> currency -> amount.

    Positive amounts are owed to the viewer, negative amounts are owed
    by the viewer.
    """
    result: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))
    for debtor, creditors in compute_pairwise_debts(entries).items():
        for creditor, currencies in creditors.items():
            for currency, amount in currencies.items():
                if creditor == viewer:
                    result[debtor][currency] += amount
                elif debtor == viewer:
                    result[creditor][currency] -= amount
    return {
        user: {currency: result[user][currency] for currency in sorted(result[user])}
        for user in sorted(result)
    }


class BalanceCalculator:
    """
    Reads a group's live entries from the ledger store and derives balances.

    Reads are side-effect free. A balance computed while a write is in
    flight may or may not include that write, but never a torn entry.
    """

    def __init__(self, ledger_storage, audit_logger=None):
        self._storage = ledger_storage
        self._audit_logger = audit_logger

    async def _live_entries(self, group_id: str) -> list[LedgerEntry]:
        return await self._storage.query_live(group_id)

    async def _report_inconsistent(self, error: InconsistentEntryError) -> None:
        logger.error("inconsistent_ledger_entry", entry_id=error.entry_id, reason=error.reason)
        if self._audit_logger:
            await self._audit_logger.log_integrity_violation(
                entry_id=error.entry_id,
                error_message=error.reason,
            )

    async def get_balances(self, group_id: str) -> Balances:
        entries = await self._live_entries(group_id)
        try:
            return compute_balances(entries)
        except InconsistentEntryError as e:
            await self._report_inconsistent(e)
            raise

    async def get_balances_for_user(
        self,
        group_id: str,
        viewer: str,
    ) -> Balances:
        entries = await self._live_entries(group_id)
        try:
            return balances_for_user(entries, viewer)
        except InconsistentEntryError as e:
            await self._report_inconsistent(e)
            raise

    async def get_pairwise_debts(
        self,
        group_id: str,
        viewer: Optional[str] = None,
    ) -> dict[str, dict[str, dict[str, Decimal]]]:
        """All debts in the group, or only those involving `viewer`."""
        entries = await self._live_entries(group_id)
        try:
            debts = compute_pairwise_debts(entries)
        except InconsistentEntryError as e:
            await self._report_inconsistent(e)
            raise
        if viewer is None:
            return debts
        return {
            debtor: {
                creditor: amounts
                for creditor, amounts in creditors.items()
                if debtor == viewer or creditor == viewer
            }
            for debtor, creditors in debts.items()
            if debtor == viewer or viewer in creditors
        }
