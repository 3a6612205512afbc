"""
In-Memory Storage Implementation

DESIGN DECISION: The in-memory backend is the reference implementation of
the storage interfaces. It is what the test suite runs against and what
the application uses when no database is configured.

Every table lives in one `MemoryDatabase` guarded by a single
`asyncio.Lock`. Each operation takes the lock and then mutates without
awaiting, so single-record compare-and-set and the multi-record execution
commits are atomic with respect to every other coroutine.

TRADEOFFS:
- Data is lost when the process exits
- Not shared between processes (use the sql backend for that)
"""

import asyncio
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from splitledger.models.audit import AuditEvent
from splitledger.models.ledger import Budget, LedgerEntry, LedgerEntryPage
from splitledger.models.scheduled import (
    ExecutionStatus,
    ScheduledAction,
    ScheduledActionHistory,
)
from splitledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    HistoryStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    ScheduledActionStorageInterface,
)


class MemoryDatabase:
    """Tables shared by the in-memory stores."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.entries: dict[str, LedgerEntry] = {}
        self.budgets: dict[str, Budget] = {}
        self.actions: dict[str, ScheduledAction] = {}
        self.history: list[ScheduledActionHistory] = []
        self.audit_events: list[AuditEvent] = []
        self._last_sequence = 0

    def next_sequence(self) -> int:
        self._last_sequence += 1
        return self._last_sequence

    def insert_entry(self, entry: LedgerEntry) -> None:
        if entry.id in self.entries:
            raise DuplicateError(f"Ledger entry {entry.id} already exists")
        self.entries[entry.id] = entry

    def insert_history(self, history: ScheduledActionHistory) -> ScheduledActionHistory:
        row = history.model_copy(update={"sequence": self.next_sequence()})
        self.history.append(row)
        return row


class MemoryLedgerStorage(LedgerStorageInterface):
    """Ledger entries and budgets held in process memory."""

    def __init__(self, db: Optional[MemoryDatabase] = None):
        self._db = db or MemoryDatabase()

    async def append(self, entry: LedgerEntry) -> str:
        async with self._db.lock:
            self._db.insert_entry(entry)
        return entry.id

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        async with self._db.lock:
            return self._db.entries.get(entry_id)

    async def soft_delete(self, entry_id: str, deleted_at: datetime) -> bool:
        async with self._db.lock:
            entry = self._db.entries.get(entry_id)
            if entry is None:
                raise NotFoundError(f"Ledger entry {entry_id} not found")
            if not entry.is_live:
                return False
            self._db.entries[entry_id] = entry.soft_deleted(deleted_at)
            return True

    async def query_live(
        self,
        group_id: str,
        budget_id: Optional[str] = None,
    ) -> list[LedgerEntry]:
        async with self._db.lock:
            return [
                entry for entry in self._db.entries.values()
                if entry.group_id == group_id
                and entry.is_live
                and (budget_id is None or entry.budget_id == budget_id)
            ]

    async def list_entries(
        self,
        group_id: str,
        offset: int = 0,
        limit: int = 50,
        include_deleted: bool = False,
        budget_id: Optional[str] = None,
    ) -> LedgerEntryPage:
        async with self._db.lock:
            matching = [
                entry for entry in self._db.entries.values()
                if entry.group_id == group_id
                and (include_deleted or entry.is_live)
                and (budget_id is None or entry.budget_id == budget_id)
            ]
        matching.sort(key=lambda e: (e.added_time, e.id), reverse=True)
        page = matching[offset:offset + limit]
        return LedgerEntryPage(
            entries=page,
            total_count=len(matching),
            has_more=offset + len(page) < len(matching),
        )

    async def create_budget(self, budget: Budget) -> str:
        async with self._db.lock:
            if budget.id in self._db.budgets:
                raise DuplicateError(f"Budget {budget.id} already exists")
            self._db.budgets[budget.id] = budget
        return budget.id

    async def get_budget(self, budget_id: str) -> Optional[Budget]:
        async with self._db.lock:
            return self._db.budgets.get(budget_id)

    async def list_budgets(
        self,
        group_id: str,
        include_deleted: bool = False,
    ) -> list[Budget]:
        async with self._db.lock:
            budgets = [
                b for b in self._db.budgets.values()
                if b.group_id == group_id and (include_deleted or b.is_live)
            ]
        return sorted(budgets, key=lambda b: (b.created_at, b.id))

    async def soft_delete_budget(self, budget_id: str, deleted_at: datetime) -> bool:
        async with self._db.lock:
            budget = self._db.budgets.get(budget_id)
            if budget is None:
                raise NotFoundError(f"Budget {budget_id} not found")
            if not budget.is_live:
                return False
            self._db.budgets[budget_id] = budget.model_copy(update={"deleted": deleted_at})
            return True


class MemoryScheduledActionStorage(ScheduledActionStorageInterface):
    """Scheduled actions held in process memory."""

    def __init__(self, db: Optional[MemoryDatabase] = None):
        self._db = db or MemoryDatabase()

    def _require(self, action_id: str) -> ScheduledAction:
        action = self._db.actions.get(action_id)
        if action is None:
            raise NotFoundError(f"Scheduled action {action_id} not found")
        return action

    async def insert(self, action: ScheduledAction) -> str:
        async with self._db.lock:
            if action.id in self._db.actions:
                raise DuplicateError(f"Scheduled action {action.id} already exists")
            self._db.actions[action.id] = action
        return action.id

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        async with self._db.lock:
            return self._db.actions.get(action_id)

    async def list_for_group(
        self,
        group_id: str,
        offset: int = 0,
        limit: int = 20,
    ) -> list[ScheduledAction]:
        async with self._db.lock:
            actions = [
                a for a in self._db.actions.values()
                if a.group_id == group_id and not a.is_deleted
            ]
        actions.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return actions[offset:offset + limit]

    async def count(self, group_id: str) -> int:
        async with self._db.lock:
            return sum(
                1 for a in self._db.actions.values()
                if a.group_id == group_id and not a.is_deleted
            )

    async def list_due(self, today: date) -> list[ScheduledAction]:
        async with self._db.lock:
            due = [a for a in self._db.actions.values() if a.is_due(today)]
        return sorted(due, key=lambda a: (a.next_execution_date, a.id))

    async def update(self, action: ScheduledAction, expected_version: int) -> bool:
        async with self._db.lock:
            current = self._require(action.id)
            if current.is_deleted or current.version != expected_version:
                return False
            self._db.actions[action.id] = action.model_copy(update={
                "version": expected_version + 1,
                "claim_token": None,
                "claim_expires_at": None,
            })
            return True

    async def soft_delete(self, action_id: str, deleted_at: datetime) -> bool:
        async with self._db.lock:
            current = self._require(action_id)
            if current.is_deleted:
                return False
            self._db.actions[action_id] = current.model_copy(update={
                "deleted_at": deleted_at,
                "updated_at": deleted_at,
                "version": current.version + 1,
                "claim_token": None,
                "claim_expires_at": None,
            })
            return True

    async def try_claim(
        self,
        action_id: str,
        expected_index: int,
        expected_version: int,
        token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        async with self._db.lock:
            current = self._db.actions.get(action_id)
            if (
                current is None
                or current.is_deleted
                or not current.is_active
                or current.occurrence_index != expected_index
                or current.version != expected_version
                or current.is_claimed(now)
            ):
                return False
            self._db.actions[action_id] = current.model_copy(update={
                "claim_token": token,
                "claim_expires_at": lease_expires_at,
            })
            return True

    async def complete_execution(
        self,
        action_id: str,
        token: str,
        expected_index: int,
        expected_version: int,
        entry: LedgerEntry,
        history: ScheduledActionHistory,
        next_execution_date: date,
        executed_at: datetime,
    ) -> bool:
        async with self._db.lock:
            current = self._db.actions.get(action_id)
            if (
                current is None
                or current.claim_token != token
                or current.occurrence_index != expected_index
                or current.version != expected_version
            ):
                return False
            # Raises before anything is written if the id is taken
            self._db.insert_entry(entry)
            self._db.insert_history(history)
            self._db.actions[action_id] = current.model_copy(update={
                "occurrence_index": expected_index + 1,
                "next_execution_date": next_execution_date,
                "last_occurrence_date": history.due_date,
                "last_executed_at": executed_at,
                "updated_at": executed_at,
                "version": current.version + 1,
                "claim_token": None,
                "claim_expires_at": None,
            })
            return True

    async def record_failure(
        self,
        action_id: str,
        token: str,
        history: ScheduledActionHistory,
    ) -> bool:
        async with self._db.lock:
            current = self._db.actions.get(action_id)
            if current is None or current.claim_token != token:
                return False
            self._db.insert_history(history)
            self._db.actions[action_id] = current.model_copy(update={
                "claim_token": None,
                "claim_expires_at": None,
            })
            return True


class MemoryHistoryStorage(HistoryStorageInterface):
    """Read side of the in-memory execution history."""

    def __init__(self, db: Optional[MemoryDatabase] = None):
        self._db = db or MemoryDatabase()

    async def list_for_action(
        self,
        action_id: str,
        after_sequence: Optional[int] = None,
        limit: int = 50,
        status: Optional[ExecutionStatus] = None,
    ) -> list[ScheduledActionHistory]:
        async with self._db.lock:
            rows = [
                row for row in self._db.history
                if row.scheduled_action_id == action_id
                and (after_sequence is None or row.sequence > after_sequence)
                and (status is None or row.status == status)
            ]
        # Appended in sequence order already
        return rows[:limit]

    async def get_record(self, history_id: str) -> Optional[ScheduledActionHistory]:
        async with self._db.lock:
            for row in self._db.history:
                if row.id == history_id:
                    return row
        return None


class MemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log held in process memory."""

    def __init__(self, db: Optional[MemoryDatabase] = None):
        self._db = db or MemoryDatabase()

    async def append_event(self, event: AuditEvent) -> bool:
        async with self._db.lock:
            self._db.audit_events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        async with self._db.lock:
            events = [e for e in self._db.audit_events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        async with self._db.lock:
            events = [
                e for e in self._db.audit_events
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        async with self._db.lock:
            events = list(self._db.audit_events)
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
