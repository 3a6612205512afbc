"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run against an in-memory store in tests and a SQL database in production
2. Keep balance, budget and scheduling logic decoupled from the backend
3. State the atomicity each operation needs in one place

The interface is intentionally narrow - we're not building a full ORM.
Compare-and-set operations return False when the guard fails instead of
raising, so callers decide whether a lost race is an error or a skip.
"""

from abc import ABC, abstractmethod
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


class LedgerStorageInterface(ABC):
    """
    Abstract interface for the ledger: entries and budget containers.

    Entries are never physically removed. A soft delete sets the
    `deleted` tombstone exactly once.
    """

    @abstractmethod
    async def append(self, entry: LedgerEntry) -> str:
        """
        Append a new entry to the ledger.

        Returns:
            The entry's id

        Raises:
            DuplicateError: If an entry with the same id exists
        """
        pass

    @abstractmethod
    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        """Retrieve an entry by id, deleted or not."""
        pass

    @abstractmethod
    async def soft_delete(self, entry_id: str, deleted_at: datetime) -> bool:
        """
        Tombstone an entry.

        Compare-and-set on the entry still being live.

        Returns:
            True if this call deleted it, False if it was already deleted

        Raises:
            NotFoundError: If the entry doesn't exist
        """
        pass

    @abstractmethod
    async def query_live(
        self,
        group_id: str,
        budget_id: Optional[str] = None,
    ) -> list[LedgerEntry]:
        """
        All live entries of a group, optionally only those tagged with
        `budget_id`. Order is unspecified.
        """
        pass

    @abstractmethod
    async def list_entries(
        self,
        group_id: str,
        offset: int = 0,
        limit: int = 50,
        include_deleted: bool = False,
        budget_id: Optional[str] = None,
    ) -> LedgerEntryPage:
        """
        Page through a group's entries, newest first.

        Args:
            group_id: Group whose ledger to read
            offset: Number of entries to skip
            limit: Maximum number of entries to return
            include_deleted: Also return tombstoned entries
            budget_id: Only entries tagged with this budget
        """
        pass

    @abstractmethod
    async def create_budget(self, budget: Budget) -> str:
        """
        Create a budget container.

        Raises:
            DuplicateError: If a budget with the same id exists
        """
        pass

    @abstractmethod
    async def get_budget(self, budget_id: str) -> Optional[Budget]:
        """Retrieve a budget by id, deleted or not."""
        pass

    @abstractmethod
    async def list_budgets(
        self,
        group_id: str,
        include_deleted: bool = False,
    ) -> list[Budget]:
        """List a group's budgets, oldest first."""
        pass

    @abstractmethod
    async def soft_delete_budget(self, budget_id: str, deleted_at: datetime) -> bool:
        """
        Tombstone a budget container.

        Returns:
            True if this call deleted it, False if it was already deleted

        Raises:
            NotFoundError: If the budget doesn't exist
        """
        pass


class ScheduledActionStorageInterface(ABC):
    """
    Abstract interface for scheduled actions and their execution commits.

    Every write bumps `version`. `update` is a compare-and-set on it.
    Execution goes through `try_claim` followed by exactly one of
    `complete_execution` or `record_failure`, each of which is atomic:
    either every row it names is written or none is.
    """

    @abstractmethod
    async def insert(self, action: ScheduledAction) -> str:
        """
        Store a new scheduled action.

        Raises:
            DuplicateError: If an action with the same id exists
        """
        pass

    @abstractmethod
    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        """Retrieve an action by id, including soft-deleted ones."""
        pass

    @abstractmethod
    async def list_for_group(
        self,
        group_id: str,
        offset: int = 0,
        limit: int = 20,
    ) -> list[ScheduledAction]:
        """A group's non-deleted actions, newest `created_at` first."""
        pass

    @abstractmethod
    async def count(self, group_id: str) -> int:
        """Number of non-deleted actions in a group."""
        pass

    @abstractmethod
    async def list_due(self, today: date) -> list[ScheduledAction]:
        """
        Every active, non-deleted action whose next execution date is on
        or before `today`, earliest due first.
        """
        pass

    @abstractmethod
    async def update(self, action: ScheduledAction, expected_version: int) -> bool:
        """
        Replace an action's definition if its stored version still matches.

        The store writes `expected_version + 1` and clears any pending
        claim, so an execution already in flight can no longer commit.

        Returns:
            False if the version moved or the action was deleted meanwhile

        Raises:
            NotFoundError: If the action doesn't exist
        """
        pass

    @abstractmethod
    async def soft_delete(self, action_id: str, deleted_at: datetime) -> bool:
        """
        Mark an action deleted. Terminal.

        Returns:
            True if this call deleted it, False if it was already deleted

        Raises:
            NotFoundError: If the action doesn't exist
        """
        pass

    @abstractmethod
    async def try_claim(
        self,
        action_id: str,
        expected_index: int,
        expected_version: int,
        token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """
        Reserve occurrence `expected_index` of an action for one executor.

        Succeeds only if the action is active, not deleted, still at
        `expected_index` and `expected_version`, and carries no live claim
        (none, or one that expired at or before `now`). Any update made
        since the caller read the action therefore defeats the claim.

        Returns:
            True if the claim was taken
        """
        pass

    @abstractmethod
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
        """
        Atomically commit one successful execution.

        In a single transaction: append `entry` to the ledger, append the
        succeeded `history` row, advance the action to `expected_index + 1`
        with `next_execution_date`, bump its version and release the claim.

        Returns:
            False (and writes nothing) if the claim token, index or version
            no longer match

        Raises:
            DuplicateError: If the ledger entry id already exists
        """
        pass

    @abstractmethod
    async def record_failure(
        self,
        action_id: str,
        token: str,
        history: ScheduledActionHistory,
    ) -> bool:
        """
        Atomically append a failed history row and release the claim.

        The occurrence index is left unchanged so the occurrence is
        retried on the next sweep.

        Returns:
            False (and writes nothing) if the claim token no longer matches
        """
        pass


class HistoryStorageInterface(ABC):
    """
    Read access to the execution history.

    Rows are only ever written by `complete_execution` and
    `record_failure`. The store assigns each row a strictly increasing
    `sequence` at insert time.
    """

    @abstractmethod
    async def list_for_action(
        self,
        action_id: str,
        after_sequence: Optional[int] = None,
        limit: int = 50,
        status: Optional[ExecutionStatus] = None,
    ) -> list[ScheduledActionHistory]:
        """
        History rows for one action in ascending sequence order.

        Args:
            action_id: Scheduled action whose history to read
            after_sequence: Only rows with a greater sequence
            limit: Maximum number of rows to return
            status: Only rows with this outcome
        """
        pass

    @abstractmethod
    async def get_record(self, history_id: str) -> Optional[ScheduledActionHistory]:
        """Retrieve one history row by id."""
        pass


class AuditStorageInterface(ABC):
    """
    Persistent audit trail. Events are only ever appended.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Persist one event.

        Returns:
            True once the event is stored
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """All events for a correlation ID, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """All events for a specific entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """The most recent audit events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class StorageConnectionError(StorageError):
    """Could not reach the storage backend."""
    pass


class ConcurrentClaimLostError(StorageError):
    """Another executor already claimed or advanced this occurrence."""

    def __init__(self, action_id: str, occurrence_index: int):
        self.action_id = action_id
        self.occurrence_index = occurrence_index
        super().__init__(
            f"Occurrence {occurrence_index} of scheduled action {action_id} "
            "was claimed by another executor"
        )


class StaleVersionError(StorageError):
    """The record changed between read and compare-and-set write."""

    def __init__(self, entity_id: str, expected_version: int):
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_id} is no longer at version {expected_version}"
        )
