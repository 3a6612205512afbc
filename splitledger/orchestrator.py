"""
Main Orchestrator for Split Ledger

This module ties together all the components and defines the
end-to-end flows for:
1. Ledger writes and reads (expenses, budgets, balances, reports)
2. Scheduled actions (define, execute, inspect history)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Ledger entries are only ever appended or tombstoned, never edited
- Balances and reports are always derived from live entries
- Every write is audited

The flows are thin; each rule lives in the component that owns it.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

import structlog

from splitledger.audit import AlertSink, AuditLogger, create_correlation_id
from splitledger.config import Settings, get_settings
from splitledger.models.ledger import Budget, EntrySign, LedgerEntry, LedgerEntryPage
from splitledger.models.reports import BudgetRange, MonthlyBudgetReport, MonthlyTotal
from splitledger.models.scheduled import (
    ActionExecutionResult,
    ExecutionStatus,
    HistoryPage,
    ScheduledAction,
    ScheduledActionPage,
    ScheduledActionRequest,
    ScheduledActionUpdate,
    SweepResult,
)
from splitledger.queries import BalanceCalculator, BudgetAggregator, HistoryReader
from splitledger.scheduling import ScheduledActionRegistry, ScheduleExecutor
from splitledger.services.ledger_writer import build_budget_entry, build_expense_entry
from splitledger.services.storage import (
    HistoryStorageInterface,
    LedgerStorageInterface,
    MemoryAuditStorage,
    MemoryDatabase,
    MemoryHistoryStorage,
    MemoryLedgerStorage,
    MemoryScheduledActionStorage,
    NotFoundError,
    ScheduledActionStorageInterface,
    SqlAuditStorage,
    SqlDatabase,
    SqlHistoryStorage,
    SqlLedgerStorage,
    SqlScheduledActionStorage,
)


logger = structlog.get_logger(__name__)


class LedgerFlow:
    """
    Orchestrates ledger writes and the reads derived from them.

    Writes:
    - add_expense      -> split expense entry
    - add_budget_entry -> budget credit/debit entry
    - delete_entry     -> tombstone
    - create_budget / delete_budget

    Reads:
    - balances, pairwise debts, budget totals and monthly reports
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        default_currency: str = "GBP",
        default_page_size: int = 50,
    ):
        self._storage = ledger_storage
        self._audit_logger = audit_logger
        self._default_page_size = default_page_size
        self.balances = BalanceCalculator(ledger_storage, audit_logger)
        self.budgets = BudgetAggregator(ledger_storage, default_currency)

    # =========================================================================
    # WRITES
    # =========================================================================

    async def add_expense(
        self,
        group_id: str,
        amount: Decimal,
        currency: str,
        paid_by: dict[str, Decimal],
        split_pct_shares: dict[str, Decimal],
        description: str = "",
        sign: EntrySign = EntrySign.DEBIT,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """
        Record a split expense (or a refund, with sign=CREDIT).

        Raises:
            ValueError: If the amounts or percentages don't add up
        """
        entry = build_expense_entry(
            group_id=group_id,
            amount=amount,
            currency=currency,
            paid_by=paid_by,
            split_pct_shares=split_pct_shares,
            description=description,
            sign=sign,
            added_time=now,
        )
        await self._append(entry, correlation_id)
        return entry

    async def add_budget_entry(
        self,
        group_id: str,
        budget_id: str,
        amount: Decimal,
        currency: str,
        sign: EntrySign,
        description: str = "",
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """
        Record a budget credit or debit.

        Raises:
            NotFoundError: If the budget doesn't exist in this group or was deleted
            ValueError: If the amount is invalid
        """
        budget = await self._storage.get_budget(budget_id)
        if budget is None or not budget.is_live or budget.group_id != group_id:
            raise NotFoundError(f"Budget {budget_id} not found")

        entry = build_budget_entry(
            group_id=group_id,
            budget_id=budget_id,
            amount=amount,
            currency=currency,
            sign=sign,
            description=description,
            added_time=now,
        )
        await self._append(entry, correlation_id)
        return entry

    async def _append(self, entry: LedgerEntry, correlation_id: Optional[UUID]) -> None:
        await self._storage.append(entry)
        logger.info(
            "ledger_entry_appended",
            entry_id=entry.id,
            group_id=entry.group_id,
            kind=entry.kind.value,
        )
        if self._audit_logger:
            await self._audit_logger.log_entry_appended(
                entry_id=entry.id,
                group_id=entry.group_id,
                amount=str(entry.amount),
                currency=entry.currency,
                correlation_id=correlation_id,
            )

    async def delete_entry(
        self,
        entry_id: str,
        now: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Tombstone an entry.

        Returns:
            True if this call deleted it, False if it was already deleted

        Raises:
            NotFoundError: If the entry doesn't exist
        """
        entry = await self._storage.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found")

        deleted = await self._storage.soft_delete(entry_id, now)
        if deleted and self._audit_logger:
            await self._audit_logger.log_entry_deleted(
                entry_id=entry_id,
                group_id=entry.group_id,
                correlation_id=correlation_id,
            )
        return deleted

    async def create_budget(
        self,
        group_id: str,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Budget:
        fields = {"group_id": group_id, "name": name}
        if now is not None:
            fields["created_at"] = now
        budget = Budget(**fields)
        await self._storage.create_budget(budget)
        if self._audit_logger:
            await self._audit_logger.log_budget_created(
                budget_id=budget.id,
                group_id=group_id,
                name=name,
            )
        return budget

    async def delete_budget(self, budget_id: str, now: datetime) -> bool:
        """
        Tombstone a budget container. Its entries stay in the ledger.

        Raises:
            NotFoundError: If the budget doesn't exist
        """
        budget = await self._storage.get_budget(budget_id)
        if budget is None:
            raise NotFoundError(f"Budget {budget_id} not found")

        deleted = await self._storage.soft_delete_budget(budget_id, now)
        if deleted and self._audit_logger:
            await self._audit_logger.log_budget_deleted(
                budget_id=budget_id,
                group_id=budget.group_id,
            )
        return deleted

    # =========================================================================
    # READS
    # =========================================================================

    async def list_transactions(
        self,
        group_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
        include_deleted: bool = False,
        budget_id: Optional[str] = None,
    ) -> LedgerEntryPage:
        """A page of a group's entries, newest first."""
        return await self._storage.list_entries(
            group_id,
            offset=offset,
            limit=limit or self._default_page_size,
            include_deleted=include_deleted,
            budget_id=budget_id,
        )

    async def get_balances(self, group_id: str, viewer: Optional[str] = None):
        """Net balance per user, or per counterparty from `viewer`'s side."""
        if viewer is None:
            return await self.balances.get_balances(group_id)
        return await self.balances.get_balances_for_user(group_id, viewer)

    async def get_monthly_budget(
        self,
        group_id: str,
        currency: str,
        range_: Union[BudgetRange, str],
        now: datetime,
        budget_id: Optional[str] = None,
    ) -> list[MonthlyTotal]:
        return await self.budgets.get_monthly(
            group_id, currency, BudgetRange(range_), now, budget_id=budget_id,
        )

    async def get_budget_report(
        self,
        group_id: str,
        range_: Union[BudgetRange, str],
        now: datetime,
        budget_id: Optional[str] = None,
    ) -> MonthlyBudgetReport:
        return await self.budgets.get_monthly_report(
            group_id, BudgetRange(range_), now, budget_id=budget_id,
        )


class SchedulingFlow:
    """
    Orchestrates scheduled actions.

    Definitions go through the registry, executions through the executor
    and reads of past executions through the history reader.
    """

    def __init__(
        self,
        action_storage: ScheduledActionStorageInterface,
        ledger_storage: LedgerStorageInterface,
        history_storage: HistoryStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        alert_sink: Optional[AlertSink] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        scheduler = settings.scheduler
        ledger = settings.ledger

        self.registry = ScheduledActionRegistry(
            action_storage,
            ledger_storage=ledger_storage,
            audit_logger=audit_logger,
            default_page_size=ledger.scheduled_actions_page_size,
        )
        self.executor = ScheduleExecutor(
            action_storage,
            ledger_storage,
            alert_sink=alert_sink,
            audit_logger=audit_logger,
            claim_lease_seconds=scheduler.claim_lease_seconds,
            store_timeout_seconds=scheduler.store_timeout_seconds,
            batch_size=scheduler.batch_size,
            max_catch_up_executions=scheduler.max_catch_up_executions,
        )
        self.history = HistoryReader(
            history_storage,
            action_storage,
            default_page_size=scheduler.history_page_size,
        )

    async def create_action(
        self,
        request: Union[ScheduledActionRequest, dict],
        group_id: str,
        user_id: str,
        now: datetime,
    ) -> ScheduledAction:
        return await self.registry.create(request, group_id, user_id, now)

    async def update_action(
        self,
        action_id: str,
        changes: Union[ScheduledActionUpdate, dict],
        now: datetime,
    ) -> ScheduledAction:
        return await self.registry.update(action_id, changes, now)

    async def delete_action(self, action_id: str, now: datetime) -> None:
        await self.registry.delete(action_id, now)

    async def list_actions(
        self,
        group_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> ScheduledActionPage:
        return await self.registry.list_actions(group_id, offset=offset, limit=limit)

    async def run_due(self, now: datetime) -> SweepResult:
        """Execute everything due at `now`. Meant to be called by a cron job."""
        return await self.executor.sweep(now, correlation_id=create_correlation_id())

    async def run_now(self, action_id: str, now: datetime) -> ActionExecutionResult:
        return await self.executor.run_now(action_id, now, correlation_id=create_correlation_id())

    async def get_history(
        self,
        action_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> HistoryPage:
        return await self.history.list_history(action_id, cursor=cursor, limit=limit, status=status)


def create_app_components(
    settings: Optional[Settings] = None,
    alert_sink: Optional[AlertSink] = None,
) -> tuple[LedgerFlow, SchedulingFlow]:
    """
    Factory function to create all application components.

    The storage backend is picked from settings: `memory` keeps everything
    in process, `sql` connects to `database_url` and creates missing tables.

    Returns:
        (ledger_flow, scheduling_flow)
    """
    settings = settings or get_settings()
    storage = settings.storage

    if storage.backend == "sql":
        db = SqlDatabase.from_url(storage.database_url, echo=storage.echo)
        db.create_tables()
        ledger_storage = SqlLedgerStorage(db)
        action_storage = SqlScheduledActionStorage(db)
        history_storage = SqlHistoryStorage(db)
        audit_storage = SqlAuditStorage(db)
    else:
        db = MemoryDatabase()
        ledger_storage = MemoryLedgerStorage(db)
        action_storage = MemoryScheduledActionStorage(db)
        history_storage = MemoryHistoryStorage(db)
        audit_storage = MemoryAuditStorage(db)

    logger.info("storage_initialized", backend=storage.backend)
    audit_logger = AuditLogger(audit_storage)

    ledger_flow = LedgerFlow(
        ledger_storage,
        audit_logger=audit_logger,
        default_currency=settings.ledger.default_currency,
        default_page_size=settings.ledger.transactions_page_size,
    )
    scheduling_flow = SchedulingFlow(
        action_storage,
        ledger_storage,
        history_storage,
        audit_logger=audit_logger,
        alert_sink=alert_sink,
        settings=settings,
    )
    return ledger_flow, scheduling_flow
