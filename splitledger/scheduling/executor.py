"""
Schedule Executor

Runs due scheduled actions: claims the pending occurrence, materializes its
ledger entry, and commits the entry together with a history row.

EXECUTION STEP (per occurrence):
1. Claim   - compare-and-set on the action's occurrence index and version.
             Losing the claim means another executor owns this occurrence,
             or the action was edited since it was read; either way it is
             a skip, not an error.
2. Build   - turn the action payload into a ledger entry with a
             deterministic id (tx_<action>_<date> / bg_<action>_<date>).
3. Commit  - one atomic store write appends the entry and a `succeeded`
             history row, advances the index and releases the claim.
4. Failure - any error in 2 or 3 appends a `failed` history row and
             releases the claim without advancing. The occurrence stays
             due and is retried on the next sweep. The failure goes to the
             alert sink; it never escapes the sweep.

DESIGN DECISION: At-most-once execution rests on two guards in the store:
the claim is a conditional write on the occurrence index and version, and
the commit only applies while the caller's claim token and version are
still current. An execution never commits a payload that was edited after
it was read. Two sweeps
racing on the same action therefore produce exactly one ledger entry.

Every store call carries a timeout. A timed-out commit is atomic in the
store, so it leaves either everything or nothing behind.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Awaitable, Optional, TypeVar
from uuid import UUID, uuid4

import structlog

from splitledger.audit.alerts import AlertSink, LoggingAlertSink
from splitledger.models.ledger import Budget, LedgerEntry
from splitledger.models.scheduled import (
    ActionExecutionResult,
    BudgetActionData,
    ExecutionOutcome,
    ExecutionStatus,
    ExpenseActionData,
    ScheduledAction,
    ScheduledActionHistory,
    SweepResult,
)
from splitledger.scheduling.recurrence import next_execution_date
from splitledger.services.ledger_writer import build_budget_entry, build_expense_entry
from splitledger.services.storage.interface import (
    ConcurrentClaimLostError,
    LedgerStorageInterface,
    NotFoundError,
    ScheduledActionStorageInterface,
    StorageError,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ExecutionFailedError(Exception):
    """An occurrence could not be turned into a ledger entry."""

    def __init__(self, action_id: str, message: str):
        self.action_id = action_id
        super().__init__(message)


def ledger_entry_id(action: ScheduledAction, due_date) -> str:
    """Deterministic id of the entry an occurrence produces."""
    prefix = "tx" if isinstance(action.action_data, ExpenseActionData) else "bg"
    return f"{prefix}_{action.id}_{due_date.isoformat()}"


class ScheduleExecutor:
    """
    Executes due scheduled actions.

    Safe to run from several processes or coroutines at once.
    """

    def __init__(
        self,
        action_storage: ScheduledActionStorageInterface,
        ledger_storage: LedgerStorageInterface,
        alert_sink: Optional[AlertSink] = None,
        audit_logger=None,
        claim_lease_seconds: int = 300,
        store_timeout_seconds: float = 10.0,
        batch_size: int = 10,
        max_catch_up_executions: int = 31,
    ):
        self._actions = action_storage
        self._ledger = ledger_storage
        self._alerts = alert_sink or LoggingAlertSink()
        self._audit_logger = audit_logger
        self._lease = timedelta(seconds=claim_lease_seconds)
        self._timeout = store_timeout_seconds
        self._batch_size = batch_size
        self._max_catch_up = max_catch_up_executions

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await a store call, bounded by the configured timeout."""
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _report_error(
        self,
        event: str,
        error: BaseException,
        details: dict,
        correlation_id: Optional[UUID],
    ) -> None:
        """Log and audit an error that is handled inside the sweep."""
        message = str(error) or type(error).__name__
        logger.error(event, error=message, **details)
        if self._audit_logger:
            await self._audit_logger.log_error(
                error_type=event,
                error_message=message,
                details=details,
                correlation_id=correlation_id,
            )

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def sweep(
        self,
        now: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> SweepResult:
        """
        Execute every action due at `now`.

        Actions are processed in batches, concurrently within a batch. An
        action that fell behind catches up on missed occurrences, up to the
        configured cap, and stops at its first failure.
        """
        due = await self._call(self._actions.list_due(now.date()))
        logger.info("sweep_started", due_actions=len(due), run_at=now.isoformat())

        results: list[ActionExecutionResult] = []
        for start in range(0, len(due), self._batch_size):
            batch = due[start:start + self._batch_size]
            batch_results = await asyncio.gather(
                *(self._run_action(action, now, correlation_id) for action in batch)
            )
            for action_results in batch_results:
                results.extend(action_results)

        result = SweepResult(run_at=now, due_actions=len(due), results=results)
        logger.info(
            "sweep_finished",
            due_actions=result.due_actions,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
        )
        if self._audit_logger:
            await self._audit_logger.log_sweep_completed(
                due_count=result.due_actions,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
                correlation_id=correlation_id,
            )
        return result

    async def _run_action(
        self,
        action: ScheduledAction,
        now: datetime,
        correlation_id: Optional[UUID],
    ) -> list[ActionExecutionResult]:
        """Execute one action's due occurrences, oldest first."""
        results = []
        today = now.date()
        for _ in range(self._max_catch_up):
            result = await self._execute_guarded(action, now, correlation_id)
            results.append(result)
            if result.outcome != ExecutionOutcome.SUCCEEDED:
                break
            try:
                refreshed = await self._call(self._actions.get(action.id))
            except (asyncio.TimeoutError, StorageError) as e:
                # Remaining occurrences stay due for the next sweep
                await self._report_error(
                    "catch_up_refresh_failed", e, {"action_id": action.id}, correlation_id,
                )
                break
            if refreshed is None or not refreshed.is_due(today):
                break
            action = refreshed
        else:
            logger.warning(
                "catch_up_limit_reached",
                action_id=action.id,
                limit=self._max_catch_up,
            )
        return results

    async def run_now(
        self,
        action_id: str,
        now: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> ActionExecutionResult:
        """
        Execute an action's pending occurrence immediately, due or not.

        Raises:
            NotFoundError: If the action doesn't exist or was deleted
            ExecutionFailedError: If the action is disabled
        """
        action = await self._call(self._actions.get(action_id))
        if action is None or action.is_deleted:
            raise NotFoundError(f"Scheduled action {action_id} not found")
        if not action.is_active:
            raise ExecutionFailedError(action_id, "Cannot run a disabled scheduled action")
        return await self._execute_guarded(action, now, correlation_id)

    # =========================================================================
    # SINGLE OCCURRENCE
    # =========================================================================

    async def _execute_guarded(
        self,
        action: ScheduledAction,
        now: datetime,
        correlation_id: Optional[UUID],
    ) -> ActionExecutionResult:
        """Execute one occurrence, turning a lost claim into a skip."""
        due_date = action.next_execution_date
        try:
            return await self.execute_occurrence(action, now, correlation_id)
        except ConcurrentClaimLostError as e:
            logger.info("claim_lost", action_id=action.id, occurrence_index=e.occurrence_index)
            if self._audit_logger:
                await self._audit_logger.log_claim_lost(
                    action_id=action.id,
                    due_date=due_date.isoformat(),
                    correlation_id=correlation_id,
                )
            return ActionExecutionResult(
                action_id=action.id,
                due_date=due_date,
                outcome=ExecutionOutcome.SKIPPED,
                error_message=str(e),
            )
        except (asyncio.TimeoutError, StorageError) as e:
            # Claim step never completed, so nothing was written
            logger.warning("claim_failed", action_id=action.id, error=str(e) or type(e).__name__)
            return ActionExecutionResult(
                action_id=action.id,
                due_date=due_date,
                outcome=ExecutionOutcome.SKIPPED,
                error_message=str(e) or type(e).__name__,
            )

    async def execute_occurrence(
        self,
        action: ScheduledAction,
        now: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> ActionExecutionResult:
        """
        Claim, materialize and commit the action's pending occurrence.

        Raises:
            ConcurrentClaimLostError: If another executor owns this occurrence
        """
        index = action.occurrence_index
        due_date = action.next_execution_date
        token = uuid4().hex

        claimed = await self._call(self._actions.try_claim(
            action.id, index, action.version, token, now, now + self._lease,
        ))
        if not claimed:
            raise ConcurrentClaimLostError(action.id, index)

        started = time.monotonic()
        try:
            entry = await self._materialize(action, due_date, now)
            history = ScheduledActionHistory(
                scheduled_action_id=action.id,
                group_id=action.group_id,
                action_type=action.action_type,
                due_date=due_date,
                executed_at=now,
                status=ExecutionStatus.SUCCEEDED,
                produced_ledger_entry_id=entry.id,
                action_data=action.action_data.model_dump(mode="json"),
                execution_duration_ms=int((time.monotonic() - started) * 1000),
            )
            committed = await self._call(self._actions.complete_execution(
                action.id,
                token,
                index,
                action.version,
                entry,
                history,
                next_execution_date(action.start_date, action.frequency, index + 1),
                now,
            ))
        except Exception as e:
            return await self._fail(action, token, now, started, e, correlation_id)

        if not committed:
            raise ConcurrentClaimLostError(action.id, index)

        logger.info(
            "scheduled_action_executed",
            action_id=action.id,
            due_date=due_date.isoformat(),
            ledger_entry_id=entry.id,
        )
        if self._audit_logger:
            await self._audit_logger.log_execution_succeeded(
                action_id=action.id,
                group_id=action.group_id,
                due_date=due_date.isoformat(),
                entry_id=entry.id,
                correlation_id=correlation_id,
            )
        return ActionExecutionResult(
            action_id=action.id,
            due_date=due_date,
            outcome=ExecutionOutcome.SUCCEEDED,
            ledger_entry_id=entry.id,
            history_id=history.id,
        )

    async def _materialize(
        self,
        action: ScheduledAction,
        due_date,
        now: datetime,
    ) -> LedgerEntry:
        """
        Build the ledger entry for one occurrence.

        The entry is stamped with the occurrence's date (at now's time of
        day), so caught-up occurrences land in the month they were due.
        """
        data = action.action_data
        entry_id = ledger_entry_id(action, due_date)
        added_time = datetime.combine(due_date, now.time())

        try:
            if isinstance(data, ExpenseActionData):
                return build_expense_entry(
                    group_id=action.group_id,
                    amount=data.amount,
                    currency=data.currency,
                    paid_by={data.paid_by_user_id: data.amount},
                    split_pct_shares=data.split_pct_shares,
                    description=data.description,
                    entry_id=entry_id,
                    added_time=added_time,
                )
            if isinstance(data, BudgetActionData):
                budget = await self._call(self._ledger.get_budget(data.budget_id))
                self._require_live_budget(action, budget, data.budget_id)
                return build_budget_entry(
                    group_id=action.group_id,
                    budget_id=data.budget_id,
                    amount=data.amount,
                    currency=data.currency,
                    sign=data.type,
                    description=data.description,
                    entry_id=entry_id,
                    added_time=added_time,
                )
        except ValueError as e:
            raise ExecutionFailedError(action.id, f"Invalid action data: {e}") from e

        raise ExecutionFailedError(action.id, f"Unsupported action type: {action.action_type}")

    @staticmethod
    def _require_live_budget(
        action: ScheduledAction,
        budget: Optional[Budget],
        budget_id: str,
    ) -> None:
        if budget is None or budget.group_id != action.group_id:
            raise ExecutionFailedError(action.id, f"Budget {budget_id} not found")
        if not budget.is_live:
            raise ExecutionFailedError(action.id, f"Budget {budget_id} was deleted")

    async def _fail(
        self,
        action: ScheduledAction,
        token: str,
        now: datetime,
        started: float,
        error: Exception,
        correlation_id: Optional[UUID],
    ) -> ActionExecutionResult:
        """Record a failed occurrence, release the claim and raise an alert."""
        due_date = action.next_execution_date
        message = str(error) or type(error).__name__
        history = ScheduledActionHistory(
            scheduled_action_id=action.id,
            group_id=action.group_id,
            action_type=action.action_type,
            due_date=due_date,
            executed_at=now,
            status=ExecutionStatus.FAILED,
            error_message=message,
            action_data=action.action_data.model_dump(mode="json"),
            execution_duration_ms=int((time.monotonic() - started) * 1000),
        )

        recorded = False
        try:
            recorded = await self._call(self._actions.record_failure(action.id, token, history))
        except Exception as e:
            # The claim lapses on its own once the lease expires
            await self._report_error(
                "failure_not_recorded",
                e,
                {"action_id": action.id, "due_date": due_date.isoformat()},
                correlation_id,
            )

        logger.error(
            "scheduled_action_failed",
            action_id=action.id,
            due_date=due_date.isoformat(),
            error=message,
            history_recorded=recorded,
        )
        try:
            await self._alerts.execution_failed(
                action_id=action.id,
                group_id=action.group_id,
                due_date=due_date,
                error_message=message,
                details={"error_type": type(error).__name__},
            )
        except Exception as e:
            await self._report_error(
                "alert_not_sent", e, {"action_id": action.id}, correlation_id,
            )
        if self._audit_logger:
            await self._audit_logger.log_execution_failed(
                action_id=action.id,
                group_id=action.group_id,
                due_date=due_date.isoformat(),
                error_message=message,
                correlation_id=correlation_id,
            )
        return ActionExecutionResult(
            action_id=action.id,
            due_date=due_date,
            outcome=ExecutionOutcome.FAILED,
            history_id=history.id if recorded else None,
            error_message=message,
        )
