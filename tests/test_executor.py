"""Tests for the schedule executor."""

import asyncio

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal

from splitledger.audit import AlertSink
from splitledger.models.audit import AuditEventType
from splitledger.models.ledger import Budget, EntrySign
from splitledger.models.scheduled import (
    ExecutionOutcome,
    ExecutionStatus,
    ScheduledActionHistory,
)
from splitledger.queries.balances import compute_balances
from splitledger.queries.budgets import compute_total
from splitledger.scheduling.executor import ExecutionFailedError, ScheduleExecutor
from splitledger.services.storage import (
    ConcurrentClaimLostError,
    NotFoundError,
    StorageConnectionError,
)

from conftest import GROUP, START, expense, expense_request


class BrokenAlertSink(AlertSink):
    async def execution_failed(self, action_id, group_id, due_date, error_message, details=None):
        raise RuntimeError("pager unreachable")


async def create_budget_action(registry, ledger_storage, budget_id="b1", **overrides):
    await ledger_storage.create_budget(Budget(id=budget_id, group_id=GROUP, name="Groceries"))
    request = {
        "action_type": "add_budget",
        "action_data": {
            "amount": "200.00",
            "description": "Groceries top-up",
            "currency": "GBP",
            "budget_id": budget_id,
            "type": "credit",
        },
        "frequency": "monthly",
        "start_date": "2024-01-31",
    }
    request.update(overrides)
    return await registry.create(request, GROUP, "alice", START)


class TestSweep:
    """Tests for sweeping due actions."""

    @pytest.mark.asyncio
    async def test_weekly_catch_up(self, registry, executor, ledger_storage, history_storage, action_storage):
        """Test that missed weekly occurrences run in order and the schedule advances."""
        action = await registry.create(expense_request(), GROUP, "alice", START)

        result = await executor.sweep(datetime(2024, 1, 15, 10, 0))

        assert result.due_actions == 1
        assert result.succeeded == 3
        assert [r.due_date for r in result.results] == [
            date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15),
        ]

        stored = await action_storage.get(action.id)
        assert stored.occurrence_index == 3
        assert stored.next_execution_date == date(2024, 1, 22)
        assert stored.last_occurrence_date == date(2024, 1, 15)
        assert stored.claim_token is None

        rows = await history_storage.list_for_action(action.id)
        assert [r.status for r in rows] == [ExecutionStatus.SUCCEEDED] * 3
        assert [r.sequence for r in rows] == sorted(r.sequence for r in rows)
        assert rows[0].produced_ledger_entry_id == f"tx_{action.id}_2024-01-01"

        entries = await ledger_storage.query_live(GROUP)
        assert len(entries) == 3
        assert compute_balances(entries) == {
            "alice": {"GBP": Decimal("45.00")},
            "bob": {"GBP": Decimal("-45.00")},
        }

    @pytest.mark.asyncio
    async def test_entries_are_dated_by_occurrence(self, registry, executor, ledger_storage):
        """Test that a caught-up entry carries its due date."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await executor.sweep(datetime(2024, 1, 8, 10, 30))

        entry = await ledger_storage.get_entry(f"tx_{action.id}_2024-01-01")
        assert entry.added_time == datetime(2024, 1, 1, 10, 30)

    @pytest.mark.asyncio
    async def test_second_sweep_is_a_no_op(self, registry, executor, ledger_storage):
        """Test that re-running a sweep creates nothing new."""
        await registry.create(expense_request(), GROUP, "alice", START)
        await executor.sweep(START)

        again = await executor.sweep(START)

        assert again.due_actions == 0
        assert again.results == []
        assert len(await ledger_storage.query_live(GROUP)) == 1

    @pytest.mark.asyncio
    async def test_inactive_and_future_actions_not_run(self, registry, executor, ledger_storage):
        """Test that only due actions execute."""
        disabled = await registry.create(expense_request(), GROUP, "alice", START)
        await registry.update(disabled.id, {"is_active": False}, START)
        await registry.create(expense_request(start_date="2024-02-01"), GROUP, "alice", START)

        result = await executor.sweep(START)

        assert result.due_actions == 0
        assert await ledger_storage.query_live(GROUP) == []

    @pytest.mark.asyncio
    async def test_catch_up_is_capped(self, registry, action_storage, ledger_storage):
        """Test that one sweep runs at most the configured number of occurrences."""
        action = await registry.create(expense_request(frequency="daily"), GROUP, "alice", START)
        executor = ScheduleExecutor(action_storage, ledger_storage, max_catch_up_executions=2)

        result = await executor.sweep(datetime(2024, 1, 10))

        assert result.succeeded == 2
        stored = await action_storage.get(action.id)
        assert stored.next_execution_date == date(2024, 1, 3)

    @pytest.mark.asyncio
    async def test_budget_action_materializes_budget_entry(self, registry, executor, ledger_storage):
        """Test that a budget action credits its budget."""
        action = await create_budget_action(registry, ledger_storage)

        result = await executor.sweep(datetime(2024, 2, 29, 8, 0))

        assert result.succeeded == 2
        entry = await ledger_storage.get_entry(f"bg_{action.id}_2024-02-29")
        assert entry.budget_id == "b1"
        assert entry.sign == EntrySign.CREDIT
        entries = await ledger_storage.query_live(GROUP, budget_id="b1")
        assert compute_total(entries, "GBP") == Decimal("400.00")

    @pytest.mark.asyncio
    async def test_sweep_is_audited(self, registry, executor, audit_storage):
        """Test that executions and the sweep summary reach the audit log."""
        await registry.create(expense_request(), GROUP, "alice", START)
        await executor.sweep(START)

        types = [e.event_type for e in await audit_storage.get_recent_events()]
        assert AuditEventType.EXECUTION_SUCCEEDED in types
        assert AuditEventType.SWEEP_COMPLETED in types


class TestFailures:
    """Tests for failed executions."""

    @pytest.mark.asyncio
    async def test_deleted_budget_fails_and_alerts(
        self, registry, executor, ledger_storage, history_storage, action_storage, alert_sink,
    ):
        """Test that a failure is recorded, alerted and retried next sweep."""
        action = await create_budget_action(registry, ledger_storage)
        await ledger_storage.soft_delete_budget("b1", START)

        result = await executor.sweep(datetime(2024, 1, 31, 9, 0))

        assert result.failed == 1
        assert result.succeeded == 0
        assert "deleted" in result.results[0].error_message

        stored = await action_storage.get(action.id)
        assert stored.occurrence_index == 0
        assert stored.next_execution_date == date(2024, 1, 31)
        assert stored.claim_token is None

        rows = await history_storage.list_for_action(action.id)
        assert len(rows) == 1
        assert rows[0].status == ExecutionStatus.FAILED
        assert rows[0].produced_ledger_entry_id is None
        assert result.results[0].history_id == rows[0].id

        assert await ledger_storage.query_live(GROUP) == []
        assert len(alert_sink.alerts) == 1
        assert alert_sink.alerts[0]["action_id"] == action.id
        assert alert_sink.alerts[0]["due_date"] == date(2024, 1, 31)

        retry = await executor.sweep(datetime(2024, 2, 1, 9, 0))
        assert retry.failed == 1
        assert len(await history_storage.list_for_action(action.id)) == 2

    @pytest.mark.asyncio
    async def test_failure_stops_catch_up(self, registry, executor, ledger_storage):
        """Test that an action stops at its first failed occurrence."""
        await create_budget_action(registry, ledger_storage)
        await ledger_storage.soft_delete_budget("b1", START)

        result = await executor.sweep(datetime(2024, 4, 30))

        assert [r.outcome for r in result.results] == [ExecutionOutcome.FAILED]

    @pytest.mark.asyncio
    async def test_duplicate_entry_id_rolls_back(
        self, registry, executor, ledger_storage, history_storage, action_storage,
    ):
        """Test that a commit clashing with an existing entry writes nothing but the failure."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await ledger_storage.append(
            expense(f"tx_{action.id}_2024-01-01", {"carol": 100}, {"carol": 100})
        )

        result = await executor.sweep(START)

        assert result.failed == 1
        rows = await history_storage.list_for_action(action.id)
        assert [r.status for r in rows] == [ExecutionStatus.FAILED]
        assert (await action_storage.get(action.id)).occurrence_index == 0
        assert len(await ledger_storage.query_live(GROUP)) == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, registry, executor, ledger_storage):
        """Test that other actions still run when one fails."""
        await create_budget_action(registry, ledger_storage, start_date="2024-01-01")
        await ledger_storage.soft_delete_budget("b1", START)
        await registry.create(expense_request(), GROUP, "alice", START)

        result = await executor.sweep(START)

        assert result.due_actions == 2
        assert (result.succeeded, result.failed) == (1, 1)


    @pytest.mark.asyncio
    async def test_store_error_on_catch_up_refresh(
        self, registry, executor, action_storage, ledger_storage, audit_storage, monkeypatch,
    ):
        """Test that a store error between occurrences ends the catch-up but not the sweep."""
        action = await registry.create(expense_request(), GROUP, "alice", START)

        async def unavailable(action_id):
            raise StorageConnectionError("connection reset")

        with monkeypatch.context() as patch:
            patch.setattr(action_storage, "get", unavailable)
            result = await executor.sweep(datetime(2024, 1, 15, 9, 0))

        assert [r.outcome for r in result.results] == [ExecutionOutcome.SUCCEEDED]
        assert len(await ledger_storage.query_live(GROUP)) == 1
        types = [e.event_type for e in await audit_storage.get_recent_events()]
        assert AuditEventType.SYSTEM_ERROR in types

        resumed = await executor.sweep(datetime(2024, 1, 15, 9, 0))
        assert resumed.succeeded == 2
        assert (await action_storage.get(action.id)).next_execution_date == date(2024, 1, 22)

    @pytest.mark.asyncio
    async def test_broken_alert_sink_does_not_stop_the_sweep(
        self, registry, action_storage, ledger_storage, history_storage, audit_logger,
    ):
        """Test that an alert sink that raises still leaves the failure recorded."""
        failing = await create_budget_action(registry, ledger_storage, start_date="2024-01-01")
        await ledger_storage.soft_delete_budget("b1", START)
        await registry.create(expense_request(), GROUP, "alice", START)
        executor = ScheduleExecutor(
            action_storage, ledger_storage, alert_sink=BrokenAlertSink(), audit_logger=audit_logger,
        )

        result = await executor.sweep(START)

        assert (result.succeeded, result.failed) == (1, 1)
        rows = await history_storage.list_for_action(failing.id)
        assert [r.status for r in rows] == [ExecutionStatus.FAILED]

class TestAtMostOnce:
    """Tests for claim-based exclusion."""

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_execute_once(
        self, registry, executor, action_storage, ledger_storage, history_storage,
    ):
        """Test that two racing sweeps produce exactly one entry."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        other = ScheduleExecutor(action_storage, ledger_storage)

        first, second = await asyncio.gather(executor.sweep(START), other.sweep(START))

        assert first.succeeded + second.succeeded == 1
        assert first.failed + second.failed == 0
        assert len(await ledger_storage.query_live(GROUP)) == 1
        assert len(await history_storage.list_for_action(action.id)) == 1

    @pytest.mark.asyncio
    async def test_live_claim_is_respected(self, registry, executor, action_storage, ledger_storage):
        """Test that an occurrence claimed elsewhere is skipped until the lease expires."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        assert await action_storage.try_claim(
            action.id, 0, action.version, "other-worker", START, START + timedelta(minutes=5),
        )

        skipped = await executor.sweep(START)
        assert skipped.skipped == 1
        assert await ledger_storage.query_live(GROUP) == []

        resumed = await executor.sweep(START + timedelta(minutes=10))
        assert resumed.succeeded == 1

    @pytest.mark.asyncio
    async def test_update_invalidates_inflight_claim(self, registry, action_storage, ledger_storage):
        """Test that a claim released by an update can no longer commit."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        assert await action_storage.try_claim(action.id, 0, action.version, "token", START, START + timedelta(minutes=5))

        await registry.update(action.id, {"is_active": True}, START)

        entry = expense(f"tx_{action.id}_2024-01-01", {"alice": 3000}, {"alice": 1500, "bob": 1500})
        history = ScheduledActionHistory(
            scheduled_action_id=action.id,
            group_id=GROUP,
            action_type=action.action_type,
            due_date=date(2024, 1, 1),
            status=ExecutionStatus.SUCCEEDED,
            produced_ledger_entry_id=entry.id,
        )
        committed = await action_storage.complete_execution(
            action.id, "token", 0, action.version, entry, history, date(2024, 1, 8), START,
        )

        assert committed is False
        assert await ledger_storage.query_live(GROUP) == []

    @pytest.mark.asyncio
    async def test_stale_index_cannot_be_claimed(self, registry, executor, action_storage):
        """Test that an executed occurrence can't be claimed again."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await executor.sweep(START)

        assert not await action_storage.try_claim(
            action.id, 0, action.version, "late", START, START + timedelta(minutes=5),
        )


    @pytest.mark.asyncio
    async def test_edit_after_read_is_not_executed(self, registry, executor, action_storage, ledger_storage):
        """Test that an occurrence read before an edit can't run with the old payload."""
        await registry.create(expense_request(), GROUP, "alice", START)
        (snapshot,) = await action_storage.list_due(START.date())
        data = {**expense_request()["action_data"], "amount": "99.00"}
        await registry.update(snapshot.id, {"action_data": data}, START)

        with pytest.raises(ConcurrentClaimLostError):
            await executor.execute_occurrence(snapshot, START)
        assert await ledger_storage.query_live(GROUP) == []

        result = await executor.sweep(START)
        assert result.succeeded == 1
        (entry,) = await ledger_storage.query_live(GROUP)
        assert entry.amount == Decimal("99.00")

class TestRunNow:
    """Tests for immediate execution."""

    @pytest.mark.asyncio
    async def test_run_now_executes_pending_occurrence(self, registry, executor, action_storage):
        """Test that run_now executes before the due date."""
        action = await registry.create(
            expense_request(start_date="2024-02-10", frequency="monthly"), GROUP, "alice", START,
        )

        result = await executor.run_now(action.id, START)

        assert result.outcome == ExecutionOutcome.SUCCEEDED
        assert result.ledger_entry_id == f"tx_{action.id}_2024-02-10"
        assert (await action_storage.get(action.id)).next_execution_date == date(2024, 3, 10)

    @pytest.mark.asyncio
    async def test_run_now_rejects_disabled_and_unknown(self, registry, executor):
        """Test that disabled and unknown actions can't be run."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await registry.update(action.id, {"is_active": False}, START)

        with pytest.raises(ExecutionFailedError):
            await executor.run_now(action.id, START)
        with pytest.raises(NotFoundError):
            await executor.run_now("nope", START)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
