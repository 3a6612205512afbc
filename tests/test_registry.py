"""Tests for the scheduled action registry."""

import pytest
from datetime import date, datetime

from splitledger.models.audit import AuditEventType
from splitledger.models.ledger import Budget
from splitledger.models.scheduled import ActionState, Frequency, ScheduledActionUpdate
from splitledger.scheduling.registry import (
    InvalidActionDefinitionError,
    ScheduledActionRegistry,
)
from splitledger.services.storage import (
    MemoryScheduledActionStorage,
    NotFoundError,
)

from conftest import GROUP, START, expense_request


def budget_request(budget_id: str) -> dict:
    return {
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


class RacingActionStorage(MemoryScheduledActionStorage):
    """Store that lets one concurrent write land before the first update."""

    def __init__(self, db):
        super().__init__(db)
        self.raced = False

    async def update(self, action, expected_version):
        if not self.raced:
            self.raced = True
            current = await self.get(action.id)
            await super().update(current.model_copy(update={"is_active": False}), current.version)
        return await super().update(action, expected_version)


class TestCreate:
    """Tests for creating scheduled actions."""

    @pytest.mark.asyncio
    async def test_create_from_wire_dict(self, registry, audit_storage):
        """Test that a valid request is stored and anchored at its start."""
        action = await registry.create(expense_request(), GROUP, "alice", START)

        assert action.occurrence_index == 0
        assert action.next_execution_date == date(2024, 1, 1)
        assert action.version == 1
        assert action.state(START.date()) == ActionState.DUE
        assert await registry.get(action.id) == action

        events = await audit_storage.get_events_by_entity("scheduled_action", action.id)
        assert [e.event_type for e in events] == [AuditEventType.SCHEDULED_ACTION_CREATED]

    @pytest.mark.asyncio
    async def test_create_with_past_start_skips_to_today(self, registry):
        """Test that occurrences before creation are never scheduled."""
        action = await registry.create(
            expense_request(start_date="2023-12-01"), GROUP, "alice", START,
        )
        assert action.occurrence_index == 5
        assert action.next_execution_date == date(2024, 1, 5)

    @pytest.mark.asyncio
    async def test_create_future_start(self, registry):
        """Test a start date after today."""
        action = await registry.create(
            expense_request(start_date="2024-02-10", frequency="monthly"), GROUP, "alice", START,
        )
        assert action.next_execution_date == date(2024, 2, 10)
        assert action.state(START.date()) == ActionState.SCHEDULED

    @pytest.mark.asyncio
    async def test_invalid_definition_not_persisted(self, registry, action_storage):
        """Test that validation errors surface before anything is written."""
        with pytest.raises(InvalidActionDefinitionError) as excinfo:
            await registry.create(expense_request(frequency="hourly"), GROUP, "alice", START)

        assert excinfo.value.errors
        assert excinfo.value.errors[0]["field"].startswith("frequency")
        assert await action_storage.count(GROUP) == 0

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, registry):
        """Test that an unsupported action type is rejected."""
        with pytest.raises(InvalidActionDefinitionError):
            await registry.create(expense_request(action_type="add_refund"), GROUP, "alice", START)

    @pytest.mark.asyncio
    async def test_budget_action_requires_live_budget(self, registry, ledger_storage):
        """Test that a budget action must reference a live budget of its group."""
        with pytest.raises(InvalidActionDefinitionError):
            await registry.create(budget_request("missing"), GROUP, "alice", START)

        other = Budget(id="b-other", group_id="group-2")
        await ledger_storage.create_budget(other)
        with pytest.raises(InvalidActionDefinitionError):
            await registry.create(budget_request("b-other"), GROUP, "alice", START)

        await ledger_storage.create_budget(Budget(id="b1", group_id=GROUP))
        action = await registry.create(budget_request("b1"), GROUP, "alice", START)
        assert action.next_execution_date == date(2024, 1, 31)


class TestReadAndList:
    """Tests for get and list."""

    @pytest.mark.asyncio
    async def test_get_unknown(self, registry):
        """Test that an unknown id is not found."""
        with pytest.raises(NotFoundError):
            await registry.get("nope")

    @pytest.mark.asyncio
    async def test_list_pages_newest_first(self, registry):
        """Test offset paging and the has_more flag."""
        ids = []
        for day in (1, 2, 3):
            action = await registry.create(
                expense_request(), GROUP, "alice", datetime(2024, 1, day, 9, 0),
            )
            ids.append(action.id)

        first = await registry.list_actions(GROUP, offset=0, limit=2)
        assert [a.id for a in first.items] == [ids[2], ids[1]]
        assert first.total_count == 3
        assert first.has_more

        second = await registry.list_actions(GROUP, offset=2, limit=2)
        assert [a.id for a in second.items] == [ids[0]]
        assert not second.has_more

    @pytest.mark.asyncio
    async def test_list_excludes_deleted(self, registry):
        """Test that deleted actions are not listed."""
        kept = await registry.create(expense_request(), GROUP, "alice", START)
        gone = await registry.create(expense_request(), GROUP, "alice", START)
        await registry.delete(gone.id, START)

        page = await registry.list_actions(GROUP)
        assert [a.id for a in page.items] == [kept.id]
        assert page.total_count == 1

    @pytest.mark.asyncio
    async def test_list_rejects_bad_paging(self, registry):
        """Test that negative offsets are rejected."""
        with pytest.raises(ValueError):
            await registry.list_actions(GROUP, offset=-1)


class TestUpdate:
    """Tests for partial updates and re-anchoring."""

    @pytest.mark.asyncio
    async def test_disable_keeps_schedule(self, registry):
        """Test that disabling only flips the flag and bumps the version."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        updated = await registry.update(action.id, {"is_active": False}, START)

        assert not updated.is_active
        assert updated.next_execution_date == action.next_execution_date
        assert updated.version == 2
        assert updated.state(START.date()) == ActionState.DISABLED

    @pytest.mark.asyncio
    async def test_reactivation_does_not_replay(self, registry):
        """Test that occurrences missed while disabled are skipped."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await registry.update(action.id, {"is_active": False}, START)

        resumed = await registry.update(action.id, {"is_active": True}, datetime(2024, 1, 20))
        assert resumed.occurrence_index == 3
        assert resumed.next_execution_date == date(2024, 1, 22)

    @pytest.mark.asyncio
    async def test_frequency_change_reanchors(self, registry):
        """Test that a new frequency starts from today."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        updated = await registry.update(action.id, {"frequency": "daily"}, datetime(2024, 1, 10))

        assert updated.frequency == Frequency.DAILY
        assert updated.next_execution_date == date(2024, 1, 10)

    @pytest.mark.asyncio
    async def test_start_date_change_reanchors(self, registry):
        """Test that moving the start date re-anchors from it."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        updated = await registry.update(action.id, {"start_date": "2024-03-04"}, START)

        assert updated.start_date == date(2024, 3, 4)
        assert updated.occurrence_index == 0
        assert updated.next_execution_date == date(2024, 3, 4)

    @pytest.mark.asyncio
    async def test_skip_next(self, registry):
        """Test that skip_next consumes the pending occurrence."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        updated = await registry.update(action.id, ScheduledActionUpdate(skip_next=True), START)
        assert updated.next_execution_date == date(2024, 1, 8)

    @pytest.mark.asyncio
    async def test_action_data_update(self, registry):
        """Test replacing the payload without restating its type."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        data = {**expense_request()["action_data"], "amount": "45.50"}
        updated = await registry.update(action.id, {"action_data": data}, START)

        assert str(updated.action_data.amount) == "45.50"
        assert updated.next_execution_date == action.next_execution_date

    @pytest.mark.asyncio
    async def test_action_type_cannot_change(self, registry, ledger_storage):
        """Test that a payload of another action type is rejected."""
        await ledger_storage.create_budget(Budget(id="b1", group_id=GROUP))
        action = await registry.create(expense_request(), GROUP, "alice", START)
        data = {**budget_request("b1")["action_data"], "action_type": "add_budget"}

        with pytest.raises(InvalidActionDefinitionError):
            await registry.update(action.id, {"action_data": data}, START)

    @pytest.mark.asyncio
    async def test_id_is_not_writable(self, registry):
        """Test that unknown fields are rejected."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        with pytest.raises(InvalidActionDefinitionError):
            await registry.update(action.id, {"id": "hijack"}, START)

    @pytest.mark.asyncio
    async def test_reanchor_never_repeats_executed_date(self, registry, executor):
        """Test that a same-day frequency change can't replay today's run."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await executor.sweep(START)

        updated = await registry.update(action.id, {"frequency": "daily"}, START)
        assert updated.next_execution_date == date(2024, 1, 2)

    @pytest.mark.asyncio
    async def test_concurrent_write_is_not_lost(self, db):
        """Test that a stale update re-reads and re-applies its change."""
        storage = RacingActionStorage(db)
        registry = ScheduledActionRegistry(storage)
        action = await registry.create(expense_request(), GROUP, "alice", START)

        updated = await registry.update(action.id, {"frequency": "daily"}, START)

        assert updated.frequency == Frequency.DAILY
        assert not updated.is_active
        assert updated.version == 3
        assert await storage.get(action.id) == updated

    @pytest.mark.asyncio
    async def test_update_deleted(self, registry):
        """Test that a deleted action can't be updated."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await registry.delete(action.id, START)
        with pytest.raises(NotFoundError):
            await registry.update(action.id, {"is_active": False}, START)


class TestDelete:
    """Tests for soft delete."""

    @pytest.mark.asyncio
    async def test_delete_is_terminal(self, registry, action_storage):
        """Test that a deleted action is gone from reads but kept in the store."""
        action = await registry.create(expense_request(), GROUP, "alice", START)
        await registry.delete(action.id, START)

        with pytest.raises(NotFoundError):
            await registry.get(action.id)
        with pytest.raises(NotFoundError):
            await registry.delete(action.id, START)

        stored = await action_storage.get(action.id)
        assert stored.state(START.date()) == ActionState.DELETED
        assert await action_storage.list_due(START.date()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
