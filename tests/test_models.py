"""
Tests for Split Ledger

Test strategy:
1. Unit tests for individual components (models, recurrence, queries)
2. Integration tests for flows against the in-memory and sqlite stores
3. No network access in tests
"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError

from splitledger.models.ledger import (
    Budget,
    EntryKind,
    EntrySign,
    LedgerEntry,
    ParticipantShare,
    from_minor_units,
    to_minor_units,
)
from splitledger.models.scheduled import (
    ActionExecutionResult,
    ActionState,
    ActionType,
    BudgetActionData,
    ExecutionOutcome,
    ExecutionStatus,
    ExpenseActionData,
    Frequency,
    ScheduledAction,
    ScheduledActionHistory,
    ScheduledActionRequest,
    ScheduledActionUpdate,
    SweepResult,
)
from splitledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

from conftest import GROUP, expense, expense_request


class TestMoney:
    """Tests for minor-unit conversion."""

    def test_to_minor_units(self):
        """Test conversion of 2-place decimals."""
        assert to_minor_units(Decimal("12.34")) == 1234
        assert to_minor_units(Decimal("5")) == 500
        assert to_minor_units(Decimal("0.01")) == 1

    def test_to_minor_units_rejects_extra_precision(self):
        """Test that a third decimal place is rejected, not rounded."""
        with pytest.raises(ValueError):
            to_minor_units(Decimal("1.005"))

    def test_to_minor_units_rejects_garbage(self):
        """Test that non-numeric input is rejected."""
        with pytest.raises(ValueError):
            to_minor_units("twelve")
        with pytest.raises(ValueError):
            to_minor_units(Decimal("NaN"))

    def test_from_minor_units(self):
        """Test conversion back to a 2-place Decimal."""
        assert from_minor_units(1234) == Decimal("12.34")
        assert str(from_minor_units(-5)) == "-0.05"


class TestLedgerModels:
    """Tests for ledger entry and budget models."""

    def test_expense_entry_creation(self):
        """Test a balanced expense entry."""
        entry = expense("e1", {"alice": 1000}, {"alice": 500, "bob": 500})
        assert entry.kind == EntryKind.EXPENSE
        assert entry.amount == Decimal("10.00")
        assert entry.sign == EntrySign.DEBIT
        assert entry.is_live

    def test_expense_entry_rejects_unbalanced_shares(self):
        """Test that owed shares must add up to the amount."""
        with pytest.raises(ValidationError):
            LedgerEntry(
                group_id=GROUP,
                amount_minor=1000,
                currency="GBP",
                paid_by=(ParticipantShare(user_id="alice", share_minor=1000),),
                participants=(ParticipantShare(user_id="bob", share_minor=900),),
            )

    def test_expense_entry_rejects_duplicate_users(self):
        """Test that a user appears once per share list."""
        with pytest.raises(ValidationError):
            LedgerEntry(
                group_id=GROUP,
                amount_minor=1000,
                currency="GBP",
                paid_by=(ParticipantShare(user_id="alice", share_minor=1000),),
                participants=(
                    ParticipantShare(user_id="bob", share_minor=500),
                    ParticipantShare(user_id="bob", share_minor=500),
                ),
            )

    def test_expense_entry_requires_shares(self):
        """Test that an expense needs payers and participants."""
        with pytest.raises(ValidationError):
            LedgerEntry(group_id=GROUP, amount_minor=1000, currency="GBP")

    def test_budget_entry_carries_no_shares(self):
        """Test that a budget entry is valid without shares and rejects them."""
        entry = LedgerEntry(
            group_id=GROUP,
            amount_minor=2500,
            currency="GBP",
            sign=EntrySign.CREDIT,
            budget_id="b1",
        )
        assert entry.kind == EntryKind.BUDGET
        assert entry.signed_minor == 2500

        with pytest.raises(ValidationError):
            LedgerEntry(
                group_id=GROUP,
                amount_minor=2500,
                currency="GBP",
                budget_id="b1",
                paid_by=(ParticipantShare(user_id="alice", share_minor=2500),),
            )

    def test_signed_minor_for_debit(self):
        """Test that a debit is negative."""
        entry = LedgerEntry(group_id=GROUP, amount_minor=700, currency="GBP", budget_id="b1")
        assert entry.signed_minor == -700

    def test_entry_is_frozen(self):
        """Test that entries cannot be edited in place."""
        entry = expense("e1", {"alice": 100}, {"alice": 100})
        with pytest.raises(ValidationError):
            entry.amount_minor = 200

    def test_soft_deleted_copy(self):
        """Test that soft delete returns a tombstoned copy once."""
        entry = expense("e1", {"alice": 100}, {"alice": 100})
        deleted = entry.soft_deleted(datetime(2024, 1, 2))
        assert entry.is_live
        assert not deleted.is_live
        with pytest.raises(ValueError):
            deleted.soft_deleted(datetime(2024, 1, 3))

    def test_budget_is_live(self):
        """Test the budget tombstone flag."""
        budget = Budget(group_id=GROUP, name="Groceries")
        assert budget.is_live
        assert not budget.model_copy(update={"deleted": datetime(2024, 1, 1)}).is_live


class TestScheduledActionModels:
    """Tests for scheduled action payloads and definitions."""

    def test_request_from_wire_dict(self):
        """Test that action_data is parsed by the outer action_type."""
        request = ScheduledActionRequest.model_validate(expense_request())
        assert request.action_type == ActionType.ADD_EXPENSE
        assert isinstance(request.action_data, ExpenseActionData)
        assert request.action_data.amount == Decimal("30.00")
        assert request.frequency == Frequency.WEEKLY

    def test_request_budget_action(self):
        """Test a budget payload with a credit type."""
        request = ScheduledActionRequest.model_validate({
            "action_type": "add_budget",
            "action_data": {
                "amount": "100",
                "description": "Monthly top-up",
                "currency": "GBP",
                "budget_id": "b1",
                "type": "credit",
            },
            "frequency": "monthly",
            "start_date": "2024-01-31",
        })
        assert isinstance(request.action_data, BudgetActionData)
        assert request.action_data.type == EntrySign.CREDIT

    def test_request_rejects_payload_of_other_type(self):
        """Test that an expense payload is rejected for a budget action."""
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(expense_request(action_type="add_budget"))

    def test_request_rejects_mismatched_explicit_type(self):
        """Test that a tagged payload must match the outer action_type."""
        request = expense_request(action_type="add_budget")
        request["action_data"] = {**request["action_data"], "action_type": "add_expense"}
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(request)

    def test_request_rejects_unknown_frequency(self):
        """Test that only daily, weekly and monthly are accepted."""
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(expense_request(frequency="yearly"))

    def test_request_rejects_bad_dates(self):
        """Test that start_date must be an ISO calendar date."""
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(expense_request(start_date="01/02/2024"))
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(expense_request(start_date="2024-02-30"))
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(
                expense_request(start_date=datetime(2024, 1, 1, 12, 0))
            )

    def test_split_percentages_must_total_100(self):
        """Test that percentages not adding up to 100 are rejected."""
        request = expense_request()
        request["action_data"]["split_pct_shares"] = {"alice": "50", "bob": "40"}
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(request)

    def test_amount_precision(self):
        """Test that amounts carry at most 2 decimal places."""
        request = expense_request()
        request["action_data"]["amount"] = "10.005"
        with pytest.raises(ValidationError):
            ScheduledActionRequest.model_validate(request)

    def test_update_rejects_unknown_fields(self):
        """Test that id and history are not writable."""
        with pytest.raises(ValidationError):
            ScheduledActionUpdate.model_validate({"id": "other"})

    def test_action_state(self):
        """Test the lifecycle state relative to a day."""
        action = ScheduledAction(
            group_id=GROUP,
            user_id="alice",
            action_type=ActionType.ADD_EXPENSE,
            action_data=expense_request()["action_data"],
            frequency=Frequency.WEEKLY,
            start_date=date(2024, 1, 1),
            next_execution_date=date(2024, 1, 8),
        )
        assert action.state(date(2024, 1, 7)) == ActionState.SCHEDULED
        assert action.state(date(2024, 1, 8)) == ActionState.DUE
        assert action.is_due(date(2024, 1, 9))

        disabled = action.model_copy(update={"is_active": False})
        assert disabled.state(date(2024, 1, 8)) == ActionState.DISABLED
        assert not disabled.is_due(date(2024, 1, 8))

        deleted = action.model_copy(update={"deleted_at": datetime(2024, 1, 2)})
        assert deleted.state(date(2024, 1, 8)) == ActionState.DELETED

    def test_history_outcome_consistency(self):
        """Test that only a succeeded row references a ledger entry."""
        fields = {
            "scheduled_action_id": "a1",
            "group_id": GROUP,
            "action_type": ActionType.ADD_EXPENSE,
            "due_date": date(2024, 1, 1),
        }
        with pytest.raises(ValidationError):
            ScheduledActionHistory(status=ExecutionStatus.SUCCEEDED, **fields)
        with pytest.raises(ValidationError):
            ScheduledActionHistory(
                status=ExecutionStatus.FAILED,
                produced_ledger_entry_id="tx_a1_2024-01-01",
                **fields,
            )
        failed = ScheduledActionHistory(
            status=ExecutionStatus.FAILED,
            error_message="Budget b1 was deleted",
            **fields,
        )
        assert failed.sequence is None

    def test_sweep_result_counts(self):
        """Test the per-outcome counters."""
        day = date(2024, 1, 1)
        result = SweepResult(
            run_at=datetime(2024, 1, 1),
            due_actions=2,
            results=[
                ActionExecutionResult(action_id="a", due_date=day, outcome=ExecutionOutcome.SUCCEEDED),
                ActionExecutionResult(action_id="a", due_date=day, outcome=ExecutionOutcome.SUCCEEDED),
                ActionExecutionResult(action_id="b", due_date=day, outcome=ExecutionOutcome.FAILED),
            ],
        )
        assert (result.succeeded, result.failed, result.skipped) == (2, 1, 0)


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.LEDGER_ENTRY_APPENDED,
            description="Test entry appended",
        )
        assert event.event_type == AuditEventType.LEDGER_ENTRY_APPENDED
        assert event.severity == AuditSeverity.INFO

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            event_type=AuditEventType.BUDGET_CREATED,
            description="Budget created",
            details={"name": "Groceries"},
        )
        log_dict = event.to_log_dict()
        assert "event_id" in log_dict
        assert log_dict["event_type"] == "budget_created"
        assert log_dict["details"]["name"] == "Groceries"

    def test_audit_event_to_row(self):
        """Test conversion to a table row."""
        event = AuditEvent(
            event_type=AuditEventType.SCHEDULED_ACTION_DELETED,
            description="Scheduled action deleted",
            is_user_action=True,
        )
        row = event.to_row()
        assert row["event_type"] == "scheduled_action_deleted"
        assert row["is_user_action"] is True
        assert row["correlation_id"] is None

    def test_audit_event_builder_execution_failed(self):
        """Test AuditEventBuilder.execution_failed."""
        correlation_id = uuid4()

        event = AuditEventBuilder.execution_failed(
            action_id="a1",
            group_id=GROUP,
            due_date="2024-01-08",
            error_message="Budget b1 was deleted",
            correlation_id=correlation_id,
        )

        assert event.event_type == AuditEventType.EXECUTION_FAILED
        assert event.severity == AuditSeverity.ERROR
        assert event.entity_id == "a1"
        assert event.correlation_id == correlation_id
        assert event.error_message == "Budget b1 was deleted"

    def test_audit_event_builder_entry_appended(self):
        """Test AuditEventBuilder.entry_appended."""
        event = AuditEventBuilder.entry_appended(
            entry_id="e1",
            group_id=GROUP,
            amount="10.00",
            currency="GBP",
        )

        assert event.event_type == AuditEventType.LEDGER_ENTRY_APPENDED
        assert event.entity_type == "ledger_entry"
        assert event.is_user_action is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
