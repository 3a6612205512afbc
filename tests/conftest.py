"""Shared fixtures: in-memory stores and the components built on them."""

from datetime import date, datetime

import pytest

from splitledger.audit import AuditLogger, RecordingAlertSink
from splitledger.models.ledger import LedgerEntry, ParticipantShare
from splitledger.queries import HistoryReader
from splitledger.scheduling import ScheduledActionRegistry, ScheduleExecutor
from splitledger.services.storage import (
    MemoryAuditStorage,
    MemoryDatabase,
    MemoryHistoryStorage,
    MemoryLedgerStorage,
    MemoryScheduledActionStorage,
)


GROUP = "group-1"
START = datetime(2024, 1, 1, 9, 0)


def expense(
    entry_id: str,
    paid: dict[str, int],
    owed: dict[str, int],
    currency: str = "GBP",
    **fields,
) -> LedgerEntry:
    """Build an expense entry from minor-unit share dicts."""
    return LedgerEntry(
        id=entry_id,
        group_id=fields.pop("group_id", GROUP),
        amount_minor=sum(paid.values()),
        currency=currency,
        paid_by=tuple(ParticipantShare(user_id=u, share_minor=s) for u, s in paid.items()),
        participants=tuple(ParticipantShare(user_id=u, share_minor=s) for u, s in owed.items()),
        **fields,
    )


def expense_request(**overrides) -> dict:
    """Wire-shaped create request for a recurring expense."""
    request = {
        "action_type": "add_expense",
        "action_data": {
            "amount": "30.00",
            "description": "Rent share",
            "currency": "GBP",
            "paid_by_user_id": "alice",
            "split_pct_shares": {"alice": "50", "bob": "50"},
        },
        "frequency": "weekly",
        "start_date": date(2024, 1, 1).isoformat(),
        "is_active": True,
    }
    request.update(overrides)
    return request


@pytest.fixture
def db():
    return MemoryDatabase()


@pytest.fixture
def ledger_storage(db):
    return MemoryLedgerStorage(db)


@pytest.fixture
def action_storage(db):
    return MemoryScheduledActionStorage(db)


@pytest.fixture
def history_storage(db):
    return MemoryHistoryStorage(db)


@pytest.fixture
def audit_storage(db):
    return MemoryAuditStorage(db)


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def registry(action_storage, ledger_storage, audit_logger):
    return ScheduledActionRegistry(
        action_storage,
        ledger_storage=ledger_storage,
        audit_logger=audit_logger,
    )


@pytest.fixture
def executor(action_storage, ledger_storage, alert_sink, audit_logger):
    return ScheduleExecutor(
        action_storage,
        ledger_storage,
        alert_sink=alert_sink,
        audit_logger=audit_logger,
        store_timeout_seconds=5.0,
    )


@pytest.fixture
def reader(history_storage, action_storage):
    return HistoryReader(history_storage, action_storage, default_page_size=2)

