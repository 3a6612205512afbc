"""Services package."""

from splitledger.services.ledger_writer import (
    allocate_largest_remainder,
    build_budget_entry,
    build_expense_entry,
)
from splitledger.services.storage import (
    AuditStorageInterface,
    ConcurrentClaimLostError,
    DuplicateError,
    HistoryStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    ScheduledActionStorageInterface,
    StaleVersionError,
    StorageConnectionError,
    StorageError,
)

__all__ = [
    # Ledger writes
    "allocate_largest_remainder",
    "build_budget_entry",
    "build_expense_entry",
    # Storage services
    "AuditStorageInterface",
    "ConcurrentClaimLostError",
    "DuplicateError",
    "HistoryStorageInterface",
    "LedgerStorageInterface",
    "NotFoundError",
    "ScheduledActionStorageInterface",
    "StaleVersionError",
    "StorageConnectionError",
    "StorageError",
]
