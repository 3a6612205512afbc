"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Two backends are available: an in-memory reference store and a SQL store
built on SQLAlchemy. Both implement the same interfaces and are swappable.
"""

from splitledger.services.storage.interface import (
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
from splitledger.services.storage.memory import (
    MemoryAuditStorage,
    MemoryDatabase,
    MemoryHistoryStorage,
    MemoryLedgerStorage,
    MemoryScheduledActionStorage,
)
from splitledger.services.storage.sql import (
    SqlAuditStorage,
    SqlDatabase,
    SqlHistoryStorage,
    SqlLedgerStorage,
    SqlScheduledActionStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "HistoryStorageInterface",
    "LedgerStorageInterface",
    "ScheduledActionStorageInterface",
    # Exceptions
    "ConcurrentClaimLostError",
    "DuplicateError",
    "NotFoundError",
    "StaleVersionError",
    "StorageConnectionError",
    "StorageError",
    # In-memory implementation
    "MemoryAuditStorage",
    "MemoryDatabase",
    "MemoryHistoryStorage",
    "MemoryLedgerStorage",
    "MemoryScheduledActionStorage",
    # SQL implementation
    "SqlAuditStorage",
    "SqlDatabase",
    "SqlHistoryStorage",
    "SqlLedgerStorage",
    "SqlScheduledActionStorage",
]
