"""
SQL Storage Implementation

DESIGN DECISION: The SQL backend uses SQLAlchemy Core rather than the ORM.
The stores only need row-level reads, inserts, and conditional updates,
and Core keeps each compare-and-set visible as a single
`UPDATE ... WHERE` statement whose rowcount says whether it won.

Atomic multi-row commits (an execution's ledger entry, history row and
action advance) run inside one `engine.begin()` transaction.

TRADEOFFS:
- Calls are synchronous inside async methods; the event loop blocks for
  the duration of each statement (fine for a sweep job, not for a
  high-throughput server)
- Amount shares and action payloads are stored as JSON, so they are not
  queryable in SQL
"""

import json
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional
from uuid import UUID

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from splitledger.models.audit import AuditEvent
from splitledger.models.ledger import (
    Budget,
    EntrySign,
    LedgerEntry,
    LedgerEntryPage,
    ParticipantShare,
)
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
    StorageConnectionError,
)


logger = structlog.get_logger(__name__)


metadata = MetaData()

ledger_entries = Table(
    "ledger_entries",
    metadata,
    Column("id", String(100), primary_key=True),
    Column("group_id", String(100), nullable=False, index=True),
    Column("added_time", DateTime, nullable=False),
    Column("deleted", DateTime, nullable=True),
    Column("amount_minor", Integer, nullable=False),
    Column("sign", String(10), nullable=False),
    Column("currency", String(10), nullable=False),
    Column("description", String(255), nullable=False, default=""),
    Column("paid_by", JSON, nullable=False),
    Column("participants", JSON, nullable=False),
    Column("budget_id", String(100), nullable=True, index=True),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", String(100), primary_key=True),
    Column("group_id", String(100), nullable=False, index=True),
    Column("name", String(100), nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("deleted", DateTime, nullable=True),
)

scheduled_actions = Table(
    "scheduled_actions",
    metadata,
    Column("id", String(100), primary_key=True),
    Column("group_id", String(100), nullable=False, index=True),
    Column("user_id", String(100), nullable=False),
    Column("action_type", String(20), nullable=False),
    Column("action_data", JSON, nullable=False),
    Column("frequency", String(10), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("is_active", Boolean, nullable=False),
    Column("occurrence_index", Integer, nullable=False),
    Column("next_execution_date", Date, nullable=False, index=True),
    Column("last_occurrence_date", Date, nullable=True),
    Column("last_executed_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("deleted_at", DateTime, nullable=True),
    Column("version", Integer, nullable=False),
    Column("claim_token", String(64), nullable=True),
    Column("claim_expires_at", DateTime, nullable=True),
)

scheduled_action_history = Table(
    "scheduled_action_history",
    metadata,
    Column("sequence", Integer, primary_key=True, autoincrement=True),
    Column("id", String(100), nullable=False, unique=True),
    Column("scheduled_action_id", String(100), nullable=False, index=True),
    Column("group_id", String(100), nullable=False),
    Column("action_type", String(20), nullable=False),
    Column("due_date", Date, nullable=False),
    Column("executed_at", DateTime, nullable=False),
    Column("status", String(10), nullable=False),
    Column("produced_ledger_entry_id", String(100), nullable=True),
    Column("error_message", Text, nullable=True),
    Column("action_data", JSON, nullable=False),
    Column("execution_duration_ms", Integer, nullable=True),
    sqlite_autoincrement=True,
)

audit_events = Table(
    "audit_events",
    metadata,
    Column("event_id", String(36), primary_key=True),
    Column("timestamp", String(32), nullable=False, index=True),
    Column("event_type", String(50), nullable=False),
    Column("severity", String(10), nullable=False),
    Column("entity_type", String(50), nullable=True),
    Column("entity_id", String(100), nullable=True),
    Column("group_id", String(100), nullable=True),
    Column("correlation_id", String(36), nullable=True, index=True),
    Column("description", String(500), nullable=False),
    Column("details_json", Text, nullable=True),
    Column("error_code", String(50), nullable=True),
    Column("error_message", Text, nullable=True),
    Column("is_user_action", Boolean, nullable=False),
)


retry_transient = retry(
    retry=retry_if_exception_type(StorageConnectionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class SqlDatabase:
    """
    Engine wrapper shared by the SQL stores.

    Maps driver errors onto storage errors so callers never see
    SQLAlchemy exceptions.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlDatabase":
        kwargs: dict = {"echo": echo}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, or every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(database_url, **kwargs))

    def create_tables(self) -> None:
        try:
            metadata.create_all(self.engine)
        except OperationalError as e:
            raise StorageConnectionError(f"Failed to create tables: {e}") from e

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Run a block in one transaction, rolled back on any error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as e:
            raise DuplicateError(f"Duplicate key: {e.orig}") from e
        except OperationalError as e:
            logger.warning("sql_operational_error", error=str(e.orig))
            raise StorageConnectionError(f"Database unavailable: {e.orig}") from e


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _entry_to_row(entry: LedgerEntry) -> dict:
    data = entry.model_dump(mode="json", include={"paid_by", "participants"})
    return {
        "id": entry.id,
        "group_id": entry.group_id,
        "added_time": entry.added_time,
        "deleted": entry.deleted,
        "amount_minor": entry.amount_minor,
        "sign": entry.sign.value,
        "currency": entry.currency,
        "description": entry.description,
        "paid_by": data["paid_by"],
        "participants": data["participants"],
        "budget_id": entry.budget_id,
    }


def _row_to_entry(row) -> LedgerEntry:
    # Shares were validated when the entry was created; skip re-validation
    return LedgerEntry.model_construct(**{
        **dict(row),
        "paid_by": tuple(ParticipantShare.model_construct(**s) for s in row["paid_by"]),
        "participants": tuple(ParticipantShare.model_construct(**s) for s in row["participants"]),
        "sign": EntrySign(row["sign"]),
    })


def _budget_to_row(budget: Budget) -> dict:
    return budget.model_dump()


def _row_to_budget(row) -> Budget:
    return Budget.model_validate(dict(row))


def _action_to_row(action: ScheduledAction) -> dict:
    row = action.model_dump(exclude={"action_data"})
    row["action_type"] = action.action_type.value
    row["frequency"] = action.frequency.value
    row["action_data"] = action.action_data.model_dump(mode="json")
    return row


def _row_to_action(row) -> ScheduledAction:
    return ScheduledAction.model_validate(dict(row))


def _history_to_row(history: ScheduledActionHistory) -> dict:
    row = history.model_dump(exclude={"sequence"})
    row["action_type"] = history.action_type.value
    row["status"] = history.status.value
    row["action_data"] = json.loads(json.dumps(history.action_data, default=str))
    return row


def _row_to_history(row) -> ScheduledActionHistory:
    return ScheduledActionHistory.model_validate(dict(row))


def _row_to_event(row) -> AuditEvent:
    data = dict(row)
    details = data.pop("details_json", None)
    data["details"] = json.loads(details) if details else {}
    return AuditEvent.model_validate(data)


# =============================================================================
# STORES
# =============================================================================

class SqlLedgerStorage(LedgerStorageInterface):
    """Ledger entries and budgets in a SQL database."""

    def __init__(self, db: SqlDatabase):
        self._db = db

    @retry_transient
    async def append(self, entry: LedgerEntry) -> str:
        with self._db.begin() as conn:
            conn.execute(insert(ledger_entries).values(**_entry_to_row(entry)))
        return entry.id

    @retry_transient
    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        with self._db.begin() as conn:
            row = conn.execute(
                select(ledger_entries).where(ledger_entries.c.id == entry_id)
            ).mappings().first()
        return _row_to_entry(row) if row else None

    @retry_transient
    async def soft_delete(self, entry_id: str, deleted_at: datetime) -> bool:
        with self._db.begin() as conn:
            result = conn.execute(
                update(ledger_entries)
                .where(ledger_entries.c.id == entry_id)
                .where(ledger_entries.c.deleted.is_(None))
                .values(deleted=deleted_at)
            )
            if result.rowcount == 1:
                return True
            exists = conn.execute(
                select(ledger_entries.c.id).where(ledger_entries.c.id == entry_id)
            ).first()
        if exists is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        return False

    @retry_transient
    async def query_live(
        self,
        group_id: str,
        budget_id: Optional[str] = None,
    ) -> list[LedgerEntry]:
        query = (
            select(ledger_entries)
            .where(ledger_entries.c.group_id == group_id)
            .where(ledger_entries.c.deleted.is_(None))
        )
        if budget_id is not None:
            query = query.where(ledger_entries.c.budget_id == budget_id)
        with self._db.begin() as conn:
            rows = conn.execute(query).mappings().all()
        return [_row_to_entry(row) for row in rows]

    @retry_transient
    async def list_entries(
        self,
        group_id: str,
        offset: int = 0,
        limit: int = 50,
        include_deleted: bool = False,
        budget_id: Optional[str] = None,
    ) -> LedgerEntryPage:
        conditions = [ledger_entries.c.group_id == group_id]
        if not include_deleted:
            conditions.append(ledger_entries.c.deleted.is_(None))
        if budget_id is not None:
            conditions.append(ledger_entries.c.budget_id == budget_id)

        with self._db.begin() as conn:
            total = conn.execute(
                select(func.count()).select_from(ledger_entries).where(*conditions)
            ).scalar_one()
            rows = conn.execute(
                select(ledger_entries)
                .where(*conditions)
                .order_by(ledger_entries.c.added_time.desc(), ledger_entries.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).mappings().all()

        entries = [_row_to_entry(row) for row in rows]
        return LedgerEntryPage(
            entries=entries,
            total_count=total,
            has_more=offset + len(entries) < total,
        )

    @retry_transient
    async def create_budget(self, budget: Budget) -> str:
        with self._db.begin() as conn:
            conn.execute(insert(budgets).values(**_budget_to_row(budget)))
        return budget.id

    @retry_transient
    async def get_budget(self, budget_id: str) -> Optional[Budget]:
        with self._db.begin() as conn:
            row = conn.execute(
                select(budgets).where(budgets.c.id == budget_id)
            ).mappings().first()
        return _row_to_budget(row) if row else None

    @retry_transient
    async def list_budgets(
        self,
        group_id: str,
        include_deleted: bool = False,
    ) -> list[Budget]:
        query = select(budgets).where(budgets.c.group_id == group_id)
        if not include_deleted:
            query = query.where(budgets.c.deleted.is_(None))
        query = query.order_by(budgets.c.created_at, budgets.c.id)
        with self._db.begin() as conn:
            rows = conn.execute(query).mappings().all()
        return [_row_to_budget(row) for row in rows]

    @retry_transient
    async def soft_delete_budget(self, budget_id: str, deleted_at: datetime) -> bool:
        with self._db.begin() as conn:
            result = conn.execute(
                update(budgets)
                .where(budgets.c.id == budget_id)
                .where(budgets.c.deleted.is_(None))
                .values(deleted=deleted_at)
            )
            if result.rowcount == 1:
                return True
            exists = conn.execute(
                select(budgets.c.id).where(budgets.c.id == budget_id)
            ).first()
        if exists is None:
            raise NotFoundError(f"Budget {budget_id} not found")
        return False


class SqlScheduledActionStorage(ScheduledActionStorageInterface):
    """Scheduled actions and their execution commits in a SQL database."""

    def __init__(self, db: SqlDatabase):
        self._db = db

    @retry_transient
    async def insert(self, action: ScheduledAction) -> str:
        with self._db.begin() as conn:
            conn.execute(insert(scheduled_actions).values(**_action_to_row(action)))
        return action.id

    @retry_transient
    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        with self._db.begin() as conn:
            row = conn.execute(
                select(scheduled_actions).where(scheduled_actions.c.id == action_id)
            ).mappings().first()
        return _row_to_action(row) if row else None

    @retry_transient
    async def list_for_group(
        self,
        group_id: str,
        offset: int = 0,
        limit: int = 20,
    ) -> list[ScheduledAction]:
        with self._db.begin() as conn:
            rows = conn.execute(
                select(scheduled_actions)
                .where(scheduled_actions.c.group_id == group_id)
                .where(scheduled_actions.c.deleted_at.is_(None))
                .order_by(scheduled_actions.c.created_at.desc(), scheduled_actions.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).mappings().all()
        return [_row_to_action(row) for row in rows]

    @retry_transient
    async def count(self, group_id: str) -> int:
        with self._db.begin() as conn:
            return conn.execute(
                select(func.count())
                .select_from(scheduled_actions)
                .where(scheduled_actions.c.group_id == group_id)
                .where(scheduled_actions.c.deleted_at.is_(None))
            ).scalar_one()

    @retry_transient
    async def list_due(self, today: date) -> list[ScheduledAction]:
        with self._db.begin() as conn:
            rows = conn.execute(
                select(scheduled_actions)
                .where(scheduled_actions.c.is_active.is_(True))
                .where(scheduled_actions.c.deleted_at.is_(None))
                .where(scheduled_actions.c.next_execution_date <= today)
                .order_by(scheduled_actions.c.next_execution_date, scheduled_actions.c.id)
            ).mappings().all()
        return [_row_to_action(row) for row in rows]

    @retry_transient
    async def update(self, action: ScheduledAction, expected_version: int) -> bool:
        values = _action_to_row(action)
        values.pop("id")
        values.update(
            version=expected_version + 1,
            claim_token=None,
            claim_expires_at=None,
        )
        with self._db.begin() as conn:
            result = conn.execute(
                update(scheduled_actions)
                .where(scheduled_actions.c.id == action.id)
                .where(scheduled_actions.c.version == expected_version)
                .where(scheduled_actions.c.deleted_at.is_(None))
                .values(**values)
            )
            if result.rowcount == 1:
                return True
            exists = conn.execute(
                select(scheduled_actions.c.id).where(scheduled_actions.c.id == action.id)
            ).first()
        if exists is None:
            raise NotFoundError(f"Scheduled action {action.id} not found")
        return False

    @retry_transient
    async def soft_delete(self, action_id: str, deleted_at: datetime) -> bool:
        with self._db.begin() as conn:
            result = conn.execute(
                update(scheduled_actions)
                .where(scheduled_actions.c.id == action_id)
                .where(scheduled_actions.c.deleted_at.is_(None))
                .values(
                    deleted_at=deleted_at,
                    updated_at=deleted_at,
                    version=scheduled_actions.c.version + 1,
                    claim_token=None,
                    claim_expires_at=None,
                )
            )
            if result.rowcount == 1:
                return True
            exists = conn.execute(
                select(scheduled_actions.c.id).where(scheduled_actions.c.id == action_id)
            ).first()
        if exists is None:
            raise NotFoundError(f"Scheduled action {action_id} not found")
        return False

    @retry_transient
    async def try_claim(
        self,
        action_id: str,
        expected_index: int,
        expected_version: int,
        token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        claim_free = (
            scheduled_actions.c.claim_token.is_(None)
            | scheduled_actions.c.claim_expires_at.is_(None)
            | (scheduled_actions.c.claim_expires_at <= now)
        )
        with self._db.begin() as conn:
            result = conn.execute(
                update(scheduled_actions)
                .where(scheduled_actions.c.id == action_id)
                .where(scheduled_actions.c.deleted_at.is_(None))
                .where(scheduled_actions.c.is_active.is_(True))
                .where(scheduled_actions.c.occurrence_index == expected_index)
                .where(scheduled_actions.c.version == expected_version)
                .where(claim_free)
                .values(claim_token=token, claim_expires_at=lease_expires_at)
            )
        return result.rowcount == 1

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
        # Not retried: a retry after an ambiguous commit could double-write
        with self._db.begin() as conn:
            result = conn.execute(
                update(scheduled_actions)
                .where(scheduled_actions.c.id == action_id)
                .where(scheduled_actions.c.claim_token == token)
                .where(scheduled_actions.c.occurrence_index == expected_index)
                .where(scheduled_actions.c.version == expected_version)
                .values(
                    occurrence_index=expected_index + 1,
                    next_execution_date=next_execution_date,
                    last_occurrence_date=history.due_date,
                    last_executed_at=executed_at,
                    updated_at=executed_at,
                    version=scheduled_actions.c.version + 1,
                    claim_token=None,
                    claim_expires_at=None,
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(insert(ledger_entries).values(**_entry_to_row(entry)))
            conn.execute(insert(scheduled_action_history).values(**_history_to_row(history)))
        return True

    async def record_failure(
        self,
        action_id: str,
        token: str,
        history: ScheduledActionHistory,
    ) -> bool:
        with self._db.begin() as conn:
            result = conn.execute(
                update(scheduled_actions)
                .where(scheduled_actions.c.id == action_id)
                .where(scheduled_actions.c.claim_token == token)
                .values(claim_token=None, claim_expires_at=None)
            )
            if result.rowcount != 1:
                return False
            conn.execute(insert(scheduled_action_history).values(**_history_to_row(history)))
        return True


class SqlHistoryStorage(HistoryStorageInterface):
    """Read side of the execution history in a SQL database."""

    def __init__(self, db: SqlDatabase):
        self._db = db

    @retry_transient
    async def list_for_action(
        self,
        action_id: str,
        after_sequence: Optional[int] = None,
        limit: int = 50,
        status: Optional[ExecutionStatus] = None,
    ) -> list[ScheduledActionHistory]:
        query = select(scheduled_action_history).where(
            scheduled_action_history.c.scheduled_action_id == action_id
        )
        if after_sequence is not None:
            query = query.where(scheduled_action_history.c.sequence > after_sequence)
        if status is not None:
            query = query.where(scheduled_action_history.c.status == status.value)
        query = query.order_by(scheduled_action_history.c.sequence).limit(limit)
        with self._db.begin() as conn:
            rows = conn.execute(query).mappings().all()
        return [_row_to_history(row) for row in rows]

    @retry_transient
    async def get_record(self, history_id: str) -> Optional[ScheduledActionHistory]:
        with self._db.begin() as conn:
            row = conn.execute(
                select(scheduled_action_history)
                .where(scheduled_action_history.c.id == history_id)
            ).mappings().first()
        return _row_to_history(row) if row else None


class SqlAuditStorage(AuditStorageInterface):
    """Append-only audit log in a SQL database."""

    def __init__(self, db: SqlDatabase):
        self._db = db

    @retry_transient
    async def append_event(self, event: AuditEvent) -> bool:
        with self._db.begin() as conn:
            conn.execute(insert(audit_events).values(**event.to_row()))
        return True

    @retry_transient
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        with self._db.begin() as conn:
            rows = conn.execute(
                select(audit_events)
                .where(audit_events.c.correlation_id == str(correlation_id))
                .order_by(audit_events.c.timestamp)
            ).mappings().all()
        return [_row_to_event(row) for row in rows]

    @retry_transient
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        with self._db.begin() as conn:
            rows = conn.execute(
                select(audit_events)
                .where(audit_events.c.entity_type == entity_type)
                .where(audit_events.c.entity_id == entity_id)
                .order_by(audit_events.c.timestamp)
            ).mappings().all()
        return [_row_to_event(row) for row in rows]

    @retry_transient
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with self._db.begin() as conn:
            rows = conn.execute(
                select(audit_events)
                .order_by(audit_events.c.timestamp.desc())
                .limit(limit)
            ).mappings().all()
        return [_row_to_event(row) for row in rows]
