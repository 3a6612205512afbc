"""
Audit Logger

DESIGN DECISION: Every ledger write, budget change, action change and
scheduled execution produces an audit event.

A failed audit write is logged and reported as False; it never aborts
the ledger write or execution that produced the event. Events from one
sweep share a correlation id.
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from splitledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from splitledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog's JSON lines through the stdlib root logger."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper()))


class AuditLogger:
    """
    Writes every event to the structlog stream, and to audit storage
    when one is configured.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Emit one event at a log level matching its severity.

        Returns:
            False only when the storage write failed
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_entry_appended(
        self,
        entry_id: str,
        group_id: str,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a new ledger entry."""
        await self.log(AuditEventBuilder.entry_appended(
            entry_id=entry_id,
            group_id=group_id,
            amount=amount,
            currency=currency,
            correlation_id=correlation_id,
        ))

    async def log_entry_deleted(
        self,
        entry_id: str,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a ledger entry soft delete."""
        await self.log(AuditEventBuilder.entry_deleted(
            entry_id=entry_id,
            group_id=group_id,
            correlation_id=correlation_id,
        ))

    async def log_budget_created(
        self,
        budget_id: str,
        group_id: str,
        name: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_created(
            budget_id=budget_id,
            group_id=group_id,
            name=name,
            correlation_id=correlation_id,
        ))

    async def log_budget_deleted(
        self,
        budget_id: str,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_deleted(
            budget_id=budget_id,
            group_id=group_id,
            correlation_id=correlation_id,
        ))

    async def log_action_created(
        self,
        action_id: str,
        group_id: str,
        action_type: str,
        frequency: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log scheduled action creation."""
        await self.log(AuditEventBuilder.action_created(
            action_id=action_id,
            group_id=group_id,
            action_type=action_type,
            frequency=frequency,
            correlation_id=correlation_id,
        ))

    async def log_action_updated(
        self,
        action_id: str,
        group_id: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.action_updated(
            action_id=action_id,
            group_id=group_id,
            changed_fields=changed_fields,
            correlation_id=correlation_id,
        ))

    async def log_action_deleted(
        self,
        action_id: str,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.action_deleted(
            action_id=action_id,
            group_id=group_id,
            correlation_id=correlation_id,
        ))

    async def log_execution_succeeded(
        self,
        action_id: str,
        group_id: str,
        due_date: str,
        entry_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a successful scheduled execution."""
        await self.log(AuditEventBuilder.execution_succeeded(
            action_id=action_id,
            group_id=group_id,
            due_date=due_date,
            entry_id=entry_id,
            correlation_id=correlation_id,
        ))

    async def log_execution_failed(
        self,
        action_id: str,
        group_id: str,
        due_date: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a failed scheduled execution."""
        await self.log(AuditEventBuilder.execution_failed(
            action_id=action_id,
            group_id=group_id,
            due_date=due_date,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_claim_lost(
        self,
        action_id: str,
        due_date: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.claim_lost(
            action_id=action_id,
            due_date=due_date,
            correlation_id=correlation_id,
        ))

    async def log_sweep_completed(
        self,
        due_count: int,
        succeeded: int,
        failed: int,
        skipped: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.sweep_completed(
            due_count=due_count,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            correlation_id=correlation_id,
        ))

    async def log_integrity_violation(
        self,
        entry_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a ledger entry whose shares don't add up."""
        await self.log(AuditEventBuilder.integrity_violation(
            entry_id=entry_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """A fresh id shared by every event of one operation, such as a sweep."""
    return uuid4()
