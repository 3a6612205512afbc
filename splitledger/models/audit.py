"""
Audit Models for Split Ledger

Every significant change to the ledger or to a scheduled action is logged.
This provides:
1. Traceability of who changed what and when
2. Debugging information when a scheduled execution fails
3. A record of integrity violations found while computing balances

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Ledger
    LEDGER_ENTRY_APPENDED = "ledger_entry_appended"
    LEDGER_ENTRY_DELETED = "ledger_entry_deleted"
    BUDGET_CREATED = "budget_created"
    BUDGET_DELETED = "budget_deleted"

    # Scheduled actions
    SCHEDULED_ACTION_CREATED = "scheduled_action_created"
    SCHEDULED_ACTION_UPDATED = "scheduled_action_updated"
    SCHEDULED_ACTION_DELETED = "scheduled_action_deleted"

    # Execution
    EXECUTION_SUCCEEDED = "execution_succeeded"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CLAIM_LOST = "execution_claim_lost"
    SWEEP_COMPLETED = "sweep_completed"

    # Integrity and system events
    INTEGRITY_VIOLATION = "integrity_violation"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One record in the audit trail.

    `entity_type` and `entity_id` name the ledger entry, budget or
    scheduled action the event is about.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'ledger_entry', 'scheduled_action')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    group_id: Optional[str] = Field(
        default=None,
        description="Group the entity belongs to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all executions in one sweep)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """Flat, JSON-safe fields for a structlog event."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "group_id": self.group_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_row(self) -> dict:
        """Convert to a flat row for the audit_events table."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "group_id": self.group_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details_json": json.dumps(self.details, default=str) if self.details else "",
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Factory methods, one per event type, that fill in severity and description.

    Usage:
        event = AuditEventBuilder.entry_appended(entry_id, group_id, ...)
        event = AuditEventBuilder.execution_failed(action_id, ...)
    """

    @staticmethod
    def entry_appended(
        entry_id: str,
        group_id: str,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_ENTRY_APPENDED,
            entity_type="ledger_entry",
            entity_id=entry_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description=f"Ledger entry added: {amount} {currency}",
            details={
                "amount": amount,
                "currency": currency,
            },
            is_user_action=True,
        )

    @staticmethod
    def entry_deleted(
        entry_id: str,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_ENTRY_DELETED,
            entity_type="ledger_entry",
            entity_id=entry_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description="Ledger entry soft-deleted",
            is_user_action=True,
        )

    @staticmethod
    def budget_created(
        budget_id: str,
        group_id: str,
        name: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_CREATED,
            entity_type="budget",
            entity_id=budget_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description=f"Budget created: {name or budget_id}",
            is_user_action=True,
        )

    @staticmethod
    def budget_deleted(
        budget_id: str,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_DELETED,
            entity_type="budget",
            entity_id=budget_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description="Budget soft-deleted",
            is_user_action=True,
        )

    @staticmethod
    def action_created(
        action_id: str,
        group_id: str,
        action_type: str,
        frequency: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULED_ACTION_CREATED,
            entity_type="scheduled_action",
            entity_id=action_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description=f"Scheduled {frequency} {action_type} created",
            details={
                "action_type": action_type,
                "frequency": frequency,
            },
            is_user_action=True,
        )

    @staticmethod
    def action_updated(
        action_id: str,
        group_id: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULED_ACTION_UPDATED,
            entity_type="scheduled_action",
            entity_id=action_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description=f"Scheduled action updated: {', '.join(changed_fields) or 'no changes'}",
            details={"changed_fields": changed_fields},
            is_user_action=True,
        )

    @staticmethod
    def action_deleted(
        action_id: str,
        group_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULED_ACTION_DELETED,
            entity_type="scheduled_action",
            entity_id=action_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description="Scheduled action deleted",
            is_user_action=True,
        )

    @staticmethod
    def execution_succeeded(
        action_id: str,
        group_id: str,
        due_date: str,
        entry_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXECUTION_SUCCEEDED,
            entity_type="scheduled_action",
            entity_id=action_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description=f"Scheduled action executed for {due_date}",
            details={
                "due_date": due_date,
                "ledger_entry_id": entry_id,
            },
        )

    @staticmethod
    def execution_failed(
        action_id: str,
        group_id: str,
        due_date: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXECUTION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="scheduled_action",
            entity_id=action_id,
            group_id=group_id,
            correlation_id=correlation_id,
            description=f"Scheduled action failed for {due_date}",
            error_message=error_message,
            details={"due_date": due_date},
        )

    @staticmethod
    def claim_lost(
        action_id: str,
        due_date: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXECUTION_CLAIM_LOST,
            severity=AuditSeverity.DEBUG,
            entity_type="scheduled_action",
            entity_id=action_id,
            correlation_id=correlation_id,
            description=f"Occurrence {due_date} already claimed by another executor",
            details={"due_date": due_date},
        )

    @staticmethod
    def sweep_completed(
        due_count: int,
        succeeded: int,
        failed: int,
        skipped: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        severity = AuditSeverity.WARNING if failed else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.SWEEP_COMPLETED,
            severity=severity,
            entity_type="sweep",
            correlation_id=correlation_id,
            description=f"Sweep finished: {succeeded} succeeded, {failed} failed",
            details={
                "due_actions": due_count,
                "succeeded": succeeded,
                "failed": failed,
                "skipped": skipped,
            },
        )

    @staticmethod
    def integrity_violation(
        entry_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEGRITY_VIOLATION,
            severity=AuditSeverity.CRITICAL,
            entity_type="ledger_entry",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description="Ledger entry shares do not match its amount",
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
