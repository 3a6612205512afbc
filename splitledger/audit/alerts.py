"""
Operational Alerts

When a scheduled execution fails, the failure is recorded in the history
and also pushed to an alert sink so an operator hears about it without
polling history tables.

The default sink writes a structured error log line. Deployments that
page someone plug in their own `AlertSink`.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

import structlog


logger = structlog.get_logger(__name__)


class AlertSink(ABC):
    """Receives execution failures that need an operator's attention."""

    @abstractmethod
    async def execution_failed(
        self,
        action_id: str,
        group_id: str,
        due_date: date,
        error_message: str,
        details: Optional[dict] = None,
    ) -> None:
        pass


class LoggingAlertSink(AlertSink):
    """Alert sink that only logs."""

    async def execution_failed(
        self,
        action_id: str,
        group_id: str,
        due_date: date,
        error_message: str,
        details: Optional[dict] = None,
    ) -> None:
        logger.error(
            "scheduled_action_execution_failed",
            action_id=action_id,
            group_id=group_id,
            due_date=due_date.isoformat(),
            error=error_message,
            **(details or {}),
        )


class RecordingAlertSink(AlertSink):
    """Alert sink that keeps every alert in memory."""

    def __init__(self):
        self.alerts: list[dict] = []

    async def execution_failed(
        self,
        action_id: str,
        group_id: str,
        due_date: date,
        error_message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.alerts.append({
            "action_id": action_id,
            "group_id": group_id,
            "due_date": due_date,
            "error_message": error_message,
            "details": details or {},
        })
