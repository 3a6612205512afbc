"""Audit logging and operational alerts package."""

from splitledger.audit.alerts import AlertSink, LoggingAlertSink, RecordingAlertSink
from splitledger.audit.logger import AuditLogger, configure_logging, create_correlation_id

__all__ = [
    "AlertSink",
    "AuditLogger",
    "LoggingAlertSink",
    "RecordingAlertSink",
    "configure_logging",
    "create_correlation_id",
]
