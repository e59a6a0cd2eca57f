"""Audit trail of committed workflow transitions.

Recorders:
- AuditRecorder: Abstract base class for audit sinks
- PostgresAuditRecorder: Append-only workflow_transitions table
- InMemoryAuditRecorder: Process-local list
- LoggingAuditRecorder: Structured log entries
- CompositeAuditRecorder: Fans out to several sinks
- AuditRecordError: Raised when a composite sink partly failed
- NullAuditRecorder: Discards records (for testing)

Factory:
- create_audit_recorder: Creates recorders based on configuration
- AuditSinkType: Enum of supported audit sinks
"""

from src.workflow_engine.audit.recorder import (
    AuditRecordError,
    AuditRecorder,
    AuditSinkType,
    CompositeAuditRecorder,
    InMemoryAuditRecorder,
    LoggingAuditRecorder,
    NullAuditRecorder,
    PostgresAuditRecorder,
    create_audit_recorder,
)

__all__ = [
    "AuditRecordError",
    "AuditRecorder",
    "AuditSinkType",
    "CompositeAuditRecorder",
    "InMemoryAuditRecorder",
    "LoggingAuditRecorder",
    "NullAuditRecorder",
    "PostgresAuditRecorder",
    "create_audit_recorder",
]
