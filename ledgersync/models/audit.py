"""
Audit Models for LedgerSync

Every significant sync action is logged for audit purposes.
This provides:
1. Complete traceability of every local write and remote dispatch
2. Debugging information when a record is frozen as failed
3. A history the user can inspect before retrying or discarding

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ledgersync.models.ledger import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of the push/pull pipeline has its own event type.
    """
    # Local writes
    MUTATION_ENQUEUED = "mutation_enqueued"
    MUTATION_CANCELLED = "mutation_cancelled"
    LOCAL_WRITE_REJECTED = "local_write_rejected"

    # Dispatch
    MUTATION_SUCCEEDED = "mutation_succeeded"
    MUTATION_RETRY_SCHEDULED = "mutation_retry_scheduled"
    MUTATION_FAILED = "mutation_failed"

    # User actions on failed records
    MUTATION_RETRIED_BY_USER = "mutation_retried_by_user"
    MUTATION_DISCARDED_BY_USER = "mutation_discarded_by_user"
    QUEUE_CLEARED = "queue_cleared"
    LOCAL_DATA_CLEARED = "local_data_cleared"

    # Sync cycle
    SYNC_CYCLE_STARTED = "sync_cycle_started"
    SYNC_CYCLE_COMPLETED = "sync_cycle_completed"
    PULL_MERGED = "pull_merged"
    PULL_SKIPPED = "pull_skipped"
    CONNECTIVITY_CHANGED = "connectivity_changed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
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
        description="Type of entity (e.g., 'transaction', 'mutation', 'sync_cycle')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Key of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one sync cycle)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # User action tracking
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_row(self) -> tuple:
        """
        Convert to a row for the audit_log table.

        Column order:
        (event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_code,
         error_message, is_user_action)
        """
        return (
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type,
            self.entity_id,
            str(self.correlation_id) if self.correlation_id else None,
            self.description,
            json.dumps(self.details, default=str) if self.details else None,
            self.error_code,
            self.error_message,
            int(self.is_user_action),
        )


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_enqueued(record)
        event = AuditEventBuilder.sync_cycle_started(trigger, correlation_id)
    """

    @staticmethod
    def mutation_enqueued(
        record_id: UUID,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_ENQUEUED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Queued {operation_type} for {entity_type} {entity_id}",
            details={
                "record_id": str(record_id),
                "operation_type": operation_type,
            },
            is_user_action=True,
        )

    @staticmethod
    def mutation_cancelled(
        entity_type: str,
        entity_id: str,
        cancelled_records: list[str],
        delete_queued: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_CANCELLED,
            entity_type=entity_type,
            entity_id=entity_id,
            description=(
                f"Cancelled {len(cancelled_records)} unsent record(s) for deleted "
                f"{entity_type} {entity_id}"
            ),
            details={
                "cancelled_records": cancelled_records,
                "delete_queued": delete_queued,
            },
            is_user_action=True,
        )

    @staticmethod
    def local_write_rejected(
        entity_type: str,
        entity_id: str,
        reason: str,
        issues: Optional[list[dict]] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOCAL_WRITE_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Local write refused: {reason}",
            details={
                "issues": issues or [],
            },
            is_user_action=True,
        )

    @staticmethod
    def mutation_succeeded(
        record_id: UUID,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_SUCCEEDED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"{operation_type} acknowledged by server",
            details={
                "record_id": str(record_id),
            },
        )

    @staticmethod
    def mutation_retry_scheduled(
        record_id: UUID,
        operation_type: str,
        retry_count: int,
        delay_seconds: float,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_RETRY_SCHEDULED,
            severity=AuditSeverity.WARNING,
            entity_type="mutation",
            entity_id=str(record_id),
            correlation_id=correlation_id,
            description=f"{operation_type} retry {retry_count} in {delay_seconds:.0f}s",
            details={
                "retry_count": retry_count,
                "delay_seconds": delay_seconds,
            },
            error_message=error_message,
        )

    @staticmethod
    def mutation_failed(
        record_id: UUID,
        operation_type: str,
        reason: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="mutation",
            entity_id=str(record_id),
            correlation_id=correlation_id,
            description=f"{operation_type} failed permanently ({reason})",
            details={
                "reason": reason,
            },
            error_code=reason,
            error_message=error_message,
        )

    @staticmethod
    def mutation_retried_by_user(record_id: UUID, operation_type: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_RETRIED_BY_USER,
            entity_type="mutation",
            entity_id=str(record_id),
            description=f"User requested another attempt of {operation_type}",
            is_user_action=True,
        )

    @staticmethod
    def mutation_discarded_by_user(record_id: UUID, operation_type: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_DISCARDED_BY_USER,
            severity=AuditSeverity.WARNING,
            entity_type="mutation",
            entity_id=str(record_id),
            description=f"User discarded failed {operation_type}",
            is_user_action=True,
        )

    @staticmethod
    def queue_cleared(removed: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUEUE_CLEARED,
            severity=AuditSeverity.WARNING,
            description=f"Sync queue cleared ({removed} records)",
            details={
                "removed": removed,
            },
            is_user_action=True,
        )

    @staticmethod
    def local_data_cleared() -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOCAL_DATA_CLEARED,
            severity=AuditSeverity.WARNING,
            description="All local ledger data and queued records were deleted",
            is_user_action=True,
        )

    @staticmethod
    def sync_cycle_started(trigger: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_CYCLE_STARTED,
            entity_type="sync_cycle",
            correlation_id=correlation_id,
            description=f"Sync cycle started ({trigger})",
            details={
                "trigger": trigger,
            },
            is_user_action=trigger == "manual",
        )

    @staticmethod
    def sync_cycle_completed(
        trigger: str,
        pushed: int,
        failed: int,
        pulled: bool,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_CYCLE_COMPLETED,
            entity_type="sync_cycle",
            correlation_id=correlation_id,
            description=f"Sync cycle finished: {pushed} pushed, {failed} failed",
            details={
                "trigger": trigger,
                "pushed": pushed,
                "failed": failed,
                "pulled": pulled,
            },
        )

    @staticmethod
    def pull_merged(
        entity_type: str,
        applied: int,
        skipped: int,
        removed: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PULL_MERGED,
            entity_type=entity_type,
            correlation_id=correlation_id,
            description=(
                f"Merged remote {entity_type}s: {applied} applied, "
                f"{skipped} protected, {removed} removed"
            ),
            details={
                "applied": applied,
                "skipped": skipped,
                "removed": removed,
            },
        )

    @staticmethod
    def pull_skipped(reason: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PULL_SKIPPED,
            severity=AuditSeverity.WARNING,
            entity_type="sync_cycle",
            correlation_id=correlation_id,
            description=f"Pull skipped: {reason}",
            details={
                "reason": reason,
            },
        )

    @staticmethod
    def connectivity_changed(online: bool) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONNECTIVITY_CHANGED,
            description="Connection restored" if online else "Connection lost",
            details={
                "online": online,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
