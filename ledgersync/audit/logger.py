"""
Audit Logger

DESIGN DECISION: Every significant sync action is logged.
This provides:
1. Complete traceability of local writes and remote dispatches
2. Debugging capability when a record ends up failed
3. User can see the history behind a failed record before acting on it

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash a sync cycle if logging fails)
- Supports correlation IDs to trace all events of one sync cycle
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledgersync.models.audit import AuditEvent, AuditEventBuilder
from ledgersync.models.mutation import MutationRecord
from ledgersync.services.storage import AuditStorageInterface


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


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The audit_log table (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger()

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        # Always log locally
        log_dict = event.to_log_dict()

        if event.severity.value == "error":
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        # Persist to storage if available
        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_mutation_enqueued(
        self,
        record: MutationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a record entering the queue."""
        event = AuditEventBuilder.mutation_enqueued(
            record_id=record.id,
            operation_type=record.operation_type.value,
            entity_type=record.entity_type.value,
            entity_id=record.entity_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_mutation_cancelled(
        self,
        entity_type: str,
        entity_id: str,
        cancelled: list[MutationRecord],
        delete_queued: bool,
    ) -> None:
        """Log unsent records dropped by a local delete."""
        event = AuditEventBuilder.mutation_cancelled(
            entity_type=entity_type,
            entity_id=entity_id,
            cancelled_records=[str(r.id) for r in cancelled],
            delete_queued=delete_queued,
        )
        await self.log(event)

    async def log_write_rejected(
        self,
        entity_type: str,
        entity_id: str,
        reason: str,
        issues: Optional[list[dict]] = None,
    ) -> None:
        """Log a local write refused before anything was stored."""
        event = AuditEventBuilder.local_write_rejected(
            entity_type=entity_type,
            entity_id=entity_id,
            reason=reason,
            issues=issues,
        )
        await self.log(event)

    async def log_mutation_succeeded(
        self,
        record: MutationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a server acknowledgement."""
        event = AuditEventBuilder.mutation_succeeded(
            record_id=record.id,
            operation_type=record.operation_type.value,
            entity_type=record.entity_type.value,
            entity_id=record.entity_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_retry_scheduled(
        self,
        record: MutationRecord,
        delay_seconds: float,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a transient failure that will be retried."""
        event = AuditEventBuilder.mutation_retry_scheduled(
            record_id=record.id,
            operation_type=record.operation_type.value,
            retry_count=record.retry_count,
            delay_seconds=delay_seconds,
            error_message=record.last_error or "",
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_mutation_failed(
        self,
        record: MutationRecord,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a record frozen as failed."""
        event = AuditEventBuilder.mutation_failed(
            record_id=record.id,
            operation_type=record.operation_type.value,
            reason=reason,
            error_message=record.last_error or "",
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_user_retry(self, record: MutationRecord) -> None:
        event = AuditEventBuilder.mutation_retried_by_user(
            record_id=record.id,
            operation_type=record.operation_type.value,
        )
        await self.log(event)

    async def log_user_discard(self, record: MutationRecord) -> None:
        event = AuditEventBuilder.mutation_discarded_by_user(
            record_id=record.id,
            operation_type=record.operation_type.value,
        )
        await self.log(event)

    async def log_queue_cleared(self, removed: int) -> None:
        await self.log(AuditEventBuilder.queue_cleared(removed))

    async def log_local_data_cleared(self) -> None:
        await self.log(AuditEventBuilder.local_data_cleared())

    async def log_cycle_started(self, trigger: str, correlation_id: UUID) -> None:
        """Log the start of a push/pull cycle."""
        event = AuditEventBuilder.sync_cycle_started(
            trigger=trigger,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_cycle_completed(
        self,
        trigger: str,
        pushed: int,
        failed: int,
        pulled: bool,
        correlation_id: UUID,
    ) -> None:
        """Log the end of a push/pull cycle."""
        event = AuditEventBuilder.sync_cycle_completed(
            trigger=trigger,
            pushed=pushed,
            failed=failed,
            pulled=pulled,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_pull_merged(
        self,
        entity_type: str,
        applied: int,
        skipped: int,
        removed: int,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.pull_merged(
            entity_type=entity_type,
            applied=applied,
            skipped=skipped,
            removed=removed,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_pull_skipped(self, reason: str, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.pull_skipped(reason, correlation_id))

    async def log_connectivity_changed(self, online: bool) -> None:
        await self.log(AuditEventBuilder.connectivity_changed(online))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a sync cycle or a user action.
    Pass it through all subsequent operations.
    """
    return uuid4()
