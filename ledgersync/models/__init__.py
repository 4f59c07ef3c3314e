"""
Data Models Package

This package contains all Pydantic models used by LedgerSync.
All data flowing through the system must conform to these schemas.
"""

from ledgersync.models.ledger import (
    DEFAULT_CURRENCY,
    Account,
    EntityType,
    LedgerEntity,
    Posting,
    Price,
    SyncState,
    Tag,
    Transaction,
    Unit,
    utcnow,
)
from ledgersync.models.mutation import (
    MutationRecord,
    MutationStatus,
    OperationType,
    QueueCounts,
    RetryPolicy,
    backoff_delay,
)
from ledgersync.models.requests import (
    MutationCodec,
    MutationRequest,
    build_delete_request,
    build_request,
)
from ledgersync.models.validation import (
    ValidationIssue,
    ValidationResult,
)
from ledgersync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "DEFAULT_CURRENCY",
    "Account",
    "EntityType",
    "LedgerEntity",
    "Posting",
    "Price",
    "SyncState",
    "Tag",
    "Transaction",
    "Unit",
    "utcnow",
    # Queue models
    "MutationRecord",
    "MutationStatus",
    "OperationType",
    "QueueCounts",
    "RetryPolicy",
    "backoff_delay",
    # Requests
    "MutationCodec",
    "MutationRequest",
    "build_delete_request",
    "build_request",
    # Validation
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
