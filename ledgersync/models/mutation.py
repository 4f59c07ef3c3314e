"""
Mutation Queue Models

A MutationRecord is the durable, value-snapshot form of one remote write.
It is created in the same local transaction as the entity change it
represents and removed only when the remote service acknowledges it.

Status transitions:

    PENDING ──transient──▶ RETRYING ──transient──▶ RETRYING
       │                      │
       │                      └──retries exhausted──▶ FAILED
       ├──permanent──▶ FAILED
       └──2xx──▶ SUCCEEDED (record removed)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ledgersync.models.ledger import EntityType, utcnow


class OperationType(str, Enum):
    """Closed set of queueable remote operations."""
    CREATE_TRANSACTION = "CREATE_TRANSACTION"
    UPDATE_TRANSACTION = "UPDATE_TRANSACTION"
    DELETE_TRANSACTION = "DELETE_TRANSACTION"
    CREATE_ACCOUNT = "CREATE_ACCOUNT"
    UPDATE_ACCOUNT = "UPDATE_ACCOUNT"
    DELETE_ACCOUNT = "DELETE_ACCOUNT"
    CREATE_UNIT = "CREATE_UNIT"
    UPDATE_UNIT = "UPDATE_UNIT"
    DELETE_UNIT = "DELETE_UNIT"
    CREATE_TAG = "CREATE_TAG"
    UPDATE_TAG = "UPDATE_TAG"
    DELETE_TAG = "DELETE_TAG"

    @property
    def is_create(self) -> bool:
        return self.value.startswith("CREATE_")

    @property
    def is_delete(self) -> bool:
        return self.value.startswith("DELETE_")

    @property
    def entity_type(self) -> EntityType:
        return EntityType(self.value.split("_", 1)[1].lower())


class MutationStatus(str, Enum):
    """Lifecycle status of a queued record."""
    PENDING = "pending"
    RETRYING = "retrying"
    FAILED = "failed"
    SUCCEEDED = "succeeded"

    @property
    def is_terminal(self) -> bool:
        return self in (MutationStatus.FAILED, MutationStatus.SUCCEEDED)


NON_TERMINAL_STATUSES = (MutationStatus.PENDING, MutationStatus.RETRYING)


def backoff_delay(retry_count: int, base: float = 2.0, cap: float = 300.0) -> float:
    """
    Seconds to wait before the next attempt.

    delay(n) = min(cap, base ** n); with the defaults the delay doubles
    from 1s and is capped at five minutes.
    """
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    # Large exponents overflow float before the cap applies
    if retry_count >= 64:
        return cap
    return min(cap, base ** retry_count)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and retry limits applied to every record."""

    max_retries: int = 10
    backoff_base: float = 2.0
    backoff_cap_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_cap_seconds=settings.backoff_cap_seconds,
        )

    def delay(self, retry_count: int) -> float:
        return backoff_delay(retry_count, self.backoff_base, self.backoff_cap_seconds)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count > self.max_retries


class MutationRecord(BaseModel):
    """
    One queued remote operation.

    `payload` is the exact request body that will be sent, serialized at
    enqueue time. Later changes to the entity never alter it.
    """

    # Identity and ordering
    id: UUID = Field(
        default_factory=uuid4,
        description="Record identifier"
    )
    seq: Optional[int] = Field(
        default=None,
        description="Store-assigned position in the log"
    )

    # What to send
    operation_type: OperationType
    entity_type: EntityType
    entity_id: str = Field(
        ...,
        min_length=1,
        description="Key of the entity this record writes"
    )
    endpoint: str = Field(
        ...,
        pattern="^/",
    )
    method: str = Field(
        ...,
        pattern="^(POST|PUT|DELETE)$",
    )
    payload: bytes = Field(
        default=b"",
        description="Serialized request body (empty for deletes)"
    )

    # Retry bookkeeping
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = Field(default=0, ge=0)
    status: MutationStatus = MutationStatus.PENDING
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = Field(
        default=None,
        max_length=1000,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def was_attempted(self) -> bool:
        return self.last_attempt_at is not None

    def next_attempt_at(self, policy: RetryPolicy) -> Optional[datetime]:
        """When the record becomes retryable; None means immediately."""
        # PENDING records are due at once, even after a user retry
        if self.last_attempt_at is None or self.status is MutationStatus.PENDING:
            return None
        return self.last_attempt_at + timedelta(seconds=policy.delay(self.retry_count))

    def can_retry(self, now: datetime, policy: RetryPolicy) -> bool:
        """True when no attempt was made or the backoff for retry_count has elapsed."""
        if self.is_terminal:
            return False
        due = self.next_attempt_at(policy)
        return due is None or now >= due

    def seconds_until_retry(self, now: datetime, policy: RetryPolicy) -> float:
        due = self.next_attempt_at(policy)
        if due is None:
            return 0.0
        return max(0.0, (due - now).total_seconds())

    def to_log_dict(self) -> dict:
        """Fields safe for structured logs (no payload)."""
        return {
            "record_id": str(self.id),
            "operation_type": self.operation_type.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "status": self.status.value,
            "retry_count": self.retry_count,
        }


class QueueCounts(BaseModel):
    """User-visible summary of the queue."""

    pending: int = Field(default=0, ge=0)
    retrying: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)

    @property
    def outstanding(self) -> int:
        return self.pending + self.retrying

    @property
    def total(self) -> int:
        return self.pending + self.retrying + self.failed
