"""
Mutation Queue

DESIGN DECISION: The queue is an ordered, durable log kept in the ledger
database itself (table `mutation_queue`). Appending a record happens in
the same SQLite transaction as the entity write it describes, so a local
change and its outbound record can never exist one without the other.

Eligibility rules:
1. Only non-terminal records (pending / retrying) are candidates
2. Per entity, only the oldest non-terminal record is a candidate, so
   records for one entity are released strictly in creation order
3. A candidate is eligible once its backoff has elapsed
4. Among eligible candidates the oldest (lowest seq) wins

A record waiting out its backoff never blocks records for other entities.
"""

from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import structlog

from ledgersync.models.ledger import EntityType, SyncState, utcnow
from ledgersync.models.mutation import (
    NON_TERMINAL_STATUSES,
    MutationRecord,
    MutationStatus,
    QueueCounts,
    RetryPolicy,
)
from ledgersync.services.storage import LedgerStoreInterface, NotFoundError

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class MutationQueue:
    """
    Durable outbound log with per-entity FIFO and exponential backoff.

    Usage:
        queue = MutationQueue(store, RetryPolicy())
        with store.transaction():
            store.save_entity(tx)
            queue.enqueue(record)

        record = queue.next_eligible()
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        policy: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._policy = policy or RetryPolicy()
        self._clock = clock
        # Records currently being sent; cancellation must not touch them
        self._in_flight: set[UUID] = set()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, record: MutationRecord) -> MutationRecord:
        """
        Append a record and mark its entity DIRTY.

        Joins the caller's store transaction when one is open.
        """
        with self._store.transaction():
            stored = self._store.insert_record(record)
            self._store.set_sync_state(record.entity_type, record.entity_id, SyncState.DIRTY)

        logger.info("mutation_enqueued", seq=stored.seq, **stored.to_log_dict())
        return stored

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _heads(self) -> list[MutationRecord]:
        """Oldest non-terminal record of every entity, in log order."""
        seen: set[tuple[EntityType, str]] = set()
        heads = []
        for record in self._store.list_records(NON_TERMINAL_STATUSES):
            key = (record.entity_type, record.entity_id)
            if key in seen:
                continue
            seen.add(key)
            heads.append(record)
        return heads

    def next_eligible(self, now: Optional[datetime] = None) -> Optional[MutationRecord]:
        """
        The oldest record that may be dispatched right now.

        Returns:
            The record, or None when nothing is due
        """
        now = now or self.now()
        for record in self._heads():
            if record.id in self._in_flight:
                continue
            if record.can_retry(now, self._policy):
                return record
        return None

    def seconds_until_next_retry(self, now: Optional[datetime] = None) -> Optional[float]:
        """
        Shortest remaining backoff among waiting records.

        Returns:
            0.0 if something is due now, None if nothing is outstanding
        """
        now = now or self.now()
        waits = [
            record.seconds_until_retry(now, self._policy)
            for record in self._heads()
            if record.id not in self._in_flight
        ]
        return min(waits) if waits else None

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def mark_in_flight(self, record: MutationRecord) -> None:
        self._in_flight.add(record.id)
        self._store.set_sync_state(record.entity_type, record.entity_id, SyncState.IN_FLIGHT)

    def mark_succeeded(self, record: MutationRecord) -> None:
        """
        Remove an acknowledged record.

        The entity becomes CLEAN unless another non-terminal record still
        references it.
        """
        self._in_flight.discard(record.id)
        with self._store.transaction():
            self._store.delete_record(record.id)
            remaining = self._outstanding_for(record.entity_type, record.entity_id)
            self._store.set_sync_state(
                record.entity_type,
                record.entity_id,
                SyncState.DIRTY if remaining else SyncState.CLEAN,
            )

        logger.info("mutation_succeeded", **record.to_log_dict())

    def mark_failed(
        self,
        record: MutationRecord,
        transient: bool,
        error: Optional[str] = None,
    ) -> MutationRecord:
        """
        Record a failed attempt.

        Transient failures count against the retry budget and reschedule
        the record; permanent failures freeze it without counting.

        Returns:
            The updated record
        """
        self._in_flight.discard(record.id)
        now = self.now()

        if transient:
            retry_count = record.retry_count + 1
            exhausted = self._policy.is_exhausted(retry_count)
            updated = record.model_copy(update={
                "retry_count": retry_count,
                "last_attempt_at": now,
                "status": MutationStatus.FAILED if exhausted else MutationStatus.RETRYING,
                "last_error": (error or "")[:1000] or None,
            })
            state = SyncState.CONFLICT_FAILED if exhausted else SyncState.DIRTY
        else:
            updated = record.model_copy(update={
                "last_attempt_at": now,
                "status": MutationStatus.FAILED,
                "last_error": (error or "")[:1000] or None,
            })
            state = SyncState.CONFLICT_FAILED

        with self._store.transaction():
            self._store.update_record(updated)
            self._store.set_sync_state(record.entity_type, record.entity_id, state)

        log = logger.warning if updated.status is MutationStatus.RETRYING else logger.error
        log(
            "mutation_failed",
            transient=transient,
            next_retry_in=(
                self._policy.delay(updated.retry_count)
                if updated.status is MutationStatus.RETRYING else None
            ),
            error=error,
            **updated.to_log_dict(),
        )
        return updated

    def release(self, record: MutationRecord) -> None:
        """
        Return a record to the queue untouched after an aborted attempt.

        Used when the attempt never reached a verdict (authentication
        required); the entity goes back to DIRTY.
        """
        self._in_flight.discard(record.id)
        self._store.set_sync_state(record.entity_type, record.entity_id, SyncState.DIRTY)

    def _outstanding_for(self, entity_type: EntityType, entity_id: str) -> list[MutationRecord]:
        return [
            r for r in self._store.records_for_entity(entity_type, entity_id)
            if not r.is_terminal
        ]

    # ------------------------------------------------------------------
    # Cancellation and user actions
    # ------------------------------------------------------------------

    def is_in_flight(self, record_id: UUID) -> bool:
        return record_id in self._in_flight

    def records_for(self, entity_type: EntityType, entity_id: str) -> list[MutationRecord]:
        return self._store.records_for_entity(entity_type, entity_id)

    def has_records(self, entity_type: EntityType, entity_id: str) -> bool:
        """True if any record, terminal or not, references the entity."""
        return bool(self._store.records_for_entity(entity_type, entity_id))

    def referenced_keys(self, entity_type: EntityType) -> set[str]:
        """Keys of every entity of a type that some record still references."""
        return {
            r.entity_id for r in self._store.list_records()
            if r.entity_type is entity_type
        }

    def cancel_unsent(self, entity_type: EntityType, entity_id: str) -> list[MutationRecord]:
        """
        Drop every non-terminal record for an entity that is not being sent.

        Returns:
            The removed records
        """
        removed = []
        with self._store.transaction():
            for record in self._outstanding_for(entity_type, entity_id):
                if record.id in self._in_flight:
                    continue
                self._store.delete_record(record.id)
                removed.append(record)

        if removed:
            logger.info(
                "mutations_cancelled",
                entity_type=entity_type.value,
                entity_id=entity_id,
                count=len(removed),
            )
        return removed

    def retry(self, record_id: UUID) -> MutationRecord:
        """
        Give a failed record a fresh retry budget.

        The time of the last attempt is kept so a later delete still knows
        the server may have seen this request.

        Raises:
            NotFoundError: If the record is not queued
            ValueError: If the record has not failed
        """
        record = self._store.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Queued record not found: {record_id}")
        if record.status is not MutationStatus.FAILED:
            raise ValueError(f"Only failed records can be retried (status={record.status.value})")

        updated = record.model_copy(update={
            "status": MutationStatus.PENDING,
            "retry_count": 0,
            "last_error": None,
        })
        with self._store.transaction():
            self._store.update_record(updated)
            self._store.set_sync_state(record.entity_type, record.entity_id, SyncState.DIRTY)

        logger.info("mutation_retried", **updated.to_log_dict())
        return updated

    def discard(self, record_id: UUID) -> MutationRecord:
        """
        Drop a failed record for good.

        The entity becomes CLEAN once nothing references it any more, which
        lets the next pull restore the server's copy.

        Raises:
            NotFoundError: If the record is not queued
            ValueError: If the record has not failed
        """
        record = self._store.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Queued record not found: {record_id}")
        if record.status is not MutationStatus.FAILED:
            raise ValueError(f"Only failed records can be discarded (status={record.status.value})")

        with self._store.transaction():
            self._store.delete_record(record_id)
            remaining = self._store.records_for_entity(record.entity_type, record.entity_id)
            if not remaining:
                state = SyncState.CLEAN
            elif any(not r.is_terminal for r in remaining):
                state = SyncState.DIRTY
            else:
                state = SyncState.CONFLICT_FAILED
            self._store.set_sync_state(record.entity_type, record.entity_id, state)

        logger.info("mutation_discarded", **record.to_log_dict())
        return record

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def counts(self) -> QueueCounts:
        return self._store.queue_counts()

    def failed_records(self) -> list[MutationRecord]:
        return self._store.list_records([MutationStatus.FAILED])

    def outstanding_records(self) -> list[MutationRecord]:
        return self._store.list_records(NON_TERMINAL_STATUSES)

    def has_outstanding(self) -> bool:
        return self.counts().outstanding > 0

    def clear(self) -> int:
        """Delete every queued record. Debug use only."""
        removed = self._store.clear_queue()
        self._in_flight.clear()
        logger.warning("mutation_queue_cleared", removed=removed)
        return removed
