"""
Ledger Repository - the local write path

DESIGN DECISION: Every user mutation goes through this module and is
committed as ONE atomic unit:
1. Validate (two-stage) - refuse bad data before anything is written
2. Serialize the outbound request - a payload that cannot be encoded
   fails this single write, never the store
3. In one SQLite transaction: persist the entity as DIRTY and append
   the matching record to the mutation queue

Either all of step 3 lands or none of it does. The UI sees its change
immediately (optimistic); the sync engine sends it when it can.

Deletes get special handling: unsent records for the entity are
cancelled, and a remote delete is queued only when the server may
already know the entity.
"""

from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from ledgersync.audit import AuditLogger
from ledgersync.errors import LedgerValidationError
from ledgersync.models.ledger import (
    Account,
    EntityType,
    LedgerEntity,
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
)
from ledgersync.models.requests import (
    MutationCodec,
    build_delete_request,
    build_request,
)
from ledgersync.services.storage import (
    DuplicateError,
    LedgerStoreInterface,
    NotFoundError,
)
from ledgersync.sync.queue import MutationQueue
from ledgersync.validation import LedgerValidator

logger = structlog.get_logger(__name__)

WriteListener = Callable[[MutationRecord], Any]

_OPERATIONS = {
    (EntityType.TRANSACTION, "create"): OperationType.CREATE_TRANSACTION,
    (EntityType.TRANSACTION, "update"): OperationType.UPDATE_TRANSACTION,
    (EntityType.ACCOUNT, "create"): OperationType.CREATE_ACCOUNT,
    (EntityType.ACCOUNT, "update"): OperationType.UPDATE_ACCOUNT,
    (EntityType.UNIT, "create"): OperationType.CREATE_UNIT,
    (EntityType.UNIT, "update"): OperationType.UPDATE_UNIT,
    (EntityType.TAG, "create"): OperationType.CREATE_TAG,
    (EntityType.TAG, "update"): OperationType.UPDATE_TAG,
}


class LedgerRepository:
    """
    Atomic, optimistic write access to the local ledger.

    Usage:
        repo = LedgerRepository(store, queue)
        tx = await repo.create_transaction(tx)
        await repo.delete_transaction(tx.id)
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        queue: MutationQueue,
        codec: Optional[MutationCodec] = None,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._queue = queue
        self._codec = codec or MutationCodec()
        self._validator = validator or LedgerValidator(store)
        self._audit = audit_logger or AuditLogger()
        self._listeners: list[WriteListener] = []

    def add_listener(self, listener: WriteListener) -> None:
        """Called with the queued record after every committed write."""
        self._listeners.append(listener)

    def _notify(self, record: MutationRecord) -> None:
        for listener in self._listeners:
            try:
                listener(record)
            except Exception as e:
                logger.warning("write_listener_failed", error=str(e))

    # ------------------------------------------------------------------
    # Core write path
    # ------------------------------------------------------------------

    async def _validate(self, entity: LedgerEntity) -> None:
        result = self._validator.validate(entity)
        if result.is_valid:
            for warning in result.warnings:
                logger.info("ledger_write_warning", entity_id=entity.entity_key, warning=warning)
            return

        await self._audit.log_write_rejected(
            entity_type=entity.entity_type.value,
            entity_id=entity.entity_key,
            reason="validation failed",
            issues=[issue.model_dump() for issue in result.errors],
        )
        raise LedgerValidationError(
            self._validator.get_user_friendly_summary(result),
            result=result,
        )

    async def _write(self, action: str, entity: LedgerEntity) -> LedgerEntity:
        """
        Persist an entity and queue its remote write in one transaction.

        Raises:
            DuplicateError: Creating an entity whose key already exists
            NotFoundError: Updating an entity that does not exist
            LedgerValidationError: The entity failed validation
            SerializationError: The request could not be encoded
        """
        entity_type = entity.entity_type
        key = entity.entity_key
        operation_type = _OPERATIONS[(entity_type, action)]

        existing_state = self._store.get_sync_state(entity_type, key)
        if action == "create" and existing_state is not None:
            raise DuplicateError(f"{entity_type.value} {key} already exists")
        if action == "update" and existing_state is None:
            raise NotFoundError(f"{entity_type.value} {key} not found")

        await self._validate(entity)

        # Serialized before the transaction opens: an encoding failure
        # must leave both the store and the queue untouched
        record = self._codec.to_record(build_request(operation_type, entity))

        stored_entity = entity.model_copy(update={
            "sync_state": SyncState.DIRTY,
            "updated_at": utcnow(),
        })
        with self._store.transaction():
            self._store.save_entity(stored_entity)
            record = self._queue.enqueue(record)

        await self._audit.log_mutation_enqueued(record)
        self._notify(record)
        return stored_entity

    async def _delete(self, entity_type: EntityType, entity_id: str) -> Optional[MutationRecord]:
        """
        Delete an entity locally and decide what the server must be told.

        A create that was never attempted is cancelled together with every
        later unsent record and nothing is queued. Once the create may have
        reached the server (attempted, in flight or acknowledged), a remote
        delete is queued after whatever is still in flight.

        Returns:
            The queued delete record, or None when nothing had to be sent
        """
        if self._store.get_sync_state(entity_type, entity_id) is None:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found")

        records = self._queue.records_for(entity_type, entity_id)
        server_may_know = self._server_may_know(records)
        delete_record = None
        if server_may_know:
            delete_record = self._codec.to_record(build_delete_request(entity_type, entity_id))

        with self._store.transaction():
            cancelled = self._queue.cancel_unsent(entity_type, entity_id)
            # Failed records for a deleted entity can never be useful again
            for record in records:
                if record.status is MutationStatus.FAILED:
                    self._store.delete_record(record.id)
            self._store.delete_entity(entity_type, entity_id)
            if delete_record is not None:
                delete_record = self._queue.enqueue(delete_record)

        if cancelled:
            await self._audit.log_mutation_cancelled(
                entity_type.value, entity_id, cancelled, delete_queued=delete_record is not None
            )
        if delete_record is not None:
            await self._audit.log_mutation_enqueued(delete_record)
            self._notify(delete_record)

        logger.info(
            "ledger_entity_deleted",
            entity_type=entity_type.value,
            entity_id=entity_id,
            cancelled=len(cancelled),
            delete_queued=delete_record is not None,
        )
        return delete_record

    def _server_may_know(self, records: list[MutationRecord]) -> bool:
        """
        Whether the remote service may hold this entity.

        Without any queued create the entity came from the server or its
        create was acknowledged long ago.
        """
        creates = [r for r in records if r.operation_type.is_create]
        if not creates:
            return True
        create = creates[-1]
        if self._queue.is_in_flight(create.id):
            return True
        if create.status is MutationStatus.PENDING and not create.was_attempted:
            return False
        if create.status is MutationStatus.FAILED and create.retry_count == 0:
            # Rejected outright on its first attempt
            return False
        return True

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def create_transaction(self, tx: Transaction) -> Transaction:
        return await self._write("create", tx)

    async def update_transaction(self, tx: Transaction) -> Transaction:
        """Replace a transaction and its full posting list."""
        return await self._write("update", tx)

    async def delete_transaction(self, transaction_id: UUID) -> Optional[MutationRecord]:
        """Delete a transaction; its postings go with it."""
        return await self._delete(EntityType.TRANSACTION, str(transaction_id))

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return self._store.get_transaction(transaction_id)

    def list_transactions(self, **filters) -> list[Transaction]:
        return self._store.list_transactions(**filters)

    # ------------------------------------------------------------------
    # Accounts, units, tags
    # ------------------------------------------------------------------

    async def create_account(self, account: Account) -> Account:
        return await self._write("create", account)

    async def update_account(self, account: Account) -> Account:
        return await self._write("update", account)

    async def delete_account(self, account_id: str) -> Optional[MutationRecord]:
        return await self._delete(EntityType.ACCOUNT, account_id)

    def list_accounts(self) -> list[Account]:
        return self._store.list_accounts()

    async def create_unit(self, unit: Unit) -> Unit:
        return await self._write("create", unit)

    async def update_unit(self, unit: Unit) -> Unit:
        return await self._write("update", unit)

    async def delete_unit(self, code: str) -> Optional[MutationRecord]:
        return await self._delete(EntityType.UNIT, code)

    def list_units(self) -> list[Unit]:
        return self._store.list_units()

    async def create_tag(self, tag: Tag) -> Tag:
        return await self._write("create", tag)

    async def update_tag(self, tag: Tag) -> Tag:
        return await self._write("update", tag)

    async def delete_tag(self, tag_id: str) -> Optional[MutationRecord]:
        return await self._delete(EntityType.TAG, tag_id)

    def list_tags(self) -> list[Tag]:
        return self._store.list_tags()

    # ------------------------------------------------------------------
    # Failed records and maintenance
    # ------------------------------------------------------------------

    def queue_counts(self) -> QueueCounts:
        return self._queue.counts()

    def failed_records(self) -> list[MutationRecord]:
        return self._queue.failed_records()

    async def retry_failed(self, record_id: UUID) -> MutationRecord:
        """Put a failed record back in line with a fresh retry budget."""
        record = self._queue.retry(record_id)
        await self._audit.log_user_retry(record)
        self._notify(record)
        return record

    async def discard_failed(self, record_id: UUID) -> MutationRecord:
        """Drop a failed record; the next pull restores the server's copy."""
        record = self._queue.discard(record_id)
        await self._audit.log_user_discard(record)
        return record

    async def clear_queue(self) -> int:
        """Delete every queued record. Local entities keep their data."""
        with self._store.transaction():
            removed = self._queue.clear()
            for entity_type in (EntityType.TRANSACTION, EntityType.ACCOUNT, EntityType.UNIT, EntityType.TAG):
                for key, state in self._store.sync_states(entity_type).items():
                    if state is not SyncState.CLEAN:
                        self._store.set_sync_state(entity_type, key, SyncState.CLEAN)
        await self._audit.log_queue_cleared(removed)
        return removed

    async def clear_all_data(self) -> None:
        """Delete every local entity and queued record."""
        self._queue.clear()
        self._store.clear_all()
        await self._audit.log_local_data_cleared()
