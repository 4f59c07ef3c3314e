"""
Tests for the atomic local write path.

Every write must land as entity + queued record together, or not at all.
"""

import json

import pytest

from ledgersync.audit import AuditLogger
from ledgersync.errors import LedgerValidationError, SerializationError
from ledgersync.models.audit import AuditEventType
from ledgersync.models.ledger import EntityType, SyncState, Tag, Unit
from ledgersync.models.mutation import MutationStatus, OperationType
from ledgersync.repository import LedgerRepository
from ledgersync.services.storage import (
    DuplicateError,
    NotFoundError,
    SQLiteAuditStorage,
    StorageError,
)
from ledgersync.validation import LedgerValidator

from conftest import make_account, make_transaction


@pytest.fixture
def audit_storage(store):
    return SQLiteAuditStorage(store)


@pytest.fixture
def repository(store, queue, codec, audit_storage):
    return LedgerRepository(
        store,
        queue,
        codec,
        LedgerValidator(store, balance_tolerance=0.01),
        AuditLogger(audit_storage),
    )


class TestCreate:
    """Tests for optimistic creates."""

    @pytest.mark.asyncio
    async def test_create_stores_dirty_and_queues(self, repository, store, queue):
        """Test that a create is visible locally and queued with its postings."""
        tx = make_transaction(("250", "-250"), description="Rent")

        saved = await repository.create_transaction(tx)

        assert saved.sync_state == SyncState.DIRTY
        local = store.get_transaction(tx.id)
        assert local.description == "Rent"
        assert local.sync_state == SyncState.DIRTY

        records = queue.outstanding_records()
        assert len(records) == 1
        assert records[0].operation_type == OperationType.CREATE_TRANSACTION
        assert records[0].status == MutationStatus.PENDING
        body = json.loads(records[0].payload)
        assert [p["amount"] for p in body["postings"]] == ["250", "-250"]

    @pytest.mark.asyncio
    async def test_unbalanced_transaction_is_refused(self, repository, store, queue, audit_storage):
        """Test that a validation error leaves no trace in store or queue."""
        tx = make_transaction(("100", "-90"))

        with pytest.raises(LedgerValidationError) as exc:
            await repository.create_transaction(tx)

        assert exc.value.result.has_errors is True
        assert store.get_transaction(tx.id) is None
        assert queue.counts().total == 0
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.LOCAL_WRITE_REJECTED

    @pytest.mark.asyncio
    async def test_single_posting_is_refused(self, repository):
        """Test the two-posting minimum."""
        with pytest.raises(LedgerValidationError):
            await repository.create_transaction(make_transaction(("0",)))

    @pytest.mark.asyncio
    async def test_serialization_failure_writes_nothing(self, repository, store, queue, codec, monkeypatch):
        """Test that an encoding failure fails only this write."""
        def broken(request):
            raise SerializationError("cannot encode")

        monkeypatch.setattr(codec, "encode", broken)
        tx = make_transaction()

        with pytest.raises(SerializationError):
            await repository.create_transaction(tx)

        assert store.get_transaction(tx.id) is None
        assert queue.counts().total == 0

    @pytest.mark.asyncio
    async def test_enqueue_failure_rolls_back_entity(self, repository, store, queue, monkeypatch):
        """Test that a queue write failure undoes the entity write."""
        def failing(record):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "insert_record", failing)
        account = make_account("Assets:Bank")

        with pytest.raises(StorageError):
            await repository.create_account(account)

        assert store.get_account("Assets:Bank") is None
        assert queue.counts().total == 0

    @pytest.mark.asyncio
    async def test_duplicate_create(self, repository):
        """Test that creating an existing key is refused."""
        await repository.create_unit(Unit(code="GOLD", name="Gold", type="commodity"))
        with pytest.raises(DuplicateError):
            await repository.create_unit(Unit(code="GOLD", name="Gold", type="commodity"))

    @pytest.mark.asyncio
    async def test_listener_sees_committed_record(self, repository):
        """Test that listeners are told about each write."""
        seen = []
        repository.add_listener(seen.append)

        await repository.create_tag(Tag(name="food"))

        assert [r.operation_type for r in seen] == [OperationType.CREATE_TAG]


class TestUpdate:
    """Tests for updates."""

    @pytest.mark.asyncio
    async def test_updates_queue_in_order(self, repository, queue, store):
        """Test that each edit is a separate snapshot, in order."""
        tx = make_transaction(description="Draft")
        await repository.create_transaction(tx)
        await repository.update_transaction(tx.model_copy(update={"description": "Second"}))
        await repository.update_transaction(tx.model_copy(update={"description": "Final"}))

        records = queue.records_for(EntityType.TRANSACTION, str(tx.id))
        assert [r.operation_type for r in records] == [
            OperationType.CREATE_TRANSACTION,
            OperationType.UPDATE_TRANSACTION,
            OperationType.UPDATE_TRANSACTION,
        ]
        assert [json.loads(r.payload)["description"] for r in records] == ["Draft", "Second", "Final"]
        assert store.get_transaction(tx.id).description == "Final"

    @pytest.mark.asyncio
    async def test_update_missing_entity(self, repository):
        """Test that an update needs an existing entity."""
        with pytest.raises(NotFoundError):
            await repository.update_account(make_account("Assets:Nowhere"))

    @pytest.mark.asyncio
    async def test_update_replaces_postings(self, repository, store):
        """Test that an update carries the full posting list."""
        tx = make_transaction(("60", "40", "-100"))
        await repository.create_transaction(tx)

        edited = make_transaction(("80", "-80"), id=tx.id)
        await repository.update_transaction(edited)

        assert len(store.get_transaction(tx.id).postings) == 2


class TestDelete:
    """Tests for deletes and cancellation of unsent work."""

    @pytest.mark.asyncio
    async def test_delete_before_first_attempt_cancels_everything(self, repository, store, queue):
        """Test that an unsent create plus edits vanish without a remote delete."""
        tx = make_transaction()
        await repository.create_transaction(tx)
        await repository.update_transaction(tx.model_copy(update={"description": "Edited"}))

        queued = await repository.delete_transaction(tx.id)

        assert queued is None
        assert store.get_transaction(tx.id) is None
        assert queue.counts().total == 0

    @pytest.mark.asyncio
    async def test_delete_after_failed_attempt_queues_delete(self, repository, store, queue):
        """Test that a create which may have reached the server is followed by a delete."""
        tx = make_transaction()
        await repository.create_transaction(tx)
        create = queue.next_eligible()
        queue.mark_in_flight(create)
        queue.mark_failed(create, transient=True, error="timeout")

        queued = await repository.delete_transaction(tx.id)

        assert queued.operation_type == OperationType.DELETE_TRANSACTION
        assert queued.payload == b""
        records = queue.records_for(EntityType.TRANSACTION, str(tx.id))
        assert [r.operation_type for r in records] == [OperationType.DELETE_TRANSACTION]

    @pytest.mark.asyncio
    async def test_delete_while_create_in_flight(self, repository, queue):
        """Test that the delete is queued behind the request being sent."""
        tx = make_transaction()
        await repository.create_transaction(tx)
        create = queue.next_eligible()
        queue.mark_in_flight(create)

        queued = await repository.delete_transaction(tx.id)

        records = queue.records_for(EntityType.TRANSACTION, str(tx.id))
        assert [r.id for r in records] == [create.id, queued.id]

        # The delete only becomes eligible after the create completes
        assert queue.next_eligible() is None
        queue.mark_succeeded(create)
        assert queue.next_eligible().id == queued.id

    @pytest.mark.asyncio
    async def test_delete_synced_entity(self, repository, store, queue):
        """Test that deleting a CLEAN entity sends a delete."""
        store.save_entity(make_account("Assets:Bank"))

        queued = await repository.delete_account("Assets:Bank")

        assert queued.endpoint == "/accounts/Assets:Bank"
        assert queued.method == "DELETE"
        assert store.get_account("Assets:Bank") is None

    @pytest.mark.asyncio
    async def test_delete_after_rejected_create(self, repository, queue):
        """Test that a create rejected on its first attempt needs no delete."""
        tag = Tag(name="food")
        await repository.create_tag(tag)
        create = queue.next_eligible()
        queue.mark_in_flight(create)
        queue.mark_failed(create, transient=False, error="400")

        assert await repository.delete_tag(tag.id) is None
        assert queue.counts().total == 0

    @pytest.mark.asyncio
    async def test_delete_after_user_retry_queues_delete(self, repository, queue, policy):
        """Test that a retried create keeps its attempt history for a later delete."""
        tag = Tag(name="food")
        await repository.create_tag(tag)
        create = queue.next_eligible()
        for _ in range(policy.max_retries + 1):
            queue.mark_in_flight(create)
            create = queue.mark_failed(create, transient=True, error="timeout")
        assert create.status == MutationStatus.FAILED

        retried = await repository.retry_failed(create.id)
        assert retried.was_attempted is True

        queued = await repository.delete_tag(tag.id)

        assert queued is not None
        records = queue.records_for(EntityType.TAG, tag.id)
        assert [r.operation_type for r in records] == [OperationType.DELETE_TAG]

    @pytest.mark.asyncio
    async def test_delete_missing_entity(self, repository):
        """Test deleting something that does not exist."""
        with pytest.raises(NotFoundError):
            await repository.delete_tag("missing")


class TestFailedRecords:
    """Tests for user actions on failed records."""

    @pytest.mark.asyncio
    async def test_retry_and_discard(self, repository, store, queue):
        """Test the retry and discard actions."""
        tag = Tag(name="food")
        await repository.create_tag(tag)
        create = queue.next_eligible()
        queue.mark_in_flight(create)
        queue.mark_failed(create, transient=False, error="409")
        assert [r.id for r in repository.failed_records()] == [create.id]

        retried = await repository.retry_failed(create.id)
        assert retried.status == MutationStatus.PENDING

        queue.mark_in_flight(retried)
        queue.mark_failed(retried, transient=False, error="409")
        await repository.discard_failed(create.id)

        assert repository.queue_counts().total == 0
        assert store.get_sync_state(EntityType.TAG, tag.id) == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_clear_queue_resets_states(self, repository, store):
        """Test the debug queue clear."""
        tx = make_transaction()
        await repository.create_transaction(tx)

        assert await repository.clear_queue() == 1
        assert store.get_transaction(tx.id).sync_state == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_clear_all_data(self, repository, store):
        """Test the debug wipe."""
        await repository.create_account(make_account("Assets:Bank"))
        await repository.clear_all_data()

        assert repository.list_accounts() == []
        assert repository.queue_counts().total == 0
