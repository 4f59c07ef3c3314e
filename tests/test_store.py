"""
Tests for the SQLite ledger store.

The store is exercised against a real database file in tmp_path; no
mocking of sqlite3.
"""

from datetime import date
from decimal import Decimal

import pytest

from ledgersync.models.audit import AuditEventBuilder
from ledgersync.models.ledger import EntityType, Price, SyncState, Tag, Unit
from ledgersync.models.mutation import MutationStatus, OperationType
from ledgersync.models.requests import MutationCodec, build_request
from ledgersync.services.storage import (
    NotFoundError,
    SQLiteAuditStorage,
    SQLiteLedgerStore,
)

from conftest import make_account, make_transaction


class TestEntities:
    """Tests for entity persistence."""

    def test_transaction_round_trip_keeps_postings(self, store):
        """Test that postings come back in order with their tags."""
        tx = make_transaction(("60", "40", "-100"), note="weekly shop")
        tx.postings[0].tag_ids = ["food", "home"]
        store.save_entity(tx)

        loaded = store.get_transaction(tx.id)
        assert loaded is not None
        assert loaded.description == "Groceries"
        assert loaded.note == "weekly shop"
        assert [p.amount for p in loaded.postings] == [Decimal("60"), Decimal("40"), Decimal("-100")]
        assert loaded.postings[0].tag_ids == ["food", "home"]
        assert loaded.postings[1].quantity is None

    def test_resaving_replaces_postings(self, store):
        """Test that a transaction owns its postings."""
        tx = make_transaction(("60", "40", "-100"))
        store.save_entity(tx)

        replaced = tx.model_copy(update={"postings": tx.postings[:1]})
        store.save_entity(replaced)

        loaded = store.get_transaction(tx.id)
        assert len(loaded.postings) == 1
        rows = store.connection.execute("SELECT COUNT(*) FROM postings").fetchone()
        assert rows[0] == 1

    def test_delete_cascades_postings(self, store):
        """Test that deleting a transaction removes its postings."""
        tx = make_transaction()
        tx.postings[0].tag_ids = ["food"]
        store.save_entity(tx)

        assert store.delete_entity(EntityType.TRANSACTION, str(tx.id)) is True
        assert store.get_transaction(tx.id) is None
        assert store.connection.execute("SELECT COUNT(*) FROM postings").fetchone()[0] == 0
        assert store.connection.execute("SELECT COUNT(*) FROM posting_tags").fetchone()[0] == 0

    def test_delete_missing_returns_false(self, store):
        """Test deleting an unknown key."""
        assert store.delete_entity(EntityType.TAG, "nope") is False

    def test_sync_state_helpers(self, store):
        """Test reading and setting sync state."""
        account = make_account("Assets:Bank")
        store.save_entity(account)

        assert store.get_sync_state(EntityType.ACCOUNT, "Assets:Bank") == SyncState.CLEAN
        assert store.set_sync_state(EntityType.ACCOUNT, "Assets:Bank", SyncState.DIRTY) is True
        assert store.sync_states(EntityType.ACCOUNT) == {"Assets:Bank": SyncState.DIRTY}
        assert store.get_sync_state(EntityType.ACCOUNT, "Assets:Cash") is None

    def test_list_transactions_filters(self, store):
        """Test date and account filters."""
        early = make_transaction(tx_date=date(2024, 1, 1))
        late = make_transaction(("5", "-5"), description="Coffee", tx_date=date(2024, 3, 1))
        store.save_entity(early)
        store.save_entity(late)

        assert [t.id for t in store.list_transactions()] == [late.id, early.id]
        assert [t.id for t in store.list_transactions(date_from=date(2024, 2, 1))] == [late.id]
        assert len(store.list_transactions(account_id="Expenses:Food")) == 2
        assert store.list_transactions(account_id="Income:Salary") == []

    def test_price_lookup_by_unit_and_date(self, store):
        """Test that prices are keyed by unit and date."""
        store.save_entity(Price(unit_code="GOLD", date=date(2024, 1, 1), price=Decimal("6200.50")))

        price = store.get_price("GOLD", date(2024, 1, 1))
        assert price.price == Decimal("6200.50")
        assert price.currency == "INR"
        assert store.get_price("GOLD", date(2024, 1, 2)) is None

    def test_recover_in_flight(self, store):
        """Test that IN_FLIGHT entities are reset to DIRTY on startup."""
        tag = Tag(name="food", sync_state=SyncState.IN_FLIGHT)
        unit = Unit(code="USD", name="Dollar", sync_state=SyncState.IN_FLIGHT)
        clean = Unit(code="INR", name="Rupee")
        for entity in (tag, unit, clean):
            store.save_entity(entity)

        assert store.recover_in_flight() == 2
        assert store.get_sync_state(EntityType.TAG, tag.id) == SyncState.DIRTY
        assert store.get_sync_state(EntityType.UNIT, "USD") == SyncState.DIRTY
        assert store.get_sync_state(EntityType.UNIT, "INR") == SyncState.CLEAN

    def test_data_survives_reopen(self, tmp_path):
        """Test that the store is durable across connections."""
        path = tmp_path / "durable.db"
        first = SQLiteLedgerStore(path)
        first.save_entity(make_account("Assets:Bank"))
        first.close()

        second = SQLiteLedgerStore(path)
        try:
            assert second.get_account("Assets:Bank") is not None
        finally:
            second.close()


class TestTransactions:
    """Tests for atomic units of work."""

    def test_exception_rolls_back_everything(self, store):
        """Test that a failed block leaves no partial writes."""
        tx = make_transaction()
        record = MutationCodec().to_record(build_request(OperationType.CREATE_TRANSACTION, tx))

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save_entity(tx)
                store.insert_record(record)
                raise RuntimeError("boom")

        assert store.get_transaction(tx.id) is None
        assert store.list_records() == []

    def test_nested_blocks_join_the_outer_one(self, store):
        """Test that an inner block does not commit on its own."""
        account = make_account("Assets:Bank")
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.save_entity(account)
                assert store.get_account("Assets:Bank") is not None
                raise RuntimeError("boom")

        assert store.get_account("Assets:Bank") is None

    def test_clear_all(self, store):
        """Test that every table is emptied."""
        tx = make_transaction()
        store.save_entity(tx)
        store.insert_record(MutationCodec().to_record(build_request(OperationType.CREATE_TRANSACTION, tx)))

        store.clear_all()

        assert store.list_transactions() == []
        assert store.list_records() == []


class TestQueueTable:
    """Tests for the mutation_queue table."""

    def _record(self, entity=None, op=OperationType.CREATE_TAG):
        entity = entity or Tag(name="food")
        return MutationCodec().to_record(build_request(op, entity))

    def test_insert_assigns_increasing_seq(self, store):
        """Test that seq reflects enqueue order."""
        first = store.insert_record(self._record())
        second = store.insert_record(self._record())
        assert second.seq > first.seq
        assert [r.id for r in store.list_records()] == [first.id, second.id]

    def test_payload_is_stored_verbatim(self, store):
        """Test that payload bytes are not re-encoded."""
        record = store.insert_record(self._record())
        assert store.get_record(record.id).payload == record.payload

    def test_update_and_counts(self, store):
        """Test status updates and the count summary."""
        a = store.insert_record(self._record())
        b = store.insert_record(self._record())
        store.insert_record(self._record())

        store.update_record(a.model_copy(update={"status": MutationStatus.RETRYING, "retry_count": 1}))
        store.update_record(b.model_copy(update={"status": MutationStatus.FAILED}))

        counts = store.queue_counts()
        assert (counts.pending, counts.retrying, counts.failed) == (1, 1, 1)
        assert [r.id for r in store.list_records([MutationStatus.FAILED])] == [b.id]

    def test_update_missing_record_raises(self, store):
        """Test updating a record that was removed."""
        with pytest.raises(NotFoundError):
            store.update_record(self._record())

    def test_records_for_entity(self, store):
        """Test per-entity lookup."""
        tag = Tag(name="food")
        mine = store.insert_record(self._record(tag))
        store.insert_record(self._record())

        records = store.records_for_entity(EntityType.TAG, tag.id)
        assert [r.id for r in records] == [mine.id]

    def test_delete_record_has_empty_payload(self, store):
        """Test that delete records keep an empty body."""
        record = store.insert_record(self._record(op=OperationType.DELETE_TAG))
        assert store.get_record(record.id).payload == b""


class TestAuditStorage:
    """Tests for the audit_log table."""

    @pytest.mark.asyncio
    async def test_append_and_query(self, store):
        """Test appending events and reading them back."""
        audit = SQLiteAuditStorage(store)
        event = AuditEventBuilder.queue_cleared(removed=3)
        assert await audit.append_event(event) is True

        recent = await audit.get_recent_events(limit=10)
        assert [e.event_id for e in recent] == [event.event_id]
        assert recent[0].details == {"removed": 3}
        assert recent[0].is_user_action is True
