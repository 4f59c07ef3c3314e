"""
Tests for the single-worker sync executor.

Each test stops the worker before returning so no task outlives its
event loop.
"""

import asyncio
import json

import httpx
import pytest

from ledgersync.audit import AuditLogger
from ledgersync.models.ledger import EntityType, SyncState, Tag
from ledgersync.models.mutation import MutationStatus, OperationType
from ledgersync.models.requests import build_request
from ledgersync.services.storage import SQLiteAuditStorage
from ledgersync.sync.executor import STOP_AUTH, STOP_OFFLINE, SyncExecutor

from conftest import build_remote, make_account, make_transaction


def _enqueue(store, queue, codec, entity, op):
    store.save_entity(entity)
    return queue.enqueue(codec.to_record(build_request(op, entity)))


def _executor(store, queue, remote, codec) -> SyncExecutor:
    return SyncExecutor(queue, remote, codec, AuditLogger(SQLiteAuditStorage(store)))


class TestDrain:
    """Tests for draining the queue."""

    @pytest.mark.asyncio
    async def test_success_sends_payload_and_cleans(self, store, queue, remote, server, codec):
        """Test the happy path: one request, record removed, entity CLEAN."""
        tx = make_transaction()
        record = _enqueue(store, queue, codec, tx, OperationType.CREATE_TRANSACTION)
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert result.dispatched == 1
        assert result.succeeded == 1
        assert result.stopped is None
        assert server.writes[0].content == record.payload
        assert queue.counts().total == 0
        assert store.get_sync_state(EntityType.TRANSACTION, str(tx.id)) == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_records_are_sent_in_order(self, store, queue, remote, server, codec):
        """Test that create and update of one entity go out in order."""
        tx = make_transaction()
        _enqueue(store, queue, codec, tx, OperationType.CREATE_TRANSACTION)
        _enqueue(store, queue, codec, tx, OperationType.UPDATE_TRANSACTION)
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert result.succeeded == 2
        assert [r.method for r in server.writes] == ["POST", "PUT"]

    @pytest.mark.asyncio
    async def test_rejection_does_not_stop_the_drain(self, store, queue, remote, server, codec):
        """Test that a 4xx fails one record and the next one is still sent."""
        server.script = [400, 201]
        bad = _enqueue(store, queue, codec, make_account("Assets:Bank"), OperationType.CREATE_ACCOUNT)
        _enqueue(store, queue, codec, make_account("Assets:Cash"), OperationType.CREATE_ACCOUNT)
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert (result.failed, result.succeeded) == (1, 1)
        failed = store.get_record(bad.id)
        assert failed.status == MutationStatus.FAILED
        assert failed.retry_count == 0
        assert store.get_sync_state(EntityType.ACCOUNT, "Assets:Bank") == SyncState.CONFLICT_FAILED
        assert store.get_sync_state(EntityType.ACCOUNT, "Assets:Cash") == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_unreachable_stops_the_drain(self, store, queue, remote, server, codec):
        """Test that only the first record is charged when offline."""
        server.script = ["offline"]
        first = _enqueue(store, queue, codec, Tag(name="a"), OperationType.CREATE_TAG)
        second = _enqueue(store, queue, codec, Tag(name="b"), OperationType.CREATE_TAG)
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert result.stopped == STOP_OFFLINE
        assert result.offline is True
        assert result.retry_scheduled == 1
        assert len(server.writes) == 1
        assert store.get_record(first.id).retry_count == 1
        assert store.get_record(second.id).retry_count == 0

    @pytest.mark.asyncio
    async def test_server_error_continues_with_other_entities(self, store, queue, remote, server, codec):
        """Test that a 503 reschedules one record and the drain moves on."""
        server.script = [503, 201]
        first = _enqueue(store, queue, codec, Tag(name="a"), OperationType.CREATE_TAG)
        _enqueue(store, queue, codec, Tag(name="b"), OperationType.CREATE_TAG)
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert (result.retry_scheduled, result.succeeded) == (1, 1)
        assert store.get_record(first.id).status == MutationStatus.RETRYING

    @pytest.mark.asyncio
    async def test_auth_required_leaves_record_untouched(self, store, queue, remote, server, codec):
        """Test that a 401 stops the drain without charging an attempt."""
        server.script = [401]
        tag = Tag(name="a")
        record = _enqueue(store, queue, codec, tag, OperationType.CREATE_TAG)
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert result.stopped == STOP_AUTH
        assert result.blocked is True
        stored = store.get_record(record.id)
        assert stored.status == MutationStatus.PENDING
        assert stored.retry_count == 0
        assert store.get_sync_state(EntityType.TAG, tag.id) == SyncState.DIRTY

    @pytest.mark.asyncio
    async def test_corrupt_payload_fails_without_sending(self, store, queue, remote, server, codec):
        """Test that an undecodable record is failed and skipped."""
        tag = Tag(name="a")
        record = _enqueue(store, queue, codec, tag, OperationType.CREATE_TAG)
        store.connection.execute(
            "UPDATE mutation_queue SET payload = ? WHERE id = ?", (b"\xff\xfe", str(record.id))
        )
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert result.failed == 1
        assert result.dispatched == 0
        assert server.writes == []
        assert store.get_record(record.id).status == MutationStatus.FAILED

    @pytest.mark.asyncio
    async def test_backoff_schedule_across_drains(self, store, queue, remote, server, codec, clock):
        """Test three timeouts followed by a success once the backoff elapsed."""
        server.script = ["timeout", "timeout", "timeout"]
        tx = make_transaction()
        record = _enqueue(store, queue, codec, tx, OperationType.CREATE_TRANSACTION)
        executor = _executor(store, queue, remote, codec)
        try:
            for wait in (0, 2, 4):
                clock.advance(wait)
                await executor.drain()

            stored = store.get_record(record.id)
            assert stored.retry_count == 3
            assert stored.status == MutationStatus.RETRYING

            clock.advance(7)
            early = await executor.drain()
            assert early.dispatched == 0

            clock.advance(1)
            late = await executor.drain()
        finally:
            await executor.stop()

        assert late.succeeded == 1
        assert len(server.writes) == 4
        assert queue.counts().total == 0
        assert store.get_sync_state(EntityType.TRANSACTION, str(tx.id)) == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_unclassified_send_error_is_rescheduled(self, store, queue, server, codec, clock):
        """Test that an unexpected client error does not leave the record in flight."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.DecodingError("bad gzip", request=request)
            return server.handler(request)

        tag = Tag(name="a")
        record = _enqueue(store, queue, codec, tag, OperationType.CREATE_TAG)
        executor = _executor(store, queue, build_remote(handler), codec)
        try:
            first = await executor.drain()
            stored = store.get_record(record.id)
            assert first.retry_scheduled == 1
            assert stored.status == MutationStatus.RETRYING
            assert stored.retry_count == 1
            assert queue.is_in_flight(record.id) is False
            assert store.get_sync_state(EntityType.TAG, tag.id) == SyncState.DIRTY

            clock.advance(queue.policy.delay(1))
            second = await executor.drain()
        finally:
            await executor.stop()

        assert second.succeeded == 1
        assert queue.counts().total == 0
        assert store.get_sync_state(EntityType.TAG, tag.id) == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_exhausted_records_are_reported(self, store, queue, remote, server, codec, clock):
        """Test that the last allowed transient failure is surfaced on the result."""
        record = _enqueue(store, queue, codec, Tag(name="a"), OperationType.CREATE_TAG)
        for _ in range(queue.policy.max_retries):
            queue.mark_in_flight(record)
            record = queue.mark_failed(record, transient=True, error="503")
        clock.advance(queue.policy.delay(record.retry_count))

        server.script = [503]
        executor = _executor(store, queue, remote, codec)
        try:
            result = await executor.drain()
        finally:
            await executor.stop()

        assert result.failed == 1
        assert [e.record_id for e in result.exhausted] == [str(record.id)]
        assert store.get_record(record.id).status == MutationStatus.FAILED


class TestCoalescing:
    """Tests for drain request coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_drain(self, store, queue, remote, server, codec):
        """Test that simultaneous triggers produce a single drain."""
        _enqueue(store, queue, codec, Tag(name="a"), OperationType.CREATE_TAG)
        executor = _executor(store, queue, remote, codec)
        try:
            first, second = await asyncio.gather(executor.drain(), executor.drain())
        finally:
            await executor.stop()

        assert first is second
        assert len(server.writes) == 1

    @pytest.mark.asyncio
    async def test_stop_and_restart(self, store, queue, remote, codec):
        """Test that a stopped executor restarts on the next drain."""
        executor = _executor(store, queue, remote, codec)
        executor.start()
        assert executor.is_running is True
        await executor.stop()
        assert executor.is_running is False

        result = await executor.drain()
        await executor.stop()
        assert result.dispatched == 0


class TestScenarios:
    """End-to-end queue scenarios."""

    @pytest.mark.asyncio
    async def test_two_account_updates_arrive_in_order(self, store, queue, remote, server, codec):
        """Test that successive edits of one account reach the server in order."""
        account = make_account("Assets:Bank")
        store.save_entity(account)
        for name in ("Bank", "Main bank"):
            edited = account.model_copy(update={"name": name})
            queue.enqueue(codec.to_record(build_request(OperationType.UPDATE_ACCOUNT, edited)))
        executor = _executor(store, queue, remote, codec)
        try:
            await executor.drain()
        finally:
            await executor.stop()

        assert [r.url.path for r in server.writes] == ["/accounts/Assets:Bank"] * 2
        assert [r.method for r in server.writes] == ["PUT", "PUT"]
        names = [json.loads(r.content)["name"] for r in server.writes]
        assert names == ["Bank", "Main bank"]
        assert store.get_sync_state(EntityType.ACCOUNT, "Assets:Bank") == SyncState.CLEAN
