"""
Sync Executor

DESIGN DECISION: Exactly one worker task owns all outbound dispatch.
Callers never talk to the remote service for writes; they ask the worker
to drain the queue and await the outcome.

- At most one remote write is in flight system-wide
- Drain requests travel over a bounded asyncio.Queue (the request channel)
- Requests that arrive while a drain is queued or running join it and
  share its result, so a burst of triggers costs a single drain. The
  running drain re-reads the queue after every record, so records
  enqueued meanwhile are picked up without a second drain
- A drain dispatches records in eligibility order until nothing is due,
  then reports what happened
- Each dispatch holds `dispatch_lock`; a pull holds it too, so no record
  is acknowledged while pulled data is being fetched and merged

Outcome handling per record:
- success              -> record removed, entity CLEAN (or DIRTY if more queued)
- 4xx / corrupt payload -> record FAILED immediately, never retried
- network / 5xx / timeout -> retry_count + 1, rescheduled with backoff,
                            FAILED once retries are exhausted
- 401                  -> drain stops, record untouched
- anything else        -> booked as a transient failure

A connection error means the remote is unreachable: the drain stops so
the remaining records are not each charged an attempt.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

import structlog

from ledgersync.audit import AuditLogger
from ledgersync.errors import (
    AuthenticationRequiredError,
    PermanentValidationError,
    RetriesExhaustedError,
    SerializationError,
    TransientNetworkError,
)
from ledgersync.models.mutation import MutationRecord, MutationStatus
from ledgersync.models.requests import MutationCodec
from ledgersync.services.remote import RemoteLedgerClient
from ledgersync.sync.queue import MutationQueue

logger = structlog.get_logger(__name__)


# Why a drain stopped before the queue ran dry
STOP_OFFLINE = "offline"
STOP_AUTH = "authentication_required"


@dataclass
class DrainResult:
    """Counters for one drain."""

    dispatched: int = 0
    succeeded: int = 0
    retry_scheduled: int = 0
    failed: int = 0
    stopped: Optional[str] = None
    exhausted: list[RetriesExhaustedError] = field(default_factory=list)

    @property
    def offline(self) -> bool:
        return self.stopped == STOP_OFFLINE

    @property
    def blocked(self) -> bool:
        """The remote could not be used at all during this drain."""
        return self.stopped is not None

    def to_dict(self) -> dict:
        return {
            "dispatched": self.dispatched,
            "succeeded": self.succeeded,
            "retry_scheduled": self.retry_scheduled,
            "failed": self.failed,
            "stopped": self.stopped,
            "exhausted": [e.record_id for e in self.exhausted],
        }


class SyncExecutor:
    """
    Single-consumer dispatcher for the mutation queue.

    Usage:
        executor = SyncExecutor(queue, remote)
        result = await executor.drain()
        await executor.stop()
    """

    def __init__(
        self,
        queue: MutationQueue,
        remote: RemoteLedgerClient,
        codec: Optional[MutationCodec] = None,
        audit_logger: Optional[AuditLogger] = None,
        channel_size: int = 8,
    ):
        self._queue = queue
        self._remote = remote
        self._codec = codec or MutationCodec()
        self._audit = audit_logger or AuditLogger()
        self._requests: asyncio.Queue = asyncio.Queue(maxsize=channel_size)
        self._current: Optional[asyncio.Future] = None
        self._worker: Optional[asyncio.Task] = None
        self._busy = False
        self.dispatch_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def is_draining(self) -> bool:
        return self._busy

    def start(self) -> None:
        """Start the worker task (idempotent)."""
        if self.is_running:
            return
        self._worker = asyncio.create_task(self._run(), name="ledgersync-executor")
        logger.debug("sync_executor_started")

    async def stop(self) -> None:
        """
        Stop the worker after the drain in progress finishes.

        An in-flight request is never interrupted mid-way.
        """
        if not self.is_running:
            return
        await self._requests.put(None)
        await self._worker
        self._worker = None
        logger.debug("sync_executor_stopped")

    async def drain(self, correlation_id: Optional[UUID] = None) -> DrainResult:
        """
        Ask the worker to drain the queue and wait for the result.

        If a drain is already queued or running, this call joins it
        instead of requesting another one.
        """
        self.start()

        if self._current is not None and not self._current.done():
            return await asyncio.shield(self._current)

        future = asyncio.get_running_loop().create_future()
        self._current = future
        await self._requests.put((future, correlation_id))
        return await asyncio.shield(future)

    async def _run(self) -> None:
        while True:
            item = await self._requests.get()
            if item is None:
                break

            future, correlation_id = item
            self._busy = True
            try:
                result = await self._drain_once(correlation_id)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.exception("sync_drain_crashed", error=str(e))
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._busy = False

    async def _drain_once(self, correlation_id: Optional[UUID]) -> DrainResult:
        result = DrainResult()

        while True:
            # Held per record so a pull never overlaps an acknowledgement
            async with self.dispatch_lock:
                record = self._queue.next_eligible()
                if record is None:
                    break
                if not await self._dispatch(record, result, correlation_id):
                    break

        logger.info("sync_drain_finished", **result.to_dict())
        return result

    async def _dispatch(
        self,
        record: MutationRecord,
        result: DrainResult,
        correlation_id: Optional[UUID],
    ) -> bool:
        """
        Send one record and book its outcome.

        Returns:
            False when the drain must stop
        """
        try:
            # A payload that no longer decodes can never succeed
            self._codec.decode(record)
        except SerializationError as e:
            failed = self._queue.mark_failed(record, transient=False, error=str(e))
            result.failed += 1
            await self._audit.log_mutation_failed(failed, "serialization", correlation_id)
            return True

        self._queue.mark_in_flight(record)
        result.dispatched += 1

        try:
            await self._remote.send(record)
        except AuthenticationRequiredError as e:
            self._queue.release(record)
            result.stopped = STOP_AUTH
            logger.warning("sync_drain_needs_auth", error=str(e), **record.to_log_dict())
            return False
        except PermanentValidationError as e:
            failed = self._queue.mark_failed(record, transient=False, error=str(e))
            result.failed += 1
            await self._audit.log_mutation_failed(failed, "rejected", correlation_id)
            return True
        except TransientNetworkError as e:
            updated = self._queue.mark_failed(record, transient=True, error=str(e))
            await self._after_transient(updated, result, correlation_id)
            if e.is_unreachable:
                result.stopped = STOP_OFFLINE
                return False
            return True
        except asyncio.CancelledError:
            self._queue.release(record)
            raise
        except Exception as e:
            # Anything unclassified is booked as a transient failure
            logger.exception("mutation_send_crashed", error=str(e), **record.to_log_dict())
            updated = self._queue.mark_failed(record, transient=True, error=f"{type(e).__name__}: {e}")
            await self._after_transient(updated, result, correlation_id)
            return True

        self._queue.mark_succeeded(record)
        result.succeeded += 1
        await self._audit.log_mutation_succeeded(record, correlation_id)
        return True

    async def _after_transient(
        self,
        record: MutationRecord,
        result: DrainResult,
        correlation_id: Optional[UUID],
    ) -> None:
        if record.status is MutationStatus.FAILED:
            result.exhausted.append(RetriesExhaustedError(str(record.id), record.retry_count))
            logger.error("mutation_retries_exhausted", **record.to_log_dict())
            result.failed += 1
            await self._audit.log_mutation_failed(record, "retries_exhausted", correlation_id)
        else:
            result.retry_scheduled += 1
            await self._audit.log_retry_scheduled(
                record,
                self._queue.policy.delay(record.retry_count),
                correlation_id,
            )
