"""
Main Orchestrator for LedgerSync

This module ties together all the components and defines the
end-to-end sync cycle:

    trigger -> push (drain the queue) -> pull (fetch + merge) -> status

DESIGN DECISION: The orchestrator enforces the boundaries:
- Pulled data never overwrites an entity with unsynced local changes
- No pull happens when the push phase could not reach the server
- No record is dispatched while a pull is fetching and merging
- Only one cycle runs at a time; concurrent triggers join it
- Every cycle is audited under its own correlation id

Triggers: app foreground, periodic timer, manual request, connectivity
restored, and the expiry of the nearest record backoff.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from ledgersync.audit import AuditLogger, create_correlation_id
from ledgersync.config import get_settings
from ledgersync.errors import AuthenticationRequiredError, SyncError, TransientNetworkError
from ledgersync.models.ledger import EntityType, LedgerEntity, Price, utcnow
from ledgersync.models.mutation import MutationRecord, QueueCounts, RetryPolicy
from ledgersync.models.requests import MutationCodec
from ledgersync.repository import LedgerRepository
from ledgersync.services.remote import RemoteLedgerClient
from ledgersync.services.storage import (
    LedgerStoreInterface,
    SQLiteAuditStorage,
    SQLiteLedgerStore,
    StorageError,
)
from ledgersync.sync.connectivity import BackendStatus, ConnectivityMonitor
from ledgersync.sync.executor import DrainResult, SyncExecutor
from ledgersync.sync.queue import MutationQueue
from ledgersync.validation import LedgerValidator

logger = structlog.get_logger(__name__)


class SyncTrigger(str, Enum):
    """What started a sync cycle."""
    FOREGROUND = "foreground"
    TIMER = "timer"
    MANUAL = "manual"
    CONNECTIVITY = "connectivity"
    BACKOFF_EXPIRY = "backoff_expiry"


class SyncStatus(BaseModel):
    """User-visible snapshot of the sync engine."""

    backend_status: BackendStatus = BackendStatus.UNKNOWN
    is_syncing: bool = False
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    interval_seconds: float = 0.0
    manual_mode: bool = False
    counts: QueueCounts = Field(default_factory=QueueCounts)


@dataclass
class MergeResult:
    """Outcome of merging one entity type."""

    applied: int = 0
    skipped: int = 0
    removed: int = 0


@dataclass
class SyncCycleResult:
    """Everything one push/pull cycle did."""

    trigger: SyncTrigger
    correlation_id: UUID
    drain: DrainResult
    pulled: bool = False
    pull_skipped_reason: Optional[str] = None
    merged: dict[str, MergeResult] = field(default_factory=dict)
    error: Optional[str] = None


# Pull order: referenced entities before the transactions that use them
_PULL_ORDER = (
    EntityType.TAG,
    EntityType.ACCOUNT,
    EntityType.UNIT,
    EntityType.TRANSACTION,
)


class SyncOrchestrator:
    """
    Drives push-then-pull cycles.

    Usage:
        orchestrator = SyncOrchestrator(store, queue, executor, remote)
        await orchestrator.start()
        result = await orchestrator.run_cycle(SyncTrigger.MANUAL)
        await orchestrator.stop()
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        queue: MutationQueue,
        executor: SyncExecutor,
        remote: RemoteLedgerClient,
        audit_logger: Optional[AuditLogger] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._store = store
        self._queue = queue
        self._executor = executor
        self._remote = remote
        self._audit = audit_logger or AuditLogger()
        self._connectivity = connectivity or ConnectivityMonitor()
        if interval_seconds is None:
            interval_seconds = get_settings().sync.interval_seconds
        self._interval = max(0.0, interval_seconds)

        self._cycle: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._background: set[asyncio.Task] = set()
        self._stopping = False
        self._last_sync_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_result: Optional[SyncCycleResult] = None

        self._connectivity.on_change(self._on_connectivity_change)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Recover from an interrupted run and start background work.

        Entities left IN_FLIGHT by a crash go back to DIRTY; their records
        are still pending/retrying and will simply be resent.
        """
        self._stopping = False
        recovered = self._store.recover_in_flight()
        if recovered:
            logger.warning("sync_recovered_in_flight", count=recovered)

        self._executor.start()
        self._connectivity.start()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._periodic_loop(), name="ledgersync-scheduler")
        logger.info("sync_orchestrator_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        self._stopping = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._cycle is not None and not self._cycle.done():
            await asyncio.wait([self._cycle])
        await self._connectivity.stop()
        await self._executor.stop()
        logger.info("sync_orchestrator_stopped")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run_cycle(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncCycleResult:
        """
        Run one push/pull cycle, or join the one already running.
        """
        if self._cycle is not None and not self._cycle.done():
            logger.debug("sync_cycle_coalesced", trigger=trigger.value)
            return await asyncio.shield(self._cycle)

        self._cycle = asyncio.create_task(self._run_cycle(trigger))
        return await asyncio.shield(self._cycle)

    def request_sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> Optional[asyncio.Task]:
        """Start a cycle without waiting for it. Ignored while stopping."""
        if self._stopping:
            return None
        task = asyncio.create_task(self.run_cycle(trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def on_foreground(self) -> SyncCycleResult:
        """The app came to the foreground."""
        return await self.run_cycle(SyncTrigger.FOREGROUND)

    def on_local_write(self, record: MutationRecord) -> None:
        """
        Push a fresh local change as soon as possible.

        Only the push phase runs; it joins a drain already in progress.
        """
        if self._stopping or not self._connectivity.is_online:
            return
        task = asyncio.create_task(self._push_only())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _push_only(self) -> DrainResult:
        drain = await self._executor.drain()
        if drain.offline:
            await self._connectivity.report(False)
        elif drain.dispatched:
            await self._connectivity.report(True)
        return drain

    async def _on_connectivity_change(self, online: bool) -> None:
        await self._audit.log_connectivity_changed(online)
        if online:
            self.request_sync(SyncTrigger.CONNECTIVITY)

    # ------------------------------------------------------------------
    # The cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, trigger: SyncTrigger) -> SyncCycleResult:
        correlation_id = create_correlation_id()
        await self._audit.log_cycle_started(trigger.value, correlation_id)

        # Push phase
        drain = await self._executor.drain(correlation_id)
        result = SyncCycleResult(trigger=trigger, correlation_id=correlation_id, drain=drain)

        if drain.offline:
            await self._connectivity.report(False)
        elif drain.dispatched:
            await self._connectivity.report(True)

        # Pull phase
        if drain.blocked:
            result.pull_skipped_reason = drain.stopped
            await self._audit.log_pull_skipped(drain.stopped, correlation_id)
        else:
            # Pushes wait until the merge is done, so nothing turns CLEAN
            # between fetching the server copy and merging it
            async with self._executor.dispatch_lock:
                await self._pull(result)

        if result.pulled:
            self._last_sync_at = utcnow()
        self._last_error = result.error
        self._last_result = result

        await self._audit.log_cycle_completed(
            trigger=trigger.value,
            pushed=drain.succeeded,
            failed=drain.failed,
            pulled=result.pulled,
            correlation_id=correlation_id,
        )
        return result

    async def _pull(self, result: SyncCycleResult) -> None:
        fetchers: dict[EntityType, Callable[[], Awaitable[list[LedgerEntity]]]] = {
            EntityType.TAG: self._remote.fetch_tags,
            EntityType.ACCOUNT: self._remote.fetch_accounts,
            EntityType.UNIT: self._remote.fetch_units,
            EntityType.TRANSACTION: self._remote.fetch_transactions,
        }
        try:
            for entity_type in _PULL_ORDER:
                remote_entities = await fetchers[entity_type]()
                merge = self._merge(entity_type, remote_entities)
                result.merged[entity_type.value] = merge
                await self._audit.log_pull_merged(
                    entity_type=entity_type.value,
                    applied=merge.applied,
                    skipped=merge.skipped,
                    removed=merge.removed,
                    correlation_id=result.correlation_id,
                )
        except TransientNetworkError as e:
            result.error = str(e)
            result.pull_skipped_reason = "pull_failed"
            if e.is_unreachable:
                await self._connectivity.report(False)
            await self._audit.log_external_service_error("remote_ledger", str(e), result.correlation_id)
            return
        except AuthenticationRequiredError as e:
            result.error = str(e)
            result.pull_skipped_reason = "authentication_required"
            return
        except (SyncError, StorageError) as e:
            result.error = str(e)
            result.pull_skipped_reason = "pull_failed"
            await self._audit.log_error(type(e).__name__, str(e), correlation_id=result.correlation_id)
            return

        await self._connectivity.report(True)
        result.pulled = True

    def _merge(self, entity_type: EntityType, remote_entities: list[LedgerEntity]) -> MergeResult:
        """
        Merge remote entities of one type into the store.

        A local entity is protected when it is not CLEAN or when any queued
        record (pending, retrying, failed or a queued delete) still refers
        to it. Protected entities are left exactly as they are. Everything
        else takes the server's version, and CLEAN entities the server no
        longer has are removed.
        """
        merge = MergeResult()
        with self._store.transaction():
            local_states = self._store.sync_states(entity_type)
            referenced = self._queue.referenced_keys(entity_type)
            remote_keys = set()

            for entity in remote_entities:
                key = entity.entity_key
                remote_keys.add(key)
                state = local_states.get(key)
                if key in referenced or (state is not None and state.is_protected):
                    merge.skipped += 1
                    continue
                self._store.save_entity(entity)
                merge.applied += 1

            for key, state in local_states.items():
                if key in remote_keys or key in referenced or state.is_protected:
                    continue
                self._store.delete_entity(entity_type, key)
                merge.removed += 1

        logger.info(
            "pull_merged",
            entity_type=entity_type.value,
            applied=merge.applied,
            skipped=merge.skipped,
            removed=merge.removed,
        )
        return merge

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def manual_mode(self) -> bool:
        return self._interval <= 0

    def set_interval(self, seconds: float) -> None:
        """Change the periodic interval (0 switches to manual mode)."""
        self._interval = max(0.0, seconds)
        self._wake.set()
        logger.info("sync_interval_updated", interval_seconds=self._interval)

    def _next_wait(self) -> tuple[Optional[float], SyncTrigger]:
        """
        Seconds until the next automatic cycle and why.

        None means wait for an explicit trigger.
        """
        backoff = self._queue.seconds_until_next_retry()
        last = self._last_result
        if backoff is not None and backoff <= 0 and last is not None and last.drain.blocked:
            # Records are due but the server is out of reach
            backoff = None

        interval = None if self.manual_mode else self._interval
        if backoff is not None and (interval is None or backoff < interval):
            return backoff, SyncTrigger.BACKOFF_EXPIRY
        return interval, SyncTrigger.TIMER

    async def _periodic_loop(self) -> None:
        trigger = SyncTrigger.TIMER
        while True:
            try:
                await self.run_cycle(trigger)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("sync_cycle_crashed", error=str(e))
                await self._audit.log_error(type(e).__name__, str(e))

            wait, trigger = self._next_wait()
            self._wake.clear()
            try:
                if wait is None:
                    await self._wake.wait()
                else:
                    await asyncio.wait_for(self._wake.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Status and extras
    # ------------------------------------------------------------------

    def status(self) -> SyncStatus:
        return SyncStatus(
            backend_status=self._connectivity.status,
            is_syncing=(self._cycle is not None and not self._cycle.done()) or self._executor.is_draining,
            last_sync_at=self._last_sync_at,
            last_error=self._last_error,
            interval_seconds=self._interval,
            manual_mode=self.manual_mode,
            counts=self._queue.counts(),
        )

    async def refresh_price(self, unit_code: str, on: Optional[date] = None) -> Optional[Price]:
        """
        Look up a unit's price remotely and keep it locally.

        Prices are pull-only; the stored copy is always CLEAN.
        """
        price = await self._remote.lookup_price(unit_code, on)
        if price is None:
            return None
        existing = self._store.get_price(price.unit_code, price.date)
        if existing is not None:
            price = price.model_copy(update={"id": existing.id})
        self._store.save_entity(price)
        return price


def create_app_components(
    database_path: Optional[str] = None,
    token_provider: Optional[Callable[[], Optional[str]]] = None,
    remote: Optional[RemoteLedgerClient] = None,
) -> tuple[LedgerRepository, SyncOrchestrator, SQLiteLedgerStore]:
    """
    Factory function to create all application components.

    Args:
        database_path: SQLite file. Defaults to the store settings.
        token_provider: Returns the current bearer token.
        remote: Prebuilt remote client (tests pass one with a mock transport).

    Returns:
        (repository, orchestrator, store)
    """
    settings = get_settings()
    sync_settings = settings.sync

    store = SQLiteLedgerStore(database_path or settings.store.database_path)
    audit_logger = AuditLogger(SQLiteAuditStorage(store))

    codec = MutationCodec(include_null_optionals=sync_settings.include_null_optionals)
    queue = MutationQueue(store, RetryPolicy.from_settings(sync_settings))
    remote = remote or RemoteLedgerClient(token_provider=token_provider)

    executor = SyncExecutor(
        queue,
        remote,
        codec=codec,
        audit_logger=audit_logger,
        channel_size=sync_settings.request_channel_size,
    )
    orchestrator = SyncOrchestrator(
        store,
        queue,
        executor,
        remote,
        audit_logger=audit_logger,
        connectivity=ConnectivityMonitor(probe=remote.ping),
        interval_seconds=sync_settings.interval_seconds,
    )
    repository = LedgerRepository(
        store,
        queue,
        codec=codec,
        validator=LedgerValidator(store, sync_settings.balance_tolerance),
        audit_logger=audit_logger,
    )
    repository.add_listener(orchestrator.on_local_write)

    return repository, orchestrator, store
