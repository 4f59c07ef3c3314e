"""
Connectivity Monitor

Tracks whether the remote ledger service is reachable and fires
callbacks on online/offline transitions. The orchestrator registers a
callback that starts a sync cycle as soon as the connection comes back.

Reachability is learned two ways:
- passively, from the outcome of real requests (`report()`)
- actively, by probing the service on an interval (`start()`)
"""

import asyncio
import inspect
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import structlog

from ledgersync.models.ledger import utcnow

logger = structlog.get_logger(__name__)


class BackendStatus(str, Enum):
    """Last known reachability of the remote service."""
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


ConnectivityCallback = Callable[[bool], Union[None, Awaitable[None]]]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    """
    Online/offline tracker with transition callbacks.

    Usage:
        monitor = ConnectivityMonitor(probe=remote.ping, probe_interval=30)
        monitor.on_change(lambda online: ...)
        monitor.start()
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        probe_interval: float = 30.0,
    ):
        self._probe = probe
        self._probe_interval = probe_interval
        self._status = BackendStatus.UNKNOWN
        self._changed_at = None
        self._callbacks: list[ConnectivityCallback] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> BackendStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        # Unknown counts as online: the first attempt will tell
        return self._status is not BackendStatus.OFFLINE

    @property
    def changed_at(self):
        return self._changed_at

    def on_change(self, callback: ConnectivityCallback) -> None:
        """Register a callback fired on online/offline transitions."""
        self._callbacks.append(callback)

    async def report(self, reachable: bool) -> bool:
        """
        Record the outcome of a request or probe.

        Returns:
            True if this report changed the status
        """
        new_status = BackendStatus.ONLINE if reachable else BackendStatus.OFFLINE
        previous = self._status
        if new_status is previous:
            return False

        self._status = new_status
        self._changed_at = utcnow()
        logger.info(
            "connectivity_changed",
            previous=previous.value,
            status=new_status.value,
        )

        # The first verdict after startup is not a transition
        if previous is BackendStatus.UNKNOWN:
            return True

        for callback in list(self._callbacks):
            try:
                outcome = callback(reachable)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("connectivity_callback_failed", error=str(e))
        return True

    async def probe_once(self) -> BackendStatus:
        if self._probe is None:
            return self._status
        try:
            reachable = await self._probe()
        except Exception as e:
            logger.debug("connectivity_probe_failed", error=str(e))
            reachable = False
        await self.report(reachable)
        return self._status

    def start(self) -> None:
        """Start periodic probing (no-op without a probe)."""
        if self._probe is None or (self._task and not self._task.done()):
            return
        self._task = asyncio.create_task(self._probe_loop(), name="ledgersync-connectivity")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _probe_loop(self) -> None:
        while True:
            await self.probe_once()
            await asyncio.sleep(self._probe_interval)
