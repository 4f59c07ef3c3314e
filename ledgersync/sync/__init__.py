"""Sync engine package: queue, executor and connectivity tracking."""

from ledgersync.sync.connectivity import BackendStatus, ConnectivityMonitor
from ledgersync.sync.executor import DrainResult, SyncExecutor
from ledgersync.sync.queue import MutationQueue

__all__ = [
    "BackendStatus",
    "ConnectivityMonitor",
    "DrainResult",
    "MutationQueue",
    "SyncExecutor",
]
