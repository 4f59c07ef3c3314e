"""Services package."""

from ledgersync.services.remote import (
    RemoteLedgerClient,
)
from ledgersync.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStoreInterface,
    NotFoundError,
    SQLiteAuditStorage,
    SQLiteLedgerStore,
    StorageError,
)

__all__ = [
    # Remote service
    "RemoteLedgerClient",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "LedgerStoreInterface",
    "NotFoundError",
    "SQLiteAuditStorage",
    "SQLiteLedgerStore",
    "StorageError",
]
