"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap SQLite for another embedded database later
2. Keep the sync engine decoupled from the storage implementation
3. Reason about the atomic write path in one place

The ledger store is deliberately synchronous: it is a local file, every
call is short, and the atomic write path needs entity writes and queue
inserts to share one transaction. Audit storage stays async, like any
other sink that may live elsewhere.

The interface is intentionally simple - we're not building a full ORM.
Just the operations the sync engine needs.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import date
from typing import Iterable, Optional
from uuid import UUID

from ledgersync.models.audit import AuditEvent
from ledgersync.models.ledger import (
    Account,
    EntityType,
    LedgerEntity,
    Price,
    SyncState,
    Tag,
    Transaction,
    Unit,
)
from ledgersync.models.mutation import (
    MutationRecord,
    MutationStatus,
    QueueCounts,
)


class LedgerStoreInterface(ABC):
    """
    Abstract interface for the local ledger store.

    Holds the ledger entities, their sync state and the mutation queue
    table. Every write method joins the surrounding `transaction()` when
    one is open, so callers can group entity and queue writes atomically.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """
        Open (or join) an atomic unit of work.

        Everything written inside the block commits together or not at all.
        """
        pass

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @abstractmethod
    def save_entity(self, entity: LedgerEntity) -> None:
        """
        Insert or replace an entity, including its sync state.

        Saving a transaction replaces all of its postings.
        """
        pass

    @abstractmethod
    def delete_entity(self, entity_type: EntityType, entity_id: str) -> bool:
        """
        Delete an entity by key.

        Returns:
            True if a row was removed
        """
        pass

    @abstractmethod
    def get_entity(self, entity_type: EntityType, entity_id: str) -> Optional[LedgerEntity]:
        pass

    @abstractmethod
    def get_sync_state(self, entity_type: EntityType, entity_id: str) -> Optional[SyncState]:
        """Sync state of an entity, or None if it does not exist locally."""
        pass

    @abstractmethod
    def set_sync_state(
        self,
        entity_type: EntityType,
        entity_id: str,
        state: SyncState,
    ) -> bool:
        """
        Change an entity's sync state.

        Returns:
            True if the entity exists
        """
        pass

    @abstractmethod
    def sync_states(self, entity_type: EntityType) -> dict[str, SyncState]:
        """Key to sync state for every stored entity of a type."""
        pass

    @abstractmethod
    def recover_in_flight(self) -> int:
        """
        Reset every IN_FLIGHT entity to DIRTY.

        Called once at startup: an in-flight state cannot survive a restart.

        Returns:
            Number of entities reset
        """
        pass

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self) -> list[Account]:
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        account_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        """
        List transactions with optional filters, newest first.

        Args:
            date_from: Transactions on or after this date
            date_to: Transactions on or before this date
            account_id: Only transactions with a posting to this account
            limit: Maximum number of results
            offset: Number of results to skip
        """
        pass

    @abstractmethod
    def get_tag(self, tag_id: str) -> Optional[Tag]:
        pass

    @abstractmethod
    def list_tags(self) -> list[Tag]:
        pass

    @abstractmethod
    def get_unit(self, code: str) -> Optional[Unit]:
        pass

    @abstractmethod
    def list_units(self) -> list[Unit]:
        pass

    @abstractmethod
    def get_price(self, unit_code: str, on: date) -> Optional[Price]:
        pass

    @abstractmethod
    def list_prices(self, unit_code: Optional[str] = None) -> list[Price]:
        pass

    @abstractmethod
    def clear_all(self) -> None:
        """Delete every entity and every queued record."""
        pass

    # ------------------------------------------------------------------
    # Mutation queue table
    # ------------------------------------------------------------------

    @abstractmethod
    def insert_record(self, record: MutationRecord) -> MutationRecord:
        """
        Append a record to the log.

        Returns:
            The record with its store-assigned `seq`
        """
        pass

    @abstractmethod
    def update_record(self, record: MutationRecord) -> None:
        """
        Persist the retry bookkeeping of a record.

        Raises:
            NotFoundError: If the record is no longer queued
        """
        pass

    @abstractmethod
    def delete_record(self, record_id: UUID) -> bool:
        pass

    @abstractmethod
    def get_record(self, record_id: UUID) -> Optional[MutationRecord]:
        pass

    @abstractmethod
    def list_records(
        self,
        statuses: Optional[Iterable[MutationStatus]] = None,
    ) -> list[MutationRecord]:
        """All records (optionally filtered by status) in log order."""
        pass

    @abstractmethod
    def records_for_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
    ) -> list[MutationRecord]:
        """Every record referencing an entity, in log order."""
        pass

    @abstractmethod
    def queue_counts(self) -> QueueCounts:
        pass

    @abstractmethod
    def clear_queue(self) -> int:
        """
        Delete every queued record.

        Returns:
            Number of records removed
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one sync cycle).

        Args:
            correlation_id: The correlation identifier

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'transaction', 'mutation')
            entity_id: The entity's key

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not open the storage backend."""
    pass
