"""
SQLite Storage Implementation

DESIGN DECISION: The local ledger lives in a single SQLite file.
- Works fully offline; the remote service is only a sync target
- WAL journal so reads never block the sync worker's writes
- One connection guarded by a re-entrant lock; `transaction()` blocks
  nest, and only the outermost one issues BEGIN/COMMIT
- Money is stored as decimal strings, never floats

Tables:
- accounts / transactions / postings / posting_tags / tags / units / prices
- mutation_queue: the durable outbound log (seq = log order)
- audit_log: append-only audit trail
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator, Optional
from uuid import UUID

import structlog

from ledgersync.models.audit import AuditEvent, AuditEventType, AuditSeverity
from ledgersync.models.ledger import (
    Account,
    EntityType,
    LedgerEntity,
    Posting,
    Price,
    SyncState,
    Tag,
    Transaction,
    Unit,
)
from ledgersync.models.mutation import (
    MutationRecord,
    MutationStatus,
    OperationType,
    QueueCounts,
)
from ledgersync.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    LedgerStoreInterface,
    NotFoundError,
    StorageError,
)

logger = structlog.get_logger(__name__)


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id                  TEXT PRIMARY KEY,
        name                TEXT NOT NULL,
        category            TEXT NOT NULL,
        type                TEXT NOT NULL,
        currency            TEXT,
        icon                TEXT,
        parent_id           TEXT,
        related_account_id  TEXT,
        metadata            TEXT,
        sync_state          TEXT NOT NULL DEFAULT 'clean',
        updated_at          TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS transactions (
        id          TEXT PRIMARY KEY,
        date        TEXT NOT NULL,
        description TEXT NOT NULL,
        note        TEXT,
        sync_state  TEXT NOT NULL DEFAULT 'clean',
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS postings (
        id              TEXT PRIMARY KEY,
        transaction_id  TEXT NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
        position        INTEGER NOT NULL,
        account_id      TEXT NOT NULL,
        account_name    TEXT,
        amount          TEXT NOT NULL,
        quantity        TEXT,
        unit_code       TEXT
    );

    CREATE TABLE IF NOT EXISTS posting_tags (
        posting_id  TEXT NOT NULL REFERENCES postings(id) ON DELETE CASCADE,
        tag_id      TEXT NOT NULL,
        PRIMARY KEY (posting_id, tag_id)
    );

    CREATE TABLE IF NOT EXISTS tags (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        description TEXT,
        color       TEXT,
        sync_state  TEXT NOT NULL DEFAULT 'clean',
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS units (
        code        TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        symbol      TEXT,
        type        TEXT NOT NULL,
        sync_state  TEXT NOT NULL DEFAULT 'clean',
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS prices (
        id          TEXT PRIMARY KEY,
        unit_code   TEXT NOT NULL,
        date        TEXT NOT NULL,
        price       TEXT NOT NULL,
        currency    TEXT NOT NULL,
        source      TEXT,
        sync_state  TEXT NOT NULL DEFAULT 'clean',
        updated_at  TEXT NOT NULL,
        UNIQUE (unit_code, date)
    );

    CREATE TABLE IF NOT EXISTS mutation_queue (
        seq             INTEGER PRIMARY KEY AUTOINCREMENT,
        id              TEXT NOT NULL UNIQUE,
        operation_type  TEXT NOT NULL,
        entity_type     TEXT NOT NULL,
        entity_id       TEXT NOT NULL,
        endpoint        TEXT NOT NULL,
        method          TEXT NOT NULL,
        payload         BLOB NOT NULL,
        created_at      TEXT NOT NULL,
        retry_count     INTEGER NOT NULL DEFAULT 0,
        status          TEXT NOT NULL,
        last_attempt_at TEXT,
        last_error      TEXT
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        event_id        TEXT PRIMARY KEY,
        timestamp       TEXT NOT NULL,
        event_type      TEXT NOT NULL,
        severity        TEXT NOT NULL,
        entity_type     TEXT,
        entity_id       TEXT,
        correlation_id  TEXT,
        description     TEXT NOT NULL,
        details         TEXT,
        error_code      TEXT,
        error_message   TEXT,
        is_user_action  INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_postings_tx ON postings(transaction_id);
    CREATE INDEX IF NOT EXISTS idx_postings_account ON postings(account_id);
    CREATE INDEX IF NOT EXISTS idx_tx_date ON transactions(date);
    CREATE INDEX IF NOT EXISTS idx_mq_entity ON mutation_queue(entity_type, entity_id);
    CREATE INDEX IF NOT EXISTS idx_mq_status ON mutation_queue(status);
    CREATE INDEX IF NOT EXISTS idx_audit_correlation ON audit_log(correlation_id);
    CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id);
"""

# Table and key column per entity type
_TABLES: dict[EntityType, tuple[str, str]] = {
    EntityType.ACCOUNT: ("accounts", "id"),
    EntityType.TRANSACTION: ("transactions", "id"),
    EntityType.TAG: ("tags", "id"),
    EntityType.UNIT: ("units", "code"),
    EntityType.PRICE: ("prices", "id"),
}


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class SQLiteLedgerStore(LedgerStoreInterface):
    """
    SQLite-backed local ledger store.

    Usage:
        store = SQLiteLedgerStore("data/ledger.db")
        with store.transaction():
            store.save_entity(tx)
            store.insert_record(record)
    """

    def __init__(self, database_path: str | Path):
        self._path = str(database_path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                self._path,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise ConnectionError(f"Failed to open ledger database {self._path}: {e}") from e

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._depth = 0
        self._conn.executescript(_SCHEMA)

        logger.debug("ledger_store_opened", path=self._path)

    @property
    def path(self) -> str:
        return self._path

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Atomic unit of work.

        Nested blocks join the outermost one. Any exception rolls back
        every write made since the outermost BEGIN.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Query failed: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> int:
        """Run a write statement inside a (possibly joined) transaction."""
        with self.transaction() as conn:
            try:
                return conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise StorageError(f"Write failed: {e}") from e

    # ------------------------------------------------------------------
    # Entities: writes
    # ------------------------------------------------------------------

    def save_entity(self, entity: LedgerEntity) -> None:
        if isinstance(entity, Transaction):
            self._save_transaction(entity)
        elif isinstance(entity, Account):
            self._execute(
                """INSERT OR REPLACE INTO accounts
                   (id, name, category, type, currency, icon, parent_id,
                    related_account_id, metadata, sync_state, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entity.id, entity.name, entity.category, entity.type,
                    entity.currency, entity.icon, entity.parent_id,
                    entity.related_account_id,
                    json.dumps(entity.metadata) if entity.metadata is not None else None,
                    entity.sync_state.value, entity.updated_at.isoformat(),
                ),
            )
        elif isinstance(entity, Tag):
            self._execute(
                """INSERT OR REPLACE INTO tags
                   (id, name, description, color, sync_state, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entity.id, entity.name, entity.description, entity.color,
                    entity.sync_state.value, entity.updated_at.isoformat(),
                ),
            )
        elif isinstance(entity, Unit):
            self._execute(
                """INSERT OR REPLACE INTO units
                   (code, name, symbol, type, sync_state, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entity.code, entity.name, entity.symbol, entity.type,
                    entity.sync_state.value, entity.updated_at.isoformat(),
                ),
            )
        elif isinstance(entity, Price):
            self._execute(
                """INSERT OR REPLACE INTO prices
                   (id, unit_code, date, price, currency, source, sync_state, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(entity.id), entity.unit_code, entity.date.isoformat(),
                    str(entity.price), entity.currency, entity.source,
                    entity.sync_state.value, entity.updated_at.isoformat(),
                ),
            )
        else:
            raise StorageError(f"Unsupported entity: {type(entity).__name__}")

    def _save_transaction(self, tx: Transaction) -> None:
        tx_id = str(tx.id)
        with self.transaction() as conn:
            try:
                # Replacing a transaction replaces all of its postings
                conn.execute("DELETE FROM postings WHERE transaction_id = ?", (tx_id,))
                conn.execute(
                    """INSERT OR REPLACE INTO transactions
                       (id, date, description, note, sync_state, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        tx_id, tx.date.isoformat(), tx.description, tx.note,
                        tx.sync_state.value, tx.updated_at.isoformat(),
                    ),
                )
                for position, posting in enumerate(tx.postings):
                    conn.execute(
                        """INSERT INTO postings
                           (id, transaction_id, position, account_id, account_name,
                            amount, quantity, unit_code)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            str(posting.id), tx_id, position, posting.account_id,
                            posting.account_name, str(posting.amount),
                            str(posting.quantity) if posting.quantity is not None else None,
                            posting.unit_code,
                        ),
                    )
                    conn.executemany(
                        "INSERT OR IGNORE INTO posting_tags (posting_id, tag_id) VALUES (?, ?)",
                        [(str(posting.id), tag_id) for tag_id in posting.tag_ids],
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to save transaction {tx_id}: {e}") from e

    def delete_entity(self, entity_type: EntityType, entity_id: str) -> bool:
        table, key = _TABLES[entity_type]
        return self._execute(f"DELETE FROM {table} WHERE {key} = ?", (entity_id,)) > 0

    def get_sync_state(self, entity_type: EntityType, entity_id: str) -> Optional[SyncState]:
        table, key = _TABLES[entity_type]
        rows = self._query(f"SELECT sync_state FROM {table} WHERE {key} = ?", (entity_id,))
        return SyncState(rows[0]["sync_state"]) if rows else None

    def set_sync_state(
        self,
        entity_type: EntityType,
        entity_id: str,
        state: SyncState,
    ) -> bool:
        table, key = _TABLES[entity_type]
        return self._execute(
            f"UPDATE {table} SET sync_state = ? WHERE {key} = ?",
            (state.value, entity_id),
        ) > 0

    def sync_states(self, entity_type: EntityType) -> dict[str, SyncState]:
        table, key = _TABLES[entity_type]
        rows = self._query(f"SELECT {key} AS k, sync_state FROM {table}")
        return {row["k"]: SyncState(row["sync_state"]) for row in rows}

    def recover_in_flight(self) -> int:
        reset = 0
        with self.transaction():
            for table, _ in _TABLES.values():
                reset += self._execute(
                    f"UPDATE {table} SET sync_state = ? WHERE sync_state = ?",
                    (SyncState.DIRTY.value, SyncState.IN_FLIGHT.value),
                )
        if reset:
            logger.info("in_flight_entities_recovered", count=reset)
        return reset

    def clear_all(self) -> None:
        with self.transaction():
            for table in (
                "posting_tags", "postings", "transactions", "accounts",
                "tags", "units", "prices", "mutation_queue",
            ):
                self._execute(f"DELETE FROM {table}")

    # ------------------------------------------------------------------
    # Entities: reads
    # ------------------------------------------------------------------

    def get_entity(self, entity_type: EntityType, entity_id: str) -> Optional[LedgerEntity]:
        if entity_type is EntityType.TRANSACTION:
            return self.get_transaction(entity_id)
        if entity_type is EntityType.ACCOUNT:
            return self.get_account(entity_id)
        if entity_type is EntityType.TAG:
            return self.get_tag(entity_id)
        if entity_type is EntityType.UNIT:
            return self.get_unit(entity_id)
        rows = self._query("SELECT * FROM prices WHERE id = ?", (entity_id,))
        return self._row_to_price(rows[0]) if rows else None

    def get_account(self, account_id: str) -> Optional[Account]:
        rows = self._query("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return self._row_to_account(rows[0]) if rows else None

    def list_accounts(self) -> list[Account]:
        return [self._row_to_account(r) for r in self._query("SELECT * FROM accounts ORDER BY id")]

    def get_transaction(self, transaction_id: UUID | str) -> Optional[Transaction]:
        rows = self._query("SELECT * FROM transactions WHERE id = ?", (str(transaction_id),))
        return self._row_to_transaction(rows[0]) if rows else None

    def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        account_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        clauses = []
        params: list = []
        if date_from:
            clauses.append("t.date >= ?")
            params.append(date_from.isoformat())
        if date_to:
            clauses.append("t.date <= ?")
            params.append(date_to.isoformat())
        if account_id:
            clauses.append(
                "EXISTS (SELECT 1 FROM postings p WHERE p.transaction_id = t.id AND p.account_id = ?)"
            )
            params.append(account_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"SELECT t.* FROM transactions t {where} "
            "ORDER BY t.date DESC, t.updated_at DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [self._row_to_transaction(r) for r in rows]

    def get_tag(self, tag_id: str) -> Optional[Tag]:
        rows = self._query("SELECT * FROM tags WHERE id = ?", (tag_id,))
        return self._row_to_tag(rows[0]) if rows else None

    def list_tags(self) -> list[Tag]:
        return [self._row_to_tag(r) for r in self._query("SELECT * FROM tags ORDER BY name")]

    def get_unit(self, code: str) -> Optional[Unit]:
        rows = self._query("SELECT * FROM units WHERE code = ?", (code,))
        return self._row_to_unit(rows[0]) if rows else None

    def list_units(self) -> list[Unit]:
        return [self._row_to_unit(r) for r in self._query("SELECT * FROM units ORDER BY code")]

    def get_price(self, unit_code: str, on: date) -> Optional[Price]:
        rows = self._query(
            "SELECT * FROM prices WHERE unit_code = ? AND date = ?",
            (unit_code, on.isoformat()),
        )
        return self._row_to_price(rows[0]) if rows else None

    def list_prices(self, unit_code: Optional[str] = None) -> list[Price]:
        if unit_code:
            rows = self._query(
                "SELECT * FROM prices WHERE unit_code = ? ORDER BY date DESC", (unit_code,)
            )
        else:
            rows = self._query("SELECT * FROM prices ORDER BY unit_code, date DESC")
        return [self._row_to_price(r) for r in rows]

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            name=row["name"],
            category=row["category"],
            type=row["type"],
            currency=row["currency"],
            icon=row["icon"],
            parent_id=row["parent_id"],
            related_account_id=row["related_account_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            sync_state=SyncState(row["sync_state"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        posting_rows = self._query(
            "SELECT * FROM postings WHERE transaction_id = ? ORDER BY position",
            (row["id"],),
        )
        postings = []
        for p in posting_rows:
            tag_rows = self._query(
                "SELECT tag_id FROM posting_tags WHERE posting_id = ? ORDER BY tag_id",
                (p["id"],),
            )
            postings.append(Posting(
                id=UUID(p["id"]),
                account_id=p["account_id"],
                account_name=p["account_name"],
                amount=Decimal(p["amount"]),
                quantity=_dec(p["quantity"]),
                unit_code=p["unit_code"],
                tag_ids=[t["tag_id"] for t in tag_rows],
            ))
        return Transaction(
            id=UUID(row["id"]),
            date=date.fromisoformat(row["date"]),
            description=row["description"],
            note=row["note"],
            postings=postings,
            sync_state=SyncState(row["sync_state"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_tag(row: sqlite3.Row) -> Tag:
        return Tag(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
            sync_state=SyncState(row["sync_state"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_unit(row: sqlite3.Row) -> Unit:
        return Unit(
            code=row["code"],
            name=row["name"],
            symbol=row["symbol"],
            type=row["type"],
            sync_state=SyncState(row["sync_state"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_price(row: sqlite3.Row) -> Price:
        return Price(
            id=UUID(row["id"]),
            unit_code=row["unit_code"],
            date=date.fromisoformat(row["date"]),
            price=Decimal(row["price"]),
            currency=row["currency"],
            source=row["source"],
            sync_state=SyncState(row["sync_state"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Mutation queue table
    # ------------------------------------------------------------------

    def insert_record(self, record: MutationRecord) -> MutationRecord:
        with self.transaction() as conn:
            try:
                cursor = conn.execute(
                    """INSERT INTO mutation_queue
                       (id, operation_type, entity_type, entity_id, endpoint, method,
                        payload, created_at, retry_count, status, last_attempt_at, last_error)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        str(record.id),
                        record.operation_type.value,
                        record.entity_type.value,
                        record.entity_id,
                        record.endpoint,
                        record.method,
                        record.payload,
                        record.created_at.isoformat(),
                        record.retry_count,
                        record.status.value,
                        record.last_attempt_at.isoformat() if record.last_attempt_at else None,
                        record.last_error,
                    ),
                )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to enqueue record {record.id}: {e}") from e
        return record.model_copy(update={"seq": cursor.lastrowid})

    def update_record(self, record: MutationRecord) -> None:
        updated = self._execute(
            """UPDATE mutation_queue
               SET retry_count = ?, status = ?, last_attempt_at = ?, last_error = ?
               WHERE id = ?""",
            (
                record.retry_count,
                record.status.value,
                record.last_attempt_at.isoformat() if record.last_attempt_at else None,
                record.last_error,
                str(record.id),
            ),
        )
        if not updated:
            raise NotFoundError(f"Queued record not found: {record.id}")

    def delete_record(self, record_id: UUID) -> bool:
        return self._execute("DELETE FROM mutation_queue WHERE id = ?", (str(record_id),)) > 0

    def get_record(self, record_id: UUID) -> Optional[MutationRecord]:
        rows = self._query("SELECT * FROM mutation_queue WHERE id = ?", (str(record_id),))
        return self._row_to_record(rows[0]) if rows else None

    def list_records(
        self,
        statuses: Optional[Iterable[MutationStatus]] = None,
    ) -> list[MutationRecord]:
        if statuses is None:
            rows = self._query("SELECT * FROM mutation_queue ORDER BY seq")
        else:
            values = [s.value for s in statuses]
            if not values:
                return []
            marks = ", ".join("?" for _ in values)
            rows = self._query(
                f"SELECT * FROM mutation_queue WHERE status IN ({marks}) ORDER BY seq",
                tuple(values),
            )
        return [self._row_to_record(r) for r in rows]

    def records_for_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
    ) -> list[MutationRecord]:
        rows = self._query(
            "SELECT * FROM mutation_queue WHERE entity_type = ? AND entity_id = ? ORDER BY seq",
            (entity_type.value, entity_id),
        )
        return [self._row_to_record(r) for r in rows]

    def queue_counts(self) -> QueueCounts:
        rows = self._query("SELECT status, COUNT(*) AS n FROM mutation_queue GROUP BY status")
        counts = {row["status"]: row["n"] for row in rows}
        return QueueCounts(
            pending=counts.get(MutationStatus.PENDING.value, 0),
            retrying=counts.get(MutationStatus.RETRYING.value, 0),
            failed=counts.get(MutationStatus.FAILED.value, 0),
        )

    def clear_queue(self) -> int:
        return self._execute("DELETE FROM mutation_queue")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> MutationRecord:
        return MutationRecord(
            id=UUID(row["id"]),
            seq=row["seq"],
            operation_type=OperationType(row["operation_type"]),
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            endpoint=row["endpoint"],
            method=row["method"],
            payload=bytes(row["payload"]),
            created_at=_dt(row["created_at"]),
            retry_count=row["retry_count"],
            status=MutationStatus(row["status"]),
            last_attempt_at=_dt(row["last_attempt_at"]),
            last_error=row["last_error"],
        )


class SQLiteAuditStorage(AuditStorageInterface):
    """
    Audit log storage in the ledger database.

    Shares the store's connection and lock, so audit rows written during
    a sync cycle never race the worker's writes.
    """

    def __init__(self, store: SQLiteLedgerStore):
        self._store = store

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    """INSERT INTO audit_log
                       (event_id, timestamp, event_type, severity, entity_type, entity_id,
                        correlation_id, description, details, error_code, error_message,
                        is_user_action)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    event.to_row(),
                )
            return True
        except sqlite3.Error as e:
            # Don't raise - audit logging should not break the main flow
            logger.error("audit_append_failed", error=str(e), event_id=str(event.event_id))
            return False

    def _select(self, where: str, params: tuple, order: str, limit: Optional[int] = None) -> list[AuditEvent]:
        sql = f"SELECT * FROM audit_log {where} ORDER BY timestamp {order}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        try:
            with self._store.lock:
                rows = self._store.connection.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        return [self._row_to_event(r) for r in rows]

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return self._select("WHERE correlation_id = ?", (str(correlation_id),), "ASC")

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return self._select(
            "WHERE entity_type = ? AND entity_id = ?", (entity_type, entity_id), "ASC"
        )

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return self._select("", (), "DESC", limit)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row["event_id"]),
            timestamp=_dt(row["timestamp"]),
            event_type=AuditEventType(row["event_type"]),
            severity=AuditSeverity(row["severity"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            correlation_id=UUID(row["correlation_id"]) if row["correlation_id"] else None,
            description=row["description"],
            details=json.loads(row["details"]) if row["details"] else {},
            error_code=row["error_code"],
            error_message=row["error_message"],
            is_user_action=bool(row["is_user_action"]),
        )
