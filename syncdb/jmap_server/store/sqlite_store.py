"""
SQLite record store for SyncDB.

One SQLite file per account holds every record type of that account:
- records: one row per (type, id), fields as JSON, modseq bookkeeping
- meta: one watermark row per record type
- expression indexes over JSON fields for each declared IndexDef

Invariants:
    - One SQLite file per account
    - Write transactions use BEGIN IMMEDIATE and an in-process lock, so
      two writers never interleave their modseq assignment
    - Read transactions pin their snapshot when they open (WAL mode)
    - Records are never deleted here, only rewritten as tombstones

How to change safely:
    - Schema migrations must be backward compatible
    - New indexes go through RecordTypeDef.indexes and provision()
    - Keep the modseq index; change scans depend on it

Table schema:
    meta:
        - type_name TEXT PRIMARY KEY
        - highest_mod_seq INTEGER
        - lowest_mod_seq INTEGER
        - updated_at INTEGER (Unix ms)

    records:
        - type_name TEXT
        - id TEXT
        - payload_json TEXT
        - created_mod_seq INTEGER
        - updated_mod_seq INTEGER
        - deleted INTEGER (0/1)
        - PRIMARY KEY (type_name, id)
        - INDEX on (type_name, updated_mod_seq)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager, nullcontext
from pathlib import Path
from typing import Any

from ..schema.registry import TypeRegistry
from .base import (
    AccountNotFoundError,
    Record,
    StoreError,
    TransactionMode,
    TransactionScopeError,
    TypeNotProvisionedError,
    Watermark,
)

logger = logging.getLogger(__name__)


def _row_to_record(row: sqlite3.Row) -> Record:
    return Record(
        id=row["id"],
        fields=json.loads(row["payload_json"]),
        created_mod_seq=row["created_mod_seq"],
        updated_mod_seq=row["updated_mod_seq"],
        deleted=bool(row["deleted"]),
    )


def _index_expression(field_name: str) -> str:
    return f"json_extract(payload_json, '$.{field_name}')"


class SqliteTransaction:
    """One open SQLite transaction scoped to a set of record types."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        scope: frozenset[str],
        mode: TransactionMode,
        indexes: dict[tuple[str, str], str],
    ) -> None:
        self.conn = conn
        self.scope = scope
        self.mode = mode
        self._indexes = indexes

    def _check_scope(self, type_name: str) -> None:
        if type_name not in self.scope:
            raise TransactionScopeError(
                f"Type '{type_name}' is outside this transaction's scope {sorted(self.scope)}"
            )

    def _check_writable(self) -> None:
        if self.mode != TransactionMode.READWRITE:
            raise TransactionScopeError("Cannot write in a read-only transaction")

    async def get_watermark(self, type_name: str) -> Watermark:
        self._check_scope(type_name)
        row = self.conn.execute(
            "SELECT * FROM meta WHERE type_name = ?",
            (type_name,),
        ).fetchone()
        if not row:
            raise TypeNotProvisionedError(f"Record type not provisioned: {type_name}")
        return Watermark(
            type_name=row["type_name"],
            highest_mod_seq=row["highest_mod_seq"],
            lowest_mod_seq=row["lowest_mod_seq"],
        )

    async def put_watermark(self, watermark: Watermark) -> None:
        self._check_scope(watermark.type_name)
        self._check_writable()
        cursor = self.conn.execute(
            """
            UPDATE meta SET highest_mod_seq = ?, lowest_mod_seq = ?, updated_at = ?
            WHERE type_name = ?
            """,
            (
                watermark.highest_mod_seq,
                watermark.lowest_mod_seq,
                int(time.time() * 1000),
                watermark.type_name,
            ),
        )
        if cursor.rowcount == 0:
            raise TypeNotProvisionedError(f"Record type not provisioned: {watermark.type_name}")

    async def get_record(self, type_name: str, record_id: str) -> Record | None:
        self._check_scope(type_name)
        row = self.conn.execute(
            "SELECT * FROM records WHERE type_name = ? AND id = ?",
            (type_name, record_id),
        ).fetchone()
        return _row_to_record(row) if row else None

    async def put_record(self, type_name: str, record: Record) -> None:
        self._check_scope(type_name)
        self._check_writable()
        self.conn.execute(
            """
            INSERT OR REPLACE INTO records
            (type_name, id, payload_json, created_mod_seq, updated_mod_seq, deleted)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                type_name,
                record.id,
                json.dumps(record.fields),
                record.created_mod_seq,
                record.updated_mod_seq,
                int(record.deleted),
            ),
        )

    async def count_records(self, type_name: str) -> int:
        self._check_scope(type_name)
        cursor = self.conn.execute(
            "SELECT COUNT(*) FROM records WHERE type_name = ? AND deleted = 0",
            (type_name,),
        )
        return cursor.fetchone()[0]

    async def get_all_records(self, type_name: str) -> list[Record]:
        self._check_scope(type_name)
        cursor = self.conn.execute(
            "SELECT * FROM records WHERE type_name = ? AND deleted = 0 ORDER BY id",
            (type_name,),
        )
        return [_row_to_record(row) for row in cursor.fetchall()]

    async def iter_changed_since(self, type_name: str, mod_seq: int) -> AsyncIterator[Record]:
        self._check_scope(type_name)
        cursor = self.conn.execute(
            """
            SELECT * FROM records
            WHERE type_name = ? AND updated_mod_seq > ?
            ORDER BY updated_mod_seq ASC
            """,
            (type_name, mod_seq),
        )
        try:
            for row in cursor:
                yield _row_to_record(row)
        finally:
            cursor.close()

    async def get_by_index(self, type_name: str, index_name: str, value: Any) -> list[Record]:
        self._check_scope(type_name)
        field_name = self._indexes.get((type_name, index_name))
        if field_name is None:
            raise StoreError(f"Unknown index '{index_name}' on type '{type_name}'")
        cursor = self.conn.execute(
            f"""
            SELECT * FROM records
            WHERE type_name = ? AND deleted = 0 AND {_index_expression(field_name)} = ?
            """,
            (type_name, value),
        )
        return [_row_to_record(row) for row in cursor.fetchall()]

    async def count_distinct_by_index(self, type_name: str, index_name: str) -> int:
        self._check_scope(type_name)
        field_name = self._indexes.get((type_name, index_name))
        if field_name is None:
            raise StoreError(f"Unknown index '{index_name}' on type '{type_name}'")
        expression = _index_expression(field_name)
        cursor = self.conn.execute(
            f"""
            SELECT COUNT(DISTINCT {expression}) FROM records
            WHERE type_name = ? AND deleted = 0 AND {expression} IS NOT NULL
            """,
            (type_name,),
        )
        return cursor.fetchone()[0]


class SqliteRecordStore:
    """Per-account SQLite store for versioned records.

    Thread safety:
        Each transaction opens its own connection.
        SQLite handles concurrent readers via WAL mode; writers inside one
        process are additionally serialized by an asyncio lock.

    Example:
        >>> store = SqliteRecordStore("/var/lib/syncdb", account_id="acc_1")
        >>> await store.provision(build_mail_registry())
        >>> async with store.transaction(["Email"], TransactionMode.READWRITE) as txn:
        ...     await txn.put_record("Email", Record(id="1", created_mod_seq=1, updated_mod_seq=1))
        ...     await txn.put_watermark(Watermark("Email", highest_mod_seq=1))
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        account_id: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the record store.

        Args:
            data_dir: Directory for SQLite database files
            account_id: Account whose records this store holds
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.account_id = account_id
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._indexes: dict[tuple[str, str], str] = {}
        self._write_lock = asyncio.Lock()

    def _get_db_path(self) -> Path:
        """Get database file path for the account."""
        # Sanitize account_id to prevent path traversal
        safe_id = "".join(c for c in self.account_id if c.isalnum() or c in "-_")
        return self.data_dir / f"account_{safe_id}.db"

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection for the account.

        Raises:
            AccountNotFoundError: If database doesn't exist and create=False
        """
        db_path = self._get_db_path()

        if not create and not db_path.exists():
            raise AccountNotFoundError(f"Account database not found: {self.account_id}")

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Per-type watermarks
            CREATE TABLE IF NOT EXISTS meta (
                type_name TEXT PRIMARY KEY,
                highest_mod_seq INTEGER NOT NULL DEFAULT 0,
                lowest_mod_seq INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL
            );

            -- Records, tombstones included
            CREATE TABLE IF NOT EXISTS records (
                type_name TEXT NOT NULL,
                id TEXT NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                created_mod_seq INTEGER NOT NULL,
                updated_mod_seq INTEGER NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (type_name, id)
            );

            CREATE INDEX IF NOT EXISTS idx_records_modseq
                ON records(type_name, updated_mod_seq);

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def provision(self, registry: TypeRegistry) -> None:
        """Create the account database, watermarks and declared indexes.

        Args:
            registry: Registry whose record types should exist in this store
        """
        async with self._write_lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
                conn.execute("BEGIN IMMEDIATE")
                try:
                    now = int(time.time() * 1000)
                    for record_type in registry.record_types():
                        conn.execute(
                            """
                            INSERT OR IGNORE INTO meta
                            (type_name, highest_mod_seq, lowest_mod_seq, updated_at)
                            VALUES (?, 0, 0, ?)
                            """,
                            (record_type.name, now),
                        )
                        for index in record_type.indexes:
                            conn.execute(
                                f"""
                                CREATE INDEX IF NOT EXISTS idx_{record_type.name}_{index.name}
                                ON records(type_name, {_index_expression(index.field_name)})
                                """
                            )
                            self._indexes[(record_type.name, index.name)] = index.field_name
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.info(
            "Provisioned account database",
            extra={
                "account_id": self.account_id,
                "types": [t.name for t in registry.record_types()],
            },
        )

    @asynccontextmanager
    async def transaction(
        self,
        type_names: Iterable[str],
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> AsyncIterator[SqliteTransaction]:
        """Open a transaction over ``type_names``.

        Raises:
            AccountNotFoundError: If the account was never provisioned
        """
        scope = frozenset(type_names)
        writable = mode == TransactionMode.READWRITE

        async with self._write_lock if writable else nullcontext():
            with self._get_connection() as conn:
                if writable:
                    conn.execute("BEGIN IMMEDIATE")
                else:
                    conn.execute("PRAGMA query_only = ON")
                    conn.execute("BEGIN")
                    # Pin the read snapshot now, not at the first engine read
                    conn.execute("SELECT 1 FROM meta LIMIT 1").fetchone()

                txn = SqliteTransaction(conn, scope, mode, self._indexes)
                try:
                    yield txn
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    async def close(self) -> None:
        """Nothing to release; connections are per transaction."""
        logger.debug("SqliteRecordStore closed", extra={"account_id": self.account_id})

    def get_db_path(self) -> Path:
        """Get the database file path for the account."""
        return self._get_db_path()
