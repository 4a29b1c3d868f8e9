"""
Integration tests for the SQLite record store.

Tests cover:
- Per-account database files
- Provisioning and persistence across store instances
- Commit, rollback and read-only enforcement
- Snapshot isolation in WAL mode
- JSON expression indexes
"""

import sqlite3
import tempfile

import pytest

from syncdb.jmap_server.config import StorageBackend, StorageConfig
from syncdb.jmap_server.schema.mail import build_mail_registry
from syncdb.jmap_server.store import (
    AccountNotFoundError,
    Record,
    SqliteRecordStore,
    TransactionMode,
    TransactionScopeError,
    Watermark,
    create_record_store,
)


class TestSqliteRecordStore:
    """Tests for SqliteRecordStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create a provisioned store for one account."""
        store = SqliteRecordStore(data_dir, account_id="acc_1")
        await store.provision(build_mail_registry())
        return store

    def test_factory(self, data_dir):
        """The factory builds a SQLite store from config."""
        config = StorageConfig(backend=StorageBackend.SQLITE, data_dir=data_dir, wal_mode=False)
        store = create_record_store(config, "acc_1")

        assert isinstance(store, SqliteRecordStore)
        assert store.wal_mode is False

    def test_db_path_sanitized(self, data_dir):
        """Account ids cannot escape the data directory."""
        store = SqliteRecordStore(data_dir, account_id="../evil/acc")
        assert store.get_db_path().name == "account_evilacc.db"
        assert str(store.get_db_path().parent) == data_dir

    @pytest.mark.asyncio
    async def test_unprovisioned_account_raises(self, data_dir):
        """Transactions need a provisioned account database."""
        store = SqliteRecordStore(data_dir, account_id="nobody")

        with pytest.raises(AccountNotFoundError):
            async with store.transaction(["Email"]):
                pass

    @pytest.mark.asyncio
    async def test_one_file_per_account(self, data_dir, store):
        """Each account gets its own database file."""
        other = SqliteRecordStore(data_dir, account_id="acc_2")
        await other.provision(build_mail_registry())

        assert store.get_db_path() != other.get_db_path()
        assert store.get_db_path().exists()
        assert other.get_db_path().exists()

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, data_dir, store):
        """Committed data is visible to a new store instance."""
        async with store.transaction(["Email"], TransactionMode.READWRITE) as txn:
            await txn.put_record(
                "Email",
                Record(id="1", fields={"subject": "hi"}, created_mod_seq=1, updated_mod_seq=1),
            )
            await txn.put_watermark(Watermark("Email", 1))

        reopened = SqliteRecordStore(data_dir, account_id="acc_1")
        await reopened.provision(build_mail_registry())

        async with reopened.transaction(["Email"]) as txn:
            record = await txn.get_record("Email", "1")
            watermark = await txn.get_watermark("Email")

        assert record.fields == {"subject": "hi"}
        assert watermark.highest_mod_seq == 1

    @pytest.mark.asyncio
    async def test_rollback_on_exception(self, store):
        """A failed write transaction leaves nothing behind."""
        with pytest.raises(RuntimeError):
            async with store.transaction(["Email"], TransactionMode.READWRITE) as txn:
                await txn.put_record("Email", Record(id="1", created_mod_seq=1, updated_mod_seq=1))
                await txn.put_watermark(Watermark("Email", 1))
                raise RuntimeError("boom")

        async with store.transaction(["Email"]) as txn:
            assert await txn.get_record("Email", "1") is None
            assert (await txn.get_watermark("Email")).highest_mod_seq == 0

    @pytest.mark.asyncio
    async def test_readonly_rejects_writes(self, store):
        """Read-only transactions cannot write."""
        async with store.transaction(["Email"]) as txn:
            with pytest.raises(TransactionScopeError):
                await txn.put_watermark(Watermark("Email", 1))

    @pytest.mark.asyncio
    async def test_scope_enforced(self, store):
        """Types outside the scope are rejected."""
        async with store.transaction(["Email"]) as txn:
            with pytest.raises(TransactionScopeError):
                await txn.get_watermark("Mailbox")

    @pytest.mark.asyncio
    async def test_reader_keeps_its_snapshot(self, store):
        """A reader opened before a commit does not see it."""
        async with store.transaction(["Email"]) as reader:
            async with store.transaction(["Email"], TransactionMode.READWRITE) as writer:
                await writer.put_record("Email", Record(id="1", created_mod_seq=1, updated_mod_seq=1))
                await writer.put_watermark(Watermark("Email", 1))

            assert await reader.get_record("Email", "1") is None
            assert (await reader.get_watermark("Email")).highest_mod_seq == 0

    @pytest.mark.asyncio
    async def test_partial_scan_closes_cursor(self, store):
        """Abandoning a change scan early still commits cleanly."""
        async with store.transaction(["Email"], TransactionMode.READWRITE) as txn:
            for i in range(1, 4):
                await txn.put_record("Email", Record(id=str(i), created_mod_seq=i, updated_mod_seq=i))
            await txn.put_watermark(Watermark("Email", 3))

        async with store.transaction(["Email"]) as txn:
            changed = txn.iter_changed_since("Email", 0)
            first = await changed.__anext__()
            await changed.aclose()

        assert first.id == "1"

    @pytest.mark.asyncio
    async def test_index_created(self, store):
        """Declared indexes exist as SQLite expression indexes."""
        conn = sqlite3.connect(str(store.get_db_path()))
        try:
            names = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
            }
        finally:
            conn.close()

        assert "idx_Email_byThreadId" in names
        assert "idx_records_modseq" in names

    @pytest.mark.asyncio
    async def test_get_by_index_json_field(self, store):
        """Index lookups compare the JSON field value."""
        async with store.transaction(["Email"], TransactionMode.READWRITE) as txn:
            await txn.put_record(
                "Email", Record(id="1", fields={"threadId": "t1"}, created_mod_seq=1, updated_mod_seq=1)
            )
            await txn.put_record(
                "Email", Record(id="2", fields={"threadId": "t2"}, created_mod_seq=2, updated_mod_seq=2)
            )

        async with store.transaction(["Email"]) as txn:
            members = await txn.get_by_index("Email", "byThreadId", "t2")

        assert [r.id for r in members] == ["2"]

    @pytest.mark.asyncio
    async def test_count_distinct_by_index(self, store):
        """Distinct counts skip tombstones and records without the field."""
        records = [
            Record(id="1", fields={"threadId": "t1"}, created_mod_seq=1, updated_mod_seq=1),
            Record(id="2", fields={"threadId": "t1"}, created_mod_seq=2, updated_mod_seq=2),
            Record(id="3", fields={"threadId": "t2"}, created_mod_seq=3, updated_mod_seq=3),
            Record(
                id="4", fields={"threadId": "t3"}, created_mod_seq=4, updated_mod_seq=5, deleted=True
            ),
            Record(id="5", fields={"subject": "x"}, created_mod_seq=6, updated_mod_seq=6),
        ]
        async with store.transaction(["Email"], TransactionMode.READWRITE) as txn:
            for record in records:
                await txn.put_record("Email", record)

        async with store.transaction(["Email"]) as txn:
            assert await txn.count_distinct_by_index("Email", "byThreadId") == 2
