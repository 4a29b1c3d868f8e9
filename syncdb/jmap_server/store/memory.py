"""
In-memory record store implementation for testing.

This module provides a simple in-memory RecordStore for:
- Unit tests
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Provides the same transaction guarantees as the SQLite backend:
      serialized writers, snapshot readers, all-or-nothing commits

How to change safely:
    - This is test/dev code, changes don't affect the SQLite backend
    - Keep interface compatible with the RecordStore protocol
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from ..schema.registry import TypeRegistry
from .base import (
    Record,
    StoreError,
    TransactionMode,
    TransactionScopeError,
    TypeNotProvisionedError,
    Watermark,
)

logger = logging.getLogger(__name__)


class InMemoryTransaction:
    """A transaction over private copies of the scoped collections.

    Reads see the copies taken when the transaction opened. Writes land in
    the copies and are published by the store only on a clean exit.
    """

    def __init__(
        self,
        scope: frozenset,
        mode: TransactionMode,
        watermarks: Dict[str, Optional[Watermark]],
        records: Dict[str, Dict[str, Record]],
        indexes: Dict[Tuple[str, str], str],
    ) -> None:
        self.scope = scope
        self.mode = mode
        self.watermarks = watermarks
        self.records = records
        self._indexes = indexes

    def _collection(self, type_name: str) -> Dict[str, Record]:
        if type_name not in self.scope:
            raise TransactionScopeError(
                f"Type '{type_name}' is outside this transaction's scope {sorted(self.scope)}"
            )
        return self.records[type_name]

    def _check_writable(self) -> None:
        if self.mode != TransactionMode.READWRITE:
            raise TransactionScopeError("Cannot write in a read-only transaction")

    async def get_watermark(self, type_name: str) -> Watermark:
        self._collection(type_name)
        watermark = self.watermarks[type_name]
        if watermark is None:
            raise TypeNotProvisionedError(f"Record type not provisioned: {type_name}")
        return watermark

    async def put_watermark(self, watermark: Watermark) -> None:
        self._collection(watermark.type_name)
        self._check_writable()
        if self.watermarks[watermark.type_name] is None:
            raise TypeNotProvisionedError(f"Record type not provisioned: {watermark.type_name}")
        self.watermarks[watermark.type_name] = watermark

    async def get_record(self, type_name: str, record_id: str) -> Optional[Record]:
        return self._collection(type_name).get(record_id)

    async def put_record(self, type_name: str, record: Record) -> None:
        collection = self._collection(type_name)
        self._check_writable()
        collection[record.id] = Record(
            id=record.id,
            fields=dict(record.fields),
            created_mod_seq=record.created_mod_seq,
            updated_mod_seq=record.updated_mod_seq,
            deleted=record.deleted,
        )

    async def count_records(self, type_name: str) -> int:
        return sum(1 for r in self._collection(type_name).values() if not r.deleted)

    async def get_all_records(self, type_name: str) -> List[Record]:
        collection = self._collection(type_name)
        return [collection[i] for i in sorted(collection) if not collection[i].deleted]

    async def iter_changed_since(self, type_name: str, mod_seq: int) -> AsyncIterator[Record]:
        changed = [r for r in self._collection(type_name).values() if r.updated_mod_seq > mod_seq]
        changed.sort(key=lambda r: r.updated_mod_seq)
        for record in changed:
            yield record

    async def get_by_index(self, type_name: str, index_name: str, value: Any) -> List[Record]:
        collection = self._collection(type_name)
        field_name = self._indexes.get((type_name, index_name))
        if field_name is None:
            raise StoreError(f"Unknown index '{index_name}' on type '{type_name}'")
        return [
            r for r in collection.values()
            if not r.deleted and r.fields.get(field_name) == value
        ]

    async def count_distinct_by_index(self, type_name: str, index_name: str) -> int:
        collection = self._collection(type_name)
        field_name = self._indexes.get((type_name, index_name))
        if field_name is None:
            raise StoreError(f"Unknown index '{index_name}' on type '{type_name}'")
        values = {
            r.fields.get(field_name) for r in collection.values() if not r.deleted
        }
        values.discard(None)
        return len(values)


class InMemoryRecordStore:
    """In-memory implementation of RecordStore for testing.

    Thread safety:
        Uses an asyncio lock to serialize writers. Safe to use from
        multiple coroutines on one event loop.

    Example:
        >>> store = InMemoryRecordStore(account_id="acc_1")
        >>> await store.provision(build_mail_registry())
        >>> async with store.transaction(["Email"]) as txn:
        ...     await txn.get_watermark("Email")
        Watermark(type_name='Email', highest_mod_seq=0, lowest_mod_seq=0)
    """

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        self._watermarks: Dict[str, Watermark] = {}
        self._records: Dict[str, Dict[str, Record]] = {}
        self._indexes: Dict[Tuple[str, str], str] = {}
        self._write_lock = asyncio.Lock()

    async def provision(self, registry: TypeRegistry) -> None:
        async with self._write_lock:
            for record_type in registry.record_types():
                self._watermarks.setdefault(record_type.name, Watermark(record_type.name))
                self._records.setdefault(record_type.name, {})
                for index in record_type.indexes:
                    self._indexes[(record_type.name, index.name)] = index.field_name
        logger.debug("InMemoryRecordStore provisioned", extra={"account_id": self.account_id})

    def _open(self, scope: frozenset, mode: TransactionMode) -> InMemoryTransaction:
        return InMemoryTransaction(
            scope=scope,
            mode=mode,
            watermarks={t: self._watermarks.get(t) for t in scope},
            records={t: dict(self._records.get(t, {})) for t in scope},
            indexes=self._indexes,
        )

    @asynccontextmanager
    async def transaction(
        self,
        type_names: Iterable[str],
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> AsyncIterator[InMemoryTransaction]:
        scope = frozenset(type_names)

        if mode != TransactionMode.READWRITE:
            yield self._open(scope, mode)
            return

        async with self._write_lock:
            txn = self._open(scope, mode)
            yield txn
            # Publish only after the block finished without raising
            for type_name in scope:
                if txn.watermarks[type_name] is not None:
                    self._watermarks[type_name] = txn.watermarks[type_name]
                    self._records[type_name] = txn.records[type_name]

    async def close(self) -> None:
        """Clear all data."""
        self._watermarks.clear()
        self._records.clear()
        self._indexes.clear()
        logger.debug("InMemoryRecordStore closed")

    # Testing helpers

    def get_record_count(self, type_name: str, include_deleted: bool = True) -> int:
        """Get the number of stored records for a type (testing helper)."""
        records = self._records.get(type_name, {}).values()
        return sum(1 for r in records if include_deleted or not r.deleted)
