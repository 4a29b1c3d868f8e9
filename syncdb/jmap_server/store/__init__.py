"""
Record storage for SyncDB.

This module provides the storage collaborator the engine runs on:
- The RecordStore / StoreTransaction protocols and the Record and
  Watermark types
- SQLite backend (one database file per account)
- In-memory backend (tests, local development)

Invariants:
    - Write transactions are atomic and never interleave per store
    - Read transactions observe one consistent snapshot

How to change safely:
    - New backends must implement the RecordStore protocol
    - Run the engine test-suite against every backend
"""

from .base import (
    AccountNotFoundError,
    Record,
    RecordStore,
    StoreError,
    StoreTransaction,
    TransactionMode,
    TransactionScopeError,
    TypeNotProvisionedError,
    Watermark,
    create_record_store,
)
from .memory import InMemoryRecordStore
from .sqlite_store import SqliteRecordStore

__all__ = [
    # Protocol and types
    "RecordStore",
    "StoreTransaction",
    "TransactionMode",
    "Record",
    "Watermark",
    "StoreError",
    "AccountNotFoundError",
    "TypeNotProvisionedError",
    "TransactionScopeError",
    # Factory
    "create_record_store",
    # Implementations
    "SqliteRecordStore",
    "InMemoryRecordStore",
]
