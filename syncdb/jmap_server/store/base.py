"""
Base protocol and types for the record storage collaborator.

The engine never touches SQLite (or any other engine) directly. It talks
to a RecordStore through scoped transactions that expose exactly what the
change log needs:
- one keyed collection per record type (get/put/count/scan)
- an ascending ordering by updated modseq for change scans
- optional named secondary indexes for aggregate fetches, with distinct
  value counts for sizing them
- one watermark per record type

Invariants:
    - A transaction only touches the types it was opened with
    - READWRITE transactions on one store never interleave
    - READONLY transactions see one snapshot for their whole duration
    - A failed transaction leaves no partial writes behind

How to change safely:
    - Protocol changes require updating every backend
    - Keep Record immutable; backends rely on replacing, not mutating
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterator,
    Iterable,
    Protocol,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import StorageConfig
    from ..schema.registry import TypeRegistry

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for storage operations."""
    pass


class AccountNotFoundError(StoreError):
    """Account database does not exist."""
    pass


class TypeNotProvisionedError(StoreError):
    """The record type has no watermark in this store."""
    pass


class TransactionScopeError(StoreError):
    """A transaction touched a type it was not opened with, or wrote while read-only."""
    pass


class TransactionMode(Enum):
    """Transaction access modes."""

    READONLY = "readonly"
    READWRITE = "readwrite"


@dataclass(frozen=True)
class Watermark:
    """Modseq bounds for one record type.

    Attributes:
        type_name: Record type name
        highest_mod_seq: Largest modseq ever assigned to the type
        lowest_mod_seq: Floor below which changes can no longer be computed
    """

    type_name: str
    highest_mod_seq: int = 0
    lowest_mod_seq: int = 0

    def advanced_to(self, mod_seq: int) -> Watermark:
        """Return a copy whose highest modseq is ``mod_seq``.

        Raises:
            ValueError: If ``mod_seq`` would move the watermark backwards
        """
        if mod_seq < self.highest_mod_seq:
            raise ValueError(
                f"Watermark for '{self.type_name}' cannot move back "
                f"from {self.highest_mod_seq} to {mod_seq}"
            )
        return replace(self, highest_mod_seq=mod_seq)


@dataclass(frozen=True)
class Record:
    """A stored record plus its change-log bookkeeping.

    Attributes:
        id: Record identifier, unique within its type
        fields: Field values (never contains "id")
        created_mod_seq: Modseq of the write that first created the record
        updated_mod_seq: Modseq of the latest write, including deletion
        deleted: Tombstone flag
    """

    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_mod_seq: int = 0
    updated_mod_seq: int = 0
    deleted: bool = False

    def __post_init__(self) -> None:
        if self.created_mod_seq > self.updated_mod_seq:
            raise ValueError(
                f"Record '{self.id}': created modseq {self.created_mod_seq} "
                f"is after updated modseq {self.updated_mod_seq}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Client-facing shape: id plus fields, no bookkeeping."""
        return {"id": self.id, **self.fields}


@runtime_checkable
class StoreTransaction(Protocol):
    """Operations available inside one store transaction."""

    mode: TransactionMode

    @abstractmethod
    async def get_watermark(self, type_name: str) -> Watermark:
        """Read the type's watermark.

        Raises:
            TypeNotProvisionedError: If the type was never provisioned
        """
        ...

    @abstractmethod
    async def put_watermark(self, watermark: Watermark) -> None:
        ...

    @abstractmethod
    async def get_record(self, type_name: str, record_id: str) -> Record | None:
        """Primary-key lookup. Returns tombstones too."""
        ...

    @abstractmethod
    async def put_record(self, type_name: str, record: Record) -> None:
        ...

    @abstractmethod
    async def count_records(self, type_name: str) -> int:
        """Count live (non-tombstoned) records."""
        ...

    @abstractmethod
    async def get_all_records(self, type_name: str) -> list[Record]:
        """All live records, ordered by id."""
        ...

    @abstractmethod
    def iter_changed_since(self, type_name: str, mod_seq: int) -> AsyncIterator[Record]:
        """Records with updated modseq strictly above ``mod_seq``, ascending.

        Tombstones are included. The iterator is lazy and single-pass, and
        is only valid while the transaction is open.
        """
        ...

    @abstractmethod
    async def get_by_index(self, type_name: str, index_name: str, value: Any) -> list[Record]:
        """Live records whose indexed field equals ``value``, in no particular order."""
        ...

    @abstractmethod
    async def count_distinct_by_index(self, type_name: str, index_name: str) -> int:
        """Number of distinct non-null indexed values among live records."""
        ...


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for record storage backends.

    Example:
        >>> store = SqliteRecordStore("/var/lib/syncdb", account_id="acc_1")
        >>> await store.provision(registry)
        >>> async with store.transaction(["Email"], TransactionMode.READONLY) as txn:
        ...     watermark = await txn.get_watermark("Email")
    """

    account_id: str

    @abstractmethod
    async def provision(self, registry: TypeRegistry) -> None:
        """Create storage and one watermark per record type.

        Idempotent: existing watermarks and records are left untouched.
        """
        ...

    @abstractmethod
    def transaction(
        self,
        type_names: Iterable[str],
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> AsyncContextManager[StoreTransaction]:
        """Open a transaction over ``type_names``.

        Commits when the block exits normally, rolls back when it raises.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def create_record_store(config: StorageConfig, account_id: str) -> RecordStore:
    """Factory function to create a record store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryRecordStore
    from .sqlite_store import SqliteRecordStore

    if config.backend == StorageBackend.SQLITE:
        return SqliteRecordStore(
            data_dir=config.data_dir,
            account_id=account_id,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )
    elif config.backend == StorageBackend.MEMORY:
        return InMemoryRecordStore(account_id=account_id)
    else:
        raise ValueError(f"Unsupported storage backend: {config.backend}")
