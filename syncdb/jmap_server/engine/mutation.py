"""
Mutation engine: writes records and assigns modseqs.

Every write batch runs as one READWRITE transaction covering the type's
records and its watermark:
1. Validate the whole batch (ids, field kinds) before touching storage
2. Draw one fresh modseq per record, in input order
3. Merge each record into its stored version (or create it)
4. Advance the watermark to the last modseq drawn

Invariants:
    - Each record in a batch gets its own, strictly increasing modseq
    - created_mod_seq never changes once a record exists
    - A rejected batch writes nothing
    - The watermark only ever moves forward

How to change safely:
    - Keep validation ahead of the transaction so failures stay all-or-nothing
    - Never reuse a modseq, even for a no-op merge
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..schema.types import RecordTypeDef
from ..store.base import Record, RecordStore, StoreTransaction, TransactionMode
from .changes import format_state
from .errors import IdRequiredError, InvalidArgumentsError, InvalidPropertiesError

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    """Outcome of a write batch.

    Attributes:
        type_name: Record type written
        old_mod_seq: Highest modseq before the batch
        new_mod_seq: Highest modseq after the batch
        ids: Ids that were written or tombstoned, in modseq order
        created: Ids whose write created the record
        destroyed: Ids that were tombstoned
    """

    type_name: str
    old_mod_seq: int
    new_mod_seq: int
    ids: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)

    @property
    def updated(self) -> list[str]:
        """Written ids that already existed, first occurrence order."""
        skip = set(self.created) | set(self.destroyed)
        seen: set[str] = set()
        result = []
        for record_id in self.ids:
            if record_id not in skip and record_id not in seen:
                seen.add(record_id)
                result.append(record_id)
        return result


@dataclass
class SetResult:
    """Wire result of a set call: which ids the write created, updated or destroyed."""

    account_id: str
    old_state: str
    new_state: str
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)

    @classmethod
    def from_mutation(cls, account_id: str, result: MutationResult) -> SetResult:
        return cls(
            account_id=account_id,
            old_state=format_state(result.old_mod_seq),
            new_state=format_state(result.new_mod_seq),
            created=list(result.created),
            updated=result.updated,
            destroyed=list(result.destroyed),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "oldState": self.old_state,
            "newState": self.new_state,
            "created": self.created,
            "updated": self.updated,
            "destroyed": self.destroyed,
        }


def _require_id(value: Any, position: int) -> str:
    if not isinstance(value, str) or not value:
        raise IdRequiredError(f"Record at position {position} has no id")
    return value


def validate_batch(record_type: RecordTypeDef, records: Any) -> None:
    """Check a write batch without touching storage.

    Raises:
        InvalidArgumentsError: If ``records`` is not a list of objects
        IdRequiredError: If any record lacks a non-empty string id
        InvalidPropertiesError: If any field violates the type schema
    """
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise InvalidArgumentsError("records must be a list of objects")

    for position, record in enumerate(records):
        _require_id(record.get("id"), position)

    errors = []
    for record in records:
        errors.extend(f"{record['id']}: {e}" for e in record_type.validate_fields(record))
    if errors:
        raise InvalidPropertiesError(
            f"{len(errors)} invalid field value(s) for type '{record_type.name}'",
            errors=errors,
        )


def validate_ids(ids: Any) -> None:
    """Check a destroy list without touching storage.

    Raises:
        InvalidArgumentsError: If ``ids`` is not a list
        IdRequiredError: If any id is empty or not a string
    """
    if not isinstance(ids, list):
        raise InvalidArgumentsError("ids must be a list of strings")
    for position, record_id in enumerate(ids):
        _require_id(record_id, position)


async def _merge_records(
    txn: StoreTransaction,
    record_type: RecordTypeDef,
    records: list[dict[str, Any]],
    mod_seq: int,
    result: MutationResult,
) -> int:
    type_name = record_type.name
    for incoming in records:
        mod_seq += 1
        record_id = incoming["id"]
        previous = await txn.get_record(type_name, record_id)
        if previous is None:
            record = Record(
                id=record_id,
                fields=record_type.merge({}, incoming),
                created_mod_seq=mod_seq,
                updated_mod_seq=mod_seq,
            )
            result.created.append(record_id)
        else:
            record = Record(
                id=record_id,
                fields=record_type.merge(previous.fields, incoming),
                created_mod_seq=previous.created_mod_seq,
                updated_mod_seq=mod_seq,
            )
        await txn.put_record(type_name, record)
        result.ids.append(record_id)
    return mod_seq


async def _tombstone_records(
    txn: StoreTransaction,
    type_name: str,
    ids: list[str],
    mod_seq: int,
    result: MutationResult,
) -> int:
    for record_id in ids:
        previous = await txn.get_record(type_name, record_id)
        if previous is None or previous.deleted:
            continue
        mod_seq += 1
        await txn.put_record(
            type_name,
            Record(
                id=record_id,
                fields=previous.fields,
                created_mod_seq=previous.created_mod_seq,
                updated_mod_seq=mod_seq,
                deleted=True,
            ),
        )
        result.ids.append(record_id)
        result.destroyed.append(record_id)
    return mod_seq


async def set_records(
    store: RecordStore,
    record_type: RecordTypeDef,
    records: list[dict[str, Any]],
    destroy_ids: list[str],
) -> MutationResult:
    """Merge ``records`` then tombstone ``destroy_ids`` in one transaction.

    This is the shared write path of add_records and destroy_records. A
    record that does not exist yet is created with
    ``created_mod_seq == updated_mod_seq``. An existing record (tombstone
    included) keeps its created modseq, takes the merged fields and is
    un-tombstoned. A record id repeated within one batch is merged once
    per occurrence, each time with a new modseq. Destroy ids that do not
    exist or are already tombstoned are skipped and do not consume a
    modseq.

    Args:
        store: Record store of the account
        record_type: Schema of the records being written
        records: Partial records, each with an "id"
        destroy_ids: Ids to tombstone after the writes

    Returns:
        MutationResult describing the batch

    Raises:
        InvalidArgumentsError: If either list has the wrong shape
        IdRequiredError: If any record or destroy id lacks an id (nothing is written)
        InvalidPropertiesError: If any field is invalid (nothing is written)
    """
    validate_batch(record_type, records)
    validate_ids(destroy_ids)
    type_name = record_type.name

    async with store.transaction([type_name], TransactionMode.READWRITE) as txn:
        watermark = await txn.get_watermark(type_name)
        result = MutationResult(type_name, watermark.highest_mod_seq, watermark.highest_mod_seq)

        mod_seq = await _merge_records(txn, record_type, records, result.old_mod_seq, result)
        mod_seq = await _tombstone_records(txn, type_name, destroy_ids, mod_seq, result)

        if mod_seq != result.old_mod_seq:
            await txn.put_watermark(watermark.advanced_to(mod_seq))
        result.new_mod_seq = mod_seq

    logger.debug(
        "Records written",
        extra={
            "account_id": store.account_id,
            "type_name": type_name,
            "count": len(result.ids),
            "destroyed": len(result.destroyed),
            "skipped": len(destroy_ids) - len(result.destroyed),
            "old_mod_seq": result.old_mod_seq,
            "new_mod_seq": result.new_mod_seq,
        },
    )
    return result


async def add_records(
    store: RecordStore,
    record_type: RecordTypeDef,
    records: list[dict[str, Any]],
) -> MutationResult:
    """Merge partial records into the type's collection (see set_records).

    Raises:
        IdRequiredError: If any record lacks an id (nothing is written)
        InvalidPropertiesError: If any field is invalid (nothing is written)
    """
    return await set_records(store, record_type, records, [])


async def destroy_records(
    store: RecordStore,
    record_type: RecordTypeDef,
    ids: list[str],
) -> MutationResult:
    """Tombstone records so later diffs report them as destroyed.

    Raises:
        InvalidArgumentsError: If ``ids`` is not a list
        IdRequiredError: If any id is empty or not a string
    """
    return await set_records(store, record_type, [], ids)
