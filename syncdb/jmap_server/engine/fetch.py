"""
Fetch strategies used by the query engine.

A strategy turns a list of requested ids into one result-or-absence per
id, inside the caller's read transaction. Two variants ship:
- DirectFetch: primary-key lookup of stored records
- GroupByIndexFetch: synthesizes aggregate objects (e.g. Thread) from the
  source records sharing an index value

Invariants:
    - fetch() returns exactly one entry per requested id, in request order
    - Tombstoned records are never returned
    - An empty group is an absence, not an empty aggregate
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence

from ..schema.types import AggregateTypeDef, FieldKind, RecordTypeDef, parse_timestamp
from ..store.base import Record, StoreTransaction


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def project(obj: dict[str, Any], properties: Optional[Sequence[str]]) -> dict[str, Any]:
    """Keep "id" plus the requested properties that have a non-null value."""
    if properties is None:
        return obj
    result = {"id": obj["id"]}
    for name in properties:
        value = obj.get(name)
        if value is not None:
            result[name] = value
    return result


class FetchStrategy(Protocol):
    """Resolves ids for one exposed type.

    Attributes:
        source_type: Stored record type the strategy reads (and whose
            watermark is the reported state)
    """

    source_type: str

    async def count(self, txn: StoreTransaction) -> int:
        """Size check used before fetching the whole collection."""
        ...

    async def fetch_all(
        self, txn: StoreTransaction, properties: Optional[Sequence[str]]
    ) -> list[dict[str, Any]]:
        ...

    async def fetch(
        self,
        txn: StoreTransaction,
        ids: Sequence[str],
        properties: Optional[Sequence[str]],
    ) -> list[Optional[dict[str, Any]]]:
        ...


class DirectFetch:
    """Primary-key lookup of stored records."""

    def __init__(self, type_name: str) -> None:
        self.source_type = type_name

    async def count(self, txn: StoreTransaction) -> int:
        return await txn.count_records(self.source_type)

    async def fetch_all(
        self, txn: StoreTransaction, properties: Optional[Sequence[str]]
    ) -> list[dict[str, Any]]:
        records = await txn.get_all_records(self.source_type)
        return [project(r.to_dict(), properties) for r in records]

    async def fetch(
        self,
        txn: StoreTransaction,
        ids: Sequence[str],
        properties: Optional[Sequence[str]],
    ) -> list[Optional[dict[str, Any]]]:
        results: list[Optional[dict[str, Any]]] = []
        for record_id in ids:
            record = await txn.get_record(self.source_type, record_id)
            if record is None or record.deleted:
                results.append(None)
            else:
                results.append(project(record.to_dict(), properties))
        return results


class GroupByIndexFetch:
    """Group source records by a foreign key and expose the group.

    The aggregate for id X is ``{"id": X, members_property: [...]}``
    listing the ids of live source records whose ``group_field`` equals X,
    ordered ascending by ``sort_field``. With ``sort_as_timestamp`` the
    values are compared as instants, so mixed UTC offsets order correctly.
    Records missing the sort field come last; ties break by id.

    Example:
        >>> threads = GroupByIndexFetch(
        ...     source_type="Email",
        ...     index_name="byThreadId",
        ...     group_field="threadId",
        ...     members_property="emailIds",
        ...     sort_field="receivedAt",
        ... )
    """

    def __init__(
        self,
        source_type: str,
        index_name: str,
        group_field: str,
        members_property: str,
        sort_field: str,
        sort_as_timestamp: bool = False,
    ) -> None:
        self.source_type = source_type
        self.index_name = index_name
        self.group_field = group_field
        self.members_property = members_property
        self.sort_field = sort_field
        self.sort_as_timestamp = sort_as_timestamp

    @classmethod
    def from_aggregate(cls, aggregate: AggregateTypeDef, source: RecordTypeDef) -> GroupByIndexFetch:
        """Build the strategy for ``aggregate`` over its source record type."""
        index = source.get_index(aggregate.index_name)
        sort_def = source.get_field(aggregate.sort_field)
        return cls(
            source_type=aggregate.source_type,
            index_name=aggregate.index_name,
            group_field=index.field_name,
            members_property=aggregate.members_property,
            sort_field=aggregate.sort_field,
            sort_as_timestamp=sort_def is not None and sort_def.kind == FieldKind.TIMESTAMP,
        )

    def _sort_key(self, record: Record) -> tuple:
        value = record.fields.get(self.sort_field)
        if self.sort_as_timestamp:
            value = parse_timestamp(value)
            return (value is None, value or _EPOCH, record.id)
        return (value is None, value if value is not None else "", record.id)

    def _build(self, group_id: str, members: list[Record]) -> dict[str, Any]:
        members = sorted(members, key=self._sort_key)
        return {"id": group_id, self.members_property: [r.id for r in members]}

    async def count(self, txn: StoreTransaction) -> int:
        return await txn.count_distinct_by_index(self.source_type, self.index_name)

    async def fetch_all(
        self, txn: StoreTransaction, properties: Optional[Sequence[str]]
    ) -> list[dict[str, Any]]:
        groups: dict[str, list[Record]] = defaultdict(list)
        for record in await txn.get_all_records(self.source_type):
            group_id = record.fields.get(self.group_field)
            if group_id is not None:
                groups[group_id].append(record)
        return [project(self._build(g, groups[g]), properties) for g in sorted(groups)]

    async def fetch(
        self,
        txn: StoreTransaction,
        ids: Sequence[str],
        properties: Optional[Sequence[str]],
    ) -> list[Optional[dict[str, Any]]]:
        results: list[Optional[dict[str, Any]]] = []
        for group_id in ids:
            members = await txn.get_by_index(self.source_type, self.index_name, group_id)
            if not members:
                results.append(None)
            else:
                results.append(project(self._build(group_id, members), properties))
        return results
