"""
SyncEngine: the per-account facade over the mutation, change and query
engines.

A SyncEngine is built explicitly from a store and a frozen registry and
handed to whatever serves requests. It owns argument validation for the
wire-facing operations and picks the fetch strategy for each exposed
type.

Invariants:
    - One engine serves exactly one account
    - Every exposed type has exactly one default fetch strategy
    - Engine operations raise MethodError subclasses, never return errors

How to change safely:
    - New exposed types come from the registry, not from this module
    - Keep argument checks here and storage logic in the engine modules
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from ..schema.registry import TypeRegistry
from ..schema.types import AggregateTypeDef, RecordTypeDef
from ..store.base import RecordStore
from .changes import MAX_CHANGES_LIMIT, ChangesResult, compute_changes
from .errors import InvalidArgumentsError, UnknownAccountError
from .fetch import DirectFetch, FetchStrategy, GroupByIndexFetch
from .mutation import MutationResult, SetResult, set_records
from .mutation import add_records as _add_records
from .mutation import destroy_records as _destroy_records
from .query import MAX_OBJECTS_IN_GET, GetResult, fetch_objects

logger = logging.getLogger(__name__)


def _string_list_or_none(args: dict[str, Any], name: str) -> Optional[list[str]]:
    value = args.get(name)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidArgumentsError(f"'{name}' must be a list of strings or null")
    return value


def _list_or_empty(args: dict[str, Any], name: str) -> list[Any]:
    value = args.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidArgumentsError(f"'{name}' must be a list or null")
    return value


class SyncEngine:
    """Change-log engine for one account.

    Attributes:
        account_id: Account this engine serves
        store: Record store holding the account's records
        registry: Frozen type registry
        max_objects_in_get: Cap on objects one get call may return
        max_changes: Upper clamp for maxChanges

    Example:
        >>> engine = SyncEngine("acc_1", store, build_mail_registry())
        >>> await engine.add_records("Email", [{"id": "1", "subject": "hi"}])
        >>> await engine.changes("Email", {"sinceState": "0"})
        >>> await engine.set("Email", {"destroy": ["1"]})
    """

    def __init__(
        self,
        account_id: str,
        store: RecordStore,
        registry: TypeRegistry,
        max_objects_in_get: int = MAX_OBJECTS_IN_GET,
        max_changes: int = MAX_CHANGES_LIMIT,
    ) -> None:
        if not registry.frozen:
            raise ValueError("SyncEngine requires a frozen registry")
        if max_objects_in_get < 1:
            raise ValueError("max_objects_in_get must be positive")
        if not 1 <= max_changes <= MAX_CHANGES_LIMIT:
            raise ValueError(f"max_changes must be in [1, {MAX_CHANGES_LIMIT}]")

        self.account_id = account_id
        self.store = store
        self.registry = registry
        self.max_objects_in_get = max_objects_in_get
        self.max_changes = max_changes

        self._strategies: dict[str, FetchStrategy] = {}
        for record_type in registry.record_types():
            self._strategies[record_type.name] = DirectFetch(record_type.name)
        for aggregate in registry.aggregate_types():
            source = registry.get_record_type(aggregate.source_type)
            self._strategies[aggregate.name] = GroupByIndexFetch.from_aggregate(aggregate, source)

    def _record_type(self, type_name: str) -> RecordTypeDef:
        record_type = self.registry.get_record_type(type_name)
        if record_type is None:
            raise InvalidArgumentsError(f"Unknown record type: {type_name}")
        return record_type

    def _exposed_type(self, type_name: str) -> Union[RecordTypeDef, AggregateTypeDef]:
        type_def = self.registry.get_type(type_name)
        if type_def is None:
            raise InvalidArgumentsError(f"Unknown type: {type_name}")
        return type_def

    def _check_account(self, args: dict[str, Any]) -> None:
        account_id = args.get("accountId")
        if account_id is not None and account_id != self.account_id:
            raise UnknownAccountError(f"Account not found: {account_id}")

    def strategy_for(self, type_name: str) -> FetchStrategy:
        """Default fetch strategy of an exposed type."""
        self._exposed_type(type_name)
        return self._strategies[type_name]

    async def add_records(self, type_name: str, records: list[dict[str, Any]]) -> MutationResult:
        """Merge partial records into ``type_name`` (see mutation.add_records)."""
        return await _add_records(self.store, self._record_type(type_name), records)

    async def destroy_records(self, type_name: str, ids: list[str]) -> MutationResult:
        """Tombstone ``ids`` in ``type_name`` (see mutation.destroy_records)."""
        return await _destroy_records(self.store, self._record_type(type_name), ids)

    async def set(self, type_name: str, args: dict[str, Any]) -> SetResult:
        """Write and tombstone records of ``type_name`` in one batch.

        ``create`` and ``update`` are lists of partial records, each with an
        id; both merge by id, creates first. ``destroy`` is a list of ids
        tombstoned after the writes. The whole call is one transaction.

        Raises:
            InvalidArgumentsError: Unknown type, or a list argument of the wrong shape
            UnknownAccountError: accountId names another account
            IdRequiredError: A record or destroy id has no id (nothing is written)
            InvalidPropertiesError: A field violates the schema (nothing is written)
        """
        record_type = self._record_type(type_name)
        self._check_account(args)
        records = _list_or_empty(args, "create") + _list_or_empty(args, "update")
        destroy_ids = _list_or_empty(args, "destroy")

        result = await set_records(self.store, record_type, records, destroy_ids)
        return SetResult.from_mutation(self.account_id, result)

    async def changes(self, type_name: str, args: dict[str, Any]) -> ChangesResult:
        """Diff of ``type_name`` since ``args["sinceState"]``.

        Raises:
            InvalidArgumentsError: Unknown type, missing or malformed sinceState
            UnknownAccountError: accountId names another account
            CannotCalculateChangesError: sinceState outside the watermark
        """
        self._record_type(type_name)
        self._check_account(args)
        if "sinceState" not in args:
            raise InvalidArgumentsError("'sinceState' is required")

        return await compute_changes(
            self.store,
            type_name,
            args["sinceState"],
            max_changes=args.get("maxChanges"),
            max_changes_limit=self.max_changes,
        )

    async def get(
        self,
        type_name: str,
        args: dict[str, Any],
        strategy: Optional[FetchStrategy] = None,
    ) -> GetResult:
        """Fetch objects of ``type_name`` by id, or the whole collection.

        Args:
            type_name: Exposed type (record or aggregate)
            args: ``{ids?, properties?, accountId?}``
            strategy: Overrides the type's default fetch strategy

        Raises:
            InvalidArgumentsError: Unknown type, bad ids/properties
            UnknownAccountError: accountId names another account
            RequestTooLargeError: Too many ids, or too large a collection
        """
        type_def = self._exposed_type(type_name)
        self._check_account(args)
        ids = _string_list_or_none(args, "ids")
        properties = _string_list_or_none(args, "properties")

        if properties is not None:
            unknown = sorted({p for p in properties if not type_def.has_property(p)})
            if unknown:
                raise InvalidArgumentsError(
                    f"Unknown properties for {type_name}: {', '.join(unknown)}"
                )

        return await fetch_objects(
            self.store,
            strategy or self._strategies[type_name],
            ids,
            properties,
            max_objects=self.max_objects_in_get,
        )
