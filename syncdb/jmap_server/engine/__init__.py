"""
Change-log engine for SyncDB.

This module turns a record store into a state-synchronizing data source:
- Mutation engine: modseq assignment on write, tombstoning, set batches
- Change engine: since-state diffs with resumable pagination
- Query engine: id lookups, whole-collection reads, projection
- Fetch strategies: direct lookup and grouped aggregates
- SyncEngine: the per-account facade used by the dispatcher

Invariants:
    - Modseqs per type are strictly increasing and never reused
    - Engine operations fail by raising MethodError subclasses

How to change safely:
    - Keep wire-format names (camelCase) inside the to_dict() methods
    - New fetch strategies implement the FetchStrategy protocol
"""

from .changes import (
    MAX_CHANGES_LIMIT,
    ChangesResult,
    clamp_max_changes,
    compute_changes,
    format_state,
    parse_state,
)
from .engine import SyncEngine
from .errors import (
    CannotCalculateChangesError,
    IdRequiredError,
    InvalidArgumentsError,
    InvalidPropertiesError,
    MethodError,
    RequestTooLargeError,
    UnknownAccountError,
    UnknownMethodError,
)
from .fetch import DirectFetch, FetchStrategy, GroupByIndexFetch, project
from .mutation import (
    MutationResult,
    SetResult,
    add_records,
    destroy_records,
    set_records,
    validate_batch,
    validate_ids,
)
from .query import MAX_OBJECTS_IN_GET, GetResult, fetch_objects

__all__ = [
    # Facade
    "SyncEngine",
    # Mutation
    "MutationResult",
    "SetResult",
    "add_records",
    "destroy_records",
    "set_records",
    "validate_batch",
    "validate_ids",
    # Changes
    "MAX_CHANGES_LIMIT",
    "ChangesResult",
    "compute_changes",
    "clamp_max_changes",
    "parse_state",
    "format_state",
    # Query
    "MAX_OBJECTS_IN_GET",
    "GetResult",
    "fetch_objects",
    # Fetch strategies
    "FetchStrategy",
    "DirectFetch",
    "GroupByIndexFetch",
    "project",
    # Errors
    "MethodError",
    "InvalidArgumentsError",
    "CannotCalculateChangesError",
    "RequestTooLargeError",
    "IdRequiredError",
    "InvalidPropertiesError",
    "UnknownAccountError",
    "UnknownMethodError",
]
