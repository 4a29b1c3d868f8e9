"""
Query engine: fetch records by id, or a whole collection, with projection.

Invariants:
    - Oversized id lists are rejected before any storage access
    - A whole-collection fetch checks the size first and never
      materializes an oversized result
    - ``list`` keeps request order; absent ids go to ``notFound``
    - ``state`` is the source type's highest modseq in the same snapshot
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from ..store.base import RecordStore, TransactionMode
from .changes import format_state
from .errors import RequestTooLargeError
from .fetch import FetchStrategy

logger = logging.getLogger(__name__)

# Default cap on objects returned by one get call
MAX_OBJECTS_IN_GET = 1000


@dataclass
class GetResult:
    """Objects found for a get call."""

    account_id: str
    state: str
    found: list[dict[str, Any]] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "state": self.state,
            "list": self.found,
            "notFound": self.not_found,
        }


async def fetch_objects(
    store: RecordStore,
    strategy: FetchStrategy,
    ids: Optional[Sequence[str]],
    properties: Optional[Sequence[str]],
    max_objects: int = MAX_OBJECTS_IN_GET,
) -> GetResult:
    """Resolve ``ids`` (or everything) through ``strategy``.

    Args:
        store: Record store of the account
        strategy: How ids resolve to objects
        ids: Ids to fetch, or None for the whole collection
        properties: Properties to keep, or None for whole objects
        max_objects: Cap on the number of objects one call may return

    Returns:
        GetResult

    Raises:
        RequestTooLargeError: If the request or the collection exceeds the cap
    """
    if ids is not None and len(ids) > max_objects:
        raise RequestTooLargeError(f"{len(ids)} ids requested, limit is {max_objects}")

    type_name = strategy.source_type
    async with store.transaction([type_name], TransactionMode.READONLY) as txn:
        watermark = await txn.get_watermark(type_name)
        result = GetResult(
            account_id=store.account_id,
            state=format_state(watermark.highest_mod_seq),
        )

        if ids is None:
            size = await strategy.count(txn)
            if size > max_objects:
                raise RequestTooLargeError(
                    f"Collection holds {size} objects, limit is {max_objects}"
                )
            result.found = await strategy.fetch_all(txn, properties)
        else:
            resolved = await strategy.fetch(txn, ids, properties)
            for requested_id, value in zip(ids, resolved):
                if value is None:
                    result.not_found.append(requested_id)
                else:
                    result.found.append(value)

    logger.debug(
        "Fetched objects",
        extra={
            "account_id": store.account_id,
            "type_name": type_name,
            "found": len(result.found),
            "not_found": len(result.not_found),
        },
    )
    return result
