"""
Change engine: the diff between a since-state and the present.

A state token is the decimal string of a modseq. Given one, the engine
walks the type's records in ascending updated-modseq order, starting just
after the token, and classifies each record it visits:

    tombstone, created after since  -> nothing (never seen by the client)
    tombstone, created at/before    -> destroyed
    live, created after since       -> created
    live, created at/before         -> updated

Invariants:
    - since == highest modseq returns an empty diff with the same state
    - A truncated scan returns the last visited modseq as newState, so the
      follow-up call resumes with no gaps and no duplicates
    - A complete scan returns the watermark read when the snapshot opened

How to change safely:
    - Keep the whole scan inside one read transaction
    - Never compute newState from the wall clock or a second read
"""

from __future__ import annotations

import logging
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from ..store.base import RecordStore, TransactionMode
from .errors import CannotCalculateChangesError, InvalidArgumentsError

logger = logging.getLogger(__name__)

# Upper bound for maxChanges; missing or out-of-range values reset to it
MAX_CHANGES_LIMIT = 1024

_STATE_RE = re.compile(r"[0-9]+")


def parse_state(state: Any) -> int:
    """Parse a state token into a modseq.

    Raises:
        InvalidArgumentsError: If the token is not a non-negative decimal string
    """
    if not isinstance(state, str) or not _STATE_RE.fullmatch(state):
        raise InvalidArgumentsError(f"Malformed state token: {state!r}")
    return int(state)


def format_state(mod_seq: int) -> str:
    return str(mod_seq)


def clamp_max_changes(value: Any, limit: int = MAX_CHANGES_LIMIT) -> int:
    """Return ``value`` if it is an integer in [1, limit], else ``limit``."""
    if isinstance(value, bool) or not isinstance(value, int):
        return limit
    if not 1 <= value <= limit:
        return limit
    return value


@dataclass
class ChangesResult:
    """Ids that changed between old_state and new_state."""

    account_id: str
    old_state: str
    new_state: str
    has_more_changes: bool = False
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "oldState": self.old_state,
            "newState": self.new_state,
            "hasMoreChanges": self.has_more_changes,
            "created": self.created,
            "updated": self.updated,
            "destroyed": self.destroyed,
        }


async def compute_changes(
    store: RecordStore,
    type_name: str,
    since_state: Any,
    max_changes: Any = None,
    max_changes_limit: int = MAX_CHANGES_LIMIT,
) -> ChangesResult:
    """Compute the diff of ``type_name`` since ``since_state``.

    Args:
        store: Record store of the account
        type_name: Record type to diff
        since_state: State token previously returned to the client
        max_changes: Requested page size (clamped)
        max_changes_limit: Upper clamp for the page size

    Returns:
        ChangesResult

    Raises:
        InvalidArgumentsError: If since_state is malformed
        CannotCalculateChangesError: If since_state is below the retained
            history or above anything this type has issued
    """
    since_mod_seq = parse_state(since_state)
    limit = clamp_max_changes(max_changes, max_changes_limit)

    result = ChangesResult(
        account_id=store.account_id,
        old_state=since_state,
        new_state=since_state,
    )

    async with store.transaction([type_name], TransactionMode.READONLY) as txn:
        watermark = await txn.get_watermark(type_name)

        if since_mod_seq < watermark.lowest_mod_seq:
            raise CannotCalculateChangesError(
                f"State {since_state} is older than the retained history "
                f"(lowest {watermark.lowest_mod_seq})"
            )
        if since_mod_seq > watermark.highest_mod_seq:
            raise CannotCalculateChangesError(f"State {since_state} was never issued")
        if since_mod_seq == watermark.highest_mod_seq:
            return result

        up_to_mod_seq = since_mod_seq
        visited = 0
        async with aclosing(txn.iter_changed_since(type_name, since_mod_seq)) as changed:
            async for record in changed:
                if visited == limit:
                    result.has_more_changes = True
                    break

                is_created = record.created_mod_seq > since_mod_seq
                if record.deleted:
                    if not is_created:
                        result.destroyed.append(record.id)
                elif is_created:
                    result.created.append(record.id)
                else:
                    result.updated.append(record.id)

                up_to_mod_seq = record.updated_mod_seq
                visited += 1

        if not result.has_more_changes:
            up_to_mod_seq = watermark.highest_mod_seq

    result.new_state = format_state(up_to_mod_seq)
    logger.debug(
        "Computed changes",
        extra={
            "account_id": store.account_id,
            "type_name": type_name,
            "since": since_mod_seq,
            "up_to": up_to_mod_seq,
            "visited": visited,
            "has_more": result.has_more_changes,
        },
    )
    return result
