"""
Stock mail schema: Email, Mailbox and the Thread aggregate.

A Thread is not stored. Thread/get groups live Email records by their
threadId through the byThreadId index and orders them by receivedAt.
"""

from __future__ import annotations

from .registry import TypeRegistry
from .types import AggregateTypeDef, IndexDef, RecordTypeDef, field

Email = RecordTypeDef(
    name="Email",
    fields=(
        field("threadId", "str"),
        field("mailboxIds", "id_set"),
        field("keywords", "id_set"),
        field("subject", "str"),
        field("from", "json"),
        field("receivedAt", "timestamp"),
        field("preview", "str"),
    ),
    indexes=(IndexDef("byThreadId", "threadId"),),
)

Mailbox = RecordTypeDef(
    name="Mailbox",
    fields=(
        field("name", "str"),
        field("parentId", "str"),
        field("role", "str"),
        field("sortOrder", "int"),
    ),
)

Thread = AggregateTypeDef(
    name="Thread",
    source_type="Email",
    index_name="byThreadId",
    members_property="emailIds",
    sort_field="receivedAt",
)


def build_mail_registry() -> TypeRegistry:
    """Return a frozen registry holding the stock mail types."""
    registry = TypeRegistry()
    registry.register_record_type(Email)
    registry.register_record_type(Mailbox)
    registry.register_aggregate_type(Thread)
    registry.freeze()
    return registry
