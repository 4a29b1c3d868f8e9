"""
Core type definitions for the SyncDB record schema.

Every record type the server stores is described by an explicit schema
instead of free-form dictionaries:
- FieldDef: one named field, its value kind and how updates merge into it
- IndexDef: a named secondary index over one field
- RecordTypeDef: a stored, modseq-tracked record type
- AggregateTypeDef: a derived type synthesized from a record type by
  grouping on one of its indexes (e.g. Thread over Email)

Invariants:
    - "id" is implicit on every record type and never declared as a field
    - Field and index names are identifiers (letters, digits, underscore)
    - Every index references a declared field of the same type
    - A null field value is always accepted and means "absent"

How to change safely:
    - Add fields freely; stored records without them project as absent
    - Changing a field's kind can reject records already stored
    - Switching a field's merge rule changes what later updates produce

Example:
    >>> from syncdb.jmap_server.schema.types import RecordTypeDef, field
    >>> Mailbox = RecordTypeDef(
    ...     name="Mailbox",
    ...     fields=(
    ...         field("name", "str"),
    ...         field("sortOrder", "int"),
    ...     ),
    ... )
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TYPE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FieldKind(Enum):
    """Supported field value kinds."""

    STRING = "str"
    INTEGER = "int"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # ISO-8601 string, e.g. "2020-01-02T00:00:00Z"
    JSON = "json"  # Arbitrary JSON value
    LIST_STRING = "list_str"
    ID_SET = "id_set"  # {"<id>": true, ...}

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


class MergeRule(Enum):
    """How an incoming value combines with the stored one."""

    REPLACE = "replace"
    PATCH = "patch"  # shallow merge of mapping values, null entries remove keys


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; values without an offset are taken as UTC.

    Returns None for anything that is not a timestamp string.
    """
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_timestamp(value: Any) -> bool:
    return parse_timestamp(value) is not None


_VALIDATORS = {
    FieldKind.STRING: lambda v: isinstance(v, str),
    FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
    FieldKind.TIMESTAMP: _is_timestamp,
    FieldKind.JSON: lambda _: True,
    FieldKind.LIST_STRING: lambda v: isinstance(v, list) and all(isinstance(i, str) for i in v),
    FieldKind.ID_SET: lambda v: isinstance(v, dict)
    and all(isinstance(k, str) and isinstance(b, bool) for k, b in v.items()),
}


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field within a record type.

    Attributes:
        name: Field name as it appears on the wire
        kind: The value kind of the field
        merge: How updates combine with the stored value
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    merge: MergeRule = MergeRule.REPLACE
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name or not IDENTIFIER_RE.match(self.name):
            raise ValueError(f"Invalid field name '{self.name}'")
        if self.name == "id":
            raise ValueError("'id' is implicit and cannot be declared as a field")
        if self.merge == MergeRule.PATCH and self.kind not in (FieldKind.JSON, FieldKind.ID_SET):
            raise ValueError(f"Field '{self.name}': patch merge needs a mapping kind")

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            return True, None
        if not _VALIDATORS[self.kind](value):
            return False, f"Field '{self.name}' has invalid value for kind {self.kind.value}"
        return True, None

    def merge_value(self, previous: Any, incoming: Any) -> Any:
        """Combine a stored value with an incoming one."""
        if self.merge == MergeRule.REPLACE or incoming is None:
            return incoming
        if not isinstance(previous, dict) or not isinstance(incoming, dict):
            return incoming
        merged = dict(previous)
        for key, value in incoming.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return merged

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.merge != MergeRule.REPLACE:
            result["merge"] = self.merge.value
        if self.description:
            result["description"] = self.description
        return result


def field(
    name: str,
    kind: str | FieldKind,
    *,
    merge: str | MergeRule = MergeRule.REPLACE,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Example:
        >>> subject = field("subject", "str")
        >>> mailbox_ids = field("mailboxIds", "id_set", merge="patch")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    if isinstance(merge, str):
        merge = MergeRule(merge)
    return FieldDef(name=name, kind=kind, merge=merge, description=description)


@dataclass(frozen=True)
class IndexDef:
    """A named secondary index over one field of a record type."""

    name: str
    field_name: str

    def __post_init__(self) -> None:
        if not IDENTIFIER_RE.match(self.name):
            raise ValueError(f"Invalid index name '{self.name}'")

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "field": self.field_name}


@dataclass(frozen=True)
class RecordTypeDef:
    """Definition of a stored record type.

    Records of this type carry an implicit "id" plus the declared fields,
    and the store tracks created/updated modseqs and a tombstone flag for
    each one.

    Attributes:
        name: Type name, also the prefix of its method names ("Email/get")
        fields: Tuple of field definitions
        indexes: Named secondary indexes for aggregate fetches
        description: Human-readable description

    Example:
        >>> Email = RecordTypeDef(
        ...     name="Email",
        ...     fields=(field("threadId", "str"), field("subject", "str")),
        ...     indexes=(IndexDef("byThreadId", "threadId"),),
        ... )
    """

    name: str
    fields: tuple[FieldDef, ...] = dataclass_field(default_factory=tuple)
    indexes: tuple[IndexDef, ...] = dataclass_field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        """Validate record type definition."""
        if not self.name or not TYPE_NAME_RE.match(self.name):
            raise ValueError(f"Invalid record type name '{self.name}'")

        field_names = [f.name for f in self.fields]
        if len(field_names) != len(set(field_names)):
            raise ValueError(f"Duplicate field name in record type '{self.name}'")

        index_names = [i.name for i in self.indexes]
        if len(index_names) != len(set(index_names)):
            raise ValueError(f"Duplicate index name in record type '{self.name}'")

        for index in self.indexes:
            if index.field_name not in field_names:
                raise ValueError(
                    f"Index '{index.name}' in record type '{self.name}' "
                    f"references unknown field '{index.field_name}'"
                )

    def get_field(self, name: str) -> FieldDef | None:
        """Get a field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_index(self, name: str) -> IndexDef | None:
        """Get an index by name."""
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def has_property(self, name: str) -> bool:
        return name == "id" or self.get_field(name) is not None

    def validate_fields(self, data: dict[str, Any]) -> list[str]:
        """Validate a partial record's fields, ignoring "id".

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for name, value in data.items():
            if name == "id":
                continue
            field_def = self.get_field(name)
            if field_def is None:
                errors.append(f"Unknown field '{name}' for type '{self.name}'")
                continue
            ok, error = field_def.validate_value(value)
            if not ok:
                errors.append(error)
        return errors

    def merge(self, previous: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        """Merge incoming fields over stored ones, field by field.

        Fields missing from ``incoming`` keep their stored value.
        """
        merged = dict(previous)
        for name, value in incoming.items():
            if name == "id":
                continue
            field_def = self.get_field(name)
            if field_def is None:
                merged[name] = value
            else:
                merged[name] = field_def.merge_value(previous.get(name), value)
        return merged

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
        }
        if self.indexes:
            result["indexes"] = [i.to_dict() for i in self.indexes]
        if self.description:
            result["description"] = self.description
        return result


@dataclass(frozen=True)
class AggregateTypeDef:
    """A read-only type synthesized by grouping a record type.

    An aggregate with id X is the ordered list of source records whose
    ``index_name`` value equals X, exposed as ``{"id": X, members_property: [...]}``.

    Attributes:
        name: Aggregate type name ("Thread")
        source_type: Record type the members come from ("Email")
        index_name: Source index used to find members ("byThreadId")
        members_property: Property holding member ids ("emailIds")
        sort_field: Source field members are ordered by, ascending ("receivedAt")
    """

    name: str
    source_type: str
    index_name: str
    members_property: str
    sort_field: str
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name or not TYPE_NAME_RE.match(self.name):
            raise ValueError(f"Invalid aggregate type name '{self.name}'")
        if not IDENTIFIER_RE.match(self.members_property) or self.members_property == "id":
            raise ValueError(f"Invalid members property '{self.members_property}'")

    def has_property(self, name: str) -> bool:
        return name in ("id", self.members_property)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "source_type": self.source_type,
            "index": self.index_name,
            "members_property": self.members_property,
            "sort_field": self.sort_field,
        }
        if self.description:
            result["description"] = self.description
        return result
