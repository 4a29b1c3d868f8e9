"""
Schema module for SyncDB.

This module provides the explicit type system for stored records:
- Type definitions (RecordTypeDef, AggregateTypeDef, FieldDef, IndexDef)
- Type registry with freeze + fingerprint
- The stock mail schema (Email, Mailbox, Thread)

Invariants:
    - Every record type is declared before the store is provisioned
    - A served registry is frozen

How to change safely:
    - Add new types with new names
    - Add fields rather than changing the kind of existing ones
"""

from .mail import Email, Mailbox, Thread, build_mail_registry
from .registry import (
    DuplicateRegistrationError,
    RegistryFrozenError,
    SchemaValidationError,
    TypeRegistry,
)
from .types import (
    AggregateTypeDef,
    FieldDef,
    FieldKind,
    IndexDef,
    MergeRule,
    RecordTypeDef,
    field,
)

__all__ = [
    # Types
    "FieldDef",
    "FieldKind",
    "IndexDef",
    "MergeRule",
    "RecordTypeDef",
    "AggregateTypeDef",
    "field",
    # Registry
    "TypeRegistry",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
    "SchemaValidationError",
    # Mail schema
    "Email",
    "Mailbox",
    "Thread",
    "build_mail_registry",
]
