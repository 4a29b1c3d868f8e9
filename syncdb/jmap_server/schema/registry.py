"""
Type registry for SyncDB.

The TypeRegistry is the single authority for which record types and
aggregate types a server exposes. It provides:
- Registration of record and aggregate types
- Lookup by name
- Schema fingerprinting
- Freeze mechanism; the dispatcher derives its method table from a
  frozen registry

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new types can be registered
    - Type names are unique across record and aggregate types
    - A frozen registry has passed validate_all()

How to change safely:
    - Register every type before calling freeze()
    - Build one registry per server; there is no global instance

Example:
    >>> registry = TypeRegistry()
    >>> registry.register_record_type(Email)
    >>> registry.register_aggregate_type(Thread)
    >>> registry.freeze()
    'sha256:...'
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Iterator, Optional, Union

from .types import AggregateTypeDef, RecordTypeDef

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a type name twice."""
    pass


class SchemaValidationError(Exception):
    """Raised when freezing a registry whose types are inconsistent."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class TypeRegistry:
    """Registry of record and aggregate type definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._record_types: dict[str, RecordTypeDef] = {}
        self._aggregate_types: dict[str, AggregateTypeDef] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def _check_new_name(self, name: str) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register type '{name}': registry is frozen")
        if name in self._record_types or name in self._aggregate_types:
            raise DuplicateRegistrationError(f"Type name '{name}' already registered")

    def register_record_type(self, record_type: RecordTypeDef) -> None:
        """Register a record type definition.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            self._check_new_name(record_type.name)
            self._record_types[record_type.name] = record_type
            logger.debug(f"Registered record type: {record_type.name}")

    def register_aggregate_type(self, aggregate_type: AggregateTypeDef) -> None:
        """Register an aggregate type definition.

        The source type may be registered later; freeze() checks it.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            self._check_new_name(aggregate_type.name)
            if aggregate_type.source_type not in self._record_types:
                logger.warning(
                    f"Aggregate type '{aggregate_type.name}' references "
                    f"unregistered source type '{aggregate_type.source_type}'"
                )
            self._aggregate_types[aggregate_type.name] = aggregate_type
            logger.debug(f"Registered aggregate type: {aggregate_type.name}")

    def get_record_type(self, name: str) -> Optional[RecordTypeDef]:
        return self._record_types.get(name)

    def get_aggregate_type(self, name: str) -> Optional[AggregateTypeDef]:
        return self._aggregate_types.get(name)

    def get_type(self, name: str) -> Optional[Union[RecordTypeDef, AggregateTypeDef]]:
        """Get a record or aggregate type by name."""
        return self._record_types.get(name) or self._aggregate_types.get(name)

    def record_types(self) -> Iterator[RecordTypeDef]:
        """Iterate over all registered record types."""
        yield from self._record_types.values()

    def aggregate_types(self) -> Iterator[AggregateTypeDef]:
        """Iterate over all registered aggregate types."""
        yield from self._aggregate_types.values()

    def validate_all(self) -> list[str]:
        """Validate aggregate types against their sources.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for aggregate in self._aggregate_types.values():
            source = self._record_types.get(aggregate.source_type)
            if source is None:
                errors.append(
                    f"Aggregate '{aggregate.name}' references unknown "
                    f"source type '{aggregate.source_type}'"
                )
                continue
            if source.get_index(aggregate.index_name) is None:
                errors.append(
                    f"Aggregate '{aggregate.name}' references unknown index "
                    f"'{aggregate.index_name}' on '{source.name}'"
                )
            if source.get_field(aggregate.sort_field) is None:
                errors.append(
                    f"Aggregate '{aggregate.name}' sorts by unknown field "
                    f"'{aggregate.sort_field}' on '{source.name}'"
                )
        return errors

    def freeze(self) -> str:
        """Validate, freeze the registry and compute its fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
            SchemaValidationError: If validate_all() reports errors
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            errors = self.validate_all()
            if errors:
                raise SchemaValidationError(errors)

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Type registry frozen with {len(self._record_types)} record types, "
                f"{len(self._aggregate_types)} aggregate types, fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint over the canonical JSON schema."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'))
        hash_bytes = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation, sorted by name."""
        return {
            "record_types": [
                self._record_types[name].to_dict() for name in sorted(self._record_types)
            ],
            "aggregate_types": [
                self._aggregate_types[name].to_dict() for name in sorted(self._aggregate_types)
            ],
        }
