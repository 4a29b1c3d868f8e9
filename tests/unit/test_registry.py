"""
Unit tests for the type registry.

Tests cover:
- Type registration
- Registry freezing
- Fingerprint generation
- Duplicate detection
- Aggregate validation
"""

import pytest

from syncdb.jmap_server.schema.mail import build_mail_registry
from syncdb.jmap_server.schema.registry import (
    DuplicateRegistrationError,
    RegistryFrozenError,
    SchemaValidationError,
    TypeRegistry,
)
from syncdb.jmap_server.schema.types import (
    AggregateTypeDef,
    IndexDef,
    RecordTypeDef,
    field,
)

Note = RecordTypeDef(
    name="Note",
    fields=(field("folderId", "str"), field("createdAt", "timestamp")),
    indexes=(IndexDef("byFolder", "folderId"),),
)

Folder = AggregateTypeDef(
    name="Folder",
    source_type="Note",
    index_name="byFolder",
    members_property="noteIds",
    sort_field="createdAt",
)


class TestTypeRegistry:
    """Tests for TypeRegistry."""

    def test_register_record_type(self):
        """Can register a record type."""
        registry = TypeRegistry()
        registry.register_record_type(Note)

        assert registry.get_record_type("Note") == Note
        assert registry.get_type("Note") == Note
        assert registry.get_aggregate_type("Note") is None

    def test_register_aggregate_type(self):
        """Can register an aggregate type."""
        registry = TypeRegistry()
        registry.register_record_type(Note)
        registry.register_aggregate_type(Folder)

        assert registry.get_aggregate_type("Folder") == Folder
        assert registry.get_type("Folder") == Folder

    def test_duplicate_name_raises(self):
        """Names are unique across record and aggregate types."""
        registry = TypeRegistry()
        registry.register_record_type(Note)

        with pytest.raises(DuplicateRegistrationError, match="'Note' already registered"):
            registry.register_record_type(RecordTypeDef(name="Note"))

        clash = AggregateTypeDef(
            name="Note",
            source_type="Note",
            index_name="byFolder",
            members_property="noteIds",
            sort_field="createdAt",
        )
        with pytest.raises(DuplicateRegistrationError):
            registry.register_aggregate_type(clash)

    def test_freeze_registry(self):
        """Can freeze registry."""
        registry = TypeRegistry()
        registry.register_record_type(Note)

        fingerprint = registry.freeze()

        assert registry.frozen is True
        assert fingerprint.startswith("sha256:")
        assert registry.fingerprint == fingerprint

    def test_freeze_twice_raises(self):
        """Freezing twice raises error."""
        registry = TypeRegistry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.freeze()

    def test_register_after_freeze_raises(self):
        """Registering after freeze raises error."""
        registry = TypeRegistry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.register_record_type(Note)

    def test_fingerprint_deterministic(self):
        """Same schema produces same fingerprint regardless of order."""
        other = RecordTypeDef(name="Other", fields=(field("x", "int"),))
        registry1 = TypeRegistry()
        registry2 = TypeRegistry()

        registry1.register_record_type(Note)
        registry1.register_record_type(other)
        registry2.register_record_type(other)
        registry2.register_record_type(Note)

        assert registry1.freeze() == registry2.freeze()

    def test_fingerprint_changes_with_schema(self):
        """Different schema produces different fingerprint."""
        registry1 = TypeRegistry()
        registry2 = TypeRegistry()

        registry1.register_record_type(RecordTypeDef(name="Note", fields=(field("a", "str"),)))
        registry2.register_record_type(
            RecordTypeDef(name="Note", fields=(field("a", "str"), field("b", "str")))
        )

        assert registry1.freeze() != registry2.freeze()

    def test_validate_all_unknown_source(self):
        """Aggregate with unregistered source fails validation."""
        registry = TypeRegistry()
        registry.register_aggregate_type(Folder)

        errors = registry.validate_all()
        assert len(errors) == 1
        assert "unknown source type 'Note'" in errors[0]

    def test_validate_all_unknown_index_and_sort_field(self):
        """Aggregate must name an existing index and sort field."""
        registry = TypeRegistry()
        registry.register_record_type(Note)
        registry.register_aggregate_type(
            AggregateTypeDef(
                name="Bad",
                source_type="Note",
                index_name="byNothing",
                members_property="noteIds",
                sort_field="missing",
            )
        )

        errors = registry.validate_all()
        assert any("unknown index 'byNothing'" in e for e in errors)
        assert any("unknown field 'missing'" in e for e in errors)

    def test_freeze_invalid_registry_raises(self):
        """freeze() refuses an inconsistent registry."""
        registry = TypeRegistry()
        registry.register_aggregate_type(Folder)

        with pytest.raises(SchemaValidationError) as exc_info:
            registry.freeze()
        assert exc_info.value.errors
        assert registry.frozen is False

    def test_iterate_types(self):
        """Can iterate over record and aggregate types."""
        registry = build_mail_registry()

        assert sorted(t.name for t in registry.record_types()) == ["Email", "Mailbox"]
        assert [t.name for t in registry.aggregate_types()] == ["Thread"]

    def test_mail_registry_is_frozen(self):
        """The stock registry is frozen and fingerprinted."""
        registry = build_mail_registry()
        assert registry.frozen
        assert registry.fingerprint == build_mail_registry().fingerprint

    def test_to_dict(self):
        """Can serialize registry to dict."""
        d = build_mail_registry().to_dict()

        assert [t["name"] for t in d["record_types"]] == ["Email", "Mailbox"]
        assert d["aggregate_types"][0]["members_property"] == "emailIds"
