"""
Unit tests for the schema registry.

Tests cover:
- Entity type and link registration
- Consistency checks (unknown types, label collisions, duplicate attributes)
- Freezing and fingerprints
- Label resolution
- Write-time attribute validation and uniqueness
"""

import pytest

from livegraph.errors import SchemaError, UnknownFieldError, ValidationError
from livegraph.schema import EntityTypeDef, LinkDef, LinkSide, Schema, SchemaRegistry, field
from livegraph.store.graph import Entity, GraphSnapshot


class TestSchemaRegistry:
    """Tests for SchemaRegistry registration and freezing."""

    def test_from_schema_freezes(self, schema):
        """from_schema registers everything and freezes the registry."""
        registry = SchemaRegistry.from_schema(schema)

        assert registry.frozen is True
        assert registry.fingerprint.startswith("sha256:")
        assert registry.get_entity_type("technicians").get_field("phone") is not None
        assert registry.get_link("userProfile") is not None

    def test_fingerprint_is_stable(self, schema):
        """The same schema always produces the same fingerprint."""
        first = SchemaRegistry.from_schema(schema)
        second = SchemaRegistry.from_schema(schema)

        assert first.fingerprint == second.fingerprint

    def test_fingerprint_changes_with_schema(self, schema):
        """Adding an attribute changes the fingerprint."""
        original = SchemaRegistry.from_schema(schema)
        extra = EntityTypeDef(name="jobs", fields=(field("title", "string"),))
        changed = SchemaRegistry.from_schema(
            Schema(entities=schema.entities + (extra,), links=schema.links)
        )

        assert original.fingerprint != changed.fingerprint

    def test_register_after_freeze_raises(self, registry):
        """A frozen registry refuses new definitions."""
        with pytest.raises(SchemaError, match="frozen"):
            registry.register_entity_type(EntityTypeDef(name="jobs"))

    def test_duplicate_entity_type_raises(self):
        """Entity type names are unique."""
        registry = SchemaRegistry()
        registry.register_entity_type(EntityTypeDef(name="jobs"))

        with pytest.raises(SchemaError, match="already registered"):
            registry.register_entity_type(EntityTypeDef(name="jobs"))

    def test_duplicate_attribute_raises(self):
        """Attribute names are unique within an entity type."""
        registry = SchemaRegistry()
        jobs = EntityTypeDef(
            name="jobs",
            fields=(field("title", "string"), field("title", "number")),
        )

        with pytest.raises(SchemaError) as exc_info:
            registry.register_entity_type(jobs)
        assert exc_info.value.errors == ["duplicate attribute 'title'"]

    def test_link_to_unknown_type_is_inconsistent(self):
        """A link naming an undeclared entity type fails registration."""
        schema = Schema(
            entities=(EntityTypeDef(name="jobs"),),
            links=(
                LinkDef(
                    name="jobOwner",
                    forward=LinkSide(on="jobs", has="one", label="owner"),
                    reverse=LinkSide(on="$users", has="many", label="jobs"),
                ),
            ),
        )

        with pytest.raises(SchemaError) as exc_info:
            SchemaRegistry.from_schema(schema)
        assert any("unknown entity type '$users'" in e for e in exc_info.value.errors)

    def test_label_colliding_with_attribute_is_inconsistent(self):
        """A link label may not shadow an attribute of the same type."""
        registry = SchemaRegistry()
        registry.register_entity_type(EntityTypeDef(name="jobs", fields=(field("owner", "string"),)))
        registry.register_entity_type(EntityTypeDef(name="people"))
        registry.register_link(
            LinkDef(
                name="jobOwner",
                forward=LinkSide(on="jobs", has="one", label="owner"),
                reverse=LinkSide(on="people", has="many", label="jobs"),
            )
        )

        errors = registry.validate_all()

        assert len(errors) == 1
        assert "collides" in errors[0]

    def test_duplicate_label_raises(self):
        """Two links cannot use the same label on one entity type."""
        registry = SchemaRegistry()
        registry.register_entity_type(EntityTypeDef(name="jobs"))
        registry.register_entity_type(EntityTypeDef(name="people"))
        registry.register_link(
            LinkDef(
                name="jobOwner",
                forward=LinkSide(on="jobs", has="one", label="owner"),
                reverse=LinkSide(on="people", has="many", label="owned"),
            )
        )

        with pytest.raises(SchemaError, match="Label 'owner'"):
            registry.register_link(
                LinkDef(
                    name="jobOwner2",
                    forward=LinkSide(on="jobs", has="one", label="owner"),
                    reverse=LinkSide(on="people", has="many", label="owned2"),
                )
            )

    def test_serialization_roundtrip(self, registry):
        """A registry rebuilt from its JSON form has the same fingerprint."""
        restored = SchemaRegistry.from_json(registry.to_json())

        assert restored.fingerprint == registry.fingerprint


class TestLabelResolution:
    """Tests for label lookups."""

    def test_resolve_forward_label(self, registry):
        """A forward label leads to the reverse side's type."""
        end = registry.resolve_label("companyProfiles", "$user")

        assert end.link.name == "userProfile"
        assert end.forward is True
        assert end.target_type == "$users"
        assert end.single is True

    def test_resolve_reverse_label(self, registry):
        """A reverse label leads back to the forward side's type."""
        end = registry.resolve_label("technicians", "company")

        assert end.forward is False
        assert end.target_type == "companyProfiles"

    def test_many_side_is_not_single(self, registry):
        """The many side of a link can hold several edges."""
        end = registry.resolve_label("companyProfiles", "technicians")

        assert end.single is False

    def test_unknown_label(self, registry):
        """Unknown labels resolve to None."""
        assert registry.resolve_label("technicians", "profile") is None

    def test_labels_for(self, registry):
        """labels_for lists every label starting from a type."""
        labels = sorted(end.side.label for end in registry.labels_for("companyProfiles"))

        assert labels == ["$user", "technicians"]


class TestAttributeValidation:
    """Tests for write-time validation."""

    def test_valid_create(self, registry):
        """Valid attributes pass."""
        registry.validate("technicians", {"firstName": "Amy", "phone": "5551234567"})

    def test_missing_required(self, registry):
        """Required attributes must be present on create."""
        with pytest.raises(ValidationError) as exc_info:
            registry.validate("technicians", {"phone": "5551234567"})
        assert exc_info.value.field_name == "firstName"

    def test_partial_skips_required(self, registry):
        """Updates do not need required attributes."""
        registry.validate("technicians", {"phone": "5551234567"}, partial=True)

    def test_wrong_kind(self, registry):
        """Values must match the declared kind."""
        with pytest.raises(ValidationError, match="must be number"):
            registry.validate("technicians", {"firstName": "Amy", "rating": "high"})

    def test_boolean_is_not_a_number(self, registry):
        """Booleans are rejected for number attributes."""
        with pytest.raises(ValidationError):
            registry.validate("companyProfiles", {"companyName": "Acme", "seats": True})

    def test_any_accepts_everything(self, registry):
        """"any" attributes take arbitrary values."""
        registry.validate("technicians", {"firstName": "Amy", "createdAt": {"ts": 1}})

    def test_unknown_attribute_suggests(self, registry):
        """Unknown attributes raise with suggestions."""
        with pytest.raises(UnknownFieldError) as exc_info:
            registry.validate("technicians", {"firstName": "Amy", "phon": "1"})
        assert "phone" in exc_info.value.suggestions

    def test_unknown_entity_type(self, registry):
        """Writing an undeclared entity type fails."""
        with pytest.raises(ValidationError, match="Unknown entity type 'jobs'"):
            registry.validate("jobs", {})

    def test_unique_conflict(self, registry):
        """A unique value held by another entity is rejected."""
        builder = GraphSnapshot.empty(registry).builder()
        builder.put_entity(Entity("u1", "$users", {"email": "amy@acme.com"}))
        snapshot = builder.build()

        with pytest.raises(ValidationError, match="already has value"):
            registry.validate("$users", {"email": "amy@acme.com"}, snapshot=snapshot, entity_id="u2")

    def test_unique_same_entity_allowed(self, registry):
        """An entity may keep its own unique value."""
        builder = GraphSnapshot.empty(registry).builder()
        builder.put_entity(Entity("u1", "$users", {"email": "amy@acme.com"}))
        snapshot = builder.build()

        registry.validate(
            "$users", {"email": "amy@acme.com"}, partial=True, snapshot=snapshot, entity_id="u1"
        )
