"""
Schema Registry for livegraph.

The SchemaRegistry is the central authority for all type definitions.
It provides:
- Registration of entity types and links
- Consistency validation (links reference existing types, no duplicate
  attribute names, no label collisions)
- Label resolution for link traversal
- Attribute validation at write time, including uniqueness
- Schema fingerprinting for cache compatibility checks

Invariants:
    - Registry is mutable until frozen; register() freezes it
    - Once frozen, no new types can be registered and lookups are lock-free
    - Registries are explicit instances; there is no process-wide registry

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register(Schema(entities=(technicians,), links=()))
    >>> registry.get_entity_type("technicians")
    EntityTypeDef(name='technicians', ...)
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from difflib import get_close_matches
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Tuple

from ..errors import SchemaError, UnknownFieldError, ValidationError
from .types import EntityTypeDef, LinkDef, LinkEnd, Schema

logger = logging.getLogger(__name__)


class UniqueLookup(Protocol):
    """Read access needed to enforce uniqueness constraints."""

    def find_by_value(self, entity_type: str, attribute: str, value: Any) -> frozenset[str]:
        ...


class SchemaRegistry:
    """Central registry for entity type and link definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        self._entity_types: Dict[str, EntityTypeDef] = {}
        self._links: Dict[str, LinkDef] = {}
        # (entity_type, label) -> LinkEnd
        self._labels: Dict[Tuple[str, str], LinkEnd] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def from_schema(cls, schema: Schema) -> SchemaRegistry:
        """Create a frozen registry from a schema."""
        registry = cls()
        registry.register(schema)
        return registry

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, schema: Schema) -> str:
        """Register a complete schema and freeze the registry.

        Args:
            schema: Entity types and links to register

        Returns:
            Schema fingerprint

        Raises:
            SchemaError: If the schema is inconsistent or the registry is frozen
        """
        for entity_type in schema.entities:
            self.register_entity_type(entity_type)
        for link in schema.links:
            self.register_link(link)

        errors = self.validate_all()
        if errors:
            raise SchemaError(
                f"Schema is inconsistent: {'; '.join(errors)}",
                errors=errors,
            )
        return self.freeze()

    def register_entity_type(self, entity_type: EntityTypeDef) -> None:
        """Register an entity type definition.

        Raises:
            SchemaError: If frozen, the name is taken, or attributes repeat
        """
        with self._lock:
            if self._frozen:
                raise SchemaError(
                    f"Cannot register entity type '{entity_type.name}': registry is frozen"
                )
            if entity_type.name in self._entity_types:
                raise SchemaError(f"Entity type '{entity_type.name}' already registered")

            names = [f.name for f in entity_type.fields]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise SchemaError(
                    f"Duplicate attribute name(s) {duplicates} in entity type '{entity_type.name}'",
                    errors=[f"duplicate attribute '{n}'" for n in duplicates],
                )

            self._entity_types[entity_type.name] = entity_type
            logger.debug(f"Registered entity type: {entity_type.name}")

    def register_link(self, link: LinkDef) -> None:
        """Register a link definition.

        Missing entity types are reported by validate_all(), since links may
        be registered before the types they connect.

        Raises:
            SchemaError: If frozen, the name is taken, or a label collides
        """
        with self._lock:
            if self._frozen:
                raise SchemaError(f"Cannot register link '{link.name}': registry is frozen")
            if link.name in self._links:
                raise SchemaError(f"Link '{link.name}' already registered")

            ends = (LinkEnd(link, forward=True), LinkEnd(link, forward=False))
            for end in ends:
                key = (end.source_type, end.side.label)
                if key in self._labels:
                    existing = self._labels[key].link.name
                    raise SchemaError(
                        f"Label '{end.side.label}' on '{end.source_type}' is used by "
                        f"both '{existing}' and '{link.name}'"
                    )
            for end in ends:
                self._labels[(end.source_type, end.side.label)] = end

            self._links[link.name] = link
            logger.debug(f"Registered link: {link.name}")

    def freeze(self) -> str:
        """Freeze the registry and compute its fingerprint.

        Raises:
            SchemaError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise SchemaError("Registry is already frozen")
            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Schema registry frozen with {len(self._entity_types)} entity types, "
                f"{len(self._links)} links, fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def validate_all(self) -> list[str]:
        """Validate all registered definitions for consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for link in self._links.values():
            for side_name, side in (("forward", link.forward), ("reverse", link.reverse)):
                if side.on not in self._entity_types:
                    errors.append(
                        f"Link '{link.name}' {side_name} side references unknown entity type '{side.on}'"
                    )
                    continue
                entity_type = self._entity_types[side.on]
                if entity_type.get_field(side.label) is not None:
                    errors.append(
                        f"Link '{link.name}' label '{side.label}' collides with an attribute of '{side.on}'"
                    )
        return errors

    # Lookups

    def get_entity_type(self, name: str) -> Optional[EntityTypeDef]:
        return self._entity_types.get(name)

    def require_entity_type(self, name: str) -> EntityTypeDef:
        """Get an entity type or raise ValidationError naming it."""
        entity_type = self._entity_types.get(name)
        if entity_type is None:
            suggestions = get_close_matches(name, list(self._entity_types), n=3)
            hint = f". Did you mean: {', '.join(suggestions)}?" if suggestions else ""
            raise ValidationError(f"Unknown entity type '{name}'{hint}", entity_type=name)
        return entity_type

    def get_link(self, name: str) -> Optional[LinkDef]:
        return self._links.get(name)

    def resolve_label(self, entity_type: str, label: str) -> Optional[LinkEnd]:
        """Resolve a traversal label on an entity type.

        Returns:
            The LinkEnd for the label, or None if the type has no such label
        """
        return self._labels.get((entity_type, label))

    def labels_for(self, entity_type: str) -> list[LinkEnd]:
        """All link ends that start from an entity type."""
        return [end for (etype, _), end in self._labels.items() if etype == entity_type]

    def entity_types(self) -> Iterator[EntityTypeDef]:
        yield from self._entity_types.values()

    def links(self) -> Iterator[LinkDef]:
        yield from self._links.values()

    # Write-time validation

    def validate(
        self,
        entity_type: str,
        attributes: Mapping[str, Any],
        *,
        partial: bool = False,
        snapshot: Optional[UniqueLookup] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        """Validate attributes against an entity type.

        Args:
            entity_type: Entity type name
            attributes: Attribute values to write
            partial: True for updates (required attributes may be absent)
            snapshot: Graph state used to check uniqueness constraints
            entity_id: Entity being written (excluded from uniqueness checks)

        Raises:
            UnknownFieldError: If an attribute is not declared
            ValidationError: On kind, required or uniqueness violations
        """
        type_def = self.require_entity_type(entity_type)

        known = type_def.get_field_names()
        for name in attributes:
            if name not in known:
                suggestions = get_close_matches(name, known, n=3)
                raise UnknownFieldError(name, entity_type, suggestions)

        errors: list[str] = []
        first_bad: Optional[str] = None
        for f in type_def.fields:
            if partial and f.name not in attributes:
                continue
            is_valid, error = f.validate_value(attributes.get(f.name))
            if not is_valid and error:
                errors.append(error)
                first_bad = first_bad or f.name
        if errors:
            raise ValidationError(
                f"Validation failed for {entity_type}: {'; '.join(errors)}",
                field_name=first_bad,
                errors=errors,
                entity_type=entity_type,
            )

        if snapshot is None:
            return
        for f in type_def.get_unique_fields():
            value = attributes.get(f.name)
            if value is None:
                continue
            holders = snapshot.find_by_value(entity_type, f.name, value) - {entity_id}
            if holders:
                raise ValidationError(
                    f"Unique attribute '{f.name}' of {entity_type} already has value {value!r}",
                    field_name=f.name,
                    entity_type=entity_type,
                )

    # Serialization

    def to_schema(self) -> Schema:
        return Schema(
            entities=tuple(self._entity_types.values()),
            links=tuple(self._links.values()),
        )

    def to_dict(self) -> dict[str, Any]:
        return self.to_schema().to_dict()

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaRegistry:
        """Create a frozen registry from its dictionary form."""
        return cls.from_schema(Schema.from_dict(data))

    @classmethod
    def from_json(cls, json_str: str) -> SchemaRegistry:
        return cls.from_dict(json.loads(json_str))
