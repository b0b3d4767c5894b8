"""
Core type definitions for the livegraph schema system.

This module defines the foundational types for the entity/link model:
- FieldDef: A typed attribute of an entity type
- EntityTypeDef: A named set of typed attributes
- LinkSide / LinkDef: A bidirectional, cardinality-constrained relationship

Invariants:
    - Entity type names are unique within a schema
    - Attribute names are unique within an entity type
    - A unique attribute is always indexed
    - A link has exactly two sides, each naming the entity type it lives on,
      its cardinality ("one" or "many") and the label used to traverse it

Example:
    >>> technicians = EntityTypeDef(
    ...     name="technicians",
    ...     fields=(
    ...         field("firstName", "string", required=True),
    ...         field("email", "string", unique=True),
    ...     ),
    ... )
    >>> user_profile = LinkDef(
    ...     name="userProfile",
    ...     forward=LinkSide(on="companyProfiles", has="one", label="$user"),
    ...     reverse=LinkSide(on="$users", has="one", label="profile"),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from enum import Enum
from typing import Any


class FieldKind(Enum):
    """Supported attribute kinds."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"  # ISO-8601 string or epoch milliseconds
    JSON = "json"  # Opaque value

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        "any" is accepted as an alias of "json".

        Raises:
            ValueError: If value is not a valid field kind
        """
        if value == "any":
            return cls.JSON
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


class Cardinality(Enum):
    """How many entities one side of a link may point at."""

    ONE = "one"
    MANY = "many"


def _is_date(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return False
        return True
    return False


_VALIDATORS = {
    FieldKind.STRING: lambda v: isinstance(v, str),
    FieldKind.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
    FieldKind.DATE: _is_date,
    FieldKind.JSON: lambda _: True,
}


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single attribute within an entity type.

    Attributes:
        name: Attribute name
        kind: The data type of the attribute
        required: Whether the attribute must be present on create
        unique: No two entities of the type may share a value
        indexed: Whether to maintain a value index for equality lookups
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    required: bool = False
    unique: bool = False
    indexed: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.name == "id":
            raise ValueError("'id' is reserved for the entity identifier")

    @property
    def is_indexed(self) -> bool:
        """Whether a value index is maintained for this attribute."""
        return self.indexed or self.unique

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Args:
            value: The value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        validator = _VALIDATORS[self.kind]
        if not validator(value):
            return (
                False,
                f"Field '{self.name}' must be {self.kind.value}, got {type(value).__name__}",
            )
        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "type": self.kind.value}
        if self.required:
            result["required"] = True
        if self.unique:
            result["unique"] = True
        if self.indexed:
            result["indexed"] = True
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDef:
        """Create from dictionary representation."""
        return cls(
            name=data["name"],
            kind=FieldKind.from_str(data.get("type", "json")),
            required=data.get("required", False),
            unique=data.get("unique", False),
            indexed=data.get("indexed", False),
            description=data.get("description", ""),
        )


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    unique: bool = False,
    indexed: bool = False,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Example:
        >>> email = field("email", "string", unique=True)
        >>> created = field("createdAt", "any")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        unique=unique,
        indexed=indexed,
        description=description,
    )


@dataclass(frozen=True)
class EntityTypeDef:
    """Definition of an entity type.

    Attributes:
        name: Entity type name (namespace), e.g. "technicians"
        fields: Tuple of attribute definitions
        description: Human-readable description
    """

    name: str
    fields: tuple[FieldDef, ...] = dataclass_field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Entity type name cannot be empty")

    def get_field(self, name: str) -> FieldDef | None:
        """Get an attribute definition by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_required_fields(self) -> list[FieldDef]:
        return [f for f in self.fields if f.required]

    def get_unique_fields(self) -> list[FieldDef]:
        return [f for f in self.fields if f.unique]

    def get_indexed_fields(self) -> list[FieldDef]:
        return [f for f in self.fields if f.is_indexed]

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
        }
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityTypeDef:
        return cls(
            name=data["name"],
            fields=tuple(FieldDef.from_dict(f) for f in data.get("fields", [])),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class LinkSide:
    """One side of a link.

    Attributes:
        on: Entity type this side lives on
        has: Cardinality seen from this side
        label: Name used to traverse the link starting from this side
    """

    on: str
    has: Cardinality
    label: str

    def __post_init__(self) -> None:
        if isinstance(self.has, str):
            object.__setattr__(self, "has", Cardinality(self.has))
        if not self.label:
            raise ValueError("Link label cannot be empty")

    def to_dict(self) -> dict[str, str]:
        return {"on": self.on, "has": self.has.value, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkSide:
        return cls(on=data["on"], has=Cardinality(data["has"]), label=data["label"])


@dataclass(frozen=True)
class LinkDef:
    """Definition of a bidirectional link between two entity types.

    Edges are stored once, as (forward entity id, reverse entity id).
    Traversing ``forward.label`` from a ``forward.on`` entity yields
    ``reverse.on`` entities and vice versa.

    Invariants:
        - A "one" side never has more than one edge per entity; adding a
          second edge replaces the first
    """

    name: str
    forward: LinkSide
    reverse: LinkSide

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Link name cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "forward": self.forward.to_dict(),
            "reverse": self.reverse.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkDef:
        return cls(
            name=data["name"],
            forward=LinkSide.from_dict(data["forward"]),
            reverse=LinkSide.from_dict(data["reverse"]),
        )


@dataclass(frozen=True)
class LinkEnd:
    """A link seen from one of its sides, as resolved from a label.

    Attributes:
        link: The link definition
        forward: True when traversing from the forward side
    """

    link: LinkDef
    forward: bool

    @property
    def side(self) -> LinkSide:
        """The side the traversal starts from."""
        return self.link.forward if self.forward else self.link.reverse

    @property
    def other(self) -> LinkSide:
        """The side the traversal arrives at."""
        return self.link.reverse if self.forward else self.link.forward

    @property
    def source_type(self) -> str:
        return self.side.on

    @property
    def target_type(self) -> str:
        return self.other.on

    @property
    def single(self) -> bool:
        """True when this side may hold at most one edge."""
        return self.side.has is Cardinality.ONE


@dataclass(frozen=True)
class Schema:
    """A complete schema: entity types plus links."""

    entities: tuple[EntityTypeDef, ...] = dataclass_field(default_factory=tuple)
    links: tuple[LinkDef, ...] = dataclass_field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in sorted(self.entities, key=lambda e: e.name)],
            "links": [link.to_dict() for link in sorted(self.links, key=lambda x: x.name)],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Schema:
        return cls(
            entities=tuple(EntityTypeDef.from_dict(e) for e in data.get("entities", [])),
            links=tuple(LinkDef.from_dict(link) for link in data.get("links", [])),
        )
