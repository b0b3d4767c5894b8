"""
Schema module for livegraph.

This module provides the type system for entities and links:
- Type definitions (EntityTypeDef, FieldDef, LinkDef, LinkSide)
- Schema registry for consistency checks, label resolution and
  write-time validation
- Loader for YAML/JSON schema documents

Invariants:
    - A registry is immutable once registered/frozen
    - Every link side names an entity type that exists in the registry
    - Attribute names are unique within an entity type
"""

from .loader import dump_schema_yaml, load_schema, parse_schema_dict, parse_schema_yaml
from .registry import SchemaRegistry
from .types import (
    Cardinality,
    EntityTypeDef,
    FieldDef,
    FieldKind,
    LinkDef,
    LinkEnd,
    LinkSide,
    Schema,
    field,
)

__all__ = [
    # Types
    "Cardinality",
    "EntityTypeDef",
    "FieldDef",
    "FieldKind",
    "LinkDef",
    "LinkEnd",
    "LinkSide",
    "Schema",
    "field",
    # Registry
    "SchemaRegistry",
    # Documents
    "load_schema",
    "parse_schema_dict",
    "parse_schema_yaml",
    "dump_schema_yaml",
]
