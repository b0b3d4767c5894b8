"""
YAML/JSON schema documents for livegraph.

Schema documents declare entities and links in the same shape the hosted
service uses:

    entities:
      $users:
        email: {type: string, unique: true, indexed: true}
      technicians:
        firstName: {type: string, required: true}
        phone: string
        createdAt: any
    links:
      userProfile:
        forward: {on: companyProfiles, has: one, label: $user}
        reverse: {on: $users, has: one, label: profile}

An attribute may be given as a bare kind name ("string") or as a mapping
with "type" plus optional "required", "unique", "indexed", "description".
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import yaml

from ..errors import SchemaError
from .types import Cardinality, EntityTypeDef, FieldDef, FieldKind, LinkDef, LinkSide, Schema


class SchemaYamlLoader(yaml.SafeLoader):
    """SafeLoader that only reads true/false as booleans.

    PyYAML follows YAML 1.1, where on/off/yes/no are booleans too; link
    sides use an "on" key, so those words must stay strings.
    """


SchemaYamlLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:bool"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
SchemaYamlLoader.add_implicit_resolver(
    "tag:yaml.org,2002:bool",
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF"),
)


def parse_schema_dict(data: dict[str, Any]) -> Schema:
    """Parse a schema document that has already been decoded.

    Raises:
        SchemaError: If the document is malformed
    """
    if not isinstance(data, dict):
        raise SchemaError("Schema document must be a mapping")

    try:
        entities = tuple(
            _parse_entity(name, attrs) for name, attrs in (data.get("entities") or {}).items()
        )
        links = tuple(
            _parse_link(name, definition) for name, definition in (data.get("links") or {}).items()
        )
    except (KeyError, TypeError, ValueError) as e:
        raise SchemaError(f"Malformed schema document: {e}") from e

    return Schema(entities=entities, links=links)


def _parse_entity(name: str, attrs: dict[str, Any] | None) -> EntityTypeDef:
    fields = []
    for attr_name, definition in (attrs or {}).items():
        if isinstance(definition, str):
            definition = {"type": definition}
        if not isinstance(definition, dict):
            raise TypeError(f"attribute '{name}.{attr_name}' must be a kind name or mapping")
        fields.append(
            FieldDef(
                name=attr_name,
                kind=FieldKind.from_str(definition.get("type", "json")),
                required=bool(definition.get("required", False)),
                unique=bool(definition.get("unique", False)),
                indexed=bool(definition.get("indexed", False)),
                description=definition.get("description", ""),
            )
        )
    return EntityTypeDef(name=name, fields=tuple(fields))


def _parse_link(name: str, definition: dict[str, Any]) -> LinkDef:
    return LinkDef(
        name=name,
        forward=_parse_side(definition["forward"]),
        reverse=_parse_side(definition["reverse"]),
    )


def _parse_side(definition: dict[str, Any]) -> LinkSide:
    return LinkSide(on=definition["on"], has=Cardinality(definition["has"]), label=definition["label"])


def parse_schema_yaml(text: str) -> Schema:
    """Parse a schema from YAML text."""
    try:
        data = yaml.load(text, Loader=SchemaYamlLoader)
    except yaml.YAMLError as e:
        raise SchemaError(f"Invalid YAML schema: {e}") from e
    return parse_schema_dict(data or {})


def parse_schema_json(text: str) -> Schema:
    """Parse a schema from JSON text."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SchemaError(f"Invalid JSON schema: {e}") from e
    return parse_schema_dict(data or {})


def load_schema(path: str | Path) -> Schema:
    """Load a schema file, choosing the parser by extension (.json or YAML)."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SchemaError(f"Cannot read schema file {path}: {e}") from e
    if path.suffix == ".json":
        return parse_schema_json(text)
    return parse_schema_yaml(text)


def dump_schema_yaml(schema: Schema) -> str:
    """Render a schema in document form."""
    entities: dict[str, Any] = {}
    for entity in sorted(schema.entities, key=lambda e: e.name):
        attrs: dict[str, Any] = {}
        for f in entity.fields:
            definition = f.to_dict()
            definition.pop("name")
            attrs[f.name] = definition
        entities[entity.name] = attrs
    links = {
        link.name: {"forward": link.forward.to_dict(), "reverse": link.reverse.to_dict()}
        for link in sorted(schema.links, key=lambda x: x.name)
    }
    return yaml.safe_dump({"entities": entities, "links": links}, sort_keys=False)
