"""
Immutable graph snapshots and their copy-on-write builder.

A GraphSnapshot holds:
- entities by id (primary index)
- entity ids by entity type
- a value index for every unique/indexed attribute
- link adjacency in both directions, keyed by (link name, entity id)

Snapshots are never mutated after they are built. A GraphBuilder copies a
snapshot's top-level tables lazily, on the first write to each table, so
unchanged tables are shared between consecutive snapshots and readers
holding an older snapshot never observe a half-applied transaction.

The builder records what it touched in a ChangeSet, which the
subscription manager uses to find affected queries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from ..schema.registry import SchemaRegistry


def index_key(value: Any) -> Any:
    """Hashable key for a value in the attribute index."""
    if isinstance(value, (dict, list)):
        return ("json", json.dumps(value, sort_keys=True, default=str))
    return value


@dataclass(frozen=True)
class Entity:
    """A typed record identified by a client-generated id.

    Attributes:
        entity_id: Globally unique id
        entity_type: Entity type name
        attributes: Attribute values (read-only mapping)
        versions: Logical timestamp of the write that last set each attribute
    """

    entity_id: str
    entity_type: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    versions: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "versions", MappingProxyType(dict(self.versions)))

    def get(self, name: str, default: Any = None) -> Any:
        if name == "id":
            return self.entity_id
        return self.attributes.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.entity_id, **self.attributes}


@dataclass
class ChangeSet:
    """What a mutation touched.

    Attributes:
        entity_ids: Entities created, updated, deleted or re-linked
        entity_types: Types of those entities
        link_names: Links that gained or lost edges
        changed_fields: Attribute names changed per entity
        created: Entities that did not exist before
        deleted: Entities that no longer exist
    """

    entity_ids: set[str] = field(default_factory=set)
    entity_types: set[str] = field(default_factory=set)
    link_names: set[str] = field(default_factory=set)
    changed_fields: Dict[str, set[str]] = field(default_factory=dict)
    created: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)

    @property
    def empty(self) -> bool:
        return not (self.entity_ids or self.link_names)

    def touch(self, entity: Entity, fields: "set[str] | None" = None) -> None:
        self.entity_ids.add(entity.entity_id)
        self.entity_types.add(entity.entity_type)
        if fields:
            self.changed_fields.setdefault(entity.entity_id, set()).update(fields)

    def touch_link(self, link_name: str, entity_id: str, label: Optional[str]) -> None:
        # Edge changes do not touch entity types: only queries traversing
        # the link can observe them.
        self.link_names.add(link_name)
        self.entity_ids.add(entity_id)
        if label:
            self.changed_fields.setdefault(entity_id, set()).add(label)

    def merge(self, other: ChangeSet) -> None:
        self.entity_ids |= other.entity_ids
        self.entity_types |= other.entity_types
        self.link_names |= other.link_names
        for entity_id, names in other.changed_fields.items():
            self.changed_fields.setdefault(entity_id, set()).update(names)
        self.created |= other.created
        self.deleted |= other.deleted


AdjKey = Tuple[str, str]  # (link name, entity id)
ValueKey = Tuple[str, str]  # (entity type, attribute)


class GraphSnapshot:
    """Read-only view of the graph at one point in the transaction order.

    Example:
        >>> snapshot = GraphSnapshot.empty(registry)
        >>> builder = snapshot.builder()
        >>> builder.put_entity(Entity("t1", "technicians", {"firstName": "Amy"}))
        >>> snapshot2 = builder.build()
        >>> snapshot.get("t1") is None
        True
    """

    __slots__ = ("registry", "_entities", "_by_type", "_values", "_out", "_in", "seq")

    def __init__(
        self,
        registry: SchemaRegistry,
        entities: Dict[str, Entity],
        by_type: Dict[str, frozenset[str]],
        values: Dict[ValueKey, Dict[Any, frozenset[str]]],
        out: Dict[AdjKey, frozenset[str]],
        in_: Dict[AdjKey, frozenset[str]],
        seq: int = 0,
    ) -> None:
        self.registry = registry
        self._entities = entities
        self._by_type = by_type
        self._values = values
        self._out = out
        self._in = in_
        self.seq = seq

    @classmethod
    def empty(cls, registry: SchemaRegistry) -> GraphSnapshot:
        return cls(registry, {}, {}, {}, {}, {})

    def builder(self) -> GraphBuilder:
        return GraphBuilder(self)

    # Entities

    def get(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def entities(self) -> Iterator[Entity]:
        yield from self._entities.values()

    def entity_ids_of_type(self, entity_type: str) -> frozenset[str]:
        return self._by_type.get(entity_type, frozenset())

    def find_by_value(self, entity_type: str, attribute: str, value: Any) -> frozenset[str]:
        """Ids of entities of a type whose attribute equals value.

        Uses the value index when the attribute is indexed, otherwise scans
        the entities of the type.
        """
        table = self._values.get((entity_type, attribute))
        if table is not None:
            return table.get(index_key(value), frozenset())
        if self.is_indexed(entity_type, attribute):
            return frozenset()
        return frozenset(
            entity_id
            for entity_id in self.entity_ids_of_type(entity_type)
            if self._entities[entity_id].attributes.get(attribute) == value
        )

    def is_indexed(self, entity_type: str, attribute: str) -> bool:
        type_def = self.registry.get_entity_type(entity_type)
        if type_def is None:
            return False
        f = type_def.get_field(attribute)
        return f is not None and f.is_indexed

    # Links

    def neighbors(self, link_name: str, entity_id: str, forward: bool) -> frozenset[str]:
        """Entities linked to entity_id; forward=True starts from the forward side."""
        table = self._out if forward else self._in
        return table.get((link_name, entity_id), frozenset())

    def traverse(self, entity_id: str, label: str) -> frozenset[str]:
        """Follow a label from an entity.

        Returns an empty set when the entity does not exist or its type has
        no such label.
        """
        entity = self._entities.get(entity_id)
        if entity is None:
            return frozenset()
        end = self.registry.resolve_label(entity.entity_type, label)
        if end is None:
            return frozenset()
        return self.neighbors(end.link.name, entity_id, end.forward)

    def all_edges(self) -> Iterator[tuple[str, str, str]]:
        """All (link name, forward id, reverse id) edges."""
        for (name, fwd), revs in self._out.items():
            for rev in revs:
                yield name, fwd, rev


class GraphBuilder:
    """Copy-on-write builder producing the next snapshot.

    Tables are copied from the base snapshot on first write. Methods here
    perform no schema validation; callers validate before writing.
    """

    def __init__(self, base: GraphSnapshot) -> None:
        self.registry = base.registry
        self._base = base
        self._entities = base._entities
        self._by_type = base._by_type
        self._values = base._values
        self._out = base._out
        self._in = base._in
        self._owned: set[str] = set()
        self._owned_value_tables: set[ValueKey] = set()
        self.changes = ChangeSet()

    def _own(self, name: str) -> None:
        if name not in self._owned:
            setattr(self, name, dict(getattr(self, name)))
            self._owned.add(name)

    # Reads see pending writes

    def get(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def find_by_value(self, entity_type: str, attribute: str, value: Any) -> frozenset[str]:
        table = self._values.get((entity_type, attribute))
        if table is not None:
            return table.get(index_key(value), frozenset())
        return frozenset(
            entity_id
            for entity_id in self._by_type.get(entity_type, frozenset())
            if self._entities[entity_id].attributes.get(attribute) == value
        )

    def neighbors(self, link_name: str, entity_id: str, forward: bool) -> frozenset[str]:
        table = self._out if forward else self._in
        return table.get((link_name, entity_id), frozenset())

    # Entity writes

    def put_entity(self, entity: Entity, changed: "set[str] | None" = None) -> None:
        """Insert or replace an entity, maintaining type and value indexes."""
        old = self._entities.get(entity.entity_id)
        self._own("_entities")
        self._entities[entity.entity_id] = entity

        if old is None:
            self._own("_by_type")
            ids = self._by_type.get(entity.entity_type, frozenset())
            self._by_type[entity.entity_type] = ids | {entity.entity_id}
            self.changes.created.add(entity.entity_id)
            self.changes.deleted.discard(entity.entity_id)
            changed = set(entity.attributes) if changed is None else changed

        type_def = self.registry.get_entity_type(entity.entity_type)
        if type_def is not None:
            for f in type_def.get_indexed_fields():
                old_value = old.attributes.get(f.name) if old is not None else None
                new_value = entity.attributes.get(f.name)
                if old is not None and old_value == new_value and f.name in old.attributes:
                    continue
                if old is not None and f.name in old.attributes:
                    self._index_remove(entity.entity_type, f.name, old_value, entity.entity_id)
                if f.name in entity.attributes:
                    self._index_add(entity.entity_type, f.name, new_value, entity.entity_id)

        if changed is None and old is not None:
            changed = {
                name
                for name in set(old.attributes) | set(entity.attributes)
                if old.attributes.get(name, _MISSING) != entity.attributes.get(name, _MISSING)
            }
        self.changes.touch(entity, changed)

    def remove_entity(self, entity_id: str) -> Optional[Entity]:
        """Remove an entity and every edge touching it."""
        old = self._entities.get(entity_id)
        if old is None:
            return None

        for end in self.registry.labels_for(old.entity_type):
            for other in list(self.neighbors(end.link.name, entity_id, end.forward)):
                if end.forward:
                    self.remove_edge(end.link.name, entity_id, other)
                else:
                    self.remove_edge(end.link.name, other, entity_id)

        self._own("_entities")
        del self._entities[entity_id]
        self._own("_by_type")
        remaining = self._by_type.get(old.entity_type, frozenset()) - {entity_id}
        if remaining:
            self._by_type[old.entity_type] = remaining
        else:
            self._by_type.pop(old.entity_type, None)

        type_def = self.registry.get_entity_type(old.entity_type)
        if type_def is not None:
            for f in type_def.get_indexed_fields():
                if f.name in old.attributes:
                    self._index_remove(old.entity_type, f.name, old.attributes[f.name], entity_id)

        if entity_id in self.changes.created:
            self.changes.created.discard(entity_id)
        else:
            self.changes.deleted.add(entity_id)
        self.changes.touch(old, set(old.attributes))
        return old

    def _value_table(self, key: ValueKey) -> Dict[Any, frozenset[str]]:
        self._own("_values")
        if key not in self._owned_value_tables:
            self._values[key] = dict(self._values.get(key, {}))
            self._owned_value_tables.add(key)
        return self._values[key]

    def _index_add(self, entity_type: str, attribute: str, value: Any, entity_id: str) -> None:
        table = self._value_table((entity_type, attribute))
        k = index_key(value)
        table[k] = table.get(k, frozenset()) | {entity_id}

    def _index_remove(self, entity_type: str, attribute: str, value: Any, entity_id: str) -> None:
        table = self._value_table((entity_type, attribute))
        k = index_key(value)
        remaining = table.get(k, frozenset()) - {entity_id}
        if remaining:
            table[k] = remaining
        else:
            table.pop(k, None)

    # Edge writes

    def has_edge(self, link_name: str, fwd: str, rev: str) -> bool:
        return rev in self._out.get((link_name, fwd), frozenset())

    def add_edge(self, link_name: str, fwd: str, rev: str) -> bool:
        """Add an edge; returns False when it already existed."""
        if self.has_edge(link_name, fwd, rev):
            return False
        self._own("_out")
        self._own("_in")
        self._out[(link_name, fwd)] = self._out.get((link_name, fwd), frozenset()) | {rev}
        self._in[(link_name, rev)] = self._in.get((link_name, rev), frozenset()) | {fwd}
        self._touch_edge(link_name, fwd, rev)
        return True

    def remove_edge(self, link_name: str, fwd: str, rev: str) -> bool:
        """Remove an edge; returns False when it did not exist."""
        if not self.has_edge(link_name, fwd, rev):
            return False
        self._own("_out")
        self._own("_in")
        for table, key, member in (
            (self._out, (link_name, fwd), rev),
            (self._in, (link_name, rev), fwd),
        ):
            remaining = table[key] - {member}
            if remaining:
                table[key] = remaining
            else:
                del table[key]
        self._touch_edge(link_name, fwd, rev)
        return True

    def _touch_edge(self, link_name: str, fwd: str, rev: str) -> None:
        link = self.registry.get_link(link_name)
        self.changes.touch_link(link_name, fwd, link.forward.label if link else None)
        self.changes.touch_link(link_name, rev, link.reverse.label if link else None)

    def build(self) -> GraphSnapshot:
        return GraphSnapshot(
            self.registry,
            self._entities,
            self._by_type,
            self._values,
            self._out,
            self._in,
            seq=self._base.seq + 1,
        )


_MISSING = object()


def diff_snapshots(old: GraphSnapshot, new: GraphSnapshot) -> ChangeSet:
    """Compute the change set that turns one snapshot into another."""
    changes = ChangeSet()

    if old._entities is not new._entities:
        for entity_id in set(old._entities) | set(new._entities):
            before = old._entities.get(entity_id)
            after = new._entities.get(entity_id)
            if before is after:
                continue
            if before is None:
                changes.created.add(entity_id)
                changes.touch(after, set(after.attributes))
            elif after is None:
                changes.deleted.add(entity_id)
                changes.touch(before, set(before.attributes))
            else:
                fields = {
                    name
                    for name in set(before.attributes) | set(after.attributes)
                    if before.attributes.get(name, _MISSING) != after.attributes.get(name, _MISSING)
                }
                if fields or before.entity_type != after.entity_type:
                    changes.touch(after, fields)

    if old._out is not new._out:
        for key in set(old._out) | set(new._out):
            before_revs = old._out.get(key, frozenset())
            after_revs = new._out.get(key, frozenset())
            if before_revs == after_revs:
                continue
            link_name, fwd = key
            link = new.registry.get_link(link_name)
            for rev in before_revs ^ after_revs:
                changes.touch_link(link_name, fwd, link.forward.label if link else None)
                changes.touch_link(link_name, rev, link.reverse.label if link else None)

    return changes


def storage_delta(old: GraphSnapshot, new: GraphSnapshot) -> tuple[set[str], set[AdjKey]]:
    """Entity ids and (link name, forward id) keys whose stored rows differ.

    Unlike diff_snapshots() this compares by identity, so an entity whose
    versions changed without an attribute change is still reported.
    """
    entity_ids: set[str] = set()
    if old._entities is not new._entities:
        entity_ids = {
            entity_id
            for entity_id in set(old._entities) | set(new._entities)
            if old._entities.get(entity_id) is not new._entities.get(entity_id)
        }
    adjacency: set[AdjKey] = set()
    if old._out is not new._out:
        adjacency = {
            key
            for key in set(old._out) | set(new._out)
            if old._out.get(key, frozenset()) != new._out.get(key, frozenset())
        }
    return entity_ids, adjacency
