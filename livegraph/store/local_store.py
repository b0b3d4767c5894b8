"""
Local Graph Store for livegraph.

The LocalGraphStore owns the current snapshot of the local graph and applies
transactions to it. It ensures:
- Atomic application (all operations in a transaction apply or none do)
- Schema validation of every written attribute, including uniqueness
- Link cardinality (a "one" side is replaced, never duplicated)

Invariants:
    - The published snapshot is replaced only after a whole transaction
      applied successfully
    - Snapshots are never mutated in place
    - Deletion never cascades to other entities; it removes the entity's edges

Remote deltas are merged with merge_remote(), which is lenient (the remote
authority has already arbitrated) and last-writer-wins per attribute by the
logical version stamped on each write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from ..errors import ApplyError, LiveGraphError, NotFoundError, ValidationError
from ..schema.registry import SchemaRegistry
from ..schema.types import Cardinality, LinkEnd
from ..txn.operations import Create, Delete, LinkAdd, LinkRemove, Operation, Transaction, Update
from .graph import ChangeSet, Entity, GraphBuilder, GraphSnapshot

logger = logging.getLogger(__name__)


@dataclass
class AppliedTransaction:
    """Result of applying a transaction.

    Attributes:
        tx_id: The applied transaction
        changes: What the transaction touched
        snapshot: The snapshot published by the apply
    """

    tx_id: str
    changes: ChangeSet
    snapshot: GraphSnapshot


def apply_transaction(
    registry: SchemaRegistry,
    snapshot: GraphSnapshot,
    transaction: Transaction,
    version: Optional[int] = None,
) -> tuple[GraphSnapshot, ChangeSet]:
    """Apply a transaction to a snapshot without touching it.

    Args:
        registry: Schema used for validation and label resolution
        snapshot: Snapshot to start from
        transaction: Transaction to apply
        version: Logical version stamped on written attributes
            (defaults to the transaction's created_at)

    Returns:
        Tuple of (new snapshot, change set)

    Raises:
        ValidationError: An attribute violates its type or uniqueness
        ApplyError: An operation precondition failed
    """
    stamp = transaction.created_at if version is None else version
    builder = snapshot.builder()
    for index, op in enumerate(transaction.operations):
        try:
            _apply_operation(registry, builder, op, stamp)
        except ApplyError as e:
            if e.op_index is None:
                e.op_index = index
                e.details["op_index"] = index
            raise
    return builder.build(), builder.changes


def _apply_operation(
    registry: SchemaRegistry,
    builder: GraphBuilder,
    op: Operation,
    stamp: int,
) -> None:
    if isinstance(op, Create):
        if builder.get(op.entity_id) is not None:
            raise ApplyError(f"Entity {op.entity_id} already exists", entity_id=op.entity_id)
        attributes = {k: v for k, v in op.attributes.items() if v is not None}
        registry.validate(
            op.entity_type, attributes, snapshot=builder, entity_id=op.entity_id
        )
        builder.put_entity(
            Entity(op.entity_id, op.entity_type, attributes, {k: stamp for k in attributes})
        )

    elif isinstance(op, Update):
        existing = builder.get(op.entity_id)
        if existing is None:
            raise ApplyError(f"Cannot update missing entity {op.entity_id}", entity_id=op.entity_id)
        registry.validate(
            existing.entity_type,
            op.attributes,
            partial=True,
            snapshot=builder,
            entity_id=op.entity_id,
        )
        builder.put_entity(_patched(existing, op.attributes, stamp))

    elif isinstance(op, Delete):
        if builder.remove_entity(op.entity_id) is None:
            raise ApplyError(f"Cannot delete missing entity {op.entity_id}", entity_id=op.entity_id)

    elif isinstance(op, LinkAdd):
        end = _resolve_link(registry, builder, op.from_id, op.label)
        target = builder.get(op.to_id)
        if target is None:
            raise ApplyError(f"Cannot link to missing entity {op.to_id}", entity_id=op.to_id)
        if target.entity_type != end.target_type:
            raise ApplyError(
                f"Label '{op.label}' links to {end.target_type}, got {target.entity_type} {op.to_id}",
                entity_id=op.to_id,
            )
        _link(builder, end, op.from_id, op.to_id)

    elif isinstance(op, LinkRemove):
        end = _resolve_link(registry, builder, op.from_id, op.label)
        fwd, rev = (op.from_id, op.to_id) if end.forward else (op.to_id, op.from_id)
        if not builder.remove_edge(end.link.name, fwd, rev):
            logger.debug(
                "Link to remove does not exist",
                extra={"link": end.link.name, "from": op.from_id, "to": op.to_id},
            )

    else:
        raise ApplyError(f"Unknown operation: {op!r}")


def _patched(existing: Entity, patch: Mapping[str, Any], stamp: int) -> Entity:
    attributes = dict(existing.attributes)
    versions = dict(existing.versions)
    for name, value in patch.items():
        if value is None:
            attributes.pop(name, None)
        else:
            attributes[name] = value
        versions[name] = stamp
    return Entity(existing.entity_id, existing.entity_type, attributes, versions)


def _resolve_link(
    registry: SchemaRegistry,
    builder: GraphBuilder,
    from_id: str,
    label: str,
) -> LinkEnd:
    source = builder.get(from_id)
    if source is None:
        raise ApplyError(f"Cannot link from missing entity {from_id}", entity_id=from_id)
    end = registry.resolve_label(source.entity_type, label)
    if end is None:
        raise ApplyError(
            f"Entity type '{source.entity_type}' has no link label '{label}'",
            entity_id=from_id,
        )
    return end


def _link(builder: GraphBuilder, end: LinkEnd, from_id: str, to_id: str) -> None:
    """Add an edge, replacing prior edges on any "one" side."""
    link = end.link
    fwd, rev = (from_id, to_id) if end.forward else (to_id, from_id)
    if link.forward.has is Cardinality.ONE:
        for other in builder.neighbors(link.name, fwd, forward=True) - {rev}:
            builder.remove_edge(link.name, fwd, other)
    if link.reverse.has is Cardinality.ONE:
        for other in builder.neighbors(link.name, rev, forward=False) - {fwd}:
            builder.remove_edge(link.name, other, rev)
    builder.add_edge(link.name, fwd, rev)


def merge_remote(
    registry: SchemaRegistry,
    snapshot: GraphSnapshot,
    operations: Iterable[Operation],
    version: int,
) -> tuple[GraphSnapshot, ChangeSet]:
    """Merge authoritative remote operations into a snapshot.

    Creates upsert, updates of unknown entities and links with a missing
    endpoint are skipped, and an attribute is only overwritten when the
    remote version is not older than the version that last wrote it.
    Uniqueness is not re-checked; the remote authority arbitrates it.
    """
    builder = snapshot.builder()
    for op in operations:
        try:
            _merge_operation(registry, builder, op, version)
        except LiveGraphError as e:
            logger.warning(
                f"Skipping remote operation: {e.message}",
                extra={"op": op.to_dict(), "version": version},
            )
    return builder.build(), builder.changes


def _merge_operation(
    registry: SchemaRegistry,
    builder: GraphBuilder,
    op: Operation,
    version: int,
) -> None:
    if isinstance(op, (Create, Update)):
        existing = builder.get(op.entity_id)
        if existing is None:
            if isinstance(op, Update):
                raise NotFoundError(f"Remote update of unknown entity {op.entity_id}", op.entity_id)
            attributes = {k: v for k, v in op.attributes.items() if v is not None}
            registry.validate(op.entity_type, attributes)
            builder.put_entity(
                Entity(op.entity_id, op.entity_type, attributes, {k: version for k in attributes})
            )
            return
        if isinstance(op, Create) and op.entity_type != existing.entity_type:
            raise ValidationError(
                f"Remote create of {op.entity_id} as {op.entity_type} conflicts with {existing.entity_type}"
            )
        registry.validate(existing.entity_type, op.attributes, partial=True)
        patch = {
            name: value
            for name, value in op.attributes.items()
            if version >= existing.versions.get(name, 0)
        }
        if patch:
            builder.put_entity(_patched(existing, patch, version))

    elif isinstance(op, Delete):
        builder.remove_entity(op.entity_id)

    elif isinstance(op, LinkAdd):
        end = _resolve_link(registry, builder, op.from_id, op.label)
        if builder.get(op.to_id) is None:
            raise NotFoundError(f"Remote link to unknown entity {op.to_id}", op.to_id)
        _link(builder, end, op.from_id, op.to_id)

    elif isinstance(op, LinkRemove):
        end = _resolve_link(registry, builder, op.from_id, op.label)
        fwd, rev = (op.from_id, op.to_id) if end.forward else (op.to_id, op.from_id)
        builder.remove_edge(end.link.name, fwd, rev)


class LocalGraphStore:
    """In-memory graph; single source of truth for query evaluation.

    The store holds one snapshot reference. Writers are serialised by the
    transaction layer; readers take the reference and work on it freely.

    Example:
        >>> store = LocalGraphStore(registry)
        >>> tx = Transaction.build([Create("technicians", "t1", {"firstName": "Amy"})])
        >>> store.apply(tx).tx_id == tx.tx_id
        True
        >>> store.get("t1").get("firstName")
        'Amy'
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        snapshot: Optional[GraphSnapshot] = None,
    ) -> None:
        self.registry = registry
        self._snapshot = snapshot or GraphSnapshot.empty(registry)

    @property
    def snapshot(self) -> GraphSnapshot:
        """The current immutable snapshot."""
        return self._snapshot

    def reset(self, snapshot: GraphSnapshot) -> None:
        """Publish a snapshot computed elsewhere (rollback-and-replay)."""
        self._snapshot = snapshot

    def apply(self, transaction: Transaction, *, version: Optional[int] = None) -> AppliedTransaction:
        """Apply a transaction atomically.

        Raises:
            ValidationError: An attribute violates its type or uniqueness
            ApplyError: An operation precondition failed; nothing was applied
        """
        snapshot, changes = apply_transaction(self.registry, self._snapshot, transaction, version)
        self._snapshot = snapshot
        logger.debug(
            "Applied transaction",
            extra={
                "tx_id": transaction.tx_id,
                "ops": len(transaction.operations),
                "entities": len(changes.entity_ids),
            },
        )
        return AppliedTransaction(tx_id=transaction.tx_id, changes=changes, snapshot=snapshot)

    def get(self, entity_id: str) -> Optional[Entity]:
        """Get an entity by id, or None when it does not exist."""
        return self._snapshot.get(entity_id)

    def require(self, entity_id: str) -> Entity:
        """Get an entity by id.

        Raises:
            NotFoundError: If the entity does not exist
        """
        entity = self._snapshot.get(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found", entity_id)
        return entity

    def traverse(self, entity_id: str, label: str) -> frozenset[str]:
        """Ids reachable from an entity through a link label."""
        return self._snapshot.traverse(entity_id, label)
