"""
Mutation operations and transactions.

An Operation is one of five variants, each targeting one entity id:
- Create(entity_type, entity_id, attributes)
- Update(entity_id, attributes)
- Delete(entity_id)
- LinkAdd(from_id, label, to_id)
- LinkRemove(from_id, label, to_id)

A Transaction is an ordered batch of operations applied atomically.

Every operation serialises to a plain dict tagged by "op" so transactions
can cross the sync transport and be persisted in the local cache:

    {"op": "create", "type": "technicians", "id": "t1", "attrs": {...}}
    {"op": "update", "id": "t1", "attrs": {"phone": "5559999999"}}
    {"op": "delete", "id": "t1"}
    {"op": "link", "from": "p1", "label": "$user", "to": "u1"}
    {"op": "unlink", "from": "p1", "label": "$user", "to": "u1"}
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Optional, Union


def new_id() -> str:
    """Generate a collision-resistant client-side entity or transaction id."""
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Create:
    op: ClassVar[str] = "create"

    entity_type: str
    entity_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "type": self.entity_type,
            "id": self.entity_id,
            "attrs": dict(self.attributes),
        }


@dataclass(frozen=True)
class Update:
    op: ClassVar[str] = "update"

    entity_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "id": self.entity_id, "attrs": dict(self.attributes)}


@dataclass(frozen=True)
class Delete:
    op: ClassVar[str] = "delete"

    entity_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "id": self.entity_id}


@dataclass(frozen=True)
class LinkAdd:
    op: ClassVar[str] = "link"

    from_id: str
    label: str
    to_id: str

    @property
    def entity_id(self) -> str:
        return self.from_id

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "from": self.from_id, "label": self.label, "to": self.to_id}


@dataclass(frozen=True)
class LinkRemove:
    op: ClassVar[str] = "unlink"

    from_id: str
    label: str
    to_id: str

    @property
    def entity_id(self) -> str:
        return self.from_id

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "from": self.from_id, "label": self.label, "to": self.to_id}


Operation = Union[Create, Update, Delete, LinkAdd, LinkRemove]


def operation_from_dict(data: Mapping[str, Any]) -> Operation:
    """Create an operation from its dictionary representation.

    Raises:
        ValueError: If the tag is unknown or required keys are missing
    """
    kind = data.get("op")
    try:
        if kind == Create.op:
            return Create(data["type"], data["id"], dict(data.get("attrs") or {}))
        if kind == Update.op:
            return Update(data["id"], dict(data.get("attrs") or {}))
        if kind == Delete.op:
            return Delete(data["id"])
        if kind == LinkAdd.op:
            return LinkAdd(data["from"], data["label"], data["to"])
        if kind == LinkRemove.op:
            return LinkRemove(data["from"], data["label"], data["to"])
    except KeyError as e:
        raise ValueError(f"Operation {kind!r} is missing key {e}") from e
    raise ValueError(f"Unknown operation type: {kind!r}")


@dataclass(frozen=True)
class Transaction:
    """An ordered batch of operations applied atomically.

    Attributes:
        tx_id: Client-generated transaction id (also the idempotency key
            seen by the remote authority)
        operations: Operations in application order
        principal: Opaque identity of the author, if any
        created_at: Submission timestamp (Unix ms); also the logical
            version stamped on every attribute the transaction writes
    """

    tx_id: str
    operations: tuple[Operation, ...]
    principal: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    @classmethod
    def build(
        cls,
        operations: "list[Operation] | tuple[Operation, ...]",
        principal: Optional[str] = None,
        tx_id: Optional[str] = None,
    ) -> Transaction:
        return cls(tx_id=tx_id or new_id(), operations=tuple(operations), principal=principal)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "principal": self.principal,
            "created_at": self.created_at,
            "ops": [op.to_dict() for op in self.operations],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Transaction:
        required = ["tx_id", "ops"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        return cls(
            tx_id=data["tx_id"],
            operations=tuple(operation_from_dict(op) for op in data["ops"]),
            principal=data.get("principal"),
            created_at=data.get("created_at", now_ms()),
        )
