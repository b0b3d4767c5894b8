"""
Base protocol and types for the sync transport boundary.

The sync transport is an opaque bidirectional channel to a remote authority.
Outbound it carries transactions (ordered operation batches tagged with a
client-generated transaction id). Inbound it delivers:

- TxConfirmed(tx_id): the authority accepted a transaction
- TxRejected(tx_id, reason): the authority refused a transaction
- GraphDelta(operations, ts_ms, origin): changes made by other clients

Wire format is a transport concern; events are plain dataclasses with
to_dict/from_dict for transports that serialise them.

Invariants:
    - Events for one transaction arrive at most once per connection
    - A transport that is not connected raises TransportError on send

How to change safely:
    - Protocol changes require updating every implementation
    - Add new event kinds with a distinct "event" tag
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Union, runtime_checkable

from ..txn.operations import Operation, Transaction, now_ms, operation_from_dict


@dataclass(frozen=True)
class TxConfirmed:
    """The remote authority accepted a transaction."""

    tx_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"event": "confirmed", "tx_id": self.tx_id}


@dataclass(frozen=True)
class TxRejected:
    """The remote authority refused a transaction.

    Attributes:
        tx_id: Rejected transaction
        reason: Human-readable reason (e.g. a uniqueness conflict)
    """

    tx_id: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"event": "rejected", "tx_id": self.tx_id, "reason": self.reason}


@dataclass(frozen=True)
class GraphDelta:
    """Authoritative changes made elsewhere.

    Attributes:
        operations: Operations to merge into the confirmed state
        ts_ms: Logical timestamp of the change, used for last-writer-wins
        origin: Identifies the client or device that made the change
    """

    operations: tuple[Operation, ...]
    ts_ms: int = field(default_factory=now_ms)
    origin: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "delta",
            "ops": [op.to_dict() for op in self.operations],
            "ts_ms": self.ts_ms,
            "origin": self.origin,
        }


InboundEvent = Union[TxConfirmed, TxRejected, GraphDelta]


def event_from_dict(data: Mapping[str, Any]) -> InboundEvent:
    """Create an inbound event from its dictionary representation.

    Raises:
        ValueError: If the event tag is unknown
    """
    kind = data.get("event")
    if kind == "confirmed":
        return TxConfirmed(data["tx_id"])
    if kind == "rejected":
        return TxRejected(data["tx_id"], data.get("reason", ""))
    if kind == "delta":
        return GraphDelta(
            operations=tuple(operation_from_dict(op) for op in data.get("ops", [])),
            ts_ms=data.get("ts_ms", now_ms()),
            origin=data.get("origin"),
        )
    raise ValueError(f"Unknown event type: {kind!r}")


@runtime_checkable
class SyncTransport(Protocol):
    """Protocol for channels to a remote authority.

    Implementations:
        - InMemorySyncTransport: loopback authority for tests and development

    Lifecycle:
        1. connect() - establish the channel
        2. send() / events() - exchange transactions and events
        3. close() - release resources; events() ends
    """

    @property
    def is_connected(self) -> bool:
        """Whether the channel is currently usable."""
        ...

    async def connect(self) -> None:
        """Establish the channel.

        Raises:
            TransportError: If the channel cannot be established
        """
        ...

    async def close(self) -> None:
        """Close the channel. Pending events() iterations end."""
        ...

    async def send(self, transaction: Transaction) -> None:
        """Send a transaction to the remote authority.

        Returns once the transport has accepted the transaction for delivery;
        confirmation arrives later as a TxConfirmed event.

        Raises:
            TransportError: If the transaction could not be handed over
        """
        ...

    def events(self) -> AsyncIterator[InboundEvent]:
        """Iterate inbound events until the channel closes."""
        ...
