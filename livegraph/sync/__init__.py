"""
Sync module for livegraph.

- SyncTransport: protocol for channels to the remote authority
- InMemorySyncTransport: loopback authority for tests and development
- SyncWorker: outbound queue, inbound dispatch and reconnect backoff
"""

from .base import (
    GraphDelta,
    InboundEvent,
    SyncTransport,
    TxConfirmed,
    TxRejected,
    event_from_dict,
)
from .memory import InMemorySyncTransport
from .worker import SyncStats, SyncWorker

__all__ = [
    "SyncTransport",
    "InboundEvent",
    "TxConfirmed",
    "TxRejected",
    "GraphDelta",
    "event_from_dict",
    "InMemorySyncTransport",
    "SyncWorker",
    "SyncStats",
]
