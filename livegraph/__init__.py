"""
livegraph - embeddable realtime sync data store.

A schema-driven local graph of typed entities and links, with live query
subscriptions and optimistic transactions reconciled against a remote
authority:

    ┌──────────────┐  submit   ┌──────────────────┐  apply   ┌──────────────────┐
    │    Caller    │──────────▶│ TransactionLayer │─────────▶│ LocalGraphStore  │
    └──────▲───────┘           └────────┬─────────┘          │ (snapshots)      │
           │ notifications              │ outbound           └────────┬─────────┘
    ┌──────┴────────────┐               ▼                             │ change sets
    │SubscriptionManager│◀─────┐  ┌────────────┐  events  ┌───────────▼─────┐
    │  + QueryEngine    │      └──│ SyncWorker │◀────────▶│  SyncTransport  │
    └───────────────────┘         └────────────┘          └─────────────────┘

Invariants:
    - The schema is immutable once a store is built on it
    - Snapshots are never mutated; readers never see half-applied transactions
    - The optimistic state is always confirmed base + pending log in
      submission order
    - Only subscriptions whose queries read a touched entity type or link are
      re-evaluated

How to change safely:
    - Keep every mutation path inside TransactionLayer
    - Extend SyncTransport implementations, not the layer, for new channels
"""

from ._version import __version__
from .config import StoreSettings
from .errors import (
    ApplyError,
    CacheError,
    LiveGraphError,
    NotFoundError,
    QueryError,
    RemoteRejection,
    SchemaError,
    TransportError,
    UnknownFieldError,
    ValidationError,
)
from .logging_setup import setup_logging
from .persist import SqliteLocalCache
from .query import Query, QueryEngine, ResultRow, ResultSet, Selection
from .schema import (
    Cardinality,
    EntityTypeDef,
    FieldDef,
    FieldKind,
    LinkDef,
    LinkSide,
    Schema,
    SchemaRegistry,
    field,
    load_schema,
)
from .store import Entity, GraphSnapshot, LocalGraphStore
from .store.live import LiveStore
from .subscribe import ChangeNotification, EntityUpdate, SubscriptionHandle, SubscriptionState
from .sync import GraphDelta, InMemorySyncTransport, SyncTransport, SyncWorker, TxConfirmed, TxRejected
from .txn import Create, Delete, LinkAdd, LinkRemove, Transaction, TransactionBuilder, Update, new_id
from .txn.layer import ConflictPolicy, PendingTx, TransactionLayer, TxState

__all__ = [
    "__version__",
    # Facade
    "LiveStore",
    "StoreSettings",
    "setup_logging",
    # Schema
    "Schema",
    "SchemaRegistry",
    "EntityTypeDef",
    "FieldDef",
    "FieldKind",
    "LinkDef",
    "LinkSide",
    "Cardinality",
    "field",
    "load_schema",
    # Store
    "Entity",
    "GraphSnapshot",
    "LocalGraphStore",
    # Queries and subscriptions
    "Query",
    "Selection",
    "QueryEngine",
    "ResultSet",
    "ResultRow",
    "SubscriptionHandle",
    "SubscriptionState",
    "ChangeNotification",
    "EntityUpdate",
    # Transactions
    "Create",
    "Update",
    "Delete",
    "LinkAdd",
    "LinkRemove",
    "Transaction",
    "TransactionBuilder",
    "TransactionLayer",
    "PendingTx",
    "TxState",
    "ConflictPolicy",
    "new_id",
    # Sync
    "SyncTransport",
    "SyncWorker",
    "InMemorySyncTransport",
    "TxConfirmed",
    "TxRejected",
    "GraphDelta",
    # Persistence
    "SqliteLocalCache",
    # Errors
    "LiveGraphError",
    "SchemaError",
    "ValidationError",
    "UnknownFieldError",
    "QueryError",
    "ApplyError",
    "NotFoundError",
    "RemoteRejection",
    "TransportError",
    "CacheError",
]
