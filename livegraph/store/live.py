"""
LiveStore: one embeddable realtime store instance.

Wires the components together:

    SchemaRegistry -> LocalGraphStore -> QueryEngine
                                      -> SubscriptionManager
                   -> TransactionLayer -> SyncWorker -> SyncTransport
                                      -> SqliteLocalCache

There is no process-wide handle: every LiveStore owns its own graph,
subscriptions and replay log, so several can coexist (e.g. one per test).

Example:
    >>> registry = SchemaRegistry.from_schema(load_schema("schema.yaml"))
    >>> async with LiveStore(registry, transport=InMemorySyncTransport(auto_confirm=True)) as store:
    ...     handle = store.subscribe(Query("technicians"), on_change)
    ...     pending = store.transact().create("technicians", {"firstName": "Amy"}).submit()
    ...     await pending.wait(timeout=5.0)
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence, Union

from ..config import StoreSettings
from ..errors import SchemaError
from ..persist.sqlite_cache import SqliteLocalCache
from ..query.engine import QueryEngine, ResultSet
from ..query.model import Query
from ..schema.registry import SchemaRegistry
from ..subscribe.manager import Listener, SubscriptionHandle, SubscriptionManager
from ..sync.base import SyncTransport
from ..sync.worker import SyncWorker
from ..txn.builder import TransactionBuilder
from ..txn.layer import PendingTx, TransactionLayer
from ..txn.operations import Operation, Transaction
from .graph import Entity, GraphSnapshot
from .local_store import LocalGraphStore

logger = logging.getLogger(__name__)

QueryLike = Union[Query, Mapping[str, Any]]


class LiveStore:
    """Schema-driven local graph with live queries and optimistic transactions.

    Attributes:
        registry: Frozen schema registry
        settings: Store settings
        store: Local graph store (optimistic snapshot)
        engine: Query engine
        subscriptions: Subscription manager
        layer: Transaction layer
        worker: Sync worker (None without a transport)
        cache: Local cache (None when not configured)
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        *,
        transport: Optional[SyncTransport] = None,
        cache: Optional[SqliteLocalCache] = None,
        settings: Optional[StoreSettings] = None,
        principal: Optional[str] = None,
    ) -> None:
        """Create a store, restoring cached state when a cache is configured.

        Args:
            registry: Schema registry (frozen here if it is not yet)
            transport: Channel to the remote authority (offline when None)
            cache: Local cache (defaults to settings.cache_path when set)
            settings: Store settings (defaults from the environment)
            principal: Opaque author stamped on every transaction

        Raises:
            SchemaError: The registry is inconsistent or the cache was written
                under another schema
        """
        self.settings = settings or StoreSettings()
        if not registry.frozen:
            errors = registry.validate_all()
            if errors:
                raise SchemaError(f"Schema is inconsistent: {'; '.join(errors)}", errors=errors)
            registry.freeze()
        self.registry = registry
        self.principal = principal

        if cache is None and self.settings.cache_path:
            cache = SqliteLocalCache(
                self.settings.cache_path,
                wal_mode=self.settings.cache_wal_mode,
                busy_timeout_ms=self.settings.cache_busy_timeout_ms,
            )
        self.cache = cache

        self.store = LocalGraphStore(registry)
        self.engine = QueryEngine(registry)
        self.subscriptions = SubscriptionManager(self.engine, lambda: self.store.snapshot)
        self.layer = TransactionLayer(
            self.store,
            self.subscriptions,
            policy=self.settings.conflict_policy,
            cache=cache,
            principal=principal,
        )
        self.transport = transport
        self.worker = SyncWorker(transport, self.layer, self.settings) if transport is not None else None
        self._started = False

        if cache is not None:
            self._restore(cache)

    def _restore(self, cache: SqliteLocalCache) -> None:
        base = cache.load_base(self.registry)
        pending = cache.load_pending()
        self.layer.restore(base, pending)

    # Reads

    @property
    def snapshot(self) -> GraphSnapshot:
        """The current optimistic snapshot."""
        return self.store.snapshot

    def get(self, entity_id: str) -> Optional[Entity]:
        return self.store.get(entity_id)

    def require(self, entity_id: str) -> Entity:
        return self.store.require(entity_id)

    def traverse(self, entity_id: str, label: str) -> frozenset[str]:
        return self.store.traverse(entity_id, label)

    def query(self, query: QueryLike) -> ResultSet:
        """Evaluate a query against the current snapshot."""
        return self.engine.evaluate(_as_query(query), self.store.snapshot)

    # Subscriptions

    def subscribe(self, query: QueryLike, on_change: Listener) -> SubscriptionHandle:
        return self.subscriptions.subscribe(_as_query(query), on_change)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.subscriptions.unsubscribe(handle)

    # Writes

    def transact(self) -> TransactionBuilder:
        """Start a fluent transaction."""
        return TransactionBuilder(self.submit, principal=self.principal)

    def submit(
        self,
        operations: Union[Sequence[Operation], Transaction],
        *,
        principal: Optional[str] = None,
    ) -> PendingTx:
        return self.layer.submit(operations, principal=principal or self.principal)

    def cancel(self, tx_id: str) -> bool:
        return self.layer.cancel(tx_id)

    def pending(self) -> list[PendingTx]:
        return self.layer.pending()

    def overdue(self) -> list[PendingTx]:
        """Pending transactions older than settings.pending_timeout_seconds."""
        overdue = self.layer.overdue(self.settings.pending_timeout_seconds)
        if overdue:
            logger.warning(
                "Transactions pending beyond timeout",
                extra={"count": len(overdue), "timeout": self.settings.pending_timeout_seconds},
            )
        return overdue

    # Lifecycle

    async def start(self) -> None:
        """Start syncing with the remote authority (no-op when offline)."""
        if self._started:
            return
        self._started = True
        if self.worker is not None:
            await self.worker.start()
        logger.info(
            "LiveStore started",
            extra={
                "fingerprint": self.registry.fingerprint,
                "online": self.worker is not None,
                "pending": len(self.layer.pending()),
            },
        )

    async def close(self) -> None:
        """Stop syncing. Pending transactions stay in the cache."""
        if not self._started:
            return
        self._started = False
        if self.worker is not None:
            await self.worker.stop()
        logger.info("LiveStore closed")

    async def __aenter__(self) -> LiveStore:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _as_query(query: QueryLike) -> Query:
    if isinstance(query, Query):
        return query
    return Query.from_instaql(query)
