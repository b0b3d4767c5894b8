"""
Offline-durable local cache for livegraph.

Persists the confirmed base snapshot and the replay log of pending
transactions in one SQLite file, so a store can restart offline and resend
what the remote authority has not confirmed yet.

Invariants:
    - commit_base() changes the base and the pending log in one transaction
    - Pending transactions load in submission order
    - A cache written under one schema fingerprint is never loaded under
      another

How to change safely:
    - Bump FORMAT_VERSION when the table layout changes
    - Keep every multi-statement write inside BEGIN IMMEDIATE / COMMIT

Table schema:
    meta:
        - key TEXT PRIMARY KEY
        - value TEXT

    entities:
        - entity_id TEXT PRIMARY KEY
        - entity_type TEXT
        - attrs_json TEXT
        - versions_json TEXT

    links:
        - link_name TEXT
        - from_id TEXT (forward side)
        - to_id TEXT (reverse side)
        - PRIMARY KEY (link_name, from_id, to_id)

    pending_transactions:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - tx_id TEXT UNIQUE
        - tx_json TEXT
        - created_at INTEGER (Unix ms)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import CacheError, SchemaError
from ..schema.registry import SchemaRegistry
from ..store.graph import Entity, GraphSnapshot, storage_delta
from ..txn.operations import Transaction, now_ms

logger = logging.getLogger(__name__)


class SqliteLocalCache:
    """SQLite file holding the base snapshot and pending transactions.

    Thread safety:
        Each call opens its own connection. SQLite serialises writers; the
        transaction layer already calls the cache under its lock.

    Example:
        >>> cache = SqliteLocalCache("/tmp/livegraph.db")
        >>> cache.initialize(registry)
        >>> cache.append_pending(tx)
        >>> [t.tx_id for t in cache.load_pending()]
        ['...']
    """

    FORMAT_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the cache.

        Args:
            path: SQLite database file
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise CacheError(f"Cannot open cache: {e}", path=str(self.path)) from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise CacheError(f"Cache operation failed: {e}", path=str(self.path)) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entities (
                entity_id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                attrs_json TEXT NOT NULL DEFAULT '{}',
                versions_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type);

            CREATE TABLE IF NOT EXISTS links (
                link_name TEXT NOT NULL,
                from_id TEXT NOT NULL,
                to_id TEXT NOT NULL,
                PRIMARY KEY (link_name, from_id, to_id)
            );

            CREATE TABLE IF NOT EXISTS pending_transactions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_id TEXT NOT NULL UNIQUE,
                tx_json TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
        """)

    def _meta(self, conn: sqlite3.Connection) -> dict[str, str]:
        return {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM meta")}

    # Lifecycle

    def initialize(self, registry: SchemaRegistry) -> None:
        """Create tables and bind the cache to a schema.

        Raises:
            SchemaError: The cache was written under a different schema
            CacheError: The file cannot be opened or written
        """
        fingerprint = registry.fingerprint or registry.freeze()
        with self._connect() as conn:
            self._create_schema(conn)
            meta = self._meta(conn)
            cached = meta.get("schema_fingerprint")
            if cached is not None and cached != fingerprint:
                raise SchemaError(
                    f"Cache {self.path} was written under schema {cached}, not {fingerprint}",
                    errors=[f"fingerprint mismatch: {cached} != {fingerprint}"],
                )
            if cached is None:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.executemany(
                        "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                        [
                            ("format_version", str(self.FORMAT_VERSION)),
                            ("schema_fingerprint", fingerprint),
                            ("schema_json", registry.to_json(indent=None)),
                        ],
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        logger.info(
            "Local cache ready",
            extra={"path": str(self.path), "fingerprint": fingerprint, "new": cached is None},
        )

    def exists(self) -> bool:
        return self.path.exists()

    # Base snapshot

    def save_base(self, snapshot: GraphSnapshot) -> None:
        """Replace the cached base with a snapshot."""
        self.commit_base(snapshot)

    def commit_base(
        self,
        snapshot: GraphSnapshot,
        folded_tx_ids: Iterable[str] = (),
        previous: GraphSnapshot | None = None,
    ) -> None:
        """Write a new base and drop folded pending transactions atomically.

        The base rows and the pending log change in one SQLite transaction,
        so a confirmed write is always either still pending or in the base.

        Args:
            snapshot: The new confirmed base
            folded_tx_ids: Pending transactions now contained in the base
            previous: The base this cache currently holds; when given only
                the rows that differ from it are rewritten
        """
        folded = [(tx_id,) for tx_id in folded_tx_ids]
        if previous is None:
            removed: list[tuple[str]] = []
            entities = list(snapshot.entities())
            adjacency: list[tuple[str, str]] = []
            link_rows = list(snapshot.all_edges())
        else:
            entity_ids, changed_keys = storage_delta(previous, snapshot)
            removed = [(entity_id,) for entity_id in entity_ids if snapshot.get(entity_id) is None]
            entities = [snapshot.get(entity_id) for entity_id in entity_ids]
            entities = [entity for entity in entities if entity is not None]
            adjacency = sorted(changed_keys)
            link_rows = [
                (name, fwd, rev)
                for name, fwd in adjacency
                for rev in snapshot.neighbors(name, fwd, forward=True)
            ]
        entity_rows = [
            (
                entity.entity_id,
                entity.entity_type,
                json.dumps(dict(entity.attributes), default=str),
                json.dumps(dict(entity.versions)),
            )
            for entity in entities
        ]

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if previous is None:
                    conn.execute("DELETE FROM entities")
                    conn.execute("DELETE FROM links")
                conn.executemany("DELETE FROM entities WHERE entity_id = ?", removed)
                conn.executemany("DELETE FROM links WHERE link_name = ? AND from_id = ?", adjacency)
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO entities (entity_id, entity_type, attrs_json, versions_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    entity_rows,
                )
                conn.executemany(
                    "INSERT OR IGNORE INTO links (link_name, from_id, to_id) VALUES (?, ?, ?)",
                    link_rows,
                )
                conn.executemany("DELETE FROM pending_transactions WHERE tx_id = ?", folded)
                conn.execute(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES ('base_saved_at', ?)",
                    (str(now_ms()),),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Committed base snapshot",
            extra={
                "entities": len(entity_rows),
                "removed": len(removed),
                "links": len(link_rows),
                "folded": len(folded),
                "full": previous is None,
            },
        )

    def load_base(self, registry: SchemaRegistry) -> GraphSnapshot:
        """Load the cached base snapshot (empty when nothing was saved).

        Raises:
            SchemaError: The cache was written under a different schema
        """
        self.initialize(registry)
        builder = GraphSnapshot.empty(registry).builder()
        with self._connect() as conn:
            for row in conn.execute(
                "SELECT entity_id, entity_type, attrs_json, versions_json FROM entities"
            ):
                builder.put_entity(
                    Entity(
                        row["entity_id"],
                        row["entity_type"],
                        json.loads(row["attrs_json"]),
                        json.loads(row["versions_json"]),
                    )
                )
            for row in conn.execute("SELECT link_name, from_id, to_id FROM links"):
                builder.add_edge(row["link_name"], row["from_id"], row["to_id"])
        return builder.build()

    # Pending log

    def append_pending(self, transaction: Transaction) -> None:
        """Append a transaction to the pending log."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pending_transactions (tx_id, tx_json, created_at)
                VALUES (?, ?, ?)
                """,
                (
                    transaction.tx_id,
                    json.dumps(transaction.to_dict(), default=str),
                    transaction.created_at,
                ),
            )

    def remove_pending(self, tx_id: str) -> bool:
        """Remove a transaction from the pending log.

        Returns:
            True if the transaction was in the log
        """
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM pending_transactions WHERE tx_id = ?", (tx_id,))
            return cursor.rowcount > 0

    def load_pending(self) -> list[Transaction]:
        """Pending transactions in submission order."""
        with self._connect() as conn:
            rows = conn.execute("SELECT tx_json FROM pending_transactions ORDER BY seq").fetchall()
        transactions = []
        for row in rows:
            try:
                transactions.append(Transaction.from_dict(json.loads(row["tx_json"])))
            except ValueError as e:
                raise CacheError(f"Corrupt pending transaction: {e}", path=str(self.path)) from e
        return transactions

    # Inspection

    def get_stats(self) -> dict[str, Any]:
        """Counts and metadata for diagnostics."""
        with self._connect() as conn:
            self._create_schema(conn)
            meta = self._meta(conn)
            entity_counts = {
                row["entity_type"]: row["n"]
                for row in conn.execute(
                    "SELECT entity_type, COUNT(*) AS n FROM entities GROUP BY entity_type"
                )
            }
            links = conn.execute("SELECT COUNT(*) FROM links").fetchone()[0]
            pending = conn.execute("SELECT COUNT(*) FROM pending_transactions").fetchone()[0]
        return {
            "path": str(self.path),
            "format_version": int(meta.get("format_version", self.FORMAT_VERSION)),
            "schema_fingerprint": meta.get("schema_fingerprint"),
            "base_saved_at": int(meta["base_saved_at"]) if "base_saved_at" in meta else None,
            "entities": entity_counts,
            "links": links,
            "pending_transactions": pending,
        }

    def cached_schema(self) -> dict[str, Any] | None:
        """The schema the cache was written under, if recorded."""
        with self._connect() as conn:
            self._create_schema(conn)
            value = self._meta(conn).get("schema_json")
        return json.loads(value) if value else None
