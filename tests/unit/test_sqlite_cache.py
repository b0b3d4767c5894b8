"""
Unit tests for the SQLite local cache.

Tests cover:
- Schema binding and fingerprint mismatch
- Saving and loading the base snapshot
- Pending transaction log order and removal
- Atomic, incremental base commits
- Stats for inspection
"""

import sqlite3

import pytest

from livegraph.errors import CacheError, SchemaError
from livegraph.persist import SqliteLocalCache
from livegraph.schema import EntityTypeDef, Schema, SchemaRegistry, field
from livegraph.store import Entity, LocalGraphStore
from livegraph.txn import Create, LinkAdd, Transaction, Update


class TestSqliteLocalCache:
    """Tests for SqliteLocalCache."""

    @pytest.fixture
    def cache(self, tmp_path):
        """Cache file in a temporary directory."""
        return SqliteLocalCache(tmp_path / "cache" / "livegraph.db")

    @pytest.fixture
    def snapshot(self, registry):
        """Snapshot with entities, an indexed value and an edge."""
        store = LocalGraphStore(registry)
        store.apply(
            Transaction(
                tx_id="seed",
                operations=(
                    Create("companyProfiles", "c1", {"companyName": "Acme", "isCompanyAdmin": True}),
                    Create("$users", "u1", {"email": "amy@acme.com"}),
                    Create("technicians", "t1", {"firstName": "Amy", "createdAt": {"source": "import"}}),
                    LinkAdd("c1", "$user", "u1"),
                    LinkAdd("c1", "technicians", "t1"),
                ),
                created_at=1000,
            )
        )
        return store.snapshot

    def test_initialize_creates_file(self, cache, registry):
        """initialize() creates the database and records the schema."""
        cache.initialize(registry)

        assert cache.exists()
        assert cache.cached_schema() == registry.to_dict()
        assert cache.get_stats()["schema_fingerprint"] == registry.fingerprint

    def test_initialize_is_idempotent(self, cache, registry):
        """Re-initialising with the same schema is fine."""
        cache.initialize(registry)
        cache.initialize(registry)

    def test_fingerprint_mismatch(self, cache, registry):
        """A cache written under another schema is refused."""
        cache.initialize(registry)
        other = SchemaRegistry.from_schema(
            Schema(entities=(EntityTypeDef(name="jobs", fields=(field("title", "string"),)),))
        )

        with pytest.raises(SchemaError, match="was written under schema"):
            cache.load_base(other)

    def test_base_roundtrip(self, cache, registry, snapshot):
        """A saved base loads with entities, versions, indexes and edges."""
        cache.initialize(registry)
        cache.save_base(snapshot)

        loaded = cache.load_base(registry)

        assert len(loaded) == 3
        assert dict(loaded.get("t1").attributes) == {
            "firstName": "Amy",
            "createdAt": {"source": "import"},
        }
        assert loaded.get("t1").versions["firstName"] == 1000
        assert loaded.find_by_value("$users", "email", "amy@acme.com") == frozenset({"u1"})
        assert loaded.traverse("u1", "profile") == frozenset({"c1"})
        assert loaded.traverse("t1", "company") == frozenset({"c1"})

    def test_save_base_replaces(self, cache, registry, snapshot):
        """Saving again replaces the previous base."""
        cache.initialize(registry)
        cache.save_base(snapshot)
        builder = snapshot.builder()
        builder.remove_entity("t1")

        cache.save_base(builder.build())

        loaded = cache.load_base(registry)
        assert loaded.get("t1") is None
        assert loaded.traverse("c1", "technicians") == frozenset()

    def test_empty_base(self, cache, registry):
        """A fresh cache loads an empty snapshot."""
        assert len(cache.load_base(registry)) == 0

    def test_pending_log_order(self, cache, registry):
        """Pending transactions load in append order."""
        cache.initialize(registry)
        first = Transaction.build([Update("t1", {"phone": "1"})])
        second = Transaction.build([Create("technicians", "t2", {"firstName": "Bob"})], principal="u1")

        cache.append_pending(first)
        cache.append_pending(second)

        loaded = cache.load_pending()
        assert [t.tx_id for t in loaded] == [first.tx_id, second.tx_id]
        assert loaded[1] == second

    def test_remove_pending(self, cache, registry):
        """Removed transactions no longer load."""
        cache.initialize(registry)
        transaction = Transaction.build([Update("t1", {"phone": "1"})])
        cache.append_pending(transaction)

        assert cache.remove_pending(transaction.tx_id) is True
        assert cache.remove_pending(transaction.tx_id) is False
        assert cache.load_pending() == []

    def test_stats(self, cache, registry, snapshot):
        """get_stats() counts entities per type, links and pending transactions."""
        cache.initialize(registry)
        cache.save_base(snapshot)
        cache.append_pending(Transaction.build([Update("t1", {"phone": "1"})]))

        stats = cache.get_stats()

        assert stats["entities"] == {"$users": 1, "companyProfiles": 1, "technicians": 1}
        assert stats["links"] == 2
        assert stats["pending_transactions"] == 1
        assert stats["format_version"] == SqliteLocalCache.FORMAT_VERSION
        assert stats["base_saved_at"] is not None

    def test_unreadable_path(self, tmp_path, registry):
        """A path that cannot hold a database raises CacheError."""
        directory = tmp_path / "occupied"
        directory.mkdir()
        cache = SqliteLocalCache(directory, wal_mode=False)

        with pytest.raises(CacheError):
            cache.initialize(registry)

    def test_commit_base_drops_folded_pending(self, cache, registry, snapshot):
        """commit_base() writes the base and removes folded transactions together."""
        cache.initialize(registry)
        folded = Transaction.build([Update("t1", {"phone": "1"})])
        kept = Transaction.build([Update("t1", {"phone": "2"})])
        cache.append_pending(folded)
        cache.append_pending(kept)

        cache.commit_base(snapshot, [folded.tx_id])

        assert [t.tx_id for t in cache.load_pending()] == [kept.tx_id]
        assert len(cache.load_base(registry)) == 3

    def test_commit_base_is_atomic(self, cache, registry, snapshot, block_pending_deletes):
        """When the pending log cannot change, the base is not written either."""
        cache.initialize(registry)
        transaction = Transaction.build([Update("t1", {"phone": "1"})])
        cache.append_pending(transaction)
        block_pending_deletes(cache.path)

        with pytest.raises(CacheError):
            cache.commit_base(snapshot, [transaction.tx_id])

        assert len(cache.load_base(registry)) == 0
        assert [t.tx_id for t in cache.load_pending()] == [transaction.tx_id]
        assert cache.get_stats()["base_saved_at"] is None

    def test_commit_base_incremental(self, cache, registry, snapshot):
        """With the previous base, only rows that differ are rewritten."""
        cache.initialize(registry)
        cache.save_base(snapshot)
        conn = sqlite3.connect(str(cache.path))
        try:
            conn.execute(
                "UPDATE entities SET attrs_json = ? WHERE entity_id = 'u1'",
                ('{"email": "marker@acme.com"}',),
            )
            conn.commit()
        finally:
            conn.close()

        builder = snapshot.builder()
        builder.put_entity(
            Entity(
                "t1",
                "technicians",
                {"firstName": "Amy", "phone": "1"},
                {"firstName": 1000, "phone": 2000},
            )
        )
        builder.remove_entity("c1")
        cache.commit_base(builder.build(), previous=snapshot)

        loaded = cache.load_base(registry)
        assert loaded.get("t1").get("phone") == "1"
        assert loaded.get("t1").versions["phone"] == 2000
        assert loaded.get("c1") is None
        assert loaded.traverse("t1", "company") == frozenset()
        assert loaded.traverse("u1", "profile") == frozenset()
        # Untouched rows are left as they were.
        assert loaded.get("u1").get("email") == "marker@acme.com"
