"""
Store module for livegraph.

- graph: immutable snapshots, the copy-on-write builder and change sets
- local_store: atomic transaction apply and remote merge
- live: the LiveStore facade (import from livegraph or livegraph.store.live)
"""

from .graph import ChangeSet, Entity, GraphBuilder, GraphSnapshot, diff_snapshots
from .local_store import AppliedTransaction, LocalGraphStore, apply_transaction, merge_remote

__all__ = [
    "Entity",
    "ChangeSet",
    "GraphSnapshot",
    "GraphBuilder",
    "diff_snapshots",
    "LocalGraphStore",
    "AppliedTransaction",
    "apply_transaction",
    "merge_remote",
]
