"""
Persistence module for livegraph.

SqliteLocalCache keeps the confirmed base snapshot and the pending
transaction log on disk for offline restarts.
"""

from .sqlite_cache import SqliteLocalCache

__all__ = ["SqliteLocalCache"]
