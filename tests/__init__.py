"""
livegraph test suite.

This package contains:
- unit/: Unit tests per component (no network, SQLite in tmp_path)
- integration/: LiveStore with the in-memory transport and SQLite cache
"""
