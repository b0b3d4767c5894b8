"""
Query module for livegraph.

- Query / Selection: declarative filters, projections and link traversals
- QueryEngine: pure evaluation against immutable graph snapshots
- ResultSet / ResultRow: ordered, comparable query results
"""

from .engine import QueryDependencies, QueryEngine, ResultRow, ResultSet
from .model import Predicate, Query, Selection, parse_where

__all__ = [
    "Query",
    "Selection",
    "Predicate",
    "parse_where",
    "QueryEngine",
    "QueryDependencies",
    "ResultSet",
    "ResultRow",
]
