"""
Transaction module for livegraph.

- operations: the five mutation variants and the Transaction batch
- builder: fluent TransactionBuilder
- layer: optimistic apply, confirmation and rollback-and-replay
  (import from livegraph.txn.layer)
"""

from .builder import TransactionBuilder
from .operations import (
    Create,
    Delete,
    LinkAdd,
    LinkRemove,
    Operation,
    Transaction,
    Update,
    new_id,
    now_ms,
    operation_from_dict,
)

__all__ = [
    "Create",
    "Update",
    "Delete",
    "LinkAdd",
    "LinkRemove",
    "Operation",
    "Transaction",
    "TransactionBuilder",
    "operation_from_dict",
    "new_id",
    "now_ms",
]
