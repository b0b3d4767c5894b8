"""
Error types for livegraph.

This module defines all exception types raised by the store:
- LiveGraphError: Base exception
- SchemaError: Malformed or inconsistent schema
- ValidationError: Attribute values violate declared types or uniqueness
- ApplyError: Operation preconditions fail against the local graph
- RemoteRejection: Locally applied transaction reversed by the remote authority
- TransportError: Sync channel failure

Invariants:
    - All errors inherit from LiveGraphError
    - Errors include context for debugging
    - Validation and apply errors are raised synchronously, before any mutation
    - RemoteRejection is never raised into unrelated code paths; it is
      attached to the PendingTx handle
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LiveGraphError(Exception):
    """Base exception for all livegraph errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "LIVEGRAPH_ERROR"
        self.details = details or {}


class SchemaError(LiveGraphError):
    """Schema is malformed or internally inconsistent.

    Raised when:
    - A link references an entity type that does not exist
    - An entity type declares the same attribute twice
    - The registry is modified after freeze
    - A cached graph was written under a different schema fingerprint
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={"errors": errors or []},
        )
        self.errors = errors or []


class ValidationError(LiveGraphError):
    """Attribute validation failed.

    Raised when:
    - Required attribute is missing
    - Attribute value has the wrong kind
    - A unique attribute value is already taken by another entity
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
        entity_type: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={
                "field": field_name,
                "entity_type": entity_type,
                "errors": errors or [],
            },
        )
        self.field_name = field_name
        self.entity_type = entity_type
        self.errors = errors or [message]


class UnknownFieldError(ValidationError):
    """Unknown attribute in a payload.

    Includes suggestions for similar attribute names.
    """

    def __init__(
        self,
        field_name: str,
        entity_type: str,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown attribute '{field_name}' on '{entity_type}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(msg, field_name=field_name, entity_type=entity_type)
        self.code = "UNKNOWN_FIELD"
        self.details["suggestions"] = suggestions
        self.suggestions = suggestions


class QueryError(ValidationError):
    """Query references an unknown entity type, label or attribute."""

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(message, field_name=field_name)
        self.code = "QUERY_ERROR"


class ApplyError(LiveGraphError):
    """Operation precondition failed against the local graph.

    Raised when:
    - An update, delete or link references an entity that does not exist
    - A create reuses an existing entity id
    - A link endpoint has the wrong entity type for the label
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        op_index: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="APPLY_ERROR",
            details={"entity_id": entity_id, "op_index": op_index},
        )
        self.entity_id = entity_id
        self.op_index = op_index


class NotFoundError(LiveGraphError):
    """Entity not found."""

    def __init__(self, message: str, entity_id: str) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class RemoteRejection(LiveGraphError):
    """Transaction accepted locally was later reversed.

    Attributes:
        tx_id: The rolled back transaction
        reason: Reason reported by the remote authority (or local cause)
        cause_tx_id: Set when this transaction was rolled back because an
            earlier transaction it depended on was rejected
    """

    def __init__(
        self,
        tx_id: str,
        reason: str,
        cause_tx_id: Optional[str] = None,
    ) -> None:
        message = f"Transaction {tx_id} rolled back: {reason}"
        super().__init__(
            message,
            code="REMOTE_REJECTION",
            details={"tx_id": tx_id, "reason": reason, "cause_tx_id": cause_tx_id},
        )
        self.tx_id = tx_id
        self.reason = reason
        self.cause_tx_id = cause_tx_id


class TransportError(LiveGraphError):
    """Sync channel failure.

    Transactions affected by a transport failure stay unconfirmed; local
    data is never altered because of it.
    """

    def __init__(self, message: str, tx_id: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"tx_id": tx_id},
        )
        self.tx_id = tx_id


class CacheError(LiveGraphError):
    """Local cache could not be read or written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="CACHE_ERROR", details={"path": path})
        self.path = path
