"""
Fluent transaction builder.

Collects operations and submits them as one atomic transaction. Entity ids
are generated client-side when not given; a created entity can be given an
alias and referenced by later operations in the same builder as "$alias.id".

Example:
    >>> tx = store.transact()
    >>> tx.create("technicians", {"firstName": "Amy"}, as_="amy")
    >>> tx.create("companyProfiles", {"companyName": "Acme"}, as_="acme")
    >>> tx.link("$acme.id", "technicians", "$amy.id")
    >>> pending = tx.submit()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from .operations import Create, Delete, LinkAdd, LinkRemove, Operation, Update, new_id

if TYPE_CHECKING:
    from .layer import PendingTx


class TransactionBuilder:
    """Atomic transaction builder.

    Operations are validated when the transaction is submitted, not while
    it is being built.
    """

    def __init__(
        self,
        submit: Callable[..., PendingTx],
        principal: str | None = None,
    ) -> None:
        """Initialize a builder.

        Args:
            submit: Called with the collected operations on submit()
            principal: Author stamped on the transaction
        """
        self._submit = submit
        self._principal = principal
        self._operations: list[Operation] = []
        self._aliases: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def operations(self) -> list[Operation]:
        return list(self._operations)

    def id_of(self, alias: str) -> str:
        """Id generated for an alias.

        Raises:
            KeyError: If no create used the alias
        """
        return self._aliases[alias]

    def _resolve(self, ref: str) -> str:
        if ref.startswith("$") and ref.endswith(".id"):
            alias = ref[1:-3]
            if alias not in self._aliases:
                raise KeyError(f"Unknown alias '{alias}' in reference {ref!r}")
            return self._aliases[alias]
        return ref

    def create(
        self,
        entity_type: str,
        data: dict[str, Any] | None = None,
        *,
        entity_id: str | None = None,
        as_: str | None = None,
        **kwargs: Any,
    ) -> TransactionBuilder:
        """Add a create operation.

        Args:
            entity_type: Type of the new entity
            data: Attribute values (or use kwargs)
            entity_id: Id to use (generated when omitted)
            as_: Alias for referencing the id in later operations
            **kwargs: Attribute values (alternative to data)

        Returns:
            Self for chaining
        """
        attributes = dict(data or {})
        attributes.update(kwargs)
        entity_id = entity_id or new_id()
        if as_:
            self._aliases[as_] = entity_id
        self._operations.append(Create(entity_type, entity_id, attributes))
        return self

    def update(self, entity_id: str, patch: dict[str, Any] | None = None, **kwargs: Any) -> TransactionBuilder:
        """Add an update operation. A None value unsets the attribute."""
        attributes = dict(patch or {})
        attributes.update(kwargs)
        self._operations.append(Update(self._resolve(entity_id), attributes))
        return self

    def delete(self, entity_id: str) -> TransactionBuilder:
        """Add a delete operation."""
        self._operations.append(Delete(self._resolve(entity_id)))
        return self

    def link(self, from_id: str, label: str, to_id: str) -> TransactionBuilder:
        """Add a link-add operation following label from from_id."""
        self._operations.append(LinkAdd(self._resolve(from_id), label, self._resolve(to_id)))
        return self

    def unlink(self, from_id: str, label: str, to_id: str) -> TransactionBuilder:
        """Add a link-remove operation."""
        self._operations.append(LinkRemove(self._resolve(from_id), label, self._resolve(to_id)))
        return self

    def submit(self) -> PendingTx:
        """Submit the collected operations as one transaction.

        Returns:
            The pending transaction handle

        Raises:
            ValidationError: If an attribute violates the schema
            ApplyError: If an operation precondition fails
        """
        return self._submit(list(self._operations), principal=self._principal)
