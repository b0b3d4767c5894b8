"""
Declarative queries over the local graph.

A Query selects entities of one type, filters them with conjunctive
predicates, optionally projects attributes, orders and limits them, and
expands link labels into nested selections:

    Query(
        "companyProfiles",
        where={"isCompanyAdmin": True, "$user.email": {"$like": "%@acme.com"}},
        links={"$user": Selection(fields=("email",))},
        order_by=(("companyName", False),),
        limit=20,
    )

The same query in the nested-dictionary shape used by the hosted service:

    {"companyProfiles": {
        "$": {"where": {...}, "order": {"companyName": "asc"}, "limit": 20},
        "$user": {"$": {"fields": ["email"]}},
    }}

Where keys are attribute names, "id", or dotted paths whose leading parts
are link labels ("$user.email"). A where value is either a literal
(equality) or a mapping of operators:

    $eq $ne $gt $gte $lt $lte $in $isNull $like

"or" and "and" take lists of where mappings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..errors import QueryError

OPERATORS = frozenset({"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$isNull", "$like"})


@dataclass(frozen=True)
class Predicate:
    """One condition on an attribute reached through zero or more labels.

    Attributes:
        path: Labels to traverse followed by the attribute name
        op: Operator ("$eq", "$gt", ...)
        value: Operand
    """

    path: tuple[str, ...]
    op: str
    value: Any

    @property
    def labels(self) -> tuple[str, ...]:
        return self.path[:-1]

    @property
    def attribute(self) -> str:
        return self.path[-1]


@dataclass(frozen=True)
class Condition:
    """A boolean combination of predicates.

    kind is "and" or "or"; terms are Predicates or nested Conditions.
    """

    kind: str
    terms: tuple[Any, ...]


def parse_where(where: Mapping[str, Any]) -> Condition:
    """Parse a where mapping into a conjunctive Condition.

    Raises:
        QueryError: On unknown operators or malformed combinators
    """
    terms: list[Any] = []
    for key, value in where.items():
        if key in ("or", "and"):
            if not isinstance(value, (list, tuple)) or not value:
                raise QueryError(f"'{key}' expects a non-empty list of where clauses")
            terms.append(Condition(key, tuple(parse_where(clause) for clause in value)))
            continue

        path = tuple(key.split("."))
        if isinstance(value, Mapping) and value and all(k.startswith("$") for k in value):
            for op, operand in value.items():
                if op not in OPERATORS:
                    raise QueryError(f"Unknown operator '{op}' on '{key}'", field_name=key)
                if op == "$in" and not isinstance(operand, (list, tuple, set, frozenset)):
                    raise QueryError(f"'$in' on '{key}' expects a list", field_name=key)
                terms.append(Predicate(path, op, operand))
        else:
            terms.append(Predicate(path, "$eq", value))
    return Condition("and", tuple(terms))


def _parse_order(order: Any) -> tuple[tuple[str, bool], ...]:
    if order is None:
        return ()
    if isinstance(order, Mapping):
        items = list(order.items())
    else:
        items = [(name, "asc") for name in order]
    result = []
    for name, direction in items:
        if direction not in ("asc", "desc"):
            raise QueryError(f"Order direction for '{name}' must be 'asc' or 'desc'", field_name=name)
        result.append((name, direction == "desc"))
    return tuple(result)


@dataclass(frozen=True)
class Selection:
    """A nested selection over a link label.

    Attributes:
        where: Filter on the linked entities
        links: Further nested selections by label
        fields: Attribute projection (None selects all attributes)
        order_by: (attribute, descending) pairs
        limit: Maximum number of linked entities
    """

    where: Mapping[str, Any] = field(default_factory=dict)
    links: Mapping[str, Selection] = field(default_factory=dict)
    fields: Optional[tuple[str, ...]] = None
    order_by: tuple[tuple[str, bool], ...] = ()
    limit: Optional[int] = None

    def condition(self) -> Condition:
        return parse_where(self.where)


@dataclass(frozen=True)
class Query:
    """A top-level query over one entity type.

    Attributes:
        entity_type: Entity type to select
        where: Conjunctive filter
        links: Nested selections by label
        fields: Attribute projection (None selects all attributes)
        order_by: (attribute, descending) pairs; entity id breaks ties
        limit: Maximum number of results
    """

    entity_type: str
    where: Mapping[str, Any] = field(default_factory=dict)
    links: Mapping[str, Selection] = field(default_factory=dict)
    fields: Optional[tuple[str, ...]] = None
    order_by: tuple[tuple[str, bool], ...] = ()
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise QueryError("limit must be non-negative")
        if self.fields is not None and not isinstance(self.fields, tuple):
            object.__setattr__(self, "fields", tuple(self.fields))

    def condition(self) -> Condition:
        return parse_where(self.where)

    @classmethod
    def from_instaql(cls, data: Mapping[str, Any]) -> Query:
        """Parse the nested-dictionary query shape.

        Raises:
            QueryError: If the top level does not name exactly one entity type
        """
        if len(data) != 1:
            raise QueryError("A query must select exactly one entity type at the top level")
        ((entity_type, body),) = data.items()
        selection = _parse_selection(body or {})
        return cls(
            entity_type=entity_type,
            where=selection.where,
            links=selection.links,
            fields=selection.fields,
            order_by=selection.order_by,
            limit=selection.limit,
        )


def _parse_selection(body: Mapping[str, Any]) -> Selection:
    options = body.get("$") or {}
    unknown = set(options) - {"where", "fields", "order", "limit"}
    if unknown:
        raise QueryError(f"Unknown query options: {sorted(unknown)}")
    fields = options.get("fields")
    return Selection(
        where=dict(options.get("where") or {}),
        links={label: _parse_selection(sub or {}) for label, sub in body.items() if label != "$"},
        fields=tuple(fields) if fields is not None else None,
        order_by=_parse_order(options.get("order")),
        limit=options.get("limit"),
    )
