"""
Query engine for livegraph.

Evaluates declarative queries against a GraphSnapshot. Evaluation is a pure
function of (query, snapshot): it has no side effects and is deterministic
(results are ordered by the query's order_by, then by entity id).

Invariants:
    - Predicates are conjunctive filters; their order never changes results
    - A query with no matches returns an empty ResultSet, not an error
    - Nested link selections whose targets do not exist yield empty tuples
    - Equality on "id" or an indexed attribute is answered from the indexes
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

from ..errors import QueryError
from ..schema.registry import SchemaRegistry
from ..store.graph import Entity, GraphSnapshot
from .model import Condition, Predicate, Query, Selection

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class ResultRow:
    """One entity in a result, with its projected attributes and nested links."""

    entity_id: str
    entity_type: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    links: Mapping[str, tuple[ResultRow, ...]] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        if name == "id":
            return self.entity_id
        return self.attributes.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.entity_id, **self.attributes}
        for label, rows in self.links.items():
            result[label] = [row.to_dict() for row in rows]
        return result


@dataclass(frozen=True)
class ResultSet:
    """Ordered rows produced by evaluating a query."""

    entity_type: str
    rows: tuple[ResultRow, ...] = ()

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[ResultRow]:
        return iter(self.rows)

    def ids(self) -> list[str]:
        return [row.entity_id for row in self.rows]

    def by_id(self) -> dict[str, ResultRow]:
        return {row.entity_id: row for row in self.rows}

    def first(self) -> Optional[ResultRow]:
        return self.rows[0] if self.rows else None

    def to_list(self) -> list[dict[str, Any]]:
        return [row.to_dict() for row in self.rows]


@dataclass(frozen=True)
class QueryDependencies:
    """Entity types and links a query reads."""

    entity_types: frozenset[str]
    link_names: frozenset[str]


Term = Union[Predicate, Condition]


class QueryEngine:
    """Evaluates queries against snapshots.

    Example:
        >>> engine = QueryEngine(registry)
        >>> result = engine.evaluate(Query("technicians", where={"id": "t1"}), snapshot)
        >>> result.first().get("firstName")
        'Amy'
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    # Static analysis

    def dependencies(self, query: Query) -> QueryDependencies:
        """Entity types and link names the query transitively reads.

        Raises:
            QueryError: If the query references unknown types, labels or attributes
        """
        types: set[str] = set()
        links: set[str] = set()
        self._collect(query.entity_type, query, types, links)
        return QueryDependencies(frozenset(types), frozenset(links))

    def check(self, query: Query) -> None:
        """Validate every name the query references."""
        self.dependencies(query)

    def _collect(
        self,
        entity_type: str,
        selection: Union[Query, Selection],
        types: set[str],
        links: set[str],
    ) -> None:
        type_def = self.registry.get_entity_type(entity_type)
        if type_def is None:
            raise QueryError(f"Unknown entity type '{entity_type}'")
        types.add(entity_type)

        for predicate in _predicates(selection.condition()):
            current = entity_type
            for label in predicate.labels:
                end = self._end(current, label)
                links.add(end.link.name)
                types.add(end.target_type)
                current = end.target_type
            self._check_attribute(current, predicate.attribute)

        for name in selection.fields or ():
            self._check_attribute(entity_type, name)
        for name, _ in selection.order_by:
            self._check_attribute(entity_type, name)

        for label, nested in selection.links.items():
            end = self._end(entity_type, label)
            links.add(end.link.name)
            self._collect(end.target_type, nested, types, links)

    def _end(self, entity_type: str, label: str):
        end = self.registry.resolve_label(entity_type, label)
        if end is None:
            raise QueryError(f"Entity type '{entity_type}' has no link label '{label}'", field_name=label)
        return end

    def _check_attribute(self, entity_type: str, name: str) -> None:
        if name == "id":
            return
        type_def = self.registry.get_entity_type(entity_type)
        if type_def is None or type_def.get_field(name) is None:
            raise QueryError(f"Entity type '{entity_type}' has no attribute '{name}'", field_name=name)

    # Evaluation

    def evaluate(self, query: Query, snapshot: GraphSnapshot) -> ResultSet:
        """Evaluate a query against a snapshot.

        Raises:
            QueryError: If the query references unknown names
        """
        self.check(query)
        ids = snapshot.entity_ids_of_type(query.entity_type)
        rows = self._select(query.entity_type, query, ids, snapshot)
        return ResultSet(entity_type=query.entity_type, rows=rows)

    def _select(
        self,
        entity_type: str,
        selection: Union[Query, Selection],
        ids: Iterable[str],
        snapshot: GraphSnapshot,
    ) -> tuple[ResultRow, ...]:
        condition = selection.condition()
        candidates = self._narrow(entity_type, condition, frozenset(ids), snapshot)

        matches = [
            entity
            for entity in (snapshot.get(entity_id) for entity_id in candidates)
            if entity is not None and self._matches(entity, condition, snapshot)
        ]
        matches.sort(key=lambda e: e.entity_id)
        for name, descending in reversed(selection.order_by):
            matches.sort(key=lambda e, n=name, d=descending: _sort_key(e.get(n), d), reverse=descending)
        if selection.limit is not None:
            matches = matches[: selection.limit]

        return tuple(self._row(entity, selection, snapshot) for entity in matches)

    def _narrow(
        self,
        entity_type: str,
        condition: Condition,
        ids: frozenset[str],
        snapshot: GraphSnapshot,
    ) -> frozenset[str]:
        """Use indexes for top-level equality predicates."""
        for term in condition.terms:
            if not isinstance(term, Predicate) or term.op != "$eq" or term.labels:
                continue
            if term.attribute == "id":
                ids = ids & {term.value} if isinstance(term.value, str) else frozenset()
            elif snapshot.is_indexed(entity_type, term.attribute) and term.value is not None:
                ids = ids & snapshot.find_by_value(entity_type, term.attribute, term.value)
        return ids

    def _row(
        self,
        entity: Entity,
        selection: Union[Query, Selection],
        snapshot: GraphSnapshot,
    ) -> ResultRow:
        if selection.fields is None:
            attributes = dict(entity.attributes)
        else:
            attributes = {n: entity.attributes[n] for n in selection.fields if n in entity.attributes}

        links = {}
        for label, nested in selection.links.items():
            end = self.registry.resolve_label(entity.entity_type, label)
            targets = snapshot.neighbors(end.link.name, entity.entity_id, end.forward)
            links[label] = self._select(end.target_type, nested, targets, snapshot)

        return ResultRow(entity.entity_id, entity.entity_type, attributes, links)

    def _matches(self, entity: Entity, condition: Condition, snapshot: GraphSnapshot) -> bool:
        results = (self._term(entity, term, snapshot) for term in condition.terms)
        if condition.kind == "or":
            return any(results)
        return all(results)

    def _term(self, entity: Entity, term: Term, snapshot: GraphSnapshot) -> bool:
        if isinstance(term, Condition):
            return self._matches(entity, term, snapshot)
        return any(
            _compare(target.get(term.attribute, _MISSING), term.op, term.value)
            for target in self._reach(entity, term.labels, snapshot)
        )

    def _reach(
        self,
        entity: Entity,
        labels: tuple[str, ...],
        snapshot: GraphSnapshot,
    ) -> Iterator[Entity]:
        if not labels:
            yield entity
            return
        for target_id in sorted(snapshot.traverse(entity.entity_id, labels[0])):
            target = snapshot.get(target_id)
            if target is not None:
                yield from self._reach(target, labels[1:], snapshot)


def _predicates(condition: Condition) -> Iterator[Predicate]:
    for term in condition.terms:
        if isinstance(term, Condition):
            yield from _predicates(term)
        else:
            yield term


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "$isNull":
        return (actual is _MISSING or actual is None) == bool(expected)
    if actual is _MISSING or actual is None:
        return op == "$ne" and expected is not None
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op == "$in":
        return any(actual == candidate for candidate in expected)
    if op == "$like":
        return isinstance(actual, str) and _like(expected).fullmatch(actual) is not None
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
    except TypeError:
        return False
    raise QueryError(f"Unknown operator '{op}'")


def _like(pattern: str) -> re.Pattern[str]:
    parts = (re.escape(part) for part in str(pattern).split("%"))
    return re.compile(".*".join(parts), re.DOTALL)


def _sort_key(value: Any, descending: bool = False) -> tuple:
    # None sorts last in both directions; values of different kinds never
    # compare directly.
    if value is None:
        return (-1 if descending else 1, "", 0)
    if isinstance(value, bool):
        return (0, "bool", value)
    if isinstance(value, (int, float)):
        return (0, "number", value)
    if isinstance(value, str):
        return (0, "string", value)
    return (0, "json", json.dumps(value, sort_keys=True, default=str))
