"""
Subscription manager for livegraph.

Tracks live queries and their last-computed results. On every graph
mutation the manager looks up the affected subscriptions in a dependency
index (entity type -> subscriptions, link name -> subscriptions), re-evaluates
only those, diffs old against new results and delivers a ChangeNotification
when something changed.

Subscription lifecycle:
    PENDING -> ACTIVE -> CANCELLED

Invariants:
    - A mutation never re-evaluates a subscription whose query reads none of
      the touched entity types or links
    - A listener that raises does not prevent delivery to other listeners
    - After unsubscribe() returns, the listener is dropped; a delivery that was
      already in flight is the last one it receives
    - Notifications are delivered in the order mutations were published

How to change safely:
    - Keep QueryEngine.dependencies() in sync with what evaluation reads
    - Watch stats.evaluations in tests when touching the index
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..query.engine import QueryDependencies, QueryEngine, ResultRow, ResultSet
from ..query.model import Query
from ..store.graph import ChangeSet, GraphSnapshot

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    """Lifecycle state of a subscription."""

    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class EntityUpdate:
    """An entity present before and after a change whose row differs.

    Attributes:
        entity_id: The updated entity
        changed_fields: Attribute names (and link labels of nested
            selections) whose values changed
    """

    entity_id: str
    changed_fields: frozenset[str]


@dataclass(frozen=True)
class ChangeNotification:
    """Delivered to a listener when its query result changes.

    Attributes:
        subscription_id: The subscription being notified
        added: Rows that entered the result
        removed: Rows that left the result (as they were before the change)
        updated: Entities that stayed in the result but changed
        result: The full new result
        initial: True for the first delivery after subscribing
        reverted: True when the change undoes optimistic local state
            (a rejected, cancelled or conflicting transaction)
    """

    subscription_id: int
    added: tuple[ResultRow, ...]
    removed: tuple[ResultRow, ...]
    updated: tuple[EntityUpdate, ...]
    result: ResultSet
    initial: bool = False
    reverted: bool = False

    def updated_fields(self, entity_id: str) -> frozenset[str]:
        for update in self.updated:
            if update.entity_id == entity_id:
                return update.changed_fields
        return frozenset()


Listener = Callable[[ChangeNotification], None]


@dataclass
class SubscriptionStats:
    """Counters for observing how much work the manager does."""

    evaluations: int = 0
    notifications: int = 0
    listener_errors: int = 0
    mutations: int = 0


class SubscriptionHandle:
    """A live query registered with the manager.

    Example:
        >>> handle = manager.subscribe(Query("technicians"), print)
        >>> handle.state
        <SubscriptionState.ACTIVE: 'active'>
        >>> handle.unsubscribe()
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        subscription_id: int,
        query: Query,
        listener: Listener,
        dependencies: QueryDependencies,
    ) -> None:
        self._manager = manager
        self.id = subscription_id
        self.query = query
        self.dependencies = dependencies
        self.state = SubscriptionState.PENDING
        self.result: Optional[ResultSet] = None
        self.evaluations = 0
        self._listener: Optional[Listener] = listener

    @property
    def active(self) -> bool:
        return self.state is SubscriptionState.ACTIVE

    def unsubscribe(self) -> None:
        self._manager.unsubscribe(self)

    def __repr__(self) -> str:
        return f"SubscriptionHandle(id={self.id}, type={self.query.entity_type!r}, state={self.state.value})"


class SubscriptionManager:
    """Maintains live queries over a stream of graph changes.

    Thread safety:
        Registration and the dependency index are guarded by a lock. notify()
        queues change sets; whichever call finds the queue idle drains it, so
        notifications are never delivered concurrently. A notify() made from
        inside a listener only queues, and its changes are delivered after
        the current pass finishes.
    """

    def __init__(
        self,
        engine: QueryEngine,
        snapshot: Callable[[], GraphSnapshot],
    ) -> None:
        """Initialize the manager.

        Args:
            engine: Query engine used for evaluation
            snapshot: Returns the current snapshot (used for initial results)
        """
        self.engine = engine
        self._snapshot = snapshot
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, SubscriptionHandle] = {}
        self._by_type: dict[str, set[int]] = {}
        self._by_link: dict[str, set[int]] = {}
        self._queue: deque[tuple[ChangeSet, bool]] = deque()
        self._draining = False
        self.stats = SubscriptionStats()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, query: Query, on_change: Listener) -> SubscriptionHandle:
        """Register a live query and deliver its initial result.

        Raises:
            QueryError: If the query references unknown types, labels or attributes
        """
        dependencies = self.engine.dependencies(query)
        with self._lock:
            handle = SubscriptionHandle(self, next(self._ids), query, on_change, dependencies)
            self._subscriptions[handle.id] = handle
            for entity_type in dependencies.entity_types:
                self._by_type.setdefault(entity_type, set()).add(handle.id)
            for link_name in dependencies.link_names:
                self._by_link.setdefault(link_name, set()).add(handle.id)

            result = self._evaluate(handle, self._snapshot())
            handle.result = result
            handle.state = SubscriptionState.ACTIVE

        logger.debug(
            "Subscription registered",
            extra={
                "subscription_id": handle.id,
                "entity_type": query.entity_type,
                "types": sorted(dependencies.entity_types),
                "links": sorted(dependencies.link_names),
            },
        )
        self._deliver(
            handle,
            ChangeNotification(
                subscription_id=handle.id,
                added=result.rows,
                removed=(),
                updated=(),
                result=result,
                initial=True,
            ),
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Cancel a subscription. Safe to call from inside a listener."""
        with self._lock:
            if handle.state is SubscriptionState.CANCELLED:
                return
            handle.state = SubscriptionState.CANCELLED
            handle._listener = None
            self._subscriptions.pop(handle.id, None)
            for index, keys in (
                (self._by_type, handle.dependencies.entity_types),
                (self._by_link, handle.dependencies.link_names),
            ):
                for key in keys:
                    ids = index.get(key)
                    if ids is not None:
                        ids.discard(handle.id)
                        if not ids:
                            del index[key]
        logger.debug("Subscription cancelled", extra={"subscription_id": handle.id})

    def affected(self, changes: ChangeSet) -> list[SubscriptionHandle]:
        """Subscriptions whose dependencies intersect a change set, by id."""
        with self._lock:
            ids: set[int] = set()
            for entity_type in changes.entity_types:
                ids |= self._by_type.get(entity_type, set())
            for link_name in changes.link_names:
                ids |= self._by_link.get(link_name, set())
            return [self._subscriptions[i] for i in sorted(ids) if i in self._subscriptions]

    def notify(self, changes: ChangeSet, *, reverted: bool = False) -> int:
        """Queue a change set and deliver diffs for the affected subscriptions.

        Affected subscriptions are evaluated against the current snapshot at
        delivery time, so a pass never stores a result older than one already
        delivered.

        Args:
            changes: What the mutation touched
            reverted: Whether the mutation undoes optimistic state

        Returns:
            Number of notifications delivered by this call; 0 when the change
            set was only queued for a drain already in progress
        """
        if changes.empty:
            return 0
        with self._lock:
            self.stats.mutations += 1
            self._queue.append((changes, reverted))
            if self._draining:
                return 0
            self._draining = True

        delivered = 0
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._draining = False
                        return delivered
                    changes, reverted = self._queue.popleft()
                delivered += self._publish(changes, reverted)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _publish(self, changes: ChangeSet, reverted: bool) -> int:
        delivered = 0
        for handle in self.affected(changes):
            with self._lock:
                if handle.state is not SubscriptionState.ACTIVE:
                    continue
                previous = handle.result
                result = self._evaluate(handle, self._snapshot())
                handle.result = result
            notification = diff_results(handle.id, previous, result, reverted=reverted)
            if notification is None:
                continue
            if self._deliver(handle, notification):
                delivered += 1
        return delivered

    def _evaluate(self, handle: SubscriptionHandle, snapshot: GraphSnapshot) -> ResultSet:
        self.stats.evaluations += 1
        handle.evaluations += 1
        return self.engine.evaluate(handle.query, snapshot)

    def _deliver(self, handle: SubscriptionHandle, notification: ChangeNotification) -> bool:
        listener = handle._listener
        if listener is None or handle.state is SubscriptionState.CANCELLED:
            return False
        self.stats.notifications += 1
        try:
            listener(notification)
        except Exception:
            self.stats.listener_errors += 1
            logger.exception(
                "Subscription listener raised",
                extra={"subscription_id": handle.id, "entity_type": handle.query.entity_type},
            )
        return True


def diff_results(
    subscription_id: int,
    previous: Optional[ResultSet],
    current: ResultSet,
    *,
    reverted: bool = False,
) -> Optional[ChangeNotification]:
    """Diff two results of the same query.

    Returns None when the results are identical.
    """
    before = previous.by_id() if previous is not None else {}
    after = current.by_id()

    added = tuple(row for row in current.rows if row.entity_id not in before)
    removed = tuple(row for entity_id, row in before.items() if entity_id not in after)
    updated = []
    for row in current.rows:
        old = before.get(row.entity_id)
        if old is None or old == row:
            continue
        updated.append(EntityUpdate(row.entity_id, _changed_fields(old, row)))

    reordered = previous is not None and previous.ids() != current.ids()
    if not (added or removed or updated or reordered):
        return None
    return ChangeNotification(
        subscription_id=subscription_id,
        added=added,
        removed=removed,
        updated=tuple(updated),
        result=current,
        reverted=reverted,
    )


def _changed_fields(old: ResultRow, new: ResultRow) -> frozenset[str]:
    names = {
        name
        for name in set(old.attributes) | set(new.attributes)
        if old.attributes.get(name, _MISSING) != new.attributes.get(name, _MISSING)
    }
    names |= {
        label
        for label in set(old.links) | set(new.links)
        if old.links.get(label) != new.links.get(label)
    }
    return frozenset(names)


_MISSING = object()
