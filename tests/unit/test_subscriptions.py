"""
Unit tests for the subscription manager.

Tests cover:
- Initial delivery on subscribe
- Added / removed / updated diffs
- Minimal re-evaluation (unrelated mutations never re-run a query)
- Link changes reaching queries that traverse them
- Unsubscribe, including from inside a listener
- Listener failures isolated from other listeners
- Changes published from inside a listener
"""

import pytest

from livegraph.errors import QueryError
from livegraph.query import Query, QueryEngine, Selection
from livegraph.store import LocalGraphStore
from livegraph.subscribe import SubscriptionManager, SubscriptionState
from livegraph.txn import Create, Delete, LinkAdd, Transaction, Update


class Recorder:
    """Collects notifications delivered to a listener."""

    def __init__(self):
        self.notifications = []

    def __call__(self, notification):
        self.notifications.append(notification)

    @property
    def last(self):
        return self.notifications[-1]


class TestSubscriptionManager:
    """Tests for SubscriptionManager."""

    @pytest.fixture
    def store(self, registry):
        """Store with one company and two technicians."""
        store = LocalGraphStore(registry)
        store.apply(
            Transaction.build(
                [
                    Create("companyProfiles", "c1", {"companyName": "Acme"}),
                    Create("technicians", "t1", {"firstName": "Amy", "phone": "5551234567"}),
                    Create("technicians", "t2", {"firstName": "Bob"}),
                ]
            )
        )
        return store

    @pytest.fixture
    def manager(self, registry, store):
        """Manager reading the store's snapshot."""
        return SubscriptionManager(QueryEngine(registry), lambda: store.snapshot)

    def apply(self, store, manager, *ops):
        applied = store.apply(Transaction.build(list(ops)))
        return manager.notify(applied.changes)

    def test_initial_notification(self, manager):
        """Subscribing delivers the current result once."""
        recorder = Recorder()

        handle = manager.subscribe(Query("technicians"), recorder)

        assert handle.state is SubscriptionState.ACTIVE
        assert len(recorder.notifications) == 1
        initial = recorder.last
        assert initial.initial is True
        assert [row.entity_id for row in initial.added] == ["t1", "t2"]
        assert initial.result.ids() == ["t1", "t2"]

    def test_subscribe_unknown_type_raises(self, manager):
        """Invalid queries fail at subscribe time."""
        with pytest.raises(QueryError):
            manager.subscribe(Query("jobs"), Recorder())
        assert len(manager) == 0

    def test_update_delivers_one_notification(self, store, manager):
        """Updating one attribute yields exactly one update naming it."""
        recorder = Recorder()
        manager.subscribe(Query("technicians", where={"id": "t1"}), recorder)

        delivered = self.apply(store, manager, Update("t1", {"phone": "5559999999"}))

        assert delivered == 1
        assert len(recorder.notifications) == 2
        change = recorder.last
        assert change.added == ()
        assert change.removed == ()
        assert [u.entity_id for u in change.updated] == ["t1"]
        assert change.updated_fields("t1") == frozenset({"phone"})
        assert change.result.first().get("phone") == "5559999999"

    def test_added_and_removed(self, store, manager):
        """Entities entering or leaving the filter show up as added/removed."""
        recorder = Recorder()
        manager.subscribe(Query("technicians", where={"phone": {"$isNull": False}}), recorder)

        self.apply(
            store,
            manager,
            Update("t2", {"phone": "5550000000"}),
            Update("t1", {"phone": None}),
        )

        change = recorder.last
        assert [row.entity_id for row in change.added] == ["t2"]
        assert [row.entity_id for row in change.removed] == ["t1"]
        assert change.updated == ()

    def test_delete_removes_row(self, store, manager):
        """Deleting an entity removes its row."""
        recorder = Recorder()
        manager.subscribe(Query("technicians"), recorder)

        self.apply(store, manager, Delete("t2"))

        assert [row.entity_id for row in recorder.last.removed] == ["t2"]
        assert recorder.last.result.ids() == ["t1"]

    def test_unrelated_type_not_reevaluated(self, store, manager):
        """Mutating another entity type never re-evaluates the query."""
        recorder = Recorder()
        handle = manager.subscribe(Query("technicians"), recorder)
        evaluations = handle.evaluations

        self.apply(store, manager, Update("c1", {"companyName": "Acme Inc"}))

        assert handle.evaluations == evaluations
        assert len(recorder.notifications) == 1

    def test_change_outside_filter_is_silent(self, store, manager):
        """A re-evaluation with an identical result delivers nothing."""
        recorder = Recorder()
        handle = manager.subscribe(Query("technicians", where={"id": "t1"}), recorder)

        delivered = self.apply(store, manager, Update("t2", {"phone": "5550000000"}))

        assert delivered == 0
        assert handle.evaluations == 2
        assert len(recorder.notifications) == 1

    def test_only_affected_subscriptions_run(self, store, manager):
        """Each mutation evaluates only the subscriptions that read what it touched."""
        technicians = manager.subscribe(Query("technicians"), Recorder())
        companies = manager.subscribe(Query("companyProfiles"), Recorder())
        manager.stats.evaluations = 0

        self.apply(store, manager, Update("t1", {"phone": "5559999999"}))

        assert manager.stats.evaluations == 1
        assert technicians.evaluations == 2
        assert companies.evaluations == 1

    def test_link_change_reaches_nested_query(self, store, manager):
        """Adding an edge updates queries that traverse the link."""
        recorder = Recorder()
        manager.subscribe(
            Query("companyProfiles", links={"technicians": Selection()}),
            recorder,
        )

        self.apply(store, manager, LinkAdd("c1", "technicians", "t1"))

        change = recorder.last
        assert change.updated_fields("c1") == frozenset({"technicians"})
        assert [t.entity_id for t in change.result.first().links["technicians"]] == ["t1"]

    def test_link_change_skips_flat_query(self, store, manager):
        """Edge changes do not re-evaluate queries that ignore the link."""
        handle = manager.subscribe(Query("technicians"), Recorder())

        self.apply(store, manager, LinkAdd("c1", "technicians", "t1"))

        assert handle.evaluations == 1

    def test_dotted_path_dependency(self, store, manager):
        """Filtering through a label depends on the linked type."""
        recorder = Recorder()
        manager.subscribe(Query("technicians", where={"company.companyName": "Acme Inc"}), recorder)
        self.apply(store, manager, LinkAdd("c1", "technicians", "t1"))
        assert recorder.last.initial is True

        self.apply(store, manager, Update("c1", {"companyName": "Acme Inc"}))

        assert [row.entity_id for row in recorder.last.added] == ["t1"]

    def test_reorder_is_a_change(self, store, manager):
        """A change in ordering alone is delivered."""
        recorder = Recorder()
        manager.subscribe(Query("technicians", order_by=(("firstName", False),)), recorder)

        self.apply(store, manager, Update("t1", {"firstName": "Zoe"}))

        assert recorder.last.result.ids() == ["t2", "t1"]
        assert recorder.last.updated_fields("t1") == frozenset({"firstName"})

    def test_unsubscribe_stops_delivery(self, store, manager):
        """No notifications after unsubscribe."""
        recorder = Recorder()
        handle = manager.subscribe(Query("technicians"), recorder)

        handle.unsubscribe()
        self.apply(store, manager, Update("t1", {"phone": "5559999999"}))

        assert handle.state is SubscriptionState.CANCELLED
        assert len(recorder.notifications) == 1
        assert len(manager) == 0

    def test_unsubscribe_twice_is_noop(self, manager):
        """Unsubscribing an already cancelled handle does nothing."""
        handle = manager.subscribe(Query("technicians"), Recorder())

        handle.unsubscribe()
        handle.unsubscribe()

        assert handle.state is SubscriptionState.CANCELLED

    def test_unsubscribe_inside_listener(self, store, manager):
        """A listener may cancel its own subscription while being notified."""
        received = []

        def listener(notification):
            received.append(notification)
            if not notification.initial:
                handle.unsubscribe()

        handle = manager.subscribe(Query("technicians"), listener)

        self.apply(store, manager, Update("t1", {"phone": "1"}))
        self.apply(store, manager, Update("t1", {"phone": "2"}))

        assert len(received) == 2
        assert handle.state is SubscriptionState.CANCELLED

    def test_listener_error_is_isolated(self, store, manager):
        """A raising listener does not block other listeners."""
        recorder = Recorder()

        def broken(notification):
            if not notification.initial:
                raise RuntimeError("boom")

        manager.subscribe(Query("technicians"), broken)
        manager.subscribe(Query("technicians"), recorder)

        self.apply(store, manager, Update("t1", {"phone": "5559999999"}))

        assert len(recorder.notifications) == 2
        assert manager.stats.listener_errors == 1

    def test_nested_notify_is_queued(self, store, manager):
        """A change published from inside a listener is delivered after the current pass."""
        order = []

        def writer(notification):
            order.append(("writer", notification.result.first().get("phone")))
            if notification.result.first().get("phone") == "1":
                assert self.apply(store, manager, Update("t1", {"phone": "2"})) == 0

        def reader(notification):
            order.append(("reader", notification.result.first().get("phone")))

        manager.subscribe(Query("technicians", where={"id": "t1"}), writer)
        handle = manager.subscribe(Query("technicians", where={"id": "t1"}), reader)

        delivered = self.apply(store, manager, Update("t1", {"phone": "1"}))

        assert order[2:] == [("writer", "1"), ("reader", "2"), ("writer", "2")]
        assert delivered == 3
        assert handle.result.first().get("phone") == "2"
        assert manager.stats.mutations == 2
