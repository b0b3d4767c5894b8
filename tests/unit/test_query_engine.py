"""
Unit tests for the query engine.

Tests cover:
- Filtering with every operator, "or" and "and"
- Dotted paths through link labels
- Projection, ordering, limits and deterministic tie-breaking
- Nested link selections
- The nested-dictionary query shape
- Static checks and dependency extraction
"""

import pytest

from livegraph.errors import QueryError
from livegraph.query import Query, QueryEngine, Selection
from livegraph.store import LocalGraphStore
from livegraph.txn import Create, LinkAdd, Transaction


class TestQueryEngine:
    """Tests for QueryEngine.evaluate()."""

    @pytest.fixture
    def engine(self, registry):
        """Query engine over the test schema."""
        return QueryEngine(registry)

    @pytest.fixture
    def snapshot(self, registry):
        """Two companies, two users and four technicians."""
        store = LocalGraphStore(registry)
        store.apply(
            Transaction.build(
                [
                    Create("companyProfiles", "c1", {"companyName": "Acme", "isCompanyAdmin": True}),
                    Create("companyProfiles", "c2", {"companyName": "Globex", "isCompanyAdmin": False}),
                    Create("$users", "u1", {"email": "amy@acme.com"}),
                    Create("$users", "u2", {"email": "hank@globex.com"}),
                    Create(
                        "technicians",
                        "t1",
                        {"firstName": "Amy", "phone": "5551234567", "rating": 4, "email": "amy@acme.com"},
                    ),
                    Create("technicians", "t2", {"firstName": "Bob", "rating": 5}),
                    Create("technicians", "t3", {"firstName": "Cat", "rating": 4, "phone": "5550000000"}),
                    Create("technicians", "t4", {"firstName": "Dan"}),
                    LinkAdd("c1", "$user", "u1"),
                    LinkAdd("c2", "$user", "u2"),
                    LinkAdd("c1", "technicians", "t1"),
                    LinkAdd("c1", "technicians", "t2"),
                    LinkAdd("c2", "technicians", "t3"),
                ]
            )
        )
        return store.snapshot

    def test_select_all_ordered_by_id(self, engine, snapshot):
        """Without ordering, rows come back by entity id."""
        result = engine.evaluate(Query("technicians"), snapshot)

        assert result.ids() == ["t1", "t2", "t3", "t4"]

    def test_evaluation_is_deterministic(self, engine, snapshot):
        """The same query on the same snapshot gives equal results."""
        query = Query("technicians", where={"rating": {"$gte": 4}}, order_by=(("rating", True),))

        assert engine.evaluate(query, snapshot) == engine.evaluate(query, snapshot)

    def test_empty_result(self, engine, snapshot):
        """No matches gives an empty result, not an error."""
        result = engine.evaluate(Query("technicians", where={"firstName": "Zed"}), snapshot)

        assert len(result) == 0
        assert result.first() is None

    def test_equality_on_id(self, engine, snapshot):
        """Filtering on id uses the primary index."""
        result = engine.evaluate(Query("technicians", where={"id": "t3"}), snapshot)

        assert result.ids() == ["t3"]

    def test_equality_on_indexed_attribute(self, engine, snapshot):
        """Indexed equality returns the matching entity."""
        result = engine.evaluate(Query("technicians", where={"email": "amy@acme.com"}), snapshot)

        assert result.ids() == ["t1"]

    @pytest.mark.parametrize(
        "where,expected",
        [
            ({"rating": 4}, ["t1", "t3"]),
            ({"rating": {"$ne": 4}}, ["t2", "t4"]),
            ({"rating": {"$gt": 4}}, ["t2"]),
            ({"rating": {"$gte": 4}}, ["t1", "t2", "t3"]),
            ({"rating": {"$lt": 5}}, ["t1", "t3"]),
            ({"rating": {"$lte": 5, "$gt": 4}}, ["t2"]),
            ({"firstName": {"$in": ["Amy", "Dan"]}}, ["t1", "t4"]),
            ({"phone": {"$isNull": True}}, ["t2", "t4"]),
            ({"phone": {"$isNull": False}}, ["t1", "t3"]),
            ({"firstName": {"$like": "%a%"}}, ["t3", "t4"]),
            ({"firstName": {"$like": "B%"}}, ["t2"]),
        ],
    )
    def test_operators(self, engine, snapshot, where, expected):
        """Each operator filters as documented."""
        assert engine.evaluate(Query("technicians", where=where), snapshot).ids() == expected

    def test_or(self, engine, snapshot):
        """'or' matches when any clause matches."""
        query = Query("technicians", where={"or": [{"firstName": "Amy"}, {"rating": 5}]})

        assert engine.evaluate(query, snapshot).ids() == ["t1", "t2"]

    def test_and(self, engine, snapshot):
        """'and' matches when every clause matches."""
        query = Query("technicians", where={"and": [{"rating": 4}, {"phone": {"$isNull": False}}]})

        assert engine.evaluate(query, snapshot).ids() == ["t1", "t3"]

    def test_predicate_order_is_irrelevant(self, engine, snapshot):
        """Reordering conjunctive predicates gives the same rows."""
        first = Query("technicians", where={"rating": 4, "phone": "5550000000"})
        second = Query("technicians", where={"phone": "5550000000", "rating": 4})

        assert engine.evaluate(first, snapshot) == engine.evaluate(second, snapshot)

    def test_dotted_path(self, engine, snapshot):
        """Dotted paths filter on attributes of linked entities."""
        query = Query("technicians", where={"company.companyName": "Acme"})

        assert engine.evaluate(query, snapshot).ids() == ["t1", "t2"]

    def test_two_hop_path(self, engine, snapshot):
        """Paths may traverse several labels."""
        query = Query("technicians", where={"company.$user.email": {"$like": "%@globex.com"}})

        assert engine.evaluate(query, snapshot).ids() == ["t3"]

    def test_projection(self, engine, snapshot):
        """fields restricts the returned attributes."""
        result = engine.evaluate(Query("technicians", where={"id": "t1"}, fields=["firstName"]), snapshot)

        assert result.first().attributes == {"firstName": "Amy"}
        assert result.first().get("id") == "t1"

    def test_order_by_with_id_tie_break(self, engine, snapshot):
        """Ordering is stable on ties, broken by id."""
        query = Query("technicians", order_by=(("rating", True),))

        assert engine.evaluate(query, snapshot).ids() == ["t2", "t1", "t3", "t4"]

    def test_missing_values_sort_last(self, engine, snapshot):
        """Entities without the ordering attribute come last in both directions."""
        ascending = Query("technicians", order_by=(("rating", False),))

        assert engine.evaluate(ascending, snapshot).ids() == ["t1", "t3", "t2", "t4"]

    def test_limit(self, engine, snapshot):
        """limit truncates after ordering."""
        query = Query("technicians", order_by=(("firstName", True),), limit=2)

        assert engine.evaluate(query, snapshot).ids() == ["t4", "t3"]

    def test_negative_limit_rejected(self):
        """Limits must be non-negative."""
        with pytest.raises(QueryError):
            Query("technicians", limit=-1)

    def test_nested_selection(self, engine, snapshot):
        """Link selections nest linked rows under their label."""
        query = Query(
            "companyProfiles",
            where={"id": "c1"},
            links={
                "$user": Selection(fields=("email",)),
                "technicians": Selection(order_by=(("firstName", True),)),
            },
        )

        row = engine.evaluate(query, snapshot).first()

        assert [u.get("email") for u in row.links["$user"]] == ["amy@acme.com"]
        assert [t.entity_id for t in row.links["technicians"]] == ["t2", "t1"]

    def test_nested_selection_without_targets(self, engine, snapshot):
        """A row with no linked entities gets an empty tuple, not an error."""
        query = Query("technicians", where={"id": "t4"}, links={"company": Selection()})

        row = engine.evaluate(query, snapshot).first()

        assert row.links["company"] == ()
        assert row.to_dict() == {"id": "t4", "firstName": "Dan", "company": []}

    def test_nested_where(self, engine, snapshot):
        """Nested selections filter linked rows."""
        query = Query(
            "companyProfiles",
            links={"technicians": Selection(where={"rating": 5})},
        )

        rows = engine.evaluate(query, snapshot).by_id()

        assert [t.entity_id for t in rows["c1"].links["technicians"]] == ["t2"]
        assert rows["c2"].links["technicians"] == ()


class TestQueryChecks:
    """Tests for static validation and dependency extraction."""

    @pytest.fixture
    def engine(self, registry):
        """Query engine over the test schema."""
        return QueryEngine(registry)

    def test_unknown_entity_type(self, engine):
        """Unknown entity types raise QueryError."""
        with pytest.raises(QueryError, match="Unknown entity type"):
            engine.check(Query("jobs"))

    def test_unknown_attribute(self, engine):
        """Unknown attributes in where, fields or order raise QueryError."""
        for query in (
            Query("technicians", where={"phon": "1"}),
            Query("technicians", fields=("phon",)),
            Query("technicians", order_by=(("phon", False),)),
        ):
            with pytest.raises(QueryError, match="no attribute 'phon'"):
                engine.check(query)

    def test_unknown_label(self, engine):
        """Unknown labels in paths or selections raise QueryError."""
        with pytest.raises(QueryError, match="no link label"):
            engine.check(Query("technicians", where={"profile.email": "x"}))
        with pytest.raises(QueryError, match="no link label"):
            engine.check(Query("technicians", links={"$user": Selection()}))

    def test_unknown_operator(self, engine):
        """Unknown operators raise QueryError."""
        with pytest.raises(QueryError, match="Unknown operator"):
            engine.check(Query("technicians", where={"rating": {"$between": [1, 2]}}))

    def test_in_requires_list(self, engine):
        """$in takes a list."""
        with pytest.raises(QueryError, match="expects a list"):
            engine.check(Query("technicians", where={"rating": {"$in": 4}}))

    def test_dependencies(self, engine):
        """Dependencies cover every type and link the query reads."""
        deps = engine.dependencies(
            Query(
                "technicians",
                where={"company.companyName": "Acme"},
                links={"company": Selection(links={"$user": Selection()})},
            )
        )

        assert deps.entity_types == frozenset({"technicians", "companyProfiles", "$users"})
        assert deps.link_names == frozenset({"companyTechnicians", "userProfile"})

    def test_dependencies_single_type(self, engine):
        """A flat query depends on its own type only."""
        deps = engine.dependencies(Query("technicians", where={"rating": 4}))

        assert deps.entity_types == frozenset({"technicians"})
        assert deps.link_names == frozenset()


class TestInstaQLShape:
    """Tests for Query.from_instaql()."""

    def test_top_level_options(self):
        """$ options map onto Query fields."""
        query = Query.from_instaql(
            {
                "technicians": {
                    "$": {
                        "where": {"rating": {"$gte": 4}},
                        "fields": ["firstName"],
                        "order": {"rating": "desc"},
                        "limit": 2,
                    }
                }
            }
        )

        assert query.entity_type == "technicians"
        assert query.where == {"rating": {"$gte": 4}}
        assert query.fields == ("firstName",)
        assert query.order_by == (("rating", True),)
        assert query.limit == 2

    def test_nested_labels(self):
        """Other keys become nested selections."""
        query = Query.from_instaql({"companyProfiles": {"$user": {}, "technicians": {"$": {"limit": 1}}}})

        assert set(query.links) == {"$user", "technicians"}
        assert query.links["technicians"].limit == 1

    def test_empty_body(self):
        """An empty body selects everything."""
        query = Query.from_instaql({"technicians": {}})

        assert query.where == {}
        assert query.links == {}

    def test_requires_single_type(self):
        """Exactly one top-level entity type is allowed."""
        with pytest.raises(QueryError):
            Query.from_instaql({"technicians": {}, "companyProfiles": {}})

    def test_unknown_option(self):
        """Unknown $ options are rejected."""
        with pytest.raises(QueryError, match="Unknown query options"):
            Query.from_instaql({"technicians": {"$": {"sort": "firstName"}}})

    def test_bad_direction(self):
        """Order directions are asc or desc."""
        with pytest.raises(QueryError):
            Query.from_instaql({"technicians": {"$": {"order": {"firstName": "up"}}}})
