"""
Unit tests for tree filtering and flattening.
"""
import pytest

from conftest import make_record
from topicscope.tree.store import TopicStore
from topicscope.tree.view import filter_tree, flatten_tree, visible_items, to_nested

NOW = 1_700_000_000_000
MINUTE = 60 * 1000


@pytest.fixture
def store():
    s = TopicStore(auto_expand_depth=0)
    s.batch_upsert([
        make_record("x/y", retained=True, ts=NOW - 1 * MINUTE),
        make_record("x/z", retained=False, ts=NOW - 30 * MINUTE),
        make_record("sensors/room1/temp", ts=NOW - 2 * MINUTE),
        make_record("sensors/room2/Humidity", ts=NOW - 90 * MINUTE),
    ])
    return s


# ─────────────────────────────────────────────
# filter_tree
# ─────────────────────────────────────────────

class TestFilterTree:
    def test_retained_only_includes_ancestors(self, store):
        assert filter_tree(store.nodes, "", retained_only=True, now=NOW) == {"x", "x/y"}

    def test_query_case_insensitive(self, store):
        result = filter_tree(store.nodes, "humid", now=NOW)
        assert result == {"sensors", "sensors/room2", "sensors/room2/Humidity"}

    def test_query_matches_path(self, store):
        result = filter_tree(store.nodes, "room1/te", now=NOW)
        assert result == {"sensors", "sensors/room1", "sensors/room1/temp"}

    def test_path_match_covers_subtree(self, store):
        # Full paths of descendants contain the query, so they match on their own
        result = filter_tree(store.nodes, "sensors", now=NOW)
        assert result == {
            "sensors", "sensors/room1", "sensors/room1/temp",
            "sensors/room2", "sensors/room2/Humidity",
        }

    def test_descendants_of_match_not_added(self):
        s = TopicStore()
        s.upsert(make_record("p", retained=True))
        s.upsert(make_record("p/c", retained=False))
        s.upsert(make_record("p/c/d", retained=False))
        assert filter_tree(s.nodes, "", retained_only=True) == {"p"}

    def test_no_match(self, store):
        assert filter_tree(store.nodes, "qqq", now=NOW) == set()

    def test_changed_within(self, store):
        result = filter_tree(store.nodes, "", changed_in_minutes=5, now=NOW)
        assert "x/y" in result
        assert "sensors/room1/temp" in result
        assert "x/z" not in result
        assert "sensors/room2/Humidity" not in result

    def test_nodes_without_timestamp_not_excluded_by_time(self, store):
        result = filter_tree(store.nodes, "", changed_in_minutes=5, now=NOW)
        assert "sensors/room2" in result

    def test_combined_predicates(self, store):
        result = filter_tree(store.nodes, "z", retained_only=True, now=NOW)
        assert result == set()

    def test_ancestor_closure_property(self, store):
        for query in ["", "x", "room", "temp", "y", "sens"]:
            result = filter_tree(store.nodes, query, now=NOW)
            for node_id in result:
                parent = store.nodes[node_id].parent_id
                while parent is not None:
                    assert parent in result
                    parent = store.nodes[parent].parent_id


# ─────────────────────────────────────────────
# flatten_tree
# ─────────────────────────────────────────────

class TestFlattenTree:
    def test_collapsed_shows_roots_only(self, store):
        items = flatten_tree(store.nodes)
        assert [(i.id, i.depth) for i in items] == [("sensors", 0), ("x", 0)]

    def test_expanded_preorder(self, store):
        store.expand_all()
        items = flatten_tree(store.nodes)
        assert [(i.id, i.depth) for i in items] == [
            ("sensors", 0),
            ("sensors/room1", 1),
            ("sensors/room1/temp", 2),
            ("sensors/room2", 1),
            ("sensors/room2/Humidity", 2),
            ("x", 0),
            ("x/y", 1),
            ("x/z", 1),
        ]

    def test_expanded_set_argument(self, store):
        items = flatten_tree(store.nodes, {"x"})
        assert [i.id for i in items] == ["sensors", "x", "x/y", "x/z"]

    def test_explicit_root_ids(self, store):
        store.expand_all()
        items = flatten_tree(store.nodes, root_ids=["x"])
        assert [i.id for i in items] == ["x", "x/y", "x/z"]

    def test_collapsed_parent_hides_expanded_child(self, store):
        store.toggle_expanded("sensors/room1")
        items = flatten_tree(store.nodes)
        assert "sensors/room1/temp" not in [i.id for i in items]

    def test_does_not_mutate(self, store):
        before = {k: (list(v.children), v.expanded) for k, v in store.nodes.items()}
        flatten_tree(store.nodes, {"x"})
        filter_tree(store.nodes, "x", retained_only=True, now=NOW)
        after = {k: (list(v.children), v.expanded) for k, v in store.nodes.items()}
        assert before == after

    def test_deep_topic(self):
        s = TopicStore()
        s.ensure_path("/".join(f"l{i}" for i in range(2000)))
        s.expand_all()
        items = flatten_tree(s.nodes)
        assert len(items) == 2000
        assert items[-1].depth == 1999


# ─────────────────────────────────────────────
# Filter + flatten
# ─────────────────────────────────────────────

class TestVisibleItems:
    def test_no_filter_is_plain_flatten(self, store):
        assert visible_items(store.nodes) == flatten_tree(store.nodes)

    def test_filtered_branches_hidden_even_if_expanded(self, store):
        store.expand_all()
        items = visible_items(store.nodes, retained_only=True, now=NOW)
        assert [(i.id, i.depth) for i in items] == [("x", 0), ("x/y", 1)]

    def test_filter_respects_collapse(self, store):
        items = visible_items(store.nodes, query="temp", now=NOW)
        assert [i.id for i in items] == ["sensors"]

    def test_filter_leaves_store_untouched(self, store):
        store.expand_all()
        visible_items(store.nodes, retained_only=True, now=NOW)
        assert store.nodes["x"].children == ["x/y", "x/z"]


def test_to_nested(store):
    nested = to_nested(store.nodes)
    assert [n["name"] for n in nested] == ["sensors", "x"]
    x = nested[1]
    assert [c["id"] for c in x["children"]] == ["x/y", "x/z"]
    assert "children" not in x["children"][0]
    assert x["children"][0]["retained"] is True
