"""Tests for the graph store and its per-note diffs."""

import threading

import pytest

from notegraph.errors import ConflictError, InvalidEdgeError, NodeNotFoundError
from notegraph.models import USER_ORIGIN, ConnectionType

from conftest import edge_keys, make_edge

CO = ConnectionType.CO_OCCURS_WITH
LINK = ConnectionType.EXPLICIT_LINK


class TestApplyDiff:
    def test_adds_edges(self, store):
        result = store.apply_diff("n1", [make_edge("n1", "p1"), make_edge("n1", "p2")])
        assert len(result.added) == 2
        assert edge_keys(store.get_edges("n1")) == {("n1", "p1", "mentions"), ("n1", "p2", "mentions")}
        assert store.check_consistency() == []

    def test_same_diff_is_unchanged(self, store):
        store.apply_diff("n1", [make_edge("n1", "p1")])
        result = store.apply_diff("n1", [make_edge("n1", "p1")])
        assert not result.changed
        assert len(result.unchanged) == 1

    def test_replaces_previous_claims(self, store):
        store.apply_diff("n1", [make_edge("n1", "p1"), make_edge("n1", "p2")])
        result = store.apply_diff("n1", [make_edge("n1", "p2", strength=0.9)])
        assert [k[1] for k in result.removed] == ["p1"]
        assert [k[1] for k in result.updated] == ["p2"]
        assert store.get_edge("n1", "p2", ConnectionType.MENTIONS).strength == 0.9
        assert store.get_edge("n1", "p1", ConnectionType.MENTIONS) is None

    def test_empty_diff_clears_detected_edges(self, store):
        store.apply_diff("n1", [make_edge("n1", "p1")])
        store.apply_diff("n1", [])
        assert store.get_edges("n1") == []
        assert store.check_consistency() == []

    def test_manual_edges_untouched(self, store):
        store.add_manual_edge("n1", "p1", LINK)
        store.apply_diff("n1", [make_edge("n1", "p2")])
        store.apply_diff("n1", [])
        assert store.get_edge("n1", "p1", LINK) is not None

    def test_rejects_manual_types(self, store):
        with pytest.raises(InvalidEdgeError):
            store.apply_diff("n1", [make_edge("n1", "p1", type=LINK)])

    def test_rejects_self_loop(self, store):
        with pytest.raises(InvalidEdgeError):
            store.apply_diff("n1", [make_edge("n1", "n1")])

    def test_stale_version(self, store):
        with pytest.raises(ConflictError) as exc:
            store.apply_diff("n1", [make_edge("n1", "p1")], expected_version=0)
        assert exc.value.expected == 0 and exc.value.actual == 1
        assert store.edge_count() == 0

    def test_dangling_edges_dropped(self, store):
        result = store.apply_diff("n1", [make_edge("n1", "ghost"), make_edge("n1", "p1")])
        assert len(result.dropped) == 1
        assert edge_keys(store.get_edges("n1")) == {("n1", "p1", "mentions")}

    def test_unknown_node(self, store):
        with pytest.raises(NodeNotFoundError):
            store.apply_diff("ghost", [])
        with pytest.raises(NodeNotFoundError):
            store.get_edges("ghost")


class TestSharedClaims:
    """Co-occurrence edges supported by several notes."""

    def test_edge_survives_while_any_note_supports_it(self, store):
        store.apply_diff("n1", [make_edge("p1", "p2", type=CO, strength=0.4, origin="n1")])
        store.apply_diff("n2", [make_edge("p2", "p1", type=CO, strength=0.7, origin="n2")])

        edge = store.get_edge("p1", "p2", CO)
        assert edge.origins == {"n1", "n2"}
        assert edge.strength == 0.7

        store.apply_diff("n2", [])
        edge = store.get_edge("p1", "p2", CO)
        assert edge.origins == {"n1"}
        assert edge.strength == 0.4

        store.apply_diff("n1", [])
        assert store.get_edge("p1", "p2", CO) is None
        assert store.check_consistency() == []

    def test_edges_from_origin(self, store):
        store.apply_diff("n1", [make_edge("n1", "p1"), make_edge("p1", "p2", type=CO, origin="n1")])
        assert edge_keys(store.edges_from("n1")) == {("n1", "p1", "mentions"), ("p1", "p2", "co_occurs_with")}


class TestManualEdges:
    def test_add_and_remove(self, store):
        edge = store.add_manual_edge("n1", "n2", LINK, strength=0.8)
        assert edge.strength == 0.8
        assert USER_ORIGIN in edge.claims
        assert store.remove_manual_edge("n1", "n2", LINK) is True
        assert store.remove_manual_edge("n1", "n2", LINK) is False

    def test_detected_types_rejected(self, store):
        with pytest.raises(InvalidEdgeError):
            store.add_manual_edge("n1", "p1", ConnectionType.MENTIONS)
        with pytest.raises(InvalidEdgeError):
            store.remove_manual_edge("n1", "p1", ConnectionType.MENTIONS)

    def test_invalid_strength_and_self_loop(self, store):
        with pytest.raises(InvalidEdgeError):
            store.add_manual_edge("n1", "p1", LINK, strength=1.5)
        with pytest.raises(InvalidEdgeError):
            store.add_manual_edge("n1", "n1", LINK)

    def test_unknown_endpoint(self, store):
        with pytest.raises(NodeNotFoundError):
            store.add_manual_edge("n1", "ghost", LINK)

    def test_manual_and_detected_edges_coexist(self, store):
        """Same endpoints, different types: two distinct edges."""
        store.add_manual_edge("n1", "p1", ConnectionType.ASSIGNED_TO)
        store.apply_diff("n1", [make_edge("n1", "p1")])
        assert len(store.get_edges("n1")) == 2


class TestRemoveNode:
    def test_cascades_every_edge(self, store, index):
        store.apply_diff("n1", [make_edge("n1", "p1"), make_edge("p1", "p2", type=CO, origin="n1")])
        store.add_manual_edge("n2", "p1", LINK)

        removed = store.remove_node("p1")
        assert len(removed) == 3
        assert "p1" not in index
        assert store.edge_count() == 0
        assert store.check_consistency() == []

    def test_removes_claims_originated_by_node(self, store):
        """Deleting a note drops co-occurrence edges only it supported."""
        store.apply_diff("n1", [make_edge("p1", "p2", type=CO, origin="n1")])
        store.remove_node("n1")
        assert store.get_edge("p1", "p2", CO) is None
        assert store.check_consistency() == []

    def test_unknown(self, store):
        with pytest.raises(NodeNotFoundError):
            store.remove_node("ghost")


class TestSnapshots:
    def test_snapshot_is_isolated(self, store):
        store.apply_diff("n1", [make_edge("n1", "p1")])
        snapshot = store.snapshot()
        store.apply_diff("n1", [make_edge("n1", "p2")])

        assert edge_keys(snapshot.edges_of("n1")) == {("n1", "p1", "mentions")}
        assert snapshot.degree("p2") == 0

    def test_snapshot_node_lookup(self, store):
        snapshot = store.snapshot()
        assert snapshot.node("p1").title == "Alice Smith"
        with pytest.raises(NodeNotFoundError):
            snapshot.node("ghost")

    def test_concurrent_diffs_on_different_notes(self, store):
        """Diffs from many threads leave the indices consistent."""
        errors = []

        def worker(note_id, target):
            try:
                for i in range(50):
                    edges = [make_edge(note_id, target)] if i % 2 else []
                    store.apply_diff(note_id, edges)
                    store.snapshot()
            except Exception as e:  # noqa: BLE001 - collected for the assertion
                errors.append(e)

        threads = [
            threading.Thread(target=worker, args=("n1", "p1")),
            threading.Thread(target=worker, args=("n2", "p2")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert store.check_consistency() == []
        assert store.edge_count() == 2
