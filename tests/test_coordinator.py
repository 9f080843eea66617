"""Tests for the incremental update coordinator."""

import threading

import pytest

from notegraph.coordinator import NodeState, UpdateCoordinator, derive_title
from notegraph.detection import ConnectionDetector
from notegraph.errors import NodeNotFoundError, ValidationError
from notegraph.index import EntityIndex
from notegraph.models import ConnectionType
from notegraph.store import GraphStore

from conftest import edge_keys


def build(workers=0, detector_cls=ConnectionDetector):
    index = EntityIndex()
    store = GraphStore(index)
    coordinator = UpdateCoordinator(index, store, detector_cls(index), workers=workers)
    return coordinator, store, index


@pytest.fixture
def inline():
    coordinator, store, index = build()
    coordinator.on_person_changed("p1", ["Alice Smith"])
    coordinator.on_person_changed("p2", ["Bob Jones"])
    yield coordinator, store, index
    coordinator.close()


class TestNoteEvents:
    def test_change_detects_inline(self, inline):
        coordinator, store, _ = inline
        node = coordinator.on_note_changed("n1", "Alice Smith met Bob Jones.", title="Sync")
        assert node.version == 1
        assert coordinator.state("n1") is NodeState.CLEAN
        assert edge_keys(store.edges_from("n1")) == {
            ("n1", "p1", "mentions"),
            ("n1", "p2", "mentions"),
            ("p1", "p2", "co_occurs_with"),
        }

    def test_edit_replaces_edges(self, inline):
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Alice Smith met Bob Jones.", title="Sync")
        node = coordinator.on_note_changed("n1", "Alice Smith alone.")
        assert node.version == 2
        assert edge_keys(store.edges_from("n1")) == {("n1", "p1", "mentions")}

    def test_stale_version_ignored(self, inline):
        coordinator, store, index = inline
        coordinator.on_note_changed("n1", "Alice Smith", version=5, title="Sync")
        assert coordinator.on_note_changed("n1", "Bob Jones", version=4) is None
        assert index.get("n1").version == 5
        assert edge_keys(store.edges_from("n1")) == {("n1", "p1", "mentions")}

    def test_title_defaults_to_first_line(self, inline):
        coordinator, _, index = inline
        coordinator.on_note_changed("n1", "\n  Planning notes  \nbody")
        assert index.get("n1").title == "Planning notes"

    def test_removed_is_terminal(self, inline):
        coordinator, store, index = inline
        coordinator.on_note_changed("n1", "Alice Smith", title="Sync")
        assert coordinator.on_note_deleted("n1") is True
        assert coordinator.state("n1") is NodeState.REMOVED
        assert coordinator.on_note_changed("n1", "Bob Jones") is None
        assert "n1" not in index
        assert coordinator.on_note_deleted("n1") is False

    def test_delete_drops_node_bookkeeping(self, inline):
        coordinator, _, _ = inline
        coordinator.on_note_changed("n1", "Alice Smith and Carol", title="Sync")
        coordinator.on_person_changed("p3", ["Carol"])
        assert "n1" in coordinator._node_locks
        assert "n1" in coordinator._texts

        coordinator.on_note_deleted("n1")
        assert "n1" not in coordinator._node_locks
        assert "n1" not in coordinator._texts

    def test_unconfirmed_note_waits_for_content(self, inline):
        """A cached note without content keeps its edges until it is resent."""
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Alice Smith", version=3, title="Sync")
        coordinator.mark_unconfirmed("n1")

        coordinator.on_person_changed("p1", ["Alice Smith", "Ally"])
        assert coordinator.state("n1") is NodeState.DIRTY
        assert edge_keys(store.edges_from("n1")) == {("n1", "p1", "mentions")}

        assert coordinator.on_note_changed("n1", "Bob Jones", version=3) is not None
        assert coordinator.state("n1") is NodeState.CLEAN
        assert edge_keys(store.edges_from("n1")) == {("n1", "p2", "mentions")}

    def test_delete_unknown(self, inline):
        coordinator, _, _ = inline
        assert coordinator.on_note_deleted("ghost") is False

    def test_kind_mismatch(self, inline):
        coordinator, _, _ = inline
        with pytest.raises(ValidationError):
            coordinator.on_note_changed("p1", "text")
        with pytest.raises(ValidationError):
            coordinator.on_note_deleted("p1")

    def test_new_note_title_redetects_referencing_notes(self, inline):
        """A note mentioning a title picks up the edge once that note exists."""
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Next steps for Project Apollo.", title="Sync")
        assert store.edges_from("n1") == []
        coordinator.on_note_changed("n2", "Launch plan.", title="Project Apollo")
        assert edge_keys(store.edges_from("n1")) == {("n1", "n2", "mentions")}


class TestPersonEvents:
    def test_person_created_after_note(self, inline):
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Coffee with Carol Danvers.", title="Coffee")
        assert store.edges_from("n1") == []
        coordinator.on_person_changed("p3", ["Carol Danvers"])
        assert edge_keys(store.edges_from("n1")) == {("n1", "p3", "mentions")}

    def test_alias_added(self, inline):
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Robert called.", title="Call")
        node = coordinator.on_person_changed("p2", ["Bob Jones", "Robert"])
        assert node.version == 2
        assert edge_keys(store.edges_from("n1")) == {("n1", "p2", "mentions")}

    def test_rename_drops_old_matches(self, inline):
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Bob Jones called.", title="Call")
        coordinator.on_person_changed("p2", ["Robert Brown"])
        assert store.edges_from("n1") == []

    def test_unchanged_names_are_noop(self, inline):
        coordinator, _, index = inline
        coordinator.on_person_changed("p1", ["Alice Smith"])
        assert index.get("p1").version == 1

    def test_names_required(self, inline):
        coordinator, _, _ = inline
        with pytest.raises(ValidationError):
            coordinator.on_person_changed("p9", ["", "  "])

    def test_person_deleted_removes_all_edges(self, inline):
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Alice Smith met Bob Jones.", title="Sync")
        store.add_manual_edge("n1", "p2", ConnectionType.EXPLICIT_LINK)

        assert coordinator.on_person_deleted("p2") is True
        assert edge_keys(store.edges_from("n1")) == {("n1", "p1", "mentions")}
        assert store.get_edge("n1", "p2", ConnectionType.EXPLICIT_LINK) is None
        assert store.check_consistency() == []


class TestDetectNow:
    def test_forces_detection(self, inline):
        coordinator, store, _ = inline
        coordinator.on_note_changed("n1", "Alice Smith", title="Sync")
        edges = coordinator.detect_now("n1")
        assert edge_keys(edges) == {("n1", "p1", "mentions")}
        assert coordinator.state("n1") is NodeState.CLEAN

    def test_unknown_and_wrong_kind(self, inline):
        coordinator, _, _ = inline
        with pytest.raises(NodeNotFoundError):
            coordinator.detect_now("ghost")
        with pytest.raises(ValidationError):
            coordinator.detect_now("p1")


class FailingDetector(ConnectionDetector):
    def detect(self, note_id, content):
        raise RuntimeError("boom")


class TestFailures:
    def test_failure_leaves_node_dirty(self):
        coordinator, store, _ = build(detector_cls=FailingDetector)
        coordinator.on_note_changed("n1", "anything", title="Sync")
        assert coordinator.state("n1") is NodeState.DIRTY
        assert coordinator.counters["failed"] == 1
        assert coordinator.pending() == 1
        assert store.edge_count() == 0


class BlockingDetector(ConnectionDetector):
    """Blocks the first run until released, to force an edit mid-detection."""

    def __init__(self, index):
        super().__init__(index)
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def detect(self, note_id, content):
        self.calls += 1
        if self.calls == 1:
            self.started.set()
            assert self.release.wait(5)
        return super().detect(note_id, content)


class TestThreaded:
    def test_stale_result_discarded(self):
        """An edit during detection wins over the slow run's result."""
        coordinator, store, _ = build(workers=2, detector_cls=BlockingDetector)
        detector = coordinator.detector
        coordinator.on_person_changed("p1", ["Alice Smith"])
        coordinator.on_person_changed("p2", ["Bob Jones"])

        coordinator.on_note_changed("n1", "Alice Smith", version=1, title="Sync")
        assert detector.started.wait(5)
        assert coordinator.state("n1") is NodeState.DETECTING

        coordinator.on_note_changed("n1", "Bob Jones", version=2)
        detector.release.set()

        assert coordinator.wait_idle(5)
        assert edge_keys(store.edges_from("n1")) == {("n1", "p2", "mentions")}
        assert coordinator.state("n1") is NodeState.CLEAN
        assert coordinator.counters["stale"] >= 1
        coordinator.close()

    def test_many_notes_in_parallel(self):
        coordinator, store, _ = build(workers=4)
        coordinator.on_person_changed("p1", ["Alice Smith"])
        for i in range(20):
            coordinator.on_note_changed(f"n{i:02d}", f"Alice Smith item {i}", title=f"Item {i}")

        assert coordinator.wait_idle(10)
        assert coordinator.pending() == 0
        assert len(store.get_edges("p1")) == 20
        assert store.check_consistency() == []
        coordinator.close()

    def test_wait_idle_when_nothing_queued(self):
        coordinator, _, _ = build(workers=2)
        assert coordinator.wait_idle(0.1) is True
        coordinator.close()


def test_derive_title():
    assert derive_title("") == "Untitled"
    assert derive_title({"type": "doc", "content": [
        {"type": "paragraph", "content": [{"type": "text", "text": "Hello"}]},
    ]}) == "Hello"
