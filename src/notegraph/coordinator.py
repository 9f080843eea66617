"""Incremental update coordinator.

Keeps the graph in step with note edits without recomputing everything.
Each node moves through these states:

    clean --edit--> dirty --run starts--> detecting --diff applied--> clean
                      ^                       |
                      +------ edit during ----+   (result discarded)

    any state --delete--> removed (terminal)

Detection runs go through a work queue keyed by node id feeding a thread
pool. A node has at most one run in flight: an edit that arrives during a run
only flips the node back to dirty, and the running worker picks the new
version up once its stale result has been discarded. A slow run for an old
version therefore never overwrites edges computed for a newer edit.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any

from .content import extract_text
from .detection import ConnectionDetector
from .errors import ConflictError, NodeNotFoundError, ValidationError
from .index import EntityIndex, note_terms, person_terms
from .matching import normalize_text
from .models import USER_ORIGIN, Edge, Node, NodeKind
from .store import DiffResult, GraphSnapshot, GraphStore

logger = logging.getLogger(__name__)

MAX_SYNC_ATTEMPTS = 3
TITLE_MAX_CHARS = 80


class NodeState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    DETECTING = "detecting"
    REMOVED = "removed"


def derive_title(content: Any) -> str:
    """First non-empty line of a note's text, for notes without a title."""
    for line in extract_text(content).splitlines():
        line = line.strip()
        if line:
            return line[:TITLE_MAX_CHARS]
    return "Untitled"


class UpdateCoordinator:
    """Routes note and person events into detection runs and store diffs.

    Args:
        index: Entity index (nodes are mirrored into it here)
        store: Graph store that receives diffs
        detector: Connection detector
        workers: Thread pool size; 0 runs detection inline on the caller's thread
    """

    def __init__(
        self,
        index: EntityIndex,
        store: GraphStore,
        detector: ConnectionDetector,
        workers: int = 4,
    ):
        self.index = index
        self.store = store
        self.detector = detector
        self.workers = workers

        self._lock = threading.RLock()
        self._states: dict[str, NodeState] = {}
        self._contents: dict[str, Any] = {}
        self._texts: dict[str, str] = {}  # normalized text cache for impact checks
        self._in_flight: set[str] = set()
        self._unconfirmed: set[str] = set()  # cached notes whose content is unknown
        self._node_locks: dict[str, threading.Lock] = {}
        self._futures: set[Future] = set()
        self._closed = False
        self.counters: Counter[str] = Counter()

        self._executor = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notegraph-detect")
            if workers > 0
            else None
        )

    # --- Repository events ---

    def on_note_changed(
        self,
        note_id: str,
        content: Any,
        version: int | None = None,
        title: str | None = None,
    ) -> Node | None:
        """Mirror a note edit into the index and queue its detection.

        If the repository supplies a version that is not newer than the one
        already indexed, the event is stale and ignored.

        Returns:
            The indexed note, or None if the event was ignored.
        """
        with self._lock:
            if self._states.get(note_id) is NodeState.REMOVED:
                logger.warning(f"Ignoring change to removed note {note_id}")
                return None

            node = self.index.get(note_id)
            if node is not None and node.kind is not NodeKind.NOTE:
                raise ValidationError(f"{note_id} is a {node.kind.value}, not a note")
            if node is not None and version is not None and (
                version < node.version
                or (version == node.version and note_id not in self._unconfirmed)
            ):
                logger.info(
                    f"Ignoring stale change for {note_id}: version {version} <= {node.version}"
                )
                return None

            new_version = version if version is not None else (node.version + 1 if node else 1)
            old_terms: set[str] = set()
            if node is None:
                title = title if title is not None else derive_title(content)
                node = self.index.upsert(
                    Node(id=note_id, kind=NodeKind.NOTE, title=title,
                         terms=note_terms(title), version=new_version)
                )
                title_changed = True
            else:
                updates: dict[str, Any] = {"version": new_version}
                title_changed = title is not None and title != node.title
                if title_changed:
                    old_terms = set(self.index.terms_of(note_id))
                    updates.update(title=title, terms=note_terms(title))
                node = self.index.touch(note_id, **updates)

            self._contents[note_id] = content
            self._texts.pop(note_id, None)
            self._states[note_id] = NodeState.DIRTY
            self._unconfirmed.discard(note_id)

            dirty = [note_id]
            if title_changed:
                terms = old_terms | set(self.index.terms_of(note_id))
                dirty.extend(self._mark_affected(note_id, terms))

        for node_id in dirty:
            self._schedule(node_id)
        return node

    def on_note_deleted(self, note_id: str) -> bool:
        """Remove a note and its edges. Returns False if it was unknown."""
        return self._remove(note_id, NodeKind.NOTE)

    def on_person_changed(self, person_id: str, names: list[str]) -> Node | None:
        """Mirror a person's names into the index and re-dirty affected notes.

        The first name is the display title; all names are match terms.
        """
        terms = person_terms(names)
        if not terms:
            raise ValidationError(f"Person {person_id} needs at least one non-empty name")
        title = next(n.strip() for n in names if n and n.strip())

        with self._lock:
            if self._states.get(person_id) is NodeState.REMOVED:
                logger.warning(f"Ignoring change to removed person {person_id}")
                return None

            node = self.index.get(person_id)
            old_terms: set[str] = set()
            if node is None:
                node = self.index.upsert(
                    Node(id=person_id, kind=NodeKind.PERSON, title=title, terms=terms, version=1)
                )
            else:
                if node.kind is not NodeKind.PERSON:
                    raise ValidationError(f"{person_id} is a {node.kind.value}, not a person")
                if node.terms == terms and node.title == title:
                    return node
                old_terms = set(self.index.terms_of(person_id))
                node = self.index.touch(
                    person_id, title=title, terms=terms, version=node.version + 1
                )
            self._states[person_id] = NodeState.CLEAN

            dirty = self._mark_affected(person_id, old_terms | set(self.index.terms_of(person_id)))

        for node_id in dirty:
            self._schedule(node_id)
        return node

    def on_person_deleted(self, person_id: str) -> bool:
        """Remove a person and every edge touching them, manual ones included."""
        return self._remove(person_id, NodeKind.PERSON)

    # --- Direct calls ---

    def detect_now(self, note_id: str) -> list[Edge]:
        """Run detection for a note on the caller's thread and apply it.

        Returns the edges the note currently originates.

        Raises:
            NodeNotFoundError: note unknown or removed
            ValidationError: node is not a note
        """
        with self._lock:
            node = self.index.get(note_id)
            if node is None or self._states.get(note_id) is NodeState.REMOVED:
                raise NodeNotFoundError(note_id)
            if node.kind is not NodeKind.NOTE:
                raise ValidationError(f"{note_id} is a {node.kind.value}, not a note")
            self._states[note_id] = NodeState.DIRTY

        with self._node_lock(note_id):
            for _ in range(MAX_SYNC_ATTEMPTS):
                if self._detect_once(note_id) != "stale":
                    break
        return self.store.edges_from(note_id)

    def mark_clean(self, note_id: str, content: Any) -> None:
        """Record content whose edges are already in the store (cache restore)."""
        with self._lock:
            self._contents[note_id] = content
            self._texts.pop(note_id, None)
            self._states[note_id] = NodeState.CLEAN
            self._unconfirmed.discard(note_id)

    def mark_unconfirmed(self, note_id: str) -> None:
        """Record a cached note whose content was not saved with its edges.

        Its edges may predate its version, so the note stays dirty until the
        repository resends it, and a change at the cached version is accepted.
        """
        with self._lock:
            self._unconfirmed.add(note_id)
            self._states[note_id] = NodeState.DIRTY

    def checkpoint(self) -> tuple[GraphSnapshot, dict[str, Any]]:
        """Snapshot plus the content of every clean note, taken together.

        Dirty notes are left out so a reload never pairs new content with
        edges computed from the old one.
        """
        with self._lock:
            snapshot = self.store.snapshot()
            contents = {
                note_id: content
                for note_id, content in self._contents.items()
                if self._states.get(note_id) is NodeState.CLEAN
            }
        return snapshot, contents

    def content_of(self, note_id: str) -> Any:
        with self._lock:
            return self._contents.get(note_id)

    def contents(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._contents)

    def state(self, node_id: str) -> NodeState | None:
        with self._lock:
            return self._states.get(node_id)

    def pending(self) -> int:
        """Nodes that are dirty or being detected."""
        with self._lock:
            return sum(
                1 for s in self._states.values()
                if s in (NodeState.DIRTY, NodeState.DETECTING)
            )

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until queued detection drains. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                outstanding = [f for f in self._futures if not f.done()]
            if not outstanding:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(outstanding, timeout=remaining)

    def close(self, wait_for_pending: bool = True) -> None:
        """Stop accepting work and shut the pool down."""
        with self._lock:
            self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_pending)

    # --- Internals ---

    def _remove(self, node_id: str, kind: NodeKind) -> bool:
        with self._lock:
            if self._states.get(node_id) is NodeState.REMOVED:
                return False
            node = self.index.get(node_id)
            if node is None:
                logger.debug(f"Delete event for unknown {kind.value} {node_id}")
                return False
            if node.kind is not kind:
                raise ValidationError(f"{node_id} is a {node.kind.value}, not a {kind.value}")

            # Notes whose matches involved this node may now match something else
            dirty = self._referencing_notes(node_id)
            self.store.remove_node(node_id)
            self._states[node_id] = NodeState.REMOVED
            self._contents.pop(node_id, None)
            self._texts.pop(node_id, None)
            self._node_locks.pop(node_id, None)
            self._unconfirmed.discard(node_id)
            for note_id in dirty:
                self._states[note_id] = NodeState.DIRTY
            logger.info(f"Removed {kind.value} {node_id}, re-detecting {len(dirty)} notes")

        for note_id in dirty:
            self._schedule(note_id)
        return True

    def _referencing_notes(self, node_id: str) -> set[str]:
        """Live notes holding a detection claim on an edge touching node_id."""
        notes: set[str] = set()
        for edge in self.store.get_edges(node_id):
            for origin in edge.claims:
                if origin in (USER_ORIGIN, node_id):
                    continue
                if self._states.get(origin) is not NodeState.REMOVED and origin in self.index:
                    notes.add(origin)
        return notes

    def _mark_affected(self, node_id: str, terms: set[str]) -> list[str]:
        """Mark dirty every note whose edges or text could change with these terms."""
        affected = self._referencing_notes(node_id)
        for note_id, content in self._contents.items():
            if note_id == node_id or note_id in affected:
                continue
            if self._states.get(note_id) is NodeState.REMOVED:
                continue
            text = self._texts.get(note_id)
            if text is None:
                text = self._texts[note_id] = normalize_text(extract_text(content))
            if any(term in text for term in terms):
                affected.add(note_id)

        affected.discard(node_id)
        for note_id in affected:
            self._states[note_id] = NodeState.DIRTY
        return sorted(affected)

    def _node_lock(self, node_id: str) -> threading.Lock:
        with self._lock:
            lock = self._node_locks.get(node_id)
            if lock is None:
                lock = self._node_locks[node_id] = threading.Lock()
            return lock

    def _schedule(self, node_id: str) -> None:
        with self._lock:
            if self._closed:
                logger.warning(f"Coordinator closed, not scheduling {node_id}")
                return
            if node_id in self._in_flight:
                return  # the running worker re-checks the state when it finishes
            self._in_flight.add(node_id)

            if self._executor is not None:
                future = self._executor.submit(self._run, node_id)
                self._futures.add(future)
                future.add_done_callback(self._forget_future)
                return

        self._run(node_id)

    def _forget_future(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _run(self, node_id: str) -> None:
        """Worker loop: detect until the node is no longer dirty."""
        try:
            while True:
                with self._node_lock(node_id):
                    outcome = self._detect_once(node_id)
                with self._lock:
                    if outcome in ("applied", "stale") and self._states.get(node_id) is NodeState.DIRTY:
                        continue
                    self._in_flight.discard(node_id)
                    return
        except Exception:
            logger.exception(f"Detection worker for {node_id} crashed")
            with self._lock:
                self._in_flight.discard(node_id)

    def _detect_once(self, node_id: str) -> str:
        """One detection pass. Returns applied, stale, failed or skipped."""
        with self._lock:
            if self._states.get(node_id) is not NodeState.DIRTY:
                return "skipped"
            node = self.index.get(node_id)
            if node is None:
                return "skipped"
            if node_id in self._unconfirmed:
                logger.info(f"Content of {node_id} unknown since reload, waiting for the next change")
                return "skipped"
            content = self._contents.get(node_id)
            version = node.version
            self._states[node_id] = NodeState.DETECTING
            self.counters["runs"] += 1

        try:
            edges = self.detector.detect(node_id, content)
        except Exception:
            logger.exception(f"Detection failed for {node_id} at version {version}")
            with self._lock:
                if self._states.get(node_id) is NodeState.DETECTING:
                    self._states[node_id] = NodeState.DIRTY
                self.counters["failed"] += 1
            return "failed"

        with self._lock:
            if self._states.get(node_id) is not NodeState.DETECTING:
                self.counters["stale"] += 1
                logger.info(
                    f"Discarding stale detection for {node_id} at version {version} "
                    f"(node is now {self._states.get(node_id).value})"
                )
                return "stale"
            try:
                result: DiffResult = self.store.apply_diff(node_id, edges, expected_version=version)
            except ConflictError as e:
                self.counters["stale"] += 1
                logger.info(f"Discarding stale detection: {e}")
                self._states[node_id] = NodeState.DIRTY
                return "stale"
            self._states[node_id] = NodeState.CLEAN
            self.counters["applied"] += 1

        if result.changed:
            logger.info(f"Updated connections for {node_id}: {result.to_summary()}")
        return "applied"
