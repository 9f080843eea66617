"""Knowledge graph engine - wires index, detector, store, coordinator and queries."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from .config import GraphSettings
from .coordinator import UpdateCoordinator
from .detection import ConnectionDetector
from .errors import InvalidEdgeError
from .export import export_subgraph
from .index import EntityIndex
from .models import ConnectionType, Edge, Node, NodeKind, Subgraph
from .persistence import GraphCache
from .query import QueryService, SearchHit
from .store import GraphStore

logger = logging.getLogger(__name__)


def _parse_type(value: Any, default: ConnectionType = ConnectionType.EXPLICIT_LINK) -> ConnectionType:
    if value is None:
        return default
    try:
        return ConnectionType(value)
    except ValueError:
        raise InvalidEdgeError(f"Unknown connection type: {value!r}") from None


def _parse_strength(value: Any) -> float:
    try:
        strength = float(value)
    except (TypeError, ValueError):
        raise InvalidEdgeError(f"Strength must be a number, got {value!r}") from None
    if not 0.0 <= strength <= 1.0:
        raise InvalidEdgeError(f"Strength must be within [0, 1], got {strength}")
    return strength


def _cacheable(content: Any) -> str | None:
    """Content as stored in the cache; structured documents become JSON."""
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return json.dumps(content, sort_keys=True)


class KnowledgeGraph:
    """Main entry point for the knowledge graph.

    Receives note and person events from the repository layer, keeps edges
    current through the update coordinator and answers the query surface the
    routing layer consumes. With a data directory configured, the graph is
    reloaded from the SQLite cache on construction and written back on save().

    Usage:
        with KnowledgeGraph(load_settings(data_dir="~/.notegraph")) as kg:
            kg.on_person_changed("p1", ["Alice Smith"])
            kg.on_note_changed("n1", "Lunch with Alice Smith", title="Lunch")
            kg.wait_idle()
            kg.get_node_connections("p1")
    """

    def __init__(self, settings: GraphSettings | None = None):
        self.settings = settings or GraphSettings()
        s = self.settings

        self.index = EntityIndex(
            short_names=s.short_names,
            short_name_factor=s.short_name_factor,
            min_term_length=s.min_term_length,
        )
        self.store = GraphStore(self.index)
        self.detector = ConnectionDetector(
            self.index, window=s.cooccurrence_window, excerpt_chars=s.excerpt_chars
        )
        self.coordinator = UpdateCoordinator(
            self.index, self.store, self.detector, workers=s.workers
        )

        # Query service - all read-only operations delegated here
        self._query = QueryService(
            get_snapshot=self.store.snapshot,
            index=self.index,
            max_depth=s.max_subgraph_depth,
            search_limit=s.search_limit,
            strong_edge_threshold=s.strong_edge_threshold,
        )

        self._cache = GraphCache(s.db_path) if s.db_path is not None else None
        self._closed = False
        if self._cache is not None:
            self._load_cache()

    def __enter__(self) -> "KnowledgeGraph":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- Repository events ---

    def on_note_changed(
        self,
        note_id: str,
        content: Any,
        version: int | None = None,
        title: str | None = None,
    ) -> Node | None:
        return self.coordinator.on_note_changed(note_id, content, version=version, title=title)

    def on_note_deleted(self, note_id: str) -> bool:
        return self.coordinator.on_note_deleted(note_id)

    def on_person_changed(self, person_id: str, names: list[str]) -> Node | None:
        return self.coordinator.on_person_changed(person_id, names)

    def on_person_deleted(self, person_id: str) -> bool:
        return self.coordinator.on_person_deleted(person_id)

    def sync(
        self,
        notes: Iterable[dict],
        people: Iterable[dict] | None = None,
    ) -> dict[str, int]:
        """Reconcile the graph with the repository's current records.

        Notes whose cached version and content are current are kept as-is;
        everything else is re-detected. Cached nodes missing from the given
        records are removed (people only when ``people`` is given).

        Args:
            notes: Dicts with ``id``, ``content`` and optional ``version``, ``title``
            people: Dicts with ``id`` and ``names``

        Returns:
            Counts: kept, changed, removed
        """
        counts = {"kept": 0, "changed": 0, "removed": 0}

        if people is not None:
            people = list(people)
            seen_people = {p["id"] for p in people}
            for person in people:
                self.on_person_changed(person["id"], list(person["names"]))
            for node in self._nodes_of_kind(NodeKind.PERSON):
                if node.id not in seen_people and self.on_person_deleted(node.id):
                    counts["removed"] += 1

        seen_notes: set[str] = set()
        for note in notes:
            note_id = note["id"]
            seen_notes.add(note_id)
            version = note.get("version")
            cached = self.index.get(note_id)
            if (
                cached is not None
                and version is not None
                and cached.version == version
                and self.coordinator.content_of(note_id) is not None
            ):
                counts["kept"] += 1
                continue
            if cached is not None and version is not None and version <= cached.version:
                # Cached without content: force a fresh run at this version
                self.coordinator.mark_clean(note_id, note.get("content"))
                self.coordinator.detect_now(note_id)
            else:
                self.on_note_changed(note_id, note.get("content"), version=version, title=note.get("title"))
            counts["changed"] += 1

        for node in self._nodes_of_kind(NodeKind.NOTE):
            if node.id not in seen_notes and self.on_note_deleted(node.id):
                counts["removed"] += 1

        logger.info(f"Synced graph: {counts}")
        return counts

    # --- Queries ---

    def get_graph(self) -> Subgraph:
        return self._query.full_graph()

    def search(self, query: str, kind: NodeKind | None = None, limit: int | None = None) -> list[SearchHit]:
        return self._query.search(query, kind=kind, limit=limit)

    def get_stats(self) -> dict:
        stats = self._query.stats()
        stats["pending_detections"] = self.coordinator.pending()
        return stats

    def get_connection_types(self) -> list[dict]:
        return self._query.connection_types()

    def get_node_connections(self, node_id: str) -> list[Edge]:
        return self._query.node_connections(node_id)

    def get_subgraph(self, node_id: str, depth: int, max_nodes: int | None = None) -> Subgraph:
        if max_nodes is None:
            max_nodes = self.settings.default_subgraph_nodes
        return self._query.subgraph(node_id, depth, max_nodes)

    def neighbors(self, node_id: str, edge_types: Iterable[ConnectionType] | None = None) -> list[Node]:
        return self._query.neighbors(node_id, edge_types)

    def get_node(self, node_id: str) -> Node:
        return self.store.get_node(node_id)

    # --- Mutations ---

    def detect_connections(self, note_id: str) -> list[Edge]:
        """Run detection for a note right now and return its detected edges."""
        return self.coordinator.detect_now(note_id)

    def update_connections(self, note_id: str, explicit_edges: Iterable[dict]) -> list[Edge]:
        """Merge user-declared edges from a node.

        Each item is ``{"target": id, "type"?: explicit_link|assigned_to,
        "strength"?: float}``. Existing manual edges not listed are kept.

        Raises:
            NodeNotFoundError: note_id or a target is unknown
            InvalidEdgeError: item malformed, strength outside [0, 1] or not a manual type
        """
        self.index.require(note_id)
        parsed: list[tuple[str, ConnectionType, float]] = []
        for item in explicit_edges:
            if not isinstance(item, dict) or not item.get("target"):
                raise InvalidEdgeError(f"Explicit edge needs a target: {item!r}")
            edge_type = _parse_type(item.get("type"))
            if not edge_type.manual:
                raise InvalidEdgeError(f"{edge_type.value} edges are created by detection only")
            if item["target"] == note_id:
                raise InvalidEdgeError(f"Self-loop on {note_id}")
            parsed.append((item["target"], edge_type, _parse_strength(item.get("strength", 1.0))))
            self.index.require(item["target"])

        edges = [
            self.store.add_manual_edge(note_id, target, edge_type, strength=strength)
            for target, edge_type, strength in parsed
        ]
        logger.info(f"Merged {len(edges)} explicit connections from {note_id}")
        return edges

    def remove_connection(
        self,
        source: str,
        target: str,
        type: ConnectionType | str = ConnectionType.EXPLICIT_LINK,
    ) -> bool:
        return self.store.remove_manual_edge(source, target, _parse_type(type))

    # --- Export ---

    def export_graph(self, fmt: str = "json", root: str | None = None, depth: int | None = None) -> str:
        """Serialize the whole graph, or the subgraph around ``root``."""
        if root is None:
            subgraph = self._query.full_graph()
        else:
            depth = self.settings.max_subgraph_depth if depth is None else depth
            subgraph = self.get_subgraph(root, depth)
        return export_subgraph(subgraph, fmt)

    # --- Lifecycle ---

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.coordinator.wait_idle(timeout)

    def save(self) -> None:
        """Write the graph to the cache. No-op without a data directory."""
        if self._cache is None:
            return
        snapshot, contents = self.coordinator.checkpoint()
        self._cache.save(
            snapshot,
            {node_id: _cacheable(content) for node_id, content in contents.items()},
        )

    def close(self) -> None:
        """Drain pending detection, save and release resources."""
        if self._closed:
            return
        self._closed = True
        self.coordinator.close(wait_for_pending=True)
        if self._cache is not None:
            self.save()
            self._cache.close()

    # --- Internals ---

    def _nodes_of_kind(self, kind: NodeKind) -> list[Node]:
        return [n for n in self.index.nodes().values() if n.kind is kind]

    def _load_cache(self) -> None:
        cached = self._cache.load()
        loaded = self.store.load(cached.nodes, cached.edges)
        for note_id, content in cached.contents.items():
            if note_id in self.index:
                self.coordinator.mark_clean(note_id, content)
        unconfirmed = [n.id for n in self._nodes_of_kind(NodeKind.NOTE) if n.id not in cached.contents]
        for note_id in unconfirmed:
            self.coordinator.mark_unconfirmed(note_id)
        if unconfirmed:
            logger.info(f"{len(unconfirmed)} cached notes await fresh content before re-detection")
        logger.info(
            f"Loaded graph cache: {len(cached.nodes)} nodes, {loaded} edges "
            f"from {self.settings.db_path}"
        )


