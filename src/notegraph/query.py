"""Read-only query operations on the knowledge graph.

Every public method takes one snapshot from the store and answers from it, so
a query never mixes state from before and after a concurrent diff.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from .constants import (
    DEFAULT_MAX_SUBGRAPH_DEPTH,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_STRONG_EDGE_THRESHOLD,
)
from .errors import InvalidDepthError, InvalidLimitError, InvalidQueryError
from .index import EntityIndex
from .matching import normalize_text
from .models import ConnectionType, Edge, Node, NodeKind, Subgraph
from .store import GraphSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    """A ranked search result."""

    node: Node
    strength: float
    degree: int

    def to_summary(self) -> dict:
        return {**self.node.to_summary(), "strength": self.strength, "degree": self.degree}


class QueryService:
    """Traversal, search and statistics over graph snapshots.

    Uses a callable accessor so every call reads the current state.
    """

    def __init__(
        self,
        get_snapshot: Callable[[], GraphSnapshot],
        index: EntityIndex,
        max_depth: int = DEFAULT_MAX_SUBGRAPH_DEPTH,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        strong_edge_threshold: float = DEFAULT_STRONG_EDGE_THRESHOLD,
    ):
        self._get_snapshot = get_snapshot
        self._index = index
        self.max_depth = max_depth
        self.search_limit = search_limit
        self.strong_edge_threshold = strong_edge_threshold

    # --- Neighborhood ---

    def neighbors(
        self,
        node_id: str,
        edge_types: Iterable[ConnectionType] | None = None,
    ) -> list[Node]:
        """Directly connected nodes, strongest edge first, then by id."""
        snapshot = self._get_snapshot()
        snapshot.node(node_id)
        ranked = _ranked_neighbors(snapshot, node_id, set(edge_types) if edge_types else None)
        return [snapshot.nodes[nid] for _, nid in ranked]

    def node_connections(self, node_id: str) -> list[Edge]:
        """Edges touching a node, strongest first, then by key."""
        snapshot = self._get_snapshot()
        snapshot.node(node_id)
        return sorted(
            snapshot.edges_of(node_id),
            key=lambda e: (-e.strength, e.source, e.target, e.type.value),
        )

    def subgraph(self, root_id: str, max_depth: int, max_nodes: int) -> Subgraph:
        """Bounded breadth-first neighborhood of root_id.

        Each level is expanded strongest-edge first, so when max_nodes cuts a
        level short the strongest connections are the ones kept. Stops at
        max_depth hops or max_nodes visited nodes, whichever comes first.

        Raises:
            InvalidDepthError: max_depth outside [0, self.max_depth]
            InvalidLimitError: max_nodes < 1
            NodeNotFoundError: root_id unknown
        """
        if not isinstance(max_depth, int) or not 0 <= max_depth <= self.max_depth:
            raise InvalidDepthError(
                f"Depth must be between 0 and {self.max_depth}, got {max_depth}"
            )
        if not isinstance(max_nodes, int) or max_nodes < 1:
            raise InvalidLimitError(f"max_nodes must be at least 1, got {max_nodes}")

        snapshot = self._get_snapshot()
        snapshot.node(root_id)

        visited: set[str] = {root_id}
        order: list[str] = [root_id]
        frontier: list[str] = [root_id]
        depth = 0

        while frontier and depth < max_depth and len(order) < max_nodes:
            best: dict[str, float] = {}
            for node_id in frontier:
                for strength, neighbor in _ranked_neighbors(snapshot, node_id, None):
                    if neighbor in visited:
                        continue
                    if strength > best.get(neighbor, -1.0):
                        best[neighbor] = strength

            next_frontier: list[str] = []
            for neighbor in sorted(best, key=lambda nid: (-best[nid], nid)):
                if len(order) >= max_nodes:
                    break
                visited.add(neighbor)
                order.append(neighbor)
                next_frontier.append(neighbor)

            frontier = next_frontier
            depth += 1

        edges = [
            edge for edge in snapshot.edges.values()
            if edge.source in visited and edge.target in visited
        ]
        edges.sort(key=lambda e: (e.source, e.target, e.type.value))
        return Subgraph(
            nodes=[snapshot.nodes[nid] for nid in order],
            edges=edges,
            root=root_id,
            depth=max_depth,
        )

    def full_graph(self) -> Subgraph:
        """Every node and edge, nodes by id and edges by key."""
        snapshot = self._get_snapshot()
        return Subgraph(
            nodes=[snapshot.nodes[nid] for nid in sorted(snapshot.nodes)],
            edges=sorted(
                snapshot.edges.values(),
                key=lambda e: (e.source, e.target, e.type.value),
            ),
        )

    # --- Search ---

    def search(
        self,
        query: str,
        kind: NodeKind | None = None,
        limit: int | None = None,
    ) -> list[SearchHit]:
        """Nodes whose terms contain the query.

        Ranked by match strength, then degree (hubs first), then node id.
        """
        if not normalize_text(query or ""):
            raise InvalidQueryError("Search query must not be empty")
        limit = self.search_limit if limit is None else limit
        if limit < 1:
            raise InvalidLimitError(f"limit must be at least 1, got {limit}")

        snapshot = self._get_snapshot()
        hits = [
            SearchHit(node=snapshot.nodes[node.id], strength=strength, degree=snapshot.degree(node.id))
            for node, strength in self._index.search(query)
            if node.id in snapshot.nodes and (kind is None or node.kind is kind)
        ]
        hits.sort(key=lambda h: (-h.strength, -h.degree, h.node.id))
        return hits[:limit]

    # --- Statistics ---

    def stats(self) -> dict:
        """Graph statistics from one pass over nodes and edges."""
        snapshot = self._get_snapshot()

        by_kind = {kind: 0 for kind in NodeKind}
        most_connected: tuple[int, str] | None = None
        for node_id, node in snapshot.nodes.items():
            by_kind[node.kind] += 1
            degree = snapshot.degree(node_id)
            if degree and (most_connected is None or (-degree, node_id) < (-most_connected[0], most_connected[1])):
                most_connected = (degree, node_id)

        by_type = {t.value: 0 for t in ConnectionType}
        strength_sum = 0.0
        strong = 0
        for edge in snapshot.edges.values():
            by_type[edge.type.value] += 1
            strength = edge.strength
            strength_sum += strength
            if strength >= self.strong_edge_threshold:
                strong += 1

        node_count = len(snapshot.nodes)
        edge_count = len(snapshot.edges)
        return {
            "node_count": node_count,
            "edge_count": edge_count,
            "edge_count_by_type": by_type,
            "average_degree": round(2 * edge_count / node_count, 4) if node_count else 0.0,
            "note_count": by_kind[NodeKind.NOTE],
            "person_count": by_kind[NodeKind.PERSON],
            "strong_edge_count": strong,
            "average_strength": round(strength_sum / edge_count, 4) if edge_count else 0.0,
            "most_connected": (
                {"id": most_connected[1], "degree": most_connected[0]}
                if most_connected else None
            ),
        }

    def connection_types(self) -> list[dict]:
        """Every connection type with its properties and current count."""
        counts = self.stats()["edge_count_by_type"]
        return [
            {
                "type": t.value,
                "directed": t.directed,
                "manual": t.manual,
                "count": counts[t.value],
            }
            for t in ConnectionType
        ]


def _ranked_neighbors(
    snapshot: GraphSnapshot,
    node_id: str,
    edge_types: set[ConnectionType] | None,
) -> list[tuple[float, str]]:
    """(strength, neighbor id) pairs, strongest first, then by id."""
    best: dict[str, float] = {}
    for edge in snapshot.edges_of(node_id):
        if edge_types is not None and edge.type not in edge_types:
            continue
        neighbor = edge.other_node(node_id)
        if edge.strength > best.get(neighbor, -1.0):
            best[neighbor] = edge.strength
    return sorted(((s, nid) for nid, s in best.items()), key=lambda p: (-p[0], p[1]))
