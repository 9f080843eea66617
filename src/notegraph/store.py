"""Graph store: adjacency lists over the entity index's nodes.

Edges live in one table keyed by (source, target, type); each endpoint's
adjacency set holds the key, so both sides are always updated together.
A second index maps each origin (the note that produced a claim) to the keys
it supports, which makes apply_diff proportional to the note's own edges.

All mutations run under the store lock and replace Edge objects instead of
mutating them, so a snapshot is a shallow copy that never shows a
half-applied diff.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from .errors import ConflictError, InvalidEdgeError, NodeNotFoundError
from .index import EntityIndex
from .models import (
    USER_ORIGIN,
    Claim,
    ConnectionType,
    Edge,
    EdgeKey,
    Node,
    Provenance,
    edge_key,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class DiffResult:
    """Outcome of apply_diff, as edge keys."""

    node_id: str
    added: list[EdgeKey] = field(default_factory=list)
    updated: list[EdgeKey] = field(default_factory=list)
    removed: list[EdgeKey] = field(default_factory=list)
    unchanged: list[EdgeKey] = field(default_factory=list)
    dropped: list[EdgeKey] = field(default_factory=list)  # dangling endpoints

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    def to_summary(self) -> dict:
        return {
            "node_id": self.node_id,
            "added": len(self.added),
            "updated": len(self.updated),
            "removed": len(self.removed),
            "unchanged": len(self.unchanged),
            "dropped": len(self.dropped),
        }


@dataclass(frozen=True)
class GraphSnapshot:
    """Read-only, point-in-time view of nodes, edges and adjacency."""

    nodes: Mapping[str, Node]
    edges: Mapping[EdgeKey, Edge]
    adjacency: Mapping[str, frozenset[EdgeKey]]

    def node(self, node_id: str) -> Node:
        node = self.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def edges_of(self, node_id: str) -> list[Edge]:
        return [self.edges[k] for k in self.adjacency.get(node_id, ())]

    def degree(self, node_id: str) -> int:
        return len(self.adjacency.get(node_id, ()))


class GraphStore:
    """In-memory graph with transactional per-note diffs."""

    def __init__(self, index: EntityIndex):
        self.index = index
        self.lock = threading.RLock()
        self._edges: dict[EdgeKey, Edge] = {}
        self._adjacency: dict[str, set[EdgeKey]] = {}
        self._by_origin: dict[str, set[EdgeKey]] = {}

    # --- Reads ---

    def get_node(self, node_id: str) -> Node:
        return self.index.require(node_id)

    def get_edges(self, node_id: str) -> list[Edge]:
        """All edges touching a node, sorted by key."""
        with self.lock:
            self.index.require(node_id)
            keys = sorted(self._adjacency.get(node_id, ()), key=_sort_key)
            return [self._edges[k] for k in keys]

    def get_edge(self, source: str, target: str, type: ConnectionType) -> Edge | None:
        with self.lock:
            return self._edges.get(edge_key(source, target, type))

    def edges_from(self, origin: str) -> list[Edge]:
        """Edges carrying a claim from this origin, sorted by key."""
        with self.lock:
            keys = sorted(self._by_origin.get(origin, ()), key=_sort_key)
            return [self._edges[k] for k in keys]

    def edge_count(self) -> int:
        with self.lock:
            return len(self._edges)

    def snapshot(self) -> GraphSnapshot:
        """Consistent copy-on-read view for queries. O(nodes + edges)."""
        with self.lock:
            return GraphSnapshot(
                nodes=MappingProxyType(self.index.nodes()),
                edges=MappingProxyType(dict(self._edges)),
                adjacency=MappingProxyType(
                    {nid: frozenset(keys) for nid, keys in self._adjacency.items()}
                ),
            )

    # --- Detection diffs ---

    def apply_diff(
        self,
        node_id: str,
        new_edges: Iterable[Edge],
        expected_version: int | None = None,
    ) -> DiffResult:
        """Replace every detected claim originating from node_id.

        Manual edges are untouched. Edges whose endpoints are no longer in the
        index are dropped. Either the whole diff applies or nothing does.

        Raises:
            NodeNotFoundError: node_id is not in the index
            ConflictError: expected_version is not the node's current version
            InvalidEdgeError: a proposed edge has a manual type or is a self-loop
        """
        with self.lock:
            node = self.index.require(node_id)
            if expected_version is not None and node.version != expected_version:
                raise ConflictError(node_id, expected_version, node.version)

            result = DiffResult(node_id=node_id)
            proposed: dict[EdgeKey, Claim] = {}
            for edge in new_edges:
                if edge.type.manual:
                    raise InvalidEdgeError(f"Detection cannot propose {edge.type.value} edges")
                if edge.source == edge.target:
                    raise InvalidEdgeError(f"Self-loop on {edge.source}")
                if edge.source not in self.index or edge.target not in self.index:
                    logger.warning(f"Dropping dangling edge {edge.key} from {node_id}")
                    result.dropped.append(edge.key)
                    continue
                claim = edge.claims.get(node_id) or Claim(
                    strength=edge.strength, provenance=Provenance(origin=node_id)
                )
                current = proposed.get(edge.key)
                if current is None or claim.strength > current.strength:
                    proposed[edge.key] = claim

            now = utc_now()
            stale = [
                k for k in self._by_origin.get(node_id, set())
                if k not in proposed and not k[2].manual
            ]
            for key in sorted(stale, key=_sort_key):
                self._drop_claim(key, node_id, now)
                result.removed.append(key)

            for key in sorted(proposed, key=_sort_key):
                outcome = self._set_claim(key, node_id, proposed[key], now)
                getattr(result, outcome).append(key)

            if result.changed:
                logger.debug(f"Applied diff for {node_id}: {result.to_summary()}")
            return result

    # --- Manual edges ---

    def add_manual_edge(
        self,
        source: str,
        target: str,
        type: ConnectionType = ConnectionType.EXPLICIT_LINK,
        strength: float = 1.0,
        excerpt: str = "",
    ) -> Edge:
        """Insert or update a user-declared edge."""
        if not type.manual:
            raise InvalidEdgeError(f"{type.value} edges are created by detection only")
        if source == target:
            raise InvalidEdgeError(f"Self-loop on {source}")
        if not 0.0 <= strength <= 1.0:
            raise InvalidEdgeError(f"Strength must be within [0, 1], got {strength}")

        with self.lock:
            self.index.require(source)
            self.index.require(target)
            key = edge_key(source, target, type)
            claim = Claim(
                strength=strength,
                provenance=Provenance(origin=USER_ORIGIN, excerpt=excerpt),
            )
            self._set_claim(key, USER_ORIGIN, claim, utc_now())
            return self._edges[key]

    def remove_manual_edge(self, source: str, target: str, type: ConnectionType) -> bool:
        """Remove a user-declared edge. Returns False if it did not exist."""
        if not type.manual:
            raise InvalidEdgeError(f"{type.value} edges are removed by detection only")
        with self.lock:
            key = edge_key(source, target, type)
            edge = self._edges.get(key)
            if edge is None or USER_ORIGIN not in edge.claims:
                return False
            self._drop_claim(key, USER_ORIGIN, utc_now())
            return True

    # --- Node removal ---

    def remove_node(self, node_id: str) -> list[EdgeKey]:
        """Remove a node, every edge touching it and every claim it originated.

        Manual edges are removed too. Returns the keys of removed edges.

        Raises:
            NodeNotFoundError: node_id is not in the index
        """
        with self.lock:
            self.index.require(node_id)
            removed: list[EdgeKey] = []
            now = utc_now()

            for key in sorted(self._adjacency.get(node_id, set()), key=_sort_key):
                self._delete_edge(key)
                removed.append(key)

            for key in sorted(self._by_origin.get(node_id, set()), key=_sort_key):
                if self._drop_claim(key, node_id, now):
                    removed.append(key)
            self._by_origin.pop(node_id, None)

            self.index.remove(node_id)
            logger.debug(f"Removed node {node_id} with {len(removed)} edges")
            return removed

    # --- Bulk restore ---

    def load(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> int:
        """Restore nodes and edges (e.g. from the cache). Returns edges loaded.

        Edges with missing endpoints or no claims are skipped.
        """
        with self.lock:
            for node in nodes:
                self.index.upsert(node)
            loaded = 0
            for edge in edges:
                if not edge.claims:
                    continue
                if edge.source not in self.index or edge.target not in self.index:
                    logger.warning(f"Skipping cached edge with missing endpoint: {edge.key}")
                    continue
                self._insert_edge(edge)
                loaded += 1
            return loaded

    # --- Internals ---

    def _set_claim(self, key: EdgeKey, origin: str, claim: Claim, now) -> str:
        existing = self._edges.get(key)
        if existing is None:
            source, target, type = key
            edge = Edge(
                source=source,
                target=target,
                type=type,
                claims={origin: claim},
                created_at=now,
                updated_at=now,
            )
            self._insert_edge(edge)
            return "added"

        if existing.claims.get(origin) == claim:
            return "unchanged"

        self._edges[key] = existing.model_copy(
            update={"claims": {**existing.claims, origin: claim}, "updated_at": now}
        )
        self._by_origin.setdefault(origin, set()).add(key)
        return "updated"

    def _drop_claim(self, key: EdgeKey, origin: str, now) -> bool:
        """Remove one origin's claim. Returns True if the edge went away."""
        existing = self._edges.get(key)
        if existing is None or origin not in existing.claims:
            return False
        origin_keys = self._by_origin.get(origin)
        if origin_keys is not None:
            origin_keys.discard(key)
            if not origin_keys:
                del self._by_origin[origin]

        claims = {o: c for o, c in existing.claims.items() if o != origin}
        if not claims:
            self._delete_edge(key)
            return True
        self._edges[key] = existing.model_copy(update={"claims": claims, "updated_at": now})
        return False

    def _insert_edge(self, edge: Edge) -> None:
        key = edge.key
        self._edges[key] = edge
        self._adjacency.setdefault(edge.source, set()).add(key)
        self._adjacency.setdefault(edge.target, set()).add(key)
        for origin in edge.claims:
            self._by_origin.setdefault(origin, set()).add(key)

    def _delete_edge(self, key: EdgeKey) -> None:
        edge = self._edges.pop(key)
        for endpoint in (edge.source, edge.target):
            keys = self._adjacency.get(endpoint)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._adjacency[endpoint]
        for origin in edge.claims:
            keys = self._by_origin.get(origin)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._by_origin[origin]

    def check_consistency(self) -> list[str]:
        """Validate adjacency and origin indices against the edge table.

        Debug/test utility; an empty list means the store is consistent.
        """
        errors: list[str] = []
        with self.lock:
            expected_adj: dict[str, set[EdgeKey]] = {}
            expected_origin: dict[str, set[EdgeKey]] = {}
            for key, edge in self._edges.items():
                if key != edge.key:
                    errors.append(f"Edge stored under wrong key: {key} != {edge.key}")
                if not edge.claims:
                    errors.append(f"Edge without claims: {key}")
                for endpoint in (edge.source, edge.target):
                    if endpoint not in self.index:
                        errors.append(f"Dangling endpoint {endpoint} on {key}")
                    expected_adj.setdefault(endpoint, set()).add(key)
                for origin in edge.claims:
                    expected_origin.setdefault(origin, set()).add(key)

            if expected_adj != self._adjacency:
                errors.append("Adjacency lists do not match the edge table")
            if expected_origin != self._by_origin:
                errors.append("Origin index does not match the edge claims")
        return errors


def _sort_key(key: EdgeKey) -> tuple[str, str, str]:
    return (key[0], key[1], key[2].value)
