"""Entity index: the canonical registry of graph nodes and their match terms.

The index owns Node objects. The graph store and query engine hold node ids
and look nodes up here.
"""

from __future__ import annotations

import logging
import threading

from .errors import NodeNotFoundError
from .matching import (
    TermEntry,
    TermTable,
    find_matches,
    normalize_text,
    search_strength,
    term_strength,
)
from .models import Match, Node, NodeKind, utc_now

logger = logging.getLogger(__name__)


def note_terms(title: str) -> tuple[str, ...]:
    """Match terms for a note: its normalized title."""
    term = normalize_text(title)
    return (term,) if term else ()


def person_terms(names: list[str]) -> tuple[str, ...]:
    """Match terms for a person: every declared name/alias, de-duplicated."""
    seen: dict[str, None] = {}
    for name in names:
        term = normalize_text(name)
        if term:
            seen.setdefault(term, None)
    return tuple(seen)


class EntityIndex:
    """Registry of nodes with term-based candidate matching.

    Thread-safety: all methods take the index lock; the compiled term table is
    rebuilt lazily on the first lookup after match terms change.
    """

    def __init__(
        self,
        short_names: bool = True,
        short_name_factor: float = 0.6,
        min_term_length: int = 2,
    ):
        self.short_names = short_names
        self.short_name_factor = short_name_factor
        self.min_term_length = min_term_length

        self.lock = threading.RLock()
        self._nodes: dict[str, Node] = {}
        self._node_terms: dict[str, dict[str, float]] = {}  # node id -> term -> strength
        self._short_terms: dict[str, set[str]] = {}  # node id -> derived short names
        self._table: TermTable | None = None

    # --- Mutations ---

    def upsert(self, node: Node) -> Node:
        """Insert or replace a node. Returns the stored node."""
        with self.lock:
            existing = self._nodes.get(node.id)
            if existing is not None and existing.created_at != node.created_at:
                node = node.model_copy(update={"created_at": existing.created_at})
            self._nodes[node.id] = node
            terms, short = self._terms_for(node)
            if existing is None or existing.kind is not node.kind or self._node_terms.get(node.id) != terms:
                self._table = None
            self._node_terms[node.id] = terms
            self._short_terms[node.id] = short
            return node

    def remove(self, node_id: str) -> Node:
        """Remove a node. Raises NodeNotFoundError if unknown."""
        with self.lock:
            node = self._nodes.pop(node_id, None)
            if node is None:
                raise NodeNotFoundError(node_id)
            self._node_terms.pop(node_id, None)
            self._short_terms.pop(node_id, None)
            self._table = None
            return node

    def touch(self, node_id: str, **updates) -> Node:
        """Replace a node with an updated copy (title, terms, version...)."""
        with self.lock:
            node = self.require(node_id)
            updated = node.model_copy(update={**updates, "updated_at": utc_now()})
            return self.upsert(updated)

    # --- Lookups ---

    def get(self, node_id: str) -> Node | None:
        with self.lock:
            return self._nodes.get(node_id)

    def require(self, node_id: str) -> Node:
        node = self.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def __contains__(self, node_id: str) -> bool:
        with self.lock:
            return node_id in self._nodes

    def __len__(self) -> int:
        with self.lock:
            return len(self._nodes)

    def nodes(self) -> dict[str, Node]:
        """Shallow copy of the node table (nodes are immutable)."""
        with self.lock:
            return dict(self._nodes)

    def terms_of(self, node_id: str) -> dict[str, float]:
        """Effective match terms of a node, short names included."""
        with self.lock:
            return dict(self._node_terms.get(node_id, {}))

    # --- Matching ---

    def find_candidates(self, text: str) -> list[Match]:
        """Match every node's terms against text.

        The text is normalized first; spans refer to the normalized text.
        """
        return self.find_in_normalized(normalize_text(text))

    def find_in_normalized(self, normalized: str) -> list[Match]:
        """Like find_candidates for text that is already normalized."""
        matches = find_matches(normalized, self.table())
        # The table survives edits that keep terms, so report current nodes
        with self.lock:
            current = [self._nodes.get(m.node.id, m.node) for m in matches]
        return [
            m if node is m.node else m.model_copy(update={"node": node})
            for m, node in zip(matches, current)
        ]

    def search(self, query: str) -> list[tuple[Node, float]]:
        """Nodes with a term containing the query, with the best coverage.

        Unordered; ranking belongs to the query engine.
        """
        q = normalize_text(query)
        if not q:
            return []
        results: list[tuple[Node, float]] = []
        with self.lock:
            for node_id, terms in self._node_terms.items():
                best = 0.0
                short = self._short_terms.get(node_id, set())
                for term in terms:
                    score = search_strength(q, term)
                    if term in short:
                        score = round(score * self.short_name_factor, 4)
                    best = max(best, score)
                if best > 0:
                    results.append((self._nodes[node_id], best))
        return results

    def table(self) -> TermTable:
        with self.lock:
            if self._table is None:
                self._table = self._build_table()
            return self._table

    # --- Internals ---

    def _terms_for(self, node: Node) -> tuple[dict[str, float], set[str]]:
        terms: dict[str, float] = {}
        short_terms: set[str] = set()
        for term in node.terms:
            if len(term) >= self.min_term_length:
                terms[term] = term_strength(term)

        if node.kind is NodeKind.PERSON and self.short_names:
            for term in node.terms:
                words = term.split()
                if len(words) < 2:
                    continue
                for short in {words[0], words[-1]}:
                    if len(short) < self.min_term_length or short in terms:
                        continue
                    terms[short] = round(term_strength(short) * self.short_name_factor, 4)
                    short_terms.add(short)
        return terms, short_terms

    def _build_table(self) -> TermTable:
        by_term: dict[str, list[TermEntry]] = {}
        for node_id, terms in self._node_terms.items():
            node = self._nodes[node_id]
            for term, strength in terms.items():
                by_term.setdefault(term, []).append(TermEntry(node=node, strength=strength))
        logger.debug(f"Rebuilt term table: {len(by_term)} terms, {len(self._nodes)} nodes")
        return TermTable.build(by_term)
