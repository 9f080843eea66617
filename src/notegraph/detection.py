"""Connection detection: derive edges from a note's content.

Detection is deterministic and explainable: every proposed edge carries the
span that produced it. Two kinds of edges come out of a run:

- mentions: note -> node, one per distinct node matched in the content
- co_occurs_with: person <-> person, for two people matched in the same window

Manual edge types (explicit_link, assigned_to) are never produced here.
"""

import logging
from itertools import combinations
from typing import Any

from .content import extract_text
from .index import EntityIndex
from .matching import split_windows, window_of
from .models import ConnectionType, Edge, Match, NodeKind, Provenance

logger = logging.getLogger(__name__)


class ConnectionDetector:
    """Proposes edges for a note by matching its text against the index."""

    def __init__(self, index: EntityIndex, window: str = "sentence", excerpt_chars: int = 20):
        self.index = index
        self.window = window
        self.excerpt_chars = excerpt_chars

    def detect(self, note_id: str, content: Any) -> list[Edge]:
        """Propose the full edge set for a note's current content.

        Never raises on content: empty, malformed or unmatched content yields
        an empty list. Edges are returned sorted by key.
        """
        text, windows = split_windows(extract_text(content), self.window)
        if not text:
            return []

        matches = self._resolve_spans(self.index.find_in_normalized(text))

        mentions: dict[str, tuple[float, Match]] = {}
        people_by_window: dict[int, dict[str, float]] = {}

        for match in matches:
            node = match.node
            if node.id == note_id:
                continue  # a note naming itself is not a connection

            best = mentions.get(node.id)
            if best is None or match.strength > best[0]:
                # Keep the first occurrence as provenance, only raise strength
                first = best[1] if best else match
                mentions[node.id] = (match.strength, first)

            if node.kind is NodeKind.PERSON:
                people = people_by_window.setdefault(window_of(match.start, windows), {})
                people[node.id] = max(people.get(node.id, 0.0), match.strength)

        edges = [
            Edge.propose(
                note_id,
                target_id,
                ConnectionType.MENTIONS,
                strength,
                self._provenance(note_id, text, first.start, first.end),
            )
            for target_id, (strength, first) in mentions.items()
        ]
        edges.extend(self._co_occurrences(note_id, text, windows, people_by_window))

        edges.sort(key=lambda e: (e.source, e.target, e.type.value))
        logger.debug(f"Detected {len(edges)} edges for note {note_id}")
        return edges

    def _resolve_spans(self, matches: list[Match]) -> list[Match]:
        """Keep one node per span: the first under the index tie-break order."""
        resolved: list[Match] = []
        seen: set[tuple[int, int]] = set()
        for match in matches:
            span = (match.start, match.end)
            if span in seen:
                continue
            seen.add(span)
            resolved.append(match)
        return resolved

    def _co_occurrences(
        self,
        note_id: str,
        text: str,
        windows: list[tuple[int, int]],
        people_by_window: dict[int, dict[str, float]],
    ) -> list[Edge]:
        best: dict[tuple[str, str], tuple[float, int]] = {}
        for window_idx in sorted(people_by_window):
            people = people_by_window[window_idx]
            for a, b in combinations(sorted(people), 2):
                strength = min(people[a], people[b])
                current = best.get((a, b))
                if current is None or strength > current[0]:
                    best[(a, b)] = (strength, window_idx)

        edges = []
        for (a, b), (strength, window_idx) in best.items():
            start, end = windows[window_idx]
            edges.append(
                Edge.propose(
                    a,
                    b,
                    ConnectionType.CO_OCCURS_WITH,
                    strength,
                    Provenance(origin=note_id, start=start, end=end, excerpt=text[start:end][:200]),
                )
            )
        return edges

    def _provenance(self, note_id: str, text: str, start: int, end: int) -> Provenance:
        lo = max(0, start - self.excerpt_chars)
        hi = min(len(text), end + self.excerpt_chars)
        return Provenance(origin=note_id, start=start, end=end, excerpt=text[lo:hi])
