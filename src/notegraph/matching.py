"""Term matching over free text.

Pure functions over (text, candidate terms) with no storage dependency, so the
matching rules can be tested in isolation from the index and the store.

Rules:
- Matching is case-insensitive and whitespace-insensitive (text and terms are
  normalized the same way).
- A term only matches on word boundaries: "al" does not match inside "sale".
- Overlaps resolve leftmost-longest: at each position the longest term wins,
  and a term inside an already matched span is not reported again.
- Several nodes can share a term. Their matches share the span and are
  ordered Person first, then by strength, then by node id.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .constants import (
    EXPLICIT_MARKER_STRENGTH,
    NOTE_MARKER,
    PERSON_MARKER,
    TERM_BASE_STRENGTH,
    TERM_MULTI_WORD_BONUS,
    TERM_STRENGTH_PER_CHAR,
)
from .models import Match, Node, NodeKind

_WS = re.compile(r"\s+")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+|\s*\n\s*")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

_KIND_PRIORITY = {NodeKind.PERSON: 0, NodeKind.NOTE: 1}


def normalize_text(text: str) -> str:
    """Collapse whitespace runs and case-fold. Returns a new string."""
    return _WS.sub(" ", text).strip().casefold()


def term_strength(term: str) -> float:
    """Specificity score for a term in (0, 1].

    Longer and multi-word terms score higher, so a full name like
    "alice smith" outranks a bare "al".
    """
    words = len(term.split())
    score = (
        TERM_BASE_STRENGTH
        + TERM_STRENGTH_PER_CHAR * len(term)
        + TERM_MULTI_WORD_BONUS * (words - 1)
    )
    return round(min(1.0, score), 4)


@dataclass(frozen=True)
class TermEntry:
    """A node that answers to a term, with the term's strength for it."""

    node: Node
    strength: float

    @property
    def sort_key(self) -> tuple:
        return (_KIND_PRIORITY[self.node.kind], -self.strength, self.node.id)


@dataclass
class TermTable:
    """Compiled lookup of normalized term -> candidate nodes."""

    entries: dict[str, list[TermEntry]] = field(default_factory=dict)
    pattern: re.Pattern | None = None

    @classmethod
    def build(cls, terms: Mapping[str, Iterable[TermEntry]]) -> "TermTable":
        entries = {
            term: sorted(candidates, key=lambda e: e.sort_key)
            for term, candidates in terms.items()
            if term
        }
        entries = {t: c for t, c in entries.items() if c}
        pattern = None
        if entries:
            # Longest first so the alternation behaves leftmost-longest
            alternation = "|".join(
                re.escape(t) for t in sorted(entries, key=lambda t: (-len(t), t))
            )
            pattern = re.compile(rf"(?<!\w)(?:{alternation})(?!\w)")
        return cls(entries=entries, pattern=pattern)


def find_matches(text: str, table: TermTable) -> list[Match]:
    """Find every term occurrence in already-normalized text.

    Returns matches ordered by position; matches sharing a span are ordered
    by the tie-break (Person before Note, higher strength, smaller id).
    An occurrence directly preceded by "@" (people) or "#" (notes) is an
    explicit mention and scores full strength.
    """
    if not text or table.pattern is None:
        return []

    matches: list[Match] = []
    for m in table.pattern.finditer(text):
        start, end = m.span()
        marker = text[start - 1] if start > 0 else ""
        for entry in table.entries.get(m.group(0), ()):
            strength = entry.strength
            if (marker == PERSON_MARKER and entry.node.kind is NodeKind.PERSON) or (
                marker == NOTE_MARKER and entry.node.kind is NodeKind.NOTE
            ):
                strength = EXPLICIT_MARKER_STRENGTH
            matches.append(Match(node=entry.node, start=start, end=end, strength=strength))

    matches.sort(
        key=lambda x: (x.start, x.end, _KIND_PRIORITY[x.node.kind], -x.strength, x.node.id)
    )
    return matches


def split_windows(text: str, mode: str) -> tuple[str, list[tuple[int, int]]]:
    """Normalize text and return it with its co-occurrence windows.

    Windows are (start, end) ranges in the normalized text. Splitting happens
    on the raw text, before whitespace is collapsed, so paragraph breaks are
    still visible.

    Modes:
        sentence: split after . ! ? and at line breaks
        paragraph: split at blank lines
        note: the whole text is one window
    """
    if mode == "sentence":
        pieces = _SENTENCE_BREAK.split(text)
    elif mode == "paragraph":
        pieces = _PARAGRAPH_BREAK.split(text)
    elif mode == "note":
        pieces = [text]
    else:
        raise ValueError(f"Unknown co-occurrence window: {mode}")

    normalized_pieces = [p for p in (normalize_text(p) for p in pieces) if p]
    windows: list[tuple[int, int]] = []
    offset = 0
    for piece in normalized_pieces:
        windows.append((offset, offset + len(piece)))
        offset += len(piece) + 1  # joining space
    return " ".join(normalized_pieces), windows


def window_of(position: int, windows: list[tuple[int, int]]) -> int:
    """Index of the window containing a position (windows are sorted)."""
    lo, hi = 0, len(windows) - 1
    while lo <= hi:
        mid = (lo + hi) // 2
        start, end = windows[mid]
        if position < start:
            hi = mid - 1
        elif position >= end:
            lo = mid + 1
        else:
            return mid
    # A joining space between windows belongs to the following window
    return min(lo, len(windows) - 1)


def search_strength(query: str, term: str) -> float:
    """Fraction of a term covered by a query that occurs inside it, else 0."""
    if not query or query not in term:
        return 0.0
    return round(len(query) / len(term), 4)
