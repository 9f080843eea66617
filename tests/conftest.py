"""Shared test fixtures and helpers for notegraph tests."""

import tempfile
from pathlib import Path

import pytest

from notegraph.config import GraphSettings
from notegraph.detection import ConnectionDetector
from notegraph.engine import KnowledgeGraph
from notegraph.index import EntityIndex, note_terms, person_terms
from notegraph.models import ConnectionType, Edge, Node, NodeKind, Provenance
from notegraph.store import GraphStore


# --- Helpers ---


def make_person(person_id: str, *names: str, version: int = 1) -> Node:
    """Build a person node with its match terms."""
    return Node(
        id=person_id,
        kind=NodeKind.PERSON,
        title=names[0],
        terms=person_terms(list(names)),
        version=version,
    )


def make_note(note_id: str, title: str, version: int = 1) -> Node:
    """Build a note node with its match terms."""
    return Node(id=note_id, kind=NodeKind.NOTE, title=title, terms=note_terms(title), version=version)


def make_edge(
    source: str,
    target: str,
    type: ConnectionType = ConnectionType.MENTIONS,
    strength: float = 0.5,
    origin: str | None = None,
) -> Edge:
    """Build a single-claim edge; the origin defaults to the source."""
    return Edge.propose(source, target, type, strength, Provenance(origin=origin or source))


def edge_keys(edges) -> set[tuple[str, str, str]]:
    """(source, target, type value) triples, for order-free comparisons."""
    return {(e.source, e.target, e.type.value) for e in edges}


# --- Fixtures ---


@pytest.fixture
def temp_data_dir():
    """Provide a temporary data directory.

    Yields a Path to a temporary directory that's cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def index():
    """Entity index with two people and two notes."""
    idx = EntityIndex()
    idx.upsert(make_person("p1", "Alice Smith"))
    idx.upsert(make_person("p2", "Bob Jones"))
    idx.upsert(make_note("n1", "Weekly Sync"))
    idx.upsert(make_note("n2", "Project Apollo"))
    return idx


@pytest.fixture
def store(index):
    return GraphStore(index)


@pytest.fixture
def detector(index):
    return ConnectionDetector(index)


@pytest.fixture
def settings():
    """In-memory settings with detection running inline."""
    return GraphSettings(workers=0)


@pytest.fixture
def kg(settings):
    """Provide a fresh in-memory KnowledgeGraph.

    Detection runs on the calling thread, so every event is fully applied
    by the time the call returns.
    """
    graph = KnowledgeGraph(settings)
    yield graph
    graph.close()


@pytest.fixture
def populated_kg(kg):
    """KnowledgeGraph with two people and three notes.

    - n1 "Weekly Sync" mentions Alice Smith and Bob Jones in one sentence
    - n2 "Project Apollo" mentions Alice Smith
    - n3 "Retro" links to Project Apollo by title
    """
    kg.on_person_changed("p1", ["Alice Smith"])
    kg.on_person_changed("p2", ["Bob Jones"])
    kg.on_note_changed("n1", "Alice Smith met Bob Jones to plan the quarter.", title="Weekly Sync")
    kg.on_note_changed("n2", "Alice Smith owns the launch.", title="Project Apollo")
    kg.on_note_changed("n3", "Lessons from Project Apollo.", title="Retro")
    return kg
