"""Tests for graph export formats."""

import json
import xml.etree.ElementTree as ET

import pytest

from notegraph.errors import SerializationError
from notegraph.export import EXPORT_MEDIA_TYPES, FORMATS, export_subgraph, import_json
from notegraph.models import ConnectionType, Subgraph

from conftest import make_edge, make_note, make_person

GEXF = "{http://www.gexf.net/1.2draft}"


@pytest.fixture
def subgraph():
    return Subgraph(
        nodes=[
            make_note("n1", "Alice's Plan"),
            make_person("p2", "Bob Jones"),
            make_person("p1", "Alice Smith"),
        ],
        edges=[
            make_edge("p1", "p2", type=ConnectionType.CO_OCCURS_WITH, strength=0.75, origin="n1"),
            make_edge("n1", "p1", strength=0.85),
        ],
    )


class TestJson:
    def test_structure(self, subgraph):
        data = json.loads(export_subgraph(subgraph, "json"))
        assert [n["id"] for n in data["nodes"]] == ["n1", "p1", "p2"]
        assert data["nodes"][0] == {"id": "n1", "kind": "note", "title": "Alice's Plan"}
        assert data["edges"][0] == {"source": "n1", "target": "p1", "type": "mentions", "strength": 0.85}

    def test_deterministic(self, subgraph):
        reordered = Subgraph(nodes=list(reversed(subgraph.nodes)), edges=list(reversed(subgraph.edges)))
        assert export_subgraph(subgraph, "json") == export_subgraph(reordered, "json")

    def test_import_round_trip(self, subgraph):
        payload = export_subgraph(subgraph, "json")
        assert export_subgraph(import_json(payload), "json") == payload

    def test_import_malformed(self):
        with pytest.raises(SerializationError):
            import_json("{not json")
        with pytest.raises(SerializationError):
            import_json('{"nodes": [{"id": "x"}], "edges": []}')


class TestCypher:
    def test_statements(self, subgraph):
        text = export_subgraph(subgraph, "cypher")
        assert "CREATE (nn1:Note {id: 'n1', title: 'Alice\\'s Plan'})" in text
        assert "CREATE (pp1:Person {id: 'p1', name: 'Alice Smith'})" in text
        assert "-[:MENTIONS {strength: 0.85}]->" in text
        assert "-[:CO_OCCURS_WITH {strength: 0.75, directed: false}]->" in text
        assert "-[:MENTIONS {strength: 0.85, directed" not in text

    def test_skips_edges_to_missing_nodes(self):
        sub = Subgraph(nodes=[make_note("n1", "Solo")], edges=[make_edge("n1", "p1")])
        assert "MATCH" not in export_subgraph(sub, "cypher")


class TestGexf:
    def test_parses(self, subgraph):
        root = ET.fromstring(export_subgraph(subgraph, "gexf"))
        nodes = root.findall(f"{GEXF}graph/{GEXF}nodes/{GEXF}node")
        edges = root.findall(f"{GEXF}graph/{GEXF}edges/{GEXF}edge")
        assert [n.get("id") for n in nodes] == ["n1", "p1", "p2"]
        assert len(edges) == 2
        undirected = [e for e in edges if e.get("type") == "undirected"]
        assert [e.get("label") for e in undirected] == ["co_occurs_with"]


class TestFormats:
    def test_unknown_format(self, subgraph):
        with pytest.raises(SerializationError):
            export_subgraph(subgraph, "csv")

    def test_case_insensitive(self, subgraph):
        assert export_subgraph(subgraph, "JSON") == export_subgraph(subgraph, "json")

    def test_media_types_cover_formats(self):
        assert set(EXPORT_MEDIA_TYPES) == set(FORMATS)

    def test_empty_graph(self):
        assert json.loads(export_subgraph(Subgraph(), "json")) == {"edges": [], "nodes": []}
