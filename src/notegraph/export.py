"""Graph export to portable formats.

Exports are deterministic: nodes are sorted by id and edges by
(source, target, type), so identical graph state always produces
byte-identical output.

Formats:
- json: {"nodes": [{id, kind, title}], "edges": [{source, target, type, strength}]}
- cypher: CREATE / MATCH statements for Neo4j
- gexf: GEXF 1.2 XML for Gephi
"""

import json
import xml.etree.ElementTree as ET

from .errors import SerializationError
from .models import ConnectionType, Edge, Node, NodeKind, Provenance, Subgraph

FORMATS = ("json", "cypher", "gexf")

# Format -> (content type, download filename), for the routing layer
EXPORT_MEDIA_TYPES = {
    "json": ("application/json", "knowledge_graph.json"),
    "cypher": ("text/plain", "knowledge_graph.cypher"),
    "gexf": ("application/xml", "knowledge_graph.gexf"),
}

_GEXF_NS = "http://www.gexf.net/1.2draft"


def _sorted_parts(subgraph: Subgraph) -> tuple[list[Node], list[Edge]]:
    nodes = sorted(subgraph.nodes, key=lambda n: n.id)
    edges = sorted(subgraph.edges, key=lambda e: (e.source, e.target, e.type.value))
    return nodes, edges


def _strength(edge: Edge) -> float:
    return round(edge.strength, 4)


def export_subgraph(subgraph: Subgraph, fmt: str = "json") -> str:
    """Render a subgraph in the given format.

    Raises:
        SerializationError: If the format is not supported
    """
    fmt = (fmt or "").lower()
    if fmt == "json":
        return to_json(subgraph)
    if fmt == "cypher":
        return to_cypher(subgraph)
    if fmt == "gexf":
        return to_gexf(subgraph)
    raise SerializationError(f"Unsupported export format: {fmt!r} (use one of {', '.join(FORMATS)})")


def to_json(subgraph: Subgraph) -> str:
    nodes, edges = _sorted_parts(subgraph)
    data = {
        "nodes": [
            {"id": n.id, "kind": n.kind.value, "title": n.title}
            for n in nodes
        ],
        "edges": [
            {
                "source": e.source,
                "target": e.target,
                "type": e.type.value,
                "strength": _strength(e),
            }
            for e in edges
        ],
    }
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _cypher_str(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _cypher_var(node: Node) -> str:
    prefix = "p" if node.kind is NodeKind.PERSON else "n"
    return prefix + "".join(ch for ch in node.id if ch.isalnum())


def to_cypher(subgraph: Subgraph) -> str:
    nodes, edges = _sorted_parts(subgraph)
    by_id = {n.id: n for n in nodes}

    lines = ["// Create nodes"]
    for node in nodes:
        label = "Person" if node.kind is NodeKind.PERSON else "Note"
        prop = "name" if node.kind is NodeKind.PERSON else "title"
        lines.append(
            f"CREATE ({_cypher_var(node)}:{label} "
            f"{{id: {_cypher_str(node.id)}, {prop}: {_cypher_str(node.title)}}})"
        )

    lines.append("")
    lines.append("// Create relationships")
    for edge in edges:
        source, target = by_id.get(edge.source), by_id.get(edge.target)
        if source is None or target is None:
            continue
        s, t = _cypher_var(source), _cypher_var(target)
        props = f"strength: {_strength(edge)}"
        if not edge.type.directed:
            # Neo4j relationships always have a direction
            props += ", directed: false"
        lines.append(
            f"MATCH ({s} {{id: {_cypher_str(source.id)}}}), ({t} {{id: {_cypher_str(target.id)}}}) "
            f"CREATE ({s})-[:{edge.type.value.upper()} {{{props}}}]->({t})"
        )
    return "\n".join(lines) + "\n"


def to_gexf(subgraph: Subgraph) -> str:
    nodes, edges = _sorted_parts(subgraph)

    root = ET.Element("gexf", {"xmlns": _GEXF_NS, "version": "1.2"})
    graph = ET.SubElement(root, "graph", {"mode": "static", "defaultedgetype": "directed"})
    attributes = ET.SubElement(graph, "attributes", {"class": "node"})
    ET.SubElement(attributes, "attribute", {"id": "0", "title": "kind", "type": "string"})

    xml_nodes = ET.SubElement(graph, "nodes")
    for node in nodes:
        el = ET.SubElement(xml_nodes, "node", {"id": node.id, "label": node.title})
        values = ET.SubElement(el, "attvalues")
        ET.SubElement(values, "attvalue", {"for": "0", "value": node.kind.value})

    xml_edges = ET.SubElement(graph, "edges")
    for i, edge in enumerate(edges):
        attrs = {
            "id": str(i),
            "source": edge.source,
            "target": edge.target,
            "label": edge.type.value,
            "weight": str(_strength(edge)),
        }
        if not edge.type.directed:
            attrs["type"] = "undirected"
        ET.SubElement(xml_edges, "edge", attrs)

    ET.indent(root, space="  ")
    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"


def import_json(payload: str | bytes) -> Subgraph:
    """Parse a json export back into a Subgraph.

    Edges come back with a single claim carrying the exported strength.

    Raises:
        SerializationError: If the payload is not a valid json export
    """
    try:
        data = json.loads(payload)
        nodes = [
            Node(id=n["id"], kind=NodeKind(n["kind"]), title=n["title"])
            for n in data["nodes"]
        ]
        edges = [
            Edge.propose(
                e["source"],
                e["target"],
                ConnectionType(e["type"]),
                float(e["strength"]),
                Provenance(origin="import"),
            )
            for e in data["edges"]
        ]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"Malformed graph export: {e}") from e
    return Subgraph(nodes=nodes, edges=edges)
