"""Core data models for the knowledge graph.

Uses Pydantic v2 for validation, ULID for sortable unique IDs.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    NOTE = "note"
    PERSON = "person"


class ConnectionType(str, Enum):
    MENTIONS = "mentions"
    CO_OCCURS_WITH = "co_occurs_with"
    EXPLICIT_LINK = "explicit_link"
    ASSIGNED_TO = "assigned_to"

    @property
    def directed(self) -> bool:
        return self is not ConnectionType.CO_OCCURS_WITH

    @property
    def manual(self) -> bool:
        """Manual edges are only created or removed through direct API calls."""
        return self in MANUAL_TYPES


MANUAL_TYPES = frozenset({ConnectionType.EXPLICIT_LINK, ConnectionType.ASSIGNED_TO})

# Origin recorded on claims created by a user action rather than by detection
USER_ORIGIN = "user"

EdgeKey = tuple[str, str, ConnectionType]


class Node(BaseModel):
    """A node in the knowledge graph: a note or a person."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    kind: NodeKind
    title: str
    terms: tuple[str, ...] = ()  # lower-cased match terms
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_summary(self) -> dict:
        """Return a compact summary of this node."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "version": self.version,
        }


class Provenance(BaseModel):
    """Which text span (or user action) produced a claim."""

    model_config = ConfigDict(frozen=True)

    origin: str  # note ID or "user"
    start: int | None = None
    end: int | None = None
    excerpt: str = ""


class Claim(BaseModel):
    """One origin's support for an edge."""

    model_config = ConfigDict(frozen=True)

    strength: float = Field(ge=0.0, le=1.0)
    provenance: Provenance


def edge_key(source: str, target: str, type: ConnectionType) -> EdgeKey:
    """Canonical key for an edge; undirected edges sort their endpoints."""
    if not type.directed and target < source:
        source, target = target, source
    return (source, target, type)


class Edge(BaseModel):
    """An edge (connection) in the knowledge graph.

    Edges are unique per (source, target, type). Several origins may support
    the same edge, e.g. two notes that both mention Alice and Bob together;
    each origin contributes one claim and the edge strength is the strongest
    claim. An edge with no claims left is removed by the store.

    Instances are treated as immutable: the store replaces an edge with an
    updated copy instead of mutating it, so snapshots stay consistent.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    source: str
    target: str
    type: ConnectionType
    claims: dict[str, Claim] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def propose(
        cls,
        source: str,
        target: str,
        type: ConnectionType,
        strength: float,
        provenance: Provenance,
    ) -> "Edge":
        """Build a single-claim edge with canonical endpoint order."""
        source, target, type = edge_key(source, target, type)
        return cls(
            source=source,
            target=target,
            type=type,
            claims={provenance.origin: Claim(strength=strength, provenance=provenance)},
        )

    @property
    def key(self) -> EdgeKey:
        return (self.source, self.target, self.type)

    @property
    def strength(self) -> float:
        if not self.claims:
            return 0.0
        return max(c.strength for c in self.claims.values())

    @property
    def origins(self) -> set[str]:
        return set(self.claims)

    def other_node(self, node_id: str) -> str:
        """Return the node on the other end of this edge."""
        return self.target if self.source == node_id else self.source

    def touches(self, node_id: str) -> bool:
        return node_id == self.source or node_id == self.target

    def to_summary(self) -> dict:
        """Return a compact summary of this edge."""
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type.value,
            "strength": round(self.strength, 4),
            "origins": sorted(self.claims),
        }


class Match(BaseModel):
    """One occurrence of a node's term in a piece of text."""

    model_config = ConfigDict(frozen=True)

    node: Node
    start: int
    end: int
    strength: float


class Subgraph(BaseModel):
    """A set of nodes plus the edges among them."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    root: str | None = None
    depth: int | None = None

    @property
    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "depth": self.depth,
            "nodes": [n.to_summary() for n in self.nodes],
            "edges": [e.to_summary() for e in self.edges],
        }
