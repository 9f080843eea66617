"""Error taxonomy for the graph engine.

Every error carries a stable ``code`` so the routing layer can map it to a
response without string matching.
"""


class GraphError(Exception):
    """Base class for all graph engine errors."""

    code = "graph_error"


class NodeNotFoundError(GraphError, KeyError):
    """Unknown node id in a query or mutation."""

    code = "not_found"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return self.args[0]


class ValidationError(GraphError, ValueError):
    """Caller supplied an argument outside the allowed range."""

    code = "invalid_argument"


class InvalidDepthError(ValidationError):
    code = "invalid_depth"


class InvalidLimitError(ValidationError):
    code = "invalid_limit"


class InvalidQueryError(ValidationError):
    code = "invalid_query"


class InvalidEdgeError(ValidationError):
    code = "invalid_edge"


class ConflictError(GraphError):
    """A diff was computed against a node version that is no longer current."""

    code = "conflict"

    def __init__(self, node_id: str, expected: int, actual: int):
        self.node_id = node_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale diff for {node_id}: computed at version {expected}, "
            f"current version is {actual}"
        )


class SerializationError(GraphError):
    """Export format unsupported or payload malformed."""

    code = "serialization_error"
