"""On-disk graph cache backed by SQLite.

One row per node and one row per edge, so a restart can reload the graph
without re-running detection. Note content is cached next to its node so that
notes whose version is unchanged can be marked clean directly.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from .constants import SCHEMA_VERSION
from .models import Claim, ConnectionType, Edge, Node, NodeKind
from .store import GraphSnapshot

logger = logging.getLogger(__name__)


@dataclass
class CachedGraph:
    """Everything loaded back from the cache."""

    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    contents: dict[str, str] = field(default_factory=dict)  # note id -> content


class GraphCache:
    """Node and edge tables in a single SQLite file."""

    def __init__(self, db_path: Path):
        """Initialize the cache.

        Args:
            db_path: Path to notegraph.db
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path), timeout=30.0, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_conn()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                created_at TEXT DEFAULT (datetime('now'))
            )
        """)

        version = conn.execute("SELECT version FROM schema_version").fetchone()
        if version is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif version[0] < SCHEMA_VERSION:
            logger.warning(f"Schema version {version[0]} detected, may need migration")

        conn.executescript("""
            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                title TEXT NOT NULL,
                terms TEXT NOT NULL,
                version INTEGER NOT NULL,
                content TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS edges (
                source TEXT NOT NULL,
                target TEXT NOT NULL,
                type TEXT NOT NULL,
                id TEXT NOT NULL,
                claims TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (source, target, type)
            );

            CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target);
        """)
        conn.commit()

    def save(self, snapshot: GraphSnapshot, contents: dict[str, str] | None = None) -> None:
        """Replace the cached graph with a snapshot in one transaction."""
        contents = contents or {}
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM edges")
            conn.execute("DELETE FROM nodes")
            conn.executemany(
                """
                INSERT INTO nodes (id, kind, title, terms, version, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        node.id,
                        node.kind.value,
                        node.title,
                        json.dumps(list(node.terms)),
                        node.version,
                        contents.get(node.id),
                        node.created_at.isoformat(),
                        node.updated_at.isoformat(),
                    )
                    for node in snapshot.nodes.values()
                ],
            )
            conn.executemany(
                """
                INSERT INTO edges (source, target, type, id, claims, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        edge.source,
                        edge.target,
                        edge.type.value,
                        edge.id,
                        json.dumps(
                            {o: c.model_dump(mode="json") for o, c in sorted(edge.claims.items())}
                        ),
                        edge.created_at.isoformat(),
                        edge.updated_at.isoformat(),
                    )
                    for edge in snapshot.edges.values()
                ],
            )
        logger.info(
            f"Saved graph cache: {len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges"
        )

    def load(self, tolerant: bool = True) -> CachedGraph:
        """Read the cached graph.

        Args:
            tolerant: If True, skip malformed rows with warnings.
                      If False, raise on first error (strict mode).
        """
        conn = self._get_conn()
        cached = CachedGraph()
        skipped = 0

        for row in conn.execute("SELECT * FROM nodes ORDER BY id"):
            try:
                node = Node(
                    id=row["id"],
                    kind=NodeKind(row["kind"]),
                    title=row["title"],
                    terms=tuple(json.loads(row["terms"])),
                    version=row["version"],
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                )
            except (json.JSONDecodeError, TypeError, ValueError, PydanticValidationError) as e:
                if not tolerant:
                    raise ValueError(f"Malformed node row {row['id']}: {e}") from e
                logger.warning(f"Skipping malformed node row {row['id']}: {e}")
                skipped += 1
                continue
            cached.nodes.append(node)
            if row["content"] is not None:
                cached.contents[node.id] = row["content"]

        for row in conn.execute("SELECT * FROM edges ORDER BY source, target, type"):
            try:
                claims = {
                    origin: Claim.model_validate(claim)
                    for origin, claim in json.loads(row["claims"]).items()
                }
                edge = Edge(
                    id=row["id"],
                    source=row["source"],
                    target=row["target"],
                    type=ConnectionType(row["type"]),
                    claims=claims,
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                )
            except (json.JSONDecodeError, TypeError, ValueError, AttributeError, PydanticValidationError) as e:
                key = (row["source"], row["target"], row["type"])
                if not tolerant:
                    raise ValueError(f"Malformed edge row {key}: {e}") from e
                logger.warning(f"Skipping malformed edge row {key}: {e}")
                skipped += 1
                continue
            cached.edges.append(edge)

        if skipped:
            logger.warning(
                f"Loaded {len(cached.nodes)} nodes and {len(cached.edges)} edges, "
                f"skipped {skipped} malformed rows"
            )
        return cached

    def count(self) -> tuple[int, int]:
        """Count cached (nodes, edges)."""
        conn = self._get_conn()
        nodes = conn.execute("SELECT COUNT(*) FROM nodes").fetchone()[0]
        edges = conn.execute("SELECT COUNT(*) FROM edges").fetchone()[0]
        return nodes, edges

    def close(self):
        """Close database connection.

        Forces a WAL checkpoint before closing to ensure all changes
        are written to the main database file.
        """
        if self._conn is not None:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._conn.close()
            self._conn = None
