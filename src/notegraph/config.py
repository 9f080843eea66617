"""Settings loader and logging setup.

Settings are merged from three layers (later wins):

1. Defaults on ``GraphSettings``
2. A YAML file: ``notegraph.yaml`` in the data directory, or an explicit path.
   Markdown files with YAML frontmatter are accepted too:

   ```
   ---
   cooccurrence_window: paragraph
   workers: 8
   ---
   ```
3. ``NOTEGRAPH_*`` environment variables (``NOTEGRAPH_WORKERS=8``)
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DB_FILENAME,
    DEFAULT_COOCCURRENCE_WINDOW,
    DEFAULT_EXCERPT_CHARS,
    DEFAULT_MAX_SUBGRAPH_DEPTH,
    DEFAULT_MIN_TERM_LENGTH,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SHORT_NAME_FACTOR,
    DEFAULT_STRONG_EDGE_THRESHOLD,
    DEFAULT_SUBGRAPH_NODES,
    DEFAULT_WORKERS,
    LOG_FILENAME,
    SETTINGS_FILENAME,
)

ENV_PREFIX = "NOTEGRAPH_"

logger = logging.getLogger(__name__)


class GraphSettings(BaseModel):
    """Runtime configuration for a KnowledgeGraph."""

    data_dir: Path | None = None  # None = in-memory only, no cache or log file

    # Detection
    cooccurrence_window: Literal["sentence", "paragraph", "note"] = DEFAULT_COOCCURRENCE_WINDOW
    short_names: bool = True  # index first/last name of multi-word person names
    short_name_factor: float = Field(default=DEFAULT_SHORT_NAME_FACTOR, gt=0.0, le=1.0)
    min_term_length: int = Field(default=DEFAULT_MIN_TERM_LENGTH, ge=1)
    excerpt_chars: int = Field(default=DEFAULT_EXCERPT_CHARS, ge=0)

    # Coordinator; 0 runs detection inline on the caller's thread
    workers: int = Field(default=DEFAULT_WORKERS, ge=0)

    # Queries
    max_subgraph_depth: int = Field(default=DEFAULT_MAX_SUBGRAPH_DEPTH, ge=0)
    default_subgraph_nodes: int = Field(default=DEFAULT_SUBGRAPH_NODES, ge=1)
    search_limit: int = Field(default=DEFAULT_SEARCH_LIMIT, ge=1)
    strong_edge_threshold: float = Field(default=DEFAULT_STRONG_EDGE_THRESHOLD, ge=0.0, le=1.0)

    log_level: str = "INFO"

    @property
    def db_path(self) -> Path | None:
        return self.data_dir / DB_FILENAME if self.data_dir else None


def _read_settings_file(path: Path) -> dict[str, Any]:
    """Read YAML settings, accepting a markdown file with YAML frontmatter."""
    content = path.read_text()
    if content.startswith("---"):
        parts = content.split("---", 2)
        if len(parts) >= 3:
            content = parts[1]
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    return data


def _read_env(environ: dict[str, str]) -> dict[str, Any]:
    """Collect NOTEGRAPH_* variables; pydantic coerces the strings."""
    fields = GraphSettings.model_fields
    result: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in fields:
            result[name] = value
    return result


def load_settings(
    path: str | Path | None = None,
    data_dir: str | Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> GraphSettings:
    """Load settings from defaults, settings file, env and overrides.

    Args:
        path: Explicit settings file (default: notegraph.yaml in the data dir)
        data_dir: Data directory (default: NOTEGRAPH_DATA_DIR or in-memory)
        environ: Environment mapping (default: os.environ)
        **overrides: Highest-priority values, e.g. from CLI flags

    Raises:
        pydantic.ValidationError: If a merged value is invalid
    """
    env = _read_env(dict(os.environ) if environ is None else environ)

    merged: dict[str, Any] = {}
    if data_dir is not None:
        env.pop("data_dir", None)
        merged["data_dir"] = Path(data_dir)
    elif "data_dir" in env:
        merged["data_dir"] = Path(env.pop("data_dir"))

    settings_path = Path(path) if path else None
    if settings_path is None and merged.get("data_dir") is not None:
        candidate = merged["data_dir"] / SETTINGS_FILENAME
        if candidate.exists():
            settings_path = candidate

    file_values: dict[str, Any] = {}
    if settings_path is not None:
        file_values = _read_settings_file(settings_path)
        file_values.pop("data_dir", None)

    return GraphSettings.model_validate(
        {**file_values, **merged, **env, **{k: v for k, v in overrides.items() if v is not None}}
    )


def configure_logging(settings: GraphSettings) -> None:
    """Configure root logging to stderr and, with a data dir, a log file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.data_dir is not None:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.data_dir / LOG_FILENAME))

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )
