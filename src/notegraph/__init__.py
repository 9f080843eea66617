"""Notegraph - knowledge graph engine for notes and people."""

from .config import GraphSettings, load_settings
from .engine import KnowledgeGraph

__version__ = "0.1.0"

__all__ = ["GraphSettings", "KnowledgeGraph", "load_settings"]
