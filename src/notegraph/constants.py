"""Named constants shared across the engine.

Tunable values also appear as defaults on GraphSettings; the constants here
are the defaults and the fixed parts of the scoring model.
"""

# --- Term scoring ---
TERM_BASE_STRENGTH = 0.2
TERM_STRENGTH_PER_CHAR = 0.05
TERM_MULTI_WORD_BONUS = 0.1
EXPLICIT_MARKER_STRENGTH = 1.0  # "@Alice" / "#Budget"
PERSON_MARKER = "@"
NOTE_MARKER = "#"

# --- Detection ---
DEFAULT_MIN_TERM_LENGTH = 2
DEFAULT_SHORT_NAME_FACTOR = 0.6
DEFAULT_EXCERPT_CHARS = 20
COOCCURRENCE_WINDOWS = ("sentence", "paragraph", "note")
DEFAULT_COOCCURRENCE_WINDOW = "sentence"

# --- Traversal ---
DEFAULT_MAX_SUBGRAPH_DEPTH = 3
DEFAULT_SUBGRAPH_NODES = 100
DEFAULT_SEARCH_LIMIT = 20

# --- Stats ---
DEFAULT_STRONG_EDGE_THRESHOLD = 0.75

# --- Coordinator ---
DEFAULT_WORKERS = 4

# --- Storage ---
DB_FILENAME = "notegraph.db"
LOG_FILENAME = "notegraph.log"
SETTINGS_FILENAME = "notegraph.yaml"
SCHEMA_VERSION = 1
