"""Text extraction from note content.

Notes arrive either as plain text or as the editor's rich-text document, a
JSON tree such as::

    {"type": "doc", "content": [
        {"type": "paragraph", "content": [{"type": "text", "text": "Met Alice"}]}
    ]}

Block nodes become separate lines so paragraph and sentence windows survive
extraction. Anything unrecognised contributes no text.
"""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

# Node types that start a new line of text
_BLOCK_TYPES = {
    "doc",
    "paragraph",
    "heading",
    "blockquote",
    "listItem",
    "taskItem",
    "codeBlock",
    "callout",
}


def extract_text(content: Any) -> str:
    """Return the plain text of note content; never raises.

    Accepts a str (plain text, or a JSON-encoded document), a dict document,
    a list of nodes, or None.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        stripped = content.lstrip()
        if stripped.startswith("{") and '"type"' in stripped:
            try:
                content = json.loads(stripped)
            except json.JSONDecodeError:
                return content
            except RecursionError:
                logger.warning("Note content nested too deeply to decode, ignoring it")
                return ""
        else:
            return content
    if isinstance(content, bytes):
        return extract_text(content.decode("utf-8", errors="replace"))

    parts: list[str] = []
    try:
        _walk(content, parts)
    except RecursionError:
        logger.warning("Note content nested too deeply, ignoring the remainder")
    return "".join(parts).strip()


def _walk(node: Any, parts: list[str]) -> None:
    if isinstance(node, list):
        for child in node:
            _walk(child, parts)
        return
    if not isinstance(node, dict):
        return

    node_type = node.get("type")
    text = node.get("text")
    if isinstance(text, str):
        parts.append(text)
    elif node_type == "hardBreak":
        parts.append("\n")
    elif node_type == "mention":
        attrs = node.get("attrs") or {}
        label = attrs.get("label") if isinstance(attrs, dict) else None
        if isinstance(label, str):
            parts.append(f"@{label}")

    children = node.get("content")
    if children is not None:
        _walk(children, parts)

    if node_type in _BLOCK_TYPES:
        parts.append("\n\n")
