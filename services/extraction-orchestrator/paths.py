"""Helpers for addressing values inside a semantic document tree.

Concrete paths use dot/bracket notation (``goals[0].baseline``). Pattern
paths use a ``[]`` suffix for "every item of this array"
(``services[].goalNumber``).
"""

from typing import Any


def parse_path(path: str) -> list[tuple[str, bool]]:
    """Split ``a.b[].c`` into ``[("a", False), ("b", True), ("c", False)]``."""
    segments = []
    for part in path.split("."):
        each = part.endswith("[]")
        name = part[:-2] if each else part
        if not name:
            raise ValueError(f"Empty segment in path: {path!r}")
        segments.append((name, each))
    return segments


def join(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def expand_path(tree: Any, path: str) -> list[tuple[str, Any]]:
    """Resolve a pattern path against a tree into concrete (path, value) pairs.

    Missing keys and non-list values under ``[]`` yield nothing.
    """
    found: list[tuple[str, Any]] = [("", tree)]
    for name, each in parse_path(path):
        nxt = []
        for prefix, node in found:
            if not isinstance(node, dict) or name not in node:
                continue
            value = node[name]
            here = join(prefix, name)
            if each:
                if isinstance(value, list):
                    nxt.extend((f"{here}[{i}]", item) for i, item in enumerate(value))
            else:
                nxt.append((here, value))
        found = nxt
    return found


def lookup(tree: Any, path: str, default: Any = None) -> Any:
    """Value at a plain dotted path, or ``default`` when any step is missing."""
    node = tree
    for name in path.split("."):
        if not isinstance(node, dict) or name not in node:
            return default
        node = node[name]
    return node


def is_populated(value: Any) -> bool:
    """Present and non-empty: not None, not blank text, not an empty list or mapping."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


def flatten(tree: Any, prefix: str = "") -> dict[str, Any]:
    """Map every leaf of a tree to its concrete path.

    Empty lists and mappings count as leaves so that "present but empty"
    differs from "absent". An empty tree has no leaves.
    """
    if isinstance(tree, dict) and tree:
        out: dict[str, Any] = {}
        for key, value in tree.items():
            out.update(flatten(value, join(prefix, str(key))))
        return out
    if isinstance(tree, list) and tree:
        out = {}
        for i, value in enumerate(tree):
            out.update(flatten(value, f"{prefix}[{i}]"))
        return out
    if not prefix and isinstance(tree, (dict, list)):
        return {}
    return {prefix: tree}
