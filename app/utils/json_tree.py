# app/utils/json_tree.py
"""
Walk arbitrary JSON (registry payloads, structured document data) as a
tree of tagged nodes: object, array, scalar or null.

The input is untrusted external output, so the walk keeps track of the
containers on the current path and emits a `cycle` node instead of
recursing into one it is already inside.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class NodeKind(str, Enum):
    OBJECT = "object"
    ARRAY = "array"
    SCALAR = "scalar"
    NULL = "null"
    CYCLE = "cycle"


@dataclass
class JsonNode:
    kind: NodeKind
    key: Optional[str] = None
    value: Any = None
    children: list["JsonNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "key": self.key}
        if self.kind in (NodeKind.OBJECT, NodeKind.ARRAY):
            data["children"] = [child.to_dict() for child in self.children]
        else:
            data["value"] = self.value
        return data


def build_tree(value: Any, key: Optional[str] = None) -> JsonNode:
    return _walk(value, key, frozenset())


def _walk(value: Any, key: Optional[str], path: frozenset[int]) -> JsonNode:
    if value is None:
        return JsonNode(kind=NodeKind.NULL, key=key)

    if isinstance(value, (dict, list, tuple)):
        marker = id(value)
        if marker in path:
            return JsonNode(kind=NodeKind.CYCLE, key=key)
        inner = path | {marker}
        if isinstance(value, dict):
            children = [_walk(v, str(k), inner) for k, v in value.items()]
            return JsonNode(kind=NodeKind.OBJECT, key=key, children=children)
        children = [_walk(v, f"[{i}]", inner) for i, v in enumerate(value)]
        return JsonNode(kind=NodeKind.ARRAY, key=key, children=children)

    if isinstance(value, (str, int, float, bool)):
        return JsonNode(kind=NodeKind.SCALAR, key=key, value=value)

    return JsonNode(kind=NodeKind.SCALAR, key=key, value=str(value))


def humanize_key(key: str) -> str:
    """'fecha_nacimiento' -> 'Fecha nacimiento'"""
    text = key.replace("_", " ").strip()
    return text[:1].upper() + text[1:] if text else text


def render_text(value: Any, max_chars: Optional[int] = None) -> str:
    """
    Indented plain-text rendering, used when feeding payloads to the model.
    """
    lines: list[str] = []
    _render(build_tree(value), 0, lines)
    text = "\n".join(lines)
    if max_chars is not None and len(text) > max_chars:
        return text[:max_chars] + "..."
    return text


def _label(key: Optional[str]) -> str:
    if key is None:
        return ""
    if key.startswith("["):
        return "- "
    return f"{humanize_key(key)}: "


def _render(node: JsonNode, depth: int, lines: list[str]) -> None:
    indent = "  " * depth
    label = _label(node.key)

    if node.kind in (NodeKind.OBJECT, NodeKind.ARRAY):
        if node.key is not None:
            lines.append(f"{indent}{label.rstrip()}")
            depth += 1
        for child in node.children:
            _render(child, depth, lines)
    elif node.kind == NodeKind.NULL:
        lines.append(f"{indent}{label}n/a")
    elif node.kind == NodeKind.CYCLE:
        lines.append(f"{indent}{label}(circular)")
    else:
        lines.append(f"{indent}{label}{node.value}")
