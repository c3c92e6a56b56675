"""Generic recursive renderer for FHIR resources (or any JSON-shaped value).

The renderer turns a value into a tree of display nodes. Only sequences are
collapsible; each one owns a flag in an expand map keyed by structural path.
The map belongs to the caller: this module reads it and returns updated
copies, it never holds state of its own.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

ExpandMap = Mapping[str, bool]


class ValueKind(Enum):
    LINK = "link"
    SEQUENCE = "sequence"
    RECORD = "record"
    SCALAR = "scalar"
    ABSENT = "absent"


def classify(value: Any) -> ValueKind:
    # Order matters: a reference wins over any other mapping shape.
    if isinstance(value, Mapping):
        if "reference" in value:
            return ValueKind.LINK
        return ValueKind.RECORD if value else ValueKind.ABSENT
    if isinstance(value, (list, tuple)):
        return ValueKind.SEQUENCE if value else ValueKind.ABSENT
    if isinstance(value, (str, int, float, bool)):
        return ValueKind.SCALAR
    return ValueKind.ABSENT


_CAPITAL = re.compile(r"([A-Z])")


def format_key(key: str) -> str:
    """valueQuantity -> 'value Quantity'."""
    return _CAPITAL.sub(r" \1", str(key)).strip()


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    return ""


# --- nodes ---

@dataclass(frozen=True)
class ScalarNode:
    text: str
    kind: str = "scalar"


@dataclass(frozen=True)
class LinkNode:
    reference: str
    display: Optional[str] = None
    kind: str = "link"


@dataclass(frozen=True)
class SequenceNode:
    path: str
    count: int
    expanded: bool
    items: List["Node"] = field(default_factory=list)
    kind: str = "sequence"


@dataclass(frozen=True)
class FieldNode:
    key: str
    label: str
    value: "Node"


@dataclass(frozen=True)
class RecordNode:
    path: str
    fields: List[FieldNode] = field(default_factory=list)
    kind: str = "record"


Node = Union[ScalarNode, LinkNode, SequenceNode, RecordNode]


# --- expand state ---

def is_expanded(expanded: Optional[ExpandMap], path: str, default: bool) -> bool:
    if expanded is not None and path in expanded:
        return bool(expanded[path])
    return bool(default)


def toggle(expanded: Optional[ExpandMap], path: str, default: bool) -> Dict[str, bool]:
    """Return a copy of `expanded` with only `path` flipped."""
    out = dict(expanded or {})
    out[path] = not is_expanded(expanded, path, default)
    return out


# --- building ---

def _record_path(parent: str, record: Mapping[str, Any]) -> str:
    ident = record.get("id")
    ident = "" if ident is None else str(ident)
    return f"{parent}.{ident}" if parent else ident


def _build(value: Any, path: str, expanded: Optional[ExpandMap], default: bool) -> Optional[Node]:
    kind = classify(value)
    if kind is ValueKind.LINK:
        reference = value.get("reference")
        display = value.get("display")
        return LinkNode(
            reference=format_value(reference),
            display=display if isinstance(display, str) else None,
        )
    if kind is ValueKind.SEQUENCE:
        seq_path = f"{path}[]"
        open_ = is_expanded(expanded, seq_path, default)
        items: List[Node] = []
        if open_:
            for index, item in enumerate(value):
                child = _build(item, f"{seq_path}[{index}]", expanded, default)
                # keep one row per element so positions match the count
                items.append(child if child is not None else ScalarNode(text=""))
        return SequenceNode(path=seq_path, count=len(value), expanded=open_, items=items)
    if kind is ValueKind.RECORD:
        rec_path = _record_path(path, value)
        fields: List[FieldNode] = []
        for key, val in value.items():
            child = _build(val, f"{rec_path}.{key}", expanded, default)
            if child is None:
                continue
            fields.append(FieldNode(key=str(key), label=format_key(key), value=child))
        return RecordNode(path=rec_path, fields=fields)
    if kind is ValueKind.SCALAR:
        return ScalarNode(text=format_value(value))
    return None


def build_tree(value: Any, expanded: Optional[ExpandMap] = None, default_expanded: bool = True) -> Optional[Node]:
    """Render `value` into a node tree; None when there is nothing to show.

    Collapsed sequences keep their element count but no items.
    """
    return _build(value, "", expanded, default_expanded)


def collapsible_paths(node: Optional[Node]) -> List[str]:
    """Paths of every sequence header reachable in an already-built tree."""
    out: List[str] = []
    if isinstance(node, SequenceNode):
        out.append(node.path)
        for item in node.items:
            out.extend(collapsible_paths(item))
    elif isinstance(node, RecordNode):
        for f in node.fields:
            out.extend(collapsible_paths(f.value))
    return out


def render_lines(node: Optional[Node], indent: str = "  ", _depth: int = 0) -> List[str]:
    """Plain-text rendering, one display line per entry."""
    pad = indent * _depth
    if node is None:
        return []
    if isinstance(node, ScalarNode):
        return [pad + node.text]
    if isinstance(node, LinkNode):
        label = f" ({node.display})" if node.display else ""
        return [f"{pad}→ {node.reference}{label}"]
    if isinstance(node, SequenceNode):
        marker = "▾" if node.expanded else "▸"
        lines = [f"{pad}{marker} [{node.count} items]"]
        for item in node.items:
            lines.extend(render_lines(item, indent, _depth + 1))
        return lines
    lines = []
    for f in node.fields:
        child = f.value
        if isinstance(child, (ScalarNode, LinkNode)):
            first = render_lines(child, indent, 0)[0]
            lines.append(f"{pad}{f.label}: {first}")
        else:
            lines.append(f"{pad}{f.label}:")
            lines.extend(render_lines(child, indent, _depth + 1))
    return lines
