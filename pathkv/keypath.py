"""
Path addressing inside stored documents.

Paths use dot notation for mapping keys and brackets for sequence indices or
keys with special characters::

    a.b[0].c
    [0]
    settings["theme.dark"]

Documents are plain trees of ``dict`` / ``list`` / scalars. Only ``dict`` and
``list`` are traversed, for reads and writes alike.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Sequence, Union

from .errors import PathError

_INDEX_RE = re.compile(r"^[0-9]+$")
_PLAIN_KEY_RE = re.compile(r"^[^.\[\]'\"\\]+$")
_QUOTES = ("'", '"')


class Absent(enum.Enum):
    """Marker for "nothing stored here", distinct from a stored ``None``."""

    ABSENT = "ABSENT"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent.ABSENT


@dataclass(frozen=True)
class Segment:
    key: str
    # Only set for bracketed integers: "[3]".
    index: int | None = None

    def sequence_index(self) -> int | None:
        """Index to use when the container is a list (dot-numeric keys count too)."""
        if self.index is not None:
            return self.index
        if _INDEX_RE.match(self.key):
            return int(self.key)
        return None


PathLike = Union[str, Segment, Sequence[Union[Segment, str, int]]]


def parse_path(path: PathLike) -> tuple[Segment, ...]:
    if isinstance(path, Segment):
        return (path,)
    if isinstance(path, str):
        return tuple(_parse(path)) if path else ()
    if isinstance(path, (list, tuple)):
        return tuple(_coerce_segment(part) for part in path)
    raise PathError(f"Unsupported path type: {type(path).__name__}")


def _coerce_segment(part: Any) -> Segment:
    if isinstance(part, Segment):
        return part
    if isinstance(part, bool):
        raise PathError("Boolean is not a valid path segment")
    if isinstance(part, int):
        if part < 0:
            raise PathError(f"Negative index {part} is not addressable")
        return Segment(str(part), part)
    if isinstance(part, str):
        return Segment(part)
    raise PathError(f"Unsupported path segment: {part!r}")


def _parse(text: str) -> list[Segment]:
    segments: list[Segment] = []
    n = len(text)
    i = 0
    after_dot = False
    while True:
        if i < n and text[i] == "[":
            if after_dot:
                raise PathError(f"Empty segment before '[' at {i} in {text!r}")
            segment, i = _read_bracket(text, i)
        else:
            j = i
            while j < n and text[j] not in ".[]":
                j += 1
            if j == i:
                raise PathError(f"Empty segment at {i} in {text!r}")
            segment, i = Segment(text[i:j]), j
        segments.append(segment)

        if i == n:
            return segments
        ch = text[i]
        if ch == ".":
            i += 1
            if i == n:
                raise PathError(f"Trailing '.' in {text!r}")
            after_dot = True
        elif ch == "[":
            after_dot = False
        else:
            raise PathError(f"Unexpected {ch!r} at {i} in {text!r}")


def _read_bracket(text: str, start: int) -> tuple[Segment, int]:
    n = len(text)
    i = start + 1
    if i < n and text[i] in _QUOTES:
        quote = text[i]
        i += 1
        chars: list[str] = []
        while i < n and text[i] != quote:
            if text[i] == "\\" and i + 1 < n:
                i += 1
            chars.append(text[i])
            i += 1
        if i >= n:
            raise PathError(f"Unterminated quote starting at {start} in {text!r}")
        i += 1
        if i >= n or text[i] != "]":
            raise PathError(f"Expected ']' after quoted key at {i} in {text!r}")
        return Segment("".join(chars)), i + 1

    end = text.find("]", i)
    if end == -1:
        raise PathError(f"Unclosed '[' at {start} in {text!r}")
    content = text[i:end]
    if not content:
        raise PathError(f"Empty brackets at {start} in {text!r}")
    if "[" in content:
        raise PathError(f"Nested '[' at {start} in {text!r}")
    if _INDEX_RE.match(content):
        return Segment(content, int(content)), end + 1
    return Segment(content), end + 1


def format_path(path: PathLike) -> str:
    """Render segments back to a string that parses to the same segments."""
    parts: list[str] = []
    for segment in parse_path(path):
        if segment.index is not None:
            parts.append(f"[{segment.index}]")
        elif _PLAIN_KEY_RE.match(segment.key):
            parts.append(f".{segment.key}" if parts else segment.key)
        else:
            escaped = segment.key.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'["{escaped}"]')
    return "".join(parts)


def _child(node: Any, segment: Segment) -> Any:
    if isinstance(node, dict):
        return node.get(segment.key, ABSENT)
    if isinstance(node, list):
        idx = segment.sequence_index()
        if idx is None or idx >= len(node):
            return ABSENT
        return node[idx]
    return ABSENT


def _put(container: dict | list, segment: Segment, value: Any) -> None:
    if isinstance(container, dict):
        container[segment.key] = value
        return
    idx = segment.sequence_index()
    if idx is None:
        raise PathError(f"Segment {segment.key!r} cannot index a list")
    if idx >= len(container):
        container.extend([None] * (idx + 1 - len(container)))
    container[idx] = value


def _container_for(node: Any, segment: Segment) -> dict | list:
    # Reuse node when it can hold the segment; otherwise replace it.
    if isinstance(node, dict):
        return node
    if isinstance(node, list) and segment.sequence_index() is not None:
        return node
    return [] if segment.index is not None else {}


def resolve(document: Any, path: PathLike) -> Any:
    """Value at path, or ``ABSENT`` if any segment is missing or not traversable."""
    current = document
    for segment in parse_path(path):
        current = _child(current, segment)
        if current is ABSENT:
            return ABSENT
    return current


def contains(document: Any, path: PathLike) -> bool:
    return resolve(document, path) is not ABSENT


def assign(document: Any, path: PathLike, value: Any) -> Any:
    """
    Write value at path and return the (possibly new) document root.

    Containers are mutated in place. Missing intermediates are created: a list
    for a bracketed integer segment, a dict otherwise. Intermediates holding a
    scalar, or a list addressed by a non-numeric key, are replaced.
    The empty path replaces the whole document.
    """
    segments = parse_path(path)
    if not segments:
        return value

    root = _container_for(document, segments[0])
    current = root
    last = len(segments) - 1
    for position, segment in enumerate(segments):
        if position == last:
            _put(current, segment, value)
            break
        child = _child(current, segment)
        container = _container_for(child, segments[position + 1])
        if container is not child:
            _put(current, segment, container)
        current = container
    return root


def remove(document: Any, path: PathLike) -> Any:
    """
    Delete the leaf at path. List elements become ``None`` so later indices
    stay where they are. Missing paths are ignored.
    """
    segments = parse_path(path)
    if not segments:
        raise PathError("The empty path addresses the whole document; delete the key instead")
    parent = resolve(document, segments[:-1])
    leaf = segments[-1]
    if isinstance(parent, dict):
        parent.pop(leaf.key, None)
    elif isinstance(parent, list):
        idx = leaf.sequence_index()
        if idx is not None and idx < len(parent):
            parent[idx] = None
    return document
