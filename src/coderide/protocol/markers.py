"""
Inline tool-request markers embedded in model output.

Wire format::

    [CODERIDE:<kind>|key=value|key=value]

The opener is matched case-insensitively and tolerates whitespace around
``CODERIDE`` and the colon. Inside a marker, ``|``, ``=``, ``]`` and ``\\``
are escaped with a backslash. Keys and values are unescaped and stripped;
the kind is stripped and lower-cased.

Usage:
    from coderide.protocol.markers import parse_markers, parse_streaming_chunk

    markers = parse_markers("[CODERIDE:read|path=src/app.py]")

    carry = ""
    for chunk in chunks:
        found, carry = parse_streaming_chunk(chunk, carry)
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field

MAX_CARRY_LENGTH = 2048
MARKER_TAG = "CODERIDE"

_OPENER_RE = re.compile(r"\[\s*CODERIDE\s*:", re.IGNORECASE)
_OPENER_PREFIX = f"[{MARKER_TAG.lower()}:"
_ESCAPED_CHARS = ("|", "=", "]")


@dataclass(frozen=True, slots=True)
class Marker:
    """A fully closed marker: a kind plus a string payload."""

    kind: str
    payload: dict[str, str] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        """Identity used to avoid acting on the same marker twice."""
        marker_id = self.payload.get("id", "").strip()
        if marker_id:
            return marker_id
        items = "|".join(f"{key}={value}" for key, value in sorted(self.payload.items()))
        return f"{self.kind}|{items}"


def escape(value: str) -> str:
    """Backslash-escape the characters that delimit marker fields."""
    escaped = value.replace("\\", "\\\\")
    for char in _ESCAPED_CHARS:
        escaped = escaped.replace(char, "\\" + char)
    return escaped


def unescape(value: str) -> str:
    """Drop each escaping backslash and keep the character it protects."""
    out: list[str] = []
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\" and index + 1 < len(value):
            out.append(value[index + 1])
            index += 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


def _split_unescaped(text: str, sep: str, maxsplit: int = -1) -> list[str]:
    """Split on ``sep`` where it is not backslash-escaped; escapes are preserved."""
    parts: list[str] = []
    current: list[str] = []
    index = 0
    while index < len(text):
        char = text[index]
        if char == "\\" and index + 1 < len(text):
            current.append(text[index : index + 2])
            index += 2
            continue
        if char == sep and maxsplit != 0:
            parts.append("".join(current))
            current = []
            maxsplit -= 1
        else:
            current.append(char)
        index += 1
    parts.append("".join(current))
    return parts


def _find_close(text: str, start: int) -> int | None:
    index = start
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == "]":
            return index
        index += 1
    return None


def _parse_body(body: str) -> Marker | None:
    parts = _split_unescaped(body, "|")
    kind = unescape(parts[0]).strip().lower()
    if not kind:
        return None
    payload: dict[str, str] = {}
    for part in parts[1:]:
        pair = _split_unescaped(part, "=", maxsplit=1)
        if len(pair) != 2:
            continue
        key = unescape(pair[0]).strip()
        if not key:
            continue
        payload[key] = unescape(pair[1]).strip()
    return Marker(kind=kind, payload=payload)


def _scan(text: str) -> tuple[list[Marker], int | None, int]:
    """Return closed markers, the start of a trailing unclosed opener, and the consumed end."""
    markers: list[Marker] = []
    position = 0
    while True:
        match = _OPENER_RE.search(text, position)
        if match is None:
            return markers, None, position
        close = _find_close(text, match.end())
        if close is None:
            return markers, match.start(), position
        marker = _parse_body(text[match.end() : close])
        if marker is not None:
            markers.append(marker)
        position = close + 1


def parse_markers(text: str) -> list[Marker]:
    """Extract every fully closed marker from ``text`` in order of appearance."""
    markers, _, _ = _scan(text)
    return markers


def _partial_opener_start(text: str, start: int) -> int | None:
    """Start of a trailing fragment that could still grow into an opener."""
    bracket = text.rfind("[", start)
    if bracket < 0:
        return None
    folded = "".join(text[bracket:].split()).lower()
    if len(folded) < len(_OPENER_PREFIX) and _OPENER_PREFIX.startswith(folded):
        return bracket
    return None


def parse_streaming_chunk(
    text: str, carry: str = "", *, max_carry: int | None = MAX_CARRY_LENGTH
) -> tuple[list[Marker], str]:
    """Parse one streamed chunk together with the carry from the previous call.

    Args:
        text: Newly received text.
        carry: Trailing partial marker returned by the previous call.
        max_carry: Keep at most this many trailing characters of an unclosed
            marker. ``None`` keeps all of it, so a marker of any length closes.

    Returns:
        Markers completed by this chunk, and the new carry.
    """
    combined = carry + text
    markers, open_start, consumed = _scan(combined)
    if open_start is None:
        open_start = _partial_opener_start(combined, consumed)
    if open_start is None:
        return markers, ""
    pending = combined[open_start:]
    if max_carry is not None:
        pending = pending[-max_carry:]
    return markers, pending


def encode_marker(kind: str, payload: Mapping[str, str] | None = None) -> str:
    """Render a marker in wire format, escaping every field."""
    fields = "".join(f"|{escape(key)}={escape(value)}" for key, value in (payload or {}).items())
    return f"[{MARKER_TAG}:{escape(kind)}{fields}]"


__all__ = [
    "MAX_CARRY_LENGTH",
    "Marker",
    "encode_marker",
    "escape",
    "parse_markers",
    "parse_streaming_chunk",
    "unescape",
]
