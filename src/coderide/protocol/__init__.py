"""Textual protocol shared between models and the tool runtime."""

from coderide.protocol.markers import (
    MAX_CARRY_LENGTH,
    Marker,
    encode_marker,
    parse_markers,
    parse_streaming_chunk,
)

__all__ = [
    "MAX_CARRY_LENGTH",
    "Marker",
    "encode_marker",
    "parse_markers",
    "parse_streaming_chunk",
]
