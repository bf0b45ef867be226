"""Tests for inline marker parsing and encoding."""

from __future__ import annotations

from coderide.protocol.markers import (
    MAX_CARRY_LENGTH,
    Marker,
    encode_marker,
    escape,
    parse_markers,
    parse_streaming_chunk,
    unescape,
)


class TestParseMarkers:
    """Test parse_markers on complete text."""

    def test_single_marker(self) -> None:
        markers = parse_markers("Let me look. [CODERIDE:read|path=src/app.py] Done.")
        assert markers == [Marker(kind="read", payload={"path": "src/app.py"})]

    def test_multiple_markers_in_order(self) -> None:
        text = "[CODERIDE:glob|pattern=*.py] then [CODERIDE:grep|pattern=TODO|pathScope=src]"
        markers = parse_markers(text)
        assert [m.kind for m in markers] == ["glob", "grep"]
        assert markers[1].payload == {"pattern": "TODO", "pathScope": "src"}

    def test_opener_is_case_insensitive_and_tolerates_whitespace(self) -> None:
        markers = parse_markers("[ coderide : READ |path= a.py ]")
        assert markers == [Marker(kind="read", payload={"path": "a.py"})]

    def test_marker_without_payload(self) -> None:
        assert parse_markers("[CODERIDE:todo_read]") == [Marker(kind="todo_read")]

    def test_unclosed_marker_is_ignored(self) -> None:
        assert parse_markers("[CODERIDE:read|path=a.py") == []

    def test_empty_kind_is_dropped(self) -> None:
        assert parse_markers("[CODERIDE:|path=a.py] [CODERIDE:ls]") == [Marker(kind="ls")]

    def test_fields_without_equals_or_key_are_skipped(self) -> None:
        markers = parse_markers("[CODERIDE:read|garbage|=value|path=a.py]")
        assert markers[0].payload == {"path": "a.py"}

    def test_value_may_contain_unescaped_equals_after_first(self) -> None:
        markers = parse_markers("[CODERIDE:tool_call|name=bash|command=FOO=1 make]")
        assert markers[0].payload["command"] == "FOO=1 make"

    def test_escaped_delimiters_are_preserved(self) -> None:
        markers = parse_markers(r"[CODERIDE:grep|pattern=a\|b\]c\=d]")
        assert markers[0].payload == {"pattern": "a|b]c=d"}

    def test_text_without_markers(self) -> None:
        assert parse_markers("Just [a] normal [b] reply.") == []


class TestEscaping:
    """Test escape/unescape and encode_marker."""

    def test_escape_all_delimiters(self) -> None:
        assert escape("a|b=c]d\\e") == "a\\|b\\=c\\]d\\\\e"

    def test_unescape_reverses_escape(self) -> None:
        value = "x|y=z]\\w"
        assert unescape(escape(value)) == value

    def test_encode_then_parse_preserves_payload(self) -> None:
        payload = {"a": "1", "b": "x|y"}
        encoded = encode_marker("tool_call", payload)
        assert encoded == "[CODERIDE:tool_call|a=1|b=x\\|y]"
        assert parse_markers(encoded) == [Marker(kind="tool_call", payload=payload)]


class TestFingerprint:
    """Test marker identity used for deduplication."""

    def test_id_wins(self) -> None:
        marker = Marker(kind="read", payload={"id": "r1", "path": "a.py"})
        assert marker.fingerprint == "r1"

    def test_payload_order_does_not_matter(self) -> None:
        first = Marker(kind="grep", payload={"pattern": "x", "pathScope": "src"})
        second = Marker(kind="grep", payload={"pathScope": "src", "pattern": "x"})
        assert first.fingerprint == second.fingerprint

    def test_kind_distinguishes(self) -> None:
        assert Marker("read", {"path": "a"}).fingerprint != Marker("ls", {"path": "a"}).fingerprint


class TestStreamingChunks:
    """Test parse_streaming_chunk across chunk boundaries."""

    def test_marker_split_inside_tag(self) -> None:
        markers, carry = parse_streaming_chunk("Checking [COD")
        assert markers == []
        assert carry == "[COD"

        markers, carry = parse_streaming_chunk("ERIDE:todo_read]", carry)
        assert markers == [Marker(kind="todo_read")]
        assert carry == ""

    def test_marker_split_inside_payload(self) -> None:
        markers, carry = parse_streaming_chunk("[CODERIDE:read|pa", "")
        assert markers == []
        assert carry == "[CODERIDE:read|pa"

        markers, carry = parse_streaming_chunk("th=src/app.py] more", carry)
        assert markers == [Marker(kind="read", payload={"path": "src/app.py"})]
        assert carry == ""

    def test_plain_bracket_is_not_carried(self) -> None:
        markers, carry = parse_streaming_chunk("see [note] here")
        assert markers == []
        assert carry == ""

    def test_trailing_bracket_alone_is_carried(self) -> None:
        _, carry = parse_streaming_chunk("text [")
        assert carry == "["

    def test_completed_markers_are_not_reemitted(self) -> None:
        markers, carry = parse_streaming_chunk("[CODERIDE:ls] [CODERIDE:re")
        assert markers == [Marker(kind="ls")]
        markers, carry = parse_streaming_chunk("ad|path=a]", carry)
        assert markers == [Marker(kind="read", payload={"path": "a"})]

    def test_carry_is_bounded(self) -> None:
        _, carry = parse_streaming_chunk("[CODERIDE:write|content=" + "x" * (MAX_CARRY_LENGTH * 2))
        assert len(carry) == MAX_CARRY_LENGTH

    def test_unbounded_carry_closes_long_marker(self) -> None:
        content = "y" * (MAX_CARRY_LENGTH * 2)
        carry = ""
        found: list[Marker] = []
        for chunk in ("[CODERIDE:write|path=a.txt|content=", content, "]"):
            markers, carry = parse_streaming_chunk(chunk, carry, max_carry=None)
            found.extend(markers)
        assert found == [Marker(kind="write", payload={"path": "a.txt", "content": content})]
        assert carry == ""
