"""Tests for the small logging helpers."""

from mediaworker.core.utils.json_render import compact_json
from mediaworker.core.utils.line_buffer import LineBuffer


def test_line_buffer_splits_across_chunks() -> None:
    """Partial lines are held until their newline arrives; flush emits the rest."""
    lines: list[str] = []
    buffer = LineBuffer(lines.append)
    buffer.feed(b"INFO: first li")
    buffer.feed(b"ne\r\nDEBUG: second\nERROR: tail")
    assert lines == ["INFO: first line", "DEBUG: second"]
    buffer.flush()
    assert lines[-1] == "ERROR: tail"
    buffer.flush()
    assert len(lines) == 3


def test_line_buffer_tolerates_invalid_utf8() -> None:
    """Undecodable bytes are replaced rather than raising."""
    lines: list[str] = []
    buffer = LineBuffer(lines.append)
    buffer.feed(b"bad \xff byte\n")
    assert lines == ["bad \ufffd byte"]


def test_compact_json_is_single_line_and_bounded() -> None:
    """Payloads render without whitespace and are cut at the limit."""
    assert compact_json({"a": [1, 2], "b": "x"}) == '{"a":[1,2],"b":"x"}'
    assert compact_json({"blob": "y" * 100}, limit=20) == '{"blob":"' + "y" * 11 + "..."
    assert compact_json({"obj": object()}).startswith('{"obj":"<object object at')
