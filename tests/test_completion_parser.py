"""Tests for the streaming file-marker parser."""

from apiforge.services.completion_service import FileMarkerParser


def _feed_all(parser: FileMarkerParser, pieces):
    out = []
    for piece in pieces:
        out.extend(parser.feed(piece))
    out.extend(parser.close())
    return out


class TestFileMarkerParser:
    """Chunks come out in stream order, split across arbitrary deltas."""

    def test_file_block(self) -> None:
        chunks = _feed_all(FileMarkerParser(), ["=== FILE: app/main.py ===\nx = 1\n", "=== END FILE ===\n"])

        assert [(c.filename, c.chunk, c.is_final) for c in chunks] == [
            ("app/main.py", "", False),
            ("app/main.py", "x = 1\n", False),
            ("app/main.py", "", True),
        ]

    def test_markers_split_across_deltas(self) -> None:
        chunks = _feed_all(FileMarkerParser(), ["=== FI", "LE: a.py ===\nprint(", "1)\n=== END", " FILE ===\n"])
        content = "".join(c.chunk for c in chunks if c.filename == "a.py")
        assert content == "print(1)\n"
        assert chunks[-1].is_final

    def test_answer_text_outside_files(self) -> None:
        chunks = _feed_all(FileMarkerParser(), ["Sure, here you go.\n```\n=== FILE: a.py ===\n=== END FILE ===\n"])
        assert chunks[0].filename is None
        assert chunks[0].chunk == "Sure, here you go.\n"
        # code fences outside files are dropped
        assert all(c.chunk != "```\n" for c in chunks)

    def test_delete_marker(self) -> None:
        [chunk] = _feed_all(FileMarkerParser(), ["=== DELETE: ./old/routes.py ===\n"])
        assert chunk.filename == "old/routes.py"
        assert chunk.action == "delete"
        assert chunk.is_final

    def test_unterminated_file_is_closed(self) -> None:
        chunks = _feed_all(FileMarkerParser(), ["=== FILE: a.py ===\nx = 1"])
        assert chunks[-1].filename == "a.py"
        assert chunks[-1].is_final
        assert "".join(c.chunk for c in chunks) == "x = 1\n"

    def test_crlf_line_endings(self) -> None:
        chunks = _feed_all(FileMarkerParser(), ["=== FILE: a.py ===\r\nx = 1\r\n=== END FILE ===\r\n"])
        assert "".join(c.chunk for c in chunks) == "x = 1\n"
