"""Tests for text chunking."""

import pytest

from workspace_rag.rag.chunking import Chunker, chunk, get_boundary_strategy
from workspace_rag.rag.models import Span

FUNCTION_TEMPLATE = '''def handler_{n}(request):
    """Handle request number {n} and return a response."""
    payload = request.json()
    return {{"id": {n}, "payload": payload}}


'''


def python_source(count: int = 8) -> str:
    return "".join(FUNCTION_TEMPLATE.format(n=n) for n in range(count))


def prose(paragraphs: int = 12) -> str:
    sentence = "The indexing pipeline keeps the vector index consistent with the files. "
    return "\n\n".join(sentence * 3 for _ in range(paragraphs))


class TestChunkFunction:
    """Tests for chunk()."""

    def test_empty_text(self) -> None:
        assert chunk("", 500, 50) == []

    def test_whitespace_only(self) -> None:
        assert chunk("   \n\n \t", 500, 50) == []

    def test_short_text_single_span(self) -> None:
        text = "Hello, world!\nThis is a test."
        assert chunk(text, 500, 50) == [Span(0, len(text))]

    def test_deterministic(self) -> None:
        """Identical input yields identical spans."""
        text = prose()
        first = chunk(text, 500, 50)
        second = chunk(text, 500, 50)
        assert first == second
        assert len(first) > 1

    def test_spans_bounded_and_overlapping(self) -> None:
        text = prose()
        spans = chunk(text, 500, 50)
        assert spans[0].start == 0
        assert spans[-1].end == len(text)
        for span in spans:
            assert 0 < span.length <= 500
        for previous, current in zip(spans, spans[1:]):
            assert current.start == previous.end - 50

    def test_hard_split_without_whitespace(self) -> None:
        text = "x" * 1200
        assert chunk(text, 500, 50) == [Span(0, 500), Span(450, 950), Span(900, 1200)]

    def test_prefers_line_breaks(self) -> None:
        text = prose()
        spans = chunk(text, 300, 0)
        for span in spans[:-1]:
            assert text[span.end - 1] in "\n "

    def test_python_cuts_at_definitions(self) -> None:
        text = python_source()
        spans = chunk(text, 300, 0, language="python")
        assert "".join(text[s.start : s.end] for s in spans) == text
        for span in spans[:-1]:
            assert text[span.end - 1] == "\n"
        assert any(text[s.start :].lstrip("\n").startswith("def ") for s in spans[1:])

    def test_invalid_python_falls_back(self) -> None:
        text = python_source().replace("def handler_3(request):", "def handler_3(request:")
        spans = chunk(text, 300, 0, language="python")
        assert "".join(text[s.start : s.end] for s in spans) == text

    @pytest.mark.parametrize(("max_size", "overlap"), [(0, 0), (100, 100), (100, -1)])
    def test_invalid_arguments(self, max_size: int, overlap: int) -> None:
        with pytest.raises(ValueError):
            chunk("some text", max_size, overlap)


class TestBoundaryStrategies:
    @pytest.mark.parametrize(
        ("language", "name"),
        [
            ("python", "python"),
            ("markdown", "markdown"),
            ("typescript", "declarations"),
            ("java", "declarations"),
            (None, "paragraph"),
            ("cobol", "paragraph"),
        ],
    )
    def test_strategy_for_language(self, language: str | None, name: str) -> None:
        assert get_boundary_strategy(language).name == name

    def test_markdown_headers(self) -> None:
        text = "intro\n# One\nbody\n## Two\nmore"
        offsets = get_boundary_strategy("markdown").boundaries(text)
        assert text.index("# One") in offsets
        assert text.index("## Two") in offsets

    def test_python_decorators_belong_to_definition(self) -> None:
        text = "import os\n\n@cache\ndef load():\n    return os.sep\n"
        offsets = get_boundary_strategy("python").boundaries(text)
        assert text.index("@cache") in offsets
        assert text.index("def load") not in offsets


class TestChunker:
    """Tests for Chunker.chunk_document()."""

    def test_chunk_records(self) -> None:
        text = python_source()
        chunks = Chunker(300, 30).chunk_document("src/handlers.py", text, "python")

        assert [c.ordinal for c in chunks] == list(range(len(chunks)))
        assert chunks[0].id == "src/handlers.py#0"
        assert chunks[0].start_line == 1
        for c in chunks:
            assert c.text == text[c.start : c.end]
            assert c.language == "python"
            assert c.document_id == "src/handlers.py"
            assert c.end_line >= c.start_line

    def test_line_numbers(self) -> None:
        text = "line one\nline two\nline three\n"
        [only] = Chunker(100, 10).chunk_document("notes.txt", text)
        assert (only.start_line, only.end_line) == (1, 3)

    def test_empty_document(self) -> None:
        assert Chunker(100, 10).chunk_document("empty.txt", "\n\n") == []

    def test_rejects_bad_overlap(self) -> None:
        with pytest.raises(ValueError):
            Chunker(100, 200)

    def test_metadata(self) -> None:
        [only] = Chunker(100, 10).chunk_document("a.md", "# Title\n", "markdown")
        metadata = only.to_metadata("nomic-embed-text", 123.0)
        assert metadata["document_id"] == "a.md"
        assert metadata["embedding_model"] == "nomic-embed-text"
        assert metadata["modified_at"] == 123.0
        assert metadata["text"] == "# Title\n"
