"""Text chunking for the indexing pipeline.

Text is split into spans of at most ``max_size`` characters, consecutive
spans overlapping by exactly ``overlap`` characters. Cuts prefer semantic
boundaries (definitions, headers, paragraphs), then line breaks, then
whitespace, and fall back to a fixed-size sliding window.

Example:
    from workspace_rag.rag.chunking import chunk

    spans = chunk(text, 500, 50, language="python")
    for span in spans:
        print(text[span.start:span.end])
"""

from __future__ import annotations

import ast
import bisect
import logging
import re
from abc import ABC, abstractmethod

from .models import Chunk, Span

logger = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n")
_MARKDOWN_HEADER = re.compile(r"^#{1,6}\s", re.MULTILINE)
_PYTHON_DEF = re.compile(r"^[ \t]*(?:@|async\s+def\s|def\s|class\s)", re.MULTILINE)
_BRACE_DEF = re.compile(
    r"^[ \t]{0,4}(?:export\s+|public\s+|private\s+|protected\s+|static\s+|abstract\s+)*"
    r"(?:function|class|interface|enum|record|func|fn|impl|struct|def)\b",
    re.MULTILINE,
)


def _paragraph_boundaries(text: str) -> list[int]:
    return [m.end() for m in _PARAGRAPH_BREAK.finditer(text)]


def _line_start(text: str, offset: int) -> int:
    return text.rfind("\n", 0, offset) + 1


class BoundaryStrategy(ABC):
    """Finds semantic cut points in a document's text."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def boundaries(self, text: str) -> list[int]:
        """Return offsets where a new chunk may begin.

        Args:
            text: Normalized document text.

        Returns:
            Offsets in ``text``; order and duplicates do not matter.
        """
        ...


class ParagraphBoundaries(BoundaryStrategy):
    """Blank-line separated paragraphs."""

    @property
    def name(self) -> str:
        return "paragraph"

    def boundaries(self, text: str) -> list[int]:
        return _paragraph_boundaries(text)


class PythonBoundaries(BoundaryStrategy):
    """Function and class definitions (with decorators), then paragraphs."""

    @property
    def name(self) -> str:
        return "python"

    def boundaries(self, text: str) -> list[int]:
        offsets = _paragraph_boundaries(text)
        try:
            tree = ast.parse(text)
        except (SyntaxError, ValueError):
            logger.debug("Python source does not parse, using pattern boundaries")
            offsets.extend(m.start() for m in _PYTHON_DEF.finditer(text))
            return offsets

        line_starts = _line_starts(text)
        for node in ast.walk(tree):
            if not isinstance(
                node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)
            ):
                continue
            lineno = min(
                [node.lineno] + [d.lineno for d in node.decorator_list]
            )
            if 1 <= lineno <= len(line_starts):
                offsets.append(line_starts[lineno - 1])
        return offsets


class MarkdownBoundaries(BoundaryStrategy):
    """Section headers, then paragraphs."""

    @property
    def name(self) -> str:
        return "markdown"

    def boundaries(self, text: str) -> list[int]:
        offsets = _paragraph_boundaries(text)
        offsets.extend(m.start() for m in _MARKDOWN_HEADER.finditer(text))
        return offsets


class BraceLanguageBoundaries(BoundaryStrategy):
    """Top-level declarations in C-family languages, then paragraphs."""

    @property
    def name(self) -> str:
        return "declarations"

    def boundaries(self, text: str) -> list[int]:
        offsets = _paragraph_boundaries(text)
        offsets.extend(_line_start(text, m.start()) for m in _BRACE_DEF.finditer(text))
        return offsets


_LANGUAGE_TO_STRATEGY: dict[str, type[BoundaryStrategy]] = {
    "python": PythonBoundaries,
    "markdown": MarkdownBoundaries,
    "restructuredtext": ParagraphBoundaries,
    "java": BraceLanguageBoundaries,
    "kotlin": BraceLanguageBoundaries,
    "javascript": BraceLanguageBoundaries,
    "typescript": BraceLanguageBoundaries,
    "go": BraceLanguageBoundaries,
    "rust": BraceLanguageBoundaries,
    "c": BraceLanguageBoundaries,
    "cpp": BraceLanguageBoundaries,
}


def get_boundary_strategy(language: str | None) -> BoundaryStrategy:
    """Get the boundary strategy for a language, paragraphs by default."""
    strategy_class = _LANGUAGE_TO_STRATEGY.get((language or "").lower(), ParagraphBoundaries)
    return strategy_class()


def _line_starts(text: str) -> list[int]:
    starts = [0]
    starts.extend(m.end() for m in re.finditer("\n", text))
    return starts


def _best_cut(text: str, semantic: list[int], lo: int, limit: int) -> int:
    """Pick the cut point in ``[lo, limit]``: semantic, line, whitespace, hard."""
    idx = bisect.bisect_right(semantic, limit) - 1
    if idx >= 0 and semantic[idx] >= lo:
        return semantic[idx]

    pos = text.rfind("\n", lo - 1, limit)
    if pos != -1:
        return pos + 1

    for i in range(limit - 1, lo - 2, -1):
        if text[i].isspace():
            return i + 1

    return limit


def chunk(
    text: str,
    max_size: int,
    overlap: int,
    language: str | None = None,
) -> list[Span]:
    """Split text into overlapping spans.

    Args:
        text: Normalized text.
        max_size: Maximum span length in characters.
        overlap: Characters shared by consecutive spans.
        language: Language used to pick semantic boundaries.

    Returns:
        Ordered spans covering the text. Identical input always yields
        identical spans. Whitespace-only text yields no spans.

    Raises:
        ValueError: If ``max_size < 1`` or ``overlap`` is not in ``[0, max_size)``.
    """
    if max_size < 1:
        raise ValueError(f"max_size must be positive, got {max_size}")
    if not 0 <= overlap < max_size:
        raise ValueError(
            f"overlap ({overlap}) must be in [0, max_size) for max_size {max_size}"
        )

    n = len(text)
    if not text.strip():
        return []

    strategy = get_boundary_strategy(language)
    semantic = sorted({b for b in strategy.boundaries(text) if 0 < b < n})

    # Each cut leaves room for the overlap and fills at least half a span
    min_advance = max(overlap + 1, max_size // 2)

    spans: list[Span] = []
    start = 0
    while True:
        limit = start + max_size
        if limit >= n:
            spans.append(Span(start, n))
            break
        end = _best_cut(text, semantic, start + min_advance, limit)
        spans.append(Span(start, end))
        start = end - overlap

    return spans


class Chunker:
    """Turns document text into :class:`Chunk` records."""

    def __init__(self, max_size: int = 1000, overlap: int = 100) -> None:
        if not 0 <= overlap < max_size:
            raise ValueError(
                f"overlap ({overlap}) must be in [0, max_size) for max_size {max_size}"
            )
        self.max_size = max_size
        self.overlap = overlap

    def split(self, text: str, language: str | None = None) -> list[Span]:
        return chunk(text, self.max_size, self.overlap, language)

    def chunk_document(
        self,
        document_id: str,
        text: str,
        language: str | None = None,
    ) -> list[Chunk]:
        """Chunk a document, dropping whitespace-only spans.

        Ordinals are assigned in span order after dropping, so they stay
        contiguous.
        """
        line_starts = _line_starts(text)
        chunks: list[Chunk] = []

        for span in self.split(text, language):
            piece = text[span.start : span.end]
            if not piece.strip():
                continue
            chunks.append(
                Chunk(
                    document_id=document_id,
                    ordinal=len(chunks),
                    start=span.start,
                    end=span.end,
                    text=piece,
                    start_line=bisect.bisect_right(line_starts, span.start),
                    end_line=bisect.bisect_right(line_starts, max(span.start, span.end - 1)),
                    language=language,
                )
            )

        logger.debug(f"Chunked {document_id} into {len(chunks)} chunks")
        return chunks
