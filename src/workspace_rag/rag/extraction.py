"""Content extraction: turn workspace files into normalized text."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import html2text
from bs4 import BeautifulSoup

from workspace_rag.core.errors import ExtractionError

from .models import DocumentType

logger = logging.getLogger(__name__)

# Bytes inspected for NUL characters when detecting binary files
BINARY_SNIFF_BYTES = 8192

TextConverter = Callable[[str], str]

_EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".java": "java",
    ".kt": "kotlin",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".md": "markdown",
    ".markdown": "markdown",
    ".rst": "restructuredtext",
    ".txt": "text",
    ".html": "markdown",
    ".htm": "markdown",
    ".xhtml": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}

_CODE_EXTENSIONS = frozenset({
    ".py", ".pyi", ".java", ".kt", ".js", ".jsx", ".mjs", ".ts", ".tsx",
    ".go", ".rs", ".c", ".h", ".cpp",
})
_DOC_EXTENSIONS = frozenset({
    ".md", ".markdown", ".rst", ".txt", ".html", ".htm", ".xhtml",
})
_CONFIG_EXTENSIONS = frozenset({".json", ".yaml", ".yml", ".toml", ".ini", ".cfg"})


def detect_language(path: str | Path) -> str | None:
    """Detect the language of a file from its suffix."""
    return _EXTENSION_TO_LANGUAGE.get(Path(path).suffix.lower())


def detect_document_type(path: str | Path) -> DocumentType:
    """Classify a file by suffix."""
    ext = Path(path).suffix.lower()
    if ext in _CODE_EXTENSIONS:
        return DocumentType.CODE
    if ext in _DOC_EXTENSIONS:
        return DocumentType.DOCUMENTATION
    if ext in _CONFIG_EXTENSIONS:
        return DocumentType.CONFIG
    return DocumentType.OTHER


def compute_hash(text: str) -> str:
    """SHA-256 hex digest of text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_text(text: str) -> str:
    """Strip a BOM and normalize line endings to LF."""
    if text.startswith("\ufeff"):
        text = text[1:]
    return text.replace("\r\n", "\n").replace("\r", "\n")


def html_to_markdown(html: str) -> str:
    """Convert markup to Markdown text, dropping scripts and styles."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.ignore_links = False
    converter.body_width = 0  # Don't wrap lines
    return converter.handle(str(soup)).strip() + "\n"


@dataclass(frozen=True)
class ExtractedContent:
    """Normalized text of one file plus what was learned reading it."""

    text: str
    content_hash: str
    document_type: DocumentType
    language: str | None
    size: int
    modified_at: float


class ContentExtractor:
    """Reads files and converts them to normalized text.

    Converters are pluggable per suffix; markup files are converted to
    Markdown by default, everything else is decoded as UTF-8 text.
    """

    def __init__(self, max_file_size_kb: int = 200) -> None:
        self.max_file_size = max_file_size_kb * 1024
        self._converters: dict[str, TextConverter] = {}
        self.register([".html", ".htm", ".xhtml"], html_to_markdown)

    def register(self, suffixes: list[str], converter: TextConverter) -> None:
        """Register a converter applied to decoded text for the given suffixes."""
        for suffix in suffixes:
            self._converters[suffix.lower()] = converter

    def extract(self, path: Path) -> ExtractedContent:
        """Read and normalize a file.

        Args:
            path: File to read.

        Returns:
            The extracted content.

        Raises:
            ExtractionError: If the file is missing, too large, binary,
                not UTF-8, or its converter fails.
        """
        try:
            stat = path.stat()
            if stat.st_size > self.max_file_size:
                raise ExtractionError(
                    f"{path} is larger than {self.max_file_size // 1024} KB"
                )
            raw = path.read_bytes()
        except OSError as e:
            raise ExtractionError(f"Cannot read {path}: {e}") from e

        if b"\x00" in raw[:BINARY_SNIFF_BYTES]:
            raise ExtractionError(f"{path} looks like a binary file")

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExtractionError(f"{path} is not valid UTF-8: {e}") from e

        converter = self._converters.get(path.suffix.lower())
        if converter is not None:
            try:
                text = converter(text)
            except Exception as e:
                raise ExtractionError(f"Failed to convert {path}: {e}") from e

        text = normalize_text(text)
        return ExtractedContent(
            text=text,
            content_hash=compute_hash(text),
            document_type=detect_document_type(path),
            language=detect_language(path),
            size=stat.st_size,
            modified_at=stat.st_mtime,
        )

    async def extract_async(self, path: Path) -> ExtractedContent:
        """Run :meth:`extract` in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.extract, path)
