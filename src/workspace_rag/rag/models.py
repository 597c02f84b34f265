"""Data models for the indexing and retrieval layers.

Example:
    from workspace_rag.rag.models import ChangeKind, FileEvent

    event = FileEvent(path="src/main.py", kind=ChangeKind.MODIFIED)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

CHUNK_ID_SEPARATOR = "#"


class DocumentType(str, Enum):
    """Type of indexed document.

    Attributes:
        CODE: Source code files (.py, .java, .ts, etc.)
        DOCUMENTATION: Documentation files (.md, .rst, .txt, .html)
        CONFIG: Configuration files (.json, .yaml, .toml)
        OTHER: Other file types
    """

    CODE = "code"
    DOCUMENTATION = "documentation"
    CONFIG = "config"
    OTHER = "other"


class ChangeKind(str, Enum):
    """Kind of change reported by a file change source."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class DocumentStatus(str, Enum):
    """Extraction/indexing status of a document.

    Attributes:
        PENDING: Observed but not indexed yet.
        INDEXED: The current content is in the vector index.
        FAILED: Retries exhausted; excluded from retrieval until the next
            successful attempt.
    """

    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class FileEvent(BaseModel):
    """A change notification delivered by the host.

    Events are hints: the pipeline reconciles against the file system, so
    duplicates and out-of-order delivery are harmless.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    kind: ChangeKind


class Document(BaseModel):
    """An indexed (or indexable) workspace file.

    Attributes:
        id: Workspace-relative POSIX path; stable identity.
        absolute_path: Absolute file path.
        document_type: Type of document.
        language: Detected language, if known.
        content_hash: SHA-256 of the normalized text last indexed.
        modified_at: File modification time (epoch seconds) when last read.
        status: Indexing status.
        generation: Vector index generation holding this document's chunks.
        chunk_count: Number of chunks in the current generation.
        attempts: Consecutive failed attempts.
        last_error: Message of the last failure.
        indexed_at: When the document was last indexed successfully.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str
    absolute_path: str
    document_type: DocumentType = DocumentType.OTHER
    language: str | None = None
    content_hash: str = ""
    modified_at: float = 0.0
    status: DocumentStatus = DocumentStatus.PENDING
    generation: int = Field(default=0, ge=0)
    chunk_count: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    indexed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Document:
        return cls.model_validate(data)


class Span(NamedTuple):
    """Half-open character range ``[start, end)`` into a document's text."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


class Chunk(BaseModel):
    """A bounded span of a document, the unit of embedding and retrieval."""

    model_config = ConfigDict(validate_assignment=True)

    document_id: str
    ordinal: int = Field(ge=0)
    start: int = Field(ge=0)
    end: int = Field(ge=0)
    text: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    language: str | None = None

    @property
    def id(self) -> str:
        return make_chunk_id(self.document_id, self.ordinal)

    def to_metadata(self, embedding_model: str, modified_at: float) -> dict[str, Any]:
        """Metadata stored alongside the embedding in the vector index."""
        return {
            "document_id": self.document_id,
            "ordinal": self.ordinal,
            "start": self.start,
            "end": self.end,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "text": self.text,
            "embedding_model": embedding_model,
            "modified_at": modified_at,
        }


def make_chunk_id(document_id: str, ordinal: int) -> str:
    """Build the chunk identity ``(document, ordinal)`` as a string."""
    return f"{document_id}{CHUNK_ID_SEPARATOR}{ordinal}"


def parse_chunk_id(chunk_id: str) -> tuple[str, int]:
    """Split a chunk id into ``(document_id, ordinal)``.

    Raises:
        ValueError: If the id has no ordinal suffix.
    """
    document_id, sep, ordinal = chunk_id.rpartition(CHUNK_ID_SEPARATOR)
    if not sep or not document_id or not ordinal.isdigit():
        raise ValueError(f"Invalid chunk id: {chunk_id!r}")
    return document_id, int(ordinal)


class ScoredChunk(BaseModel):
    """A retrieved chunk with its (re-ranked) similarity score."""

    chunk_id: str
    document_id: str
    score: float
    similarity: float = 0.0
    text: str = ""
    start_line: int = 1
    end_line: int = 1
    language: str | None = None
    generation: int = 0
    modified_at: float = 0.0

    @property
    def location(self) -> str:
        return f"{self.document_id}:{self.start_line}-{self.end_line}"


@dataclass(frozen=True)
class SessionContext:
    """What the retriever may know about the conversation.

    Attributes:
        previous_query: Last user message before the current one.
        document_ids: If set, restrict retrieval to these documents.
        exclude_document_ids: Documents never retrieved.
    """

    previous_query: str | None = None
    document_ids: frozenset[str] | None = None
    exclude_document_ids: frozenset[str] = frozenset()


@dataclass
class RetrievalContext:
    """Ranked chunks retrieved for one orchestration turn.

    An empty context is a valid answer: the caller answers from general
    knowledge.

    Attributes:
        query: The query text that was embedded.
        chunks: Ranked chunks, best first.
        warnings: Degradations encountered (index unavailable, embedding failure).
        created_at: Epoch seconds.
    """

    query: str
    chunks: list[ScoredChunk] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    def __len__(self) -> int:
        return len(self.chunks)

    def truncated(self, k: int) -> RetrievalContext:
        """Copy keeping only the ``k`` best chunks."""
        return RetrievalContext(
            query=self.query,
            chunks=self.chunks[: max(0, k)],
            warnings=list(self.warnings),
            created_at=self.created_at,
        )

    def format_for_prompt(self) -> str:
        """Render chunks as fenced snippets for prompt inclusion."""
        if not self.chunks:
            return ""

        parts: list[str] = []
        for chunk in self.chunks:
            lang = chunk.language or ""
            parts.append(
                f"#### {chunk.location}\n```{lang}\n{chunk.text.rstrip()}\n```"
            )
        return "\n\n".join(parts)


class IndexStats(BaseModel):
    """Summary of the vector index and document registry."""

    total_documents: int = 0
    total_chunks: int = 0
    failed_documents: int = 0
    pending_jobs: int = 0
    dimension: int | None = None
    metric: str = "cosine"
    embedding_model: str = ""
    index_directory: str | None = None
    last_indexed: datetime | None = None

    def to_display_string(self) -> str:
        lines = [
            f"Documents: {self.total_documents}",
            f"Chunks: {self.total_chunks}",
            f"Failed: {self.failed_documents}",
            f"Pending jobs: {self.pending_jobs}",
            f"Embedding model: {self.embedding_model or 'unknown'}",
            f"Dimension: {self.dimension or 'unknown'}",
            f"Metric: {self.metric}",
        ]
        if self.index_directory:
            lines.append(f"Index directory: {self.index_directory}")
        if self.last_indexed:
            lines.append(f"Last indexed: {self.last_indexed.isoformat()}")
        return "\n".join(lines)
