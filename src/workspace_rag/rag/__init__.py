"""Indexing and retrieval over a local workspace.

The write path turns file change events into vector index updates:

    FileEvent -> IndexingPipeline -> ContentExtractor -> Chunker
              -> EmbeddingProvider -> VectorIndex

The read path turns a query into a ranked RetrievalContext:

    query -> Retriever -> EmbeddingProvider -> VectorIndex -> ResultRanker

Example:
    from workspace_rag.rag import RAGManager

    manager = RAGManager(workspace_root=Path.cwd())
    await manager.index_workspace()
    context = await manager.retrieve("where are retries configured?")
    print(context.format_for_prompt())
"""

from .chunking import Chunker, chunk, get_boundary_strategy
from .embeddings import (
    EmbeddingProvider,
    MockEmbeddingProvider,
    OllamaEmbeddingProvider,
    get_embedding_provider,
)
from .extraction import ContentExtractor, ExtractedContent
from .manager import RAGManager
from .models import (
    ChangeKind,
    Chunk,
    Document,
    DocumentStatus,
    DocumentType,
    FileEvent,
    IndexStats,
    RetrievalContext,
    ScoredChunk,
    SessionContext,
    Span,
)
from .pipeline import IndexingPipeline, PipelineStats
from .registry import DocumentRegistry
from .retriever import ResultRanker, Retriever
from .vectorstore import IndexEntry, IndexHit, QueryFilter, VectorIndex
from .watcher import FileWatcher, WorkspaceScanner

__all__ = [
    "ChangeKind",
    "Chunk",
    "Chunker",
    "ContentExtractor",
    "Document",
    "DocumentRegistry",
    "DocumentStatus",
    "DocumentType",
    "EmbeddingProvider",
    "ExtractedContent",
    "FileEvent",
    "FileWatcher",
    "IndexEntry",
    "IndexHit",
    "IndexStats",
    "IndexingPipeline",
    "MockEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "PipelineStats",
    "QueryFilter",
    "RAGManager",
    "ResultRanker",
    "RetrievalContext",
    "Retriever",
    "ScoredChunk",
    "SessionContext",
    "Span",
    "VectorIndex",
    "WorkspaceScanner",
    "chunk",
    "get_boundary_strategy",
    "get_embedding_provider",
]
