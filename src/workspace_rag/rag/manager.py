"""RAG Manager - wires the write path and the read path together.

The manager owns one workspace's components: the scanner and watcher, the
indexing pipeline, the vector index with its document registry, and the
retriever that reads from them.

Example:
    from workspace_rag.rag.manager import RAGManager

    manager = RAGManager(workspace_root=Path.cwd(), config=config)
    await manager.initialize()
    stats = await manager.index_workspace()
    context = await manager.retrieve("how is the index persisted?")
    await manager.close()
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from workspace_rag.config.models import EngineConfig

from .chunking import Chunker
from .embeddings import EmbeddingProvider, get_embedding_provider
from .extraction import ContentExtractor
from .models import FileEvent, IndexStats, RetrievalContext, SessionContext
from .pipeline import IndexingPipeline
from .registry import DocumentRegistry
from .retriever import Retriever
from .vectorstore import VectorIndex
from .watcher import FileWatcher, WorkspaceScanner

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


class RAGManager:
    """Central coordinator for one workspace.

    Attributes:
        workspace_root: Root directory of the workspace.
        config: Engine configuration.
        persist: Whether the index and registry are stored on disk.
    """

    def __init__(
        self,
        workspace_root: Path,
        config: EngineConfig | None = None,
        embeddings: EmbeddingProvider | None = None,
        persist: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.workspace_root = workspace_root.resolve()
        self.config = config or EngineConfig()
        self.persist = persist
        self._transport = transport
        self._embeddings = embeddings

        self._index: VectorIndex | None = None
        self._registry: DocumentRegistry | None = None
        self._pipeline: IndexingPipeline | None = None
        self._retriever: Retriever | None = None
        self._watcher: FileWatcher | None = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def index_directory(self) -> Path:
        return self.config.indexing.get_index_path(self.workspace_root)

    @property
    def embeddings(self) -> EmbeddingProvider:
        self._require()
        assert self._embeddings is not None
        return self._embeddings

    @property
    def index(self) -> VectorIndex:
        self._require()
        assert self._index is not None
        return self._index

    @property
    def registry(self) -> DocumentRegistry:
        self._require()
        assert self._registry is not None
        return self._registry

    @property
    def pipeline(self) -> IndexingPipeline:
        self._require()
        assert self._pipeline is not None
        return self._pipeline

    @property
    def retriever(self) -> Retriever:
        self._require()
        assert self._retriever is not None
        return self._retriever

    def _require(self) -> None:
        if not self._initialized:
            raise RuntimeError("RAGManager is not initialized")

    async def initialize(self) -> None:
        """Create the components and open the persisted index.

        If the index was reset (embedding model, metric or dimension changed,
        or corruption) or the registry could not be loaded, the registry is
        cleared so every file is re-embedded.

        Raises:
            IndexUnavailable: If the index directory cannot be read.
        """
        async with self._lock:
            if self._initialized:
                return

            indexing = self.config.indexing
            logger.info(f"Initializing workspace index for {self.workspace_root}")

            if self._embeddings is None:
                self._embeddings = get_embedding_provider(
                    self.config.provider, transport=self._transport
                )
            model = self._embeddings.model_name
            directory = self.index_directory if self.persist else None

            index = VectorIndex(
                directory=directory,
                metric=indexing.metric,
                dimension=self.config.provider.embedding_dimension
                or self._embeddings.dimension,
                embedding_model=model,
            )
            await index.open()

            registry = DocumentRegistry(
                directory / DocumentRegistry.FILE_NAME if directory else None,
                embedding_model=model,
            )
            loaded = registry.load()
            if index.was_reset or not loaded:
                if index.was_reset:
                    logger.info("Vector index was reset, forcing full re-index")
                registry.clear()

            scanner = WorkspaceScanner(self.workspace_root, indexing)
            self._pipeline = IndexingPipeline(
                scanner=scanner,
                extractor=ContentExtractor(indexing.max_file_size_kb),
                chunker=Chunker(indexing.chunk_size, indexing.chunk_overlap),
                embeddings=self._embeddings,
                index=index,
                registry=registry,
                config=indexing,
            )
            self._retriever = Retriever(
                self._embeddings, index, registry, self.config.retrieval
            )
            self._watcher = FileWatcher(scanner, self._pipeline.notify)
            self._index = index
            self._registry = registry
            self._initialized = True
            logger.info("Workspace index initialized")

    async def index_workspace(self) -> IndexStats:
        """Reconcile the index with the workspace and wait for it to settle.

        Returns:
            Index statistics after indexing.
        """
        await self.initialize()
        pipeline = self.pipeline
        started = not pipeline.is_running
        if started:
            await pipeline.start(reconcile=True)
        else:
            await pipeline.reconcile()
        await pipeline.wait_idle()
        if started:
            await pipeline.stop()

        stats = self.get_status()
        logger.info(
            f"Indexing complete: {stats.total_chunks} chunks, "
            f"{stats.total_documents} documents, {stats.failed_documents} failed"
        )
        return stats

    async def start_watching(self) -> None:
        """Start the pipeline and the file watcher, reconciling first."""
        await self.initialize()
        if not self.pipeline.is_running:
            await self.pipeline.start(reconcile=True)
        assert self._watcher is not None
        self._watcher.start(asyncio.get_running_loop())

    async def stop_watching(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
        if self._pipeline is not None and self._pipeline.is_running:
            await self._pipeline.stop()

    def notify(self, event: FileEvent) -> None:
        """Forward a host file change event to the pipeline."""
        self.pipeline.notify(event)

    async def retrieve(
        self,
        query: str,
        session: SessionContext | None = None,
        k: int | None = None,
    ) -> RetrievalContext:
        await self.initialize()
        return await self.retriever.retrieve(query, session, k)

    async def clear_index(self) -> int:
        """Remove every entry and forget every document.

        Returns:
            Number of chunks cleared.
        """
        await self.initialize()
        count = len(self.index)
        await self.index.clear()
        self.registry.clear()
        await self.registry.save()
        logger.info(f"Cleared {count} chunks from index")
        return count

    def get_status(self) -> IndexStats:
        """Current index statistics."""
        if not self._initialized:
            return IndexStats(
                metric=self.config.indexing.metric.value,
                embedding_model=self.config.provider.embedding_model,
                index_directory=str(self.index_directory) if self.persist else None,
            )

        index_stats = self.index.get_stats()
        return IndexStats(
            total_documents=index_stats["total_documents"],
            total_chunks=index_stats["total_chunks"],
            failed_documents=len(self.registry.failed_ids()),
            pending_jobs=self.pipeline.pending_jobs,
            dimension=index_stats["dimension"],
            metric=index_stats["metric"],
            embedding_model=index_stats["embedding_model"],
            index_directory=index_stats["persist_directory"],
            last_indexed=self.registry.last_indexed,
        )

    async def close(self) -> None:
        """Stop background work and release the index and provider."""
        await self.stop_watching()
        if self._index is not None:
            await self._index.close()
        if self._embeddings is not None:
            await self._embeddings.close()
        self._initialized = False
        logger.debug("Workspace index closed")
