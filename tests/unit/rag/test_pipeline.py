"""Tests for the incremental indexing pipeline."""

from pathlib import Path

import pytest

from workspace_rag.config.models import IndexingConfig
from workspace_rag.core.errors import ProviderUnavailable
from workspace_rag.rag.chunking import Chunker
from workspace_rag.rag.embeddings import EmbeddingProvider, MockEmbeddingProvider
from workspace_rag.rag.extraction import ContentExtractor
from workspace_rag.rag.models import ChangeKind, DocumentStatus, FileEvent
from workspace_rag.rag.pipeline import IndexingPipeline
from workspace_rag.rag.registry import DocumentRegistry
from workspace_rag.rag.vectorstore import VectorIndex
from workspace_rag.rag.watcher import WorkspaceScanner


class PoisonedEmbeddings(MockEmbeddingProvider):
    """Fails for any batch containing the marker text."""

    def __init__(self, marker: str = "POISON") -> None:
        super().__init__(dimension=32)
        self.marker = marker

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if any(self.marker in text for text in texts):
            raise ProviderUnavailable("embedding server dropped the request")
        return await super().embed_batch(texts)


def build_pipeline(
    root: Path,
    config: IndexingConfig,
    embeddings: EmbeddingProvider,
    index: VectorIndex | None = None,
) -> IndexingPipeline:
    return IndexingPipeline(
        WorkspaceScanner(root, config),
        ContentExtractor(config.max_file_size_kb),
        Chunker(config.chunk_size, config.chunk_overlap),
        embeddings,
        index or VectorIndex(embedding_model=embeddings.model_name),
        DocumentRegistry(embedding_model=embeddings.model_name),
        config,
    )


def entry_texts(pipeline: IndexingPipeline, document_id: str) -> str:
    return "".join(e.metadata["text"] for e in pipeline.index.get_entries(document_id))


class TestReconcile:
    @pytest.mark.asyncio
    async def test_initial_scan_indexes_tracked_files(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.index.document_ids() == {"docs/guide.md", "src/inventory.py"}
        assert pipeline.stats.documents_indexed == 2
        document = pipeline.registry.get("src/inventory.py")
        assert document.status == DocumentStatus.INDEXED
        assert document.chunk_count == len(pipeline.index.get_entries("src/inventory.py"))
        assert document.generation == pipeline.index.generation("src/inventory.py")
        assert "def foo" in entry_texts(pipeline, "src/inventory.py")

    @pytest.mark.asyncio
    async def test_chunk_text_matches_its_own_embedding(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        entry = pipeline.index.get_entries("docs/guide.md")[0]
        text = entry.metadata["text"]
        assert text.endswith("\n")
        hits = await pipeline.index.query(await embeddings.embed(text.strip()), 1)
        assert hits[0].chunk_id == entry.chunk_id
        assert hits[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_stale_documents_removed(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        index = VectorIndex(embedding_model=embeddings.model_name)
        vector = await embeddings.embed("old")
        await index.replace_document(
            "src/gone.py", [("src/gone.py#0", vector, {"document_id": "src/gone.py"})]
        )

        pipeline = build_pipeline(workspace, indexing_config, embeddings, index)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert "src/gone.py" not in index.document_ids()
        assert pipeline.stats.documents_removed == 1


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_unchanged_content_is_skipped(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
            size = len(pipeline.index)
            generation = pipeline.index.generation("src/inventory.py")

            assert await pipeline.process("src/inventory.py") is False
            await pipeline.reconcile()
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert len(pipeline.index) == size
        assert pipeline.index.generation("src/inventory.py") == generation
        assert pipeline.stats.documents_skipped == 3

    @pytest.mark.asyncio
    async def test_changed_content_replaces_chunks(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
            (workspace / "src" / "inventory.py").write_text("def bar():\n    return 2\n")
            assert await pipeline.process("src/inventory.py") is True
        finally:
            await pipeline.stop()

        assert pipeline.index.generation("src/inventory.py") == 2
        text = entry_texts(pipeline, "src/inventory.py")
        assert "def bar" in text
        assert "def foo" not in text


class TestEvents:
    @pytest.mark.asyncio
    async def test_rapid_edits_coalesce(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        path = workspace / "src" / "inventory.py"
        await pipeline.start(reconcile=False)
        try:
            for version in range(1, 4):
                path.write_text(f"VERSION = {version}\n")
                pipeline.notify(FileEvent(path=str(path), kind=ChangeKind.MODIFIED))
            assert pipeline.pending_jobs == 1
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.stats.events_received == 3
        assert pipeline.stats.events_coalesced == 2
        assert pipeline.stats.jobs_processed == 1
        assert entry_texts(pipeline, "src/inventory.py") == "VERSION = 3\n"

    @pytest.mark.asyncio
    async def test_removed_file(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
            (workspace / "docs" / "guide.md").unlink()
            pipeline.notify(FileEvent(path="docs/guide.md", kind=ChangeKind.REMOVED))
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.index.generation("docs/guide.md") is None
        assert "docs/guide.md" not in pipeline.registry
        assert pipeline.stats.documents_removed == 1

    @pytest.mark.asyncio
    async def test_removal_cancels_pending_edit(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start(reconcile=False)
        try:
            pipeline.notify(FileEvent(path="src/inventory.py", kind=ChangeKind.MODIFIED))
            (workspace / "src" / "inventory.py").unlink()
            pipeline.notify(FileEvent(path="src/inventory.py", kind=ChangeKind.REMOVED))
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.stats.events_coalesced == 1
        assert pipeline.stats.documents_indexed == 0
        assert len(pipeline.index) == 0

    @pytest.mark.asyncio
    async def test_flush_skips_debounce(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        config = indexing_config.model_copy(update={"debounce_seconds": 30.0})
        pipeline = build_pipeline(workspace, config, embeddings)
        await pipeline.start(reconcile=False)
        try:
            pipeline.notify(FileEvent(path="docs/guide.md", kind=ChangeKind.ADDED))
            pipeline.flush()
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.index.document_ids() == {"docs/guide.md"}

    @pytest.mark.asyncio
    async def test_event_outside_workspace_ignored(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        pipeline = build_pipeline(workspace, indexing_config, embeddings)
        await pipeline.start(reconcile=False)
        try:
            pipeline.notify(
                FileEvent(path=str(workspace.parent / "other.py"), kind=ChangeKind.MODIFIED)
            )
            assert pipeline.pending_jobs == 0
        finally:
            await pipeline.stop()
        assert pipeline.stats.events_received == 1


class TestLimits:
    @pytest.mark.asyncio
    async def test_new_files_beyond_max_files_are_not_indexed(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        config = indexing_config.model_copy(update={"max_files": 2})
        pipeline = build_pipeline(workspace, config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
            for i in range(5):
                path = workspace / "src" / f"extra{i}.py"
                path.write_text(f"VALUE = {i}\n")
                pipeline.notify(FileEvent(path=str(path), kind=ChangeKind.ADDED))
            (workspace / "src" / "inventory.py").write_text("def bar():\n    return 2\n")
            pipeline.notify(FileEvent(path="src/inventory.py", kind=ChangeKind.MODIFIED))
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.index.document_ids() == {"docs/guide.md", "src/inventory.py"}
        assert pipeline.tracked_count() == 2
        assert pipeline.stats.documents_over_limit == 5
        assert "def bar" in entry_texts(pipeline, "src/inventory.py")

    @pytest.mark.asyncio
    async def test_removal_frees_a_slot(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        config = indexing_config.model_copy(update={"max_files": 2})
        pipeline = build_pipeline(workspace, config, embeddings)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
            (workspace / "docs" / "guide.md").unlink()
            pipeline.notify(FileEvent(path="docs/guide.md", kind=ChangeKind.REMOVED))
            await pipeline.wait_idle()
            extra = workspace / "src" / "extra.py"
            extra.write_text("VALUE = 1\n")
            pipeline.notify(FileEvent(path=str(extra), kind=ChangeKind.ADDED))
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.index.document_ids() == {"src/extra.py", "src/inventory.py"}
        assert pipeline.stats.documents_over_limit == 0

    @pytest.mark.asyncio
    async def test_reconcile_replaces_vanished_documents(
        self, workspace: Path, indexing_config: IndexingConfig, embeddings: MockEmbeddingProvider
    ) -> None:
        config = indexing_config.model_copy(update={"max_files": 2})
        index = VectorIndex(embedding_model=embeddings.model_name)
        vector = await embeddings.embed("old")
        for document_id in ("src/gone.py", "src/old.py"):
            await index.replace_document(
                document_id, [(f"{document_id}#0", vector, {"document_id": document_id})]
            )

        pipeline = build_pipeline(workspace, config, embeddings, index)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert index.document_ids() == {"docs/guide.md", "src/inventory.py"}
        assert pipeline.stats.documents_over_limit == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_failing_document_does_not_block_others(
        self, workspace: Path, indexing_config: IndexingConfig
    ) -> None:
        (workspace / "src" / "broken.py").write_text("POISON = True\n")
        pipeline = build_pipeline(workspace, indexing_config, PoisonedEmbeddings())
        await pipeline.start()
        try:
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.index.document_ids() == {"docs/guide.md", "src/inventory.py"}
        broken = pipeline.registry.get("src/broken.py")
        assert broken.status == DocumentStatus.FAILED
        assert broken.attempts == indexing_config.max_retries + 1
        assert "dropped the request" in broken.last_error
        assert pipeline.stats.retries == indexing_config.max_retries
        assert pipeline.stats.documents_failed == 1
        assert pipeline.registry.failed_ids() == frozenset({"src/broken.py"})

    @pytest.mark.asyncio
    async def test_all_embeddings_failing(
        self, workspace: Path, indexing_config: IndexingConfig, failing_embeddings
    ) -> None:
        provider = failing_embeddings(ProviderUnavailable("connection refused"))
        config = indexing_config.model_copy(update={"max_retries": 0})
        pipeline = build_pipeline(workspace, config, provider)
        await pipeline.start()
        try:
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert len(pipeline.index) == 0
        assert pipeline.registry.failed_ids() == frozenset(
            {"docs/guide.md", "src/inventory.py"}
        )
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_recovered_document_is_indexed(
        self, workspace: Path, indexing_config: IndexingConfig
    ) -> None:
        broken = workspace / "src" / "broken.py"
        broken.write_text("POISON = True\n")
        pipeline = build_pipeline(workspace, indexing_config, PoisonedEmbeddings())
        await pipeline.start()
        try:
            await pipeline.wait_idle()
            broken.write_text("FIXED = True\n")
            pipeline.notify(FileEvent(path="src/broken.py", kind=ChangeKind.MODIFIED))
            await pipeline.wait_idle()
        finally:
            await pipeline.stop()

        assert pipeline.registry.get("src/broken.py").status == DocumentStatus.INDEXED
        assert pipeline.registry.failed_ids() == frozenset()
