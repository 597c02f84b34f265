"""Tests for the document registry."""

from datetime import datetime
from pathlib import Path

import pytest

from workspace_rag.rag.models import Document, DocumentStatus
from workspace_rag.rag.registry import DocumentRegistry


def indexed(doc_id: str, content_hash: str = "h1") -> Document:
    return Document(
        id=doc_id,
        absolute_path=f"/ws/{doc_id}",
        content_hash=content_hash,
        status=DocumentStatus.INDEXED,
        generation=1,
        chunk_count=2,
        indexed_at=datetime(2026, 1, 2, 3, 4, 5),
    )


class TestDocumentRegistry:
    def test_put_get_remove(self) -> None:
        registry = DocumentRegistry()
        registry.put(indexed("a.py"))
        assert "a.py" in registry
        assert len(registry) == 1
        assert registry.get("a.py").generation == 1
        assert registry.remove("a.py") is not None
        assert registry.remove("a.py") is None

    def test_is_unchanged(self) -> None:
        registry = DocumentRegistry()
        registry.put(indexed("a.py", "abc"))
        assert registry.is_unchanged("a.py", "abc")
        assert not registry.is_unchanged("a.py", "other")
        assert not registry.is_unchanged("b.py", "abc")

    def test_failed_documents_are_not_unchanged(self) -> None:
        registry = DocumentRegistry()
        registry.put(indexed("a.py", "abc").model_copy(update={"status": DocumentStatus.FAILED}))
        assert not registry.is_unchanged("a.py", "abc")
        assert registry.failed_ids() == frozenset({"a.py"})

    def test_last_indexed_tracked(self) -> None:
        registry = DocumentRegistry()
        registry.put(indexed("a.py"))
        assert registry.last_indexed == datetime(2026, 1, 2, 3, 4, 5)
        registry.clear()
        assert registry.last_indexed is None


class TestRegistryPersistence:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path) -> None:
        path = tmp_path / "documents.json"
        registry = DocumentRegistry(path, embedding_model="nomic-embed-text")
        registry.put(indexed("a.py"))
        registry.put(indexed("b.md", "h2"))
        await registry.save()

        loaded = DocumentRegistry(path, embedding_model="nomic-embed-text")
        assert loaded.load()
        assert len(loaded) == 2
        assert loaded.get("b.md").content_hash == "h2"
        assert loaded.last_indexed is not None

    def test_missing_file(self, tmp_path: Path) -> None:
        assert not DocumentRegistry(tmp_path / "documents.json").load()

    def test_memory_only(self) -> None:
        registry = DocumentRegistry()
        registry.save_sync()
        assert not registry.load()

    def test_model_change_discards(self, tmp_path: Path) -> None:
        path = tmp_path / "documents.json"
        registry = DocumentRegistry(path, embedding_model="model-a")
        registry.put(indexed("a.py"))
        registry.save_sync()

        loaded = DocumentRegistry(path, embedding_model="model-b")
        assert not loaded.load()
        assert len(loaded) == 0

    def test_corrupted_file_moved_aside(self, tmp_path: Path) -> None:
        path = tmp_path / "documents.json"
        path.write_text("{ broken")
        registry = DocumentRegistry(path)
        assert not registry.load()
        assert not path.exists()
        assert list(tmp_path.glob("documents.json.corrupt-*"))
