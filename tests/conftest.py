"""Shared test fixtures for workspace-rag tests.

Fixture overview::

    workspace (temporary workspace with a few source files)
    engine_config (mock embeddings, short debounce, fast retries)
    ├── indexing_config
    └── conversation_config

    embeddings (deterministic MockEmbeddingProvider)
    memory_index (in-memory VectorIndex)
    completion_provider (ScriptedCompletionProvider factory)

Nothing here touches the network: HTTP tests build an
``httpx.MockTransport``, embeddings come from the hash-based mock provider
and completions from :class:`ScriptedCompletionProvider`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from workspace_rag.config.models import (
    ConversationConfig,
    EmbeddingProviderType,
    EngineConfig,
    IndexingConfig,
)
from workspace_rag.core.errors import ProviderError
from workspace_rag.llm.client import CompletionProvider
from workspace_rag.llm.models import CompletionOptions, Message, StreamChunk
from workspace_rag.rag.embeddings import EmbeddingProvider, MockEmbeddingProvider
from workspace_rag.rag.vectorstore import VectorIndex

# ============================================================
# Providers
# ============================================================

Script = list[str] | ProviderError


class ScriptedCompletionProvider(CompletionProvider):
    """Completion provider replaying scripted responses.

    Each call to ``complete`` consumes the next script: a list of fragments
    to stream, or a ProviderError to raise before any output. When the
    scripts run out, ``default`` is streamed.

    Attributes:
        calls: Messages of every ``complete`` call, in order.
        delay: Seconds to sleep before each fragment.
        fail_after: Raise this error after the first fragment of every stream.
    """

    def __init__(
        self,
        scripts: list[Script] | None = None,
        default: list[str] | None = None,
        delay: float = 0.0,
        fail_after: ProviderError | None = None,
        healthy: bool = True,
    ) -> None:
        self.scripts = list(scripts or [])
        self.default = default or ["Hello", " from", " the model."]
        self.delay = delay
        self.fail_after = fail_after
        self.healthy = healthy
        self.calls: list[list[Message]] = []
        self.closed = False

    @property
    def model_name(self) -> str:
        return "scripted"

    async def complete(
        self,
        messages: list[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append(list(messages))
        script = self.scripts.pop(0) if self.scripts else self.default
        if isinstance(script, ProviderError):
            raise script

        for i, fragment in enumerate(script):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamChunk(content=fragment, model="scripted")
            if i == 0 and self.fail_after is not None:
                raise self.fail_after
        yield StreamChunk(content="", model="scripted", finish_reason="stop")

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True


class FailingEmbeddingProvider(EmbeddingProvider):
    """Embedding provider that raises ``error`` on every call."""

    def __init__(self, error: ProviderError, dimension: int = 32) -> None:
        self.error = error
        self._dimension = dimension
        self.calls = 0

    @property
    def model_name(self) -> str:
        return "mock-embedding"

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        raise self.error

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        raise self.error


class SlowEmbeddingProvider(MockEmbeddingProvider):
    """Mock embeddings that take ``delay`` seconds per batch."""

    def __init__(self, delay: float, dimension: int = 32) -> None:
        super().__init__(dimension=dimension)
        self.delay = delay

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        await asyncio.sleep(self.delay)
        return await super().embed_batch(texts)


@pytest.fixture
def embeddings() -> MockEmbeddingProvider:
    return MockEmbeddingProvider(dimension=32)


@pytest.fixture
def completion_provider() -> Callable[..., ScriptedCompletionProvider]:
    """Factory for scripted completion providers."""
    return ScriptedCompletionProvider


@pytest.fixture
def failing_embeddings() -> Callable[..., FailingEmbeddingProvider]:
    return FailingEmbeddingProvider


@pytest.fixture
def slow_embeddings() -> Callable[..., SlowEmbeddingProvider]:
    return SlowEmbeddingProvider


@pytest.fixture
def memory_index() -> VectorIndex:
    """In-memory index; usable without awaiting open()."""
    return VectorIndex(embedding_model="mock-embedding")


# ============================================================
# Workspace and configuration
# ============================================================

SAMPLE_PYTHON = '''"""Inventory helpers."""


def foo(items):
    """Return the number of distinct items in the inventory."""
    return len(set(items))


class Warehouse:
    """A named collection of shelves."""

    def __init__(self, name):
        self.name = name
        self.shelves = []
'''

SAMPLE_MARKDOWN = """# Guide

The warehouse service keeps an inventory of every shelf.

## Configuration

Set the warehouse name in settings before starting the service.
"""


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A small workspace: Python module, Markdown guide, ignored files."""
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "docs").mkdir()
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "src" / "inventory.py").write_text(SAMPLE_PYTHON, encoding="utf-8")
    (root / "docs" / "guide.md").write_text(SAMPLE_MARKDOWN, encoding="utf-8")
    (root / "node_modules" / "lib" / "index.js").write_text("module.exports = 1;\n")
    (root / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")
    return root


@pytest.fixture
def indexing_config() -> IndexingConfig:
    return IndexingConfig(
        chunk_size=200,
        chunk_overlap=20,
        debounce_seconds=0.05,
        workers=2,
        max_retries=2,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
    )


@pytest.fixture
def conversation_config() -> ConversationConfig:
    return ConversationConfig(
        system_prompt="You answer questions about the workspace.",
        completion_retries=2,
        stream_idle_timeout=2.0,
        provider_cooldown_seconds=30.0,
    )


@pytest.fixture
def engine_config(
    indexing_config: IndexingConfig, conversation_config: ConversationConfig
) -> EngineConfig:
    config = EngineConfig(indexing=indexing_config, conversation=conversation_config)
    config.provider.embedding_provider = EmbeddingProviderType.MOCK
    config.provider.embedding_dimension = 32
    config.retrieval.min_score = -1.0
    config.retrieval.min_chunk_chars = 0
    return config
