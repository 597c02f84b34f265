"""Embedding providers.

- Ollama: embeddings from the local model server (default)
- Mock: deterministic hash-based vectors for tests and offline use

Example:
    from workspace_rag.rag.embeddings import get_embedding_provider

    provider = get_embedding_provider(config.provider)
    vector = await provider.embed("Hello, world!")
    vectors = await provider.embed_batch(["Hello", "World"])
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx
import numpy as np

from workspace_rag.core.errors import ProviderError
from workspace_rag.llm.http import OllamaHTTPClient

if TYPE_CHECKING:
    from workspace_rag.config.models import ProviderConfig

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Converts text to fixed-dimension vectors.

    Implementations fail with ``ProviderUnavailable`` or ``ProviderTimeout``.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier, used as the embedding version tag."""
        ...

    @property
    @abstractmethod
    def dimension(self) -> int | None:
        """Vector dimension, or None until the first embedding is produced."""
        ...

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts; output order matches input order."""
        ...

    async def close(self) -> None:
        """Release any held resources."""
        return None


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by ``POST /api/embed`` on an Ollama server."""

    def __init__(
        self,
        client: OllamaHTTPClient,
        model_name: str = "nomic-embed-text",
        dimension: int | None = None,
    ) -> None:
        self._client = client
        self._model_name = model_name
        self._dimension = dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int | None:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        data = await self._client.post_json(
            "/api/embed", {"model": self._model_name, "input": texts}
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise ProviderError(
                f"Expected {len(texts)} embeddings from {self._model_name}, "
                f"got {len(embeddings) if isinstance(embeddings, list) else 'none'}"
            )

        if self._dimension is None and embeddings:
            self._dimension = len(embeddings[0])
            logger.info(f"Embedding model {self._model_name} has dimension {self._dimension}")
        return [[float(x) for x in vector] for vector in embeddings]

    async def close(self) -> None:
        await self._client.close()


class MockEmbeddingProvider(EmbeddingProvider):
    """Deterministic embeddings derived from a SHA-256 of the text.

    Identical texts map to identical vectors; no model server is needed.
    """

    def __init__(self, dimension: int = 64, model_name: str = "mock-embedding") -> None:
        self._dimension = dimension
        self._model_name = model_name
        self.calls = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> list[float]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        result: list[float] = rng.uniform(-1.0, 1.0, self._dimension).tolist()
        return result


def get_embedding_provider(
    config: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> EmbeddingProvider:
    """Create the embedding provider selected by configuration.

    Raises:
        ValueError: If the provider type is unknown.
    """
    from workspace_rag.config.models import EmbeddingProviderType

    if config.embedding_provider == EmbeddingProviderType.MOCK:
        return MockEmbeddingProvider(dimension=config.embedding_dimension or 64)
    if config.embedding_provider == EmbeddingProviderType.OLLAMA:
        client = OllamaHTTPClient(
            base_url=config.base_url,
            timeout=config.timeout,
            connect_timeout=config.connect_timeout,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            username=config.username,
            password=config.password.get_secret_value() if config.password else None,
            transport=transport,
        )
        return OllamaEmbeddingProvider(
            client,
            model_name=config.embedding_model,
            dimension=config.embedding_dimension,
        )
    raise ValueError(f"Unknown embedding provider: {config.embedding_provider}")
