"""Configuration package."""

from workspace_rag.config.loader import ConfigLoader
from workspace_rag.config.models import (
    AgentsConfig,
    ConversationConfig,
    EmbeddingProviderType,
    EngineConfig,
    IndexingConfig,
    ProviderConfig,
    RetrievalConfig,
    SimilarityMetric,
)

__all__ = [
    "AgentsConfig",
    "ConfigLoader",
    "ConversationConfig",
    "EmbeddingProviderType",
    "EngineConfig",
    "IndexingConfig",
    "ProviderConfig",
    "RetrievalConfig",
    "SimilarityMetric",
]
