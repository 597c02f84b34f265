"""Core package containing errors, logging and shared constants."""

from workspace_rag.core.errors import (
    AgentError,
    CheckpointError,
    ConfigError,
    ContentRejected,
    DimensionMismatch,
    ExtractionError,
    IndexUnavailable,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    SessionError,
    SessionNotFoundError,
    VectorIndexError,
    WorkspaceRagError,
)
from workspace_rag.core.logging import get_logger, setup_logging

__all__ = [
    "AgentError",
    "CheckpointError",
    "ConfigError",
    "ContentRejected",
    "DimensionMismatch",
    "ExtractionError",
    "IndexUnavailable",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "SessionError",
    "SessionNotFoundError",
    "VectorIndexError",
    "WorkspaceRagError",
    "get_logger",
    "setup_logging",
]
