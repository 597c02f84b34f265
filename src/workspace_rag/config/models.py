"""Configuration models for workspace-rag.

Example:
    from workspace_rag.config.models import EngineConfig

    config = EngineConfig()
    config.indexing.debounce_seconds = 1.0
    config.retrieval.default_k = 6
"""

from __future__ import annotations

import fnmatch
from enum import Enum
from pathlib import Path, PurePath
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

from workspace_rag.core import constants as c


class EmbeddingProviderType(str, Enum):
    """Embedding provider backends.

    Attributes:
        OLLAMA: Embeddings from the local Ollama server.
        MOCK: Deterministic hash-based embeddings, no server required.
    """

    OLLAMA = "ollama"
    MOCK = "mock"


class SimilarityMetric(str, Enum):
    """Similarity metric, fixed for the lifetime of an index."""

    COSINE = "cosine"
    INNER_PRODUCT = "inner_product"


DEFAULT_INCLUDE_PATTERNS: list[str] = [
    "**/*.py",
    "**/*.java",
    "**/*.kt",
    "**/*.js",
    "**/*.ts",
    "**/*.tsx",
    "**/*.jsx",
    "**/*.go",
    "**/*.rs",
    "**/*.c",
    "**/*.h",
    "**/*.cpp",
    "**/*.md",
    "**/*.rst",
    "**/*.txt",
    "**/*.html",
    "**/*.htm",
    "**/*.yaml",
    "**/*.yml",
    "**/*.json",
    "**/*.toml",
]

DEFAULT_EXCLUDE_PATTERNS: list[str] = [
    "**/node_modules/**",
    "**/.git/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/venv/**",
    "**/dist/**",
    "**/build/**",
    "**/target/**",
    "**/.workspace_rag/**",
    "**/*.min.js",
    "**/*.min.css",
    "**/.mypy_cache/**",
    "**/.pytest_cache/**",
    "**/*.egg-info/**",
]


class ProviderConfig(BaseModel):
    """Connection settings for the local model server."""

    model_config = ConfigDict(validate_assignment=True)

    base_url: str = c.DEFAULT_BASE_URL
    chat_model: str = c.DEFAULT_CHAT_MODEL
    embedding_provider: EmbeddingProviderType = EmbeddingProviderType.OLLAMA
    embedding_model: str = c.DEFAULT_EMBEDDING_MODEL
    embedding_dimension: int | None = Field(default=None, ge=1)
    timeout: float = Field(default=c.PROVIDER_TIMEOUT, gt=0)
    connect_timeout: float = Field(default=c.PROVIDER_CONNECT_TIMEOUT, gt=0)
    max_retries: int = Field(default=c.DEFAULT_MAX_RETRIES, ge=1, le=10)
    retry_delay: float = Field(default=c.DEFAULT_RETRY_DELAY, ge=0)
    username: str | None = None
    password: SecretStr | None = None
    temperature: float = Field(default=c.DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    top_p: float = Field(default=c.DEFAULT_TOP_P, ge=0.0, le=1.0)
    top_k: int = Field(default=c.DEFAULT_TOP_K, ge=1)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("chat_model", "embedding_model")
    @classmethod
    def validate_model_name(cls, v: str) -> str:
        """Validate model names are non-empty."""
        if not v or not v.strip():
            raise ValueError("Model name must be non-empty")
        return v.strip()


class IndexingConfig(BaseModel):
    """Settings for the indexing pipeline and vector index."""

    model_config = ConfigDict(validate_assignment=True)

    sources: list[str] = Field(default_factory=lambda: ["."])
    include_patterns: list[str] = Field(
        default_factory=lambda: DEFAULT_INCLUDE_PATTERNS.copy()
    )
    exclude_patterns: list[str] = Field(
        default_factory=lambda: DEFAULT_EXCLUDE_PATTERNS.copy()
    )
    respect_gitignore: bool = True
    max_file_size_kb: int = Field(default=c.MAX_FILE_SIZE_KB, ge=1, le=10000)
    max_files: int = Field(default=c.MAX_TRACKED_FILES, ge=1)

    chunk_size: int = Field(default=c.CHUNK_SIZE, ge=50, le=20000)
    chunk_overlap: int = Field(default=c.CHUNK_OVERLAP, ge=0)

    debounce_seconds: float = Field(default=c.DEBOUNCE_SECONDS, ge=0.0, le=60.0)
    workers: int = Field(default=c.INDEX_WORKERS, ge=1, le=64)
    max_queue_size: int = Field(default=c.MAX_QUEUE_SIZE, ge=1)
    max_retries: int = Field(default=c.INDEX_MAX_RETRIES, ge=0, le=20)
    retry_base_delay: float = Field(default=c.INDEX_RETRY_BASE_DELAY, ge=0.0)
    retry_max_delay: float = Field(default=c.INDEX_RETRY_MAX_DELAY, ge=0.0)
    embed_batch_size: int = Field(default=c.EMBED_BATCH_SIZE, ge=1, le=512)
    max_concurrent_embeddings: int = Field(
        default=c.MAX_CONCURRENT_EMBEDDINGS, ge=1, le=64
    )

    metric: SimilarityMetric = SimilarityMetric.COSINE
    index_directory: str = f"{c.INDEX_DIR_NAME}/index"

    @model_validator(mode="after")
    def validate_chunk_overlap(self) -> IndexingConfig:
        """Validate chunk overlap is less than chunk size."""
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})"
            )
        return self

    @field_validator("index_directory")
    @classmethod
    def validate_index_directory(cls, v: str) -> str:
        """Validate index directory path."""
        if not v or not v.strip():
            raise ValueError("Index directory must be non-empty")
        return str(Path(v.strip()))

    def get_index_path(self, workspace_root: Path) -> Path:
        """Get absolute path to the index directory.

        Args:
            workspace_root: Workspace root directory.

        Returns:
            Index directory, relative paths resolved against the root.
        """
        path = Path(self.index_directory).expanduser()
        if path.is_absolute():
            return path
        return workspace_root / path

    def should_include_file(self, relative_path: str) -> bool:
        """Check a workspace-relative path against include/exclude patterns.

        Args:
            relative_path: Path relative to the workspace root.

        Returns:
            True if the path matches an include pattern and no exclude pattern.
        """
        path = PurePath(relative_path)
        path_str = path.as_posix()
        parts = path.parts

        for pattern in self.exclude_patterns:
            # **/dir/** excludes any path with that directory component
            if pattern.startswith("**/") and pattern.endswith("/**"):
                if pattern[3:-3] in parts:
                    return False
            elif fnmatch.fnmatch(path_str, pattern) or fnmatch.fnmatch(
                path.name, pattern.removeprefix("**/")
            ):
                return False

        for pattern in self.include_patterns:
            if pattern.startswith("**/"):
                if fnmatch.fnmatch(path.name, pattern[3:]):
                    return True
            elif fnmatch.fnmatch(path_str, pattern):
                return True

        return False


class RetrievalConfig(BaseModel):
    """Settings for the retriever's candidate fetch and re-ranking."""

    model_config = ConfigDict(validate_assignment=True)

    default_k: int = Field(default=c.DEFAULT_K, ge=1, le=100)
    overfetch: int = Field(default=c.OVERFETCH, ge=1, le=20)
    min_score: float = Field(default=c.MIN_SCORE, ge=-1.0, le=1.0)
    recency_window_hours: float = Field(default=c.RECENCY_WINDOW_HOURS, ge=0.0)
    recency_boost: float = Field(default=c.RECENCY_BOOST, ge=0.0, le=1.0)
    dedupe_threshold: float = Field(default=c.DEDUPE_THRESHOLD, gt=0.0, le=1.0)
    min_chunk_chars: int = Field(default=c.MIN_CHUNK_CHARS, ge=0)
    followup_max_words: int = Field(default=c.FOLLOWUP_MAX_WORDS, ge=0)


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful coding assistant answering questions about the user's "
    "workspace. Use the provided project context when it is relevant and say "
    "so when the context does not contain the answer."
)


class ConversationConfig(BaseModel):
    """Settings for sessions, prompt assembly and streaming."""

    model_config = ConfigDict(validate_assignment=True)

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_history_messages: int = Field(default=c.MAX_HISTORY_MESSAGES, ge=1)
    prompt_char_budget: int = Field(default=c.PROMPT_CHAR_BUDGET, ge=500)
    completion_retries: int = Field(default=c.COMPLETION_RETRIES, ge=0, le=10)
    stream_idle_timeout: float = Field(default=c.STREAM_IDLE_TIMEOUT, gt=0)
    provider_cooldown_seconds: float = Field(
        default=c.PROVIDER_COOLDOWN_SECONDS, ge=0.0
    )


class AgentsConfig(BaseModel):
    """Settings for sub-agents."""

    model_config = ConfigDict(validate_assignment=True)

    web_search_enabled: bool = True
    web_max_results: int = Field(default=c.WEB_MAX_RESULTS, ge=1, le=20)
    agent_timeout: float = Field(default=c.AGENT_TIMEOUT, gt=0)
    tool_max_output_chars: int = Field(default=c.TOOL_MAX_OUTPUT_CHARS, ge=100)


class EngineConfig(BaseModel):
    """Root configuration for workspace-rag."""

    model_config = ConfigDict(validate_assignment=True)

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)

    def to_display_dict(self) -> dict[str, Any]:
        """Summarize the settings most relevant to users.

        Returns:
            Flat dictionary suitable for display.
        """
        return {
            "base_url": self.provider.base_url,
            "chat_model": self.provider.chat_model,
            "embedding_provider": self.provider.embedding_provider.value,
            "embedding_model": self.provider.embedding_model,
            "metric": self.indexing.metric.value,
            "sources": ", ".join(self.indexing.sources),
            "chunk_size": self.indexing.chunk_size,
            "debounce_seconds": self.indexing.debounce_seconds,
            "workers": self.indexing.workers,
            "default_k": self.retrieval.default_k,
            "prompt_char_budget": self.conversation.prompt_char_budget,
        }
