"""Configuration sources for workspace-rag.

Each source loads a partial configuration dictionary from one place
(JSON file, YAML file, environment variables).
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar

import yaml

from workspace_rag.core import ConfigError, get_logger

logger = get_logger("config.sources")


class IConfigSource(ABC):
    """Interface for configuration sources."""

    @abstractmethod
    def load(self) -> dict[str, Any]:
        """Load configuration from source.

        Returns:
            Dictionary containing configuration data.
            Returns empty dict if source doesn't exist.

        Raises:
            ConfigError: If source exists but cannot be parsed.
        """
        ...

    @abstractmethod
    def exists(self) -> bool:
        """Check if source exists."""
        ...


class JsonFileSource(IConfigSource):
    """Load configuration from a JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> dict[str, Any]:
        if not self.exists():
            return {}

        try:
            content = self._path.read_text(encoding="utf-8")
            if not content.strip():
                return {}
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in %s: %s", self._path, e)
            raise ConfigError(f"Invalid JSON in {self._path}: {e}") from e
        except OSError as e:
            logger.warning("Cannot read %s: %s", self._path, e)
            raise ConfigError(f"Cannot read {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"JSON root must be object, got {type(data).__name__}")
        return data

    def exists(self) -> bool:
        return self._path.is_file()

    @property
    def path(self) -> Path:
        return self._path

    def __repr__(self) -> str:
        return f"JsonFileSource({self._path})"


class YamlFileSource(IConfigSource):
    """Load configuration from a YAML file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> dict[str, Any]:
        if not self.exists():
            return {}

        try:
            with self._path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.warning("Invalid YAML in %s: %s", self._path, e)
            raise ConfigError(f"Invalid YAML in {self._path}: {e}") from e
        except OSError as e:
            logger.warning("Cannot read %s: %s", self._path, e)
            raise ConfigError(f"Cannot read {self._path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"YAML root must be mapping, got {type(data).__name__}")
        return data

    def exists(self) -> bool:
        return self._path.is_file()

    @property
    def path(self) -> Path:
        return self._path

    def __repr__(self) -> str:
        return f"YamlFileSource({self._path})"


class EnvironmentSource(IConfigSource):
    """Load configuration from ``WRAG_*`` environment variables.

    Examples:
    - WRAG_BASE_URL -> provider.base_url
    - WRAG_DEBOUNCE_SECONDS -> indexing.debounce_seconds
    - WRAG_DEFAULT_K -> retrieval.default_k
    """

    PREFIX: ClassVar[str] = "WRAG_"

    MAPPINGS: ClassVar[dict[str, tuple[str, str]]] = {
        "WRAG_BASE_URL": ("provider", "base_url"),
        "WRAG_CHAT_MODEL": ("provider", "chat_model"),
        "WRAG_EMBEDDING_PROVIDER": ("provider", "embedding_provider"),
        "WRAG_EMBEDDING_MODEL": ("provider", "embedding_model"),
        "WRAG_TIMEOUT": ("provider", "timeout"),
        "WRAG_USERNAME": ("provider", "username"),
        "WRAG_PASSWORD": ("provider", "password"),
        "WRAG_TEMPERATURE": ("provider", "temperature"),
        "WRAG_DEBOUNCE_SECONDS": ("indexing", "debounce_seconds"),
        "WRAG_WORKERS": ("indexing", "workers"),
        "WRAG_MAX_RETRIES": ("indexing", "max_retries"),
        "WRAG_CHUNK_SIZE": ("indexing", "chunk_size"),
        "WRAG_CHUNK_OVERLAP": ("indexing", "chunk_overlap"),
        "WRAG_INDEX_DIRECTORY": ("indexing", "index_directory"),
        "WRAG_DEFAULT_K": ("retrieval", "default_k"),
        "WRAG_MIN_SCORE": ("retrieval", "min_score"),
        "WRAG_PROMPT_CHAR_BUDGET": ("conversation", "prompt_char_budget"),
        "WRAG_WEB_SEARCH_ENABLED": ("agents", "web_search_enabled"),
    }

    BOOLEAN_KEYS: ClassVar[frozenset[str]] = frozenset({"web_search_enabled"})
    INTEGER_KEYS: ClassVar[frozenset[str]] = frozenset({
        "workers", "max_retries", "chunk_size", "chunk_overlap",
        "default_k", "prompt_char_budget",
    })
    FLOAT_KEYS: ClassVar[frozenset[str]] = frozenset({
        "timeout", "temperature", "debounce_seconds", "min_score",
    })

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        """Initialize environment source.

        Args:
            environ: Environment dictionary. Defaults to os.environ.
        """
        self._environ = environ if environ is not None else dict(os.environ)

    def load(self) -> dict[str, Any]:
        config: dict[str, Any] = {}
        for env_var, (section, key) in self.MAPPINGS.items():
            value = self._environ.get(env_var)
            if value is not None:
                config.setdefault(section, {})[key] = self._convert_value(value, key)
        return config

    def exists(self) -> bool:
        return True

    def _convert_value(self, value: str, key: str) -> Any:
        """Convert a string value to the type expected for ``key``.

        Values that fail to convert are passed through unchanged so that
        model validation reports them.
        """
        if key in self.BOOLEAN_KEYS:
            return value.lower() in ("true", "1", "yes", "on")

        if key in self.INTEGER_KEYS:
            try:
                return int(value)
            except ValueError:
                logger.warning("Invalid integer value for %s: %s", key, value)
                return value

        if key in self.FLOAT_KEYS:
            try:
                return float(value)
            except ValueError:
                logger.warning("Invalid float value for %s: %s", key, value)
                return value

        return value

    def __repr__(self) -> str:
        return "EnvironmentSource()"
