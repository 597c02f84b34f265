"""Hierarchical configuration loading with optional live reload."""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

from workspace_rag.config.models import EngineConfig
from workspace_rag.config.sources import (
    EnvironmentSource,
    IConfigSource,
    JsonFileSource,
    YamlFileSource,
)
from workspace_rag.core import ConfigError, get_logger
from workspace_rag.core.constants import INDEX_DIR_NAME

logger = get_logger("config.loader")


class ConfigLoader:
    """Configuration loader with hierarchical merging.

    Load order (later overrides earlier):
    1. Defaults (from EngineConfig)
    2. User settings (~/.workspace_rag/settings.json or .yaml)
    3. Project settings (<root>/.workspace_rag/settings.json or .yaml)
    4. Environment variables (WRAG_*)
    """

    def __init__(
        self,
        user_dir: Path | None = None,
        project_dir: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> None:
        """Initialize configuration loader.

        Args:
            user_dir: User configuration directory. Defaults to ~/.workspace_rag
            project_dir: Project configuration directory. Defaults to ./.workspace_rag
            environ: Environment mapping. Defaults to os.environ.
        """
        self._user_dir = user_dir or Path.home() / INDEX_DIR_NAME
        self._project_dir = project_dir or Path.cwd() / INDEX_DIR_NAME
        self._environ = environ
        self._config: EngineConfig | None = None
        self._observers: list[Callable[[EngineConfig], None]] = []
        self._file_watcher: BaseObserver | None = None
        self._lock = threading.Lock()

    @classmethod
    def for_workspace(cls, root: Path, **kwargs: Any) -> ConfigLoader:
        """Create a loader whose project directory lives in ``root``."""
        return cls(project_dir=root / INDEX_DIR_NAME, **kwargs)

    @property
    def config(self) -> EngineConfig:
        """Current configuration, loaded on first access."""
        with self._lock:
            if self._config is None:
                self._config = self.load_all()
            return self._config

    def load_all(self) -> EngineConfig:
        """Load and merge all configuration sources.

        Returns:
            Validated EngineConfig with all sources merged.

        Raises:
            ConfigError: If the merged configuration is invalid.
        """
        config: dict[str, Any] = EngineConfig().model_dump(mode="json")

        for directory in (self._user_dir, self._project_dir):
            json_path = directory / "settings.json"
            yaml_path = directory / "settings.yaml"
            if json_path.exists():
                config = self._load_and_merge(config, JsonFileSource(json_path))
            elif yaml_path.exists():
                config = self._load_and_merge(config, YamlFileSource(yaml_path))

        config = self._load_and_merge(config, EnvironmentSource(self._environ))

        try:
            return EngineConfig.model_validate(config)
        except ValidationError as e:
            logger.error("Configuration validation failed: %s", e)
            raise ConfigError(f"Configuration validation failed: {e}") from e

    def _load_and_merge(
        self,
        base: dict[str, Any],
        source: IConfigSource,
    ) -> dict[str, Any]:
        """Merge one source into ``base``; unreadable sources are skipped."""
        try:
            if source.exists():
                override = source.load()
                if override:
                    logger.debug("Loaded config from %s", source)
                    return self.merge(base, override)
        except ConfigError as e:
            logger.warning("Skipped config source %s: %s", source, e)
        except FileNotFoundError:
            logger.debug("Config source %s disappeared before load", source)
        return base

    def load(self, path: Path) -> dict[str, Any]:
        """Load a single configuration file.

        Raises:
            ConfigError: If the format is unsupported or the file is invalid.
        """
        suffix = path.suffix.lower()
        if suffix == ".json":
            return JsonFileSource(path).load()
        if suffix in (".yaml", ".yml"):
            return YamlFileSource(path).load()
        raise ConfigError(f"Unsupported configuration format: {suffix}")

    def merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two configuration dictionaries.

        Nested dictionaries are merged recursively, other values are
        replaced. The result shares no references with the inputs.
        """
        result = copy.deepcopy(base)

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self.merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)

        return result

    def reload(self) -> None:
        """Reload configuration from all sources.

        If reload fails, the old configuration is preserved. Observers are
        notified outside the lock.
        """
        try:
            new_config = self.load_all()
        except ConfigError as e:
            logger.error("Failed to reload configuration: %s", e)
            return

        with self._lock:
            self._config = new_config
        self._notify_observers(new_config)
        logger.info("Configuration reloaded successfully")

    def watch(self) -> None:
        """Start watching the configuration directories for changes."""
        if self._file_watcher is not None:
            return

        handler = _ConfigChangeHandler(self)
        self._file_watcher = Observer()

        for path in (self._user_dir, self._project_dir):
            if path.is_dir():
                self._file_watcher.schedule(handler, str(path), recursive=False)
                logger.debug("Watching %s for configuration changes", path)

        self._file_watcher.start()
        logger.info("Configuration file watcher started")

    def stop_watching(self) -> None:
        """Stop watching configuration files. Safe to call multiple times."""
        if self._file_watcher is not None:
            self._file_watcher.stop()
            self._file_watcher.join(timeout=5.0)
            self._file_watcher = None
            logger.info("Configuration file watcher stopped")

    def add_observer(self, callback: Callable[[EngineConfig], None]) -> None:
        """Register a callback receiving each reloaded configuration."""
        if callback not in self._observers:
            self._observers.append(callback)

    def remove_observer(self, callback: Callable[[EngineConfig], None]) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    def _notify_observers(self, config: EngineConfig) -> None:
        for observer in self._observers:
            try:
                observer(config)
            except Exception as e:
                logger.error("Observer error: %s", e)


class _ConfigChangeHandler(FileSystemEventHandler):
    """Debounced reload trigger for configuration file changes."""

    DEBOUNCE_SECONDS = 0.5

    def __init__(self, loader: ConfigLoader) -> None:
        super().__init__()
        self._loader = loader
        self._pending_reload: threading.Timer | None = None
        self._lock = threading.Lock()

    def _schedule_reload(self, src_path: str) -> None:
        with self._lock:
            if self._pending_reload is not None:
                self._pending_reload.cancel()

            def do_reload() -> None:
                with self._lock:
                    self._pending_reload = None
                logger.debug("Debounced config reload triggered by: %s", src_path)
                self._loader.reload()

            self._pending_reload = threading.Timer(self.DEBOUNCE_SECONDS, do_reload)
            self._pending_reload.daemon = True
            self._pending_reload.start()

    @staticmethod
    def _is_config_file(path: str) -> bool:
        if path.endswith((".swp", ".tmp", "~", ".bak")):
            return False
        return path.endswith(("settings.json", "settings.yaml"))

    def on_modified(self, event: FileSystemEvent) -> None:
        path = str(event.src_path)
        if not event.is_directory and self._is_config_file(path):
            self._schedule_reload(path)

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)
