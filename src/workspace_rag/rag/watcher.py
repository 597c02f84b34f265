"""Workspace scanning and file change notifications.

``WorkspaceScanner`` decides which files are tracked and maps paths to
document ids. ``FileWatcher`` turns watchdog events into :class:`FileEvent`
objects and hands them to a callback on the asyncio loop.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import ChangeKind, FileEvent

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from workspace_rag.config.models import IndexingConfig

logger = logging.getLogger(__name__)


class WorkspaceScanner:
    """Decides which workspace files are tracked.

    A file is tracked if it is a non-empty regular file under one of the
    configured sources, matches the include patterns, matches no exclude or
    ``.gitignore`` pattern, and is no larger than the size limit.

    Attributes:
        root: Workspace root; document ids are POSIX paths relative to it.
        config: Indexing configuration.
    """

    def __init__(self, root: Path, config: IndexingConfig) -> None:
        self.root = root.resolve()
        self.config = config
        self._gitignore_patterns: list[str] | None = None

    def document_id(self, path: Path | str) -> str | None:
        """Workspace-relative POSIX id for a path, or None if outside the root."""
        path = Path(path)
        if not path.is_absolute():
            path = self.root / path
        try:
            relative = path.resolve().relative_to(self.root)
        except (ValueError, OSError):
            return None
        return relative.as_posix()

    def resolve(self, document_id: str) -> Path:
        return self.root / PurePosixPath(document_id)

    def source_roots(self) -> list[Path]:
        roots = []
        for source in self.config.sources:
            path = (self.root / source).resolve()
            if path.exists():
                roots.append(path)
            else:
                logger.debug(f"Configured source {source} does not exist")
        return roots

    def is_candidate(self, document_id: str) -> bool:
        """Pattern, source and gitignore checks; no file system access."""
        path = self.resolve(document_id)
        if not any(path == src or src in path.parents for src in self.source_roots()):
            return False
        if not self.config.should_include_file(document_id):
            return False
        if self.config.respect_gitignore and self._is_gitignored(document_id):
            logger.debug(f"Skipping {document_id}: matches gitignore")
            return False
        return True

    def should_track(self, document_id: str) -> bool:
        """Full check including that the file exists, is regular and non-empty."""
        if not self.is_candidate(document_id):
            return False
        path = self.resolve(document_id)
        try:
            if not path.is_file():
                return False
            size = path.stat().st_size
        except OSError:
            return False
        if size == 0:
            return False
        if size > self.config.max_file_size_kb * 1024:
            logger.debug(f"Skipping {document_id}: file too large ({size / 1024:.1f}KB)")
            return False
        return True

    def discover(self) -> list[str]:
        """Scan the sources for tracked files.

        Returns:
            Sorted document ids, at most ``max_files`` of them.
        """
        found: set[str] = set()
        for source in self.source_roots():
            candidates = [source] if source.is_file() else self._walk(source)
            for path in candidates:
                doc_id = self.document_id(path)
                if doc_id is not None and self.should_track(doc_id):
                    found.add(doc_id)

        documents = sorted(found)
        if len(documents) > self.config.max_files:
            logger.warning(
                f"Found {len(documents)} files, tracking only the first "
                f"{self.config.max_files}"
            )
            documents = documents[: self.config.max_files]
        logger.debug(f"Discovered {len(documents)} files to index")
        return documents

    def _walk(self, source: Path) -> list[Path]:
        """List files below ``source``, skipping excluded directories."""
        excluded = {
            pattern[3:-3]
            for pattern in self.config.exclude_patterns
            if pattern.startswith("**/") and pattern.endswith("/**")
        }
        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(source):
            dirnames[:] = sorted(d for d in dirnames if d not in excluded)
            files.extend(Path(dirpath) / name for name in filenames)
        return files

    def _is_gitignored(self, document_id: str) -> bool:
        if self._gitignore_patterns is None:
            self._gitignore_patterns = self._load_gitignore()

        path = PurePosixPath(document_id)
        for pattern in self._gitignore_patterns:
            if pattern.endswith("/"):
                if pattern.rstrip("/").lstrip("/") in path.parts[:-1]:
                    return True
            elif fnmatch.fnmatch(document_id, pattern.lstrip("/")) or fnmatch.fnmatch(
                path.name, pattern
            ):
                return True
        return False

    def _load_gitignore(self) -> list[str]:
        gitignore_path = self.root / ".gitignore"
        patterns: list[str] = []
        if not gitignore_path.exists():
            return patterns

        try:
            content = gitignore_path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read .gitignore: {e}")
            return patterns

        for raw_line in content.splitlines():
            stripped = raw_line.strip()
            # Negations are not supported
            if not stripped or stripped.startswith(("#", "!")):
                continue
            patterns.append(stripped)
        return patterns


EventCallback = Callable[[FileEvent], None]


class _WorkspaceEventHandler(FileSystemEventHandler):
    """Forwards watchdog events for tracked candidates to the loop."""

    def __init__(
        self,
        scanner: WorkspaceScanner,
        loop: asyncio.AbstractEventLoop,
        callback: EventCallback,
    ) -> None:
        super().__init__()
        self._scanner = scanner
        self._loop = loop
        self._callback = callback

    def _emit(self, src_path: str | bytes, kind: ChangeKind) -> None:
        path = os.fsdecode(src_path)
        if path.endswith((".swp", ".tmp", "~")):
            return
        doc_id = self._scanner.document_id(path)
        if doc_id is None or not self._scanner.is_candidate(doc_id):
            return
        event = FileEvent(path=doc_id, kind=kind)
        self._loop.call_soon_threadsafe(self._callback, event)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.ADDED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.REMOVED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.REMOVED)
            self._emit(event.dest_path, ChangeKind.ADDED)


class FileWatcher:
    """Watches the workspace sources with a watchdog observer."""

    def __init__(self, scanner: WorkspaceScanner, callback: EventCallback) -> None:
        self._scanner = scanner
        self._callback = callback
        self._observer: BaseObserver | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start watching; events are delivered on ``loop``."""
        if self._observer is not None:
            return

        handler = _WorkspaceEventHandler(self._scanner, loop, self._callback)
        observer = Observer()
        for source in self._scanner.source_roots():
            target = source if source.is_dir() else source.parent
            observer.schedule(handler, str(target), recursive=source.is_dir())
            logger.debug(f"Watching {target} for changes")
        observer.start()
        self._observer = observer
        logger.info("Workspace file watcher started")

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
            logger.info("Workspace file watcher stopped")
