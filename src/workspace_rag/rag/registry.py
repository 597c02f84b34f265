"""Persisted registry of tracked documents.

The registry is owned by the indexing pipeline. It remembers each
document's last indexed content hash (so unchanged files are skipped after a
restart), its status, and its failure count.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from workspace_rag.core.errors import IndexUnavailable

from .models import Document, DocumentStatus

logger = logging.getLogger(__name__)


class DocumentRegistry:
    """Map of document id to :class:`Document`, saved as JSON.

    Attributes:
        path: Registry file, or None for a memory-only registry.
        embedding_model: Model the recorded documents were embedded with.
    """

    FILE_NAME = "documents.json"

    def __init__(self, path: Path | None = None, embedding_model: str = "") -> None:
        self.path = path
        self.embedding_model = embedding_model
        self.last_indexed: datetime | None = None
        self._documents: dict[str, Document] = {}
        self._save_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._documents

    def get(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    def all(self) -> list[Document]:
        return list(self._documents.values())

    def put(self, document: Document) -> None:
        self._documents[document.id] = document
        if document.status == DocumentStatus.INDEXED and document.indexed_at:
            self.last_indexed = document.indexed_at

    def remove(self, document_id: str) -> Document | None:
        return self._documents.pop(document_id, None)

    def clear(self) -> None:
        self._documents.clear()
        self.last_indexed = None

    def is_unchanged(self, document_id: str, content_hash: str) -> bool:
        """True if the document is indexed with exactly this content."""
        document = self._documents.get(document_id)
        return (
            document is not None
            and document.status == DocumentStatus.INDEXED
            and document.content_hash == content_hash
        )

    def failed_ids(self) -> frozenset[str]:
        return frozenset(
            doc_id
            for doc_id, doc in self._documents.items()
            if doc.status == DocumentStatus.FAILED
        )

    def modified_times(self) -> dict[str, float]:
        return {doc_id: doc.modified_at for doc_id, doc in self._documents.items()}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "embedding_model": self.embedding_model,
            "last_indexed": self.last_indexed.isoformat() if self.last_indexed else None,
            "documents": {doc_id: doc.to_dict() for doc_id, doc in self._documents.items()},
        }

    def load(self) -> bool:
        """Load the registry file.

        A registry written for another embedding model, or one that cannot
        be parsed, is discarded.

        Returns:
            True if previously recorded documents were loaded.
        """
        if self.path is None or not self.path.exists():
            return False

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            documents = {
                doc_id: Document.from_dict(raw)
                for doc_id, raw in data.get("documents", {}).items()
            }
        except (OSError, json.JSONDecodeError, AttributeError, ValidationError) as e:
            logger.warning(f"Discarding unreadable document registry {self.path}: {e}")
            with contextlib.suppress(OSError):
                self.path.replace(self.path.with_name(f"{self.FILE_NAME}.corrupt-{int(time.time())}"))
            return False

        if self.embedding_model and data.get("embedding_model") != self.embedding_model:
            logger.info(
                f"Embedding model changed from {data.get('embedding_model')!r} to "
                f"{self.embedding_model!r}, forcing full re-index"
            )
            return False

        self._documents = documents
        last = data.get("last_indexed")
        self.last_indexed = datetime.fromisoformat(last) if last else None
        logger.debug(f"Loaded {len(documents)} documents from {self.path}")
        return True

    def save_sync(self) -> None:
        """Write the registry atomically (temp file, then rename)."""
        if self.path is None:
            return
        self._write(json.dumps(self.to_dict(), indent=2))

    def _write(self, payload: str) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            Path(temp_path).replace(self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                Path(temp_path).unlink()
            raise

    async def save(self) -> None:
        """Save in the default executor; concurrent saves are serialized.

        Raises:
            IndexUnavailable: If the file cannot be written.
        """
        if self.path is None:
            return
        async with self._save_lock:
            # Serialize on the loop thread; documents may change meanwhile
            payload = json.dumps(self.to_dict(), indent=2)
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write, payload)
            except OSError as e:
                raise IndexUnavailable(f"Cannot save document registry: {e}") from e
