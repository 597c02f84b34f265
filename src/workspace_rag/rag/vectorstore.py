"""Persistent vector index with per-document generations.

Readers query an immutable snapshot of the index; writers build a new
snapshot with one document's entries replaced and swap it in only after the
change is on disk. A query therefore sees either the old or the new
generation of a document, never a mix.

On-disk layout (one directory per workspace):

    index.json                  header: format, metric, dimension, model
    documents/<digest>.json     per-document commit record (entries + metadata)
    vectors/<digest>-<rev>.npy  embedding matrix referenced by the record

A document's record is replaced atomically after its vectors file is
written, so a crash mid-update leaves the previous generation intact.

Example:
    index = VectorIndex(directory, metric=SimilarityMetric.COSINE,
                        embedding_model="nomic-embed-text")
    await index.open()
    await index.replace_document("src/app.py", entries)
    hits = await index.query(query_vector, k=5)
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import io
import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from workspace_rag.config.models import SimilarityMetric
from workspace_rag.core.errors import DimensionMismatch, IndexUnavailable

from .models import parse_chunk_id

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

EntryInput = tuple[str, Sequence[float], dict[str, Any]]


@dataclass(frozen=True)
class IndexEntry:
    """A live (chunk id -> metadata) record; the vector lives in the slot matrix."""

    chunk_id: str
    document_id: str
    metadata: dict[str, Any]
    sequence: int


@dataclass(frozen=True)
class IndexHit:
    """One query result."""

    chunk_id: str
    score: float
    document_id: str
    generation: int
    metadata: dict[str, Any]


@dataclass(frozen=True)
class QueryFilter:
    """Restricts which documents a query may return.

    Attributes:
        document_ids: If set, only these documents are eligible.
        exclude_document_ids: Documents never returned.
    """

    document_ids: frozenset[str] | None = None
    exclude_document_ids: frozenset[str] = field(default_factory=frozenset)

    def allows(self, document_id: str) -> bool:
        if document_id in self.exclude_document_ids:
            return False
        return self.document_ids is None or document_id in self.document_ids


@dataclass(frozen=True)
class _DocumentSlot:
    document_id: str
    generation: int
    revision: int
    entries: tuple[IndexEntry, ...]
    vectors: np.ndarray


class _Snapshot:
    """Immutable view of every document slot, with lazily stacked arrays."""

    def __init__(self, slots: dict[str, _DocumentSlot]) -> None:
        self.slots = slots
        self._arrays: tuple[np.ndarray, np.ndarray, list[tuple[IndexEntry, int]]] | None = None

    def arrays(self) -> tuple[np.ndarray, np.ndarray, list[tuple[IndexEntry, int]]]:
        if self._arrays is None:
            matrices = [slot.vectors for slot in self.slots.values() if slot.entries]
            rows = [
                (entry, slot.generation)
                for slot in self.slots.values()
                for entry in slot.entries
            ]
            matrix = np.vstack(matrices) if matrices else np.zeros((0, 0), np.float32)
            sequences = np.fromiter(
                (entry.sequence for entry, _ in rows), dtype=np.int64, count=len(rows)
            )
            self._arrays = (matrix, sequences, rows)
        return self._arrays

    @property
    def entry_count(self) -> int:
        return sum(len(slot.entries) for slot in self.slots.values())


def _normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _atomic_write(path: Path, data: bytes) -> None:
    """Write bytes to ``path`` via a temp file and rename."""
    fd, temp_path = tempfile.mkstemp(suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        Path(temp_path).replace(path)
    except BaseException:
        with contextlib.suppress(OSError):
            Path(temp_path).unlink()
        raise


class IndexStorage:
    """File layout and atomic writes for :class:`VectorIndex`."""

    HEADER_FILE = "index.json"
    DOCUMENTS_DIR = "documents"
    VECTORS_DIR = "vectors"

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.documents_dir = directory / self.DOCUMENTS_DIR
        self.vectors_dir = directory / self.VECTORS_DIR

    @staticmethod
    def digest(document_id: str) -> str:
        return hashlib.sha256(document_id.encode("utf-8")).hexdigest()[:32]

    def ensure_directories(self) -> None:
        self.documents_dir.mkdir(parents=True, exist_ok=True)
        self.vectors_dir.mkdir(parents=True, exist_ok=True)

    def read_header(self) -> dict[str, Any] | None:
        """Read the header, or None if absent.

        Raises:
            ValueError: If the header is corrupted.
        """
        path = self.directory / self.HEADER_FILE
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupted index header {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Corrupted index header {path}: not an object")
        return data

    def write_header(self, header: dict[str, Any]) -> None:
        self.ensure_directories()
        _atomic_write(
            self.directory / self.HEADER_FILE,
            json.dumps(header, indent=2).encode("utf-8"),
        )

    def quarantine_header(self) -> None:
        path = self.directory / self.HEADER_FILE
        if path.exists():
            path.replace(path.with_name(f"{self.HEADER_FILE}.corrupt-{int(time.time())}"))

    def load_records(self) -> list[tuple[dict[str, Any], np.ndarray]]:
        """Load every readable document record with its vectors.

        Unreadable or inconsistent records are skipped with a warning; their
        documents are simply absent from the index and get re-indexed.
        """
        records: list[tuple[dict[str, Any], np.ndarray]] = []
        if not self.documents_dir.exists():
            return records

        for path in sorted(self.documents_dir.glob("*.json")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
                vectors = np.load(self.vectors_dir / record["vectors"], allow_pickle=False)
                if vectors.ndim != 2 or vectors.shape[0] != len(record["entries"]):
                    raise ValueError(
                        f"vector matrix {vectors.shape} does not match "
                        f"{len(record['entries'])} entries"
                    )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable index record {path.name}: {e}")
                continue
            records.append((record, vectors))
        return records

    def write_document(self, slot: _DocumentSlot) -> None:
        """Persist one document slot: vectors first, then the commit record."""
        self.ensure_directories()
        digest = self.digest(slot.document_id)
        vectors_name = f"{digest}-{slot.revision}.npy"

        buffer = io.BytesIO()
        np.save(buffer, slot.vectors.astype(np.float32), allow_pickle=False)
        _atomic_write(self.vectors_dir / vectors_name, buffer.getvalue())

        record = {
            "document_id": slot.document_id,
            "generation": slot.generation,
            "revision": slot.revision,
            "vectors": vectors_name,
            "entries": [
                {
                    "chunk_id": entry.chunk_id,
                    "sequence": entry.sequence,
                    "metadata": entry.metadata,
                }
                for entry in slot.entries
            ],
        }
        _atomic_write(
            self.documents_dir / f"{digest}.json",
            json.dumps(record).encode("utf-8"),
        )
        self._remove_stale_vectors(digest, keep=vectors_name)

    def delete_document(self, document_id: str) -> None:
        digest = self.digest(document_id)
        record_path = self.documents_dir / f"{digest}.json"
        if record_path.exists():
            record_path.unlink()
        self._remove_stale_vectors(digest, keep=None)

    def _remove_stale_vectors(self, digest: str, keep: str | None) -> None:
        for path in self.vectors_dir.glob(f"{digest}-*.npy"):
            if path.name != keep:
                try:
                    path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove stale vectors {path.name}: {e}")

    def clear(self) -> None:
        for directory in (self.documents_dir, self.vectors_dir):
            if directory.exists():
                shutil.rmtree(directory)
        header = self.directory / self.HEADER_FILE
        if header.exists():
            header.unlink()


class VectorIndex:
    """k-nearest-neighbour index over chunk embeddings.

    Scores are cosine similarity or inner product, fixed per instance.
    Writes are serialized per document; queries never take a lock.

    Attributes:
        directory: Persistence directory, or None for a memory-only index.
        metric: Similarity metric.
        embedding_model: Version tag of the embeddings stored.
    """

    def __init__(
        self,
        directory: Path | None = None,
        metric: SimilarityMetric = SimilarityMetric.COSINE,
        dimension: int | None = None,
        embedding_model: str = "",
    ) -> None:
        self.directory = directory
        self.metric = SimilarityMetric(metric)
        self.embedding_model = embedding_model
        self._configured_dimension = dimension
        self._dimension = dimension
        self._storage = IndexStorage(directory) if directory is not None else None
        self._snapshot = _Snapshot({})
        self._doc_locks: dict[str, asyncio.Lock] = {}
        self._next_sequence = 0
        self._open = directory is None
        self.was_reset = False

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def is_persistent(self) -> bool:
        return self._storage is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Load the persisted index.

        A header written for another embedding model, metric or dimension
        discards the stored entries (``was_reset`` becomes True). A corrupted
        header is moved aside and the index starts empty.

        Raises:
            IndexUnavailable: If the directory cannot be read or created.
        """
        if self._storage is None:
            self._open = True
            return

        loop = asyncio.get_running_loop()
        try:
            slots = await loop.run_in_executor(None, self._load_sync)
        except OSError as e:
            raise IndexUnavailable(f"Cannot open index at {self.directory}: {e}") from e

        self._snapshot = _Snapshot(slots)
        self._open = True
        logger.info(
            f"Vector index opened at {self.directory}: "
            f"{len(slots)} documents, {self._snapshot.entry_count} entries"
        )

    def _load_sync(self) -> dict[str, _DocumentSlot]:
        assert self._storage is not None
        storage = self._storage
        storage.ensure_directories()

        try:
            header = storage.read_header()
        except ValueError as e:
            logger.warning(f"{e}; starting with an empty index")
            storage.quarantine_header()
            storage.clear()
            self.was_reset = True
            header = None

        if header is not None and not self._header_compatible(header):
            logger.warning(
                f"Index at {self.directory} was built with model "
                f"{header.get('embedding_model')!r} ({header.get('metric')}, "
                f"dim {header.get('dimension')}); discarding it for "
                f"{self.embedding_model!r}"
            )
            storage.clear()
            self.was_reset = True
            header = None

        if header is None:
            self._dimension = self._configured_dimension
            storage.write_header(self._header())
            return {}

        self._dimension = header.get("dimension")
        slots: dict[str, _DocumentSlot] = {}
        for record, vectors in storage.load_records():
            if self._dimension is not None and vectors.shape[1] != self._dimension:
                logger.warning(
                    f"Skipping {record['document_id']}: dimension {vectors.shape[1]} "
                    f"!= {self._dimension}"
                )
                continue
            entries = tuple(
                IndexEntry(
                    chunk_id=item["chunk_id"],
                    document_id=record["document_id"],
                    metadata=item["metadata"],
                    sequence=int(item["sequence"]),
                )
                for item in record["entries"]
            )
            vectors.setflags(write=False)
            slots[record["document_id"]] = _DocumentSlot(
                document_id=record["document_id"],
                generation=int(record["generation"]),
                revision=int(record["revision"]),
                entries=entries,
                vectors=vectors,
            )
            if entries:
                self._next_sequence = max(
                    self._next_sequence, max(e.sequence for e in entries) + 1
                )
        return slots

    def _header_compatible(self, header: dict[str, Any]) -> bool:
        if header.get("format") != FORMAT_VERSION:
            return False
        if header.get("metric") != self.metric.value:
            return False
        if self.embedding_model and header.get("embedding_model") != self.embedding_model:
            return False
        stored_dim = header.get("dimension")
        return not (
            self._configured_dimension is not None
            and stored_dim is not None
            and stored_dim != self._configured_dimension
        )

    def _header(self) -> dict[str, Any]:
        return {
            "format": FORMAT_VERSION,
            "metric": self.metric.value,
            "dimension": self._dimension,
            "embedding_model": self.embedding_model,
        }

    async def close(self) -> None:
        """Close the index; further queries raise ``IndexUnavailable``."""
        self._open = False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._doc_locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._doc_locks[document_id] = lock
        return lock

    def _ensure_writable(self) -> None:
        if not self._open:
            raise IndexUnavailable("Vector index is not open")

    def _prepare_vectors(self, embeddings: Sequence[Sequence[float]]) -> tuple[np.ndarray, bool]:
        """Validate dimensions; return the stored matrix and whether the
        index dimension was fixed by this call."""
        matrix = np.asarray(embeddings, dtype=np.float32)
        if matrix.ndim != 2:
            raise ValueError("Embeddings must be a sequence of equal-length vectors")

        dimension_set = False
        actual = matrix.shape[1]
        if self._dimension is None:
            self._dimension = actual
            dimension_set = True
        elif actual != self._dimension:
            raise DimensionMismatch(self._dimension, actual)

        if self.metric == SimilarityMetric.COSINE:
            matrix = _normalize(matrix)
        matrix.setflags(write=False)
        return matrix, dimension_set

    def _new_entries(
        self, document_id: str, items: Sequence[EntryInput]
    ) -> tuple[IndexEntry, ...]:
        entries = []
        for chunk_id, _, metadata in items:
            entries.append(
                IndexEntry(
                    chunk_id=chunk_id,
                    document_id=document_id,
                    metadata=dict(metadata),
                    sequence=self._next_sequence,
                )
            )
            self._next_sequence += 1
        return tuple(entries)

    async def _commit(self, slot: _DocumentSlot | None, document_id: str, header: bool) -> None:
        """Persist a slot (or its deletion), then swap it into a new snapshot."""
        if self._storage is not None:
            storage = self._storage
            loop = asyncio.get_running_loop()

            def _persist() -> None:
                if header:
                    storage.write_header(self._header())
                if slot is None:
                    storage.delete_document(document_id)
                else:
                    storage.write_document(slot)

            try:
                await loop.run_in_executor(None, _persist)
            except OSError as e:
                raise IndexUnavailable(
                    f"Cannot persist {document_id} to {self.directory}: {e}"
                ) from e

        slots = dict(self._snapshot.slots)
        if slot is None:
            slots.pop(document_id, None)
        else:
            slots[document_id] = slot
        self._snapshot = _Snapshot(slots)

    async def replace_document(
        self, document_id: str, items: Sequence[EntryInput]
    ) -> int:
        """Atomically replace a document's entries with a new generation.

        Equivalent to ``delete_by_document`` followed by bulk ``upsert``, but
        readers observe a single transition.

        Args:
            document_id: Document identity.
            items: ``(chunk_id, embedding, metadata)`` in chunk order.

        Returns:
            The new generation, or 0 if ``items`` is empty (document removed).

        Raises:
            DimensionMismatch: If an embedding has the wrong dimension.
            IndexUnavailable: If the index is closed or cannot be written.
        """
        self._ensure_writable()
        if not items:
            await self.delete_by_document(document_id)
            return 0

        async with self._lock_for(document_id):
            previous_dimension = self._dimension
            try:
                vectors, dimension_set = self._prepare_vectors([vec for _, vec, _ in items])
            except DimensionMismatch:
                logger.error(f"Dimension mismatch while indexing {document_id}")
                raise

            current = self._snapshot.slots.get(document_id)
            slot = _DocumentSlot(
                document_id=document_id,
                generation=(current.generation if current else 0) + 1,
                revision=(current.revision if current else 0) + 1,
                entries=self._new_entries(document_id, items),
                vectors=vectors,
            )
            try:
                await self._commit(slot, document_id, header=dimension_set)
            except IndexUnavailable:
                if dimension_set:
                    self._dimension = previous_dimension
                raise
            return slot.generation

    async def upsert(
        self,
        chunk_id: str,
        embedding: Sequence[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Insert or replace the entry for ``chunk_id``. Idempotent.

        The owning document is encoded in the chunk id. The document's
        generation is unchanged unless the document did not exist yet.

        Raises:
            ValueError: If the chunk id is malformed or ``metadata["document_id"]``
                names a different document.
        """
        self._ensure_writable()
        metadata = dict(metadata or {})
        document_id = parse_chunk_id(chunk_id)[0]
        claimed = metadata.get("document_id")
        if claimed and claimed != document_id:
            raise ValueError(
                f"Chunk {chunk_id!r} belongs to {document_id!r}, not {claimed!r}"
            )

        async with self._lock_for(document_id):
            previous_dimension = self._dimension
            vector, dimension_set = self._prepare_vectors([embedding])
            current = self._snapshot.slots.get(document_id)

            if current is None:
                entries = self._new_entries(document_id, [(chunk_id, embedding, metadata)])
                matrix = vector
                generation, revision = 1, 1
            else:
                new_entry = self._new_entries(document_id, [(chunk_id, embedding, metadata)])[0]
                existing = [e.chunk_id for e in current.entries]
                if chunk_id in existing:
                    position = existing.index(chunk_id)
                    entries = (
                        current.entries[:position]
                        + (new_entry,)
                        + current.entries[position + 1 :]
                    )
                    matrix = current.vectors.copy()
                    matrix[position] = vector[0]
                else:
                    entries = current.entries + (new_entry,)
                    matrix = np.vstack([current.vectors, vector])
                matrix.setflags(write=False)
                generation, revision = current.generation, current.revision + 1

            slot = _DocumentSlot(document_id, generation, revision, entries, matrix)
            try:
                await self._commit(slot, document_id, header=dimension_set)
            except IndexUnavailable:
                if dimension_set:
                    self._dimension = previous_dimension
                raise

    async def delete_by_document(self, document_id: str) -> int:
        """Remove every entry of a document.

        Returns:
            Number of entries removed.
        """
        self._ensure_writable()
        async with self._lock_for(document_id):
            current = self._snapshot.slots.get(document_id)
            if current is None:
                return 0
            await self._commit(None, document_id, header=False)
            logger.debug(f"Deleted {len(current.entries)} entries of {document_id}")
            return len(current.entries)

    async def clear(self) -> None:
        """Remove every document and forget the learned dimension."""
        self._ensure_writable()
        self._dimension = self._configured_dimension
        if self._storage is not None:
            storage = self._storage
            loop = asyncio.get_running_loop()

            def _reset() -> None:
                storage.clear()
                storage.write_header(self._header())

            try:
                await loop.run_in_executor(None, _reset)
            except OSError as e:
                raise IndexUnavailable(f"Cannot clear index at {self.directory}: {e}") from e
        self._snapshot = _Snapshot({})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self,
        embedding: Sequence[float],
        k: int,
        filter: QueryFilter | None = None,
    ) -> list[IndexHit]:
        """Return at most ``k`` entries by descending similarity.

        Ties are broken by most recent insertion first.

        Raises:
            IndexUnavailable: If the index is not open.
            DimensionMismatch: If the query dimension differs from the index.
        """
        if not self._open:
            raise IndexUnavailable("Vector index is not open")

        snapshot = self._snapshot
        vector = np.asarray(embedding, dtype=np.float32).ravel()
        if self._dimension is not None and vector.shape[0] != self._dimension:
            raise DimensionMismatch(self._dimension, vector.shape[0])
        if k <= 0 or snapshot.entry_count == 0:
            return []

        matrix, sequences, rows = snapshot.arrays()
        if self.metric == SimilarityMetric.COSINE:
            vector = _normalize(vector)
        scores = (matrix @ vector).astype(np.float64)
        if self.metric == SimilarityMetric.COSINE:
            np.clip(scores, -1.0, 1.0, out=scores)

        order = np.lexsort((-sequences, -scores))
        hits: list[IndexHit] = []
        for row in order:
            entry, generation = rows[row]
            if filter is not None and not filter.allows(entry.document_id):
                continue
            hits.append(
                IndexHit(
                    chunk_id=entry.chunk_id,
                    score=float(scores[row]),
                    document_id=entry.document_id,
                    generation=generation,
                    metadata=entry.metadata,
                )
            )
            if len(hits) >= k:
                break
        return hits

    def generation(self, document_id: str) -> int | None:
        slot = self._snapshot.slots.get(document_id)
        return slot.generation if slot else None

    def get_entries(self, document_id: str) -> tuple[IndexEntry, ...]:
        slot = self._snapshot.slots.get(document_id)
        return slot.entries if slot else ()

    def get_entry(self, chunk_id: str) -> IndexEntry | None:
        try:
            document_id = parse_chunk_id(chunk_id)[0]
        except ValueError:
            document_id = None
        slots = self._snapshot.slots
        candidates = [slots[document_id]] if document_id in slots else list(slots.values())
        for slot in candidates:
            for entry in slot.entries:
                if entry.chunk_id == chunk_id:
                    return entry
        return None

    def document_ids(self) -> set[str]:
        return set(self._snapshot.slots)

    def __len__(self) -> int:
        return self._snapshot.entry_count

    def get_stats(self) -> dict[str, Any]:
        snapshot = self._snapshot
        return {
            "total_documents": len(snapshot.slots),
            "total_chunks": snapshot.entry_count,
            "dimension": self._dimension,
            "metric": self.metric.value,
            "embedding_model": self.embedding_model,
            "persist_directory": str(self.directory) if self.directory else None,
        }
