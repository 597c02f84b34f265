"""Incremental indexing pipeline.

File events are debounced per document, queued (FIFO, bounded, coalescing
duplicates) and processed by a pool of workers:

    extract -> hash check -> chunk -> embed (batched) -> replace in index

Only one job per document runs at a time; different documents are indexed
in parallel. Failures are retried with exponential backoff and, once the
retry ceiling is reached, the document is marked failed without affecting
any other document.

Example:
    pipeline = IndexingPipeline(scanner, extractor, chunker, embeddings,
                                index, registry, config.indexing)
    await pipeline.start()
    pipeline.notify(FileEvent(path="src/app.py", kind=ChangeKind.MODIFIED))
    await pipeline.wait_idle()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from workspace_rag.core.constants import PROGRESS_LOG_INTERVAL
from workspace_rag.core.errors import (
    DimensionMismatch,
    ExtractionError,
    IndexUnavailable,
    ProviderError,
)

from .models import ChangeKind, Document, DocumentStatus, FileEvent

if TYPE_CHECKING:
    from workspace_rag.config.models import IndexingConfig

    from .chunking import Chunker
    from .embeddings import EmbeddingProvider
    from .extraction import ContentExtractor
    from .registry import DocumentRegistry
    from .vectorstore import VectorIndex
    from .watcher import WorkspaceScanner

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (ExtractionError, ProviderError, IndexUnavailable)


@dataclass
class IndexJob:
    """A queued unit of work for one document."""

    document_id: str
    kind: ChangeKind
    attempt: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class PipelineStats:
    """Counters describing pipeline activity since start."""

    events_received: int = 0
    events_coalesced: int = 0
    jobs_processed: int = 0
    documents_indexed: int = 0
    documents_skipped: int = 0
    documents_removed: int = 0
    documents_failed: int = 0
    documents_over_limit: int = 0
    retries: int = 0


class IndexingPipeline:
    """Keeps the vector index consistent with the watched files.

    Attributes:
        config: Indexing configuration (debounce, workers, queue, retries).
        stats: Activity counters.
    """

    def __init__(
        self,
        scanner: WorkspaceScanner,
        extractor: ContentExtractor,
        chunker: Chunker,
        embeddings: EmbeddingProvider,
        index: VectorIndex,
        registry: DocumentRegistry,
        config: IndexingConfig,
    ) -> None:
        self.scanner = scanner
        self.extractor = extractor
        self.chunker = chunker
        self.embeddings = embeddings
        self.index = index
        self.registry = registry
        self.config = config
        self.stats = PipelineStats()

        self._queue: OrderedDict[str, IndexJob] = OrderedDict()
        self._in_flight: set[str] = set()
        self._admitting: set[str] = set()
        self._stale: set[str] = set()
        self._cond = asyncio.Condition()
        self._debounce_timers: dict[str, asyncio.TimerHandle] = {}
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._enqueue_tasks: set[asyncio.Task[None]] = set()
        self._workers: list[asyncio.Task[None]] = []
        self._embed_semaphore = asyncio.Semaphore(config.max_concurrent_embeddings)
        self._completed_since_log = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending_jobs(self) -> int:
        return len(self._queue) + len(self._debounce_timers) + len(self._enqueue_tasks)

    async def start(self, reconcile: bool = True) -> None:
        """Start the worker pool, optionally reconciling with the workspace first."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"index-worker-{i}")
            for i in range(self.config.workers)
        ]
        logger.info(f"Indexing pipeline started with {self.config.workers} workers")
        if reconcile:
            await self.reconcile()

    async def stop(self) -> None:
        """Cancel pending timers and workers. Queued jobs are dropped."""
        for timer in [*self._debounce_timers.values(), *self._retry_timers.values()]:
            timer.cancel()
        self._debounce_timers.clear()
        self._retry_timers.clear()

        tasks = [*self._enqueue_tasks, *self._workers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._enqueue_tasks.clear()
        self._workers = []
        self._queue.clear()
        logger.info("Indexing pipeline stopped")

    async def wait_idle(self, include_retries: bool = True, poll: float = 0.01) -> None:
        """Wait until no event is debouncing, queued or being processed."""
        while (
            self._debounce_timers
            or self._enqueue_tasks
            or self._queue
            or self._in_flight
            or (include_retries and self._retry_timers)
        ):
            await asyncio.sleep(poll)

    def flush(self) -> None:
        """Fire every pending debounce timer now."""
        for document_id, timer in list(self._debounce_timers.items()):
            timer.cancel()
            self._on_debounced(document_id)

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def notify(self, event: FileEvent) -> None:
        """Accept a file change event. Must be called on the event loop.

        ``added``/``modified`` events are debounced per document; a
        ``removed`` event cancels pending work for the document and is
        queued immediately.
        """
        self.stats.events_received += 1
        document_id = self.scanner.document_id(event.path)
        if document_id is None:
            logger.debug(f"Ignoring event outside the workspace: {event.path}")
            return

        retry = self._retry_timers.pop(document_id, None)
        if retry is not None:
            retry.cancel()

        timer = self._debounce_timers.pop(document_id, None)
        if timer is not None:
            timer.cancel()
            self.stats.events_coalesced += 1

        if event.kind == ChangeKind.REMOVED:
            self._queue.pop(document_id, None)
            self._spawn_put(IndexJob(document_id, ChangeKind.REMOVED))
            return

        loop = asyncio.get_running_loop()
        self._debounce_timers[document_id] = loop.call_later(
            self.config.debounce_seconds, self._on_debounced, document_id
        )

    async def submit(self, event: FileEvent) -> None:
        """Coroutine form of :meth:`notify`."""
        self.notify(event)

    def _on_debounced(self, document_id: str) -> None:
        self._debounce_timers.pop(document_id, None)
        self._spawn_put(IndexJob(document_id, ChangeKind.MODIFIED))

    def _spawn_put(self, job: IndexJob) -> None:
        task = asyncio.get_running_loop().create_task(self._put(job))
        self._enqueue_tasks.add(task)
        task.add_done_callback(self._enqueue_tasks.discard)

    async def _put(self, job: IndexJob) -> None:
        """Queue a job; duplicates coalesce in place, new jobs wait for room."""
        async with self._cond:
            while True:
                queued = self._queue.get(job.document_id)
                if queued is not None:
                    queued.kind = job.kind
                    queued.attempt = min(queued.attempt, job.attempt)
                    self.stats.events_coalesced += 1
                    return
                if len(self._queue) < self.config.max_queue_size:
                    break
                await self._cond.wait()

            self._queue[job.document_id] = job
            self._cond.notify_all()

    async def reconcile(self) -> int:
        """Queue work bringing the index in line with the workspace.

        Every tracked file is queued (unchanged ones are skipped cheaply by
        hash); documents known to the registry or index but no longer
        tracked are queued for removal.

        Returns:
            Number of jobs queued.
        """
        loop = asyncio.get_running_loop()
        discovered = await loop.run_in_executor(None, self.scanner.discover)
        known = {doc.id for doc in self.registry.all()} | self.index.document_ids()
        current = set(discovered)

        stale = sorted(known - current)
        self._stale.update(stale)
        for document_id in stale:
            await self._put(IndexJob(document_id, ChangeKind.REMOVED))
        for document_id in discovered:
            await self._put(IndexJob(document_id, ChangeKind.MODIFIED))

        logger.info(
            f"Reconciled workspace: {len(discovered)} tracked files, "
            f"{len(stale)} removed"
        )
        return len(discovered) + len(stale)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _next_job(self) -> IndexJob | None:
        """Oldest queued job whose document is not already being processed."""
        for document_id in self._queue:
            if document_id not in self._in_flight:
                return self._queue.pop(document_id)
        return None

    async def _worker(self, number: int) -> None:
        while True:
            async with self._cond:
                job = self._next_job()
                while job is None:
                    await self._cond.wait()
                    job = self._next_job()
                self._in_flight.add(job.document_id)
                self._cond.notify_all()

            try:
                await self._run_job(job)
            finally:
                async with self._cond:
                    self._in_flight.discard(job.document_id)
                    self._cond.notify_all()

    async def _run_job(self, job: IndexJob) -> None:
        self.stats.jobs_processed += 1
        try:
            await self.process(job.document_id)
        except DimensionMismatch as e:
            # Configuration error: retrying cannot help
            logger.error(f"Indexing {job.document_id} failed: {e}")
            await self._mark_failed(job.document_id, e, job.attempt + 1)
        except _RETRYABLE_ERRORS as e:
            await self._retry_or_fail(job, e)
        except Exception as e:
            logger.exception(f"Unexpected error indexing {job.document_id}")
            await self._mark_failed(job.document_id, e, job.attempt + 1)
        else:
            self._completed_since_log += 1
            if self._completed_since_log >= PROGRESS_LOG_INTERVAL:
                self._completed_since_log = 0
                logger.info(
                    f"Indexing progress: {self.stats.documents_indexed} indexed, "
                    f"{self.stats.documents_skipped} unchanged, "
                    f"{len(self._queue)} queued"
                )

    async def _retry_or_fail(self, job: IndexJob, error: Exception) -> None:
        attempt = job.attempt + 1
        if attempt > self.config.max_retries:
            await self._mark_failed(job.document_id, error, attempt)
            return

        delay = min(
            self.config.retry_base_delay * (2 ** (attempt - 1)),
            self.config.retry_max_delay,
        )
        self.stats.retries += 1
        logger.warning(
            f"Indexing {job.document_id} failed ({error}); retrying in {delay:.1f}s "
            f"(attempt {attempt}/{self.config.max_retries})"
        )

        def _requeue() -> None:
            self._retry_timers.pop(job.document_id, None)
            self._spawn_put(IndexJob(job.document_id, job.kind, attempt=attempt))

        self._retry_timers[job.document_id] = asyncio.get_running_loop().call_later(
            delay, _requeue
        )

    async def _mark_failed(self, document_id: str, error: Exception, attempts: int) -> None:
        """Record a document as failed; it is excluded from retrieval."""
        self.stats.documents_failed += 1
        existing = self.registry.get(document_id)
        if existing is not None:
            document = existing.model_copy(
                update={
                    "status": DocumentStatus.FAILED,
                    "attempts": attempts,
                    "last_error": str(error),
                }
            )
        else:
            document = Document(
                id=document_id,
                absolute_path=str(self.scanner.resolve(document_id)),
                status=DocumentStatus.FAILED,
                attempts=attempts,
                last_error=str(error),
            )
        self.registry.put(document)
        logger.error(f"Document {document_id} marked index-failed after {attempts} attempt(s)")
        try:
            await self.registry.save()
        except IndexUnavailable as e:
            logger.warning(f"Could not persist failure of {document_id}: {e}")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, document_id: str) -> bool:
        """Bring one document's index entries up to date with the file.

        The file system is the source of truth: a missing or untracked file
        is removed regardless of the event that triggered the job.

        Returns:
            True if the index changed.

        Raises:
            ExtractionError, ProviderError, IndexUnavailable, DimensionMismatch
        """
        if not self.scanner.should_track(document_id):
            return await self._remove(document_id)
        self._stale.discard(document_id)

        is_new = document_id not in self.registry and self.index.generation(document_id) is None
        if is_new:
            if self.tracked_count() >= self.config.max_files:
                self.stats.documents_over_limit += 1
                logger.warning(
                    f"Not indexing {document_id}: {self.config.max_files} files already tracked"
                )
                return False
            self._admitting.add(document_id)
        try:
            return await self._index(document_id)
        finally:
            self._admitting.discard(document_id)

    def tracked_count(self) -> int:
        """Documents known to the registry or the index, plus those being admitted.

        Documents queued for removal by reconciliation do not count.
        """
        tracked = {document.id for document in self.registry.all()}
        tracked |= self.index.document_ids()
        return len((tracked - self._stale) | self._admitting)

    async def _index(self, document_id: str) -> bool:
        path = self.scanner.resolve(document_id)
        content = await self.extractor.extract_async(path)

        if (
            self.registry.is_unchanged(document_id, content.content_hash)
            and self.index.generation(document_id) is not None
        ):
            self.stats.documents_skipped += 1
            logger.debug(f"Skipping unchanged {document_id}")
            return False

        chunks = self.chunker.chunk_document(document_id, content.text, content.language)
        # Queries are embedded stripped; chunks must match
        vectors = await self._embed([chunk.text.strip() for chunk in chunks])
        model = self.embeddings.model_name
        items = [
            (chunk.id, vector, chunk.to_metadata(model, content.modified_at))
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]
        generation = await self.index.replace_document(document_id, items)

        self.registry.put(
            Document(
                id=document_id,
                absolute_path=str(path),
                document_type=content.document_type,
                language=content.language,
                content_hash=content.content_hash,
                modified_at=content.modified_at,
                status=DocumentStatus.INDEXED,
                generation=generation,
                chunk_count=len(chunks),
                indexed_at=datetime.now(),
            )
        )
        await self.registry.save()
        self.stats.documents_indexed += 1
        logger.debug(f"Indexed {document_id}: {len(chunks)} chunks, generation {generation}")
        return True

    async def _remove(self, document_id: str) -> bool:
        self._stale.discard(document_id)
        removed = await self.index.delete_by_document(document_id)
        known = self.registry.remove(document_id) is not None
        if known:
            await self.registry.save()
        if removed or known:
            self.stats.documents_removed += 1
            logger.debug(f"Removed {document_id} ({removed} entries)")
            return True
        return False

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in batches, limited to the provider's concurrency."""
        size = self.config.embed_batch_size
        batches = [texts[i : i + size] for i in range(0, len(texts), size)]

        async def _embed_batch(batch: list[str]) -> list[list[float]]:
            async with self._embed_semaphore:
                vectors = await self.embeddings.embed_batch(batch)
            if len(vectors) != len(batch):
                raise ProviderError(
                    f"Embedding provider returned {len(vectors)} vectors for {len(batch)} texts"
                )
            return vectors

        results = await asyncio.gather(*(_embed_batch(b) for b in batches))
        return [vector for batch in results for vector in batch]
