"""Query-time retrieval over the vector index.

This module provides:
- Retriever: embeds a query, fetches candidates and returns a RetrievalContext
- ResultRanker: re-ranking (recency boost, short-chunk and duplicate removal)

Example:
    retriever = Retriever(embeddings, index, registry, config.retrieval)
    context = await retriever.retrieve("where is the config loaded?")
    for chunk in context.chunks:
        print(f"{chunk.location}: {chunk.score:.2f}")
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING

from workspace_rag.core.errors import IndexUnavailable, ProviderError

from .models import RetrievalContext, ScoredChunk, SessionContext
from .vectorstore import IndexHit, QueryFilter

if TYPE_CHECKING:
    from workspace_rag.config.models import RetrievalConfig

    from .embeddings import EmbeddingProvider
    from .registry import DocumentRegistry
    from .vectorstore import VectorIndex

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")


def _tokens(text: str) -> frozenset[str]:
    return frozenset(token.lower() for token in _TOKEN_RE.findall(text))


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """Token-set Jaccard similarity; two empty sets are identical."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class ResultRanker:
    """Re-rank index hits before truncation.

    Applies, in order: the minimum score, the minimum chunk length, an
    additive boost for recently modified documents, then removal of exact
    duplicates (any document) and near-duplicates (same document).

    Attributes:
        config: Retrieval configuration.
    """

    def __init__(self, config: RetrievalConfig) -> None:
        self.config = config

    def recency_boost(self, modified_at: float, now: float) -> float:
        window = self.config.recency_window_hours * 3600
        if window <= 0 or modified_at <= 0:
            return 0.0
        age = max(0.0, now - modified_at)
        if age >= window:
            return 0.0
        return self.config.recency_boost * (1.0 - age / window)

    def rank(self, hits: list[IndexHit], now: float | None = None) -> list[ScoredChunk]:
        """Convert hits to scored chunks, best first.

        Args:
            hits: Index hits ordered by raw similarity.
            now: Reference time for the recency boost (epoch seconds).

        Returns:
            Re-ranked chunks; never longer than ``hits``.
        """
        now = time.time() if now is None else now
        candidates: list[ScoredChunk] = []

        for hit in hits:
            if hit.score < self.config.min_score:
                continue
            meta = hit.metadata
            text = str(meta.get("text", ""))
            if len(text.strip()) < self.config.min_chunk_chars:
                continue
            modified_at = float(meta.get("modified_at") or 0.0)
            candidates.append(
                ScoredChunk(
                    chunk_id=hit.chunk_id,
                    document_id=hit.document_id,
                    score=hit.score + self.recency_boost(modified_at, now),
                    similarity=hit.score,
                    text=text,
                    start_line=int(meta.get("start_line", 1)),
                    end_line=int(meta.get("end_line", 1)),
                    language=meta.get("language"),
                    generation=hit.generation,
                    modified_at=modified_at,
                )
            )

        # Stable sort keeps the index's insertion-order tie-break
        candidates.sort(key=lambda c: c.score, reverse=True)
        return self._dedupe(candidates)

    def _dedupe(self, chunks: list[ScoredChunk]) -> list[ScoredChunk]:
        seen_texts: set[str] = set()
        kept: list[tuple[ScoredChunk, frozenset[str]]] = []

        for chunk in chunks:
            normalized = " ".join(chunk.text.split())
            if normalized in seen_texts:
                continue
            tokens = _tokens(chunk.text)
            if any(
                other.document_id == chunk.document_id
                and jaccard(tokens, other_tokens) >= self.config.dedupe_threshold
                for other, other_tokens in kept
            ):
                continue
            seen_texts.add(normalized)
            kept.append((chunk, tokens))

        return [chunk for chunk, _ in kept]


class Retriever:
    """Turns a query into a ranked :class:`RetrievalContext`.

    The read path never blocks on indexing: queries run against the index's
    current snapshot. An empty index, a storage failure or an embedding
    failure all produce an empty context, the last two with a warning.

    Attributes:
        config: Retrieval configuration.
        ranker: Result re-ranker.
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        index: VectorIndex,
        registry: DocumentRegistry | None,
        config: RetrievalConfig,
        ranker: ResultRanker | None = None,
    ) -> None:
        self.embeddings = embeddings
        self.index = index
        self.registry = registry
        self.config = config
        self.ranker = ranker or ResultRanker(config)

    def expand_query(self, query: str, session: SessionContext | None) -> str:
        """Prefix short follow-up questions with the previous user message."""
        query = query.strip()
        if session is None or not session.previous_query:
            return query
        if len(query.split()) > self.config.followup_max_words:
            return query
        return f"{session.previous_query.strip()}\n{query}"

    def _build_filter(self, session: SessionContext | None) -> QueryFilter:
        excluded: set[str] = set()
        if self.registry is not None:
            excluded |= self.registry.failed_ids()
        document_ids = None
        if session is not None:
            excluded |= session.exclude_document_ids
            document_ids = session.document_ids
        return QueryFilter(
            document_ids=document_ids,
            exclude_document_ids=frozenset(excluded),
        )

    async def retrieve(
        self,
        query: str,
        session: SessionContext | None = None,
        k: int | None = None,
    ) -> RetrievalContext:
        """Retrieve up to ``k`` chunks relevant to ``query``.

        Args:
            query: User query.
            session: Conversation state available to retrieval.
            k: Number of chunks wanted; defaults to ``config.default_k``.

        Returns:
            Ranked context, possibly empty.

        Raises:
            DimensionMismatch: If the embedding model does not match the index.
        """
        k = self.config.default_k if k is None else k
        text = self.expand_query(query, session)
        context = RetrievalContext(query=text)

        if k <= 0 or not text:
            return context
        if len(self.index) == 0:
            logger.debug("Index is empty, returning empty context")
            return context

        try:
            embedding = await self.embeddings.embed(text)
        except ProviderError as e:
            logger.warning(f"Query embedding failed: {e}")
            context.warnings.append(f"Query embedding failed ({e.code}): {e}")
            return context

        try:
            hits = await self.index.query(
                embedding,
                k * self.config.overfetch,
                self._build_filter(session),
            )
        except IndexUnavailable as e:
            logger.warning(f"Vector index unavailable: {e}")
            context.warnings.append(f"Vector index unavailable: {e}")
            return context

        context.chunks = self.ranker.rank(hits)[:k]
        logger.debug(
            f"Retrieved {len(context.chunks)} of {len(hits)} candidates for "
            f"{text[:50]!r}"
        )
        return context
