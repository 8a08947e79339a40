"""Hybrid retriever: BM25 (FTS5) + dense (cosine), fused via weighted RRF.

Reciprocal Rank Fusion:
  score(d) = w_vec / (k + rank_vec) + w_kw / (k + rank_kw)   k = 60
A document absent from one list gets no contribution from it (rank 0).

Post-fusion shaping is done with pure functions that return new lists:
deduplicate, cap_per_source and the sector / recency / code boosts.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Literal

import structlog

from recall.db.chunk_store import ChunkStore
from recall.db.models import (
    EmbeddedChunk,
    KeywordSearchResult,
    RetrievalFilters,
    VectorSearchResult,
    utc_now,
)
from recall.db.vectors import cosine_similarity
from recall.rag.embeddings import EmbeddingProvider

logger = structlog.get_logger()

ResultSource = Literal["vector", "keyword", "both"]

_SECONDS_PER_DAY = 86_400.0
_RECENCY_MAX_BOOST = 0.2


@dataclass
class RRFConfig:
    """Weighted Reciprocal Rank Fusion parameters."""

    k: int = 60
    vector_weight: float = 0.6
    keyword_weight: float = 0.4


@dataclass
class HybridSearchResult:
    """A fused result.

    Attributes:
        chunk: The retrieved chunk.
        score: Fused RRF score; boosts multiply it.
        vector_rank: 1-based rank in the vector list (0 if absent).
        keyword_rank: 1-based rank in the keyword list (0 if absent).
        source: Which lists the chunk appeared in.
        relevance: Fused score divided by the best fused score of the same
            fusion run (top result = 1.0). Boosts leave it unchanged.
    """

    chunk: EmbeddedChunk
    score: float
    vector_rank: int = 0
    keyword_rank: int = 0
    source: ResultSource = "vector"
    relevance: float = 1.0


@dataclass
class RetrievalQuery:
    text: str
    embedding: list[float] | None = None
    limit: int = 10
    filters: RetrievalFilters | None = None


@dataclass
class RetrievalStats:
    query_text: str
    vector_results: int
    keyword_results: int
    hybrid_results: int
    vector_time_ms: float
    keyword_time_ms: float
    fusion_time_ms: float
    total_time_ms: float
    embedded: bool = False


# ------------------------------------------------------------------
# RRF fusion
# ------------------------------------------------------------------


def rrf_fuse(
    vector_results: list[VectorSearchResult],
    keyword_results: list[KeywordSearchResult],
    limit: int,
    rrf: RRFConfig | None = None,
) -> list[HybridSearchResult]:
    """Combine the two ranked lists via weighted RRF, best first.

    Ties keep first-seen order (vector list first, then keyword list).
    """
    rrf = rrf or RRFConfig()
    fused: dict[str, HybridSearchResult] = {}

    for i, vr in enumerate(vector_results):
        rank = i + 1
        contribution = rrf.vector_weight / (rrf.k + rank)
        existing = fused.get(vr.chunk.id)
        if existing is None:
            fused[vr.chunk.id] = HybridSearchResult(
                chunk=vr.chunk, score=contribution, vector_rank=rank, source="vector"
            )
        else:
            existing.score += contribution
            existing.vector_rank = rank
            existing.source = "both"

    for i, kr in enumerate(keyword_results):
        rank = i + 1
        contribution = rrf.keyword_weight / (rrf.k + rank)
        existing = fused.get(kr.chunk.id)
        if existing is None:
            fused[kr.chunk.id] = HybridSearchResult(
                chunk=kr.chunk, score=contribution, keyword_rank=rank, source="keyword"
            )
        else:
            existing.score += contribution
            existing.keyword_rank = rank
            if existing.source == "vector":
                existing.source = "both"

    ranked = sorted(fused.values(), key=lambda r: r.score, reverse=True)[:limit]
    if ranked and ranked[0].score > 0:
        top = ranked[0].score
        for r in ranked:
            r.relevance = r.score / top
    return ranked


# ------------------------------------------------------------------
# Post-fusion shaping
# ------------------------------------------------------------------


def deduplicate(results: list[HybridSearchResult], threshold: float = 0.9) -> list[HybridSearchResult]:
    """Drop results whose embedding is at least *threshold* similar to a kept one.

    The earlier (higher-ranked) result of a near-duplicate pair is kept.
    """
    kept: list[HybridSearchResult] = []
    for result in results:
        if not any(
            cosine_similarity(result.chunk.embedding, k.chunk.embedding) >= threshold for k in kept
        ):
            kept.append(result)
    return kept


def cap_per_source(results: list[HybridSearchResult], max_per_source: int = 3) -> list[HybridSearchResult]:
    """Keep at most *max_per_source* results per source id, preserving order."""
    counts: dict[str, int] = {}
    capped: list[HybridSearchResult] = []
    for result in results:
        seen = counts.get(result.chunk.source_id, 0)
        if seen < max_per_source:
            capped.append(result)
            counts[result.chunk.source_id] = seen + 1
    return capped


def _rescored(
    results: list[HybridSearchResult], factor_of: Callable[[HybridSearchResult], float]
) -> list[HybridSearchResult]:
    boosted = [replace(r, score=r.score * factor_of(r)) for r in results]
    boosted.sort(key=lambda r: r.score, reverse=True)
    return boosted


def apply_sector_boost(
    results: list[HybridSearchResult], sector_id: str, factor: float = 1.2
) -> list[HybridSearchResult]:
    """Multiply the score of chunks tagged with *sector_id* by *factor* and re-sort."""

    def factor_of(r: HybridSearchResult) -> float:
        meta = r.chunk.metadata
        return factor if meta is not None and meta.sector_id == sector_id else 1.0

    return _rescored(results, factor_of)


def apply_recency_boost(
    results: list[HybridSearchResult],
    decay_days: float = 30,
    now: datetime | None = None,
) -> list[HybridSearchResult]:
    """Boost recent chunks: ``score *= 1 + e^(-age_days / decay_days) * 0.2``."""
    now = now or utc_now()

    def factor_of(r: HybridSearchResult) -> float:
        age_days = (now - r.chunk.created_at).total_seconds() / _SECONDS_PER_DAY
        return 1 + math.exp(-age_days / decay_days) * _RECENCY_MAX_BOOST

    return _rescored(results, factor_of)


def apply_code_boost(results: list[HybridSearchResult], factor: float = 1.5) -> list[HybridSearchResult]:
    """Multiply the score of code chunks by *factor* and re-sort."""
    return _rescored(results, lambda r: factor if r.chunk.content_type == "code" else 1.0)


# ------------------------------------------------------------------
# Retriever
# ------------------------------------------------------------------


class HybridRetriever:
    """Run vector and keyword search against a ChunkStore and fuse the results.

    The keyword leg starts on a worker thread while the query is embedded and
    the vector leg runs; both legs fetch ``2 * limit`` results. When the
    provider is not ready and no embedding is supplied, only the keyword leg
    contributes.

    Args:
        chunk_store: Store to search.
        provider:    Embedding backend for query vectors.
        rrf:         Fusion parameters.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        provider: EmbeddingProvider,
        rrf: RRFConfig | None = None,
    ) -> None:
        self._store = chunk_store
        self._provider = provider
        self.rrf = rrf or RRFConfig()
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="retriever")
        self._last_stats: RetrievalStats | None = None

    @property
    def last_stats(self) -> RetrievalStats | None:
        return self._last_stats

    def search(self, query: RetrievalQuery) -> list[HybridSearchResult]:
        """Hybrid search. Returns at most ``query.limit`` fused results, best first."""
        start = time.perf_counter()
        fetch = query.limit * 2

        keyword_future = self._pool.submit(self._timed_keyword, query.text, fetch, query.filters)

        vector_start = time.perf_counter()
        embedding = query.embedding
        if embedding is None and self._provider.is_ready():
            embedding = self._provider.embed(query.text)
        vector_results: list[VectorSearchResult] = []
        if embedding is not None:
            vector_results = self._store.search(embedding, fetch, query.filters)
        vector_ms = (time.perf_counter() - vector_start) * 1000

        keyword_results, keyword_ms = keyword_future.result()

        fusion_start = time.perf_counter()
        fused = rrf_fuse(vector_results, keyword_results, query.limit, self.rrf)
        fusion_ms = (time.perf_counter() - fusion_start) * 1000

        self._last_stats = RetrievalStats(
            query_text=query.text[:100],
            vector_results=len(vector_results),
            keyword_results=len(keyword_results),
            hybrid_results=len(fused),
            vector_time_ms=vector_ms,
            keyword_time_ms=keyword_ms,
            fusion_time_ms=fusion_ms,
            total_time_ms=(time.perf_counter() - start) * 1000,
            embedded=embedding is not None,
        )
        logger.debug(
            "retrieval.complete",
            vector=len(vector_results),
            keyword=len(keyword_results),
            fused=len(fused),
            total_ms=round(self._last_stats.total_time_ms, 2),
        )
        return fused

    def _timed_keyword(
        self, text: str, limit: int, filters: RetrievalFilters | None
    ) -> tuple[list[KeywordSearchResult], float]:
        started = time.perf_counter()
        results = self._store.keyword_search(text, limit, filters)
        return results, (time.perf_counter() - started) * 1000

    def semantic_search(
        self, query: str, limit: int = 10, filters: RetrievalFilters | None = None
    ) -> list[VectorSearchResult]:
        """Vector-only search; empty when the query cannot be embedded."""
        embedding = self._provider.embed(query)
        if embedding is None:
            return []
        return self._store.search(embedding, limit, filters)

    def keyword_search(
        self, query: str, limit: int = 10, filters: RetrievalFilters | None = None
    ) -> list[KeywordSearchResult]:
        return self._store.keyword_search(query, limit, filters)

    def close(self) -> None:
        self._pool.shutdown(wait=True)
