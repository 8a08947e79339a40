"""Tests for RRF fusion, post-fusion shaping and HybridRetriever."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeProvider, fake_embedding
from recall.db.models import (
    ChunkMetadata,
    EmbeddedChunk,
    KeywordSearchResult,
    RetrievalFilters,
    VectorSearchResult,
)
from recall.ingest.embedder import ChunkEmbedder
from recall.rag.retriever import (
    HybridRetriever,
    HybridSearchResult,
    RetrievalQuery,
    RRFConfig,
    apply_code_boost,
    apply_recency_boost,
    apply_sector_boost,
    cap_per_source,
    deduplicate,
    rrf_fuse,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _chunk(
    id: str,
    source_id: str | None = None,
    embedding: list[float] | None = None,
    content_type: str = "prose",
    metadata: ChunkMetadata | None = None,
    created_at: datetime = NOW,
) -> EmbeddedChunk:
    return EmbeddedChunk(
        id=id,
        source_id=source_id or id,
        source_type="document",
        content=f"content of {id}",
        content_type=content_type,
        embedding=embedding or [1.0, 0.0],
        chunk_index=0,
        token_count=5,
        metadata=metadata,
        created_at=created_at,
    )


def _vec(*chunks: EmbeddedChunk) -> list[VectorSearchResult]:
    return [VectorSearchResult(chunk=c, similarity=1.0 - i * 0.1) for i, c in enumerate(chunks)]


def _kw(*chunks: EmbeddedChunk) -> list[KeywordSearchResult]:
    return [KeywordSearchResult(chunk=c, score=10.0 - i) for i, c in enumerate(chunks)]


def _hybrid(chunk: EmbeddedChunk, score: float) -> HybridSearchResult:
    return HybridSearchResult(chunk=chunk, score=score)


# ------------------------------------------------------------------
# rrf_fuse
# ------------------------------------------------------------------


def test_rrf_top_in_both_lists_scores_one_over_61():
    a = _chunk("a")
    fused = rrf_fuse(_vec(a), _kw(a), limit=10)
    assert len(fused) == 1
    assert fused[0].score == pytest.approx(1 / 61)
    assert fused[0].source == "both"
    assert (fused[0].vector_rank, fused[0].keyword_rank) == (1, 1)


def test_rrf_vector_only_top_scores_weight_over_61():
    b = _chunk("b")
    fused = rrf_fuse(_vec(b), [], limit=10)
    assert fused[0].score == pytest.approx(0.6 / 61)
    assert fused[0].source == "vector"
    assert fused[0].keyword_rank == 0


def test_rrf_keyword_only():
    c = _chunk("c")
    fused = rrf_fuse([], _kw(c), limit=10)
    assert fused[0].score == pytest.approx(0.4 / 61)
    assert fused[0].source == "keyword"
    assert fused[0].vector_rank == 0


def test_rrf_agreement_beats_single_list():
    a, b, c = _chunk("a"), _chunk("b"), _chunk("c")
    fused = rrf_fuse(_vec(b, a), _kw(c, a), limit=10)
    assert fused[0].chunk.id == "a"
    assert fused[0].score == pytest.approx(0.6 / 62 + 0.4 / 62)


def test_rrf_preserves_single_list_order():
    chunks = [_chunk(f"c{i}") for i in range(5)]
    fused = rrf_fuse(_vec(*chunks), [], limit=10)
    assert [r.chunk.id for r in fused] == [c.id for c in chunks]
    scores = [r.score for r in fused]
    assert scores == sorted(scores, reverse=True)


def test_rrf_relevance_relative_to_top():
    a, b = _chunk("a"), _chunk("b")
    fused = rrf_fuse(_vec(a, b), _kw(a), limit=10)
    assert fused[0].relevance == pytest.approx(1.0)
    assert fused[1].relevance == pytest.approx((0.6 / 62) / (1 / 61))


def test_rrf_limit():
    chunks = [_chunk(f"c{i}") for i in range(10)]
    assert len(rrf_fuse(_vec(*chunks), [], limit=3)) == 3


def test_rrf_empty_inputs():
    assert rrf_fuse([], [], limit=5) == []


def _ranked(size: int, placed: dict[int, EmbeddedChunk]) -> list[EmbeddedChunk]:
    """A ranking of *size* chunks with the given chunks at fixed 1-based ranks."""
    return [placed.get(rank) or _chunk(f"filler{size}_{rank}") for rank in range(1, size + 1)]


@pytest.mark.parametrize(
    "x_vec,y_vec,x_kw,y_kw",
    [(1, 2, 1, 2), (1, 5, 3, 4), (2, 6, 1, 6), (4, 5, 2, 3), (1, 6, 5, 6)],
)
@pytest.mark.parametrize(
    "rrf",
    [RRFConfig(), RRFConfig(vector_weight=0.4, keyword_weight=0.6)],
)
def test_rrf_higher_in_both_lists_never_scores_lower(x_vec, y_vec, x_kw, y_kw, rrf):
    x, y = _chunk("x"), _chunk("y")
    vector = _ranked(6, {x_vec: x, y_vec: y})
    keyword = _ranked(6, {x_kw: x, y_kw: y})
    fused = {r.chunk.id: r.score for r in rrf_fuse(_vec(*vector), _kw(*keyword), limit=20, rrf=rrf)}
    assert fused["x"] >= fused["y"]


def test_rrf_custom_weights():
    a = _chunk("a")
    fused = rrf_fuse(_vec(a), _kw(a), limit=10, rrf=RRFConfig(k=10, vector_weight=1.0, keyword_weight=0.0))
    assert fused[0].score == pytest.approx(1 / 11)


# ------------------------------------------------------------------
# Shaping
# ------------------------------------------------------------------


def test_deduplicate_keeps_higher_ranked():
    first = _hybrid(_chunk("first", embedding=[1.0, 0.0]), 0.9)
    twin = _hybrid(_chunk("twin", embedding=[1.0, 0.0]), 0.8)
    other = _hybrid(_chunk("other", embedding=[0.0, 1.0]), 0.7)
    kept = deduplicate([first, twin, other], threshold=0.9)
    assert [r.chunk.id for r in kept] == ["first", "other"]


def test_deduplicate_threshold_is_inclusive():
    a = _hybrid(_chunk("a", embedding=[1.0, 0.0]), 0.9)
    b = _hybrid(_chunk("b", embedding=[1.0, 0.0]), 0.8)
    assert [r.chunk.id for r in deduplicate([a, b], threshold=1.0)] == ["a"]


def test_deduplicate_below_threshold_kept():
    a = _hybrid(_chunk("a", embedding=[1.0, 0.0]), 0.9)
    b = _hybrid(_chunk("b", embedding=[1.0, 1.0]), 0.8)
    assert len(deduplicate([a, b], threshold=0.9)) == 2


def test_cap_per_source():
    results = [
        _hybrid(_chunk("a1", source_id="a"), 0.9),
        _hybrid(_chunk("a2", source_id="a"), 0.8),
        _hybrid(_chunk("b1", source_id="b"), 0.7),
        _hybrid(_chunk("a3", source_id="a"), 0.6),
    ]
    assert [r.chunk.id for r in cap_per_source(results, max_per_source=2)] == ["a1", "a2", "b1"]


def test_sector_boost_reorders():
    plain = _hybrid(_chunk("plain"), 1.0)
    tagged = _hybrid(_chunk("tagged", metadata=ChunkMetadata(sector_id="api")), 0.9)
    boosted = apply_sector_boost([plain, tagged], "api", factor=1.2)
    assert [r.chunk.id for r in boosted] == ["tagged", "plain"]
    assert boosted[0].score == pytest.approx(1.08)


def test_sector_boost_does_not_mutate_input():
    tagged = _hybrid(_chunk("tagged", metadata=ChunkMetadata(sector_id="api")), 0.5)
    apply_sector_boost([tagged], "api")
    assert tagged.score == 0.5


def test_boost_leaves_relevance_unchanged():
    tagged = HybridSearchResult(
        chunk=_chunk("t", metadata=ChunkMetadata(sector_id="api")), score=0.5, relevance=0.8
    )
    assert apply_sector_boost([tagged], "api")[0].relevance == 0.8


def test_recency_boost_prefers_newer():
    old = _hybrid(_chunk("old", created_at=NOW - timedelta(days=365)), 1.0)
    new = _hybrid(_chunk("new", created_at=NOW), 0.9)
    boosted = apply_recency_boost([old, new], decay_days=30, now=NOW)
    assert [r.chunk.id for r in boosted] == ["new", "old"]
    assert boosted[0].score == pytest.approx(0.9 * 1.2)


def test_recency_boost_decays():
    month_old = _hybrid(_chunk("m", created_at=NOW - timedelta(days=30)), 1.0)
    boosted = apply_recency_boost([month_old], decay_days=30, now=NOW)
    assert boosted[0].score == pytest.approx(1 + 0.2 / 2.718281828459045)


def test_code_boost():
    prose = _hybrid(_chunk("prose"), 1.0)
    code = _hybrid(_chunk("code", content_type="code"), 0.8)
    boosted = apply_code_boost([prose, code], factor=1.5)
    assert [r.chunk.id for r in boosted] == ["code", "prose"]
    assert boosted[0].score == pytest.approx(1.2)


# ------------------------------------------------------------------
# HybridRetriever
# ------------------------------------------------------------------

_DOCS = {
    "deploy": "The deploy pipeline retries failed jobs three times before paging.",
    "cache": "The cache layer evicts the oldest entries first.",
    "auth": "Login tokens expire after one hour.",
}


@pytest.fixture
def populated_store(chunk_store, provider):
    embedder = ChunkEmbedder(provider)
    for source_id, text in _DOCS.items():
        metadata = ChunkMetadata(sector_id="ops") if source_id == "deploy" else None
        chunk_store.add_chunks(embedder.chunk_and_embed(text, source_id, "document", metadata=metadata))
    return chunk_store


@pytest.fixture
def retriever(populated_store, provider):
    r = HybridRetriever(populated_store, provider)
    yield r
    r.close()


def test_search_ranks_matching_chunk_first(retriever):
    results = retriever.search(RetrievalQuery(text="deploy pipeline retries", limit=3))
    assert results[0].chunk.source_id == "deploy"
    assert results[0].source == "both"
    assert results[0].relevance == pytest.approx(1.0)
    assert len(results) <= 3


def test_search_records_stats(retriever):
    retriever.search(RetrievalQuery(text="cache entries", limit=2))
    stats = retriever.last_stats
    assert stats.embedded is True
    assert stats.vector_results == 3
    assert stats.keyword_results >= 1
    assert stats.hybrid_results == 2
    assert stats.total_time_ms >= 0


def test_search_keyword_only_when_provider_not_ready(populated_store):
    provider = FakeProvider(ready=False)
    retriever = HybridRetriever(populated_store, provider)
    try:
        results = retriever.search(RetrievalQuery(text="login tokens", limit=5))
    finally:
        retriever.close()
    assert [r.chunk.source_id for r in results] == ["auth"]
    assert all(r.source == "keyword" for r in results)
    assert retriever.last_stats.embedded is False
    assert provider.calls == []


def test_search_uses_supplied_embedding(populated_store):
    provider = FakeProvider(ready=False)
    retriever = HybridRetriever(populated_store, provider)
    try:
        results = retriever.search(
            RetrievalQuery(text="zzz", embedding=fake_embedding(_DOCS["cache"]), limit=1)
        )
    finally:
        retriever.close()
    assert results[0].chunk.source_id == "cache"
    assert results[0].source == "vector"


def test_search_applies_filters(retriever):
    results = retriever.search(
        RetrievalQuery(text="deploy cache login", limit=5, filters=RetrievalFilters(sector_ids=["ops"]))
    )
    assert [r.chunk.source_id for r in results] == ["deploy"]


def test_semantic_search(retriever):
    results = retriever.semantic_search(_DOCS["auth"], limit=1)
    assert results[0].chunk.source_id == "auth"
    assert results[0].similarity == pytest.approx(1.0)


def test_semantic_search_without_provider(populated_store):
    retriever = HybridRetriever(populated_store, FakeProvider(ready=False))
    try:
        assert retriever.semantic_search("anything") == []
    finally:
        retriever.close()


def test_keyword_search_passthrough(retriever):
    results = retriever.keyword_search("evicts")
    assert [r.chunk.source_id for r in results] == ["cache"]
