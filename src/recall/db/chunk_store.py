"""Chunk storage with dense (cosine) and sparse (BM25) search paths.

Single interface for: chunk upsert/lookup/deletion, brute-force vector search
over a bounded candidate set, FTS5 keyword search with a LIKE fallback, and a
FIFO hot cache that mirrors recent writes.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

import structlog

from recall.db.cache import HotCache
from recall.db.connection import Database, translate_errors
from recall.db.models import (
    ChunkMetadata,
    EmbeddedChunk,
    KeywordSearchResult,
    RetrievalFilters,
    VectorSearchResult,
    from_iso,
    to_iso,
)
from recall.db.schema import (
    CHUNKS_FTS_DDL,
    build_like_pattern,
    build_match_query,
    initialize_chunks,
    is_fts_error,
    probe_fts,
)
from recall.db.vectors import check_dimension, cosine_similarity, decode_vector, encode_vector

logger = structlog.get_logger()

_COLUMNS = (
    "id, source_id, source_type, content, content_type, embedding, keywords, "
    "chunk_index, token_count, metadata, created_at"
)
_JOINED_COLUMNS = ", ".join(f"c.{c}" for c in _COLUMNS.split(", "))

DEFAULT_CACHE_LIMIT = 10_000
DEFAULT_CANDIDATE_LIMIT = 5_000


@dataclass
class ChunkStoreStats:
    total_chunks: int
    total_sources: int
    cache_size: int
    dimension: int | None
    estimated_storage_bytes: int


class ChunkStore:
    """SQLite-backed chunk store.

    The embedding dimension is recorded on first write and enforced on every
    later write. All access is serialised with an internal lock; the hot cache
    is updated inside the same locked section as the durable write.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        cache_limit: int = DEFAULT_CACHE_LIMIT,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        enable_fts: bool = True,
    ) -> None:
        """Open (or create) the chunk database and warm the hot cache.

        Args:
            db_path: Database file path, or ``":memory:"``.
            cache_limit: Maximum number of chunks mirrored in memory.
            candidate_limit: Row ceiling for filtered vector scans.
            enable_fts: Set False to pin the LIKE fallback without probing.

        Raises:
            StorageError: If the database cannot be opened or migrated.
        """
        self._db = Database(db_path)
        self._conn: sqlite3.Connection | None = self._db.connect()
        self._lock = threading.RLock()
        self._cache = HotCache(cache_limit)
        self.candidate_limit = candidate_limit
        self._fallback_logged = False

        with translate_errors("initialise chunk store"):
            initialize_chunks(self._conn)
            self.fts_enabled = enable_fts and probe_fts(
                self._conn, CHUNKS_FTS_DDL, "chunks_fts", store="chunks"
            )
            self._dimension = self._load_dimension()
            self._warm_cache()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("ChunkStore is closed")
        return self._conn

    @property
    def dimension(self) -> int | None:
        """Embedding dimension of this store (None until the first write)."""
        return self._dimension

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_chunk(self, chunk: EmbeddedChunk) -> None:
        """Upsert *chunk* by id.

        Raises:
            DimensionMismatchError: If the embedding dimension differs from the store's.
            StorageError: On storage failure.
        """
        self.add_chunks([chunk])

    def add_chunks(self, chunks: list[EmbeddedChunk]) -> None:
        """Upsert many chunks in one transaction, then mirror them in the cache."""
        if not chunks:
            return
        self._write_chunks(chunks, replace_source=None)

    def replace_source(self, source_id: str, chunks: list[EmbeddedChunk]) -> int:
        """Swap the chunks of *source_id* for *chunks* in one transaction.

        On any failure (including a dimension mismatch) the old chunks stay in
        place. Returns the number of old chunks removed.

        Raises:
            DimensionMismatchError: If an embedding dimension differs from the store's.
            StorageError: On storage failure.
        """
        return self._write_chunks(chunks, replace_source=source_id)

    def _write_chunks(self, chunks: list[EmbeddedChunk], *, replace_source: str | None) -> int:
        with self._lock:
            dimension = self._dimension
            for chunk in chunks:
                dimension = check_dimension(dimension, chunk.embedding)

            removed: list[str] = []
            with translate_errors("add chunks"):
                try:
                    if replace_source is not None:
                        removed = [
                            r["id"]
                            for r in self.conn.execute(
                                "SELECT id FROM chunks WHERE source_id = ?", (replace_source,)
                            ).fetchall()
                        ]
                        self.conn.execute(
                            "DELETE FROM chunks WHERE source_id = ?", (replace_source,)
                        )
                    if self._dimension is None and dimension is not None:
                        self.conn.execute(
                            "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('dimension', ?)",
                            (str(dimension),),
                        )
                    self.conn.executemany(
                        f"""
                        INSERT INTO chunks ({_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            source_id = excluded.source_id,
                            source_type = excluded.source_type,
                            content = excluded.content,
                            content_type = excluded.content_type,
                            embedding = excluded.embedding,
                            keywords = excluded.keywords,
                            chunk_index = excluded.chunk_index,
                            token_count = excluded.token_count,
                            metadata = excluded.metadata,
                            created_at = excluded.created_at
                        """,
                        [_chunk_to_params(c) for c in chunks],
                    )
                    self.conn.commit()
                except sqlite3.Error:
                    self.conn.rollback()
                    raise

            self._dimension = dimension
            for chunk_id in removed:
                self._cache.discard(chunk_id)
            for chunk in chunks:
                self._cache.put(chunk)
        return len(removed)

    def delete_chunk(self, chunk_id: str) -> bool:
        """Delete one chunk. Returns True if a row was removed."""
        with self._lock:
            with translate_errors("delete chunk"):
                cur = self.conn.execute("DELETE FROM chunks WHERE id = ?", (chunk_id,))
                self.conn.commit()
            self._cache.discard(chunk_id)
        return cur.rowcount > 0

    def delete_source(self, source_id: str) -> int:
        """Delete every chunk of *source_id*. Returns the number removed."""
        with self._lock:
            with translate_errors("delete source"):
                ids = [
                    r["id"]
                    for r in self.conn.execute(
                        "SELECT id FROM chunks WHERE source_id = ?", (source_id,)
                    ).fetchall()
                ]
                self.conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
                self.conn.commit()
            for chunk_id in ids:
                self._cache.discard(chunk_id)
        return len(ids)

    def clear(self) -> None:
        """Delete every chunk. The recorded dimension is kept."""
        with self._lock:
            with translate_errors("clear chunks"):
                self.conn.execute("DELETE FROM chunks")
                self.conn.commit()
            self._cache.clear()

    def vacuum(self) -> None:
        with self._lock, translate_errors("vacuum chunks"):
            self.conn.execute("VACUUM")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_chunk(self, chunk_id: str) -> EmbeddedChunk | None:
        """Return a chunk by id (cache first), or None if not found."""
        with self._lock:
            cached = self._cache.get(chunk_id)
            if cached is not None:
                return cached
            with translate_errors("get chunk"):
                row = self.conn.execute(
                    f"SELECT {_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
                ).fetchone()
        return _row_to_chunk(row) if row else None

    def get_chunks_for_source(self, source_id: str) -> list[EmbeddedChunk]:
        """Return all chunks of *source_id* ordered by chunk_index."""
        with self._lock, translate_errors("get chunks for source"):
            rows = self.conn.execute(
                f"SELECT {_COLUMNS} FROM chunks WHERE source_id = ? ORDER BY chunk_index",
                (source_id,),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self, source_id: str | None = None) -> int:
        with self._lock, translate_errors("count chunks"):
            if source_id is None:
                return self.conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            return self.conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE source_id = ?", (source_id,)
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        filters: RetrievalFilters | None = None,
    ) -> list[VectorSearchResult]:
        """Brute-force cosine search. Returns the top *limit* by similarity, descending.

        Unfiltered searches scan the hot cache when it is warm; otherwise the
        newest ``candidate_limit`` rows matching the SQL predicates are scored.
        """
        candidates = self._candidates(filters)
        results = [
            VectorSearchResult(chunk=c, similarity=cosine_similarity(query_vector, c.embedding))
            for c in candidates
        ]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    def _candidates(self, filters: RetrievalFilters | None) -> list[EmbeddedChunk]:
        unfiltered = filters is None or filters.is_empty()
        with self._lock:
            if unfiltered and len(self._cache) > 0:
                return self._cache.values()

            where, params = _filter_clauses(filters, prefix="")
            sql = f"SELECT {_COLUMNS} FROM chunks WHERE {where} ORDER BY created_at DESC LIMIT ?"
            params.append(self.candidate_limit)
            with translate_errors("vector search"):
                rows = self.conn.execute(sql, params).fetchall()

        chunks = [_row_to_chunk(r) for r in rows]
        if filters is not None:
            chunks = [c for c in chunks if filters.matches_metadata(c.metadata)]
        return chunks

    # ------------------------------------------------------------------
    # Keyword search
    # ------------------------------------------------------------------

    def keyword_search(
        self,
        query: str,
        limit: int = 20,
        filters: RetrievalFilters | None = None,
    ) -> list[KeywordSearchResult]:
        """BM25 full-text search over content + keywords, best first.

        Falls back to a LIKE substring scan (uniform score 1.0) when FTS5 is
        unavailable or rejects the query.
        """
        if not query.strip():
            return []
        if not self.fts_enabled:
            self._log_fallback_once("fts disabled")
            return self._like_search(query, limit, filters)

        where, params = _filter_clauses(filters, prefix="c.")
        sql = f"""
            SELECT {_JOINED_COLUMNS}, bm25(chunks_fts) AS score
            FROM chunks_fts
            JOIN chunks c ON chunks_fts.rowid = c.rowid
            WHERE chunks_fts MATCH ? AND {where}
            ORDER BY score
            LIMIT ?
        """
        params = [build_match_query(query), *params, _fetch_limit(limit, filters)]

        with self._lock, translate_errors("keyword search"):
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as exc:
                if not is_fts_error(exc):
                    raise
                self._log_fallback_once(str(exc))
                return self._like_search(query, limit, filters)

        results = [KeywordSearchResult(chunk=_row_to_chunk(r), score=abs(r["score"])) for r in rows]
        return _apply_metadata_filters(results, filters)[:limit]

    def _like_search(
        self, query: str, limit: int, filters: RetrievalFilters | None
    ) -> list[KeywordSearchResult]:
        where, params = _filter_clauses(filters, prefix="")
        pattern = build_like_pattern(query)
        sql = f"""
            SELECT {_COLUMNS} FROM chunks
            WHERE (content LIKE ? ESCAPE '\\' OR keywords LIKE ? ESCAPE '\\') AND {where}
            ORDER BY created_at DESC
            LIMIT ?
        """
        params = [pattern, pattern, *params, _fetch_limit(limit, filters)]
        with self._lock, translate_errors("keyword search"):
            rows = self.conn.execute(sql, params).fetchall()
        results = [KeywordSearchResult(chunk=_row_to_chunk(r), score=1.0) for r in rows]
        return _apply_metadata_filters(results, filters)[:limit]

    def _log_fallback_once(self, reason: str) -> None:
        if not self._fallback_logged:
            self._fallback_logged = True
            logger.warning("fts.fallback", store="chunks", reason=reason)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stats(self) -> ChunkStoreStats:
        with self._lock, translate_errors("chunk stats"):
            row = self.conn.execute(
                """
                SELECT COUNT(*) AS total, COUNT(DISTINCT source_id) AS sources,
                       COALESCE(SUM(LENGTH(embedding) + LENGTH(content)), 0) AS bytes
                FROM chunks
                """
            ).fetchone()
        return ChunkStoreStats(
            total_chunks=row["total"],
            total_sources=row["sources"],
            cache_size=len(self._cache),
            dimension=self._dimension,
            estimated_storage_bytes=row["bytes"],
        )

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._cache.clear()

    def _load_dimension(self) -> int | None:
        row = self.conn.execute(
            "SELECT value FROM store_meta WHERE key = 'dimension'"
        ).fetchone()
        return int(row["value"]) if row else None

    def _warm_cache(self) -> None:
        """Load the newest ``cache_limit`` chunks, oldest first so FIFO order holds."""
        if self._cache.capacity == 0:
            return
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM chunks ORDER BY created_at DESC LIMIT ?",
            (self._cache.capacity,),
        ).fetchall()
        for row in reversed(rows):
            self._cache.put(_row_to_chunk(row))


# ------------------------------------------------------------------
# Query helpers
# ------------------------------------------------------------------


def _filter_clauses(filters: RetrievalFilters | None, prefix: str) -> tuple[str, list[object]]:
    """Build the SQL predicates for the column-backed filters."""
    clauses = ["1=1"]
    params: list[object] = []
    if filters is None:
        return " AND ".join(clauses), params

    if filters.source_types:
        clauses.append(f"{prefix}source_type IN ({','.join('?' * len(filters.source_types))})")
        params.extend(filters.source_types)
    if filters.min_date:
        clauses.append(f"{prefix}created_at >= ?")
        params.append(to_iso(filters.min_date))
    if filters.max_date:
        clauses.append(f"{prefix}created_at <= ?")
        params.append(to_iso(filters.max_date))
    if filters.exclude_ids:
        clauses.append(f"{prefix}id NOT IN ({','.join('?' * len(filters.exclude_ids))})")
        params.extend(filters.exclude_ids)
    if filters.sector_ids or filters.domain_tags:
        clauses.append(f"{prefix}metadata IS NOT NULL")
    return " AND ".join(clauses), params


def _fetch_limit(limit: int, filters: RetrievalFilters | None) -> int:
    """Over-fetch when metadata filters will discard rows after the query."""
    if filters is not None and (filters.sector_ids or filters.domain_tags):
        return limit * 5
    return limit


def _apply_metadata_filters(
    results: list[KeywordSearchResult], filters: RetrievalFilters | None
) -> list[KeywordSearchResult]:
    if filters is None:
        return results
    return [r for r in results if filters.matches_metadata(r.chunk.metadata)]


# ------------------------------------------------------------------
# Row ↔ model helpers
# ------------------------------------------------------------------


def _chunk_to_params(chunk: EmbeddedChunk) -> tuple[object, ...]:
    return (
        chunk.id,
        chunk.source_id,
        chunk.source_type,
        chunk.content,
        chunk.content_type,
        encode_vector(chunk.embedding),
        json.dumps(chunk.keywords),
        chunk.chunk_index,
        chunk.token_count,
        chunk.metadata.to_json() if chunk.metadata is not None else None,
        to_iso(chunk.created_at),
    )


def _load_keywords(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        return []
    return [str(k) for k in data] if isinstance(data, list) else []


def _row_to_chunk(row: sqlite3.Row) -> EmbeddedChunk:
    return EmbeddedChunk(
        id=row["id"],
        source_id=row["source_id"],
        source_type=row["source_type"],
        content=row["content"],
        content_type=row["content_type"],
        embedding=decode_vector(row["embedding"]),
        keywords=_load_keywords(row["keywords"]),
        chunk_index=row["chunk_index"],
        token_count=row["token_count"],
        metadata=ChunkMetadata.from_json(row["metadata"]),
        created_at=from_iso(row["created_at"]),
    )
