"""Chunk-and-embed: turn raw text into EmbeddedChunks ready for the chunk store."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from recall.db.models import (
    ChunkMetadata,
    ChunkSourceType,
    EmbeddedChunk,
    chunk_id,
)
from recall.ingest.base import BaseChunker, ChunkingConfig
from recall.ingest.chunker import TextChunker

if TYPE_CHECKING:
    from recall.rag.embeddings import EmbeddingProvider

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int], None]


class ChunkEmbedder:
    """Chunk text and embed each chunk through an EmbeddingProvider.

    Chunks whose embedding is unavailable are skipped with a warning; the call
    itself never fails because of the provider.

    Args:
        provider: Embedding backend.
        chunker:  Chunker to use (defaults to ``TextChunker()``).
    """

    def __init__(self, provider: EmbeddingProvider, chunker: BaseChunker | None = None) -> None:
        self._provider = provider
        self._chunker = chunker or TextChunker()

    def chunk_and_embed(
        self,
        text: str,
        source_id: str,
        source_type: ChunkSourceType,
        metadata: ChunkMetadata | None = None,
        config: ChunkingConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[EmbeddedChunk]:
        """Return embedded chunks of *text* in chunk order.

        Args:
            text:        Raw source text.
            source_id:   Id of the parent source; chunk ids derive from it.
            source_type: Kind of source.
            metadata:    Attached to every produced chunk.
            config:      Per-call chunking override.
            on_progress: Called with ``(current, total)`` after each chunk.
        """
        inputs = self._chunker.chunk_text(text, source_id, source_type, config)
        total = len(inputs)
        embedded: list[EmbeddedChunk] = []

        for i, chunk in enumerate(inputs, start=1):
            vector = self._provider.embed(chunk.content)
            if vector is None:
                logger.warning(
                    "embedding.skipped_chunk",
                    source_id=source_id,
                    chunk_index=chunk.chunk_index,
                )
            else:
                embedded.append(
                    EmbeddedChunk(
                        id=chunk_id(source_id, chunk.chunk_index),
                        source_id=source_id,
                        source_type=source_type,
                        content=chunk.content,
                        content_type=chunk.content_type,
                        embedding=vector,
                        chunk_index=chunk.chunk_index,
                        token_count=chunk.token_count,
                        keywords=chunk.keywords,
                        metadata=metadata if metadata is not None else chunk.metadata,
                    )
                )
            if on_progress is not None:
                on_progress(i, total)

        return embedded
