"""MemoryEngine: one object owning both stores, the provider, retriever and assembler.

Construct once per process with ``MemoryEngine.open(config)`` and pass it to
callers; nothing in recall keeps module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import TracebackType

import structlog

from recall.config import RecallConfig
from recall.db.chunk_store import ChunkStore, ChunkStoreStats
from recall.db.message_store import MessageStore, MessageStoreStats
from recall.db.models import ChunkMetadata, ChunkSourceType, EmbeddedChunk, utc_now
from recall.ingest.base import ChunkingConfig
from recall.ingest.chunker import TextChunker
from recall.ingest.embedder import ChunkEmbedder, ProgressCallback
from recall.rag.assembler import ContextAssembler
from recall.rag.embeddings import EmbeddingProvider, LiteLLMEmbeddingProvider
from recall.rag.retriever import HybridRetriever

logger = structlog.get_logger()

MESSAGES_DB = "messages.db"
CHUNKS_DB = "chunks.db"


@dataclass
class MemoryStats:
    messages: MessageStoreStats
    chunks: ChunkStoreStats
    embedding_ready: bool
    generated_at: datetime = field(default_factory=utc_now)


class MemoryEngine:
    """Facade over the message store, chunk store and retrieval pipeline.

    Attributes:
        config: Configuration the engine was opened with.
        messages: Chat-turn store.
        chunks: Chunk store.
        provider: Embedding backend.
        retriever: Hybrid retriever over ``chunks``.
        assembler: Context assembler over ``messages`` and ``retriever``.
    """

    def __init__(
        self,
        config: RecallConfig,
        messages: MessageStore,
        chunks: ChunkStore,
        provider: EmbeddingProvider,
    ) -> None:
        self.config = config
        self.messages = messages
        self.chunks = chunks
        self.provider = provider
        self.embedder = ChunkEmbedder(
            provider, TextChunker(config.chunking.to_chunking_config())
        )
        self.retriever = HybridRetriever(chunks, provider, config.retrieval.to_rrf_config())
        self.assembler = ContextAssembler(
            messages,
            self.retriever,
            provider,
            config.budget.to_budget_config(),
            sector_boost=config.retrieval.sector_boost,
            code_boost=config.retrieval.code_boost,
            recency_decay_days=config.retrieval.recency_decay_days,
        )

    @classmethod
    def open(
        cls, config: RecallConfig, provider: EmbeddingProvider | None = None
    ) -> MemoryEngine:
        """Open both stores under ``config.data_path``.

        Without *provider*, a LiteLLMEmbeddingProvider is created and loaded
        in the background; until it is ready, retrieval is keyword-only.

        Raises:
            StorageError: If either store cannot be opened.
        """
        data_path = config.data_path
        storage = config.storage
        messages = MessageStore(data_path / MESSAGES_DB, enable_fts=storage.enable_fts)
        try:
            chunks = ChunkStore(
                data_path / CHUNKS_DB,
                cache_limit=storage.cache_limit,
                candidate_limit=storage.candidate_limit,
                enable_fts=storage.enable_fts,
            )
        except Exception:
            messages.close()
            raise

        if provider is None:
            litellm_provider = LiteLLMEmbeddingProvider(
                config.embedding.model,
                dimensions=config.embedding.dimensions,
                num_retries=config.embedding.num_retries,
            )
            litellm_provider.load_in_background()
            provider = litellm_provider

        logger.info("engine.opened", data_dir=str(data_path))
        return cls(config, messages, chunks, provider)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def chunk_and_embed(
        self,
        text: str,
        source_id: str,
        source_type: ChunkSourceType,
        metadata: ChunkMetadata | None = None,
        config: ChunkingConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[EmbeddedChunk]:
        """Chunk and embed *text* without storing it."""
        return self.embedder.chunk_and_embed(
            text, source_id, source_type, metadata, config, on_progress
        )

    def ingest_text(
        self,
        text: str,
        source_id: str,
        source_type: ChunkSourceType,
        metadata: ChunkMetadata | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """Replace the chunks of *source_id* with freshly embedded chunks of *text*.

        Returns the number of chunks stored. The old chunks are kept when no
        chunk could be embedded.
        """
        embedded = self.chunk_and_embed(
            text, source_id, source_type, metadata, on_progress=on_progress
        )
        if not embedded:
            logger.warning("ingest.nothing_embedded", source_id=source_id)
            return 0
        self.chunks.replace_source(source_id, embedded)
        logger.info("ingest.complete", source_id=source_id, chunks=len(embedded))
        return len(embedded)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> MemoryStats:
        return MemoryStats(
            messages=self.messages.stats(),
            chunks=self.chunks.stats(),
            embedding_ready=self.provider.is_ready(),
        )

    def close(self) -> None:
        self.assembler.close()
        self.retriever.close()
        close_provider = getattr(self.provider, "close", None)
        if callable(close_provider):
            close_provider()
        self.messages.close()
        self.chunks.close()

    def __enter__(self) -> MemoryEngine:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
