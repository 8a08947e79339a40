"""recall ingest pipeline: chunker, keyword extraction, chunk-and-embed."""

from recall.ingest.base import BaseChunker, ChunkingConfig, estimate_tokens
from recall.ingest.chunker import TextChunker, detect_content_type, extract_keywords
from recall.ingest.embedder import ChunkEmbedder

__all__ = [
    "BaseChunker",
    "ChunkEmbedder",
    "ChunkingConfig",
    "TextChunker",
    "detect_content_type",
    "estimate_tokens",
    "extract_keywords",
]
