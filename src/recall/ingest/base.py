"""Chunking primitives shared by all chunkers."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

from recall.db.models import ChunkInput, ChunkSourceType

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count: ``ceil(len / 4)``; 0 for empty text.

    Only needs to be monotonic and stable: every budget computation in the
    engine is relative to the same estimator.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ChunkingConfig:
    """Chunk size and overlap, in estimated tokens."""

    max_tokens: int = 500
    overlap_tokens: int = 50
    respect_boundaries: bool = True

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if not 0 <= self.overlap_tokens < self.max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")


class BaseChunker(ABC):
    """Abstract base for chunkers.

    Subclasses implement ``chunk_text()`` and may use ``_split_fixed_window()``
    for the sliding-window path.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    @abstractmethod
    def chunk_text(
        self,
        text: str,
        source_id: str,
        source_type: ChunkSourceType,
        config: ChunkingConfig | None = None,
    ) -> list[ChunkInput]:
        """Split *text* into ordered ChunkInputs with sequential ``chunk_index``.

        Args:
            text: Raw text of the source.
            source_id: Id of the parent source.
            source_type: Kind of source the text came from.
            config: Per-call override of the chunker's configuration.
        """

    @staticmethod
    def _split_fixed_window(text: str, max_chars: int, overlap_chars: int) -> list[str]:
        """Split *text* into fixed-width windows of *max_chars* with overlap.

        Segments are stripped; empty segments are omitted. The window always
        advances by at least one character.
        """
        if not text.strip():
            return []

        step = max(1, max_chars - overlap_chars)
        segments: list[str] = []
        pos = 0
        length = len(text)

        while pos < length:
            end = min(pos + max_chars, length)
            segment = text[pos:end].strip()
            if segment:
                segments.append(segment)
            if end >= length:
                break
            pos += step

        return segments
