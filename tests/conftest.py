"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import math
import re

import pytest

from recall.db.chunk_store import ChunkStore
from recall.db.message_store import MessageStore
from recall.ingest.base import estimate_tokens

FAKE_DIMS = 32

_WORD_RE = re.compile(r"[a-z0-9]+")


def fake_embedding(text: str, dims: int = FAKE_DIMS) -> list[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vector = [0.0] * dims
    for word in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dims
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeProvider:
    """In-process EmbeddingProvider used instead of LiteLLM in tests."""

    def __init__(self, ready: bool = True, dims: int = FAKE_DIMS) -> None:
        self.ready = ready
        self.dims = dims
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float] | None:
        self.calls.append(text)
        if not self.ready:
            return None
        return fake_embedding(text, self.dims)

    def is_ready(self) -> bool:
        return self.ready

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def message_store(tmp_path):
    """File-based message store in tmp_path, closed after test."""
    store = MessageStore(tmp_path / "messages.db")
    yield store
    store.close()


@pytest.fixture
def chunk_store(tmp_path):
    """File-based chunk store in tmp_path, closed after test."""
    store = ChunkStore(tmp_path / "chunks.db")
    yield store
    store.close()
