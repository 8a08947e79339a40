"""Embedding blob codec and similarity math.

Vectors are stored as raw little-endian float32 arrays (the sqlite-vec blob
format), so a blob's byte length is always ``dimension * 4``.
"""

from __future__ import annotations

import math
import struct
from collections.abc import Sequence

import sqlite_vec

from recall.db.errors import DimensionMismatchError, StorageError

FLOAT32_BYTES = 4


def encode_vector(vector: Sequence[float]) -> bytes:
    """Serialise *vector* to a float32 blob."""
    return sqlite_vec.serialize_float32(list(vector))


def decode_vector(blob: bytes) -> list[float]:
    """Deserialise a float32 blob produced by :func:`encode_vector`.

    Raises:
        StorageError: If the blob length is not a multiple of 4 bytes.
    """
    if len(blob) % FLOAT32_BYTES:
        raise StorageError(
            f"Corrupt embedding blob: {len(blob)} bytes is not a multiple of {FLOAT32_BYTES}"
        )
    count = len(blob) // FLOAT32_BYTES
    return list(struct.unpack(f"<{count}f", blob))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``.

    Defined as 0.0 when either norm is zero or the dimensions differ.
    """
    if len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    return 0.0 if magnitude == 0 else dot / magnitude


def check_dimension(expected: int | None, vector: Sequence[float]) -> int:
    """Validate *vector* against the store's *expected* dimension.

    Returns the vector's dimension (which becomes the store dimension when
    *expected* is None).

    Raises:
        ValueError: If the vector is empty.
        DimensionMismatchError: If the dimension differs from *expected*.
    """
    dimension = len(vector)
    if dimension < 1:
        raise ValueError("embedding must contain at least one value")
    if expected is not None and dimension != expected:
        raise DimensionMismatchError(expected, dimension)
    return dimension
