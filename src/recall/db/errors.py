"""Typed storage errors surfaced to callers."""

from __future__ import annotations


class StorageError(RuntimeError):
    """Raised when the durable store cannot complete an operation.

    Wraps the underlying ``sqlite3.Error`` (available as ``__cause__``) so
    callers can warn the user without depending on the driver.
    """


class DimensionMismatchError(StorageError):
    """Raised when a vector's dimension differs from the store's dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: store holds {expected}-d vectors, got {actual}-d. "
            "Re-embed all chunks or use a separate store per embedding model."
        )
        self.expected = expected
        self.actual = actual
