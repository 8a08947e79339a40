"""recall persistence layer: message store, chunk store, hot cache."""

from recall.db.cache import HotCache
from recall.db.chunk_store import ChunkStore, ChunkStoreStats
from recall.db.connection import Database
from recall.db.errors import DimensionMismatchError, StorageError
from recall.db.message_store import MessageStore, MessageStoreStats

__all__ = [
    "ChunkStore",
    "ChunkStoreStats",
    "Database",
    "DimensionMismatchError",
    "HotCache",
    "MessageStore",
    "MessageStoreStats",
    "StorageError",
]
