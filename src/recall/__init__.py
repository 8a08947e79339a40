"""recall: hybrid retrieval and token-budgeted context assembly."""

from recall.engine import MemoryEngine

__all__ = ["MemoryEngine"]
