"""
factmemory: conversational fact memory for LLM assistants.

Compresses exchanges into durable facts, resolves conflicting facts about
the same attribute, and retrieves a token-bounded, ranked subset for each
new prompt.
"""

from .config import EngineConfig
from .memory import MemoryEngine, StoreOutcome
from .records import MemoryRecord, RecordStore
from .retrieval import RetrievalResult
from .store import VectorStore

__all__ = [
    "EngineConfig",
    "MemoryEngine",
    "MemoryRecord",
    "RecordStore",
    "RetrievalResult",
    "StoreOutcome",
    "VectorStore",
]
