"""Service layer for context memory."""

from context_memory.services.context_store import SemanticContextStore
from context_memory.services.memory_manager import MemoryManager
from context_memory.services.query_processor import QueryProcessor

__all__ = [
    "SemanticContextStore",
    "MemoryManager",
    "QueryProcessor",
]
