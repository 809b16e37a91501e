"""Context memory subsystem for RAG chat applications.

Per-chat semantic memory with deduplication, strategy-based ranking,
capacity management and hybrid document search.
"""

__version__ = "0.1.0"
