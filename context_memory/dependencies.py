"""Process-wide component wiring from environment settings."""

import logging
from functools import lru_cache

from context_memory.config import (
    ContextStoreConfig,
    DeduplicationConfig,
    HybridSearchConfig,
    MemoryConfig,
    QueryProcessorConfig,
    get_settings,
)
from context_memory.core.context_ranker import ContextRanker
from context_memory.core.deduplicator import Deduplicator
from context_memory.core.embeddings import get_embedding_client
from context_memory.core.hybrid_search import HybridSearchEngine
from context_memory.core.llm_client import get_text_generator
from context_memory.core.reranker import get_reranker
from context_memory.core.vector_search import QdrantVectorIndex, get_qdrant_client
from context_memory.db.archive import get_archive_store
from context_memory.services.context_store import SemanticContextStore
from context_memory.services.memory_manager import MemoryManager
from context_memory.services.query_processor import QueryProcessor

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_deduplicator() -> Deduplicator:
    return Deduplicator(
        get_embedding_client(),
        get_text_generator(),
        DeduplicationConfig.from_settings(get_settings()),
    )


@lru_cache(maxsize=1)
def get_context_store() -> SemanticContextStore:
    """Get the shared context store.

    The memory manager attaches itself on creation, so capacity governance
    only applies once ``get_memory_manager`` has been called.
    """
    return SemanticContextStore(
        get_embedding_client(),
        deduplicator=get_deduplicator(),
        text_generator=get_text_generator(),
        config=ContextStoreConfig.from_settings(get_settings()),
    )


@lru_cache(maxsize=1)
def get_memory_manager() -> MemoryManager:
    manager = MemoryManager(
        get_context_store(),
        archive_store=get_archive_store(),
        config=MemoryConfig.from_settings(get_settings()),
    )
    logger.info(
        f"Memory manager ready: {manager.config.max_total_contexts} contexts, "
        f"{manager.config.max_total_memory_mb}MB"
    )
    return manager


@lru_cache(maxsize=1)
def get_query_processor() -> QueryProcessor:
    return QueryProcessor(
        get_context_store(),
        ContextRanker(),
        get_deduplicator(),
        text_generator=get_text_generator(),
        config=QueryProcessorConfig.from_settings(get_settings()),
    )


@lru_cache(maxsize=1)
def get_hybrid_search_engine() -> HybridSearchEngine:
    return HybridSearchEngine(
        get_embedding_client(),
        QdrantVectorIndex(get_qdrant_client()),
        reranker=get_reranker(),
        config=HybridSearchConfig.from_settings(get_settings()),
    )


def reset_dependencies() -> None:
    """Drop every cached component so the next call rebuilds from settings."""
    for factory in (
        get_deduplicator,
        get_context_store,
        get_memory_manager,
        get_query_processor,
        get_hybrid_search_engine,
    ):
        factory.cache_clear()
