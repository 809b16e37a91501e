"""Core modules for context memory."""

from context_memory.core.cache import BoundedCache
from context_memory.core.chunking import TextChunker
from context_memory.core.context_ranker import ContextRanker, RankingRule, RankingStrategy, RuleKind
from context_memory.core.deduplicator import Deduplicator
from context_memory.core.embeddings import EmbeddingClient, SentenceTransformerBackend, get_embedding_client
from context_memory.core.hybrid_search import HybridSearchEngine
from context_memory.core.keyword_search import KeywordSearch
from context_memory.core.llm_client import GeminiTextGenerator, get_text_generator
from context_memory.core.reranker import CrossEncoderReranker, get_reranker
from context_memory.core.vector_search import QdrantVectorIndex, get_qdrant_client

__all__ = [
    "BoundedCache",
    "EmbeddingClient",
    "SentenceTransformerBackend",
    "get_embedding_client",
    "GeminiTextGenerator",
    "get_text_generator",
    "Deduplicator",
    "ContextRanker",
    "RankingRule",
    "RankingStrategy",
    "RuleKind",
    "TextChunker",
    "KeywordSearch",
    "QdrantVectorIndex",
    "get_qdrant_client",
    "CrossEncoderReranker",
    "get_reranker",
    "HybridSearchEngine",
]
