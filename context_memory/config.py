"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def find_env_file() -> Path:
    """Find .env file by traversing up from current directory."""
    current = Path(__file__).resolve().parent
    for _ in range(5):  # Check up to 5 levels up
        env_path = current / ".env"
        if env_path.exists():
            return env_path
        current = current.parent
    # Default to project root assumption
    return Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Context Memory"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # Embeddings
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dimensions: int = 384
    embedding_cache_size: int = 1000
    embedding_max_text_length: int = 8000
    embedding_batch_size: int = 32
    embedding_timeout_seconds: float = 60.0

    # Google Gemini (text generation collaborator)
    google_ai_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_tokens: int = 1000
    gemini_temperature: float = 0.2
    text_generation_timeout_seconds: float = 120.0

    # Deduplication
    exact_match_threshold: float = 0.95
    semantic_similarity_threshold: float = 0.85
    paraphrase_threshold: float = 0.75
    enable_llm_validation: bool = True
    max_llm_validation_length: int = 500
    dedup_cache_size: int = 2000

    # Semantic context store
    max_contexts_per_chat: int = 15
    max_context_age_seconds: float = 45 * 60
    duplicate_threshold: float = 0.85
    max_content_length: int = 1000
    min_content_length: int = 10
    min_extracted_length: int = 20

    # Memory manager
    max_total_contexts: int = 10000
    memory_max_contexts_per_chat: int = 50
    max_total_memory_mb: float = 100.0
    cleanup_interval_seconds: float = 5 * 60
    max_context_age_days: float = 7
    compression_threshold: float = 0.3
    archival_enabled: bool = True
    cleanup_batch_size: int = 100

    # Redis (optional archive store)
    redis_url: str | None = None
    redis_archive_prefix: str = "archive"

    # Qdrant (vector index for hybrid search)
    qdrant_url: str = ":memory:"
    qdrant_api_key: str | None = None
    qdrant_collection_name: str = "context_chunks"

    # Hybrid search
    bm25_k1: float = 1.5
    bm25_b: float = 0.75
    hybrid_vector_weight: float = 0.6
    hybrid_bm25_weight: float = 0.4
    rerank_top_k: int | None = None
    chunk_size: int = 1000
    chunk_overlap: int = 200
    reranker_model: str | None = None
    rerank_timeout_seconds: float = 30.0

    # Query processing
    query_enhancement_strategy: Literal["minimal", "balanced", "comprehensive"] = "balanced"
    max_relevant_contexts: int = 8
    max_summary_length: int = 2000

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Accept lowercase log levels from the environment."""
        return v.upper() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


class RuntimeConfig(BaseModel):
    """Base for component configs that can be changed while running."""

    def updated(self, **changes: Any) -> "RuntimeConfig":
        """Return a validated copy with the given fields replaced."""
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        return type(self).model_validate({**self.model_dump(), **changes})


class DeduplicationConfig(RuntimeConfig):
    """Thresholds and limits for duplicate detection."""

    exact_match_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    semantic_similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    paraphrase_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    enable_llm_validation: bool = True
    max_llm_validation_length: int = Field(default=500, ge=0)
    cache_size: int = Field(default=2000, gt=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "DeduplicationConfig":
        return cls(
            exact_match_threshold=s.exact_match_threshold,
            semantic_similarity_threshold=s.semantic_similarity_threshold,
            paraphrase_threshold=s.paraphrase_threshold,
            enable_llm_validation=s.enable_llm_validation,
            max_llm_validation_length=s.max_llm_validation_length,
            cache_size=s.dedup_cache_size,
        )


class ContextStoreConfig(RuntimeConfig):
    """Per-chat limits for the semantic context store."""

    max_contexts_per_chat: int = Field(default=15, gt=0)
    max_context_age_seconds: float = Field(default=45 * 60, gt=0)
    duplicate_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_content_length: int = Field(default=1000, gt=0)
    min_content_length: int = Field(default=10, ge=0)
    min_extracted_length: int = Field(default=20, ge=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "ContextStoreConfig":
        return cls(
            max_contexts_per_chat=s.max_contexts_per_chat,
            max_context_age_seconds=s.max_context_age_seconds,
            duplicate_threshold=s.duplicate_threshold,
            max_content_length=s.max_content_length,
            min_content_length=s.min_content_length,
            min_extracted_length=s.min_extracted_length,
        )


class MemoryConfig(RuntimeConfig):
    """Cross-chat capacity limits for the memory manager."""

    max_total_contexts: int = Field(default=10000, gt=0)
    max_contexts_per_chat: int = Field(default=50, gt=0)
    max_total_memory_mb: float = Field(default=100.0, gt=0)
    cleanup_interval_seconds: float = Field(default=300.0, gt=0)
    max_context_age_days: float = Field(default=7, gt=0)
    compression_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    archival_enabled: bool = True
    cleanup_batch_size: int = Field(default=100, gt=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "MemoryConfig":
        return cls(
            max_total_contexts=s.max_total_contexts,
            max_contexts_per_chat=s.memory_max_contexts_per_chat,
            max_total_memory_mb=s.max_total_memory_mb,
            cleanup_interval_seconds=s.cleanup_interval_seconds,
            max_context_age_days=s.max_context_age_days,
            compression_threshold=s.compression_threshold,
            archival_enabled=s.archival_enabled,
            cleanup_batch_size=s.cleanup_batch_size,
        )


class HybridSearchConfig(RuntimeConfig):
    """BM25, fusion and chunking parameters for hybrid search."""

    bm25_k1: float = Field(default=1.5, ge=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    vector_weight: float = Field(default=0.6, ge=0.0)
    bm25_weight: float = Field(default=0.4, ge=0.0)
    rerank_top_k: int | None = Field(default=None, gt=0)
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    rerank_timeout_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "HybridSearchConfig":
        return cls(
            bm25_k1=s.bm25_k1,
            bm25_b=s.bm25_b,
            vector_weight=s.hybrid_vector_weight,
            bm25_weight=s.hybrid_bm25_weight,
            rerank_top_k=s.rerank_top_k,
            chunk_size=s.chunk_size,
            chunk_overlap=s.chunk_overlap,
            rerank_timeout_seconds=s.rerank_timeout_seconds,
        )


class QueryProcessorConfig(RuntimeConfig):
    """Context enhancement options for query processing."""

    enable_context_enhancement: bool = True
    max_context_length: int = Field(default=2000, gt=0)
    context_window_tokens: int = Field(default=8000, gt=0)
    enhancement_strategy: Literal["minimal", "balanced", "comprehensive"] = "balanced"
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_relevant_contexts: int = Field(default=8, gt=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "QueryProcessorConfig":
        return cls(
            max_context_length=s.max_summary_length,
            enhancement_strategy=s.query_enhancement_strategy,
            max_relevant_contexts=s.max_relevant_contexts,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
