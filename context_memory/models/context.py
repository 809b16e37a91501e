"""Context models for the semantic context store and memory manager."""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class ContextType(str, Enum):
    """Kinds of stored context."""

    QUERY_RESULT = "query_result"
    SUBTASK_RESULT = "subtask_result"
    DECOMPOSITION = "decomposition"
    SYNTHESIS = "synthesis"
    USER_INPUT = "user_input"


DEFAULT_TYPE_WEIGHTS: dict[str, float] = {
    ContextType.QUERY_RESULT.value: 1.0,
    ContextType.SUBTASK_RESULT.value: 0.9,
    ContextType.SYNTHESIS.value: 0.8,
    ContextType.DECOMPOSITION.value: 0.7,
    ContextType.USER_INPUT.value: 0.6,
}
UNKNOWN_TYPE_WEIGHT = 0.5


class Context(BaseModel):
    """A stored unit of prior conversational or retrieved information."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    chat_id: str = Field(..., description="Owning chat scope")
    content: str = Field(..., description="Cleaned or extracted content")
    embedding: list[float] = Field(default_factory=list)
    semantic_hash: str = Field(..., description="Keyword fingerprint of the content")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    context_type: ContextType = Field(default=ContextType.QUERY_RESULT)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    relevance_score: float | None = Field(
        default=None,
        description="Set on query results only, never on stored contexts",
    )

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds elapsed since the context was stored or last refreshed."""
        return max(0.0, ((now or utc_now()) - self.timestamp).total_seconds())

    def with_score(self, score: float) -> "Context":
        """Copy of this context carrying a per-query relevance score."""
        return self.model_copy(update={"relevance_score": score})


class FilterCriteria(BaseModel):
    """Pre-ranking filter applied to a chat's contexts."""

    max_age: timedelta | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    context_types: list[ContextType] | None = None
    metadata_equals: dict[str, Any] | None = None
    min_similarity: float | None = Field(default=None, ge=-1.0, le=1.0)

    def matches(self, context: Context, now: datetime | None = None) -> bool:
        """Check every criterion except ``min_similarity``, which needs a query vector."""
        if self.max_age is not None and context.age_seconds(now) > self.max_age.total_seconds():
            return False
        if self.min_confidence is not None and context.confidence < self.min_confidence:
            return False
        if self.context_types and context.context_type not in self.context_types:
            return False
        if self.metadata_equals:
            for key, value in self.metadata_equals.items():
                if context.metadata.get(key) != value:
                    return False
        return True


class RankingWeights(BaseModel):
    """Weights for the store's relevance score."""

    semantic: float = Field(default=0.4, ge=0.0)
    confidence: float = Field(default=0.2, ge=0.0)
    recency: float = Field(default=0.2, ge=0.0)
    type: float = Field(default=0.2, ge=0.0)


class DeduplicationVerdict(BaseModel):
    """Outcome of a duplicate check."""

    is_duplicate: bool
    similarity: float = 0.0
    tier: Literal["exact", "semantic", "paraphrase", "none"] = "none"
    matched_id: str | None = None
    confidence: float = 0.0


class ArchivedContext(BaseModel):
    """A context moved out of the active working set."""

    chat_id: str
    context_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    archived_at: datetime = Field(default_factory=utc_now)
    original_timestamp: datetime
    compression_ratio: float = 1.0

    @classmethod
    def from_context(cls, context: Context) -> "ArchivedContext":
        return cls(
            chat_id=context.chat_id,
            context_id=context.id,
            content=context.content,
            metadata=dict(context.metadata),
            original_timestamp=context.timestamp,
            compression_ratio=float(context.metadata.get("compression_ratio", 1.0)),
        )


class MemorySnapshot(BaseModel):
    """Aggregate memory statistics across all chats."""

    total_chats: int = 0
    total_contexts: int = 0
    total_memory_mb: float = 0.0
    oldest_context_age_seconds: float = 0.0
    newest_context_age_seconds: float = 0.0
    average_context_size: float = 0.0
    compression_ratio: float = 1.0
    cache_hit_ratio: float = 0.0
    average_retrieval_ms: float = 0.0
    average_storage_ms: float = 0.0
    average_compression_ms: float = 0.0
    archived_contexts: int = 0
