"""Document search and query processing models."""

from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from context_memory.models.context import Context
from context_memory.utils.text import content_hash


class SourceDocument(BaseModel):
    """A document submitted for hybrid search indexing."""

    id: str | None = Field(default=None, description="Defaults to a content hash")
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def document_id(self) -> str:
        return self.id or str(self.metadata.get("id") or content_hash(self.content))


class DocumentChunk(BaseModel):
    """A fixed-size window of a source document."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    chat_id: str
    document_id: str
    content: str
    chunk_index: int = 0
    start: int = 0
    end: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class HybridCandidate(BaseModel):
    """A chunk returned by either retriever, with both raw scores."""

    chunk: DocumentChunk
    vector_score: float = 0.0
    bm25_score: float = 0.0
    combined_score: float = 0.0
    vector_rank: int | None = None
    bm25_rank: int | None = None


class RelevantDocument(BaseModel):
    """Final hybrid search result."""

    chunk: DocumentChunk
    score: float
    retriever: Literal["vector", "bm25", "hybrid"]
    rank: int
    vector_score: float = 0.0
    bm25_score: float = 0.0
    combined_score: float = 0.0
    rerank_score: float | None = None
    rrf_score: float | None = None


class QueryAnalysis(BaseModel):
    """Heuristic description of a query."""

    complexity: Literal["simple", "moderate", "complex"]
    query_type: Literal["factual", "analytical", "comparative", "procedural"]
    word_count: int
    estimated_tokens: int
    suggested_strategy: str


class QueryProcessingResult(BaseModel):
    """Outcome of context-aware query processing."""

    original_query: str
    enhanced_query: str
    relevant_contexts: list[Context] = Field(default_factory=list)
    context_summary: str = ""
    strategy: str = "comprehensive"
    processing_confidence: float = 0.5
    total_contexts_found: int = 0
    contexts_used: int = 0
    processing_time_ms: float = 0.0
    error: str | None = None
