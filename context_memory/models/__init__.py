"""Data models for the context memory subsystem."""

from context_memory.models.context import (
    ArchivedContext,
    Context,
    ContextType,
    DeduplicationVerdict,
    FilterCriteria,
    MemorySnapshot,
    RankingWeights,
)
from context_memory.models.search import (
    DocumentChunk,
    HybridCandidate,
    QueryAnalysis,
    QueryProcessingResult,
    RelevantDocument,
    SourceDocument,
)

__all__ = [
    # Context models
    "Context",
    "ContextType",
    "FilterCriteria",
    "RankingWeights",
    "DeduplicationVerdict",
    "ArchivedContext",
    "MemorySnapshot",
    # Search models
    "SourceDocument",
    "DocumentChunk",
    "HybridCandidate",
    "RelevantDocument",
    "QueryAnalysis",
    "QueryProcessingResult",
]
