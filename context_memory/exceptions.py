"""Error taxonomy for the context memory subsystem."""


class ContextMemoryError(Exception):
    """Base class for all context memory errors."""


class EmbeddingUnavailable(ContextMemoryError):
    """The embedding backend could not produce a vector.

    Fatal to the specific call and propagated to the caller; never retried
    inside this package.
    """


class TextGenerationFailure(ContextMemoryError):
    """The text generation collaborator failed, timed out or is not configured."""


class MalformedAdjudicationResponse(TextGenerationFailure):
    """Duplicate adjudication returned something other than DUPLICATE or UNIQUE."""

    def __init__(self, response: str):
        super().__init__(f"Unexpected adjudication response: {response[:80]!r}")
        self.response = response


class RerankFailure(ContextMemoryError):
    """The cross-encoder reranker failed or timed out."""


class CapacityExceeded(ContextMemoryError):
    """Cleanup could not reclaim enough headroom to accept new context."""

    def __init__(self, memory_mb: float, total_contexts: int):
        super().__init__(
            f"Capacity exceeded after cleanup: {memory_mb:.2f}MB, {total_contexts} contexts"
        )
        self.memory_mb = memory_mb
        self.total_contexts = total_contexts
