"""Shared fixtures for the context memory tests."""

import math
import re
from typing import Callable, List, Sequence

import pytest

from context_memory.config import ContextStoreConfig, MemoryConfig
from context_memory.core.context_ranker import ContextRanker
from context_memory.core.deduplicator import Deduplicator
from context_memory.core.embeddings import EmbeddingClient
from context_memory.exceptions import RerankFailure, TextGenerationFailure
from context_memory.models.context import Context, ContextType
from context_memory.models.search import DocumentChunk
from context_memory.services.context_store import SemanticContextStore
from context_memory.services.memory_manager import MemoryManager
from context_memory.utils.text import semantic_hash

STOPWORDS = {"a", "an", "and", "the", "is", "of", "in", "on", "to", "for", "with", "what"}
DIMENSIONS = 2048


class BagOfWordsBackend:
    """Deterministic embedding backend for tests.

    Every distinct non-stopword token gets its own dimension, so cosine
    similarity is exactly the normalized word overlap of two texts.
    """

    def __init__(self):
        self.vocabulary: dict[str, int] = {}
        self.embed_calls = 0
        self.batch_calls: List[List[str]] = []

    def vectorize(self, text: str) -> List[float]:
        vector = [0.0] * DIMENSIONS
        for token in re.findall(r"\w+", text.lower()):
            if token in STOPWORDS:
                continue
            index = self.vocabulary.setdefault(token, len(self.vocabulary))
            vector[index] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

    async def embed(self, text: str) -> List[float]:
        self.embed_calls += 1
        return self.vectorize(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.batch_calls.append(list(texts))
        return [self.vectorize(text) for text in texts]

    async def health_check(self) -> bool:
        return True


class FailingEmbeddingBackend:
    async def embed(self, text: str) -> List[float]:
        raise RuntimeError("model offline")

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        raise RuntimeError("model offline")

    async def health_check(self) -> bool:
        return False


class ScriptedTextGenerator:
    """Returns queued responses in order, then the default response.

    A callable response is called with the prompt.
    """

    def __init__(self, *responses: str | Callable[[str], str], default: str = "NONE"):
        self.responses = list(responses)
        self.default = default
        self.prompts: List[str] = []
        self.temperatures: List[float] = []

    async def generate(self, prompt: str, temperature: float, max_tokens: int | None = None) -> str:
        self.prompts.append(prompt)
        self.temperatures.append(temperature)
        response = self.responses.pop(0) if self.responses else self.default
        return response(prompt) if callable(response) else response


class FailingTextGenerator:
    def __init__(self):
        self.calls = 0

    async def generate(self, prompt: str, temperature: float, max_tokens: int | None = None) -> str:
        self.calls += 1
        raise TextGenerationFailure("generator unavailable")


class FakeVectorIndex:
    """In-process VectorIndex using exact cosine similarity."""

    def __init__(self, fail_search: bool = False):
        self.fail_search = fail_search
        self.points: dict[str, tuple[DocumentChunk, List[float]]] = {}
        self.deleted_chats: List[str] = []

    async def upsert(self, chunks: Sequence[DocumentChunk], embeddings: Sequence[List[float]]) -> None:
        for chunk, embedding in zip(chunks, embeddings):
            self.points[chunk.id] = (chunk, list(embedding))

    async def similarity_search(self, chat_id: str, query_embedding: List[float], k: int):
        if self.fail_search:
            raise ConnectionError("vector index unreachable")
        scored = [
            (chunk, EmbeddingClient.cosine_similarity(query_embedding, embedding))
            for chunk, embedding in self.points.values()
            if chunk.chat_id == chat_id
        ]
        scored = [item for item in scored if item[1] > 0]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]

    async def delete_chat(self, chat_id: str) -> None:
        self.deleted_chats.append(chat_id)
        self.points = {
            point_id: point for point_id, point in self.points.items() if point[0].chat_id != chat_id
        }


class KeywordReranker:
    """Scores documents by how many times they contain a marker word."""

    def __init__(self, marker: str):
        self.marker = marker
        self.calls = 0

    async def rerank(self, query: str, documents: Sequence[str]) -> List[float]:
        self.calls += 1
        return [float(document.lower().count(self.marker)) for document in documents]


class FailingReranker:
    async def rerank(self, query: str, documents: Sequence[str]) -> List[float]:
        raise RerankFailure("cross-encoder crashed")


def make_context(
    content: str,
    backend: BagOfWordsBackend,
    chat_id: str = "chat-1",
    confidence: float = 0.8,
    context_type: ContextType = ContextType.QUERY_RESULT,
    **fields,
) -> Context:
    """Build a Context with a bag-of-words embedding."""
    return Context(
        chat_id=chat_id,
        content=content,
        embedding=backend.vectorize(content),
        semantic_hash=semantic_hash(content),
        confidence=confidence,
        context_type=context_type,
        **fields,
    )


@pytest.fixture
def backend():
    return BagOfWordsBackend()


@pytest.fixture
def embeddings(backend):
    return EmbeddingClient(backend, timeout_seconds=5)


@pytest.fixture
def deduplicator(embeddings):
    return Deduplicator(embeddings)


@pytest.fixture
def store(embeddings, deduplicator):
    return SemanticContextStore(embeddings, deduplicator)


@pytest.fixture
def capped_store(embeddings, deduplicator):
    return SemanticContextStore(
        embeddings,
        deduplicator,
        config=ContextStoreConfig(max_contexts_per_chat=15),
    )


@pytest.fixture
def ranker():
    return ContextRanker()


@pytest.fixture
def memory_manager(store):
    return MemoryManager(store, config=MemoryConfig(cleanup_interval_seconds=0.01))
