"""Embedding client using sentence-transformers (all-MiniLM-L6-v2, 384 dims)."""

import asyncio
import logging
from functools import lru_cache
from typing import List, Protocol, Sequence

import numpy as np

from context_memory.config import settings
from context_memory.core.cache import BoundedCache
from context_memory.exceptions import EmbeddingUnavailable
from context_memory.utils.text import content_hash, normalize_for_embedding

logger = logging.getLogger(__name__)


class EmbeddingBackend(Protocol):
    """Anything that can turn normalized text into vectors."""

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]: ...

    async def health_check(self) -> bool: ...


class SentenceTransformerBackend:
    """Embedding backend using sentence-transformers.

    Uses all-MiniLM-L6-v2 by default, which produces 384-dimensional
    embeddings. Encoding is CPU bound, so it runs in a worker thread.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", batch_size: int = 32):
        """Initialize the backend.

        Args:
            model_name: Name of the sentence-transformers model to use
            batch_size: Batch size passed to ``encode``
        """
        self.model_name = model_name
        self.batch_size = batch_size
        self.model = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        """Lazy load the model on first use."""
        if self._initialized:
            return

        try:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self.model = SentenceTransformer(self.model_name)
            self._initialized = True
            logger.info("Embedding model loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise EmbeddingUnavailable(f"Could not initialize embedding model: {e}") from e

    def _encode(self, texts: List[str]) -> List[List[float]]:
        self._ensure_initialized()
        embeddings = self.model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,  # L2 normalize for cosine similarity
            batch_size=self.batch_size,
            show_progress_bar=False,
        )
        return [row.tolist() for row in embeddings]

    async def embed(self, text: str) -> List[float]:
        vectors = await asyncio.to_thread(self._encode, [text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)

    async def health_check(self) -> bool:
        try:
            vector = await self.embed("health check")
            return len(vector) > 0
        except Exception as e:
            logger.warning(f"Embedding backend health check failed: {e}")
            return False


class EmbeddingClient:
    """Caching front for an embedding backend.

    Texts are normalized before hashing and embedding, so trivially different
    inputs share one cache entry. The cache evicts the oldest inserted entry
    when full; lookups do not refresh an entry's position.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        cache: BoundedCache[str, List[float]] | None = None,
        timeout_seconds: float = 60.0,
        max_text_length: int = 8000,
    ):
        """Initialize the client.

        Args:
            backend: Embedding backend
            cache: Cache of normalized-text hash to vector (default 1000 entries)
            timeout_seconds: Per-call timeout for backend requests
            max_text_length: Normalized text is truncated to this length
        """
        self.backend = backend
        self.cache = cache if cache is not None else BoundedCache(1000, name="embedding_cache")
        self.timeout_seconds = timeout_seconds
        self.max_text_length = max_text_length

    def _prepare(self, text: str) -> tuple[str, str]:
        normalized = normalize_for_embedding(text, self.max_text_length)
        if not normalized:
            raise ValueError("Cannot embed empty text")
        return normalized, content_hash(normalized)

    async def embed(self, text: str) -> List[float]:
        """Generate embedding for a single text.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector

        Raises:
            ValueError: If the text is empty after normalization
            EmbeddingUnavailable: If the backend fails or times out
        """
        normalized, key = self._prepare(text)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            embedding = await asyncio.wait_for(
                self.backend.embed(normalized),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Embedding timed out after {self.timeout_seconds}s")
            raise EmbeddingUnavailable("Embedding request timed out") from e
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            logger.error(f"Embedding generation error: {e}")
            raise EmbeddingUnavailable(f"Embedding backend failed: {e}") from e

        self.cache.put(key, embedding)
        return embedding

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts.

        Only texts missing from the cache are sent to the backend.

        Args:
            texts: List of input texts

        Returns:
            List of embeddings in input order
        """
        if not texts:
            return []

        prepared = [self._prepare(text) for text in texts]
        results: dict[str, List[float]] = {}
        pending: dict[str, str] = {}

        for normalized, key in prepared:
            cached = self.cache.get(key)
            if cached is not None:
                results[key] = cached
            else:
                pending.setdefault(key, normalized)

        if pending:
            keys = list(pending)
            try:
                vectors = await asyncio.wait_for(
                    self.backend.embed_batch([pending[k] for k in keys]),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                logger.error(f"Batch embedding timed out after {self.timeout_seconds}s")
                raise EmbeddingUnavailable("Batch embedding request timed out") from e
            except EmbeddingUnavailable:
                raise
            except Exception as e:
                logger.error(f"Batch embedding error: {e}")
                raise EmbeddingUnavailable(f"Embedding backend failed: {e}") from e

            if len(vectors) != len(keys):
                raise EmbeddingUnavailable(
                    f"Backend returned {len(vectors)} vectors for {len(keys)} texts"
                )

            for key, vector in zip(keys, vectors):
                self.cache.put(key, vector)
                results[key] = vector

        return [results[key] for _, key in prepared]

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Calculate cosine similarity between two embeddings.

        Raises:
            ValueError: If the vectors have different lengths
        """
        if len(a) != len(b):
            raise ValueError(f"Vector dimensions must match: {len(a)} != {len(b)}")

        vec1 = np.asarray(a, dtype=float)
        vec2 = np.asarray(b, dtype=float)
        norm = float(np.linalg.norm(vec1) * np.linalg.norm(vec2))
        if norm == 0.0:
            return 0.0
        return float(np.dot(vec1, vec2) / norm)

    def find_most_similar(
        self,
        query_embedding: Sequence[float],
        candidates: Sequence[tuple[str, Sequence[float]]],
        threshold: float = 0.7,
        top_k: int = 5,
    ) -> List[tuple[str, float]]:
        """Find the candidates most similar to a query vector.

        Args:
            query_embedding: Query vector
            candidates: (id, embedding) pairs
            threshold: Minimum similarity to include
            top_k: Number of top results to return

        Returns:
            List of (id, similarity) tuples, most similar first
        """
        scored = [
            (candidate_id, self.cosine_similarity(query_embedding, embedding))
            for candidate_id, embedding in candidates
        ]
        matches = [item for item in scored if item[1] >= threshold]
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches[:top_k]

    async def health_check(self) -> bool:
        """Check that the backend can produce embeddings."""
        try:
            return await asyncio.wait_for(
                self.backend.health_check(),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Embedding health check failed: {e}")
            return False

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict[str, float]:
        return self.cache.stats()


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    """Get the singleton embedding client.

    Returns:
        EmbeddingClient backed by sentence-transformers
    """
    backend = SentenceTransformerBackend(
        model_name=settings.embedding_model,
        batch_size=settings.embedding_batch_size,
    )
    return EmbeddingClient(
        backend,
        cache=BoundedCache(settings.embedding_cache_size, name="embedding_cache"),
        timeout_seconds=settings.embedding_timeout_seconds,
        max_text_length=settings.embedding_max_text_length,
    )
