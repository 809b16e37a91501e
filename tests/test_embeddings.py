"""Tests for the caching embedding client."""

import asyncio

import pytest

from context_memory.core.cache import BoundedCache
from context_memory.core.embeddings import EmbeddingClient
from context_memory.exceptions import EmbeddingUnavailable
from tests.conftest import FailingEmbeddingBackend


class SlowBackend:
    async def embed(self, text):
        await asyncio.sleep(1)
        return [1.0]

    async def embed_batch(self, texts):
        await asyncio.sleep(1)
        return [[1.0] for _ in texts]

    async def health_check(self):
        return True


class TestEmbed:
    @pytest.mark.asyncio
    async def test_embed_returns_vector(self, embeddings):
        vector = await embeddings.embed("Paris is the capital of France.")
        assert len(vector) > 0
        assert sum(value * value for value in vector) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_normalized_duplicates_hit_cache(self, embeddings, backend):
        first = await embeddings.embed("Hello World!")
        second = await embeddings.embed("  hello   WORLD ")

        assert first == second
        assert backend.embed_calls == 1
        assert embeddings.cache_stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_empty_text_raises_value_error(self, embeddings):
        with pytest.raises(ValueError):
            await embeddings.embed("   ...   ")

    @pytest.mark.asyncio
    async def test_backend_failure_raises_unavailable(self):
        client = EmbeddingClient(FailingEmbeddingBackend())

        with pytest.raises(EmbeddingUnavailable):
            await client.embed("some text")

        # Failures are never cached
        assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_timeout_raises_unavailable(self):
        client = EmbeddingClient(SlowBackend(), timeout_seconds=0.01)

        with pytest.raises(EmbeddingUnavailable):
            await client.embed("slow text")

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self, backend):
        client = EmbeddingClient(backend, cache=BoundedCache(2))

        await client.embed("alpha")
        await client.embed("bravo")
        await client.embed("charlie")

        assert len(client.cache) == 2
        await client.embed("alpha")
        assert backend.embed_calls == 4


class TestEmbedBatch:
    @pytest.mark.asyncio
    async def test_only_uncached_texts_reach_backend(self, embeddings, backend):
        await embeddings.embed("alpha")

        vectors = await embeddings.embed_batch(["alpha", "bravo", "charlie"])

        assert len(vectors) == 3
        assert backend.batch_calls == [["bravo", "charlie"]]
        assert vectors[0] == await embeddings.embed("alpha")

    @pytest.mark.asyncio
    async def test_preserves_input_order_with_repeats(self, embeddings, backend):
        vectors = await embeddings.embed_batch(["bravo", "alpha", "bravo"])

        assert vectors[0] == vectors[2]
        assert vectors[0] != vectors[1]
        assert backend.batch_calls == [["bravo", "alpha"]]

    @pytest.mark.asyncio
    async def test_empty_batch(self, embeddings):
        assert await embeddings.embed_batch([]) == []

    @pytest.mark.asyncio
    async def test_backend_failure_raises_unavailable(self):
        client = EmbeddingClient(FailingEmbeddingBackend())

        with pytest.raises(EmbeddingUnavailable):
            await client.embed_batch(["one", "two"])


class TestSimilarity:
    def test_cosine_similarity_identical(self):
        assert EmbeddingClient.cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_cosine_similarity_orthogonal(self):
        assert EmbeddingClient.cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_cosine_similarity_zero_vector(self):
        assert EmbeddingClient.cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_cosine_similarity_dimension_mismatch(self):
        with pytest.raises(ValueError):
            EmbeddingClient.cosine_similarity([1.0], [1.0, 0.0])

    def test_find_most_similar(self, embeddings):
        candidates = [
            ("exact", [1.0, 0.0]),
            ("close", [0.9, 0.1]),
            ("far", [0.0, 1.0]),
        ]

        results = embeddings.find_most_similar([1.0, 0.0], candidates, threshold=0.7, top_k=5)

        assert [candidate_id for candidate_id, _ in results] == ["exact", "close"]
        assert results[0][1] == pytest.approx(1.0)

    def test_find_most_similar_top_k(self, embeddings):
        candidates = [(str(i), [1.0, i / 10]) for i in range(5)]

        results = embeddings.find_most_similar([1.0, 0.0], candidates, threshold=0.0, top_k=2)

        assert [candidate_id for candidate_id, _ in results] == ["0", "1"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_check(self, embeddings):
        assert await embeddings.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self):
        client = EmbeddingClient(FailingEmbeddingBackend())
        assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_clear_cache(self, embeddings):
        await embeddings.embed("alpha")
        embeddings.clear_cache()
        assert embeddings.cache_stats()["size"] == 0
